"""FastAPI dependencies for authentication."""

import hmac
import logging
from dataclasses import dataclass
from typing import Annotated, Any

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from fieldintel.core.config import settings
from fieldintel.core.exceptions import AuthenticationError
from fieldintel.core.redaction import preview_secret
from fieldintel.db.supabase import SupabaseClient

logger = logging.getLogger(__name__)

# HTTP Bearer token security scheme
security = HTTPBearer(auto_error=False)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def _validate_user_token(token: str) -> Any:
    """Validate a Supabase Auth JWT and return the user.

    Raises:
        HTTPException: 401 if the token is rejected.
    """
    logger.debug("AUTH: Validating token %s", preview_secret(token))
    try:
        response = SupabaseClient.get_client().auth.get_user(token)
        if response is None or response.user is None:
            raise AuthenticationError("Invalid authentication token")
    except AuthenticationError as e:
        logger.warning("AUTH: token rejected")
        raise _unauthorized("Invalid authentication token") from e
    except Exception as e:
        logger.exception("AUTH: Unexpected error during token validation")
        raise _unauthorized("Could not validate credentials") from e

    logger.info("AUTH: Token validated for user_id=%s", response.user.id)
    return response.user


async def get_current_user(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)],
) -> Any:
    """Extract and validate the current user from the bearer JWT.

    Raises:
        HTTPException: If authentication fails.
    """
    if credentials is None:
        logger.warning("AUTH: No credentials provided in request")
        raise _unauthorized("Authentication required")
    return _validate_user_token(credentials.credentials)


@dataclass(frozen=True)
class PipelineCaller:
    """Who invoked a pipeline stage: the backend itself or a signed-in user."""

    is_service: bool
    user_id: str | None = None


async def get_pipeline_caller(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)],
) -> PipelineCaller:
    """Accept the service-role key or any valid user JWT.

    Raises:
        HTTPException: If neither is presented.
    """
    if credentials is None:
        logger.warning("AUTH: Pipeline call without credentials")
        raise _unauthorized("Authentication required")

    token = credentials.credentials
    service_key = settings.SUPABASE_SERVICE_ROLE_KEY.get_secret_value()
    if service_key and hmac.compare_digest(token.encode(), service_key.encode()):
        return PipelineCaller(is_service=True)

    user = _validate_user_token(token)
    return PipelineCaller(is_service=False, user_id=str(user.id))


# Type aliases for common dependency patterns
CurrentUser = Annotated[Any, Depends(get_current_user)]
PipelineAuth = Annotated[PipelineCaller, Depends(get_pipeline_caller)]

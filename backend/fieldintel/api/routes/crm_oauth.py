"""CRM connection routes: Salesforce OAuth (PKCE) and connection management."""

import logging
from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from fieldintel.api.deps import CurrentUser
from fieldintel.core.exceptions import FieldIntelException
from fieldintel.services.crm_connection import get_authorization_flow, get_crm_connection_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/crm", tags=["crm"])


class AuthorizeRequest(BaseModel):
    """Request model for starting Salesforce authorization."""

    model_config = ConfigDict(populate_by_name=True)

    redirect_uri: str | None = Field(None, alias="redirectUri")


class CallbackRequest(BaseModel):
    """Query parameters echoed back by Salesforce, forwarded by the client."""

    model_config = ConfigDict(populate_by_name=True)

    code: str | None = None
    state: str | None = None
    error: str | None = None
    error_description: str | None = None
    redirect_uri: str | None = Field(None, alias="redirectUri")


class ExchangeRequest(BaseModel):
    """Request model for a client-driven code exchange."""

    model_config = ConfigDict(populate_by_name=True)

    code: str = Field(..., min_length=1)
    code_verifier: str = Field(..., alias="codeVerifier", min_length=43, max_length=128)
    redirect_uri: str | None = Field(None, alias="redirectUri")


def _failure(exc: FieldIntelException) -> JSONResponse:
    logger.warning(
        "Salesforce connection attempt failed",
        extra={"code": exc.code, "status_code": exc.status_code},
    )
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "success": False,
            "error": exc.message,
            "code": exc.code,
            "details": exc.details,
        },
    )


@router.post("/salesforce/authorize")
async def authorize_salesforce(
    data: AuthorizeRequest, request: Request, current_user: CurrentUser
) -> dict[str, Any]:
    """Start Salesforce authorization.

    Returns the provider URL to redirect to and the opaque ``state``.
    """
    logger.info("Salesforce authorization requested", extra={"user_id": current_user.id})
    return get_authorization_flow().initiate(request.session, data.redirect_uri)


@router.post("/salesforce/callback", response_model=None)
async def salesforce_callback(
    data: CallbackRequest, request: Request, current_user: CurrentUser
) -> dict[str, Any] | JSONResponse:
    """Verify the callback and complete the connection server side.

    The authorization code is only spent after the state, nonce and PKCE
    challenge checks pass.
    """
    try:
        verified = get_authorization_flow().verify_callback(
            request.session,
            code=data.code,
            state=data.state,
            error=data.error,
            error_description=data.error_description,
        )
        return await get_crm_connection_service().exchange(
            str(current_user.id),
            verified.code,
            verified.code_verifier,
            data.redirect_uri,
            flow=verified.flow,
        )
    except FieldIntelException as e:
        return _failure(e)


@router.post("/salesforce/exchange", response_model=None)
async def exchange_salesforce_code(
    data: ExchangeRequest, current_user: CurrentUser
) -> dict[str, Any] | JSONResponse:
    """Exchange an authorization code the client already verified."""
    try:
        return await get_crm_connection_service().exchange(
            str(current_user.id), data.code, data.code_verifier, data.redirect_uri
        )
    except FieldIntelException as e:
        return _failure(e)


@router.post("/salesforce/refresh")
async def refresh_salesforce_token(current_user: CurrentUser) -> dict[str, Any]:
    """Refresh the stored access token; failure means the user must reconnect."""
    return await get_crm_connection_service().refresh(str(current_user.id))


@router.get("/connection")
async def get_connection(current_user: CurrentUser) -> dict[str, Any]:
    """Current CRM connection summary (never includes tokens)."""
    return await get_crm_connection_service().status(str(current_user.id))


@router.delete("/connection")
async def delete_connection(current_user: CurrentUser) -> dict[str, Any]:
    """Disconnect the CRM and clear stored credentials."""
    return await get_crm_connection_service().disconnect(str(current_user.id))

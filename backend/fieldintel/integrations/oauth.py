"""Salesforce OAuth 2.0 (authorization code + PKCE) client and flow state machine."""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, cast
from urllib.parse import urlencode

import httpx

from fieldintel.core.circuit_breaker import get_circuit_breaker
from fieldintel.core.config import PipelineConfig
from fieldintel.core.exceptions import OAuthExchangeError, OAuthFlowError
from fieldintel.core.redaction import preview_secret

logger = logging.getLogger(__name__)

_breaker = get_circuit_breaker("salesforce")


class OAuthFlowStep(str, Enum):
    """Steps of one authorization attempt."""

    IDLE = "idle"
    AUTHORIZING = "authorizing"
    CALLBACK_RECEIVED = "callback_received"
    VERIFIED = "verified"
    EXCHANGED = "exchanged"
    CONNECTED = "connected"
    ERROR = "error"


_NEXT_STEP: dict[OAuthFlowStep, OAuthFlowStep] = {
    OAuthFlowStep.IDLE: OAuthFlowStep.AUTHORIZING,
    OAuthFlowStep.AUTHORIZING: OAuthFlowStep.CALLBACK_RECEIVED,
    OAuthFlowStep.CALLBACK_RECEIVED: OAuthFlowStep.VERIFIED,
    OAuthFlowStep.VERIFIED: OAuthFlowStep.EXCHANGED,
    OAuthFlowStep.EXCHANGED: OAuthFlowStep.CONNECTED,
}


@dataclass
class OAuthFlow:
    """Tracks one authorization attempt through its steps.

    Each step may only advance to the next one or drop to ``error``.
    """

    step: OAuthFlowStep = OAuthFlowStep.IDLE
    error: str | None = None
    history: list[OAuthFlowStep] = field(default_factory=list)

    def advance(self, target: OAuthFlowStep) -> None:
        """Move to ``target``.

        Raises:
            OAuthFlowError: If ``target`` is not the next step.
        """
        if target is OAuthFlowStep.ERROR:
            self.fail("flow aborted")
            return
        if _NEXT_STEP.get(self.step) is not target:
            raise OAuthFlowError(self.step.value, target.value)
        self.history.append(self.step)
        self.step = target

    def fail(self, message: str) -> None:
        if self.step is OAuthFlowStep.ERROR:
            return
        self.history.append(self.step)
        self.step = OAuthFlowStep.ERROR
        self.error = message

    @classmethod
    def resume(cls, step: OAuthFlowStep) -> "OAuthFlow":
        """Rebuild a flow at a known step (each HTTP request handles one part)."""
        return cls(step=step)


@dataclass
class TokenSet:
    """Tokens returned by the Salesforce token endpoint."""

    access_token: str
    instance_url: str
    refresh_token: str | None = None
    id_url: str | None = None
    issued_at: str | None = None
    signature: str | None = None

    @classmethod
    def from_response(cls, data: dict[str, Any]) -> "TokenSet":
        if not data.get("access_token") or not data.get("instance_url"):
            raise OAuthExchangeError(
                "Token response missing access_token or instance_url",
                provider_error={"keys": sorted(data.keys())},
            )
        return cls(
            access_token=data["access_token"],
            instance_url=str(data["instance_url"]).rstrip("/"),
            refresh_token=data.get("refresh_token"),
            id_url=data.get("id"),
            issued_at=data.get("issued_at"),
            signature=data.get("signature"),
        )

    def __repr__(self) -> str:
        return (
            f"TokenSet(instance_url={self.instance_url!r}, "
            f"access_token={preview_secret(self.access_token)!r}, "
            f"refresh_token={preview_secret(self.refresh_token)!r})"
        )


class SalesforceOAuthClient:
    """Talks to the Salesforce OAuth endpoints.

    Every call runs server side; the client secret never leaves this process.

    Args:
        config: Pipeline configuration carrying client id/secret and login host.
        transport: Optional httpx transport (tests pass ``httpx.MockTransport``).
    """

    def __init__(
        self,
        config: PipelineConfig,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = 30.0,
    ) -> None:
        self._config = config
        self._transport = transport
        self._timeout = timeout

    @property
    def authorize_endpoint(self) -> str:
        return f"{self._config.crm_login_url}/services/oauth2/authorize"

    @property
    def token_endpoint(self) -> str:
        return f"{self._config.crm_login_url}/services/oauth2/token"

    def _http(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=self._transport, timeout=self._timeout)

    def authorization_url(self, state: str, code_challenge: str, redirect_uri: str) -> str:
        """Build the URL the user agent is redirected to."""
        params = {
            "response_type": "code",
            "client_id": self._config.crm_client_id,
            "redirect_uri": redirect_uri,
            "state": state,
            "scope": self._config.crm_scope,
            "prompt": "login",
            "code_challenge": code_challenge,
            "code_challenge_method": "S256",
        }
        return f"{self.authorize_endpoint}?{urlencode(params)}"

    async def _post_token(self, form: dict[str, str], grant: str) -> dict[str, Any]:
        _breaker.check()
        try:
            async with self._http() as client:
                response = await client.post(
                    self.token_endpoint,
                    data=form,
                    headers={"Accept": "application/json"},
                )
                response.raise_for_status()
        except httpx.HTTPStatusError as e:
            status_code = e.response.status_code
            if status_code >= 500:
                _breaker.record_failure()
            try:
                body = e.response.json()
            except ValueError:
                body = {"error": "unknown_error", "error_description": e.response.text[:500]}
            logger.error(
                "Salesforce token request rejected",
                extra={"grant_type": grant, "status": status_code, "error": body.get("error")},
            )
            message = body.get("error_description") or body.get("error") or "Token request failed"
            raise OAuthExchangeError(message, provider_error=body, status_code=status_code) from e
        except httpx.RequestError as e:
            _breaker.record_failure()
            logger.error("Salesforce token endpoint unreachable: %s", e)
            raise OAuthExchangeError(f"Token endpoint unreachable: {e}") from e
        _breaker.record_success()
        return cast(dict[str, Any], response.json())

    async def exchange_code(self, code: str, code_verifier: str, redirect_uri: str) -> TokenSet:
        """Exchange an authorization code for tokens.

        Raises:
            OAuthExchangeError: On non-2xx (carrying the provider body) or
                connection failure.
        """
        logger.info(
            "Exchanging Salesforce authorization code",
            extra={
                "code": preview_secret(code),
                "verifier_length": len(code_verifier),
                "redirect_uri": redirect_uri,
            },
        )
        data = await self._post_token(
            {
                "grant_type": "authorization_code",
                "code": code,
                "client_id": self._config.crm_client_id,
                "client_secret": self._config.crm_client_secret,
                "redirect_uri": redirect_uri,
                "code_verifier": code_verifier,
            },
            grant="authorization_code",
        )
        tokens = TokenSet.from_response(data)
        logger.info("Salesforce token exchange succeeded", extra={"tokens": repr(tokens)})
        return tokens

    async def refresh(self, refresh_token: str) -> TokenSet:
        """Trade a refresh token for a new access token.

        Salesforce does not rotate the refresh token, so the original one is
        carried over when the response omits it.
        """
        data = await self._post_token(
            {
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                "client_id": self._config.crm_client_id,
                "client_secret": self._config.crm_client_secret,
            },
            grant="refresh_token",
        )
        tokens = TokenSet.from_response(data)
        if not tokens.refresh_token:
            tokens.refresh_token = refresh_token
        return tokens

    async def fetch_identity(self, tokens: TokenSet) -> dict[str, Any]:
        """Fetch the authenticated Salesforce user from the ``id`` URL.

        Raises:
            OAuthExchangeError: If the identity URL is missing or the call fails.
        """
        if not tokens.id_url:
            raise OAuthExchangeError("Token response did not include an identity URL")
        _breaker.check()
        try:
            async with self._http() as client:
                response = await client.get(
                    tokens.id_url,
                    headers={"Authorization": f"Bearer {tokens.access_token}"},
                )
                response.raise_for_status()
        except httpx.HTTPStatusError as e:
            if e.response.status_code >= 500:
                _breaker.record_failure()
            raise OAuthExchangeError(
                "Failed to fetch Salesforce identity",
                provider_error={"body": e.response.text[:500]},
                status_code=e.response.status_code,
            ) from e
        except httpx.RequestError as e:
            _breaker.record_failure()
            raise OAuthExchangeError(f"Identity endpoint unreachable: {e}") from e
        _breaker.record_success()
        return cast(dict[str, Any], response.json())

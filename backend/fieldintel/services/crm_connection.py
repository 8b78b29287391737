"""Salesforce connection lifecycle: authorize, verify callback, exchange, refresh, disconnect."""

import logging
from collections.abc import MutableMapping
from dataclasses import dataclass
from typing import Any

from fieldintel.core.config import PipelineConfig, settings
from fieldintel.core.exceptions import (
    CRMConnectionError,
    FieldIntelException,
    OAuthExchangeError,
    OAuthStateError,
    ValidationError,
)
from fieldintel.core.redaction import preview_secret
from fieldintel.db.supabase import SupabaseClient
from fieldintel.integrations.oauth import OAuthFlow, OAuthFlowStep, SalesforceOAuthClient
from fieldintel.integrations.pkce import OAuthState, challenge_matches
from fieldintel.models.crm import CRMCredential, CRMProviderName

logger = logging.getLogger(__name__)

SESSION_KEY = "salesforce_oauth"


@dataclass
class VerifiedCallback:
    """A callback that passed every integrity check."""

    code: str
    code_verifier: str
    flow: OAuthFlow


class SalesforceAuthorizationFlow:
    """Initiates authorization and verifies the callback.

    The nonce, verifier and timestamp are mirrored into the signed session
    cookie so the callback can still be completed if ``state`` is unreadable.
    """

    def __init__(
        self,
        config: PipelineConfig,
        oauth_client: SalesforceOAuthClient | None = None,
    ) -> None:
        self._config = config
        self._oauth = oauth_client or SalesforceOAuthClient(config)

    def initiate(
        self,
        session: MutableMapping[str, Any],
        redirect_uri: str | None = None,
        now_ms: int | None = None,
    ) -> dict[str, Any]:
        """Start an authorization attempt.

        Returns:
            ``{authorizationUrl, state, flowStep}``.
        """
        self._config.require("crm_client_id")
        flow = OAuthFlow()
        flow.advance(OAuthFlowStep.AUTHORIZING)

        state = OAuthState.create(now_ms)
        session[SESSION_KEY] = {
            "nonce": state.random,
            "verifier": state.verifier,
            "timestamp": state.timestamp,
        }
        encoded = state.encode()
        url = self._oauth.authorization_url(
            encoded, state.challenge, redirect_uri or self._config.crm_redirect_uri
        )
        logger.info(
            "Salesforce authorization initiated",
            extra={"verifier_length": len(state.verifier), "state": preview_secret(encoded)},
        )
        return {"authorizationUrl": url, "state": encoded, "flowStep": flow.step.value}

    def verify_callback(
        self,
        session: MutableMapping[str, Any],
        code: str | None,
        state: str | None,
        error: str | None = None,
        error_description: str | None = None,
        now_ms: int | None = None,
    ) -> VerifiedCallback:
        """Check a callback before the authorization code is spent.

        Rejects provider-side errors, expired state, nonce mismatch with the
        session copy, and a verifier whose hash differs from the embedded
        challenge. If ``state`` cannot be decoded the session copy is used;
        the challenge cannot be checked then, so the verifier must be present.

        Raises:
            OAuthExchangeError: The provider reported an error.
            ValidationError: No authorization code.
            OAuthStateError: Any integrity check failed.
        """
        flow = OAuthFlow.resume(OAuthFlowStep.AUTHORIZING)
        backup: dict[str, Any] = session.pop(SESSION_KEY, None) or {}

        try:
            if error:
                raise OAuthExchangeError(
                    error_description or error,
                    provider_error={"error": error, "error_description": error_description},
                )
            if not code:
                raise ValidationError("Missing authorization code", field="code")
            flow.advance(OAuthFlowStep.CALLBACK_RECEIVED)

            decoded: OAuthState | None = None
            if state:
                try:
                    decoded = OAuthState.decode(state)
                except ValueError as e:
                    logger.warning("Could not decode OAuth state, using session copy: %s", e)

            if decoded is not None:
                if decoded.is_expired(now_ms):
                    raise OAuthStateError("OAuth state expired - please try again", "expired")
                if backup.get("nonce") and backup["nonce"] != decoded.random:
                    raise OAuthStateError(
                        "Invalid state parameter - possible CSRF attack", "nonce_mismatch"
                    )
                if not challenge_matches(decoded.verifier, decoded.challenge):
                    raise OAuthStateError(
                        "Code verifier does not match the challenge", "challenge_mismatch"
                    )
                verifier = decoded.verifier
            else:
                verifier = backup.get("verifier") or ""
                if not verifier:
                    raise OAuthStateError(
                        "Code verifier not found - please try again", "missing_verifier"
                    )
                fallback_state = OAuthState(
                    random=str(backup.get("nonce", "")),
                    verifier=verifier,
                    challenge="",
                    timestamp=int(backup.get("timestamp") or 0),
                )
                if fallback_state.is_expired(now_ms):
                    raise OAuthStateError("OAuth state expired - please try again", "expired")
        except FieldIntelException as e:
            flow.fail(e.message)
            logger.warning(
                "Salesforce callback rejected",
                extra={"code": e.code, "reason": e.details.get("reason")},
            )
            raise

        flow.advance(OAuthFlowStep.VERIFIED)
        logger.info("Salesforce callback verified", extra={"verifier_length": len(verifier)})
        return VerifiedCallback(code=code, code_verifier=verifier, flow=flow)


class CRMConnectionService:
    """Stores, refreshes and clears the CRM credential on a user profile."""

    def __init__(
        self,
        config: PipelineConfig,
        db: Any = SupabaseClient,
        oauth_client: SalesforceOAuthClient | None = None,
    ) -> None:
        self._config = config
        self._db = db
        self._oauth = oauth_client or SalesforceOAuthClient(config)

    async def exchange(
        self,
        user_id: str,
        code: str,
        code_verifier: str,
        redirect_uri: str | None = None,
        flow: OAuthFlow | None = None,
    ) -> dict[str, Any]:
        """Exchange a code for tokens and connect the caller's profile.

        Nothing is written unless both the token exchange and the identity
        lookup succeed.

        Returns:
            ``{success: True, user: {name, email, organization}}``.

        Raises:
            ValidationError: Missing code or verifier.
            ConfigurationError: Client id/secret missing.
            OAuthExchangeError: Token or identity call failed.
        """
        missing = [
            name for name, value in (("code", code), ("codeVerifier", code_verifier)) if not value
        ]
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}")
        self._config.require("crm_client_id", "crm_client_secret")

        flow = flow or OAuthFlow.resume(OAuthFlowStep.VERIFIED)
        try:
            tokens = await self._oauth.exchange_code(
                code, code_verifier, redirect_uri or self._config.crm_redirect_uri
            )
            flow.advance(OAuthFlowStep.EXCHANGED)
            identity = await self._oauth.fetch_identity(tokens)
        except FieldIntelException as e:
            flow.fail(e.message)
            raise

        credential = CRMCredential(
            user_id=user_id,
            provider=CRMProviderName.SALESFORCE.value,
            connected=True,
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            crm_user_id=identity.get("user_id"),
            instance_url=tokens.instance_url,
        )
        profile = await self._db.get_user_profile(user_id)
        await self._db.update_user_profile(
            user_id, credential.to_profile_update(profile.get("settings"))
        )
        flow.advance(OAuthFlowStep.CONNECTED)

        logger.info(
            "Salesforce connected",
            extra={"user_id": user_id, "crm_user_id": credential.crm_user_id},
        )
        return {
            "success": True,
            "user": {
                "name": identity.get("display_name"),
                "email": identity.get("email"),
                "organization": identity.get("organization_id"),
            },
        }

    async def refresh(self, user_id: str) -> dict[str, Any]:
        """Refresh the stored access token.

        Raises:
            CRMConnectionError: No connected credential or no refresh token.
            OAuthExchangeError: The provider refused the refresh; the user
                has to reconnect.
        """
        self._config.require("crm_client_id", "crm_client_secret")
        profile = await self._db.get_user_profile(user_id)
        credential = CRMCredential.from_profile(profile)
        if not credential.is_usable:
            raise CRMConnectionError(credential.provider or "salesforce")
        if not credential.refresh_token:
            raise CRMConnectionError(
                credential.provider or "salesforce", "No refresh token stored - please reconnect"
            )

        tokens = await self._oauth.refresh(credential.refresh_token)
        credential.access_token = tokens.access_token
        credential.refresh_token = tokens.refresh_token
        credential.instance_url = tokens.instance_url or credential.instance_url
        await self._db.update_user_profile(
            user_id, credential.to_profile_update(profile.get("settings"))
        )
        logger.info("Salesforce access token refreshed", extra={"user_id": user_id})
        return {"success": True, "instanceUrl": credential.instance_url}

    async def status(self, user_id: str) -> dict[str, Any]:
        """Connection summary without any token."""
        profile = await self._db.get_user_profile(user_id)
        return CRMCredential.from_profile(profile).to_summary()

    async def disconnect(self, user_id: str) -> dict[str, Any]:
        profile = await self._db.get_user_profile(user_id)
        await self._db.update_user_profile(
            user_id, CRMCredential.cleared_profile_update(profile.get("settings"))
        )
        logger.info("CRM disconnected", extra={"user_id": user_id})
        return {"success": True}


_authorization_flow: SalesforceAuthorizationFlow | None = None
_connection_service: CRMConnectionService | None = None


def get_authorization_flow() -> SalesforceAuthorizationFlow:
    global _authorization_flow
    if _authorization_flow is None:
        _authorization_flow = SalesforceAuthorizationFlow(settings.pipeline_config())
    return _authorization_flow


def get_crm_connection_service() -> CRMConnectionService:
    global _connection_service
    if _connection_service is None:
        _connection_service = CRMConnectionService(settings.pipeline_config())
    return _connection_service

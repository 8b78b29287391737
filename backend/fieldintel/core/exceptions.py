"""Custom exceptions for the Field Intel backend."""

import logging
from typing import Any

logger = logging.getLogger(__name__)

# Exception type → safe user-facing message mapping
_SAFE_MESSAGES: dict[str, str] = {
    "NotFoundError": "The requested resource was not found.",
    "AuthenticationError": "Authentication failed. Please log in again.",
    "ValidationError": "The provided input is invalid. Please check and try again.",
    "DatabaseError": "A database error occurred. Please try again.",
    "ConfigurationError": "The service is not configured correctly.",
    "ExternalServiceError": "An external service is temporarily unavailable.",
    "CircuitBreakerOpen": "A service dependency is temporarily unavailable. Please try again in a moment.",
    "OAuthStateError": "The CRM authorization attempt could not be verified. Please reconnect.",
    "OAuthExchangeError": "The CRM rejected the authorization. Please reconnect.",
    "CRMConnectionError": "Your CRM connection is not usable. Please reconnect.",
}

_DEFAULT_MESSAGE = "An error occurred. Please try again."


def sanitize_error(e: Exception) -> str:
    """Map an exception to a safe, user-facing error message.

    Args:
        e: The exception to sanitize.

    Returns:
        A safe, generic error message string.
    """
    # Walk the MRO to find the most specific matching type
    for cls in type(e).__mro__:
        safe_msg = _SAFE_MESSAGES.get(cls.__name__)
        if safe_msg:
            return safe_msg

    return _DEFAULT_MESSAGE


class FieldIntelException(Exception):
    """Base exception for all Field Intel errors."""

    def __init__(
        self,
        message: str,
        code: str,
        status_code: int = 400,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Initialize Field Intel exception.

        Args:
            message: Human-readable error message.
            code: Machine-readable error code.
            status_code: HTTP status code.
            details: Additional error details.
        """
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details or {}


class NotFoundError(FieldIntelException):
    """Resource not found error (404)."""

    def __init__(self, resource: str, resource_id: str | None = None) -> None:
        """Initialize not found error.

        Args:
            resource: Name of the resource that was not found.
            resource_id: Optional ID of the resource.
        """
        message = f"{resource} not found"
        if resource_id:
            message = f"{resource} with ID '{resource_id}' not found"
        super().__init__(
            message=message,
            code="NOT_FOUND",
            status_code=404,
            details={"resource": resource, "resource_id": resource_id},
        )


class AuthenticationError(FieldIntelException):
    """Authentication failed error (401)."""

    def __init__(self, message: str = "Authentication required") -> None:
        super().__init__(
            message=message,
            code="AUTHENTICATION_ERROR",
            status_code=401,
        )


class ValidationError(FieldIntelException):
    """Input validation error (400)."""

    def __init__(
        self, message: str, field: str | None = None, details: dict[str, Any] | None = None
    ) -> None:
        """Initialize validation error.

        Args:
            message: Error message.
            field: Name of the invalid field.
            details: Additional validation details.
        """
        error_details = details or {}
        if field:
            error_details["field"] = field
        super().__init__(
            message=message,
            code="VALIDATION_ERROR",
            status_code=400,
            details=error_details,
        )


class ConfigurationError(FieldIntelException):
    """Required provider credentials are missing (500).

    Only the names of the missing settings are reported, never values.
    """

    def __init__(self, missing: list[str]) -> None:
        super().__init__(
            message=f"Missing configuration: {', '.join(missing)}",
            code="CONFIGURATION_ERROR",
            status_code=500,
            details={"missing": list(missing)},
        )


class DatabaseError(FieldIntelException):
    """Database operation error (500)."""

    def __init__(self, message: str = "A database error occurred") -> None:
        super().__init__(
            message=message,
            code="DATABASE_ERROR",
            status_code=500,
        )


class ExternalServiceError(FieldIntelException):
    """External service error (502)."""

    def __init__(
        self,
        service: str,
        message: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Initialize external service error.

        Args:
            service: Name of the external service that failed.
            message: Optional error message.
            details: Additional error details.
        """
        error_details = {"service": service, **(details or {})}
        super().__init__(
            message=message or f"External service '{service}' is unavailable",
            code="EXTERNAL_SERVICE_ERROR",
            status_code=502,
            details=error_details,
        )


class StorageError(ExternalServiceError):
    """Audio blob could not be downloaded or is unusable."""

    def __init__(self, message: str, path: str | None = None) -> None:
        super().__init__(service="storage", message=message, details={"path": path})
        self.code = "STORAGE_ERROR"


class SpeechProviderError(ExternalServiceError):
    """Speech-to-text provider call failed."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(
            service="openai_whisper",
            message=message,
            details={"provider_status": status_code},
        )
        self.code = "SPEECH_PROVIDER_ERROR"


class ExtractionError(ExternalServiceError):
    """Text-generation output was missing, malformed, or failed validation."""

    def __init__(self, message: str, errors: list[dict[str, Any]] | None = None) -> None:
        super().__init__(
            service="anthropic",
            message=message,
            details={"errors": errors or []},
        )
        self.code = "EXTRACTION_ERROR"


class CRMRequestError(ExternalServiceError):
    """A single CRM REST call failed."""

    def __init__(
        self,
        provider: str,
        message: str,
        status_code: int | None = None,
        body: str | None = None,
    ) -> None:
        super().__init__(
            service=provider,
            message=message,
            details={"provider_status": status_code, "body": body},
        )
        self.code = "CRM_REQUEST_ERROR"
        self.provider_status = status_code
        self.body = body


class StageError(FieldIntelException):
    """A pipeline stage failed after recording the failure on the recording (500)."""

    def __init__(
        self,
        stage: str,
        message: str,
        recording_id: str | None = None,
        cause: str | None = None,
    ) -> None:
        """Initialize stage error.

        Args:
            stage: Stage name (transcribe, analyze, crm-sync).
            message: Human-readable failure message.
            recording_id: Recording the stage was working on.
            cause: Stringified underlying error.
        """
        super().__init__(
            message=message,
            code="STAGE_FAILED",
            status_code=500,
            details={"stage": stage, "recording_id": recording_id, "cause": cause},
        )


class InvalidStatusTransitionError(FieldIntelException):
    """Recording status would move backwards (409)."""

    def __init__(self, recording_id: str, current: str, target: str) -> None:
        super().__init__(
            message=f"Recording '{recording_id}' cannot move from '{current}' to '{target}'",
            code="INVALID_STATUS_TRANSITION",
            status_code=409,
            details={"recording_id": recording_id, "current": current, "target": target},
        )


class OAuthStateError(FieldIntelException):
    """OAuth callback failed an integrity check (400).

    Raised for expired state, nonce mismatch, verifier/challenge mismatch
    and missing verifier. Always fail closed.
    """

    def __init__(self, message: str, reason: str) -> None:
        super().__init__(
            message=message,
            code="OAUTH_STATE_INVALID",
            status_code=400,
            details={"reason": reason},
        )
        self.reason = reason


class OAuthFlowError(FieldIntelException):
    """OAuth flow attempted an illegal state transition (409)."""

    def __init__(self, current: str, target: str) -> None:
        super().__init__(
            message=f"OAuth flow cannot move from '{current}' to '{target}'",
            code="OAUTH_FLOW_ERROR",
            status_code=409,
            details={"current": current, "target": target},
        )


class OAuthExchangeError(FieldIntelException):
    """Token endpoint or identity lookup failed (400).

    ``provider_error`` holds the provider's parsed error body for diagnostics.
    """

    def __init__(
        self,
        message: str,
        provider_error: dict[str, Any] | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(
            message=message,
            code="OAUTH_EXCHANGE_FAILED",
            status_code=400,
            details={"provider_error": provider_error or {}, "provider_status": status_code},
        )
        self.provider_error = provider_error or {}


class CRMConnectionError(FieldIntelException):
    """CRM credential is missing or unusable (409)."""

    def __init__(self, provider: str, message: str | None = None) -> None:
        super().__init__(
            message=message or f"{provider} is not connected",
            code="CRM_CONNECTION_ERROR",
            status_code=409,
            details={"provider": provider},
        )


class CRMProviderNotSupportedError(FieldIntelException):
    """No CRM provider implementation is registered for the name (400)."""

    def __init__(self, provider: str) -> None:
        super().__init__(
            message=f"CRM provider '{provider}' not yet supported",
            code="CRM_PROVIDER_NOT_SUPPORTED",
            status_code=400,
            details={"provider": provider},
        )

"""Domain models for CRM connection and synchronization."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from fieldintel.core.redaction import preview_secret


class CRMProviderName(str, Enum):
    """CRM providers a profile can be connected to."""

    SALESFORCE = "salesforce"


class SyncStatus(str, Enum):
    """Outcome recorded on a sync log row."""

    PENDING = "pending"
    SKIPPED = "skipped"
    PARTIAL = "partial"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class CRMCredential:
    """CRM credential embedded on a user profile.

    Tokens are held here only for server-side use; :meth:`to_summary` is the
    only representation that may leave the service.
    """

    user_id: str
    provider: str | None = None
    connected: bool = False
    access_token: str | None = None
    refresh_token: str | None = None
    crm_user_id: str | None = None
    instance_url: str | None = None

    @property
    def is_usable(self) -> bool:
        return bool(self.connected and self.provider)

    @classmethod
    def from_profile(cls, profile: dict[str, Any]) -> "CRMCredential":
        """Build from a ``user_profiles`` row."""
        settings = profile.get("settings") or {}
        return cls(
            user_id=profile["id"],
            provider=profile.get("crm_provider"),
            connected=bool(profile.get("crm_connected")),
            access_token=profile.get("crm_access_token"),
            refresh_token=profile.get("crm_refresh_token"),
            crm_user_id=profile.get("crm_user_id"),
            instance_url=settings.get("salesforce_instance_url"),
        )

    def to_profile_update(self, existing_settings: dict[str, Any] | None = None) -> dict[str, Any]:
        """Columns written when a credential is stored or refreshed."""
        merged = dict(existing_settings or {})
        merged["salesforce_instance_url"] = self.instance_url
        return {
            "crm_provider": self.provider,
            "crm_connected": self.connected,
            "crm_access_token": self.access_token,
            "crm_refresh_token": self.refresh_token,
            "crm_user_id": self.crm_user_id,
            "settings": merged,
        }

    @staticmethod
    def cleared_profile_update(existing_settings: dict[str, Any] | None = None) -> dict[str, Any]:
        """Columns written on disconnect."""
        merged = dict(existing_settings or {})
        merged.pop("salesforce_instance_url", None)
        return {
            "crm_provider": None,
            "crm_connected": False,
            "crm_access_token": None,
            "crm_refresh_token": None,
            "crm_user_id": None,
            "settings": merged,
        }

    def to_summary(self) -> dict[str, Any]:
        """Client-safe connection summary (no tokens)."""
        return {
            "provider": self.provider,
            "connected": self.connected,
            "crmUserId": self.crm_user_id,
            "instanceUrl": self.instance_url,
            "hasRefreshToken": bool(self.refresh_token),
        }

    def __repr__(self) -> str:
        return (
            f"CRMCredential(user_id={self.user_id!r}, provider={self.provider!r}, "
            f"connected={self.connected}, access_token={preview_secret(self.access_token)!r})"
        )


@dataclass
class SyncOutcome:
    """Running tally of one sync invocation."""

    contact_ids: list[str] = field(default_factory=list)
    task_ids: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    attempted: int = 0

    @property
    def succeeded(self) -> int:
        return len(self.contact_ids) + len(self.task_ids)

    def classify(self) -> SyncStatus:
        """Classify the batch.

        ``completed`` with no errors and something done, ``failed`` when
        something was attempted and nothing succeeded, ``skipped`` when there
        was nothing to do, otherwise ``partial``.
        """
        if self.attempted == 0 and not self.errors:
            return SyncStatus.SKIPPED
        if not self.errors:
            return SyncStatus.COMPLETED
        if self.succeeded == 0:
            return SyncStatus.FAILED
        return SyncStatus.PARTIAL

    def synced_data(self) -> dict[str, Any]:
        return {
            "contacts": len(self.contact_ids),
            "tasks": len(self.task_ids),
            "contactIds": list(self.contact_ids),
            "taskIds": list(self.task_ids),
        }

    def error_message(self) -> str | None:
        return "; ".join(self.errors) if self.errors else None


@dataclass
class SyncLog:
    """One append-only ``crm_sync_logs`` row."""

    user_id: str
    recording_id: str
    analysis_id: str
    provider: str | None
    status: SyncStatus
    synced_data: dict[str, Any] = field(
        default_factory=lambda: {"contacts": 0, "tasks": 0, "contactIds": [], "taskIds": []}
    )
    error_message: str | None = None
    sync_duration_ms: int = 0
    id: str | None = None

    def to_row(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "recording_id": self.recording_id,
            "analysis_id": self.analysis_id,
            "provider": self.provider,
            "status": self.status.value,
            "synced_data": self.synced_data,
            "error_message": self.error_message,
            "sync_duration_ms": self.sync_duration_ms,
        }

    def to_response(self) -> dict[str, Any]:
        """Shape returned by the sync endpoint."""
        response: dict[str, Any] = {
            "success": self.status is not SyncStatus.FAILED,
            "status": self.status.value,
            "synced": {
                "contacts": self.synced_data.get("contacts", 0),
                "tasks": self.synced_data.get("tasks", 0),
            },
        }
        if self.error_message:
            response["errors"] = self.error_message.split("; ")
        if self.id:
            response["syncLogId"] = self.id
        return response

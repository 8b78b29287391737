"""Pipeline handoff events stored in the ``pipeline_events`` outbox."""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any


class PipelineEventType(str, Enum):
    """Stage completion events and the stage each one triggers."""

    RECORDING_UPLOADED = "recording.uploaded"
    TRANSCRIPTION_COMPLETED = "transcription.completed"
    ANALYSIS_COMPLETED = "analysis.completed"


class DeliveryStatus(str, Enum):
    PENDING = "pending"
    DELIVERED = "delivered"
    FAILED = "failed"


@dataclass
class PipelineEvent:
    """A stage handoff waiting to be delivered."""

    event_type: PipelineEventType
    recording_id: str
    payload: dict[str, Any]
    id: str | None = None
    status: DeliveryStatus = DeliveryStatus.PENDING
    attempts: int = 0
    last_error: str | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_row(self) -> dict[str, Any]:
        return {
            "event_type": self.event_type.value,
            "recording_id": self.recording_id,
            "payload": self.payload,
            "status": self.status.value,
            "attempts": self.attempts,
            "last_error": self.last_error,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "PipelineEvent":
        created = row.get("created_at")
        return cls(
            id=row.get("id"),
            event_type=PipelineEventType(row["event_type"]),
            recording_id=row["recording_id"],
            payload=row.get("payload") or {},
            status=DeliveryStatus(row.get("status") or "pending"),
            attempts=int(row.get("attempts") or 0),
            last_error=row.get("last_error"),
            created_at=datetime.fromisoformat(created) if isinstance(created, str) else (
                created or datetime.now(UTC)
            ),
        )

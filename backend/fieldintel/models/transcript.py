"""Transcript row model."""

from dataclasses import dataclass
from datetime import datetime
from typing import Any

API_PROVIDER_WHISPER = "openai_whisper"


@dataclass
class Transcript:
    """Immutable transcript of one recording."""

    id: str
    recording_id: str
    user_id: str
    transcript_text: str
    language: str = "en"
    confidence_score: float = 0.0
    processing_time_ms: int = 0
    word_count: int = 0
    api_provider: str = API_PROVIDER_WHISPER
    api_cost: float = 0.0
    created_at: datetime | None = None

    def to_response(self) -> dict[str, Any]:
        """Shape returned by the transcription endpoint."""
        return {
            "transcriptionId": self.id,
            "text": self.transcript_text,
            "confidence": self.confidence_score,
            "wordCount": self.word_count,
            "processingTime": self.processing_time_ms,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Transcript":
        created = data.get("created_at")
        return cls(
            id=data["id"],
            recording_id=data["recording_id"],
            user_id=data["user_id"],
            transcript_text=data.get("transcript_text") or "",
            language=data.get("language") or "en",
            confidence_score=float(data.get("confidence_score") or 0.0),
            processing_time_ms=int(data.get("processing_time_ms") or 0),
            word_count=int(data.get("word_count") or 0),
            api_provider=data.get("api_provider") or API_PROVIDER_WHISPER,
            api_cost=float(data.get("api_cost") or 0.0),
            created_at=datetime.fromisoformat(created) if isinstance(created, str) else created,
        )

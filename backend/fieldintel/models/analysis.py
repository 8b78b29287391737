"""Structured extraction models.

``ExtractionResult`` is what the text-generation provider must return. It is
validated with pydantic; malformed values always fail, while missing fields
fall back to empty defaults unless strict mode is requested.
"""

from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic import ValidationError as PydanticValidationError

from fieldintel.core.exceptions import ExtractionError

Priority = Literal["low", "medium", "high", "urgent"]
Strength = Literal["high", "medium", "low"]
Sentiment = Literal["positive", "neutral", "negative", "urgent"]

Confidence = Annotated[float, Field(ge=0.0, le=1.0)]


class _Item(BaseModel):
    model_config = ConfigDict(extra="ignore")

    @model_validator(mode="before")
    @classmethod
    def _nulls_take_defaults(cls, data: Any) -> Any:
        # Providers emit null for unknown optional values; fall back to the default
        if isinstance(data, dict):
            return {k: v for k, v in data.items() if v is not None}
        return data


class ExtractedContact(_Item):
    name: str
    title: str | None = None
    company: str | None = None
    email: str | None = None
    phone: str | None = None
    confidence: Confidence = 0.0


class ExtractedCompany(_Item):
    name: str
    industry: str | None = None
    size: str | None = None
    confidence: Confidence = 0.0


class ActionItem(_Item):
    task: str
    due_date: str | None = None
    priority: Priority = "medium"
    confidence: Confidence = 0.0


class DateMention(_Item):
    date: str
    context: str | None = None
    confidence: Confidence = 0.0


class BuyingSignal(_Item):
    signal: str
    strength: Strength = "medium"
    confidence: Confidence = 0.0


class KeyPoint(_Item):
    point: str
    importance: Strength = "medium"


class ExtractionResult(BaseModel):
    """Everything extracted from one transcript."""

    model_config = ConfigDict(extra="ignore")

    contacts: list[ExtractedContact] = Field(default_factory=list)
    companies: list[ExtractedCompany] = Field(default_factory=list)
    action_items: list[ActionItem] = Field(default_factory=list)
    dates: list[DateMention] = Field(default_factory=list)
    buying_signals: list[BuyingSignal] = Field(default_factory=list)
    overall_sentiment: Sentiment = "neutral"
    sentiment_score: float = Field(default=0.5, ge=0.0, le=1.0)
    sentiment_explanation: str = ""
    summary: str = ""
    key_points: list[KeyPoint] = Field(default_factory=list)
    next_steps: str = ""
    confidence_score: float = Field(default=0.0, ge=0.0, le=1.0)

    @classmethod
    def parse_provider_output(cls, data: Any, strict: bool = False) -> "ExtractionResult":
        """Validate raw provider output.

        Args:
            data: Decoded JSON object from the provider.
            strict: When True, every top-level field must be present.

        Returns:
            The validated extraction.

        Raises:
            ExtractionError: If the payload is not an object, is missing
                fields in strict mode, or contains invalid values.
        """
        if not isinstance(data, dict):
            raise ExtractionError(
                f"Extraction output must be a JSON object, got {type(data).__name__}"
            )

        if strict:
            missing = [name for name in cls.model_fields if name not in data]
            if missing:
                raise ExtractionError(
                    f"Extraction output missing fields: {', '.join(missing)}",
                    errors=[{"loc": [name], "type": "missing"} for name in missing],
                )

        # Explicit nulls are treated like absent fields in lenient mode
        cleaned = data if strict else {k: v for k, v in data.items() if v is not None}
        try:
            return cls.model_validate(cleaned)
        except PydanticValidationError as e:
            raise ExtractionError(
                f"Extraction output failed validation ({e.error_count()} errors)",
                errors=[
                    {"loc": list(err["loc"]), "type": err["type"], "msg": err["msg"]}
                    for err in e.errors()
                ],
            ) from e

    def qualifies_for_auto_sync(self, threshold: float = 0.8) -> bool:
        """True when confident enough and at least one contact was found."""
        return self.confidence_score >= threshold and len(self.contacts) > 0

    @classmethod
    def tool_input_schema(cls) -> dict[str, Any]:
        """JSON schema used to constrain the provider's tool call."""
        return cls.model_json_schema()


class AnalysisResult(BaseModel):
    """Persisted analysis row."""

    id: str
    transcription_id: str
    recording_id: str
    user_id: str
    extraction: ExtractionResult
    processing_time_ms: int = 0
    api_cost: float = 0.0

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "AnalysisResult":
        return cls(
            id=row["id"],
            transcription_id=row["transcription_id"],
            recording_id=row["recording_id"],
            user_id=row["user_id"],
            extraction=ExtractionResult.parse_provider_output(row),
            processing_time_ms=int(row.get("processing_time_ms") or 0),
            api_cost=float(row.get("api_cost") or 0.0),
        )

    def to_row(self) -> dict[str, Any]:
        """Columns for the ``analysis_results`` insert (id is generated)."""
        return {
            "transcription_id": self.transcription_id,
            "recording_id": self.recording_id,
            "user_id": self.user_id,
            **self.extraction.model_dump(mode="json"),
            "processing_time_ms": self.processing_time_ms,
            "api_cost": self.api_cost,
        }

    def to_response(self) -> dict[str, Any]:
        """Shape returned by the analysis endpoint."""
        return {
            **self.extraction.model_dump(mode="json"),
            "analysisId": self.id,
            "processingTime": self.processing_time_ms,
        }

"""Analysis stage: transcript → structured CRM extraction."""

import logging
import time
from typing import Any

from fieldintel.core.config import PipelineConfig, settings
from fieldintel.core.exceptions import (
    InvalidStatusTransitionError,
    StageError,
    ValidationError,
)
from fieldintel.db.supabase import SupabaseClient
from fieldintel.integrations.llm import ExtractionClient
from fieldintel.models.analysis import AnalysisResult, ExtractionResult
from fieldintel.models.events import PipelineEventType
from fieldintel.models.recording import RecordingStatus
from fieldintel.models.transcript import Transcript
from fieldintel.services.dispatch import PipelineDispatcher, get_pipeline_dispatcher
from fieldintel.services.transcription import mark_recording_failed

logger = logging.getLogger(__name__)

STAGE_NAME = "analyze"

SYSTEM_PROMPT = (
    "You are a sales CRM data extraction expert. "
    "Extract structured data from sales call transcripts."
)

EXTRACTION_PROMPT = """Analyze the following sales call transcript and extract:

1. Contacts: people mentioned (name, title, company, email and phone if available)
2. Companies: companies discussed (name, industry, size estimate)
3. Action items: follow-up tasks (task description, due date if mentioned, priority low/medium/high/urgent; use urgent or high when the speaker signals urgency)
4. Dates: important dates mentioned (date as YYYY-MM-DD, context)
5. Buying signals: indicators of purchase intent (signal description, strength high/medium/low)
6. Sentiment: overall tone (positive/neutral/negative/urgent), a 0.0-1.0 score and a one-sentence explanation
7. Summary: a 2-3 sentence summary of the conversation
8. Key points: the most important points discussed, each with importance high/medium/low
9. Next steps: recommended follow-up actions

Give every extracted item a confidence between 0.0 and 1.0, and an overall confidence_score for the whole extraction.
Only include information actually present in the transcript. Use null for unknown optional fields.

Transcript:
---
{transcript}
---"""


def build_extraction_prompt(transcript_text: str) -> str:
    return EXTRACTION_PROMPT.format(transcript=transcript_text)


class AnalysisStage:
    """Extracts contacts, tasks and signals from a transcript.

    Args:
        config: Provider credentials and extraction settings.
        db: Persistence layer (``SupabaseClient`` by default).
        extractor: Text-generation client; built from ``config`` if omitted.
        dispatcher: Handoff dispatcher for ``analysis.completed``.
    """

    def __init__(
        self,
        config: PipelineConfig,
        db: Any = SupabaseClient,
        extractor: ExtractionClient | None = None,
        dispatcher: PipelineDispatcher | None = None,
    ) -> None:
        self._config = config
        self._db = db
        self._extractor = extractor
        self._dispatcher = dispatcher

    @property
    def extractor(self) -> ExtractionClient:
        if self._extractor is None:
            self._extractor = ExtractionClient(
                self._config.text_gen_provider_key,
                model=self._config.analysis_model,
                max_tokens=self._config.analysis_max_tokens,
                temperature=self._config.analysis_temperature,
            )
        return self._extractor

    @property
    def dispatcher(self) -> PipelineDispatcher:
        return self._dispatcher or get_pipeline_dispatcher()

    async def run(self, transcription_id: str, recording_id: str) -> AnalysisResult:
        """Analyze one transcript.

        An existing analysis for the transcript is returned unchanged, with no
        provider call and no new sync trigger. A fresh analysis triggers sync
        only when it clears the confidence gate and found a contact.

        Raises:
            ValidationError: Missing identifiers or mismatched recording.
            ConfigurationError: Provider or storage credentials missing.
            NotFoundError: Unknown transcript.
            StageError: Any failure after processing started; the recording
                is left ``failed`` with ``"Analysis failed: <msg>"``.
        """
        missing = [
            name
            for name, value in (("transcriptionId", transcription_id), ("recordingId", recording_id))
            if not value
        ]
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}")
        self._config.require("text_gen_provider_key", "storage_endpoint", "storage_service_key")

        existing = await self._db.find_analysis_for_transcription(transcription_id)
        if existing:
            logger.info(
                "Analysis already exists, skipping provider call",
                extra={"transcription_id": transcription_id, "analysis_id": existing.get("id")},
            )
            return AnalysisResult.from_row(existing)

        transcript = Transcript.from_dict(await self._db.get_transcription(transcription_id))
        if transcript.recording_id != recording_id:
            raise ValidationError(
                "Transcription does not belong to the given recording", field="recordingId"
            )

        start = time.perf_counter()
        try:
            await self._db.update_recording_status(recording_id, RecordingStatus.ANALYZING)
            if not transcript.transcript_text.strip():
                raise ValidationError("Transcript text is empty")

            call = await self.extractor.extract(
                build_extraction_prompt(transcript.transcript_text),
                ExtractionResult.tool_input_schema(),
                system_prompt=SYSTEM_PROMPT,
            )
            extraction = ExtractionResult.parse_provider_output(
                call.data, strict=self._config.strict_extraction
            )
            processing_time_ms = int((time.perf_counter() - start) * 1000)

            pending = AnalysisResult(
                id="",
                transcription_id=transcription_id,
                recording_id=recording_id,
                user_id=transcript.user_id,
                extraction=extraction,
                processing_time_ms=processing_time_ms,
                api_cost=round(call.cost, 6),
            )
            row = await self._db.insert_analysis(pending.to_row())
            await self._db.update_recording_status(recording_id, RecordingStatus.ANALYZED)
        except InvalidStatusTransitionError:
            raise
        except Exception as e:
            message = getattr(e, "message", None) or str(e)
            logger.exception(
                "Analysis failed",
                extra={"recording_id": recording_id, "transcription_id": transcription_id},
            )
            await mark_recording_failed(self._db, recording_id, f"Analysis failed: {message}")
            raise StageError(
                STAGE_NAME, f"Analysis failed: {message}", recording_id, type(e).__name__
            ) from e

        result = pending.model_copy(update={"id": row["id"]})
        auto_sync = extraction.qualifies_for_auto_sync(self._config.auto_sync_threshold)
        logger.info(
            "Analysis completed",
            extra={
                "recording_id": recording_id,
                "analysis_id": result.id,
                "contacts": len(extraction.contacts),
                "action_items": len(extraction.action_items),
                "confidence_score": extraction.confidence_score,
                "auto_sync": auto_sync,
            },
        )

        if auto_sync:
            await self.dispatcher.publish(
                PipelineEventType.ANALYSIS_COMPLETED,
                recording_id,
                {"analysisId": result.id, "recordingId": recording_id},
            )
        return result


_analysis_stage: AnalysisStage | None = None


def get_analysis_stage() -> AnalysisStage:
    """Get or create the analysis stage singleton."""
    global _analysis_stage
    if _analysis_stage is None:
        _analysis_stage = AnalysisStage(settings.pipeline_config())
    return _analysis_stage

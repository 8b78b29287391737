"""Transcription stage: audio blob in storage → persisted transcript."""

import logging
import mimetypes
import posixpath
import time
from typing import Any

from fieldintel.core.config import PipelineConfig, settings
from fieldintel.core.exceptions import (
    InvalidStatusTransitionError,
    SpeechProviderError,
    StageError,
    ValidationError,
)
from fieldintel.db.supabase import SupabaseClient
from fieldintel.integrations.speech import WhisperTranscriber
from fieldintel.models.events import PipelineEventType
from fieldintel.models.recording import RecordingStatus
from fieldintel.models.transcript import API_PROVIDER_WHISPER, Transcript
from fieldintel.services.dispatch import PipelineDispatcher, get_pipeline_dispatcher
from fieldintel.services.scoring import ConfidenceScorer, count_words, length_confidence

logger = logging.getLogger(__name__)

# Whisper upload ceiling
MAX_AUDIO_BYTES = 25 * 1024 * 1024

STAGE_NAME = "transcribe"


async def mark_recording_failed(db: Any, recording_id: str, message: str) -> None:
    """Best-effort move to ``failed``; the original stage error is what propagates."""
    try:
        await db.update_recording_status(recording_id, RecordingStatus.FAILED, message[:1000])
    except Exception:
        logger.exception(
            "Could not mark recording failed",
            extra={"recording_id": recording_id},
        )


class TranscriptionStage:
    """Downloads a recording, transcribes it and hands off to analysis.

    Args:
        config: Provider credentials; checked before any mutation.
        db: Persistence layer (``SupabaseClient`` by default).
        transcriber: Speech provider client; built from ``config`` if omitted.
        dispatcher: Handoff dispatcher for ``transcription.completed``.
        scorer: Confidence heuristic ``(text, word_count) -> float``.
    """

    def __init__(
        self,
        config: PipelineConfig,
        db: Any = SupabaseClient,
        transcriber: WhisperTranscriber | None = None,
        dispatcher: PipelineDispatcher | None = None,
        scorer: ConfidenceScorer = length_confidence,
    ) -> None:
        self._config = config
        self._db = db
        self._transcriber = transcriber
        self._dispatcher = dispatcher
        self._scorer = scorer

    @property
    def transcriber(self) -> WhisperTranscriber:
        if self._transcriber is None:
            self._transcriber = WhisperTranscriber(
                self._config.speech_provider_key,
                model=self._config.transcription_model,
            )
        return self._transcriber

    @property
    def dispatcher(self) -> PipelineDispatcher:
        return self._dispatcher or get_pipeline_dispatcher()

    async def run(
        self,
        recording_id: str,
        audio_file_path: str,
        language: str = "en",
    ) -> Transcript:
        """Transcribe one recording.

        Re-running for a recording that already has a transcript returns the
        existing transcript without calling the provider or publishing again.

        Args:
            recording_id: Recording UUID.
            audio_file_path: Object path inside the audio bucket.
            language: Language hint for the provider.

        Returns:
            The persisted (or pre-existing) transcript.

        Raises:
            ValidationError: Missing identifiers, or an audio path that is not
                the recording's own.
            ConfigurationError: Provider or storage credentials missing.
            NotFoundError: Unknown recording.
            StageError: Any failure after processing started; the recording
                is left ``failed`` with the message.
        """
        missing = [
            name
            for name, value in (("recordingId", recording_id), ("audioFilePath", audio_file_path))
            if not value
        ]
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}")
        self._config.require("speech_provider_key", "storage_endpoint", "storage_service_key")

        recording = await self._db.get_recording(recording_id)
        if recording.get("audio_file_path") != audio_file_path:
            raise ValidationError(
                "audioFilePath does not match the recording's stored audio",
                field="audioFilePath",
            )

        existing = await self._db.find_transcription_for_recording(recording_id)
        if existing:
            logger.info(
                "Transcript already exists, skipping provider call",
                extra={"recording_id": recording_id, "transcription_id": existing.get("id")},
            )
            return Transcript.from_dict(existing)

        start = time.perf_counter()

        try:
            await self._db.update_recording_status(recording_id, RecordingStatus.TRANSCRIBING)

            audio = await self._db.download_audio(audio_file_path, self._config.storage_bucket)
            if len(audio) > MAX_AUDIO_BYTES:
                raise ValidationError(
                    f"Audio file is {len(audio)} bytes; the limit is {MAX_AUDIO_BYTES} bytes",
                    field="audioFilePath",
                )

            filename = posixpath.basename(audio_file_path) or "recording.webm"
            mime_type = (
                recording.get("mime_type")
                or mimetypes.guess_type(filename)[0]
                or "audio/webm"
            )
            logger.info(
                "Submitting audio for transcription",
                extra={"recording_id": recording_id, "bytes": len(audio), "mime_type": mime_type},
            )
            result = await self.transcriber.transcribe(audio, filename, language, mime_type)
            if not result.text:
                raise SpeechProviderError("Transcription returned no text")

            word_count = count_words(result.text)
            processing_time_ms = int((time.perf_counter() - start) * 1000)

            row = await self._db.insert_transcription(
                {
                    "recording_id": recording_id,
                    "user_id": recording["user_id"],
                    "transcript_text": result.text,
                    "language": result.language or language,
                    "confidence_score": round(self._scorer(result.text, word_count), 4),
                    "processing_time_ms": processing_time_ms,
                    "word_count": word_count,
                    "api_provider": API_PROVIDER_WHISPER,
                    "api_cost": round(result.cost, 6),
                }
            )
            await self._db.update_recording_status(recording_id, RecordingStatus.TRANSCRIBED)
        except InvalidStatusTransitionError:
            raise
        except Exception as e:
            message = getattr(e, "message", None) or str(e)
            logger.exception("Transcription failed", extra={"recording_id": recording_id})
            await mark_recording_failed(self._db, recording_id, f"Transcription failed: {message}")
            raise StageError(
                STAGE_NAME, f"Transcription failed: {message}", recording_id, type(e).__name__
            ) from e

        transcript = Transcript.from_dict(row)
        logger.info(
            "Transcription completed",
            extra={
                "recording_id": recording_id,
                "transcription_id": transcript.id,
                "word_count": transcript.word_count,
                "processing_time_ms": transcript.processing_time_ms,
            },
        )

        await self.dispatcher.publish(
            PipelineEventType.TRANSCRIPTION_COMPLETED,
            recording_id,
            {"transcriptionId": transcript.id, "recordingId": recording_id},
        )
        return transcript


_transcription_stage: TranscriptionStage | None = None


def get_transcription_stage() -> TranscriptionStage:
    """Get or create the transcription stage singleton."""
    global _transcription_stage
    if _transcription_stage is None:
        _transcription_stage = TranscriptionStage(settings.pipeline_config())
    return _transcription_stage

"""Speech-to-text client (OpenAI Whisper)."""

import logging
from dataclasses import dataclass

import openai
from openai import AsyncOpenAI

from fieldintel.core.circuit_breaker import get_circuit_breaker
from fieldintel.core.exceptions import SpeechProviderError

logger = logging.getLogger(__name__)

_breaker = get_circuit_breaker("openai")

# Whisper pricing, USD per audio minute
WHISPER_COST_PER_MINUTE = 0.006


@dataclass
class SpeechResult:
    """Text and metadata returned by the speech provider."""

    text: str
    duration_seconds: float
    language: str | None = None

    @property
    def cost(self) -> float:
        return (self.duration_seconds / 60.0) * WHISPER_COST_PER_MINUTE


class WhisperTranscriber:
    """Submits audio to the OpenAI transcription endpoint.

    ``verbose_json`` is requested so the response carries the audio duration
    used for cost accounting. It carries no usable confidence.
    """

    def __init__(
        self,
        api_key: str,
        model: str = "whisper-1",
        client: AsyncOpenAI | None = None,
    ) -> None:
        self._model = model
        self._client = client or AsyncOpenAI(api_key=api_key)

    async def transcribe(
        self,
        audio: bytes,
        filename: str,
        language: str = "en",
        mime_type: str = "audio/webm",
    ) -> SpeechResult:
        """Transcribe one audio blob.

        Args:
            audio: Raw audio bytes.
            filename: Name sent with the upload; the provider sniffs format from it.
            language: ISO-639-1 language hint.
            mime_type: Content type of the blob.

        Returns:
            SpeechResult with text and duration.

        Raises:
            SpeechProviderError: On API or connection failure.
        """
        _breaker.check()
        try:
            response = await self._client.audio.transcriptions.create(
                model=self._model,
                file=(filename, audio, mime_type),
                response_format="verbose_json",
                language=language,
            )
        except openai.APIStatusError as e:
            if e.status_code >= 500:
                _breaker.record_failure()
            logger.error(
                "Whisper API error",
                extra={"status": e.status_code, "model": self._model},
            )
            raise SpeechProviderError(f"Whisper API error: {e.message}", e.status_code) from e
        except openai.APIConnectionError as e:
            _breaker.record_failure()
            logger.error("Whisper API unreachable: %s", e)
            raise SpeechProviderError(f"Whisper API unreachable: {e}") from e
        _breaker.record_success()

        return SpeechResult(
            text=(getattr(response, "text", "") or "").strip(),
            duration_seconds=float(getattr(response, "duration", 0.0) or 0.0),
            language=getattr(response, "language", None),
        )

"""Wires pipeline events to the stage that consumes them."""

import logging
from typing import Any

from fieldintel.models.events import PipelineEventType
from fieldintel.services.analysis import AnalysisStage, get_analysis_stage
from fieldintel.services.crm_sync import CRMSyncStage, get_crm_sync_stage
from fieldintel.services.dispatch import PipelineDispatcher
from fieldintel.services.transcription import TranscriptionStage, get_transcription_stage

logger = logging.getLogger(__name__)


def register_stage_handlers(
    dispatcher: PipelineDispatcher,
    transcription: TranscriptionStage | None = None,
    analysis: AnalysisStage | None = None,
    crm_sync: CRMSyncStage | None = None,
) -> None:
    """Register the three stage consumers on ``dispatcher``.

    ``recording.uploaded`` → transcription, ``transcription.completed`` →
    analysis, ``analysis.completed`` → CRM sync.
    """

    async def on_uploaded(payload: dict[str, Any]) -> None:
        stage = transcription or get_transcription_stage()
        await stage.run(
            payload["recordingId"], payload["audioFilePath"], payload.get("language") or "en"
        )

    async def on_transcribed(payload: dict[str, Any]) -> None:
        stage = analysis or get_analysis_stage()
        await stage.run(payload["transcriptionId"], payload["recordingId"])

    async def on_analyzed(payload: dict[str, Any]) -> None:
        stage = crm_sync or get_crm_sync_stage()
        await stage.run(payload["analysisId"], payload["recordingId"])

    dispatcher.register(PipelineEventType.RECORDING_UPLOADED, on_uploaded)
    dispatcher.register(PipelineEventType.TRANSCRIPTION_COMPLETED, on_transcribed)
    dispatcher.register(PipelineEventType.ANALYSIS_COMPLETED, on_analyzed)
    logger.info("Pipeline stage handlers registered")

"""Pipeline stage entry points.

Each route runs one stage synchronously and returns its result. The next
stage is triggered through the dispatcher, never awaited here.
"""

import logging
from typing import Any

from fastapi import APIRouter
from pydantic import BaseModel, ConfigDict, Field

from fieldintel.api.deps import PipelineAuth, PipelineCaller
from fieldintel.core.exceptions import NotFoundError
from fieldintel.db.supabase import SupabaseClient
from fieldintel.services.analysis import get_analysis_stage
from fieldintel.services.crm_sync import get_crm_sync_stage
from fieldintel.services.transcription import get_transcription_stage

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/pipeline", tags=["pipeline"])


class _CamelRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class TranscribeRequest(_CamelRequest):
    """Request model for the transcription stage."""

    recording_id: str = Field(..., alias="recordingId", min_length=1)
    audio_file_path: str = Field(..., alias="audioFilePath", min_length=1)
    language: str = Field("en", min_length=2, max_length=8)


class AnalyzeRequest(_CamelRequest):
    """Request model for the analysis stage."""

    transcription_id: str = Field(..., alias="transcriptionId", min_length=1)
    recording_id: str = Field(..., alias="recordingId", min_length=1)


class CRMSyncRequest(_CamelRequest):
    """Request model for the CRM sync stage."""

    analysis_id: str = Field(..., alias="analysisId", min_length=1)
    recording_id: str = Field(..., alias="recordingId", min_length=1)


async def _ensure_recording_access(caller: PipelineCaller, recording_id: str) -> None:
    """Users may only drive their own recordings; the service key may drive any."""
    if caller.is_service:
        return
    recording = await SupabaseClient.get_recording(recording_id)
    if str(recording.get("user_id")) != caller.user_id:
        logger.warning(
            "Pipeline call for another user's recording",
            extra={"recording_id": recording_id, "user_id": caller.user_id},
        )
        raise NotFoundError("Recording", recording_id)


@router.post("/transcribe")
async def transcribe(data: TranscribeRequest, caller: PipelineAuth) -> dict[str, Any]:
    """Transcribe a recording's audio.

    Returns:
        ``{transcriptionId, text, confidence, wordCount, processingTime}``.
    """
    await _ensure_recording_access(caller, data.recording_id)
    transcript = await get_transcription_stage().run(
        data.recording_id, data.audio_file_path, data.language
    )
    return transcript.to_response()


@router.post("/analyze")
async def analyze(data: AnalyzeRequest, caller: PipelineAuth) -> dict[str, Any]:
    """Extract structured CRM data from a transcript."""
    await _ensure_recording_access(caller, data.recording_id)
    result = await get_analysis_stage().run(data.transcription_id, data.recording_id)
    return result.to_response()


@router.post("/crm-sync")
async def crm_sync(data: CRMSyncRequest, caller: PipelineAuth) -> dict[str, Any]:
    """Push an analysis into the owner's connected CRM.

    Returns:
        ``{success, status, synced: {contacts, tasks}, errors?}``.
    """
    await _ensure_recording_access(caller, data.recording_id)
    log = await get_crm_sync_stage().run(data.analysis_id, data.recording_id)
    return log.to_response()

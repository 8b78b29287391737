"""CRM sync stage: push extracted contacts and action items into the user's CRM.

Contacts are upserted by email, so re-running a sync converges instead of
duplicating contacts. Tasks are created each time (at-most-once per run,
no remote dedup key). Per-item failures are collected, never raised, and the
run is summarized in exactly one ``crm_sync_logs`` row.
"""

import logging
import time
from typing import Any

import httpx

from fieldintel.core.config import PipelineConfig, settings
from fieldintel.core.exceptions import (
    CRMConnectionError,
    CRMProviderNotSupportedError,
    FieldIntelException,
    InvalidStatusTransitionError,
    ValidationError,
)
from fieldintel.db.supabase import SupabaseClient
from fieldintel.integrations.crm import get_provider_class
from fieldintel.models.analysis import AnalysisResult
from fieldintel.models.crm import CRMCredential, SyncLog, SyncOutcome, SyncStatus
from fieldintel.models.recording import RecordingStatus

logger = logging.getLogger(__name__)

# Per-item failures that are recorded on the log instead of aborting the batch
_ITEM_ERRORS = (FieldIntelException, KeyError, ValueError)


class CRMSyncStage:
    """Synchronizes one analysis result to the owner's connected CRM.

    Args:
        config: Pipeline configuration (CRM API version etc.).
        db: Persistence layer (``SupabaseClient`` by default).
        transport: Optional httpx transport handed to the CRM provider.
    """

    def __init__(
        self,
        config: PipelineConfig,
        db: Any = SupabaseClient,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._config = config
        self._db = db
        self._transport = transport

    async def run(self, analysis_id: str, recording_id: str) -> SyncLog:
        """Sync one analysis.

        Returns:
            The written SyncLog (``skipped``, ``completed``, ``partial`` or
            ``failed``).

        Raises:
            ValidationError: Missing identifiers, or the analysis belongs to a
                different recording.
            NotFoundError: Unknown analysis or profile.
            CRMProviderNotSupportedError: Connected provider has no
                implementation (a ``failed`` log is written first).
            CRMConnectionError: Credential unusable before any item was
                attempted (a ``failed`` log is written first).
        """
        missing = [
            name
            for name, value in (("analysisId", analysis_id), ("recordingId", recording_id))
            if not value
        ]
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}")

        start = time.perf_counter()
        analysis = AnalysisResult.from_row(await self._db.get_analysis(analysis_id))
        if analysis.recording_id != recording_id:
            raise ValidationError(
                "Analysis does not belong to the given recording", field="recordingId"
            )
        profile = await self._db.get_user_profile(analysis.user_id)
        credential = CRMCredential.from_profile(profile)

        def new_log(status: SyncStatus, **kwargs: Any) -> SyncLog:
            return SyncLog(
                user_id=analysis.user_id,
                recording_id=recording_id,
                analysis_id=analysis_id,
                provider=credential.provider or "none",
                status=status,
                sync_duration_ms=int((time.perf_counter() - start) * 1000),
                **kwargs,
            )

        if not credential.is_usable:
            logger.info(
                "CRM not connected, skipping sync",
                extra={"user_id": analysis.user_id, "recording_id": recording_id},
            )
            return await self._write_log(new_log(SyncStatus.SKIPPED, error_message="CRM not connected"))

        try:
            provider_cls = get_provider_class(credential.provider)
        except CRMProviderNotSupportedError as e:
            await self._write_log(new_log(SyncStatus.FAILED, error_message=e.message))
            raise

        outcome = SyncOutcome()
        extraction = analysis.extraction
        try:
            async with provider_cls(credential, self._config, self._transport) as provider:
                for contact in extraction.contacts:
                    outcome.attempted += 1
                    try:
                        synced = await provider.upsert_contact(contact)
                        outcome.contact_ids.append(synced.id)
                    except _ITEM_ERRORS as e:
                        outcome.errors.append(
                            f"Failed to sync contact {contact.name}: {_describe(e)}"
                        )

                # Tasks link to the first contact that made it into the CRM
                who_id = outcome.contact_ids[0] if outcome.contact_ids else None
                for item in extraction.action_items:
                    outcome.attempted += 1
                    try:
                        outcome.task_ids.append(await provider.create_task(item, who_id))
                    except _ITEM_ERRORS as e:
                        outcome.errors.append(f"Failed to sync task {item.task}: {_describe(e)}")
        except CRMConnectionError as e:
            logger.warning(
                "CRM credential unusable",
                extra={"user_id": analysis.user_id, "provider": credential.provider},
            )
            await self._write_log(new_log(SyncStatus.FAILED, error_message=e.message))
            raise

        status = outcome.classify()
        log = await self._write_log(
            new_log(status, synced_data=outcome.synced_data(), error_message=outcome.error_message())
        )

        if status is SyncStatus.COMPLETED:
            try:
                await self._db.update_recording_status(recording_id, RecordingStatus.SYNCED)
            except InvalidStatusTransitionError:
                logger.warning(
                    "Recording not advanced to synced",
                    extra={"recording_id": recording_id},
                )

        logger.info(
            "CRM sync finished",
            extra={
                "recording_id": recording_id,
                "status": status.value,
                "contacts": len(outcome.contact_ids),
                "tasks": len(outcome.task_ids),
                "errors": len(outcome.errors),
            },
        )
        return log

    async def _write_log(self, log: SyncLog) -> SyncLog:
        row = await self._db.insert_sync_log(log.to_row())
        log.id = row.get("id")
        return log


def _describe(e: Exception) -> str:
    return getattr(e, "message", None) or str(e) or type(e).__name__


_crm_sync_stage: CRMSyncStage | None = None


def get_crm_sync_stage() -> CRMSyncStage:
    """Get or create the CRM sync stage singleton."""
    global _crm_sync_stage
    if _crm_sync_stage is None:
        _crm_sync_stage = CRMSyncStage(settings.pipeline_config())
    return _crm_sync_stage

"""Supabase client module for pipeline persistence and storage."""

import logging
from collections.abc import Callable
from typing import Any, cast

from fieldintel.core.circuit_breaker import CircuitBreakerOpen, get_circuit_breaker
from fieldintel.core.config import settings
from fieldintel.core.exceptions import (
    DatabaseError,
    InvalidStatusTransitionError,
    NotFoundError,
    StorageError,
)
from fieldintel.models.recording import RecordingStatus, allowed_sources
from supabase import Client, create_client

logger = logging.getLogger(__name__)

_breaker = get_circuit_breaker("supabase")


def _is_no_rows(e: Exception) -> bool:
    # PGRST116: .single() matched zero rows
    return "PGRST116" in str(e)


class SupabaseClient:
    """Singleton Supabase client for backend operations."""

    _client: Client | None = None

    @classmethod
    def get_client(cls) -> Client:
        """Get or create the Supabase client singleton.

        Returns:
            Initialized Supabase client.

        Raises:
            DatabaseError: If client initialization fails.
        """
        if cls._client is None:
            try:
                cls._client = create_client(
                    settings.SUPABASE_URL,
                    settings.SUPABASE_SERVICE_ROLE_KEY.get_secret_value(),
                )
                logger.info("Supabase client initialized successfully")
            except Exception as e:
                logger.exception("Failed to initialize Supabase client")
                raise DatabaseError(f"Failed to initialize database connection: {e}") from e
        return cls._client

    @classmethod
    def reset_client(cls) -> None:
        """Reset the client singleton (useful for testing)."""
        cls._client = None

    @classmethod
    def _run(cls, action: str, query: Callable[[Client], Any], **context: Any) -> Any:
        """Execute one PostgREST call under the Supabase circuit breaker.

        Not-found is not a service failure and does not trip the breaker.

        Raises:
            NotFoundError: Propagated from ``query`` or mapped from PGRST116.
            DatabaseError: Any other failure.
        """
        _breaker.check()
        try:
            response = query(cls.get_client())
        except (NotFoundError, CircuitBreakerOpen):
            _breaker.record_success()
            raise
        except Exception as e:
            if _is_no_rows(e):
                _breaker.record_success()
                raise NotFoundError(context.get("resource", "Row"), context.get("resource_id")) from e
            _breaker.record_failure()
            logger.exception("Supabase %s failed", action, extra=context)
            raise DatabaseError(f"Failed to {action}: {e}") from e
        _breaker.record_success()
        return response

    # ------------------------------------------------------------------
    # recordings
    # ------------------------------------------------------------------

    @classmethod
    async def get_recording(cls, recording_id: str) -> dict[str, Any]:
        """Fetch a recording by ID.

        Raises:
            NotFoundError: If the recording does not exist.
        """
        response = cls._run(
            "fetch recording",
            lambda c: c.table("recordings").select("*").eq("id", recording_id).single().execute(),
            resource="Recording",
            resource_id=recording_id,
        )
        if response.data is None:
            raise NotFoundError("Recording", recording_id)
        return cast(dict[str, Any], response.data)

    @classmethod
    async def update_recording_status(
        cls,
        recording_id: str,
        status: RecordingStatus,
        error_message: str | None = None,
    ) -> dict[str, Any]:
        """Move a recording to ``status`` if that keeps the walk monotonic.

        The update is conditional on the current status, so a stale writer
        cannot move a recording backwards.

        Args:
            recording_id: Recording UUID.
            status: Target status.
            error_message: Stored with ``failed``; cleared otherwise.

        Returns:
            The updated recording row.

        Raises:
            InvalidStatusTransitionError: If the current status forbids the move.
            NotFoundError: If the recording does not exist.
        """
        values: dict[str, Any] = {"status": status.value, "error_message": error_message}
        response = cls._run(
            "update recording status",
            lambda c: c.table("recordings")
            .update(values)
            .eq("id", recording_id)
            .in_("status", allowed_sources(status))
            .execute(),
            resource="Recording",
            resource_id=recording_id,
        )
        if response.data:
            logger.info(
                "Recording status updated",
                extra={"recording_id": recording_id, "status": status.value},
            )
            return cast(dict[str, Any], response.data[0])

        current = await cls.get_recording(recording_id)
        logger.warning(
            "Rejected backwards status transition",
            extra={
                "recording_id": recording_id,
                "current": current.get("status"),
                "target": status.value,
            },
        )
        raise InvalidStatusTransitionError(recording_id, str(current.get("status")), status.value)

    # ------------------------------------------------------------------
    # transcriptions
    # ------------------------------------------------------------------

    @classmethod
    async def get_transcription(cls, transcription_id: str) -> dict[str, Any]:
        response = cls._run(
            "fetch transcription",
            lambda c: c.table("transcriptions")
            .select("*")
            .eq("id", transcription_id)
            .single()
            .execute(),
            resource="Transcription",
            resource_id=transcription_id,
        )
        if response.data is None:
            raise NotFoundError("Transcription", transcription_id)
        return cast(dict[str, Any], response.data)

    @classmethod
    async def find_transcription_for_recording(cls, recording_id: str) -> dict[str, Any] | None:
        """Return the existing transcript of a recording, if any."""
        response = cls._run(
            "look up transcription",
            lambda c: c.table("transcriptions")
            .select("*")
            .eq("recording_id", recording_id)
            .limit(1)
            .execute(),
            recording_id=recording_id,
        )
        return cast(dict[str, Any], response.data[0]) if response.data else None

    @classmethod
    async def insert_transcription(cls, row: dict[str, Any]) -> dict[str, Any]:
        response = cls._run(
            "insert transcription",
            lambda c: c.table("transcriptions").insert(row).execute(),
            recording_id=row.get("recording_id"),
        )
        if not response.data:
            raise DatabaseError("Failed to insert transcription: no row returned")
        return cast(dict[str, Any], response.data[0])

    # ------------------------------------------------------------------
    # analysis_results
    # ------------------------------------------------------------------

    @classmethod
    async def get_analysis(cls, analysis_id: str) -> dict[str, Any]:
        response = cls._run(
            "fetch analysis",
            lambda c: c.table("analysis_results")
            .select("*")
            .eq("id", analysis_id)
            .single()
            .execute(),
            resource="Analysis result",
            resource_id=analysis_id,
        )
        if response.data is None:
            raise NotFoundError("Analysis result", analysis_id)
        return cast(dict[str, Any], response.data)

    @classmethod
    async def find_analysis_for_transcription(cls, transcription_id: str) -> dict[str, Any] | None:
        """Return the existing analysis of a transcript, if any."""
        response = cls._run(
            "look up analysis",
            lambda c: c.table("analysis_results")
            .select("*")
            .eq("transcription_id", transcription_id)
            .limit(1)
            .execute(),
            transcription_id=transcription_id,
        )
        return cast(dict[str, Any], response.data[0]) if response.data else None

    @classmethod
    async def insert_analysis(cls, row: dict[str, Any]) -> dict[str, Any]:
        response = cls._run(
            "insert analysis",
            lambda c: c.table("analysis_results").insert(row).execute(),
            recording_id=row.get("recording_id"),
        )
        if not response.data:
            raise DatabaseError("Failed to insert analysis: no row returned")
        return cast(dict[str, Any], response.data[0])

    # ------------------------------------------------------------------
    # user_profiles
    # ------------------------------------------------------------------

    @classmethod
    async def get_user_profile(cls, user_id: str) -> dict[str, Any]:
        """Fetch a user profile by ID.

        Raises:
            NotFoundError: If the profile does not exist.
        """
        response = cls._run(
            "fetch user profile",
            lambda c: c.table("user_profiles").select("*").eq("id", user_id).single().execute(),
            resource="User profile",
            resource_id=user_id,
        )
        if response.data is None:
            raise NotFoundError("User profile", user_id)
        return cast(dict[str, Any], response.data)

    @classmethod
    async def update_user_profile(cls, user_id: str, values: dict[str, Any]) -> dict[str, Any]:
        """Update profile columns. Callers never log ``values`` (it may hold tokens)."""
        response = cls._run(
            "update user profile",
            lambda c: c.table("user_profiles").update(values).eq("id", user_id).execute(),
            resource="User profile",
            resource_id=user_id,
        )
        if not response.data:
            raise NotFoundError("User profile", user_id)
        return cast(dict[str, Any], response.data[0])

    # ------------------------------------------------------------------
    # crm_sync_logs
    # ------------------------------------------------------------------

    @classmethod
    async def insert_sync_log(cls, row: dict[str, Any]) -> dict[str, Any]:
        response = cls._run(
            "insert sync log",
            lambda c: c.table("crm_sync_logs").insert(row).execute(),
            recording_id=row.get("recording_id"),
        )
        if not response.data:
            raise DatabaseError("Failed to insert sync log: no row returned")
        return cast(dict[str, Any], response.data[0])

    # ------------------------------------------------------------------
    # pipeline_events
    # ------------------------------------------------------------------

    @classmethod
    async def insert_pipeline_event(cls, row: dict[str, Any]) -> dict[str, Any]:
        response = cls._run(
            "insert pipeline event",
            lambda c: c.table("pipeline_events").insert(row).execute(),
            event_type=row.get("event_type"),
            recording_id=row.get("recording_id"),
        )
        if not response.data:
            raise DatabaseError("Failed to insert pipeline event: no row returned")
        return cast(dict[str, Any], response.data[0])

    @classmethod
    async def update_pipeline_event(cls, event_id: str, values: dict[str, Any]) -> None:
        cls._run(
            "update pipeline event",
            lambda c: c.table("pipeline_events").update(values).eq("id", event_id).execute(),
            event_id=event_id,
        )

    @classmethod
    async def list_undelivered_events(
        cls, created_before: str, max_attempts: int, limit: int = 50
    ) -> list[dict[str, Any]]:
        """Events still pending or failed, older than ``created_before``."""
        response = cls._run(
            "list undelivered events",
            lambda c: c.table("pipeline_events")
            .select("*")
            .in_("status", ["pending", "failed"])
            .lt("created_at", created_before)
            .lt("attempts", max_attempts)
            .order("created_at")
            .limit(limit)
            .execute(),
        )
        return cast(list[dict[str, Any]], response.data or [])

    # ------------------------------------------------------------------
    # storage
    # ------------------------------------------------------------------

    @classmethod
    async def download_audio(cls, path: str, bucket: str | None = None) -> bytes:
        """Download an audio blob from Supabase Storage.

        Raises:
            StorageError: If the download fails or returns nothing.
        """
        bucket_name = bucket or settings.SUPABASE_STORAGE_BUCKET
        _breaker.check()
        try:
            data = cls.get_client().storage.from_(bucket_name).download(path)
        except Exception as e:
            _breaker.record_failure()
            logger.exception("Audio download failed", extra={"path": path, "bucket": bucket_name})
            raise StorageError(f"Failed to download audio: {e}", path=path) from e
        _breaker.record_success()
        if not data:
            raise StorageError("Failed to download audio: empty file", path=path)
        return cast(bytes, data)

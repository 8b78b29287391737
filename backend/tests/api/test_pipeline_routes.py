"""Tests for pipeline API routes.

Tests cover:
- POST /api/v1/pipeline/transcribe
- POST /api/v1/pipeline/analyze
- POST /api/v1/pipeline/crm-sync
"""

from collections.abc import Iterator
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi.testclient import TestClient

from fieldintel.api.deps import PipelineCaller, get_pipeline_caller
from fieldintel.core.exceptions import NotFoundError, StageError
from fieldintel.main import app
from fieldintel.models.analysis import AnalysisResult
from fieldintel.models.crm import SyncLog, SyncStatus
from fieldintel.models.transcript import Transcript
from fieldintel.services.transcription import TranscriptionStage

from conftest import make_analysis, make_recording, make_transcription

SERVICE_KEY = "test-service-role-key-0123456789"


@pytest.fixture
def service_client() -> Iterator[TestClient]:
    async def override() -> PipelineCaller:
        return PipelineCaller(is_service=True)

    app.dependency_overrides[get_pipeline_caller] = override
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def user_client() -> Iterator[TestClient]:
    async def override() -> PipelineCaller:
        return PipelineCaller(is_service=False, user_id="user-1")

    app.dependency_overrides[get_pipeline_caller] = override
    yield TestClient(app)
    app.dependency_overrides.clear()


def _stage(result=None, error=None) -> MagicMock:
    stage = MagicMock()
    stage.run = AsyncMock(return_value=result, side_effect=error)
    return stage


class TestTranscribeRoute:
    def test_returns_transcript(self, service_client) -> None:
        stage = _stage(Transcript.from_dict(make_transcription()))
        with patch("fieldintel.api.routes.pipeline.get_transcription_stage", return_value=stage):
            response = service_client.post(
                "/api/v1/pipeline/transcribe",
                json={"recordingId": "rec-1", "audioFilePath": "user-1/rec-1.webm"},
            )

        assert response.status_code == 200
        assert response.json()["transcriptionId"] == "tr-1"
        assert response.json()["wordCount"] == 9
        stage.run.assert_awaited_once_with("rec-1", "user-1/rec-1.webm", "en")

    def test_missing_fields_are_400(self, service_client) -> None:
        stage = _stage()
        with patch("fieldintel.api.routes.pipeline.get_transcription_stage", return_value=stage):
            response = service_client.post("/api/v1/pipeline/transcribe", json={})

        assert response.status_code == 400
        body = response.json()
        assert body["error"] == "Missing required fields: recordingId, audioFilePath"
        assert body["code"] == "VALIDATION_ERROR"
        stage.run.assert_not_awaited()

    def test_stage_failure_is_500_with_message(self, service_client) -> None:
        stage = _stage(error=StageError("transcribe", "Transcription failed: Whisper API error", "rec-1"))
        with patch("fieldintel.api.routes.pipeline.get_transcription_stage", return_value=stage):
            response = service_client.post(
                "/api/v1/pipeline/transcribe",
                json={"recordingId": "rec-1", "audioFilePath": "a.webm"},
            )

        assert response.status_code == 500
        body = response.json()
        assert body["error"] == "Transcription failed: Whisper API error"
        assert body["code"] == "STAGE_FAILED"
        assert body["request_id"] == response.headers["X-Request-ID"]

    def test_user_cannot_drive_someone_elses_recording(self, user_client) -> None:
        stage = _stage()
        with (
            patch("fieldintel.api.routes.pipeline.get_transcription_stage", return_value=stage),
            patch(
                "fieldintel.api.routes.pipeline.SupabaseClient.get_recording",
                new=AsyncMock(return_value=make_recording(user_id="user-2")),
            ),
        ):
            response = user_client.post(
                "/api/v1/pipeline/transcribe",
                json={"recordingId": "rec-1", "audioFilePath": "a.webm"},
            )

        assert response.status_code == 404
        stage.run.assert_not_awaited()

    def test_user_cannot_transcribe_foreign_audio_path(
        self, user_client, pipeline_config, mock_db, mock_dispatcher
    ) -> None:
        mock_db.get_recording.return_value = make_recording()
        transcriber = MagicMock()
        transcriber.transcribe = AsyncMock()
        stage = TranscriptionStage(
            pipeline_config, db=mock_db, transcriber=transcriber, dispatcher=mock_dispatcher
        )
        with (
            patch("fieldintel.api.routes.pipeline.get_transcription_stage", return_value=stage),
            patch(
                "fieldintel.api.routes.pipeline.SupabaseClient.get_recording",
                new=AsyncMock(return_value=make_recording()),
            ),
        ):
            response = user_client.post(
                "/api/v1/pipeline/transcribe",
                json={"recordingId": "rec-1", "audioFilePath": "user-2/their-private.webm"},
            )

        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION_ERROR"
        mock_db.download_audio.assert_not_awaited()
        transcriber.transcribe.assert_not_awaited()

    def test_user_may_drive_own_recording(self, user_client) -> None:
        stage = _stage(Transcript.from_dict(make_transcription()))
        with (
            patch("fieldintel.api.routes.pipeline.get_transcription_stage", return_value=stage),
            patch(
                "fieldintel.api.routes.pipeline.SupabaseClient.get_recording",
                new=AsyncMock(return_value=make_recording()),
            ),
        ):
            response = user_client.post(
                "/api/v1/pipeline/transcribe",
                json={"recordingId": "rec-1", "audioFilePath": "a.webm", "language": "de"},
            )

        assert response.status_code == 200
        stage.run.assert_awaited_once_with("rec-1", "a.webm", "de")


class TestAnalyzeRoute:
    def test_returns_analysis(self, service_client) -> None:
        stage = _stage(AnalysisResult.from_row(make_analysis()))
        with patch("fieldintel.api.routes.pipeline.get_analysis_stage", return_value=stage):
            response = service_client.post(
                "/api/v1/pipeline/analyze", json={"transcriptionId": "tr-1", "recordingId": "rec-1"}
            )

        assert response.status_code == 200
        body = response.json()
        assert body["analysisId"] == "an-1"
        assert body["contacts"][0]["name"] == "Sarah Chen"

    def test_unknown_transcription_is_404(self, service_client) -> None:
        stage = _stage(error=NotFoundError("Transcription", "tr-x"))
        with patch("fieldintel.api.routes.pipeline.get_analysis_stage", return_value=stage):
            response = service_client.post(
                "/api/v1/pipeline/analyze", json={"transcriptionId": "tr-x", "recordingId": "rec-1"}
            )

        assert response.status_code == 404
        assert response.json()["code"] == "NOT_FOUND"


class TestCRMSyncRoute:
    def test_returns_sync_summary(self, service_client) -> None:
        log = SyncLog(
            user_id="user-1",
            recording_id="rec-1",
            analysis_id="an-1",
            provider="salesforce",
            status=SyncStatus.PARTIAL,
            synced_data={"contacts": 1, "tasks": 0},
            error_message="Failed to sync task Send proposal: bad date",
            id="log-1",
        )
        with patch("fieldintel.api.routes.pipeline.get_crm_sync_stage", return_value=_stage(log)):
            response = service_client.post(
                "/api/v1/pipeline/crm-sync", json={"analysisId": "an-1", "recordingId": "rec-1"}
            )

        assert response.status_code == 200
        assert response.json() == {
            "success": True,
            "status": "partial",
            "synced": {"contacts": 1, "tasks": 0},
            "errors": ["Failed to sync task Send proposal: bad date"],
            "syncLogId": "log-1",
        }


class TestPipelineAuth:
    def test_no_credentials_is_401(self) -> None:
        response = TestClient(app).post(
            "/api/v1/pipeline/analyze", json={"transcriptionId": "tr-1", "recordingId": "rec-1"}
        )
        assert response.status_code == 401
        assert response.json()["error"] == "Authentication required"

    def test_service_role_key_accepted(self) -> None:
        stage = _stage(AnalysisResult.from_row(make_analysis()))
        with patch("fieldintel.api.routes.pipeline.get_analysis_stage", return_value=stage):
            response = TestClient(app).post(
                "/api/v1/pipeline/analyze",
                json={"transcriptionId": "tr-1", "recordingId": "rec-1"},
                headers={"Authorization": f"Bearer {SERVICE_KEY}"},
            )
        assert response.status_code == 200

    def test_invalid_user_token_rejected(self) -> None:
        supabase = MagicMock()
        supabase.auth.get_user.return_value = MagicMock(user=None)
        with patch("fieldintel.api.deps.SupabaseClient.get_client", return_value=supabase):
            response = TestClient(app).post(
                "/api/v1/pipeline/analyze",
                json={"transcriptionId": "tr-1", "recordingId": "rec-1"},
                headers={"Authorization": "Bearer not-a-real-jwt"},
            )
        assert response.status_code == 401

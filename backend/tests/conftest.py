"""Shared fixtures for the Field Intel test suite."""

import json
import os
from collections.abc import Iterator
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

# Settings are read at import time, so the environment must be in place first
os.environ.setdefault("SUPABASE_URL", "https://test.supabase.co")
os.environ.setdefault("SUPABASE_SERVICE_ROLE_KEY", "test-service-role-key-0123456789")
os.environ.setdefault("OPENAI_API_KEY", "sk-test-openai")
os.environ.setdefault("ANTHROPIC_API_KEY", "sk-ant-test")
os.environ.setdefault("SALESFORCE_CLIENT_ID", "test-client-id")
os.environ.setdefault("SALESFORCE_CLIENT_SECRET", "test-client-secret-value")
os.environ.setdefault("EVENT_RELAY_ENABLED", "false")
os.environ.setdefault("APP_SECRET_KEY", "test-session-secret")

from fieldintel.core.circuit_breaker import reset_circuit_breakers  # noqa: E402
from fieldintel.core.config import PipelineConfig  # noqa: E402
from fieldintel.integrations.crm.salesforce import escape_soql  # noqa: E402
from fieldintel.services.dispatch import PipelineDispatcher  # noqa: E402

DB_METHODS = (
    "get_recording",
    "update_recording_status",
    "get_transcription",
    "find_transcription_for_recording",
    "insert_transcription",
    "get_analysis",
    "find_analysis_for_transcription",
    "insert_analysis",
    "get_user_profile",
    "update_user_profile",
    "insert_sync_log",
    "insert_pipeline_event",
    "update_pipeline_event",
    "list_undelivered_events",
    "download_audio",
)


@pytest.fixture(autouse=True)
def reset_shared_state() -> Iterator[None]:
    """Close every breaker and drop the dispatcher singleton between tests."""
    reset_circuit_breakers()
    PipelineDispatcher.reset()
    yield
    reset_circuit_breakers()
    PipelineDispatcher.reset()


@pytest.fixture
def pipeline_config() -> PipelineConfig:
    return PipelineConfig(
        speech_provider_key="sk-test-openai",
        text_gen_provider_key="sk-ant-test",
        crm_client_id="test-client-id",
        crm_client_secret="test-client-secret-value",
        storage_endpoint="https://test.supabase.co",
        storage_service_key="test-service-role-key",
        crm_redirect_uri="https://app.example.com/settings/crm/callback/salesforce",
    )


@pytest.fixture
def mock_db() -> MagicMock:
    """Stand-in for SupabaseClient with every persistence method as an AsyncMock."""
    db = MagicMock()
    for name in DB_METHODS:
        setattr(db, name, AsyncMock())
    db.find_transcription_for_recording.return_value = None
    db.find_analysis_for_transcription.return_value = None
    db.insert_pipeline_event.return_value = {"id": "evt-1"}
    db.insert_sync_log.return_value = {"id": "log-1"}
    db.list_undelivered_events.return_value = []
    return db


@pytest.fixture
def mock_dispatcher() -> MagicMock:
    dispatcher = MagicMock()
    dispatcher.publish = AsyncMock()
    return dispatcher


def make_recording(**overrides: Any) -> dict[str, Any]:
    row = {
        "id": "rec-1",
        "user_id": "user-1",
        "status": "completed",
        "audio_file_path": "user-1/rec-1.webm",
        "mime_type": "audio/webm",
    }
    row.update(overrides)
    return row


def make_transcription(**overrides: Any) -> dict[str, Any]:
    row = {
        "id": "tr-1",
        "recording_id": "rec-1",
        "user_id": "user-1",
        "transcript_text": "Met with Sarah Chen from Acme about the renewal.",
        "language": "en",
        "confidence_score": 0.7,
        "processing_time_ms": 1200,
        "word_count": 9,
        "api_provider": "openai_whisper",
        "api_cost": 0.001,
    }
    row.update(overrides)
    return row


def make_analysis(**overrides: Any) -> dict[str, Any]:
    row = {
        "id": "an-1",
        "transcription_id": "tr-1",
        "recording_id": "rec-1",
        "user_id": "user-1",
        "contacts": [
            {
                "name": "Sarah Chen",
                "title": "VP Sales",
                "company": "Acme",
                "email": "sarah@acme.com",
                "confidence": 0.9,
            }
        ],
        "companies": [{"name": "Acme", "confidence": 0.9}],
        "action_items": [
            {"task": "Send pricing proposal", "due_date": "2026-11-01", "priority": "high", "confidence": 0.85}
        ],
        "dates": [],
        "buying_signals": [],
        "overall_sentiment": "positive",
        "sentiment_score": 0.8,
        "summary": "Renewal discussion with Acme.",
        "key_points": [],
        "next_steps": "Send proposal",
        "confidence_score": 0.9,
        "processing_time_ms": 2100,
        "api_cost": 0.02,
    }
    row.update(overrides)
    return row


def make_profile(**overrides: Any) -> dict[str, Any]:
    row = {
        "id": "user-1",
        "crm_provider": "salesforce",
        "crm_connected": True,
        "crm_access_token": "00Dxx0000001gPL!AccessTokenValue",
        "crm_refresh_token": "5Aep861TSESvWeug_RefreshTokenValue",
        "crm_user_id": "005xx000001SwiU",
        "settings": {"salesforce_instance_url": "https://acme.my.salesforce.com"},
    }
    row.update(overrides)
    return row


class FakeSalesforce:
    """Minimal in-memory Salesforce REST API behind httpx.MockTransport."""

    def __init__(self) -> None:
        self.contacts: dict[str, dict[str, Any]] = {}
        self.tasks: dict[str, dict[str, Any]] = {}
        self.requests: list[httpx.Request] = []
        self.fail_query = False
        self.fail_tasks = False
        self.reject_last_names: set[str] = set()

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path.removeprefix("/services/data/v58.0")

        if request.method == "GET" and path == "/query":
            if self.fail_query:
                return httpx.Response(500, text="query unavailable")
            soql = request.url.params["q"]
            records = [
                {"Id": cid}
                for cid, c in self.contacts.items()
                if f"Email = '{escape_soql(c.get('Email', ''))}'" in soql
            ]
            return httpx.Response(200, json={"totalSize": len(records), "records": records[:1]})

        if request.method == "POST" and path == "/sobjects/Contact":
            body = json.loads(request.content)
            if body.get("LastName") in self.reject_last_names:
                return httpx.Response(
                    400, json=[{"errorCode": "REQUIRED_FIELD_MISSING", "message": "rejected"}]
                )
            cid = f"003{len(self.contacts):012d}"
            self.contacts[cid] = body
            return httpx.Response(201, json={"id": cid, "success": True})

        if request.method == "PATCH" and path.startswith("/sobjects/Contact/"):
            cid = path.rsplit("/", 1)[-1]
            self.contacts[cid].update(json.loads(request.content))
            return httpx.Response(204)

        if request.method == "POST" and path == "/sobjects/Task":
            if self.fail_tasks:
                return httpx.Response(
                    400, json=[{"errorCode": "FIELD_INTEGRITY_EXCEPTION", "message": "bad date"}]
                )
            tid = f"00T{len(self.tasks):012d}"
            self.tasks[tid] = json.loads(request.content)
            return httpx.Response(201, json={"id": tid, "success": True})

        return httpx.Response(404, json=[{"errorCode": "NOT_FOUND"}])


@pytest.fixture
def fake_sf() -> FakeSalesforce:
    return FakeSalesforce()

"""Tests for the Salesforce CRM provider."""

import httpx
import pytest

from fieldintel.core.exceptions import CRMConnectionError, CRMProviderNotSupportedError, CRMRequestError
from fieldintel.integrations.crm import (
    SalesforceProvider,
    get_provider_class,
    registered_providers,
)
from fieldintel.integrations.crm.salesforce import (
    contact_payload,
    escape_soql,
    split_name,
    task_payload,
)
from fieldintel.models.analysis import ActionItem, ExtractedContact
from fieldintel.models.crm import CRMCredential

from conftest import FakeSalesforce, make_profile

BASE = "https://acme.my.salesforce.com/services/data/v58.0"


@pytest.fixture
def credential() -> CRMCredential:
    return CRMCredential.from_profile(make_profile())


def _provider(credential, pipeline_config, fake_sf) -> SalesforceProvider:
    return SalesforceProvider(credential, pipeline_config, httpx.MockTransport(fake_sf.handler))


class TestHelpers:
    def test_escape_soql(self) -> None:
        assert escape_soql("o'brien@acme.com") == "o\\'brien@acme.com"
        assert escape_soql("a\\b") == "a\\\\b"

    @pytest.mark.parametrize(
        ("name", "expected"),
        [
            ("Sarah Chen", ("Sarah", "Chen")),
            ("Mary Ann van Dyke", ("Mary Ann van", "Dyke")),
            ("Cher", (None, "Cher")),
            ("   ", (None, "Unknown")),
        ],
    )
    def test_split_name(self, name, expected) -> None:
        assert split_name(name) == expected

    def test_contact_payload(self) -> None:
        payload = contact_payload(
            ExtractedContact(name="Sarah Chen", company="Acme", email="s@acme.com", confidence=0.9)
        )
        assert payload == {
            "FirstName": "Sarah",
            "LastName": "Chen",
            "Email": "s@acme.com",
            "Account": {"Name": "Acme"},
            "Description": "Extracted from voice recording. Confidence: 90%",
        }

    @pytest.mark.parametrize(
        ("priority", "expected"),
        [("low", "Low"), ("medium", "Normal"), ("high", "High"), ("urgent", "High")],
    )
    def test_task_priority_mapping(self, priority, expected) -> None:
        payload = task_payload(ActionItem(task="Call back", priority=priority), None)
        assert payload["Priority"] == expected
        assert payload["Status"] == "Not Started"
        assert "WhoId" not in payload

    def test_task_subject_truncated(self) -> None:
        payload = task_payload(ActionItem(task="x" * 400, due_date="2026-11-01"), "003abc")
        assert len(payload["Subject"]) == 255
        assert payload["ActivityDate"] == "2026-11-01"
        assert payload["WhoId"] == "003abc"


class TestRegistry:
    def test_salesforce_registered(self) -> None:
        assert get_provider_class("salesforce") is SalesforceProvider
        assert "salesforce" in registered_providers()

    @pytest.mark.parametrize("name", ["hubspot", "pipedrive", None])
    def test_unsupported_provider(self, name) -> None:
        with pytest.raises(CRMProviderNotSupportedError):
            get_provider_class(name)


class TestSalesforceProvider:
    @pytest.mark.asyncio
    async def test_missing_instance_url_rejected_on_enter(self, pipeline_config, fake_sf) -> None:
        credential = CRMCredential.from_profile(make_profile(settings={}))
        with pytest.raises(CRMConnectionError, match="instance URL"):
            async with _provider(credential, pipeline_config, fake_sf):
                pass
        assert fake_sf.requests == []

    @pytest.mark.asyncio
    async def test_upsert_creates_then_updates(self, credential, pipeline_config, fake_sf) -> None:
        contact = ExtractedContact(name="Sarah Chen", email="sarah@acme.com", confidence=0.9)

        async with _provider(credential, pipeline_config, fake_sf) as provider:
            first = await provider.upsert_contact(contact)
            second = await provider.upsert_contact(contact.model_copy(update={"title": "VP"}))

        assert first.action == "created"
        assert second.action == "updated"
        assert first.id == second.id
        assert len(fake_sf.contacts) == 1
        assert fake_sf.contacts[first.id]["Title"] == "VP"

    @pytest.mark.asyncio
    async def test_contact_without_email_always_created(
        self, credential, pipeline_config, fake_sf
    ) -> None:
        async with _provider(credential, pipeline_config, fake_sf) as provider:
            await provider.upsert_contact(ExtractedContact(name="Sam"))
            await provider.upsert_contact(ExtractedContact(name="Sam"))

        assert len(fake_sf.contacts) == 2
        assert all(r.url.path.endswith("/sobjects/Contact") for r in fake_sf.requests)

    @pytest.mark.asyncio
    async def test_failed_search_falls_back_to_create(
        self, credential, pipeline_config, fake_sf
    ) -> None:
        fake_sf.fail_query = True
        async with _provider(credential, pipeline_config, fake_sf) as provider:
            result = await provider.upsert_contact(
                ExtractedContact(name="Sarah Chen", email="sarah@acme.com")
            )
        assert result.action == "created"

    @pytest.mark.asyncio
    async def test_requests_are_authenticated_and_versioned(
        self, credential, pipeline_config, fake_sf
    ) -> None:
        async with _provider(credential, pipeline_config, fake_sf) as provider:
            await provider.create_task(ActionItem(task="Send proposal"), None)

        request = fake_sf.requests[0]
        assert str(request.url) == f"{BASE}/sobjects/Task"
        assert request.headers["Authorization"] == f"Bearer {credential.access_token}"

    @pytest.mark.asyncio
    async def test_task_error_carries_provider_body(
        self, credential, pipeline_config, fake_sf
    ) -> None:
        fake_sf.fail_tasks = True
        async with _provider(credential, pipeline_config, fake_sf) as provider:
            with pytest.raises(CRMRequestError) as exc_info:
                await provider.create_task(ActionItem(task="Send proposal"), None)

        assert exc_info.value.provider_status == 400
        assert "FIELD_INTEGRITY_EXCEPTION" in exc_info.value.body

    @pytest.mark.asyncio
    async def test_timeout_mapped(self, credential, pipeline_config) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("slow", request=request)

        provider = SalesforceProvider(credential, pipeline_config, httpx.MockTransport(handler))
        async with provider:
            with pytest.raises(CRMRequestError, match="timed out"):
                await provider.create_task(ActionItem(task="x"), None)

    def test_http_outside_context_raises(self, credential, pipeline_config) -> None:
        with pytest.raises(RuntimeError):
            _ = SalesforceProvider(credential, pipeline_config).http

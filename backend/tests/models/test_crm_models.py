"""Tests for CRM credential handling and sync classification."""

import pytest

from fieldintel.models.crm import CRMCredential, SyncLog, SyncOutcome, SyncStatus

from conftest import make_profile


class TestCRMCredential:
    def test_from_profile_reads_instance_url_from_settings(self) -> None:
        credential = CRMCredential.from_profile(make_profile())
        assert credential.is_usable
        assert credential.instance_url == "https://acme.my.salesforce.com"

    def test_not_usable_without_provider(self) -> None:
        credential = CRMCredential.from_profile(make_profile(crm_provider=None))
        assert not credential.is_usable

    def test_not_usable_when_disconnected(self) -> None:
        credential = CRMCredential.from_profile(make_profile(crm_connected=False))
        assert not credential.is_usable

    def test_summary_has_no_tokens(self) -> None:
        profile = make_profile()
        summary = CRMCredential.from_profile(profile).to_summary()
        rendered = str(summary)
        assert profile["crm_access_token"] not in rendered
        assert profile["crm_refresh_token"] not in rendered
        assert summary["hasRefreshToken"] is True

    def test_repr_previews_token(self) -> None:
        profile = make_profile()
        assert profile["crm_access_token"] not in repr(CRMCredential.from_profile(profile))

    def test_profile_update_merges_settings(self) -> None:
        credential = CRMCredential.from_profile(make_profile())
        update = credential.to_profile_update({"theme": "dark"})
        assert update["settings"] == {
            "theme": "dark",
            "salesforce_instance_url": "https://acme.my.salesforce.com",
        }

    def test_cleared_update_removes_everything(self) -> None:
        update = CRMCredential.cleared_profile_update(
            {"theme": "dark", "salesforce_instance_url": "https://x"}
        )
        assert update["crm_connected"] is False
        assert update["crm_access_token"] is None
        assert update["settings"] == {"theme": "dark"}


class TestSyncOutcomeClassify:
    @pytest.mark.parametrize(
        ("contacts", "tasks", "errors", "attempted", "expected"),
        [
            ([], [], [], 0, SyncStatus.SKIPPED),
            (["c1"], ["t1"], [], 2, SyncStatus.COMPLETED),
            (["c1"], [], ["task failed"], 2, SyncStatus.PARTIAL),
            ([], [], ["contact failed"], 1, SyncStatus.FAILED),
        ],
    )
    def test_classification(self, contacts, tasks, errors, attempted, expected) -> None:
        outcome = SyncOutcome(contact_ids=contacts, task_ids=tasks, errors=errors, attempted=attempted)
        assert outcome.classify() is expected

    def test_error_message_joins(self) -> None:
        outcome = SyncOutcome(errors=["a", "b"])
        assert outcome.error_message() == "a; b"
        assert SyncOutcome().error_message() is None


class TestSyncLog:
    def test_failed_log_response(self) -> None:
        log = SyncLog(
            user_id="u",
            recording_id="r",
            analysis_id="a",
            provider="salesforce",
            status=SyncStatus.FAILED,
            error_message="x; y",
        )
        response = log.to_response()
        assert response["success"] is False
        assert response["errors"] == ["x", "y"]
        assert response["synced"] == {"contacts": 0, "tasks": 0}

    def test_partial_counts_as_success(self) -> None:
        log = SyncLog(
            user_id="u",
            recording_id="r",
            analysis_id="a",
            provider="salesforce",
            status=SyncStatus.PARTIAL,
            synced_data={"contacts": 1, "tasks": 0},
            id="log-9",
        )
        response = log.to_response()
        assert response["success"] is True
        assert response["syncLogId"] == "log-9"
        assert log.to_row()["status"] == "partial"

"""Salesforce REST implementation of the CRM provider."""

import logging
from typing import Any, cast

import httpx

from fieldintel.core.circuit_breaker import get_circuit_breaker
from fieldintel.core.exceptions import CRMConnectionError, CRMRequestError
from fieldintel.integrations.crm.base import ContactSyncResult, CRMProvider, register_provider
from fieldintel.models.analysis import ActionItem, ExtractedContact

logger = logging.getLogger(__name__)

_breaker = get_circuit_breaker("salesforce")

PRIORITY_MAP: dict[str, str] = {
    "low": "Low",
    "medium": "Normal",
    "high": "High",
    "urgent": "High",
}

DEFAULT_TASK_SUBJECT = "Follow-up from voice recording"
SUBJECT_MAX_LENGTH = 255


def escape_soql(value: str) -> str:
    """Escape a value for use inside a single-quoted SOQL literal."""
    return value.replace("\\", "\\\\").replace("'", "\\'")


def split_name(full_name: str) -> tuple[str | None, str]:
    """Split a display name into (FirstName, LastName).

    The last whitespace token is the last name; everything before it is the
    first name. A single token becomes the last name only.
    """
    parts = full_name.split()
    if not parts:
        return None, "Unknown"
    first = " ".join(parts[:-1]) or None
    return first, parts[-1]


def contact_payload(contact: ExtractedContact) -> dict[str, Any]:
    """Map an extracted contact onto Salesforce Contact fields."""
    first_name, last_name = split_name(contact.name)
    payload: dict[str, Any] = {"LastName": last_name}
    if first_name:
        payload["FirstName"] = first_name
    if contact.email:
        payload["Email"] = contact.email
    if contact.phone:
        payload["Phone"] = contact.phone
    if contact.title:
        payload["Title"] = contact.title
    if contact.company:
        payload["Account"] = {"Name": contact.company}
    if contact.confidence:
        payload["Description"] = (
            f"Extracted from voice recording. Confidence: {round(contact.confidence * 100)}%"
        )
    return payload


def task_payload(item: ActionItem, contact_id: str | None) -> dict[str, Any]:
    """Map an action item onto Salesforce Task fields."""
    payload: dict[str, Any] = {
        "Subject": (item.task or DEFAULT_TASK_SUBJECT)[:SUBJECT_MAX_LENGTH],
        "Description": item.task or "",
        "Status": "Not Started",
        "Priority": PRIORITY_MAP.get(item.priority, "Normal"),
    }
    if item.due_date:
        payload["ActivityDate"] = item.due_date
    if contact_id:
        payload["WhoId"] = contact_id
    return payload


@register_provider
class SalesforceProvider(CRMProvider):
    """Contacts and Tasks over the Salesforce REST API."""

    name = "salesforce"

    def validate_credential(self) -> None:
        if not self.credential.instance_url:
            raise CRMConnectionError(self.name, "Salesforce instance URL not found")
        if not self.credential.access_token:
            raise CRMConnectionError(self.name, "Salesforce access token not found")

    @property
    def base_url(self) -> str:
        instance = str(self.credential.instance_url).rstrip("/")
        return f"{instance}/services/data/{self.config.crm_api_version}"

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, str] | None = None,
        json: dict[str, Any] | None = None,
    ) -> httpx.Response:
        """Send one authenticated REST call.

        Raises:
            CRMRequestError: On non-2xx, timeout or connection failure.
        """
        _breaker.check()
        try:
            response = await self.http.request(
                method,
                f"{self.base_url}{path}",
                params=params,
                json=json,
                headers={
                    "Authorization": f"Bearer {self.credential.access_token}",
                    "Content-Type": "application/json",
                },
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            status_code = e.response.status_code
            if status_code >= 500:
                _breaker.record_failure()
            raise CRMRequestError(
                self.name,
                f"{method} {path} returned {status_code}: {e.response.text[:300]}",
                status_code=status_code,
                body=e.response.text[:1000],
            ) from e
        except httpx.TimeoutException as e:
            _breaker.record_failure()
            raise CRMRequestError(self.name, f"{method} {path} timed out") from e
        except httpx.RequestError as e:
            _breaker.record_failure()
            raise CRMRequestError(self.name, f"{method} {path} failed: {e}") from e
        _breaker.record_success()
        return response

    async def find_contact_by_email(self, email: str) -> str | None:
        """Return the Id of the first Contact with this email, if any."""
        soql = f"SELECT Id FROM Contact WHERE Email = '{escape_soql(email)}' LIMIT 1"
        response = await self._request("GET", "/query", params={"q": soql})
        records = response.json().get("records") or []
        return cast(str, records[0]["Id"]) if records else None

    async def upsert_contact(self, contact: ExtractedContact) -> ContactSyncResult:
        payload = contact_payload(contact)

        existing_id: str | None = None
        if contact.email:
            try:
                existing_id = await self.find_contact_by_email(contact.email)
            except CRMRequestError as e:
                # Search is best effort; fall through to create
                logger.warning(
                    "Salesforce contact search failed, creating instead",
                    extra={"contact": contact.name, "error": e.message},
                )

        if existing_id:
            await self._request("PATCH", f"/sobjects/Contact/{existing_id}", json=payload)
            logger.info("Updated Salesforce contact", extra={"contact_id": existing_id})
            return ContactSyncResult(id=existing_id, action="updated")

        response = await self._request("POST", "/sobjects/Contact", json=payload)
        contact_id = cast(str, response.json()["id"])
        logger.info("Created Salesforce contact", extra={"contact_id": contact_id})
        return ContactSyncResult(id=contact_id, action="created")

    async def create_task(self, item: ActionItem, contact_id: str | None) -> str:
        response = await self._request("POST", "/sobjects/Task", json=task_payload(item, contact_id))
        task_id = cast(str, response.json()["id"])
        logger.info("Created Salesforce task", extra={"task_id": task_id, "who_id": contact_id})
        return task_id

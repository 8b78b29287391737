"""CRM provider strategy interface and registry."""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from types import TracebackType

import httpx

from fieldintel.core.config import PipelineConfig
from fieldintel.core.exceptions import CRMProviderNotSupportedError
from fieldintel.models.analysis import ActionItem, ExtractedContact
from fieldintel.models.crm import CRMCredential

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ContactSyncResult:
    """Remote contact id and whether it was created or updated."""

    id: str
    action: str  # "created" | "updated"


class CRMProvider(ABC):
    """One CRM backend able to upsert contacts and create tasks.

    Instances are async context managers owning a single HTTP client for the
    duration of one sync invocation.
    """

    name: str = ""

    def __init__(
        self,
        credential: CRMCredential,
        config: PipelineConfig,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.credential = credential
        self.config = config
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> "CRMProvider":
        self.validate_credential()
        self._client = httpx.AsyncClient(transport=self._transport, timeout=30.0)
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    @property
    def http(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError(f"{type(self).__name__} used outside 'async with'")
        return self._client

    @abstractmethod
    def validate_credential(self) -> None:
        """Raise CRMConnectionError if the credential cannot be used at all."""

    @abstractmethod
    async def upsert_contact(self, contact: ExtractedContact) -> ContactSyncResult:
        """Create or update one contact, matching on email."""

    @abstractmethod
    async def create_task(self, item: ActionItem, contact_id: str | None) -> str:
        """Create one task, optionally linked to a contact. Returns the remote id."""


_PROVIDERS: dict[str, type[CRMProvider]] = {}


def register_provider(cls: type[CRMProvider]) -> type[CRMProvider]:
    """Class decorator adding a provider to the registry under ``cls.name``."""
    if not cls.name:
        raise ValueError(f"{cls.__name__} must define a provider name")
    _PROVIDERS[cls.name] = cls
    logger.debug("Registered CRM provider %s", cls.name)
    return cls


def get_provider_class(name: str | None) -> type[CRMProvider]:
    """Look up a provider implementation.

    Raises:
        CRMProviderNotSupportedError: If nothing is registered under ``name``.
    """
    provider = _PROVIDERS.get(name or "")
    if provider is None:
        raise CRMProviderNotSupportedError(str(name))
    return provider


def registered_providers() -> list[str]:
    return sorted(_PROVIDERS)

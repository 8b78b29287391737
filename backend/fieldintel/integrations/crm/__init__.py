"""CRM provider implementations."""

from fieldintel.integrations.crm.base import (
    ContactSyncResult,
    CRMProvider,
    get_provider_class,
    register_provider,
    registered_providers,
)
from fieldintel.integrations.crm.salesforce import SalesforceProvider

__all__ = [
    "CRMProvider",
    "ContactSyncResult",
    "SalesforceProvider",
    "get_provider_class",
    "register_provider",
    "registered_providers",
]

"""
crm_contact_sync.api - Directory provider module

The DirectoryProvider interface, the provider registry and the Google
People API implementation.
"""

from crm_contact_sync.api.people_api import GoogleContactsProvider
from crm_contact_sync.api.provider import (
    DirectoryProvider,
    ProviderError,
    ProviderRegistry,
    RateLimitError,
    RemoteAuthExpiredError,
    RemoteContact,
    StaleVersionError,
    TokenBundle,
    UnknownProviderError,
)

__all__ = [
    "DirectoryProvider",
    "GoogleContactsProvider",
    "ProviderError",
    "ProviderRegistry",
    "RateLimitError",
    "RemoteAuthExpiredError",
    "RemoteContact",
    "StaleVersionError",
    "TokenBundle",
    "UnknownProviderError",
]

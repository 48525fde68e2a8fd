"""
Directory provider interface.

A DirectoryProvider is the external contacts service the CRM is kept in
sync with. The sync engine only talks to this interface; concrete
providers (Google People API) are looked up by name in a
ProviderRegistry and a fresh instance is created for each run.
"""

import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from crm_contact_sync.sync.contact import NormalizedContact, parse_timestamp

logger = logging.getLogger(__name__)

# Provider-native contact representation (e.g. a People API person resource)
RemoteContact = dict[str, Any]


class ProviderError(Exception):
    """Raised when a provider operation fails."""

    pass


class RemoteAuthExpiredError(ProviderError):
    """Raised when stored credentials are missing, revoked or cannot be refreshed."""

    pass


class RateLimitError(ProviderError):
    """Raised when the provider rate limit is exceeded and retries are exhausted."""

    pass


class StaleVersionError(ProviderError):
    """Raised when an update carries an outdated version tag."""

    pass


class UnknownProviderError(ProviderError):
    """Raised when no provider is registered under the requested name."""

    pass


@dataclass
class TokenBundle:
    """
    Tokens returned by an authorization code exchange.

    Attributes:
        access_token: Short-lived bearer token
        refresh_token: Long-lived token used to mint new access tokens
        expiry: Access token expiry, if known
        remote_account_email: Email of the authorized provider account
        scopes: Granted scopes
    """

    access_token: str
    refresh_token: Optional[str] = None
    expiry: Optional[datetime] = None
    remote_account_email: Optional[str] = None
    scopes: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expiry": self.expiry.isoformat() if self.expiry else None,
            "remote_account_email": self.remote_account_email,
            "scopes": list(self.scopes),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TokenBundle":
        return cls(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            expiry=parse_timestamp(data.get("expiry")),
            remote_account_email=data.get("remote_account_email"),
            scopes=list(data.get("scopes") or []),
        )


class DirectoryProvider(ABC):
    """
    Contract for an external contacts directory.

    An instance is bound to one account's credentials by
    fetch_all_contacts(); the mutation methods act on that account.
    """

    #: Registry key, also stored on SyncConfig.provider
    name: str = ""

    @abstractmethod
    def build_credentials(self, tokens: TokenBundle) -> Any:
        """
        Turn stored tokens into provider credentials, refreshing if needed.

        Raises:
            RemoteAuthExpiredError: If the tokens can no longer be used
        """

    @abstractmethod
    def fetch_all_contacts(self, credentials: Any) -> list[RemoteContact]:
        """Fetch every contact of the account (pagination is internal)."""

    @abstractmethod
    def create_contact(self, fields: dict[str, Any]) -> RemoteContact:
        """Create a contact from the compared field set."""

    @abstractmethod
    def update_contact(
        self, remote_id: str, fields: dict[str, Any], version_tag: Optional[str]
    ) -> RemoteContact:
        """
        Overwrite a contact's compared fields.

        Raises:
            StaleVersionError: If version_tag no longer matches the provider's
        """

    @abstractmethod
    def soft_delete_contact(self, remote_id: str) -> None:
        """Non-destructive removal (Google: unstar)."""

    @abstractmethod
    def hard_delete_contact(self, remote_id: str) -> None:
        """Permanent removal."""

    @abstractmethod
    def get_authorization_url(self, owner_id: str) -> str:
        """URL the owner visits to grant access; owner_id round-trips as state."""

    @abstractmethod
    def exchange_code_for_tokens(self, code: str) -> TokenBundle:
        """Exchange an authorization code for tokens."""

    @abstractmethod
    def normalize(self, remote: RemoteContact) -> NormalizedContact:
        """Project a provider-native contact onto the compared field set."""


ProviderFactory = Callable[[], DirectoryProvider]


class ProviderRegistry:
    """
    Name to factory lookup for directory providers.

    Usage:
        registry = ProviderRegistry()
        registry.register("google", lambda: GoogleContactsProvider(oauth))
        provider = registry.create("google")
    """

    def __init__(self) -> None:
        self._factories: dict[str, ProviderFactory] = {}

    def register(self, name: str, factory: ProviderFactory) -> None:
        self._factories[name] = factory
        logger.debug(f"Registered directory provider: {name}")

    def create(self, name: str) -> DirectoryProvider:
        """
        Create a fresh provider instance.

        Raises:
            UnknownProviderError: If nothing is registered under name
        """
        factory = self._factories.get(name)
        if factory is None:
            raise UnknownProviderError(
                f"Unknown provider '{name}'. Registered: {', '.join(self.names()) or 'none'}"
            )
        return factory()

    def names(self) -> list[str]:
        return sorted(self._factories)

    def __contains__(self, name: object) -> bool:
        return name in self._factories

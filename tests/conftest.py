"""
Shared fixtures for the crm_contact_sync tests.

FakeDirectory is an in-memory stand-in for a Google Contacts account.
FakeDirectoryProvider exposes it through the DirectoryProvider interface
and is registered under "google", so the engine and the service run
end to end against the real SQLite store.
"""

import itertools
import threading
from datetime import datetime, timedelta
from typing import Any, Optional

import pytest

from crm_contact_sync.api.provider import (
    DirectoryProvider,
    ProviderError,
    ProviderRegistry,
    RemoteAuthExpiredError,
    StaleVersionError,
    TokenBundle,
)
from crm_contact_sync.auth.google_auth import CredentialStore
from crm_contact_sync.service import ContactSyncService
from crm_contact_sync.storage.contact_store import SQLiteContactStore
from crm_contact_sync.storage.db import SyncDatabase
from crm_contact_sync.storage.models import SyncConfig, utcnow
from crm_contact_sync.sync.contact import (
    COMPARED_FIELDS,
    NormalizedContact,
    to_google_person,
)
from crm_contact_sync.sync.engine import SyncEngine

OWNER = "owner-1"


def make_person(
    resource_name: str,
    etag: str,
    fields: dict[str, Any],
    updated_at: Optional[datetime] = None,
) -> dict[str, Any]:
    """People API person resource carrying the given compared fields."""
    person = to_google_person(fields)
    if fields.get("name"):
        person["names"][0]["displayName"] = fields["name"]
    person["resourceName"] = resource_name
    person["etag"] = etag
    person["metadata"] = {
        "sources": [
            {"type": "CONTACT", "updateTime": (updated_at or utcnow()).isoformat()}
        ]
    }
    return person


class FakeDirectory:
    """Thread-safe in-memory contacts account."""

    def __init__(self) -> None:
        self.people: dict[str, dict[str, Any]] = {}
        self.unstarred: set[str] = set()
        self.fail_fetch: Optional[Exception] = None
        self.failures: dict[str, Exception] = {}
        self.expired = False
        self.refreshed_token: Optional[str] = None
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def _next_etag(self) -> str:
        return f"etag-{next(self._ids)}"

    def _maybe_fail(self, key: str) -> None:
        error = self.failures.get(key)
        if error is not None:
            raise error

    def add(
        self, updated_at: Optional[datetime] = None, **fields: str
    ) -> dict[str, Any]:
        """Add a contact as if it was created directly at the provider."""
        with self._lock:
            resource_name = f"people/c{next(self._ids)}"
            person = make_person(resource_name, self._next_etag(), fields, updated_at)
            self.people[resource_name] = person
            return person

    def add_raw(self, person: dict[str, Any]) -> None:
        with self._lock:
            self.people[person["resourceName"]] = person

    def edit(
        self, remote_id: str, updated_at: Optional[datetime] = None, **changes: str
    ) -> dict[str, Any]:
        """Change a contact as if it was edited directly at the provider."""
        with self._lock:
            fields = self.fields_of(remote_id)
            fields.update(changes)
            person = make_person(
                remote_id,
                self._next_etag(),
                fields,
                updated_at or utcnow() + timedelta(seconds=5),
            )
            self.people[remote_id] = person
            return person

    def remove(self, remote_id: str) -> None:
        with self._lock:
            self.people.pop(remote_id, None)

    def fields_of(self, remote_id: str) -> dict[str, str]:
        return NormalizedContact.from_google_person(self.people[remote_id]).to_fields()

    def names(self) -> list[str]:
        with self._lock:
            return sorted(
                NormalizedContact.from_google_person(p).name for p in self.people.values()
            )

    # Provider-side operations

    def list(self) -> list[dict[str, Any]]:
        if self.fail_fetch is not None:
            raise self.fail_fetch
        with self._lock:
            return [dict(p) for p in self.people.values()]

    def create(self, fields: dict[str, Any]) -> dict[str, Any]:
        self._maybe_fail(fields.get("name", ""))
        return self.add(**{k: v for k, v in fields.items() if k in COMPARED_FIELDS})

    def update(
        self, remote_id: str, fields: dict[str, Any], version_tag: Optional[str]
    ) -> dict[str, Any]:
        self._maybe_fail(remote_id)
        with self._lock:
            current = self.people.get(remote_id)
            if current is None:
                raise ProviderError(f"Contact not found: {remote_id}")
            if version_tag != current["etag"]:
                raise StaleVersionError(f"Contact {remote_id} was modified")
            person = make_person(remote_id, self._next_etag(), fields)
            self.people[remote_id] = person
            return person

    def unstar(self, remote_id: str) -> None:
        self._maybe_fail(remote_id)
        with self._lock:
            self.unstarred.add(remote_id)

    def delete(self, remote_id: str) -> None:
        self._maybe_fail(remote_id)
        with self._lock:
            self.people.pop(remote_id, None)


class FakeDirectoryProvider(DirectoryProvider):
    """DirectoryProvider over a FakeDirectory."""

    name = "google"

    def __init__(self, directory: FakeDirectory):
        self.directory = directory
        self.credentials: Any = None

    def build_credentials(self, tokens: TokenBundle) -> Any:
        if self.directory.expired:
            raise RemoteAuthExpiredError("Google authorization expired")
        if self.directory.refreshed_token:
            tokens.access_token = self.directory.refreshed_token
        return {"token": tokens.access_token}

    def fetch_all_contacts(self, credentials: Any) -> list[dict[str, Any]]:
        self.credentials = credentials
        return self.directory.list()

    def create_contact(self, fields: dict[str, Any]) -> dict[str, Any]:
        return self.directory.create(fields)

    def update_contact(
        self, remote_id: str, fields: dict[str, Any], version_tag: Optional[str]
    ) -> dict[str, Any]:
        return self.directory.update(remote_id, fields, version_tag)

    def soft_delete_contact(self, remote_id: str) -> None:
        self.directory.unstar(remote_id)

    def hard_delete_contact(self, remote_id: str) -> None:
        self.directory.delete(remote_id)

    def get_authorization_url(self, owner_id: str) -> str:
        return f"https://accounts.example.com/o/oauth2/auth?state={owner_id}"

    def exchange_code_for_tokens(self, code: str) -> TokenBundle:
        if code == "bad-code":
            raise ProviderError("invalid_grant")
        return TokenBundle(
            access_token=f"access-{code}",
            refresh_token="refresh-token",
            remote_account_email="owner@example.com",
        )

    def normalize(self, remote: dict[str, Any]) -> NormalizedContact:
        return NormalizedContact.from_google_person(remote)


# ==============================================================================
# Fixtures
# ==============================================================================


@pytest.fixture
def db():
    """Initialized in-memory database."""
    database = SyncDatabase(":memory:")
    database.initialize()
    yield database
    database.close()


@pytest.fixture
def store(db):
    return SQLiteContactStore(db)


@pytest.fixture
def directory():
    return FakeDirectory()


@pytest.fixture
def registry(directory):
    providers = ProviderRegistry()
    providers.register("google", lambda: FakeDirectoryProvider(directory))
    return providers


@pytest.fixture
def credential_store(tmp_path):
    return CredentialStore(tmp_path / "tokens")


@pytest.fixture
def config(db, credential_store):
    """Connected configuration for OWNER with default policies."""
    reference = credential_store.save(
        OWNER,
        "google",
        TokenBundle(
            access_token="access-1",
            refresh_token="refresh-1",
            remote_account_email="owner@example.com",
        ),
    )
    return db.create_config(
        SyncConfig(
            owner_id=OWNER,
            credential_ref=reference,
            remote_account_email="owner@example.com",
        )
    )


@pytest.fixture
def engine(db, store, registry, credential_store):
    return SyncEngine(db, store, registry, credential_store, action_workers=2)


@pytest.fixture
def service(db, store, registry, credential_store):
    svc = ContactSyncService(
        db,
        registry,
        credential_store,
        contact_store=store,
        run_workers=1,
        action_workers=2,
    )
    yield svc
    svc.shutdown()

"""
CRM contact store used by the sync engine.

ContactStore is the interface the engine consumes; SQLiteContactStore
implements it on the crm_contact table of SyncDatabase.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any

from crm_contact_sync.storage.db import PersistenceError, SyncDatabase
from crm_contact_sync.sync.contact import COMPARED_FIELDS, LocalContact

logger = logging.getLogger(__name__)


class ContactStore(ABC):
    """CRUD surface of the CRM's contact storage."""

    @abstractmethod
    def fetch_all(self, owner_id: str) -> list[LocalContact]:
        """All live (not soft-deleted) contacts of an owner."""

    @abstractmethod
    def create(self, owner_id: str, fields: dict[str, Any]) -> LocalContact:
        """Create a contact from the compared field set."""

    @abstractmethod
    def update(self, local_id: str, fields: dict[str, Any]) -> LocalContact:
        """Overwrite the compared fields of a contact."""

    @abstractmethod
    def soft_delete(self, local_id: str) -> None:
        """Mark a contact deleted without removing it."""

    @abstractmethod
    def hard_delete(self, local_id: str) -> None:
        """Permanently remove a contact."""


class SQLiteContactStore(ContactStore):
    """
    ContactStore backed by the crm_contact table.

    Usage:
        store = SQLiteContactStore(database)
        contact = store.create("owner-1", {"name": "Jane Doe"})
        store.update(contact.local_id, {"name": "Jane Smith"})
    """

    def __init__(self, database: SyncDatabase):
        self.database = database

    def fetch_all(self, owner_id: str) -> list[LocalContact]:
        rows = self.database.list_contacts(owner_id)
        logger.debug(f"Loaded {len(rows)} CRM contacts for owner {owner_id}")
        return [LocalContact.from_row(row) for row in rows]

    def create(self, owner_id: str, fields: dict[str, Any]) -> LocalContact:
        row = self.database.insert_contact(owner_id, _compared(fields))
        return LocalContact.from_row(row)

    def update(self, local_id: str, fields: dict[str, Any]) -> LocalContact:
        row = self.database.update_contact(local_id, _compared(fields))
        return LocalContact.from_row(row)

    def soft_delete(self, local_id: str) -> None:
        self.database.soft_delete_contact(local_id)

    def hard_delete(self, local_id: str) -> None:
        self.database.hard_delete_contact(local_id)

    def get(self, local_id: str) -> LocalContact:
        """
        Fetch one contact, including soft-deleted ones.

        Raises:
            PersistenceError: If the contact does not exist
        """
        row = self.database.get_contact(local_id)
        if row is None:
            raise PersistenceError(f"CRM contact not found: {local_id}")
        return LocalContact.from_row(row)


def _compared(fields: dict[str, Any]) -> dict[str, Any]:
    return {name: fields.get(name) or "" for name in COMPARED_FIELDS}

"""
crm_contact_sync.storage - Persistence module

SQLite-backed storage for sync configs, mappings, runs, the change log
and CRM contacts.
"""

from crm_contact_sync.storage.contact_store import ContactStore, SQLiteContactStore
from crm_contact_sync.storage.db import (
    IntegrityViolation,
    PersistenceError,
    SyncDatabase,
)

__all__ = [
    "ContactStore",
    "SQLiteContactStore",
    "SyncDatabase",
    "PersistenceError",
    "IntegrityViolation",
]

"""
Change log writer.

Every mutation applied during a run writes exactly one immutable row,
carrying the before/after field sets and, for updates that settled a
conflict, the policy, winner and reason.
"""

import logging
from typing import Any, Optional

from crm_contact_sync.storage.db import SyncDatabase
from crm_contact_sync.storage.models import ChangeLogEntry, Mapping, Operation
from crm_contact_sync.sync.conflict import Resolution
from crm_contact_sync.sync.contact import FieldChange, LocalContact, NormalizedContact

logger = logging.getLogger(__name__)


class ChangeLogWriter:
    """
    Appends audit rows for one owner's runs.

    Usage:
        writer = ChangeLogWriter(database)
        writer.record(
            run_id, owner_id, Operation.CREATED_LOCAL,
            local=created, remote=remote, fields_after=created.to_fields(),
        )
    """

    def __init__(self, database: SyncDatabase):
        self.database = database

    def record(
        self,
        run_id: str,
        owner_id: str,
        operation: Operation,
        local: Optional[LocalContact] = None,
        remote: Optional[NormalizedContact] = None,
        mapping: Optional[Mapping] = None,
        fields_before: Optional[dict[str, Any]] = None,
        fields_after: Optional[dict[str, Any]] = None,
        changed_fields: Optional[list[FieldChange]] = None,
        resolution: Optional[Resolution] = None,
    ) -> ChangeLogEntry:
        """
        Append one row describing a mutation.

        The contact name and email are taken from the side that holds the
        surviving values: fields_after when present, otherwise whichever
        contact was given.
        """
        label_source = fields_after or fields_before
        if not label_source:
            contact = local or remote
            label_source = contact.to_fields() if contact else {}

        entry = ChangeLogEntry(
            run_id=run_id,
            owner_id=owner_id,
            operation=operation,
            local_id=_pick(local.local_id if local else None, mapping, "local_id"),
            remote_id=_pick(remote.remote_id if remote else None, mapping, "remote_id"),
            contact_name=(label_source.get("name") or "").strip() or None,
            contact_email=(label_source.get("email") or "").strip() or None,
            fields_before=fields_before,
            fields_after=fields_after,
            changed_fields=[c.to_dict() for c in changed_fields or []],
            conflict_reason=resolution.reason if resolution else None,
            conflict_policy=resolution.policy.value if resolution else None,
            winning_side=resolution.winner if resolution else None,
            local_updated_at=local.updated_at if local else None,
            remote_updated_at=remote.updated_at if remote else None,
        )
        self.database.add_change_log_entry(entry)
        logger.debug(
            f"Change log: {operation.value} local={entry.local_id} "
            f"remote={entry.remote_id}"
        )
        return entry

    def for_run(self, run_id: str, limit: int = 50, offset: int = 0) -> list[ChangeLogEntry]:
        return self.database.query_change_log(limit=limit, offset=offset, run_id=run_id)

    def for_contact(
        self, owner_id: str, local_id: str, limit: int = 50, offset: int = 0
    ) -> list[ChangeLogEntry]:
        """History of one CRM contact across runs, newest first."""
        return self.database.query_change_log(
            limit=limit, offset=offset, owner_id=owner_id, local_id=local_id
        )


def _pick(value: Optional[str], mapping: Optional[Mapping], attr: str) -> Optional[str]:
    """Contact id from the contact itself, falling back to the mapping."""
    if value:
        return value
    return getattr(mapping, attr) if mapping else None

"""
Mutation appliers.

One applier per reconciler action. Each applier performs the write on
the target side, creates or updates the mapping, and appends exactly one
change log row. Failures are raised as ItemProcessingError so the
orchestrator can record them and move on to the next contact.
"""

import logging
from collections.abc import Callable

from crm_contact_sync.api.provider import (
    DirectoryProvider,
    StaleVersionError,
)
from crm_contact_sync.storage.contact_store import ContactStore
from crm_contact_sync.storage.db import PersistenceError, SyncDatabase
from crm_contact_sync.storage.models import (
    DeletionHandling,
    Mapping,
    MappingStatus,
    Operation,
    SyncRun,
    utcnow,
)
from crm_contact_sync.sync.changelog import ChangeLogWriter
from crm_contact_sync.sync.errors import ItemProcessingError
from crm_contact_sync.sync.reconciler import ActionKind, SyncAction

logger = logging.getLogger(__name__)

# Parts of a SyncAction each applier reads
_REQUIRED_PARTS = {
    ActionKind.CREATE_LOCAL: ("remote",),
    ActionKind.CREATE_REMOTE: ("local",),
    ActionKind.UPDATE_LOCAL: ("remote", "local", "mapping"),
    ActionKind.UPDATE_REMOTE: ("remote", "local", "mapping"),
    ActionKind.DELETE_LOCAL: ("local", "mapping"),
    ActionKind.DELETE_REMOTE: ("remote", "mapping"),
}


class MutationAppliers:
    """
    Applies reconciler actions for one run.

    Instances are shared by the run's worker threads; each call only
    touches the pair named by its action.

    Usage:
        appliers = MutationAppliers(provider, store, database, changelog, run)
        operation = appliers.apply(action)
        run.counters.record(operation)
    """

    def __init__(
        self,
        provider: DirectoryProvider,
        contact_store: ContactStore,
        database: SyncDatabase,
        changelog: ChangeLogWriter,
        run: SyncRun,
        deletion_handling: DeletionHandling = DeletionHandling.SOFT_DELETE,
    ):
        self.provider = provider
        self.contact_store = contact_store
        self.database = database
        self.changelog = changelog
        self.run = run
        self.deletion_handling = deletion_handling

        self._handlers: dict[ActionKind, Callable[[SyncAction], Operation]] = {
            ActionKind.CREATE_LOCAL: self.create_local_from_remote,
            ActionKind.CREATE_REMOTE: self.create_remote_from_local,
            ActionKind.UPDATE_LOCAL: self.update_local_from_remote,
            ActionKind.UPDATE_REMOTE: self.update_remote_from_local,
            ActionKind.DELETE_LOCAL: self.delete_local,
            ActionKind.DELETE_REMOTE: self.delete_remote,
        }

    @property
    def owner_id(self) -> str:
        return self.run.owner_id

    def apply(self, action: SyncAction) -> Operation:
        """
        Apply one mutation.

        Returns:
            The Operation that was applied (for the run counters)

        Raises:
            ItemProcessingError: If the mutation fails for any reason; the
                original exception is chained
        """
        handler = self._handlers.get(action.kind)
        if handler is None:
            raise ItemProcessingError(
                f"No applier for {action.kind.value}", action=action.kind.value
            )

        missing = [p for p in _REQUIRED_PARTS[action.kind] if getattr(action, p) is None]
        if missing:
            raise self._item_error(
                action, ValueError(f"missing {', '.join(missing)}")
            )

        try:
            return handler(action)
        except StaleVersionError as e:
            if action.mapping is not None:
                action.mapping.status = MappingStatus.CONFLICT
                try:
                    self.database.update_mapping(action.mapping)
                except PersistenceError as db_error:
                    logger.error(f"Could not flag mapping {action.mapping.id}: {db_error}")
            raise self._item_error(action, e) from e
        except Exception as e:
            raise self._item_error(action, e) from e

    def _item_error(self, action: SyncAction, error: Exception) -> ItemProcessingError:
        local_id = action.local.local_id if action.local else None
        remote_id = action.remote.remote_id if action.remote else None
        if action.mapping is not None:
            local_id = local_id or action.mapping.local_id
            remote_id = remote_id or action.mapping.remote_id
        logger.warning(f"Failed to {action.describe()}: {error}")
        return ItemProcessingError(
            str(error), local_id=local_id, remote_id=remote_id, action=action.kind.value
        )

    # =========================================================================
    # Creates
    # =========================================================================

    def create_local_from_remote(self, action: SyncAction) -> Operation:
        remote = action.remote

        created = self.contact_store.create(self.owner_id, remote.to_fields())
        now = utcnow()
        self.database.create_mapping(
            Mapping(
                owner_id=self.owner_id,
                local_id=created.local_id,
                remote_id=remote.remote_id,
                version_tag=remote.version_tag,
                status=MappingStatus.SYNCED,
                last_synced_at=now,
                local_updated_at=created.updated_at,
                remote_updated_at=remote.updated_at,
            )
        )
        self.changelog.record(
            self.run.id,
            self.owner_id,
            Operation.CREATED_LOCAL,
            local=created,
            remote=remote,
            fields_after=created.to_fields(),
        )
        logger.debug(f"Created CRM contact {created.local_id} from {remote.remote_id}")
        return Operation.CREATED_LOCAL

    def create_remote_from_local(self, action: SyncAction) -> Operation:
        local = action.local

        raw = self.provider.create_contact(local.to_fields())
        created = self.provider.normalize(raw)
        now = utcnow()
        self.database.create_mapping(
            Mapping(
                owner_id=self.owner_id,
                local_id=local.local_id,
                remote_id=created.remote_id,
                version_tag=created.version_tag,
                status=MappingStatus.SYNCED,
                last_synced_at=now,
                local_updated_at=local.updated_at,
                remote_updated_at=created.updated_at,
            )
        )
        self.changelog.record(
            self.run.id,
            self.owner_id,
            Operation.CREATED_REMOTE,
            local=local,
            remote=created,
            fields_after=local.to_fields(),
        )
        logger.debug(f"Created provider contact {created.remote_id} from {local.local_id}")
        return Operation.CREATED_REMOTE

    # =========================================================================
    # Updates
    # =========================================================================

    def update_local_from_remote(self, action: SyncAction) -> Operation:
        remote, local, mapping = action.remote, action.local, action.mapping

        before = local.to_fields()
        updated = self.contact_store.update(local.local_id, remote.to_fields())

        mapping.version_tag = remote.version_tag
        mapping.status = MappingStatus.SYNCED
        mapping.last_synced_at = utcnow()
        mapping.local_updated_at = updated.updated_at
        mapping.remote_updated_at = remote.updated_at
        self.database.update_mapping(mapping)

        self.changelog.record(
            self.run.id,
            self.owner_id,
            Operation.UPDATED_LOCAL,
            local=local,
            remote=remote,
            mapping=mapping,
            fields_before=before,
            fields_after=updated.to_fields(),
            changed_fields=action.changed_fields,
            resolution=action.resolution,
        )
        return Operation.UPDATED_LOCAL

    def update_remote_from_local(self, action: SyncAction) -> Operation:
        remote, local, mapping = action.remote, action.local, action.mapping

        # The etag fetched in this run is fresher than the stored one
        version_tag = remote.version_tag or mapping.version_tag
        raw = self.provider.update_contact(
            remote.remote_id, local.to_fields(), version_tag
        )
        updated = self.provider.normalize(raw)

        mapping.version_tag = updated.version_tag
        mapping.status = MappingStatus.SYNCED
        mapping.last_synced_at = utcnow()
        mapping.local_updated_at = local.updated_at
        mapping.remote_updated_at = updated.updated_at
        self.database.update_mapping(mapping)

        self.changelog.record(
            self.run.id,
            self.owner_id,
            Operation.UPDATED_REMOTE,
            local=local,
            remote=remote,
            mapping=mapping,
            fields_before=remote.to_fields(),
            fields_after=local.to_fields(),
            changed_fields=action.changed_fields,
            resolution=action.resolution,
        )
        return Operation.UPDATED_REMOTE

    # =========================================================================
    # Deletes
    # =========================================================================

    def _retire(self, mapping: Mapping) -> None:
        now = utcnow()
        mapping.is_deleted = True
        mapping.deleted_at = now
        mapping.last_synced_at = now
        mapping.status = MappingStatus.SYNCED
        self.database.update_mapping(mapping)

    def delete_local(self, action: SyncAction) -> Operation:
        """Remove the CRM contact whose provider partner disappeared."""
        local, mapping = action.local, action.mapping

        if self.deletion_handling == DeletionHandling.HARD_DELETE:
            self.contact_store.hard_delete(local.local_id)
        else:
            self.contact_store.soft_delete(local.local_id)
        self._retire(mapping)

        self.changelog.record(
            self.run.id,
            self.owner_id,
            Operation.DELETED_LOCAL,
            local=local,
            mapping=mapping,
            fields_before=local.to_fields(),
        )
        return Operation.DELETED_LOCAL

    def delete_remote(self, action: SyncAction) -> Operation:
        """
        Remove the provider contact whose CRM partner disappeared.

        A soft delete only unstars the contact at Google; the retired
        mapping keeps it from being re-imported.
        """
        remote, mapping = action.remote, action.mapping

        if self.deletion_handling == DeletionHandling.HARD_DELETE:
            self.provider.hard_delete_contact(remote.remote_id)
        else:
            self.provider.soft_delete_contact(remote.remote_id)
        self._retire(mapping)

        self.changelog.record(
            self.run.id,
            self.owner_id,
            Operation.DELETED_REMOTE,
            remote=remote,
            mapping=mapping,
            fields_before=remote.to_fields(),
        )
        return Operation.DELETED_REMOTE

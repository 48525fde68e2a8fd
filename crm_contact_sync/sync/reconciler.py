"""
Two-pass reconciliation between the provider and the CRM.

The reconciler is pure: it takes both contact sets plus the owner's
mappings and returns a plan. Nothing is mutated here.

Pass 1 walks provider contacts, pass 2 walks CRM contacts. Both record
their decision in one dictionary keyed by the pair being reconciled
(the mapping, or the lone contact when unmapped), so a mapped pair is
decided exactly once even though both passes see it.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from crm_contact_sync.storage.models import (
    DeletionHandling,
    Mapping,
    Side,
    SyncConfig,
    SyncMode,
)
from crm_contact_sync.sync.conflict import ConflictResolver, Resolution
from crm_contact_sync.sync.contact import (
    FieldChange,
    LocalContact,
    NormalizedContact,
    compare_fields,
)

logger = logging.getLogger(__name__)


class ActionKind(Enum):
    """What the engine should do for one reconciled pair."""

    CREATE_LOCAL = "create_local"
    CREATE_REMOTE = "create_remote"
    UPDATE_LOCAL = "update_local"
    UPDATE_REMOTE = "update_remote"
    DELETE_LOCAL = "delete_local"
    DELETE_REMOTE = "delete_remote"
    SKIP = "skip"

    @property
    def target(self) -> Optional[Side]:
        """Side this action writes to, or None for SKIP."""
        if self == ActionKind.SKIP:
            return None
        return Side.LOCAL if self.value.endswith("_local") else Side.REMOTE


# Sides a sync mode is not allowed to write to
_PROTECTED_SIDE = {
    SyncMode.BIDIRECTIONAL: None,
    SyncMode.REMOTE_TO_LOCAL: Side.REMOTE,
    SyncMode.LOCAL_TO_REMOTE: Side.LOCAL,
}


@dataclass
class SyncAction:
    """
    One decision of the reconciler.

    Attributes:
        key: Accumulator key ("mapping:<id>", "remote:<id>" or "local:<id>")
        kind: What to do
        remote: Provider side of the pair, if present
        local: CRM side of the pair, if present
        mapping: Existing mapping, if any
        resolution: Conflict outcome for updates of a divergent pair
        changed_fields: Fields that differ, for updates
        reason: Why a pair was skipped
    """

    key: str
    kind: ActionKind
    remote: Optional[NormalizedContact] = None
    local: Optional[LocalContact] = None
    mapping: Optional[Mapping] = None
    resolution: Optional[Resolution] = None
    changed_fields: list[FieldChange] = field(default_factory=list)
    reason: str = ""

    @property
    def is_mutation(self) -> bool:
        return self.kind != ActionKind.SKIP

    def describe(self) -> str:
        contact = self.local or self.remote
        label = contact.display_label if contact else self.key
        return f"{self.kind.value} {label}"


@dataclass
class ReconciliationPlan:
    """Every decision of one reconciliation, keyed by pair."""

    decisions: dict[str, SyncAction] = field(default_factory=dict)
    conflicts: int = 0

    @property
    def actions(self) -> list[SyncAction]:
        return list(self.decisions.values())

    @property
    def mutations(self) -> list[SyncAction]:
        return [a for a in self.decisions.values() if a.is_mutation]

    @property
    def skipped(self) -> int:
        return sum(1 for a in self.decisions.values() if not a.is_mutation)

    def count(self, kind: ActionKind) -> int:
        return sum(1 for a in self.decisions.values() if a.kind == kind)


class Reconciler:
    """
    Builds a ReconciliationPlan for one owner.

    Identity across the two stores comes only from mappings; an unmapped
    contact is always created on the other side, even when an identical
    contact already exists there.

    Usage:
        reconciler = Reconciler.for_config(config)
        plan = reconciler.plan(remote_contacts, local_contacts, mappings, tombstones)
        for action in plan.mutations:
            appliers.apply(action)
    """

    def __init__(
        self,
        resolver: ConflictResolver,
        deletion_handling: DeletionHandling = DeletionHandling.SOFT_DELETE,
        sync_mode: SyncMode = SyncMode.BIDIRECTIONAL,
    ):
        self.resolver = resolver
        self.deletion_handling = deletion_handling
        self.sync_mode = sync_mode

    @classmethod
    def for_config(cls, config: SyncConfig) -> "Reconciler":
        return cls(
            ConflictResolver(config.conflict_policy),
            deletion_handling=config.deletion_handling,
            sync_mode=config.sync_mode,
        )

    def plan(
        self,
        remote_contacts: list[NormalizedContact],
        local_contacts: list[LocalContact],
        mappings: list[Mapping],
        tombstones: Optional[list[Mapping]] = None,
        unreadable_remote_ids: Optional[set[str]] = None,
    ) -> ReconciliationPlan:
        """
        Decide what to do for every contact on both sides.

        Args:
            remote_contacts: Provider contacts, already normalized
            local_contacts: Live CRM contacts
            mappings: Active mappings of the owner
            tombstones: Soft-deleted mappings; an unmapped id that appears
                here was deleted through a previous run and is not
                re-created
            unreadable_remote_ids: Provider contacts that were listed but
                could not be normalized; their pairs are left undecided

        Returns:
            ReconciliationPlan with one decision per pair
        """
        unreadable = unreadable_remote_ids or set()
        by_remote = {m.remote_id: m for m in mappings}
        by_local = {m.local_id: m for m in mappings}
        remotes_by_id = {c.remote_id: c for c in remote_contacts}
        locals_by_id = {c.local_id: c for c in local_contacts}
        dead_remote = {m.remote_id for m in tombstones or []}
        dead_local = {m.local_id for m in tombstones or []}

        plan = ReconciliationPlan()

        # Pass 1: provider contacts
        for remote in remote_contacts:
            mapping = by_remote.get(remote.remote_id)
            if mapping is None:
                key = f"remote:{remote.remote_id}"
                if remote.remote_id in dead_remote:
                    self._decide(plan, SyncAction(
                        key, ActionKind.SKIP, remote=remote,
                        reason="Previously deleted through sync",
                    ))
                else:
                    self._decide(plan, SyncAction(key, ActionKind.CREATE_LOCAL, remote=remote))
                continue

            if mapping.key in plan.decisions:
                continue

            local = locals_by_id.get(mapping.local_id)
            if local is None:
                self._decide(plan, self._partner_missing(
                    mapping, ActionKind.DELETE_REMOTE, remote=remote
                ))
            else:
                self._decide(plan, self._compare(plan, mapping, remote, local))

        # Pass 2: CRM contacts
        for local in local_contacts:
            mapping = by_local.get(local.local_id)
            if mapping is None:
                key = f"local:{local.local_id}"
                if local.local_id in dead_local:
                    self._decide(plan, SyncAction(
                        key, ActionKind.SKIP, local=local,
                        reason="Previously deleted through sync",
                    ))
                else:
                    self._decide(plan, SyncAction(key, ActionKind.CREATE_REMOTE, local=local))
                continue

            if mapping.key in plan.decisions or mapping.remote_id in unreadable:
                continue

            remote = remotes_by_id.get(mapping.remote_id)
            if remote is None:
                self._decide(plan, self._partner_missing(
                    mapping, ActionKind.DELETE_LOCAL, local=local
                ))
            else:
                self._decide(plan, self._compare(plan, mapping, remote, local))

        logger.debug(
            f"Planned {len(plan.mutations)} mutations, {plan.skipped} skipped, "
            f"{plan.conflicts} conflicts"
        )
        return plan

    def _compare(
        self,
        plan: ReconciliationPlan,
        mapping: Mapping,
        remote: NormalizedContact,
        local: LocalContact,
    ) -> SyncAction:
        changes = compare_fields(remote, local)
        if not changes:
            return SyncAction(
                mapping.key, ActionKind.SKIP, remote=remote, local=local,
                mapping=mapping, reason="In sync",
            )

        plan.conflicts += 1
        resolution = self.resolver.resolve(remote.updated_at, local.updated_at)
        kind = (
            ActionKind.UPDATE_LOCAL
            if resolution.winner == Side.REMOTE
            else ActionKind.UPDATE_REMOTE
        )
        return SyncAction(
            mapping.key, kind, remote=remote, local=local, mapping=mapping,
            resolution=resolution, changed_fields=changes,
        )

    def _partner_missing(
        self,
        mapping: Mapping,
        kind: ActionKind,
        remote: Optional[NormalizedContact] = None,
        local: Optional[LocalContact] = None,
    ) -> SyncAction:
        if self.deletion_handling == DeletionHandling.SKIP:
            return SyncAction(
                mapping.key, ActionKind.SKIP, remote=remote, local=local,
                mapping=mapping, reason="Deletion handling is set to skip",
            )
        return SyncAction(mapping.key, kind, remote=remote, local=local, mapping=mapping)

    def _decide(self, plan: ReconciliationPlan, action: SyncAction) -> None:
        """Record a decision, downgrading writes to a side the sync mode protects."""
        protected = _PROTECTED_SIDE[self.sync_mode]
        if protected is not None and action.kind.target == protected:
            logger.debug(f"Sync mode {self.sync_mode.value} blocks {action.describe()}")
            action.reason = (
                f"Sync mode {self.sync_mode.value} does not write to the "
                f"{protected.value} side"
            )
            action.kind = ActionKind.SKIP
        plan.decisions[action.key] = action

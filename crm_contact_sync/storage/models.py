"""
Persistent record types for contact synchronization.

Defines the rows stored by SyncDatabase:
- SyncConfig: one per (owner, provider) with policies and rolling statistics
- Mapping: the link between one local and one remote contact
- SyncRun: one record per reconciliation run with its counters
- ChangeLogEntry: one immutable audit row per mutation decision
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Optional


def utcnow() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


class SyncMode(Enum):
    """Which sides a run is allowed to mutate."""

    BIDIRECTIONAL = "bidirectional"
    REMOTE_TO_LOCAL = "remote_to_local"
    LOCAL_TO_REMOTE = "local_to_remote"


class ConflictPolicy(Enum):
    """How a divergent mapped pair picks its winner."""

    NEWEST_WINS = "newest_wins"
    PROVIDER_WINS = "provider_wins"
    LOCAL_WINS = "local_wins"


class DeletionHandling(Enum):
    """What happens to the surviving side when its partner disappears."""

    SOFT_DELETE = "soft_delete"
    HARD_DELETE = "hard_delete"
    SKIP = "skip"


class MappingStatus(Enum):
    SYNCED = "synced"
    PENDING = "pending"
    CONFLICT = "conflict"
    ERROR = "error"


class RunStatus(Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    PARTIAL = "partial"
    FAILED = "failed"


class RunTrigger(Enum):
    MANUAL = "manual"
    AUTO = "auto"


class Side(Enum):
    """One of the two data stores being reconciled."""

    REMOTE = "remote"
    LOCAL = "local"


class ChangeType(Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class Direction(Enum):
    REMOTE_TO_LOCAL = "remote_to_local"
    LOCAL_TO_REMOTE = "local_to_remote"


class Operation(Enum):
    """Audit operation names, one per mutation applier."""

    CREATED_LOCAL = "created_local"
    UPDATED_LOCAL = "updated_local"
    DELETED_LOCAL = "deleted_local"
    CREATED_REMOTE = "created_remote"
    UPDATED_REMOTE = "updated_remote"
    DELETED_REMOTE = "deleted_remote"

    @property
    def change_type(self) -> ChangeType:
        verb = self.value.split("_")[0]
        return {
            "created": ChangeType.CREATE,
            "updated": ChangeType.UPDATE,
            "deleted": ChangeType.DELETE,
        }[verb]

    @property
    def direction(self) -> Direction:
        if self.value.endswith("_local"):
            return Direction.REMOTE_TO_LOCAL
        return Direction.LOCAL_TO_REMOTE


# =============================================================================
# Sync Configuration
# =============================================================================


@dataclass
class SyncStatistics:
    """
    Rolling statistics kept on a SyncConfig.

    Updated once per finished run, including failed runs.
    """

    total_runs: int = 0
    successful_runs: int = 0
    failed_runs: int = 0
    last_run_duration: float = 0.0
    total_contacts_synced: int = 0

    def record(
        self, status: RunStatus, duration_seconds: float, contacts_synced: int
    ) -> None:
        """
        Fold one finished run into the totals.

        Only COMPLETED runs count as successful; PARTIAL and FAILED runs
        count as failed.
        """
        self.total_runs += 1
        if status == RunStatus.COMPLETED:
            self.successful_runs += 1
        else:
            self.failed_runs += 1
        self.last_run_duration = duration_seconds
        self.total_contacts_synced += contacts_synced

    @property
    def success_rate(self) -> float:
        """Percentage of successful runs (0.0 when nothing has run)."""
        if not self.total_runs:
            return 0.0
        return round(self.successful_runs / self.total_runs * 100, 2)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[dict[str, Any]]) -> "SyncStatistics":
        if not data:
            return cls()
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)


@dataclass
class SyncConfig:
    """
    Per-owner synchronization settings for one provider.

    Attributes:
        id: Database identifier
        owner_id: CRM user that owns the contacts
        provider: Provider registry key (e.g. "google")
        sync_mode: Which sides may be mutated
        conflict_policy: Winner selection for divergent pairs
        deletion_handling: Deletion propagation policy
        is_active: False once disconnected
        auto_sync_enabled: Whether the daemon schedules runs
        sync_frequency: Minutes between automatic runs
        credential_ref: Opaque reference to stored provider credentials
        remote_account_email: Email of the connected provider account
        field_mapping: Stored per-owner field mapping (not used by comparison)
        last_run_at: Finish time of the last run
        next_run_at: When the daemon should run next (None if auto-sync is off)
        stats: Rolling run statistics
    """

    owner_id: str
    provider: str = "google"
    id: Optional[int] = None
    sync_mode: SyncMode = SyncMode.BIDIRECTIONAL
    conflict_policy: ConflictPolicy = ConflictPolicy.NEWEST_WINS
    deletion_handling: DeletionHandling = DeletionHandling.SOFT_DELETE
    is_active: bool = True
    auto_sync_enabled: bool = False
    sync_frequency: int = 60
    credential_ref: Optional[str] = None
    remote_account_email: Optional[str] = None
    field_mapping: dict[str, Any] = field(default_factory=dict)
    last_run_at: Optional[datetime] = None
    next_run_at: Optional[datetime] = None
    stats: SyncStatistics = field(default_factory=SyncStatistics)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def schedule_next_run(self, now: Optional[datetime] = None) -> None:
        """Set next_run_at from sync_frequency, or clear it when auto-sync is off."""
        if self.auto_sync_enabled:
            self.next_run_at = (now or utcnow()) + timedelta(
                minutes=self.sync_frequency
            )
        else:
            self.next_run_at = None

    def to_public_dict(self) -> dict[str, Any]:
        """Serializable view of the config without the credential reference."""
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "provider": self.provider,
            "sync_mode": self.sync_mode.value,
            "conflict_policy": self.conflict_policy.value,
            "deletion_handling": self.deletion_handling.value,
            "is_active": self.is_active,
            "auto_sync_enabled": self.auto_sync_enabled,
            "sync_frequency": self.sync_frequency,
            "remote_account_email": self.remote_account_email,
            "field_mapping": self.field_mapping,
            "last_run_at": _iso(self.last_run_at),
            "next_run_at": _iso(self.next_run_at),
            "stats": self.stats.to_dict(),
        }


# =============================================================================
# Contact Mapping
# =============================================================================


@dataclass
class Mapping:
    """
    Link between one local contact and one remote contact.

    Identity across the two stores is defined only by these rows.
    """

    owner_id: str
    local_id: str
    remote_id: str
    id: Optional[int] = None
    version_tag: Optional[str] = None
    status: MappingStatus = MappingStatus.SYNCED
    is_deleted: bool = False
    last_synced_at: Optional[datetime] = None
    local_updated_at: Optional[datetime] = None
    remote_updated_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None

    @property
    def key(self) -> str:
        """Key used to track this pair through one reconciliation."""
        return f"mapping:{self.id}"


# =============================================================================
# Sync Runs
# =============================================================================


@dataclass
class RunCounters:
    """Per-run operation counters."""

    created_local: int = 0
    updated_local: int = 0
    deleted_local: int = 0
    created_remote: int = 0
    updated_remote: int = 0
    deleted_remote: int = 0
    skipped: int = 0
    conflicts: int = 0
    errors: int = 0

    @property
    def total_created(self) -> int:
        return self.created_local + self.created_remote

    @property
    def total_updated(self) -> int:
        return self.updated_local + self.updated_remote

    @property
    def total_deleted(self) -> int:
        return self.deleted_local + self.deleted_remote

    @property
    def total_mutations(self) -> int:
        """Creates, updates and deletes on both sides (one change log row each)."""
        return self.total_created + self.total_updated + self.total_deleted

    @property
    def total_contacts(self) -> int:
        """Contacts touched or confirmed in sync during the run."""
        return self.total_created + self.total_updated + self.skipped

    def record(self, operation: Operation) -> None:
        """Increment the counter matching a successful mutation."""
        setattr(self, operation.value, getattr(self, operation.value) + 1)

    def summary(self) -> str:
        """
        Short human-readable summary, e.g.
        ``"2 created locally, 1 updated in provider, 5 skipped"``.
        """
        labels = [
            (self.created_local, "created locally"),
            (self.updated_local, "updated locally"),
            (self.deleted_local, "deleted locally"),
            (self.created_remote, "created in provider"),
            (self.updated_remote, "updated in provider"),
            (self.deleted_remote, "deleted in provider"),
            (self.skipped, "skipped"),
            (self.conflicts, "conflicts resolved"),
            (self.errors, "errors"),
        ]
        parts = [f"{count} {label}" for count, label in labels if count > 0]
        return ", ".join(parts) if parts else "No changes"

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


@dataclass
class SyncRun:
    """One reconciliation run and its outcome."""

    config_id: int
    owner_id: str
    id: Optional[str] = None
    trigger: RunTrigger = RunTrigger.MANUAL
    sync_mode: SyncMode = SyncMode.BIDIRECTIONAL
    status: RunStatus = RunStatus.IN_PROGRESS
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration: Optional[float] = None
    total_contacts: int = 0
    counters: RunCounters = field(default_factory=RunCounters)
    error_details: list[dict[str, Any]] = field(default_factory=list)
    summary: Optional[str] = None

    @property
    def is_finished(self) -> bool:
        return self.status != RunStatus.IN_PROGRESS

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "config_id": self.config_id,
            "owner_id": self.owner_id,
            "trigger": self.trigger.value,
            "sync_mode": self.sync_mode.value,
            "status": self.status.value,
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "duration": self.duration,
            "total_contacts": self.total_contacts,
            **self.counters.to_dict(),
            "error_details": self.error_details,
            "summary": self.summary,
        }


# =============================================================================
# Change Log
# =============================================================================


@dataclass
class ChangeLogEntry:
    """Immutable audit row for one mutation decision."""

    run_id: str
    owner_id: str
    operation: Operation
    local_id: Optional[str] = None
    remote_id: Optional[str] = None
    id: Optional[int] = None
    contact_name: Optional[str] = None
    contact_email: Optional[str] = None
    fields_before: Optional[dict[str, Any]] = None
    fields_after: Optional[dict[str, Any]] = None
    changed_fields: list[dict[str, Any]] = field(default_factory=list)
    conflict_reason: Optional[str] = None
    conflict_policy: Optional[str] = None
    winning_side: Optional[Side] = None
    local_updated_at: Optional[datetime] = None
    remote_updated_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @property
    def change_type(self) -> ChangeType:
        return self.operation.change_type

    @property
    def direction(self) -> Direction:
        return self.operation.direction

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "run_id": self.run_id,
            "owner_id": self.owner_id,
            "local_id": self.local_id,
            "remote_id": self.remote_id,
            "operation": self.operation.value,
            "change_type": self.change_type.value,
            "direction": self.direction.value,
            "contact_name": self.contact_name,
            "contact_email": self.contact_email,
            "fields_before": self.fields_before,
            "fields_after": self.fields_after,
            "changed_fields": self.changed_fields,
            "conflict_reason": self.conflict_reason,
            "conflict_policy": self.conflict_policy,
            "winning_side": self.winning_side.value if self.winning_side else None,
            "local_updated_at": _iso(self.local_updated_at),
            "remote_updated_at": _iso(self.remote_updated_at),
            "created_at": _iso(self.created_at),
        }


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None

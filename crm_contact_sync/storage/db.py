"""
SQLite database module for contact sync state.

Provides persistent storage for sync configurations, contact mappings,
sync runs, the change log and the CRM-side contact table.
"""

import json
import logging
import sqlite3
import threading
import uuid
from collections.abc import Generator
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Optional

from crm_contact_sync.storage.models import (
    ChangeLogEntry,
    ConflictPolicy,
    DeletionHandling,
    Mapping,
    MappingStatus,
    Operation,
    RunCounters,
    RunStatus,
    RunTrigger,
    Side,
    SyncConfig,
    SyncMode,
    SyncRun,
    SyncStatistics,
    utcnow,
)

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS sync_config (
    id INTEGER PRIMARY KEY,
    owner_id TEXT NOT NULL,
    provider TEXT NOT NULL,
    sync_mode TEXT NOT NULL,
    conflict_policy TEXT NOT NULL,
    deletion_handling TEXT NOT NULL,
    is_active INTEGER NOT NULL DEFAULT 1,
    auto_sync_enabled INTEGER NOT NULL DEFAULT 0,
    sync_frequency INTEGER NOT NULL DEFAULT 60,
    credential_ref TEXT,
    remote_account_email TEXT,
    field_mapping TEXT,
    last_run_at TEXT,
    next_run_at TEXT,
    stats TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE(owner_id, provider)
);

CREATE TABLE IF NOT EXISTS contact_mapping (
    id INTEGER PRIMARY KEY,
    owner_id TEXT NOT NULL,
    local_id TEXT NOT NULL,
    remote_id TEXT NOT NULL,
    version_tag TEXT,
    status TEXT NOT NULL DEFAULT 'synced',
    is_deleted INTEGER NOT NULL DEFAULT 0,
    last_synced_at TEXT,
    local_updated_at TEXT,
    remote_updated_at TEXT,
    deleted_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_mapping_active_remote
    ON contact_mapping(owner_id, remote_id) WHERE is_deleted = 0;
CREATE UNIQUE INDEX IF NOT EXISTS idx_mapping_active_local
    ON contact_mapping(owner_id, local_id) WHERE is_deleted = 0;
CREATE INDEX IF NOT EXISTS idx_mapping_owner ON contact_mapping(owner_id);

CREATE TABLE IF NOT EXISTS sync_run (
    id TEXT PRIMARY KEY,
    config_id INTEGER NOT NULL,
    owner_id TEXT NOT NULL,
    trigger_type TEXT NOT NULL,
    sync_mode TEXT NOT NULL,
    status TEXT NOT NULL,
    started_at TEXT NOT NULL,
    completed_at TEXT,
    duration REAL,
    total_contacts INTEGER NOT NULL DEFAULT 0,
    created_local INTEGER NOT NULL DEFAULT 0,
    updated_local INTEGER NOT NULL DEFAULT 0,
    deleted_local INTEGER NOT NULL DEFAULT 0,
    created_remote INTEGER NOT NULL DEFAULT 0,
    updated_remote INTEGER NOT NULL DEFAULT 0,
    deleted_remote INTEGER NOT NULL DEFAULT 0,
    skipped INTEGER NOT NULL DEFAULT 0,
    conflicts INTEGER NOT NULL DEFAULT 0,
    errors INTEGER NOT NULL DEFAULT 0,
    error_details TEXT,
    summary TEXT
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_sync_run_in_progress
    ON sync_run(config_id) WHERE status = 'in_progress';
CREATE INDEX IF NOT EXISTS idx_sync_run_owner ON sync_run(owner_id, started_at);

CREATE TABLE IF NOT EXISTS change_log (
    id INTEGER PRIMARY KEY,
    run_id TEXT NOT NULL,
    owner_id TEXT NOT NULL,
    local_id TEXT,
    remote_id TEXT,
    operation TEXT NOT NULL,
    change_type TEXT NOT NULL,
    direction TEXT NOT NULL,
    contact_name TEXT,
    contact_email TEXT,
    fields_before TEXT,
    fields_after TEXT,
    changed_fields TEXT,
    conflict_reason TEXT,
    conflict_policy TEXT,
    winning_side TEXT,
    local_updated_at TEXT,
    remote_updated_at TEXT,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_change_log_run ON change_log(run_id);
CREATE INDEX IF NOT EXISTS idx_change_log_owner ON change_log(owner_id);
CREATE INDEX IF NOT EXISTS idx_change_log_local ON change_log(local_id);

CREATE TABLE IF NOT EXISTS crm_contact (
    id TEXT PRIMARY KEY,
    owner_id TEXT NOT NULL,
    name TEXT,
    email TEXT,
    phone TEXT,
    address TEXT,
    organization TEXT,
    title TEXT,
    notes TEXT,
    is_deleted INTEGER NOT NULL DEFAULT 0,
    deleted_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_crm_contact_owner ON crm_contact(owner_id);
"""

_TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%f+00:00"

_CHANGE_LOG_FILTERS = ("run_id", "owner_id", "local_id", "operation", "change_type")


class PersistenceError(Exception):
    """Raised when a database operation fails."""

    pass


class IntegrityViolation(PersistenceError):
    """Raised when a write breaks a uniqueness constraint."""

    pass


def to_db_timestamp(value: Optional[datetime]) -> Optional[str]:
    """
    Serialize a datetime as fixed-width UTC text.

    Naive datetimes are taken to be UTC. The fixed width keeps string
    comparison in SQL consistent with chronological order.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime(_TIMESTAMP_FORMAT)


def from_db_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value)


def _dump(value: Any) -> Optional[str]:
    return None if value is None else json.dumps(value, default=str)


def _load(value: Optional[str], default: Any = None) -> Any:
    if value is None:
        return default
    return json.loads(value)


class SyncDatabase:
    """
    SQLite database manager for contact sync state.

    Provides methods for:
    - Storing per-owner sync configurations
    - Tracking local/remote contact mappings
    - Recording sync runs and their counters
    - Appending and querying the change log
    - Backing the CRM contact store

    Usage:
        db = SyncDatabase('/path/to/sync.db')
        db.initialize()

        # Or use in-memory for testing:
        db = SyncDatabase(':memory:')
        db.initialize()
    """

    def __init__(self, db_path: str):
        """
        Initialize the database manager.

        Args:
            db_path: Path to SQLite database file, or ':memory:' for in-memory database
        """
        self.db_path = db_path
        self._shared_connection: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()

    @property
    def is_memory(self) -> bool:
        return self.db_path == ":memory:"

    def _get_connection(self) -> sqlite3.Connection:
        """
        Get a database connection.

        In-memory databases share one connection so the schema persists;
        it may be used from worker threads, guarded by the instance lock.
        File databases open a new connection per operation.
        """
        if self.is_memory:
            if self._shared_connection is None:
                self._shared_connection = sqlite3.connect(
                    ":memory:", check_same_thread=False
                )
                self._shared_connection.row_factory = sqlite3.Row
            return self._shared_connection

        conn = sqlite3.connect(self.db_path, timeout=30)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def connection(self) -> Generator[sqlite3.Connection, None, None]:
        """
        Context manager for database connections.

        Commits on success and rolls back on error. sqlite3 errors are
        re-raised as PersistenceError (IntegrityViolation for constraint
        failures).

        Usage:
            with db.connection() as conn:
                conn.execute("SELECT * FROM sync_run")
        """
        with self._lock:
            conn = self._get_connection()
            try:
                yield conn
                conn.commit()
            except sqlite3.IntegrityError as e:
                conn.rollback()
                raise IntegrityViolation(str(e)) from e
            except sqlite3.Error as e:
                conn.rollback()
                raise PersistenceError(f"Database operation failed: {e}") from e
            except Exception:
                conn.rollback()
                raise
            finally:
                if not self.is_memory:
                    conn.close()

    def initialize(self) -> None:
        """Create tables and indexes if they don't exist."""
        with self.connection() as conn:
            conn.executescript(SCHEMA)
        logger.debug(f"Initialized database at {self.db_path}")

    def close(self) -> None:
        """Close the shared in-memory connection, if any."""
        if self._shared_connection is not None:
            self._shared_connection.close()
            self._shared_connection = None

    # =========================================================================
    # Sync Config Operations
    # =========================================================================

    def _row_to_config(self, row: sqlite3.Row) -> SyncConfig:
        return SyncConfig(
            id=row["id"],
            owner_id=row["owner_id"],
            provider=row["provider"],
            sync_mode=SyncMode(row["sync_mode"]),
            conflict_policy=ConflictPolicy(row["conflict_policy"]),
            deletion_handling=DeletionHandling(row["deletion_handling"]),
            is_active=bool(row["is_active"]),
            auto_sync_enabled=bool(row["auto_sync_enabled"]),
            sync_frequency=row["sync_frequency"],
            credential_ref=row["credential_ref"],
            remote_account_email=row["remote_account_email"],
            field_mapping=_load(row["field_mapping"], {}),
            last_run_at=from_db_timestamp(row["last_run_at"]),
            next_run_at=from_db_timestamp(row["next_run_at"]),
            stats=SyncStatistics.from_dict(_load(row["stats"])),
            created_at=from_db_timestamp(row["created_at"]),
            updated_at=from_db_timestamp(row["updated_at"]),
        )

    def create_config(self, config: SyncConfig) -> SyncConfig:
        """
        Insert a new sync configuration.

        Raises:
            IntegrityViolation: If the owner already has a config for the provider
        """
        now = utcnow()
        with self.connection() as conn:
            cursor = conn.execute(
                """
                INSERT INTO sync_config (
                    owner_id, provider, sync_mode, conflict_policy,
                    deletion_handling, is_active, auto_sync_enabled,
                    sync_frequency, credential_ref, remote_account_email,
                    field_mapping, last_run_at, next_run_at, stats,
                    created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    config.owner_id,
                    config.provider,
                    config.sync_mode.value,
                    config.conflict_policy.value,
                    config.deletion_handling.value,
                    int(config.is_active),
                    int(config.auto_sync_enabled),
                    config.sync_frequency,
                    config.credential_ref,
                    config.remote_account_email,
                    _dump(config.field_mapping),
                    to_db_timestamp(config.last_run_at),
                    to_db_timestamp(config.next_run_at),
                    _dump(config.stats.to_dict()),
                    to_db_timestamp(now),
                    to_db_timestamp(now),
                ),
            )
            config.id = cursor.lastrowid
        config.created_at = config.updated_at = now
        return config

    def get_config(self, config_id: int) -> Optional[SyncConfig]:
        with self.connection() as conn:
            row = conn.execute(
                "SELECT * FROM sync_config WHERE id = ?", (config_id,)
            ).fetchone()
        return self._row_to_config(row) if row else None

    def get_config_for_owner(
        self, owner_id: str, provider: str = "google"
    ) -> Optional[SyncConfig]:
        with self.connection() as conn:
            row = conn.execute(
                "SELECT * FROM sync_config WHERE owner_id = ? AND provider = ?",
                (owner_id, provider),
            ).fetchone()
        return self._row_to_config(row) if row else None

    def update_config(self, config: SyncConfig) -> None:
        """Persist every mutable column of an existing config."""
        if config.id is None:
            raise PersistenceError("Cannot update a config without an id")

        config.updated_at = utcnow()
        with self.connection() as conn:
            conn.execute(
                """
                UPDATE sync_config SET
                    sync_mode = ?, conflict_policy = ?, deletion_handling = ?,
                    is_active = ?, auto_sync_enabled = ?, sync_frequency = ?,
                    credential_ref = ?, remote_account_email = ?,
                    field_mapping = ?, last_run_at = ?, next_run_at = ?,
                    stats = ?, updated_at = ?
                WHERE id = ?
                """,
                (
                    config.sync_mode.value,
                    config.conflict_policy.value,
                    config.deletion_handling.value,
                    int(config.is_active),
                    int(config.auto_sync_enabled),
                    config.sync_frequency,
                    config.credential_ref,
                    config.remote_account_email,
                    _dump(config.field_mapping),
                    to_db_timestamp(config.last_run_at),
                    to_db_timestamp(config.next_run_at),
                    _dump(config.stats.to_dict()),
                    to_db_timestamp(config.updated_at),
                    config.id,
                ),
            )

    def list_due_configs(self, now: Optional[datetime] = None) -> list[SyncConfig]:
        """
        Active, auto-sync-enabled configs whose next_run_at has passed.

        Configs that never ran (next_run_at NULL) are due immediately.
        """
        now_text = to_db_timestamp(now or utcnow())
        with self.connection() as conn:
            rows = conn.execute(
                """
                SELECT * FROM sync_config
                WHERE is_active = 1 AND auto_sync_enabled = 1
                  AND (next_run_at IS NULL OR next_run_at <= ?)
                ORDER BY id
                """,
                (now_text,),
            ).fetchall()
        return [self._row_to_config(row) for row in rows]

    # =========================================================================
    # Contact Mapping Operations
    # =========================================================================

    def _row_to_mapping(self, row: sqlite3.Row) -> Mapping:
        return Mapping(
            id=row["id"],
            owner_id=row["owner_id"],
            local_id=row["local_id"],
            remote_id=row["remote_id"],
            version_tag=row["version_tag"],
            status=MappingStatus(row["status"]),
            is_deleted=bool(row["is_deleted"]),
            last_synced_at=from_db_timestamp(row["last_synced_at"]),
            local_updated_at=from_db_timestamp(row["local_updated_at"]),
            remote_updated_at=from_db_timestamp(row["remote_updated_at"]),
            deleted_at=from_db_timestamp(row["deleted_at"]),
        )

    def create_mapping(self, mapping: Mapping) -> Mapping:
        """
        Insert a new active mapping.

        Raises:
            IntegrityViolation: If either id already has an active mapping
        """
        now = to_db_timestamp(utcnow())
        with self.connection() as conn:
            cursor = conn.execute(
                """
                INSERT INTO contact_mapping (
                    owner_id, local_id, remote_id, version_tag, status,
                    is_deleted, last_synced_at, local_updated_at,
                    remote_updated_at, deleted_at, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    mapping.owner_id,
                    mapping.local_id,
                    mapping.remote_id,
                    mapping.version_tag,
                    mapping.status.value,
                    int(mapping.is_deleted),
                    to_db_timestamp(mapping.last_synced_at),
                    to_db_timestamp(mapping.local_updated_at),
                    to_db_timestamp(mapping.remote_updated_at),
                    to_db_timestamp(mapping.deleted_at),
                    now,
                    now,
                ),
            )
            mapping.id = cursor.lastrowid
        return mapping

    def get_mapping(self, mapping_id: int) -> Optional[Mapping]:
        with self.connection() as conn:
            row = conn.execute(
                "SELECT * FROM contact_mapping WHERE id = ?", (mapping_id,)
            ).fetchone()
        return self._row_to_mapping(row) if row else None

    def get_active_mappings(self, owner_id: str) -> list[Mapping]:
        """All mappings for an owner that are not soft-deleted."""
        with self.connection() as conn:
            rows = conn.execute(
                "SELECT * FROM contact_mapping "
                "WHERE owner_id = ? AND is_deleted = 0 ORDER BY id",
                (owner_id,),
            ).fetchall()
        return [self._row_to_mapping(row) for row in rows]

    def get_deleted_mappings(self, owner_id: str) -> list[Mapping]:
        """Soft-deleted mappings (tombstones) for an owner."""
        with self.connection() as conn:
            rows = conn.execute(
                "SELECT * FROM contact_mapping "
                "WHERE owner_id = ? AND is_deleted = 1 ORDER BY id",
                (owner_id,),
            ).fetchall()
        return [self._row_to_mapping(row) for row in rows]

    def update_mapping(self, mapping: Mapping) -> None:
        if mapping.id is None:
            raise PersistenceError("Cannot update a mapping without an id")

        with self.connection() as conn:
            conn.execute(
                """
                UPDATE contact_mapping SET
                    version_tag = ?, status = ?, is_deleted = ?,
                    last_synced_at = ?, local_updated_at = ?,
                    remote_updated_at = ?, deleted_at = ?, updated_at = ?
                WHERE id = ?
                """,
                (
                    mapping.version_tag,
                    mapping.status.value,
                    int(mapping.is_deleted),
                    to_db_timestamp(mapping.last_synced_at),
                    to_db_timestamp(mapping.local_updated_at),
                    to_db_timestamp(mapping.remote_updated_at),
                    to_db_timestamp(mapping.deleted_at),
                    to_db_timestamp(utcnow()),
                    mapping.id,
                ),
            )

    def count_mappings(self, owner_id: str, include_deleted: bool = False) -> int:
        query = "SELECT COUNT(*) FROM contact_mapping WHERE owner_id = ?"
        if not include_deleted:
            query += " AND is_deleted = 0"
        with self.connection() as conn:
            return conn.execute(query, (owner_id,)).fetchone()[0]

    # =========================================================================
    # Sync Run Operations
    # =========================================================================

    def _row_to_run(self, row: sqlite3.Row) -> SyncRun:
        counters = RunCounters(
            **{name: row[name] for name in RunCounters.__dataclass_fields__}
        )
        return SyncRun(
            id=row["id"],
            config_id=row["config_id"],
            owner_id=row["owner_id"],
            trigger=RunTrigger(row["trigger_type"]),
            sync_mode=SyncMode(row["sync_mode"]),
            status=RunStatus(row["status"]),
            started_at=from_db_timestamp(row["started_at"]),
            completed_at=from_db_timestamp(row["completed_at"]),
            duration=row["duration"],
            total_contacts=row["total_contacts"],
            counters=counters,
            error_details=_load(row["error_details"], []),
            summary=row["summary"],
        )

    def create_run(self, run: SyncRun) -> SyncRun:
        """
        Insert a new in-progress run and assign its id.

        Raises:
            IntegrityViolation: If the config already has an in-progress run
        """
        run.id = run.id or uuid.uuid4().hex
        run.started_at = run.started_at or utcnow()
        run.status = RunStatus.IN_PROGRESS
        with self.connection() as conn:
            conn.execute(
                """
                INSERT INTO sync_run (
                    id, config_id, owner_id, trigger_type, sync_mode, status,
                    started_at, error_details
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    run.id,
                    run.config_id,
                    run.owner_id,
                    run.trigger.value,
                    run.sync_mode.value,
                    run.status.value,
                    to_db_timestamp(run.started_at),
                    _dump(run.error_details),
                ),
            )
        return run

    def finalize_run(self, run: SyncRun) -> None:
        """Write the final status, counters and summary of a run."""
        counters = run.counters
        with self.connection() as conn:
            conn.execute(
                """
                UPDATE sync_run SET
                    status = ?, completed_at = ?, duration = ?,
                    total_contacts = ?, created_local = ?, updated_local = ?,
                    deleted_local = ?, created_remote = ?, updated_remote = ?,
                    deleted_remote = ?, skipped = ?, conflicts = ?, errors = ?,
                    error_details = ?, summary = ?
                WHERE id = ?
                """,
                (
                    run.status.value,
                    to_db_timestamp(run.completed_at),
                    run.duration,
                    run.total_contacts,
                    counters.created_local,
                    counters.updated_local,
                    counters.deleted_local,
                    counters.created_remote,
                    counters.updated_remote,
                    counters.deleted_remote,
                    counters.skipped,
                    counters.conflicts,
                    counters.errors,
                    _dump(run.error_details),
                    run.summary,
                    run.id,
                ),
            )

    def get_run(self, run_id: str) -> Optional[SyncRun]:
        with self.connection() as conn:
            row = conn.execute(
                "SELECT * FROM sync_run WHERE id = ?", (run_id,)
            ).fetchone()
        return self._row_to_run(row) if row else None

    def get_active_run(self, config_id: int) -> Optional[SyncRun]:
        with self.connection() as conn:
            row = conn.execute(
                "SELECT * FROM sync_run WHERE config_id = ? AND status = ?",
                (config_id, RunStatus.IN_PROGRESS.value),
            ).fetchone()
        return self._row_to_run(row) if row else None

    def list_runs(self, owner_id: str, limit: int = 20, offset: int = 0) -> list[SyncRun]:
        """Runs for an owner, newest first."""
        with self.connection() as conn:
            rows = conn.execute(
                "SELECT * FROM sync_run WHERE owner_id = ? "
                "ORDER BY started_at DESC, rowid DESC LIMIT ? OFFSET ?",
                (owner_id, limit, offset),
            ).fetchall()
        return [self._row_to_run(row) for row in rows]

    def count_runs(self, owner_id: str) -> int:
        with self.connection() as conn:
            return conn.execute(
                "SELECT COUNT(*) FROM sync_run WHERE owner_id = ?", (owner_id,)
            ).fetchone()[0]

    def fail_stale_runs(self, config_id: int, started_before: datetime) -> int:
        """
        Mark in-progress runs that started before a cutoff as failed.

        Returns:
            Number of runs marked failed
        """
        now = to_db_timestamp(utcnow())
        with self.connection() as conn:
            cursor = conn.execute(
                """
                UPDATE sync_run SET
                    status = ?, completed_at = ?, errors = errors + 1,
                    summary = 'Run abandoned: exceeded the stale run limit'
                WHERE config_id = ? AND status = ? AND started_at < ?
                """,
                (
                    RunStatus.FAILED.value,
                    now,
                    config_id,
                    RunStatus.IN_PROGRESS.value,
                    to_db_timestamp(started_before),
                ),
            )
            return cursor.rowcount

    # =========================================================================
    # Change Log Operations
    # =========================================================================

    def _row_to_change(self, row: sqlite3.Row) -> ChangeLogEntry:
        return ChangeLogEntry(
            id=row["id"],
            run_id=row["run_id"],
            owner_id=row["owner_id"],
            local_id=row["local_id"],
            remote_id=row["remote_id"],
            operation=Operation(row["operation"]),
            contact_name=row["contact_name"],
            contact_email=row["contact_email"],
            fields_before=_load(row["fields_before"]),
            fields_after=_load(row["fields_after"]),
            changed_fields=_load(row["changed_fields"], []),
            conflict_reason=row["conflict_reason"],
            conflict_policy=row["conflict_policy"],
            winning_side=Side(row["winning_side"]) if row["winning_side"] else None,
            local_updated_at=from_db_timestamp(row["local_updated_at"]),
            remote_updated_at=from_db_timestamp(row["remote_updated_at"]),
            created_at=from_db_timestamp(row["created_at"]),
        )

    def add_change_log_entry(self, entry: ChangeLogEntry) -> ChangeLogEntry:
        """Append one change log row. Rows are never updated afterwards."""
        entry.created_at = entry.created_at or utcnow()
        with self.connection() as conn:
            cursor = conn.execute(
                """
                INSERT INTO change_log (
                    run_id, owner_id, local_id, remote_id, operation,
                    change_type, direction, contact_name, contact_email,
                    fields_before, fields_after, changed_fields,
                    conflict_reason, conflict_policy, winning_side,
                    local_updated_at, remote_updated_at, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    entry.run_id,
                    entry.owner_id,
                    entry.local_id,
                    entry.remote_id,
                    entry.operation.value,
                    entry.change_type.value,
                    entry.direction.value,
                    entry.contact_name,
                    entry.contact_email,
                    _dump(entry.fields_before),
                    _dump(entry.fields_after),
                    _dump(entry.changed_fields),
                    entry.conflict_reason,
                    entry.conflict_policy,
                    entry.winning_side.value if entry.winning_side else None,
                    to_db_timestamp(entry.local_updated_at),
                    to_db_timestamp(entry.remote_updated_at),
                    to_db_timestamp(entry.created_at),
                ),
            )
            entry.id = cursor.lastrowid
        return entry

    def _change_log_where(self, filters: dict[str, Any]) -> tuple[str, list[Any]]:
        clauses = []
        params: list[Any] = []
        for name in _CHANGE_LOG_FILTERS:
            value = filters.get(name)
            if value is not None:
                clauses.append(f"{name} = ?")
                params.append(value)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        return where, params

    def query_change_log(
        self, limit: int = 50, offset: int = 0, **filters: Any
    ) -> list[ChangeLogEntry]:
        """
        Change log rows matching the given filters, newest first.

        Filters: run_id, owner_id, local_id, operation, change_type.
        """
        where, params = self._change_log_where(filters)
        with self.connection() as conn:
            rows = conn.execute(
                f"SELECT * FROM change_log{where} ORDER BY id DESC LIMIT ? OFFSET ?",
                (*params, limit, offset),
            ).fetchall()
        return [self._row_to_change(row) for row in rows]

    def count_change_log(self, **filters: Any) -> int:
        where, params = self._change_log_where(filters)
        with self.connection() as conn:
            return conn.execute(
                f"SELECT COUNT(*) FROM change_log{where}", params
            ).fetchone()[0]

    # =========================================================================
    # CRM Contact Operations
    # =========================================================================

    def insert_contact(self, owner_id: str, fields: dict[str, Any]) -> dict[str, Any]:
        """Insert a CRM contact row and return it."""
        contact_id = uuid.uuid4().hex
        now = to_db_timestamp(utcnow())
        with self.connection() as conn:
            conn.execute(
                """
                INSERT INTO crm_contact (
                    id, owner_id, name, email, phone, address, organization,
                    title, notes, is_deleted, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 0, ?, ?)
                """,
                (
                    contact_id,
                    owner_id,
                    fields.get("name"),
                    fields.get("email"),
                    fields.get("phone"),
                    fields.get("address"),
                    fields.get("organization"),
                    fields.get("title"),
                    fields.get("notes"),
                    now,
                    now,
                ),
            )
            row = conn.execute(
                "SELECT * FROM crm_contact WHERE id = ?", (contact_id,)
            ).fetchone()
        return dict(row)

    def update_contact(self, contact_id: str, fields: dict[str, Any]) -> dict[str, Any]:
        """
        Overwrite a CRM contact's fields and bump updated_at.

        Raises:
            PersistenceError: If the contact does not exist
        """
        with self.connection() as conn:
            cursor = conn.execute(
                """
                UPDATE crm_contact SET
                    name = ?, email = ?, phone = ?, address = ?,
                    organization = ?, title = ?, notes = ?, updated_at = ?
                WHERE id = ?
                """,
                (
                    fields.get("name"),
                    fields.get("email"),
                    fields.get("phone"),
                    fields.get("address"),
                    fields.get("organization"),
                    fields.get("title"),
                    fields.get("notes"),
                    to_db_timestamp(utcnow()),
                    contact_id,
                ),
            )
            if cursor.rowcount == 0:
                raise PersistenceError(f"CRM contact not found: {contact_id}")
            row = conn.execute(
                "SELECT * FROM crm_contact WHERE id = ?", (contact_id,)
            ).fetchone()
        return dict(row)

    def soft_delete_contact(self, contact_id: str) -> None:
        now = to_db_timestamp(utcnow())
        with self.connection() as conn:
            cursor = conn.execute(
                "UPDATE crm_contact SET is_deleted = 1, deleted_at = ?, updated_at = ? "
                "WHERE id = ?",
                (now, now, contact_id),
            )
            if cursor.rowcount == 0:
                raise PersistenceError(f"CRM contact not found: {contact_id}")

    def hard_delete_contact(self, contact_id: str) -> None:
        with self.connection() as conn:
            conn.execute("DELETE FROM crm_contact WHERE id = ?", (contact_id,))

    def get_contact(self, contact_id: str) -> Optional[dict[str, Any]]:
        with self.connection() as conn:
            row = conn.execute(
                "SELECT * FROM crm_contact WHERE id = ?", (contact_id,)
            ).fetchone()
        return dict(row) if row else None

    def list_contacts(
        self, owner_id: str, include_deleted: bool = False
    ) -> list[dict[str, Any]]:
        query = "SELECT * FROM crm_contact WHERE owner_id = ?"
        if not include_deleted:
            query += " AND is_deleted = 0"
        with self.connection() as conn:
            rows = conn.execute(query + " ORDER BY created_at, id", (owner_id,)).fetchall()
        return [dict(row) for row in rows]

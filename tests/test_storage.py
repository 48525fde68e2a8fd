"""
Unit tests for the storage module.

Tests SyncDatabase persistence of configs, mappings, runs and the change
log, the record models, and the SQLite-backed CRM contact store.
"""

from datetime import datetime, timedelta, timezone

import pytest

from crm_contact_sync.storage.contact_store import SQLiteContactStore
from crm_contact_sync.storage.db import (
    IntegrityViolation,
    PersistenceError,
    SyncDatabase,
    from_db_timestamp,
    to_db_timestamp,
)
from crm_contact_sync.storage.models import (
    ChangeLogEntry,
    ChangeType,
    ConflictPolicy,
    DeletionHandling,
    Direction,
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

OWNER = "owner-1"


@pytest.fixture
def config(db):
    return db.create_config(SyncConfig(owner_id=OWNER, credential_ref="google-owner-1"))


class TestSyncDatabaseInitialization:
    """Tests for database initialization."""

    def test_create_in_memory_database(self):
        db = SyncDatabase(":memory:")
        assert db.db_path == ":memory:"
        assert db.is_memory

    def test_initialize_creates_tables(self, db):
        """Test that initialize creates the required tables."""
        with db.connection() as conn:
            tables = {
                row["name"]
                for row in conn.execute(
                    "SELECT name FROM sqlite_master WHERE type='table'"
                )
            }
        assert {
            "sync_config",
            "contact_mapping",
            "sync_run",
            "change_log",
            "crm_contact",
        } <= tables

    def test_initialize_is_idempotent(self, db):
        db.initialize()
        db.initialize()

    def test_file_database_persists(self, tmp_path):
        """Test that a file database keeps data across instances."""
        path = str(tmp_path / "sync.db")
        first = SyncDatabase(path)
        first.initialize()
        first.create_config(SyncConfig(owner_id=OWNER))

        second = SyncDatabase(path)
        assert second.get_config_for_owner(OWNER) is not None

    def test_sql_errors_become_persistence_errors(self, db):
        with pytest.raises(PersistenceError):
            with db.connection() as conn:
                conn.execute("SELECT * FROM missing_table")


class TestTimestamps:
    """Tests for timestamp serialization."""

    def test_round_trip(self):
        value = datetime(2024, 5, 1, 10, 0, 0, 1234, tzinfo=timezone.utc)
        assert from_db_timestamp(to_db_timestamp(value)) == value

    def test_naive_is_utc(self):
        assert to_db_timestamp(datetime(2024, 5, 1, 10, 0)) == (
            "2024-05-01T10:00:00.000000+00:00"
        )

    def test_offset_is_converted(self):
        plus_two = timezone(timedelta(hours=2))
        assert to_db_timestamp(datetime(2024, 5, 1, 12, 0, tzinfo=plus_two)) == (
            "2024-05-01T10:00:00.000000+00:00"
        )

    def test_none(self):
        assert to_db_timestamp(None) is None
        assert from_db_timestamp(None) is None


class TestSyncConfigOperations:
    """Tests for sync configuration rows."""

    def test_create_assigns_id_and_defaults(self, config):
        assert config.id is not None
        assert config.sync_mode == SyncMode.BIDIRECTIONAL
        assert config.conflict_policy == ConflictPolicy.NEWEST_WINS
        assert config.deletion_handling == DeletionHandling.SOFT_DELETE
        assert config.is_active
        assert not config.auto_sync_enabled

    def test_one_config_per_owner_and_provider(self, db, config):
        with pytest.raises(IntegrityViolation):
            db.create_config(SyncConfig(owner_id=OWNER))

    def test_update_round_trip(self, db, config):
        """Test that every mutable column is persisted."""
        config.sync_mode = SyncMode.REMOTE_TO_LOCAL
        config.conflict_policy = ConflictPolicy.LOCAL_WINS
        config.deletion_handling = DeletionHandling.SKIP
        config.auto_sync_enabled = True
        config.sync_frequency = 15
        config.field_mapping = {"company": "organization"}
        config.stats.record(RunStatus.COMPLETED, 1.5, 3)
        config.schedule_next_run()
        db.update_config(config)

        loaded = db.get_config(config.id)

        assert loaded.sync_mode == SyncMode.REMOTE_TO_LOCAL
        assert loaded.conflict_policy == ConflictPolicy.LOCAL_WINS
        assert loaded.deletion_handling == DeletionHandling.SKIP
        assert loaded.auto_sync_enabled
        assert loaded.sync_frequency == 15
        assert loaded.field_mapping == {"company": "organization"}
        assert loaded.stats.total_runs == 1
        assert loaded.stats.total_contacts_synced == 3
        assert loaded.next_run_at == config.next_run_at

    def test_update_without_id_fails(self, db):
        with pytest.raises(PersistenceError):
            db.update_config(SyncConfig(owner_id=OWNER))

    def test_get_config_for_owner_missing(self, db):
        assert db.get_config_for_owner("nobody") is None

    def test_list_due_configs(self, db, config):
        """Test that only active auto-sync configs past their time are due."""
        now = utcnow()
        assert db.list_due_configs(now) == []

        config.auto_sync_enabled = True
        config.next_run_at = now + timedelta(minutes=10)
        db.update_config(config)
        assert db.list_due_configs(now) == []
        assert [c.id for c in db.list_due_configs(now + timedelta(minutes=11))] == [
            config.id
        ]

        config.is_active = False
        db.update_config(config)
        assert db.list_due_configs(now + timedelta(minutes=11)) == []

    def test_never_scheduled_config_is_due(self, db, config):
        config.auto_sync_enabled = True
        config.next_run_at = None
        db.update_config(config)
        assert len(db.list_due_configs()) == 1


class TestMappingOperations:
    """Tests for contact mapping rows."""

    def test_create_and_get(self, db):
        mapping = db.create_mapping(
            Mapping(owner_id=OWNER, local_id="l1", remote_id="people/c1", version_tag="e1")
        )

        loaded = db.get_mapping(mapping.id)

        assert loaded.local_id == "l1"
        assert loaded.remote_id == "people/c1"
        assert loaded.version_tag == "e1"
        assert loaded.status == MappingStatus.SYNCED
        assert not loaded.is_deleted

    def test_active_remote_id_is_unique(self, db):
        db.create_mapping(Mapping(owner_id=OWNER, local_id="l1", remote_id="people/c1"))
        with pytest.raises(IntegrityViolation):
            db.create_mapping(
                Mapping(owner_id=OWNER, local_id="l2", remote_id="people/c1")
            )

    def test_active_local_id_is_unique(self, db):
        db.create_mapping(Mapping(owner_id=OWNER, local_id="l1", remote_id="people/c1"))
        with pytest.raises(IntegrityViolation):
            db.create_mapping(
                Mapping(owner_id=OWNER, local_id="l1", remote_id="people/c2")
            )

    def test_same_ids_for_different_owners(self, db):
        db.create_mapping(Mapping(owner_id="a", local_id="l1", remote_id="people/c1"))
        db.create_mapping(Mapping(owner_id="b", local_id="l1", remote_id="people/c1"))

    def test_soft_deleted_mapping_frees_the_ids(self, db):
        """Test that a tombstone does not block a new active mapping."""
        mapping = db.create_mapping(
            Mapping(owner_id=OWNER, local_id="l1", remote_id="people/c1")
        )
        mapping.is_deleted = True
        mapping.deleted_at = utcnow()
        db.update_mapping(mapping)

        db.create_mapping(Mapping(owner_id=OWNER, local_id="l1", remote_id="people/c1"))

        assert len(db.get_active_mappings(OWNER)) == 1
        assert len(db.get_deleted_mappings(OWNER)) == 1
        assert db.count_mappings(OWNER) == 1
        assert db.count_mappings(OWNER, include_deleted=True) == 2

    def test_update_mapping(self, db):
        mapping = db.create_mapping(
            Mapping(owner_id=OWNER, local_id="l1", remote_id="people/c1")
        )
        mapping.status = MappingStatus.CONFLICT
        mapping.version_tag = "e2"
        db.update_mapping(mapping)

        loaded = db.get_mapping(mapping.id)
        assert loaded.status == MappingStatus.CONFLICT
        assert loaded.version_tag == "e2"

    def test_mapping_key(self):
        assert Mapping(owner_id=OWNER, local_id="l", remote_id="r", id=7).key == (
            "mapping:7"
        )


class TestSyncRunOperations:
    """Tests for sync run rows."""

    def test_create_run(self, db, config):
        run = db.create_run(SyncRun(config_id=config.id, owner_id=OWNER))

        assert run.id
        assert run.status == RunStatus.IN_PROGRESS
        assert run.started_at is not None
        assert db.get_active_run(config.id).id == run.id

    def test_one_in_progress_run_per_config(self, db, config):
        db.create_run(SyncRun(config_id=config.id, owner_id=OWNER))
        with pytest.raises(IntegrityViolation):
            db.create_run(SyncRun(config_id=config.id, owner_id=OWNER))

    def test_finalize_run(self, db, config):
        """Test that counters, errors and summary are persisted."""
        run = db.create_run(
            SyncRun(config_id=config.id, owner_id=OWNER, trigger=RunTrigger.AUTO)
        )
        run.status = RunStatus.PARTIAL
        run.completed_at = utcnow()
        run.duration = 2.5
        run.counters.created_local = 2
        run.counters.errors = 1
        run.error_details.append({"error": "boom", "action": "create_remote"})
        run.summary = run.counters.summary()
        run.total_contacts = 2
        db.finalize_run(run)

        loaded = db.get_run(run.id)

        assert loaded.status == RunStatus.PARTIAL
        assert loaded.trigger == RunTrigger.AUTO
        assert loaded.duration == 2.5
        assert loaded.counters.created_local == 2
        assert loaded.counters.errors == 1
        assert loaded.error_details == [{"error": "boom", "action": "create_remote"}]
        assert loaded.summary == "2 created locally, 1 errors"
        assert db.get_active_run(config.id) is None

    def test_list_runs_newest_first(self, db, config):
        first = db.create_run(
            SyncRun(
                config_id=config.id,
                owner_id=OWNER,
                started_at=utcnow() - timedelta(minutes=5),
            )
        )
        first.status = RunStatus.COMPLETED
        db.finalize_run(first)
        second = db.create_run(SyncRun(config_id=config.id, owner_id=OWNER))

        runs = db.list_runs(OWNER)

        assert [r.id for r in runs] == [second.id, first.id]
        assert db.count_runs(OWNER) == 2
        assert [r.id for r in db.list_runs(OWNER, limit=1, offset=1)] == [first.id]

    def test_fail_stale_runs(self, db, config):
        """Test that only in-progress runs older than the cutoff are failed."""
        old = db.create_run(
            SyncRun(
                config_id=config.id,
                owner_id=OWNER,
                started_at=utcnow() - timedelta(hours=3),
            )
        )

        assert db.fail_stale_runs(config.id, utcnow() - timedelta(hours=4)) == 0
        assert db.fail_stale_runs(config.id, utcnow() - timedelta(hours=2)) == 1

        loaded = db.get_run(old.id)
        assert loaded.status == RunStatus.FAILED
        assert loaded.counters.errors == 1
        assert "stale" in loaded.summary


class TestChangeLogOperations:
    """Tests for change log rows."""

    def _entry(self, run_id, operation, local_id="l1"):
        return ChangeLogEntry(
            run_id=run_id,
            owner_id=OWNER,
            operation=operation,
            local_id=local_id,
            remote_id="people/c1",
            contact_name="Jane",
            fields_after={"name": "Jane"},
            changed_fields=[{"field": "name", "remote_value": "Jane", "local_value": "J"}],
            conflict_reason="Provider updated more recently",
            conflict_policy="newest_wins",
            winning_side=Side.REMOTE,
        )

    def test_add_and_query(self, db):
        entry = db.add_change_log_entry(self._entry("run-1", Operation.UPDATED_LOCAL))

        rows = db.query_change_log(run_id="run-1")

        assert entry.id is not None
        assert len(rows) == 1
        loaded = rows[0]
        assert loaded.operation == Operation.UPDATED_LOCAL
        assert loaded.change_type == ChangeType.UPDATE
        assert loaded.direction == Direction.REMOTE_TO_LOCAL
        assert loaded.winning_side == Side.REMOTE
        assert loaded.fields_after == {"name": "Jane"}
        assert loaded.changed_fields[0]["field"] == "name"

    def test_filters(self, db):
        db.add_change_log_entry(self._entry("run-1", Operation.CREATED_LOCAL))
        db.add_change_log_entry(self._entry("run-1", Operation.DELETED_REMOTE, "l2"))
        db.add_change_log_entry(self._entry("run-2", Operation.CREATED_REMOTE))

        assert db.count_change_log(run_id="run-1") == 2
        assert db.count_change_log(run_id="run-1", change_type="delete") == 1
        assert db.count_change_log(operation="created_remote") == 1
        assert db.count_change_log(owner_id=OWNER, local_id="l1") == 2
        assert db.count_change_log() == 3

    def test_newest_first(self, db):
        first = db.add_change_log_entry(self._entry("run-1", Operation.CREATED_LOCAL))
        second = db.add_change_log_entry(self._entry("run-1", Operation.UPDATED_LOCAL))

        rows = db.query_change_log(run_id="run-1")

        assert [r.id for r in rows] == [second.id, first.id]


class TestModels:
    """Tests for record model helpers."""

    def test_operation_properties(self):
        assert Operation.CREATED_REMOTE.change_type == ChangeType.CREATE
        assert Operation.CREATED_REMOTE.direction == Direction.LOCAL_TO_REMOTE
        assert Operation.DELETED_LOCAL.change_type == ChangeType.DELETE
        assert Operation.DELETED_LOCAL.direction == Direction.REMOTE_TO_LOCAL

    def test_run_counters_totals(self):
        counters = RunCounters(
            created_local=1, created_remote=2, updated_local=3, deleted_remote=4, skipped=5
        )
        assert counters.total_created == 3
        assert counters.total_updated == 3
        assert counters.total_deleted == 4
        assert counters.total_mutations == 10
        assert counters.total_contacts == 11

    def test_run_counters_record(self):
        counters = RunCounters()
        counters.record(Operation.UPDATED_REMOTE)
        counters.record(Operation.UPDATED_REMOTE)
        assert counters.updated_remote == 2

    def test_summary_without_changes(self):
        assert RunCounters().summary() == "No changes"

    def test_statistics_record(self):
        """Test that only completed runs count as successful."""
        stats = SyncStatistics()
        stats.record(RunStatus.COMPLETED, 1.0, 5)
        stats.record(RunStatus.PARTIAL, 2.0, 1)
        stats.record(RunStatus.FAILED, 0.5, 0)

        assert stats.total_runs == 3
        assert stats.successful_runs == 1
        assert stats.failed_runs == 2
        assert stats.last_run_duration == 0.5
        assert stats.total_contacts_synced == 6
        assert stats.success_rate == 33.33

    def test_statistics_from_dict_ignores_unknown_keys(self):
        stats = SyncStatistics.from_dict({"total_runs": 4, "legacy": True})
        assert stats.total_runs == 4
        assert SyncStatistics.from_dict(None) == SyncStatistics()

    def test_schedule_next_run(self):
        now = datetime(2024, 1, 1, tzinfo=timezone.utc)
        config = SyncConfig(owner_id=OWNER, sync_frequency=30)

        config.schedule_next_run(now)
        assert config.next_run_at is None

        config.auto_sync_enabled = True
        config.schedule_next_run(now)
        assert config.next_run_at == now + timedelta(minutes=30)

    def test_public_dict_hides_credentials(self):
        config = SyncConfig(owner_id=OWNER, credential_ref="secret-ref")
        assert "credential_ref" not in config.to_public_dict()


class TestSQLiteContactStore:
    """Tests for the CRM contact store."""

    @pytest.fixture
    def store(self, db):
        return SQLiteContactStore(db)

    def test_create_and_fetch(self, store):
        created = store.create(OWNER, {"name": "Jane Doe", "email": "jane@example.com"})

        contacts = store.fetch_all(OWNER)

        assert [c.local_id for c in contacts] == [created.local_id]
        assert contacts[0].name == "Jane Doe"
        assert contacts[0].phone == ""
        assert contacts[0].updated_at is not None

    def test_fetch_is_per_owner(self, store):
        store.create(OWNER, {"name": "Jane"})
        store.create("someone-else", {"name": "Bob"})
        assert [c.name for c in store.fetch_all(OWNER)] == ["Jane"]

    def test_update_overwrites_compared_fields(self, store):
        created = store.create(OWNER, {"name": "Jane", "notes": "old"})

        updated = store.update(created.local_id, {"name": "Jane Smith"})

        assert updated.name == "Jane Smith"
        assert updated.notes == ""
        assert updated.updated_at >= created.updated_at

    def test_update_missing_contact(self, store):
        with pytest.raises(PersistenceError):
            store.update("missing", {"name": "x"})

    def test_soft_delete_hides_contact(self, store):
        created = store.create(OWNER, {"name": "Jane"})

        store.soft_delete(created.local_id)

        assert store.fetch_all(OWNER) == []
        assert store.get(created.local_id).name == "Jane"

    def test_hard_delete_removes_contact(self, store):
        created = store.create(OWNER, {"name": "Jane"})

        store.hard_delete(created.local_id)

        with pytest.raises(PersistenceError):
            store.get(created.local_id)

    def test_ignores_unknown_fields(self, store):
        created = store.create(OWNER, {"name": "Jane", "favorite_color": "blue"})
        assert created.name == "Jane"

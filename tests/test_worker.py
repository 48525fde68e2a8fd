"""Tests for RunWorker background execution."""

import threading

import pytest

from conftest import OWNER

from crm_contact_sync.storage.models import RunStatus, SyncConfig, SyncRun
from crm_contact_sync.sync.worker import RunWorker


@pytest.fixture
def worker(db):
    run_worker = RunWorker(db, max_workers=1)
    yield run_worker
    run_worker.shutdown()


@pytest.fixture
def run(db, config):
    return db.create_run(SyncRun(config_id=config.id, owner_id=OWNER))


class TestRunWorker:
    def test_result_is_returned(self, worker, run):
        handle = worker.submit(run, lambda: run)

        assert handle.result(timeout=5) is run
        assert handle.done()
        assert handle.run_id == run.id

    def test_unfinalized_failure_is_recorded(self, worker, db, run):
        """Test that a task dying before finalizing marks its run failed."""

        def explode():
            raise RuntimeError("worker crashed")

        handle = worker.submit(run, explode)

        assert isinstance(handle.exception(timeout=5), RuntimeError)
        worker.shutdown()
        stored = db.get_run(run.id)
        assert stored.status == RunStatus.FAILED
        assert stored.summary == "Sync failed: worker crashed"
        assert stored.error_details[-1]["fatal"] is True
        assert db.get_active_run(run.config_id) is None

    def test_submit_after_shutdown_fails_run(self, worker, db, run):
        """Test that a run the worker refuses is not left in progress."""
        worker.shutdown()

        with pytest.raises(RuntimeError):
            worker.submit(run, lambda: run)

        stored = db.get_run(run.id)
        assert stored.status == RunStatus.FAILED
        assert stored.error_details[-1]["fatal"] is True
        assert db.get_active_run(run.config_id) is None
        assert worker.get_handle(run.id) is None

    def test_finalized_run_is_not_overwritten(self, worker, db, run):
        def finish_then_raise():
            run.status = RunStatus.COMPLETED
            run.summary = "No changes"
            db.finalize_run(run)
            raise RuntimeError("late failure")

        worker.submit(run, finish_then_raise)
        worker.shutdown()

        assert db.get_run(run.id).status == RunStatus.COMPLETED

    def test_active_runs(self, worker, run):
        release = threading.Event()
        handle = worker.submit(run, lambda: release.wait(5) and run)

        assert worker.active_runs == [run.id]
        assert worker.get_handle(run.id) is handle

        release.set()
        handle.result(timeout=5)
        worker.wait(timeout=5)
        assert worker.active_runs == []

    def test_cancelled_run_is_marked_failed(self, worker, db, config, run):
        """Test that a run queued behind a busy worker and cancelled is failed."""
        release = threading.Event()
        other_config = db.create_config(
            SyncConfig(owner_id="owner-2", credential_ref=config.credential_ref)
        )
        blocker = db.create_run(SyncRun(config_id=other_config.id, owner_id="owner-2"))
        worker.submit(blocker, lambda: release.wait(5) and blocker)

        handle = worker.submit(run, lambda: run)
        assert handle.future.cancel()
        release.set()

        stored = db.get_run(run.id)
        assert stored.status == RunStatus.FAILED
        assert "cancelled" in stored.summary

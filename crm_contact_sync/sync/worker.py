"""
Background execution of sync runs.

start_sync returns as soon as a run is recorded; the reconciliation
itself runs on a RunWorker thread. Every submitted run yields a
RunHandle, so callers can wait for the outcome, and a run whose worker
dies unexpectedly is still recorded as failed.
"""

import logging
import threading
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import wait as wait_for
from dataclasses import dataclass
from typing import Optional

from crm_contact_sync.storage.db import PersistenceError, SyncDatabase
from crm_contact_sync.storage.models import RunStatus, SyncRun, utcnow

logger = logging.getLogger(__name__)

DEFAULT_RUN_WORKERS = 2


@dataclass
class RunHandle:
    """Handle to a run executing in the background."""

    run_id: str
    future: "Future[SyncRun]"

    def done(self) -> bool:
        return self.future.done()

    def result(self, timeout: Optional[float] = None) -> SyncRun:
        """
        Wait for the run to finish.

        Raises:
            The exception that made the run fail, if it failed fatally
        """
        return self.future.result(timeout=timeout)

    def exception(self, timeout: Optional[float] = None) -> Optional[BaseException]:
        return self.future.exception(timeout=timeout)


class RunWorker:
    """
    Thread pool for sync runs.

    Usage:
        worker = RunWorker(database, max_workers=2)
        handle = worker.submit(run, lambda: engine.execute(run))
        finished = handle.result()
        worker.shutdown()
    """

    def __init__(self, database: SyncDatabase, max_workers: int = DEFAULT_RUN_WORKERS):
        self.database = database
        self.max_workers = max(1, max_workers)
        self._executor = ThreadPoolExecutor(
            max_workers=self.max_workers, thread_name_prefix="sync-run"
        )
        self._handles: dict[str, RunHandle] = {}
        self._lock = threading.Lock()

    def submit(self, run: SyncRun, task: Callable[[], SyncRun]) -> RunHandle:
        """
        Schedule a run; task is expected to finalize the run itself.

        Raises:
            RuntimeError: If the worker was shut down; the run is marked
                failed first
        """
        try:
            future = self._executor.submit(task)
        except RuntimeError as e:
            logger.error(f"Could not schedule sync run {run.id}: {e}")
            self._mark_failed(run, f"Sync failed: {e}")
            raise
        handle = RunHandle(run_id=run.id, future=future)
        with self._lock:
            self._handles[run.id] = handle
        future.add_done_callback(lambda f: self._on_done(run, f))
        logger.debug(f"Submitted sync run {run.id}")
        return handle

    def get_handle(self, run_id: str) -> Optional[RunHandle]:
        with self._lock:
            return self._handles.get(run_id)

    @property
    def active_runs(self) -> list[str]:
        with self._lock:
            return [run_id for run_id, h in self._handles.items() if not h.done()]

    def _on_done(self, run: SyncRun, future: "Future[SyncRun]") -> None:
        with self._lock:
            self._handles.pop(run.id, None)

        if future.cancelled():
            logger.warning(f"Sync run {run.id} was cancelled before it started")
            self._mark_failed(run, "Run was cancelled before it started")
            return

        error = future.exception()
        if error is None:
            return

        logger.error(f"Sync run {run.id} failed: {error}")
        self._mark_failed(run, f"Sync failed: {error}")

    def _mark_failed(self, run: SyncRun, summary: str) -> None:
        """Record a failure the run itself could not finalize."""
        try:
            stored = self.database.get_run(run.id)
            if stored is None or stored.is_finished:
                return
            stored.status = RunStatus.FAILED
            stored.completed_at = utcnow()
            stored.counters.errors += 1
            stored.error_details.append({"error": summary, "action": "run", "fatal": True})
            stored.summary = summary
            self.database.finalize_run(stored)
        except PersistenceError as e:
            logger.error(f"Could not record failure of sync run {run.id}: {e}")

    def wait(self, timeout: Optional[float] = None) -> None:
        """Block until every submitted run has finished."""
        with self._lock:
            futures = [h.future for h in self._handles.values()]
        wait_for(futures, timeout=timeout)

    def shutdown(self, wait: bool = True) -> None:
        logger.debug("Shutting down run worker")
        self._executor.shutdown(wait=wait)

"""
Daemon scheduler for automatic contact synchronization.

Provides a DaemonScheduler class that manages:
- Periodic dispatch of runs for configurations whose next run is due
- Signal handling for graceful shutdown (SIGTERM/SIGINT)
- PID file management for daemon control
- Logging of dispatch results and daemon status
"""

from __future__ import annotations

import logging
import os
import signal
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from crm_contact_sync.utils.paths import resolve_config_dir

logger = logging.getLogger(__name__)

DEFAULT_PID_FILE_NAME = "daemon.pid"


def default_pid_file(config_dir: Path | str | None = None) -> Path:
    """PID file inside the configuration directory."""
    return resolve_config_dir(config_dir) / DEFAULT_PID_FILE_NAME


class DaemonError(Exception):
    """Base exception for daemon-related errors."""

    pass


class PIDFileError(DaemonError):
    """Raised when PID file operations fail."""

    pass


class DaemonAlreadyRunningError(DaemonError):
    """Raised when attempting to start a daemon that is already running."""

    pass


@dataclass
class DispatchResult:
    """
    Outcome of one scheduler tick.

    Attributes:
        started: Ids of runs started this tick
        busy: Due configurations skipped because a run was still in progress
        errors: Messages for configurations that could not be started
    """

    started: list[str] = field(default_factory=list)
    busy: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


@dataclass
class DaemonStats:
    """Counters for the lifetime of one daemon process."""

    started_at: datetime = field(default_factory=datetime.now)
    tick_count: int = 0
    runs_started: int = 0
    dispatch_errors: int = 0
    last_tick_at: datetime | None = None
    last_error: str | None = None


class PIDFileManager:
    """
    Manages the PID file of the daemon process.

    Provides methods to create, read, and remove the PID file for
    daemon control and duplicate prevention.
    """

    def __init__(self, pid_file: Path | None = None):
        """
        Args:
            pid_file: Path to the PID file. Defaults to daemon.pid in the
                configuration directory
        """
        self.pid_file = Path(pid_file) if pid_file else default_pid_file()

    def create(self) -> None:
        """
        Write the current process ID, replacing a stale PID file.

        Raises:
            PIDFileError: If the PID file cannot be created.
            DaemonAlreadyRunningError: If a daemon is already running.
        """
        existing_pid = self.read()
        if existing_pid is not None:
            if self.is_process_running(existing_pid):
                raise DaemonAlreadyRunningError(
                    f"Daemon already running with PID {existing_pid}"
                )
            logger.warning(
                f"Removing stale PID file (process {existing_pid} not running)"
            )
            self.remove()

        try:
            self.pid_file.parent.mkdir(parents=True, exist_ok=True)
            pid = os.getpid()
            self.pid_file.write_text(str(pid))
            logger.debug(f"Created PID file: {self.pid_file} (PID: {pid})")
        except OSError as e:
            raise PIDFileError(f"Failed to create PID file {self.pid_file}: {e}") from e

    def read(self) -> int | None:
        """
        Read the PID from the PID file.

        Returns:
            The stored PID, or None if the file doesn't exist.

        Raises:
            PIDFileError: If the PID file exists but cannot be read or parsed.
        """
        if not self.pid_file.exists():
            return None

        try:
            content = self.pid_file.read_text().strip()
        except OSError as e:
            raise PIDFileError(f"Failed to read PID file {self.pid_file}: {e}") from e

        try:
            return int(content)
        except ValueError as e:
            raise PIDFileError(f"Invalid PID in file {self.pid_file}: {content}") from e

    def remove(self) -> None:
        """Remove the PID file if present."""
        if not self.pid_file.exists():
            return

        try:
            self.pid_file.unlink()
            logger.debug(f"Removed PID file: {self.pid_file}")
        except OSError as e:
            raise PIDFileError(f"Failed to remove PID file {self.pid_file}: {e}") from e

    @staticmethod
    def is_process_running(pid: int) -> bool:
        try:
            # Signal 0 only checks that the process exists
            os.kill(pid, 0)
            return True
        except ProcessLookupError:
            return False
        except PermissionError:
            return True


class DaemonScheduler:
    """
    Periodically dispatches due sync runs.

    Each tick calls the dispatch callback, which starts runs for every
    active, auto-sync-enabled configuration whose next run time has
    passed. Runs execute on the service's worker; the scheduler only
    decides when to look.

    Usage:
        scheduler = DaemonScheduler(interval=300)
        scheduler.set_dispatch_callback(service.start_due_syncs)
        scheduler.set_shutdown_callback(service.shutdown)

        # Blocks until SIGTERM/SIGINT
        scheduler.run()

    Attributes:
        interval: Seconds between ticks
        pid_file: Path to PID file
        stats: Daemon statistics
    """

    def __init__(
        self,
        interval: int = 300,
        pid_file: Path | None = None,
        run_immediately: bool = True,
    ):
        """
        Args:
            interval: Seconds between ticks (default: 300 = 5 minutes)
            pid_file: Path to PID file
            run_immediately: Dispatch once on start before the first wait
        """
        self.interval = interval
        self.run_immediately = run_immediately
        self._pid_manager = PIDFileManager(pid_file)
        self._dispatch: Callable[[], DispatchResult] | None = None
        self._on_shutdown: Callable[[], None] | None = None
        self._running = False
        self._shutdown_requested = False
        self._original_handlers: dict[int, object] = {}
        self.stats = DaemonStats()

    @property
    def pid_file(self) -> Path:
        return self._pid_manager.pid_file

    def set_dispatch_callback(self, callback: Callable[[], DispatchResult]) -> None:
        self._dispatch = callback

    def set_shutdown_callback(self, callback: Callable[[], None]) -> None:
        """Called once when the loop exits, e.g. to wait for in-flight runs."""
        self._on_shutdown = callback

    def _setup_signal_handlers(self) -> None:
        for signum in (signal.SIGTERM, signal.SIGINT):
            self._original_handlers[signum] = signal.signal(signum, self._signal_handler)
        logger.debug("Signal handlers installed for SIGTERM and SIGINT")

    def _restore_signal_handlers(self) -> None:
        for signum, handler in self._original_handlers.items():
            signal.signal(signum, handler)  # type: ignore[arg-type]
        self._original_handlers.clear()
        logger.debug("Signal handlers restored")

    def _signal_handler(self, signum: int, frame: object) -> None:
        signal_name = signal.Signals(signum).name
        logger.info(f"Received {signal_name}, initiating graceful shutdown...")
        self._shutdown_requested = True

    def tick(self) -> DispatchResult | None:
        """
        Dispatch due runs once and update statistics.

        A failing dispatch is logged and counted; the daemon keeps running.
        """
        if self._dispatch is None:
            logger.warning("No dispatch callback configured, skipping tick")
            return None

        self.stats.tick_count += 1
        self.stats.last_tick_at = datetime.now()

        try:
            result = self._dispatch()
        except Exception as e:
            self.stats.dispatch_errors += 1
            self.stats.last_error = str(e)
            logger.error(f"Dispatch failed with exception: {e}")
            return None

        self.stats.runs_started += len(result.started)
        if result.errors:
            self.stats.dispatch_errors += len(result.errors)
            self.stats.last_error = result.errors[-1]
            for message in result.errors:
                logger.warning(f"Could not start run: {message}")

        if result.started or result.busy:
            logger.info(
                f"Tick #{self.stats.tick_count}: started {len(result.started)} run(s), "
                f"{result.busy} still in progress"
            )
        else:
            logger.debug(f"Tick #{self.stats.tick_count}: nothing due")
        return result

    def _sleep_interruptible(self, seconds: int) -> bool:
        """
        Sleep in one-second steps so shutdown signals are handled promptly.

        Wall-clock time is used so a suspended machine dispatches on wake.

        Returns:
            True if sleep completed normally, False if interrupted by shutdown.
        """
        end_time = time.time() + seconds
        while time.time() < end_time and not self._shutdown_requested:
            remaining = end_time - time.time()
            sleep_time = min(1.0, max(0, remaining))
            if sleep_time > 0:
                time.sleep(sleep_time)

        return not self._shutdown_requested

    def run(self) -> None:
        """
        Run the scheduler loop until a shutdown signal is received.

        Raises:
            DaemonAlreadyRunningError: If another daemon is already running.
            PIDFileError: If the PID file cannot be written.
        """
        logger.info(f"Starting auto-sync daemon (interval: {self.interval}s)")

        self._pid_manager.create()
        logger.info(f"Daemon started (PID: {os.getpid()}, PID file: {self.pid_file})")

        self._setup_signal_handlers()
        self._running = True
        self._shutdown_requested = False
        self.stats = DaemonStats()

        try:
            if self.run_immediately:
                self.tick()

            while not self._shutdown_requested:
                logger.debug(f"Sleeping for {self.interval} seconds until next tick")
                if not self._sleep_interruptible(self.interval):
                    break
                self.tick()

        finally:
            self._running = False
            self._restore_signal_handlers()
            if self._on_shutdown is not None:
                logger.info("Waiting for in-flight runs to finish")
                self._on_shutdown()
            self._pid_manager.remove()
            logger.info("Daemon scheduler stopped")

    def stop(self) -> None:
        """Request shutdown; safe to call from a callback or another thread."""
        logger.info("Stop requested")
        self._shutdown_requested = True

    def is_running(self) -> bool:
        return self._running

    @classmethod
    def get_running_pid(cls, pid_file: Path | None = None) -> int | None:
        """PID of the running daemon, or None if no daemon is running."""
        manager = PIDFileManager(pid_file)
        pid = manager.read()
        if pid is None:
            return None
        return pid if manager.is_process_running(pid) else None

    @classmethod
    def stop_running_daemon(cls, pid_file: Path | None = None) -> bool:
        """
        Send SIGTERM to the running daemon.

        Returns:
            True if the signal was sent, False if no daemon is running.
        """
        pid = cls.get_running_pid(pid_file)

        if pid is None:
            logger.info("No running daemon found")
            return False

        try:
            os.kill(pid, signal.SIGTERM)
            logger.info(f"Sent SIGTERM to daemon (PID: {pid})")
            return True
        except ProcessLookupError:
            logger.warning(f"Daemon process {pid} not found")
            return False
        except PermissionError:
            logger.error(f"Permission denied sending signal to PID {pid}")
            return False


__all__ = [
    "DaemonScheduler",
    "DaemonStats",
    "DispatchResult",
    "DaemonError",
    "PIDFileError",
    "DaemonAlreadyRunningError",
    "PIDFileManager",
    "default_pid_file",
]

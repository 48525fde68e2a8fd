"""
Tests for the daemon module.

Tests interval parsing, PID file management, the dispatch tick and the
scheduler loop.
"""

import os
import signal
import time
from unittest.mock import MagicMock, patch

import pytest

from crm_contact_sync.daemon import (
    DaemonAlreadyRunningError,
    DaemonError,
    DaemonScheduler,
    DaemonStats,
    DispatchResult,
    PIDFileError,
    PIDFileManager,
    default_pid_file,
    parse_interval,
)
from crm_contact_sync.utils.paths import CONFIG_DIR_ENV_VAR


class TestParseInterval:
    """Tests for parse_interval function."""

    @pytest.mark.parametrize(
        "value,expected",
        [
            ("30s", 30),
            ("5m", 300),
            ("1h", 3600),
            ("1d", 86400),
            ("3600", 3600),
            (" 2H ", 7200),
            (45, 45),
        ],
    )
    def test_valid_intervals(self, value, expected):
        assert parse_interval(value) == expected

    @pytest.mark.parametrize("value", ["", "5 minutes", "1w", "-5m", "m"])
    def test_invalid_format_raises_error(self, value):
        with pytest.raises(ValueError, match="Invalid interval format"):
            parse_interval(value)

    @pytest.mark.parametrize("value", [True, 1.5, None])
    def test_invalid_type_raises_error(self, value):
        with pytest.raises(ValueError, match="Invalid interval type"):
            parse_interval(value)


class TestDispatchResult:
    def test_defaults(self):
        result = DispatchResult()

        assert result.started == []
        assert result.busy == 0
        assert result.ok is True

    def test_errors_make_result_not_ok(self):
        assert DispatchResult(errors=["config 3: no connection"]).ok is False


class TestPIDFileManager:
    """Tests for PIDFileManager class."""

    def test_default_path_is_in_config_dir(self, tmp_path, monkeypatch):
        monkeypatch.setenv(CONFIG_DIR_ENV_VAR, str(tmp_path))

        assert PIDFileManager().pid_file == tmp_path.resolve() / "daemon.pid"
        assert default_pid_file() == tmp_path.resolve() / "daemon.pid"

    def test_create_writes_current_pid(self, tmp_path):
        """Test create() writes the PID and creates parent directories."""
        pid_file = tmp_path / "run" / "daemon.pid"
        manager = PIDFileManager(pid_file=pid_file)

        manager.create()

        assert int(pid_file.read_text()) == os.getpid()
        assert manager.read() == os.getpid()

    def test_read_missing_returns_none(self, tmp_path):
        assert PIDFileManager(pid_file=tmp_path / "daemon.pid").read() is None

    def test_read_invalid_pid_raises_error(self, tmp_path):
        pid_file = tmp_path / "daemon.pid"
        pid_file.write_text("not-a-pid")

        with pytest.raises(PIDFileError, match="Invalid PID"):
            PIDFileManager(pid_file=pid_file).read()

    def test_remove(self, tmp_path):
        pid_file = tmp_path / "daemon.pid"
        pid_file.write_text("123")
        manager = PIDFileManager(pid_file=pid_file)

        manager.remove()
        manager.remove()  # Should not raise

        assert not pid_file.exists()

    def test_create_detects_already_running(self, tmp_path):
        """Test create() refuses to start when the stored PID is alive."""
        pid_file = tmp_path / "daemon.pid"
        pid_file.write_text(str(os.getpid()))

        with pytest.raises(DaemonAlreadyRunningError, match="already running"):
            PIDFileManager(pid_file=pid_file).create()

    def test_create_replaces_stale_pid_file(self, tmp_path):
        pid_file = tmp_path / "daemon.pid"
        pid_file.write_text("99999999")
        manager = PIDFileManager(pid_file=pid_file)

        with patch.object(manager, "is_process_running", return_value=False):
            manager.create()

        assert int(pid_file.read_text()) == os.getpid()

    def test_is_process_running(self):
        assert PIDFileManager.is_process_running(os.getpid()) is True

        with patch("os.kill", side_effect=ProcessLookupError):
            assert PIDFileManager.is_process_running(99999999) is False
        with patch("os.kill", side_effect=PermissionError):
            assert PIDFileManager.is_process_running(1) is True


class TestDaemonScheduler:
    """Tests for DaemonScheduler initialization and control."""

    def test_initialization(self, tmp_path):
        scheduler = DaemonScheduler(
            interval=60, pid_file=tmp_path / "d.pid", run_immediately=False
        )

        assert scheduler.interval == 60
        assert scheduler.pid_file == tmp_path / "d.pid"
        assert scheduler.run_immediately is False
        assert scheduler.is_running() is False
        assert isinstance(scheduler.stats, DaemonStats)

    def test_stop_sets_shutdown_flag(self, tmp_path):
        scheduler = DaemonScheduler(pid_file=tmp_path / "d.pid")

        scheduler.stop()

        assert scheduler._shutdown_requested is True

    @pytest.mark.parametrize("signum", [signal.SIGTERM, signal.SIGINT])
    def test_signal_handler_sets_shutdown_flag(self, tmp_path, signum):
        scheduler = DaemonScheduler(pid_file=tmp_path / "d.pid")

        scheduler._signal_handler(signum, None)

        assert scheduler._shutdown_requested is True

    def test_restore_signal_handlers(self, tmp_path):
        scheduler = DaemonScheduler(pid_file=tmp_path / "d.pid")
        original_sigterm = signal.getsignal(signal.SIGTERM)
        original_sigint = signal.getsignal(signal.SIGINT)

        scheduler._setup_signal_handlers()
        scheduler._restore_signal_handlers()

        assert signal.getsignal(signal.SIGTERM) == original_sigterm
        assert signal.getsignal(signal.SIGINT) == original_sigint


class TestDaemonSchedulerTick:
    """Tests for a single dispatch tick."""

    @pytest.fixture
    def scheduler(self, tmp_path):
        return DaemonScheduler(pid_file=tmp_path / "d.pid")

    def test_tick_without_callback(self, scheduler):
        assert scheduler.tick() is None
        assert scheduler.stats.tick_count == 0

    def test_tick_counts_started_runs(self, scheduler):
        result = DispatchResult(started=["run-1", "run-2"], busy=1)
        scheduler.set_dispatch_callback(MagicMock(return_value=result))

        assert scheduler.tick() is result
        assert scheduler.stats.tick_count == 1
        assert scheduler.stats.runs_started == 2
        assert scheduler.stats.dispatch_errors == 0
        assert scheduler.stats.last_tick_at is not None

    def test_tick_counts_dispatch_errors(self, scheduler):
        result = DispatchResult(errors=["config 1: boom", "config 2: bang"])
        scheduler.set_dispatch_callback(MagicMock(return_value=result))

        scheduler.tick()

        assert scheduler.stats.dispatch_errors == 2
        assert scheduler.stats.last_error == "config 2: bang"

    def test_tick_survives_exception(self, scheduler):
        """Test that a raising callback is counted and does not propagate."""
        scheduler.set_dispatch_callback(MagicMock(side_effect=RuntimeError("db locked")))

        assert scheduler.tick() is None
        assert scheduler.stats.tick_count == 1
        assert scheduler.stats.dispatch_errors == 1
        assert scheduler.stats.last_error == "db locked"


class TestDaemonSchedulerLoop:
    """Tests for run() and interruptible sleep."""

    def test_sleep_interruptible_stops_on_shutdown(self, tmp_path):
        scheduler = DaemonScheduler(pid_file=tmp_path / "d.pid")
        scheduler._shutdown_requested = True

        start = time.time()
        result = scheduler._sleep_interruptible(10)

        assert result is False
        assert time.time() - start < 2

    def test_run_dispatches_immediately_then_stops(self, tmp_path):
        """Test a full run: PID file written, one tick, shutdown callback, cleanup."""
        pid_file = tmp_path / "d.pid"
        scheduler = DaemonScheduler(interval=3600, pid_file=pid_file)
        seen_pid = []

        def dispatch():
            seen_pid.append(PIDFileManager(pid_file).read())
            scheduler.stop()
            return DispatchResult(started=["run-1"])

        on_shutdown = MagicMock()
        scheduler.set_dispatch_callback(dispatch)
        scheduler.set_shutdown_callback(on_shutdown)

        scheduler.run()

        assert seen_pid == [os.getpid()]
        assert scheduler.stats.tick_count == 1
        assert scheduler.stats.runs_started == 1
        on_shutdown.assert_called_once()
        assert not pid_file.exists()
        assert scheduler.is_running() is False

    def test_run_waits_before_first_tick(self, tmp_path):
        scheduler = DaemonScheduler(
            interval=60, pid_file=tmp_path / "d.pid", run_immediately=False
        )
        dispatch = MagicMock(return_value=DispatchResult())
        scheduler.set_dispatch_callback(dispatch)

        def sleep(seconds):
            scheduler.stop()
            return False

        with patch.object(scheduler, "_sleep_interruptible", side_effect=sleep):
            scheduler.run()

        dispatch.assert_not_called()

    def test_run_refuses_when_already_running(self, tmp_path):
        pid_file = tmp_path / "d.pid"
        pid_file.write_text(str(os.getpid()))
        scheduler = DaemonScheduler(pid_file=pid_file)

        with pytest.raises(DaemonAlreadyRunningError):
            scheduler.run()

        assert pid_file.exists()


class TestDaemonSchedulerClassMethods:
    """Tests for class methods of DaemonScheduler."""

    def test_get_running_pid_no_file(self, tmp_path):
        assert DaemonScheduler.get_running_pid(tmp_path / "missing.pid") is None

    def test_get_running_pid_stale_file(self, tmp_path):
        pid_file = tmp_path / "daemon.pid"
        pid_file.write_text("99999999")

        with patch.object(PIDFileManager, "is_process_running", return_value=False):
            assert DaemonScheduler.get_running_pid(pid_file) is None

    def test_get_running_pid_with_running_process(self, tmp_path):
        pid_file = tmp_path / "daemon.pid"
        pid_file.write_text(str(os.getpid()))

        assert DaemonScheduler.get_running_pid(pid_file) == os.getpid()

    def test_stop_running_daemon_no_daemon(self, tmp_path):
        assert DaemonScheduler.stop_running_daemon(tmp_path / "missing.pid") is False

    def test_stop_running_daemon_sends_signal(self, tmp_path):
        """Test stop_running_daemon sends SIGTERM to daemon."""
        pid_file = tmp_path / "daemon.pid"
        pid_file.write_text("12345")

        with patch("os.kill") as mock_kill, patch.object(
            PIDFileManager, "is_process_running", return_value=True
        ):
            result = DaemonScheduler.stop_running_daemon(pid_file)

        assert result is True
        mock_kill.assert_called_once_with(12345, signal.SIGTERM)


class TestDaemonErrors:
    def test_hierarchy(self):
        assert issubclass(DaemonError, Exception)
        assert issubclass(PIDFileError, DaemonError)
        assert issubclass(DaemonAlreadyRunningError, DaemonError)

"""Tests for server/daemon.py - daemon lifecycle management."""

import os
import signal
from pathlib import Path
from unittest.mock import patch, MagicMock

import pytest

import sys
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from server.daemon import (
    DEFAULT_PID_DIR,
    PidFile,
    get_pid_file,
    _process_alive,
    _health_check,
    check_status,
    daemonize,
    stop_daemon,
    _kill_process,
    _parent_wait,
)


class TestPidFile:
    """Tests for PID file path and I/O."""

    def test_get_pid_file_default_dir(self):
        """PID file path uses port number."""
        assert get_pid_file(4303) == DEFAULT_PID_DIR / "inertiad-4303.pid"

    def test_get_pid_file_custom_dir(self, tmp_path):
        """Different ports produce different PID files."""
        p1 = get_pid_file(8443, tmp_path)
        p2 = get_pid_file(9443, tmp_path)
        assert p1 != p2
        assert p1.parent == tmp_path

    def test_write_then_read(self, tmp_path):
        pid_file = PidFile(4303, tmp_path)
        pid_file.write(12345)
        assert pid_file.path.read_text() == "12345"
        assert pid_file.read() == 12345

    def test_read_missing_file(self, tmp_path):
        assert PidFile(4303, tmp_path).read() is None

    def test_read_invalid_content(self, tmp_path):
        """Non-integer or empty content reads as no PID."""
        pid_file = PidFile(4303, tmp_path)
        pid_file.path.write_text("not-a-pid\n")
        assert pid_file.read() is None
        pid_file.path.write_text("")
        assert pid_file.read() is None

    def test_remove_missing_is_noop(self, tmp_path):
        PidFile(4303, tmp_path).remove()

    def test_live_pid_of_current_process(self, tmp_path):
        pid_file = PidFile(4303, tmp_path)
        pid_file.write(os.getpid())
        assert pid_file.live_pid() == os.getpid()
        assert pid_file.path.exists()


class TestProcessAlive:
    """Tests for process existence checks."""

    def test_current_process(self):
        """Current process is alive."""
        assert _process_alive(os.getpid()) is True

    def test_nonexistent_pid(self):
        """Very high PID is not alive."""
        assert _process_alive(4194304) is False

    def test_permission_error_means_alive(self):
        """PermissionError means process exists but we can't signal it."""
        with patch("os.kill", side_effect=PermissionError):
            assert _process_alive(1) is True


class TestHealthCheck:
    """Tests for HTTPS health check."""

    def test_no_server_returns_false(self):
        """Health check returns False when no server is listening."""
        assert _health_check(19999, timeout=0.5) is False

    def test_successful_health_check(self):
        """Health check hits the public root route."""
        mock_conn = MagicMock()
        mock_conn.getresponse.return_value.status = 200

        with patch("server.daemon.http.client.HTTPSConnection", return_value=mock_conn):
            assert _health_check(4303) is True

        mock_conn.request.assert_called_once_with("GET", "/")
        mock_conn.close.assert_called_once()

    def test_non_200_returns_false(self):
        mock_conn = MagicMock()
        mock_conn.getresponse.return_value.status = 500

        with patch("server.daemon.http.client.HTTPSConnection", return_value=mock_conn):
            assert _health_check(4303) is False

    def test_connection_error_returns_false(self):
        mock_conn = MagicMock()
        mock_conn.request.side_effect = ConnectionRefusedError

        with patch("server.daemon.http.client.HTTPSConnection", return_value=mock_conn):
            assert _health_check(4303) is False


class TestCheckStatus:
    """Tests for daemon status checking."""

    def test_no_pid_file(self, tmp_path):
        """No PID file means not running."""
        assert check_status(4303, tmp_path) == {"running": False, "pid": None, "healthy": False}

    def test_stale_pid_file(self, tmp_path):
        """Stale PID file (process dead) is cleaned up."""
        pid_file = get_pid_file(4303, tmp_path)
        pid_file.write_text("99999999")

        with patch("server.daemon._process_alive", return_value=False):
            status = check_status(4303, tmp_path)

        assert status == {"running": False, "pid": None, "healthy": False}
        assert not pid_file.exists()

    def test_running_healthy(self, tmp_path):
        get_pid_file(4303, tmp_path).write_text("12345")

        with patch("server.daemon._process_alive", return_value=True), \
             patch("server.daemon._health_check", return_value=True):
            status = check_status(4303, tmp_path)

        assert status == {"running": True, "pid": 12345, "healthy": True}

    def test_running_unhealthy(self, tmp_path):
        get_pid_file(4303, tmp_path).write_text("12345")

        with patch("server.daemon._process_alive", return_value=True), \
             patch("server.daemon._health_check", return_value=False):
            status = check_status(4303, tmp_path)

        assert status == {"running": True, "pid": 12345, "healthy": False}


class TestDaemonize:
    """Tests for the pre-fork checks in daemonize."""

    def test_already_running_healthy(self, tmp_path, capsys):
        """A healthy daemon on the port is left alone."""
        factory = MagicMock()
        running = {"running": True, "pid": 123, "healthy": True}
        with patch("server.daemon.check_status", return_value=running), \
             patch("server.daemon.os.fork") as mock_fork:
            assert daemonize(factory, 4303, tmp_path, tmp_path / "daemon.log") == 0

        mock_fork.assert_not_called()
        factory.assert_not_called()
        assert "already running" in capsys.readouterr().out

    def test_unhealthy_daemon_replaced(self, tmp_path):
        """An unhealthy daemon is killed before forking a new one."""
        unhealthy = {"running": True, "pid": 123, "healthy": False}
        with patch("server.daemon.check_status", return_value=unhealthy), \
             patch("server.daemon._kill_process") as mock_kill, \
             patch("server.daemon.os.fork", return_value=4242), \
             patch("server.daemon._parent_wait", return_value=0) as mock_wait:
            assert daemonize(MagicMock(), 4303, tmp_path, tmp_path / "logs" / "daemon.log") == 0

        mock_kill.assert_called_once_with(123)
        mock_wait.assert_called_once()
        assert (tmp_path / "logs").is_dir()


class TestStopDaemon:
    """Tests for stop_daemon."""

    def test_not_running(self, tmp_path):
        """Stopping a non-running daemon returns True."""
        assert stop_daemon(4303, tmp_path) is True

    def test_stale_pid_cleaned(self, tmp_path):
        pid_file = get_pid_file(4303, tmp_path)
        pid_file.write_text("99999999")

        with patch("server.daemon._process_alive", return_value=False):
            assert stop_daemon(4303, tmp_path) is True

        assert not pid_file.exists()

    def test_running_process_killed(self, tmp_path):
        """Running process is killed and PID file cleaned."""
        pid_file = get_pid_file(4303, tmp_path)
        pid_file.write_text("12345")

        with patch("server.daemon._process_alive", return_value=True), \
             patch("server.daemon._kill_process", return_value=True) as mock_kill:
            assert stop_daemon(4303, tmp_path) is True
            mock_kill.assert_called_once_with(12345)

        assert not pid_file.exists()

    def test_kill_failure(self, tmp_path):
        """Returns False when kill fails."""
        get_pid_file(4303, tmp_path).write_text("12345")

        with patch("server.daemon._process_alive", return_value=True), \
             patch("server.daemon._kill_process", return_value=False):
            assert stop_daemon(4303, tmp_path) is False


class TestKillProcess:
    """Tests for _kill_process."""

    def test_already_dead(self):
        with patch("server.daemon._process_alive", return_value=False):
            assert _kill_process(12345) is True

    def test_sigterm_kills(self):
        """SIGTERM succeeds on first check."""
        with patch("server.daemon._process_alive", side_effect=[True, False]), \
             patch("os.kill") as mock_kill, \
             patch("time.sleep"):
            assert _kill_process(12345, timeout=0.1) is True
            mock_kill.assert_called_once_with(12345, signal.SIGTERM)

    def test_sigkill_after_timeout(self):
        """A process ignoring SIGTERM is sent SIGKILL."""
        with patch("server.daemon._process_alive", side_effect=[True, True, False]), \
             patch("server.daemon.time.monotonic", side_effect=[0, 100, 100]), \
             patch("os.kill") as mock_kill, \
             patch("time.sleep"):
            assert _kill_process(12345, timeout=1) is True

        assert [c.args[1] for c in mock_kill.call_args_list] == [signal.SIGTERM, signal.SIGKILL]

    def test_process_gone_during_sigterm(self):
        """ProcessLookupError during SIGTERM means process already exited."""
        with patch("server.daemon._process_alive", return_value=True), \
             patch("os.kill", side_effect=ProcessLookupError):
            assert _kill_process(12345) is True

    def test_survives_sigkill(self):
        with patch("server.daemon._process_alive", return_value=True), \
             patch("server.daemon.time.monotonic", side_effect=[0, 100, 0, 100]), \
             patch("os.kill") as mock_kill, \
             patch("time.sleep"):
            assert _kill_process(12345, timeout=1) is False
        assert mock_kill.call_count == 2


class TestParentWait:
    """Tests for _parent_wait (parent side of daemon startup)."""

    def test_closed_pipe_returns_error(self, tmp_path):
        """Daemon exiting without a ready signal returns 1."""
        read_fd, write_fd = os.pipe()
        os.close(write_fd)

        with patch("os.wait"):
            assert _parent_wait(read_fd, 4303, tmp_path, timeout=0.1) == 1

    def test_error_signal_returns_error(self, tmp_path, capsys):
        """Startup error text from the daemon is reported."""
        read_fd, write_fd = os.pipe()
        os.write(write_fd, b"error: TLS init failed\n")
        os.close(write_fd)

        with patch("os.wait"):
            assert _parent_wait(read_fd, 4303, tmp_path, timeout=1.0) == 1

        assert "TLS init failed" in capsys.readouterr().err

    def test_ready_with_health_check(self, tmp_path, capsys):
        read_fd, write_fd = os.pipe()
        os.write(write_fd, b"ready\n")
        os.close(write_fd)

        PidFile(4303, tmp_path).write(12345)

        with patch("os.wait"), \
             patch("server.daemon._health_check", return_value=True):
            assert _parent_wait(read_fd, 4303, tmp_path, timeout=1.0) == 0

        assert "PID 12345" in capsys.readouterr().out

    def test_ready_but_health_check_fails(self, tmp_path):
        read_fd, write_fd = os.pipe()
        os.write(write_fd, b"ready\n")
        os.close(write_fd)

        with patch("os.wait"), \
             patch("server.daemon._health_check", return_value=False), \
             patch("time.sleep"):
            assert _parent_wait(read_fd, 4303, tmp_path, timeout=1.0) == 1

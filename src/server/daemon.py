"""Background process management for inertiad.

`daemonize` detaches the server with a double fork and reports back to the
invoking shell over a pipe: the parent exits 0 only once the daemon has
written "ready" and answers GET / over TLS. The PID file is per port
(`inertiad-<port>.pid`) so several daemons can share a host.
"""

import http.client
import logging
import os
import select
import signal
import ssl
import sys
import time
from pathlib import Path
from typing import Callable, Optional

logger = logging.getLogger(__name__)

DEFAULT_PID_DIR = Path("/var/run/inertia")
DEFAULT_LOG_FILE = Path("/var/log/inertia/daemon.log")

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"

POLL_INTERVAL = 0.2
KILL_GRACE = 0.5
READY = "ready"


class PidFile:
    """PID file of the daemon listening on one port."""

    def __init__(self, port: int, pid_dir: Path = DEFAULT_PID_DIR):
        self.path = Path(pid_dir) / f"inertiad-{port}.pid"

    def read(self) -> Optional[int]:
        try:
            return int(self.path.read_text().strip())
        except (FileNotFoundError, ValueError):
            return None

    def write(self, pid: int):
        self.path.write_text(str(pid))

    def remove(self):
        self.path.unlink(missing_ok=True)

    def live_pid(self) -> Optional[int]:
        """Return the recorded PID if that process exists.

        A file naming a dead process is removed.
        """
        pid = self.read()
        if pid is None:
            return None
        if not _process_alive(pid):
            logger.debug("Removing stale PID file %s (PID %d)", self.path, pid)
            self.remove()
            return None
        return pid


def get_pid_file(port: int, pid_dir: Path = DEFAULT_PID_DIR) -> Path:
    return PidFile(port, pid_dir).path


def _process_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        pass  # owned by another user
    return True


def _health_check(port: int, timeout: float = 2.0) -> bool:
    """True if the daemon on port answers GET / with 200."""
    context = ssl.create_default_context()
    context.check_hostname = False
    context.verify_mode = ssl.CERT_NONE
    conn = http.client.HTTPSConnection("127.0.0.1", port, timeout=timeout, context=context)
    try:
        conn.request("GET", "/")
        return conn.getresponse().status == 200
    except (OSError, http.client.HTTPException):
        return False
    finally:
        conn.close()


def check_status(port: int, pid_dir: Path = DEFAULT_PID_DIR) -> dict:
    """Check daemon status.

    Returns:
        Dict with keys: running (bool), pid (int|None), healthy (bool).
    """
    pid = PidFile(port, pid_dir).live_pid()
    return {
        "running": pid is not None,
        "pid": pid,
        "healthy": pid is not None and _health_check(port),
    }


def _wait_until_gone(pid: int, timeout: float) -> bool:
    deadline = time.monotonic() + timeout
    while _process_alive(pid):
        if time.monotonic() >= deadline:
            return False
        time.sleep(POLL_INTERVAL)
    return True


def _kill_process(pid: int, timeout: float = 10.0) -> bool:
    """Send SIGTERM, escalating to SIGKILL if pid outlives timeout.

    Returns True if the process is gone.
    """
    if not _process_alive(pid):
        return True
    for sig, grace in ((signal.SIGTERM, timeout), (signal.SIGKILL, KILL_GRACE)):
        try:
            os.kill(pid, sig)
        except ProcessLookupError:
            return True
        if _wait_until_gone(pid, grace):
            return True
        logger.warning("PID %d still alive after %s", pid, signal.Signals(sig).name)
    return False


def stop_daemon(port: int, pid_dir: Path = DEFAULT_PID_DIR) -> bool:
    """Stop the daemon on port.

    Returns:
        True if the daemon was stopped (or wasn't running).
    """
    pid_file = PidFile(port, pid_dir)
    pid = pid_file.live_pid()
    if pid is None:
        return True
    stopped = _kill_process(pid)
    pid_file.remove()
    return stopped


def _redirect_stdio(log_file: Path):
    """Read stdin from /dev/null and append stdout/stderr to log_file."""
    log_fd = os.open(str(log_file), os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o644)
    null_fd = os.open(os.devnull, os.O_RDONLY)
    for fd, stream in ((null_fd, sys.stdin), (log_fd, sys.stdout), (log_fd, sys.stderr)):
        os.dup2(fd, stream.fileno())
    os.close(log_fd)
    os.close(null_fd)


def _notify(write_fd: int, message: str):
    with os.fdopen(write_fd, "w") as pipe:
        pipe.write(message + "\n")


def daemonize(
    server_factory: Callable,
    port: int,
    pid_dir: Path = DEFAULT_PID_DIR,
    log_file: Path = DEFAULT_LOG_FILE,
) -> int:
    """Start the server as a detached daemon.

    Args:
        server_factory: Callable returning a started Server. It runs in the
            daemon process, so bootstrap and engine setup happen there and
            their errors reach the parent through the pipe.
        port: Listening port (PID file name and health check)
        pid_dir: Directory for the PID file
        log_file: Destination for daemon stdout/stderr

    Returns:
        Exit code: 0 = daemon started, 1 = error.
    """
    status = check_status(port, pid_dir)
    if status["healthy"]:
        print(f"Daemon already running (PID {status['pid']}, port {port})")
        return 0
    if status["running"]:
        logger.warning("Killing unhealthy daemon (PID %d)", status["pid"])
        _kill_process(status["pid"])

    pid_file = PidFile(port, pid_dir)
    pid_file.remove()
    Path(pid_dir).mkdir(parents=True, exist_ok=True)
    Path(log_file).parent.mkdir(parents=True, exist_ok=True)

    read_fd, write_fd = os.pipe()
    if os.fork() > 0:
        os.close(write_fd)
        return _parent_wait(read_fd, port, pid_dir)

    # Intermediate child: lead a new session, then leave the daemon orphaned
    os.setsid()
    if os.fork() > 0:
        os._exit(0)

    os.close(read_fd)
    os.chdir("/")
    os.umask(0o022)
    _redirect_stdio(Path(log_file))
    logging.basicConfig(
        level=logging.getLogger().level or logging.INFO,
        format=LOG_FORMAT,
        datefmt=LOG_DATEFMT,
        stream=sys.stderr,
        force=True,
    )

    try:
        server = server_factory()
    except Exception as e:
        logger.error("Failed to start daemon: %s", e)
        _notify(write_fd, f"error: {e}")
        os._exit(1)

    pid_file.write(os.getpid())
    _notify(write_fd, READY)
    logger.info("Daemon started (PID %d, port %d)", os.getpid(), port)

    # serve_forever returns once the server's SIGTERM handler shuts it down
    try:
        server.serve_forever()
    except Exception:
        logger.exception("Server error")
    finally:
        pid_file.remove()
    return 0


def _parent_wait(read_fd: int, port: int, pid_dir: Path, timeout: float = 60.0) -> int:
    """Block until the daemon reports in, then confirm it is serving.

    The timeout covers certificate generation, which happens before the
    daemon listens.

    Returns:
        Exit code: 0 = success, 1 = error.
    """
    os.wait()  # intermediate child

    with os.fdopen(read_fd) as pipe:
        readable, _, _ = select.select([pipe], [], [], timeout)
        message = pipe.readline().strip() if readable else None

    if message is None:
        print("Error: Timed out waiting for daemon to start", file=sys.stderr)
        return 1
    if message != READY:
        print(f"Error: Daemon failed to start: {message or 'exited'}", file=sys.stderr)
        return 1

    for _ in range(10):
        if _health_check(port):
            pid = PidFile(port, pid_dir).read()
            print(f"Daemon started (PID {pid}, port {port})")
            return 0
        time.sleep(POLL_INTERVAL)

    print("Error: Daemon started but health check failed", file=sys.stderr)
    return 1

"""Git helpers for the tracked project repository.

Provides remote URL normalization (used to guard webhook redeploys) and
the small set of git operations a deploy needs: clone, update to a branch,
and read the current commit.
"""

import logging
import os
import re
import subprocess
import threading
from pathlib import Path
from typing import Optional, TextIO
from urllib.parse import urlparse

from project.errors import GitError

logger = logging.getLogger(__name__)

GIT_TIMEOUT = 300

# scp-like syntax: [user@]host:path (no scheme)
_SCP_REMOTE = re.compile(r"^(?:[^@/\s]+@)?(?P<host>[^:/\s]+):(?!//)(?P<path>.+)$")


def normalize_remote(url: str) -> str:
    """Reduce a git remote URL to a 'host/path' identity.

    SSH, HTTPS, git:// and scp-like forms of the same repository normalize
    to the same value, e.g. both ``git@github.com:org/repo.git`` and
    ``https://github.com/org/repo.git`` become ``github.com/org/repo``.

    Args:
        url: Remote URL in any supported form

    Returns:
        Normalized identity string

    Raises:
        ValueError: If the URL is empty or has no host
    """
    url = (url or "").strip()
    if not url:
        raise ValueError("Empty remote URL")

    if "://" in url:
        parsed = urlparse(url)
        host = parsed.hostname or ""
        path = parsed.path
    else:
        match = _SCP_REMOTE.match(url)
        if not match:
            raise ValueError(f"Unrecognized remote URL: {url}")
        host = match.group("host")
        path = match.group("path")

    if not host:
        raise ValueError(f"Remote URL has no host: {url}")

    path = path.strip("/")
    if path.endswith(".git"):
        path = path[:-4]
    return f"{host.lower()}/{path.rstrip('/')}"


def same_remote(a: str, b: str) -> bool:
    """Check whether two remote URLs refer to the same repository.

    Local paths and other host-less remotes only match themselves.
    """
    try:
        return normalize_remote(a) == normalize_remote(b)
    except ValueError:
        a, b = (a or "").strip(), (b or "").strip()
        return bool(a) and a == b


def get_branch_from_ref(ref: str) -> str:
    """Extract the branch name from a ref like 'refs/heads/main'."""
    prefix = "refs/heads/"
    if ref.startswith(prefix):
        return ref[len(prefix):]
    return ref


def _run_git(args: list[str], cwd: Optional[Path], out: Optional[TextIO], operation: str) -> str:
    """Run a git command, streaming its combined output line by line.

    Git never prompts: stdin is closed and terminal prompts are disabled,
    so a remote that wants credentials fails instead of waiting. The
    process is killed once GIT_TIMEOUT elapses, even mid-stream.

    Returns:
        Captured output

    Raises:
        GitError: If git is missing, exits non-zero or times out
    """
    cmd = ["git"] + args
    logger.debug("Running: %s", " ".join(cmd))
    try:
        proc = subprocess.Popen(
            cmd,
            cwd=cwd,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            env={**os.environ, "GIT_TERMINAL_PROMPT": "0"},
            text=True,
        )
    except OSError as e:
        raise GitError(operation, str(e)) from e

    expired = threading.Event()

    def kill():
        expired.set()
        proc.kill()

    timer = threading.Timer(GIT_TIMEOUT, kill)
    timer.daemon = True
    timer.start()
    lines = []
    try:
        assert proc.stdout is not None
        for line in proc.stdout:
            lines.append(line)
            if out is not None:
                out.write(line)
        rc = proc.wait()
    finally:
        timer.cancel()

    if expired.is_set():
        logger.warning("git %s killed after %ss", operation, GIT_TIMEOUT)
        raise GitError(operation, f"timed out after {GIT_TIMEOUT}s")

    output = "".join(lines)
    if rc != 0:
        raise GitError(operation, output.strip() or f"exit code {rc}")
    return output


def clone(remote: str, branch: str, dest: Path, out: Optional[TextIO] = None):
    """Clone the remote into dest, checking out branch."""
    dest.parent.mkdir(parents=True, exist_ok=True)
    _run_git(
        ["clone", "--branch", branch, "--progress", remote, str(dest)],
        cwd=None, out=out, operation="clone",
    )


def update(dest: Path, branch: str, out: Optional[TextIO] = None):
    """Fetch origin and hard-reset the checkout to origin/branch."""
    _run_git(["fetch", "--prune", "origin"], cwd=dest, out=out, operation="fetch")
    _run_git(["checkout", "-B", branch, f"origin/{branch}"], cwd=dest, out=out, operation="checkout")
    _run_git(["reset", "--hard", f"origin/{branch}"], cwd=dest, out=out, operation="reset")


def current_commit(dest: Path) -> str:
    """Return the HEAD commit hash of the checkout."""
    return _run_git(["rev-parse", "HEAD"], cwd=dest, out=None, operation="rev-parse").strip()


def origin_url(dest: Path) -> str:
    """Return the URL of the checkout's origin remote."""
    return _run_git(
        ["remote", "get-url", "origin"], cwd=dest, out=None, operation="remote get-url"
    ).strip()


def is_repo(path: Path) -> bool:
    """Check whether path is a git checkout."""
    return (path / ".git").is_dir()

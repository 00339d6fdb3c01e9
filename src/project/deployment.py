"""Deployment lifecycle.

The daemon owns exactly one Deployment: the project tracked from a git
remote, built with one of the build profiles and run on the local engine.

State machine:

    UNINITIALIZED -> BUILDING -> RUNNING -> STOPPING -> STOPPED
    any (but UNINITIALIZED) -> DESTROYING -> UNINITIALIZED
    BUILDING | STOPPING | DESTROYING -> FAILED (only reset leaves FAILED)

Mutating operations (deploy, down, destroy) are serialized by a single
lock acquired without waiting; a second mutation fails fast with
DeploymentBusyError. Reads copy fields under a short-lived state lock and
never wait for a mutation to finish.
"""

import logging
import re
import shutil
import threading
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Callable, Iterator, Mapping, Optional, TextIO

from project import git
from project.builders import (
    BUILD_COMPOSE,
    BUILD_HEROKUISH,
    BUILD_IMAGES,
    BUILDERS,
    DEFAULT_BUILD_FILE,
    herokuish_image_name,
)
from project.engine import COMPOSE_PROJECT_LABEL, Engine, iter_lines
from project.errors import (
    ContainerNotFoundError,
    DeploymentBusyError,
    GitError,
    InvalidOptionsError,
    InvalidStateError,
    NoDeploymentError,
    RemoteMismatchError,
)
from project.store import DeploymentStore

logger = logging.getLogger(__name__)

_ENV_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_PROJECT_NAME = re.compile(r"[^a-z0-9_-]+")


class DeploymentState(str, Enum):
    UNINITIALIZED = "uninitialized"
    BUILDING = "building"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    DESTROYING = "destroying"
    FAILED = "failed"


@dataclass(frozen=True)
class DeployOptions:
    """Parameters of one build-and-run operation.

    Empty fields keep the values recorded by the previous deploy.
    """

    branch: str = ""
    build_type: str = ""
    env: Mapping[str, str] = field(default_factory=dict)
    build_file: str = ""
    project: str = ""
    remote: str = ""

    def __post_init__(self):
        if self.build_type and self.build_type not in BUILDERS:
            raise InvalidOptionsError(
                f"Unknown build type: {self.build_type} "
                f"(expected one of: {', '.join(sorted(BUILDERS))})"
            )
        for name in self.env:
            if not _ENV_NAME.match(name):
                raise InvalidOptionsError(f"Invalid environment variable name: {name}")
        object.__setattr__(self, "env", MappingProxyType(dict(self.env)))

    @classmethod
    def from_dict(cls, data: dict) -> "DeployOptions":
        """Build options from an /up request body.

        Raises:
            InvalidOptionsError: On unknown keys or wrong types
        """
        if not isinstance(data, dict):
            raise InvalidOptionsError("Deploy options must be a JSON object")
        allowed = {"branch", "build_type", "env", "build_file", "project", "remote"}
        unknown = set(data) - allowed
        if unknown:
            raise InvalidOptionsError(f"Unknown deploy options: {', '.join(sorted(unknown))}")
        env = data.get("env") or {}
        if not isinstance(env, dict):
            raise InvalidOptionsError("env must be an object of name/value pairs")
        for key in allowed - {"env"}:
            if key in data and not isinstance(data[key], str):
                raise InvalidOptionsError(f"{key} must be a string")
        return cls(
            branch=data.get("branch", ""),
            build_type=data.get("build_type", ""),
            env={str(k): str(v) for k, v in env.items()},
            build_file=data.get("build_file", ""),
            project=data.get("project", ""),
            remote=data.get("remote", ""),
        )


@dataclass(frozen=True)
class LogOptions:
    container: str = ""
    follow: bool = False
    tail: Optional[int] = None


@dataclass
class ContainerStatus:
    name: str
    status: str
    started_at: str = ""


@dataclass
class DeploymentStatus:
    """Point-in-time view of the deployment, built on request."""

    project: str
    branch: str
    commit: str
    build_type: str
    state: str
    containers: list = field(default_factory=list)
    uptime_seconds: Optional[float] = None
    error: str = ""

    def to_dict(self) -> dict:
        return {
            "project": self.project,
            "branch": self.branch,
            "commit": self.commit,
            "build_type": self.build_type,
            "state": self.state,
            "containers": [
                {"name": c.name, "status": c.status, "started_at": c.started_at}
                for c in self.containers
            ],
            "uptime_seconds": self.uptime_seconds,
            "error": self.error,
        }


class LogStream:
    """Iterator over log lines. The caller must close it."""

    def __init__(self, lines: Iterator[str], close: Optional[Callable[[], None]] = None):
        self._lines = lines
        self._close = close
        self.closed = False

    def __iter__(self):
        return self._lines

    def close(self):
        if self.closed:
            return
        self.closed = True
        if self._close is not None:
            self._close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()


@dataclass
class _Snapshot:
    state: DeploymentState
    project: str
    remote: str
    branch: str
    build_type: str
    commit: str
    started_at: Optional[float]
    error: str


class Deployer(ABC):
    """Capability interface for the single tracked deployment.

    Holds the state bookkeeping and mutation lock; subclasses implement the
    operations. Route handlers depend only on this interface.
    """

    def __init__(self):
        self._mutation_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._state = DeploymentState.UNINITIALIZED
        self._project = ""
        self._remote = ""
        self._branch = ""
        self._build_type = BUILD_COMPOSE
        self._commit = ""
        self._started_at: Optional[float] = None
        self._error = ""

    @property
    def state(self) -> DeploymentState:
        with self._state_lock:
            return self._state

    def _set_state(self, state: DeploymentState, error: str = ""):
        with self._state_lock:
            previous = self._state
            self._state = state
            self._error = error
        logger.info("Deployment state: %s -> %s", previous.value, state.value)

    def _snapshot(self) -> _Snapshot:
        with self._state_lock:
            return _Snapshot(
                state=self._state,
                project=self._project,
                remote=self._remote,
                branch=self._branch,
                build_type=self._build_type,
                commit=self._commit,
                started_at=self._started_at,
                error=self._error,
            )

    @contextmanager
    def _mutation(self, operation: str):
        """Hold the mutation lock for one operation, failing fast if taken."""
        if not self._mutation_lock.acquire(blocking=False):
            raise DeploymentBusyError(operation)
        try:
            yield
        finally:
            self._mutation_lock.release()

    def is_busy(self) -> bool:
        return self._mutation_lock.locked()

    def get_branch(self) -> str:
        with self._state_lock:
            return self._branch

    def compare_remotes(self, url: str):
        """Raise unless url refers to the tracked repository.

        Raises:
            NoDeploymentError: If no remote is tracked
            RemoteMismatchError: If the repositories differ
        """
        with self._state_lock:
            tracked = self._remote
        if not tracked:
            raise NoDeploymentError()
        if not git.same_remote(tracked, url):
            raise RemoteMismatchError(tracked, url)

    @abstractmethod
    def deploy(self, options: DeployOptions, engine: Engine, out: TextIO):
        """Build and start the project."""

    @abstractmethod
    def down(self, engine: Engine, out: TextIO):
        """Stop running containers, keeping images and volumes."""

    @abstractmethod
    def destroy(self, engine: Engine, out: TextIO):
        """Remove everything the deployment created."""

    @abstractmethod
    def get_status(self, engine: Engine) -> DeploymentStatus:
        """Return a fresh status snapshot."""

    @abstractmethod
    def logs(self, options: LogOptions, engine: Engine) -> LogStream:
        """Return a log stream for one of the deployment's containers."""

    @abstractmethod
    def set_env(self, name: str, value: str):
        """Persist an environment variable for future deploys."""

    @abstractmethod
    def remove_env(self, name: str) -> bool:
        """Remove a persisted environment variable."""

    @abstractmethod
    def list_env(self) -> list[str]:
        """Return the names of persisted environment variables."""


def project_name_from_remote(remote: str) -> str:
    """Derive a container-safe project name from a remote URL."""
    try:
        identity = git.normalize_remote(remote)
    except ValueError:
        identity = remote
    name = identity.rstrip("/").rsplit("/", 1)[-1].lower()
    return _PROJECT_NAME.sub("-", name).strip("-") or "project"


def validate_env_name(name: str):
    if not _ENV_NAME.match(name or ""):
        raise InvalidOptionsError(f"Invalid environment variable name: {name!r}")


class Deployment(Deployer):
    """Engine-backed deployer for the project checked out at project_dir."""

    def __init__(self, project_dir: Path, store: DeploymentStore):
        super().__init__()
        self.project_dir = Path(project_dir)
        self.store = store

        metadata = store.load_metadata()
        if metadata.get("remote"):
            self._project = metadata.get("project", "")
            self._remote = metadata["remote"]
            self._branch = metadata.get("branch", "")
            self._build_type = metadata.get("build_type", BUILD_COMPOSE)
            self._build_file = metadata.get("build_file", DEFAULT_BUILD_FILE)
            self._commit = metadata.get("commit", "")
            self._state = DeploymentState.STOPPED
        else:
            self._build_file = DEFAULT_BUILD_FILE

    def recover(self, engine: Engine):
        """Align the restored state with what is actually running."""
        snap = self._snapshot()
        if snap.state != DeploymentState.STOPPED:
            return
        running = engine.project_containers(snap.project, all=False)
        if running:
            with self._state_lock:
                self._state = DeploymentState.RUNNING
                self._started_at = time.time()
            logger.info("Recovered running deployment %s (%s)", snap.project, snap.branch)

    def deploy(self, options: DeployOptions, engine: Engine, out: TextIO):
        """Build and start the project.

        Valid from UNINITIALIZED, STOPPED and RUNNING (a redeploy replaces the
        running containers). A first deploy requires options.remote.

        Raises:
            DeploymentBusyError: If another mutation is in progress
            InvalidStateError: If the deployment is FAILED
            InvalidOptionsError: If remote or branch cannot be determined
            RemoteMismatchError: If options.remote differs from the tracked remote
            EngineError, GitError: If the build fails (state becomes FAILED)
        """
        with self._mutation("deploy"):
            snap = self._snapshot()
            if snap.state == DeploymentState.FAILED:
                raise InvalidStateError("deploy", snap.state.value, "run reset first")

            remote = options.remote or snap.remote
            if not remote:
                raise InvalidOptionsError("remote is required for the first deploy")
            if snap.remote and options.remote and not git.same_remote(snap.remote, options.remote):
                raise RemoteMismatchError(snap.remote, options.remote)
            branch = options.branch or snap.branch
            if not branch:
                raise InvalidOptionsError("branch is required for the first deploy")
            project = options.project or snap.project or project_name_from_remote(remote)
            build_type = options.build_type or snap.build_type
            with self._state_lock:
                build_file = options.build_file or self._build_file

            if snap.state in (DeploymentState.RUNNING, DeploymentState.STOPPED):
                previous_project = snap.project
            else:
                previous_project = ""
            # Recorded up front so a failed first deploy can still be reset
            with self._state_lock:
                self._project = project
                self._remote = remote
                self._branch = branch
                self._build_type = build_type

            self._set_state(DeploymentState.BUILDING)
            try:
                if previous_project:
                    self._remove_containers(engine, previous_project, out)

                if git.is_repo(self.project_dir) and not self._checkout_tracks(remote):
                    out.write(f"Removing checkout of another remote at {self.project_dir}...\n")
                    shutil.rmtree(self.project_dir)
                if git.is_repo(self.project_dir):
                    out.write(f"Updating {self.project_dir} to {branch}...\n")
                    git.update(self.project_dir, branch, out)
                else:
                    out.write(f"Cloning {remote} ({branch})...\n")
                    git.clone(remote, branch, self.project_dir, out)
                commit = git.current_commit(self.project_dir)

                engine.ensure_image(BUILD_IMAGES[build_type], out)
                env = {**self.store.get_env(), **options.env}
                out.write(f"Building {project} at {commit[:7]} with {build_type}...\n")
                BUILDERS[build_type](engine, project, self.project_dir, env, build_file, out)
            except Exception as e:
                self._set_state(DeploymentState.FAILED, error=getattr(e, "message", str(e)))
                raise

            with self._state_lock:
                self._build_file = build_file
                self._commit = commit
                self._started_at = time.time()
            self.store.save_metadata(
                project=project,
                remote=remote,
                branch=branch,
                build_type=build_type,
                build_file=build_file,
                commit=commit,
            )
            self._set_state(DeploymentState.RUNNING)
            out.write(f"Project {project} deployed at {commit[:7]} ({branch})\n")

    def down(self, engine: Engine, out: TextIO):
        """Stop the project's containers.

        Calling down on an already stopped deployment is a no-op.

        Raises:
            NoDeploymentError: If nothing is deployed
            InvalidStateError: If the deployment is FAILED
        """
        with self._mutation("down"):
            snap = self._snapshot()
            if snap.state == DeploymentState.UNINITIALIZED:
                raise NoDeploymentError()
            if snap.state == DeploymentState.STOPPED:
                out.write("Project is already stopped\n")
                return
            if snap.state != DeploymentState.RUNNING:
                raise InvalidStateError("stop", snap.state.value, "run reset first")

            self._set_state(DeploymentState.STOPPING)
            try:
                for container in engine.project_containers(snap.project, all=False):
                    engine.stop(container, out)
            except Exception as e:
                self._set_state(DeploymentState.FAILED, error=getattr(e, "message", str(e)))
                raise
            with self._state_lock:
                self._started_at = None
            self._set_state(DeploymentState.STOPPED)
            out.write(f"Project {snap.project} stopped\n")

    def destroy(self, engine: Engine, out: TextIO):
        """Remove containers, built images, networks and the checkout.

        Persisted environment variables survive a reset.

        Raises:
            NoDeploymentError: If nothing is deployed
        """
        with self._mutation("destroy"):
            snap = self._snapshot()
            if snap.state == DeploymentState.UNINITIALIZED:
                raise NoDeploymentError()

            self._set_state(DeploymentState.DESTROYING)
            try:
                images = self._remove_containers(engine, snap.project, out)
                if snap.build_type == BUILD_HEROKUISH:
                    images.add(herokuish_image_name(snap.project))
                for image in sorted(images):
                    out.write(f"Removing image {image}...\n")
                    engine.remove_image(image)
                if snap.project:
                    engine.prune_networks(snap.project)
                if self.project_dir.exists():
                    out.write(f"Removing {self.project_dir}...\n")
                    shutil.rmtree(self.project_dir)
            except Exception as e:
                self._set_state(DeploymentState.FAILED, error=getattr(e, "message", str(e)))
                raise

            self.store.clear_metadata()
            with self._state_lock:
                self._project = ""
                self._remote = ""
                self._branch = ""
                self._build_type = BUILD_COMPOSE
                self._build_file = DEFAULT_BUILD_FILE
                self._commit = ""
                self._started_at = None
            self._set_state(DeploymentState.UNINITIALIZED)
            out.write("Project removed\n")

    def _checkout_tracks(self, remote: str) -> bool:
        try:
            origin = git.origin_url(self.project_dir)
        except GitError as e:
            logger.warning("Cannot read origin of %s: %s", self.project_dir, e.message)
            return False
        return git.same_remote(origin, remote)

    def _remove_containers(self, engine: Engine, project: str, out: TextIO) -> set:
        """Stop and remove all project containers.

        Returns:
            Image ids of removed compose service containers
        """
        images = set()
        if not project:
            return images
        for container in engine.project_containers(project, all=True):
            labels = (container.attrs or {}).get("Config", {}).get("Labels") or {}
            if labels.get(COMPOSE_PROJECT_LABEL) == project and container.attrs.get("Image"):
                images.add(container.attrs["Image"])
            engine.stop(container, out)
            engine.remove(container, out)
        return images

    def get_status(self, engine: Engine) -> DeploymentStatus:
        """Build a status snapshot from the engine.

        Raises:
            NoDeploymentError: If nothing is deployed
        """
        snap = self._snapshot()
        if snap.state == DeploymentState.UNINITIALIZED:
            raise NoDeploymentError()

        containers = []
        if snap.project:
            for container in engine.project_containers(snap.project, all=True):
                state = (container.attrs or {}).get("State", {})
                containers.append(ContainerStatus(
                    name=container.name,
                    status=container.status,
                    started_at=state.get("StartedAt", ""),
                ))

        uptime = None
        if snap.state == DeploymentState.RUNNING and snap.started_at:
            uptime = round(time.time() - snap.started_at, 1)

        return DeploymentStatus(
            project=snap.project,
            branch=snap.branch,
            commit=snap.commit,
            build_type=snap.build_type,
            state=snap.state.value,
            containers=containers,
            uptime_seconds=uptime,
            error=snap.error,
        )

    def logs(self, options: LogOptions, engine: Engine) -> LogStream:
        """Open a log stream for a project container.

        With a single project container, options.container may be empty.

        Raises:
            NoDeploymentError: If nothing is deployed
            InvalidStateError: If the deployment is not running or stopping
            ContainerNotFoundError: If the container is not part of the project
        """
        snap = self._snapshot()
        if snap.state == DeploymentState.UNINITIALIZED:
            raise NoDeploymentError()
        if snap.state not in (DeploymentState.RUNNING, DeploymentState.STOPPING):
            raise InvalidStateError("read logs", snap.state.value)

        containers = engine.project_containers(snap.project, all=True)
        wanted = options.container.lstrip("/")
        if wanted:
            matches = [c for c in containers if c.name == wanted]
            if not matches:
                raise ContainerNotFoundError(wanted)
            container = matches[0]
        elif len(containers) == 1:
            container = containers[0]
        elif not containers:
            raise ContainerNotFoundError(snap.project)
        else:
            names = ", ".join(sorted(c.name for c in containers))
            raise InvalidOptionsError(f"container is required (one of: {names})")

        tail = options.tail if options.tail is not None else "all"
        raw = engine.logs(container, follow=options.follow, tail=tail)
        return LogStream(iter_lines(raw), close=getattr(raw, "close", None))

    def set_env(self, name: str, value: str):
        validate_env_name(name)
        self.store.set_env(name, value)

    def remove_env(self, name: str) -> bool:
        validate_env_name(name)
        return self.store.remove_env(name)

    def list_env(self) -> list[str]:
        return list(self.store.get_env())

"""In-memory deployer.

Implements the same state machine as Deployment without touching git or
the container engine. Used by the route handler tests and for running the
daemon without an engine (``--fake-engine``).
"""

import threading
import time
from typing import Optional, TextIO

from project.deployment import (
    ContainerStatus,
    Deployer,
    DeploymentState,
    DeploymentStatus,
    DeployOptions,
    LogOptions,
    LogStream,
    project_name_from_remote,
    validate_env_name,
)
from project.engine import Engine
from project.errors import (
    ContainerNotFoundError,
    DeployerError,
    InvalidOptionsError,
    InvalidStateError,
    NoDeploymentError,
)


class FakeDeployer(Deployer):
    """Deployer test double recording every call.

    Attributes:
        calls: List of (operation, args) tuples in call order
        fail_with: If set, the next deploy raises this error
        gate: If set, deploy waits on this event while BUILDING
        log_lines: Lines returned by logs()
    """

    def __init__(self, remote: str = "", branch: str = "", project: str = ""):
        super().__init__()
        self.calls: list = []
        self.fail_with: Optional[DeployerError] = None
        self.gate: Optional[threading.Event] = None
        self.building = threading.Event()
        self.log_lines = ["log line 1\n", "log line 2\n"]
        self.env: dict = {}
        if remote:
            self._remote = remote
            self._branch = branch or "main"
            self._project = project or project_name_from_remote(remote)
            self._commit = "0" * 40
            self._state = DeploymentState.RUNNING
            self._started_at = time.time()

    def deploy(self, options: DeployOptions, engine: Engine, out: TextIO):
        with self._mutation("deploy"):
            self.calls.append(("deploy", options))
            snap = self._snapshot()
            if snap.state == DeploymentState.FAILED:
                raise InvalidStateError("deploy", snap.state.value, "run reset first")
            remote = options.remote or snap.remote
            branch = options.branch or snap.branch
            if not remote or not branch:
                raise InvalidOptionsError("remote and branch are required for the first deploy")

            self._set_state(DeploymentState.BUILDING)
            self.building.set()
            out.write(f"Building {remote} ({branch})\n")
            if self.gate is not None:
                self.gate.wait(timeout=10)
            if self.fail_with is not None:
                error, self.fail_with = self.fail_with, None
                self._set_state(DeploymentState.FAILED, error=error.message)
                raise error

            with self._state_lock:
                self._remote = remote
                self._branch = branch
                self._project = options.project or snap.project or project_name_from_remote(remote)
                self._build_type = options.build_type or snap.build_type
                self._commit = "f" * 40
                self._started_at = time.time()
            self._set_state(DeploymentState.RUNNING)
            out.write("Deployed\n")

    def down(self, engine: Engine, out: TextIO):
        with self._mutation("down"):
            self.calls.append(("down", None))
            snap = self._snapshot()
            if snap.state == DeploymentState.UNINITIALIZED:
                raise NoDeploymentError()
            if snap.state == DeploymentState.STOPPED:
                return
            if snap.state != DeploymentState.RUNNING:
                raise InvalidStateError("stop", snap.state.value)
            self._set_state(DeploymentState.STOPPING)
            out.write("Stopped\n")
            self._set_state(DeploymentState.STOPPED)

    def destroy(self, engine: Engine, out: TextIO):
        with self._mutation("destroy"):
            self.calls.append(("destroy", None))
            if self.state == DeploymentState.UNINITIALIZED:
                raise NoDeploymentError()
            self._set_state(DeploymentState.DESTROYING)
            with self._state_lock:
                self._remote = ""
                self._branch = ""
                self._project = ""
                self._commit = ""
                self._started_at = None
            out.write("Removed\n")
            self._set_state(DeploymentState.UNINITIALIZED)

    def get_status(self, engine: Engine) -> DeploymentStatus:
        snap = self._snapshot()
        if snap.state == DeploymentState.UNINITIALIZED:
            raise NoDeploymentError()
        running = snap.state == DeploymentState.RUNNING
        return DeploymentStatus(
            project=snap.project,
            branch=snap.branch,
            commit=snap.commit,
            build_type=snap.build_type,
            state=snap.state.value,
            containers=[ContainerStatus(name=snap.project, status="running" if running else "exited")],
            uptime_seconds=round(time.time() - snap.started_at, 1) if running and snap.started_at else None,
            error=snap.error,
        )

    def logs(self, options: LogOptions, engine: Engine) -> LogStream:
        snap = self._snapshot()
        if snap.state == DeploymentState.UNINITIALIZED:
            raise NoDeploymentError()
        if snap.state not in (DeploymentState.RUNNING, DeploymentState.STOPPING):
            raise InvalidStateError("read logs", snap.state.value)
        if options.container and options.container.lstrip("/") != snap.project:
            raise ContainerNotFoundError(options.container)
        lines = list(self.log_lines)
        if options.tail is not None:
            lines = lines[-options.tail:] if options.tail else []
        return LogStream(iter(lines))

    def set_env(self, name: str, value: str):
        validate_env_name(name)
        self.env[name] = value

    def remove_env(self, name: str) -> bool:
        validate_env_name(name)
        return self.env.pop(name, None) is not None

    def list_env(self) -> list[str]:
        return sorted(self.env)

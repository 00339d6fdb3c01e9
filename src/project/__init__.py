"""Project deployment: state machine, engine adapter, git helpers."""

from project.deployment import (
    Deployer,
    Deployment,
    DeploymentState,
    DeploymentStatus,
    DeployOptions,
    LogOptions,
    LogStream,
)
from project.engine import Engine
from project.errors import (
    DeployerError,
    DeploymentBusyError,
    EngineError,
    GitError,
    InvalidStateError,
    NoDeploymentError,
    RemoteMismatchError,
)
from project.fake import FakeDeployer
from project.store import DeploymentStore

__all__ = [
    "Deployer",
    "Deployment",
    "DeploymentState",
    "DeploymentStatus",
    "DeployOptions",
    "LogOptions",
    "LogStream",
    "Engine",
    "DeployerError",
    "DeploymentBusyError",
    "EngineError",
    "GitError",
    "InvalidStateError",
    "NoDeploymentError",
    "RemoteMismatchError",
    "FakeDeployer",
    "DeploymentStore",
]

"""Tests for project/fake.py - the in-memory deployer used by server tests."""

import io
import sys
import threading
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from project.deployment import DeploymentState, DeployOptions, LogOptions
from project.errors import (
    ContainerNotFoundError,
    DeploymentBusyError,
    EngineError,
    InvalidStateError,
    NoDeploymentError,
)
from project.fake import FakeDeployer

REMOTE = "https://github.com/org/app.git"


class TestFakeDeployer:
    def test_starts_uninitialized(self):
        deployer = FakeDeployer()
        assert deployer.state == DeploymentState.UNINITIALIZED
        with pytest.raises(NoDeploymentError):
            deployer.get_status(None)

    def test_preloaded_is_running(self):
        deployer = FakeDeployer(remote=REMOTE)
        status = deployer.get_status(None)
        assert status.state == "running"
        assert status.branch == "main"
        assert status.project == "app"

    def test_deploy_records_call(self):
        deployer = FakeDeployer()
        options = DeployOptions(remote=REMOTE, branch="dev")
        deployer.deploy(options, None, io.StringIO())
        assert deployer.calls == [("deploy", options)]
        assert deployer.get_branch() == "dev"
        assert deployer.state == DeploymentState.RUNNING

    def test_branch_only_deploy_keeps_build_type(self):
        deployer = FakeDeployer()
        deployer.deploy(DeployOptions(remote=REMOTE, branch="main", build_type="herokuish"), None, io.StringIO())
        deployer.deploy(DeployOptions(branch="main"), None, io.StringIO())
        assert deployer.get_status(None).build_type == "herokuish"

    def test_fail_with(self):
        deployer = FakeDeployer(remote=REMOTE)
        deployer.fail_with = EngineError("build", "boom")
        with pytest.raises(EngineError):
            deployer.deploy(DeployOptions(), None, io.StringIO())
        assert deployer.state == DeploymentState.FAILED
        with pytest.raises(InvalidStateError):
            deployer.deploy(DeployOptions(), None, io.StringIO())

    def test_gate_makes_busy(self):
        deployer = FakeDeployer(remote=REMOTE)
        deployer.gate = threading.Event()
        thread = threading.Thread(
            target=deployer.deploy, args=(DeployOptions(), None, io.StringIO())
        )
        thread.start()
        assert deployer.building.wait(5)
        with pytest.raises(DeploymentBusyError):
            deployer.down(None, io.StringIO())
        deployer.gate.set()
        thread.join(5)
        assert deployer.state == DeploymentState.RUNNING

    def test_down_and_destroy(self):
        deployer = FakeDeployer(remote=REMOTE)
        deployer.down(None, io.StringIO())
        deployer.down(None, io.StringIO())
        assert deployer.state == DeploymentState.STOPPED
        deployer.destroy(None, io.StringIO())
        assert deployer.state == DeploymentState.UNINITIALIZED
        assert [op for op, _ in deployer.calls] == ["down", "down", "destroy"]

    def test_logs_tail_and_container(self):
        deployer = FakeDeployer(remote=REMOTE)
        assert list(deployer.logs(LogOptions(tail=1), None)) == ["log line 2\n"]
        with pytest.raises(ContainerNotFoundError):
            deployer.logs(LogOptions(container="db"), None)

    def test_env(self):
        deployer = FakeDeployer()
        deployer.set_env("B", "1")
        deployer.set_env("A", "2")
        assert deployer.list_env() == ["A", "B"]
        assert deployer.remove_env("A") is True
        assert deployer.remove_env("A") is False

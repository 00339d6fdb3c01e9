"""Tests for server/webhook.py and the /webhook handler."""

import json
import sys
from pathlib import Path
from unittest.mock import MagicMock

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from project.errors import RemoteMismatchError
from project.fake import FakeDeployer
from server.handlers import Request, handle_webhook
from server.tokens import sign_payload
from server.webhook import (
    PROVIDER_GITHUB,
    PROVIDER_GITLAB,
    WebhookPayloadError,
    WebhookSignatureError,
    detect_provider,
    parse_event,
    verify_webhook,
)

KEY = b"webhook-secret"
REMOTE = "git@github.com:org/app.git"


def github_push(branch="main", url="https://github.com/org/app.git"):
    return json.dumps({
        "ref": f"refs/heads/{branch}",
        "after": "abcdef1234567890",
        "repository": {"clone_url": url, "ssh_url": "git@github.com:org/app.git"},
    }).encode()


def gitlab_push(branch="main"):
    return json.dumps({
        "ref": f"refs/heads/{branch}",
        "checkout_sha": "0123456789abcdef",
        "project": {"git_http_url": "https://gitlab.com/org/app.git"},
    }).encode()


def github_request(body, event="push", key=KEY):
    headers = {"X-GitHub-Event": event, "X-Hub-Signature-256": sign_payload(body, key)}
    return Request(method="POST", path="/webhook", headers=headers, body=body)


class TestDetectProvider:
    def test_github(self):
        assert detect_provider({"X-GitHub-Event": "push"}) == (PROVIDER_GITHUB, "push")

    def test_gitlab(self):
        assert detect_provider({"X-Gitlab-Event": "Push Hook"}) == (PROVIDER_GITLAB, "Push Hook")

    def test_unknown(self):
        with pytest.raises(WebhookPayloadError):
            detect_provider({"X-Other-Event": "push"})


class TestVerify:
    def test_github_valid(self):
        body = github_push()
        verify_webhook(PROVIDER_GITHUB, {"X-Hub-Signature-256": sign_payload(body, KEY)}, body, KEY)

    def test_github_legacy_sha1(self):
        body = github_push()
        verify_webhook(PROVIDER_GITHUB, {"X-Hub-Signature": sign_payload(body, KEY, "sha1")}, body, KEY)

    def test_github_bad_signature(self):
        body = github_push()
        headers = {"X-Hub-Signature-256": sign_payload(body, b"other")}
        with pytest.raises(WebhookSignatureError) as exc_info:
            verify_webhook(PROVIDER_GITHUB, headers, body, KEY)
        assert exc_info.value.code == "E600"
        assert exc_info.value.http_status == 401

    def test_github_unsigned(self):
        with pytest.raises(WebhookSignatureError):
            verify_webhook(PROVIDER_GITHUB, {}, github_push(), KEY)

    def test_gitlab_token(self):
        verify_webhook(PROVIDER_GITLAB, {"X-Gitlab-Token": "webhook-secret"}, b"{}", KEY)
        with pytest.raises(WebhookSignatureError):
            verify_webhook(PROVIDER_GITLAB, {"X-Gitlab-Token": "wrong"}, b"{}", KEY)


class TestParseEvent:
    def test_github_push(self):
        event = parse_event(PROVIDER_GITHUB, "push", github_push("dev"))
        assert event.is_push
        assert event.branch == "dev"
        assert event.commit == "abcdef1234567890"
        assert "https://github.com/org/app.git" in event.remote_urls

    def test_gitlab_push(self):
        event = parse_event(PROVIDER_GITLAB, "Push Hook", gitlab_push("feature/x"))
        assert event.branch == "feature/x"
        assert event.commit == "0123456789abcdef"
        assert event.remote_urls == ["https://gitlab.com/org/app.git"]

    def test_non_push_not_parsed(self):
        event = parse_event(PROVIDER_GITHUB, "ping", b"not even json")
        assert not event.is_push

    @pytest.mark.parametrize("body", [b"", b"[1]", b"{bad", b'{"repository": {}}'])
    def test_bad_payload(self, body):
        with pytest.raises(WebhookPayloadError) as exc_info:
            parse_event(PROVIDER_GITHUB, "push", body)
        assert exc_info.value.code == "E601"

    def test_missing_repository(self):
        with pytest.raises(WebhookPayloadError):
            parse_event(PROVIDER_GITHUB, "push", json.dumps({"ref": "refs/heads/main"}).encode())


class TestHandleWebhook:
    """The handler only redeploys for pushes to the tracked repository and branch."""

    @pytest.fixture
    def deployer(self):
        return FakeDeployer(remote=REMOTE, branch="main")

    @pytest.fixture
    def ctx(self, make_context, deployer):
        ctx = make_context(deployer)
        ctx.submit_deploy = MagicMock()
        return ctx

    def test_matching_push_submits_one_deploy(self, ctx):
        data, status = handle_webhook(ctx, github_request(github_push("main")))
        assert status == 202
        assert data["status"] == "accepted"
        ctx.submit_deploy.assert_called_once()
        options = ctx.submit_deploy.call_args[0][0]
        assert options.branch == "main"

    def test_other_branch_ignored(self, ctx):
        data, status = handle_webhook(ctx, github_request(github_push("feature")))
        assert status == 202
        assert data["status"] == "ignored"
        ctx.submit_deploy.assert_not_called()

    def test_other_repository_rejected(self, ctx):
        body = json.dumps({
            "ref": "refs/heads/main",
            "after": "abcdef1234567890",
            "repository": {"clone_url": "https://github.com/org/other.git"},
        }).encode()
        with pytest.raises(RemoteMismatchError):
            handle_webhook(ctx, github_request(body))
        ctx.submit_deploy.assert_not_called()

    def test_no_deployment_ignored(self, make_context):
        ctx = make_context(FakeDeployer())
        ctx.submit_deploy = MagicMock()
        data, status = handle_webhook(ctx, github_request(github_push()))
        assert status == 202
        assert data["status"] == "ignored"
        ctx.submit_deploy.assert_not_called()

    def test_non_push_ignored(self, ctx):
        data, status = handle_webhook(ctx, github_request(b"{}", event="ping"))
        assert status == 202
        ctx.submit_deploy.assert_not_called()

    def test_bad_signature(self, ctx):
        with pytest.raises(WebhookSignatureError):
            handle_webhook(ctx, github_request(github_push(), key=b"wrong"))
        ctx.submit_deploy.assert_not_called()

    def test_no_key_configured(self, make_context, deployer):
        ctx = make_context(deployer, webhook_key=None)
        with pytest.raises(WebhookSignatureError):
            handle_webhook(ctx, github_request(github_push()))


class TestBackgroundDeploy:
    """submit_deploy runs the deploy on the worker and logs the outcome."""

    def test_runs_deploy(self, make_context):
        deployer = FakeDeployer(remote=REMOTE, branch="main")
        ctx = make_context(deployer)
        from project.deployment import DeployOptions
        assert ctx.submit_deploy(DeployOptions(branch="main")).result(5) is True
        assert [op for op, _ in deployer.calls] == ["deploy"]
        assert deployer.get_status(None).commit == "f" * 40

    def test_failure_logged(self, make_context, caplog):
        from project.deployment import DeployOptions
        from project.errors import EngineError
        deployer = FakeDeployer(remote=REMOTE, branch="main")
        deployer.fail_with = EngineError("build", "boom")
        ctx = make_context(deployer)
        assert ctx.submit_deploy(DeployOptions(branch="main")).result(5) is False
        assert "boom" in caplog.text

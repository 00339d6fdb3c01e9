"""Webhook payload verification and parsing.

Supported providers:
- GitHub: X-GitHub-Event, HMAC signature in X-Hub-Signature-256
  (or legacy X-Hub-Signature)
- GitLab: X-Gitlab-Event, shared secret in X-Gitlab-Token
"""

import hmac as hmac_mod
import json
import logging
from dataclasses import dataclass, field

from project.git import get_branch_from_ref
from server.tokens import verify_signature

logger = logging.getLogger(__name__)

PROVIDER_GITHUB = "github"
PROVIDER_GITLAB = "gitlab"

PUSH_EVENTS = {
    PROVIDER_GITHUB: "push",
    PROVIDER_GITLAB: "Push Hook",
}


class WebhookError(Exception):
    """Webhook rejected. Never a server fault."""

    def __init__(self, code: str, message: str, http_status: int):
        self.code = code
        self.message = message
        self.http_status = http_status
        super().__init__(f"{code}: {message}")


class WebhookSignatureError(WebhookError):
    def __init__(self, message: str = "Invalid webhook signature"):
        super().__init__("E600", message, 401)


class WebhookPayloadError(WebhookError):
    def __init__(self, message: str):
        super().__init__("E601", f"Invalid webhook payload: {message}", 400)


@dataclass
class WebhookEvent:
    provider: str
    event: str
    branch: str = ""
    commit: str = ""
    remote_urls: list = field(default_factory=list)

    @property
    def is_push(self) -> bool:
        return PUSH_EVENTS.get(self.provider) == self.event


def detect_provider(headers) -> tuple[str, str]:
    """Return (provider, event name) from request headers.

    Raises:
        WebhookPayloadError: If no supported provider header is present
    """
    if headers.get("X-GitHub-Event"):
        return PROVIDER_GITHUB, headers.get("X-GitHub-Event")
    if headers.get("X-Gitlab-Event"):
        return PROVIDER_GITLAB, headers.get("X-Gitlab-Event")
    raise WebhookPayloadError("unrecognized webhook provider")


def verify_webhook(provider: str, headers, body: bytes, key: bytes):
    """Check the request was sent by a holder of the webhook key.

    Raises:
        WebhookSignatureError: If the signature or token does not match
    """
    if provider == PROVIDER_GITHUB:
        signature = headers.get("X-Hub-Signature-256") or headers.get("X-Hub-Signature") or ""
        if not verify_signature(body, signature, key):
            raise WebhookSignatureError()
    elif provider == PROVIDER_GITLAB:
        token = (headers.get("X-Gitlab-Token") or "").encode()
        if not token or not hmac_mod.compare_digest(token, key):
            raise WebhookSignatureError("Invalid webhook token")
    else:
        raise WebhookPayloadError(f"unsupported provider: {provider}")


def _urls(section: dict, keys: tuple) -> list:
    return [section[k] for k in keys if isinstance(section.get(k), str) and section[k]]


def parse_event(provider: str, event: str, body: bytes) -> WebhookEvent:
    """Parse a push payload into a WebhookEvent.

    Non-push events are returned with only provider and event set.

    Raises:
        WebhookPayloadError: If the body is not a JSON object or lacks a ref
    """
    parsed = WebhookEvent(provider=provider, event=event)
    if not parsed.is_push:
        return parsed

    try:
        payload = json.loads(body or b"")
    except ValueError:
        raise WebhookPayloadError("body is not valid JSON")
    if not isinstance(payload, dict):
        raise WebhookPayloadError("body is not a JSON object")

    ref = payload.get("ref")
    if not isinstance(ref, str) or not ref:
        raise WebhookPayloadError("missing ref")
    parsed.branch = get_branch_from_ref(ref)

    if provider == PROVIDER_GITHUB:
        parsed.commit = payload.get("after") or ""
        parsed.remote_urls = _urls(
            payload.get("repository") or {},
            ("clone_url", "ssh_url", "git_url", "html_url"),
        )
    else:
        parsed.commit = payload.get("checkout_sha") or payload.get("after") or ""
        parsed.remote_urls = _urls(
            payload.get("project") or payload.get("repository") or {},
            ("git_http_url", "git_ssh_url", "web_url", "url"),
        )

    if not parsed.remote_urls:
        raise WebhookPayloadError("missing repository URL")
    return parsed

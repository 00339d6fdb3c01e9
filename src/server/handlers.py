"""Route handlers.

Each handler takes the daemon context and a Request and either returns a
(response_dict, http_status) tuple or streams text through req.stream()
and returns None. Errors are raised, not returned; the server maps them to
JSON error bodies (or a trailing error line once streaming has started).
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Callable, Optional, Tuple

from project.deployment import DeployOptions, LogOptions
from project.errors import InvalidOptionsError, NoDeploymentError, RemoteMismatchError
from server.auth import AuthError, Identity, Tier
from server.context import DaemonContext
from server.tokens import issue_token
from server.users import ROLE_ADMIN, ROLE_USER, UserError
from server.webhook import (
    WebhookSignatureError,
    detect_provider,
    parse_event,
    verify_webhook,
)

logger = logging.getLogger(__name__)


class RequestError(Exception):
    """Malformed request."""

    def __init__(self, message: str, code: str = "E100", http_status: int = 400):
        self.code = code
        self.message = message
        self.http_status = http_status
        super().__init__(f"{code}: {message}")


@dataclass
class Request:
    """Parsed HTTP request handed to route handlers."""

    method: str
    path: str
    query: dict = field(default_factory=dict)
    headers: dict = field(default_factory=dict)
    body: bytes = b""
    remote_addr: str = ""
    identity: Optional[Identity] = None
    stream_factory: Optional[Callable] = None
    _stream: object = None

    def json(self) -> dict:
        """Decode the body as a JSON object (empty body is {})."""
        if not self.body:
            return {}
        try:
            data = json.loads(self.body)
        except ValueError:
            raise RequestError("Request body is not valid JSON")
        if not isinstance(data, dict):
            raise RequestError("Request body must be a JSON object")
        return data

    def stream(self):
        """Return the response text stream, creating it on first use."""
        if self._stream is None:
            if self.stream_factory is None:
                raise RuntimeError("Request does not support streaming")
            self._stream = self.stream_factory()
        return self._stream

    def query_param(self, name: str, default: str = "") -> str:
        values = self.query.get(name)
        if not values:
            return default
        return values[0] if isinstance(values, list) else values


def _require_str(data: dict, key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value:
        raise RequestError(f"Missing or invalid field: {key}")
    return value


def _parse_bool(value: str) -> bool:
    return value.lower() in ("1", "true", "yes", "on")


# Public

def handle_root(ctx: DaemonContext, req: Request) -> Tuple[dict, int]:
    """Liveness check."""
    return {"status": "ok", "version": ctx.version}, 200


def handle_webhook(ctx: DaemonContext, req: Request) -> Tuple[dict, int]:
    """Validate a push notification and redeploy if it targets the tracked branch.

    The deploy runs in the background; this returns as soon as it is queued.
    """
    provider, event_name = detect_provider(req.headers)
    if not ctx.webhook_key:
        logger.error("Webhook received but no webhook key is configured")
        raise WebhookSignatureError("Webhook verification key not configured")
    verify_webhook(provider, req.headers, req.body, ctx.webhook_key)

    event = parse_event(provider, event_name, req.body)
    if not event.is_push:
        logger.info("Ignoring %s %s event", provider, event_name)
        return {"status": "ignored", "reason": f"unsupported event: {event_name}"}, 202

    try:
        matched = _match_remote(ctx, event.remote_urls)
    except NoDeploymentError:
        logger.info("Ignoring push to %s: no deployment", event.branch)
        return {"status": "ignored", "reason": "no active deployment"}, 202
    logger.info("Received %s push for %s (%s) from %s", provider, event.branch, event.commit[:7], matched)

    tracked = ctx.deployer.get_branch()
    if event.branch != tracked:
        logger.info("Ignoring push to %s: tracking %s", event.branch, tracked)
        return {"status": "ignored", "reason": f"branch {event.branch} is not tracked"}, 202

    ctx.submit_deploy(DeployOptions(branch=event.branch))
    return {"status": "accepted", "branch": event.branch, "commit": event.commit}, 202


def _match_remote(ctx: DaemonContext, urls: list) -> str:
    """Return the first URL matching the tracked remote.

    Raises:
        NoDeploymentError: If nothing is tracked
        RemoteMismatchError: If no URL matches
    """
    mismatch = None
    for url in urls:
        try:
            ctx.deployer.compare_remotes(url)
            return url
        except RemoteMismatchError as e:
            mismatch = e
    if mismatch is None:
        raise RequestError("Webhook payload has no repository URL", code="E601")
    raise mismatch


def handle_login(ctx: DaemonContext, req: Request) -> Tuple[dict, int]:
    data = req.json()
    username = _require_str(data, "username")
    password = _require_str(data, "password")
    user = ctx.credentials.verify_password(username, password)
    if user is None:
        logger.warning("Login failed for %s from %s", username, req.remote_addr)
        raise AuthError("E304", "Login failed: incorrect username or password", 401)
    token = issue_token(user.username, user.role, ctx.signing_key, ctx.session_ttl)
    logger.info("User %s logged in from %s", user.username, req.remote_addr)
    return {"token": token, "expires_in": ctx.session_ttl, "role": user.role}, 200


# User tier

def handle_logout(ctx: DaemonContext, req: Request) -> Tuple[dict, int]:
    """Sessions are stateless: the client discards its token."""
    return {"status": "ok"}, 200


def handle_validate(ctx: DaemonContext, req: Request) -> Tuple[dict, int]:
    return {"username": req.identity.username, "role": req.identity.role}, 200


def handle_change_password(ctx: DaemonContext, req: Request) -> Tuple[dict, int]:
    if req.identity.api_token:
        raise RequestError("API tokens have no password")
    data = req.json()
    ctx.credentials.change_password(
        req.identity.username,
        _require_str(data, "old_password"),
        _require_str(data, "new_password"),
    )
    return {"status": "ok"}, 200


def handle_status(ctx: DaemonContext, req: Request) -> Tuple[dict, int]:
    status = ctx.deployer.get_status(ctx.engine).to_dict()
    status["version"] = ctx.version
    status["busy"] = ctx.deployer.is_busy()
    if ctx.prewarm is not None:
        status["build_images"] = ctx.prewarm.snapshot()
    return status, 200


def handle_logs(ctx: DaemonContext, req: Request) -> None:
    """Stream container logs. follow=true keeps the stream open."""
    tail = req.query_param("tail")
    if tail and not tail.isdigit():
        raise InvalidOptionsError("tail must be a non-negative integer")
    options = LogOptions(
        container=req.query_param("container"),
        follow=_parse_bool(req.query_param("follow", "false")),
        tail=int(tail) if tail else None,
    )
    logs = ctx.deployer.logs(options, ctx.engine)
    out = req.stream()
    with logs:
        for line in logs:
            out.write(line)
            if out.disconnected:
                break
    return None


# Admin tier

def handle_up(ctx: DaemonContext, req: Request) -> None:
    """Deploy, streaming build output to the caller."""
    options = DeployOptions.from_dict(req.json())
    ctx.deployer.deploy(options, ctx.engine, req.stream())
    return None


def handle_down(ctx: DaemonContext, req: Request) -> None:
    ctx.deployer.down(ctx.engine, req.stream())
    return None


def handle_reset(ctx: DaemonContext, req: Request) -> None:
    ctx.deployer.destroy(ctx.engine, req.stream())
    return None


def handle_env(ctx: DaemonContext, req: Request) -> Tuple[dict, int]:
    """GET lists variable names; POST sets {name, value} or removes {name, remove: true}."""
    if req.method == "GET":
        return {"variables": ctx.deployer.list_env()}, 200

    data = req.json()
    name = _require_str(data, "name")
    if data.get("remove"):
        removed = ctx.deployer.remove_env(name)
        return {"status": "removed" if removed else "not found", "name": name}, 200

    value = data.get("value")
    if not isinstance(value, str):
        raise RequestError("Missing or invalid field: value")
    ctx.deployer.set_env(name, value)
    return {"status": "set", "name": name}, 200


def handle_add_user(ctx: DaemonContext, req: Request) -> Tuple[dict, int]:
    data = req.json()
    role = ROLE_ADMIN if data.get("admin") else ROLE_USER
    user = ctx.credentials.add_user(
        _require_str(data, "username"), _require_str(data, "password"), role
    )
    return {"status": "created", "user": user.to_dict()}, 201


def handle_remove_user(ctx: DaemonContext, req: Request) -> Tuple[dict, int]:
    username = _require_str(req.json(), "username")
    if req.identity and username == req.identity.username and not req.identity.api_token:
        raise UserError("E113", "Cannot remove the account you are logged in with")
    ctx.credentials.disable_user(username)
    return {"status": "removed", "username": username}, 200


def handle_list_users(ctx: DaemonContext, req: Request) -> Tuple[dict, int]:
    return {"users": [u.to_dict() for u in ctx.credentials.list_users()]}, 200


@dataclass(frozen=True)
class Route:
    tier: Tier
    methods: dict


ROUTES = {
    "/": Route(Tier.PUBLIC, {"GET": handle_root}),
    "/webhook": Route(Tier.PUBLIC, {"POST": handle_webhook}),
    "/user/login": Route(Tier.PUBLIC, {"POST": handle_login}),
    "/user/logout": Route(Tier.USER, {"POST": handle_logout}),
    "/user/validate": Route(Tier.USER, {"GET": handle_validate}),
    "/user/changepassword": Route(Tier.USER, {"POST": handle_change_password}),
    "/status": Route(Tier.USER, {"GET": handle_status}),
    "/logs": Route(Tier.USER, {"GET": handle_logs}),
    "/up": Route(Tier.ADMIN, {"POST": handle_up}),
    "/down": Route(Tier.ADMIN, {"POST": handle_down}),
    "/reset": Route(Tier.ADMIN, {"POST": handle_reset}),
    "/env": Route(Tier.ADMIN, {"GET": handle_env, "POST": handle_env}),
    "/user/adduser": Route(Tier.ADMIN, {"POST": handle_add_user}),
    "/user/removeuser": Route(Tier.ADMIN, {"POST": handle_remove_user}),
    "/user/listusers": Route(Tier.ADMIN, {"GET": handle_list_users}),
}


def route_tiers() -> dict:
    """Map of route path to Tier, for the gateway."""
    return {path: route.tier for path, route in ROUTES.items()}


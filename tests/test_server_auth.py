"""Tests for server/auth.py - route tiers and authentication gateway."""

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from server.auth import AuthError, Identity, Tier, extract_bearer_token, issue_api_token
from server.handlers import ROUTES
from server.tokens import issue_token, validate_token

ADMIN_ROUTES = sorted(path for path, route in ROUTES.items() if route.tier == Tier.ADMIN)
USER_ROUTES = sorted(path for path, route in ROUTES.items() if route.tier == Tier.USER)
PUBLIC_ROUTES = sorted(path for path, route in ROUTES.items() if route.tier == Tier.PUBLIC)


def bearer(token: str) -> str:
    return f"Bearer {token}"


class TestExtractBearerToken:
    """Tests for extract_bearer_token function."""

    def test_valid_bearer_token(self):
        assert extract_bearer_token("Bearer my-token") == "my-token"

    def test_empty_header(self):
        assert extract_bearer_token("") is None

    def test_none_header(self):
        assert extract_bearer_token(None) is None

    def test_basic_auth_header(self):
        """Basic auth is not accepted."""
        assert extract_bearer_token("Basic dXNlcjpwYXNz") is None


class TestRouteTable:
    """Every route has exactly one tier."""

    def test_expected_tiers(self):
        assert PUBLIC_ROUTES == ["/", "/user/login", "/webhook"]
        assert "/status" in USER_ROUTES
        assert "/logs" in USER_ROUTES
        for path in ("/up", "/down", "/reset", "/env", "/user/adduser"):
            assert path in ADMIN_ROUTES

    def test_classify_unknown(self, gateway):
        assert gateway.classify("/nope") is None


class TestGateway:
    """Tests for Gateway.authenticate / check."""

    @pytest.mark.parametrize("path", PUBLIC_ROUTES)
    def test_public_needs_no_token(self, gateway, path):
        """Public routes pass without credentials."""
        assert gateway.check(path, "", "127.0.0.1") is None

    @pytest.mark.parametrize("path", USER_ROUTES + ADMIN_ROUTES)
    def test_missing_token_rejected(self, gateway, path):
        """Protected routes without a token fail with E300 (400)."""
        with pytest.raises(AuthError) as exc_info:
            gateway.check(path, "", "127.0.0.1")
        assert exc_info.value.code == "E300"
        assert exc_info.value.http_status == 400

    @pytest.mark.parametrize("path", USER_ROUTES)
    def test_user_token_on_user_routes(self, gateway, user_token, path):
        identity = gateway.check(path, bearer(user_token), "127.0.0.1")
        assert identity == Identity(username="alice", role="user")

    @pytest.mark.parametrize("path", ADMIN_ROUTES)
    def test_non_admin_forbidden_on_every_admin_route(self, gateway, user_token, path):
        """A valid non-admin token gets 403 on each admin route."""
        with pytest.raises(AuthError) as exc_info:
            gateway.check(path, bearer(user_token), "127.0.0.1")
        assert exc_info.value.code == "E303"
        assert exc_info.value.http_status == 403

    @pytest.mark.parametrize("path", USER_ROUTES + ADMIN_ROUTES)
    def test_admin_token_everywhere(self, gateway, admin_token, path):
        identity = gateway.check(path, bearer(admin_token), "127.0.0.1")
        assert identity.is_admin

    def test_expired_token(self, gateway, signing_key):
        """An expired session fails with E302 (401)."""
        token = issue_token("alice", "user", signing_key, 60, now=0)
        with pytest.raises(AuthError) as exc_info:
            gateway.authenticate(bearer(token), Tier.USER)
        assert exc_info.value.code == "E302"
        assert exc_info.value.http_status == 401

    def test_bad_signature(self, gateway):
        token = issue_token("alice", "user", "c" * 64, 60)
        with pytest.raises(AuthError) as exc_info:
            gateway.authenticate(bearer(token), Tier.USER)
        assert exc_info.value.code == "E301"

    def test_disabled_user_rejected(self, gateway, credentials, user_token):
        """A session for a removed user is no longer accepted."""
        credentials.disable_user("alice")
        with pytest.raises(AuthError) as exc_info:
            gateway.authenticate(bearer(user_token), Tier.USER)
        assert exc_info.value.code == "E301"

    def test_unknown_route(self, gateway, admin_token):
        with pytest.raises(AuthError) as exc_info:
            gateway.check("/missing", bearer(admin_token), "127.0.0.1")
        assert exc_info.value.code == "E101"
        assert exc_info.value.http_status == 404

    def test_failure_is_logged(self, gateway, caplog):
        """Auth failures are logged with route and remote address."""
        with pytest.raises(AuthError):
            gateway.check("/up", "Bearer garbage", "198.51.100.7")
        assert "route=/up" in caplog.text
        assert "remote=198.51.100.7" in caplog.text


class TestApiTokens:
    """Tests for issue_api_token."""

    def test_api_token_grants_admin(self, gateway, credentials, signing_key):
        token = issue_api_token(credentials, signing_key, "ci")
        identity = gateway.check("/up", bearer(token), "127.0.0.1")
        assert identity.is_admin
        assert identity.api_token is True

    def test_api_token_is_recorded(self, credentials, signing_key):
        token = issue_api_token(credentials, signing_key, "ci")
        claims = validate_token(token, signing_key)
        assert claims["exp"] is None
        assert credentials.has_api_token(claims["jti"])

    def test_unrecorded_api_token_rejected(self, gateway, signing_key):
        """A correctly signed API token whose id is unknown is refused."""
        token = issue_token("admin", "admin", signing_key, None, token_id="forged")
        with pytest.raises(AuthError) as exc_info:
            gateway.authenticate(bearer(token), Tier.ADMIN)
        assert exc_info.value.code == "E301"

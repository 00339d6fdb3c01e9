"""Shared pytest fixtures for inertiad tests."""

import sys
from pathlib import Path
from unittest.mock import MagicMock

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from server.auth import Gateway
from server.context import DaemonContext
from server.handlers import route_tiers
from server.tls import generate_self_signed_cert
from server.tokens import generate_signing_key, issue_token
from server.users import ROLE_ADMIN, ROLE_USER, CredentialStore


@pytest.fixture(scope="session")
def tls_config(tmp_path_factory):
    """Self-signed certificate pair shared by all tests that need TLS."""
    cert_dir = tmp_path_factory.mktemp("certs")
    return generate_self_signed_cert(cert_dir, "localhost", 4303, key_size=2048)


@pytest.fixture
def signing_key():
    return generate_signing_key()


@pytest.fixture
def credentials(tmp_path):
    """Credential store with one admin (admin/adminpass) and one user (alice/alicepass)."""
    store = CredentialStore(tmp_path / "users.db")
    store.add_user("admin", "adminpass", ROLE_ADMIN)
    store.add_user("alice", "alicepass", ROLE_USER)
    return store


@pytest.fixture
def admin_token(signing_key, credentials):
    return issue_token("admin", ROLE_ADMIN, signing_key, 3600)


@pytest.fixture
def user_token(signing_key, credentials):
    return issue_token("alice", ROLE_USER, signing_key, 3600)


@pytest.fixture
def gateway(signing_key, credentials):
    return Gateway(route_tiers(), signing_key, credentials)


@pytest.fixture
def make_context(gateway, credentials, signing_key):
    """Factory for a DaemonContext around a given deployer."""
    contexts = []

    def _make(deployer, engine=None, webhook_key=b"webhook-secret", prewarm=None):
        ctx = DaemonContext(
            deployer=deployer,
            engine=engine if engine is not None else MagicMock(),
            gateway=gateway,
            credentials=credentials,
            signing_key=signing_key,
            session_ttl=3600,
            webhook_key=webhook_key,
            version="test",
            prewarm=prewarm,
        )
        contexts.append(ctx)
        return ctx

    yield _make

    for ctx in contexts:
        ctx.shutdown(wait=True)

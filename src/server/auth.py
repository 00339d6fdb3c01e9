"""Authentication gateway.

Every route belongs to one of three tiers:
- PUBLIC: no check
- USER: valid session or API token
- ADMIN: valid token whose identity has the admin role

Failures raise AuthError with distinct codes so clients can tell
"log in again" (400/401) apart from "not allowed" (403).
"""

import logging
import secrets
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from server.tokens import TokenError, issue_token, validate_token
from server.users import ROLE_ADMIN, CredentialStore

logger = logging.getLogger(__name__)


class AuthError(Exception):
    """Authentication error with error code and HTTP status."""

    def __init__(self, code: str, message: str, http_status: int):
        self.code = code
        self.message = message
        self.http_status = http_status
        super().__init__(f"{code}: {message}")


class Tier(str, Enum):
    PUBLIC = "public"
    USER = "user"
    ADMIN = "admin"


@dataclass(frozen=True)
class Identity:
    """Authenticated caller."""

    username: str
    role: str
    api_token: bool = False

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN


def extract_bearer_token(auth_header: str) -> Optional[str]:
    """Extract Bearer token from Authorization header.

    Args:
        auth_header: Authorization header value

    Returns:
        Token string, or None if not a Bearer token
    """
    if auth_header and auth_header.startswith("Bearer "):
        return auth_header[7:]
    return None


class Gateway:
    """Classifies routes and authenticates requests against their tier."""

    def __init__(self, tiers: dict, signing_key: str, credentials: CredentialStore):
        """Initialize gateway.

        Args:
            tiers: Map of route path to Tier
            signing_key: Hex-encoded token signing key
            credentials: Credential store for user and API token lookups
        """
        self.tiers = dict(tiers)
        self.signing_key = signing_key
        self.credentials = credentials

    def classify(self, path: str) -> Optional[Tier]:
        """Return the tier of a route, or None for unknown routes."""
        return self.tiers.get(path)

    def authenticate(self, auth_header: str, tier: Tier) -> Optional[Identity]:
        """Authenticate a request for the given tier.

        Returns:
            Identity for USER/ADMIN tiers, None for PUBLIC

        Raises:
            AuthError: E300 malformed/missing (400), E301 invalid (401),
                E302 expired (401), E303 forbidden (403)
        """
        if tier == Tier.PUBLIC:
            return None

        token = extract_bearer_token(auth_header)
        if not token:
            raise AuthError("E300", "Invalid credentials: bearer token required", 400)

        try:
            claims = validate_token(token, self.signing_key)
        except TokenError as e:
            raise AuthError(e.code, e.message, e.http_status) from e

        if claims.get("jti"):
            if not self.credentials.has_api_token(claims["jti"]):
                raise AuthError("E301", "Invalid credentials: unknown API token", 401)
            identity = Identity(username=claims["sub"], role=claims["role"], api_token=True)
        else:
            user = self.credentials.get_user(claims["sub"])
            if user is None or user.disabled:
                raise AuthError("E301", "Invalid credentials: user no longer exists", 401)
            identity = Identity(username=user.username, role=user.role)

        if tier == Tier.ADMIN and not identity.is_admin:
            raise AuthError("E303", "Forbidden: admin privileges required", 403)

        return identity

    def check(self, path: str, auth_header: str, remote_addr: str) -> Optional[Identity]:
        """Authenticate a request for a known route, logging any failure.

        Raises:
            AuthError: As authenticate(); also E101 for unknown routes
        """
        tier = self.classify(path)
        if tier is None:
            raise AuthError("E101", f"Unknown endpoint: {path}", 404)
        try:
            return self.authenticate(auth_header, tier)
        except AuthError as e:
            logger.warning(
                "Auth failed: %s %s route=%s remote=%s",
                e.code, e.message, path, remote_addr,
            )
            raise


def issue_api_token(credentials: CredentialStore, signing_key: str, description: str = "") -> str:
    """Issue a non-expiring admin API token and record its id."""
    token_id = secrets.token_hex(8)
    token = issue_token(ROLE_ADMIN, ROLE_ADMIN, signing_key, None, token_id=token_id)
    credentials.add_api_token(token_id, description)
    return token

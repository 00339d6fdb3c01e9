"""Token service.

Session and API tokens are stateless bearer strings:

    base64url(claims) "." base64url(HMAC-SHA256(signing_key, base64url(claims)))

Claims: {"v": 1, "sub": str, "role": "admin"|"user", "iat": int,
"exp": int|None, "jti": str (API tokens only)}.

Tokens are never revoked early; a session is valid until its expiry.
"""

import base64
import hashlib
import hmac as hmac_mod
import json
import logging
import os
import secrets
import time
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

TOKEN_VERSION = 1
SIGNING_KEY_BYTES = 32


class TokenError(Exception):
    """Token error with error code and HTTP status."""

    def __init__(self, code: str, message: str, http_status: int):
        self.code = code
        self.message = message
        self.http_status = http_status
        super().__init__(f"{code}: {message}")


class InvalidTokenError(TokenError):
    """Token cannot be parsed."""

    def __init__(self, message: str):
        super().__init__("E300", f"Invalid credentials: {message}", 400)


class InvalidSignatureError(TokenError):
    """Token signature does not match."""

    def __init__(self):
        super().__init__("E301", "Invalid token signature", 401)


class ExpiredTokenError(TokenError):
    """Token is past its expiry."""

    def __init__(self):
        super().__init__("E302", "Session expired - log in again", 401)


class SigningKeyError(TokenError):
    """Signing key missing or unusable."""

    def __init__(self, message: str):
        super().__init__("E500", f"Signing key unavailable: {message}", 500)


class ExternalKeyError(TokenError):
    """External verification key missing or unrecognizable."""

    def __init__(self, message: str):
        super().__init__("E500", f"External key unavailable: {message}", 500)


def _base64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode()


def _base64url_decode(s: str) -> bytes:
    """Decode base64url string (padding-free)."""
    s += '=' * (4 - len(s) % 4) if len(s) % 4 else ''
    return base64.urlsafe_b64decode(s)


def _key_bytes(signing_key: str) -> bytes:
    if not signing_key:
        raise SigningKeyError("no signing key configured")
    try:
        return bytes.fromhex(signing_key)
    except ValueError:
        raise SigningKeyError("signing key is not hex-encoded")


def issue_token(
    subject: str,
    role: str,
    signing_key: str,
    ttl: Optional[int],
    now: Optional[float] = None,
    token_id: Optional[str] = None,
) -> str:
    """Issue a signed token.

    Args:
        subject: Username (or "admin" for API tokens)
        role: "admin" or "user"
        signing_key: Hex-encoded signing key
        ttl: Lifetime in seconds; None issues a non-expiring token
        now: Issue time (defaults to current time)
        token_id: Optional id recorded in the credential store

    Returns:
        Token string

    Raises:
        SigningKeyError: If the signing key is missing or malformed
    """
    key = _key_bytes(signing_key)
    iat = int(now if now is not None else time.time())
    claims = {
        "v": TOKEN_VERSION,
        "sub": subject,
        "role": role,
        "iat": iat,
        "exp": iat + ttl if ttl is not None else None,
    }
    if token_id:
        claims["jti"] = token_id

    payload_b64 = _base64url_encode(
        json.dumps(claims, separators=(",", ":"), sort_keys=True).encode()
    )
    signature = hmac_mod.new(key, payload_b64.encode(), hashlib.sha256).digest()
    return f"{payload_b64}.{_base64url_encode(signature)}"


def validate_token(token: str, signing_key: str, now: Optional[float] = None) -> dict:
    """Verify signature and expiry and return the claims.

    Signature is checked before expiry, so a forged token is always reported
    as a signature failure and a genuine stale token as expired.

    Raises:
        InvalidTokenError: Token is malformed
        InvalidSignatureError: Signature does not match
        ExpiredTokenError: Token is at or past its expiry
        SigningKeyError: Signing key is unusable
    """
    key = _key_bytes(signing_key)

    parts = (token or "").split(".")
    if len(parts) != 2 or not all(parts):
        raise InvalidTokenError("expected 2 dot-separated segments")
    payload_b64, sig_b64 = parts

    try:
        actual_sig = _base64url_decode(sig_b64)
    except ValueError:
        raise InvalidTokenError("invalid signature encoding")

    expected_sig = hmac_mod.new(key, payload_b64.encode(), hashlib.sha256).digest()
    if not hmac_mod.compare_digest(expected_sig, actual_sig):
        raise InvalidSignatureError()

    try:
        claims = json.loads(_base64url_decode(payload_b64))
    except ValueError:
        raise InvalidTokenError("invalid payload encoding")
    if not isinstance(claims, dict):
        raise InvalidTokenError("payload is not an object")

    if claims.get("v") != TOKEN_VERSION:
        raise InvalidTokenError(f"unsupported token version: {claims.get('v')}")
    if not claims.get("sub") or claims.get("role") not in ("admin", "user"):
        raise InvalidTokenError("missing required claims")

    exp = claims.get("exp")
    if exp is not None:
        current = now if now is not None else time.time()
        if current >= exp:
            raise ExpiredTokenError()

    return claims


def generate_signing_key() -> str:
    """Generate a random 256-bit hex-encoded signing key."""
    return secrets.token_hex(SIGNING_KEY_BYTES)


def ensure_signing_key(path: Path) -> str:
    """Load the signing key at path, generating and persisting it if absent.

    Raises:
        SigningKeyError: If the key file exists but is unusable
    """
    path = Path(path)
    if path.exists():
        key = path.read_text().strip()
        _key_bytes(key)
        return key

    logger.info("Generating signing key at %s", path)
    path.parent.mkdir(parents=True, exist_ok=True)
    key = generate_signing_key()
    fd = os.open(str(path), os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    with os.fdopen(fd, "w") as f:
        f.write(key + "\n")
    return key


def load_external_key(source: Path) -> bytes:
    """Load a third-party verification key (webhook shared secret).

    The file must hold a single printable token without whitespace.

    Raises:
        ExternalKeyError: If the file is unreadable or not a recognizable key
    """
    try:
        content = Path(source).read_bytes()
    except OSError as e:
        raise ExternalKeyError(f"cannot read {source}: {e.strerror or e}")

    try:
        key = content.decode("ascii").strip()
    except UnicodeDecodeError:
        raise ExternalKeyError(f"{source} is not a text key")

    if not key:
        raise ExternalKeyError(f"{source} is empty")
    if any(c.isspace() or not c.isprintable() for c in key):
        raise ExternalKeyError(f"{source} does not contain a single key")
    return key.encode()


def sign_payload(body: bytes, key: bytes, algorithm: str = "sha256") -> str:
    """Return the '<algorithm>=<hexdigest>' signature of body."""
    digest = hmac_mod.new(key, body, getattr(hashlib, algorithm)).hexdigest()
    return f"{algorithm}={digest}"


def verify_signature(body: bytes, signature: str, key: bytes) -> bool:
    """Check a 'sha256=<hex>' (or legacy 'sha1=<hex>') payload signature."""
    if not signature or "=" not in signature or not key:
        return False
    algorithm = signature.split("=", 1)[0]
    if algorithm not in ("sha256", "sha1"):
        return False
    return hmac_mod.compare_digest(sign_payload(body, key, algorithm), signature)

"""Token CLI.

Usage:
    inertiad token issue [--description TEXT]
    inertiad token inspect <token> [--verify]
"""

import argparse
import datetime
import json
import sys

from config import ConfigError
from server.auth import issue_api_token
from server.cli import add_config_args, resolve_config
from server.tokens import TokenError, _base64url_decode, ensure_signing_key, validate_token
from server.users import CredentialStore


def _format_time(value) -> str:
    if not value:
        return "(not set)"
    ts = datetime.datetime.fromtimestamp(value, tz=datetime.timezone.utc)
    return f"{value} ({ts.isoformat()})"


def inspect_token(token: str, signing_key: str = None) -> int:
    """Decode and optionally verify a session or API token.

    Args:
        token: The token string
        signing_key: Hex-encoded signing key (for --verify)

    Returns:
        Exit code (0=success, 1=error)
    """
    parts = token.split(".")
    if len(parts) != 2:
        print(f"Error: Expected 2 dot-separated segments, got {len(parts)}")
        return 1

    try:
        claims = json.loads(_base64url_decode(parts[0]))
    except ValueError as e:
        print(f"Error: Cannot decode payload: {e}")
        return 1
    if not isinstance(claims, dict):
        print("Error: Payload is not a JSON object")
        return 1

    print("Claims:")
    print(f"  version (v):   {claims.get('v', '?')}")
    print(f"  subject (sub): {claims.get('sub', '?')}")
    print(f"  role:          {claims.get('role', '?')}")
    print(f"  issued  (iat): {_format_time(claims.get('iat'))}")
    print(f"  expires (exp): {_format_time(claims.get('exp')) if claims.get('exp') else 'never'}")
    if claims.get("jti"):
        print(f"  api token id:  {claims['jti']}")

    known = {"v", "sub", "role", "iat", "exp", "jti"}
    for k, v in claims.items():
        if k not in known:
            print(f"  {k}: {v}")

    if signing_key is not None:
        try:
            validate_token(token, signing_key)
        except TokenError as e:
            print(f"\nSignature: INVALID ({e.message})")
            return 1
        print("\nSignature: VALID")

    return 0


def issue(args) -> int:
    """Issue a new admin API token and print it."""
    config = resolve_config(args)
    config.data_dir.mkdir(parents=True, exist_ok=True)
    signing_key = ensure_signing_key(config.signing_key_file)
    token = issue_api_token(CredentialStore(config.users_db), signing_key, args.description)
    print(token)
    return 0


def main(argv: list) -> int:
    """Token CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="inertiad token",
        description="API token utilities",
    )
    sub = parser.add_subparsers(dest="action")

    issue_parser = sub.add_parser("issue", help="Issue a non-expiring admin API token")
    issue_parser.add_argument("--description", default="", help="Note stored with the token")
    add_config_args(issue_parser)

    inspect_parser = sub.add_parser("inspect", help="Decode and inspect a token")
    inspect_parser.add_argument("token", help="Token to inspect")
    inspect_parser.add_argument(
        "--verify", action="store_true",
        help="Verify signature and expiry using the daemon signing key",
    )
    add_config_args(inspect_parser)

    args = parser.parse_args(argv)

    if not args.action:
        parser.print_help()
        return 1

    try:
        if args.action == "issue":
            return issue(args)

        signing_key = None
        if args.verify:
            config = resolve_config(args)
            if not config.signing_key_file.exists():
                print(f"Error: No signing key at {config.signing_key_file}")
                return 1
            signing_key = ensure_signing_key(config.signing_key_file)
        return inspect_token(args.token, signing_key)
    except (ConfigError, TokenError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

#!/usr/bin/env python3
"""CLI entry point for inertiad.

Noun-action subcommands:
- daemon: Daemon management (start/run/stop/status)
- user: User management (add/list/remove)
- token: API token utilities (issue/inspect)
"""

import logging
import sys
from importlib.metadata import PackageNotFoundError, version

NOUN_COMMANDS = {
    "daemon": "Daemon management (start/run/stop/status)",
    "user": "User management (add/list/remove)",
    "token": "API token utilities (issue/inspect)",
}

logger = logging.getLogger(__name__)


def get_version() -> str:
    """Installed package version, or 'dev' from a source checkout."""
    try:
        return version("inertiad")
    except PackageNotFoundError:
        return "dev"


def dispatch_noun(noun: str, argv: list) -> int:
    """Dispatch to noun-specific CLI handler.

    Args:
        noun: The noun command (e.g., "daemon", "user")
        argv: Remaining command line arguments

    Returns:
        Exit code
    """
    if noun == "daemon":
        from server.cli import main as daemon_main
        rc: int = daemon_main(argv)
        return rc

    if noun == "user":
        from user_cli import main as user_main
        rc = user_main(argv)
        return rc

    if noun == "token":
        from token_cli import main as token_main
        rc = token_main(argv)
        return rc

    print(f"Error: Noun '{noun}' not yet implemented")
    return 1


def print_usage():
    """Print top-level usage showing noun commands."""
    print(f"inertiad {get_version()}")
    print()
    print("Usage: inertiad <noun> <action> [options]")
    print()
    print("Commands:")
    for noun, desc in NOUN_COMMANDS.items():
        print(f"  {noun:<12} {desc}")
    print()
    print("Run 'inertiad <noun> --help' for command-specific options.")
    print()
    print("Examples:")
    print("  inertiad daemon start --host 203.0.113.10 --webhook-secret /etc/inertia/webhook")
    print("  inertiad user add alice --admin")
    print("  inertiad token issue --description ci")


def main(argv=None) -> int:
    """CLI entry point: dispatch to noun-action handlers."""
    if argv is None:
        argv = sys.argv[1:]

    if not argv or argv[0] in ("-h", "--help"):
        print_usage()
        return 0

    if argv[0] == "--version":
        print(f"inertiad {get_version()}")
        return 0

    if argv[0] in NOUN_COMMANDS:
        return dispatch_noun(argv[0], argv[1:])

    print(f"Error: Unknown command '{argv[0]}'")
    print_usage()
    return 1


if __name__ == "__main__":
    sys.exit(main())

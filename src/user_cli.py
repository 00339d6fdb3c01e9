"""User management CLI.

Operates directly on the daemon's credential store, so the first admin can
be created before anyone is able to log in.

Usage:
    inertiad user add <username> [--admin] [--password-stdin]
    inertiad user list [--json]
    inertiad user remove <username>
"""

import argparse
import getpass
import json
import sys

from config import ConfigError
from server.cli import add_config_args, resolve_config
from server.users import ROLE_ADMIN, ROLE_USER, CredentialStore, UserError


def _open_store(args) -> CredentialStore:
    config = resolve_config(args)
    config.data_dir.mkdir(parents=True, exist_ok=True)
    return CredentialStore(config.users_db)


def _read_password(from_stdin: bool) -> str:
    if from_stdin:
        return sys.stdin.readline().rstrip("\n")
    password = getpass.getpass("Password: ")
    if password != getpass.getpass("Confirm password: "):
        raise UserError("E110", "Passwords do not match")
    return password


def _cmd_add(store: CredentialStore, args) -> int:
    password = _read_password(args.password_stdin)
    user = store.add_user(args.username, password, ROLE_ADMIN if args.admin else ROLE_USER)
    print(f"User {user.username} added ({user.role})")
    return 0


def _cmd_list(store: CredentialStore, args) -> int:
    users = store.list_users()
    if args.json:
        print(json.dumps([u.to_dict() for u in users], indent=2))
        return 0
    if not users:
        print("No users")
        return 0
    for user in users:
        flag = " (disabled)" if user.disabled else ""
        print(f"  {user.username:<24} {user.role}{flag}")
    return 0


def _cmd_remove(store: CredentialStore, args) -> int:
    store.disable_user(args.username)
    print(f"User {args.username} removed")
    return 0


def main(argv: list) -> int:
    """User CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="inertiad user",
        description="Manage daemon users",
    )
    sub = parser.add_subparsers(dest="action")

    add_parser = sub.add_parser("add", help="Add a user")
    add_parser.add_argument("username")
    add_parser.add_argument("--admin", action="store_true", help="Grant admin role")
    add_parser.add_argument(
        "--password-stdin", action="store_true",
        help="Read the password from stdin instead of prompting",
    )
    add_config_args(add_parser)

    list_parser = sub.add_parser("list", help="List users")
    list_parser.add_argument("--json", action="store_true", help="Output as JSON")
    add_config_args(list_parser)

    remove_parser = sub.add_parser("remove", help="Disable a user")
    remove_parser.add_argument("username")
    add_config_args(remove_parser)

    args = parser.parse_args(argv)

    if not args.action:
        parser.print_help()
        return 1

    commands = {"add": _cmd_add, "list": _cmd_list, "remove": _cmd_remove}
    try:
        store = _open_store(args)
        return commands[args.action](store, args)
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except UserError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        return 1

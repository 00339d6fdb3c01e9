"""Credential store.

SQLite database of daemon users and admin API token ids. Passwords are
stored as Werkzeug password hashes. Users are never deleted: removal
disables the account.
"""

import logging
import re
import sqlite3
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from werkzeug.security import check_password_hash, generate_password_hash

logger = logging.getLogger(__name__)

ROLE_ADMIN = "admin"
ROLE_USER = "user"
ROLES = (ROLE_ADMIN, ROLE_USER)

MIN_PASSWORD_LENGTH = 5
_USERNAME = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]{2,63}$")


class UserError(Exception):
    """User management error with error code and HTTP status."""

    def __init__(self, code: str, message: str, http_status: int = 400):
        self.code = code
        self.message = message
        self.http_status = http_status
        super().__init__(f"{code}: {message}")


@dataclass
class User:
    username: str
    role: str
    disabled: bool = False
    created_at: str = ""

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN

    def to_dict(self) -> dict:
        return {
            "username": self.username,
            "role": self.role,
            "disabled": self.disabled,
            "created_at": self.created_at,
        }


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _validate_password(password: str):
    if not isinstance(password, str) or len(password) < MIN_PASSWORD_LENGTH:
        raise UserError(
            "E110", f"Password must be at least {MIN_PASSWORD_LENGTH} characters"
        )


class CredentialStore:
    """User records and admin API token ids."""

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        # Serializes check-then-write sequences (add, change password)
        self._write_lock = threading.Lock()
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(str(self.db_path))

    def _init_db(self):
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS users (
                    username TEXT PRIMARY KEY,
                    password_hash TEXT NOT NULL,
                    role TEXT NOT NULL,
                    disabled INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS api_tokens (
                    token_id TEXT PRIMARY KEY,
                    description TEXT NOT NULL DEFAULT '',
                    created_at TEXT NOT NULL
                )
                """
            )

    # Users

    def add_user(self, username: str, password: str, role: str = ROLE_USER) -> User:
        """Create a user, or re-enable a disabled one with a new password.

        Raises:
            UserError: Invalid username/password/role, or user already exists
        """
        if not isinstance(username, str) or not _USERNAME.match(username):
            raise UserError("E110", f"Invalid username: {username!r}")
        if role not in ROLES:
            raise UserError("E110", f"Invalid role: {role!r}")
        _validate_password(password)

        now = _now_iso()
        password_hash = generate_password_hash(password)
        with self._write_lock, self._connect() as conn:
            row = conn.execute(
                "SELECT disabled FROM users WHERE username = ?", (username,)
            ).fetchone()
            if row and not row[0]:
                raise UserError("E111", f"User already exists: {username}", 409)
            conn.execute(
                """
                INSERT INTO users (username, password_hash, role, disabled, created_at, updated_at)
                VALUES (?, ?, ?, 0, ?, ?)
                ON CONFLICT(username) DO UPDATE SET
                    password_hash=excluded.password_hash,
                    role=excluded.role,
                    disabled=0,
                    updated_at=excluded.updated_at
                """,
                (username, password_hash, role, now, now),
            )
        logger.info("Added user %s (%s)", username, role)
        return User(username=username, role=role, created_at=now)

    def get_user(self, username: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT username, role, disabled, created_at FROM users WHERE username = ?",
                (username,),
            ).fetchone()
        if row is None:
            return None
        return User(username=row[0], role=row[1], disabled=bool(row[2]), created_at=row[3])

    def list_users(self) -> list[User]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT username, role, disabled, created_at FROM users ORDER BY username"
            ).fetchall()
        return [User(username=r[0], role=r[1], disabled=bool(r[2]), created_at=r[3]) for r in rows]

    def verify_password(self, username: str, password: str) -> Optional[User]:
        """Return the user if the password matches an enabled account."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, role, disabled, created_at FROM users WHERE username = ?",
                (username,),
            ).fetchone()
        if row is None or row[2]:
            return None
        if not check_password_hash(row[0], password or ""):
            return None
        return User(username=username, role=row[1], created_at=row[3])

    def change_password(self, username: str, old_password: str, new_password: str):
        """Change a user's password after checking the current one.

        Raises:
            UserError: If the old password is wrong or the new one is invalid
        """
        _validate_password(new_password)
        with self._write_lock:
            if self.verify_password(username, old_password) is None:
                raise UserError("E304", "Login failed: incorrect username or password", 401)
            with self._connect() as conn:
                conn.execute(
                    "UPDATE users SET password_hash = ?, updated_at = ? WHERE username = ?",
                    (generate_password_hash(new_password), _now_iso(), username),
                )
        logger.info("Password changed for %s", username)

    def disable_user(self, username: str):
        """Soft-delete a user.

        Raises:
            UserError: If the user does not exist
        """
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE users SET disabled = 1, updated_at = ? WHERE username = ?",
                (_now_iso(), username),
            )
            if cursor.rowcount == 0:
                raise UserError("E112", f"User not found: {username}", 404)
        logger.info("Disabled user %s", username)

    # API tokens

    def add_api_token(self, token_id: str, description: str = ""):
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO api_tokens (token_id, description, created_at) VALUES (?, ?, ?)",
                (token_id, description, _now_iso()),
            )

    def has_api_token(self, token_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 FROM api_tokens WHERE token_id = ?", (token_id,)
            ).fetchone()
        return row is not None

    def list_api_tokens(self) -> list[dict]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT token_id, description, created_at FROM api_tokens ORDER BY created_at"
            ).fetchall()
        return [{"token_id": r[0], "description": r[1], "created_at": r[2]} for r in rows]

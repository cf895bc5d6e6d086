"""SQLite user database for multi-user support."""

import json
import os
import sqlite3
import threading
from typing import Any, Dict, List, Optional

from mediaseer.core.auth_modes import AUTH_SOURCE_SET
from mediaseer.core.logger import setup_logger
from mediaseer.core.permissions import Permission, normalize_permissions

logger = setup_logger(__name__)

_CREATE_TABLES_SQL = """
CREATE TABLE IF NOT EXISTS users (
    id               INTEGER PRIMARY KEY AUTOINCREMENT,
    username         TEXT UNIQUE NOT NULL,
    email            TEXT,
    display_name     TEXT,
    password_hash    TEXT,
    oidc_subject     TEXT UNIQUE,
    jellyfin_user_id TEXT UNIQUE,
    avatar           TEXT,
    auth_source      TEXT NOT NULL DEFAULT 'builtin',
    permissions      INTEGER NOT NULL DEFAULT 0,
    created_at       TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    updated_at       TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS user_settings (
    user_id       INTEGER PRIMARY KEY REFERENCES users(id) ON DELETE CASCADE,
    settings_json TEXT NOT NULL DEFAULT '{}'
);
"""

_USER_SORTS = {
    "created": "created_at DESC, id DESC",
    "updated": "updated_at DESC, id DESC",
    "username": "LOWER(COALESCE(display_name, username)) ASC, id ASC",
    "id": "id ASC",
}


def get_db_path(config_dir: Optional[str] = None) -> str:
    """Return the configured application database path."""
    root = config_dir or os.environ.get("CONFIG_DIR", "/config")
    return os.path.join(root, "mediaseer.db")


class UserDB:
    """Thread-safe SQLite user database."""

    _VALID_AUTH_SOURCES = set(AUTH_SOURCE_SET)

    def __init__(self, db_path: str):
        self._db_path = db_path
        self._lock = threading.Lock()

    @property
    def db_path(self) -> str:
        return self._db_path

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def initialize(self) -> None:
        """Create database and tables if they don't exist."""
        with self._lock:
            conn = self._connect()
            try:
                conn.executescript(_CREATE_TABLES_SQL)
                self._migrate_user_columns(conn)
                conn.commit()
                # WAL mode must be changed outside an open transaction.
                conn.execute("PRAGMA journal_mode=WAL")
            finally:
                conn.close()

    def _migrate_user_columns(self, conn: sqlite3.Connection) -> None:
        """Add identity columns introduced after the first schema."""
        columns = conn.execute("PRAGMA table_info(users)").fetchall()
        column_names = {str(col["name"]) for col in columns}

        if "jellyfin_user_id" not in column_names:
            conn.execute("ALTER TABLE users ADD COLUMN jellyfin_user_id TEXT")
            conn.execute(
                "CREATE UNIQUE INDEX IF NOT EXISTS idx_users_jellyfin_user_id ON users (jellyfin_user_id)"
            )
        if "avatar" not in column_names:
            conn.execute("ALTER TABLE users ADD COLUMN avatar TEXT")
        if "updated_at" not in column_names:
            conn.execute("ALTER TABLE users ADD COLUMN updated_at TIMESTAMP")
            conn.execute("UPDATE users SET updated_at = created_at WHERE updated_at IS NULL")

        conn.execute(
            "UPDATE users SET auth_source = 'oidc' WHERE oidc_subject IS NOT NULL AND auth_source = 'builtin'"
        )
        conn.execute(
            "UPDATE users SET auth_source = 'builtin' WHERE auth_source IS NULL OR auth_source = ''"
        )

    def create_user(
        self,
        username: str,
        email: Optional[str] = None,
        display_name: Optional[str] = None,
        password_hash: Optional[str] = None,
        oidc_subject: Optional[str] = None,
        jellyfin_user_id: Optional[str] = None,
        avatar: Optional[str] = None,
        auth_source: str = "builtin",
        permissions: int = 0,
    ) -> Dict[str, Any]:
        """Create a new user. Raises ValueError if a unique identity already exists."""
        if auth_source not in self._VALID_AUTH_SOURCES:
            raise ValueError(f"Invalid auth_source: {auth_source}")
        normalized_permissions = normalize_permissions(permissions)
        with self._lock:
            conn = self._connect()
            try:
                cursor = conn.execute(
                    """INSERT INTO users (
                           username, email, display_name, password_hash, oidc_subject,
                           jellyfin_user_id, avatar, auth_source, permissions
                       )
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                    (
                        username,
                        email,
                        display_name,
                        password_hash,
                        oidc_subject,
                        jellyfin_user_id,
                        avatar,
                        auth_source,
                        normalized_permissions,
                    ),
                )
                conn.commit()
                user_id = cursor.lastrowid
                return self._get_user_by_id(conn, user_id)
            except sqlite3.IntegrityError as e:
                raise ValueError(f"User already exists: {e}")
            finally:
                conn.close()

    def get_user(
        self,
        user_id: Optional[int] = None,
        username: Optional[str] = None,
        email: Optional[str] = None,
        oidc_subject: Optional[str] = None,
        jellyfin_user_id: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]:
        """Get a user by one identity field. Returns None if not found."""
        conn = self._connect()
        try:
            if user_id is not None:
                return self._get_user_by_id(conn, user_id)
            elif username is not None:
                row = conn.execute(
                    "SELECT * FROM users WHERE username = ?", (username,)
                ).fetchone()
            elif email is not None:
                row = conn.execute(
                    "SELECT * FROM users WHERE LOWER(email) = LOWER(?) ORDER BY id LIMIT 1",
                    (email.strip(),),
                ).fetchone()
            elif oidc_subject is not None:
                row = conn.execute(
                    "SELECT * FROM users WHERE oidc_subject = ?", (oidc_subject,)
                ).fetchone()
            elif jellyfin_user_id is not None:
                row = conn.execute(
                    "SELECT * FROM users WHERE jellyfin_user_id = ?", (jellyfin_user_id,)
                ).fetchone()
            else:
                return None
            return dict(row) if row else None
        finally:
            conn.close()

    def _get_user_by_id(self, conn: sqlite3.Connection, user_id: int) -> Optional[Dict[str, Any]]:
        row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        return dict(row) if row else None

    _ALLOWED_UPDATE_COLUMNS = {
        "email",
        "display_name",
        "password_hash",
        "oidc_subject",
        "jellyfin_user_id",
        "avatar",
        "auth_source",
        "permissions",
    }

    def update_user(self, user_id: int, **kwargs) -> None:
        """Update user fields. Raises ValueError if user not found or invalid column."""
        if not kwargs:
            return
        for k in kwargs:
            if k not in self._ALLOWED_UPDATE_COLUMNS:
                raise ValueError(f"Invalid column: {k}")
        if "auth_source" in kwargs and kwargs["auth_source"] not in self._VALID_AUTH_SOURCES:
            raise ValueError(f"Invalid auth_source: {kwargs['auth_source']}")
        if "permissions" in kwargs:
            kwargs["permissions"] = normalize_permissions(kwargs["permissions"])
        with self._lock:
            conn = self._connect()
            try:
                if not self._get_user_by_id(conn, user_id):
                    raise ValueError(f"User {user_id} not found")
                sets = ", ".join(f"{k} = ?" for k in kwargs)
                values = list(kwargs.values()) + [user_id]
                conn.execute(
                    f"UPDATE users SET {sets}, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
                    values,
                )
                conn.commit()
            except sqlite3.IntegrityError as e:
                raise ValueError(f"User identity already in use: {e}")
            finally:
                conn.close()

    def delete_user(self, user_id: int) -> None:
        """Delete a user, their settings, requests and issues."""
        with self._lock:
            conn = self._connect()
            try:
                tables = {
                    str(row["name"])
                    for row in conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'")
                }
                # Keep other users' rows but drop the reference to the deleted reviewer.
                if "media_requests" in tables:
                    conn.execute(
                        "UPDATE media_requests SET modified_by = NULL WHERE modified_by = ?",
                        (user_id,),
                    )
                if "issues" in tables:
                    conn.execute(
                        "UPDATE issues SET modified_by = NULL WHERE modified_by = ?",
                        (user_id,),
                    )
                conn.execute("DELETE FROM users WHERE id = ?", (user_id,))
                conn.commit()
            finally:
                conn.close()

    def list_users(
        self,
        *,
        limit: Optional[int] = None,
        offset: int = 0,
        sort: str = "id",
    ) -> List[Dict[str, Any]]:
        """List users, optionally paginated."""
        order_by = _USER_SORTS.get(sort, _USER_SORTS["id"])
        query = f"SELECT * FROM users ORDER BY {order_by}"
        params: List[Any] = []
        if limit is not None:
            query += " LIMIT ? OFFSET ?"
            params.extend([int(limit), int(offset)])
        elif offset:
            query += " LIMIT -1 OFFSET ?"
            params.append(int(offset))

        conn = self._connect()
        try:
            rows = conn.execute(query, params).fetchall()
            return [dict(r) for r in rows]
        finally:
            conn.close()

    def count_users(self) -> int:
        conn = self._connect()
        try:
            row = conn.execute("SELECT COUNT(*) AS count FROM users").fetchone()
            return int(row["count"]) if row else 0
        finally:
            conn.close()

    def has_local_password_admin(self) -> bool:
        conn = self._connect()
        try:
            row = conn.execute(
                """SELECT COUNT(*) AS count FROM users
                   WHERE password_hash IS NOT NULL AND password_hash != ''
                   AND (permissions & ?) != 0""",
                (int(Permission.ADMIN),),
            ).fetchone()
            return bool(row and row["count"])
        finally:
            conn.close()

    def get_user_settings(self, user_id: int) -> Dict[str, Any]:
        """Get per-user settings. Returns empty dict if none set."""
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT settings_json FROM user_settings WHERE user_id = ?", (user_id,)
            ).fetchone()
            if row:
                return json.loads(row["settings_json"])
            return {}
        finally:
            conn.close()

    def set_user_settings(self, user_id: int, settings: Dict[str, Any]) -> None:
        """Merge settings into user's existing settings."""
        with self._lock:
            conn = self._connect()
            try:
                existing = {}
                row = conn.execute(
                    "SELECT settings_json FROM user_settings WHERE user_id = ?", (user_id,)
                ).fetchone()
                if row:
                    existing = json.loads(row["settings_json"])

                existing.update(settings)
                # Remove keys set to None (meaning "clear this override")
                existing = {k: v for k, v in existing.items() if v is not None}
                settings_json = json.dumps(existing)

                conn.execute(
                    """INSERT INTO user_settings (user_id, settings_json) VALUES (?, ?)
                       ON CONFLICT(user_id) DO UPDATE SET settings_json = ?""",
                    (user_id, settings_json, settings_json),
                )
                conn.commit()
            finally:
                conn.close()

"""SQLite storage for tracked media, requests and issues.

Shares the application database file with ``UserDB``; requests and issues
reference ``users(id)`` so the user tables must be initialized first.
"""

import json
import sqlite3
import threading
from typing import Any, Dict, Iterable, List, Optional

from mediaseer.core.logger import setup_logger
from mediaseer.core.models import (
    ACTIVE_REQUEST_STATUSES,
    VALID_ISSUE_STATUSES,
    VALID_ISSUE_TYPES,
    VALID_MEDIA_STATUSES,
    VALID_MEDIA_TYPES,
)
from mediaseer.core.requests_service import (
    DuplicateRequestError,
    normalize_request_status,
    validate_status_transition,
)

logger = setup_logger(__name__)

_CREATE_TABLES_SQL = """
CREATE TABLE IF NOT EXISTS media (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    tmdb_id     INTEGER NOT NULL,
    tvdb_id     INTEGER,
    imdb_id     TEXT,
    media_type  TEXT NOT NULL,
    status      TEXT NOT NULL DEFAULT 'unknown',
    title       TEXT,
    created_at  TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    updated_at  TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    UNIQUE (tmdb_id, media_type)
);

CREATE INDEX IF NOT EXISTS idx_media_status_updated_at
ON media (status, updated_at DESC);

CREATE TABLE IF NOT EXISTS media_requests (
    id                  INTEGER PRIMARY KEY AUTOINCREMENT,
    media_id            INTEGER NOT NULL REFERENCES media(id) ON DELETE CASCADE,
    requested_by        INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    modified_by         INTEGER REFERENCES users(id) ON DELETE SET NULL,
    status              TEXT NOT NULL DEFAULT 'pending',
    media_type          TEXT NOT NULL,
    seasons             TEXT,
    server_id           INTEGER,
    profile_id          INTEGER,
    root_folder         TEXT,
    note                TEXT,
    admin_note          TEXT,
    last_failure_reason TEXT,
    created_at          TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    updated_at          TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_media_requests_user_status_created_at
ON media_requests (requested_by, status, created_at DESC);

CREATE INDEX IF NOT EXISTS idx_media_requests_media_status
ON media_requests (media_id, status);

CREATE TABLE IF NOT EXISTS issues (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    media_id        INTEGER NOT NULL REFERENCES media(id) ON DELETE CASCADE,
    created_by      INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    modified_by     INTEGER REFERENCES users(id) ON DELETE SET NULL,
    issue_type      TEXT NOT NULL,
    status          TEXT NOT NULL DEFAULT 'open',
    problem_season  INTEGER NOT NULL DEFAULT 0,
    problem_episode INTEGER NOT NULL DEFAULT 0,
    created_at      TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    updated_at      TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_issues_status_created_at
ON issues (status, created_at DESC);

CREATE TABLE IF NOT EXISTS issue_comments (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    issue_id    INTEGER NOT NULL REFERENCES issues(id) ON DELETE CASCADE,
    user_id     INTEGER REFERENCES users(id) ON DELETE SET NULL,
    message     TEXT NOT NULL,
    created_at  TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    updated_at  TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_issue_comments_issue
ON issue_comments (issue_id, id);
"""

_REQUEST_SORTS = {
    "added": "r.created_at DESC, r.id DESC",
    "modified": "r.updated_at DESC, r.id DESC",
}
_MEDIA_SORTS = {
    "added": "created_at DESC, id DESC",
    "modified": "updated_at DESC, id DESC",
}
_ISSUE_SORTS = {
    "added": "created_at DESC, id DESC",
    "modified": "updated_at DESC, id DESC",
}


def _normalize_media_type(media_type: Any) -> str:
    if not isinstance(media_type, str) or media_type.strip().lower() not in VALID_MEDIA_TYPES:
        raise ValueError(f"Invalid media_type: {media_type}")
    return media_type.strip().lower()


def normalize_media_status(status: Any) -> str:
    if not isinstance(status, str) or status.strip().lower() not in VALID_MEDIA_STATUSES:
        raise ValueError(f"Invalid media status: {status}")
    return status.strip().lower()


def _append_pagination(query: str, params: List[Any], limit: Optional[int], offset: int) -> str:
    if limit is not None:
        query += " LIMIT ?"
        params.append(int(limit))
        if offset:
            query += " OFFSET ?"
            params.append(int(offset))
    elif offset:
        query += " LIMIT -1 OFFSET ?"
        params.append(int(offset))
    return query


class MediaDB:
    """Thread-safe store for media, media requests and issues."""

    def __init__(self, db_path: str):
        self._db_path = db_path
        self._lock = threading.Lock()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def initialize(self) -> None:
        """Create media, request and issue tables if they don't exist."""
        with self._lock:
            conn = self._connect()
            try:
                conn.executescript(_CREATE_TABLES_SQL)
                self._migrate_request_columns(conn)
                conn.commit()
                conn.execute("PRAGMA journal_mode=WAL")
            finally:
                conn.close()

    def _migrate_request_columns(self, conn: sqlite3.Connection) -> None:
        columns = conn.execute("PRAGMA table_info(media_requests)").fetchall()
        column_names = {str(col["name"]) for col in columns}
        if "last_failure_reason" not in column_names:
            conn.execute("ALTER TABLE media_requests ADD COLUMN last_failure_reason TEXT")
        if "admin_note" not in column_names:
            conn.execute("ALTER TABLE media_requests ADD COLUMN admin_note TEXT")

    # =========================================================================
    # Media
    # =========================================================================

    def _get_media_by_id(self, conn: sqlite3.Connection, media_id: int) -> Optional[Dict[str, Any]]:
        row = conn.execute("SELECT * FROM media WHERE id = ?", (media_id,)).fetchone()
        return dict(row) if row else None

    def get_or_create_media(
        self,
        *,
        tmdb_id: int,
        media_type: str,
        title: Optional[str] = None,
        tvdb_id: Optional[int] = None,
        imdb_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Return the tracked media row for a catalog id, creating it if needed."""
        normalized_type = _normalize_media_type(media_type)
        with self._lock:
            conn = self._connect()
            try:
                row = conn.execute(
                    "SELECT * FROM media WHERE tmdb_id = ? AND media_type = ?",
                    (int(tmdb_id), normalized_type),
                ).fetchone()
                if row is not None:
                    existing = dict(row)
                    updates: Dict[str, Any] = {}
                    if title and existing.get("title") != title:
                        updates["title"] = title
                    if tvdb_id and existing.get("tvdb_id") != tvdb_id:
                        updates["tvdb_id"] = tvdb_id
                    if imdb_id and existing.get("imdb_id") != imdb_id:
                        updates["imdb_id"] = imdb_id
                    if updates:
                        sets = ", ".join(f"{k} = ?" for k in updates)
                        conn.execute(
                            f"UPDATE media SET {sets} WHERE id = ?",
                            list(updates.values()) + [existing["id"]],
                        )
                        conn.commit()
                        existing.update(updates)
                    return existing

                cursor = conn.execute(
                    """INSERT INTO media (tmdb_id, tvdb_id, imdb_id, media_type, title)
                       VALUES (?, ?, ?, ?, ?)""",
                    (int(tmdb_id), tvdb_id, imdb_id, normalized_type, title),
                )
                conn.commit()
                created = self._get_media_by_id(conn, cursor.lastrowid)
                if created is None:
                    raise ValueError("Media not found after creation")
                return created
            finally:
                conn.close()

    def get_media(self, media_id: int) -> Optional[Dict[str, Any]]:
        conn = self._connect()
        try:
            return self._get_media_by_id(conn, media_id)
        finally:
            conn.close()

    def get_media_by_tmdb(self, tmdb_id: int, media_type: str) -> Optional[Dict[str, Any]]:
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT * FROM media WHERE tmdb_id = ? AND media_type = ?",
                (int(tmdb_id), _normalize_media_type(media_type)),
            ).fetchone()
            return dict(row) if row else None
        finally:
            conn.close()

    def get_media_by_tmdb_ids(self, tmdb_ids: Iterable[int], media_type: str) -> Dict[int, Dict[str, Any]]:
        """Batch lookup keyed by tmdb_id, used to enrich catalog result pages."""
        ids = sorted({int(i) for i in tmdb_ids})
        if not ids:
            return {}
        placeholders = ", ".join("?" for _ in ids)
        conn = self._connect()
        try:
            rows = conn.execute(
                f"SELECT * FROM media WHERE media_type = ? AND tmdb_id IN ({placeholders})",
                [_normalize_media_type(media_type), *ids],
            ).fetchall()
            return {int(row["tmdb_id"]): dict(row) for row in rows}
        finally:
            conn.close()

    def list_media(
        self,
        *,
        status: Optional[str] = None,
        media_type: Optional[str] = None,
        sort: str = "added",
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[Dict[str, Any]]:
        where: List[str] = []
        params: List[Any] = []
        if status is not None:
            where.append("status = ?")
            params.append(normalize_media_status(status))
        if media_type is not None:
            where.append("media_type = ?")
            params.append(_normalize_media_type(media_type))

        query = "SELECT * FROM media"
        if where:
            query += " WHERE " + " AND ".join(where)
        query += f" ORDER BY {_MEDIA_SORTS.get(sort, _MEDIA_SORTS['added'])}"
        query = _append_pagination(query, params, limit, offset)

        conn = self._connect()
        try:
            return [dict(r) for r in conn.execute(query, params).fetchall()]
        finally:
            conn.close()

    def count_media(self, *, status: Optional[str] = None) -> int:
        query = "SELECT COUNT(*) AS count FROM media"
        params: List[Any] = []
        if status is not None:
            query += " WHERE status = ?"
            params.append(normalize_media_status(status))
        conn = self._connect()
        try:
            row = conn.execute(query, params).fetchone()
            return int(row["count"]) if row else 0
        finally:
            conn.close()

    _ALLOWED_MEDIA_UPDATE_COLUMNS = {"status", "title", "tvdb_id", "imdb_id"}

    def update_media(self, media_id: int, **kwargs) -> Dict[str, Any]:
        """Update media fields and return the updated row."""
        for key in kwargs:
            if key not in self._ALLOWED_MEDIA_UPDATE_COLUMNS:
                raise ValueError(f"Invalid media column: {key}")
        if "status" in kwargs:
            kwargs["status"] = normalize_media_status(kwargs["status"])

        with self._lock:
            conn = self._connect()
            try:
                if self._get_media_by_id(conn, media_id) is None:
                    raise ValueError(f"Media {media_id} not found")
                if kwargs:
                    sets = ", ".join(f"{k} = ?" for k in kwargs)
                    conn.execute(
                        f"UPDATE media SET {sets}, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
                        list(kwargs.values()) + [media_id],
                    )
                    conn.commit()
                updated = self._get_media_by_id(conn, media_id)
                if updated is None:
                    raise ValueError(f"Media {media_id} not found after update")
                return updated
            finally:
                conn.close()

    def update_media_status(self, media_id: int, status: str) -> Dict[str, Any]:
        return self.update_media(media_id, status=status)

    def delete_media(self, media_id: int) -> bool:
        """Delete media and, by cascade, its requests and issues."""
        with self._lock:
            conn = self._connect()
            try:
                cursor = conn.execute("DELETE FROM media WHERE id = ?", (media_id,))
                conn.commit()
                return cursor.rowcount > 0
            finally:
                conn.close()

    # =========================================================================
    # Requests
    # =========================================================================

    @staticmethod
    def _parse_request_row(row: Optional[sqlite3.Row]) -> Optional[Dict[str, Any]]:
        if row is None:
            return None
        payload = dict(row)
        raw_seasons = payload.get("seasons")
        if raw_seasons is None:
            payload["seasons"] = []
        else:
            try:
                parsed = json.loads(raw_seasons)
            except (ValueError, TypeError):
                parsed = []
            payload["seasons"] = parsed if isinstance(parsed, list) else []
        return payload

    @staticmethod
    def _serialize_seasons(seasons: Any) -> Optional[str]:
        if seasons is None:
            return None
        if not isinstance(seasons, list) or not all(isinstance(s, int) for s in seasons):
            raise ValueError("seasons must be a list of integers")
        return json.dumps(sorted(set(seasons)))

    def _select_request(self, conn: sqlite3.Connection, request_id: int) -> Optional[Dict[str, Any]]:
        row = conn.execute("SELECT * FROM media_requests WHERE id = ?", (request_id,)).fetchone()
        return self._parse_request_row(row)

    def create_request(
        self,
        *,
        media_id: int,
        requested_by: int,
        media_type: str,
        seasons: Optional[List[int]] = None,
        status: str = "pending",
        server_id: Optional[int] = None,
        profile_id: Optional[int] = None,
        root_folder: Optional[str] = None,
        note: Optional[str] = None,
        reject_duplicates: bool = False,
    ) -> Dict[str, Any]:
        """Create a media request row and return the created record.

        With ``reject_duplicates`` the active requests of the media row are
        checked under the same lock as the insert: a movie with an active
        request raises :class:`DuplicateRequestError`, and a series request
        drops seasons already covered, raising when none remain.
        """
        normalized_type = _normalize_media_type(media_type)
        normalized_status = normalize_request_status(status)
        self._serialize_seasons(seasons)

        with self._lock:
            conn = self._connect()
            try:
                if reject_duplicates:
                    seasons = self._uncovered_seasons(conn, media_id, normalized_type, seasons)
                serialized_seasons = self._serialize_seasons(seasons)
                cursor = conn.execute(
                    """
                    INSERT INTO media_requests (
                        media_id, requested_by, status, media_type, seasons,
                        server_id, profile_id, root_folder, note
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        media_id,
                        requested_by,
                        normalized_status,
                        normalized_type,
                        serialized_seasons,
                        server_id,
                        profile_id,
                        root_folder,
                        note,
                    ),
                )
                conn.commit()
                created = self._select_request(conn, cursor.lastrowid)
                if created is None:
                    raise ValueError(f"Request {cursor.lastrowid} not found after creation")
                return created
            except sqlite3.IntegrityError as e:
                raise ValueError(f"Invalid request reference: {e}")
            finally:
                conn.close()

    def _select_active_requests(self, conn: sqlite3.Connection, media_id: int) -> List[Dict[str, Any]]:
        statuses = sorted(ACTIVE_REQUEST_STATUSES)
        rows = conn.execute(
            f"""SELECT * FROM media_requests
                WHERE media_id = ? AND status IN ({', '.join('?' for _ in statuses)})
                ORDER BY id""",
            [media_id, *statuses],
        ).fetchall()
        return [r for r in (self._parse_request_row(row) for row in rows) if r is not None]

    def _uncovered_seasons(
        self,
        conn: sqlite3.Connection,
        media_id: int,
        media_type: str,
        seasons: Optional[List[int]],
    ) -> Optional[List[int]]:
        active = self._select_active_requests(conn, media_id)
        if media_type == "movie":
            if active:
                raise DuplicateRequestError("This movie has already been requested")
            return seasons

        covered = {int(s) for row in active for s in row.get("seasons") or []}
        remaining = [s for s in seasons or [] if s not in covered]
        if not remaining:
            raise DuplicateRequestError("All requested seasons have already been requested")
        return remaining

    def get_request(self, request_id: int) -> Optional[Dict[str, Any]]:
        conn = self._connect()
        try:
            return self._select_request(conn, request_id)
        finally:
            conn.close()

    def _request_filters(
        self,
        *,
        requested_by: Optional[int],
        status: Optional[str],
        media_id: Optional[int],
        media_status: Optional[str],
        media_type: Optional[str],
        failed_only: bool = False,
    ) -> tuple[str, List[Any]]:
        where: List[str] = []
        params: List[Any] = []
        if requested_by is not None:
            where.append("r.requested_by = ?")
            params.append(int(requested_by))
        if status is not None:
            where.append("r.status = ?")
            params.append(normalize_request_status(status))
        if media_id is not None:
            where.append("r.media_id = ?")
            params.append(int(media_id))
        if media_status is not None:
            where.append("m.status = ?")
            params.append(normalize_media_status(media_status))
        if media_type is not None:
            where.append("r.media_type = ?")
            params.append(_normalize_media_type(media_type))
        if failed_only:
            where.append("r.last_failure_reason IS NOT NULL AND r.status = 'pending'")

        clause = " WHERE " + " AND ".join(where) if where else ""
        return clause, params

    def list_requests(
        self,
        *,
        requested_by: Optional[int] = None,
        status: Optional[str] = None,
        media_id: Optional[int] = None,
        media_status: Optional[str] = None,
        media_type: Optional[str] = None,
        failed_only: bool = False,
        sort: str = "added",
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[Dict[str, Any]]:
        """List requests with optional requester, status and media filters."""
        clause, params = self._request_filters(
            requested_by=requested_by,
            status=status,
            media_id=media_id,
            media_status=media_status,
            media_type=media_type,
            failed_only=failed_only,
        )
        query = (
            "SELECT r.* FROM media_requests r JOIN media m ON m.id = r.media_id"
            + clause
            + f" ORDER BY {_REQUEST_SORTS.get(sort, _REQUEST_SORTS['added'])}"
        )
        query = _append_pagination(query, params, limit, offset)

        conn = self._connect()
        try:
            results: List[Dict[str, Any]] = []
            for row in conn.execute(query, params).fetchall():
                parsed = self._parse_request_row(row)
                if parsed is not None:
                    results.append(parsed)
            return results
        finally:
            conn.close()

    def count_requests(
        self,
        *,
        requested_by: Optional[int] = None,
        status: Optional[str] = None,
        media_status: Optional[str] = None,
        media_type: Optional[str] = None,
        failed_only: bool = False,
    ) -> int:
        clause, params = self._request_filters(
            requested_by=requested_by,
            status=status,
            media_id=None,
            media_status=media_status,
            media_type=media_type,
            failed_only=failed_only,
        )
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT COUNT(*) AS count FROM media_requests r JOIN media m ON m.id = r.media_id" + clause,
                params,
            ).fetchone()
            return int(row["count"]) if row else 0
        finally:
            conn.close()

    def count_requests_by_status(self) -> Dict[str, int]:
        """Request totals keyed by status plus media-derived buckets."""
        conn = self._connect()
        try:
            counts = {"total": 0, "pending": 0, "approved": 0, "declined": 0}
            rows = conn.execute(
                "SELECT status, COUNT(*) AS count FROM media_requests GROUP BY status"
            ).fetchall()
            for row in rows:
                counts[str(row["status"])] = int(row["count"])
                counts["total"] += int(row["count"])

            media_rows = conn.execute(
                """SELECT m.status AS media_status, COUNT(*) AS count
                   FROM media_requests r JOIN media m ON m.id = r.media_id
                   WHERE r.status = 'approved'
                   GROUP BY m.status"""
            ).fetchall()
            by_media = {str(r["media_status"]): int(r["count"]) for r in media_rows}
            counts["processing"] = by_media.get("processing", 0)
            counts["available"] = by_media.get("available", 0) + by_media.get("partially_available", 0)

            failed = conn.execute(
                """SELECT COUNT(*) AS count FROM media_requests
                   WHERE status = 'pending' AND last_failure_reason IS NOT NULL"""
            ).fetchone()
            counts["failed"] = int(failed["count"]) if failed else 0

            for media_type in ("movie", "tv"):
                row = conn.execute(
                    "SELECT COUNT(*) AS count FROM media_requests WHERE media_type = ?",
                    (media_type,),
                ).fetchone()
                counts[media_type] = int(row["count"]) if row else 0
            return counts
        finally:
            conn.close()

    def count_user_pending_requests(self, user_id: int) -> int:
        """Count pending requests for a specific user."""
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT COUNT(*) AS count FROM media_requests WHERE requested_by = ? AND status = 'pending'",
                (user_id,),
            ).fetchone()
            return int(row["count"]) if row else 0
        finally:
            conn.close()

    def list_active_requests_for_media(self, media_id: int) -> List[Dict[str, Any]]:
        """Pending and approved requests for a media row."""
        conn = self._connect()
        try:
            return self._select_active_requests(conn, media_id)
        finally:
            conn.close()

    _ALLOWED_REQUEST_UPDATE_COLUMNS = {
        "status",
        "seasons",
        "server_id",
        "profile_id",
        "root_folder",
        "note",
        "admin_note",
        "modified_by",
        "last_failure_reason",
    }

    def update_request(
        self,
        request_id: int,
        expected_current_status: Optional[str] = None,
        **kwargs,
    ) -> Dict[str, Any]:
        """Update request fields and return the updated record.

        ``expected_current_status`` guards against concurrent transitions:
        the update is refused when the stored status no longer matches.
        """
        for key in kwargs:
            if key not in self._ALLOWED_REQUEST_UPDATE_COLUMNS:
                raise ValueError(f"Invalid request column: {key}")

        with self._lock:
            conn = self._connect()
            try:
                current = self._select_request(conn, request_id)
                if current is None:
                    raise ValueError(f"Request {request_id} not found")

                if expected_current_status is not None:
                    if current["status"] != normalize_request_status(expected_current_status):
                        raise ValueError("Request state changed before update")

                if not kwargs:
                    return current

                updates = dict(kwargs)
                if "status" in updates:
                    _, updates["status"] = validate_status_transition(current["status"], updates["status"])
                if "seasons" in updates:
                    updates["seasons"] = self._serialize_seasons(updates["seasons"])

                set_clause = ", ".join(f"{column} = ?" for column in updates)
                conn.execute(
                    f"UPDATE media_requests SET {set_clause}, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
                    list(updates.values()) + [request_id],
                )
                conn.commit()

                updated = self._select_request(conn, request_id)
                if updated is None:
                    raise ValueError(f"Request {request_id} not found after update")
                return updated
            finally:
                conn.close()

    def delete_request(self, request_id: int) -> bool:
        with self._lock:
            conn = self._connect()
            try:
                cursor = conn.execute("DELETE FROM media_requests WHERE id = ?", (request_id,))
                conn.commit()
                return cursor.rowcount > 0
            finally:
                conn.close()

    def requested_media_ids(self, user_id: int) -> List[int]:
        """Media rows the user has requests against, in any status."""
        conn = self._connect()
        try:
            rows = conn.execute(
                "SELECT DISTINCT media_id FROM media_requests WHERE requested_by = ? ORDER BY media_id",
                (user_id,),
            ).fetchall()
            return [int(row["media_id"]) for row in rows]
        finally:
            conn.close()

    def requested_seasons(self, media_id: int) -> set[int]:
        """Seasons already covered by pending or approved requests."""
        covered: set[int] = set()
        for row in self.list_active_requests_for_media(media_id):
            covered.update(int(s) for s in row.get("seasons") or [])
        return covered

    # =========================================================================
    # Issues
    # =========================================================================

    def _select_issue(self, conn: sqlite3.Connection, issue_id: int) -> Optional[Dict[str, Any]]:
        row = conn.execute("SELECT * FROM issues WHERE id = ?", (issue_id,)).fetchone()
        return dict(row) if row else None

    def create_issue(
        self,
        *,
        media_id: int,
        created_by: int,
        issue_type: str,
        message: str,
        problem_season: int = 0,
        problem_episode: int = 0,
    ) -> Dict[str, Any]:
        """Create an issue with its opening comment in one transaction."""
        if issue_type not in VALID_ISSUE_TYPES:
            raise ValueError(f"Invalid issue_type: {issue_type}")

        with self._lock:
            conn = self._connect()
            try:
                cursor = conn.execute(
                    """INSERT INTO issues (media_id, created_by, issue_type, problem_season, problem_episode)
                       VALUES (?, ?, ?, ?, ?)""",
                    (media_id, created_by, issue_type, int(problem_season), int(problem_episode)),
                )
                issue_id = cursor.lastrowid
                conn.execute(
                    "INSERT INTO issue_comments (issue_id, user_id, message) VALUES (?, ?, ?)",
                    (issue_id, created_by, message),
                )
                conn.commit()
                created = self._select_issue(conn, issue_id)
                if created is None:
                    raise ValueError(f"Issue {issue_id} not found after creation")
                return created
            except sqlite3.IntegrityError as e:
                conn.rollback()
                raise ValueError(f"Invalid issue reference: {e}")
            finally:
                conn.close()

    def get_issue(self, issue_id: int) -> Optional[Dict[str, Any]]:
        conn = self._connect()
        try:
            return self._select_issue(conn, issue_id)
        finally:
            conn.close()

    def list_issues(
        self,
        *,
        status: Optional[str] = None,
        created_by: Optional[int] = None,
        media_id: Optional[int] = None,
        sort: str = "added",
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[Dict[str, Any]]:
        where: List[str] = []
        params: List[Any] = []
        if status is not None:
            if status not in VALID_ISSUE_STATUSES:
                raise ValueError(f"Invalid issue status: {status}")
            where.append("status = ?")
            params.append(status)
        if created_by is not None:
            where.append("created_by = ?")
            params.append(int(created_by))
        if media_id is not None:
            where.append("media_id = ?")
            params.append(int(media_id))

        query = "SELECT * FROM issues"
        if where:
            query += " WHERE " + " AND ".join(where)
        query += f" ORDER BY {_ISSUE_SORTS.get(sort, _ISSUE_SORTS['added'])}"
        query = _append_pagination(query, params, limit, offset)

        conn = self._connect()
        try:
            return [dict(r) for r in conn.execute(query, params).fetchall()]
        finally:
            conn.close()

    def count_issues(
        self,
        *,
        status: Optional[str] = None,
        issue_type: Optional[str] = None,
        created_by: Optional[int] = None,
    ) -> int:
        where: List[str] = []
        params: List[Any] = []
        if created_by is not None:
            where.append("created_by = ?")
            params.append(int(created_by))
        if status is not None:
            where.append("status = ?")
            params.append(status)
        if issue_type is not None:
            where.append("issue_type = ?")
            params.append(issue_type)
        query = "SELECT COUNT(*) AS count FROM issues"
        if where:
            query += " WHERE " + " AND ".join(where)
        conn = self._connect()
        try:
            row = conn.execute(query, params).fetchone()
            return int(row["count"]) if row else 0
        finally:
            conn.close()

    _ALLOWED_ISSUE_UPDATE_COLUMNS = {"status", "modified_by"}

    def update_issue(self, issue_id: int, **kwargs) -> Dict[str, Any]:
        for key in kwargs:
            if key not in self._ALLOWED_ISSUE_UPDATE_COLUMNS:
                raise ValueError(f"Invalid issue column: {key}")
        if "status" in kwargs and kwargs["status"] not in VALID_ISSUE_STATUSES:
            raise ValueError(f"Invalid issue status: {kwargs['status']}")

        with self._lock:
            conn = self._connect()
            try:
                if self._select_issue(conn, issue_id) is None:
                    raise ValueError(f"Issue {issue_id} not found")
                if kwargs:
                    sets = ", ".join(f"{k} = ?" for k in kwargs)
                    conn.execute(
                        f"UPDATE issues SET {sets}, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
                        list(kwargs.values()) + [issue_id],
                    )
                    conn.commit()
                updated = self._select_issue(conn, issue_id)
                if updated is None:
                    raise ValueError(f"Issue {issue_id} not found after update")
                return updated
            finally:
                conn.close()

    def delete_issue(self, issue_id: int) -> bool:
        with self._lock:
            conn = self._connect()
            try:
                cursor = conn.execute("DELETE FROM issues WHERE id = ?", (issue_id,))
                conn.commit()
                return cursor.rowcount > 0
            finally:
                conn.close()

    def add_issue_comment(self, *, issue_id: int, user_id: int, message: str) -> Dict[str, Any]:
        """Append a comment and bump the issue's modification time."""
        with self._lock:
            conn = self._connect()
            try:
                if self._select_issue(conn, issue_id) is None:
                    raise ValueError(f"Issue {issue_id} not found")
                cursor = conn.execute(
                    "INSERT INTO issue_comments (issue_id, user_id, message) VALUES (?, ?, ?)",
                    (issue_id, user_id, message),
                )
                conn.execute(
                    "UPDATE issues SET updated_at = CURRENT_TIMESTAMP WHERE id = ?",
                    (issue_id,),
                )
                conn.commit()
                row = conn.execute(
                    "SELECT * FROM issue_comments WHERE id = ?", (cursor.lastrowid,)
                ).fetchone()
                return dict(row)
            finally:
                conn.close()

    def get_issue_comment(self, comment_id: int) -> Optional[Dict[str, Any]]:
        conn = self._connect()
        try:
            row = conn.execute("SELECT * FROM issue_comments WHERE id = ?", (comment_id,)).fetchone()
            return dict(row) if row else None
        finally:
            conn.close()

    def list_issue_comments(self, issue_id: int) -> List[Dict[str, Any]]:
        conn = self._connect()
        try:
            rows = conn.execute(
                "SELECT * FROM issue_comments WHERE issue_id = ? ORDER BY id",
                (issue_id,),
            ).fetchall()
            return [dict(r) for r in rows]
        finally:
            conn.close()

    def update_issue_comment(self, comment_id: int, message: str) -> Dict[str, Any]:
        with self._lock:
            conn = self._connect()
            try:
                cursor = conn.execute(
                    "UPDATE issue_comments SET message = ?, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
                    (message, comment_id),
                )
                if cursor.rowcount == 0:
                    raise ValueError(f"Comment {comment_id} not found")
                conn.commit()
                row = conn.execute("SELECT * FROM issue_comments WHERE id = ?", (comment_id,)).fetchone()
                return dict(row)
            finally:
                conn.close()

    def delete_issue_comment(self, comment_id: int) -> bool:
        with self._lock:
            conn = self._connect()
            try:
                cursor = conn.execute("DELETE FROM issue_comments WHERE id = ?", (comment_id,))
                conn.commit()
                return cursor.rowcount > 0
            finally:
                conn.close()

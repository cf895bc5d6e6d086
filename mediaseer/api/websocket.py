"""WebSocket manager for pushing request and issue updates to clients."""

import threading
from typing import Any, Dict, Optional

from flask_socketio import join_room, leave_room

from mediaseer.core.logger import setup_logger

logger = setup_logger(__name__)

ADMIN_ROOM = "admins"
ISSUES_ROOM = "issue_staff"


def user_room(user_id: int) -> str:
    return f"user_{user_id}"


class WebSocketManager:
    """Tracks which Socket.IO room each connection belongs to.

    Users join ``user_<id>``; request managers join ``admins`` and users who
    can view or manage every issue join ``issue_staff``. Emission is
    best-effort: failures are logged and never reach the caller.
    """

    def __init__(self):
        self.socketio = None
        self._enabled = False
        self._lock = threading.Lock()
        self._rooms_by_sid: Dict[str, list[str]] = {}

    def init_app(self, app: Any, socketio: Any) -> None:
        self.socketio = socketio
        self._enabled = True
        logger.info("WebSocket manager initialized")

    def is_enabled(self) -> bool:
        return self._enabled and self.socketio is not None

    def connection_count(self) -> int:
        with self._lock:
            return len(self._rooms_by_sid)

    def join_user_room(
        self,
        sid: str,
        is_admin: bool,
        db_user_id: Optional[int],
        sees_all_issues: bool = False,
    ) -> None:
        """Put a connection in its user room plus the admin and issue rooms it qualifies for."""
        rooms: list[str] = []
        if db_user_id is not None:
            rooms.append(user_room(db_user_id))
        if is_admin:
            rooms.append(ADMIN_ROOM)
        if sees_all_issues:
            rooms.append(ISSUES_ROOM)

        for room in rooms:
            join_room(room, sid=sid)
        with self._lock:
            self._rooms_by_sid[sid] = rooms
        if rooms:
            logger.debug(f"WebSocket {sid} joined rooms {rooms}")

    def leave_user_room(self, sid: str) -> None:
        with self._lock:
            rooms = self._rooms_by_sid.pop(sid, [])
        for room in rooms:
            leave_room(room, sid=sid)

    def sync_user_room(
        self,
        sid: str,
        is_admin: bool,
        db_user_id: Optional[int],
        sees_all_issues: bool = False,
    ) -> None:
        """Re-evaluate room membership after a session change."""
        self.leave_user_room(sid)
        self.join_user_room(sid, is_admin, db_user_id, sees_all_issues)

    def emit(self, event: str, payload: Dict[str, Any], room: Optional[str] = None) -> bool:
        if not self.is_enabled():
            return False
        try:
            if room:
                self.socketio.emit(event, payload, to=room)
            else:
                self.socketio.emit(event, payload)
            return True
        except Exception as e:
            logger.warning(f"Failed to emit WebSocket event '{event}': {e}")
            return False

    def emit_to_user(self, event: str, payload: Dict[str, Any], user_id: Optional[int]) -> bool:
        if user_id is None:
            return False
        return self.emit(event, payload, room=user_room(user_id))

    def emit_to_admins(self, event: str, payload: Dict[str, Any]) -> bool:
        return self.emit(event, payload, room=ADMIN_ROOM)


ws_manager = WebSocketManager()

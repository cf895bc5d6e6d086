"""Routes for tracked media rows.

Listing needs only a session; changing a status or deleting needs
MANAGE_REQUESTS.
"""

from __future__ import annotations

from typing import Any, Callable

from flask import Flask, jsonify, request, session

from mediaseer.core.auth_modes import AUTH_MODE_NONE
from mediaseer.core.logger import setup_logger
from mediaseer.core.media_db import MediaDB
from mediaseer.core.notifications import (
    NotificationContext,
    NotificationEvent,
    notify_user,
)
from mediaseer.core.permissions import Permission, has_permission
from mediaseer.core.request_routes import UserCache, serialize_request
from mediaseer.core.route_auth import (
    emit_event,
    error_response,
    page_payload,
    parse_paging,
    require_permission,
    require_session,
)
from mediaseer.core.user_db import UserDB
from mediaseer.metadata.mapping import map_media_info

logger = setup_logger(__name__)

# URL/filter names -> stored media status
_MEDIA_STATUS_ALIASES = {
    "available": "available",
    "partial": "partially_available",
    "processing": "processing",
    "pending": "pending",
    "unknown": "unknown",
}


def _notify_available(media_row: dict[str, Any], requests: list[dict[str, Any]]) -> None:
    notified: set[int] = set()
    for request_row in requests:
        user_id = request_row.get("requested_by")
        if request_row.get("status") != "approved" or user_id in notified:
            continue
        notified.add(user_id)
        context = NotificationContext(
            event=NotificationEvent.MEDIA_AVAILABLE,
            title=str(media_row.get("title") or "Unknown title"),
            media_type=media_row.get("media_type"),
            seasons=list(request_row.get("seasons") or []) or None,
        )
        try:
            notify_user(user_id, NotificationEvent.MEDIA_AVAILABLE, context)
        except Exception as exc:
            logger.warning(
                "Failed to trigger media available notification (user_id=%s): %s",
                user_id,
                exc,
            )


def register_media_routes(
    app: Flask,
    user_db: UserDB,
    media_db: MediaDB,
    *,
    resolve_auth_mode: Callable[[], str],
    ws_manager: Any | None = None,
) -> None:
    """Register /api/v1/media routes."""

    def _require_manager():
        return require_permission(user_db, resolve_auth_mode, Permission.MANAGE_REQUESTS)

    def _nested_request_scope() -> tuple[int | None, Any | None]:
        """Requester filter for nested requests: managers see all, others their own."""
        if resolve_auth_mode() == AUTH_MODE_NONE:
            return None, None
        try:
            viewer = user_db.get_user(user_id=int(session.get("db_user_id")))
        except (TypeError, ValueError):
            viewer = None
        if viewer is None:
            return None, error_response("Unauthorized", 401)
        if has_permission(Permission.MANAGE_REQUESTS, viewer.get("permissions")):
            return None, None
        return viewer["id"], None

    @app.route("/api/v1/media", methods=["GET"])
    def api_list_media():
        gate = require_session(resolve_auth_mode)
        if gate is not None:
            return gate
        requested_by, gate = _nested_request_scope()
        if gate is not None:
            return gate

        take, skip = parse_paging()
        filter_name = (request.args.get("filter") or "all").strip().lower()
        if filter_name != "all" and filter_name not in _MEDIA_STATUS_ALIASES:
            return error_response(f"Invalid filter: {filter_name}", 400)
        status = _MEDIA_STATUS_ALIASES.get(filter_name)
        sort = request.args.get("sort") or "added"

        rows = media_db.list_media(status=status, sort=sort, limit=take, offset=skip)
        total = media_db.count_media(status=status)

        users = UserCache(user_db)
        results = []
        for row in rows:
            requests = [
                serialize_request(req, users=users, media_db=media_db, media=row)
                for req in media_db.list_requests(media_id=row["id"], requested_by=requested_by)
            ]
            # Nested requests already carry the media row.
            for req in requests:
                req.pop("media", None)
            results.append(map_media_info(row, requests))
        return jsonify(page_payload(results, total=total, take=take, skip=skip))

    @app.route("/api/v1/media/<int:media_id>/<string:status>", methods=["POST"])
    def api_set_media_status(media_id: int, status: str):
        user, gate = _require_manager()
        if gate is not None:
            return gate

        target = _MEDIA_STATUS_ALIASES.get(status.strip().lower())
        if target is None:
            return error_response(f"Invalid media status: {status}", 400)

        media_row = media_db.get_media(media_id)
        if media_row is None:
            return error_response("Media not found", 404)

        previous = media_row["status"]
        updated = media_db.update_media_status(media_id, target)
        logger.info(f"Media #{media_id} status {previous} -> {target} (user {user['id']})")

        requests = media_db.list_requests(media_id=media_id)
        if target != previous:
            for request_row in requests:
                if request_row["status"] != "approved":
                    continue
                payload = {
                    "request_id": request_row["id"],
                    "status": request_row["status"],
                    "media_id": media_id,
                    "media_status": target,
                }
                emit_event(ws_manager, event_name="request_update", payload=payload, room="admins")
                emit_event(
                    ws_manager,
                    event_name="request_update",
                    payload=payload,
                    room=f"user_{request_row['requested_by']}",
                )
            if target == "available":
                _notify_available(updated, requests)

        return jsonify(map_media_info(updated))

    @app.route("/api/v1/media/<int:media_id>", methods=["DELETE"])
    def api_delete_media(media_id: int):
        user, gate = _require_manager()
        if gate is not None:
            return gate
        if not media_db.delete_media(media_id):
            return error_response("Media not found", 404)
        logger.info(f"Media #{media_id} deleted by user {user['id']}")
        return "", 204

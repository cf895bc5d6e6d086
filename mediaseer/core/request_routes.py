"""Media request API routes."""

from __future__ import annotations

from typing import Any, Callable

from flask import Flask, jsonify, request

from mediaseer.core.logger import setup_logger
from mediaseer.core.media_db import MediaDB
from mediaseer.core.notifications import (
    NotificationContext,
    NotificationEvent,
    notify_admin,
    notify_user,
)
from mediaseer.core.permissions import Permission, has_permission
from mediaseer.core.requests_service import (
    RequestServiceError,
    approve_request,
    auto_approve_if_allowed,
    create_request,
    decline_request,
    delete_request,
    ensure_request_access,
    update_pending_request,
)
from mediaseer.core.route_auth import (
    emit_event,
    error_response,
    load_session_user,
    page_payload,
    parse_json_body,
    parse_paging,
    require_permission,
    service_error_response,
)
from mediaseer.core.user_db import UserDB
from mediaseer.core.utils import as_bool, as_int
from mediaseer.metadata.mapping import map_request

logger = setup_logger(__name__)

# filter name -> list_requests kwargs
_REQUEST_FILTERS: dict[str, dict[str, Any]] = {
    "all": {},
    "pending": {"status": "pending"},
    "approved": {"status": "approved"},
    "declined": {"status": "declined"},
    "processing": {"status": "approved", "media_status": "processing"},
    "available": {"status": "approved", "media_status": "available"},
    "failed": {"failed_only": True},
}

# camelCase body keys accepted by PUT /request/<id>
_UPDATE_BODY_KEYS = {
    "seasons": "seasons",
    "note": "note",
    "serverId": "server_id",
    "profileId": "profile_id",
    "rootFolder": "root_folder",
}


def _can_manage_requests(user: dict[str, Any]) -> bool:
    return has_permission(Permission.MANAGE_REQUESTS, user.get("permissions"))


def _user_label(user: dict[str, Any] | None, user_id: int | None = None) -> str:
    if user:
        return str(user.get("display_name") or user.get("username"))
    if user_id is not None:
        return f"user#{user_id}"
    return "unknown user"


class UserCache:
    """Per-response memo for user lookups while serializing lists."""

    def __init__(self, user_db: UserDB):
        self._user_db = user_db
        self._users: dict[int, dict[str, Any] | None] = {}

    def get(self, user_id: Any) -> dict[str, Any] | None:
        if user_id is None:
            return None
        key = int(user_id)
        if key not in self._users:
            self._users[key] = self._user_db.get_user(user_id=key)
        return self._users[key]


def serialize_request(
    row: dict[str, Any],
    *,
    users: UserCache,
    media_db: MediaDB,
    media: dict[str, Any] | None = None,
) -> dict[str, Any]:
    return map_request(
        row,
        requested_by=users.get(row.get("requested_by")),
        modified_by=users.get(row.get("modified_by")),
        media=media if media is not None else media_db.get_media(row["media_id"]),
    )


def _notify_for_request_event(
    user_db: UserDB,
    *,
    event: NotificationEvent,
    request_row: dict[str, Any],
    media_row: dict[str, Any] | None,
    error_message: str | None = None,
) -> None:
    requester = user_db.get_user(user_id=request_row["requested_by"])
    context = NotificationContext(
        event=event,
        title=str((media_row or {}).get("title") or "Unknown title"),
        media_type=request_row.get("media_type"),
        username=_user_label(requester, request_row.get("requested_by")),
        seasons=list(request_row.get("seasons") or []) or None,
        admin_note=request_row.get("admin_note"),
        error_message=error_message,
    )
    try:
        notify_admin(event, context)
    except Exception as exc:
        logger.warning(
            "Failed to trigger admin notification for request event '%s': %s",
            event.value,
            exc,
        )
    try:
        notify_user(request_row.get("requested_by"), event, context)
    except Exception as exc:
        logger.warning(
            "Failed to trigger user notification for request event '%s' (user_id=%s): %s",
            event.value,
            request_row.get("requested_by"),
            exc,
        )


def register_request_routes(
    app: Flask,
    user_db: UserDB,
    media_db: MediaDB,
    *,
    resolve_auth_mode: Callable[[], str],
    get_catalog: Callable[[], Any],
    get_setting: Callable[[str, Any], Any],
    ws_manager: Any | None = None,
) -> None:
    """Register request lifecycle routes."""

    def _emit_update(request_row: dict[str, Any], event_name: str = "request_update") -> None:
        payload = {
            "request_id": request_row["id"],
            "status": request_row["status"],
            "media_id": request_row["media_id"],
        }
        emit_event(ws_manager, event_name=event_name, payload=payload, room="admins")
        emit_event(ws_manager, event_name="request_update", payload=payload, room=f"user_{request_row['requested_by']}")

    @app.route("/api/v1/request", methods=["GET"])
    def api_list_requests():
        user, gate = load_session_user(user_db, resolve_auth_mode)
        if gate is not None:
            return gate

        take, skip = parse_paging()
        filter_name = (request.args.get("filter") or "all").strip().lower()
        if filter_name not in _REQUEST_FILTERS:
            return error_response(f"Invalid filter: {filter_name}", 400)
        sort = request.args.get("sort") or "added"
        filters = dict(_REQUEST_FILTERS[filter_name])
        media_type = request.args.get("mediaType")
        if media_type and media_type != "all":
            filters["media_type"] = media_type

        if _can_manage_requests(user):
            requested_by = request.args.get("requestedBy", type=int)
        else:
            requested_by = user["id"]

        try:
            rows = media_db.list_requests(requested_by=requested_by, sort=sort, limit=take, offset=skip, **filters)
            total = media_db.count_requests(requested_by=requested_by, **filters)
        except ValueError as exc:
            return error_response(str(exc), 400)

        users = UserCache(user_db)
        results = [serialize_request(row, users=users, media_db=media_db) for row in rows]
        return jsonify(page_payload(results, total=total, take=take, skip=skip))

    @app.route("/api/v1/request/count", methods=["GET"])
    def api_request_counts():
        user, gate = load_session_user(user_db, resolve_auth_mode)
        if gate is not None:
            return gate

        if _can_manage_requests(user):
            return jsonify(media_db.count_requests_by_status())

        counts = {
            status: media_db.count_requests(requested_by=user["id"], status=status)
            for status in ("pending", "approved", "declined")
        }
        counts["total"] = sum(counts.values())
        return jsonify(counts)

    @app.route("/api/v1/request", methods=["POST"])
    def api_create_request():
        user, gate = load_session_user(user_db, resolve_auth_mode)
        if gate is not None:
            return gate

        data, body_gate = parse_json_body()
        if body_gate is not None:
            return body_gate

        max_pending = max(1, min(as_int(get_setting("MAX_PENDING_REQUESTS_PER_USER", 20), 20), 1000))
        allow_notes = as_bool(get_setting("REQUESTS_ALLOW_NOTES", True), default=True)
        catalog = get_catalog()

        try:
            created = create_request(
                media_db,
                user=user,
                media_type=data.get("mediaType"),
                tmdb_id=data.get("mediaId"),
                catalog=catalog,
                seasons=data.get("seasons"),
                note=data.get("note") if allow_notes else None,
                server_id=data.get("serverId"),
                profile_id=data.get("profileId"),
                root_folder=data.get("rootFolder"),
                max_pending=max_pending,
            )
        except RequestServiceError as exc:
            return service_error_response(exc)

        created, outcome = auto_approve_if_allowed(media_db, request_row=created, user=user, catalog=catalog)
        media_row = media_db.get_media(created["media_id"])
        logger.info(
            "Request created #%s for '%s' by %s (%s)",
            created["id"],
            (media_row or {}).get("title"),
            _user_label(user),
            outcome,
        )

        _emit_update(created, event_name="new_request")
        if outcome == "approved":
            _notify_for_request_event(
                user_db,
                event=NotificationEvent.MEDIA_AUTO_APPROVED,
                request_row=created,
                media_row=media_row,
            )
        else:
            _notify_for_request_event(
                user_db,
                event=NotificationEvent.MEDIA_PENDING,
                request_row=created,
                media_row=media_row,
            )
            if outcome == "failed":
                _notify_for_request_event(
                    user_db,
                    event=NotificationEvent.MEDIA_FAILED,
                    request_row=created,
                    media_row=media_row,
                    error_message=created.get("last_failure_reason"),
                )

        users = UserCache(user_db)
        return jsonify(serialize_request(created, users=users, media_db=media_db, media=media_row)), 201

    @app.route("/api/v1/request/<int:request_id>", methods=["GET"])
    def api_get_request(request_id: int):
        user, gate = load_session_user(user_db, resolve_auth_mode)
        if gate is not None:
            return gate
        try:
            row = ensure_request_access(
                media_db,
                request_id=request_id,
                actor_user_id=user["id"],
                can_manage=_can_manage_requests(user),
            )
        except RequestServiceError as exc:
            return service_error_response(exc)
        return jsonify(serialize_request(row, users=UserCache(user_db), media_db=media_db))

    @app.route("/api/v1/request/<int:request_id>", methods=["PUT"])
    def api_update_request(request_id: int):
        user, gate = load_session_user(user_db, resolve_auth_mode)
        if gate is not None:
            return gate

        data, body_gate = parse_json_body()
        if body_gate is not None:
            return body_gate

        unknown = sorted(key for key in data if key not in _UPDATE_BODY_KEYS and key not in ("mediaType",))
        if unknown:
            return error_response(f"Unknown field(s): {', '.join(unknown)}", 400)
        changes = {_UPDATE_BODY_KEYS[key]: value for key, value in data.items() if key in _UPDATE_BODY_KEYS}

        try:
            updated = update_pending_request(
                media_db,
                request_id=request_id,
                actor=user,
                changes=changes,
                catalog=get_catalog() if "seasons" in changes else None,
            )
        except RequestServiceError as exc:
            return service_error_response(exc)

        _emit_update(updated)
        return jsonify(serialize_request(updated, users=UserCache(user_db), media_db=media_db))

    @app.route("/api/v1/request/<int:request_id>", methods=["DELETE"])
    def api_delete_request(request_id: int):
        user, gate = load_session_user(user_db, resolve_auth_mode)
        if gate is not None:
            return gate

        try:
            deleted = delete_request(
                media_db,
                request_id=request_id,
                actor_user_id=user["id"],
                can_manage=_can_manage_requests(user),
            )
        except RequestServiceError as exc:
            return service_error_response(exc)

        logger.info("Request deleted #%s by %s", request_id, _user_label(user))
        emit_event(
            ws_manager,
            event_name="request_update",
            payload={"request_id": request_id, "status": "deleted", "media_id": deleted["media_id"]},
            room="admins",
        )
        return "", 204

    @app.route("/api/v1/request/<int:request_id>/<string:action>", methods=["POST"])
    def api_request_transition(request_id: int, action: str):
        if action not in ("approve", "decline"):
            return error_response("Invalid action", 400)
        manager, gate = require_permission(user_db, resolve_auth_mode, Permission.MANAGE_REQUESTS)
        if gate is not None:
            return gate

        data, body_gate = parse_json_body()
        if body_gate is not None:
            return body_gate

        try:
            if action == "approve":
                updated = approve_request(
                    media_db,
                    request_id=request_id,
                    actor_user_id=manager["id"],
                    catalog=get_catalog(),
                    admin_note=data.get("adminNote"),
                )
                event = NotificationEvent.MEDIA_APPROVED
            else:
                updated = decline_request(
                    media_db,
                    request_id=request_id,
                    actor_user_id=manager["id"],
                    admin_note=data.get("adminNote"),
                )
                event = NotificationEvent.MEDIA_DECLINED
        except RequestServiceError as exc:
            if exc.code == "acquisition_failed":
                failed = media_db.get_request(request_id)
                if failed is not None:
                    _emit_update(failed)
                    _notify_for_request_event(
                        user_db,
                        event=NotificationEvent.MEDIA_FAILED,
                        request_row=failed,
                        media_row=media_db.get_media(failed["media_id"]),
                        error_message=str(exc),
                    )
            return service_error_response(exc)

        media_row = media_db.get_media(updated["media_id"])
        logger.info(
            "Request %s #%s for '%s' by %s",
            updated["status"],
            updated["id"],
            (media_row or {}).get("title"),
            _user_label(manager),
        )
        _emit_update(updated)
        _notify_for_request_event(user_db, event=event, request_row=updated, media_row=media_row)
        return jsonify(serialize_request(updated, users=UserCache(user_db), media_db=media_db, media=media_row))

"""Issue tracking API routes."""

from __future__ import annotations

from typing import Any, Callable

from flask import Flask, jsonify, request

from mediaseer.api.websocket import ISSUES_ROOM
from mediaseer.core.issues_service import (
    IssueServiceError,
    add_comment,
    can_view_all_issues,
    create_issue,
    delete_comment,
    delete_issue,
    ensure_issue_access,
    get_comment,
    set_issue_status,
    update_comment,
)
from mediaseer.core.logger import setup_logger
from mediaseer.core.media_db import MediaDB
from mediaseer.core.models import VALID_ISSUE_TYPES
from mediaseer.core.notifications import (
    NotificationContext,
    NotificationEvent,
    notify_admin,
    notify_user,
)
from mediaseer.core.route_auth import (
    emit_event,
    error_response,
    load_session_user,
    page_payload,
    parse_json_body,
    parse_paging,
    service_error_response,
)
from mediaseer.core.user_db import UserDB
from mediaseer.metadata.mapping import map_issue, map_issue_comment

logger = setup_logger(__name__)

_ISSUE_FILTERS = {"all": None, "open": "open", "resolved": "resolved"}


def _serialize_issue(
    issue: dict[str, Any],
    *,
    user_db: UserDB,
    media_db: MediaDB,
    include_comments: bool = False,
) -> dict[str, Any]:
    users: dict[int, dict[str, Any] | None] = {}

    def _user(user_id: Any) -> dict[str, Any] | None:
        if user_id is None:
            return None
        if user_id not in users:
            users[user_id] = user_db.get_user(user_id=user_id)
        return users[user_id]

    comments = None
    if include_comments:
        comments = [
            map_issue_comment(comment, _user(comment.get("user_id")))
            for comment in media_db.list_issue_comments(issue["id"])
        ]
    return map_issue(
        issue,
        created_by=_user(issue.get("created_by")),
        modified_by=_user(issue.get("modified_by")),
        media=media_db.get_media(issue["media_id"]),
        comments=comments,
    )


def _notify_for_issue_event(
    user_db: UserDB,
    media_db: MediaDB,
    *,
    event: NotificationEvent,
    issue: dict[str, Any],
    actor: dict[str, Any],
    message: str | None = None,
) -> None:
    media_row = media_db.get_media(issue["media_id"]) or {}
    context = NotificationContext(
        event=event,
        title=str(media_row.get("title") or "Unknown title"),
        media_type=media_row.get("media_type"),
        username=str(actor.get("display_name") or actor.get("username")),
        issue_type=issue.get("issue_type"),
        message=message,
    )
    try:
        notify_admin(event, context)
    except Exception as exc:
        logger.warning("Failed to trigger admin notification for issue event '%s': %s", event.value, exc)

    # The reporter hears about activity from others on their issue.
    if issue.get("created_by") != actor.get("id"):
        try:
            notify_user(issue.get("created_by"), event, context)
        except Exception as exc:
            logger.warning(
                "Failed to trigger user notification for issue event '%s' (user_id=%s): %s",
                event.value,
                issue.get("created_by"),
                exc,
            )


def register_issue_routes(
    app: Flask,
    user_db: UserDB,
    media_db: MediaDB,
    *,
    resolve_auth_mode: Callable[[], str],
    ws_manager: Any | None = None,
) -> None:
    """Register issue and issue comment routes."""

    def _emit_update(issue: dict[str, Any], status: str | None = None) -> None:
        payload = {"issue_id": issue["id"], "status": status or issue["status"], "media_id": issue["media_id"]}
        emit_event(ws_manager, event_name="issue_update", payload=payload, room=ISSUES_ROOM)
        emit_event(ws_manager, event_name="issue_update", payload=payload, room=f"user_{issue['created_by']}")

    @app.route("/api/v1/issue", methods=["GET"])
    def api_list_issues():
        user, gate = load_session_user(user_db, resolve_auth_mode)
        if gate is not None:
            return gate

        take, skip = parse_paging()
        filter_name = (request.args.get("filter") or "all").strip().lower()
        if filter_name not in _ISSUE_FILTERS:
            return error_response(f"Invalid filter: {filter_name}", 400)
        status = _ISSUE_FILTERS[filter_name]
        sort = request.args.get("sort") or "added"
        created_by = None if can_view_all_issues(user) else user["id"]

        rows = media_db.list_issues(status=status, created_by=created_by, sort=sort, limit=take, offset=skip)
        total = media_db.count_issues(status=status, created_by=created_by)
        results = [_serialize_issue(row, user_db=user_db, media_db=media_db) for row in rows]
        return jsonify(page_payload(results, total=total, take=take, skip=skip))

    @app.route("/api/v1/issue/count", methods=["GET"])
    def api_issue_counts():
        user, gate = load_session_user(user_db, resolve_auth_mode)
        if gate is not None:
            return gate

        created_by = None if can_view_all_issues(user) else user["id"]
        counts: dict[str, int] = {"total": media_db.count_issues(created_by=created_by)}
        for issue_type in sorted(VALID_ISSUE_TYPES):
            counts[issue_type] = media_db.count_issues(issue_type=issue_type, created_by=created_by)
        counts["open"] = media_db.count_issues(status="open", created_by=created_by)
        counts["resolved"] = media_db.count_issues(status="resolved", created_by=created_by)
        return jsonify(counts)

    @app.route("/api/v1/issue", methods=["POST"])
    def api_create_issue():
        user, gate = load_session_user(user_db, resolve_auth_mode)
        if gate is not None:
            return gate

        data, body_gate = parse_json_body()
        if body_gate is not None:
            return body_gate

        try:
            issue = create_issue(
                media_db,
                user=user,
                media_id=data.get("mediaId"),
                issue_type=data.get("issueType"),
                message=data.get("message"),
                problem_season=data.get("problemSeason", 0),
                problem_episode=data.get("problemEpisode", 0),
            )
        except IssueServiceError as exc:
            return service_error_response(exc)

        _emit_update(issue)
        _notify_for_issue_event(
            user_db,
            media_db,
            event=NotificationEvent.ISSUE_CREATED,
            issue=issue,
            actor=user,
            message=str(data.get("message") or "").strip(),
        )
        return jsonify(_serialize_issue(issue, user_db=user_db, media_db=media_db, include_comments=True)), 201

    @app.route("/api/v1/issue/<int:issue_id>", methods=["GET"])
    def api_get_issue(issue_id: int):
        user, gate = load_session_user(user_db, resolve_auth_mode)
        if gate is not None:
            return gate
        try:
            issue = ensure_issue_access(media_db, issue_id=issue_id, user=user)
        except IssueServiceError as exc:
            return service_error_response(exc)
        return jsonify(_serialize_issue(issue, user_db=user_db, media_db=media_db, include_comments=True))

    @app.route("/api/v1/issue/<int:issue_id>/comment", methods=["POST"])
    def api_add_issue_comment(issue_id: int):
        user, gate = load_session_user(user_db, resolve_auth_mode)
        if gate is not None:
            return gate

        data, body_gate = parse_json_body()
        if body_gate is not None:
            return body_gate

        try:
            comment = add_comment(media_db, issue_id=issue_id, user=user, message=data.get("message"))
        except IssueServiceError as exc:
            return service_error_response(exc)

        issue = media_db.get_issue(issue_id)
        _emit_update(issue)
        _notify_for_issue_event(
            user_db,
            media_db,
            event=NotificationEvent.ISSUE_COMMENT,
            issue=issue,
            actor=user,
            message=comment["message"],
        )
        return jsonify(_serialize_issue(issue, user_db=user_db, media_db=media_db, include_comments=True))

    @app.route("/api/v1/issue/<int:issue_id>/<string:status>", methods=["POST"])
    def api_set_issue_status(issue_id: int, status: str):
        if status not in ("open", "resolved"):
            return error_response("Invalid status", 400)
        user, gate = load_session_user(user_db, resolve_auth_mode)
        if gate is not None:
            return gate

        try:
            before = ensure_issue_access(media_db, issue_id=issue_id, user=user)
            issue = set_issue_status(media_db, issue_id=issue_id, user=user, status=status)
        except IssueServiceError as exc:
            return service_error_response(exc)

        if before["status"] != issue["status"]:
            _emit_update(issue)
            _notify_for_issue_event(
                user_db,
                media_db,
                event=NotificationEvent.ISSUE_RESOLVED if status == "resolved" else NotificationEvent.ISSUE_REOPENED,
                issue=issue,
                actor=user,
            )
        return jsonify(_serialize_issue(issue, user_db=user_db, media_db=media_db, include_comments=True))

    @app.route("/api/v1/issue/<int:issue_id>", methods=["DELETE"])
    def api_delete_issue(issue_id: int):
        user, gate = load_session_user(user_db, resolve_auth_mode)
        if gate is not None:
            return gate
        try:
            issue = delete_issue(media_db, issue_id=issue_id, user=user)
        except IssueServiceError as exc:
            return service_error_response(exc)
        logger.info(f"Issue #{issue_id} deleted by user {user['id']}")
        _emit_update(issue, status="deleted")
        return "", 204

    @app.route("/api/v1/issueComment/<int:comment_id>", methods=["GET"])
    def api_get_issue_comment(comment_id: int):
        user, gate = load_session_user(user_db, resolve_auth_mode)
        if gate is not None:
            return gate
        try:
            comment = get_comment(media_db, comment_id=comment_id, user=user)
        except IssueServiceError as exc:
            return service_error_response(exc)
        return jsonify(map_issue_comment(comment, user_db.get_user(user_id=comment["user_id"]) if comment.get("user_id") else None))

    @app.route("/api/v1/issueComment/<int:comment_id>", methods=["PUT"])
    def api_update_issue_comment(comment_id: int):
        user, gate = load_session_user(user_db, resolve_auth_mode)
        if gate is not None:
            return gate

        data, body_gate = parse_json_body()
        if body_gate is not None:
            return body_gate

        try:
            comment = update_comment(media_db, comment_id=comment_id, user=user, message=data.get("message"))
        except IssueServiceError as exc:
            return service_error_response(exc)
        return jsonify(map_issue_comment(comment, user))

    @app.route("/api/v1/issueComment/<int:comment_id>", methods=["DELETE"])
    def api_delete_issue_comment(comment_id: int):
        user, gate = load_session_user(user_db, resolve_auth_mode)
        if gate is not None:
            return gate
        try:
            delete_comment(media_db, comment_id=comment_id, user=user)
        except IssueServiceError as exc:
            return service_error_response(exc)
        return "", 204

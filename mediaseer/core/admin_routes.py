"""User management API routes.

Registers /api/v1/user endpoints. Everything except a user's own request
list requires MANAGE_USERS.
"""

from __future__ import annotations

from typing import Any, Callable

from flask import Flask, jsonify, request, session
from werkzeug.security import generate_password_hash

from mediaseer.core.auth_modes import (
    AUTH_MODE_PROXY,
    AUTH_SOURCE_BUILTIN,
    AUTH_SOURCE_JELLYFIN,
    AUTH_SOURCE_OIDC,
    AUTH_SOURCE_PROXY,
    is_user_active,
    normalize_auth_source,
)
from mediaseer.core.external_user_linking import default_user_permissions, upsert_external_user
from mediaseer.core.logger import setup_logger
from mediaseer.core.media_db import MediaDB
from mediaseer.core.notifications import normalize_routes
from mediaseer.core.permissions import (
    Permission,
    describe_permissions,
    has_permission,
    normalize_permissions,
)
from mediaseer.core.request_routes import UserCache, serialize_request
from mediaseer.core.requests_service import refresh_media_status
from mediaseer.core.route_auth import (
    error_response,
    load_session_user,
    page_payload,
    parse_json_body,
    parse_paging,
    require_permission,
)
from mediaseer.core.settings_registry import load_config_file
from mediaseer.core.user_db import UserDB
from mediaseer.media_server.jellyfin import JellyfinClient, JellyfinError

logger = setup_logger(__name__)

MIN_PASSWORD_LENGTH = 4

# Per-user settings a user or admin may store, with their validators.
_USER_SETTING_VALIDATORS: dict[str, Callable[[Any], Any]] = {
    "USER_NOTIFICATION_ROUTES": normalize_routes,
}


def validate_user_settings(payload: dict[str, Any]) -> tuple[dict[str, Any], list[str]]:
    """Return ``(validated, errors)`` for a per-user settings payload."""
    validated: dict[str, Any] = {}
    errors: list[str] = []
    for key, value in payload.items():
        validator = _USER_SETTING_VALIDATORS.get(key)
        if validator is None:
            errors.append(f"Setting not user-overridable: {key}")
            continue
        if value is None:
            # None clears the override
            validated[key] = None
            continue
        if key == "USER_NOTIFICATION_ROUTES" and not isinstance(value, list):
            errors.append(f"{key} must be a list")
            continue
        validated[key] = validator(value)
    return validated, errors


def get_user_edit_capabilities(
    user: dict[str, Any],
    security_config: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Which fields of a user the backend lets an editor change."""
    auth_source = normalize_auth_source(
        user.get("auth_source"),
        user.get("oidc_subject"),
        user.get("jellyfin_user_id"),
    )
    if security_config is None and auth_source in (AUTH_SOURCE_OIDC, AUTH_SOURCE_PROXY):
        security_config = load_config_file("security")
    security_config = security_config or {}

    if auth_source == AUTH_SOURCE_OIDC:
        admin_managed = bool(security_config.get("OIDC_USE_ADMIN_GROUP", True))
    elif auth_source == AUTH_SOURCE_PROXY:
        admin_managed = bool(str(security_config.get("PROXY_AUTH_ADMIN_GROUP_HEADER") or "").strip())
    else:
        admin_managed = False

    return {
        "authSource": auth_source,
        "canSetPassword": auth_source == AUTH_SOURCE_BUILTIN,
        "canEditAdmin": not admin_managed,
        "canEditEmail": auth_source != AUTH_SOURCE_OIDC,
        "canEditDisplayName": auth_source != AUTH_SOURCE_OIDC,
    }


def serialize_user(
    user: dict[str, Any],
    auth_mode: str,
    *,
    media_db: MediaDB | None = None,
    security_config: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """API shape of a user row; never includes the password hash."""
    payload = {
        "id": user.get("id"),
        "username": user.get("username"),
        "email": user.get("email"),
        "displayName": user.get("display_name") or user.get("username"),
        "avatar": user.get("avatar"),
        "authSource": normalize_auth_source(
            user.get("auth_source"),
            user.get("oidc_subject"),
            user.get("jellyfin_user_id"),
        ),
        "jellyfinUserId": user.get("jellyfin_user_id"),
        "permissions": user.get("permissions", 0),
        "permissionNames": describe_permissions(user.get("permissions")),
        "isActive": is_user_active(user, auth_mode),
        "hasPassword": bool(user.get("password_hash")),
        "createdAt": user.get("created_at"),
        "updatedAt": user.get("updated_at"),
        "editCapabilities": get_user_edit_capabilities(user, security_config=security_config),
    }
    if media_db is not None:
        payload["requestCount"] = media_db.count_requests(requested_by=user["id"])
    return payload


def _oidc_role_management_message(security_config: dict[str, Any]) -> str:
    admin_group = security_config.get("OIDC_ADMIN_GROUP", "")
    if admin_group:
        return (
            "Admin rights for OIDC users are managed by the "
            f"'{admin_group}' group in your identity provider"
        )
    return (
        "Disable 'Use Admin Group for Authorization' in security settings "
        "to manage admin rights manually"
    )


def register_admin_routes(
    app: Flask,
    user_db: UserDB,
    media_db: MediaDB,
    *,
    resolve_auth_mode: Callable[[], str],
) -> None:
    """Register user management routes on the Flask app."""

    def _require_user_manager():
        return require_permission(
            user_db,
            resolve_auth_mode,
            Permission.MANAGE_USERS,
            allow_no_auth=True,
        )

    @app.route("/api/v1/user", methods=["GET"])
    def api_list_users():
        _, gate = _require_user_manager()
        if gate is not None:
            return gate

        take, skip = parse_paging()
        sort = request.args.get("sort") or "id"
        users = user_db.list_users(limit=take, offset=skip, sort=sort)
        auth_mode = resolve_auth_mode()
        security_config = load_config_file("security")
        results = [
            serialize_user(u, auth_mode, media_db=media_db, security_config=security_config)
            for u in users
        ]
        return jsonify(page_payload(results, total=user_db.count_users(), take=take, skip=skip))

    @app.route("/api/v1/user", methods=["POST"])
    def api_create_user():
        _, gate = _require_user_manager()
        if gate is not None:
            return gate

        data, body_gate = parse_json_body()
        if body_gate is not None:
            return body_gate

        auth_mode = resolve_auth_mode()
        if auth_mode == AUTH_MODE_PROXY:
            return jsonify({
                "error": "Local user creation is disabled in this authentication mode",
                "message": "Users are provisioned by your authenticating proxy.",
            }), 400

        username = str(data.get("username") or "").strip()
        password = data.get("password") or ""
        email = str(data.get("email") or "").strip() or None
        display_name = str(data.get("displayName") or "").strip() or None

        if not username:
            return error_response("Username is required", 400)
        if len(password) < MIN_PASSWORD_LENGTH:
            return error_response(f"Password must be at least {MIN_PASSWORD_LENGTH} characters", 400)

        if "permissions" in data:
            try:
                permissions = normalize_permissions(data["permissions"])
            except ValueError as e:
                return error_response(str(e), 400)
        else:
            permissions = default_user_permissions()

        # First user is always admin
        if user_db.count_users() == 0:
            permissions |= int(Permission.ADMIN)

        if user_db.get_user(username=username):
            return error_response("Username already exists", 409, code="duplicate_user")

        try:
            user = user_db.create_user(
                username=username,
                email=email,
                display_name=display_name,
                password_hash=generate_password_hash(password),
                auth_source=AUTH_SOURCE_BUILTIN,
                permissions=permissions,
            )
        except ValueError:
            return error_response("Username already exists", 409, code="duplicate_user")

        logger.info(
            "Mediaseer user created "
            f"(source=manual_admin_create, created_by={session.get('user_id', 'unknown')}, "
            f"username={username}, permissions={permissions})"
        )
        return jsonify(serialize_user(user, resolve_auth_mode(), media_db=media_db)), 201

    @app.route("/api/v1/user/<int:user_id>", methods=["GET"])
    def api_get_user(user_id: int):
        _, gate = _require_user_manager()
        if gate is not None:
            return gate

        user = user_db.get_user(user_id=user_id)
        if not user:
            return error_response("User not found", 404)
        result = serialize_user(user, resolve_auth_mode(), media_db=media_db)
        result["settings"] = user_db.get_user_settings(user_id)
        return jsonify(result)

    @app.route("/api/v1/user/<int:user_id>", methods=["PUT"])
    def api_update_user(user_id: int):
        _, gate = _require_user_manager()
        if gate is not None:
            return gate

        user = user_db.get_user(user_id=user_id)
        if not user:
            return error_response("User not found", 404)

        data, body_gate = parse_json_body()
        if body_gate is not None:
            return body_gate

        security_config = load_config_file("security")
        capabilities = get_user_edit_capabilities(user, security_config=security_config)
        auth_source = capabilities["authSource"]

        password = data.get("password") or ""
        if password:
            if not capabilities["canSetPassword"]:
                return jsonify({
                    "error": f"Cannot set password for {auth_source.upper()} users",
                    "message": "Password authentication is only available for local users.",
                }), 400
            if len(password) < MIN_PASSWORD_LENGTH:
                return error_response(f"Password must be at least {MIN_PASSWORD_LENGTH} characters", 400)

        user_fields: dict[str, Any] = {}
        if "email" in data:
            user_fields["email"] = str(data.get("email") or "").strip() or None
        if "displayName" in data:
            user_fields["display_name"] = str(data.get("displayName") or "").strip() or None
        if "permissions" in data:
            try:
                user_fields["permissions"] = normalize_permissions(data["permissions"])
            except ValueError as e:
                return error_response(str(e), 400)

        # Skip no-op writes.
        for field in list(user_fields):
            if user_fields[field] == user.get(field):
                user_fields.pop(field)

        if "email" in user_fields and not capabilities["canEditEmail"]:
            return jsonify({
                "error": "Cannot change email for OIDC users",
                "message": "Email is managed by your identity provider.",
            }), 400
        if "display_name" in user_fields and not capabilities["canEditDisplayName"]:
            return jsonify({
                "error": "Cannot change display name for OIDC users",
                "message": "Display name is managed by your identity provider.",
            }), 400
        if "permissions" in user_fields and not capabilities["canEditAdmin"]:
            was_admin = has_permission(Permission.ADMIN, user.get("permissions"))
            will_be_admin = bool(user_fields["permissions"] & Permission.ADMIN)
            if was_admin != will_be_admin:
                message = (
                    _oidc_role_management_message(security_config)
                    if auth_source == AUTH_SOURCE_OIDC
                    else "Admin rights are managed by the authenticating proxy."
                )
                return jsonify({
                    "error": f"Cannot change admin rights for {auth_source.upper()} users",
                    "message": message,
                }), 400

        settings_payload = data.get("settings")
        validated_settings: dict[str, Any] | None = None
        if settings_payload is not None:
            if not isinstance(settings_payload, dict):
                return error_response("Settings must be an object", 400)
            validated_settings, errors = validate_user_settings(settings_payload)
            if errors:
                return jsonify({"error": "Invalid settings payload", "details": errors}), 400

        if password:
            user_db.update_user(user_id, password_hash=generate_password_hash(password))
        if user_fields:
            user_db.update_user(user_id, **user_fields)
        if validated_settings is not None:
            user_db.set_user_settings(user_id, validated_settings)

        updated = user_db.get_user(user_id=user_id)
        result = serialize_user(updated, resolve_auth_mode(), media_db=media_db, security_config=security_config)
        result["settings"] = user_db.get_user_settings(user_id)
        logger.info(f"Admin updated user {user_id}")
        return jsonify(result)

    @app.route("/api/v1/user/<int:user_id>", methods=["DELETE"])
    def api_delete_user(user_id: int):
        _, gate = _require_user_manager()
        if gate is not None:
            return gate

        if session.get("db_user_id") == user_id:
            return error_response("Cannot delete your own account", 400)

        user = user_db.get_user(user_id=user_id)
        if not user:
            return error_response("User not found", 404)

        # Deleting the last local admin is allowed; auth mode resolution
        # falls back to "none" when no password admin remains.
        affected_media = media_db.requested_media_ids(user_id)
        user_db.delete_user(user_id)
        for media_id in affected_media:
            refresh_media_status(media_db, media_id)
        logger.info(f"Admin deleted user {user_id}: {user['username']}")
        return jsonify({"success": True})

    @app.route("/api/v1/user/import-from-jellyfin", methods=["POST"])
    def api_import_jellyfin_users():
        _, gate = _require_user_manager()
        if gate is not None:
            return gate

        data, body_gate = parse_json_body()
        if body_gate is not None:
            return body_gate

        requested_ids = data.get("jellyfinUserIds")
        if requested_ids is not None and not isinstance(requested_ids, list):
            return error_response("jellyfinUserIds must be a list", 400)

        config = load_config_file("jellyfin")
        url = config.get("JELLYFIN_URL") or ""
        if not url:
            return error_response("Jellyfin is not configured", 400, code="jellyfin_not_configured")

        try:
            jellyfin_users = JellyfinClient(url, config.get("JELLYFIN_API_KEY") or None).get_users()
        except JellyfinError as e:
            logger.error(f"Failed to list Jellyfin users for import: {e}")
            return error_response(str(e), 502)

        wanted = {str(i) for i in requested_ids} if requested_ids is not None else None
        auth_mode = resolve_auth_mode()
        created: list[dict[str, Any]] = []
        for entry in jellyfin_users:
            if wanted is not None and entry["id"] not in wanted:
                continue
            if user_db.get_user(jellyfin_user_id=entry["id"]) is not None:
                continue
            user, action = upsert_external_user(
                user_db,
                auth_source=AUTH_SOURCE_JELLYFIN,
                username=entry["username"],
                display_name=entry.get("title"),
                jellyfin_user_id=entry["id"],
                avatar=entry.get("thumb"),
                context="jellyfin_import",
            )
            if user is not None and action == "created":
                created.append(serialize_user(user, auth_mode))

        logger.info(f"Imported {len(created)} Jellyfin user(s)")
        return jsonify(created), 201

    @app.route("/api/v1/user/<int:user_id>/requests", methods=["GET"])
    def api_user_requests(user_id: int):
        actor, gate = load_session_user(user_db, resolve_auth_mode)
        if gate is not None:
            return gate
        if actor["id"] != user_id and not has_permission(Permission.MANAGE_USERS, actor.get("permissions")):
            return error_response("You do not have permission to do this", 403, code="forbidden")
        if user_db.get_user(user_id=user_id) is None:
            return error_response("User not found", 404)

        take, skip = parse_paging()
        rows = media_db.list_requests(requested_by=user_id, limit=take, offset=skip)
        total = media_db.count_requests(requested_by=user_id)
        users = UserCache(user_db)
        results = [serialize_request(row, users=users, media_db=media_db) for row in rows]
        return jsonify(page_payload(results, total=total, take=take, skip=skip))

"""Self-service user account routes."""

from __future__ import annotations

from typing import Any, Callable

from flask import Flask, jsonify
from werkzeug.security import generate_password_hash

from mediaseer.core.admin_routes import (
    MIN_PASSWORD_LENGTH,
    get_user_edit_capabilities,
    serialize_user,
    validate_user_settings,
)
from mediaseer.core.logger import setup_logger
from mediaseer.core.media_db import MediaDB
from mediaseer.core.notifications import normalize_routes
from mediaseer.core.route_auth import error_response, load_session_user, parse_json_body
from mediaseer.core.settings_registry import load_config_file
from mediaseer.core.user_db import UserDB

logger = setup_logger(__name__)

_NOTIFICATION_ROUTES_KEY = "USER_NOTIFICATION_ROUTES"


def _notification_preferences(user_db: UserDB, user_id: int) -> dict[str, Any]:
    overrides = user_db.get_user_settings(user_id)
    defaults = normalize_routes(load_config_file("notifications").get(_NOTIFICATION_ROUTES_KEY, []))
    custom = overrides.get(_NOTIFICATION_ROUTES_KEY)
    return {
        "routes": normalize_routes(custom) if custom is not None else defaults,
        "defaultRoutes": defaults,
        "usingDefaults": custom is None,
    }


def register_self_user_routes(
    app: Flask,
    user_db: UserDB,
    media_db: MediaDB,
    *,
    resolve_auth_mode: Callable[[], str],
) -> None:
    """Register /api/v1/auth/me endpoints."""

    @app.route("/api/v1/auth/me", methods=["GET"])
    def auth_me():
        user, gate = load_session_user(user_db, resolve_auth_mode)
        if gate is not None:
            return gate
        result = serialize_user(user, resolve_auth_mode(), media_db=media_db)
        result["editCapabilities"]["canEditAdmin"] = False
        result["settings"] = user_db.get_user_settings(user["id"])
        return jsonify(result)

    @app.route("/api/v1/auth/me", methods=["PUT"])
    def auth_me_update():
        user, gate = load_session_user(user_db, resolve_auth_mode)
        if gate is not None:
            return gate

        data, body_gate = parse_json_body()
        if body_gate is not None:
            return body_gate

        capabilities = get_user_edit_capabilities(user)
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

        if password:
            user_db.update_user(user["id"], password_hash=generate_password_hash(password))
        if user_fields:
            user_db.update_user(user["id"], **user_fields)

        updated = user_db.get_user(user_id=user["id"])
        result = serialize_user(updated, resolve_auth_mode(), media_db=media_db)
        result["editCapabilities"]["canEditAdmin"] = False
        logger.info(f"User {user['id']} updated their own account")
        return jsonify(result)

    @app.route("/api/v1/auth/me/settings/notifications", methods=["GET"])
    def auth_me_notifications():
        user, gate = load_session_user(user_db, resolve_auth_mode)
        if gate is not None:
            return gate
        return jsonify(_notification_preferences(user_db, user["id"]))

    @app.route("/api/v1/auth/me/settings/notifications", methods=["PUT"])
    def auth_me_update_notifications():
        user, gate = load_session_user(user_db, resolve_auth_mode)
        if gate is not None:
            return gate

        data, body_gate = parse_json_body()
        if body_gate is not None:
            return body_gate
        if "routes" not in data:
            return error_response("routes is required", 400)

        validated, errors = validate_user_settings({_NOTIFICATION_ROUTES_KEY: data.get("routes")})
        if errors:
            return jsonify({"error": "Invalid settings payload", "details": errors}), 400

        user_db.set_user_settings(user["id"], validated)
        logger.info(f"User {user['id']} updated notification routes")
        return jsonify(_notification_preferences(user_db, user["id"]))

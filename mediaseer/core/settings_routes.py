"""Settings API routes.

Generic tab endpoints mirror the settings registry; Radarr and Sonarr get
dedicated server-list endpoints because their tab holds a list of objects.
"""

from __future__ import annotations

from typing import Any, Callable

import requests
from flask import Flask, jsonify

from mediaseer.acquisition.radarr import RadarrClient
from mediaseer.acquisition.sonarr import SonarrClient
from mediaseer.config.settings import get_servarr_servers, normalize_servers, save_servarr_servers
from mediaseer.core.logger import setup_logger
from mediaseer.core.models import ServarrServer
from mediaseer.core.notifications import normalize_routes, send_test_notification
from mediaseer.core.permissions import Permission
from mediaseer.core.route_auth import error_response, parse_json_body, permission_required
from mediaseer.core.settings_registry import (
    execute_action,
    get_settings_tab,
    load_config_file,
    serialize_all_settings,
    serialize_tab,
    update_settings,
)
from mediaseer.core.user_db import UserDB
from mediaseer.media_server.jellyfin import JellyfinClient, JellyfinError

logger = setup_logger(__name__)

_CLIENTS = {"radarr": RadarrClient, "sonarr": SonarrClient}


def _server_client(kind: str, server: ServarrServer):
    return _CLIENTS[kind](server.build_url(), server.api_key)


def _find_server(servers: list[ServarrServer], server_id: int) -> ServarrServer | None:
    for server in servers:
        if server.id == server_id:
            return server
    return None


def register_settings_routes(
    app: Flask,
    user_db: UserDB,
    *,
    resolve_auth_mode: Callable[[], str],
) -> None:
    """Register /api/v1/settings routes."""

    require_settings = permission_required(
        user_db,
        resolve_auth_mode,
        Permission.MANAGE_SETTINGS,
        allow_no_auth=True,
    )

    @app.route("/api/v1/settings/public", methods=["GET"])
    def api_public_settings():
        main = load_config_file("main")
        security = load_config_file("security")
        jellyfin = load_config_file("jellyfin")
        return jsonify({
            "appTitle": main.get("APP_TITLE") or "Mediaseer",
            "applicationUrl": main.get("APPLICATION_URL") or "",
            "authMethod": resolve_auth_mode(),
            "localLogin": bool(main.get("LOCAL_LOGIN", True)),
            "newJellyfinSignin": bool(main.get("NEW_JELLYFIN_SIGNIN", True)),
            "jellyfinConfigured": bool(jellyfin.get("JELLYFIN_URL")),
            "jellyfinExternalUrl": jellyfin.get("JELLYFIN_EXTERNAL_URL") or "",
            "oidcButtonLabel": security.get("OIDC_BUTTON_LABEL") or "",
            "hideAvailable": bool(main.get("HIDE_AVAILABLE", False)),
            "requestsAllowNotes": bool(main.get("REQUESTS_ALLOW_NOTES", True)),
            "tmdbConfigured": bool(main.get("TMDB_API_KEY")),
        })

    @app.route("/api/v1/settings", methods=["GET"])
    @require_settings
    def api_list_settings():
        return jsonify(serialize_all_settings())

    @app.route("/api/v1/settings/<string:tab_name>", methods=["GET"])
    @require_settings
    def api_get_settings_tab(tab_name: str):
        tab = get_settings_tab(tab_name)
        if tab is None:
            return error_response(f"Unknown settings tab: {tab_name}", 404)
        return jsonify(serialize_tab(tab))

    @app.route("/api/v1/settings/<string:tab_name>", methods=["PUT"])
    @require_settings
    def api_update_settings_tab(tab_name: str):
        if get_settings_tab(tab_name) is None:
            return error_response(f"Unknown settings tab: {tab_name}", 404)
        data, gate = parse_json_body()
        if gate is not None:
            return gate
        result = update_settings(tab_name, data)
        if not result.get("success"):
            return jsonify(result), 400
        return jsonify(result)

    @app.route("/api/v1/settings/<string:tab_name>/action/<string:action_key>", methods=["POST"])
    @require_settings
    def api_settings_action(tab_name: str, action_key: str):
        data, gate = parse_json_body()
        if gate is not None:
            return gate
        try:
            result = execute_action(tab_name, action_key, data)
        except Exception as e:
            logger.error_trace(f"Settings action {tab_name}/{action_key} failed: {e}")
            return jsonify({"success": False, "message": str(e)}), 500
        return jsonify(result)

    # -------------------------------------------------------------------------
    # Radarr / Sonarr servers
    # -------------------------------------------------------------------------

    def _register_servarr_routes(kind: str) -> None:
        base = f"/api/v1/settings/{kind}"

        def list_servers():
            return jsonify([s.to_dict(include_secret=False) for s in get_servarr_servers(kind)])

        def add_server():
            data, gate = parse_json_body()
            if gate is not None:
                return gate
            current = get_servarr_servers(kind)
            entry = {k: v for k, v in data.items() if k != "id"}
            try:
                servers = normalize_servers([s.to_dict() for s in current] + [entry], kind)
            except ValueError as e:
                return error_response(str(e), 400)
            save_servarr_servers(kind, servers)
            created = servers[-1]
            logger.info(f"Added {kind} server '{created.name}' (id={created.id})")
            return jsonify(created.to_dict(include_secret=False)), 201

        def update_server(server_id: int):
            data, gate = parse_json_body()
            if gate is not None:
                return gate
            current = get_servarr_servers(kind)
            existing = _find_server(current, server_id)
            if existing is None:
                return error_response(f"{kind.capitalize()} server not found", 404)

            merged = existing.to_dict()
            merged.update({k: v for k, v in data.items() if k != "id"})
            if not str(data.get("api_key") or "").strip():
                merged["api_key"] = existing.api_key
            if merged.get("is_default"):
                for server in current:
                    server.is_default = False

            raw = [merged if s.id == server_id else s.to_dict() for s in current]
            try:
                servers = normalize_servers(raw, kind)
            except ValueError as e:
                return error_response(str(e), 400)
            save_servarr_servers(kind, servers)
            return jsonify(_find_server(servers, server_id).to_dict(include_secret=False))

        def delete_server(server_id: int):
            current = get_servarr_servers(kind)
            if _find_server(current, server_id) is None:
                return error_response(f"{kind.capitalize()} server not found", 404)
            save_servarr_servers(kind, [s for s in current if s.id != server_id])
            logger.info(f"Deleted {kind} server id={server_id}")
            return "", 204

        def test_server():
            data, gate = parse_json_body()
            if gate is not None:
                return gate
            payload = dict(data)
            payload.setdefault("id", 0)
            if not str(payload.get("api_key") or "").strip() and str(data.get("id", "")).isdigit():
                saved = _find_server(get_servarr_servers(kind), int(data["id"]))
                if saved is not None:
                    payload["api_key"] = saved.api_key
            try:
                server = normalize_servers([payload], kind)[0]
            except ValueError as e:
                return error_response(str(e), 400)

            client = _server_client(kind, server)
            success, message = client.test_connection()
            result: dict[str, Any] = {"success": success, "message": message}
            if success:
                try:
                    result["profiles"] = client.get_profiles()
                    result["rootFolders"] = client.get_root_folders()
                except requests.exceptions.RequestException as e:
                    logger.warning(f"{kind} test: failed to load profiles/root folders: {e}")
            return jsonify(result)

        def server_profiles(server_id: int):
            server = _find_server(get_servarr_servers(kind), server_id)
            if server is None:
                return error_response(f"{kind.capitalize()} server not found", 404)
            try:
                return jsonify(_server_client(kind, server).get_profiles())
            except requests.exceptions.RequestException as e:
                return error_response(f"Failed to load profiles: {e}", 502)

        def server_root_folders(server_id: int):
            server = _find_server(get_servarr_servers(kind), server_id)
            if server is None:
                return error_response(f"{kind.capitalize()} server not found", 404)
            try:
                return jsonify(_server_client(kind, server).get_root_folders())
            except requests.exceptions.RequestException as e:
                return error_response(f"Failed to load root folders: {e}", 502)

        rules = [
            ("", ["GET"], list_servers),
            ("", ["POST"], add_server),
            ("/<int:server_id>", ["PUT"], update_server),
            ("/<int:server_id>", ["DELETE"], delete_server),
            ("/test", ["POST"], test_server),
            ("/<int:server_id>/profiles", ["GET"], server_profiles),
            ("/<int:server_id>/rootfolders", ["GET"], server_root_folders),
        ]
        for suffix, methods, view in rules:
            app.add_url_rule(
                base + suffix,
                endpoint=f"api_{kind}_{view.__name__}",
                view_func=require_settings(view),
                methods=methods,
            )

    for kind in _CLIENTS:
        _register_servarr_routes(kind)

    # -------------------------------------------------------------------------
    # Integrations
    # -------------------------------------------------------------------------

    @app.route("/api/v1/settings/jellyfin/users", methods=["GET"])
    @require_settings
    def api_jellyfin_users():
        config = load_config_file("jellyfin")
        url = config.get("JELLYFIN_URL") or ""
        if not url:
            return error_response("Jellyfin is not configured", 400, code="jellyfin_not_configured")
        try:
            users = JellyfinClient(url, config.get("JELLYFIN_API_KEY") or None).get_users()
        except JellyfinError as e:
            status = e.status_code or 502
            return error_response(str(e), status if status >= 500 else 502)
        for entry in users:
            entry["imported"] = user_db.get_user(jellyfin_user_id=entry["id"]) is not None
        return jsonify(users)

    @app.route("/api/v1/settings/notifications/test", methods=["POST"])
    @require_settings
    def api_test_notifications():
        data, gate = parse_json_body()
        if gate is not None:
            return gate
        routes = data.get("routes")
        if routes is None:
            routes = load_config_file("notifications").get("ADMIN_NOTIFICATION_ROUTES", [])
        urls = [row["url"] for row in normalize_routes(routes)]
        return jsonify(send_test_notification(urls))

    @app.route("/api/v1/settings/security/test-oidc", methods=["POST"])
    @require_settings
    def api_test_oidc():
        data, gate = parse_json_body()
        if gate is not None:
            return gate
        return jsonify(execute_action("security", "test_oidc", data))

"""API tests for settings tabs, Servarr server management and integration checks."""

from __future__ import annotations

import os
import tempfile
from unittest.mock import MagicMock, patch

import pytest
import requests
from flask import Flask

from mediaseer.config.settings import get_servarr_servers
from mediaseer.core.permissions import DEFAULT_USER_PERMISSIONS, Permission
from mediaseer.core.settings_registry import load_config_file, update_settings
from mediaseer.core.settings_routes import register_settings_routes
from mediaseer.core.user_db import UserDB
from mediaseer.media_server.jellyfin import JellyfinError


@pytest.fixture
def mode():
    return {"value": "builtin"}


@pytest.fixture
def env(mode):
    with tempfile.TemporaryDirectory() as tmpdir:
        user_db = UserDB(os.path.join(tmpdir, "mediaseer.db"))
        user_db.initialize()

        app = Flask(__name__)
        app.config["SECRET_KEY"] = "test-secret"
        app.config["TESTING"] = True
        register_settings_routes(app, user_db, resolve_auth_mode=lambda: mode["value"])
        yield {"app": app, "client": app.test_client(), "user_db": user_db}


def _login(client, user):
    with client.session_transaction() as sess:
        sess["user_id"] = user["username"]
        sess["db_user_id"] = user["id"]
        sess["is_admin"] = bool(user["permissions"] & Permission.ADMIN)


@pytest.fixture
def admin(env):
    user = env["user_db"].create_user(username="admin", permissions=int(Permission.MANAGE_SETTINGS))
    _login(env["client"], user)
    return user


def _radarr(**overrides):
    entry = {"name": "Radarr 4K", "hostname": "radarr", "port": 7878, "api_key": "secret"}
    entry.update(overrides)
    return entry


class TestPublicSettings:
    def test_public_settings_need_no_session(self, env, mode):
        mode["value"] = "oidc"
        update_settings("main", {"APP_TITLE": "Family Requests"})
        update_settings("jellyfin", {"JELLYFIN_URL": "http://jellyfin.local:8096"})

        resp = env["client"].get("/api/v1/settings/public")

        assert resp.status_code == 200
        assert resp.json["appTitle"] == "Family Requests"
        assert resp.json["authMethod"] == "oidc"
        assert resp.json["jellyfinConfigured"] is True
        assert resp.json["localLogin"] is True
        assert "TMDB_API_KEY" not in resp.json


class TestTabs:
    def test_requires_manage_settings(self, env):
        user = env["user_db"].create_user(username="alice", permissions=DEFAULT_USER_PERMISSIONS)
        _login(env["client"], user)
        assert env["client"].get("/api/v1/settings").status_code == 403

    def test_open_in_no_auth_mode(self, env, mode):
        mode["value"] = "none"
        resp = env["client"].get("/api/v1/settings")
        assert resp.status_code == 200
        assert "main" in [tab["name"] for tab in resp.json]

    def test_get_and_update_tab(self, env, admin):
        resp = env["client"].put("/api/v1/settings/main", json={"APP_TITLE": "Requests"})
        assert resp.status_code == 200
        assert resp.json["updated"] == ["APP_TITLE"]
        assert load_config_file("main")["APP_TITLE"] == "Requests"

        resp = env["client"].get("/api/v1/settings/main")
        assert resp.status_code == 200
        assert resp.json["name"] == "main"

    def test_update_rejects_unknown_keys(self, env, admin):
        resp = env["client"].put("/api/v1/settings/main", json={"NOT_A_SETTING": 1})
        assert resp.status_code == 400
        assert resp.json["success"] is False
        assert "Unknown setting: NOT_A_SETTING" in resp.json["message"]

    def test_unknown_tab(self, env, admin):
        assert env["client"].get("/api/v1/settings/bogus").status_code == 404
        assert env["client"].put("/api/v1/settings/bogus", json={}).status_code == 404


class TestServarrServers:
    def test_add_list_and_hide_api_key(self, env, admin):
        resp = env["client"].post("/api/v1/settings/radarr", json=_radarr(is_default=True))
        assert resp.status_code == 201
        assert resp.json["id"] == 0
        assert resp.json["api_key"] == ""
        assert resp.json["has_api_key"] is True

        second = env["client"].post("/api/v1/settings/radarr", json=_radarr(name="Radarr HD", is_default=True))
        assert second.json["id"] == 1
        assert second.json["is_default"] is False

        listed = env["client"].get("/api/v1/settings/radarr").json
        assert [s["name"] for s in listed] == ["Radarr 4K", "Radarr HD"]
        assert all(s["api_key"] == "" for s in listed)
        assert get_servarr_servers("radarr")[0].api_key == "secret"

    def test_add_validates_entry(self, env, admin):
        resp = env["client"].post("/api/v1/settings/sonarr", json=_radarr(hostname="http://sonarr"))
        assert resp.status_code == 400
        assert "hostname must not include a scheme" in resp.json["error"]

    def test_update_keeps_secret_and_moves_default(self, env, admin):
        env["client"].post("/api/v1/settings/radarr", json=_radarr(is_default=True))
        env["client"].post("/api/v1/settings/radarr", json=_radarr(name="Radarr HD"))

        resp = env["client"].put("/api/v1/settings/radarr/1", json={"api_key": "", "is_default": True, "port": 7879})

        assert resp.status_code == 200
        assert resp.json["port"] == 7879
        servers = get_servarr_servers("radarr")
        assert [s.is_default for s in servers] == [False, True]
        assert servers[1].api_key == "secret"
        assert env["client"].put("/api/v1/settings/radarr/9", json={}).status_code == 404

    def test_delete(self, env, admin):
        env["client"].post("/api/v1/settings/sonarr", json=_radarr(name="Sonarr", port=8989))
        assert env["client"].delete("/api/v1/settings/sonarr/0").status_code == 204
        assert get_servarr_servers("sonarr") == []
        assert env["client"].delete("/api/v1/settings/sonarr/0").status_code == 404

    def test_connection_test_loads_profiles_with_saved_key(self, env, admin):
        env["client"].post("/api/v1/settings/radarr", json=_radarr())
        client = MagicMock()
        client.test_connection.return_value = (True, "Connected to Radarr 5.2.6")
        client.get_profiles.return_value = [{"id": 1, "name": "HD-1080p"}]
        client.get_root_folders.return_value = [{"id": 1, "path": "/movies"}]

        with patch.dict("mediaseer.core.settings_routes._CLIENTS", {"radarr": MagicMock(return_value=client)}) as clients:
            resp = env["client"].post("/api/v1/settings/radarr/test", json=_radarr(id=0, api_key=""))
            clients["radarr"].assert_called_once_with("http://radarr:7878", "secret")

        assert resp.json == {
            "success": True,
            "message": "Connected to Radarr 5.2.6",
            "profiles": [{"id": 1, "name": "HD-1080p"}],
            "rootFolders": [{"id": 1, "path": "/movies"}],
        }

    def test_profiles_transport_error(self, env, admin):
        env["client"].post("/api/v1/settings/radarr", json=_radarr())
        client = MagicMock()
        client.get_profiles.side_effect = requests.exceptions.ConnectionError("refused")

        with patch.dict("mediaseer.core.settings_routes._CLIENTS", {"radarr": MagicMock(return_value=client)}):
            resp = env["client"].get("/api/v1/settings/radarr/0/profiles")
            missing = env["client"].get("/api/v1/settings/radarr/5/rootfolders")

        assert resp.status_code == 502
        assert "Failed to load profiles" in resp.json["error"]
        assert missing.status_code == 404


class TestIntegrations:
    def test_jellyfin_users_flag_imported(self, env, admin):
        update_settings("jellyfin", {"JELLYFIN_URL": "http://jellyfin.local:8096", "JELLYFIN_API_KEY": "token"})
        env["user_db"].create_user(username="alice", jellyfin_user_id="jf-1", auth_source="jellyfin")

        with patch("mediaseer.core.settings_routes.JellyfinClient") as client_cls:
            client_cls.return_value.get_users.return_value = [
                {"id": "jf-1", "username": "alice"},
                {"id": "jf-2", "username": "bob"},
            ]
            resp = env["client"].get("/api/v1/settings/jellyfin/users")

        assert [(u["id"], u["imported"]) for u in resp.json] == [("jf-1", True), ("jf-2", False)]

    def test_jellyfin_users_errors(self, env, admin):
        resp = env["client"].get("/api/v1/settings/jellyfin/users")
        assert resp.status_code == 400
        assert resp.json["code"] == "jellyfin_not_configured"

        update_settings("jellyfin", {"JELLYFIN_URL": "http://jellyfin.local:8096"})
        with patch("mediaseer.core.settings_routes.JellyfinClient") as client_cls:
            client_cls.return_value.get_users.side_effect = JellyfinError("Jellyfin rejected the API key", status_code=401)
            resp = env["client"].get("/api/v1/settings/jellyfin/users")
        assert resp.status_code == 502

    def test_notification_test_uses_submitted_routes(self, env, admin):
        with patch("mediaseer.core.settings_routes.send_test_notification") as send:
            send.return_value = {"success": True, "message": "Notification sent to 1 URL(s)"}
            resp = env["client"].post(
                "/api/v1/settings/notifications/test",
                json={"routes": [{"event": "all", "url": "json://localhost/hook"}, {"event": "all", "url": ""}]},
            )

        send.assert_called_once_with(["json://localhost/hook"])
        assert resp.json["success"] is True

    def test_action_failure_is_reported(self, env, admin):
        with patch("mediaseer.core.settings_routes.execute_action", side_effect=RuntimeError("boom")):
            resp = env["client"].post("/api/v1/settings/main/action/anything", json={})
        assert resp.status_code == 500
        assert resp.json == {"success": False, "message": "boom"}

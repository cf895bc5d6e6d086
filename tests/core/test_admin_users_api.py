"""API tests for user management routes."""

from __future__ import annotations

import os
import tempfile
from unittest.mock import patch

import pytest
from flask import Flask

from mediaseer.core.admin_routes import register_admin_routes, validate_user_settings
from mediaseer.core.media_db import MediaDB
from mediaseer.core.permissions import DEFAULT_USER_PERMISSIONS, Permission
from mediaseer.core.settings_registry import update_settings
from mediaseer.core.user_db import UserDB


@pytest.fixture
def mode():
    return {"value": "builtin"}


@pytest.fixture
def env(mode):
    with tempfile.TemporaryDirectory() as tmpdir:
        path = os.path.join(tmpdir, "mediaseer.db")
        user_db = UserDB(path)
        user_db.initialize()
        media_db = MediaDB(path)
        media_db.initialize()

        app = Flask(__name__)
        app.config["SECRET_KEY"] = "test-secret"
        app.config["TESTING"] = True
        register_admin_routes(app, user_db, media_db, resolve_auth_mode=lambda: mode["value"])
        yield {"client": app.test_client(), "user_db": user_db, "media_db": media_db}


def _login(client, user):
    with client.session_transaction() as sess:
        sess["user_id"] = user["username"]
        sess["db_user_id"] = user["id"]
        sess["is_admin"] = bool(user["permissions"] & Permission.ADMIN)


@pytest.fixture
def admin(env):
    return env["user_db"].create_user(username="admin", password_hash="hash", permissions=int(Permission.ADMIN))


@pytest.fixture
def alice(env):
    return env["user_db"].create_user(username="alice", permissions=DEFAULT_USER_PERMISSIONS)


class TestBootstrap:
    def test_first_user_created_without_auth_is_admin(self, env, mode):
        mode["value"] = "none"
        resp = env["client"].post("/api/v1/user", json={"username": "owner", "password": "secret"})

        assert resp.status_code == 201
        assert resp.json["permissions"] & Permission.ADMIN
        assert resp.json["hasPassword"] is True
        assert resp.json["authSource"] == "builtin"
        assert "password_hash" not in resp.json
        assert env["user_db"].has_local_password_admin() is True

        second = env["client"].post("/api/v1/user", json={"username": "guest", "password": "secret"})
        assert second.json["permissions"] == DEFAULT_USER_PERMISSIONS

    def test_user_list_open_without_auth(self, env, mode, alice):
        mode["value"] = "none"
        resp = env["client"].get("/api/v1/user")
        assert resp.status_code == 200
        assert [u["username"] for u in resp.json["results"]] == ["alice"]


class TestAccessControl:
    def test_requires_manage_users(self, env, alice):
        _login(env["client"], alice)
        resp = env["client"].get("/api/v1/user")
        assert resp.status_code == 403
        assert resp.json["code"] == "forbidden"

    def test_requires_session(self, env):
        assert env["client"].get("/api/v1/user").status_code == 401

    def test_user_can_read_own_requests_only(self, env, alice, admin):
        media = env["media_db"].get_or_create_media(tmdb_id=550, media_type="movie")
        env["media_db"].create_request(media_id=media["id"], requested_by=alice["id"], media_type="movie")

        _login(env["client"], alice)
        resp = env["client"].get(f"/api/v1/user/{alice['id']}/requests")
        assert resp.status_code == 200
        assert resp.json["pageInfo"]["results"] == 1
        assert env["client"].get(f"/api/v1/user/{admin['id']}/requests").status_code == 403

        _login(env["client"], admin)
        assert env["client"].get(f"/api/v1/user/{alice['id']}/requests").status_code == 200
        assert env["client"].get("/api/v1/user/999/requests").status_code == 404


class TestCreate:
    def test_validation(self, env, admin):
        _login(env["client"], admin)
        assert env["client"].post("/api/v1/user", json={"password": "secret"}).status_code == 400
        resp = env["client"].post("/api/v1/user", json={"username": "bob", "password": "abc"})
        assert resp.status_code == 400
        assert "at least 4" in resp.json["error"]
        resp = env["client"].post("/api/v1/user", json={"username": "bob", "password": "secret", "permissions": "x"})
        assert resp.status_code == 400

    def test_duplicate_username(self, env, admin, alice):
        _login(env["client"], admin)
        resp = env["client"].post("/api/v1/user", json={"username": "alice", "password": "secret"})
        assert resp.status_code == 409
        assert resp.json["code"] == "duplicate_user"

    def test_explicit_permissions(self, env, admin):
        _login(env["client"], admin)
        perms = int(Permission.REQUEST | Permission.AUTO_APPROVE)
        resp = env["client"].post(
            "/api/v1/user",
            json={"username": "trusted", "password": "secret", "permissions": perms, "email": "t@example.com"},
        )
        assert resp.status_code == 201
        assert resp.json["permissions"] == perms
        assert resp.json["permissionNames"] == ["REQUEST", "AUTO_APPROVE"]
        assert resp.json["email"] == "t@example.com"

    def test_disabled_in_proxy_mode(self, env, mode, admin):
        mode["value"] = "proxy"
        _login(env["client"], admin)
        resp = env["client"].post("/api/v1/user", json={"username": "bob", "password": "secret"})
        assert resp.status_code == 400
        assert "disabled" in resp.json["error"]


class TestUpdate:
    def test_update_fields_and_settings(self, env, admin, alice):
        _login(env["client"], admin)
        resp = env["client"].put(
            f"/api/v1/user/{alice['id']}",
            json={
                "displayName": "Alice A.",
                "permissions": int(Permission.REQUEST_MOVIE),
                "password": "newpass",
                "settings": {"USER_NOTIFICATION_ROUTES": [{"event": "all", "url": "ntfys://ntfy.sh/alice"}]},
            },
        )
        assert resp.status_code == 200
        assert resp.json["displayName"] == "Alice A."
        assert resp.json["permissions"] == int(Permission.REQUEST_MOVIE)
        assert resp.json["hasPassword"] is True
        assert resp.json["settings"]["USER_NOTIFICATION_ROUTES"] == [{"event": "all", "url": "ntfys://ntfy.sh/alice"}]

    def test_rejects_unknown_settings(self, env, admin, alice):
        _login(env["client"], admin)
        resp = env["client"].put(f"/api/v1/user/{alice['id']}", json={"settings": {"APP_TITLE": "x"}})
        assert resp.status_code == 400
        assert resp.json["details"] == ["Setting not user-overridable: APP_TITLE"]

    def test_oidc_user_fields_are_locked(self, env, admin):
        oidc_user = env["user_db"].create_user(
            username="sso",
            auth_source="oidc",
            oidc_subject="sub-1",
            email="sso@example.com",
        )
        _login(env["client"], admin)

        resp = env["client"].put(f"/api/v1/user/{oidc_user['id']}", json={"password": "secret"})
        assert resp.status_code == 400
        assert resp.json["error"] == "Cannot set password for OIDC users"

        resp = env["client"].put(f"/api/v1/user/{oidc_user['id']}", json={"email": "new@example.com"})
        assert resp.status_code == 400

        resp = env["client"].put(f"/api/v1/user/{oidc_user['id']}", json={"permissions": int(Permission.ADMIN)})
        assert resp.status_code == 400
        assert resp.json["error"] == "Cannot change admin rights for OIDC users"

        # Unchanged values are not treated as edits.
        resp = env["client"].put(f"/api/v1/user/{oidc_user['id']}", json={"email": "sso@example.com"})
        assert resp.status_code == 200

    def test_unknown_user(self, env, admin):
        _login(env["client"], admin)
        assert env["client"].put("/api/v1/user/999", json={}).status_code == 404
        assert env["client"].get("/api/v1/user/999").status_code == 404


class TestDelete:
    def test_cannot_delete_self(self, env, admin):
        _login(env["client"], admin)
        resp = env["client"].delete(f"/api/v1/user/{admin['id']}")
        assert resp.status_code == 400

    def test_delete_user(self, env, admin, alice):
        _login(env["client"], admin)
        resp = env["client"].delete(f"/api/v1/user/{alice['id']}")
        assert resp.json == {"success": True}
        assert env["user_db"].get_user(user_id=alice["id"]) is None
        assert env["client"].delete(f"/api/v1/user/{alice['id']}").status_code == 404

    def test_delete_user_recomputes_media_status(self, env, admin, alice):
        media_db = env["media_db"]
        solo = media_db.get_or_create_media(tmdb_id=550, media_type="movie")
        media_db.create_request(media_id=solo["id"], requested_by=alice["id"], media_type="movie")
        media_db.update_media_status(solo["id"], "pending")

        shared = media_db.get_or_create_media(tmdb_id=1399, media_type="tv")
        media_db.create_request(media_id=shared["id"], requested_by=alice["id"], media_type="tv", seasons=[1])
        kept = media_db.create_request(media_id=shared["id"], requested_by=admin["id"], media_type="tv", seasons=[2])
        media_db.update_request(kept["id"], status="approved")
        media_db.update_media_status(shared["id"], "processing")

        _login(env["client"], admin)
        assert env["client"].delete(f"/api/v1/user/{alice['id']}").status_code == 200

        assert media_db.list_active_requests_for_media(solo["id"]) == []
        assert media_db.get_media(solo["id"])["status"] == "unknown"
        assert media_db.get_media(shared["id"])["status"] == "processing"


class TestJellyfinImport:
    def test_requires_configured_server(self, env, admin):
        _login(env["client"], admin)
        resp = env["client"].post("/api/v1/user/import-from-jellyfin", json={})
        assert resp.status_code == 400
        assert resp.json["code"] == "jellyfin_not_configured"

    def test_imports_selected_users_once(self, env, admin):
        update_settings("jellyfin", {"JELLYFIN_URL": "http://jellyfin.local:8096", "JELLYFIN_API_KEY": "token"})
        jellyfin_users = [
            {"id": "jf-1", "username": "alice", "title": "Alice", "thumb": None},
            {"id": "jf-2", "username": "bob", "title": "Bob", "thumb": None},
        ]
        _login(env["client"], admin)

        with patch("mediaseer.core.admin_routes.JellyfinClient") as client_cls:
            client_cls.return_value.get_users.return_value = jellyfin_users
            resp = env["client"].post("/api/v1/user/import-from-jellyfin", json={"jellyfinUserIds": ["jf-1"]})
            again = env["client"].post("/api/v1/user/import-from-jellyfin", json={})

        client_cls.assert_called_with("http://jellyfin.local:8096", "token")
        assert resp.status_code == 201
        assert [u["username"] for u in resp.json] == ["alice"]
        assert resp.json[0]["authSource"] == "jellyfin"
        assert [u["username"] for u in again.json] == ["bob"]

    def test_rejects_non_list_ids(self, env, admin):
        _login(env["client"], admin)
        resp = env["client"].post("/api/v1/user/import-from-jellyfin", json={"jellyfinUserIds": "jf-1"})
        assert resp.status_code == 400


def test_validate_user_settings_clears_and_normalizes():
    validated, errors = validate_user_settings({
        "USER_NOTIFICATION_ROUTES": [{"event": ["media_approved", "bogus"], "url": " json://x "}],
    })
    assert errors == []
    assert validated == {"USER_NOTIFICATION_ROUTES": [{"event": "media_approved", "url": "json://x"}]}

    validated, errors = validate_user_settings({"USER_NOTIFICATION_ROUTES": None})
    assert validated == {"USER_NOTIFICATION_ROUTES": None}

    _, errors = validate_user_settings({"USER_NOTIFICATION_ROUTES": "json://x"})
    assert errors == ["USER_NOTIFICATION_ROUTES must be a list"]

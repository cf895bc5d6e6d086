"""Unit tests for the reverse-proxy header sign-in middleware."""

from __future__ import annotations

from typing import Any
from unittest.mock import patch
from uuid import uuid4

import pytest

from mediaseer.core.permissions import Permission

PROXY_CONFIG = {"PROXY_AUTH_USER_HEADER": "X-Auth-User"}


def _as_response(result: Any):
    if isinstance(result, tuple) and len(result) == 2:
        resp, status = result
        resp.status_code = status
        return resp
    return result


def _unique(prefix: str) -> str:
    return f"{prefix}_{uuid4().hex[:8]}"


@pytest.fixture(scope="module")
def main_module():
    import mediaseer.main as main

    return main


@pytest.fixture
def proxy_mode(main_module):
    config = dict(PROXY_CONFIG)
    with patch.object(main_module, "get_auth_mode", return_value="proxy"), patch.object(
        main_module, "load_config_file", return_value=config
    ):
        yield config


class TestProxyAuthMiddleware:
    def test_skips_for_non_proxy_mode(self, main_module):
        with patch.object(main_module, "get_auth_mode", return_value="builtin"):
            with main_module.app.test_request_context("/api/v1/request"):
                assert main_module.proxy_auth_middleware() is None
                assert "user_id" not in main_module.session

    def test_skips_bypass_paths(self, main_module, proxy_mode):
        for path in ("/api/health", "/api/v1/status", "/api/v1/settings/public"):
            with main_module.app.test_request_context(path):
                assert main_module.proxy_auth_middleware() is None

    def test_allows_auth_endpoints_without_header(self, main_module, proxy_mode):
        with main_module.app.test_request_context("/api/v1/auth/check"):
            assert main_module.proxy_auth_middleware() is None
            assert "user_id" not in main_module.session

    def test_returns_401_when_header_missing(self, main_module, proxy_mode):
        with main_module.app.test_request_context("/api/v1/request"):
            resp = _as_response(main_module.proxy_auth_middleware())

        assert resp.status_code == 401
        assert "Proxy header not set" in resp.get_json()["error"]

    def test_sets_session_from_header(self, main_module, proxy_mode):
        username = _unique("proxy")
        with main_module.app.test_request_context("/api/v1/request", headers={"X-Auth-User": username}):
            assert main_module.proxy_auth_middleware() is None
            assert main_module.session["user_id"] == username
            assert main_module.session.permanent is False
            db_user = main_module.user_db.get_user(user_id=main_module.session["db_user_id"])

        assert db_user["username"] == username
        assert db_user["auth_source"] == "proxy"

    def test_custom_header_and_remote_user_fallback(self, main_module, proxy_mode):
        proxy_mode["PROXY_AUTH_USER_HEADER"] = "Remote-User"
        username = _unique("remote")
        with main_module.app.test_request_context("/api/v1/request", environ_base={"REMOTE_USER": username}):
            assert main_module.proxy_auth_middleware() is None
            assert main_module.session["user_id"] == username

    def test_takes_over_existing_local_username(self, main_module, proxy_mode):
        existing = main_module.user_db.create_user(username=_unique("local"), auth_source="builtin")

        with main_module.app.test_request_context(
            "/api/v1/request",
            headers={"X-Auth-User": existing["username"]},
        ):
            main_module.proxy_auth_middleware()
            assert main_module.session["db_user_id"] == existing["id"]

        assert main_module.user_db.get_user(user_id=existing["id"])["auth_source"] == "proxy"

    def test_reprovisions_when_identity_changes(self, main_module, proxy_mode):
        other = main_module.user_db.create_user(username=_unique("other"), auth_source="proxy")
        username = _unique("target")

        with main_module.app.test_request_context("/api/v1/request", headers={"X-Auth-User": username}):
            main_module.session["user_id"] = other["username"]
            main_module.session["db_user_id"] = other["id"]

            assert main_module.proxy_auth_middleware() is None
            db_user_id = main_module.session["db_user_id"]

        assert db_user_id != other["id"]
        assert main_module.user_db.get_user(user_id=db_user_id)["username"] == username

    def test_reprovisions_when_session_user_is_stale(self, main_module, proxy_mode):
        username = _unique("stale")
        with main_module.app.test_request_context("/api/v1/request", headers={"X-Auth-User": username}):
            main_module.session["user_id"] = username
            main_module.session["db_user_id"] = 99999999

            main_module.proxy_auth_middleware()
            db_user_id = main_module.session["db_user_id"]

        assert db_user_id != 99999999
        assert main_module.user_db.get_user(user_id=db_user_id)["username"] == username

    def test_admin_group_membership_syncs_permissions(self, main_module, proxy_mode):
        proxy_mode.update({
            "PROXY_AUTH_ADMIN_GROUP_HEADER": "X-Auth-Groups",
            "PROXY_AUTH_ADMIN_GROUP_NAME": "admins",
        })
        username = _unique("groupie")

        with main_module.app.test_request_context(
            "/api/v1/request",
            headers={"X-Auth-User": username, "X-Auth-Groups": "users|admins"},
        ):
            main_module.proxy_auth_middleware()
            assert main_module.session["is_admin"] is True

        with main_module.app.test_request_context(
            "/api/v1/request",
            headers={"X-Auth-User": username, "X-Auth-Groups": "users,devs"},
        ):
            main_module.proxy_auth_middleware()
            assert main_module.session["is_admin"] is False

        stored = main_module.user_db.get_user(username=username)
        assert not stored["permissions"] & Permission.ADMIN

    def test_errors_return_500(self, main_module, proxy_mode):
        with patch.object(main_module, "upsert_external_user", side_effect=RuntimeError("db gone")):
            with main_module.app.test_request_context(
                "/api/v1/request",
                headers={"X-Auth-User": _unique("broken")},
            ):
                resp = _as_response(main_module.proxy_auth_middleware())

        assert resp.status_code == 500
        assert resp.get_json() == {"error": "Authentication error"}

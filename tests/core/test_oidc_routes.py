"""Tests for the OIDC login and callback endpoints."""

import os
import tempfile
from unittest.mock import Mock, patch
from urllib.parse import parse_qs, urlparse

import pytest
from authlib.jose.errors import InvalidClaimError
from flask import Flask, redirect

from mediaseer.core.oidc_routes import _get_oidc_client, _resolve_scopes, register_oidc_routes
from mediaseer.core.permissions import Permission
from mediaseer.core.user_db import UserDB

OIDC_CONFIG = {
    "OIDC_DISCOVERY_URL": "https://sso.example.com/.well-known/openid-configuration",
    "OIDC_CLIENT_ID": "mediaseer",
    "OIDC_CLIENT_SECRET": "s3cret",
    "OIDC_SCOPES": ["openid", "email", "profile"],
    "OIDC_GROUP_CLAIM": "groups",
    "OIDC_ADMIN_GROUP": "media-admins",
    "OIDC_AUTO_PROVISION": True,
    "OIDC_USE_ADMIN_GROUP": True,
}


def _error_param(resp):
    assert resp.status_code == 302
    values = parse_qs(urlparse(resp.headers["Location"]).query).get("oidc_error", [])
    return values[0] if values else None


@pytest.fixture
def user_db():
    with tempfile.TemporaryDirectory() as tmpdir:
        db = UserDB(os.path.join(tmpdir, "mediaseer.db"))
        db.initialize()
        yield db


@pytest.fixture
def client(user_db):
    app = Flask(__name__)
    app.config["SECRET_KEY"] = "test-secret"
    app.config["TESTING"] = True
    register_oidc_routes(app, user_db)
    return app.test_client()


@pytest.fixture
def idp():
    """Fake Authlib client returned by the client factory."""
    fake = Mock()
    config = dict(OIDC_CONFIG)
    with patch("mediaseer.core.oidc_routes._get_oidc_client", return_value=(fake, config)):
        yield fake, config


def _callback(client, **environ):
    return client.get("/api/v1/auth/oidc/callback?code=abc&state=xyz", environ_overrides=environ)


class TestClientRegistration:
    def test_scope_list_always_includes_openid(self):
        assert _resolve_scopes({"OIDC_SCOPES": "email profile", "OIDC_USE_ADMIN_GROUP": False}) == [
            "openid",
            "email",
            "profile",
        ]
        assert _resolve_scopes({"OIDC_SCOPES": "email,openid", "OIDC_USE_ADMIN_GROUP": False}) == ["openid", "email"]

    def test_group_claim_added_when_admin_group_is_used(self):
        assert _resolve_scopes(OIDC_CONFIG)[-1] == "groups"
        assert "groups" not in _resolve_scopes({**OIDC_CONFIG, "OIDC_USE_ADMIN_GROUP": False})

    def test_registers_pkce_client(self):
        with patch("mediaseer.core.oidc_routes.load_config_file", return_value=OIDC_CONFIG), patch(
            "mediaseer.core.oidc_routes.oauth.register"
        ) as register, patch("mediaseer.core.oidc_routes.oauth.create_client") as create_client:
            create_client.return_value = Mock()
            client_obj, config = _get_oidc_client()

        assert client_obj is create_client.return_value
        assert config["OIDC_CLIENT_ID"] == "mediaseer"
        kwargs = register.call_args.kwargs
        assert kwargs["server_metadata_url"] == OIDC_CONFIG["OIDC_DISCOVERY_URL"]
        assert kwargs["client_kwargs"] == {"scope": "openid email profile groups", "code_challenge_method": "S256"}

    def test_missing_configuration_raises(self):
        with patch("mediaseer.core.oidc_routes.load_config_file", return_value={}):
            with pytest.raises(ValueError):
                _get_oidc_client()


class TestLogin:
    def test_redirects_to_provider(self, client, idp):
        fake, _ = idp
        fake.authorize_redirect.return_value = redirect("https://sso.example.com/authorize")

        resp = client.get("/api/v1/auth/oidc/login")

        assert resp.status_code == 302
        assert resp.headers["Location"] == "https://sso.example.com/authorize"
        assert fake.authorize_redirect.call_args.args[0] == "http://localhost/api/v1/auth/oidc/callback"

    def test_not_configured(self, client):
        with patch("mediaseer.core.oidc_routes._get_oidc_client", side_effect=ValueError("OIDC not configured")):
            resp = client.get("/api/v1/auth/oidc/login")
        assert resp.status_code == 500
        assert resp.get_json() == {"error": "OIDC not configured"}


class TestCallback:
    def test_provisions_user_and_sets_session(self, client, idp, user_db):
        fake, _ = idp
        fake.authorize_access_token.return_value = {
            "userinfo": {
                "sub": "sub-42",
                "email": "dana@example.com",
                "preferred_username": "dana",
                "name": "Dana",
                "groups": ["family"],
            }
        }

        resp = _callback(client)

        assert resp.status_code == 302
        assert resp.headers["Location"] in ("/", "http://localhost/")
        fake.userinfo.assert_not_called()
        created = user_db.get_user(oidc_subject="sub-42")
        assert created["auth_source"] == "oidc"
        assert created["display_name"] == "Dana"
        with client.session_transaction() as sess:
            assert sess["user_id"] == "dana"
            assert sess["db_user_id"] == created["id"]
            assert sess["is_admin"] is False

    def test_admin_group_grants_admin(self, client, idp, user_db):
        fake, _ = idp
        fake.authorize_access_token.return_value = {
            "userinfo": {"sub": "sub-1", "preferred_username": "root", "groups": "family|media-admins"}
        }

        _callback(client)

        assert user_db.get_user(oidc_subject="sub-1")["permissions"] & Permission.ADMIN
        with client.session_transaction() as sess:
            assert sess["is_admin"] is True

    def test_sparse_token_claims_use_userinfo_endpoint(self, client, idp):
        fake, _ = idp
        token = {"userinfo": {"sub": "sub-7"}}
        fake.authorize_access_token.return_value = token
        fake.userinfo.return_value = {"sub": "sub-7", "preferred_username": "erin"}

        _callback(client)

        fake.userinfo.assert_called_once_with(token=token)
        with client.session_transaction() as sess:
            assert sess["user_id"] == "erin"

    def test_userinfo_failure_keeps_subject_only_claims(self, client, idp):
        fake, _ = idp
        fake.authorize_access_token.return_value = {"userinfo": {"sub": "sub-8"}}
        fake.userinfo.side_effect = RuntimeError("userinfo down")

        _callback(client)

        with client.session_transaction() as sess:
            assert sess["user_id"] == "sub-8"

    def test_missing_claims(self, client, idp):
        fake, _ = idp
        fake.authorize_access_token.return_value = {}
        fake.userinfo.return_value = None
        assert "missing user claims" in _error_param(_callback(client))

    def test_issuer_claim_error_gives_guidance(self, client, idp):
        fake, _ = idp
        fake.authorize_access_token.side_effect = InvalidClaimError("iss")
        assert "issuer validation failed" in _error_param(_callback(client))

    def test_other_claim_error_names_claim(self, client, idp):
        fake, _ = idp
        fake.authorize_access_token.side_effect = InvalidClaimError("aud")
        assert _error_param(_callback(client)) == "OIDC token claim validation failed: aud"

    def test_rejected_without_auto_provision(self, client, idp):
        fake, config = idp
        config["OIDC_AUTO_PROVISION"] = False
        fake.authorize_access_token.return_value = {"userinfo": {"sub": "sub-9", "preferred_username": "frank"}}
        assert "Account not found" in _error_param(_callback(client))

    def test_email_links_existing_local_user(self, client, idp, user_db):
        fake, config = idp
        config["OIDC_AUTO_PROVISION"] = False
        local = user_db.create_user(username="gina", email="gina@example.com", password_hash="hash")
        fake.authorize_access_token.return_value = {
            "userinfo": {"sub": "sub-10", "email": "gina@example.com", "preferred_username": "gina.sso"}
        }

        _callback(client)

        linked = user_db.get_user(user_id=local["id"])
        assert linked["oidc_subject"] == "sub-10"
        assert linked["auth_source"] == "oidc"
        with client.session_transaction() as sess:
            assert sess["user_id"] == "gina"

    def test_idp_error_redirect_honors_script_root(self, client, idp):
        resp = client.get(
            "/api/v1/auth/oidc/callback?error=access_denied",
            environ_overrides={"SCRIPT_NAME": "/requests"},
        )
        assert urlparse(resp.headers["Location"]).path == "/requests/login"
        assert _error_param(resp) == "Authentication failed"

    def test_unexpected_errors_redirect(self, client, idp):
        fake, _ = idp
        fake.authorize_access_token.side_effect = RuntimeError("boom")
        assert _error_param(_callback(client)) == "Authentication failed"

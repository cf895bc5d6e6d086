"""Tests for auth-mode resolution and external identity provisioning."""

import os
import tempfile

import pytest

from mediaseer.core.auth_modes import determine_auth_mode, is_user_active, normalize_auth_source
from mediaseer.core.external_user_linking import (
    COLLISION_SUFFIX,
    COLLISION_TAKEOVER,
    default_user_permissions,
    upsert_external_user,
)
from mediaseer.core.oidc_auth import extract_user_info, parse_group_claims, provision_oidc_user
from mediaseer.core.permissions import DEFAULT_USER_PERMISSIONS, Permission
from mediaseer.core.settings_registry import update_settings
from mediaseer.core.user_db import UserDB


@pytest.fixture
def user_db():
    with tempfile.TemporaryDirectory() as tmpdir:
        db = UserDB(os.path.join(tmpdir, "mediaseer.db"))
        db.initialize()
        yield db


# ---------------------------------------------------------------------------
# Auth modes
# ---------------------------------------------------------------------------


def test_builtin_mode_requires_local_admin():
    assert determine_auth_mode({"AUTH_METHOD": "builtin"}, has_local_admin=True) == "builtin"
    assert determine_auth_mode({"AUTH_METHOD": "builtin"}, has_local_admin=False) == "none"


def test_proxy_mode_requires_user_header():
    config = {"AUTH_METHOD": "proxy", "PROXY_AUTH_USER_HEADER": "X-Auth-User"}
    assert determine_auth_mode(config, has_local_admin=False) == "proxy"
    assert determine_auth_mode({"AUTH_METHOD": "proxy", "PROXY_AUTH_USER_HEADER": " "}, False) == "none"


def test_oidc_mode_falls_back_when_incomplete():
    complete = {
        "AUTH_METHOD": "oidc",
        "OIDC_DISCOVERY_URL": "https://auth.example.com/.well-known/openid-configuration",
        "OIDC_CLIENT_ID": "mediaseer",
    }
    assert determine_auth_mode(complete, has_local_admin=True) == "oidc"
    assert determine_auth_mode(complete, has_local_admin=False) == "none"
    assert determine_auth_mode({**complete, "OIDC_CLIENT_ID": ""}, has_local_admin=True) == "builtin"


def test_unknown_method_means_no_auth():
    assert determine_auth_mode({}, has_local_admin=True) == "none"
    assert determine_auth_mode({"AUTH_METHOD": "ldap"}, has_local_admin=True) == "none"


def test_normalize_auth_source_infers_from_linked_identity():
    assert normalize_auth_source("PROXY") == "proxy"
    assert normalize_auth_source(None, oidc_subject="sub") == "oidc"
    assert normalize_auth_source("", jellyfin_user_id="jf") == "jellyfin"
    assert normalize_auth_source(None) == "builtin"


def test_is_user_active_by_mode():
    local = {"auth_source": "builtin"}
    jellyfin = {"auth_source": "jellyfin"}
    proxy = {"auth_source": "proxy"}
    oidc = {"auth_source": "oidc"}

    assert is_user_active(local, "builtin")
    assert is_user_active(local, "oidc")
    assert not is_user_active(local, "proxy")
    assert is_user_active(jellyfin, "builtin")
    assert is_user_active(proxy, "proxy")
    assert not is_user_active(proxy, "builtin")
    assert is_user_active(oidc, "oidc")
    assert not is_user_active(oidc, "builtin")


# ---------------------------------------------------------------------------
# upsert_external_user
# ---------------------------------------------------------------------------


def test_default_user_permissions_follow_main_settings():
    assert default_user_permissions() == DEFAULT_USER_PERMISSIONS
    update_settings("main", {"DEFAULT_PERMISSIONS": int(Permission.REQUEST_MOVIE)})
    assert default_user_permissions() == int(Permission.REQUEST_MOVIE)


def test_creates_user_with_default_permissions(user_db):
    user, action = upsert_external_user(
        user_db,
        auth_source="proxy",
        username="alice",
        email="alice@example.com",
        context="test",
    )
    assert action == "created"
    assert user["auth_source"] == "proxy"
    assert user["permissions"] == DEFAULT_USER_PERMISSIONS


def test_is_admin_grants_and_revokes_admin_flag(user_db):
    user, _ = upsert_external_user(user_db, auth_source="proxy", username="alice", is_admin=True)
    assert user["permissions"] & Permission.ADMIN

    user, action = upsert_external_user(
        user_db,
        auth_source="proxy",
        username="alice",
        is_admin=False,
        collision_strategy=COLLISION_TAKEOVER,
    )
    assert action == "updated"
    assert not user["permissions"] & Permission.ADMIN
    assert user["permissions"] & Permission.REQUEST


def test_is_admin_none_keeps_stored_permissions(user_db):
    user_db.create_user(username="alice", auth_source="proxy", permissions=int(Permission.ADMIN))
    user, action = upsert_external_user(
        user_db,
        auth_source="proxy",
        username="alice",
        collision_strategy=COLLISION_TAKEOVER,
    )
    assert action == "unchanged"
    assert user["permissions"] == int(Permission.ADMIN)


def test_takeover_links_existing_local_user(user_db):
    local = user_db.create_user(username="alice", password_hash="hash")
    user, action = upsert_external_user(
        user_db,
        auth_source="proxy",
        username="alice",
        collision_strategy=COLLISION_TAKEOVER,
    )
    assert action == "linked"
    assert user["id"] == local["id"]
    assert user["auth_source"] == "proxy"


def test_suffix_creates_separate_user_on_username_clash(user_db):
    user_db.create_user(username="alice")
    user_db.create_user(username="alice_1")
    user, action = upsert_external_user(
        user_db,
        auth_source="jellyfin",
        username="alice",
        jellyfin_user_id="jf-1",
        collision_strategy=COLLISION_SUFFIX,
    )
    assert action == "created"
    assert user["username"] == "alice_2"

    again, action = upsert_external_user(
        user_db,
        auth_source="jellyfin",
        username="alice",
        jellyfin_user_id="jf-1",
    )
    assert action == "unchanged"
    assert again["id"] == user["id"]


def test_email_link_matches_existing_user(user_db):
    existing = user_db.create_user(username="ally", email="alice@example.com")
    user, action = upsert_external_user(
        user_db,
        auth_source="oidc",
        username="alice",
        email="Alice@example.com",
        oidc_subject="sub-1",
        allow_email_link=True,
    )
    assert action == "linked"
    assert user["id"] == existing["id"]
    assert user["oidc_subject"] == "sub-1"


def test_rejected_when_creation_not_allowed(user_db):
    user, action = upsert_external_user(
        user_db,
        auth_source="jellyfin",
        username="bob",
        jellyfin_user_id="jf-2",
        allow_create=False,
    )
    assert user is None
    assert action == "rejected"
    assert user_db.count_users() == 0


@pytest.mark.parametrize(
    "kwargs, message",
    [
        ({"auth_source": "ldap", "username": "a"}, "Invalid auth_source"),
        ({"auth_source": "proxy", "username": "  "}, "no username"),
        ({"auth_source": "proxy", "username": "a", "collision_strategy": "merge"}, "collision_strategy"),
    ],
)
def test_upsert_validates_arguments(user_db, kwargs, message):
    with pytest.raises(ValueError, match=message):
        upsert_external_user(user_db, **kwargs)


# ---------------------------------------------------------------------------
# OIDC claims
# ---------------------------------------------------------------------------


def test_extract_user_info_prefers_preferred_username():
    info = extract_user_info({
        "sub": "abc",
        "email": "alice@example.com",
        "preferred_username": "alice",
        "name": "Alice A.",
        "picture": "https://example.com/a.png",
    })
    assert info == {
        "oidc_subject": "abc",
        "username": "alice",
        "email": "alice@example.com",
        "display_name": "Alice A.",
        "avatar": "https://example.com/a.png",
    }


def test_extract_user_info_falls_back_to_email_then_subject():
    assert extract_user_info({"sub": "abc", "email": "a@example.com"})["username"] == "a@example.com"
    assert extract_user_info({"sub": "abc"})["username"] == "abc"


def test_parse_group_claims_handles_lists_and_strings():
    assert parse_group_claims({"groups": ["admins", " users ", ""]}, "groups") == ["admins", "users"]
    assert parse_group_claims({"groups": "admins, users|ops"}, "groups") == ["admins", "users", "ops"]
    assert parse_group_claims({"groups": 5}, "groups") == []
    assert parse_group_claims({"groups": ["x"]}, "") == []


def test_provision_oidc_user_creates_and_reuses_subject(user_db):
    info = extract_user_info({"sub": "abc", "preferred_username": "alice"})
    created = provision_oidc_user(user_db, info, is_admin=True)
    assert created["auth_source"] == "oidc"
    assert created["permissions"] & Permission.ADMIN

    info["username"] = "alice-renamed"
    again = provision_oidc_user(user_db, info)
    assert again["id"] == created["id"]


def test_provision_oidc_user_respects_auto_provision(user_db):
    info = extract_user_info({"sub": "abc", "preferred_username": "alice"})
    assert provision_oidc_user(user_db, info, allow_create=False) is None


def test_provision_oidc_user_requires_subject(user_db):
    with pytest.raises(ValueError, match="no subject"):
        provision_oidc_user(user_db, {"username": "alice"})

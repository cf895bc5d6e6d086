"""Create or update local users for identities managed elsewhere.

Proxy headers, OIDC claims and Jellyfin sign-ins all end up here so the
matching and collision rules stay in one place.
"""

from __future__ import annotations

from typing import Any

from mediaseer.core.auth_modes import AUTH_SOURCE_SET
from mediaseer.core.logger import setup_logger
from mediaseer.core.permissions import Permission, normalize_permissions
from mediaseer.core.user_db import UserDB

logger = setup_logger(__name__)

COLLISION_TAKEOVER = "takeover"
COLLISION_SUFFIX = "suffix"
_MAX_SUFFIX_ATTEMPTS = 100


def default_user_permissions() -> int:
    """Permissions for newly provisioned users from the main settings."""
    from mediaseer.core.config import config as app_config
    from mediaseer.core.permissions import DEFAULT_USER_PERMISSIONS

    try:
        return normalize_permissions(app_config.get("DEFAULT_PERMISSIONS", DEFAULT_USER_PERMISSIONS))
    except ValueError:
        return DEFAULT_USER_PERMISSIONS


def _apply_admin_flag(permissions: Any, is_admin: bool | None) -> int:
    current = int(permissions or 0)
    if is_admin is None:
        return current
    if is_admin:
        return current | int(Permission.ADMIN)
    return current & ~int(Permission.ADMIN)


def _find_free_username(user_db: UserDB, username: str) -> str:
    if user_db.get_user(username=username) is None:
        return username
    for n in range(1, _MAX_SUFFIX_ATTEMPTS + 1):
        candidate = f"{username}_{n}"
        if user_db.get_user(username=candidate) is None:
            return candidate
    raise ValueError(f"Could not find a free username for {username}")


def _find_linked_user(
    user_db: UserDB,
    *,
    oidc_subject: str | None,
    jellyfin_user_id: str | None,
) -> dict[str, Any] | None:
    if oidc_subject:
        user = user_db.get_user(oidc_subject=oidc_subject)
        if user is not None:
            return user
    if jellyfin_user_id:
        return user_db.get_user(jellyfin_user_id=jellyfin_user_id)
    return None


def upsert_external_user(
    user_db: UserDB,
    *,
    auth_source: str,
    username: str,
    is_admin: bool | None = None,
    email: str | None = None,
    display_name: str | None = None,
    oidc_subject: str | None = None,
    jellyfin_user_id: str | None = None,
    avatar: str | None = None,
    collision_strategy: str = COLLISION_SUFFIX,
    allow_email_link: bool = False,
    allow_create: bool = True,
    default_permissions: int | None = None,
    context: str = "",
) -> tuple[dict[str, Any] | None, str]:
    """Find or create the local user for an external identity.

    Matching order: linked identity (OIDC subject or Jellyfin id), then
    email when ``allow_email_link``, then username when the collision
    strategy is ``takeover``. With ``suffix`` a username clash creates a
    new user named ``<username>_<n>``.

    ``is_admin`` grants or revokes ADMIN; None leaves stored permissions alone.

    Returns ``(user, action)`` where action is ``created``, ``linked``,
    ``updated``, ``unchanged`` or ``rejected`` (no match and creation not
    allowed, user is None).
    """
    if auth_source not in AUTH_SOURCE_SET:
        raise ValueError(f"Invalid auth_source: {auth_source}")
    normalized_username = (username or "").strip()
    if not normalized_username:
        raise ValueError("External identity has no username")
    if collision_strategy not in (COLLISION_TAKEOVER, COLLISION_SUFFIX):
        raise ValueError(f"Invalid collision_strategy: {collision_strategy}")

    user = _find_linked_user(user_db, oidc_subject=oidc_subject, jellyfin_user_id=jellyfin_user_id)
    action = "updated"

    if user is None and allow_email_link and email:
        user = user_db.get_user(email=email)
        if user is not None:
            action = "linked"

    if user is None and collision_strategy == COLLISION_TAKEOVER:
        user = user_db.get_user(username=normalized_username)
        if user is not None and user.get("auth_source") != auth_source:
            action = "linked"

    if user is None:
        if not allow_create:
            logger.info(f"Rejected {auth_source} user '{normalized_username}' ({context}): not provisioned")
            return None, "rejected"

        permissions = default_permissions if default_permissions is not None else default_user_permissions()
        created = user_db.create_user(
            username=_find_free_username(user_db, normalized_username),
            email=email,
            display_name=display_name,
            oidc_subject=oidc_subject,
            jellyfin_user_id=jellyfin_user_id,
            avatar=avatar,
            auth_source=auth_source,
            permissions=_apply_admin_flag(permissions, is_admin),
        )
        logger.info(f"Provisioned {auth_source} user '{created['username']}' ({context})")
        return created, "created"

    updates: dict[str, Any] = {}
    desired = {
        "auth_source": auth_source,
        "email": email,
        "display_name": display_name,
        "oidc_subject": oidc_subject,
        "jellyfin_user_id": jellyfin_user_id,
        "avatar": avatar,
    }
    for column, value in desired.items():
        if value and user.get(column) != value:
            updates[column] = value

    permissions = _apply_admin_flag(user.get("permissions"), is_admin)
    if permissions != int(user.get("permissions") or 0):
        updates["permissions"] = permissions

    if not updates:
        return user, "unchanged"

    user_db.update_user(user["id"], **updates)
    refreshed = user_db.get_user(user_id=user["id"])
    logger.info(f"Synced {auth_source} user '{user['username']}' ({context}): {', '.join(sorted(updates))}")
    return refreshed, action

"""OIDC claim handling and user provisioning.

Route handlers live in oidc_routes.py; this module has no Flask dependency.
"""

from __future__ import annotations

import re
from typing import Any

from mediaseer.core.auth_modes import AUTH_SOURCE_OIDC
from mediaseer.core.external_user_linking import COLLISION_SUFFIX, upsert_external_user
from mediaseer.core.user_db import UserDB


def _claim_text(claims: dict[str, Any], key: str) -> str | None:
    value = claims.get(key)
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def extract_user_info(claims: dict[str, Any]) -> dict[str, Any]:
    """Pull identity fields out of ID token / userinfo claims."""
    subject = _claim_text(claims, "sub") or ""
    email = _claim_text(claims, "email")
    username = _claim_text(claims, "preferred_username") or email or subject
    return {
        "oidc_subject": subject,
        "username": username,
        "email": email,
        "display_name": _claim_text(claims, "name"),
        "avatar": _claim_text(claims, "picture"),
    }


def parse_group_claims(claims: dict[str, Any], group_claim: str) -> list[str]:
    """Groups from a list claim or a comma/pipe separated string."""
    raw = claims.get(group_claim) if group_claim else None
    if isinstance(raw, list):
        return [str(group).strip() for group in raw if str(group).strip()]
    if isinstance(raw, str):
        return [group.strip() for group in re.split(r"[,|]", raw) if group.strip()]
    return []


def provision_oidc_user(
    user_db: UserDB,
    user_info: dict[str, Any],
    is_admin: bool | None = None,
    allow_email_link: bool = False,
    allow_create: bool = True,
) -> dict[str, Any] | None:
    """Return the local user for an OIDC identity, creating it if allowed.

    ``is_admin=None`` keeps the stored permissions (group auth disabled).
    Returns None when no user matches and ``allow_create`` is False.
    """
    if not user_info.get("oidc_subject"):
        raise ValueError("OIDC claims have no subject")

    user, _ = upsert_external_user(
        user_db,
        auth_source=AUTH_SOURCE_OIDC,
        username=user_info["username"],
        is_admin=is_admin,
        email=user_info.get("email"),
        display_name=user_info.get("display_name"),
        oidc_subject=user_info["oidc_subject"],
        avatar=user_info.get("avatar"),
        collision_strategy=COLLISION_SUFFIX,
        allow_email_link=allow_email_link,
        allow_create=allow_create,
        context="oidc_login",
    )
    return user

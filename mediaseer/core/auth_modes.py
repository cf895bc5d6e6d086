"""Authentication mode resolution and user auth-source helpers."""

from typing import Any, Optional

AUTH_MODE_NONE = "none"
AUTH_MODE_BUILTIN = "builtin"
AUTH_MODE_PROXY = "proxy"
AUTH_MODE_OIDC = "oidc"
AUTH_MODES = (AUTH_MODE_NONE, AUTH_MODE_BUILTIN, AUTH_MODE_PROXY, AUTH_MODE_OIDC)

AUTH_SOURCE_BUILTIN = "builtin"
AUTH_SOURCE_JELLYFIN = "jellyfin"
AUTH_SOURCE_PROXY = "proxy"
AUTH_SOURCE_OIDC = "oidc"
AUTH_SOURCE_SET = (
    AUTH_SOURCE_BUILTIN,
    AUTH_SOURCE_JELLYFIN,
    AUTH_SOURCE_PROXY,
    AUTH_SOURCE_OIDC,
)


def normalize_auth_source(
    source: Any,
    oidc_subject: Any = None,
    jellyfin_user_id: Any = None,
) -> str:
    """Return a known auth source, inferring it from linked identities."""
    if isinstance(source, str):
        normalized = source.strip().lower()
        if normalized in AUTH_SOURCE_SET:
            return normalized
    if oidc_subject:
        return AUTH_SOURCE_OIDC
    if jellyfin_user_id:
        return AUTH_SOURCE_JELLYFIN
    return AUTH_SOURCE_BUILTIN


def has_local_password_admin(user_db: Optional[Any] = None) -> bool:
    """Whether at least one admin can sign in with a local password."""
    if user_db is None:
        from mediaseer.core.user_db import UserDB, get_db_path

        user_db = UserDB(get_db_path())
        user_db.initialize()
    return user_db.has_local_password_admin()


def determine_auth_mode(security_config: dict[str, Any], has_local_admin: bool) -> str:
    """Resolve the effective auth mode from settings and runtime prerequisites."""
    method = str(security_config.get("AUTH_METHOD") or AUTH_MODE_NONE).strip().lower()

    if method == AUTH_MODE_BUILTIN:
        return AUTH_MODE_BUILTIN if has_local_admin else AUTH_MODE_NONE

    if method == AUTH_MODE_PROXY:
        header = str(security_config.get("PROXY_AUTH_USER_HEADER") or "").strip()
        return AUTH_MODE_PROXY if header else AUTH_MODE_NONE

    if method == AUTH_MODE_OIDC:
        discovery_url = str(security_config.get("OIDC_DISCOVERY_URL") or "").strip()
        client_id = str(security_config.get("OIDC_CLIENT_ID") or "").strip()
        if discovery_url and client_id and has_local_admin:
            return AUTH_MODE_OIDC
        return AUTH_MODE_BUILTIN if has_local_admin else AUTH_MODE_NONE

    return AUTH_MODE_NONE


def is_user_active(user: dict[str, Any], auth_mode: str) -> bool:
    """Whether a user can sign in under the current auth mode."""
    source = normalize_auth_source(
        user.get("auth_source"),
        user.get("oidc_subject"),
        user.get("jellyfin_user_id"),
    )
    if source in (AUTH_SOURCE_BUILTIN, AUTH_SOURCE_JELLYFIN):
        return auth_mode in (AUTH_MODE_BUILTIN, AUTH_MODE_OIDC)
    return source == auth_mode

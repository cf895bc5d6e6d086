"""OpenID Connect sign-in endpoints backed by Authlib.

The provider client is rebuilt from the security settings on every login so
changes made in the settings UI apply without a restart. Claim handling and
user provisioning live in :mod:`mediaseer.core.oidc_auth`.
"""

from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import quote

from authlib.integrations.flask_client import OAuth
from authlib.jose.errors import InvalidClaimError
from flask import Flask, jsonify, redirect, request, session

from mediaseer.core.logger import setup_logger
from mediaseer.core.oidc_auth import extract_user_info, parse_group_claims, provision_oidc_user
from mediaseer.core.permissions import is_admin_permissions
from mediaseer.core.settings_registry import load_config_file
from mediaseer.core.user_db import UserDB
from mediaseer.core.utils import get_ssl_verify

logger = setup_logger(__name__)
oauth = OAuth()

_CLIENT_NAME = "mediaseer_idp"
_CALLBACK_PATH = "/api/v1/auth/oidc/callback"
_ISSUER_HINT = (
    "OIDC issuer validation failed. Check that the discovery URL matches the "
    "issuer your identity provider advertises."
)


class OidcLoginError(Exception):
    """Sign-in failure whose message is safe to show on the login page."""


def _as_dict(raw_claims: Any) -> Dict[str, Any]:
    if not raw_claims:
        return {}
    if isinstance(raw_claims, dict):
        return raw_claims
    if hasattr(raw_claims, "to_dict"):
        return raw_claims.to_dict()
    try:
        return dict(raw_claims)
    except (TypeError, ValueError):
        return {}


def _identifies_user(claims: Dict[str, Any]) -> bool:
    return any(isinstance(claims.get(key), str) and claims[key].strip() for key in ("preferred_username", "email"))


def _login_redirect(message: str):
    root = request.script_root.rstrip("/")
    return redirect(f"{root}/login?oidc_error={quote(message)}")


def _resolve_scopes(config: Dict[str, Any]) -> List[str]:
    """Configured scopes with ``openid`` first and the group claim when admin groups are used."""
    raw = config.get("OIDC_SCOPES", ["openid", "email", "profile"])
    if isinstance(raw, str):
        raw = raw.split("," if "," in raw else " ")
    if not isinstance(raw, list):
        raw = []
    scopes = list(dict.fromkeys(["openid"] + [str(s).strip() for s in raw if str(s).strip()]))

    group_claim = config.get("OIDC_GROUP_CLAIM", "groups")
    uses_groups = config.get("OIDC_ADMIN_GROUP", "") and config.get("OIDC_USE_ADMIN_GROUP", True)
    if uses_groups and group_claim and group_claim not in scopes:
        scopes.append(group_claim)
    return scopes


def _get_oidc_client() -> Tuple[Any, Dict[str, Any]]:
    """(Re)register the provider client from the saved security settings."""
    config = load_config_file("security")
    discovery_url = config.get("OIDC_DISCOVERY_URL", "")
    client_id = config.get("OIDC_CLIENT_ID", "")
    if not discovery_url or not client_id:
        raise ValueError("OIDC not configured")

    def _apply_ssl_setting(http_session, **kwargs):
        http_session.verify = get_ssl_verify(discovery_url)
        return http_session

    oauth._clients.pop(_CLIENT_NAME, None)
    oauth.register(
        name=_CLIENT_NAME,
        client_id=client_id,
        client_secret=config.get("OIDC_CLIENT_SECRET", ""),
        server_metadata_url=discovery_url,
        client_kwargs={
            "scope": " ".join(_resolve_scopes(config)),
            "code_challenge_method": "S256",
        },
        compliance_fix=_apply_ssl_setting,
        overwrite=True,
    )
    client = oauth.create_client(_CLIENT_NAME)
    if client is None:
        raise RuntimeError("OIDC client initialization failed")
    return client, config


def _exchange_code(client: Any, config: Dict[str, Any]) -> Dict[str, Any]:
    """Trade the authorization code for claims, topping up sparse ID tokens from userinfo."""
    try:
        token = client.authorize_access_token()
    except InvalidClaimError as e:
        claim = getattr(e, "claim_name", "unknown")
        logger.error(
            f"OIDC token claim '{claim}' rejected: {e} "
            f"(discovery_url={config.get('OIDC_DISCOVERY_URL') or '<unset>'})"
        )
        if claim == "iss":
            raise OidcLoginError(_ISSUER_HINT)
        raise OidcLoginError(f"OIDC token claim validation failed: {claim}")

    claims = _as_dict(token.get("userinfo"))
    if not _identifies_user(claims):
        try:
            claims = {**claims, **_as_dict(client.userinfo(token=token))}
        except Exception as e:
            logger.error(f"Failed to fetch OIDC userinfo: {e}")

    if not claims:
        raise OidcLoginError("OIDC authentication failed: missing user claims")
    return claims


def _admin_from_groups(config: Dict[str, Any], claims: Dict[str, Any]) -> Optional[bool]:
    admin_group = config.get("OIDC_ADMIN_GROUP", "")
    if not admin_group or not config.get("OIDC_USE_ADMIN_GROUP", True):
        return None
    return admin_group in parse_group_claims(claims, config.get("OIDC_GROUP_CLAIM", "groups"))


def register_oidc_routes(app: Flask, user_db: UserDB) -> None:
    """Register /api/v1/auth/oidc/login and /api/v1/auth/oidc/callback."""
    oauth.init_app(app)

    @app.route("/api/v1/auth/oidc/login", methods=["GET"])
    def oidc_login():
        try:
            client, _ = _get_oidc_client()
        except ValueError:
            return jsonify({"error": "OIDC not configured"}), 500
        except Exception as e:
            logger.error(f"OIDC login error: {e}")
            return jsonify({"error": "OIDC login failed"}), 500
        try:
            return client.authorize_redirect(request.url_root.rstrip("/") + _CALLBACK_PATH)
        except Exception as e:
            logger.error(f"OIDC login error: {e}")
            return jsonify({"error": "OIDC login failed"}), 500

    @app.route("/api/v1/auth/oidc/callback", methods=["GET"])
    def oidc_callback():
        if request.args.get("error"):
            logger.warning(f"Identity provider returned an error: {request.args['error']}")
            return _login_redirect("Authentication failed")

        try:
            client, config = _get_oidc_client()
            claims = _exchange_code(client, config)
            user_info = extract_user_info(claims)
            user = provision_oidc_user(
                user_db,
                user_info,
                is_admin=_admin_from_groups(config, claims),
                allow_email_link=bool(user_info.get("email")),
                allow_create=bool(config.get("OIDC_AUTO_PROVISION", True)),
            )
        except (OidcLoginError, ValueError) as e:
            logger.error(f"OIDC callback error: {e}")
            return _login_redirect(str(e))
        except Exception as e:
            logger.error_trace(f"OIDC callback error: {e}")
            return _login_redirect("Authentication failed")

        if user is None:
            logger.warning(f"OIDC login rejected for '{user_info['username']}': auto-provisioning is off")
            return _login_redirect("Account not found. Contact your administrator.")

        session["user_id"] = user["username"]
        session["db_user_id"] = user["id"]
        session["is_admin"] = is_admin_permissions(user.get("permissions"))
        session.permanent = True
        logger.info(f"OIDC login successful: {user['username']} (admin={session['is_admin']})")
        return redirect(request.script_root or "/")

"""Sign-in method settings: no-auth, local/Jellyfin, reverse proxy and OIDC."""

from typing import Any, Dict, List, Optional, Tuple, Type

from mediaseer.config.security_handlers import on_save_security, test_oidc_connection
from mediaseer.core.logger import setup_logger
from mediaseer.core.settings_registry import (
    ActionButton,
    BaseField,
    CheckboxField,
    CustomComponentField,
    PasswordField,
    SelectField,
    TagListField,
    TextField,
    load_config_file,
    register_on_save,
    register_settings,
)

logger = setup_logger(__name__)

AUTH_METHOD_OPTIONS = [
    {"label": "No Authentication", "value": "none"},
    {"label": "Local & Jellyfin", "value": "builtin"},
    {"label": "Reverse Proxy Headers", "value": "proxy"},
    {"label": "OpenID Connect", "value": "oidc"},
]

FieldSpec = Tuple[Type[BaseField], Dict[str, Any]]

# Shown only while AUTH_METHOD is "proxy".
_PROXY_FIELDS: List[FieldSpec] = [
    (TextField, {
        "key": "PROXY_AUTH_USER_HEADER",
        "label": "Username Header",
        "description": "Request header carrying the signed-in username. Remote-User also checks the REMOTE_USER variable.",
        "placeholder": "X-Auth-User",
        "default": "X-Auth-User",
    }),
    (TextField, {
        "key": "PROXY_AUTH_LOGOUT_URL",
        "label": "Logout URL",
        "description": "Where the browser goes after signing out. Empty hides the sign-out button.",
        "placeholder": "https://sso.example.com/logout",
        "default": "",
    }),
    (TextField, {
        "key": "PROXY_AUTH_ADMIN_GROUP_HEADER",
        "label": "Groups Header",
        "description": "Request header listing the user's groups, separated by commas or pipes.",
        "placeholder": "X-Auth-Groups",
        "default": "X-Auth-Groups",
    }),
    (TextField, {
        "key": "PROXY_AUTH_ADMIN_GROUP_NAME",
        "label": "Admin Group",
        "description": "Members of this group get admin rights. Empty leaves admin rights to the Users page.",
        "placeholder": "media-admins",
        "default": "",
    }),
]

# Shown only while AUTH_METHOD is "oidc".
_OIDC_FIELDS: List[FieldSpec] = [
    (TextField, {
        "key": "OIDC_DISCOVERY_URL",
        "label": "Discovery URL",
        "description": "The provider's .well-known/openid-configuration document.",
        "placeholder": "https://sso.example.com/.well-known/openid-configuration",
        "required": True,
    }),
    (TextField, {
        "key": "OIDC_CLIENT_ID",
        "label": "Client ID",
        "placeholder": "mediaseer",
        "required": True,
    }),
    (PasswordField, {
        "key": "OIDC_CLIENT_SECRET",
        "label": "Client Secret",
        "required": True,
    }),
    (TagListField, {
        "key": "OIDC_SCOPES",
        "label": "Scopes",
        "description": "openid is always requested. The group claim is appended when admin groups are used.",
        "default": ["openid", "email", "profile"],
    }),
    (TextField, {
        "key": "OIDC_GROUP_CLAIM",
        "label": "Group Claim",
        "description": "Claim holding the user's groups.",
        "placeholder": "groups",
        "default": "groups",
    }),
    (TextField, {
        "key": "OIDC_ADMIN_GROUP",
        "label": "Admin Group",
        "description": "Members of this group get admin rights on each sign-in.",
        "placeholder": "media-admins",
        "default": "",
    }),
    (CheckboxField, {
        "key": "OIDC_USE_ADMIN_GROUP",
        "label": "Manage Admin Rights From Groups",
        "description": "Off keeps whatever permissions are stored for the user.",
        "default": True,
    }),
    (CheckboxField, {
        "key": "OIDC_AUTO_PROVISION",
        "label": "Create Users On First Sign-In",
        "description": "Off only admits users that already exist, matched by subject or email.",
        "default": True,
    }),
    (TextField, {
        "key": "OIDC_BUTTON_LABEL",
        "label": "Button Label",
        "placeholder": "Sign in with SSO",
        "default": "",
    }),
]


def _when(method: str) -> Dict[str, str]:
    return {"field": "AUTH_METHOD", "value": method}


def _method_fields(method: str, specs: List[FieldSpec]) -> List[BaseField]:
    return [factory(env_supported=False, show_when=_when(method), **kwargs) for factory, kwargs in specs]


def _test_oidc_connection(current_values: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    return test_oidc_connection(
        load_security_config=lambda: load_config_file("security"),
        current_values=current_values or {},
        logger=logger,
    )


@register_settings("security", "Security", icon="shield", order=5)
def security_settings():
    """Authentication method and the options of each method."""
    fields: List[BaseField] = [
        SelectField(
            key="AUTH_METHOD",
            label="Sign-In Method",
            description="No Authentication leaves browsing and settings open but disables requests and issues.",
            options=AUTH_METHOD_OPTIONS,
            default="none",
            env_supported=False,
        ),
    ]
    fields += _method_fields("proxy", _PROXY_FIELDS)
    fields += [
        CustomComponentField(
            key="oidc_admin_requirement",
            component="oidc_admin_hint",
            label="OIDC stays off until a local admin with a password exists.",
            show_when=_when("oidc"),
        ),
        CustomComponentField(
            key="oidc_callback_url",
            component="settings_label",
            label="Redirect URI",
            description="{origin}/api/v1/auth/oidc/callback",
            show_when=_when("oidc"),
        ),
    ]
    fields += _method_fields("oidc", _OIDC_FIELDS)
    fields.append(
        ActionButton(
            key="test_oidc",
            label="Check Provider",
            description="Download the discovery document and look for the required endpoints.",
            style="primary",
            callback=_test_oidc_connection,
            show_when=_when("oidc"),
        )
    )
    return fields


register_on_save("security", on_save_security)

"""Core settings registration and derived configuration values."""

from typing import Any, Dict, List

from mediaseer.config import env
from mediaseer.core.logger import setup_logger
from mediaseer.core.models import ServarrServer
from mediaseer.core.permissions import DEFAULT_USER_PERMISSIONS
from mediaseer.core.settings_registry import (
    register_settings,
    register_on_save,
    load_config_file,
    save_config_file,
    TextField,
    PasswordField,
    NumberField,
    CheckboxField,
    SelectField,
    CustomComponentField,
    ActionButton,
)
from mediaseer.core.utils import normalize_base_path, normalize_http_url

logger = setup_logger(__name__)

# Log bootstrap configuration values at DEBUG level
logger.debug("Bootstrap configuration:")
for key in ['CONFIG_DIR', 'LOG_DIR', 'DEBUG', 'FLASK_PORT']:
    if hasattr(env, key):
        logger.debug(f"  {key}: {getattr(env, key)}")

SERVARR_KINDS = ("radarr", "sonarr")

_RADARR_AVAILABILITY_OPTIONS = {"announced", "inCinemas", "released"}


# =============================================================================
# Main
# =============================================================================


def _on_save_main(values: Dict[str, Any]) -> Dict[str, Any]:
    """Normalize URLs before persisting."""
    if "APPLICATION_URL" in values:
        values["APPLICATION_URL"] = normalize_http_url(values.get("APPLICATION_URL"))
    if "URL_BASE" in values:
        values["URL_BASE"] = normalize_base_path(values.get("URL_BASE"))
    return {"error": False, "values": values}


@register_settings("main", "General", icon="settings", order=0)
def main_settings():
    """Core application settings."""
    return [
        TextField(
            key="APP_TITLE",
            label="Application Title",
            description="Name shown in the UI and in notifications.",
            default="Mediaseer",
        ),
        TextField(
            key="APPLICATION_URL",
            label="Application URL",
            description="Public URL of this instance, used for links in notifications.",
            placeholder="https://requests.example.com",
        ),
        TextField(
            key="URL_BASE",
            label="Base Path",
            description="Optional URL path prefix. Use a path like /mediaseer (no hostname). Leave blank for root.",
            placeholder="/mediaseer",
        ),
        NumberField(
            key="DEFAULT_PERMISSIONS",
            label="Default Permissions",
            description="Permission bitmask given to newly created users.",
            default=DEFAULT_USER_PERMISSIONS,
            min_value=0,
        ),
        CheckboxField(
            key="LOCAL_LOGIN",
            label="Enable Local Sign-In",
            description="Allow users to sign in with a local username and password. Admins can always sign in locally.",
            default=True,
        ),
        CheckboxField(
            key="NEW_JELLYFIN_SIGNIN",
            label="Enable New Jellyfin Sign-In",
            description="Create an account the first time a Jellyfin user signs in.",
            default=True,
        ),
        CheckboxField(
            key="HIDE_AVAILABLE",
            label="Hide Available Media",
            description="Hide media that is already available from discovery results.",
            default=False,
        ),
        NumberField(
            key="MAX_PENDING_REQUESTS_PER_USER",
            label="Max Pending Requests per User",
            description="Users cannot create new requests while this many of theirs are pending.",
            default=20,
            min_value=1,
            max_value=1000,
        ),
        CheckboxField(
            key="REQUESTS_ALLOW_NOTES",
            label="Allow Request Notes",
            description="Let users attach a note to their requests.",
            default=True,
        ),
        PasswordField(
            key="TMDB_API_KEY",
            label="TMDB API Key",
            description="API key (v3) from themoviedb.org.",
            default=env.TMDB_API_KEY,
            required=True,
        ),
        TextField(
            key="TMDB_LANGUAGE",
            label="Catalog Language",
            description="Language used for titles and overviews.",
            default="en",
        ),
        TextField(
            key="TMDB_REGION",
            label="Discover Region",
            description="Region used to filter discovery and release dates (ISO 3166-1, e.g. US).",
            default="",
        ),
    ]


register_on_save("main", _on_save_main)


# =============================================================================
# Jellyfin
# =============================================================================


def _test_jellyfin_connection(current_values: Dict[str, Any]) -> Dict[str, Any]:
    from mediaseer.media_server.jellyfin import JellyfinClient

    saved = load_config_file("jellyfin")
    url = (current_values or {}).get("JELLYFIN_URL") or saved.get("JELLYFIN_URL", "")
    api_key = (current_values or {}).get("JELLYFIN_API_KEY") or saved.get("JELLYFIN_API_KEY", "")
    if not url:
        return {"success": False, "message": "Jellyfin URL is not configured."}

    success, message = JellyfinClient(url, api_key).test_connection()
    return {"success": success, "message": message}


def _on_save_jellyfin(values: Dict[str, Any]) -> Dict[str, Any]:
    if "JELLYFIN_URL" in values:
        values["JELLYFIN_URL"] = normalize_http_url(values.get("JELLYFIN_URL"))
    return {"error": False, "values": values}


@register_settings("jellyfin", "Jellyfin", icon="server", order=10)
def jellyfin_settings():
    """Jellyfin/Emby media server connection."""
    return [
        TextField(
            key="JELLYFIN_URL",
            label="Server URL",
            description="Base URL of your Jellyfin or Emby server.",
            placeholder="http://jellyfin:8096",
        ),
        PasswordField(
            key="JELLYFIN_API_KEY",
            label="API Key",
            description="Used to list and import Jellyfin users.",
        ),
        TextField(
            key="JELLYFIN_EXTERNAL_URL",
            label="External URL",
            description="Optional URL shown to users for links into the media server.",
            placeholder="https://jellyfin.example.com",
        ),
        ActionButton(
            key="test_jellyfin",
            label="Test Connection",
            description="Check that the server is reachable with the configured API key.",
            style="primary",
            callback=_test_jellyfin_connection,
        ),
    ]


register_on_save("jellyfin", _on_save_jellyfin)


# =============================================================================
# Radarr / Sonarr
# =============================================================================


def normalize_servers(raw_servers: Any, kind: str) -> List[ServarrServer]:
    """Validate a submitted server list, assigning ids and a single default.

    Raises ValueError with a user-facing message on invalid entries.
    """
    if raw_servers is None:
        return []
    if not isinstance(raw_servers, list):
        raise ValueError("Servers must be a list")

    servers: List[ServarrServer] = []
    used_ids = {
        int(entry["id"])
        for entry in raw_servers
        if isinstance(entry, dict) and str(entry.get("id", "")).isdigit()
    }
    next_id = max(used_ids, default=-1) + 1

    for index, entry in enumerate(raw_servers):
        if not isinstance(entry, dict):
            raise ValueError(f"Server #{index + 1} must be an object")

        payload = dict(entry)
        if not str(payload.get("id", "")).isdigit():
            payload["id"] = next_id
            next_id += 1

        try:
            server = ServarrServer.from_dict(payload)
        except (TypeError, ValueError) as e:
            raise ValueError(f"Server #{index + 1} is invalid: {e}")

        if not server.name:
            server.name = f"{kind.capitalize()} {server.id}"
        if not server.hostname:
            raise ValueError(f"{server.name}: hostname is required")
        if "://" in server.hostname or "/" in server.hostname:
            raise ValueError(f"{server.name}: hostname must not include a scheme or path")
        if not 0 < server.port < 65536:
            raise ValueError(f"{server.name}: port must be between 1 and 65535")
        if not server.api_key:
            raise ValueError(f"{server.name}: API key is required")
        server.base_url = normalize_base_path(server.base_url)
        if kind == "radarr" and server.minimum_availability not in _RADARR_AVAILABILITY_OPTIONS:
            raise ValueError(f"{server.name}: invalid minimum availability '{server.minimum_availability}'")
        servers.append(server)

    ids = [s.id for s in servers]
    if len(ids) != len(set(ids)):
        raise ValueError("Server ids must be unique")

    default_seen = False
    for server in servers:
        if server.is_default and not default_seen:
            default_seen = True
        else:
            server.is_default = False
    return servers


def get_servarr_servers(kind: str) -> List[ServarrServer]:
    """Configured servers of a kind, skipping entries that fail to parse."""
    if kind not in SERVARR_KINDS:
        raise ValueError(f"Unknown server kind: {kind}")
    servers: List[ServarrServer] = []
    for entry in load_config_file(kind).get("SERVERS") or []:
        try:
            servers.append(ServarrServer.from_dict(entry))
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Ignoring invalid {kind} server entry: {e}")
    return servers


def save_servarr_servers(kind: str, servers: List[ServarrServer]) -> None:
    from mediaseer.core.config import config as app_config

    save_config_file(kind, {"SERVERS": [s.to_dict() for s in servers]})
    app_config.refresh()


def _servers_on_save(kind: str):
    def handler(values: Dict[str, Any]) -> Dict[str, Any]:
        if "SERVERS" not in values:
            return {"error": False, "values": values}
        try:
            servers = normalize_servers(values.get("SERVERS"), kind)
        except ValueError as e:
            return {"error": True, "message": str(e), "values": values}
        values["SERVERS"] = [s.to_dict() for s in servers]
        return {"error": False, "values": values}

    return handler


@register_settings("radarr", "Radarr", icon="film", order=20)
def radarr_settings():
    """Radarr instances that receive approved movie requests."""
    return [
        CustomComponentField(
            key="SERVERS",
            label="Radarr Servers",
            description="Approved movie requests are sent to the default server unless a request picks another.",
            component="servarr_servers",
            default=[],
        ),
    ]


@register_settings("sonarr", "Sonarr", icon="tv", order=21)
def sonarr_settings():
    """Sonarr instances that receive approved series requests."""
    return [
        CustomComponentField(
            key="SERVERS",
            label="Sonarr Servers",
            description="Approved series requests are sent to the default server unless a request picks another.",
            component="servarr_servers",
            default=[],
        ),
    ]


register_on_save("radarr", _servers_on_save("radarr"))
register_on_save("sonarr", _servers_on_save("sonarr"))


# =============================================================================
# Notifications
# =============================================================================


def _on_save_notifications(values: Dict[str, Any]) -> Dict[str, Any]:
    from mediaseer.core.notifications import normalize_routes

    for key in ("ADMIN_NOTIFICATION_ROUTES", "USER_NOTIFICATION_ROUTES"):
        if key in values:
            values[key] = normalize_routes(values.get(key))
    return {"error": False, "values": values}


def _test_admin_notifications(current_values: Dict[str, Any]) -> Dict[str, Any]:
    from mediaseer.core.notifications import normalize_routes, send_test_notification

    routes = (current_values or {}).get("ADMIN_NOTIFICATION_ROUTES")
    if routes is None:
        routes = load_config_file("notifications").get("ADMIN_NOTIFICATION_ROUTES", [])
    urls = [row["url"] for row in normalize_routes(routes)]
    return send_test_notification(urls)


@register_settings("notifications", "Notifications", icon="bell", order=30)
def notification_settings():
    """Apprise notification routes."""
    return [
        CustomComponentField(
            key="ADMIN_NOTIFICATION_ROUTES",
            label="Admin Notification Routes",
            description="Apprise URLs notified about new requests, approvals, failures and issues. Use event 'all' to receive everything.",
            component="notification_routes",
            default=[],
        ),
        CustomComponentField(
            key="USER_NOTIFICATION_ROUTES",
            label="User Notification Routes",
            description="Default routes for user notifications. Users can override these in their own settings.",
            component="notification_routes",
            default=[],
            user_overridable=True,
        ),
        ActionButton(
            key="test_notifications",
            label="Send Test Notification",
            description="Send a test message to every admin route.",
            style="primary",
            callback=_test_admin_notifications,
        ),
    ]


register_on_save("notifications", _on_save_notifications)


# =============================================================================
# Advanced
# =============================================================================


def _clear_metadata_cache(current_values: dict) -> dict:
    """Clear the in-memory metadata cache."""
    try:
        from mediaseer.core.cache import get_metadata_cache

        cache = get_metadata_cache()
        stats_before = cache.stats()
        cache.clear()

        return {
            "success": True,
            "message": f"Cleared {stats_before['size']} cached entries.",
        }
    except Exception as e:
        logger.error(f"Failed to clear metadata cache: {e}")
        return {
            "success": False,
            "message": f"Failed to clear cache: {str(e)}",
        }


@register_settings("advanced", "Advanced", icon="cog", order=40)
def advanced_settings():
    """Advanced settings for power users."""
    return [
        CheckboxField(
            key="DEBUG",
            label="Debug Mode",
            description="Enable verbose logging to console and file. Takes effect after a restart.",
            default=False,
        ),
        SelectField(
            key="CERTIFICATE_VALIDATION",
            label="Certificate Validation",
            description="TLS certificate verification for outbound connections.",
            options=[
                {"value": "enabled", "label": "Enabled"},
                {"value": "disabled_local", "label": "Disabled for local addresses"},
                {"value": "disabled", "label": "Disabled"},
            ],
            default="enabled",
        ),
        NumberField(
            key="METADATA_CACHE_SEARCH_TTL",
            label="Search Cache TTL (seconds)",
            description="How long search and discovery pages are cached.",
            default=300,
            min_value=0,
            max_value=86400,
        ),
        NumberField(
            key="METADATA_CACHE_DETAILS_TTL",
            label="Details Cache TTL (seconds)",
            description="How long movie, series, person and collection details are cached.",
            default=21600,
            min_value=0,
            max_value=604800,
        ),
        ActionButton(
            key="clear_metadata_cache",
            label="Clear Metadata Cache",
            description="Drop all cached catalog responses.",
            callback=_clear_metadata_cache,
        ),
    ]

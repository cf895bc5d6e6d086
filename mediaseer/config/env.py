"""Bootstrap environment variables. No local dependencies - import first."""

import json
import os
from pathlib import Path


def string_to_bool(s: str) -> bool:
    """Convert string to boolean."""
    return s.lower() in ["true", "yes", "1", "y"]


def _read_debug_from_config() -> bool:
    """Read DEBUG from env var or config file (import-time safe)."""
    env_debug = os.environ.get("DEBUG")
    if env_debug is not None:
        return string_to_bool(env_debug)

    config_dir = Path(os.getenv("CONFIG_DIR", "/config"))
    config_file = config_dir / "settings" / "main.json"

    if config_file.exists():
        try:
            with open(config_file, "r") as f:
                config = json.load(f)
                if "DEBUG" in config:
                    return bool(config["DEBUG"])
        except (json.JSONDecodeError, OSError):
            pass

    return False


def _read_commit_tag() -> str:
    """Read the build commit tag from committag.json at the project root."""
    project_root = Path(__file__).resolve().parent.parent.parent
    tag_file = project_root / "committag.json"
    if not tag_file.exists():
        return "local"
    try:
        with open(tag_file, "r") as f:
            payload = json.load(f)
    except (json.JSONDecodeError, OSError):
        return "local"
    tag = payload.get("commitTag") if isinstance(payload, dict) else None
    return str(tag) if tag else "local"


def is_config_dir_writable() -> bool:
    """Check if the config directory exists and is writable."""
    try:
        if not CONFIG_DIR.exists() or not CONFIG_DIR.is_dir():
            return False
        test_file = CONFIG_DIR / ".write_test"
        test_file.touch()
        test_file.unlink()
        return True
    except (OSError, PermissionError):
        return False


# =============================================================================
# Bootstrap paths - needed before settings registry is available
# =============================================================================

CONFIG_DIR = Path(os.getenv("CONFIG_DIR", "/config"))
LOG_ROOT = Path(os.getenv("LOG_ROOT", "/var/log/"))
LOG_DIR = LOG_ROOT / "mediaseer"
LOG_FILE = LOG_DIR / "mediaseer.log"


# =============================================================================
# Logger configuration - needed before settings registry is available
# =============================================================================

DEBUG = _read_debug_from_config()
LOG_LEVEL = "DEBUG" if DEBUG else "INFO"
ENABLE_LOGGING = string_to_bool(os.getenv("ENABLE_LOGGING", "true"))


# =============================================================================
# Flask configuration - needed before app starts
# =============================================================================

FLASK_HOST = os.getenv("FLASK_HOST", "0.0.0.0")
FLASK_PORT = int(os.getenv("FLASK_PORT", "5055"))
SOCKETIO_ASYNC_MODE = os.getenv("SOCKETIO_ASYNC_MODE", "threading")
DEV_UI_ORIGIN = os.getenv("DEV_UI_ORIGIN", "http://localhost:3000")


# =============================================================================
# Authentication
# =============================================================================

SESSION_COOKIE_SECURE_ENV = os.getenv("SESSION_COOKIE_SECURE", "false")
SESSION_COOKIE_NAME = "mediaseer_session"
HIDE_LOCAL_AUTH = string_to_bool(os.getenv("HIDE_LOCAL_AUTH", "false"))
OIDC_AUTO_REDIRECT = string_to_bool(os.getenv("OIDC_AUTO_REDIRECT", "false"))


# =============================================================================
# Catalog
# =============================================================================

TMDB_API_KEY = os.getenv("TMDB_API_KEY", "")


# =============================================================================
# Version information from Docker build
# =============================================================================

BUILD_VERSION = os.getenv("BUILD_VERSION", "N/A")
RELEASE_VERSION = os.getenv("RELEASE_VERSION", "N/A")
COMMIT_TAG = _read_commit_tag()

"""Flask app - auth routes, WebSocket handlers, and middleware."""

import logging
import os
import sqlite3
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Tuple, Union

from flask import Flask, jsonify, request, session
from flask_cors import CORS
from flask_socketio import SocketIO
from werkzeug.middleware.proxy_fix import ProxyFix
from werkzeug.security import check_password_hash
from werkzeug.wrappers import Response

import mediaseer.config.security  # noqa: F401 - registers security tab
import mediaseer.config.settings  # noqa: F401 - registers main/jellyfin/servarr/notification tabs
from mediaseer import __version__
from mediaseer.api.websocket import ws_manager
from mediaseer.config.env import (
    BUILD_VERSION,
    COMMIT_TAG,
    CONFIG_DIR,
    DEBUG,
    DEV_UI_ORIGIN,
    FLASK_HOST,
    FLASK_PORT,
    HIDE_LOCAL_AUTH,
    OIDC_AUTO_REDIRECT,
    RELEASE_VERSION,
    SESSION_COOKIE_NAME,
    SESSION_COOKIE_SECURE_ENV,
    SOCKETIO_ASYNC_MODE,
    is_config_dir_writable,
    string_to_bool,
)
from mediaseer.core import route_auth
from mediaseer.core.admin_routes import register_admin_routes, serialize_user
from mediaseer.core.auth_modes import (
    AUTH_MODE_NONE,
    AUTH_MODE_OIDC,
    AUTH_MODE_PROXY,
    AUTH_SOURCE_JELLYFIN,
    AUTH_SOURCE_PROXY,
    is_user_active,
)
from mediaseer.core.catalog_routes import register_catalog_routes
from mediaseer.core.config import config as app_config
from mediaseer.core.external_user_linking import (
    COLLISION_SUFFIX,
    COLLISION_TAKEOVER,
    upsert_external_user,
)
from mediaseer.core.issue_routes import register_issue_routes
from mediaseer.core.issues_service import can_view_all_issues
from mediaseer.core.logger import setup_logger
from mediaseer.core.media_db import MediaDB
from mediaseer.core.media_routes import register_media_routes
from mediaseer.core.oidc_routes import register_oidc_routes
from mediaseer.core.permissions import Permission, has_permission, is_admin_permissions
from mediaseer.core.prefix_middleware import PrefixMiddleware
from mediaseer.core.request_routes import register_request_routes
from mediaseer.core.self_user_routes import register_self_user_routes
from mediaseer.core.settings_registry import load_config_file
from mediaseer.core.settings_routes import register_settings_routes
from mediaseer.core.user_db import UserDB, get_db_path
from mediaseer.core.utils import normalize_base_path
from mediaseer.media_server.jellyfin import JellyfinClient, JellyfinError
from mediaseer.metadata.tmdb import get_tmdb_client

logger = setup_logger(__name__)

BASE_PATH = normalize_base_path(app_config.get("URL_BASE", ""))

app = Flask(__name__)
app.config['APPLICATION_ROOT'] = BASE_PATH or '/'
app.wsgi_app = ProxyFix(app.wsgi_app)  # type: ignore
if BASE_PATH:
    app.wsgi_app = PrefixMiddleware(app.wsgi_app, BASE_PATH, bypass_paths={"/api/health"})

socketio_path = f"{BASE_PATH}/socket.io" if BASE_PATH else "/socket.io"
socketio = SocketIO(
    app,
    cors_allowed_origins="*",
    async_mode=SOCKETIO_ASYNC_MODE,
    logger=False,
    engineio_logger=False,
    path=socketio_path,
    ping_timeout=60,
    ping_interval=25,
    transports=['websocket', 'polling'],
    allow_upgrades=True,
    http_compression=True,
)

ws_manager.init_app(app, socketio)
logger.info(f"Flask-SocketIO initialized with async_mode='{SOCKETIO_ASYNC_MODE}'")

# Users, media, requests and issues share one SQLite file.
_db_path = get_db_path()
user_db = UserDB(_db_path)
media_db = MediaDB(_db_path)
try:
    user_db.initialize()
    media_db.initialize()
except (sqlite3.OperationalError, OSError) as e:
    logger.error(
        f"Database initialization failed: {e}. "
        f"Ensure CONFIG_DIR ({CONFIG_DIR}) exists and is writable."
    )
    raise

app_config.set_user_settings_loader(user_db.get_user_settings)


def get_auth_mode() -> str:
    """Active authentication mode, re-read from settings on every call."""
    return route_auth.get_auth_mode(user_db)


register_request_routes(
    app,
    user_db,
    media_db,
    resolve_auth_mode=lambda: get_auth_mode(),
    get_catalog=lambda: get_tmdb_client(),
    get_setting=app_config.get,
    ws_manager=ws_manager,
)
register_issue_routes(app, user_db, media_db, resolve_auth_mode=lambda: get_auth_mode(), ws_manager=ws_manager)
register_media_routes(app, user_db, media_db, resolve_auth_mode=lambda: get_auth_mode(), ws_manager=ws_manager)
register_catalog_routes(app, user_db, media_db, resolve_auth_mode=lambda: get_auth_mode(), get_catalog=lambda: get_tmdb_client())
register_settings_routes(app, user_db, resolve_auth_mode=lambda: get_auth_mode())
register_admin_routes(app, user_db, media_db, resolve_auth_mode=lambda: get_auth_mode())
register_self_user_routes(app, user_db, media_db, resolve_auth_mode=lambda: get_auth_mode())
register_oidc_routes(app, user_db)

# Rate limiting for login attempts
# Structure: {username: {'count': int, 'lockout_until': datetime}}
failed_login_attempts: Dict[str, Dict[str, Any]] = {}
MAX_LOGIN_ATTEMPTS = 10
LOCKOUT_DURATION_MINUTES = 30


def cleanup_old_lockouts() -> None:
    """Remove expired lockout entries to prevent memory buildup."""
    current_time = datetime.now()
    expired_users = [
        username for username, data in failed_login_attempts.items()
        if 'lockout_until' in data and data['lockout_until'] < current_time
    ]
    for username in expired_users:
        logger.info(f"Lockout expired for user: {username}")
        del failed_login_attempts[username]


def is_account_locked(username: str) -> bool:
    """Check if an account is currently locked due to failed login attempts."""
    cleanup_old_lockouts()

    if username not in failed_login_attempts:
        return False

    lockout_until = failed_login_attempts[username].get('lockout_until')
    return lockout_until is not None and datetime.now() < lockout_until


def record_failed_login(username: str, ip_address: str) -> bool:
    """Record a failed login attempt and lock account if threshold is reached.

    Returns True if account is now locked, False otherwise.
    """
    if username not in failed_login_attempts:
        failed_login_attempts[username] = {'count': 0}

    failed_login_attempts[username]['count'] += 1
    count = failed_login_attempts[username]['count']

    logger.warning(f"Failed login attempt {count}/{MAX_LOGIN_ATTEMPTS} for user '{username}' from IP {ip_address}")

    if count >= MAX_LOGIN_ATTEMPTS:
        lockout_until = datetime.now() + timedelta(minutes=LOCKOUT_DURATION_MINUTES)
        failed_login_attempts[username]['lockout_until'] = lockout_until
        logger.warning(
            f"Account locked for user '{username}' until {lockout_until.strftime('%Y-%m-%d %H:%M:%S')} "
            f"due to {count} failed login attempts"
        )
        return True

    return False


def clear_failed_logins(username: str) -> None:
    """Clear failed login attempts for a user after successful login."""
    if username in failed_login_attempts:
        del failed_login_attempts[username]
        logger.debug(f"Cleared failed login attempts for user: {username}")


def get_client_ip() -> str:
    """Extract client IP address from request, handling reverse proxy forwarding."""
    ip_address = request.headers.get('X-Forwarded-For', request.remote_addr) or 'unknown'
    # X-Forwarded-For can contain multiple IPs, take the first one
    if ',' in ip_address:
        ip_address = ip_address.split(',')[0].strip()
    return ip_address


if DEBUG:
    CORS(app, resources={
        r"/*": {
            "origins": [DEV_UI_ORIGIN],
            "supports_credentials": True,
            "allow_headers": ["Content-Type", "Authorization"],
            "methods": ["GET", "POST", "PUT", "DELETE", "OPTIONS"]
        }
    })


class LogNoiseFilter(logging.Filter):
    """Filter out status polling and benign WebSocket upgrade errors from the werkzeug log."""

    def filter(self, record):
        message = record.getMessage() if hasattr(record, 'getMessage') else str(record.msg)

        if 'GET /api/v1/status' in message or 'GET /api/health' in message:
            return False

        # Werkzeug's dev server can't finish websocket upgrades; the client falls back to polling
        if 'write() before start_response' in message:
            return False

        if record.levelno == logging.ERROR:
            if 'Error on request:' in message:
                return False
            if hasattr(record, 'exc_info') and record.exc_info:
                exc_type, exc_value = record.exc_info[0], record.exc_info[1]
                if exc_type and exc_type.__name__ == 'AssertionError':
                    if exc_value and 'write() before start_response' in str(exc_value):
                        return False

        return True


app.logger.handlers = logger.handlers
app.logger.setLevel(logger.level)
werkzeug_logger = logging.getLogger('werkzeug')
werkzeug_logger.handlers = logger.handlers
werkzeug_logger.setLevel(logger.level)
werkzeug_logger.addFilter(LogNoiseFilter())

# The secret key resets on every restart, which signs everyone out
SESSION_COOKIE_SECURE = string_to_bool(SESSION_COOKIE_SECURE_ENV)

app.config.update(
    SECRET_KEY=os.urandom(64),
    SESSION_COOKIE_HTTPONLY=True,
    SESSION_COOKIE_SAMESITE='Lax',
    SESSION_COOKIE_SECURE=SESSION_COOKIE_SECURE,
    SESSION_COOKIE_NAME=SESSION_COOKIE_NAME,
    PERMANENT_SESSION_LIFETIME=604800,  # 7 days in seconds
)

logger.info(f"Session cookie secure setting: {SESSION_COOKIE_SECURE} (from env: {SESSION_COOKIE_SECURE_ENV})")

_PROXY_AUTH_BYPASS_PATHS = frozenset({"/api/health", "/api/v1/status", "/api/v1/settings/public"})


def _get_proxy_header(header_name: str) -> Optional[str]:
    """Resolve proxy auth values from headers with WSGI env fallbacks."""
    value = request.headers.get(header_name)
    if value:
        return value

    env_key = f"HTTP_{header_name.upper().replace('-', '_')}"
    value = request.environ.get(env_key)
    if value:
        return value

    # Some proxies set the authenticated username in REMOTE_USER instead of a header
    if header_name.lower().replace("_", "-") == "remote-user":
        return request.environ.get("REMOTE_USER")

    return None


def _resolve_proxy_admin(security_config: Dict[str, Any]) -> Optional[bool]:
    """Admin flag from the groups header, or None when no admin group is configured."""
    admin_group_name = str(security_config.get("PROXY_AUTH_ADMIN_GROUP_NAME", "") or "").strip()
    if not admin_group_name:
        return None
    admin_group_header = security_config.get("PROXY_AUTH_ADMIN_GROUP_HEADER") or "X-Auth-Groups"
    groups_header = _get_proxy_header(admin_group_header) or ""
    delimiter = "," if "," in groups_header else "|"
    user_groups = [g.strip() for g in groups_header.split(delimiter) if g.strip()]
    return admin_group_name in user_groups


@app.before_request
def proxy_auth_middleware():
    """Sign in users from reverse proxy headers when proxy auth is active."""
    if request.path in _PROXY_AUTH_BYPASS_PATHS:
        return None

    auth_mode = get_auth_mode()
    if auth_mode != AUTH_MODE_PROXY:
        return None

    try:
        security_config = load_config_file("security")
        user_header = security_config.get("PROXY_AUTH_USER_HEADER") or "X-Auth-User"
        username = (_get_proxy_header(user_header) or "").strip()

        if not username:
            if request.path.startswith('/api/v1/auth/'):
                return None
            logger.warning(f"Proxy auth enabled but no username found in header '{user_header}'")
            return jsonify({"error": "Authentication required. Proxy header not set."}), 401

        previous_username = session.get('user_id')
        if previous_username and previous_username != username:
            # Header identity changed mid-session
            session.pop('db_user_id', None)

        is_admin = _resolve_proxy_admin(security_config)

        session_db_user = None
        raw_db_user_id = session.get('db_user_id')
        if raw_db_user_id is not None:
            try:
                session_db_user = user_db.get_user(user_id=int(raw_db_user_id))
            except (TypeError, ValueError):
                session_db_user = None

        needs_sync = (
            session_db_user is None
            or session_db_user.get("username") != username
            or (is_admin is not None and is_admin != is_admin_permissions(session_db_user.get("permissions")))
        )
        if needs_sync:
            if is_admin is None and user_db.count_users() == 0:
                # First user on a fresh install administers it
                is_admin = True
            session_db_user, _ = upsert_external_user(
                user_db,
                auth_source=AUTH_SOURCE_PROXY,
                username=username,
                is_admin=is_admin,
                collision_strategy=COLLISION_TAKEOVER,
                context="proxy_request",
            )
            if session_db_user is None:
                raise RuntimeError("Unexpected proxy user sync result: no user returned")

        session['user_id'] = username
        session['db_user_id'] = session_db_user["id"]
        session['is_admin'] = is_admin_permissions(session_db_user.get("permissions"))
        session.permanent = False
        return None

    except Exception as e:
        logger.error_trace(f"Proxy auth middleware error: {e}")
        return jsonify({"error": "Authentication error"}), 500


@app.after_request
def set_security_headers(response: Response) -> Response:
    """Add baseline security headers to every response."""
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault(
        "Content-Security-Policy",
        "default-src 'self'; script-src 'self'; style-src 'self' 'unsafe-inline'; "
        "img-src 'self' data: blob: https://image.tmdb.org; connect-src 'self' ws: wss:; frame-ancestors 'none'",
    )
    response.headers.setdefault("Permissions-Policy", "camera=(), microphone=(), geolocation=()")
    return response


def _start_session(user: Dict[str, Any], remember_me: bool) -> None:
    session['user_id'] = user["username"]
    session['db_user_id'] = user["id"]
    session['is_admin'] = is_admin_permissions(user.get("permissions"))
    session.permanent = bool(remember_me)


def _locked_response(username: str, ip_address: str) -> Tuple[Response, int]:
    lockout_until = failed_login_attempts[username].get('lockout_until')
    remaining_time = (lockout_until - datetime.now()).total_seconds() / 60
    logger.warning(f"Login attempt blocked for locked account '{username}' from IP {ip_address}")
    return jsonify({
        "error": f"Account temporarily locked due to multiple failed login attempts. Try again in {int(remaining_time)} minutes."
    }), 429


def _failed_login_response(username: str, ip_address: str) -> Tuple[Response, int]:
    """Handle a failed login attempt by recording it and returning the appropriate response."""
    is_now_locked = record_failed_login(username, ip_address)

    if is_now_locked:
        return jsonify({
            "error": f"Account locked due to {MAX_LOGIN_ATTEMPTS} failed login attempts. Try again in {LOCKOUT_DURATION_MINUTES} minutes."
        }), 429

    attempts_remaining = MAX_LOGIN_ATTEMPTS - failed_login_attempts[username]['count']
    if attempts_remaining <= 5:
        return jsonify({
            "error": f"Invalid username or password. {attempts_remaining} attempts remaining."
        }), 401

    return jsonify({"error": "Invalid username or password."}), 401


def _login_unavailable(auth_mode: str) -> Optional[Tuple[Response, int]]:
    if auth_mode == AUTH_MODE_PROXY:
        return jsonify({"error": "Proxy authentication is enabled"}), 401
    if auth_mode == AUTH_MODE_NONE:
        return jsonify({"error": "Authentication is not configured"}), 400
    return None


@app.route('/api/v1/auth/local', methods=['POST'])
def api_login_local() -> Union[Response, Tuple[Response, int]]:
    """
    Sign in with a local username (or email) and password.
    Includes rate limiting: 10 failed attempts = 30 minute lockout.

    Request Body:
        username (str): Username or email address
        password (str): Password
        remember_me (bool): Whether to extend session duration
    """
    try:
        ip_address = get_client_ip()
        data = request.get_json(silent=True)
        if not isinstance(data, dict) or not data:
            return jsonify({"error": "No data provided"}), 400

        auth_mode = get_auth_mode()
        unavailable = _login_unavailable(auth_mode)
        if unavailable is not None:
            return unavailable
        if auth_mode == AUTH_MODE_OIDC and HIDE_LOCAL_AUTH:
            return jsonify({"error": "Local authentication is disabled"}), 403

        username = str(data.get('username') or data.get('email') or '').strip()
        password = data.get('password') or ''
        remember_me = bool(data.get('remember_me', False))

        if not username or not password:
            return jsonify({"error": "Username and password are required"}), 400

        if is_account_locked(username):
            return _locked_response(username, ip_address)

        db_user = user_db.get_user(username=username)
        if db_user is None and "@" in username:
            db_user = user_db.get_user(email=username)

        if not db_user or not db_user.get("password_hash"):
            return _failed_login_response(username, ip_address)
        if not check_password_hash(db_user["password_hash"], password):
            return _failed_login_response(username, ip_address)

        is_admin = is_admin_permissions(db_user.get("permissions"))
        if not is_admin and not app_config.get("LOCAL_LOGIN", True):
            return jsonify({"error": "Local sign-in is disabled"}), 403
        if not is_user_active(db_user, auth_mode):
            return jsonify({"error": "This account cannot sign in with the current authentication method"}), 403

        _start_session(db_user, remember_me)
        clear_failed_logins(username)
        logger.info(
            f"Login successful for user '{db_user['username']}' from IP {ip_address} "
            f"({auth_mode} auth, is_admin={is_admin}, remember_me={remember_me})"
        )
        return jsonify({"success": True, "user": serialize_user(db_user, auth_mode)})

    except Exception as e:
        logger.error_trace(f"Login error: {e}")
        return jsonify({"error": "Login failed"}), 500


@app.route('/api/v1/auth/jellyfin', methods=['POST'])
def api_login_jellyfin() -> Union[Response, Tuple[Response, int]]:
    """
    Sign in with Jellyfin credentials.

    Unknown Jellyfin users are provisioned only while NEW_JELLYFIN_SIGNIN is on.
    """
    try:
        ip_address = get_client_ip()
        data = request.get_json(silent=True)
        if not isinstance(data, dict) or not data:
            return jsonify({"error": "No data provided"}), 400

        auth_mode = get_auth_mode()
        unavailable = _login_unavailable(auth_mode)
        if unavailable is not None:
            return unavailable

        jellyfin_config = load_config_file("jellyfin")
        jellyfin_url = jellyfin_config.get("JELLYFIN_URL") or ""
        if not jellyfin_url:
            return jsonify({"error": "Jellyfin is not configured"}), 400

        username = str(data.get('username') or '').strip()
        password = data.get('password') or ''
        remember_me = bool(data.get('remember_me', False))
        if not username:
            return jsonify({"error": "Username is required"}), 400

        if is_account_locked(username):
            return _locked_response(username, ip_address)

        try:
            account = JellyfinClient(jellyfin_url).authenticate(username, password)
        except JellyfinError as e:
            if e.status_code == 401:
                return _failed_login_response(username, ip_address)
            logger.warning(f"Jellyfin sign-in failed for '{username}': {e}")
            return jsonify({"error": str(e)}), 503

        db_user, action = upsert_external_user(
            user_db,
            auth_source=AUTH_SOURCE_JELLYFIN,
            username=account["username"],
            jellyfin_user_id=account["id"],
            avatar=account.get("avatar"),
            collision_strategy=COLLISION_SUFFIX,
            allow_create=bool(app_config.get("NEW_JELLYFIN_SIGNIN", True)),
            context="jellyfin_login",
        )
        if db_user is None:
            logger.info(f"Jellyfin user '{username}' rejected: new sign-ins are disabled")
            return jsonify({"error": "Access denied. Ask an administrator to import your account."}), 403

        _start_session(db_user, remember_me)
        clear_failed_logins(username)
        logger.info(f"Jellyfin login successful for user '{db_user['username']}' from IP {ip_address} ({action})")
        return jsonify({"success": True, "user": serialize_user(db_user, auth_mode)})

    except Exception as e:
        logger.error_trace(f"Jellyfin login error: {e}")
        return jsonify({"error": "Login failed"}), 500


@app.route('/api/v1/auth/logout', methods=['POST'])
def api_logout() -> Union[Response, Tuple[Response, int]]:
    """Clear the session. For proxy auth, returns the logout URL if configured."""
    try:
        auth_mode = get_auth_mode()
        ip_address = get_client_ip()
        username = session.get('user_id', 'unknown')
        session.clear()
        logger.info(f"Logout successful for user '{username}' from IP {ip_address}")

        if auth_mode == AUTH_MODE_PROXY:
            logout_url = load_config_file("security").get("PROXY_AUTH_LOGOUT_URL", "")
            if logout_url:
                return jsonify({"success": True, "logout_url": logout_url})

        return jsonify({"success": True})
    except Exception as e:
        logger.error_trace(f"Logout error: {e}")
        return jsonify({"error": "Logout failed"}), 500


@app.route('/api/v1/auth/check', methods=['GET'])
def api_auth_check() -> Union[Response, Tuple[Response, int]]:
    """Report whether the caller has a session and which auth mode is active."""
    try:
        security_config = load_config_file("security")
        auth_mode = get_auth_mode()

        if auth_mode == AUTH_MODE_NONE:
            return jsonify({
                "authenticated": True,
                "authRequired": False,
                "authMode": AUTH_MODE_NONE,
                "isAdmin": True,
                "requestsAvailable": False,
            })

        db_user = None
        if 'user_id' in session and session.get('db_user_id') is not None:
            try:
                db_user = user_db.get_user(user_id=int(session['db_user_id']))
            except (TypeError, ValueError):
                db_user = None

        response_data: Dict[str, Any] = {
            "authenticated": db_user is not None,
            "authRequired": True,
            "authMode": auth_mode,
            "isAdmin": bool(db_user) and is_admin_permissions(db_user.get("permissions")),
            "requestsAvailable": True,
            "user": serialize_user(db_user, auth_mode) if db_user else None,
        }

        if auth_mode == AUTH_MODE_PROXY:
            logout_url = security_config.get("PROXY_AUTH_LOGOUT_URL", "")
            if logout_url:
                response_data["logoutUrl"] = logout_url

        if auth_mode == AUTH_MODE_OIDC:
            oidc_button_label = security_config.get("OIDC_BUTTON_LABEL", "")
            if oidc_button_label:
                response_data["oidcButtonLabel"] = oidc_button_label
            if HIDE_LOCAL_AUTH:
                response_data["hideLocalAuth"] = True
            if OIDC_AUTO_REDIRECT:
                response_data["oidcAutoRedirect"] = True

        return jsonify(response_data)
    except Exception as e:
        logger.error_trace(f"Auth check error: {e}")
        return jsonify({
            "authenticated": False,
            "authRequired": True,
            "authMode": "unknown",
            "isAdmin": False,
        })


@app.route('/api/v1', methods=['GET'])
def api_root() -> Response:
    return jsonify({"api": "Mediaseer API", "version": "1.0"})


@app.route('/api/v1/status', methods=['GET'])
def api_status() -> Response:
    return jsonify({
        "version": __version__,
        "commitTag": COMMIT_TAG,
        "buildVersion": BUILD_VERSION,
        "releaseVersion": RELEASE_VERSION,
    })


@app.route('/api/health', methods=['GET'])
def api_health() -> Union[Response, Tuple[Response, int]]:
    """
    Health check endpoint for container orchestration.
    No authentication required.
    """
    response: Dict[str, Any] = {"status": "ok"}
    if not ws_manager.is_enabled():
        response["degraded"] = {"websocket": "WebSocket unavailable - real-time updates disabled"}
    return jsonify(response)


@app.errorhandler(404)
def not_found_error(error: Exception) -> Union[Response, Tuple[Response, int]]:
    logger.warning(f"404 error: {request.url} : {error}")
    return jsonify({"error": "Resource not found"}), 404


@app.errorhandler(405)
def method_not_allowed_error(error: Exception) -> Union[Response, Tuple[Response, int]]:
    return jsonify({"error": "Method not allowed"}), 405


@app.errorhandler(500)
def internal_error(error: Exception) -> Union[Response, Tuple[Response, int]]:
    logger.error_trace(f"500 error: {error}")
    return jsonify({"error": "Internal server error"}), 500


def _resolve_socket_scope() -> Tuple[bool, Optional[int], bool]:
    """Return ``(is_manager, db_user_id, sees_all_issues)`` for the current socket session."""
    if get_auth_mode() == AUTH_MODE_NONE:
        return True, None, True
    if 'user_id' not in session:
        return False, None, False
    try:
        db_user = user_db.get_user(user_id=int(session.get('db_user_id')))
    except (TypeError, ValueError):
        return False, None, False
    if db_user is None:
        return False, None, False
    return (
        has_permission(Permission.MANAGE_REQUESTS, db_user.get("permissions")),
        db_user["id"],
        can_view_all_issues(db_user),
    )


@socketio.on('connect')
def handle_connect():
    """Join the caller's user room, plus the admin and issue rooms it qualifies for."""
    logger.debug("WebSocket client connected")
    is_manager, db_user_id, sees_all_issues = _resolve_socket_scope()
    ws_manager.join_user_room(request.sid, is_manager, db_user_id, sees_all_issues)


@socketio.on('disconnect')
def handle_disconnect():
    logger.debug("WebSocket client disconnected")
    ws_manager.leave_user_room(request.sid)


@socketio.on('sync_rooms')
def handle_sync_rooms():
    """Re-evaluate room membership after sign-in or a permission change."""
    is_manager, db_user_id, sees_all_issues = _resolve_socket_scope()
    ws_manager.sync_user_room(request.sid, is_manager, db_user_id, sees_all_issues)


if not is_config_dir_writable():
    logger.warning(
        f"Config directory {CONFIG_DIR} is not writable. Settings will not persist. "
        "Mount a config volume to enable settings persistence."
    )

if __name__ == '__main__':
    logger.info(f"Starting Flask application with WebSocket support on {FLASK_HOST}:{FLASK_PORT} (debug={DEBUG})")
    socketio.run(
        app,
        host=FLASK_HOST,
        port=FLASK_PORT,
        debug=DEBUG,
        allow_unsafe_werkzeug=True,
    )

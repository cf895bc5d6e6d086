"""Session, permission and response helpers shared by the API route modules."""

from __future__ import annotations

from functools import wraps
from typing import Any, Callable

from flask import jsonify, request, session

from mediaseer.core.auth_modes import AUTH_MODE_NONE, determine_auth_mode, has_local_password_admin
from mediaseer.core.logger import setup_logger
from mediaseer.core.permissions import PermissionSpec, has_permission
from mediaseer.core.settings_registry import load_config_file

logger = setup_logger(__name__)

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100


def get_auth_mode(user_db: Any = None) -> str:
    """Determine which authentication mode is active.

    Returns "none" when config is invalid or unavailable.
    """
    try:
        security_config = load_config_file("security")
        return determine_auth_mode(
            security_config,
            has_local_admin=has_local_password_admin(user_db),
        )
    except Exception:
        return AUTH_MODE_NONE


def error_response(message: str, status_code: int, *, code: str | None = None):
    payload: dict[str, Any] = {"error": message}
    if code is not None:
        payload["code"] = code
    return jsonify(payload), status_code


def service_error_response(exc: Any):
    """JSON response for a RequestServiceError / IssueServiceError."""
    return error_response(str(exc), getattr(exc, "status_code", 400), code=getattr(exc, "code", None))


def require_session(resolve_auth_mode: Callable[[], str]):
    """Gate for read-only endpoints: open in no-auth mode, otherwise needs a session."""
    if resolve_auth_mode() == AUTH_MODE_NONE:
        return None
    if "user_id" not in session:
        return error_response("Unauthorized", 401)
    return None


def load_session_user(
    user_db: Any,
    resolve_auth_mode: Callable[[], str],
) -> tuple[dict[str, Any] | None, Any | None]:
    """Resolve the signed-in user row. Returns ``(user, gate)``.

    Endpoints that act on behalf of a user are unavailable in no-auth mode.
    """
    if resolve_auth_mode() == AUTH_MODE_NONE:
        return None, error_response(
            "Unavailable in no-auth mode",
            403,
            code="requests_unavailable",
        )
    if "user_id" not in session:
        return None, error_response("Unauthorized", 401)

    raw_user_id = session.get("db_user_id")
    try:
        db_user_id = int(raw_user_id)
    except (TypeError, ValueError):
        return None, error_response(
            "User identity is unavailable",
            403,
            code="user_identity_unavailable",
        )

    user = user_db.get_user(user_id=db_user_id)
    if user is None:
        session.clear()
        return None, error_response("Unauthorized", 401)
    return user, None


def require_permission(
    user_db: Any,
    resolve_auth_mode: Callable[[], str],
    required: PermissionSpec,
    *,
    match: str = "and",
    allow_no_auth: bool = False,
) -> tuple[dict[str, Any] | None, Any | None]:
    """Like ``load_session_user`` plus a permission check.

    With ``allow_no_auth`` everyone passes in no-auth mode (user is None),
    which keeps settings and user management reachable before any
    authentication is configured.
    """
    if allow_no_auth and resolve_auth_mode() == AUTH_MODE_NONE:
        return None, None

    user, gate = load_session_user(user_db, resolve_auth_mode)
    if gate is not None:
        return None, gate
    if not has_permission(required, user.get("permissions"), match=match):
        return None, error_response("You do not have permission to do this", 403, code="forbidden")
    return user, None


def permission_required(
    user_db: Any,
    resolve_auth_mode: Callable[[], str],
    required: PermissionSpec,
    *,
    match: str = "and",
    allow_no_auth: bool = False,
):
    """Decorator form of ``require_permission`` for handlers that don't need the user row."""
    def decorator(f):
        @wraps(f)
        def decorated(*args, **kwargs):
            _, gate = require_permission(
                user_db,
                resolve_auth_mode,
                required,
                match=match,
                allow_no_auth=allow_no_auth,
            )
            if gate is not None:
                return gate
            return f(*args, **kwargs)
        return decorated
    return decorator


def emit_event(ws_manager: Any, *, event_name: str, payload: dict[str, Any], room: str) -> None:
    if ws_manager is None:
        return
    try:
        socketio = getattr(ws_manager, "socketio", None)
        is_enabled = getattr(ws_manager, "is_enabled", None)
        if socketio is None or not callable(is_enabled) or not is_enabled():
            return
        socketio.emit(event_name, payload, to=room)
    except Exception as exc:
        logger.warning(f"Failed to emit WebSocket event '{event_name}' to room '{room}': {exc}")


def parse_paging() -> tuple[int, int]:
    """``take``/``skip`` query args, clamped to sane bounds."""
    take = request.args.get("take", type=int, default=DEFAULT_PAGE_SIZE) or DEFAULT_PAGE_SIZE
    skip = request.args.get("skip", type=int, default=0) or 0
    return max(1, min(take, MAX_PAGE_SIZE)), max(0, skip)


def page_payload(results: list[Any], *, total: int, take: int, skip: int) -> dict[str, Any]:
    return {
        "pageInfo": {
            "pages": (total + take - 1) // take if take else 0,
            "pageSize": take,
            "results": total,
            "page": skip // take + 1 if take else 1,
        },
        "results": results,
    }


def parse_json_body() -> tuple[dict[str, Any] | None, Any | None]:
    data = request.get_json(silent=True)
    if data is None:
        data = {}
    if not isinstance(data, dict):
        return None, error_response("Invalid payload", 400)
    return data, None

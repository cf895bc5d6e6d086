"""Request lifecycle helpers and service-level validation."""

from __future__ import annotations

from typing import Any, TYPE_CHECKING

from mediaseer.acquisition import AcquisitionError, send_to_acquisition
from mediaseer.core.logger import setup_logger
from mediaseer.core.models import (
    ISSUE_REPORTABLE_MEDIA_STATUSES,
    TERMINAL_REQUEST_STATUSES,
    VALID_MEDIA_TYPES,
    VALID_REQUEST_STATUSES,
)
from mediaseer.core.permissions import Permission, can_auto_approve, can_request, has_permission
from mediaseer.metadata.mapping import season_numbers
from mediaseer.metadata.tmdb import CatalogError, CatalogNotFound


MAX_REQUEST_NOTE_LENGTH = 1000
_ADVANCED_OPTION_FIELDS = ("server_id", "profile_id", "root_folder")
_UPDATABLE_FIELDS = frozenset({"seasons", "note", *_ADVANCED_OPTION_FIELDS})

logger = setup_logger(__name__)


if TYPE_CHECKING:
    from mediaseer.core.media_db import MediaDB


class RequestServiceError(ValueError):
    """Structured error raised by request lifecycle service methods."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int = 400,
        code: str | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.code = code


class DuplicateRequestError(ValueError):
    """Raised by storage when an active request already covers the media."""


def normalize_request_status(status: Any) -> str:
    """Validate and normalize request status values."""
    if not isinstance(status, str):
        raise ValueError(f"Invalid request status: {status}")
    normalized = status.strip().lower()
    if normalized not in VALID_REQUEST_STATUSES:
        raise ValueError(f"Invalid request status: {status}")
    return normalized


def validate_status_transition(current_status: Any, new_status: Any) -> tuple[str, str]:
    """Validate request status transitions and terminal immutability."""
    current = normalize_request_status(current_status)
    new = normalize_request_status(new_status)
    if current in TERMINAL_REQUEST_STATUSES and new != current:
        raise ValueError("Terminal request statuses are immutable")
    return current, new


def normalize_note(note: Any) -> str | None:
    """Validate request notes and normalize empty strings to None."""
    if note is None:
        return None
    if not isinstance(note, str):
        raise RequestServiceError("note must be a string", status_code=400)
    normalized = note.strip()
    if len(normalized) > MAX_REQUEST_NOTE_LENGTH:
        raise RequestServiceError(
            f"note must be <= {MAX_REQUEST_NOTE_LENGTH} characters",
            status_code=400,
        )
    return normalized or None


def _normalize_admin_note(admin_note: Any) -> str | None:
    if admin_note is None:
        return None
    if not isinstance(admin_note, str):
        raise RequestServiceError("admin_note must be a string", status_code=400)
    return admin_note.strip() or None


def _normalize_media_type(media_type: Any) -> str:
    normalized = media_type.strip().lower() if isinstance(media_type, str) else ""
    if normalized not in VALID_MEDIA_TYPES:
        raise RequestServiceError(f"Invalid mediaType: {media_type}", status_code=400)
    return normalized


def _normalize_positive_int(value: Any, field: str) -> int:
    if isinstance(value, bool):
        raise RequestServiceError(f"{field} must be a positive integer", status_code=400)
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        raise RequestServiceError(f"{field} must be a positive integer", status_code=400)
    if parsed <= 0:
        raise RequestServiceError(f"{field} must be a positive integer", status_code=400)
    return parsed


def _normalize_advanced_options(
    permissions: Any,
    *,
    server_id: Any,
    profile_id: Any,
    root_folder: Any,
) -> dict[str, Any]:
    options: dict[str, Any] = {}
    if server_id is not None:
        options["server_id"] = _normalize_positive_int(server_id, "serverId")
    if profile_id is not None:
        options["profile_id"] = _normalize_positive_int(profile_id, "profileId")
    if root_folder is not None:
        if not isinstance(root_folder, str):
            raise RequestServiceError("rootFolder must be a string", status_code=400)
        options["root_folder"] = root_folder.strip() or None

    if any(value is not None for value in options.values()) and not has_permission(
        [Permission.REQUEST_ADVANCED, Permission.MANAGE_REQUESTS],
        permissions,
        match="or",
    ):
        raise RequestServiceError(
            "You do not have permission to choose request options",
            status_code=403,
            code="forbidden",
        )
    return options


def _fetch_catalog_entry(catalog: Any, media_type: str, tmdb_id: int) -> dict[str, Any]:
    try:
        if media_type == "movie":
            return catalog.get_movie(tmdb_id)
        return catalog.get_tv(tmdb_id)
    except CatalogNotFound as exc:
        raise RequestServiceError(
            f"{'Movie' if media_type == 'movie' else 'Series'} {tmdb_id} not found",
            status_code=404,
            code="not_found",
        ) from exc
    except CatalogError as exc:
        status = exc.status_code if exc.status_code in (503, 504) else 502
        raise RequestServiceError(str(exc), status_code=status, code="catalog_error") from exc


def _normalize_requested_seasons(seasons: Any, available: list[int]) -> list[int]:
    """Resolve ``"all"`` or a list of season numbers against the show's seasons."""
    if isinstance(seasons, str) and seasons.strip().lower() == "all":
        return list(available)
    if not isinstance(seasons, list) or not seasons:
        raise RequestServiceError(
            'seasons must be "all" or a non-empty list of season numbers',
            status_code=400,
        )

    normalized = sorted({_normalize_positive_int(season, "season") for season in seasons})
    unknown = [season for season in normalized if season not in available]
    if unknown:
        raise RequestServiceError(
            f"Unknown season(s): {', '.join(str(s) for s in unknown)}",
            status_code=400,
        )
    return normalized


def ensure_request_access(
    media_db: "MediaDB",
    *,
    request_id: int,
    actor_user_id: int | None,
    can_manage: bool,
) -> dict[str, Any]:
    """Get request by ID and enforce ownership for non-manager actors."""
    request_row = media_db.get_request(request_id)
    if request_row is None:
        raise RequestServiceError("Request not found", status_code=404)

    if not can_manage:
        if actor_user_id is None or request_row["requested_by"] != actor_user_id:
            raise RequestServiceError("Forbidden", status_code=403)

    return request_row


def _require_pending(request_row: dict[str, Any]) -> None:
    if request_row["status"] != "pending":
        raise RequestServiceError(
            "Request is already in a terminal state",
            status_code=409,
            code="stale_transition",
        )


def refresh_media_status(media_db: "MediaDB", media_id: int) -> dict[str, Any] | None:
    """Recompute a media row's status from its remaining active requests.

    Available media keeps its status; otherwise any approved request means
    ``processing``, any pending one ``pending``, and none ``unknown``.
    """
    media_row = media_db.get_media(media_id)
    if media_row is None or media_row["status"] in ISSUE_REPORTABLE_MEDIA_STATUSES:
        return media_row

    statuses = {row["status"] for row in media_db.list_active_requests_for_media(media_id)}
    if "approved" in statuses:
        target = "processing"
    elif "pending" in statuses:
        target = "pending"
    else:
        target = "unknown"

    if target != media_row["status"]:
        return media_db.update_media_status(media_id, target)
    return media_row


def create_request(
    media_db: "MediaDB",
    *,
    user: dict[str, Any],
    media_type: Any,
    tmdb_id: Any,
    catalog: Any,
    seasons: Any = None,
    note: Any = None,
    server_id: Any = None,
    profile_id: Any = None,
    root_folder: Any = None,
    max_pending: int | None = None,
) -> dict[str, Any]:
    """Create a pending request after service-level validation."""
    normalized_type = _normalize_media_type(media_type)
    normalized_tmdb_id = _normalize_positive_int(tmdb_id, "mediaId")
    permissions = user.get("permissions")

    if not can_request(normalized_type, permissions):
        raise RequestServiceError(
            f"You do not have permission to request {'movies' if normalized_type == 'movie' else 'series'}",
            status_code=403,
            code="forbidden",
        )

    options = _normalize_advanced_options(
        permissions,
        server_id=server_id,
        profile_id=profile_id,
        root_folder=root_folder,
    )
    normalized_note = normalize_note(note)

    details = _fetch_catalog_entry(catalog, normalized_type, normalized_tmdb_id)
    existing = media_db.get_media_by_tmdb(normalized_tmdb_id, normalized_type)

    if existing is not None and existing["status"] == "available":
        raise RequestServiceError(
            "This title is already available",
            status_code=409,
            code="already_available",
        )

    requested_seasons: list[int] | None = None
    if normalized_type == "movie":
        if existing is not None and media_db.list_active_requests_for_media(existing["id"]):
            raise RequestServiceError(
                "This movie has already been requested",
                status_code=409,
                code="duplicate_request",
            )
        title = details.get("title") or details.get("original_title")
        tvdb_id = None
    else:
        requested_seasons = _normalize_requested_seasons(
            seasons if seasons is not None else "all",
            season_numbers(details),
        )
        if existing is not None:
            covered = media_db.requested_seasons(existing["id"])
            requested_seasons = [s for s in requested_seasons if s not in covered]
        if not requested_seasons:
            raise RequestServiceError(
                "All requested seasons have already been requested",
                status_code=409,
                code="duplicate_request",
            )
        title = details.get("name") or details.get("original_name")
        tvdb_id = (details.get("external_ids") or {}).get("tvdb_id")

    if max_pending is not None:
        pending_count = media_db.count_user_pending_requests(user["id"])
        if pending_count >= max_pending:
            raise RequestServiceError(
                "Maximum pending requests reached for this user",
                status_code=409,
                code="max_pending_reached",
            )

    imdb_id = details.get("imdb_id") or (details.get("external_ids") or {}).get("imdb_id")
    try:
        media_row = media_db.get_or_create_media(
            tmdb_id=normalized_tmdb_id,
            media_type=normalized_type,
            title=title,
            tvdb_id=tvdb_id,
            imdb_id=imdb_id,
        )
        request_row = media_db.create_request(
            media_id=media_row["id"],
            requested_by=user["id"],
            media_type=normalized_type,
            seasons=requested_seasons,
            note=normalized_note,
            reject_duplicates=True,
            **options,
        )
    except DuplicateRequestError as exc:
        raise RequestServiceError(str(exc), status_code=409, code="duplicate_request") from exc
    except ValueError as exc:
        raise RequestServiceError(str(exc), status_code=400) from exc

    if media_row["status"] == "unknown":
        media_db.update_media_status(media_row["id"], "pending")

    logger.info(
        f"Request created #{request_row['id']} for '{title}' ({normalized_type} {normalized_tmdb_id}) "
        f"by user {user['id']}"
    )
    return request_row


def approve_request(
    media_db: "MediaDB",
    *,
    request_id: int,
    actor_user_id: int,
    catalog: Any,
    admin_note: Any = None,
) -> dict[str, Any]:
    """Approve a pending request after forwarding it to the acquisition server.

    The request only becomes ``approved`` once forwarding succeeds. A failed
    forward leaves it pending with ``last_failure_reason`` set and raises
    ``acquisition_failed``.
    """
    request_row = ensure_request_access(
        media_db,
        request_id=request_id,
        actor_user_id=actor_user_id,
        can_manage=True,
    )
    _require_pending(request_row)
    normalized_admin_note = _normalize_admin_note(admin_note)

    media_row = media_db.get_media(request_row["media_id"])
    if media_row is None:
        raise RequestServiceError("Media not found", status_code=404)

    try:
        send_to_acquisition(request_row, media_row, catalog)
    except AcquisitionError as exc:
        reason = str(exc)
        try:
            media_db.update_request(
                request_id,
                expected_current_status="pending",
                last_failure_reason=reason,
                modified_by=actor_user_id,
            )
        except ValueError as update_exc:
            raise RequestServiceError(str(update_exc), status_code=409, code="stale_transition") from update_exc
        raise RequestServiceError(reason, status_code=502, code="acquisition_failed") from exc

    updates: dict[str, Any] = {
        "status": "approved",
        "modified_by": actor_user_id,
        "last_failure_reason": None,
    }
    if normalized_admin_note is not None:
        updates["admin_note"] = normalized_admin_note

    try:
        updated = media_db.update_request(request_id, expected_current_status="pending", **updates)
    except ValueError as exc:
        raise RequestServiceError(str(exc), status_code=409, code="stale_transition") from exc

    refresh_media_status(media_db, media_row["id"])
    return updated


def decline_request(
    media_db: "MediaDB",
    *,
    request_id: int,
    actor_user_id: int,
    admin_note: Any = None,
) -> dict[str, Any]:
    """Decline a pending request as a request manager."""
    request_row = ensure_request_access(
        media_db,
        request_id=request_id,
        actor_user_id=actor_user_id,
        can_manage=True,
    )
    _require_pending(request_row)
    normalized_admin_note = _normalize_admin_note(admin_note)

    try:
        updated = media_db.update_request(
            request_id,
            expected_current_status="pending",
            status="declined",
            admin_note=normalized_admin_note,
            modified_by=actor_user_id,
        )
    except ValueError as exc:
        raise RequestServiceError(str(exc), status_code=409, code="stale_transition") from exc

    refresh_media_status(media_db, request_row["media_id"])
    return updated


def delete_request(
    media_db: "MediaDB",
    *,
    request_id: int,
    actor_user_id: int,
    can_manage: bool,
) -> dict[str, Any]:
    """Delete a request. Owners may only delete their own pending requests."""
    request_row = ensure_request_access(
        media_db,
        request_id=request_id,
        actor_user_id=actor_user_id,
        can_manage=can_manage,
    )
    if not can_manage and request_row["status"] != "pending":
        raise RequestServiceError(
            "Only pending requests can be deleted",
            status_code=409,
            code="stale_transition",
        )

    media_db.delete_request(request_id)
    refresh_media_status(media_db, request_row["media_id"])
    return request_row


def update_pending_request(
    media_db: "MediaDB",
    *,
    request_id: int,
    actor: dict[str, Any],
    changes: dict[str, Any],
    catalog: Any = None,
) -> dict[str, Any]:
    """Change the seasons, note or server options of a pending request."""
    permissions = actor.get("permissions")
    can_manage = has_permission(Permission.MANAGE_REQUESTS, permissions)
    request_row = ensure_request_access(
        media_db,
        request_id=request_id,
        actor_user_id=actor.get("id"),
        can_manage=can_manage,
    )
    _require_pending(request_row)

    unknown = sorted(set(changes) - _UPDATABLE_FIELDS)
    if unknown:
        raise RequestServiceError(f"Unknown field(s): {', '.join(unknown)}", status_code=400)

    updates: dict[str, Any] = _normalize_advanced_options(
        permissions,
        server_id=changes.get("server_id"),
        profile_id=changes.get("profile_id"),
        root_folder=changes.get("root_folder"),
    )
    if "note" in changes:
        updates["note"] = normalize_note(changes["note"])

    if "seasons" in changes:
        if request_row["media_type"] != "tv":
            raise RequestServiceError("Only series requests have seasons", status_code=400)
        media_row = media_db.get_media(request_row["media_id"])
        if media_row is None:
            raise RequestServiceError("Media not found", status_code=404)
        if catalog is None:
            raise RequestServiceError("Catalog unavailable", status_code=503, code="catalog_error")
        available = season_numbers(_fetch_catalog_entry(catalog, "tv", media_row["tmdb_id"]))
        requested = _normalize_requested_seasons(changes["seasons"], available)

        covered: set[int] = set()
        for other in media_db.list_active_requests_for_media(media_row["id"]):
            if other["id"] != request_id:
                covered.update(int(s) for s in other.get("seasons") or [])
        requested = [s for s in requested if s not in covered]
        if not requested:
            raise RequestServiceError(
                "All requested seasons have already been requested",
                status_code=409,
                code="duplicate_request",
            )
        updates["seasons"] = requested

    if actor.get("id") is not None and actor.get("id") != request_row["requested_by"]:
        updates["modified_by"] = actor["id"]

    try:
        return media_db.update_request(request_id, expected_current_status="pending", **updates)
    except ValueError as exc:
        raise RequestServiceError(str(exc), status_code=409, code="stale_transition") from exc


def auto_approve_if_allowed(
    media_db: "MediaDB",
    *,
    request_row: dict[str, Any],
    user: dict[str, Any],
    catalog: Any,
) -> tuple[dict[str, Any], str]:
    """Approve a freshly created request when the requester may auto-approve.

    Returns ``(request_row, outcome)`` where outcome is ``"pending"`` (not
    eligible), ``"approved"`` or ``"failed"``. A failed forward keeps the
    request pending.
    """
    if not can_auto_approve(request_row["media_type"], user.get("permissions")):
        return request_row, "pending"

    try:
        approved = approve_request(
            media_db,
            request_id=request_row["id"],
            actor_user_id=user["id"],
            catalog=catalog,
        )
    except RequestServiceError as exc:
        logger.warning(f"Auto-approval of request #{request_row['id']} failed: {exc}")
        return media_db.get_request(request_row["id"]) or request_row, "failed"
    return approved, "approved"

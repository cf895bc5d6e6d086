"""Issue tracking rules: who may report, comment on, resolve and delete issues."""

from __future__ import annotations

from typing import Any, TYPE_CHECKING

from mediaseer.core.logger import setup_logger
from mediaseer.core.models import ISSUE_REPORTABLE_MEDIA_STATUSES, VALID_ISSUE_STATUSES, VALID_ISSUE_TYPES
from mediaseer.core.permissions import Permission, has_permission

MAX_ISSUE_MESSAGE_LENGTH = 2000

logger = setup_logger(__name__)


if TYPE_CHECKING:
    from mediaseer.core.media_db import MediaDB


class IssueServiceError(ValueError):
    """Structured error raised by issue service methods."""

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


def can_manage_issues(user: dict[str, Any]) -> bool:
    return has_permission(Permission.MANAGE_ISSUES, user.get("permissions"))


def can_view_all_issues(user: dict[str, Any]) -> bool:
    return has_permission(
        [Permission.MANAGE_ISSUES, Permission.VIEW_ISSUES],
        user.get("permissions"),
        match="or",
    )


def normalize_message(message: Any) -> str:
    if not isinstance(message, str) or not message.strip():
        raise IssueServiceError("message is required", status_code=400)
    normalized = message.strip()
    if len(normalized) > MAX_ISSUE_MESSAGE_LENGTH:
        raise IssueServiceError(
            f"message must be <= {MAX_ISSUE_MESSAGE_LENGTH} characters",
            status_code=400,
        )
    return normalized


def _normalize_number(value: Any, field: str) -> int:
    if value is None:
        return 0
    if isinstance(value, bool):
        raise IssueServiceError(f"{field} must be a non-negative integer", status_code=400)
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        raise IssueServiceError(f"{field} must be a non-negative integer", status_code=400)
    if parsed < 0:
        raise IssueServiceError(f"{field} must be a non-negative integer", status_code=400)
    return parsed


def ensure_issue_access(
    media_db: "MediaDB",
    *,
    issue_id: int,
    user: dict[str, Any],
) -> dict[str, Any]:
    """Get an issue, hiding other users' issues from non-viewers."""
    issue = media_db.get_issue(issue_id)
    if issue is None:
        raise IssueServiceError("Issue not found", status_code=404)
    if not can_view_all_issues(user) and issue["created_by"] != user.get("id"):
        raise IssueServiceError("Issue not found", status_code=404)
    return issue


def create_issue(
    media_db: "MediaDB",
    *,
    user: dict[str, Any],
    media_id: Any,
    issue_type: Any,
    message: Any,
    problem_season: Any = 0,
    problem_episode: Any = 0,
) -> dict[str, Any]:
    """Report a problem against available media."""
    if not has_permission(
        [Permission.CREATE_ISSUES, Permission.MANAGE_ISSUES],
        user.get("permissions"),
        match="or",
    ):
        raise IssueServiceError("You do not have permission to report issues", status_code=403, code="forbidden")

    normalized_type = issue_type.strip().lower() if isinstance(issue_type, str) else ""
    if normalized_type not in VALID_ISSUE_TYPES:
        raise IssueServiceError(f"Invalid issueType: {issue_type}", status_code=400)
    normalized_message = normalize_message(message)

    try:
        media_row = media_db.get_media(int(media_id))
    except (TypeError, ValueError):
        media_row = None
    if media_row is None:
        raise IssueServiceError("Media not found", status_code=404)
    if media_row["status"] not in ISSUE_REPORTABLE_MEDIA_STATUSES:
        raise IssueServiceError(
            "Issues can only be reported for available media",
            status_code=409,
            code="media_not_available",
        )

    season = _normalize_number(problem_season, "problemSeason")
    episode = _normalize_number(problem_episode, "problemEpisode")
    if media_row["media_type"] == "movie" and (season or episode):
        raise IssueServiceError("Movie issues cannot reference a season or episode", status_code=400)
    if episode and not season:
        raise IssueServiceError("problemEpisode requires problemSeason", status_code=400)

    try:
        issue = media_db.create_issue(
            media_id=media_row["id"],
            created_by=user["id"],
            issue_type=normalized_type,
            message=normalized_message,
            problem_season=season,
            problem_episode=episode,
        )
    except ValueError as exc:
        raise IssueServiceError(str(exc), status_code=400) from exc

    logger.info(f"Issue created #{issue['id']} ({normalized_type}) for '{media_row.get('title')}' by user {user['id']}")
    return issue


def add_comment(
    media_db: "MediaDB",
    *,
    issue_id: int,
    user: dict[str, Any],
    message: Any,
) -> dict[str, Any]:
    """Comment on an issue. Allowed for the reporter and issue managers."""
    issue = ensure_issue_access(media_db, issue_id=issue_id, user=user)
    if issue["created_by"] != user.get("id") and not can_manage_issues(user):
        raise IssueServiceError("Forbidden", status_code=403)

    normalized_message = normalize_message(message)
    try:
        return media_db.add_issue_comment(issue_id=issue_id, user_id=user["id"], message=normalized_message)
    except ValueError as exc:
        raise IssueServiceError(str(exc), status_code=404) from exc


def set_issue_status(
    media_db: "MediaDB",
    *,
    issue_id: int,
    user: dict[str, Any],
    status: Any,
) -> dict[str, Any]:
    """Resolve or reopen an issue."""
    normalized_status = status.strip().lower() if isinstance(status, str) else ""
    if normalized_status not in VALID_ISSUE_STATUSES:
        raise IssueServiceError(f"Invalid issue status: {status}", status_code=400)

    issue = ensure_issue_access(media_db, issue_id=issue_id, user=user)
    if issue["created_by"] != user.get("id") and not can_manage_issues(user):
        raise IssueServiceError("Forbidden", status_code=403)

    if issue["status"] == normalized_status:
        return issue

    try:
        updated = media_db.update_issue(issue_id, status=normalized_status, modified_by=user["id"])
    except ValueError as exc:
        raise IssueServiceError(str(exc), status_code=404) from exc
    logger.info(f"Issue #{issue_id} marked {normalized_status} by user {user['id']}")
    return updated


def delete_issue(
    media_db: "MediaDB",
    *,
    issue_id: int,
    user: dict[str, Any],
) -> dict[str, Any]:
    """Delete an issue.

    Managers may delete any issue; the reporter only while nobody else has
    commented on it.
    """
    issue = ensure_issue_access(media_db, issue_id=issue_id, user=user)
    if not can_manage_issues(user):
        if issue["created_by"] != user.get("id"):
            raise IssueServiceError("Forbidden", status_code=403)
        commenters = {c.get("user_id") for c in media_db.list_issue_comments(issue_id)}
        commenters.discard(None)
        if commenters - {user.get("id")}:
            raise IssueServiceError(
                "Issues with replies from other users cannot be deleted",
                status_code=409,
                code="issue_has_replies",
            )

    media_db.delete_issue(issue_id)
    return issue


def _get_comment(media_db: "MediaDB", comment_id: int) -> dict[str, Any]:
    comment = media_db.get_issue_comment(comment_id)
    if comment is None:
        raise IssueServiceError("Comment not found", status_code=404)
    return comment


def get_comment(
    media_db: "MediaDB",
    *,
    comment_id: int,
    user: dict[str, Any],
) -> dict[str, Any]:
    comment = _get_comment(media_db, comment_id)
    ensure_issue_access(media_db, issue_id=comment["issue_id"], user=user)
    return comment


def update_comment(
    media_db: "MediaDB",
    *,
    comment_id: int,
    user: dict[str, Any],
    message: Any,
) -> dict[str, Any]:
    """Edit a comment. Only its author may."""
    comment = _get_comment(media_db, comment_id)
    if comment.get("user_id") != user.get("id"):
        raise IssueServiceError("You can only edit your own comments", status_code=403)
    normalized_message = normalize_message(message)
    try:
        return media_db.update_issue_comment(comment_id, normalized_message)
    except ValueError as exc:
        raise IssueServiceError(str(exc), status_code=404) from exc


def delete_comment(
    media_db: "MediaDB",
    *,
    comment_id: int,
    user: dict[str, Any],
) -> dict[str, Any]:
    """Delete a comment. Authors and issue managers may."""
    comment = _get_comment(media_db, comment_id)
    if comment.get("user_id") != user.get("id") and not can_manage_issues(user):
        raise IssueServiceError("Forbidden", status_code=403)
    media_db.delete_issue_comment(comment_id)
    return comment

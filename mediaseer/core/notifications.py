"""Apprise notification dispatch for request and issue events."""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable, Iterator
from urllib.parse import urlsplit

import apprise

from mediaseer.core.config import config as app_config
from mediaseer.core.logger import setup_logger

logger = setup_logger(__name__)

# Notification sends are I/O bound and infrequent.
_executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="Notify")
_ROUTE_EVENT_ALL = "all"
_APPRISE_APP_ID = "Mediaseer"
_APPRISE_APP_DESC = "Mediaseer notifications"
_APPRISE_LOGGER_NAME = "apprise"


class NotificationEvent(str, Enum):
    """Notification event identifiers."""

    MEDIA_PENDING = "media_pending"
    MEDIA_APPROVED = "media_approved"
    MEDIA_AUTO_APPROVED = "media_auto_approved"
    MEDIA_DECLINED = "media_declined"
    MEDIA_FAILED = "media_failed"
    MEDIA_AVAILABLE = "media_available"
    ISSUE_CREATED = "issue_created"
    ISSUE_COMMENT = "issue_comment"
    ISSUE_RESOLVED = "issue_resolved"
    ISSUE_REOPENED = "issue_reopened"


@dataclass
class NotificationContext:
    """Context used to render notification messages."""

    event: NotificationEvent
    title: str
    media_type: str | None = None
    year: str | None = None
    username: str | None = None
    seasons: list[int] | None = None
    admin_note: str | None = None
    error_message: str | None = None
    issue_type: str | None = None
    message: str | None = None
    link: str | None = None


_NOTIFY_TYPE_NAMES = {
    NotificationEvent.MEDIA_PENDING: "INFO",
    NotificationEvent.MEDIA_APPROVED: "SUCCESS",
    NotificationEvent.MEDIA_AUTO_APPROVED: "SUCCESS",
    NotificationEvent.MEDIA_DECLINED: "WARNING",
    NotificationEvent.MEDIA_FAILED: "FAILURE",
    NotificationEvent.MEDIA_AVAILABLE: "SUCCESS",
    NotificationEvent.ISSUE_CREATED: "WARNING",
    NotificationEvent.ISSUE_COMMENT: "INFO",
    NotificationEvent.ISSUE_RESOLVED: "SUCCESS",
    NotificationEvent.ISSUE_REOPENED: "WARNING",
}


def _normalize_urls(value: Any) -> list[str]:
    if value is None:
        return []

    raw_values: list[Any]
    if isinstance(value, list):
        raw_values = value
    elif isinstance(value, str):
        raw_values = [segment for part in value.splitlines() for segment in part.split(",")]
    else:
        raw_values = [value]

    normalized: list[str] = []
    seen: set[str] = set()
    for raw_url in raw_values:
        # Zero-width and other non-ASCII characters pass Apprise validation
        # but break latin-1 encoding of Basic Auth headers.
        url = str(raw_url or "").encode("ascii", errors="ignore").decode("ascii").strip()
        if not url or url in seen:
            continue
        seen.add(url)
        normalized.append(url)
    return normalized


def _extract_url_schemes(urls: Iterable[str]) -> list[str]:
    schemes: list[str] = []
    for raw_url in urls:
        scheme = urlsplit(str(raw_url or "")).scheme.lower()
        if scheme and scheme not in schemes:
            schemes.append(scheme)
    return schemes


class _AppriseLogCapture(logging.Handler):
    def __init__(self, *, thread_id: int):
        super().__init__(level=logging.INFO)
        self.records: list[tuple[int, str]] = []
        self._thread_id = thread_id

    def emit(self, record: logging.LogRecord) -> None:
        if record.thread != self._thread_id:
            return
        message = record.getMessage()
        if message:
            self.records.append((record.levelno, str(message)))


@contextmanager
def _capture_apprise_logs(*, min_level: int = logging.INFO) -> Iterator[list[tuple[int, str]]]:
    apprise_logger = logging.getLogger(_APPRISE_LOGGER_NAME)
    previous_level = apprise_logger.level
    handler = _AppriseLogCapture(thread_id=threading.get_ident())
    apprise_logger.addHandler(handler)

    if previous_level == logging.NOTSET or previous_level > min_level:
        apprise_logger.setLevel(min_level)

    try:
        yield handler.records
    finally:
        apprise_logger.removeHandler(handler)
        apprise_logger.setLevel(previous_level)


def _first_warning(records: Iterable[tuple[int, str]], *, scheme: str) -> str | None:
    for level, message in records:
        if level >= logging.WARNING and message.strip():
            return f"{scheme}: {message.strip()}"
    return None


def normalize_routes(value: Any) -> list[dict[str, str]]:
    """Flatten ``{event, url}`` rows, expanding multi-event rows and dropping unknowns."""
    if not isinstance(value, list):
        return []

    allowed_events = {_ROUTE_EVENT_ALL, *(event.value for event in NotificationEvent)}
    normalized: list[dict[str, str]] = []
    seen: set[tuple[str, str]] = set()

    for row in value:
        if not isinstance(row, dict):
            continue

        raw_events = row.get("event")
        if isinstance(raw_events, (list, tuple, set)):
            event_values = list(raw_events)
        else:
            event_values = [raw_events]

        url = str(row.get("url") or "").strip()
        if not url:
            continue

        row_events: list[str] = []
        for raw_event in event_values:
            event = str(raw_event or "").strip().lower()
            if event in allowed_events and event not in row_events:
                row_events.append(event)

        if _ROUTE_EVENT_ALL in row_events:
            row_events = [_ROUTE_EVENT_ALL]

        for event in row_events:
            key = (event, url)
            if key in seen:
                continue
            seen.add(key)
            normalized.append({"event": event, "url": url})

    return normalized


def _resolve_admin_routes() -> list[dict[str, str]]:
    return normalize_routes(app_config.get("ADMIN_NOTIFICATION_ROUTES", []))


def _normalize_user_id(value: Any) -> int | None:
    try:
        user_id = int(value)
    except (TypeError, ValueError):
        return None
    if user_id < 1:
        return None
    return user_id


def _resolve_user_routes(user_id: int | None) -> list[dict[str, str]]:
    normalized_user_id = _normalize_user_id(user_id)
    if normalized_user_id is None:
        return []

    return normalize_routes(
        app_config.get("USER_NOTIFICATION_ROUTES", [], user_id=normalized_user_id)
    )


def _resolve_route_urls_for_event(
    routes: list[dict[str, str]],
    event: NotificationEvent,
) -> list[str]:
    selected: list[str] = []
    event_value = event.value

    for row in routes:
        if row.get("event", "") not in {_ROUTE_EVENT_ALL, event_value}:
            continue
        url = row.get("url", "")
        if url and url not in selected:
            selected.append(url)

    return selected


def _resolve_notify_type(event: NotificationEvent) -> Any:
    return getattr(apprise.NotifyType, _NOTIFY_TYPE_NAMES[event])


def _clean_text(value: Any, fallback: str) -> str:
    text = str(value or "").strip()
    return text or fallback


def _media_label(context: NotificationContext) -> str:
    title = _clean_text(context.title, "Unknown title")
    year = _clean_text(context.year, "")
    label = f'"{title}"' + (f" ({year})" if year else "")
    if context.media_type == "tv" and context.seasons:
        season_list = ", ".join(str(s) for s in sorted(context.seasons))
        label += f" [Season {season_list}]" if len(context.seasons) == 1 else f" [Seasons {season_list}]"
    return label


def _render_message(context: NotificationContext) -> tuple[str, str]:
    event = context.event
    media = _media_label(context)
    username = _clean_text(context.username, "A user")
    link_line = f"\n{context.link}" if context.link else ""

    if event == NotificationEvent.MEDIA_PENDING:
        return "New Request", f"{username} requested {media}.{link_line}"
    if event == NotificationEvent.MEDIA_APPROVED:
        return "Request Approved", f"Request for {media} was approved.{link_line}"
    if event == NotificationEvent.MEDIA_AUTO_APPROVED:
        return "Request Automatically Approved", f"{username} requested {media}. It was approved automatically.{link_line}"
    if event == NotificationEvent.MEDIA_DECLINED:
        note = _clean_text(context.admin_note, "")
        note_line = f"\nNote: {note}" if note else ""
        return "Request Declined", f"Request for {media} was declined.{note_line}{link_line}"
    if event == NotificationEvent.MEDIA_AVAILABLE:
        return "Now Available", f"{media} is now available.{link_line}"
    if event == NotificationEvent.MEDIA_FAILED:
        error_message = _clean_text(context.error_message, "")
        error_line = f"\nError: {error_message}" if error_message else ""
        return "Request Failed", f"Failed to send {media} for download.{error_line}{link_line}"

    issue_type = _clean_text(context.issue_type, "other")
    message = _clean_text(context.message, "")
    message_line = f"\n{message}" if message else ""
    if event == NotificationEvent.ISSUE_CREATED:
        return "New Issue", f"{username} reported a {issue_type} issue with {media}.{message_line}{link_line}"
    if event == NotificationEvent.ISSUE_COMMENT:
        return "New Issue Comment", f"{username} commented on the {issue_type} issue with {media}.{message_line}{link_line}"
    if event == NotificationEvent.ISSUE_RESOLVED:
        return "Issue Resolved", f"The {issue_type} issue with {media} was resolved.{link_line}"
    return "Issue Reopened", f"The {issue_type} issue with {media} was reopened.{link_line}"


def _dispatch_to_apprise(
    urls: Iterable[str],
    *,
    title: str,
    body: str,
    notify_type: Any,
) -> dict[str, Any]:
    normalized_urls = _normalize_urls(list(urls))
    if not normalized_urls:
        return {"success": False, "message": "No notification URLs configured"}

    valid_urls = 0
    delivered_urls = 0
    failure_details: list[str] = []

    for url in normalized_urls:
        scheme = urlsplit(url).scheme or "unknown"
        apobj = _create_apprise_client()

        with _capture_apprise_logs(min_level=logging.INFO) as apprise_records:
            try:
                plugin = apprise.Apprise.instantiate(url, asset=getattr(apobj, "asset", None))
            except Exception as exc:
                logger.warning(
                    "Failed to register notification route URL for scheme '%s': %s",
                    scheme,
                    exc,
                )
                plugin = None

            if plugin is None:
                logger.warning("Apprise rejected notification route URL for scheme '%s'", scheme)
                failure_details.append(
                    _first_warning(apprise_records, scheme=scheme)
                    or f"{scheme}: route URL rejected by Apprise"
                )
                continue

            apobj.add(plugin)
            valid_urls += 1

            try:
                delivered = bool(apobj.notify(title=title, body=body, notify_type=notify_type))
            except Exception as exc:
                logger.warning("Apprise notify raised %s for '%s': %s", type(exc).__name__, scheme, exc)
                logger.debug("Apprise notify traceback", exc_info=True)
                failure_details.append(f"{scheme}: notify raised {type(exc).__name__}: {exc}")
                continue

            if delivered:
                delivered_urls += 1
                logger.debug("Notification delivered via %s", scheme)
                continue

            logger.warning("Apprise notify returned False for '%s'", scheme)
            failure_details.append(
                _first_warning(apprise_records, scheme=scheme) or f"{scheme}: delivery failed"
            )

    scheme_summary = ", ".join(_extract_url_schemes(normalized_urls)) or "unknown"
    result: dict[str, Any]
    if valid_urls == 0:
        logger.warning("No valid Apprise notification routes for scheme(s): %s", scheme_summary)
        result = {"success": False, "message": "No valid notification URLs configured"}
    elif delivered_urls == 0:
        logger.warning("Notification delivery failed for scheme(s): %s", scheme_summary)
        result = {"success": False, "message": "Notification delivery failed"}
    else:
        message = f"Notification sent to {delivered_urls} URL(s)"
        failed_urls = len(normalized_urls) - delivered_urls
        if failed_urls:
            message += f" ({failed_urls} URL(s) failed)"
        result = {"success": True, "message": message}

    if failure_details:
        result["details"] = failure_details
    return result


def _create_apprise_client() -> Any:
    try:
        asset = apprise.AppriseAsset(app_id=_APPRISE_APP_ID, app_desc=_APPRISE_APP_DESC)
        return apprise.Apprise(asset=asset)
    except Exception:
        return apprise.Apprise()


def _send_event(event: NotificationEvent, context: NotificationContext, urls: list[str]) -> dict[str, Any]:
    title, body = _render_message(context)
    notify_type = _resolve_notify_type(event)
    return _dispatch_to_apprise(urls, title=title, body=body, notify_type=notify_type)


def notify_admin(event: NotificationEvent, context: NotificationContext) -> None:
    """Send a global admin notification for an event if subscribed."""
    routes = _resolve_admin_routes()
    urls = _resolve_route_urls_for_event(routes, event)
    if not urls:
        return

    try:
        _executor.submit(_dispatch_admin_async, event, context, urls)
    except Exception as exc:
        logger.warning("Failed to queue admin notification '%s': %s", event.value, exc)


def notify_user(user_id: int | None, event: NotificationEvent, context: NotificationContext) -> None:
    """Send a per-user notification for an event if subscribed."""
    normalized_user_id = _normalize_user_id(user_id)
    if normalized_user_id is None:
        return

    routes = _resolve_user_routes(normalized_user_id)
    urls = _resolve_route_urls_for_event(routes, event)
    if not urls:
        return

    try:
        _executor.submit(_dispatch_user_async, normalized_user_id, event, context, urls)
    except Exception as exc:
        logger.warning(
            "Failed to queue user notification '%s' for user_id=%s: %s",
            event.value,
            normalized_user_id,
            exc,
        )


def _dispatch_admin_async(event: NotificationEvent, context: NotificationContext, urls: list[str]) -> None:
    result = _send_event(event, context, urls)
    if not result.get("success", False):
        logger.warning("Admin notification failed for event '%s': %s", event.value, result.get("message"))


def _dispatch_user_async(
    user_id: int,
    event: NotificationEvent,
    context: NotificationContext,
    urls: list[str],
) -> None:
    result = _send_event(event, context, urls)
    if not result.get("success", False):
        logger.warning(
            "User notification failed for event '%s' (user_id=%s): %s",
            event.value,
            user_id,
            result.get("message"),
        )


def send_test_notification(urls: list[str]) -> dict[str, Any]:
    """Send a synchronous test notification to the provided URLs."""
    normalized_urls = _normalize_urls(urls)
    if not normalized_urls:
        return {"success": False, "message": "No notification URLs configured"}

    test_context = NotificationContext(
        event=NotificationEvent.MEDIA_PENDING,
        title="Mediaseer Test Notification",
        username="Mediaseer",
    )
    return _send_event(NotificationEvent.MEDIA_PENDING, test_context, normalized_urls)

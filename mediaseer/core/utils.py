"""Shared utility functions for Mediaseer."""

import ipaddress
from typing import Any, Optional
from urllib.parse import urlparse


def normalize_http_url(
    url: Optional[str],
    *,
    default_scheme: str = "http",
    strip_trailing_slash: bool = True,
) -> str:
    """Normalize a configured HTTP URL for requests and links."""
    if not isinstance(url, str):
        return ""

    normalized = url.strip()
    if not normalized:
        return ""

    if (normalized.startswith("\"") and normalized.endswith("\"")) or (
        normalized.startswith("'") and normalized.endswith("'")
    ):
        normalized = normalized[1:-1].strip()
        if not normalized:
            return ""

    if normalized.startswith(("/", "./", "../")):
        return normalized

    if "://" not in normalized:
        scheme = default_scheme.strip().rstrip(":/")
        if scheme:
            normalized = f"{scheme}://{normalized}"

    if strip_trailing_slash:
        normalized = normalized.rstrip("/")

    return normalized


def normalize_base_path(value: Optional[str]) -> str:
    """Normalize a URL base path to '/path' form, or '' for the root."""
    if not isinstance(value, str):
        return ""
    path = value.strip().strip("/")
    if not path:
        return ""
    return f"/{path}"


def as_bool(value: Any, default: bool = False) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return default
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in {"1", "true", "yes", "on"}:
            return True
        if normalized in {"0", "false", "no", "off", ""}:
            return False
    return bool(value)


def as_int(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _is_local_host(hostname: str) -> bool:
    if hostname in {"localhost", ""} or hostname.endswith((".local", ".lan", ".internal")):
        return True
    try:
        address = ipaddress.ip_address(hostname)
    except ValueError:
        return "." not in hostname
    return address.is_private or address.is_loopback or address.is_link_local


def get_ssl_verify(url: str) -> bool:
    """Resolve TLS verification for an outbound URL from CERTIFICATE_VALIDATION.

    ``enabled`` verifies everything, ``disabled`` verifies nothing and
    ``disabled_local`` skips verification for private/local hosts only.
    """
    from mediaseer.core.config import config as app_config

    mode = str(app_config.get("CERTIFICATE_VALIDATION", "enabled") or "enabled").strip().lower()
    if mode == "disabled":
        return False
    if mode == "disabled_local":
        hostname = (urlparse(url).hostname or "").lower()
        return not _is_local_host(hostname)
    return True

"""Data structures and enums used across the application."""

from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Dict, Optional


class MediaType(str, Enum):
    MOVIE = "movie"
    TV = "tv"


class MediaStatus(str, Enum):
    """Availability of a tracked catalog entry."""
    UNKNOWN = "unknown"
    PENDING = "pending"
    PROCESSING = "processing"
    PARTIALLY_AVAILABLE = "partially_available"
    AVAILABLE = "available"


class MediaRequestStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    DECLINED = "declined"


class IssueType(str, Enum):
    VIDEO = "video"
    AUDIO = "audio"
    SUBTITLES = "subtitles"
    OTHER = "other"


class IssueStatus(str, Enum):
    OPEN = "open"
    RESOLVED = "resolved"


VALID_MEDIA_TYPES = frozenset(m.value for m in MediaType)
VALID_MEDIA_STATUSES = frozenset(s.value for s in MediaStatus)
VALID_REQUEST_STATUSES = frozenset(s.value for s in MediaRequestStatus)
TERMINAL_REQUEST_STATUSES = frozenset({MediaRequestStatus.APPROVED.value, MediaRequestStatus.DECLINED.value})
ACTIVE_REQUEST_STATUSES = frozenset({MediaRequestStatus.PENDING.value, MediaRequestStatus.APPROVED.value})
VALID_ISSUE_TYPES = frozenset(t.value for t in IssueType)
VALID_ISSUE_STATUSES = frozenset(s.value for s in IssueStatus)
ISSUE_REPORTABLE_MEDIA_STATUSES = frozenset(
    {MediaStatus.AVAILABLE.value, MediaStatus.PARTIALLY_AVAILABLE.value}
)


@dataclass
class ServarrServer:
    """A configured Radarr or Sonarr instance."""
    id: int
    name: str
    hostname: str
    port: int
    api_key: str
    use_ssl: bool = False
    base_url: str = ""
    active_profile_id: Optional[int] = None
    active_directory: str = ""
    is_default: bool = False
    minimum_availability: str = "released"  # Radarr only
    season_folders: bool = True  # Sonarr only

    def build_url(self) -> str:
        scheme = "https" if self.use_ssl else "http"
        base = (self.base_url or "").strip().strip("/")
        url = f"{scheme}://{self.hostname}:{self.port}"
        return f"{url}/{base}" if base else url

    def to_dict(self, include_secret: bool = True) -> Dict[str, Any]:
        payload = asdict(self)
        if not include_secret:
            payload["api_key"] = ""
            payload["has_api_key"] = bool(self.api_key)
        return payload

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "ServarrServer":
        profile = raw.get("active_profile_id")
        return cls(
            id=int(raw["id"]),
            name=str(raw.get("name") or "").strip(),
            hostname=str(raw.get("hostname") or "").strip(),
            port=int(raw.get("port") or 0),
            api_key=str(raw.get("api_key") or "").strip(),
            use_ssl=bool(raw.get("use_ssl", False)),
            base_url=str(raw.get("base_url") or "").strip(),
            active_profile_id=int(profile) if profile not in (None, "") else None,
            active_directory=str(raw.get("active_directory") or "").strip(),
            is_default=bool(raw.get("is_default", False)),
            minimum_availability=str(raw.get("minimum_availability") or "released"),
            season_folders=bool(raw.get("season_folders", True)),
        )

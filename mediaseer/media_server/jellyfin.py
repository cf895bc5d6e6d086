"""Jellyfin/Emby client for sign-in and user import."""

import uuid
from typing import Any, Dict, List, Optional, Tuple

import requests

from mediaseer.core.logger import setup_logger
from mediaseer.core.utils import get_ssl_verify, normalize_http_url

logger = setup_logger(__name__)

_CLIENT_NAME = "Mediaseer"
_CLIENT_VERSION = "1.0.0"
_DEVICE_ID = uuid.uuid5(uuid.NAMESPACE_DNS, "mediaseer").hex


class JellyfinError(Exception):
    """Jellyfin request failed."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class JellyfinClient:
    """Client for the Jellyfin (and Emby) REST API."""

    def __init__(self, url: str, api_key: Optional[str] = None, timeout: int = 15):
        self.base_url = normalize_http_url(url)
        self.api_key = api_key or ""
        self.timeout = timeout
        self._session = requests.Session()
        self._session.headers.update({
            "Accept": "application/json",
            "X-Emby-Authorization": (
                f'MediaBrowser Client="{_CLIENT_NAME}", Device="{_CLIENT_NAME}", '
                f'DeviceId="{_DEVICE_ID}", Version="{_CLIENT_VERSION}"'
            ),
        })
        if self.api_key:
            self._session.headers["X-Emby-Token"] = self.api_key

    def _request(self, method: str, endpoint: str, json_data: Optional[Dict[str, Any]] = None) -> Any:
        if not self.base_url:
            raise JellyfinError("Jellyfin URL is not configured", status_code=503)

        url = self.base_url + endpoint
        logger.debug(f"Jellyfin API: {method} {url}")
        try:
            response = self._session.request(
                method=method,
                url=url,
                json=json_data,
                timeout=self.timeout,
                verify=get_ssl_verify(url),
            )
            response.raise_for_status()
            if not response.content:
                return None
            return response.json()
        except requests.exceptions.HTTPError as e:
            status = e.response.status_code if e.response is not None else None
            logger.warning(f"Jellyfin API HTTP error: {status} on {endpoint}")
            raise JellyfinError(f"Jellyfin request failed (HTTP {status})", status_code=status)
        except requests.exceptions.JSONDecodeError as e:
            logger.error(f"Invalid JSON response from Jellyfin: {e}")
            raise JellyfinError("Invalid response from Jellyfin")
        except requests.exceptions.RequestException as e:
            logger.error(f"Jellyfin API request failed: {e}")
            raise JellyfinError(f"Could not reach Jellyfin: {e}", status_code=503)

    def _avatar_url(self, user: Dict[str, Any]) -> Optional[str]:
        if not user.get("PrimaryImageTag"):
            return None
        return f"{self.base_url}/Users/{user.get('Id')}/Images/Primary/?tag={user['PrimaryImageTag']}&quality=90"

    def authenticate(self, username: str, password: str) -> Dict[str, Any]:
        """Sign in a user. Raises JellyfinError with status 401 on bad credentials."""
        try:
            payload = self._request(
                "POST",
                "/Users/AuthenticateByName",
                json_data={"Username": username, "Pw": password},
            )
        except JellyfinError as e:
            if e.status_code in (400, 401, 403):
                raise JellyfinError("Invalid username or password", status_code=401)
            raise

        user = (payload or {}).get("User") or {}
        if not user.get("Id"):
            raise JellyfinError("Unexpected authentication response from Jellyfin")
        return {
            "id": str(user["Id"]),
            "username": user.get("Name") or username,
            "is_admin": bool((user.get("Policy") or {}).get("IsAdministrator")),
            "access_token": payload.get("AccessToken"),
            "avatar": self._avatar_url(user),
        }

    def get_users(self) -> List[Dict[str, Any]]:
        """Server users as ``{id, title, username, email, thumb}``."""
        users = self._request("GET", "/Users") or []
        return [
            {
                "id": str(user.get("Id")),
                "title": user.get("Name"),
                "username": user.get("Name"),
                "email": None,
                "thumb": self._avatar_url(user),
                "isAdmin": bool((user.get("Policy") or {}).get("IsAdministrator")),
            }
            for user in users
            if isinstance(user, dict) and user.get("Id")
        ]

    def test_connection(self) -> Tuple[bool, str]:
        """Test connection. Returns (success, message)."""
        try:
            info = self._request("GET", "/System/Info") or {}
        except JellyfinError as e:
            if e.status_code == 401:
                return False, "Invalid API key"
            return False, str(e)
        name = info.get("ServerName") or "Jellyfin"
        version = info.get("Version") or "unknown"
        return True, f"Connected to {name} ({version})"

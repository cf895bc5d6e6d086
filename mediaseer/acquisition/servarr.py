"""Shared client for the Radarr/Sonarr v3 API."""

import time
from typing import Any, Dict, List, Optional, Tuple

import requests

from mediaseer.core.logger import setup_logger
from mediaseer.core.utils import get_ssl_verify, normalize_http_url

logger = setup_logger(__name__)


class ServarrClient:
    """Client for the API surface Radarr and Sonarr share."""

    app_name = "Servarr"

    def __init__(self, url: str, api_key: str, timeout: int = 30, max_retries: int = 3):
        self.base_url = normalize_http_url(url)
        self.api_key = api_key
        self.timeout = timeout
        self.max_retries = max(1, max_retries)
        self._session = requests.Session()
        self._session.headers.update({
            "X-Api-Key": api_key,
            "Accept": "application/json",
        })

    def _request(
        self,
        method: str,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
        json_data: Optional[Any] = None,
    ) -> Any:
        """Make an API request. Returns parsed JSON response.

        GET requests are retried with exponential backoff on timeouts and
        connection errors; slow NAS hosts regularly need it.
        """
        url = self.base_url + endpoint
        logger.debug(f"{self.app_name} API: {method} {url}")
        attempts = self.max_retries if method.upper() == "GET" else 1

        for attempt in range(attempts):
            try:
                response = self._session.request(
                    method=method,
                    url=url,
                    params=params,
                    json=json_data,
                    timeout=self.timeout,
                    verify=get_ssl_verify(url),
                )

                if not response.ok:
                    logger.error(f"{self.app_name} API error response: {response.text[:500]}")

                response.raise_for_status()
                if not response.content:
                    return None
                return response.json()

            except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as e:
                if attempt < attempts - 1:
                    wait_time = 2 ** attempt
                    logger.warning(
                        f"{self.app_name} request failed (attempt {attempt + 1}/{attempts}): {e}. "
                        f"Retrying in {wait_time}s..."
                    )
                    time.sleep(wait_time)
                    continue
                logger.error(f"{self.app_name} API request failed: {e}")
                raise
            except requests.exceptions.JSONDecodeError as e:
                logger.error(f"Invalid JSON response from {self.app_name}: {e}")
                raise ValueError(f"Invalid JSON response: {e}")
            except requests.exceptions.HTTPError as e:
                status = e.response.status_code if e.response is not None else "unknown"
                logger.error(f"{self.app_name} API HTTP error: {status} on {endpoint}")
                raise
            except requests.exceptions.RequestException as e:
                logger.error(f"{self.app_name} API request failed: {e}")
                raise

    def test_connection(self) -> Tuple[bool, str]:
        """Test connection. Returns (success, message)."""
        logger.info(f"Testing {self.app_name} connection to: {self.base_url}")
        try:
            data = self._request("GET", "/api/v3/system/status")
            version = (data or {}).get("version", "unknown")
            logger.info(f"{self.app_name} connection successful: version {version}")
            return True, f"Connected to {self.app_name} {version}"
        except requests.exceptions.ConnectionError:
            return False, f"Could not connect to {self.app_name}. Check the hostname and port."
        except requests.exceptions.HTTPError as e:
            if e.response is not None and e.response.status_code == 401:
                return False, "Invalid API key"
            status = e.response.status_code if e.response is not None else "unknown"
            return False, f"HTTP error {status}"
        except Exception as e:
            return False, f"Connection failed: {str(e)}"

    def get_system_status(self) -> Dict[str, Any]:
        return self._request("GET", "/api/v3/system/status") or {}

    def get_profiles(self) -> List[Dict[str, Any]]:
        """Quality profiles as ``{id, name}``."""
        profiles = self._request("GET", "/api/v3/qualityprofile") or []
        return [{"id": p.get("id"), "name": p.get("name")} for p in profiles]

    def get_root_folders(self) -> List[Dict[str, Any]]:
        folders = self._request("GET", "/api/v3/rootfolder") or []
        return [
            {"id": f.get("id"), "path": f.get("path"), "freeSpace": f.get("freeSpace")}
            for f in folders
        ]

    def get_tags(self) -> List[Dict[str, Any]]:
        return self._request("GET", "/api/v3/tag") or []

    def run_command(self, name: str, **body: Any) -> Dict[str, Any]:
        payload = {"name": name, **body}
        logger.info(f"{self.app_name}: running command {name}")
        return self._request("POST", "/api/v3/command", json_data=payload) or {}

"""TMDB catalog client.

Wraps the TMDB v3 REST API for search, discovery and detail lookups.
Responses are raw TMDB payloads; ``mediaseer.metadata.mapping`` turns them
into API shapes.

API Documentation: https://developer.themoviedb.org/reference/intro/getting-started
"""

from datetime import date
from typing import Any, Dict, Optional, Tuple

import requests

from mediaseer.core.cache import cacheable
from mediaseer.core.config import config as app_config
from mediaseer.core.logger import setup_logger
from mediaseer.core.utils import get_ssl_verify

logger = setup_logger(__name__)

TMDB_BASE_URL = "https://api.themoviedb.org/3"

_SEARCH_TTL_KEY = "METADATA_CACHE_SEARCH_TTL"
_DETAILS_TTL_KEY = "METADATA_CACHE_DETAILS_TTL"

TRENDING_MEDIA_TYPES = {"all", "movie", "tv", "person"}
TRENDING_WINDOWS = {"day", "week"}


class CatalogError(Exception):
    """Catalog lookup failed."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class CatalogNotFound(CatalogError):
    """The catalog has no entry for the requested id."""


class TmdbClient:
    """Client for the TMDB v3 API."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        language: Optional[str] = None,
        region: Optional[str] = None,
        timeout: int = 15,
    ):
        self.api_key = api_key or app_config.get("TMDB_API_KEY", "")
        self.language = language or app_config.get("TMDB_LANGUAGE", "en") or "en"
        self.region = region if region is not None else (app_config.get("TMDB_REGION", "") or "")
        self.timeout = timeout
        self.session = requests.Session()
        self.session.headers.update({"Accept": "application/json"})

    @property
    def cache_namespace(self) -> str:
        return f"tmdb:{self.language}:{self.region}"

    def is_available(self) -> bool:
        return bool(self.api_key)

    def _request(self, endpoint: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """GET an endpoint and return the decoded JSON body.

        Raises CatalogNotFound for 404 and CatalogError for everything else.
        """
        if not self.api_key:
            raise CatalogError("TMDB API key is not configured", status_code=503)

        query: Dict[str, Any] = {"api_key": self.api_key, "language": self.language}
        for key, value in (params or {}).items():
            if value is not None and value != "":
                query[key] = value

        url = f"{TMDB_BASE_URL}{endpoint}"
        logger.debug(f"TMDB API: GET {endpoint}")

        try:
            response = self.session.get(url, params=query, timeout=self.timeout, verify=get_ssl_verify(url))
            response.raise_for_status()
            return response.json()
        except requests.Timeout:
            logger.warning(f"TMDB request timed out: {endpoint}")
            raise CatalogError("Catalog request timed out", status_code=504)
        except requests.HTTPError as e:
            status = e.response.status_code if e.response is not None else None
            if status == 404:
                logger.debug(f"TMDB: not found {endpoint}")
                raise CatalogNotFound("Not found in catalog", status_code=404)
            if status == 401:
                logger.error("TMDB API: invalid API key (HTTP 401)")
            elif status == 429:
                logger.warning("TMDB API: rate limited (HTTP 429)")
            else:
                logger.error(f"TMDB API HTTP error: {e}")
            raise CatalogError(f"Catalog request failed (HTTP {status})", status_code=status)
        except requests.exceptions.JSONDecodeError as e:
            logger.error(f"Invalid JSON response from TMDB: {e}")
            raise CatalogError("Invalid catalog response")
        except requests.RequestException as e:
            logger.error(f"TMDB API request failed: {e}")
            raise CatalogError(f"Catalog request failed: {e}")

    def test_connection(self) -> Tuple[bool, str]:
        """Test the API key. Returns (success, message)."""
        try:
            self._request("/configuration")
            return True, "Connected to TMDB"
        except CatalogError as e:
            if e.status_code == 401:
                return False, "Invalid API key"
            return False, str(e)

    # =========================================================================
    # Search and discovery
    # =========================================================================

    @cacheable(ttl_key=_SEARCH_TTL_KEY, ttl_default=300, key_prefix="tmdb:search")
    def search_multi(self, query: str, page: int = 1) -> Dict[str, Any]:
        """Search movies, series and people in one call."""
        return self._request(
            "/search/multi",
            {"query": query, "page": page, "include_adult": "false"},
        )

    @cacheable(ttl_key=_SEARCH_TTL_KEY, ttl_default=300, key_prefix="tmdb:discover:movie")
    def discover_movies(
        self,
        page: int = 1,
        sort_by: str = "popularity.desc",
        genre: Optional[int] = None,
        studio: Optional[int] = None,
        primary_release_date_gte: Optional[str] = None,
    ) -> Dict[str, Any]:
        return self._request(
            "/discover/movie",
            {
                "page": page,
                "sort_by": sort_by,
                "region": self.region,
                "with_genres": genre,
                "with_companies": studio,
                "primary_release_date.gte": primary_release_date_gte,
                "include_adult": "false",
            },
        )

    @cacheable(ttl_key=_SEARCH_TTL_KEY, ttl_default=300, key_prefix="tmdb:discover:tv")
    def discover_tv(
        self,
        page: int = 1,
        sort_by: str = "popularity.desc",
        genre: Optional[int] = None,
        network: Optional[int] = None,
        first_air_date_gte: Optional[str] = None,
    ) -> Dict[str, Any]:
        return self._request(
            "/discover/tv",
            {
                "page": page,
                "sort_by": sort_by,
                "with_genres": genre,
                "with_networks": network,
                "first_air_date.gte": first_air_date_gte,
            },
        )

    def upcoming_movies(self, page: int = 1) -> Dict[str, Any]:
        return self._upcoming_movies(page, date.today().isoformat())

    @cacheable(ttl_key=_SEARCH_TTL_KEY, ttl_default=300, key_prefix="tmdb:upcoming:movie")
    def _upcoming_movies(self, page: int, today: str) -> Dict[str, Any]:
        return self._request(
            "/discover/movie",
            {
                "page": page,
                "sort_by": "popularity.desc",
                "region": self.region,
                "primary_release_date.gte": today,
                "with_release_type": "3|2",
            },
        )

    def upcoming_tv(self, page: int = 1) -> Dict[str, Any]:
        """Series whose first air date is today or later."""
        return self._upcoming_tv(page, date.today().isoformat())

    @cacheable(ttl_key=_SEARCH_TTL_KEY, ttl_default=300, key_prefix="tmdb:upcoming:tv")
    def _upcoming_tv(self, page: int, today: str) -> Dict[str, Any]:
        return self.discover_tv(page=page, first_air_date_gte=today)

    @cacheable(ttl_key=_SEARCH_TTL_KEY, ttl_default=300, key_prefix="tmdb:trending")
    def trending(self, page: int = 1, media_type: str = "all", time_window: str = "day") -> Dict[str, Any]:
        if media_type not in TRENDING_MEDIA_TYPES:
            raise CatalogError(f"Invalid trending media type: {media_type}", status_code=400)
        if time_window not in TRENDING_WINDOWS:
            raise CatalogError(f"Invalid trending window: {time_window}", status_code=400)
        return self._request(f"/trending/{media_type}/{time_window}", {"page": page})

    # =========================================================================
    # Details
    # =========================================================================

    @cacheable(ttl_key=_DETAILS_TTL_KEY, ttl_default=21600, key_prefix="tmdb:movie")
    def get_movie(self, tmdb_id: int) -> Dict[str, Any]:
        return self._request(
            f"/movie/{int(tmdb_id)}",
            {"append_to_response": "credits,external_ids,videos,release_dates"},
        )

    @cacheable(ttl_key=_SEARCH_TTL_KEY, ttl_default=300, key_prefix="tmdb:movie:recommendations")
    def movie_recommendations(self, tmdb_id: int, page: int = 1) -> Dict[str, Any]:
        return self._request(f"/movie/{int(tmdb_id)}/recommendations", {"page": page})

    @cacheable(ttl_key=_SEARCH_TTL_KEY, ttl_default=300, key_prefix="tmdb:movie:similar")
    def movie_similar(self, tmdb_id: int, page: int = 1) -> Dict[str, Any]:
        return self._request(f"/movie/{int(tmdb_id)}/similar", {"page": page})

    @cacheable(ttl_key=_DETAILS_TTL_KEY, ttl_default=21600, key_prefix="tmdb:tv")
    def get_tv(self, tmdb_id: int) -> Dict[str, Any]:
        return self._request(
            f"/tv/{int(tmdb_id)}",
            {"append_to_response": "aggregate_credits,credits,external_ids,videos,content_ratings"},
        )

    @cacheable(ttl_key=_SEARCH_TTL_KEY, ttl_default=300, key_prefix="tmdb:tv:recommendations")
    def tv_recommendations(self, tmdb_id: int, page: int = 1) -> Dict[str, Any]:
        return self._request(f"/tv/{int(tmdb_id)}/recommendations", {"page": page})

    @cacheable(ttl_key=_SEARCH_TTL_KEY, ttl_default=300, key_prefix="tmdb:tv:similar")
    def tv_similar(self, tmdb_id: int, page: int = 1) -> Dict[str, Any]:
        return self._request(f"/tv/{int(tmdb_id)}/similar", {"page": page})

    @cacheable(ttl_key=_DETAILS_TTL_KEY, ttl_default=21600, key_prefix="tmdb:season")
    def get_season(self, tmdb_id: int, season_number: int) -> Dict[str, Any]:
        return self._request(f"/tv/{int(tmdb_id)}/season/{int(season_number)}")

    @cacheable(ttl_key=_DETAILS_TTL_KEY, ttl_default=21600, key_prefix="tmdb:person")
    def get_person(self, person_id: int) -> Dict[str, Any]:
        return self._request(f"/person/{int(person_id)}")

    @cacheable(ttl_key=_DETAILS_TTL_KEY, ttl_default=21600, key_prefix="tmdb:person:credits")
    def get_person_combined_credits(self, person_id: int) -> Dict[str, Any]:
        return self._request(f"/person/{int(person_id)}/combined_credits")

    @cacheable(ttl_key=_DETAILS_TTL_KEY, ttl_default=21600, key_prefix="tmdb:collection")
    def get_collection(self, collection_id: int) -> Dict[str, Any]:
        return self._request(f"/collection/{int(collection_id)}")


_default_client: Optional[TmdbClient] = None


def get_tmdb_client() -> TmdbClient:
    """Client built from current settings; rebuilt when they change."""
    global _default_client
    api_key = app_config.get("TMDB_API_KEY", "")
    language = app_config.get("TMDB_LANGUAGE", "en") or "en"
    region = app_config.get("TMDB_REGION", "") or ""
    client = _default_client
    if (
        client is None
        or client.api_key != api_key
        or client.language != language
        or client.region != region
    ):
        client = TmdbClient(api_key=api_key, language=language, region=region)
        _default_client = client
    return client

"""Radarr client for adding requested movies."""

from typing import Any, Dict, Optional

from mediaseer.acquisition.servarr import ServarrClient
from mediaseer.core.logger import setup_logger

logger = setup_logger(__name__)

MINIMUM_AVAILABILITY_VALUES = ("announced", "inCinemas", "released")


class RadarrClient(ServarrClient):
    app_name = "Radarr"

    def get_movie_by_tmdb_id(self, tmdb_id: int) -> Optional[Dict[str, Any]]:
        """The library entry for a TMDB id, or None if Radarr doesn't track it."""
        movies = self._request("GET", "/api/v3/movie", params={"tmdbId": int(tmdb_id)}) or []
        return movies[0] if movies else None

    def add_movie(
        self,
        *,
        title: str,
        tmdb_id: int,
        year: Optional[int],
        quality_profile_id: int,
        root_folder_path: str,
        minimum_availability: str = "released",
        monitored: bool = True,
        search_now: bool = True,
    ) -> Dict[str, Any]:
        """Add a movie, or search for it again when Radarr already has it."""
        existing = self.get_movie_by_tmdb_id(tmdb_id)
        if existing is not None:
            logger.info(f"Radarr already tracks '{title}' (tmdb {tmdb_id}); requesting a search")
            if search_now and not existing.get("hasFile"):
                self.run_command("MoviesSearch", movieIds=[existing["id"]])
            return existing

        payload: Dict[str, Any] = {
            "title": title,
            "tmdbId": int(tmdb_id),
            "year": year,
            "qualityProfileId": int(quality_profile_id),
            "rootFolderPath": root_folder_path,
            "monitored": monitored,
            "addOptions": {"searchForMovie": search_now},
        }
        if minimum_availability in MINIMUM_AVAILABILITY_VALUES:
            payload["minimumAvailability"] = minimum_availability

        created = self._request("POST", "/api/v3/movie", json_data=payload) or {}
        logger.info(f"Radarr added '{title}' (tmdb {tmdb_id}) as movie {created.get('id')}")
        return created

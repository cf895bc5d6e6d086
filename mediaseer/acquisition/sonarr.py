"""Sonarr client for adding requested series."""

from typing import Any, Dict, List, Optional

from mediaseer.acquisition.servarr import ServarrClient
from mediaseer.core.logger import setup_logger

logger = setup_logger(__name__)


class SonarrClient(ServarrClient):
    app_name = "Sonarr"

    def get_series_by_tvdb_id(self, tvdb_id: int) -> Optional[Dict[str, Any]]:
        series = self._request("GET", "/api/v3/series", params={"tvdbId": int(tvdb_id)}) or []
        return series[0] if series else None

    def lookup_series(self, tvdb_id: int) -> Optional[Dict[str, Any]]:
        results = self._request("GET", "/api/v3/series/lookup", params={"term": f"tvdb:{int(tvdb_id)}"}) or []
        return results[0] if results else None

    def get_language_profiles(self) -> List[Dict[str, Any]]:
        # Sonarr v3 only; v4 returns 404
        profiles = self._request("GET", "/api/v3/languageprofile") or []
        return [{"id": p.get("id"), "name": p.get("name")} for p in profiles]

    @staticmethod
    def _monitor_seasons(seasons: List[Dict[str, Any]], requested: List[int], keep_monitored: bool) -> List[Dict[str, Any]]:
        wanted = set(requested)
        updated = []
        for season in seasons:
            number = season.get("seasonNumber")
            monitored = number in wanted or (keep_monitored and bool(season.get("monitored")))
            updated.append({**season, "monitored": monitored})
        return updated

    def add_series(
        self,
        *,
        tvdb_id: int,
        title: str,
        quality_profile_id: int,
        root_folder_path: str,
        seasons: List[int],
        season_folder: bool = True,
        search_now: bool = True,
        language_profile_id: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Add a series monitoring only the requested seasons.

        A series Sonarr already tracks gets the requested seasons monitored
        (existing monitored seasons stay monitored) and a season search.
        """
        existing = self.get_series_by_tvdb_id(tvdb_id)
        if existing is not None:
            logger.info(f"Sonarr already tracks '{title}' (tvdb {tvdb_id}); monitoring seasons {seasons}")
            existing["seasons"] = self._monitor_seasons(existing.get("seasons") or [], seasons, keep_monitored=True)
            existing["monitored"] = True
            updated = self._request("PUT", f"/api/v3/series/{existing['id']}", json_data=existing) or existing
            if search_now:
                for season_number in sorted(set(seasons)):
                    self.run_command("SeasonSearch", seriesId=existing["id"], seasonNumber=season_number)
            return updated

        lookup = self.lookup_series(tvdb_id)
        if lookup is None:
            raise ValueError(f"Series with tvdb id {tvdb_id} not found in Sonarr lookup")

        payload: Dict[str, Any] = {
            "tvdbId": int(tvdb_id),
            "title": lookup.get("title") or title,
            "qualityProfileId": int(quality_profile_id),
            "rootFolderPath": root_folder_path,
            "seasonFolder": season_folder,
            "monitored": True,
            "seasons": self._monitor_seasons(lookup.get("seasons") or [], seasons, keep_monitored=False),
            "addOptions": {
                "ignoreEpisodesWithFiles": True,
                "searchForMissingEpisodes": search_now,
            },
        }
        for field in ("titleSlug", "images", "year", "imdbId", "tmdbId"):
            if field in lookup:
                payload[field] = lookup[field]
        if language_profile_id is not None:
            payload["languageProfileId"] = int(language_profile_id)

        created = self._request("POST", "/api/v3/series", json_data=payload) or {}
        logger.info(f"Sonarr added '{payload['title']}' (tvdb {tvdb_id}) as series {created.get('id')}")
        return created

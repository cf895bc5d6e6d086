"""Send approved requests to the configured Radarr/Sonarr server."""

from typing import Any, Dict, List, Optional

import requests

from mediaseer.acquisition.radarr import RadarrClient
from mediaseer.acquisition.sonarr import SonarrClient
from mediaseer.core.logger import setup_logger
from mediaseer.core.models import ServarrServer
from mediaseer.metadata.tmdb import CatalogError

logger = setup_logger(__name__)

_KIND_BY_MEDIA_TYPE = {"movie": "radarr", "tv": "sonarr"}


class AcquisitionError(Exception):
    """Forwarding a request to an acquisition server failed."""


def _load_servers(kind: str) -> List[ServarrServer]:
    from mediaseer.config.settings import get_servarr_servers

    return get_servarr_servers(kind)


def select_server(
    media_type: str,
    server_id: Optional[int] = None,
    servers: Optional[List[ServarrServer]] = None,
) -> Optional[ServarrServer]:
    """Pick the server for a request: explicit id, then the default, then the first.

    Returns None when no server of the kind is configured. An explicit id
    that doesn't match any server is an error.
    """
    kind = _KIND_BY_MEDIA_TYPE.get(media_type)
    if kind is None:
        raise AcquisitionError(f"Unsupported media type: {media_type}")

    candidates = servers if servers is not None else _load_servers(kind)
    if not candidates:
        return None

    if server_id is not None:
        for server in candidates:
            if server.id == int(server_id):
                return server
        raise AcquisitionError(f"{kind.capitalize()} server {server_id} is not configured")

    for server in candidates:
        if server.is_default:
            return server
    return candidates[0]


def _resolve_profile(client: Any, requested: Optional[int], server: ServarrServer) -> int:
    if requested is not None:
        return int(requested)
    if server.active_profile_id is not None:
        return int(server.active_profile_id)
    profiles = client.get_profiles()
    if not profiles:
        raise AcquisitionError(f"No quality profiles configured in {server.name}")
    return int(profiles[0]["id"])


def _resolve_root_folder(client: Any, requested: Optional[str], server: ServarrServer) -> str:
    if requested:
        return requested
    if server.active_directory:
        return server.active_directory
    folders = client.get_root_folders()
    if not folders:
        raise AcquisitionError(f"No root folders configured in {server.name}")
    return str(folders[0]["path"])


def _resolve_language_profile(client: SonarrClient) -> Optional[int]:
    """First language profile on Sonarr v3; None on v4, which dropped them."""
    try:
        profiles = client.get_language_profiles()
    except requests.exceptions.HTTPError as e:
        if e.response is not None and e.response.status_code == 404:
            return None
        raise
    if not profiles:
        return None
    return int(profiles[0]["id"])


def _release_year(movie: Dict[str, Any]) -> Optional[int]:
    release_date = str(movie.get("release_date") or "")
    try:
        return int(release_date[:4])
    except ValueError:
        return None


def send_to_acquisition(
    request_row: Dict[str, Any],
    media_row: Dict[str, Any],
    catalog: Any,
    servers: Optional[List[ServarrServer]] = None,
) -> Optional[Dict[str, Any]]:
    """Forward a request to Radarr (movies) or Sonarr (series).

    Returns a summary dict on success, or None when no server is configured
    for the media type. Raises AcquisitionError on any failure.
    """
    media_type = request_row.get("media_type") or media_row.get("media_type")
    kind = _KIND_BY_MEDIA_TYPE.get(media_type, str(media_type))
    server = select_server(media_type, request_row.get("server_id"), servers=servers)
    if server is None:
        logger.info(f"Skipped {kind} request as there is no {kind} configured")
        return None

    tmdb_id = int(media_row["tmdb_id"])
    try:
        if media_type == "movie":
            client = RadarrClient(server.build_url(), server.api_key)
            movie = catalog.get_movie(tmdb_id)
            profile_id = _resolve_profile(client, request_row.get("profile_id"), server)
            root_folder = _resolve_root_folder(client, request_row.get("root_folder"), server)
            result = client.add_movie(
                title=movie.get("title") or media_row.get("title") or "",
                tmdb_id=tmdb_id,
                year=_release_year(movie),
                quality_profile_id=profile_id,
                root_folder_path=root_folder,
                minimum_availability=server.minimum_availability,
                monitored=True,
                search_now=True,
            )
        else:
            client = SonarrClient(server.build_url(), server.api_key)
            show = catalog.get_tv(tmdb_id)
            tvdb_id = (show.get("external_ids") or {}).get("tvdb_id") or media_row.get("tvdb_id")
            if not tvdb_id:
                raise AcquisitionError("Series has no TVDB id; Sonarr cannot add it")
            profile_id = _resolve_profile(client, request_row.get("profile_id"), server)
            root_folder = _resolve_root_folder(client, request_row.get("root_folder"), server)
            result = client.add_series(
                tvdb_id=int(tvdb_id),
                title=show.get("name") or media_row.get("title") or "",
                quality_profile_id=profile_id,
                root_folder_path=root_folder,
                seasons=list(request_row.get("seasons") or []),
                season_folder=server.season_folders,
                search_now=True,
                language_profile_id=_resolve_language_profile(client),
            )
    except AcquisitionError:
        raise
    except (CatalogError, requests.RequestException, ValueError, KeyError) as e:
        logger.warning(f"Request #{request_row.get('id')} failed to send to {kind}: {e}")
        raise AcquisitionError(f"Request failed to send to {kind}: {e}") from e

    logger.info(f"Request #{request_row.get('id')} sent to {kind} server '{server.name}'")
    return {
        "kind": kind,
        "server_id": server.id,
        "server_name": server.name,
        "external_id": (result or {}).get("id"),
        "profile_id": profile_id,
        "root_folder": root_folder,
    }

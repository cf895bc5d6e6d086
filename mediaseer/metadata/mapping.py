"""Convert TMDB payloads and local records into camelCase API shapes."""

from typing import Any, Dict, Iterable, List, Optional

YOUTUBE_WATCH_URL = "https://www.youtube.com/watch?v={key}/"


def _list(value: Any) -> List[Any]:
    return value if isinstance(value, list) else []


def _dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


# =============================================================================
# Credits, ids, videos
# =============================================================================


def map_cast(person: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": person.get("id"),
        "castId": person.get("cast_id"),
        "character": person.get("character"),
        "creditId": person.get("credit_id"),
        "gender": person.get("gender"),
        "name": person.get("name"),
        "order": person.get("order"),
        "profilePath": person.get("profile_path"),
    }


def map_aggregate_cast(person: Dict[str, Any]) -> Dict[str, Any]:
    # The first role is the one the actor appears in the most
    roles = _list(person.get("roles"))
    first_role = _dict(roles[0]) if roles else {}
    return {
        "id": person.get("id"),
        "castId": person.get("cast_id"),
        "character": first_role.get("character"),
        "creditId": first_role.get("credit_id"),
        "gender": person.get("gender"),
        "name": person.get("name"),
        "order": person.get("order"),
        "profilePath": person.get("profile_path"),
    }


def map_crew(person: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": person.get("id"),
        "creditId": person.get("credit_id"),
        "department": person.get("department"),
        "gender": person.get("gender"),
        "job": person.get("job"),
        "name": person.get("name"),
        "profilePath": person.get("profile_path"),
    }


def map_external_ids(ids: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    ids = _dict(ids)
    return {
        "facebookId": ids.get("facebook_id"),
        "freebaseId": ids.get("freebase_id"),
        "freebaseMid": ids.get("freebase_mid"),
        "imdbId": ids.get("imdb_id"),
        "instagramId": ids.get("instagram_id"),
        "tvdbId": ids.get("tvdb_id"),
        "tvrageId": ids.get("tvrage_id"),
        "twitterId": ids.get("twitter_id"),
    }


def _video_url(site: Any, key: Any) -> Optional[str]:
    if site == "YouTube" and key:
        return YOUTUBE_WATCH_URL.format(key=key)
    return None


def map_videos(videos: Optional[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [
        {
            "site": video.get("site"),
            "key": video.get("key"),
            "name": video.get("name"),
            "size": video.get("size"),
            "type": video.get("type"),
            "url": _video_url(video.get("site"), video.get("key")),
        }
        for video in _list(_dict(videos).get("results"))
        if isinstance(video, dict)
    ]


def _map_companies(companies: Any) -> List[Dict[str, Any]]:
    return [
        {
            "id": c.get("id"),
            "logoPath": c.get("logo_path"),
            "originCountry": c.get("origin_country"),
            "name": c.get("name"),
        }
        for c in _list(companies)
        if isinstance(c, dict)
    ]


def _map_credits(credits: Any, aggregate: Any = None) -> Dict[str, Any]:
    credits = _dict(credits)
    if aggregate:
        cast = [map_aggregate_cast(p) for p in _list(_dict(aggregate).get("cast"))]
    else:
        cast = [map_cast(p) for p in _list(credits.get("cast"))]
    return {
        "cast": cast,
        "crew": [map_crew(p) for p in _list(credits.get("crew"))],
    }


# =============================================================================
# Search results
# =============================================================================


def _map_movie_result(result: Dict[str, Any], media_info: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    return {
        "id": result.get("id"),
        "mediaType": "movie",
        "adult": result.get("adult", False),
        "genreIds": result.get("genre_ids", []),
        "originalLanguage": result.get("original_language"),
        "originalTitle": result.get("original_title"),
        "overview": result.get("overview"),
        "popularity": result.get("popularity"),
        "releaseDate": result.get("release_date"),
        "title": result.get("title"),
        "video": result.get("video", False),
        "voteAverage": result.get("vote_average"),
        "voteCount": result.get("vote_count"),
        "backdropPath": result.get("backdrop_path"),
        "posterPath": result.get("poster_path"),
        "mediaInfo": media_info,
    }


def _map_tv_result(result: Dict[str, Any], media_info: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    return {
        "id": result.get("id"),
        "mediaType": "tv",
        "firstAirDate": result.get("first_air_date"),
        "genreIds": result.get("genre_ids", []),
        "name": result.get("name"),
        "originCountry": result.get("origin_country", []),
        "originalLanguage": result.get("original_language"),
        "originalName": result.get("original_name"),
        "overview": result.get("overview"),
        "popularity": result.get("popularity"),
        "voteAverage": result.get("vote_average"),
        "voteCount": result.get("vote_count"),
        "backdropPath": result.get("backdrop_path"),
        "posterPath": result.get("poster_path"),
        "mediaInfo": media_info,
    }


def _map_person_result(result: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": result.get("id"),
        "mediaType": "person",
        "name": result.get("name"),
        "popularity": result.get("popularity"),
        "profilePath": result.get("profile_path"),
        "adult": result.get("adult", False),
        "knownFor": [
            map_search_result(item, default_media_type=None)
            for item in _list(result.get("known_for"))
            if isinstance(item, dict) and item.get("media_type") in ("movie", "tv")
        ],
    }


def map_search_result(
    result: Dict[str, Any],
    media_info: Optional[Dict[str, Any]] = None,
    default_media_type: Optional[str] = None,
) -> Dict[str, Any]:
    """Map one search/discover entry; ``default_media_type`` covers endpoints that omit media_type."""
    media_type = result.get("media_type") or default_media_type
    if media_type == "tv":
        return _map_tv_result(result, media_info)
    if media_type == "person":
        return _map_person_result(result)
    return _map_movie_result(result, media_info)


def map_result_page(
    payload: Dict[str, Any],
    media_infos: Optional[Dict[tuple, Dict[str, Any]]] = None,
    default_media_type: Optional[str] = None,
) -> Dict[str, Any]:
    """Map a paged TMDB response. ``media_infos`` is keyed by (media_type, tmdb_id)."""
    media_infos = media_infos or {}
    results = []
    for item in _list(payload.get("results")):
        if not isinstance(item, dict):
            continue
        media_type = item.get("media_type") or default_media_type
        results.append(
            map_search_result(
                item,
                media_info=media_infos.get((media_type, item.get("id"))),
                default_media_type=default_media_type,
            )
        )
    return {
        "page": payload.get("page", 1),
        "totalPages": payload.get("total_pages", 1),
        "totalResults": payload.get("total_results", len(results)),
        "results": results,
    }


# =============================================================================
# Details
# =============================================================================


def map_movie_details(movie: Dict[str, Any], media_info: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    collection = movie.get("belongs_to_collection")
    return {
        "id": movie.get("id"),
        "imdbId": movie.get("imdb_id"),
        "adult": movie.get("adult", False),
        "backdropPath": movie.get("backdrop_path"),
        "posterPath": movie.get("poster_path"),
        "budget": movie.get("budget"),
        "genres": _list(movie.get("genres")),
        "homepage": movie.get("homepage"),
        "originalLanguage": movie.get("original_language"),
        "originalTitle": movie.get("original_title"),
        "overview": movie.get("overview"),
        "popularity": movie.get("popularity"),
        "productionCompanies": _map_companies(movie.get("production_companies")),
        "productionCountries": _list(movie.get("production_countries")),
        "releaseDate": movie.get("release_date"),
        "revenue": movie.get("revenue"),
        "runtime": movie.get("runtime"),
        "spokenLanguages": _list(movie.get("spoken_languages")),
        "status": movie.get("status"),
        "tagline": movie.get("tagline"),
        "title": movie.get("title"),
        "video": movie.get("video", False),
        "voteAverage": movie.get("vote_average"),
        "voteCount": movie.get("vote_count"),
        "credits": _map_credits(movie.get("credits")),
        "collection": {
            "id": collection.get("id"),
            "name": collection.get("name"),
            "posterPath": collection.get("poster_path"),
            "backdropPath": collection.get("backdrop_path"),
        } if isinstance(collection, dict) else None,
        "externalIds": map_external_ids(movie.get("external_ids")),
        "relatedVideos": map_videos(movie.get("videos")),
        "mediaInfo": media_info,
    }


def _map_season_summary(season: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": season.get("id"),
        "airDate": season.get("air_date"),
        "episodeCount": season.get("episode_count"),
        "name": season.get("name"),
        "overview": season.get("overview"),
        "posterPath": season.get("poster_path"),
        "seasonNumber": season.get("season_number"),
    }


def _map_episode(episode: Any) -> Optional[Dict[str, Any]]:
    if not isinstance(episode, dict):
        return None
    return {
        "id": episode.get("id"),
        "name": episode.get("name"),
        "airDate": episode.get("air_date"),
        "episodeNumber": episode.get("episode_number"),
        "overview": episode.get("overview"),
        "productionCode": episode.get("production_code"),
        "seasonNumber": episode.get("season_number"),
        "showId": episode.get("show_id"),
        "stillPath": episode.get("still_path"),
        "voteAverage": episode.get("vote_average"),
        "voteCount": episode.get("vote_count"),
    }


def map_tv_details(show: Dict[str, Any], media_info: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    return {
        "id": show.get("id"),
        "backdropPath": show.get("backdrop_path"),
        "posterPath": show.get("poster_path"),
        "contentRatings": _dict(show.get("content_ratings")).get("results", []),
        "createdBy": [
            {
                "id": c.get("id"),
                "creditId": c.get("credit_id"),
                "name": c.get("name"),
                "gender": c.get("gender"),
                "profilePath": c.get("profile_path"),
            }
            for c in _list(show.get("created_by"))
            if isinstance(c, dict)
        ],
        "episodeRunTime": _list(show.get("episode_run_time")),
        "firstAirDate": show.get("first_air_date"),
        "genres": _list(show.get("genres")),
        "homepage": show.get("homepage"),
        "inProduction": show.get("in_production"),
        "languages": _list(show.get("languages")),
        "lastAirDate": show.get("last_air_date"),
        "lastEpisodeToAir": _map_episode(show.get("last_episode_to_air")),
        "name": show.get("name"),
        "nextEpisodeToAir": _map_episode(show.get("next_episode_to_air")),
        "networks": _map_companies(show.get("networks")),
        "numberOfEpisodes": show.get("number_of_episodes"),
        "numberOfSeasons": show.get("number_of_seasons"),
        "originCountry": _list(show.get("origin_country")),
        "originalLanguage": show.get("original_language"),
        "originalName": show.get("original_name"),
        "overview": show.get("overview"),
        "popularity": show.get("popularity"),
        "productionCompanies": _map_companies(show.get("production_companies")),
        "seasons": [_map_season_summary(s) for s in _list(show.get("seasons")) if isinstance(s, dict)],
        "spokenLanguages": _list(show.get("spoken_languages")),
        "status": show.get("status"),
        "tagline": show.get("tagline"),
        "type": show.get("type"),
        "voteAverage": show.get("vote_average"),
        "voteCount": show.get("vote_count"),
        "credits": _map_credits(show.get("credits"), show.get("aggregate_credits")),
        "externalIds": map_external_ids(show.get("external_ids")),
        "relatedVideos": map_videos(show.get("videos")),
        "mediaInfo": media_info,
    }


def map_season(season: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": season.get("id"),
        "airDate": season.get("air_date"),
        "name": season.get("name"),
        "overview": season.get("overview"),
        "posterPath": season.get("poster_path"),
        "seasonNumber": season.get("season_number"),
        "episodes": [e for e in (_map_episode(ep) for ep in _list(season.get("episodes"))) if e],
        "externalIds": map_external_ids(season.get("external_ids")),
    }


def map_person(person: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": person.get("id"),
        "name": person.get("name"),
        "birthday": person.get("birthday"),
        "deathday": person.get("deathday"),
        "knownForDepartment": person.get("known_for_department"),
        "alsoKnownAs": _list(person.get("also_known_as")),
        "gender": person.get("gender"),
        "biography": person.get("biography"),
        "popularity": person.get("popularity"),
        "placeOfBirth": person.get("place_of_birth"),
        "profilePath": person.get("profile_path"),
        "adult": person.get("adult", False),
        "imdbId": person.get("imdb_id"),
        "homepage": person.get("homepage"),
    }


def map_combined_credits(
    credits: Dict[str, Any],
    media_infos: Optional[Dict[tuple, Dict[str, Any]]] = None,
) -> Dict[str, Any]:
    media_infos = media_infos or {}

    def _entry(item: Dict[str, Any], extra: Dict[str, Any]) -> Dict[str, Any]:
        mapped = map_search_result(item, media_info=media_infos.get((item.get("media_type"), item.get("id"))))
        mapped.update(extra)
        return mapped

    return {
        "id": credits.get("id"),
        "cast": [
            _entry(item, {"character": item.get("character"), "creditId": item.get("credit_id")})
            for item in _list(credits.get("cast"))
            if isinstance(item, dict)
        ],
        "crew": [
            _entry(item, {"job": item.get("job"), "department": item.get("department"), "creditId": item.get("credit_id")})
            for item in _list(credits.get("crew"))
            if isinstance(item, dict)
        ],
    }


def map_collection(
    collection: Dict[str, Any],
    media_infos: Optional[Dict[tuple, Dict[str, Any]]] = None,
) -> Dict[str, Any]:
    media_infos = media_infos or {}
    return {
        "id": collection.get("id"),
        "name": collection.get("name"),
        "overview": collection.get("overview"),
        "posterPath": collection.get("poster_path"),
        "backdropPath": collection.get("backdrop_path"),
        "parts": [
            map_search_result(
                part,
                media_info=media_infos.get(("movie", part.get("id"))),
                default_media_type="movie",
            )
            for part in _list(collection.get("parts"))
            if isinstance(part, dict)
        ],
    }


def season_numbers(show: Dict[str, Any]) -> List[int]:
    """Regular season numbers of a series, excluding specials (season 0)."""
    numbers = []
    for season in _list(show.get("seasons")):
        if not isinstance(season, dict):
            continue
        try:
            number = int(season.get("season_number"))
        except (TypeError, ValueError):
            continue
        if number > 0:
            numbers.append(number)
    return sorted(set(numbers))


def collect_media_keys(payload: Dict[str, Any], default_media_type: Optional[str] = None) -> Dict[str, List[int]]:
    """tmdb ids per media type found in a result page, for batch media lookups."""
    keys: Dict[str, List[int]] = {"movie": [], "tv": []}

    def _add(items: Iterable[Any], fallback: Optional[str]) -> None:
        for item in items:
            if not isinstance(item, dict):
                continue
            media_type = item.get("media_type") or fallback
            if media_type in keys and isinstance(item.get("id"), int):
                keys[media_type].append(item["id"])

    for key in ("results", "parts", "cast", "crew"):
        _add(_list(payload.get(key)), default_media_type)
    return keys


# =============================================================================
# Local records
# =============================================================================


def map_user_summary(user: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not user:
        return None
    return {
        "id": user.get("id"),
        "username": user.get("username"),
        "displayName": user.get("display_name") or user.get("username"),
        "email": user.get("email"),
        "avatar": user.get("avatar"),
        "permissions": user.get("permissions", 0),
    }


def map_request(
    row: Dict[str, Any],
    requested_by: Optional[Dict[str, Any]] = None,
    modified_by: Optional[Dict[str, Any]] = None,
    media: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    payload = {
        "id": row.get("id"),
        "status": row.get("status"),
        "mediaType": row.get("media_type"),
        "seasons": list(row.get("seasons") or []),
        "serverId": row.get("server_id"),
        "profileId": row.get("profile_id"),
        "rootFolder": row.get("root_folder"),
        "note": row.get("note"),
        "adminNote": row.get("admin_note"),
        "lastFailureReason": row.get("last_failure_reason"),
        "createdAt": row.get("created_at"),
        "updatedAt": row.get("updated_at"),
        "requestedBy": map_user_summary(requested_by) if requested_by else {"id": row.get("requested_by")},
        "modifiedBy": map_user_summary(modified_by) if modified_by else (
            {"id": row.get("modified_by")} if row.get("modified_by") else None
        ),
    }
    if media is not None:
        payload["media"] = map_media_info(media)
    return payload


def map_media_info(media: Dict[str, Any], requests: Optional[List[Dict[str, Any]]] = None) -> Dict[str, Any]:
    payload = {
        "id": media.get("id"),
        "tmdbId": media.get("tmdb_id"),
        "tvdbId": media.get("tvdb_id"),
        "imdbId": media.get("imdb_id"),
        "mediaType": media.get("media_type"),
        "status": media.get("status"),
        "title": media.get("title"),
        "createdAt": media.get("created_at"),
        "updatedAt": media.get("updated_at"),
    }
    if requests is not None:
        payload["requests"] = requests
    return payload


def map_issue_comment(row: Dict[str, Any], user: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    return {
        "id": row.get("id"),
        "issueId": row.get("issue_id"),
        "message": row.get("message"),
        "user": map_user_summary(user) if user else ({"id": row.get("user_id")} if row.get("user_id") else None),
        "createdAt": row.get("created_at"),
        "updatedAt": row.get("updated_at"),
    }


def map_issue(
    row: Dict[str, Any],
    created_by: Optional[Dict[str, Any]] = None,
    modified_by: Optional[Dict[str, Any]] = None,
    media: Optional[Dict[str, Any]] = None,
    comments: Optional[List[Dict[str, Any]]] = None,
) -> Dict[str, Any]:
    payload = {
        "id": row.get("id"),
        "issueType": row.get("issue_type"),
        "status": row.get("status"),
        "problemSeason": row.get("problem_season", 0),
        "problemEpisode": row.get("problem_episode", 0),
        "createdAt": row.get("created_at"),
        "updatedAt": row.get("updated_at"),
        "createdBy": map_user_summary(created_by) if created_by else {"id": row.get("created_by")},
        "modifiedBy": map_user_summary(modified_by) if modified_by else (
            {"id": row.get("modified_by")} if row.get("modified_by") else None
        ),
    }
    if media is not None:
        payload["media"] = map_media_info(media)
    if comments is not None:
        payload["comments"] = comments
    return payload

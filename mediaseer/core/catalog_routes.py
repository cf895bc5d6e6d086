"""Catalog browsing routes backed by TMDB.

Every payload that lists movies or series is enriched with the local
``mediaInfo`` row so the UI can show request and availability state.
"""

from __future__ import annotations

from typing import Any, Callable

from flask import Flask, jsonify, request

from mediaseer.core.logger import setup_logger
from mediaseer.core.media_db import MediaDB
from mediaseer.core.request_routes import UserCache, serialize_request
from mediaseer.core.route_auth import error_response, require_session
from mediaseer.core.user_db import UserDB
from mediaseer.metadata.mapping import (
    collect_media_keys,
    map_collection,
    map_combined_credits,
    map_media_info,
    map_movie_details,
    map_person,
    map_result_page,
    map_season,
    map_tv_details,
)
from mediaseer.metadata.tmdb import CatalogError, CatalogNotFound

logger = setup_logger(__name__)

# TMDB refuses pages past 500.
_MAX_PAGE = 500


def catalog_error_response(exc: CatalogError):
    if isinstance(exc, CatalogNotFound):
        return error_response(str(exc), 404, code="not_found")
    status = exc.status_code if exc.status_code in (400, 503, 504) else 502
    return error_response(str(exc), status, code="catalog_error")


def _page_arg() -> int:
    page = request.args.get("page", type=int, default=1) or 1
    return max(1, min(page, _MAX_PAGE))


def register_catalog_routes(
    app: Flask,
    user_db: UserDB,
    media_db: MediaDB,
    *,
    resolve_auth_mode: Callable[[], str],
    get_catalog: Callable[[], Any],
) -> None:
    """Register search, discover and detail routes."""

    def _media_infos(payload: dict[str, Any], default_media_type: str | None = None) -> dict[tuple, dict[str, Any]]:
        infos: dict[tuple, dict[str, Any]] = {}
        for media_type, tmdb_ids in collect_media_keys(payload, default_media_type).items():
            if not tmdb_ids:
                continue
            for tmdb_id, row in media_db.get_media_by_tmdb_ids(tmdb_ids, media_type).items():
                infos[(media_type, tmdb_id)] = map_media_info(row)
        return infos

    def _detail_media_info(tmdb_id: int, media_type: str) -> dict[str, Any] | None:
        row = media_db.get_media_by_tmdb(tmdb_id, media_type)
        if row is None:
            return None
        users = UserCache(user_db)
        requests = []
        for req in media_db.list_requests(media_id=row["id"]):
            serialized = serialize_request(req, users=users, media_db=media_db, media=row)
            serialized.pop("media", None)
            requests.append(serialized)
        return map_media_info(row, requests)

    def _result_page(fetch: Callable[[], dict[str, Any]], default_media_type: str | None = None):
        gate = require_session(resolve_auth_mode)
        if gate is not None:
            return gate
        try:
            payload = fetch()
        except CatalogError as exc:
            return catalog_error_response(exc)
        return jsonify(map_result_page(payload, _media_infos(payload, default_media_type), default_media_type))

    @app.route("/api/v1/search", methods=["GET"])
    def api_search():
        query = (request.args.get("query") or "").strip()
        if not query:
            return require_session(resolve_auth_mode) or error_response("query is required", 400)
        page = _page_arg()
        return _result_page(lambda: get_catalog().search_multi(query, page=page))

    @app.route("/api/v1/discover/movies", methods=["GET"])
    def api_discover_movies():
        page = _page_arg()
        sort_by = request.args.get("sortBy") or "popularity.desc"
        genre = request.args.get("genre", type=int)
        studio = request.args.get("studio", type=int)
        return _result_page(
            lambda: get_catalog().discover_movies(page=page, sort_by=sort_by, genre=genre, studio=studio),
            "movie",
        )

    @app.route("/api/v1/discover/movies/upcoming", methods=["GET"])
    def api_discover_movies_upcoming():
        page = _page_arg()
        return _result_page(lambda: get_catalog().upcoming_movies(page=page), "movie")

    @app.route("/api/v1/discover/tv", methods=["GET"])
    def api_discover_tv():
        page = _page_arg()
        sort_by = request.args.get("sortBy") or "popularity.desc"
        genre = request.args.get("genre", type=int)
        network = request.args.get("network", type=int)
        return _result_page(
            lambda: get_catalog().discover_tv(page=page, sort_by=sort_by, genre=genre, network=network),
            "tv",
        )

    @app.route("/api/v1/discover/tv/upcoming", methods=["GET"])
    def api_discover_tv_upcoming():
        page = _page_arg()
        return _result_page(lambda: get_catalog().upcoming_tv(page=page), "tv")

    @app.route("/api/v1/discover/trending", methods=["GET"])
    def api_discover_trending():
        page = _page_arg()
        media_type = request.args.get("mediaType") or "all"
        time_window = request.args.get("timeWindow") or "day"
        return _result_page(
            lambda: get_catalog().trending(page=page, media_type=media_type, time_window=time_window),
            None if media_type == "all" else media_type,
        )

    @app.route("/api/v1/movie/<int:tmdb_id>", methods=["GET"])
    def api_movie(tmdb_id: int):
        gate = require_session(resolve_auth_mode)
        if gate is not None:
            return gate
        try:
            movie = get_catalog().get_movie(tmdb_id)
        except CatalogError as exc:
            return catalog_error_response(exc)
        return jsonify(map_movie_details(movie, _detail_media_info(tmdb_id, "movie")))

    @app.route("/api/v1/movie/<int:tmdb_id>/recommendations", methods=["GET"])
    def api_movie_recommendations(tmdb_id: int):
        page = _page_arg()
        return _result_page(lambda: get_catalog().movie_recommendations(tmdb_id, page=page), "movie")

    @app.route("/api/v1/movie/<int:tmdb_id>/similar", methods=["GET"])
    def api_movie_similar(tmdb_id: int):
        page = _page_arg()
        return _result_page(lambda: get_catalog().movie_similar(tmdb_id, page=page), "movie")

    @app.route("/api/v1/tv/<int:tmdb_id>", methods=["GET"])
    def api_tv(tmdb_id: int):
        gate = require_session(resolve_auth_mode)
        if gate is not None:
            return gate
        try:
            show = get_catalog().get_tv(tmdb_id)
        except CatalogError as exc:
            return catalog_error_response(exc)
        return jsonify(map_tv_details(show, _detail_media_info(tmdb_id, "tv")))

    @app.route("/api/v1/tv/<int:tmdb_id>/recommendations", methods=["GET"])
    def api_tv_recommendations(tmdb_id: int):
        page = _page_arg()
        return _result_page(lambda: get_catalog().tv_recommendations(tmdb_id, page=page), "tv")

    @app.route("/api/v1/tv/<int:tmdb_id>/similar", methods=["GET"])
    def api_tv_similar(tmdb_id: int):
        page = _page_arg()
        return _result_page(lambda: get_catalog().tv_similar(tmdb_id, page=page), "tv")

    @app.route("/api/v1/tv/<int:tmdb_id>/season/<int:season_number>", methods=["GET"])
    def api_tv_season(tmdb_id: int, season_number: int):
        gate = require_session(resolve_auth_mode)
        if gate is not None:
            return gate
        try:
            season = get_catalog().get_season(tmdb_id, season_number)
        except CatalogError as exc:
            return catalog_error_response(exc)
        return jsonify(map_season(season))

    @app.route("/api/v1/person/<int:person_id>", methods=["GET"])
    def api_person(person_id: int):
        gate = require_session(resolve_auth_mode)
        if gate is not None:
            return gate
        try:
            person = get_catalog().get_person(person_id)
        except CatalogError as exc:
            return catalog_error_response(exc)
        return jsonify(map_person(person))

    @app.route("/api/v1/person/<int:person_id>/combined_credits", methods=["GET"])
    def api_person_credits(person_id: int):
        gate = require_session(resolve_auth_mode)
        if gate is not None:
            return gate
        try:
            credits = get_catalog().get_person_combined_credits(person_id)
        except CatalogError as exc:
            return catalog_error_response(exc)
        return jsonify(map_combined_credits(credits, _media_infos(credits)))

    @app.route("/api/v1/collection/<int:collection_id>", methods=["GET"])
    def api_collection(collection_id: int):
        gate = require_session(resolve_auth_mode)
        if gate is not None:
            return gate
        try:
            collection = get_catalog().get_collection(collection_id)
        except CatalogError as exc:
            return catalog_error_response(exc)
        return jsonify(map_collection(collection, _media_infos(collection, "movie")))

"""Tests for request lifecycle validation and approval forwarding."""

import os
import tempfile
import threading
from unittest.mock import patch

import pytest

from mediaseer.acquisition import AcquisitionError
from mediaseer.core.media_db import MediaDB
from mediaseer.core.permissions import DEFAULT_USER_PERMISSIONS, Permission
from mediaseer.core.requests_service import (
    MAX_REQUEST_NOTE_LENGTH,
    RequestServiceError,
    approve_request,
    auto_approve_if_allowed,
    create_request,
    decline_request,
    delete_request,
    normalize_note,
    normalize_request_status,
    refresh_media_status,
    update_pending_request,
    validate_status_transition,
)
from mediaseer.core.user_db import UserDB
from mediaseer.metadata.tmdb import CatalogError, CatalogNotFound


class FakeCatalog:
    def __init__(self):
        self.movies = {
            550: {"id": 550, "title": "Fight Club", "imdb_id": "tt0137523", "release_date": "1999-10-15"},
        }
        self.shows = {
            1399: {
                "id": 1399,
                "name": "Game of Thrones",
                "external_ids": {"tvdb_id": 121361, "imdb_id": "tt0944947"},
                "seasons": [
                    {"season_number": 0},
                    {"season_number": 1},
                    {"season_number": 2},
                    {"season_number": 3},
                ],
            },
        }

    def get_movie(self, tmdb_id):
        if tmdb_id not in self.movies:
            raise CatalogNotFound(f"movie {tmdb_id} not found", status_code=404)
        return self.movies[tmdb_id]

    def get_tv(self, tmdb_id):
        if tmdb_id not in self.shows:
            raise CatalogNotFound(f"tv {tmdb_id} not found", status_code=404)
        return self.shows[tmdb_id]


@pytest.fixture
def dbs():
    with tempfile.TemporaryDirectory() as tmpdir:
        path = os.path.join(tmpdir, "mediaseer.db")
        user_db = UserDB(path)
        user_db.initialize()
        media_db = MediaDB(path)
        media_db.initialize()
        yield user_db, media_db


@pytest.fixture
def user_db(dbs):
    return dbs[0]


@pytest.fixture
def media_db(dbs):
    return dbs[1]


@pytest.fixture
def catalog():
    return FakeCatalog()


@pytest.fixture
def requester(user_db):
    return user_db.create_user(username="alice", permissions=DEFAULT_USER_PERMISSIONS)


@pytest.fixture
def manager(user_db):
    return user_db.create_user(
        username="admin",
        permissions=int(Permission.REQUEST | Permission.MANAGE_REQUESTS),
    )


def _sent(kind="radarr"):
    return {"kind": kind, "server_id": 0, "server_name": "Main", "external_id": 7}


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------


def test_normalize_request_status():
    assert normalize_request_status(" Approved ") == "approved"
    with pytest.raises(ValueError, match="Invalid request status"):
        normalize_request_status("processing")


def test_validate_status_transition_rejects_terminal_mutation():
    assert validate_status_transition("pending", "approved") == ("pending", "approved")
    assert validate_status_transition("declined", "declined") == ("declined", "declined")
    with pytest.raises(ValueError, match="immutable"):
        validate_status_transition("approved", "pending")


def test_normalize_note():
    assert normalize_note(None) is None
    assert normalize_note("   ") is None
    assert normalize_note(" 4K please ") == "4K please"
    with pytest.raises(RequestServiceError, match="note must be a string"):
        normalize_note(5)
    with pytest.raises(RequestServiceError, match="note must be <="):
        normalize_note("x" * (MAX_REQUEST_NOTE_LENGTH + 1))


# ---------------------------------------------------------------------------
# create_request
# ---------------------------------------------------------------------------


def test_create_movie_request_tracks_media_as_pending(media_db, requester, catalog):
    request = create_request(media_db, user=requester, media_type="movie", tmdb_id=550, catalog=catalog, note="hi")

    assert request["status"] == "pending"
    assert request["seasons"] == []
    assert request["note"] == "hi"
    media = media_db.get_media(request["media_id"])
    assert media["title"] == "Fight Club"
    assert media["imdb_id"] == "tt0137523"
    assert media["status"] == "pending"


def test_create_tv_request_defaults_to_all_regular_seasons(media_db, requester, catalog):
    request = create_request(media_db, user=requester, media_type="tv", tmdb_id=1399, catalog=catalog)
    assert request["seasons"] == [1, 2, 3]
    media = media_db.get_media(request["media_id"])
    assert media["tvdb_id"] == 121361


def test_tv_request_skips_seasons_already_requested(media_db, requester, manager, catalog):
    create_request(media_db, user=requester, media_type="tv", tmdb_id=1399, catalog=catalog, seasons=[1, 2])
    second = create_request(media_db, user=manager, media_type="tv", tmdb_id=1399, catalog=catalog, seasons="all")
    assert second["seasons"] == [3]

    with pytest.raises(RequestServiceError) as exc_info:
        create_request(media_db, user=manager, media_type="tv", tmdb_id=1399, catalog=catalog, seasons=[2])
    assert exc_info.value.status_code == 409
    assert exc_info.value.code == "duplicate_request"


def test_concurrent_movie_requests_create_one(media_db, requester, manager, catalog):
    barrier = threading.Barrier(2, timeout=5)

    class InterleavedCatalog(FakeCatalog):
        def get_movie(self, tmdb_id):
            barrier.wait()
            return super().get_movie(tmdb_id)

    shared_catalog = InterleavedCatalog()
    created, errors = [], []

    def submit(user):
        try:
            created.append(
                create_request(media_db, user=user, media_type="movie", tmdb_id=550, catalog=shared_catalog)
            )
        except RequestServiceError as exc:
            errors.append(exc)

    threads = [threading.Thread(target=submit, args=(user,)) for user in (requester, manager)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(created) == 1
    assert [(e.status_code, e.code) for e in errors] == [(409, "duplicate_request")]
    assert len(media_db.list_active_requests_for_media(created[0]["media_id"])) == 1


def test_tv_request_rejects_unknown_seasons(media_db, requester, catalog):
    with pytest.raises(RequestServiceError, match="Unknown season"):
        create_request(media_db, user=requester, media_type="tv", tmdb_id=1399, catalog=catalog, seasons=[9])
    with pytest.raises(RequestServiceError, match="non-empty list"):
        create_request(media_db, user=requester, media_type="tv", tmdb_id=1399, catalog=catalog, seasons=[])


def test_duplicate_movie_request_conflicts(media_db, requester, manager, catalog):
    create_request(media_db, user=requester, media_type="movie", tmdb_id=550, catalog=catalog)
    with pytest.raises(RequestServiceError) as exc_info:
        create_request(media_db, user=manager, media_type="movie", tmdb_id=550, catalog=catalog)
    assert exc_info.value.status_code == 409
    assert exc_info.value.code == "duplicate_request"


def test_available_media_cannot_be_requested(media_db, requester, catalog):
    media = media_db.get_or_create_media(tmdb_id=550, media_type="movie")
    media_db.update_media_status(media["id"], "available")
    with pytest.raises(RequestServiceError) as exc_info:
        create_request(media_db, user=requester, media_type="movie", tmdb_id=550, catalog=catalog)
    assert exc_info.value.code == "already_available"


def test_create_request_requires_permission(media_db, user_db, catalog):
    movies_only = user_db.create_user(username="m", permissions=int(Permission.REQUEST_MOVIE))
    create_request(media_db, user=movies_only, media_type="movie", tmdb_id=550, catalog=catalog)
    with pytest.raises(RequestServiceError) as exc_info:
        create_request(media_db, user=movies_only, media_type="tv", tmdb_id=1399, catalog=catalog)
    assert exc_info.value.status_code == 403
    assert exc_info.value.code == "forbidden"


def test_advanced_options_need_permission(media_db, requester, user_db, catalog):
    with pytest.raises(RequestServiceError) as exc_info:
        create_request(
            media_db, user=requester, media_type="movie", tmdb_id=550, catalog=catalog, server_id=1
        )
    assert exc_info.value.status_code == 403

    advanced = user_db.create_user(
        username="adv",
        permissions=int(Permission.REQUEST | Permission.REQUEST_ADVANCED),
    )
    request = create_request(
        media_db,
        user=advanced,
        media_type="movie",
        tmdb_id=550,
        catalog=catalog,
        server_id=1,
        profile_id=4,
        root_folder=" /movies ",
    )
    assert (request["server_id"], request["profile_id"], request["root_folder"]) == (1, 4, "/movies")


def test_max_pending_requests_enforced(media_db, requester, catalog):
    create_request(media_db, user=requester, media_type="movie", tmdb_id=550, catalog=catalog, max_pending=1)
    with pytest.raises(RequestServiceError) as exc_info:
        create_request(media_db, user=requester, media_type="tv", tmdb_id=1399, catalog=catalog, max_pending=1)
    assert exc_info.value.code == "max_pending_reached"


def test_unknown_title_is_not_found(media_db, requester, catalog):
    with pytest.raises(RequestServiceError) as exc_info:
        create_request(media_db, user=requester, media_type="movie", tmdb_id=1, catalog=catalog)
    assert exc_info.value.status_code == 404
    assert exc_info.value.code == "not_found"


def test_catalog_outage_maps_to_bad_gateway(media_db, requester):
    class BrokenCatalog:
        def get_movie(self, tmdb_id):
            raise CatalogError("TMDB unreachable", status_code=None)

    with pytest.raises(RequestServiceError) as exc_info:
        create_request(media_db, user=requester, media_type="movie", tmdb_id=550, catalog=BrokenCatalog())
    assert exc_info.value.status_code == 502
    assert exc_info.value.code == "catalog_error"


@pytest.mark.parametrize(
    "media_type, tmdb_id, message",
    [("music", 1, "Invalid mediaType"), ("movie", 0, "mediaId"), ("movie", "abc", "mediaId")],
)
def test_create_request_input_validation(media_db, requester, catalog, media_type, tmdb_id, message):
    with pytest.raises(RequestServiceError, match=message):
        create_request(media_db, user=requester, media_type=media_type, tmdb_id=tmdb_id, catalog=catalog)


# ---------------------------------------------------------------------------
# Approval
# ---------------------------------------------------------------------------


def test_approve_forwards_then_marks_approved(media_db, requester, manager, catalog):
    request = create_request(media_db, user=requester, media_type="movie", tmdb_id=550, catalog=catalog)

    with patch("mediaseer.core.requests_service.send_to_acquisition", return_value=_sent()) as send:
        approved = approve_request(
            media_db,
            request_id=request["id"],
            actor_user_id=manager["id"],
            catalog=catalog,
            admin_note=" enjoy ",
        )

    send.assert_called_once()
    assert approved["status"] == "approved"
    assert approved["modified_by"] == manager["id"]
    assert approved["admin_note"] == "enjoy"
    assert media_db.get_media(request["media_id"])["status"] == "processing"


def test_failed_forward_keeps_request_pending(media_db, requester, manager, catalog):
    request = create_request(media_db, user=requester, media_type="movie", tmdb_id=550, catalog=catalog)

    with patch(
        "mediaseer.core.requests_service.send_to_acquisition",
        side_effect=AcquisitionError("Request failed to send to radarr: timeout"),
    ):
        with pytest.raises(RequestServiceError) as exc_info:
            approve_request(media_db, request_id=request["id"], actor_user_id=manager["id"], catalog=catalog)

    assert exc_info.value.status_code == 502
    assert exc_info.value.code == "acquisition_failed"
    stored = media_db.get_request(request["id"])
    assert stored["status"] == "pending"
    assert stored["last_failure_reason"] == "Request failed to send to radarr: timeout"
    assert media_db.get_media(request["media_id"])["status"] == "pending"


def test_retry_after_failure_clears_reason(media_db, requester, manager, catalog):
    request = create_request(media_db, user=requester, media_type="movie", tmdb_id=550, catalog=catalog)
    media_db.update_request(request["id"], last_failure_reason="timeout")

    with patch("mediaseer.core.requests_service.send_to_acquisition", return_value=None):
        approved = approve_request(media_db, request_id=request["id"], actor_user_id=manager["id"], catalog=catalog)

    assert approved["status"] == "approved"
    assert approved["last_failure_reason"] is None


def test_approving_terminal_request_is_stale(media_db, requester, manager, catalog):
    request = create_request(media_db, user=requester, media_type="movie", tmdb_id=550, catalog=catalog)
    decline_request(media_db, request_id=request["id"], actor_user_id=manager["id"])

    with patch("mediaseer.core.requests_service.send_to_acquisition") as send:
        with pytest.raises(RequestServiceError) as exc_info:
            approve_request(media_db, request_id=request["id"], actor_user_id=manager["id"], catalog=catalog)
    send.assert_not_called()
    assert exc_info.value.status_code == 409
    assert exc_info.value.code == "stale_transition"


def test_approve_missing_request_is_not_found(media_db, manager, catalog):
    with pytest.raises(RequestServiceError) as exc_info:
        approve_request(media_db, request_id=999, actor_user_id=manager["id"], catalog=catalog)
    assert exc_info.value.status_code == 404


def test_decline_resets_media_status(media_db, requester, manager, catalog):
    request = create_request(media_db, user=requester, media_type="movie", tmdb_id=550, catalog=catalog)
    declined = decline_request(
        media_db,
        request_id=request["id"],
        actor_user_id=manager["id"],
        admin_note="Not on our list",
    )
    assert declined["status"] == "declined"
    assert declined["admin_note"] == "Not on our list"
    assert media_db.get_media(request["media_id"])["status"] == "unknown"


def test_auto_approve_for_eligible_users(media_db, user_db, catalog):
    trusted = user_db.create_user(
        username="trusted",
        permissions=int(Permission.REQUEST | Permission.AUTO_APPROVE_MOVIE),
    )
    request = create_request(media_db, user=trusted, media_type="movie", tmdb_id=550, catalog=catalog)

    with patch("mediaseer.core.requests_service.send_to_acquisition", return_value=_sent()):
        row, outcome = auto_approve_if_allowed(media_db, request_row=request, user=trusted, catalog=catalog)
    assert outcome == "approved"
    assert row["status"] == "approved"


def test_auto_approve_skips_ineligible_users(media_db, requester, catalog):
    request = create_request(media_db, user=requester, media_type="movie", tmdb_id=550, catalog=catalog)
    with patch("mediaseer.core.requests_service.send_to_acquisition") as send:
        row, outcome = auto_approve_if_allowed(media_db, request_row=request, user=requester, catalog=catalog)
    send.assert_not_called()
    assert outcome == "pending"
    assert row["status"] == "pending"


def test_auto_approve_failure_leaves_request_pending(media_db, manager, catalog):
    request = create_request(media_db, user=manager, media_type="tv", tmdb_id=1399, catalog=catalog)
    with patch(
        "mediaseer.core.requests_service.send_to_acquisition",
        side_effect=AcquisitionError("Series has no TVDB id"),
    ):
        row, outcome = auto_approve_if_allowed(media_db, request_row=request, user=manager, catalog=catalog)
    assert outcome == "failed"
    assert row["status"] == "pending"
    assert row["last_failure_reason"] == "Series has no TVDB id"


# ---------------------------------------------------------------------------
# Delete / update
# ---------------------------------------------------------------------------


def test_owner_deletes_own_pending_request(media_db, requester, catalog):
    request = create_request(media_db, user=requester, media_type="movie", tmdb_id=550, catalog=catalog)
    delete_request(media_db, request_id=request["id"], actor_user_id=requester["id"], can_manage=False)
    assert media_db.get_request(request["id"]) is None
    assert media_db.get_media(request["media_id"])["status"] == "unknown"


def test_owner_cannot_delete_others_or_processed_requests(media_db, requester, manager, catalog):
    request = create_request(media_db, user=requester, media_type="movie", tmdb_id=550, catalog=catalog)

    with pytest.raises(RequestServiceError) as exc_info:
        delete_request(media_db, request_id=request["id"], actor_user_id=manager["id"], can_manage=False)
    assert exc_info.value.status_code == 403

    decline_request(media_db, request_id=request["id"], actor_user_id=manager["id"])
    with pytest.raises(RequestServiceError) as exc_info:
        delete_request(media_db, request_id=request["id"], actor_user_id=requester["id"], can_manage=False)
    assert exc_info.value.status_code == 409

    delete_request(media_db, request_id=request["id"], actor_user_id=manager["id"], can_manage=True)
    assert media_db.get_request(request["id"]) is None


def test_refresh_media_status_keeps_available(media_db, requester, catalog):
    request = create_request(media_db, user=requester, media_type="movie", tmdb_id=550, catalog=catalog)
    media_db.update_media_status(request["media_id"], "available")
    media_db.delete_request(request["id"])
    assert refresh_media_status(media_db, request["media_id"])["status"] == "available"
    assert refresh_media_status(media_db, 999) is None


def test_update_pending_request_changes_seasons_and_note(media_db, requester, catalog):
    request = create_request(media_db, user=requester, media_type="tv", tmdb_id=1399, catalog=catalog, seasons=[1])
    updated = update_pending_request(
        media_db,
        request_id=request["id"],
        actor=requester,
        changes={"seasons": [1, 2], "note": "both please"},
        catalog=catalog,
    )
    assert updated["seasons"] == [1, 2]
    assert updated["note"] == "both please"
    assert updated["modified_by"] is None


def test_update_pending_request_rules(media_db, requester, manager, catalog):
    movie = create_request(media_db, user=requester, media_type="movie", tmdb_id=550, catalog=catalog)

    with pytest.raises(RequestServiceError, match="Unknown field"):
        update_pending_request(media_db, request_id=movie["id"], actor=requester, changes={"status": "approved"})
    with pytest.raises(RequestServiceError, match="Only series requests have seasons"):
        update_pending_request(
            media_db, request_id=movie["id"], actor=requester, changes={"seasons": [1]}, catalog=catalog
        )

    updated = update_pending_request(
        media_db,
        request_id=movie["id"],
        actor=manager,
        changes={"profile_id": 6},
    )
    assert updated["profile_id"] == 6
    assert updated["modified_by"] == manager["id"]

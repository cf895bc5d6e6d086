"""Tests for issue reporting, commenting and deletion rules."""

import os
import tempfile

import pytest

from mediaseer.core.issues_service import (
    IssueServiceError,
    add_comment,
    create_issue,
    delete_comment,
    delete_issue,
    ensure_issue_access,
    get_comment,
    set_issue_status,
    update_comment,
)
from mediaseer.core.media_db import MediaDB
from mediaseer.core.permissions import DEFAULT_USER_PERMISSIONS, Permission
from mediaseer.core.user_db import UserDB


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
def reporter(user_db):
    return user_db.create_user(username="alice", permissions=DEFAULT_USER_PERMISSIONS)


@pytest.fixture
def other_user(user_db):
    return user_db.create_user(username="bob", permissions=DEFAULT_USER_PERMISSIONS)


@pytest.fixture
def manager(user_db):
    return user_db.create_user(username="admin", permissions=int(Permission.MANAGE_ISSUES))


@pytest.fixture
def available_show(media_db):
    media = media_db.get_or_create_media(tmdb_id=1399, media_type="tv", title="Game of Thrones")
    return media_db.update_media_status(media["id"], "partially_available")


@pytest.fixture
def available_movie(media_db):
    media = media_db.get_or_create_media(tmdb_id=550, media_type="movie", title="Fight Club")
    return media_db.update_media_status(media["id"], "available")


def _report(media_db, user, media, **overrides):
    kwargs = {
        "user": user,
        "media_id": media["id"],
        "issue_type": "video",
        "message": "Picture freezes",
    }
    kwargs.update(overrides)
    return create_issue(media_db, **kwargs)


def test_create_issue_on_available_media(media_db, reporter, available_show):
    issue = _report(media_db, reporter, available_show, issue_type="Audio", problem_season=1, problem_episode=3)
    assert issue["issue_type"] == "audio"
    assert issue["problem_season"] == 1
    assert issue["problem_episode"] == 3
    assert media_db.list_issue_comments(issue["id"])[0]["message"] == "Picture freezes"


def test_create_issue_requires_available_media(media_db, reporter):
    media = media_db.get_or_create_media(tmdb_id=1, media_type="movie")
    with pytest.raises(IssueServiceError) as exc_info:
        _report(media_db, reporter, media)
    assert exc_info.value.status_code == 409
    assert exc_info.value.code == "media_not_available"


def test_create_issue_requires_permission(media_db, user_db, available_movie):
    viewer = user_db.create_user(username="viewer", permissions=int(Permission.REQUEST))
    with pytest.raises(IssueServiceError) as exc_info:
        _report(media_db, viewer, available_movie)
    assert exc_info.value.status_code == 403


@pytest.mark.parametrize(
    "overrides, message",
    [
        ({"issue_type": "smell"}, "Invalid issueType"),
        ({"message": "   "}, "message is required"),
        ({"message": "x" * 2001}, "message must be <="),
        ({"problem_season": 1}, "Movie issues cannot reference"),
        ({"problem_season": -1}, "non-negative"),
    ],
)
def test_create_issue_validation(media_db, reporter, available_movie, overrides, message):
    with pytest.raises(IssueServiceError, match=message):
        _report(media_db, reporter, available_movie, **overrides)


def test_episode_without_season_is_rejected(media_db, reporter, available_show):
    with pytest.raises(IssueServiceError, match="problemEpisode requires problemSeason"):
        _report(media_db, reporter, available_show, problem_episode=2)


def test_unknown_media_is_not_found(media_db, reporter):
    with pytest.raises(IssueServiceError) as exc_info:
        create_issue(media_db, user=reporter, media_id=999, issue_type="video", message="x")
    assert exc_info.value.status_code == 404


def test_other_users_issues_are_hidden(media_db, reporter, other_user, available_movie, user_db):
    issue = _report(media_db, reporter, available_movie)
    with pytest.raises(IssueServiceError) as exc_info:
        ensure_issue_access(media_db, issue_id=issue["id"], user=other_user)
    assert exc_info.value.status_code == 404

    viewer = user_db.create_user(username="viewer", permissions=int(Permission.VIEW_ISSUES))
    assert ensure_issue_access(media_db, issue_id=issue["id"], user=viewer)["id"] == issue["id"]


def test_viewer_cannot_comment_on_others_issue(media_db, reporter, available_movie, user_db):
    issue = _report(media_db, reporter, available_movie)
    viewer = user_db.create_user(username="viewer", permissions=int(Permission.VIEW_ISSUES))
    with pytest.raises(IssueServiceError) as exc_info:
        add_comment(media_db, issue_id=issue["id"], user=viewer, message="+1")
    assert exc_info.value.status_code == 403


def test_reporter_and_manager_can_comment(media_db, reporter, manager, available_movie):
    issue = _report(media_db, reporter, available_movie)
    add_comment(media_db, issue_id=issue["id"], user=manager, message="Checking")
    add_comment(media_db, issue_id=issue["id"], user=reporter, message="Thanks")
    messages = [c["message"] for c in media_db.list_issue_comments(issue["id"])]
    assert messages == ["Picture freezes", "Checking", "Thanks"]


def test_set_issue_status(media_db, reporter, manager, other_user, available_movie):
    issue = _report(media_db, reporter, available_movie)

    resolved = set_issue_status(media_db, issue_id=issue["id"], user=manager, status="resolved")
    assert resolved["status"] == "resolved"
    assert resolved["modified_by"] == manager["id"]

    reopened = set_issue_status(media_db, issue_id=issue["id"], user=reporter, status="OPEN")
    assert reopened["status"] == "open"

    with pytest.raises(IssueServiceError, match="Invalid issue status"):
        set_issue_status(media_db, issue_id=issue["id"], user=manager, status="closed")
    with pytest.raises(IssueServiceError) as exc_info:
        set_issue_status(media_db, issue_id=issue["id"], user=other_user, status="resolved")
    assert exc_info.value.status_code == 404


def test_reporter_cannot_delete_issue_with_replies(media_db, reporter, manager, available_movie):
    issue = _report(media_db, reporter, available_movie)
    add_comment(media_db, issue_id=issue["id"], user=manager, message="Looking into it")

    with pytest.raises(IssueServiceError) as exc_info:
        delete_issue(media_db, issue_id=issue["id"], user=reporter)
    assert exc_info.value.status_code == 409
    assert exc_info.value.code == "issue_has_replies"

    delete_issue(media_db, issue_id=issue["id"], user=manager)
    assert media_db.get_issue(issue["id"]) is None


def test_reporter_can_delete_issue_without_replies(media_db, reporter, available_movie):
    issue = _report(media_db, reporter, available_movie)
    add_comment(media_db, issue_id=issue["id"], user=reporter, message="Still broken")
    delete_issue(media_db, issue_id=issue["id"], user=reporter)
    assert media_db.get_issue(issue["id"]) is None


def test_replies_from_deleted_users_do_not_block_delete(media_db, user_db, reporter, other_user, available_movie):
    issue = _report(media_db, reporter, available_movie)
    media_db.add_issue_comment(issue_id=issue["id"], user_id=other_user["id"], message="Same here")
    user_db.delete_user(other_user["id"])
    assert media_db.list_issue_comments(issue["id"])[0]["user_id"] is None

    delete_issue(media_db, issue_id=issue["id"], user=reporter)
    assert media_db.get_issue(issue["id"]) is None


def test_comment_edit_is_author_only(media_db, reporter, manager, available_movie):
    issue = _report(media_db, reporter, available_movie)
    comment = add_comment(media_db, issue_id=issue["id"], user=manager, message="Typo hree")

    with pytest.raises(IssueServiceError) as exc_info:
        update_comment(media_db, comment_id=comment["id"], user=reporter, message="hijack")
    assert exc_info.value.status_code == 403

    edited = update_comment(media_db, comment_id=comment["id"], user=manager, message="Typo here")
    assert edited["message"] == "Typo here"
    assert get_comment(media_db, comment_id=comment["id"], user=reporter)["message"] == "Typo here"


def test_comment_delete_by_author_or_manager(media_db, reporter, manager, other_user, available_movie):
    issue = _report(media_db, reporter, available_movie)
    own = add_comment(media_db, issue_id=issue["id"], user=reporter, message="mine")
    managed = add_comment(media_db, issue_id=issue["id"], user=reporter, message="also mine")

    with pytest.raises(IssueServiceError) as exc_info:
        delete_comment(media_db, comment_id=own["id"], user=other_user)
    assert exc_info.value.status_code == 403

    delete_comment(media_db, comment_id=own["id"], user=reporter)
    delete_comment(media_db, comment_id=managed["id"], user=manager)
    assert len(media_db.list_issue_comments(issue["id"])) == 1

    with pytest.raises(IssueServiceError) as exc_info:
        delete_comment(media_db, comment_id=own["id"], user=reporter)
    assert exc_info.value.status_code == 404

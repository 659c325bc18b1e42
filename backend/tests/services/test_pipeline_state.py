"""Tests for the bookmark enrichment state machine."""
from datetime import timedelta

import pytest

from models import Bookmark, BookmarkAsset, BookmarkLink, BookmarkText
from models.base import utcnow
from schemas.jobs import Topic
from services.pipeline_state import (
    INDEX,
    LOADING_WINDOW,
    PlannedJob,
    Stage,
    current_stage,
    display_stage,
    plan_after_crawl,
    plan_after_edit,
    plan_after_recrawl,
    plan_after_tagging,
    plan_initial_jobs,
)


def _link(
    crawl_status: str = "pending",
    tagging_status: str = "pending",
    age: timedelta = timedelta(0),
    crawled: bool = False,
) -> Bookmark:
    now = utcnow()
    return Bookmark(
        type="link",
        tagging_status=tagging_status,
        created_at=now - age,
        link=BookmarkLink(
            url="https://example.com",
            crawl_status=crawl_status,
            crawled_at=now if crawled else None,
        ),
    )


def _text(tagging_status: str = "pending", age: timedelta = timedelta(0)) -> Bookmark:
    return Bookmark(
        type="text",
        tagging_status=tagging_status,
        created_at=utcnow() - age,
        text=BookmarkText(text="hello"),
    )


# =============================================================================
# current_stage
# =============================================================================


@pytest.mark.parametrize(
    ("crawl_status", "tagging_status", "expected"),
    [
        ("pending", "pending", Stage.CRAWLING),
        ("success", "pending", Stage.TAGGING),
        ("failure", "pending", Stage.TAGGING),
        ("success", "success", Stage.READY),
        ("failure", "failure", Stage.READY),
    ],
)
def test__current_stage__link(crawl_status: str, tagging_status: str, expected: Stage) -> None:
    """A link crawls first, then tags, then is ready."""
    assert current_stage(_link(crawl_status, tagging_status)) is expected


def test__current_stage__text_skips_crawling() -> None:
    """Text bookmarks never crawl."""
    assert current_stage(_text()) is Stage.TAGGING
    assert current_stage(_text("success")) is Stage.READY


# =============================================================================
# display_stage
# =============================================================================


def test__display_stage__fresh_link_is_crawling() -> None:
    """Within the loading window a pending crawl is shown as crawling."""
    assert display_stage(_link()) is Stage.CRAWLING


def test__display_stage__stale_pending_crawl_shown_as_settled() -> None:
    """After the window a never-crawled link is not shown as loading forever."""
    bookmark = _link(age=LOADING_WINDOW + timedelta(seconds=1))

    assert display_stage(bookmark) is Stage.READY


def test__display_stage__recrawl_shows_real_state() -> None:
    """A re-crawl of an old link is shown as crawling again."""
    bookmark = _link(age=timedelta(days=3), crawled=True)

    assert display_stage(bookmark) is Stage.CRAWLING


def test__display_stage__stale_tagging_shown_as_ready() -> None:
    """Tags are no longer shown as loading once the window has passed."""
    assert display_stage(_text(age=timedelta(seconds=5))) is Stage.TAGGING
    assert display_stage(_text(age=LOADING_WINDOW * 2)) is Stage.READY


# =============================================================================
# Transitions
# =============================================================================


def test__plan_initial_jobs__link_crawls() -> None:
    """New links crawl first and get an initial index document."""
    assert plan_initial_jobs(_link()) == [PlannedJob(Topic.CRAWL), INDEX]


def test__plan_initial_jobs__text_and_asset_tag() -> None:
    """New text and asset bookmarks go straight to tagging."""
    asset = Bookmark(type="asset", asset=BookmarkAsset(asset_id="a1", asset_type="image"))

    assert plan_initial_jobs(_text()) == [PlannedJob(Topic.OPENAI), INDEX]
    assert plan_initial_jobs(asset) == [PlannedJob(Topic.OPENAI), INDEX]


def test__plan_after_crawl__success_with_video() -> None:
    """A successful crawl schedules tagging, video and a re-index."""
    jobs = plan_after_crawl(_link("success"), crawl_succeeded=True, video_enabled=True)

    assert jobs == [PlannedJob(Topic.OPENAI), PlannedJob(Topic.VIDEO), INDEX]


def test__plan_after_crawl__failure_still_tags() -> None:
    """Tagging is never blocked by a failed crawl; no video is attempted."""
    jobs = plan_after_crawl(_link("failure"), crawl_succeeded=False, video_enabled=True)

    assert jobs == [PlannedJob(Topic.OPENAI), INDEX]


def test__plan_after_crawl__already_tagged() -> None:
    """Tagging that already finished is not scheduled again."""
    jobs = plan_after_crawl(_link("success", "success"), crawl_succeeded=True, video_enabled=False)

    assert jobs == [INDEX]


def test__plan_after_tagging_edit_and_recrawl() -> None:
    """Tagging and edits re-index; a re-crawl only crawls."""
    assert plan_after_tagging(_text("success")) == [INDEX]
    assert plan_after_edit(_text()) == [INDEX]
    assert plan_after_recrawl(_link()) == [PlannedJob(Topic.CRAWL)]

"""
Enrichment state machine for a bookmark.

    CREATED --create--> CRAWLING (links) | TAGGING (text, assets)
    CRAWLING --crawl finished or failed--> TAGGING (tagging pending) | READY
    TAGGING --tagging finished or failed--> READY
    READY --recrawl--> CRAWLING

The current stage is derived from the bookmark's status fields, never
stored. Stage completion handlers ask this module which jobs come next based
on the bookmark as it is now, so stages that run out of order or twice still
schedule the right follow-ups. Index jobs are planned after every stage so
the search document converges to the crawled and tagged content.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import StrEnum
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from jobs.outbox import stage_bookmark_job
from models import Bookmark, BookmarkType, CrawlStatus, TaggingStatus
from models.base import utcnow
from schemas.jobs import Topic

# After this long a bookmark still waiting on a stage is shown as settled
LOADING_WINDOW = timedelta(seconds=30)


class Stage(StrEnum):
    """Pipeline stage of a bookmark."""

    CREATED = "created"
    CRAWLING = "crawling"
    TAGGING = "tagging"
    READY = "ready"


@dataclass(frozen=True)
class PlannedJob:
    """A job the state machine wants scheduled."""

    topic: Topic
    kind: str | None = None


INDEX = PlannedJob(Topic.SEARCH_INDEXING, "index")
DELETE_FROM_INDEX = PlannedJob(Topic.SEARCH_INDEXING, "delete")


def is_crawl_pending(bookmark: Bookmark) -> bool:
    """True while a link bookmark has not finished (or given up) crawling."""
    return (
        bookmark.type == BookmarkType.LINK
        and bookmark.link is not None
        and bookmark.link.crawl_status == CrawlStatus.PENDING
    )


def current_stage(bookmark: Bookmark) -> Stage:
    """Stage derived from the bookmark's status fields."""
    if is_crawl_pending(bookmark):
        return Stage.CRAWLING
    if bookmark.tagging_status == TaggingStatus.PENDING:
        return Stage.TAGGING
    return Stage.READY


def is_still_crawling(bookmark: Bookmark, now: datetime | None = None) -> bool:
    """Whether to present a link as loading: crawl pending and inside the window."""
    now = now or utcnow()
    return (
        is_crawl_pending(bookmark)
        and bookmark.link.crawled_at is None
        and now - bookmark.created_at < LOADING_WINDOW
    )


def is_still_tagging(bookmark: Bookmark, now: datetime | None = None) -> bool:
    """Whether to present tags as loading: tagging pending and inside the window."""
    now = now or utcnow()
    return (
        bookmark.tagging_status == TaggingStatus.PENDING
        and now - bookmark.created_at < LOADING_WINDOW
    )


def display_stage(bookmark: Bookmark, now: datetime | None = None) -> Stage:
    """
    Stage shown to users.

    Once the loading window has passed, a bookmark whose crawl never
    completed is shown as ready (crawled but empty) instead of loading
    forever. Stages restarted by a re-crawl show their real state.
    """
    now = now or utcnow()
    stage = current_stage(bookmark)
    if stage is Stage.CRAWLING:
        if bookmark.link.crawled_at is not None or is_still_crawling(bookmark, now):
            return stage
        stage = Stage.TAGGING if bookmark.tagging_status == TaggingStatus.PENDING else Stage.READY
    if stage is Stage.TAGGING and not is_still_tagging(bookmark, now):
        return Stage.READY
    return stage


# =============================================================================
# Transitions
# =============================================================================


def plan_initial_jobs(bookmark: Bookmark) -> list[PlannedJob]:
    """Jobs for a newly created bookmark (CREATED)."""
    if bookmark.type == BookmarkType.LINK:
        return [PlannedJob(Topic.CRAWL), INDEX]
    return [PlannedJob(Topic.OPENAI), INDEX]


def plan_after_crawl(
    bookmark: Bookmark,
    *,
    crawl_succeeded: bool,
    video_enabled: bool,
) -> list[PlannedJob]:
    """
    Jobs after the crawl stage finished or gave up (leaving CRAWLING).

    Tagging is scheduled whenever it is still pending, even after a failed
    crawl, so it is never blocked by the crawler.
    """
    jobs = []
    if bookmark.tagging_status == TaggingStatus.PENDING:
        jobs.append(PlannedJob(Topic.OPENAI))
    if video_enabled and crawl_succeeded:
        jobs.append(PlannedJob(Topic.VIDEO))
    jobs.append(INDEX)
    return jobs


def plan_after_tagging(bookmark: Bookmark) -> list[PlannedJob]:  # noqa: ARG001
    """Jobs after the tagging stage finished or gave up (leaving TAGGING)."""
    return [INDEX]


def plan_after_recrawl(bookmark: Bookmark) -> list[PlannedJob]:  # noqa: ARG001
    """Jobs for a manual re-crawl (READY back to CRAWLING)."""
    return [PlannedJob(Topic.CRAWL)]


def plan_after_edit(bookmark: Bookmark) -> list[PlannedJob]:  # noqa: ARG001
    """Jobs after a user edit of searchable fields. The stage is unchanged."""
    return [INDEX]


def stage_planned_jobs(
    db: AsyncSession,
    bookmark_id: UUID,
    jobs: list[PlannedJob],
) -> None:
    """Stage planned jobs in the caller's transaction."""
    for job in jobs:
        stage_bookmark_job(db, job.topic, bookmark_id, kind=job.kind)

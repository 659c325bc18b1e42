"""Pydantic schemas for job queue payloads."""
from enum import StrEnum
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class Topic(StrEnum):
    """Queue topics, one per pipeline stage."""

    CRAWL = "crawl"
    OPENAI = "openai"
    VIDEO = "video"
    SEARCH_INDEXING = "search_indexing"


class JobPayload(BaseModel):
    """
    Payload carried by every job.

    Only the bookmark id (and, for search jobs, the operation kind) travels
    with a job. Workers always re-read current state from the database.
    """

    model_config = ConfigDict(extra="forbid", populate_by_name=True, frozen=True)

    bookmark_id: UUID = Field(alias="bookmarkId")
    kind: Literal["index", "delete"] | None = None

    def to_message(self) -> dict:
        """Serialize to the JSON-compatible wire form."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


def validate_job(topic: Topic | str, payload: JobPayload | dict) -> tuple[Topic, JobPayload]:
    """
    Validate a topic and payload pair.

    Search jobs must carry a `kind`; every other topic must not.

    Raises:
        ValueError: If the topic is unknown or the payload does not fit it.
    """
    topic = Topic(topic)
    if not isinstance(payload, JobPayload):
        payload = JobPayload.model_validate(payload)
    if (topic is Topic.SEARCH_INDEXING) != (payload.kind is not None):
        raise ValueError(
            f"Payload kind {payload.kind!r} is not valid for topic '{topic.value}'",
        )
    return topic, payload

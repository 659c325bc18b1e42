"""Tests for job payloads and topic validation."""
from uuid import uuid4

import pytest
from pydantic import ValidationError

from schemas.jobs import JobPayload, Topic, validate_job


def test__job_payload__accepts_wire_alias() -> None:
    """Payloads parse from the camelCase wire form."""
    bookmark_id = uuid4()

    payload = JobPayload.model_validate({"bookmarkId": str(bookmark_id)})

    assert payload.bookmark_id == bookmark_id
    assert payload.kind is None


def test__job_payload__to_message_omits_missing_kind() -> None:
    """The wire form uses the alias and leaves out an unset kind."""
    bookmark_id = uuid4()

    assert JobPayload(bookmark_id=bookmark_id).to_message() == {"bookmarkId": str(bookmark_id)}
    assert JobPayload(bookmark_id=bookmark_id, kind="delete").to_message() == {
        "bookmarkId": str(bookmark_id), "kind": "delete",
    }


@pytest.mark.parametrize(
    "data",
    [
        {},
        {"bookmarkId": "not-a-uuid"},
        {"bookmarkId": str(uuid4()), "kind": "purge"},
        {"bookmarkId": str(uuid4()), "url": "https://example.com"},
    ],
)
def test__job_payload__rejects_invalid(data: dict) -> None:
    """Missing ids, bad kinds and extra fields are rejected."""
    with pytest.raises(ValidationError):
        JobPayload.model_validate(data)


def test__job_payload__is_immutable() -> None:
    """Payloads cannot be modified after creation."""
    payload = JobPayload(bookmark_id=uuid4())
    with pytest.raises(ValidationError):
        payload.kind = "index"


@pytest.mark.parametrize("topic", [Topic.CRAWL, Topic.OPENAI, Topic.VIDEO])
def test__validate_job__stage_topics_without_kind(topic: Topic) -> None:
    """Crawl, tagging and video jobs carry only the bookmark id."""
    validated_topic, payload = validate_job(topic.value, {"bookmarkId": str(uuid4())})

    assert validated_topic is topic
    assert payload.kind is None


def test__validate_job__search_requires_kind() -> None:
    """Search indexing jobs must say whether to index or delete."""
    with pytest.raises(ValueError, match="not valid for topic"):
        validate_job(Topic.SEARCH_INDEXING, {"bookmarkId": str(uuid4())})

    topic, payload = validate_job("search_indexing", {"bookmarkId": str(uuid4()), "kind": "index"})
    assert topic is Topic.SEARCH_INDEXING
    assert payload.kind == "index"


def test__validate_job__kind_only_for_search() -> None:
    """Other topics reject a kind."""
    with pytest.raises(ValueError, match="not valid for topic"):
        validate_job(Topic.CRAWL, JobPayload(bookmark_id=uuid4(), kind="index"))


def test__validate_job__unknown_topic() -> None:
    """Topics outside the known set are rejected."""
    with pytest.raises(ValueError):  # noqa: PT011
        validate_job("thumbnails", {"bookmarkId": str(uuid4())})

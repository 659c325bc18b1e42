"""Full-text search engine client (Meilisearch over its HTTP API)."""
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Protocol

import httpx

from services.exceptions import PermanentUpstreamError, TransientUpstreamError

logger = logging.getLogger(__name__)

TASK_POLL_INTERVAL = 0.1
TASK_TIMEOUT = 30.0


@dataclass(frozen=True)
class SearchHit:
    """A matching document id with its relevance score (higher is better)."""

    id: str
    score: float


class SearchEngineClient(Protocol):
    """Narrow interface the pipeline and the search endpoint use."""

    async def configure(self) -> None:
        """Create the index and apply filterable/sortable attributes."""
        ...

    async def upsert(self, document: dict[str, Any]) -> None:
        """Add or replace a document keyed by `id`."""
        ...

    async def delete(self, document_id: str) -> None:
        """Delete a document; deleting a missing document succeeds."""
        ...

    async def search(
        self,
        query: str,
        *,
        filter: str,  # noqa: A002
        sort: list[str] | None = None,
        limit: int = 20,
    ) -> list[SearchHit]:
        """Ranked hits for `query`, restricted by `filter`."""
        ...


def owner_filter(user_id: str) -> str:
    """Filter expression restricting results to one owner."""
    escaped = str(user_id).replace("\\", "\\\\").replace("'", "\\'")
    return f"userId = '{escaped}'"


class MeiliSearchClient:
    """SearchEngineClient for Meilisearch. Write calls wait for the engine task."""

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        index: str = "bookmarks",
        *,
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.index = index
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._client = client or httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            headers=headers,
        )

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    async def configure(self) -> None:
        """Create the index if needed and set filterable/sortable attributes."""
        response = await self._request(
            "POST", "/indexes", json={"uid": self.index, "primaryKey": "id"},
        )
        # An existing index makes the creation task fail; that is fine
        await self._wait_for_task(response, tolerate_failure=True)
        response = await self._request(
            "PATCH",
            f"/indexes/{self.index}/settings",
            json={
                "filterableAttributes": ["userId", "type", "archived", "favourited", "tags"],
                "sortableAttributes": ["createdAt"],
            },
        )
        await self._wait_for_task(response)

    async def upsert(self, document: dict[str, Any]) -> None:
        """Add or replace a document."""
        response = await self._request(
            "POST", f"/indexes/{self.index}/documents", json=[document],
        )
        await self._wait_for_task(response)

    async def delete(self, document_id: str) -> None:
        """Delete a document by id; Meilisearch treats missing ids as success."""
        response = await self._request(
            "DELETE", f"/indexes/{self.index}/documents/{document_id}",
        )
        await self._wait_for_task(response)

    async def search(
        self,
        query: str,
        *,
        filter: str,  # noqa: A002
        sort: list[str] | None = None,
        limit: int = 20,
    ) -> list[SearchHit]:
        """Run a query with ranking scores."""
        body: dict[str, Any] = {
            "q": query,
            "filter": filter,
            "limit": limit,
            "attributesToRetrieve": ["id"],
            "showRankingScore": True,
        }
        if sort:
            body["sort"] = sort
        response = await self._request("POST", f"/indexes/{self.index}/search", json=body)
        return [
            SearchHit(id=str(hit["id"]), score=float(hit.get("_rankingScore", 0.0)))
            for hit in response.json().get("hits", [])
        ]

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            raise TransientUpstreamError(f"Search engine timed out: {method} {path}") from e
        except httpx.RequestError as e:
            raise TransientUpstreamError(f"Search engine unreachable: {e}") from e

        if response.status_code == 429 or response.status_code >= 500:
            raise TransientUpstreamError(f"Search engine error: HTTP {response.status_code}")
        if response.status_code == 404 and method == "DELETE":
            # Index missing entirely: the document is absent either way
            return response
        if response.status_code >= 400:
            raise PermanentUpstreamError(
                f"Search engine rejected {method} {path}: "
                f"HTTP {response.status_code} {response.text[:200]}",
            )
        return response

    async def _wait_for_task(
        self,
        response: httpx.Response,
        *,
        tolerate_failure: bool = False,
    ) -> None:
        if response.status_code == 404:
            return
        task_uid = response.json().get("taskUid")
        if task_uid is None:
            return

        loop = asyncio.get_running_loop()
        deadline = loop.time() + TASK_TIMEOUT
        while True:
            task = (await self._request("GET", f"/tasks/{task_uid}")).json()
            status = task.get("status")
            if status == "succeeded":
                return
            if status in ("failed", "canceled"):
                if tolerate_failure:
                    return
                error = (task.get("error") or {}).get("message", status)
                raise PermanentUpstreamError(f"Search engine task {task_uid} {status}: {error}")
            if loop.time() > deadline:
                raise TransientUpstreamError(f"Search engine task {task_uid} did not finish")
            await asyncio.sleep(TASK_POLL_INTERVAL)

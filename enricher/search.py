"""Meilisearch client used to publish bookmark search documents."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Optional, Protocol

import httpx

from enricher.schemas import SearchDocument
from enricher.settings import SearchSettings, get_settings

LOGGER = logging.getLogger(__name__)

SEARCHABLE_ATTRIBUTES = ["title", "excerpt", "content", "domain", "tags", "highlights_text"]
FILTERABLE_ATTRIBUTES = [
    "owner_id",
    "collection_id",
    "type",
    "domain",
    "tags",
    "created_at",
    "updated_at",
    "has_snapshot",
]
SORTABLE_ATTRIBUTES = ["created_at", "updated_at", "title"]

_TASK_POLL_INTERVAL = 0.1
_TASK_POLL_MAX_INTERVAL = 1.0
_TERMINAL_TASK_STATES = {"succeeded", "failed", "canceled"}


class SearchIndexError(RuntimeError):
    """Search engine rejected a request or a task did not succeed in time."""


class SearchIndex(Protocol):
    async def upsert_document(self, document: SearchDocument) -> None: ...


class MeilisearchIndex:
    """Thin async wrapper over the Meilisearch REST API.

    Documents are replaced wholesale by primary key; every write waits for the
    engine's asynchronous task so a returned call means the document is live.
    """

    def __init__(
        self,
        settings: SearchSettings | None = None,
        *,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.settings = settings or get_settings().search
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=self.settings.host.rstrip("/"),
            timeout=self.settings.timeout_seconds,
            headers=_auth_headers(self.settings.api_key),
        )

    @property
    def index_uid(self) -> str:
        return self.settings.index

    async def upsert_document(self, document: SearchDocument) -> None:
        """Replace the stored document with the same id (insert when absent)."""

        payload = [document.model_dump(mode="json")]
        data = await self._request(
            "POST",
            f"/indexes/{self.index_uid}/documents",
            params={"primaryKey": "id"},
            json=payload,
        )
        await self.wait_for_task(_task_uid(data))
        LOGGER.debug("Indexed document %s into %s", document.id, self.index_uid)

    async def ensure_index(self) -> None:
        """Apply attribute settings; Meilisearch creates the index if needed."""

        data = await self._request(
            "PATCH",
            f"/indexes/{self.index_uid}/settings",
            json={
                "searchableAttributes": SEARCHABLE_ATTRIBUTES,
                "filterableAttributes": FILTERABLE_ATTRIBUTES,
                "sortableAttributes": SORTABLE_ATTRIBUTES,
            },
        )
        await self.wait_for_task(_task_uid(data))
        LOGGER.info("Search index %s configured", self.index_uid)

    async def wait_for_task(self, task_uid: int) -> dict[str, Any]:
        deadline = time.monotonic() + self.settings.task_wait_seconds
        interval = _TASK_POLL_INTERVAL
        while True:
            task = await self._request("GET", f"/tasks/{task_uid}")
            status = task.get("status")
            if status == "succeeded":
                return task
            if status in _TERMINAL_TASK_STATES:
                error = task.get("error") or {}
                raise SearchIndexError(
                    f"Search task {task_uid} {status}: {error.get('message') or error.get('code') or 'unknown error'}"
                )
            if time.monotonic() >= deadline:
                raise SearchIndexError(
                    f"Search task {task_uid} still {status} after {self.settings.task_wait_seconds:g}s"
                )
            await asyncio.sleep(interval)
            interval = min(interval * 2, _TASK_POLL_MAX_INTERVAL)

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        try:
            response = await self._client.request(method, path, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise SearchIndexError(
                f"Search {method} {path} failed with status {exc.response.status_code}: {exc.response.text}"
            ) from exc
        except httpx.HTTPError as exc:
            raise SearchIndexError(f"Search {method} {path} failed: {exc}") from exc
        return response.json()


def _auth_headers(api_key: Optional[str]) -> dict[str, str]:
    headers = {"Content-Type": "application/json"}
    if api_key:
        headers["Authorization"] = f"Bearer {api_key}"
    return headers


def _task_uid(data: dict[str, Any]) -> int:
    # Older engine versions report "uid" instead of "taskUid".
    uid = data.get("taskUid", data.get("uid"))
    if uid is None:
        raise SearchIndexError(f"Search response did not include a task id: {data}")
    return int(uid)

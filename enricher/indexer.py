"""Content indexing: extract text from snapshots and publish search documents."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Mapping, Sequence

from pydantic import ValidationError

from enricher.blobs import ObjectStore, split_object_ref
from enricher.bookmarks import Bookmark, BookmarkAccessor, BookmarkNotFound, Highlight
from enricher.extractors import ContentExtractionError, extractor_for
from enricher.queue import ContentError, HandlerResult
from enricher.schemas import ContentType, IndexJob, SearchDocument
from enricher.search import SearchIndex
from enricher.text import clean_text

LOGGER = logging.getLogger(__name__)


class IndexWorker:
    """Handler for the indexing stream."""

    def __init__(
        self,
        *,
        accessor: BookmarkAccessor,
        store: ObjectStore,
        search: SearchIndex,
    ) -> None:
        self.accessor = accessor
        self.store = store
        self.search = search

    async def handle(self, payload: Mapping[str, Any]) -> HandlerResult:
        try:
            job = IndexJob.model_validate(payload)
        except ValidationError as exc:
            raise ContentError(f"Invalid index payload: {exc}") from exc

        bookmark = await self.accessor.get_by_id(job.bookmark_id)
        if bookmark is None:
            raise BookmarkNotFound(job.bookmark_id)

        content = ""
        if job.snapshot_path:
            content = await self.extract_content(job.snapshot_path, job.type)

        document = build_search_document(
            bookmark,
            content=content,
            has_snapshot=bool(bookmark.snapshot_path or job.snapshot_path),
        )
        await self.search.upsert_document(document)
        await self.accessor.update_indexed_status(bookmark.id, True)
        LOGGER.info(
            "Indexed bookmark %s (%s chars of content)", bookmark.id, len(document.content or "")
        )
        return HandlerResult.completed(
            bookmark_id=bookmark.id,
            content_chars=len(document.content or ""),
            has_snapshot=document.has_snapshot,
        )

    async def extract_content(self, snapshot_path: str, content_type: ContentType) -> str:
        try:
            bucket, key = split_object_ref(snapshot_path)
        except ValueError as exc:
            raise ContentExtractionError(str(exc)) from exc
        data = await self.store.get_object(bucket, key)
        extractor = extractor_for(content_type)
        raw = await asyncio.to_thread(extractor.extract, data)
        return clean_text(raw)


def build_search_document(bookmark: Bookmark, *, content: str, has_snapshot: bool) -> SearchDocument:
    return SearchDocument(
        id=bookmark.id,
        owner_id=bookmark.owner_id,
        collection_id=bookmark.collection_id,
        title=bookmark.title,
        url=bookmark.url,
        domain=bookmark.domain,
        excerpt=bookmark.excerpt,
        content=content or None,
        tags=list(bookmark.tags),
        type=bookmark.type,
        created_at=_epoch_seconds(bookmark.created_at),
        updated_at=_epoch_seconds(bookmark.updated_at),
        has_snapshot=has_snapshot,
        highlights_text=highlights_text(bookmark.highlights),
    )


def highlights_text(highlights: Sequence[Highlight]) -> str | None:
    """Flatten highlights and their annotations into one searchable string."""

    joined = " ".join(f"{item.text} {item.annotation or ''}" for item in highlights).strip()
    return joined or None


def _epoch_seconds(value: datetime) -> int:
    return max(0, int(value.timestamp()))

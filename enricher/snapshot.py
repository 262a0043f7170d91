"""Snapshot capture: render a bookmarked page, store artifacts, queue indexing."""

from __future__ import annotations

import logging
from typing import Any, Mapping

from pydantic import ValidationError

from enricher.blobs import (
    HTML_CONTENT_TYPE,
    JPEG_CONTENT_TYPE,
    ObjectStore,
    SnapshotPaths,
    ensure_bucket,
)
from enricher.boilerplate import strip_boilerplate
from enricher.bookmarks import BookmarkAccessor
from enricher.browser import PageRenderer
from enricher.queue import ContentError, HandlerResult, JobKind, JobRuntime
from enricher.schemas import ContentType, IndexJob, SnapshotJob

LOGGER = logging.getLogger(__name__)


def index_job_id(bookmark_id: str) -> str:
    return f"index-{bookmark_id}"


class SnapshotWorker:
    """Handler for the snapshot stream.

    Every step is idempotent: object keys are derived from the bookmark, the
    cover is only set when missing, and the follow-up index job carries a
    deterministic id so redeliveries collapse.
    """

    def __init__(
        self,
        *,
        accessor: BookmarkAccessor,
        store: ObjectStore,
        runtime: JobRuntime,
        renderer: PageRenderer,
        bucket: str,
        navigation_timeout_ms: int | None = None,
    ) -> None:
        self.accessor = accessor
        self.store = store
        self.runtime = runtime
        self.renderer = renderer
        self.bucket = bucket
        self.navigation_timeout_ms = navigation_timeout_ms

    async def handle(self, payload: Mapping[str, Any]) -> HandlerResult:
        try:
            job = SnapshotJob.model_validate(payload)
        except ValidationError as exc:
            raise ContentError(f"Invalid snapshot payload: {exc}") from exc

        if not job.user_tier.includes_snapshots:
            LOGGER.info(
                "Skipping snapshot for bookmark %s: tier %s", job.bookmark_id, job.user_tier.value
            )
            return HandlerResult.skipped("tier-not-eligible", tier=job.user_tier.value)

        page = await self.renderer.render(job.url, timeout_ms=self.navigation_timeout_ms)
        cleaned = strip_boilerplate(page.html)
        LOGGER.debug(
            "Cleaned %s (main=%s, removed=%s)",
            job.url,
            cleaned.main_selector or "body",
            cleaned.removed_nodes,
        )

        paths = SnapshotPaths.for_bookmark(
            bucket=self.bucket, user_id=job.user_id, bookmark_id=job.bookmark_id
        )
        await ensure_bucket(self.store, self.bucket)
        await self.store.put_object(
            self.bucket, paths.page_key, cleaned.html.encode("utf-8"), HTML_CONTENT_TYPE
        )
        await self.store.put_object(
            self.bucket, paths.thumbnail_key, page.screenshot, JPEG_CONTENT_TYPE
        )

        await self.accessor.update_snapshot_path(job.bookmark_id, paths.page_ref)
        await self.accessor.update_cover_if_unset(job.bookmark_id, paths.thumbnail_ref)

        bookmark = await self.accessor.get_by_id(job.bookmark_id)
        content_type = bookmark.type if bookmark is not None else ContentType.ARTICLE
        if bookmark is None:
            LOGGER.warning("Bookmark %s vanished after capture; indexing as article", job.bookmark_id)

        # Submission failures propagate so the capture is retried and the
        # index job is never silently lost.
        index_id = await self.runtime.submit(
            JobKind.INDEX,
            IndexJob(
                bookmark_id=job.bookmark_id,
                snapshot_path=paths.page_ref,
                type=content_type,
            ),
            job_id=index_job_id(job.bookmark_id),
        )
        LOGGER.info("Snapshot stored for bookmark %s at %s", job.bookmark_id, paths.page_ref)
        return HandlerResult.completed(
            snapshot_path=paths.page_ref,
            thumbnail_path=paths.thumbnail_ref,
            index_job_id=index_id,
        )

    async def close(self) -> None:
        await self.renderer.close()

"""Periodic maintenance scans: duplicate flagging and broken-link detection."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass, field
from itertools import groupby
from typing import Any, Dict, Mapping, Sequence

import httpx
from pydantic import ValidationError

from enricher import metrics
from enricher.bookmarks import Bookmark, BookmarkAccessor
from enricher.queue import ContentError, HandlerResult
from enricher.schemas import MaintenanceJob, MaintenanceTask
from enricher.settings import ProbeSettings, get_settings
from enricher.text import content_hash
from enricher.urls import normalize_url

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class DuplicateReport:
    users: int = 0
    scanned: int = 0
    flagged: int = 0
    already_flagged: int = 0
    by_url: int = 0
    by_content: int = 0
    flagged_ids: list[str] = field(default_factory=list)


@dataclass(slots=True)
class BrokenLinkReport:
    checked: int = 0
    broken: int = 0
    healed: int = 0
    broken_ids: list[str] = field(default_factory=list)


class MaintenanceScanner:
    """Handler for the maintenance stream.

    Both scans are safe to rerun: duplicate flags are only ever added, and
    broken-link flags track the latest probe result.
    """

    def __init__(
        self,
        *,
        accessor: BookmarkAccessor,
        probe_settings: ProbeSettings | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.accessor = accessor
        self.probe_settings = probe_settings or get_settings().probe
        self._client = client

    async def handle(self, payload: Mapping[str, Any]) -> HandlerResult:
        try:
            job = MaintenanceJob.model_validate(payload)
        except ValidationError as exc:
            raise ContentError(f"Invalid maintenance payload: {exc}") from exc

        if job.type is MaintenanceTask.DUPLICATE_DETECTION:
            report: DuplicateReport | BrokenLinkReport = await self.detect_duplicates(job.user_id)
        else:
            report = await self.scan_broken_links(job.user_id)
        return HandlerResult.completed(task=job.type.value, user_id=job.user_id, **asdict(report))

    async def detect_duplicates(self, user_id: str | None = None) -> DuplicateReport:
        """Flag later bookmarks that repeat an earlier one's URL or content."""

        report = DuplicateReport()
        for owner_id, bookmarks in await self._bookmarks_by_owner(user_id):
            report.users += 1
            await self._flag_duplicates_for_owner(owner_id, bookmarks, report)
        LOGGER.info(
            "Duplicate scan finished: %s users, %s bookmarks, %s newly flagged",
            report.users,
            report.scanned,
            report.flagged,
        )
        return report

    async def _flag_duplicates_for_owner(
        self,
        owner_id: str,
        bookmarks: Sequence[Bookmark],
        report: DuplicateReport,
    ) -> None:
        first_by_url: Dict[str, str] = {}
        first_by_hash: Dict[str, str] = {}
        for bookmark in bookmarks:
            report.scanned += 1
            reason: str | None = None

            url_key = normalize_url(bookmark.url)
            if url_key in first_by_url:
                reason = "url"
            else:
                first_by_url[url_key] = bookmark.id

            if bookmark.snapshot_path:
                digest = content_hash(bookmark.excerpt or bookmark.title)
                if digest in first_by_hash:
                    reason = reason or "content"
                else:
                    first_by_hash[digest] = bookmark.id

            if reason is None:
                continue
            if bookmark.is_duplicate:
                report.already_flagged += 1
                continue
            await self.accessor.mark_duplicate(bookmark.id)
            bookmark.is_duplicate = True
            metrics.record_duplicate(reason)
            report.flagged += 1
            report.flagged_ids.append(bookmark.id)
            if reason == "url":
                report.by_url += 1
            else:
                report.by_content += 1
            LOGGER.debug("Flagged %s as duplicate of user %s (%s)", bookmark.id, owner_id, reason)

    async def scan_broken_links(self, user_id: str | None = None) -> BrokenLinkReport:
        """Probe every bookmark URL and sync the broken flag with the result."""

        report = BrokenLinkReport()
        bookmarks = [
            bookmark
            for _, group in await self._bookmarks_by_owner(user_id)
            for bookmark in group
        ]
        owns_client = self._client is None
        client = self._client or httpx.AsyncClient(
            timeout=self.probe_settings.timeout_seconds,
            follow_redirects=True,
            headers={"User-Agent": self.probe_settings.user_agent},
        )
        delay = self.probe_settings.delay_ms / 1000
        try:
            for index, bookmark in enumerate(bookmarks):
                if index and delay > 0:
                    await asyncio.sleep(delay)
                status = await self.probe(bookmark.url, client=client)
                report.checked += 1
                broken = status is None or status >= 400
                if broken:
                    report.broken += 1
                    report.broken_ids.append(bookmark.id)
                    await self.accessor.mark_broken(bookmark.id, True)
                    bookmark.is_broken = True
                elif bookmark.is_broken:
                    await self.accessor.mark_broken(bookmark.id, False)
                    bookmark.is_broken = False
                    report.healed += 1
                    LOGGER.info("Bookmark %s reachable again (status=%s)", bookmark.id, status)
        finally:
            if owns_client:
                await client.aclose()
        LOGGER.info(
            "Broken-link scan finished: %s checked, %s broken, %s healed",
            report.checked,
            report.broken,
            report.healed,
        )
        return report

    async def probe(self, url: str, *, client: httpx.AsyncClient) -> int | None:
        """Return the final HTTP status for ``url``, or None when unreachable."""

        try:
            response = await client.head(
                url,
                timeout=self.probe_settings.timeout_seconds,
                follow_redirects=True,
                headers={"User-Agent": self.probe_settings.user_agent},
            )
        except httpx.HTTPError as exc:
            LOGGER.info("Probe failed for %s: %s", url, exc)
            metrics.record_probe_result("error")
            return None
        result = "broken" if response.status_code >= 400 else "ok"
        metrics.record_probe_result(result)
        if result == "broken":
            LOGGER.info("Probe for %s returned %s", url, response.status_code)
        return response.status_code

    async def _bookmarks_by_owner(
        self, user_id: str | None
    ) -> list[tuple[str, list[Bookmark]]]:
        if user_id is not None:
            return [(user_id, list(await self.accessor.list_for_user(user_id)))]
        everything = list(await self.accessor.list_all())
        # groupby needs each owner's bookmarks contiguous and oldest first.
        everything.sort(key=lambda item: (item.owner_id, item.created_at))
        return [(owner, list(group)) for owner, group in groupby(everything, key=lambda b: b.owner_id)]

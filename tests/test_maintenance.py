from __future__ import annotations

from typing import Callable, Dict

import httpx
import pytest

from enricher.maintenance import MaintenanceScanner
from enricher.queue import ContentError, HandlerStatus
from enricher.settings import DEFAULT_USER_AGENT, ProbeSettings

PROBE = ProbeSettings(timeout_seconds=1.0, delay_ms=0, user_agent=DEFAULT_USER_AGENT)


def _client(handler: Callable[[httpx.Request], httpx.Response]) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def _routes(statuses: Dict[str, int]) -> Callable[[httpx.Request], httpx.Response]:
    def handler(request: httpx.Request) -> httpx.Response:
        status = statuses[str(request.url)]
        if status == 0:
            raise httpx.ConnectError("connection refused", request=request)
        if status in (301, 302):
            return httpx.Response(status, headers={"Location": "https://example.com/moved"})
        return httpx.Response(status)

    return handler


@pytest.fixture
def scanner(accessor) -> MaintenanceScanner:
    return MaintenanceScanner(accessor=accessor, probe_settings=PROBE, client=_client(_routes({})))


@pytest.mark.asyncio
async def test_tracking_params_variant_is_flagged_but_original_is_not(scanner, accessor, make_bookmark) -> None:
    original = accessor.add(make_bookmark(url="https://example.com/a"))
    variant = accessor.add(make_bookmark(url="https://example.com/a?utm_source=x#top"))

    report = await scanner.detect_duplicates("user-1")

    assert report.flagged_ids == [variant.id]
    assert report.by_url == 1
    assert accessor.bookmarks[original.id].is_duplicate is False
    assert accessor.bookmarks[variant.id].is_duplicate is True


@pytest.mark.asyncio
async def test_duplicates_are_scoped_per_user(scanner, accessor, make_bookmark) -> None:
    accessor.add(make_bookmark(owner_id="user-1", url="https://example.com/a"))
    accessor.add(make_bookmark(owner_id="user-2", url="https://example.com/a"))

    report = await scanner.detect_duplicates()

    assert report.users == 2
    assert report.flagged == 0
    assert accessor.calls_named("mark_duplicate") == []


@pytest.mark.asyncio
async def test_content_hash_only_applies_to_snapshotted_bookmarks(scanner, accessor, make_bookmark) -> None:
    first = accessor.add(make_bookmark(excerpt="Same  Story", snapshot_path="snapshots/a"))
    copy = accessor.add(make_bookmark(excerpt="same story ", snapshot_path="snapshots/b"))
    unsnapshotted = accessor.add(make_bookmark(excerpt="Same Story"))

    report = await scanner.detect_duplicates("user-1")

    assert report.flagged_ids == [copy.id]
    assert report.by_content == 1
    assert accessor.bookmarks[first.id].is_duplicate is False
    assert accessor.bookmarks[unsnapshotted.id].is_duplicate is False


@pytest.mark.asyncio
async def test_title_is_hashed_when_excerpt_missing(scanner, accessor, make_bookmark) -> None:
    accessor.add(make_bookmark(title="Release Notes", snapshot_path="snapshots/a"))
    later = accessor.add(make_bookmark(title="release notes", snapshot_path="snapshots/b"))

    report = await scanner.detect_duplicates("user-1")

    assert report.flagged_ids == [later.id]


@pytest.mark.asyncio
async def test_bookmark_colliding_on_url_and_content_is_flagged_once(scanner, accessor, make_bookmark) -> None:
    accessor.add(make_bookmark(url="https://example.com/x", excerpt="e", snapshot_path="s/1"))
    dup = accessor.add(make_bookmark(url="https://example.com/x?fbclid=1", excerpt="E", snapshot_path="s/2"))

    report = await scanner.detect_duplicates("user-1")

    assert report.flagged == 1
    assert (report.by_url, report.by_content) == (1, 0)
    assert accessor.calls_named("mark_duplicate") == [("mark_duplicate", dup.id)]


@pytest.mark.asyncio
async def test_rescan_never_unflags_or_reflags(scanner, accessor, make_bookmark) -> None:
    accessor.add(make_bookmark(url="https://example.com/a"))
    trailing_slash = accessor.add(make_bookmark(url="https://example.com/a/"))
    dup_again = accessor.add(make_bookmark(url="https://example.com/a"))
    stale = accessor.add(make_bookmark(url="https://example.com/unique", is_duplicate=True))

    first = await scanner.detect_duplicates("user-1")
    second = await scanner.detect_duplicates("user-1")

    assert first.flagged_ids == [dup_again.id]
    assert second.flagged == 0
    assert second.already_flagged == 1
    assert accessor.bookmarks[stale.id].is_duplicate is True
    assert accessor.bookmarks[trailing_slash.id].is_duplicate is False


@pytest.mark.asyncio
async def test_broken_link_scan_marks_and_heals(accessor, make_bookmark) -> None:
    dead = accessor.add(make_bookmark(url="https://example.com/404"))
    recovered = accessor.add(make_bookmark(url="https://example.com/ok", is_broken=True))
    unreachable = accessor.add(make_bookmark(url="https://down.example.com/"))
    redirected = accessor.add(make_bookmark(url="https://example.com/old"))
    statuses = {
        "https://example.com/404": 404,
        "https://example.com/ok": 200,
        "https://down.example.com/": 0,
        "https://example.com/old": 301,
        "https://example.com/moved": 200,
    }
    scanner = MaintenanceScanner(accessor=accessor, probe_settings=PROBE, client=_client(_routes(statuses)))

    report = await scanner.scan_broken_links("user-1")

    assert report.checked == 4
    assert report.broken == 2
    assert report.healed == 1
    assert accessor.bookmarks[dead.id].is_broken is True
    assert accessor.bookmarks[unreachable.id].is_broken is True
    assert accessor.bookmarks[recovered.id].is_broken is False
    assert accessor.bookmarks[redirected.id].is_broken is False
    assert ("mark_broken", redirected.id, False) not in accessor.calls


@pytest.mark.asyncio
async def test_probe_uses_head_with_user_agent(accessor) -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(204)

    scanner = MaintenanceScanner(accessor=accessor, probe_settings=PROBE, client=_client(handler))
    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        status = await scanner.probe("https://example.com/", client=client)

    assert status == 204
    assert seen[0].method == "HEAD"
    assert seen[0].headers["User-Agent"] == DEFAULT_USER_AGENT


@pytest.mark.asyncio
async def test_handle_dispatches_on_task_type(scanner, accessor, make_bookmark) -> None:
    accessor.add(make_bookmark(url="https://example.com/a"))
    accessor.add(make_bookmark(url="https://example.com/a?ref=home"))

    result = await scanner.handle({"type": "duplicate-detection", "user_id": "user-1"})

    assert result.status is HandlerStatus.COMPLETED
    assert result.detail["task"] == "duplicate-detection"
    assert result.detail["flagged"] == 1


@pytest.mark.asyncio
async def test_handle_rejects_unknown_task(scanner) -> None:
    with pytest.raises(ContentError):
        await scanner.handle({"type": "vacuum"})

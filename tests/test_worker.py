from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from enricher.queue import JobKind, JobRuntime, LocalTransport
from enricher.schemas import ContentType, IndexJob, MaintenanceJob, MaintenanceTask, SnapshotJob, SubscriptionTier
from enricher.settings import get_settings
from enricher.store import DeadLetterConfig, DeadLetterStore
from enricher.worker import (
    KEEP_RESULT_SECONDS,
    WorkerSettings,
    build_pipeline,
    enqueue_index_job,
    enqueue_maintenance_job,
    enqueue_snapshot_job,
    nightly_maintenance,
    pool_options,
    shutdown_grace,
)


@pytest.fixture
def settings(tmp_path: Path):
    get_settings.cache_clear()
    yield get_settings(str(tmp_path / "missing.env"))
    get_settings.cache_clear()


def test_pool_options_follow_settings(settings) -> None:
    options = pool_options(settings)

    assert options[JobKind.SNAPSHOT].concurrency == 5
    assert options[JobKind.SNAPSHOT].timeout_seconds == 120.0
    assert options[JobKind.MAINTENANCE].concurrency == 2
    assert options[JobKind.MAINTENANCE].rate_per_second == 5.0
    assert options[JobKind.MAINTENANCE].retry.max_attempts == 2
    assert options[JobKind.INDEX].retry.base_delay_seconds == 2.0


def test_shutdown_grace_outlasts_every_handler_timeout(settings) -> None:
    longest = max(options.timeout_seconds for options in pool_options(settings).values())

    assert longest == settings.maintenance_pool.timeout_seconds
    assert shutdown_grace(settings) == longest + settings.queue.shutdown_grace_seconds


@pytest.mark.asyncio
async def test_pipeline_captures_then_indexes(
    settings, tmp_path, accessor, object_store, search_index, renderer, make_bookmark
) -> None:
    accessor.add(make_bookmark(id="bm-1", owner_id="user-1", excerpt="Summary"))
    transport = LocalTransport()
    pipeline = build_pipeline(
        settings,
        accessor,
        transport=transport,
        store=object_store,
        search=search_index,
        renderer=renderer,
        dead_letters=DeadLetterStore(DeadLetterConfig(db_path=tmp_path / "dead.db")),
    )
    await pipeline.runtime.start()

    job_id = await enqueue_snapshot_job(
        pipeline.runtime,
        SnapshotJob(
            bookmark_id="bm-1",
            url="https://example.com/post",
            user_id="user-1",
            user_tier=SubscriptionTier.PRO,
        ),
    )
    await asyncio.wait_for(transport.join(), timeout=5)
    await pipeline.close()

    assert job_id == "snapshot-bm-1"
    doc = search_index.documents["bm-1"]
    assert doc.has_snapshot is True
    assert doc.content == "Readable heading\n\nFirst paragraph of real content."
    assert accessor.bookmarks["bm-1"].content_indexed is True
    assert renderer.closed is True


@pytest.mark.asyncio
async def test_enqueue_helpers_use_deterministic_ids() -> None:
    runtime = JobRuntime()

    snapshot_id = await enqueue_snapshot_job(
        runtime,
        SnapshotJob(bookmark_id="b1", url="https://e.com", user_id="u1", user_tier=SubscriptionTier.PRO),
    )
    index_id = await enqueue_index_job(runtime, IndexJob(bookmark_id="b1", type=ContentType.VIDEO))
    scoped_id = await enqueue_maintenance_job(
        runtime, MaintenanceJob(type=MaintenanceTask.BROKEN_LINK_SCAN, user_id="u1")
    )
    global_id = await enqueue_maintenance_job(
        runtime, MaintenanceJob(type=MaintenanceTask.DUPLICATE_DETECTION)
    )

    assert (snapshot_id, index_id) == ("snapshot-b1", "index-b1")
    assert scoped_id == "broken-link-scan-u1"
    assert global_id == "duplicate-detection-all"


@pytest.mark.asyncio
async def test_nightly_maintenance_queues_both_scans() -> None:
    runtime = JobRuntime()

    queued = await nightly_maintenance({"runtime": runtime})

    assert queued == ["duplicate-detection-all", "broken-link-scan-all"]
    assert runtime.transport.pending_count() == 2


def test_worker_settings_expose_every_job_kind() -> None:
    names = {function.name for function in WorkerSettings.functions}

    assert names == {kind.value for kind in JobKind}
    assert WorkerSettings.keep_result == KEEP_RESULT_SECONDS
    assert WorkerSettings.on_startup is not None
    assert WorkerSettings.on_shutdown is not None


def test_worker_settings_wait_for_running_jobs_on_shutdown() -> None:
    assert WorkerSettings.job_completion_wait >= WorkerSettings.job_timeout

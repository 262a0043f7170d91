"""Worker process wiring: handler registration, enqueue helpers and Arq settings."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx
from arq.cron import cron

from enricher import metrics
from enricher.blobs import MinioObjectStore, ObjectStore
from enricher.bookmarks import BookmarkAccessor, load_accessor
from enricher.browser import BrowserPool, PageRenderer
from enricher.indexer import IndexWorker
from enricher.maintenance import MaintenanceScanner
from enricher.queue import (
    ArqTransport,
    HandlerOptions,
    JobKind,
    JobRuntime,
    JobTransport,
    RetryPolicy,
    arq_function,
    get_redis_settings,
    submit_best_effort,
)
from enricher.schemas import IndexJob, MaintenanceJob, MaintenanceTask, SnapshotJob
from enricher.search import MeilisearchIndex, SearchIndex, SearchIndexError
from enricher.settings import PoolSettings, QueueSettings, Settings, get_settings
from enricher.snapshot import SnapshotWorker, index_job_id
from enricher.store import DeadLetterConfig, DeadLetterStore

LOGGER = logging.getLogger(__name__)

# Completed job ids stay in Redis this long; re-submits with the same id are
# ignored until the result expires.
KEEP_RESULT_SECONDS = 60


def handler_options(pool: PoolSettings, queue: QueueSettings) -> HandlerOptions:
    return HandlerOptions(
        concurrency=pool.concurrency,
        rate_per_second=pool.rate_per_second,
        timeout_seconds=pool.timeout_seconds,
        retry=RetryPolicy(
            max_attempts=pool.max_attempts,
            base_delay_seconds=queue.backoff_base_seconds,
            max_delay_seconds=queue.backoff_max_seconds,
            content_error_attempts=queue.content_error_attempts,
        ),
    )


def pool_options(settings: Settings) -> Dict[JobKind, HandlerOptions]:
    return {
        JobKind.SNAPSHOT: handler_options(settings.snapshot_pool, settings.queue),
        JobKind.INDEX: handler_options(settings.index_pool, settings.queue),
        JobKind.MAINTENANCE: handler_options(settings.maintenance_pool, settings.queue),
    }


def longest_job_timeout(settings: Settings) -> float:
    return max(options.timeout_seconds for options in pool_options(settings).values())


def shutdown_grace(settings: Settings) -> float:
    """Time an in-flight job gets to finish once shutdown starts.

    Never shorter than the longest handler timeout, so a job still running at
    shutdown always reaches its own timeout first.
    """

    return longest_job_timeout(settings) + settings.queue.shutdown_grace_seconds


@dataclass
class Pipeline:
    """A runtime with every enrichment handler registered, plus the handles it owns."""

    runtime: JobRuntime
    snapshots: SnapshotWorker
    indexer: IndexWorker
    scanner: MaintenanceScanner
    search: SearchIndex
    shutdown_grace_seconds: float | None = None

    async def close(self) -> None:
        await self.runtime.close(grace_seconds=self.shutdown_grace_seconds)
        await self.snapshots.close()
        if isinstance(self.search, MeilisearchIndex):
            await self.search.close()


def build_pipeline(
    settings: Settings,
    accessor: BookmarkAccessor,
    *,
    transport: JobTransport | None = None,
    store: ObjectStore | None = None,
    search: SearchIndex | None = None,
    renderer: PageRenderer | None = None,
    dead_letters: DeadLetterStore | None = None,
    probe_client: httpx.AsyncClient | None = None,
) -> Pipeline:
    """Wire collaborators into a :class:`JobRuntime` with all three handlers."""

    runtime = JobRuntime(transport, dead_letters=dead_letters)
    store = store or MinioObjectStore(settings.object_storage)
    search = search or MeilisearchIndex(settings.search)
    snapshots = SnapshotWorker(
        accessor=accessor,
        store=store,
        runtime=runtime,
        renderer=renderer or BrowserPool(settings.browser),
        bucket=settings.object_storage.snapshot_bucket,
        navigation_timeout_ms=settings.browser.navigation_timeout_ms,
    )
    indexer = IndexWorker(accessor=accessor, store=store, search=search)
    scanner = MaintenanceScanner(
        accessor=accessor, probe_settings=settings.probe, client=probe_client
    )

    options = pool_options(settings)
    runtime.register_handler(JobKind.SNAPSHOT, options[JobKind.SNAPSHOT], snapshots.handle)
    runtime.register_handler(JobKind.INDEX, options[JobKind.INDEX], indexer.handle)
    runtime.register_handler(JobKind.MAINTENANCE, options[JobKind.MAINTENANCE], scanner.handle)
    return Pipeline(
        runtime=runtime,
        snapshots=snapshots,
        indexer=indexer,
        scanner=scanner,
        search=search,
        shutdown_grace_seconds=shutdown_grace(settings),
    )


async def enqueue_snapshot_job(runtime: JobRuntime, job: SnapshotJob) -> str | None:
    return await submit_best_effort(
        runtime, JobKind.SNAPSHOT, job, job_id=f"snapshot-{job.bookmark_id}"
    )


async def enqueue_index_job(runtime: JobRuntime, job: IndexJob) -> str | None:
    return await submit_best_effort(
        runtime, JobKind.INDEX, job, job_id=index_job_id(job.bookmark_id)
    )


async def enqueue_maintenance_job(runtime: JobRuntime, job: MaintenanceJob) -> str | None:
    return await submit_best_effort(
        runtime, JobKind.MAINTENANCE, job, job_id=maintenance_job_id(job)
    )


def maintenance_job_id(job: MaintenanceJob) -> str:
    return f"{job.type.value}-{job.user_id or 'all'}"


async def nightly_maintenance(ctx: Dict[str, Any]) -> list[str]:
    """Cron entry: queue both maintenance scans for every user."""

    runtime: JobRuntime = ctx["runtime"]
    queued = []
    for task in MaintenanceTask:
        job_id = await enqueue_maintenance_job(runtime, MaintenanceJob(type=task))
        if job_id:
            queued.append(job_id)
    LOGGER.info("Nightly maintenance queued: %s", ", ".join(queued) or "nothing")
    return queued


async def worker_startup(ctx: Dict[str, Any]) -> None:
    """Build the pipeline once per Arq worker process."""

    settings = get_settings()
    accessor = load_accessor(settings.bookmark_accessor)
    transport = ArqTransport(get_redis_settings(settings.queue))
    dead_letters = DeadLetterStore(DeadLetterConfig(db_path=settings.storage.dead_letter_db_path))
    pipeline = build_pipeline(settings, accessor, transport=transport, dead_letters=dead_letters)
    search = pipeline.search
    if isinstance(search, MeilisearchIndex):
        try:
            await search.ensure_index()
        except SearchIndexError as exc:
            LOGGER.warning("Search index settings not applied: %s", exc)
    metrics.start_exporter(settings.telemetry.prometheus_port)
    await pipeline.runtime.start()
    ctx["pipeline"] = pipeline
    ctx["runtime"] = pipeline.runtime
    LOGGER.info("Enrichment worker started (kinds=%s)", ", ".join(pipeline.runtime.kinds))


async def worker_shutdown(ctx: Dict[str, Any]) -> None:
    pipeline: Optional[Pipeline] = ctx.get("pipeline")
    if pipeline is not None:
        await pipeline.close()
    LOGGER.info("Enrichment worker shutdown")


def _worker_functions(settings: Settings) -> list[Any]:
    return [arq_function(kind, options) for kind, options in pool_options(settings).items()]


def _cron_jobs(settings: Settings) -> list[Any]:
    if not settings.schedule.enabled:
        return []
    return [
        cron(
            nightly_maintenance,
            name="nightly-maintenance",
            hour=settings.schedule.hour,
            minute=settings.schedule.minute,
            unique=True,
        )
    ]


_SETTINGS = get_settings()


class WorkerSettings:
    """Arq worker settings."""

    functions = _worker_functions(_SETTINGS)
    cron_jobs = _cron_jobs(_SETTINGS)
    redis_settings = get_redis_settings(_SETTINGS.queue)

    # Concurrency and retries are enforced per job kind by the runtime.
    max_jobs = (
        _SETTINGS.snapshot_pool.concurrency
        + _SETTINGS.index_pool.concurrency
        + _SETTINGS.maintenance_pool.concurrency
    )
    job_timeout = longest_job_timeout(_SETTINGS)
    # On SIGTERM arq waits this long for running jobs before cancelling them.
    job_completion_wait = shutdown_grace(_SETTINGS)
    keep_result = KEEP_RESULT_SECONDS
    retry_jobs = True
    poll_delay = 0.5
    health_check_interval = 30

    on_startup = worker_startup
    on_shutdown = worker_shutdown

"""Job queue runtime: bounded worker pools, rate limits, retries and dead letters.

The runtime is transport-agnostic. ``LocalTransport`` keeps jobs in-process
(single-process deployments and tests); ``ArqTransport`` pushes them through
Redis with Arq, whose worker calls back into :meth:`JobRuntime.execute`.
Either way the runtime owns concurrency caps, the jobs-per-second ceiling,
exponential backoff and dead-lettering.
"""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import suppress
from dataclasses import asdict, dataclass, field, replace
from datetime import timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Protocol
from uuid import uuid4

from arq import create_pool
from arq.connections import ArqRedis, RedisSettings
from arq.worker import Retry, func
from pydantic import BaseModel
from redis.exceptions import RedisError

from enricher import metrics
from enricher.rate_limit import RateLimiter
from enricher.settings import QueueSettings
from enricher.store import DeadLetterStore

LOGGER = logging.getLogger(__name__)


class JobKind(str, Enum):
    """Named job streams; each gets its own worker pool."""

    SNAPSHOT = "snapshot-processing"
    INDEX = "content-indexing"
    MAINTENANCE = "maintenance-tasks"


class ContentError(Exception):
    """Input that retrying cannot repair (corrupt documents, invalid payloads).

    Still retried, but against the smaller content-error ceiling.
    """


class QueueUnavailableError(RuntimeError):
    """The transport refused or failed to accept a job."""


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Exponential backoff with a fixed attempt ceiling."""

    max_attempts: int = 3
    base_delay_seconds: float = 2.0
    max_delay_seconds: float = 300.0
    content_error_attempts: int = 2

    def backoff(self, attempt: int) -> float:
        """Delay before the attempt following ``attempt`` (1-based)."""

        delay = self.base_delay_seconds * (2 ** max(0, attempt - 1))
        return min(self.max_delay_seconds, delay)

    def attempts_for(self, error: BaseException) -> int:
        if isinstance(error, ContentError):
            return max(1, min(self.max_attempts, self.content_error_attempts))
        return self.max_attempts


@dataclass(frozen=True, slots=True)
class HandlerOptions:
    """Pool limits for one job kind."""

    concurrency: int = 5
    rate_per_second: float = 10.0
    timeout_seconds: float = 120.0
    retry: RetryPolicy = field(default_factory=RetryPolicy)


class HandlerStatus(str, Enum):
    COMPLETED = "completed"
    SKIPPED = "skipped"


@dataclass(slots=True)
class HandlerResult:
    """Explicit success value returned by every handler; failures raise."""

    status: HandlerStatus = HandlerStatus.COMPLETED
    detail: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def completed(cls, **detail: Any) -> HandlerResult:
        return cls(status=HandlerStatus.COMPLETED, detail=detail)

    @classmethod
    def skipped(cls, reason: str, **detail: Any) -> HandlerResult:
        return cls(status=HandlerStatus.SKIPPED, detail={"reason": reason, **detail})


class JobOutcome(str, Enum):
    COMPLETED = "completed"
    SKIPPED = "skipped"
    RETRY = "retry"
    DEAD = "dead"


@dataclass(slots=True)
class JobEnvelope:
    """A payload in flight plus its delivery bookkeeping."""

    job_id: str
    kind: str
    payload: Dict[str, Any]
    attempt: int = 1
    enqueued_at: float = field(default_factory=time.time)

    def next_attempt(self) -> JobEnvelope:
        return replace(self, attempt=self.attempt + 1)


@dataclass(slots=True)
class Dispatch:
    """Runtime verdict for one delivery attempt."""

    outcome: JobOutcome
    job_id: str
    kind: str
    attempt: int
    result: HandlerResult | None = None
    error: str | None = None
    retry_in: float | None = None

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["outcome"] = self.outcome.value
        if self.result is not None:
            payload["result"] = {"status": self.result.status.value, "detail": self.result.detail}
        return payload


Handler = Callable[[Dict[str, Any]], Awaitable[HandlerResult]]


class JobTransport(Protocol):
    """Moves envelopes from producers to workers with at-least-once delivery."""

    pulls: bool

    async def put(self, envelope: JobEnvelope, *, delay: float = 0.0) -> bool:
        """Enqueue; returns False when a job with the same id is already pending."""
        ...

    async def close(self) -> None: ...


class LocalTransport:
    """In-process transport built on asyncio queues.

    Job ids that are queued or in flight are tracked so duplicate submissions
    collapse, mirroring id-based deduplication in Redis-backed queues.
    """

    pulls = True

    def __init__(self) -> None:
        self._queues: Dict[str, asyncio.Queue[JobEnvelope]] = {}
        self._pending: set[str] = set()
        self._timers: Dict[asyncio.TimerHandle, JobEnvelope] = {}
        self._idle = asyncio.Event()
        self._idle.set()
        self._closed = False

    def _queue(self, kind: str) -> asyncio.Queue[JobEnvelope]:
        if kind not in self._queues:
            self._queues[kind] = asyncio.Queue()
        return self._queues[kind]

    async def put(self, envelope: JobEnvelope, *, delay: float = 0.0) -> bool:
        if self._closed:
            raise QueueUnavailableError("Local transport is closed")
        if envelope.job_id in self._pending:
            return False
        self._pending.add(envelope.job_id)
        self._idle.clear()
        self._schedule(envelope, delay)
        return True

    async def requeue(self, envelope: JobEnvelope, *, delay: float = 0.0) -> None:
        """Redeliver a job that is still pending (retry path)."""

        if self._closed:
            LOGGER.warning("Dropping retry of %s; transport closed", envelope.job_id)
            self.ack(envelope)
            return
        self._schedule(envelope, delay)

    async def get(self, kind: str) -> JobEnvelope:
        return await self._queue(kind).get()

    def ack(self, envelope: JobEnvelope) -> None:
        self._pending.discard(envelope.job_id)
        if not self._pending:
            self._idle.set()

    def pending_count(self) -> int:
        return len(self._pending)

    async def join(self) -> None:
        """Wait until every submitted job (including scheduled retries) settles."""

        await self._idle.wait()

    def drain(self) -> list[JobEnvelope]:
        """Take back every envelope not yet handed to a worker.

        Covers both queued jobs and retries still waiting on their backoff
        timer. The returned jobs are no longer pending.
        """

        undelivered: list[JobEnvelope] = []
        for handle, envelope in list(self._timers.items()):
            handle.cancel()
            undelivered.append(envelope)
        self._timers.clear()
        for queue in self._queues.values():
            while not queue.empty():
                undelivered.append(queue.get_nowait())
        for envelope in undelivered:
            self.ack(envelope)
        return undelivered

    async def close(self) -> None:
        self._closed = True
        undelivered = self.drain()
        if undelivered:
            LOGGER.warning("Discarded %s undelivered jobs on shutdown", len(undelivered))

    def _schedule(self, envelope: JobEnvelope, delay: float) -> None:
        queue = self._queue(envelope.kind)
        if delay <= 0:
            queue.put_nowait(envelope)
            return
        loop = asyncio.get_running_loop()

        def _release() -> None:
            self._timers.pop(handle, None)
            queue.put_nowait(envelope)

        handle = loop.call_later(delay, _release)
        self._timers[handle] = envelope


class ArqTransport:
    """Redis-backed transport using Arq; the Arq worker pulls and delivers."""

    pulls = False

    def __init__(self, redis_settings: RedisSettings, *, queue_name: str | None = None) -> None:
        self.redis_settings = redis_settings
        self.queue_name = queue_name
        self._pool: Optional[ArqRedis] = None

    async def get_pool(self) -> ArqRedis:
        if self._pool is None:
            self._pool = await create_pool(self.redis_settings)
        return self._pool

    async def put(self, envelope: JobEnvelope, *, delay: float = 0.0) -> bool:
        try:
            pool = await self.get_pool()
            job = await pool.enqueue_job(
                envelope.kind,
                envelope.payload,
                _job_id=envelope.job_id,
                _queue_name=self.queue_name,
                _defer_by=timedelta(seconds=delay) if delay > 0 else None,
            )
        except (OSError, RedisError) as exc:
            raise QueueUnavailableError(f"Failed to enqueue {envelope.job_id}: {exc}") from exc
        return job is not None

    async def close(self) -> None:
        if self._pool:
            await self._pool.close()
            self._pool = None


def get_redis_settings(config: QueueSettings) -> RedisSettings:
    return RedisSettings(
        host=config.redis_host,
        port=config.redis_port,
        database=config.redis_database,
        password=config.redis_password,
    )


@dataclass(slots=True)
class _Registration:
    kind: str
    options: HandlerOptions
    handler: Handler
    semaphore: asyncio.Semaphore
    limiter: RateLimiter


class JobRuntime:
    """Dispatcher that owns handler pools for every registered job kind."""

    def __init__(
        self,
        transport: JobTransport | None = None,
        *,
        dead_letters: DeadLetterStore | None = None,
    ) -> None:
        self.transport: JobTransport = transport or LocalTransport()
        self.dead_letters = dead_letters
        self._handlers: Dict[str, _Registration] = {}
        self._pools: list[asyncio.Task[None]] = []
        self._closing = asyncio.Event()
        self._started = False

    @property
    def kinds(self) -> list[str]:
        return list(self._handlers)

    def options_for(self, kind: str | JobKind) -> HandlerOptions:
        return self._handlers[_kind_value(kind)].options

    async def submit(
        self,
        kind: str | JobKind,
        payload: BaseModel | Mapping[str, Any],
        *,
        job_id: str | None = None,
        delay: float = 0.0,
    ) -> str:
        """Enqueue ``payload`` for ``kind`` and return the job id.

        Raises:
            QueueUnavailableError: the transport is down or closed
        """

        kind_value = _kind_value(kind)
        body = payload.model_dump(mode="json") if isinstance(payload, BaseModel) else dict(payload)
        envelope = JobEnvelope(
            job_id=job_id or f"{kind_value}-{uuid4().hex}",
            kind=kind_value,
            payload=body,
        )
        accepted = await self.transport.put(envelope, delay=delay)
        if accepted:
            LOGGER.info("Enqueued job %s (kind=%s)", envelope.job_id, kind_value)
        else:
            LOGGER.info("Job %s already queued; duplicate submit ignored", envelope.job_id)
        return envelope.job_id

    def register_handler(
        self,
        kind: str | JobKind,
        options: HandlerOptions,
        handler: Handler,
    ) -> None:
        """Attach ``handler`` to ``kind`` with its own bounded, rate-limited pool."""

        kind_value = _kind_value(kind)
        if kind_value in self._handlers:
            raise ValueError(f"Handler already registered for {kind_value}")
        if options.concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        registration = _Registration(
            kind=kind_value,
            options=options,
            handler=handler,
            semaphore=asyncio.Semaphore(options.concurrency),
            limiter=RateLimiter(options.rate_per_second),
        )
        self._handlers[kind_value] = registration
        if self._started:
            self._spawn_pool(registration)

    async def start(self) -> None:
        """Start pull loops for every registered kind (pull transports only)."""

        if self._started:
            return
        self._started = True
        self._closing.clear()
        for registration in self._handlers.values():
            self._spawn_pool(registration)

    async def close(self, *, grace_seconds: float | None = None) -> None:
        """Stop pulling, let in-flight jobs finish, then drain pools.

        With no ``grace_seconds`` each in-flight job runs until it completes
        or hits its handler's own timeout. Jobs cancelled because they outlive
        an explicit grace, and jobs never delivered, go to the dead-letter
        store so they can be requeued.
        """

        self._closing.set()
        if self._pools:
            LOGGER.info("Draining %s worker loops", len(self._pools))
            _, pending = await asyncio.wait(self._pools, timeout=grace_seconds)
            for task in pending:
                task.cancel()
            if pending:
                LOGGER.warning("Cancelled %s worker loops after shutdown grace", len(pending))
                await asyncio.gather(*pending, return_exceptions=True)
        self._pools.clear()
        self._started = False
        if isinstance(self.transport, LocalTransport):
            for envelope in self.transport.drain():
                await self._park(envelope, "Undelivered at shutdown")
        await self.transport.close()

    async def execute(self, envelope: JobEnvelope) -> Dispatch:
        """Run one delivery attempt and decide what happens to the job next."""

        registration = self._handlers.get(envelope.kind)
        if registration is None:
            raise KeyError(f"No handler registered for {envelope.kind}")

        async with registration.semaphore:
            await registration.limiter.acquire()
            LOGGER.info(
                "Job started: %s (kind=%s attempt=%s)",
                envelope.job_id,
                envelope.kind,
                envelope.attempt,
            )
            started = time.perf_counter()
            try:
                result = await asyncio.wait_for(
                    registration.handler(envelope.payload),
                    timeout=registration.options.timeout_seconds,
                )
            except Exception as exc:  # noqa: BLE001 - every failure feeds retry/dead-letter
                return await self._handle_failure(
                    registration, envelope, exc, duration_s=time.perf_counter() - started
                )

        duration_s = time.perf_counter() - started
        outcome = JobOutcome.SKIPPED if result.status is HandlerStatus.SKIPPED else JobOutcome.COMPLETED
        metrics.record_job_outcome(envelope.kind, outcome.value, duration_s=duration_s)
        LOGGER.info(
            "Job %s: %s (kind=%s, %.2fs)", outcome.value, envelope.job_id, envelope.kind, duration_s
        )
        return Dispatch(
            outcome=outcome,
            job_id=envelope.job_id,
            kind=envelope.kind,
            attempt=envelope.attempt,
            result=result,
        )

    async def requeue_dead_letter(self, record_id: int) -> str:
        """Resubmit a dead-lettered job with its original payload and id."""

        if self.dead_letters is None:
            raise RuntimeError("No dead-letter store configured")
        record = await asyncio.to_thread(self.dead_letters.get, record_id)
        job_id = await self.submit(record.kind, record.payload, job_id=record.job_id)
        await asyncio.to_thread(self.dead_letters.delete, record_id)
        return job_id

    async def _handle_failure(
        self,
        registration: _Registration,
        envelope: JobEnvelope,
        exc: Exception,
        *,
        duration_s: float,
    ) -> Dispatch:
        policy = registration.options.retry
        error = _describe_error(exc, registration.options.timeout_seconds)
        ceiling = policy.attempts_for(exc)
        if envelope.attempt < ceiling:
            delay = policy.backoff(envelope.attempt)
            metrics.record_job_outcome(envelope.kind, JobOutcome.RETRY.value, duration_s=duration_s)
            LOGGER.warning(
                "Job %s failed on attempt %s/%s (%s); retrying in %.1fs",
                envelope.job_id,
                envelope.attempt,
                ceiling,
                error,
                delay,
            )
            return Dispatch(
                outcome=JobOutcome.RETRY,
                job_id=envelope.job_id,
                kind=envelope.kind,
                attempt=envelope.attempt,
                error=error,
                retry_in=delay,
            )

        metrics.record_job_outcome(envelope.kind, JobOutcome.DEAD.value, duration_s=duration_s)
        metrics.record_dead_letter(envelope.kind)
        LOGGER.error(
            "Job %s dead after %s attempts (kind=%s): %s",
            envelope.job_id,
            envelope.attempt,
            envelope.kind,
            error,
            exc_info=exc,
        )
        await self._record_dead_letter(envelope, error)
        return Dispatch(
            outcome=JobOutcome.DEAD,
            job_id=envelope.job_id,
            kind=envelope.kind,
            attempt=envelope.attempt,
            error=error,
        )

    async def _park(self, envelope: JobEnvelope, reason: str) -> None:
        """Dead-letter a job the runtime could not finish before shutting down."""

        metrics.record_dead_letter(envelope.kind)
        LOGGER.error(
            "Job %s (kind=%s attempt=%s) not finished: %s",
            envelope.job_id,
            envelope.kind,
            envelope.attempt,
            reason,
        )
        await self._record_dead_letter(envelope, reason)

    async def _record_dead_letter(self, envelope: JobEnvelope, error: str) -> None:
        if self.dead_letters is None:
            LOGGER.warning("No dead-letter store; job %s payload: %s", envelope.job_id, envelope.payload)
            return
        try:
            await asyncio.to_thread(
                self.dead_letters.record,
                job_id=envelope.job_id,
                kind=envelope.kind,
                payload=envelope.payload,
                attempts=envelope.attempt,
                error=error,
            )
        except Exception:  # noqa: BLE001
            LOGGER.exception("Failed to persist dead letter for %s", envelope.job_id)

    def _spawn_pool(self, registration: _Registration) -> None:
        if not getattr(self.transport, "pulls", False):
            return
        for index in range(registration.options.concurrency):
            task = asyncio.create_task(
                self._pull_loop(registration.kind),
                name=f"{registration.kind}-worker-{index}",
            )
            self._pools.append(task)

    async def _pull_loop(self, kind: str) -> None:
        transport = self.transport
        if not isinstance(transport, LocalTransport):
            raise TypeError(f"{type(transport).__name__} does not support pull loops")
        while not self._closing.is_set():
            getter = asyncio.ensure_future(transport.get(kind))
            stopper = asyncio.ensure_future(self._closing.wait())
            done, _ = await asyncio.wait({getter, stopper}, return_when=asyncio.FIRST_COMPLETED)
            if getter not in done:
                getter.cancel()
                with suppress(asyncio.CancelledError):
                    await getter
                break
            stopper.cancel()
            envelope = getter.result()
            try:
                dispatch = await self.execute(envelope)
            except asyncio.CancelledError:
                await self._park(envelope, "Cancelled after shutdown grace")
                transport.ack(envelope)
                raise
            if dispatch.outcome is JobOutcome.RETRY:
                await transport.requeue(envelope.next_attempt(), delay=dispatch.retry_in or 0.0)
            else:
                transport.ack(envelope)


async def submit_best_effort(
    runtime: JobRuntime,
    kind: str | JobKind,
    payload: BaseModel | Mapping[str, Any],
    *,
    job_id: str | None = None,
) -> str | None:
    """Submit without ever failing the caller's primary operation."""

    try:
        return await runtime.submit(kind, payload, job_id=job_id)
    except QueueUnavailableError as exc:
        LOGGER.warning("Enrichment job for %s not queued: %s", job_id or kind, exc)
        return None


def arq_function(kind: str | JobKind, options: HandlerOptions) -> Any:
    """Arq entry point for ``kind``; the runtime is looked up in the worker ctx."""

    kind_value = _kind_value(kind)

    async def _run(ctx: Dict[str, Any], payload: Dict[str, Any]) -> Dict[str, Any]:
        runtime: JobRuntime = ctx["runtime"]
        envelope = JobEnvelope(
            job_id=ctx.get("job_id") or f"{kind_value}-{uuid4().hex}",
            kind=kind_value,
            payload=payload,
            attempt=int(ctx.get("job_try") or 1),
        )
        dispatch = await runtime.execute(envelope)
        if dispatch.outcome is JobOutcome.RETRY:
            raise Retry(defer=dispatch.retry_in)
        return dispatch.to_dict()

    _run.__qualname__ = _run.__name__ = f"run_{kind_value.replace('-', '_')}"
    return func(  # type: ignore[arg-type]
        _run,
        name=kind_value,
        # Arq must never give up before the runtime dead-letters the job.
        max_tries=options.retry.max_attempts + 1,
        timeout=options.timeout_seconds + 30,
    )


def _kind_value(kind: str | JobKind) -> str:
    return kind.value if isinstance(kind, JobKind) else str(kind)


def _describe_error(exc: BaseException, timeout_seconds: float) -> str:
    if isinstance(exc, asyncio.TimeoutError):
        return f"TimeoutError: handler exceeded {timeout_seconds:g}s"
    message = str(exc)
    return f"{type(exc).__name__}: {message}" if message else type(exc).__name__

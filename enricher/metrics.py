"""Prometheus metrics for the enrichment workers."""

from __future__ import annotations

import logging

from prometheus_client import Counter, Histogram, start_http_server

LOGGER = logging.getLogger(__name__)

JOB_OUTCOMES = Counter(
    "enricher_jobs_total",
    "Job delivery attempts grouped by kind and outcome",
    labelnames=("kind", "outcome"),
)
JOB_DURATION_SECONDS = Histogram(
    "enricher_job_duration_seconds",
    "Wall-clock time spent inside job handlers",
    labelnames=("kind",),
    buckets=(0.1, 0.5, 1, 2.5, 5, 10, 30, 60, 120, 300, 900),
)
DEAD_LETTERS = Counter(
    "enricher_dead_letters_total",
    "Jobs moved to the dead-letter store after exhausting retries",
    labelnames=("kind",),
)
BROWSER_LAUNCHES = Counter(
    "enricher_browser_launches_total",
    "Headless browser launches (first start plus reconnects)",
)
PROBE_RESULTS = Counter(
    "enricher_probe_results_total",
    "Broken-link probe results",
    labelnames=("result",),
)
DUPLICATES_FLAGGED = Counter(
    "enricher_duplicates_flagged_total",
    "Bookmarks flagged as duplicates",
    labelnames=("reason",),
)

_EXPORTER_STARTED = False


def record_job_outcome(kind: str, outcome: str, *, duration_s: float | None = None) -> None:
    JOB_OUTCOMES.labels(kind=kind, outcome=outcome).inc()
    if duration_s is not None:
        JOB_DURATION_SECONDS.labels(kind=kind).observe(max(0.0, duration_s))


def record_dead_letter(kind: str) -> None:
    DEAD_LETTERS.labels(kind=kind).inc()


def record_browser_launch() -> None:
    BROWSER_LAUNCHES.inc()


def record_probe_result(result: str) -> None:
    PROBE_RESULTS.labels(result=result).inc()


def record_duplicate(reason: str) -> None:
    DUPLICATES_FLAGGED.labels(reason=reason).inc()


def start_exporter(port: int) -> bool:
    """Expose metrics on ``port``; returns False when disabled or already bound."""

    global _EXPORTER_STARTED
    if _EXPORTER_STARTED or port <= 0:
        return False
    try:
        start_http_server(port)
    except OSError as exc:  # pragma: no cover - system dependent
        LOGGER.warning("Prometheus exporter failed to bind on port %s: %s", port, exc)
        return False
    _EXPORTER_STARTED = True
    LOGGER.info("Prometheus exporter listening on port %s", port)
    return True

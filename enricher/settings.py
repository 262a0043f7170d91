"""Typed configuration objects backed by python-decouple settings."""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

from decouple import Config as DecoupleConfig, RepositoryEmpty, RepositoryEnv

__all__ = [
    "BrowserSettings",
    "ObjectStorageSettings",
    "SearchSettings",
    "QueueSettings",
    "PoolSettings",
    "ProbeSettings",
    "ScheduleSettings",
    "TelemetrySettings",
    "StorageSettings",
    "Settings",
    "load_config",
    "get_settings",
]

DEFAULT_USER_AGENT = "Mozilla/5.0 (compatible; BookmarkManager/1.0; +https://bookmarkmanager.com)"


@dataclass(frozen=True, slots=True)
class BrowserSettings:
    """Headless Chromium knobs used by the snapshot renderer."""

    channel: str
    headless: bool
    launch_args: tuple[str, ...]
    launch_timeout_ms: int
    viewport_width: int
    viewport_height: int
    navigation_timeout_ms: int
    settle_ms: int
    jpeg_quality: int
    user_agent: str


@dataclass(frozen=True, slots=True)
class ObjectStorageSettings:
    """MinIO/S3 connection and bucket layout."""

    endpoint: str
    access_key: str
    secret_key: str
    secure: bool
    region: str
    snapshot_bucket: str


@dataclass(frozen=True, slots=True)
class SearchSettings:
    """Meilisearch endpoint and index used for bookmark documents."""

    host: str
    api_key: str | None
    index: str
    timeout_seconds: float
    task_wait_seconds: float


@dataclass(frozen=True, slots=True)
class QueueSettings:
    """Redis connection plus runtime-wide retry knobs."""

    redis_host: str
    redis_port: int
    redis_database: int
    redis_password: str | None
    backoff_base_seconds: float
    backoff_max_seconds: float
    content_error_attempts: int
    shutdown_grace_seconds: float


@dataclass(frozen=True, slots=True)
class PoolSettings:
    """Per-job-kind worker pool limits."""

    concurrency: int
    rate_per_second: float
    timeout_seconds: float
    max_attempts: int


@dataclass(frozen=True, slots=True)
class ProbeSettings:
    """HEAD probe behaviour for the broken-link scan."""

    timeout_seconds: float
    delay_ms: int
    user_agent: str


@dataclass(frozen=True, slots=True)
class ScheduleSettings:
    """Nightly maintenance cron."""

    enabled: bool
    hour: int
    minute: int


@dataclass(frozen=True, slots=True)
class TelemetrySettings:
    """Prometheus exporter port and log verbosity."""

    prometheus_port: int
    log_level: str


@dataclass(frozen=True, slots=True)
class StorageSettings:
    """Local SQLite file for dead-lettered jobs."""

    dead_letter_db_path: Path


@dataclass(frozen=True, slots=True)
class Settings:
    """Top-level immutable configuration container."""

    env_path: str
    browser: BrowserSettings
    object_storage: ObjectStorageSettings
    search: SearchSettings
    queue: QueueSettings
    snapshot_pool: PoolSettings
    index_pool: PoolSettings
    maintenance_pool: PoolSettings
    probe: ProbeSettings
    schedule: ScheduleSettings
    telemetry: TelemetrySettings
    storage: StorageSettings
    bookmark_accessor: str


def load_config(env_path: str = ".env") -> DecoupleConfig:
    """Return a python-decouple config anchored to the repository .env file.

    Process environment variables always win; a missing .env file simply
    means only the environment and defaults are consulted.
    """

    if Path(env_path).is_file():
        return DecoupleConfig(RepositoryEnv(env_path))
    return DecoupleConfig(RepositoryEmpty())


def _int(cfg: DecoupleConfig, key: str, *, default: int) -> int:
    return cfg(key, cast=int, default=default)


def _float(cfg: DecoupleConfig, key: str, *, default: float) -> float:
    return cfg(key, cast=float, default=default)


def _bool(cfg: DecoupleConfig, key: str, *, default: bool) -> bool:
    return cfg(key, cast=bool, default=default)


def _csv_tuple(cfg: DecoupleConfig, key: str, *, default: str = "") -> tuple[str, ...]:
    raw = cfg(key, default=default)
    if not raw:
        return tuple()
    return tuple(part.strip() for part in raw.split(",") if part.strip())


def _pool(
    cfg: DecoupleConfig,
    prefix: str,
    *,
    concurrency: int,
    rate_per_second: float,
    timeout_seconds: float,
    max_attempts: int,
) -> PoolSettings:
    pool = PoolSettings(
        concurrency=_int(cfg, f"{prefix}_CONCURRENCY", default=concurrency),
        rate_per_second=_float(cfg, f"{prefix}_RATE_PER_SECOND", default=rate_per_second),
        timeout_seconds=_float(cfg, f"{prefix}_TIMEOUT_SECONDS", default=timeout_seconds),
        max_attempts=_int(cfg, f"{prefix}_MAX_ATTEMPTS", default=max_attempts),
    )
    if pool.concurrency < 1:
        raise ValueError(f"{prefix}_CONCURRENCY must be >= 1")
    if pool.rate_per_second <= 0:
        raise ValueError(f"{prefix}_RATE_PER_SECOND must be positive")
    if pool.max_attempts < 1:
        raise ValueError(f"{prefix}_MAX_ATTEMPTS must be >= 1")
    return pool


@lru_cache(maxsize=1)
def get_settings(env_path: str = ".env") -> Settings:
    """Load and memoize structured settings for the current process."""

    cfg = load_config(env_path)

    browser = BrowserSettings(
        channel=cfg("BROWSER_CHANNEL", default="chromium"),
        headless=_bool(cfg, "BROWSER_HEADLESS", default=True),
        launch_args=_csv_tuple(
            cfg, "BROWSER_LAUNCH_ARGS", default="--no-sandbox,--disable-setuid-sandbox"
        ),
        launch_timeout_ms=_int(cfg, "BROWSER_LAUNCH_TIMEOUT_MS", default=30000),
        viewport_width=_int(cfg, "CAPTURE_VIEWPORT_WIDTH", default=1280),
        viewport_height=_int(cfg, "CAPTURE_VIEWPORT_HEIGHT", default=720),
        navigation_timeout_ms=_int(cfg, "CAPTURE_NAVIGATION_TIMEOUT_MS", default=30000),
        settle_ms=_int(cfg, "CAPTURE_SETTLE_MS", default=1000),
        jpeg_quality=_int(cfg, "CAPTURE_JPEG_QUALITY", default=80),
        user_agent=cfg("CAPTURE_USER_AGENT", default=DEFAULT_USER_AGENT),
    )
    object_storage = ObjectStorageSettings(
        endpoint=cfg("MINIO_ENDPOINT", default="localhost:9000"),
        access_key=cfg("MINIO_ACCESS_KEY", default="minioadmin"),
        secret_key=cfg("MINIO_SECRET_KEY", default="minioadmin"),
        secure=_bool(cfg, "MINIO_USE_SSL", default=False),
        region=cfg("MINIO_REGION", default="us-east-1"),
        snapshot_bucket=cfg("MINIO_SNAPSHOT_BUCKET", default="snapshots"),
    )
    search = SearchSettings(
        host=cfg("MEILISEARCH_HOST", default="http://localhost:7700"),
        api_key=cfg("MEILISEARCH_API_KEY", default=None),
        index=cfg("MEILISEARCH_INDEX", default="bookmarks"),
        timeout_seconds=_float(cfg, "MEILISEARCH_TIMEOUT_SECONDS", default=10.0),
        task_wait_seconds=_float(cfg, "MEILISEARCH_TASK_WAIT_SECONDS", default=30.0),
    )
    queue = QueueSettings(
        redis_host=cfg("REDIS_HOST", default="localhost"),
        redis_port=_int(cfg, "REDIS_PORT", default=6379),
        redis_database=_int(cfg, "REDIS_DB", default=0),
        redis_password=cfg("REDIS_PASSWORD", default=None),
        backoff_base_seconds=_float(cfg, "QUEUE_BACKOFF_BASE_SECONDS", default=2.0),
        backoff_max_seconds=_float(cfg, "QUEUE_BACKOFF_MAX_SECONDS", default=300.0),
        content_error_attempts=_int(cfg, "QUEUE_CONTENT_ERROR_ATTEMPTS", default=2),
        shutdown_grace_seconds=_float(cfg, "QUEUE_SHUTDOWN_GRACE_SECONDS", default=30.0),
    )
    if queue.content_error_attempts < 1:
        raise ValueError("QUEUE_CONTENT_ERROR_ATTEMPTS must be >= 1")

    snapshot_pool = _pool(
        cfg, "SNAPSHOT", concurrency=5, rate_per_second=10.0, timeout_seconds=120.0, max_attempts=3
    )
    index_pool = _pool(
        cfg, "INDEX", concurrency=5, rate_per_second=10.0, timeout_seconds=60.0, max_attempts=3
    )
    maintenance_pool = _pool(
        cfg,
        "MAINTENANCE",
        concurrency=2,
        rate_per_second=5.0,
        timeout_seconds=3600.0,
        max_attempts=2,
    )

    probe = ProbeSettings(
        timeout_seconds=_float(cfg, "PROBE_TIMEOUT_SECONDS", default=10.0),
        delay_ms=_int(cfg, "PROBE_DELAY_MS", default=100),
        user_agent=cfg("PROBE_USER_AGENT", default=DEFAULT_USER_AGENT),
    )
    schedule = ScheduleSettings(
        enabled=_bool(cfg, "MAINTENANCE_CRON_ENABLED", default=True),
        hour=_int(cfg, "MAINTENANCE_CRON_HOUR", default=3),
        minute=_int(cfg, "MAINTENANCE_CRON_MINUTE", default=0),
    )
    telemetry = TelemetrySettings(
        prometheus_port=_int(cfg, "PROMETHEUS_PORT", default=9102),
        log_level=cfg("LOG_LEVEL", default="INFO"),
    )
    storage = StorageSettings(
        dead_letter_db_path=Path(cfg("DEAD_LETTER_DB_PATH", default="dead_letters.db")),
    )

    return Settings(
        env_path=env_path,
        browser=browser,
        object_storage=object_storage,
        search=search,
        queue=queue,
        snapshot_pool=snapshot_pool,
        index_pool=index_pool,
        maintenance_pool=maintenance_pool,
        probe=probe,
        schedule=schedule,
        telemetry=telemetry,
        storage=storage,
        bookmark_accessor=cfg("BOOKMARK_ACCESSOR", default=""),
    )

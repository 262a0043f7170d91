"""Object storage for snapshot artifacts (MinIO / S3-compatible)."""

from __future__ import annotations

import asyncio
import io
import logging
from dataclasses import dataclass
from typing import Protocol

from minio import Minio
from minio.error import S3Error
from urllib3.exceptions import HTTPError as Urllib3HTTPError

from enricher.settings import ObjectStorageSettings, get_settings

LOGGER = logging.getLogger(__name__)

HTML_CONTENT_TYPE = "text/html; charset=utf-8"
JPEG_CONTENT_TYPE = "image/jpeg"


class BlobStoreError(RuntimeError):
    """Object storage rejected or failed a request."""


class ObjectStore(Protocol):
    async def put_object(self, bucket: str, path: str, data: bytes, content_type: str) -> None: ...

    async def get_object(self, bucket: str, path: str) -> bytes: ...

    async def bucket_exists(self, bucket: str) -> bool: ...

    async def create_bucket(self, bucket: str) -> None: ...


@dataclass(frozen=True)
class SnapshotPaths:
    """Deterministic object keys for one bookmark's snapshot artifacts."""

    bucket: str
    page_key: str
    thumbnail_key: str

    @classmethod
    def for_bookmark(cls, *, bucket: str, user_id: str, bookmark_id: str) -> SnapshotPaths:
        prefix = f"{user_id}/{bookmark_id}"
        return cls(
            bucket=bucket,
            page_key=f"{prefix}/page.html",
            thumbnail_key=f"{prefix}/thumbnail.jpg",
        )

    @property
    def page_ref(self) -> str:
        return object_ref(self.bucket, self.page_key)

    @property
    def thumbnail_ref(self) -> str:
        return object_ref(self.bucket, self.thumbnail_key)


def object_ref(bucket: str, key: str) -> str:
    """Bucket-qualified reference stored on bookmark records."""

    return f"{bucket}/{key}"


def split_object_ref(ref: str) -> tuple[str, str]:
    """Inverse of :func:`object_ref`: ``"bucket/a/b"`` -> ``("bucket", "a/b")``."""

    bucket, _, key = ref.strip("/").partition("/")
    if not bucket or not key:
        raise ValueError(f"Object reference must look like 'bucket/key', got {ref!r}")
    return bucket, key


class MinioObjectStore:
    """Async facade over the blocking MinIO client.

    Calls run in worker threads so the event loop keeps serving other jobs.
    """

    def __init__(
        self,
        settings: ObjectStorageSettings | None = None,
        *,
        client: Minio | None = None,
    ) -> None:
        self.settings = settings or get_settings().object_storage
        self.client = client or Minio(
            self.settings.endpoint,
            access_key=self.settings.access_key,
            secret_key=self.settings.secret_key,
            secure=self.settings.secure,
            region=self.settings.region,
        )

    async def put_object(self, bucket: str, path: str, data: bytes, content_type: str) -> None:
        def _put() -> None:
            self.client.put_object(
                bucket,
                path,
                io.BytesIO(data),
                length=len(data),
                content_type=content_type,
            )

        await self._call(_put, f"put {bucket}/{path}")

    async def get_object(self, bucket: str, path: str) -> bytes:
        def _get() -> bytes:
            response = self.client.get_object(bucket, path)
            try:
                return response.read()
            finally:
                response.close()
                response.release_conn()

        return await self._call(_get, f"get {bucket}/{path}")

    async def bucket_exists(self, bucket: str) -> bool:
        return await self._call(lambda: self.client.bucket_exists(bucket), f"stat {bucket}")

    async def create_bucket(self, bucket: str) -> None:
        await self._call(
            lambda: self.client.make_bucket(bucket, location=self.settings.region),
            f"create {bucket}",
        )
        LOGGER.info("Created bucket %s", bucket)

    async def _call(self, fn, description: str):  # type: ignore[no-untyped-def]
        try:
            return await asyncio.to_thread(fn)
        except (S3Error, Urllib3HTTPError, OSError) as exc:
            raise BlobStoreError(f"Object storage {description} failed: {exc}") from exc


async def ensure_bucket(store: ObjectStore, bucket: str) -> None:
    """Create ``bucket`` if it does not exist yet."""

    if await store.bucket_exists(bucket):
        return
    try:
        await store.create_bucket(bucket)
    except BlobStoreError:
        # Another worker may have created it between the check and the call.
        if not await store.bucket_exists(bucket):
            raise

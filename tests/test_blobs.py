from __future__ import annotations

from typing import Any

import pytest

from enricher.blobs import (
    BlobStoreError,
    MinioObjectStore,
    SnapshotPaths,
    ensure_bucket,
    object_ref,
    split_object_ref,
)
from enricher.settings import ObjectStorageSettings

SETTINGS = ObjectStorageSettings(
    endpoint="minio.local:9000",
    access_key="key",
    secret_key="secret",
    secure=False,
    region="us-east-1",
    snapshot_bucket="snapshots",
)


class FakeResponse:
    def __init__(self, data: bytes) -> None:
        self.data = data
        self.closed = False
        self.released = False

    def read(self) -> bytes:
        return self.data

    def close(self) -> None:
        self.closed = True

    def release_conn(self) -> None:
        self.released = True


class FakeMinio:
    def __init__(self) -> None:
        self.buckets: set[str] = set()
        self.objects: dict[tuple[str, str], dict[str, Any]] = {}
        self.responses: list[FakeResponse] = []

    def bucket_exists(self, bucket: str) -> bool:
        return bucket in self.buckets

    def make_bucket(self, bucket: str, location: str | None = None) -> None:
        self.buckets.add(bucket)

    def put_object(self, bucket, name, data, length, content_type):  # type: ignore[no-untyped-def]
        self.objects[(bucket, name)] = {
            "data": data.read(),
            "length": length,
            "content_type": content_type,
        }

    def get_object(self, bucket: str, name: str) -> FakeResponse:
        if (bucket, name) not in self.objects:
            raise ConnectionResetError("connection reset by peer")
        response = FakeResponse(self.objects[(bucket, name)]["data"])
        self.responses.append(response)
        return response


def test_snapshot_paths_are_deterministic_and_bucket_qualified() -> None:
    paths = SnapshotPaths.for_bookmark(bucket="snapshots", user_id="u1", bookmark_id="b1")

    assert paths.page_key == "u1/b1/page.html"
    assert paths.thumbnail_key == "u1/b1/thumbnail.jpg"
    assert paths.page_ref == "snapshots/u1/b1/page.html"
    assert paths.thumbnail_ref == "snapshots/u1/b1/thumbnail.jpg"


def test_split_object_ref_inverts_object_ref() -> None:
    assert split_object_ref(object_ref("snapshots", "u1/b1/page.html")) == ("snapshots", "u1/b1/page.html")


@pytest.mark.parametrize("ref", ["", "snapshots", "/snapshots/"])
def test_split_object_ref_rejects_unqualified_refs(ref: str) -> None:
    with pytest.raises(ValueError):
        split_object_ref(ref)


@pytest.mark.asyncio
async def test_minio_store_round_trip_releases_connection() -> None:
    client = FakeMinio()
    store = MinioObjectStore(SETTINGS, client=client)  # type: ignore[arg-type]

    await ensure_bucket(store, "snapshots")
    await store.put_object("snapshots", "u1/b1/page.html", b"<html></html>", "text/html; charset=utf-8")
    data = await store.get_object("snapshots", "u1/b1/page.html")

    assert data == b"<html></html>"
    stored = client.objects[("snapshots", "u1/b1/page.html")]
    assert stored["length"] == len(b"<html></html>")
    assert stored["content_type"] == "text/html; charset=utf-8"
    assert client.responses[0].closed and client.responses[0].released


@pytest.mark.asyncio
async def test_minio_errors_become_blob_store_errors() -> None:
    store = MinioObjectStore(SETTINGS, client=FakeMinio())  # type: ignore[arg-type]

    with pytest.raises(BlobStoreError, match="get snapshots/missing"):
        await store.get_object("snapshots", "missing")


class RacingStore:
    """Bucket appears between the existence check and the create call."""

    def __init__(self) -> None:
        self.checks = 0

    async def bucket_exists(self, bucket: str) -> bool:
        self.checks += 1
        return self.checks > 1

    async def create_bucket(self, bucket: str) -> None:
        raise BlobStoreError("BucketAlreadyOwnedByYou")


@pytest.mark.asyncio
async def test_ensure_bucket_tolerates_concurrent_creation() -> None:
    store = RacingStore()

    await ensure_bucket(store, "snapshots")  # type: ignore[arg-type]

    assert store.checks == 2

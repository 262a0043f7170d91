from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Sequence

import pytest

from enricher.blobs import BlobStoreError
from enricher.bookmarks import Bookmark
from enricher.browser import RenderedPage, RenderError
from enricher.schemas import SearchDocument
from enricher.search import SearchIndexError

BASE_TIME = datetime(2024, 1, 1, tzinfo=timezone.utc)

SAMPLE_PAGE = """
<html>
  <head><title>Sample Article</title><script>track()</script></head>
  <body>
    <nav><a href="/">Home</a></nav>
    <header>Site header</header>
    <article>
      <h1>Readable heading</h1>
      <p>First paragraph of real content.</p>
      <div class="ad">Buy things</div>
      <div><span></span></div>
    </article>
    <footer>Copyright</footer>
  </body>
</html>
"""


class InMemoryAccessor:
    """Dict-backed bookmark repository recording every write."""

    def __init__(self, bookmarks: Sequence[Bookmark] = ()) -> None:
        self.bookmarks: Dict[str, Bookmark] = {bookmark.id: bookmark for bookmark in bookmarks}
        self.calls: list[tuple[Any, ...]] = []

    def add(self, bookmark: Bookmark) -> Bookmark:
        self.bookmarks[bookmark.id] = bookmark
        return bookmark

    async def get_by_id(self, bookmark_id: str) -> Bookmark | None:
        bookmark = self.bookmarks.get(bookmark_id)
        return replace(bookmark) if bookmark is not None else None

    async def update_snapshot_path(self, bookmark_id: str, path: str) -> None:
        self.calls.append(("update_snapshot_path", bookmark_id, path))
        if bookmark_id in self.bookmarks:
            self.bookmarks[bookmark_id].snapshot_path = path

    async def update_cover_if_unset(self, bookmark_id: str, path: str) -> None:
        self.calls.append(("update_cover_if_unset", bookmark_id, path))
        bookmark = self.bookmarks.get(bookmark_id)
        if bookmark is not None and bookmark.cover_path is None:
            bookmark.cover_path = path

    async def update_indexed_status(self, bookmark_id: str, indexed: bool) -> None:
        self.calls.append(("update_indexed_status", bookmark_id, indexed))
        self.bookmarks[bookmark_id].content_indexed = indexed

    async def mark_duplicate(self, bookmark_id: str) -> None:
        self.calls.append(("mark_duplicate", bookmark_id))
        self.bookmarks[bookmark_id].is_duplicate = True

    async def mark_broken(self, bookmark_id: str, broken: bool) -> None:
        self.calls.append(("mark_broken", bookmark_id, broken))
        self.bookmarks[bookmark_id].is_broken = broken

    async def list_for_user(self, user_id: str) -> list[Bookmark]:
        owned = [replace(b) for b in self.bookmarks.values() if b.owner_id == user_id]
        return sorted(owned, key=lambda b: b.created_at)

    async def list_all(self) -> list[Bookmark]:
        return sorted(
            (replace(b) for b in self.bookmarks.values()),
            key=lambda b: (b.owner_id, b.created_at),
        )

    def calls_named(self, name: str) -> list[tuple[Any, ...]]:
        return [call for call in self.calls if call[0] == name]


class InMemoryObjectStore:
    def __init__(self) -> None:
        self.buckets: set[str] = set()
        self.objects: Dict[tuple[str, str], tuple[bytes, str]] = {}
        self.fail_puts = 0

    async def put_object(self, bucket: str, path: str, data: bytes, content_type: str) -> None:
        if bucket not in self.buckets:
            raise BlobStoreError(f"NoSuchBucket: {bucket}")
        if self.fail_puts > 0:
            self.fail_puts -= 1
            raise BlobStoreError("connection reset")
        self.objects[(bucket, path)] = (data, content_type)

    async def get_object(self, bucket: str, path: str) -> bytes:
        try:
            return self.objects[(bucket, path)][0]
        except KeyError:
            raise BlobStoreError(f"NoSuchKey: {bucket}/{path}") from None

    async def bucket_exists(self, bucket: str) -> bool:
        return bucket in self.buckets

    async def create_bucket(self, bucket: str) -> None:
        self.buckets.add(bucket)


class RecordingSearchIndex:
    def __init__(self) -> None:
        self.documents: Dict[str, SearchDocument] = {}
        self.upserts: list[SearchDocument] = []
        self.fail_next = 0

    async def upsert_document(self, document: SearchDocument) -> None:
        if self.fail_next > 0:
            self.fail_next -= 1
            raise SearchIndexError("search engine unavailable")
        self.upserts.append(document)
        self.documents[document.id] = document


class StubRenderer:
    def __init__(self, html: str = SAMPLE_PAGE, screenshot: bytes = b"\xff\xd8jpeg") -> None:
        self.html = html
        self.screenshot = screenshot
        self.calls: list[tuple[str, int | None]] = []
        self.failures = 0
        self.closed = False

    async def render(self, url: str, *, timeout_ms: int | None = None) -> RenderedPage:
        self.calls.append((url, timeout_ms))
        if self.failures > 0:
            self.failures -= 1
            raise RenderError(f"Failed to render {url}: net::ERR_TIMED_OUT")
        return RenderedPage(url=url, html=self.html, screenshot=self.screenshot)

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def make_bookmark() -> Callable[..., Bookmark]:
    counter = {"n": 0}

    def _make(**overrides: Any) -> Bookmark:
        counter["n"] += 1
        n = counter["n"]
        created = BASE_TIME + timedelta(minutes=n)
        fields: Dict[str, Any] = {
            "id": f"bm-{n}",
            "owner_id": "user-1",
            "url": f"https://example.com/articles/{n}",
            "title": f"Bookmark {n}",
            "created_at": created,
            "updated_at": created,
        }
        fields.update(overrides)
        return Bookmark(**fields)

    return _make


@pytest.fixture
def accessor() -> InMemoryAccessor:
    return InMemoryAccessor()


@pytest.fixture
def object_store() -> InMemoryObjectStore:
    return InMemoryObjectStore()


@pytest.fixture
def search_index() -> RecordingSearchIndex:
    return RecordingSearchIndex()


@pytest.fixture
def renderer() -> StubRenderer:
    return StubRenderer()

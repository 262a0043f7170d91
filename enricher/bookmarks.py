"""Bookmark records and the accessor interface the pipeline consumes.

The relational repository lives outside this package; workers only see the
narrow async surface declared by :class:`BookmarkAccessor`.
"""

from __future__ import annotations

import importlib
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Protocol, Sequence, runtime_checkable
from urllib.parse import urlparse

from enricher.schemas import ContentType


@dataclass(slots=True)
class Highlight:
    text: str
    annotation: str | None = None


@dataclass(slots=True)
class Bookmark:
    """Read model of a saved bookmark as exposed by the repository."""

    id: str
    owner_id: str
    url: str
    title: str
    created_at: datetime
    updated_at: datetime
    type: ContentType = ContentType.ARTICLE
    excerpt: str | None = None
    domain: str = ""
    collection_id: str | None = None
    snapshot_path: str | None = None
    cover_path: str | None = None
    content_indexed: bool = False
    is_duplicate: bool = False
    is_broken: bool = False
    tags: list[str] = field(default_factory=list)
    highlights: list[Highlight] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.domain:
            self.domain = (urlparse(self.url).hostname or "").lower()


class BookmarkNotFound(LookupError):
    """Raised when a job references a bookmark the repository cannot return."""

    def __init__(self, bookmark_id: str) -> None:
        super().__init__(f"Bookmark {bookmark_id} not found")
        self.bookmark_id = bookmark_id


@runtime_checkable
class BookmarkAccessor(Protocol):
    """Async repository operations used by the enrichment workers."""

    async def get_by_id(self, bookmark_id: str) -> Bookmark | None: ...

    async def update_snapshot_path(self, bookmark_id: str, path: str) -> None: ...

    async def update_cover_if_unset(self, bookmark_id: str, path: str) -> None: ...

    async def update_indexed_status(self, bookmark_id: str, indexed: bool) -> None: ...

    async def mark_duplicate(self, bookmark_id: str) -> None: ...

    async def mark_broken(self, bookmark_id: str, broken: bool) -> None: ...

    async def list_for_user(self, user_id: str) -> Sequence[Bookmark]:
        """Return the user's bookmarks ordered by creation time, oldest first."""
        ...

    async def list_all(self) -> Sequence[Bookmark]:
        """Return every bookmark ordered by owner, then creation time."""
        ...


def load_accessor(spec: str) -> BookmarkAccessor:
    """Instantiate an accessor from a ``module:factory`` import path."""

    if not spec or ":" not in spec:
        raise ValueError("BOOKMARK_ACCESSOR must look like 'package.module:factory'")
    module_name, attr = spec.split(":", 1)
    module = importlib.import_module(module_name)
    factory: Callable[[], BookmarkAccessor] = getattr(module, attr)
    accessor = factory()
    if not isinstance(accessor, BookmarkAccessor):
        raise TypeError(f"{spec} did not produce a BookmarkAccessor")
    return accessor

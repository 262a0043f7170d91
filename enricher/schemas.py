"""Pydantic job payloads and search documents shared across workers."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, Field


class ContentType(str, Enum):
    """Bookmark content categories; drives text extraction."""

    ARTICLE = "article"
    VIDEO = "video"
    IMAGE = "image"
    FILE = "file"
    DOCUMENT = "document"


class SubscriptionTier(str, Enum):
    FREE = "free"
    PRO = "pro"

    @property
    def includes_snapshots(self) -> bool:
        return self is SubscriptionTier.PRO


class MaintenanceTask(str, Enum):
    DUPLICATE_DETECTION = "duplicate-detection"
    BROKEN_LINK_SCAN = "broken-link-scan"


class SnapshotJob(BaseModel):
    """Payload submitted by the API when an eligible user saves a bookmark."""

    bookmark_id: str
    url: str = Field(description="URL to render and capture")
    user_id: str
    user_tier: SubscriptionTier = Field(description="Subscription tier of the owning user")


class IndexJob(BaseModel):
    """Payload submitted by the snapshot worker once blobs are stored."""

    bookmark_id: str
    snapshot_path: str | None = Field(
        default=None, description="Bucket-qualified snapshot object reference"
    )
    type: ContentType = ContentType.ARTICLE


class MaintenanceJob(BaseModel):
    """Scheduled or on-demand maintenance run, optionally scoped to one user."""

    type: MaintenanceTask
    user_id: str | None = Field(default=None, description="Absent means all users")


class SearchDocument(BaseModel):
    """Denormalized bookmark projection stored in the search engine."""

    id: str
    owner_id: str
    collection_id: str | None = None
    title: str
    url: str
    domain: str
    excerpt: str | None = None
    content: str | None = None
    tags: list[str] = Field(default_factory=list)
    type: ContentType
    created_at: int = Field(ge=0, description="Epoch seconds")
    updated_at: int = Field(ge=0, description="Epoch seconds")
    has_snapshot: bool = False
    highlights_text: str | None = None

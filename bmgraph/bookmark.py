"""Bookmark and content-image records, and the bookmark status machine.

A bookmark moves through the ingestion pipeline one stage at a time:

    PENDING -> MARKDOWN_READY -> CONTENT_READY -> CHUNKS_READY -> DONE

FAILED is reachable from every non-terminal status. DONE and FAILED are
terminal. Every status write goes through `check_transition`, which rejects
anything not listed in `ALLOWED_TRANSITIONS`.
"""

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field

from bmgraph.errors import InvalidStatusTransition


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BookmarkStatus(str, Enum):
    """Processing status of a bookmark."""

    PENDING = "PENDING"
    """Newly created by the route layer, waiting for processing."""

    MARKDOWN_READY = "MARKDOWN_READY"
    """Page fetched (or pre-extracted content accepted) and markdown stored."""

    CONTENT_READY = "CONTENT_READY"
    """Summary stored and text-sourced entities merged into the catalog."""

    CHUNKS_READY = "CHUNKS_READY"
    """Chunks created by the chunking collaborator."""

    DONE = "DONE"
    """Chunk embeddings complete. Image entities may still attach later."""

    FAILED = "FAILED"
    """Processing failed permanently; see ``error_message``."""

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({BookmarkStatus.DONE, BookmarkStatus.FAILED})

ALLOWED_TRANSITIONS: dict[BookmarkStatus, frozenset[BookmarkStatus]] = {
    BookmarkStatus.PENDING: frozenset({BookmarkStatus.MARKDOWN_READY, BookmarkStatus.FAILED}),
    BookmarkStatus.MARKDOWN_READY: frozenset({BookmarkStatus.CONTENT_READY, BookmarkStatus.FAILED}),
    BookmarkStatus.CONTENT_READY: frozenset({BookmarkStatus.CHUNKS_READY, BookmarkStatus.FAILED}),
    BookmarkStatus.CHUNKS_READY: frozenset({BookmarkStatus.DONE, BookmarkStatus.FAILED}),
    BookmarkStatus.DONE: frozenset(),
    BookmarkStatus.FAILED: frozenset(),
}


def can_transition(current: BookmarkStatus, target: BookmarkStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def check_transition(current: BookmarkStatus, target: BookmarkStatus) -> None:
    """Raise InvalidStatusTransition unless ``current -> target`` is allowed."""
    if not can_transition(current, target):
        raise InvalidStatusTransition(current.value, target.value)


class Bookmark(BaseModel, frozen=True):
    """One saved URL for one user. (user_id, url) is unique."""

    id: str = Field(description="Bookmark identifier.")
    user_id: str = Field(description="Owning user.")
    url: str = Field(description="The saved URL.")
    title: str | None = Field(default=None, description="Page title, once extracted.")
    description: str | None = Field(default=None, description="Page meta description.")
    favicon: str | None = Field(default=None, description="Absolute favicon URL.")
    og_image: str | None = Field(default=None, description="Open Graph image URL.")
    summary: str | None = Field(default=None, description="AI summary of the page.")
    markdown: str | None = Field(default=None, description="Readable page content as markdown.")
    status: BookmarkStatus = Field(default=BookmarkStatus.PENDING)
    error_message: str | None = Field(default=None, description="Why processing failed, when FAILED.")
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class ContentImageStatus(str, Enum):
    """Lifecycle of one image found in a bookmark's content."""

    PENDING = "PENDING"
    QUEUED = "QUEUED"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


class ContentImage(BaseModel, frozen=True):
    """An image discovered in a bookmark, scanned independently for entities."""

    id: str
    bookmark_id: str
    url: str
    alt_text: str | None = None
    title: str | None = None
    nearby_text: str | None = None
    position: int = Field(ge=0)
    url_domain: str | None = None
    heuristic_score: float | None = Field(default=None, ge=0.0, le=1.0)
    estimated_type: str | None = None
    status: ContentImageStatus = ContentImageStatus.PENDING
    error_message: str | None = None
    extracted: dict | None = Field(
        default=None,
        description="Serialized ImageExtractionResult once processed.",
    )
    processed_at: datetime | None = None
    created_at: datetime = Field(default_factory=utcnow)

"""Repository interfaces consumed by the ingestion pipeline.

The relational store is an external collaborator; the pipeline only relies
on these async interfaces. Two guarantees matter to callers:

- Inserts that would violate a uniqueness constraint raise
  `bmgraph.errors.DuplicateKeyError` instead of silently overwriting. The
  catalog merger depends on this to resolve concurrent inserts without
  in-process locking (workers may run in separate processes).
- Status writes go through `update_status`, which enforces the bookmark
  transition table.

Uniqueness constraints:
    - bookmarks: (user_id, url)
    - entities: (user_id, type, normalized_name)
    - entity-bookmark links: (entity_id, bookmark_id)
    - content images: (bookmark_id, position)
"""

from abc import ABC, abstractmethod
from typing import Any, Sequence

from bmgraph.bookmark import Bookmark, BookmarkStatus, ContentImage
from bmgraph.entity import Entity, EntityBookmarkLink, EntityType


class BookmarkStorageInterface(ABC):
    """Abstract interface for bookmark persistence."""

    @abstractmethod
    async def add(self, bookmark: Bookmark) -> str:
        """Store a new bookmark and return its ID.

        Raises:
            DuplicateKeyError: If the ID or (user_id, url) already exists.
        """

    @abstractmethod
    async def get(self, bookmark_id: str) -> Bookmark | None:
        """Retrieve a bookmark by ID, or None if not found."""

    @abstractmethod
    async def find_by_user_url(self, user_id: str, url: str) -> Bookmark | None:
        """Find a user's bookmark for a URL."""

    @abstractmethod
    async def update(self, bookmark_id: str, **fields: Any) -> Bookmark | None:
        """Update content fields (title, markdown, summary, ...).

        ``status`` cannot be changed here; use `update_status`. Returns the
        updated bookmark, or None if it does not exist.
        """

    @abstractmethod
    async def update_status(
        self,
        bookmark_id: str,
        status: BookmarkStatus,
        error_message: str | None = None,
        expected: BookmarkStatus | None = None,
    ) -> Bookmark | None:
        """Move a bookmark to a new status.

        Returns the updated bookmark, or None if it does not exist.

        With ``expected`` set the write is a compare-and-set: it only happens
        while the stored status still equals ``expected``, and None is
        returned (nothing written) when it does not.

        Raises:
            InvalidStatusTransition: If the transition is not allowed.
        """


class EntityStorageInterface(ABC):
    """Abstract interface for the per-user entity catalog."""

    @abstractmethod
    async def add(self, entity: Entity) -> str:
        """Insert a new entity and return its ID.

        Raises:
            DuplicateKeyError: If (user_id, type, normalized_name) exists.
        """

    @abstractmethod
    async def get(self, entity_id: str) -> Entity | None:
        """Retrieve an entity by ID."""

    @abstractmethod
    async def find_by_normalized_name(
        self,
        user_id: str,
        entity_type: EntityType,
        normalized_name: str,
    ) -> Entity | None:
        """Look up the entity for a dedupe key."""

    @abstractmethod
    async def list_for_user(self, user_id: str, entity_type: EntityType | None = None) -> list[Entity]:
        """List a user's entities, optionally filtered by type."""

    @abstractmethod
    async def count(self) -> int:
        """Return total number of stored entities."""


class EntityLinkStorageInterface(ABC):
    """Abstract interface for entity-bookmark links."""

    @abstractmethod
    async def add(self, link: EntityBookmarkLink) -> None:
        """Insert a link.

        Raises:
            DuplicateKeyError: If (entity_id, bookmark_id) exists.
        """

    @abstractmethod
    async def get(self, entity_id: str, bookmark_id: str) -> EntityBookmarkLink | None:
        """Retrieve the link for a pair, or None."""

    @abstractmethod
    async def list_for_bookmark(self, bookmark_id: str) -> list[EntityBookmarkLink]:
        """All links recorded for a bookmark."""

    @abstractmethod
    async def count(self) -> int:
        """Return total number of stored links."""


class ContentImageStorageInterface(ABC):
    """Abstract interface for images discovered in bookmark content."""

    @abstractmethod
    async def add_many(self, images: Sequence[ContentImage]) -> list[ContentImage]:
        """Insert images and return them in input order."""

    @abstractmethod
    async def get(self, image_id: str) -> ContentImage | None:
        """Retrieve an image by ID."""

    @abstractmethod
    async def list_for_bookmark(self, bookmark_id: str) -> list[ContentImage]:
        """Images of a bookmark ordered by position."""

    @abstractmethod
    async def update(self, image_id: str, **fields: Any) -> ContentImage | None:
        """Update fields of an image; None if it does not exist."""

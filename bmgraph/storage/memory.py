"""In-memory storage implementations for testing and development.

Dictionary-based implementations of the repository interfaces. They enforce
the same uniqueness constraints as the SQL backend, raising
`DuplicateKeyError` on conflicting inserts, so the merger's race handling
can be exercised without a database.

**Not recommended for production**: nothing is persisted and the stores are
shared only within one process.
"""

from typing import Any, Sequence

from bmgraph.bookmark import Bookmark, BookmarkStatus, ContentImage, check_transition, utcnow
from bmgraph.entity import Entity, EntityBookmarkLink, EntityType
from bmgraph.errors import DuplicateKeyError
from bmgraph.storage.interfaces import (
    BookmarkStorageInterface,
    ContentImageStorageInterface,
    EntityLinkStorageInterface,
    EntityStorageInterface,
)


class InMemoryBookmarkStorage(BookmarkStorageInterface):
    """Bookmarks keyed by ID, with a secondary (user_id, url) index.

    Example:
        ```python
        storage = InMemoryBookmarkStorage()
        await storage.add(Bookmark(id="b1", user_id="u1", url="https://example.com"))
        await storage.update_status("b1", BookmarkStatus.MARKDOWN_READY)
        ```
    """

    def __init__(self) -> None:
        self._bookmarks: dict[str, Bookmark] = {}
        self._by_user_url: dict[tuple[str, str], str] = {}

    async def add(self, bookmark: Bookmark) -> str:
        key = (bookmark.user_id, bookmark.url)
        if bookmark.id in self._bookmarks:
            raise DuplicateKeyError("bookmarks", (bookmark.id,))
        if key in self._by_user_url:
            raise DuplicateKeyError("bookmarks", key)
        self._bookmarks[bookmark.id] = bookmark
        self._by_user_url[key] = bookmark.id
        return bookmark.id

    async def get(self, bookmark_id: str) -> Bookmark | None:
        return self._bookmarks.get(bookmark_id)

    async def find_by_user_url(self, user_id: str, url: str) -> Bookmark | None:
        bookmark_id = self._by_user_url.get((user_id, url))
        return self._bookmarks.get(bookmark_id) if bookmark_id else None

    async def update(self, bookmark_id: str, **fields: Any) -> Bookmark | None:
        if "status" in fields:
            raise ValueError("Use update_status() to change a bookmark's status")
        bookmark = self._bookmarks.get(bookmark_id)
        if bookmark is None:
            return None
        updated = bookmark.model_copy(update={**fields, "updated_at": utcnow()})
        self._bookmarks[bookmark_id] = updated
        return updated

    async def update_status(
        self,
        bookmark_id: str,
        status: BookmarkStatus,
        error_message: str | None = None,
        expected: BookmarkStatus | None = None,
    ) -> Bookmark | None:
        bookmark = self._bookmarks.get(bookmark_id)
        if bookmark is None:
            return None
        if expected is not None and bookmark.status is not expected:
            return None
        check_transition(bookmark.status, status)
        updated = bookmark.model_copy(update={"status": status, "error_message": error_message, "updated_at": utcnow()})
        self._bookmarks[bookmark_id] = updated
        return updated


class InMemoryEntityStorage(EntityStorageInterface):
    """Per-user entity catalog keyed by (user_id, type, normalized_name)."""

    def __init__(self) -> None:
        self._entities: dict[str, Entity] = {}
        self._by_key: dict[tuple[str, EntityType, str], str] = {}

    async def add(self, entity: Entity) -> str:
        key = (entity.user_id, entity.type, entity.normalized_name)
        if key in self._by_key:
            raise DuplicateKeyError("entities", key)
        if entity.id in self._entities:
            raise DuplicateKeyError("entities", (entity.id,))
        self._entities[entity.id] = entity
        self._by_key[key] = entity.id
        return entity.id

    async def get(self, entity_id: str) -> Entity | None:
        return self._entities.get(entity_id)

    async def find_by_normalized_name(
        self,
        user_id: str,
        entity_type: EntityType,
        normalized_name: str,
    ) -> Entity | None:
        entity_id = self._by_key.get((user_id, entity_type, normalized_name))
        return self._entities.get(entity_id) if entity_id else None

    async def list_for_user(self, user_id: str, entity_type: EntityType | None = None) -> list[Entity]:
        return [
            entity
            for entity in self._entities.values()
            if entity.user_id == user_id and (entity_type is None or entity.type == entity_type)
        ]

    async def count(self) -> int:
        return len(self._entities)


class InMemoryEntityLinkStorage(EntityLinkStorageInterface):
    """Entity-bookmark links keyed by (entity_id, bookmark_id)."""

    def __init__(self) -> None:
        self._links: dict[tuple[str, str], EntityBookmarkLink] = {}

    async def add(self, link: EntityBookmarkLink) -> None:
        key = (link.entity_id, link.bookmark_id)
        if key in self._links:
            raise DuplicateKeyError("entity_bookmarks", key)
        self._links[key] = link

    async def get(self, entity_id: str, bookmark_id: str) -> EntityBookmarkLink | None:
        return self._links.get((entity_id, bookmark_id))

    async def list_for_bookmark(self, bookmark_id: str) -> list[EntityBookmarkLink]:
        return [link for link in self._links.values() if link.bookmark_id == bookmark_id]

    async def count(self) -> int:
        return len(self._links)


class InMemoryContentImageStorage(ContentImageStorageInterface):
    """Content images keyed by ID."""

    def __init__(self) -> None:
        self._images: dict[str, ContentImage] = {}

    async def add_many(self, images: Sequence[ContentImage]) -> list[ContentImage]:
        taken = {(image.bookmark_id, image.position) for image in self._images.values()}
        for image in images:
            if image.id in self._images or (image.bookmark_id, image.position) in taken:
                raise DuplicateKeyError("content_images", (image.bookmark_id, image.position))
            taken.add((image.bookmark_id, image.position))
        for image in images:
            self._images[image.id] = image
        return list(images)

    async def get(self, image_id: str) -> ContentImage | None:
        return self._images.get(image_id)

    async def list_for_bookmark(self, bookmark_id: str) -> list[ContentImage]:
        images = [image for image in self._images.values() if image.bookmark_id == bookmark_id]
        return sorted(images, key=lambda image: image.position)

    async def update(self, image_id: str, **fields: Any) -> ContentImage | None:
        image = self._images.get(image_id)
        if image is None:
            return None
        updated = image.model_copy(update=fields)
        self._images[image_id] = updated
        return updated

"""Repository interfaces and their in-memory and SQL backends."""

from bmgraph.storage.interfaces import (
    BookmarkStorageInterface,
    ContentImageStorageInterface,
    EntityLinkStorageInterface,
    EntityStorageInterface,
)
from bmgraph.storage.memory import (
    InMemoryBookmarkStorage,
    InMemoryContentImageStorage,
    InMemoryEntityLinkStorage,
    InMemoryEntityStorage,
)

__all__ = [
    "BookmarkStorageInterface",
    "ContentImageStorageInterface",
    "EntityLinkStorageInterface",
    "EntityStorageInterface",
    "InMemoryBookmarkStorage",
    "InMemoryContentImageStorage",
    "InMemoryEntityLinkStorage",
    "InMemoryEntityStorage",
]

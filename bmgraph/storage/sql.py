"""
SQL implementation of the repository interfaces, built on SQLModel.

All four repositories share one engine. Each call opens its own session and
runs on a worker thread (``asyncio.to_thread``) so the blocking driver never
stalls the event loop. Unique-constraint violations surface as
`DuplicateKeyError` after the session is rolled back.

Example:
    ```python
    db = SQLStorage("sqlite:///./bmgraph.db")
    bookmarks = db.bookmarks
    await bookmarks.add(Bookmark(id="b1", user_id="u1", url="https://example.com"))
    ```
"""

import asyncio
import logging
from enum import Enum
from typing import Any, Callable, Sequence, TypeVar

from pydantic import BaseModel
from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine, select

from bmgraph.bookmark import Bookmark, BookmarkStatus, ContentImage, check_transition, utcnow
from bmgraph.entity import Entity, EntityBookmarkLink, EntityType
from bmgraph.errors import DuplicateKeyError
from bmgraph.storage.interfaces import (
    BookmarkStorageInterface,
    ContentImageStorageInterface,
    EntityLinkStorageInterface,
    EntityStorageInterface,
)
from bmgraph.storage.tables import BookmarkRow, ContentImageRow, EntityBookmarkRow, EntityRow

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _row_data(model: BaseModel) -> dict[str, Any]:
    """Dump a domain model into column values (enums stored by value)."""
    data = model.model_dump()
    return {key: value.value if isinstance(value, Enum) else value for key, value in data.items()}


def _column_value(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, BaseModel):
        return value.model_dump()
    return value


def make_engine(database_url: str):
    """Create an engine; in-memory SQLite gets a single shared connection."""
    if database_url in ("sqlite://", "sqlite:///:memory:"):
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    if database_url.startswith("sqlite"):
        return create_engine(database_url, connect_args={"check_same_thread": False})
    return create_engine(database_url)


class _SQLRepository:
    """Shared session handling for the SQL repositories."""

    def __init__(self, engine) -> None:
        self.engine = engine

    async def _run(self, fn: Callable[[Session], T]) -> T:
        def _in_session() -> T:
            with Session(self.engine) as session:
                return fn(session)

        return await asyncio.to_thread(_in_session)

    async def _insert(self, row: SQLModel, table: str, key: tuple[Any, ...]) -> None:
        def _add(session: Session) -> None:
            session.add(row)
            try:
                session.commit()
            except IntegrityError as e:
                session.rollback()
                raise DuplicateKeyError(table, key) from e

        await self._run(_add)


class SQLBookmarkStorage(_SQLRepository, BookmarkStorageInterface):
    """Bookmarks table."""

    async def add(self, bookmark: Bookmark) -> str:
        await self._insert(BookmarkRow(**_row_data(bookmark)), "bookmarks", (bookmark.user_id, bookmark.url))
        return bookmark.id

    async def get(self, bookmark_id: str) -> Bookmark | None:
        row = await self._run(lambda session: session.get(BookmarkRow, bookmark_id))
        return Bookmark.model_validate(row.model_dump()) if row else None

    async def find_by_user_url(self, user_id: str, url: str) -> Bookmark | None:
        statement = select(BookmarkRow).where(BookmarkRow.user_id == user_id, BookmarkRow.url == url)
        row = await self._run(lambda session: session.exec(statement).first())
        return Bookmark.model_validate(row.model_dump()) if row else None

    async def _apply(self, bookmark_id: str, mutate: Callable[[BookmarkRow], None]) -> Bookmark | None:
        def _update(session: Session) -> Bookmark | None:
            row = session.get(BookmarkRow, bookmark_id)
            if row is None:
                return None
            mutate(row)
            row.updated_at = utcnow()
            session.add(row)
            session.commit()
            session.refresh(row)
            return Bookmark.model_validate(row.model_dump())

        return await self._run(_update)

    async def update(self, bookmark_id: str, **fields: Any) -> Bookmark | None:
        if "status" in fields:
            raise ValueError("Use update_status() to change a bookmark's status")

        def _set_fields(row: BookmarkRow) -> None:
            for name, value in fields.items():
                setattr(row, name, _column_value(value))

        return await self._apply(bookmark_id, _set_fields)

    async def update_status(
        self,
        bookmark_id: str,
        status: BookmarkStatus,
        error_message: str | None = None,
        expected: BookmarkStatus | None = None,
    ) -> Bookmark | None:
        if expected is not None:
            return await self._compare_and_set_status(bookmark_id, expected, status, error_message)

        def _set_status(row: BookmarkRow) -> None:
            check_transition(BookmarkStatus(row.status), status)
            row.status = status.value
            row.error_message = error_message

        return await self._apply(bookmark_id, _set_status)

    async def _compare_and_set_status(
        self,
        bookmark_id: str,
        expected: BookmarkStatus,
        status: BookmarkStatus,
        error_message: str | None,
    ) -> Bookmark | None:
        check_transition(expected, status)
        statement = (
            update(BookmarkRow)
            .where(BookmarkRow.id == bookmark_id, BookmarkRow.status == expected.value)
            .values(status=status.value, error_message=error_message, updated_at=utcnow())
        )

        def _swap(session: Session) -> Bookmark | None:
            result = session.exec(statement)
            session.commit()
            if result.rowcount == 0:
                return None
            row = session.get(BookmarkRow, bookmark_id)
            return Bookmark.model_validate(row.model_dump()) if row else None

        return await self._run(_swap)


class SQLEntityStorage(_SQLRepository, EntityStorageInterface):
    """Entities table."""

    async def add(self, entity: Entity) -> str:
        key = (entity.user_id, entity.type.value, entity.normalized_name)
        await self._insert(EntityRow(**_row_data(entity)), "entities", key)
        return entity.id

    async def get(self, entity_id: str) -> Entity | None:
        row = await self._run(lambda session: session.get(EntityRow, entity_id))
        return Entity.model_validate(row.model_dump()) if row else None

    async def find_by_normalized_name(
        self,
        user_id: str,
        entity_type: EntityType,
        normalized_name: str,
    ) -> Entity | None:
        statement = select(EntityRow).where(
            EntityRow.user_id == user_id,
            EntityRow.type == entity_type.value,
            EntityRow.normalized_name == normalized_name,
        )
        row = await self._run(lambda session: session.exec(statement).first())
        return Entity.model_validate(row.model_dump()) if row else None

    async def list_for_user(self, user_id: str, entity_type: EntityType | None = None) -> list[Entity]:
        statement = select(EntityRow).where(EntityRow.user_id == user_id)
        if entity_type is not None:
            statement = statement.where(EntityRow.type == entity_type.value)
        rows = await self._run(lambda session: session.exec(statement.order_by(EntityRow.created_at)).all())
        return [Entity.model_validate(row.model_dump()) for row in rows]

    async def count(self) -> int:
        return await self._run(lambda session: session.exec(select(func.count()).select_from(EntityRow)).one())


class SQLEntityLinkStorage(_SQLRepository, EntityLinkStorageInterface):
    """Entity-bookmark links table; the composite primary key is the unique key."""

    async def add(self, link: EntityBookmarkLink) -> None:
        await self._insert(
            EntityBookmarkRow(**_row_data(link)),
            "entity_bookmarks",
            (link.entity_id, link.bookmark_id),
        )

    async def get(self, entity_id: str, bookmark_id: str) -> EntityBookmarkLink | None:
        row = await self._run(lambda session: session.get(EntityBookmarkRow, (entity_id, bookmark_id)))
        return EntityBookmarkLink.model_validate(row.model_dump()) if row else None

    async def list_for_bookmark(self, bookmark_id: str) -> list[EntityBookmarkLink]:
        statement = select(EntityBookmarkRow).where(EntityBookmarkRow.bookmark_id == bookmark_id)
        rows = await self._run(lambda session: session.exec(statement.order_by(EntityBookmarkRow.created_at)).all())
        return [EntityBookmarkLink.model_validate(row.model_dump()) for row in rows]

    async def count(self) -> int:
        return await self._run(lambda session: session.exec(select(func.count()).select_from(EntityBookmarkRow)).one())


class SQLContentImageStorage(_SQLRepository, ContentImageStorageInterface):
    """Content images table."""

    async def add_many(self, images: Sequence[ContentImage]) -> list[ContentImage]:
        def _add_all(session: Session) -> None:
            session.add_all([ContentImageRow(**_row_data(image)) for image in images])
            try:
                session.commit()
            except IntegrityError as e:
                session.rollback()
                raise DuplicateKeyError("content_images", tuple(image.id for image in images)) from e

        await self._run(_add_all)
        return list(images)

    async def get(self, image_id: str) -> ContentImage | None:
        row = await self._run(lambda session: session.get(ContentImageRow, image_id))
        return ContentImage.model_validate(row.model_dump()) if row else None

    async def list_for_bookmark(self, bookmark_id: str) -> list[ContentImage]:
        statement = (
            select(ContentImageRow).where(ContentImageRow.bookmark_id == bookmark_id).order_by(ContentImageRow.position)
        )
        rows = await self._run(lambda session: session.exec(statement).all())
        return [ContentImage.model_validate(row.model_dump()) for row in rows]

    async def update(self, image_id: str, **fields: Any) -> ContentImage | None:
        def _update(session: Session) -> ContentImage | None:
            row = session.get(ContentImageRow, image_id)
            if row is None:
                return None
            for name, value in fields.items():
                setattr(row, name, _column_value(value))
            session.add(row)
            session.commit()
            session.refresh(row)
            return ContentImage.model_validate(row.model_dump())

        return await self._run(_update)


class SQLStorage:
    """Creates the schema and hands out repositories bound to one engine."""

    def __init__(self, database_url: str) -> None:
        self.engine = make_engine(database_url)
        SQLModel.metadata.create_all(self.engine)
        logger.debug("SQL storage ready at %s", self.engine.url.render_as_string(hide_password=True))
        self.bookmarks = SQLBookmarkStorage(self.engine)
        self.entities = SQLEntityStorage(self.engine)
        self.links = SQLEntityLinkStorage(self.engine)
        self.images = SQLContentImageStorage(self.engine)

    def close(self) -> None:
        self.engine.dispose()

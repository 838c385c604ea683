"""
SQLModel schemas for database persistence.

Table rows mirror the frozen domain models; `bmgraph.storage.sql` converts
between the two. Uniqueness constraints are declared here so that the
database, not the application, decides which concurrent insert wins.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, Column, UniqueConstraint
from sqlmodel import Field, SQLModel


class BookmarkRow(SQLModel, table=True):
    """One saved URL for one user."""

    __tablename__ = "bookmarks"
    __table_args__ = (UniqueConstraint("user_id", "url", name="uq_bookmarks_user_url"),)

    id: str = Field(primary_key=True)
    user_id: str = Field(index=True)
    url: str = Field()
    title: Optional[str] = Field(default=None)
    description: Optional[str] = Field(default=None)
    favicon: Optional[str] = Field(default=None)
    og_image: Optional[str] = Field(default=None)
    summary: Optional[str] = Field(default=None)
    markdown: Optional[str] = Field(default=None)
    status: str = Field(default="PENDING", index=True)
    error_message: Optional[str] = Field(default=None)
    created_at: datetime = Field()
    updated_at: datetime = Field()


class EntityRow(SQLModel, table=True):
    """A catalog entity, unique per (user_id, type, normalized_name)."""

    __tablename__ = "entities"
    __table_args__ = (UniqueConstraint("user_id", "type", "normalized_name", name="uq_entities_user_type_name"),)

    id: str = Field(primary_key=True)
    user_id: str = Field(index=True)
    type: str = Field()
    name: str = Field()
    normalized_name: str = Field()
    status: str = Field(default="PENDING")
    created_at: datetime = Field()


class EntityBookmarkRow(SQLModel, table=True):
    """Link between an entity and a bookmark it was found in."""

    __tablename__ = "entity_bookmarks"

    entity_id: str = Field(primary_key=True)
    bookmark_id: str = Field(primary_key=True, index=True)
    confidence: float = Field()
    source: str = Field(description="text | image")
    source_image_id: Optional[str] = Field(default=None)
    context_snippet: Optional[str] = Field(default=None)
    extraction_hints: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    created_at: datetime = Field()


class ContentImageRow(SQLModel, table=True):
    """An image discovered in a bookmark's content."""

    __tablename__ = "content_images"
    __table_args__ = (UniqueConstraint("bookmark_id", "position", name="uq_content_images_bookmark_position"),)

    id: str = Field(primary_key=True)
    bookmark_id: str = Field(index=True)
    url: str = Field()
    alt_text: Optional[str] = Field(default=None)
    title: Optional[str] = Field(default=None)
    nearby_text: Optional[str] = Field(default=None)
    position: int = Field()
    url_domain: Optional[str] = Field(default=None)
    heuristic_score: Optional[float] = Field(default=None)
    estimated_type: Optional[str] = Field(default=None)
    status: str = Field(default="PENDING")
    error_message: Optional[str] = Field(default=None)
    extracted: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    processed_at: Optional[datetime] = Field(default=None)
    created_at: datetime = Field()

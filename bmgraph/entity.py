"""Catalog entities, bookmark links, and transient extraction results.

**Entity lifecycle in this pipeline:**

1. **Extraction**: an extraction stage (page text or an image) produces
   transient `ExtractedEntity` / `ImageExtractedEntity` candidates with a
   confidence score.

2. **Merge**: the catalog merger normalizes each candidate's name, finds or
   creates the per-user `Entity` keyed by (user_id, type, normalized_name),
   and records an `EntityBookmarkLink` carrying confidence and provenance.

3. **Enrichment**: metadata lookup against external catalogs happens
   elsewhere; entities are created here with status PENDING and never
   deleted.
"""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field, model_validator

from bmgraph.bookmark import utcnow

MIN_ENTITY_CONFIDENCE = 0.5
"""Confidence floor below which a candidate never reaches the catalog."""


class EntityType(str, Enum):
    """Kinds of creative works tracked in the catalog."""

    BOOK = "book"
    MOVIE = "movie"
    TV_SHOW = "tv_show"


class EntityStatus(str, Enum):
    """Enrichment status of a catalog entity.

    Only PENDING is written by the ingestion pipeline.
    """

    PENDING = "PENDING"
    CANDIDATES_FOUND = "CANDIDATES_FOUND"
    ENRICHED = "ENRICHED"
    AMBIGUOUS = "AMBIGUOUS"
    FAILED = "FAILED"


class LinkSource(str, Enum):
    """Where the evidence for an entity-bookmark link came from."""

    TEXT = "text"
    IMAGE = "image"


class EntityHints(BaseModel, frozen=True):
    """Disambiguation hints an extraction model may return."""

    author: str | None = None
    director: str | None = None
    year: int | None = None


class ExtractionHints(BaseModel, frozen=True):
    """Hints stored on a link.

    ``language`` has no producer: it is always None.
    """

    year: int | None = None
    author: str | None = None
    director: str | None = None
    language: str | None = None

    @classmethod
    def from_hints(cls, hints: EntityHints | None) -> "ExtractionHints | None":
        """Collapse extraction hints for storage; None when nothing is known."""
        if hints is None:
            return None
        stored = cls(year=hints.year, author=hints.author or None, director=hints.director or None)
        if stored.year is None and stored.author is None and stored.director is None:
            return None
        return stored


class EntityCandidate(BaseModel, frozen=True):
    """Common shape of every extraction result before it is merged."""

    type: EntityType = Field(description="book, movie or tv_show.")
    name: str = Field(description="Title as it appears in the source.")
    confidence: float = Field(ge=0.0, le=1.0, description="Extraction confidence.")
    hints: EntityHints | None = Field(default=None, description="Optional disambiguation hints.")


class ExtractedEntity(EntityCandidate, frozen=True):
    """An entity found in page text."""

    context_snippet: str | None = Field(
        default=None,
        description="About 100 characters of text around the mention.",
    )


class ImageExtractedEntity(EntityCandidate, frozen=True):
    """An entity depicted in an image (cover, poster, case...)."""


class ImageExtractionResult(BaseModel, frozen=True):
    """Outcome of scanning one image."""

    entities: tuple[ImageExtractedEntity, ...] = ()
    image_description: str | None = None


class Entity(BaseModel, frozen=True):
    """A distinct work in one user's catalog.

    (user_id, type, normalized_name) is unique.
    """

    id: str
    user_id: str
    type: EntityType
    name: str = Field(description="Display name, as first seen.")
    normalized_name: str = Field(description="Dedupe key from normalize_entity_name.")
    status: EntityStatus = EntityStatus.PENDING
    created_at: datetime = Field(default_factory=utcnow)


class EntityBookmarkLink(BaseModel, frozen=True):
    """Evidence that an entity was found in a bookmark.

    (entity_id, bookmark_id) is unique; the first link written wins.
    """

    entity_id: str
    bookmark_id: str
    confidence: float = Field(ge=0.0, le=1.0)
    source: LinkSource
    source_image_id: str | None = None
    context_snippet: str | None = None
    extraction_hints: ExtractionHints | None = None
    created_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def _image_id_only_for_image_source(self) -> "EntityBookmarkLink":
        if self.source is LinkSource.TEXT and self.source_image_id is not None:
            raise ValueError("source_image_id is only valid for image-sourced links")
        return self

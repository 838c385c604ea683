"""Entity catalog merger.

Folds a batch of extracted entity candidates (from page text or from one
image) into a user's catalog and links each one to the bookmark it came
from. The merge is idempotent: replaying the same request creates and links
nothing new.

Concurrent workers may merge the same work at the same time. Instead of
locking, the merger inserts optimistically and relies on the storage
uniqueness constraints: an insert that loses the race raises
`DuplicateKeyError`, after which the merger re-reads the winning row and
carries on as though it had found it.
"""

import uuid

from pydantic import BaseModel, ConfigDict, Field, model_validator

from bmgraph.entity import (
    MIN_ENTITY_CONFIDENCE,
    Entity,
    EntityBookmarkLink,
    EntityCandidate,
    EntityStatus,
    ExtractedEntity,
    ExtractionHints,
    LinkSource,
)
from bmgraph.errors import DuplicateKeyError
from bmgraph.logging import get_logger
from bmgraph.normalize import normalize_entity_name
from bmgraph.storage.interfaces import EntityLinkStorageInterface, EntityStorageInterface

logger = get_logger(__name__)


class MergeRequest(BaseModel, frozen=True):
    """A batch of candidates found in one source of one bookmark."""

    user_id: str
    bookmark_id: str
    source: LinkSource
    source_image_id: str | None = Field(default=None, description="Set only for image-sourced batches.")
    entities: tuple[EntityCandidate, ...] = ()
    context_snippet: str | None = Field(
        default=None,
        description="Snippet stored on links whose entity carries none of its own.",
    )

    @model_validator(mode="after")
    def _image_id_matches_source(self) -> "MergeRequest":
        if self.source is LinkSource.TEXT and self.source_image_id is not None:
            raise ValueError("source_image_id is only valid for image-sourced merges")
        return self


class MergeResult(BaseModel, frozen=True):
    """Counts of catalog rows written by one merge."""

    created: int = Field(default=0, description="New entities inserted into the catalog.")
    linked: int = Field(default=0, description="New entity-bookmark links inserted.")


class EntityCatalogMerger(BaseModel):
    """Find-or-create catalog entities and link them to a bookmark.

    For each candidate, in order:

    1. Skip it when its confidence is below ``MIN_ENTITY_CONFIDENCE``.
    2. Normalize its name; skip it when nothing is left.
    3. Skip it when the same (type, normalized name) already appeared
       earlier in this batch.
    4. Look up the user's entity for that key, inserting a PENDING one if
       there is none. Only inserts that actually happen count as created.
    5. Skip it when the entity is already linked to the bookmark; otherwise
       insert the link and count it.

    "Already exists" is never an error.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    entity_storage: EntityStorageInterface
    link_storage: EntityLinkStorageInterface
    min_confidence: float = MIN_ENTITY_CONFIDENCE

    async def _find_or_create(
        self,
        request: MergeRequest,
        candidate: EntityCandidate,
        normalized: str,
    ) -> tuple[Entity, bool]:
        existing = await self.entity_storage.find_by_normalized_name(request.user_id, candidate.type, normalized)
        if existing is not None:
            return existing, False

        entity = Entity(
            id=str(uuid.uuid4()),
            user_id=request.user_id,
            type=candidate.type,
            name=candidate.name.strip(),
            normalized_name=normalized,
            status=EntityStatus.PENDING,
        )
        try:
            await self.entity_storage.add(entity)
        except DuplicateKeyError:
            winner = await self.entity_storage.find_by_normalized_name(request.user_id, candidate.type, normalized)
            if winner is None:
                raise
            logger.debug(f"Lost insert race for {candidate.type.value} '{normalized}'; using {winner.id}")
            return winner, False
        return entity, True

    async def _link(self, request: MergeRequest, entity: Entity, candidate: EntityCandidate) -> bool:
        if await self.link_storage.get(entity.id, request.bookmark_id) is not None:
            return False

        snippet = candidate.context_snippet if isinstance(candidate, ExtractedEntity) else None
        link = EntityBookmarkLink(
            entity_id=entity.id,
            bookmark_id=request.bookmark_id,
            confidence=candidate.confidence,
            source=request.source,
            source_image_id=request.source_image_id,
            context_snippet=snippet or request.context_snippet,
            extraction_hints=ExtractionHints.from_hints(candidate.hints),
        )
        try:
            await self.link_storage.add(link)
        except DuplicateKeyError:
            return False
        return True

    async def merge(self, request: MergeRequest) -> MergeResult:
        """Merge one batch of candidates; see the class docstring for the rules."""
        created = 0
        linked = 0
        seen: set[tuple[str, str]] = set()

        for candidate in request.entities:
            if candidate.confidence < self.min_confidence:
                continue

            normalized = normalize_entity_name(candidate.name)
            if not normalized:
                continue

            key = (candidate.type.value, normalized)
            if key in seen:
                continue
            seen.add(key)

            entity, was_created = await self._find_or_create(request, candidate, normalized)
            if was_created:
                created += 1

            if await self._link(request, entity, candidate):
                linked += 1

        result = MergeResult(created=created, linked=linked)
        if created or linked:
            logger.info(
                {
                    "message": f"Merged {request.source.value} entities for bookmark {request.bookmark_id}",
                    "created": created,
                    "linked": linked,
                    "source_image_id": request.source_image_id,
                },
                pprint=True,
            )
        return result

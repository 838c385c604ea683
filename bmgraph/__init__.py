"""bmgraph - bookmark ingestion and per-user entity catalog pipeline."""

from bmgraph.bookmark import Bookmark, BookmarkStatus, ContentImage, ContentImageStatus
from bmgraph.entity import (
    MIN_ENTITY_CONFIDENCE,
    Entity,
    EntityBookmarkLink,
    EntityStatus,
    EntityType,
    ExtractedEntity,
    ExtractionHints,
    ImageExtractedEntity,
    ImageExtractionResult,
    LinkSource,
)
from bmgraph.errors import HttpError, NonRetryableError, PipelineError, RetryableError, is_retryable
from bmgraph.ingest import BookmarkIngestionOrchestrator, IngestionOutcome, OutcomeStatus
from bmgraph.merge import EntityCatalogMerger, MergeRequest, MergeResult
from bmgraph.messages import BookmarkIngestionMessage, ImageEntityExtractionMessage, parse_message
from bmgraph.normalize import normalize_entity_name
from bmgraph.retry import RetryPolicy
from bmgraph.worker import QueueWorker

__version__ = "0.1.0"

__all__ = [
    "MIN_ENTITY_CONFIDENCE",
    "Bookmark",
    "BookmarkIngestionMessage",
    "BookmarkIngestionOrchestrator",
    "BookmarkStatus",
    "ContentImage",
    "ContentImageStatus",
    "Entity",
    "EntityBookmarkLink",
    "EntityCatalogMerger",
    "EntityStatus",
    "EntityType",
    "ExtractedEntity",
    "ExtractionHints",
    "HttpError",
    "ImageEntityExtractionMessage",
    "ImageExtractedEntity",
    "ImageExtractionResult",
    "IngestionOutcome",
    "LinkSource",
    "MergeRequest",
    "MergeResult",
    "NonRetryableError",
    "OutcomeStatus",
    "PipelineError",
    "QueueWorker",
    "RetryPolicy",
    "RetryableError",
    "is_retryable",
    "normalize_entity_name",
    "parse_message",
    "__version__",
]

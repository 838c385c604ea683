"""Bookmark ingestion orchestrator.

This module provides the `BookmarkIngestionOrchestrator`, which carries one
bookmark through the ingestion pipeline each time a queue message for it is
delivered:

**Stage table** (``from_status -> to_status: step``):
    1. PENDING -> MARKDOWN_READY: fetch the page (or accept content the
       client already extracted), store title and markdown, record the
       page's images and fan them out to the image queue
    2. MARKDOWN_READY -> CONTENT_READY: summarize, store the summary and
       merge the text entities into the user's catalog
    3. CONTENT_READY -> CHUNKS_READY: create chunks
    4. CHUNKS_READY -> DONE: embed chunks

A redelivered message resumes at the row matching the stored status and
reuses whatever earlier stages stored. Each status write is a
compare-and-set against the row's ``from_status``; when a concurrent
delivery of the same bookmark got there first, this one stops as skipped.

Failures are classified, never retried here. Retryable errors propagate
with the status untouched so the queue adapter can redeliver the message;
non-retryable errors mark the bookmark FAILED and the message is
acknowledged.

Image work items are handled independently by `handle_image_extraction`,
possibly after the bookmark is already DONE.

Example usage:
    ```python
    orchestrator = BookmarkIngestionOrchestrator(
        bookmark_storage=bookmarks,
        image_storage=images,
        merger=EntityCatalogMerger(entity_storage=entities, link_storage=links),
        content_extractor=HttpContentExtractor(),
        llm=OllamaLLMProvider(),
        image_extractor=ImageEntityExtractor(llm=vision_llm),
        image_queue=image_worker,
    )
    outcome = await orchestrator.handle_ingestion(message)
    ```
"""

import uuid
from enum import Enum
from typing import Any, Awaitable, Callable

from pydantic import BaseModel, ConfigDict, Field

from bmgraph.bookmark import Bookmark, BookmarkStatus, ContentImage, ContentImageStatus, utcnow
from bmgraph.entity import LinkSource
from bmgraph.errors import DuplicateKeyError, InvalidStatusTransition, error_message, is_retryable
from bmgraph.logging import PprintLogger, get_logger
from bmgraph.merge import EntityCatalogMerger, MergeRequest, MergeResult
from bmgraph.messages import BookmarkIngestionMessage, ImageEntityExtractionMessage, QueueMessage, parse_message
from bmgraph.pipeline.images import build_image_inventory, extract_domain, score_images
from bmgraph.pipeline.interfaces import (
    ChunkIndexerInterface,
    ContentExtractorInterface,
    ImageExtractorInterface,
    LLMProviderInterface,
    MessageQueueInterface,
    NoOpChunkIndexer,
)
from bmgraph.pipeline.summary import extract_summary_and_entities
from bmgraph.storage.interfaces import BookmarkStorageInterface, ContentImageStorageInterface

logger = get_logger(__name__)

STAGE_TABLE: tuple[tuple[BookmarkStatus, BookmarkStatus, str], ...] = (
    (BookmarkStatus.PENDING, BookmarkStatus.MARKDOWN_READY, "fetch"),
    (BookmarkStatus.MARKDOWN_READY, BookmarkStatus.CONTENT_READY, "summarize"),
    (BookmarkStatus.CONTENT_READY, BookmarkStatus.CHUNKS_READY, "chunk"),
    (BookmarkStatus.CHUNKS_READY, BookmarkStatus.DONE, "embed"),
)

_IMAGE_SKIP_STATUSES = frozenset(
    {ContentImageStatus.COMPLETED, ContentImageStatus.SKIPPED, ContentImageStatus.PROCESSING}
)


class OutcomeStatus(str, Enum):
    """How handling one ingestion message ended."""

    DONE = "done"
    SKIPPED = "skipped"
    FAILED = "failed"


class IngestionOutcome(BaseModel):
    """Result of handling one bookmark-ingestion message.

    Attributes:
        bookmark_id: The bookmark the message referred to.
        status: done, skipped (missing, already terminal, or moved on by a
            concurrent delivery of the same bookmark) or failed.
        final_status: Bookmark status after handling, when the bookmark exists.
        entities_created: Catalog entities created from the page text.
        entities_linked: Entity-bookmark links created from the page text.
        images_queued: Image work items sent to the image queue.
        error: Message stored on the bookmark when it failed.
    """

    model_config = {"frozen": True}

    bookmark_id: str
    status: OutcomeStatus
    final_status: BookmarkStatus | None = None
    entities_created: int = 0
    entities_linked: int = 0
    images_queued: int = 0
    error: str | None = None


class _StageProgress(BaseModel):
    entities_created: int = 0
    entities_linked: int = 0
    images_queued: int = 0
    superseded: bool = False


class BookmarkIngestionOrchestrator(BaseModel):
    """Runs the ingestion stage table for bookmark messages and handles image work items.

    Attributes:
        bookmark_storage: Persistence for bookmarks and their status.
        image_storage: Persistence for content images.
        merger: Folds extracted entities into the user's catalog.
        content_extractor: Fetches pages and converts them to markdown.
        llm: Provider for the summary and text entity call.
        image_extractor: Vision stage used by the image handler.
        chunk_indexer: Chunking and embedding collaborator.
        image_queue: Where image work items are sent; None disables fan-out.
        min_image_score: Images scoring below this are stored as SKIPPED
            and never sent.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    bookmark_storage: BookmarkStorageInterface
    image_storage: ContentImageStorageInterface
    merger: EntityCatalogMerger
    content_extractor: ContentExtractorInterface
    llm: LLMProviderInterface
    image_extractor: ImageExtractorInterface | None = None
    chunk_indexer: ChunkIndexerInterface = Field(default_factory=NoOpChunkIndexer)
    image_queue: MessageQueueInterface | None = None
    min_image_score: float = 0.0

    async def handle(self, body: Any) -> IngestionOutcome | MergeResult | None:
        """Queue handler: decode a raw payload and route it."""
        if isinstance(body, (BookmarkIngestionMessage, ImageEntityExtractionMessage)):
            message: QueueMessage = body
        else:
            message = parse_message(body)
        if isinstance(message, ImageEntityExtractionMessage):
            return await self.handle_image_extraction(message)
        return await self.handle_ingestion(message)

    # --- bookmark ingestion ---------------------------------------------

    async def handle_ingestion(self, message: BookmarkIngestionMessage) -> IngestionOutcome:
        """Advance one bookmark as far through the stage table as it will go.

        Raises:
            Exception: Any retryable failure, unchanged, so the queue adapter
                redelivers the message. Also InvalidStatusTransition, which
                signals a bug rather than a processing failure.
        """
        log = logger.bind(f"[ingestion] Bookmark {message.bookmark_id}:")
        bookmark = await self.bookmark_storage.get(message.bookmark_id)
        if bookmark is None:
            log.warning("not found, skipping")
            return IngestionOutcome(bookmark_id=message.bookmark_id, status=OutcomeStatus.SKIPPED)
        if bookmark.status.is_terminal:
            log.info(f"already {bookmark.status.value}, skipping")
            return IngestionOutcome(
                bookmark_id=bookmark.id,
                status=OutcomeStatus.SKIPPED,
                final_status=bookmark.status,
            )

        progress = _StageProgress()
        try:
            bookmark = await self._run_stages(message, bookmark, progress, log)
        except InvalidStatusTransition:
            raise
        except Exception as e:
            if is_retryable(e):
                log.warning(f"retryable failure ({type(e).__name__}): {e}")
                raise
            reason = error_message(e)
            log.error(f"failed permanently ({type(e).__name__}): {reason}")
            failed = await self._mark_failed(message.bookmark_id, reason)
            return IngestionOutcome(
                bookmark_id=message.bookmark_id,
                status=OutcomeStatus.FAILED,
                final_status=failed.status if failed else None,
                entities_created=progress.entities_created,
                entities_linked=progress.entities_linked,
                images_queued=progress.images_queued,
                error=reason,
            )

        if bookmark is None:
            log.warning("disappeared during processing")
            return IngestionOutcome(bookmark_id=message.bookmark_id, status=OutcomeStatus.SKIPPED)
        if progress.superseded:
            return IngestionOutcome(
                bookmark_id=bookmark.id,
                status=OutcomeStatus.SKIPPED,
                final_status=bookmark.status,
                entities_created=progress.entities_created,
                entities_linked=progress.entities_linked,
                images_queued=progress.images_queued,
            )

        log.info("ingestion complete")
        return IngestionOutcome(
            bookmark_id=bookmark.id,
            status=OutcomeStatus.DONE,
            final_status=bookmark.status,
            entities_created=progress.entities_created,
            entities_linked=progress.entities_linked,
            images_queued=progress.images_queued,
        )

    async def _run_stages(
        self,
        message: BookmarkIngestionMessage,
        bookmark: Bookmark,
        progress: _StageProgress,
        log: PprintLogger,
    ) -> Bookmark | None:
        steps: dict[str, Callable[..., Awaitable[Bookmark | None]]] = {
            "fetch": self._fetch,
            "summarize": self._summarize,
            "chunk": self._chunk,
            "embed": self._embed,
        }
        current: Bookmark | None = bookmark
        for from_status, to_status, step in STAGE_TABLE:
            if current is None:
                return None
            if current.status != from_status:
                continue
            log.debug(f"running {step} ({from_status.value} -> {to_status.value})")
            current = await steps[step](message, current, progress, log)
            if current is None:
                return None
            advanced = await self.bookmark_storage.update_status(current.id, to_status, expected=from_status)
            if advanced is None:
                # Another delivery of this bookmark moved it on first.
                latest = await self.bookmark_storage.get(current.id)
                if latest is not None:
                    log.info(f"now {latest.status.value} after a concurrent delivery, stopping")
                    progress.superseded = True
                return latest
            current = advanced
        return current

    async def _fetch(
        self,
        message: BookmarkIngestionMessage,
        bookmark: Bookmark,
        progress: _StageProgress,
        log: PprintLogger,
    ) -> Bookmark | None:
        page_images = None
        content_type = None
        if message.extracted_content is not None:
            log.debug("using client-extracted content")
            title = message.extracted_content.title
            markdown = message.extracted_content.content
            content_type = message.extracted_content.content_type
            fields: dict[str, Any] = {"title": title, "markdown": markdown}
        else:
            page = await self.content_extractor.extract(message.url)
            markdown = page.markdown
            page_images = page.images
            fields = {
                "title": page.title,
                "markdown": page.markdown,
                "description": page.description,
                "favicon": page.favicon,
                "og_image": page.og_image,
            }

        updated = await self.bookmark_storage.update(bookmark.id, **fields)
        if updated is None:
            return None

        existing = await self.image_storage.list_for_bookmark(bookmark.id)
        if existing:
            await self._send_queued_images(message, existing, progress)
            log.debug(f"{len(existing)} images already recorded, re-sent {progress.images_queued} still queued")
            return updated

        inventory = build_image_inventory(
            markdown,
            request_images=message.extracted_images,
            page_images=page_images,
            base_url=message.url,
        )
        if not inventory:
            return updated

        queued_status = ContentImageStatus.QUEUED if self.image_queue is not None else ContentImageStatus.PENDING
        images = [
            ContentImage(
                id=str(uuid.uuid4()),
                bookmark_id=bookmark.id,
                url=image.url,
                alt_text=image.alt_text,
                title=image.title,
                nearby_text=image.nearby_text,
                position=image.position,
                url_domain=extract_domain(image.url),
                heuristic_score=image.heuristic_score,
                estimated_type=image.estimated_type,
                status=(
                    queued_status
                    if (image.heuristic_score or 0.0) >= self.min_image_score
                    else ContentImageStatus.SKIPPED
                ),
            )
            for image in score_images(inventory, content_type)
        ]
        try:
            await self.image_storage.add_many(images)
        except DuplicateKeyError:
            log.debug("images recorded by a concurrent delivery, leaving them to it")
            return updated

        if self.image_queue is None:
            log.debug(f"recorded {len(images)} images; no image queue configured")
            return updated

        await self._send_queued_images(message, images, progress)
        log.info(f"queued {progress.images_queued} of {len(images)} images for entity extraction")
        return updated

    async def _send_queued_images(
        self,
        message: BookmarkIngestionMessage,
        images: list[ContentImage],
        progress: _StageProgress,
    ) -> None:
        """Send a work item for every image still QUEUED.

        Images are stored before they are sent, so a redelivery after a failed
        send finds them still QUEUED and sends them again. The image handler
        skips images that are already in progress or done.
        """
        if self.image_queue is None:
            return
        for image in images:
            if image.status is not ContentImageStatus.QUEUED:
                continue
            work_item = ImageEntityExtractionMessage(
                image_id=image.id,
                bookmark_id=image.bookmark_id,
                user_id=message.user_id,
            )
            await self.image_queue.send(work_item.model_dump(by_alias=True))
            progress.images_queued += 1

    async def _summarize(
        self,
        message: BookmarkIngestionMessage,
        bookmark: Bookmark,
        progress: _StageProgress,
        log: PprintLogger,
    ) -> Bookmark | None:
        result = await extract_summary_and_entities(
            bookmark.markdown,
            bookmark.title or message.url,
            bookmark.url,
            self.llm,
        )
        updated = await self.bookmark_storage.update(bookmark.id, summary=result.summary or None)
        if updated is None:
            return None

        if result.entities:
            merged = await self.merger.merge(
                MergeRequest(
                    user_id=bookmark.user_id,
                    bookmark_id=bookmark.id,
                    source=LinkSource.TEXT,
                    entities=result.entities,
                )
            )
            progress.entities_created += merged.created
            progress.entities_linked += merged.linked
        log.debug(f"summary stored, {len(result.entities)} text entities extracted")
        return updated

    async def _chunk(
        self,
        message: BookmarkIngestionMessage,
        bookmark: Bookmark,
        progress: _StageProgress,
        log: PprintLogger,
    ) -> Bookmark | None:
        await self.chunk_indexer.create_chunks(bookmark)
        return bookmark

    async def _embed(
        self,
        message: BookmarkIngestionMessage,
        bookmark: Bookmark,
        progress: _StageProgress,
        log: PprintLogger,
    ) -> Bookmark | None:
        await self.chunk_indexer.embed_chunks(bookmark)
        return bookmark

    async def _mark_failed(self, bookmark_id: str, reason: str) -> Bookmark | None:
        current = await self.bookmark_storage.get(bookmark_id)
        if current is None or current.status.is_terminal:
            return current
        failed = await self.bookmark_storage.update_status(
            bookmark_id,
            BookmarkStatus.FAILED,
            error_message=reason,
            expected=current.status,
        )
        if failed is None:
            return await self.bookmark_storage.get(bookmark_id)
        return failed

    async def handle_dead_letter(self, body: Any, error: BaseException) -> None:
        """Mark the bookmark FAILED once the queue adapter gives up on its message.

        An InvalidStatusTransition is only logged: it means the status changed
        under this delivery, not that the bookmark's processing failed.
        """
        try:
            message: QueueMessage = body if isinstance(body, BaseModel) else parse_message(body)
        except ValueError as e:
            logger.error(f"[dead-letter] undecodable message dropped: {e}")
            return
        if not isinstance(message, BookmarkIngestionMessage):
            logger.warning(f"[dead-letter] Image {message.image_id}: gave up after {type(error).__name__}")
            return
        if isinstance(error, InvalidStatusTransition):
            logger.error(f"[dead-letter] Bookmark {message.bookmark_id}: status conflict, left as is: {error}")
            return
        reason = error_message(error)
        if is_retryable(error):
            reason = f"Retries exhausted: {reason}"
        failed = await self._mark_failed(message.bookmark_id, reason)
        logger.error(
            {
                "message": f"[dead-letter] Bookmark {message.bookmark_id}: {reason}",
                "final_status": failed.status.value if failed else None,
            },
            pprint=True,
        )

    # --- image work items -----------------------------------------------

    async def handle_image_extraction(self, message: ImageEntityExtractionMessage) -> MergeResult | None:
        """Scan one content image and merge what it depicts into the catalog.

        Returns None when the image was skipped (missing, or already
        completed, skipped or in progress).

        Raises:
            Exception: Whatever the extraction or merge raised, after the
                image is marked FAILED; the queue adapter classifies it.
        """
        log = logger.bind(f"[image-extraction] Image {message.image_id}:")
        if self.image_extractor is None:
            raise RuntimeError("No image extractor configured")

        image = await self.image_storage.get(message.image_id)
        if image is None:
            log.warning("not found, skipping")
            return None
        if image.status in _IMAGE_SKIP_STATUSES:
            log.info(f"already {image.status.value}, skipping")
            return None

        await self.image_storage.update(image.id, status=ContentImageStatus.PROCESSING, error_message=None)
        context = image.nearby_text or image.alt_text
        try:
            result = await self.image_extractor.extract(image.url, context)
            merged = await self.merger.merge(
                MergeRequest(
                    user_id=message.user_id,
                    bookmark_id=message.bookmark_id,
                    source=LinkSource.IMAGE,
                    source_image_id=image.id,
                    entities=result.entities,
                    context_snippet=context,
                )
            )
        except Exception as e:
            await self.image_storage.update(
                image.id,
                status=ContentImageStatus.FAILED,
                error_message=error_message(e),
                processed_at=utcnow(),
            )
            log.warning(f"failed ({type(e).__name__}): {e}")
            raise

        await self.image_storage.update(
            image.id,
            status=ContentImageStatus.COMPLETED,
            extracted=result.model_dump(mode="json"),
            processed_at=utcnow(),
        )
        log.info(f"{len(result.entities)} entities found, {merged.created} created, {merged.linked} linked")
        return merged

"""Test fixtures and scripted fakes for the ingestion pipeline.

This module provides:
- Scripted implementations of the provider interfaces (LLM, content
  extraction, image extraction, chunk indexing, message queue) that record
  their calls and replay queued responses or errors
- Pytest fixtures wiring in-memory storage, the catalog merger and the
  orchestrator together
- Helper factories for bookmarks, messages and page content
"""

import asyncio
from typing import Any, Sequence

import pytest
from pydantic import BaseModel, ValidationError

from bmgraph.bookmark import Bookmark, BookmarkStatus
from bmgraph.entity import ImageExtractionResult
from bmgraph.errors import LLMResponseValidationError
from bmgraph.ingest import BookmarkIngestionOrchestrator
from bmgraph.merge import EntityCatalogMerger
from bmgraph.messages import BookmarkIngestionMessage
from bmgraph.pipeline.interfaces import (
    ChatMessage,
    ChunkIndexerInterface,
    ContentExtractorInterface,
    ExtractedPage,
    ImageExtractorInterface,
    LLMProviderInterface,
    MessageQueueInterface,
)
from bmgraph.storage.memory import (
    InMemoryBookmarkStorage,
    InMemoryContentImageStorage,
    InMemoryEntityLinkStorage,
    InMemoryEntityStorage,
)

USER_ID = "user-1"
BOOKMARK_ID = "bm-1"
BOOKMARK_URL = "https://example.com/reviews/fantasy"

LONG_MARKDOWN = (
    "# Fantasy worth your time\n\n"
    "I finally read The Hobbit this winter and it is every bit as charming as people say. "
    "Bilbo's reluctant adventure holds up remarkably well, and the riddle game alone is worth it.\n\n"
    "![The Hobbit cover](https://covers.openlibrary.org/b/id/123-L.jpg)\n\n"
    "Someone at the bookshop also mentioned Dune in passing, but I have not picked it up yet."
)


# --- Scripted providers ---


class ScriptedLLMProvider(LLMProviderInterface):
    """LLM fake that replays queued responses.

    Each queued item is either an exception (raised), a pydantic model
    (returned as-is) or a dict (validated against the requested model).
    Every call is recorded in ``calls``. A non-zero ``delay`` makes each
    call yield to the event loop first, like a real network round trip.
    """

    def __init__(self, responses: Sequence[Any] = (), delay: float = 0) -> None:
        self.responses: list[Any] = list(responses)
        self.calls: list[dict[str, Any]] = []
        self.delay = delay

    def queue(self, *responses: Any) -> None:
        self.responses.extend(responses)

    async def generate_object(
        self,
        messages: list[ChatMessage],
        response_model: type[BaseModel],
        *,
        temperature: float = 0.2,
        max_tokens: int | None = None,
    ) -> Any:
        self.calls.append(
            {
                "messages": messages,
                "response_model": response_model,
                "temperature": temperature,
                "max_tokens": max_tokens,
            }
        )
        if self.delay:
            await asyncio.sleep(self.delay)
        if not self.responses:
            raise AssertionError("ScriptedLLMProvider has no response queued")
        response = self.responses.pop(0)
        if isinstance(response, BaseException):
            raise response
        if isinstance(response, BaseModel):
            return response
        try:
            return response_model.model_validate(response)
        except ValidationError as e:
            raise LLMResponseValidationError("scripted response does not validate", cause=e) from e


class FakeContentExtractor(ContentExtractorInterface):
    """Returns a fixed page, or raises queued errors first."""

    def __init__(self, page: ExtractedPage | None = None, errors: Sequence[BaseException] = ()) -> None:
        self.page = page or ExtractedPage(title="Fantasy worth your time", markdown=LONG_MARKDOWN)
        self.errors: list[BaseException] = list(errors)
        self.calls: list[str] = []

    async def extract(self, url: str) -> ExtractedPage:
        self.calls.append(url)
        if self.errors:
            raise self.errors.pop(0)
        return self.page


class FakeImageExtractor(ImageExtractorInterface):
    """Returns a fixed result per call, or raises queued errors first."""

    def __init__(self, result: ImageExtractionResult | None = None, errors: Sequence[BaseException] = ()) -> None:
        self.result = result or ImageExtractionResult()
        self.errors: list[BaseException] = list(errors)
        self.calls: list[tuple[str, str | None]] = []

    async def extract(self, image_url: str, context: str | None = None) -> ImageExtractionResult:
        self.calls.append((image_url, context))
        if self.errors:
            raise self.errors.pop(0)
        return self.result


class RecordingChunkIndexer(ChunkIndexerInterface):
    def __init__(self) -> None:
        self.created: list[str] = []
        self.embedded: list[str] = []

    async def create_chunks(self, bookmark: Bookmark) -> None:
        self.created.append(bookmark.id)

    async def embed_chunks(self, bookmark: Bookmark) -> None:
        self.embedded.append(bookmark.id)


class RecordingQueue(MessageQueueInterface):
    """Message queue that records what was sent, or raises queued errors first."""

    def __init__(self, errors: Sequence[BaseException] = ()) -> None:
        self.sent: list[Any] = []
        self.errors: list[BaseException] = list(errors)

    async def send(self, body: Any, delay_seconds: float = 0) -> None:
        if self.errors:
            raise self.errors.pop(0)
        self.sent.append(body)


# --- Helpers ---


def make_bookmark(
    bookmark_id: str = BOOKMARK_ID,
    user_id: str = USER_ID,
    url: str = BOOKMARK_URL,
    status: BookmarkStatus = BookmarkStatus.PENDING,
    **fields: Any,
) -> Bookmark:
    return Bookmark(id=bookmark_id, user_id=user_id, url=url, status=status, **fields)


def make_message(bookmark_id: str = BOOKMARK_ID, url: str = BOOKMARK_URL, **fields: Any) -> BookmarkIngestionMessage:
    return BookmarkIngestionMessage(bookmark_id=bookmark_id, url=url, user_id=USER_ID, **fields)


def summary_response(*entities: dict[str, Any], summary: str = "  A short review of fantasy novels.  ") -> dict[str, Any]:
    return {"summary": summary, "entities": list(entities)}


# --- Fixtures ---


@pytest.fixture
def bookmark_storage() -> InMemoryBookmarkStorage:
    """Provide a fresh in-memory bookmark storage."""
    return InMemoryBookmarkStorage()


@pytest.fixture
def entity_storage() -> InMemoryEntityStorage:
    """Provide a fresh in-memory entity catalog."""
    return InMemoryEntityStorage()


@pytest.fixture
def link_storage() -> InMemoryEntityLinkStorage:
    return InMemoryEntityLinkStorage()


@pytest.fixture
def image_storage() -> InMemoryContentImageStorage:
    return InMemoryContentImageStorage()


@pytest.fixture
def merger(entity_storage: InMemoryEntityStorage, link_storage: InMemoryEntityLinkStorage) -> EntityCatalogMerger:
    return EntityCatalogMerger(entity_storage=entity_storage, link_storage=link_storage)


@pytest.fixture
def llm() -> ScriptedLLMProvider:
    return ScriptedLLMProvider()


@pytest.fixture
def content_extractor() -> FakeContentExtractor:
    return FakeContentExtractor()


@pytest.fixture
def image_extractor() -> FakeImageExtractor:
    return FakeImageExtractor()


@pytest.fixture
def chunk_indexer() -> RecordingChunkIndexer:
    return RecordingChunkIndexer()


@pytest.fixture
def image_queue() -> RecordingQueue:
    return RecordingQueue()


@pytest.fixture
def orchestrator(
    bookmark_storage: InMemoryBookmarkStorage,
    image_storage: InMemoryContentImageStorage,
    merger: EntityCatalogMerger,
    content_extractor: FakeContentExtractor,
    llm: ScriptedLLMProvider,
    image_extractor: FakeImageExtractor,
    chunk_indexer: RecordingChunkIndexer,
    image_queue: RecordingQueue,
) -> BookmarkIngestionOrchestrator:
    """Create an orchestrator over in-memory storage and scripted providers."""
    return BookmarkIngestionOrchestrator(
        bookmark_storage=bookmark_storage,
        image_storage=image_storage,
        merger=merger,
        content_extractor=content_extractor,
        llm=llm,
        image_extractor=image_extractor,
        chunk_indexer=chunk_indexer,
        image_queue=image_queue,
    )

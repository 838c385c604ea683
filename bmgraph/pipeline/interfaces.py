"""Capability interfaces the pipeline stages depend on.

The stages never talk to a concrete provider directly. They are handed
implementations of these interfaces, which keeps them testable with
scripted fakes and lets deployments swap LLM vendors, fetchers or queue
transports.

Typical flow:
    1. ContentExtractorInterface turns a URL into an ExtractedPage
    2. LLMProviderInterface produces a summary and text entities
    3. ImageExtractorInterface scans each content image for entities
    4. ChunkIndexerInterface chunks and embeds the stored markdown
    5. MessageQueueInterface carries image work items to their own queue
"""

from abc import ABC, abstractmethod
from typing import Any, Literal, TypeVar

from pydantic import BaseModel, Field

from bmgraph.bookmark import Bookmark
from bmgraph.entity import ImageExtractionResult
from bmgraph.pipeline.images import InventoryImage

ModelT = TypeVar("ModelT", bound=BaseModel)


class ChatImage(BaseModel, frozen=True):
    """Raw image bytes attached to a chat message."""

    data: bytes
    mime_type: str


class ChatMessage(BaseModel, frozen=True):
    """One turn of a chat-style LLM request."""

    role: Literal["system", "user", "assistant"]
    content: str
    images: tuple[ChatImage, ...] = ()


class ExtractedPage(BaseModel, frozen=True):
    """Readable content of a fetched page."""

    title: str
    markdown: str
    images: tuple[InventoryImage, ...] = Field(
        default=(),
        description="Images found in the page, in document order.",
    )
    description: str | None = None
    favicon: str | None = None
    og_image: str | None = None


class LLMProviderInterface(ABC):
    """Structured-output generation from a chat model."""

    @abstractmethod
    async def generate_object(
        self,
        messages: list[ChatMessage],
        response_model: type[ModelT],
        *,
        temperature: float = 0.2,
        max_tokens: int | None = None,
    ) -> ModelT:
        """Ask the model for a JSON object matching ``response_model``.

        Implementations must validate the response and raise rather than
        coerce when it does not fit.

        Raises:
            LLMTimeoutError: If the call exceeds the provider timeout.
            LLMResponseValidationError: If the answer does not validate.
            HttpError: For provider responses carrying an HTTP status.
        """


class ContentExtractorInterface(ABC):
    """Fetch a URL and turn it into markdown."""

    @abstractmethod
    async def extract(self, url: str) -> ExtractedPage:
        """Fetch and convert a page.

        Raises:
            NonRetryableError: For invalid URLs or unsupported content.
            HttpError: For non-2xx responses.
        """


class ImageExtractorInterface(ABC):
    """Identify creative works depicted in an image."""

    @abstractmethod
    async def extract(self, image_url: str, context: str | None = None) -> ImageExtractionResult:
        """Fetch the image and return the entities it shows."""


class ChunkIndexerInterface(ABC):
    """Chunking and embedding collaborator; storage format is its own concern."""

    @abstractmethod
    async def create_chunks(self, bookmark: Bookmark) -> None:
        """Split the bookmark's markdown into chunks."""

    @abstractmethod
    async def embed_chunks(self, bookmark: Bookmark) -> None:
        """Embed previously created chunks."""


class NoOpChunkIndexer(ChunkIndexerInterface):
    """Chunk indexer for deployments without search."""

    async def create_chunks(self, bookmark: Bookmark) -> None:
        return None

    async def embed_chunks(self, bookmark: Bookmark) -> None:
        return None


class MessageQueueInterface(ABC):
    """Outbound side of a work queue."""

    @abstractmethod
    async def send(self, body: Any, delay_seconds: float = 0) -> None:
        """Enqueue a message without waiting for it to be processed."""

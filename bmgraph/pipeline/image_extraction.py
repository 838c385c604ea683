"""Identify books, movies and TV shows depicted in an image.

The image is downloaded first (some hosts require a user agent or refuse
hot-linking), checked for size and type, and attached to a single
vision-model call. Vision models only accept raster formats, so the MIME
type is resolved from the bytes themselves before trusting the server's
Content-Type header or the URL extension.
"""

import logging
from urllib.parse import urlparse

import httpx
from pydantic import BaseModel, Field

from bmgraph.entity import ImageExtractedEntity, ImageExtractionResult
from bmgraph.errors import HttpError, NonRetryableError, UnsupportedImageError
from bmgraph.pipeline.content import validate_url
from bmgraph.pipeline.interfaces import ChatImage, ChatMessage, ImageExtractorInterface, LLMProviderInterface

logger = logging.getLogger(__name__)

MAX_IMAGE_BYTES = 5 * 1024 * 1024
IMAGE_TEMPERATURE = 0.2
IMAGE_MAX_TOKENS = 1200

SUPPORTED_MIME_TYPES = frozenset({"image/jpeg", "image/png", "image/gif", "image/webp"})

UNSUPPORTED_IMAGE_TYPES = {
    "image/svg+xml": "SVG (vector graphics)",
    "image/x-icon": "ICO (favicon)",
    "image/vnd.microsoft.icon": "ICO (favicon)",
    "application/pdf": "PDF",
    "image/tiff": "TIFF",
    "image/bmp": "BMP",
}

EXTENSION_MIME_TYPES = {
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "png": "image/png",
    "gif": "image/gif",
    "webp": "image/webp",
}

IMAGE_REQUEST_HEADERS = {
    "User-Agent": "Mozilla/5.0 (compatible; BookmarkBot/1.0)",
    "Accept": "image/*",
}

EXTRACTION_PROMPT = """Analyze this image and extract any identifiable media entities.

For each entity found, provide:
- type: "book" | "movie" | "tv_show"
- name: The title as shown
- confidence: 0.0-1.0 how certain you are
- hints: Any additional info visible (author, director, year), or null

If this is a book cover, movie poster, DVD/Blu-ray case, or similar media image, extract the entity.
If no clear media entities are visible, return an empty entities array.

Respond with JSON: {"entities": [...], "image_description": "..." or null}"""


class ImageExtractionResponse(BaseModel, frozen=True):
    """Shape the vision model must return."""

    entities: list[ImageExtractedEntity] = Field(default_factory=list)
    image_description: str | None = None


def sniff_mime_type(data: bytes) -> str | None:
    """Identify an image format from its leading bytes."""
    if data.startswith(b"\xff\xd8\xff"):
        return "image/jpeg"
    if data.startswith(b"\x89PNG"):
        return "image/png"
    if data.startswith(b"GIF8"):
        return "image/gif"
    if data.startswith(b"RIFF") and data[8:12] == b"WEBP":
        return "image/webp"
    if b"<svg" in data[:256].lower():
        return "image/svg+xml"
    return None


def normalize_mime_type(content_type: str | None) -> str | None:
    if not content_type:
        return None
    return content_type.split(";")[0].strip().lower() or None


def guess_mime_type_from_url(url: str) -> str | None:
    path = urlparse(url).path
    if "." not in path:
        return None
    return EXTENSION_MIME_TYPES.get(path.rsplit(".", 1)[-1].lower())


def resolve_mime_type(data: bytes, content_type: str | None, url: str) -> str:
    """Pick the image type: sniffed bytes, then Content-Type, then URL extension.

    Raises:
        UnsupportedImageError: If the result is not JPEG, PNG, GIF or WebP.
    """
    mime_type = sniff_mime_type(data) or normalize_mime_type(content_type) or guess_mime_type_from_url(url)
    if mime_type in SUPPORTED_MIME_TYPES:
        return mime_type
    if mime_type in UNSUPPORTED_IMAGE_TYPES:
        raise UnsupportedImageError(
            f"Cannot process {UNSUPPORTED_IMAGE_TYPES[mime_type]} - vision models only support JPEG, PNG, GIF, and WebP",
            mime_type=mime_type,
        )
    if not mime_type:
        raise UnsupportedImageError(
            "Unsupported image type: unknown. Only JPEG, PNG, GIF, and WebP are supported.",
            mime_type="unknown",
        )
    raise UnsupportedImageError(
        f"Unsupported image type: {mime_type}. Only JPEG, PNG, GIF, and WebP are supported.",
        mime_type=mime_type,
    )


class ImageEntityExtractor(ImageExtractorInterface):
    """Downloads an image and asks a vision model what it shows."""

    def __init__(
        self,
        llm: LLMProviderInterface,
        timeout: float = 15.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.llm = llm
        self.timeout = timeout
        self._client = client

    async def _get(self, url: str) -> httpx.Response:
        if self._client is not None:
            return await self._client.get(
                url, headers=IMAGE_REQUEST_HEADERS, follow_redirects=True, timeout=self.timeout
            )
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.get(url, headers=IMAGE_REQUEST_HEADERS, follow_redirects=True)

    async def fetch_image(self, image_url: str) -> ChatImage:
        """Download an image and check that a vision model can read it."""
        validate_url(image_url)
        response = await self._get(image_url)
        if not response.is_success:
            raise HttpError.from_response(
                response, f"Failed to fetch image: {response.status_code} {response.reason_phrase}"
            )

        data = response.content
        if len(data) > MAX_IMAGE_BYTES:
            raise NonRetryableError(
                f"Image too large: {len(data) / 1024 / 1024:.1f}MB exceeds {MAX_IMAGE_BYTES // (1024 * 1024)}MB limit",
                code="image_too_large",
            )

        mime_type = resolve_mime_type(data, response.headers.get("content-type"), image_url)
        return ChatImage(data=data, mime_type=mime_type)

    async def extract(self, image_url: str, context: str | None = None) -> ImageExtractionResult:
        image = await self.fetch_image(image_url)

        prompt = EXTRACTION_PROMPT
        if context:
            prompt += f'\n\nContext from the page: "{context}"'

        response = await self.llm.generate_object(
            [ChatMessage(role="user", content=prompt, images=(image,))],
            ImageExtractionResponse,
            temperature=IMAGE_TEMPERATURE,
            max_tokens=IMAGE_MAX_TOKENS,
        )
        logger.debug("Vision model found %d entities in %s", len(response.entities), image_url)
        return ImageExtractionResult(
            entities=tuple(response.entities),
            image_description=response.image_description or None,
        )

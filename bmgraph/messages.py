"""Queue message payloads.

Messages travel as JSON with camelCase keys (``bookmarkId``); the models
accept both the wire names and the Python field names, and serialize back
with ``model_dump(by_alias=True)``.
"""

import json
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel

IMAGE_ENTITY_EXTRACTION = "image-entity-extraction"


class _WireModel(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, alias_generator=to_camel)


class ExtractedContent(_WireModel):
    """Page content captured client-side (e.g. by the browser extension)."""

    title: str
    content: str
    content_type: str | None = None
    platform_data: dict[str, Any] | None = None


class RequestImage(_WireModel):
    """An image captured client-side, with optional pre-computed hints."""

    url: str
    alt_text: str | None = None
    position: int = Field(ge=0)
    nearby_text: str | None = None
    heuristic_score: float | None = Field(default=None, ge=0.0, le=1.0)
    estimated_type: str | None = None


class BookmarkIngestionMessage(_WireModel):
    """Consumed by the ingestion orchestrator: one per created bookmark."""

    bookmark_id: str
    url: str
    user_id: str
    extracted_content: ExtractedContent | None = None
    extracted_images: tuple[RequestImage, ...] | None = None


class ImageEntityExtractionMessage(_WireModel):
    """Fan-out work item: scan one content image for entities."""

    type: Literal["image-entity-extraction"] = IMAGE_ENTITY_EXTRACTION
    image_id: str
    bookmark_id: str
    user_id: str


QueueMessage = BookmarkIngestionMessage | ImageEntityExtractionMessage

_ingestion_adapter = TypeAdapter(BookmarkIngestionMessage)
_image_adapter = TypeAdapter(ImageEntityExtractionMessage)


def parse_message(payload: dict[str, Any] | str | bytes) -> QueueMessage:
    """Decode a raw queue payload into the matching message model.

    Payloads tagged ``"type": "image-entity-extraction"`` are image work
    items; untagged payloads are bookmark-ingestion messages.

    Raises:
        ValueError: If the payload is not a JSON object (pydantic's
            ValidationError is a ValueError too, raised when it does not fit
            either shape).
    """
    if isinstance(payload, (str, bytes)):
        payload = json.loads(payload)
    if not isinstance(payload, dict):
        raise ValueError(f"Queue payload must be a JSON object, got {type(payload).__name__}")
    if payload.get("type") == IMAGE_ENTITY_EXTRACTION:
        return _image_adapter.validate_python(payload)
    return _ingestion_adapter.validate_python(payload)

"""Summary and text entity extraction.

One LLM call per bookmark returns both a short summary of the page and the
books, movies and TV shows it discusses. Candidates below the catalog
confidence floor are dropped here as well as in the merger, and duplicates
within one response are collapsed.
"""

import logging

from pydantic import BaseModel, Field

from bmgraph.entity import MIN_ENTITY_CONFIDENCE, ExtractedEntity
from bmgraph.normalize import extraction_dedupe_key
from bmgraph.pipeline.interfaces import ChatMessage, LLMProviderInterface

logger = logging.getLogger(__name__)

MAX_INPUT_CHARS = 48_000
TRUNCATION_MARKER = "\n\n[Content truncated...]"
MIN_CONTENT_CHARS = 100
SUMMARY_TEMPERATURE = 0.2
SUMMARY_MAX_TOKENS = 2500

SYSTEM_PROMPT = """You are a content analysis assistant. Analyze the provided webpage and:

1. SUMMARY: Write a clear 3-5 sentence summary capturing:
   - What the page is about
   - Key information or takeaways

2. ENTITY EXTRACTION: Extract books, movies, and TV shows mentioned in the content.

Entity extraction rules:
- Only extract entities the author is recommending, reviewing, or discussing substantively
- Ignore passing mentions, metaphors, or examples (e.g., "This startup is the Uber of..." - don't extract Uber)
- Include a context_snippet of ~100 characters around each mention
- Assign confidence based on clarity:
  - >0.8: Clear recommendation or review
  - 0.5-0.8: Substantive discussion
  - <0.5: Passing mention (exclude these)

Entity types:
- book: Books, novels, textbooks, guides
- movie: Films, documentaries
- tv_show: TV series, web series, limited series

If an entity could be both book and movie (e.g., "Dune"), extract as the type most relevant to context.

Return an empty entities array if no qualifying entities are found.

Respond with JSON: {"summary": "...", "entities": [{"type": "book", "name": "...", "context_snippet": "...", "confidence": 0.9}]}"""


class ContentExtractionResponse(BaseModel, frozen=True):
    """Shape the LLM must return."""

    summary: str = Field(description="3-5 sentence summary of the page.")
    entities: list[ExtractedEntity] = Field(default_factory=list)


class ContentExtractionResult(BaseModel, frozen=True):
    """Cleaned summary and entity candidates for one page."""

    summary: str = ""
    entities: tuple[ExtractedEntity, ...] = ()


def truncate_markdown(markdown: str) -> str:
    if len(markdown) <= MAX_INPUT_CHARS:
        return markdown
    return markdown[:MAX_INPUT_CHARS] + TRUNCATION_MARKER


def build_user_prompt(title: str, markdown: str, url: str) -> str:
    return f"""Analyze this webpage:

Title: {title}
URL: {url}

Content:
{truncate_markdown(markdown)}"""


def dedupe_entities(entities: list[ExtractedEntity]) -> list[ExtractedEntity]:
    """Collapse same type+name (case-insensitive), keeping the most confident.

    The surviving entry keeps the position of the first occurrence.
    """
    seen: dict[str, ExtractedEntity] = {}
    for entity in entities:
        key = extraction_dedupe_key(entity.type.value, entity.name)
        existing = seen.get(key)
        if existing is None or entity.confidence > existing.confidence:
            seen[key] = entity
    return list(seen.values())


async def extract_summary_and_entities(
    markdown: str | None,
    title: str,
    url: str,
    llm: LLMProviderInterface,
) -> ContentExtractionResult:
    """Summarize a page and list the works it discusses.

    Pages with less than 100 characters of content are not sent to the LLM
    and yield an empty result.
    """
    if not markdown or len(markdown.strip()) < MIN_CONTENT_CHARS:
        logger.debug("Skipping summary for %s: not enough content", url)
        return ContentExtractionResult()

    response = await llm.generate_object(
        [
            ChatMessage(role="system", content=SYSTEM_PROMPT),
            ChatMessage(role="user", content=build_user_prompt(title, markdown, url)),
        ],
        ContentExtractionResponse,
        temperature=SUMMARY_TEMPERATURE,
        max_tokens=SUMMARY_MAX_TOKENS,
    )

    confident = [entity for entity in response.entities if entity.confidence >= MIN_ENTITY_CONFIDENCE]
    return ContentExtractionResult(
        summary=response.summary.strip(),
        entities=tuple(dedupe_entities(confident)),
    )

"""Image inventory and heuristic scoring.

Every image found in a bookmark becomes a work item for the image entity
extraction queue. The inventory comes from the client (browser extension)
when it sent one, otherwise from the page markdown. Each image gets a cheap
heuristic score estimating how likely it is to depict a book, movie or show;
the score is stored with the image and can be used to prioritise or skip
vision calls.
"""

import re
from typing import Sequence
from urllib.parse import urljoin, urlparse

from pydantic import BaseModel, Field

from bmgraph.messages import RequestImage

# Domains that typically don't contain entity content
SKIP_DOMAINS = (
    "gravatar.com",
    "githubusercontent.com",
    "googleusercontent.com",
    "wp.com/latex",
    "shields.io",
    "badge.fury.io",
    "img.shields.io",
    "travis-ci.org",
    "circleci.com",
    "codecov.io",
)

# Vision models cannot process these
SKIP_EXTENSIONS = (".svg", ".svgz", ".eps", ".ai", ".pdf")

ENTITY_SUGGESTIVE_DOMAINS = (
    "amazon.com",
    "m.media-amazon.com",
    "goodreads.com",
    "image.tmdb.org",
    "imdb.com",
    "letterboxd.com",
    "openlibrary.org",
    "covers.openlibrary.org",
    "ia.media-imdb.com",
)

PLATFORM_BOOST_DOMAINS = {
    "pbs.twimg.com": 0.25,
    "cdn.bsky.app": 0.25,
    "scontent.cdninstagram.com": 0.2,
}

ENTITY_KEYWORDS = (
    "cover",
    "poster",
    "book",
    "movie",
    "film",
    "dvd",
    "blu-ray",
    "novel",
    "author",
    "director",
    "series",
    "season",
    "album",
)

BASELINE_SCORE = 0.3
NEARBY_TEXT_LIMIT = 500

_IMAGE_RE = re.compile(r'!\[(?P<alt>[^\]]*)\]\(\s*<?(?P<url>[^\s)>]+)>?(?:\s+"(?P<title>[^"]*)")?\s*\)')
_LINK_RE = re.compile(r"\[([^\]]*)\]\([^)]*\)")
_THUMBNAIL_RE = re.compile(r"\d{2,3}x\d{2,3}")
_MARKUP_RE = re.compile(r"[*_`>#]+")


class InventoryImage(BaseModel, frozen=True):
    """One image of a bookmark, before it is persisted."""

    url: str
    alt_text: str | None = None
    title: str | None = None
    nearby_text: str | None = None
    position: int = Field(ge=0)
    heuristic_score: float | None = Field(default=None, ge=0.0, le=1.0)
    estimated_type: str | None = None

    @classmethod
    def from_request(cls, image: RequestImage) -> "InventoryImage":
        return cls(
            url=image.url,
            alt_text=image.alt_text,
            nearby_text=image.nearby_text,
            position=image.position,
            heuristic_score=image.heuristic_score,
            estimated_type=image.estimated_type,
        )


class HeuristicResult(BaseModel, frozen=True):
    """Likelihood that an image depicts a catalogable work."""

    score: float = Field(ge=0.0, le=1.0)
    estimated_type: str = Field(description="cover, photo, icon, decorative, vector or unknown")
    reasons: tuple[str, ...] = ()


def extract_domain(url: str) -> str | None:
    """Host name of a URL, or None when it has none."""
    try:
        return urlparse(url).hostname or None
    except ValueError:
        return None


def _paragraph_text(block: str) -> str:
    text = _IMAGE_RE.sub(" ", block)
    text = _LINK_RE.sub(r"\1", text)
    text = _MARKUP_RE.sub(" ", text)
    return " ".join(text.split())


def extract_images_from_markdown(markdown: str, base_url: str | None = None) -> list[InventoryImage]:
    """Find every ``![alt](url "title")`` in document order.

    ``nearby_text`` is the text of the most recent non-empty paragraph
    (including the one holding the image), truncated to 500 characters.
    ``data:`` URIs are skipped. Relative URLs are resolved against
    ``base_url`` when given.
    """
    images: list[InventoryImage] = []
    last_paragraph = ""
    for block in re.split(r"\n\s*\n", markdown or ""):
        stripped = block.strip()
        if not stripped:
            continue
        if not stripped.startswith("#"):
            text = _paragraph_text(stripped)
            if text:
                last_paragraph = text[:NEARBY_TEXT_LIMIT]
        for match in _IMAGE_RE.finditer(stripped):
            url = match.group("url")
            if not url or url.startswith("data:"):
                continue
            if base_url:
                url = urljoin(base_url, url)
            images.append(
                InventoryImage(
                    url=url,
                    alt_text=match.group("alt") or None,
                    title=match.group("title") or None,
                    nearby_text=last_paragraph or None,
                    position=len(images),
                )
            )
    return images


def build_image_inventory(
    markdown: str | None,
    request_images: Sequence[RequestImage] | None = None,
    page_images: Sequence[InventoryImage] | None = None,
    base_url: str | None = None,
) -> list[InventoryImage]:
    """Pick the image inventory for a bookmark.

    Client-supplied images win, then images reported by content extraction,
    then images parsed out of the markdown.
    """
    if request_images:
        return [InventoryImage.from_request(image) for image in request_images]
    if page_images:
        return list(page_images)
    return extract_images_from_markdown(markdown or "", base_url=base_url)


def calculate_heuristic_score(image: InventoryImage, content_type: str | None = None) -> HeuristicResult:
    """Estimate how likely an image is to contain a book, movie or show."""
    reasons: list[str] = []
    score = BASELINE_SCORE
    domain = extract_domain(image.url)
    url_lower = image.url.lower()

    url_path = url_lower.split("?")[0]
    if url_path.endswith(SKIP_EXTENSIONS):
        return HeuristicResult(score=0.0, estimated_type="vector", reasons=("unsupported format (vector/non-raster)",))

    if domain and any(d in domain for d in SKIP_DOMAINS):
        return HeuristicResult(score=0.0, estimated_type="decorative", reasons=("skip domain",))

    if domain and any(d in domain for d in ENTITY_SUGGESTIVE_DOMAINS):
        score += 0.4
        reasons.append(f"entity domain: {domain}")

    if domain:
        for platform_domain, boost in PLATFORM_BOOST_DOMAINS.items():
            if platform_domain in domain:
                score += boost
                reasons.append(f"platform boost: {platform_domain}")
                break

    alt_lower = (image.alt_text or "").lower()
    if any(keyword in alt_lower for keyword in ENTITY_KEYWORDS):
        score += 0.2
        reasons.append("entity keyword in alt")

    nearby_lower = (image.nearby_text or "").lower()
    if any(keyword in nearby_lower for keyword in ENTITY_KEYWORDS):
        score += 0.15
        reasons.append("entity keyword in nearby text")

    if "cover" in url_lower or "poster" in url_lower:
        score += 0.2
        reasons.append("cover/poster in URL")

    if _THUMBNAIL_RE.search(image.url) or "thumb" in url_lower:
        score -= 0.2
        reasons.append("likely thumbnail")

    if "favicon" in url_lower or "icon" in url_lower:
        score -= 0.3
        reasons.append("likely icon")

    if content_type == "tweet":
        score += 0.15
        reasons.append("tweet content type")

    if score >= 0.6:
        estimated_type = "cover"
    elif score <= 0.1:
        estimated_type = "decorative"
    elif "photo" in alt_lower or "headshot" in alt_lower:
        estimated_type = "photo"
    elif "icon" in url_lower or "favicon" in url_lower:
        estimated_type = "icon"
    else:
        estimated_type = "unknown"

    return HeuristicResult(score=max(0.0, min(1.0, score)), estimated_type=estimated_type, reasons=tuple(reasons))


def score_images(images: Sequence[InventoryImage], content_type: str | None = None) -> list[InventoryImage]:
    """Attach heuristic scores; images that already carry one keep it."""
    scored: list[InventoryImage] = []
    for image in images:
        if image.heuristic_score is not None and image.estimated_type is not None:
            scored.append(image)
            continue
        result = calculate_heuristic_score(image, content_type)
        scored.append(
            image.model_copy(
                update={
                    "heuristic_score": image.heuristic_score if image.heuristic_score is not None else result.score,
                    "estimated_type": image.estimated_type or result.estimated_type,
                }
            )
        )
    return scored

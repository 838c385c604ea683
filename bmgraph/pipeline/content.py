"""Fetch a web page and convert it to readable markdown.

Main content is isolated with trafilatura (boilerplate such as navigation,
ads and footers removed) and rendered as markdown with images kept, so the
image inventory can be read back out of it. Page metadata (title,
description, favicon, Open Graph image) comes from BeautifulSoup.

Failures are left to the error classifier: invalid URLs and unsupported
content types raise NonRetryableError, non-2xx responses raise HttpError,
and network errors and timeouts propagate as httpx exceptions.
"""

import asyncio
import logging
from urllib.parse import urljoin, urlparse

import httpx
import trafilatura
from bs4 import BeautifulSoup
from trafilatura.settings import use_config

from bmgraph.errors import HttpError, NonRetryableError
from bmgraph.pipeline.images import extract_images_from_markdown
from bmgraph.pipeline.interfaces import ContentExtractorInterface, ExtractedPage

logger = logging.getLogger(__name__)

USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
REQUEST_HEADERS = {
    "User-Agent": USER_AGENT,
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.5",
}
SUPPORTED_CONTENT_TYPES = ("text/html", "text/plain")

TRAFILATURA_CONFIG = use_config()
TRAFILATURA_CONFIG.set("DEFAULT", "EXTRACTION_TIMEOUT", "0")


def validate_url(url: str) -> str:
    """Return ``url`` if it is an absolute http(s) URL, else raise NonRetryableError."""
    try:
        parsed = urlparse(url)
    except ValueError as e:
        raise NonRetryableError(f"Invalid URL: {url}", code="invalid_url", cause=e) from e
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise NonRetryableError(f"Invalid URL: {url}", code="invalid_url")
    return url


def _meta_content(soup: BeautifulSoup, *selectors: dict[str, str]) -> str | None:
    for attrs in selectors:
        tag = soup.find("meta", attrs=attrs)
        if tag and tag.get("content"):
            return tag["content"].strip()
    return None


def extract_title_from_html(soup: BeautifulSoup, url: str) -> str:
    """Title fallback when trafilatura finds none: og:title, <title>, <h1>, host."""
    og_title = _meta_content(soup, {"property": "og:title"})
    if og_title:
        return og_title

    title_tag = soup.find("title")
    if title_tag and title_tag.string and title_tag.string.strip():
        return title_tag.string.strip()

    h1 = soup.find("h1")
    if h1 and h1.get_text(strip=True):
        return h1.get_text(strip=True)

    return urlparse(url).hostname or url


def extract_description(soup: BeautifulSoup) -> str | None:
    return _meta_content(
        soup,
        {"property": "og:description"},
        {"name": "description"},
        {"name": "twitter:description"},
    )


def extract_favicon(soup: BeautifulSoup, url: str) -> str | None:
    for rel in ("icon", "apple-touch-icon", "apple-touch-icon-precomposed"):
        link = soup.find("link", rel=rel, href=True)
        if link:
            return urljoin(url, link["href"])
    parsed = urlparse(url)
    if parsed.scheme and parsed.netloc:
        return f"{parsed.scheme}://{parsed.netloc}/favicon.ico"
    return None


def extract_og_image(soup: BeautifulSoup, url: str) -> str | None:
    image = _meta_content(soup, {"property": "og:image"}, {"name": "twitter:image"})
    return urljoin(url, image) if image else None


def html_to_page(html: str, url: str) -> ExtractedPage:
    """Convert an HTML document to an ExtractedPage (blocking)."""
    markdown = trafilatura.extract(
        html,
        url=url,
        output_format="markdown",
        include_images=True,
        include_comments=False,
        include_tables=True,
        config=TRAFILATURA_CONFIG,
    )
    soup = BeautifulSoup(html, "lxml")
    if not markdown:
        logger.warning("trafilatura found no main content in %s, falling back to page text", url)
        body = soup.body or soup
        markdown = body.get_text(separator="\n\n", strip=True)

    metadata = trafilatura.extract_metadata(html, default_url=url)
    title = metadata.title if metadata and metadata.title else extract_title_from_html(soup, url)

    return ExtractedPage(
        title=title.strip(),
        markdown=markdown,
        images=tuple(extract_images_from_markdown(markdown, base_url=url)),
        description=extract_description(soup),
        favicon=extract_favicon(soup, url),
        og_image=extract_og_image(soup, url),
    )


class HttpContentExtractor(ContentExtractorInterface):
    """Fetches pages over HTTP with httpx."""

    def __init__(self, timeout: float = 15.0, client: httpx.AsyncClient | None = None):
        self.timeout = timeout
        self._client = client

    async def _get(self, url: str) -> httpx.Response:
        if self._client is not None:
            return await self._client.get(url, headers=REQUEST_HEADERS, follow_redirects=True, timeout=self.timeout)
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.get(url, headers=REQUEST_HEADERS, follow_redirects=True)

    async def extract(self, url: str) -> ExtractedPage:
        validate_url(url)
        try:
            response = await self._get(url)
        except (httpx.UnsupportedProtocol, httpx.InvalidURL) as e:
            raise NonRetryableError(f"Invalid URL: {url}", code="invalid_url", cause=e) from e

        if not response.is_success:
            raise HttpError.from_response(response, f"Fetch failed: {response.status_code} {response.reason_phrase}")

        content_type = response.headers.get("content-type", "").lower()
        if not any(supported in content_type for supported in SUPPORTED_CONTENT_TYPES):
            raise NonRetryableError(
                f"Unsupported content type: {content_type or 'unknown'}",
                code="unsupported_content_type",
            )

        if "text/plain" in content_type:
            text = response.text
            return ExtractedPage(title=urlparse(url).hostname or url, markdown=text)

        return await asyncio.to_thread(html_to_page, response.text, url)

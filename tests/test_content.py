"""Tests for page fetching and HTML-to-markdown conversion."""

import httpx
import pytest
from bs4 import BeautifulSoup

from bmgraph.errors import HttpError, NonRetryableError, is_retryable
from bmgraph.pipeline.content import (
    HttpContentExtractor,
    extract_description,
    extract_favicon,
    extract_og_image,
    extract_title_from_html,
    validate_url,
)

ARTICLE = (
    "I finally read The Hobbit this winter and it is every bit as charming as people say. "
    "Bilbo's reluctant adventure holds up remarkably well, and the riddle game alone is worth it. "
) * 4

PAGE_HTML = f"""<!DOCTYPE html>
<html>
<head>
  <title>Fantasy worth your time</title>
  <meta property="og:title" content="Fantasy worth your time">
  <meta name="description" content="A short review of fantasy novels.">
  <meta property="og:image" content="/img/og.jpg">
  <link rel="icon" href="/static/favicon.png">
</head>
<body>
  <nav><a href="/">Home</a> <a href="/about">About</a></nav>
  <article>
    <h1>Fantasy worth your time</h1>
    <p>{ARTICLE}</p>
    <p>{ARTICLE}</p>
  </article>
  <footer>Copyright 2024</footer>
</body>
</html>"""


def make_extractor(handler) -> HttpContentExtractor:
    return HttpContentExtractor(client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))


def serve(content: str, status_code: int = 200, content_type: str = "text/html; charset=utf-8", headers=None):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            status_code, text=content, headers={"content-type": content_type, **(headers or {})}
        )

    return handler


class TestValidateUrl:
    def test_accepts_http_and_https(self) -> None:
        assert validate_url("https://example.com/a") == "https://example.com/a"
        assert validate_url("http://example.com") == "http://example.com"

    @pytest.mark.parametrize("url", ["not a url", "ftp://example.com/file", "https://", "/relative/path"])
    def test_rejects_others(self, url: str) -> None:
        with pytest.raises(NonRetryableError) as exc_info:
            validate_url(url)
        assert exc_info.value.code == "invalid_url"


class TestMetadata:
    def test_title_fallback_order(self) -> None:
        soup = BeautifulSoup("<html><head><title> Doc title </title></head><body><h1>H</h1></body></html>", "lxml")
        assert extract_title_from_html(soup, "https://example.com") == "Doc title"

        soup = BeautifulSoup("<html><body><h1>Heading</h1></body></html>", "lxml")
        assert extract_title_from_html(soup, "https://example.com") == "Heading"

        soup = BeautifulSoup("<html><body><p>nothing</p></body></html>", "lxml")
        assert extract_title_from_html(soup, "https://example.com/x") == "example.com"

    def test_description_favicon_and_og_image(self) -> None:
        soup = BeautifulSoup(PAGE_HTML, "lxml")
        url = "https://blog.example.com/reviews/fantasy"
        assert extract_description(soup) == "A short review of fantasy novels."
        assert extract_favicon(soup, url) == "https://blog.example.com/static/favicon.png"
        assert extract_og_image(soup, url) == "https://blog.example.com/img/og.jpg"

    def test_favicon_default(self) -> None:
        soup = BeautifulSoup("<html></html>", "lxml")
        assert extract_favicon(soup, "https://example.com/a/b") == "https://example.com/favicon.ico"
        assert extract_og_image(soup, "https://example.com") is None


class TestHttpContentExtractor:
    async def test_html_page(self) -> None:
        page = await make_extractor(serve(PAGE_HTML)).extract("https://blog.example.com/reviews/fantasy")

        assert page.title == "Fantasy worth your time"
        assert "riddle game" in page.markdown
        assert page.description == "A short review of fantasy novels."
        assert page.favicon == "https://blog.example.com/static/favicon.png"
        assert page.og_image == "https://blog.example.com/img/og.jpg"

    async def test_plain_text(self) -> None:
        page = await make_extractor(serve("just text", content_type="text/plain")).extract("https://notes.example/a")
        assert page.title == "notes.example"
        assert page.markdown == "just text"

    async def test_server_error_is_transient(self) -> None:
        extractor = make_extractor(serve("busy", status_code=503, headers={"retry-after": "7"}))
        with pytest.raises(HttpError) as exc_info:
            await extractor.extract("https://example.com/a")
        assert exc_info.value.status == 503
        assert exc_info.value.retry_after_seconds == 7
        assert exc_info.value.url == "https://example.com/a"
        assert is_retryable(exc_info.value)

    async def test_not_found_is_permanent(self) -> None:
        with pytest.raises(HttpError) as exc_info:
            await make_extractor(serve("gone", status_code=404)).extract("https://example.com/a")
        assert not is_retryable(exc_info.value)

    async def test_unsupported_content_type(self) -> None:
        extractor = make_extractor(serve("%PDF-1.4", content_type="application/pdf"))
        with pytest.raises(NonRetryableError) as exc_info:
            await extractor.extract("https://example.com/paper.pdf")
        assert exc_info.value.code == "unsupported_content_type"

    async def test_invalid_url_never_fetched(self) -> None:
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, text="")

        with pytest.raises(NonRetryableError):
            await make_extractor(handler).extract("javascript:alert(1)")
        assert requests == []

    async def test_network_errors_propagate_as_retryable(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(httpx.ConnectError) as exc_info:
            await make_extractor(handler).extract("https://example.com/a")
        assert is_retryable(exc_info.value)

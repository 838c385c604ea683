"""Tests for error classification and Retry-After handling.

This module verifies:
- Explicit Retryable/NonRetryable wrappers win over everything else
- HTTP-shaped errors are classified by status code
- Timeouts, cancellation and network errors are retryable
- Unknown errors fail closed
- Retry-After headers parse as seconds or HTTP dates
"""

import asyncio
from datetime import datetime, timedelta, timezone
from email.utils import format_datetime

import httpx
import pytest
from pydantic import BaseModel, ValidationError

from bmgraph.errors import (
    HttpError,
    LLMResponseValidationError,
    LLMTimeoutError,
    NonRetryableError,
    RetryableError,
    UnsupportedImageError,
    error_message,
    is_retryable,
    parse_retry_after_seconds,
    retry_after_of,
)


class _StatusCarrier(Exception):
    def __init__(self, status: int) -> None:
        super().__init__(f"status {status}")
        self.status = status


class TestIsRetryable:
    """Classification of pipeline failures."""

    @pytest.mark.parametrize("status", [408, 409, 425, 429, 500, 502, 503, 599])
    def test_retryable_statuses(self, status: int) -> None:
        assert is_retryable(HttpError("boom", status=status)) is True

    @pytest.mark.parametrize("status", [400, 401, 403, 404, 410, 422, 451])
    def test_non_retryable_statuses(self, status: int) -> None:
        assert is_retryable(HttpError("boom", status=status)) is False

    def test_rate_limit_is_retryable_and_not_found_is_not(self) -> None:
        assert is_retryable(HttpError("slow down", status=429)) is True
        assert is_retryable(HttpError("gone", status=404)) is False

    def test_any_object_with_status_attribute(self) -> None:
        assert is_retryable(_StatusCarrier(503)) is True
        assert is_retryable(_StatusCarrier(400)) is False

    def test_httpx_status_error(self) -> None:
        request = httpx.Request("GET", "https://example.com")
        response = httpx.Response(502, request=request)
        error = httpx.HTTPStatusError("bad gateway", request=request, response=response)
        assert is_retryable(error) is True

    def test_explicit_wrappers(self) -> None:
        assert is_retryable(RetryableError("try later")) is True
        assert is_retryable(NonRetryableError("never")) is False

    def test_timeouts_and_cancellation(self) -> None:
        assert is_retryable(TimeoutError()) is True
        assert is_retryable(asyncio.TimeoutError()) is True
        assert is_retryable(asyncio.CancelledError()) is True
        assert is_retryable(LLMTimeoutError("slow model")) is True
        assert is_retryable(httpx.ReadTimeout("timed out")) is True

    def test_network_errors(self) -> None:
        assert is_retryable(httpx.ConnectError("refused")) is True
        assert is_retryable(httpx.RemoteProtocolError("malformed")) is True
        assert is_retryable(ConnectionResetError()) is True

    def test_validation_errors_are_permanent(self) -> None:
        class _Shape(BaseModel):
            value: int

        with pytest.raises(ValidationError) as exc_info:
            _Shape.model_validate({"value": "not a number"})
        assert is_retryable(exc_info.value) is False
        assert is_retryable(LLMResponseValidationError("bad json")) is False
        assert is_retryable(UnsupportedImageError("svg", mime_type="image/svg+xml")) is False

    def test_unknown_errors_fail_closed(self) -> None:
        assert is_retryable(ValueError("???")) is False
        assert is_retryable(KeyError("missing")) is False
        assert is_retryable(TypeError("bad call")) is False


class TestHttpError:
    def test_from_response_carries_status_and_retry_after(self) -> None:
        request = httpx.Request("GET", "https://example.com/page")
        response = httpx.Response(429, headers={"Retry-After": "12"}, request=request)

        error = HttpError.from_response(response)

        assert error.status == 429
        assert error.code == "http_429"
        assert error.url == "https://example.com/page"
        assert error.retry_after_seconds == 12
        assert retry_after_of(error) == 12

    def test_retry_after_absent(self) -> None:
        assert retry_after_of(HttpError("boom", status=503)) is None
        assert retry_after_of(ValueError("x")) is None

    def test_error_message_falls_back_to_type_name(self) -> None:
        assert error_message(NonRetryableError("Invalid URL: nope")) == "Invalid URL: nope"
        assert error_message(TimeoutError()) == "TimeoutError"


class TestParseRetryAfter:
    def test_seconds(self) -> None:
        assert parse_retry_after_seconds("30") == 30
        assert parse_retry_after_seconds(" 5 ") == 5

    def test_negative_seconds_clamp_to_zero(self) -> None:
        assert parse_retry_after_seconds("-3") == 0

    def test_http_date(self) -> None:
        now = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
        header = format_datetime(now + timedelta(seconds=90), usegmt=True)
        assert parse_retry_after_seconds(header, now=now) == 90

    def test_past_date_is_zero(self) -> None:
        now = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
        header = format_datetime(now - timedelta(minutes=5), usegmt=True)
        assert parse_retry_after_seconds(header, now=now) == 0

    @pytest.mark.parametrize("header", [None, "", "soon", "Tuesday-ish"])
    def test_unparseable(self, header: str | None) -> None:
        assert parse_retry_after_seconds(header) is None

"""Error taxonomy and retry classification for the ingestion pipeline.

Every failure that reaches a queue handler is sorted into one of two
buckets:

- **Retryable**: transient infrastructure or provider failures (network
  errors, timeouts, 5xx responses, 408/409/425/429). The queue adapter
  requeues the message with backoff.
- **NonRetryable**: permanent failures (validation errors, 4xx responses
  other than rate limiting/conflict, content that cannot be parsed). The
  owning bookmark is marked FAILED and the message is not requeued.

Stages raise the explicit wrapper errors defined here when they know the
answer, and let library errors (httpx, asyncio) propagate otherwise;
`is_retryable` maps those. Anything it does not recognise is treated as
NonRetryable so unknown errors never get infinite retries.
"""

import asyncio
import math
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any

import httpx

RETRYABLE_STATUSES = frozenset({408, 409, 425, 429})
NON_RETRYABLE_STATUSES = frozenset({400, 401, 403, 404, 422})


class PipelineError(Exception):
    """Base class for errors raised by pipeline stages.

    Attributes:
        code: Short machine-readable error code (e.g. ``"invalid_url"``).
        message: Human-readable description, persisted on FAILED bookmarks.
        cause: The underlying exception, if any.
    """

    def __init__(self, message: str, *, code: str = "pipeline_error", cause: BaseException | None = None) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.cause = cause
        if cause is not None:
            self.__cause__ = cause


class RetryableError(PipelineError):
    """A transient failure; reattempting the message may succeed."""


class NonRetryableError(PipelineError):
    """A permanent failure; reattempting the message cannot succeed."""


class HttpError(PipelineError):
    """An HTTP-shaped failure from a fetch or provider call.

    Carries the response status so the classifier can decide without
    inspecting provider-specific detail. ``retry_after_seconds`` is taken
    from the ``Retry-After`` header when the server sent one.
    """

    def __init__(
        self,
        message: str,
        *,
        status: int,
        url: str | None = None,
        retry_after_seconds: float | None = None,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(message, code=f"http_{status}", cause=cause)
        self.status = status
        self.url = url
        self.retry_after_seconds = retry_after_seconds

    @classmethod
    def from_response(cls, response: httpx.Response, message: str | None = None) -> "HttpError":
        """Build an HttpError from a non-2xx httpx response."""
        try:
            url: str | None = str(response.request.url)
        except RuntimeError:
            url = None
        return cls(
            message or f"Request failed: {response.status_code} {response.reason_phrase}",
            status=response.status_code,
            url=url,
            retry_after_seconds=parse_retry_after_seconds(response.headers.get("retry-after")),
        )


class LLMTimeoutError(TimeoutError):
    """Raised when an LLM request exceeds the configured timeout."""


class LLMResponseValidationError(NonRetryableError):
    """The LLM answered, but the answer does not fit the expected shape."""

    def __init__(self, message: str, *, raw_response: str | None = None, cause: BaseException | None = None) -> None:
        super().__init__(message, code="llm_invalid_response", cause=cause)
        self.raw_response = raw_response


class UnsupportedImageError(NonRetryableError):
    """The image is of a type vision models cannot process (SVG, ICO, ...)."""

    def __init__(self, message: str, *, mime_type: str) -> None:
        super().__init__(message, code="unsupported_image")
        self.mime_type = mime_type


class DuplicateKeyError(Exception):
    """A storage insert violated a uniqueness constraint.

    Raised by repository backends; callers that race on inserts treat it
    as "row already exists" rather than as a failure.
    """

    def __init__(self, table: str, key: tuple[Any, ...]) -> None:
        super().__init__(f"Duplicate key in {table}: {key!r}")
        self.table = table
        self.key = key


class InvalidStatusTransition(RuntimeError):
    """A bookmark status change not present in the transition table.

    This is a programming error, not a runtime failure to be retried.
    """

    def __init__(self, current: str, target: str) -> None:
        super().__init__(f"Illegal bookmark status transition {current} -> {target}")
        self.current = current
        self.target = target


def _status_of(error: BaseException) -> int | None:
    """Return the HTTP status carried by an error, if it has one."""
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code
    for attr in ("status", "status_code"):
        value = getattr(error, attr, None)
        if isinstance(value, int) and not isinstance(value, bool):
            return value
    return None


def _classify_status(status: int) -> bool | None:
    if status in RETRYABLE_STATUSES or 500 <= status <= 599:
        return True
    if status in NON_RETRYABLE_STATUSES or 400 <= status <= 499:
        return False
    return None


def is_retryable(error: BaseException) -> bool:
    """Decide whether a failure is transient.

    Order of precedence:
        1. Explicit RetryableError / NonRetryableError wrappers.
        2. HTTP-shaped errors, by status code.
        3. Cancellation and timeouts.
        4. Generic network errors (connection failures, malformed responses).
        5. Anything else fails closed (not retryable).
    """
    if isinstance(error, RetryableError):
        return True
    if isinstance(error, NonRetryableError):
        return False

    status = _status_of(error)
    if status is not None:
        verdict = _classify_status(status)
        if verdict is not None:
            return verdict

    if isinstance(error, (TimeoutError, asyncio.TimeoutError, asyncio.CancelledError, httpx.TimeoutException)):
        return True

    if isinstance(error, (httpx.TransportError, httpx.RequestError, ConnectionError)):
        return True

    return False


def retry_after_of(error: BaseException) -> float | None:
    """Return the server-requested retry delay carried by an error, if any."""
    value = getattr(error, "retry_after_seconds", None)
    if isinstance(value, (int, float)) and value > 0:
        return float(value)
    return None


def error_message(error: BaseException) -> str:
    """Message persisted on a FAILED bookmark."""
    text = str(error).strip()
    return text or type(error).__name__


def parse_retry_after_seconds(header_value: str | None, now: datetime | None = None) -> float | None:
    """Parse a Retry-After header (delta-seconds or HTTP-date).

    Returns None when the header is missing or unparseable; dates in the
    past yield 0.
    """
    if not header_value:
        return None
    header_value = header_value.strip()
    try:
        return float(max(0, int(header_value)))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(header_value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    return max(0.0, float(math.ceil((when - now).total_seconds())))

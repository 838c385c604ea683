"""Backoff policy applied by the queue adapter to retryable failures."""

import random

from pydantic import BaseModel, Field, model_validator

from bmgraph.errors import retry_after_of


class RetryPolicy(BaseModel, frozen=True):
    """Exponential backoff between a base and a maximum delay.

    The orchestrator never retries internally; the queue adapter consults
    this policy when a handler raises a retryable error.
    """

    base_delay_seconds: float = Field(
        default=2.0,
        gt=0,
        description="Delay before the first retry.",
    )
    max_delay_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Upper bound on any single retry delay.",
    )
    max_concurrency: int = Field(
        default=2,
        ge=1,
        description="Maximum number of messages processed concurrently.",
    )
    max_attempts: int = Field(
        default=3,
        ge=1,
        description="Deliveries (first attempt included) before a message is dead-lettered.",
    )
    jitter: bool = Field(
        default=True,
        description="Randomize each delay within [delay/2, delay].",
    )

    @model_validator(mode="after")
    def _max_not_below_base(self) -> "RetryPolicy":
        if self.max_delay_seconds < self.base_delay_seconds:
            raise ValueError("max_delay_seconds must be >= base_delay_seconds")
        return self

    def backoff(self, attempt: int) -> float:
        """Un-jittered delay after the given (1-based) failed attempt."""
        exponent = max(0, attempt - 1)
        # cap the exponent so large attempt counts cannot overflow
        return min(self.max_delay_seconds, self.base_delay_seconds * (2 ** min(exponent, 32)))

    def delay_for(self, attempt: int, error: BaseException | None = None) -> float:
        """Delay before redelivering a message that failed ``attempt`` times.

        A Retry-After carried by the error is honoured as a floor, capped at
        ``max_delay_seconds``.
        """
        delay = self.backoff(attempt)
        if self.jitter:
            delay = random.uniform(delay / 2, delay)
        retry_after = retry_after_of(error) if error is not None else None
        if retry_after is not None:
            delay = max(delay, min(retry_after, self.max_delay_seconds))
        return delay

    def should_retry(self, attempts: int) -> bool:
        """Whether a message delivered ``attempts`` times may be delivered again."""
        return attempts < self.max_attempts

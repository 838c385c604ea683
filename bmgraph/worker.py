"""
In-process queue runtime for the ingestion handlers.

A `QueueWorker` owns an asyncio queue and a pool of worker tasks. Each
delivered message is passed to the handler; a handler that returns
acknowledges the message. When it raises, the error classifier decides:
retryable failures are redelivered after the retry policy's backoff until
the attempt budget runs out, everything else is dead-lettered at once.
"""

import asyncio
import logging
import uuid
from typing import Any, Awaitable, Callable

from pydantic import BaseModel, ConfigDict, Field

from bmgraph.errors import is_retryable
from bmgraph.pipeline.interfaces import MessageQueueInterface
from bmgraph.retry import RetryPolicy

logger = logging.getLogger(__name__)

Handler = Callable[[Any], Awaitable[Any]]
DeadLetterHook = Callable[[Any, BaseException], Awaitable[None]]


class QueueEnvelope(BaseModel):
    """A message body plus its delivery bookkeeping."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    message_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    body: Any
    attempts: int = Field(default=0, description="Deliveries so far.")


class DeadLetter(BaseModel):
    """A message the worker gave up on, with the error that ended it."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    envelope: QueueEnvelope
    error: BaseException


class QueueWorker(MessageQueueInterface):
    """Bounded pool of asyncio tasks consuming one queue.

    Example:
        ```python
        worker = QueueWorker("ingestion", orchestrator.handle, policy, orchestrator.handle_dead_letter)
        await worker.start()
        await worker.send(message.model_dump(by_alias=True))
        await worker.join()
        await worker.stop()
        ```
    """

    def __init__(
        self,
        name: str,
        handler: Handler,
        policy: RetryPolicy | None = None,
        on_dead_letter: DeadLetterHook | None = None,
    ) -> None:
        self.name = name
        self.handler = handler
        self.policy = policy or RetryPolicy()
        self.on_dead_letter = on_dead_letter
        self.dead_letters: list[DeadLetter] = []
        self.redeliveries = 0
        self._queue: asyncio.Queue[QueueEnvelope] = asyncio.Queue()
        self._tasks: list[asyncio.Task] = []
        self._scheduled: set[asyncio.Task] = set()

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    async def start(self) -> None:
        """Start ``policy.max_concurrency`` worker tasks."""
        if self._tasks:
            return
        for index in range(self.policy.max_concurrency):
            task = asyncio.create_task(self._worker_loop(), name=f"{self.name}-worker-{index}")
            self._tasks.append(task)
        logger.info("Started %s %s worker(s)", self.policy.max_concurrency, self.name)

    async def stop(self) -> None:
        """Cancel worker tasks and any pending delayed redeliveries."""
        for task in [*self._tasks, *self._scheduled]:
            task.cancel()
        for task in [*self._tasks, *self._scheduled]:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks.clear()
        self._scheduled.clear()
        logger.info("Stopped %s workers", self.name)

    async def send(self, body: Any, delay_seconds: float = 0) -> None:
        """Enqueue a message. Non-blocking; delayed sends are scheduled."""
        await self._enqueue(QueueEnvelope(body=body), delay_seconds)

    async def join(self) -> None:
        """Wait until nothing is queued, in flight or scheduled for redelivery."""
        while True:
            await self._queue.join()
            if not self._scheduled:
                return
            await asyncio.gather(*list(self._scheduled), return_exceptions=True)

    async def _enqueue(self, envelope: QueueEnvelope, delay_seconds: float) -> None:
        if delay_seconds <= 0:
            self._queue.put_nowait(envelope)
            return

        async def _deliver_later() -> None:
            await asyncio.sleep(delay_seconds)
            self._queue.put_nowait(envelope)

        task = asyncio.create_task(_deliver_later())
        self._scheduled.add(task)
        task.add_done_callback(self._scheduled.discard)

    async def _worker_loop(self) -> None:
        """Pull messages from the queue and run the handler."""
        while True:
            envelope = await self._queue.get()
            try:
                await self._deliver(envelope)
            except Exception as e:
                logger.exception("%s worker loop error: %s", self.name, e)
            finally:
                self._queue.task_done()

    async def _deliver(self, envelope: QueueEnvelope) -> None:
        envelope = envelope.model_copy(update={"attempts": envelope.attempts + 1})
        try:
            await self.handler(envelope.body)
        except asyncio.CancelledError as e:
            # Only a cancel aimed at this worker task (stop) ends the loop.
            task = asyncio.current_task()
            if task is not None and task.cancelling():
                raise
            await self._handle_failure(envelope, e)
        except Exception as e:
            await self._handle_failure(envelope, e)

    async def _handle_failure(self, envelope: QueueEnvelope, error: BaseException) -> None:
        retryable = is_retryable(error)
        if retryable and self.policy.should_retry(envelope.attempts):
            delay = self.policy.delay_for(envelope.attempts, error)
            logger.warning(
                "%s message %s failed (attempt %s/%s, %s: %s); retrying in %.1fs",
                self.name,
                envelope.message_id,
                envelope.attempts,
                self.policy.max_attempts,
                type(error).__name__,
                error,
                delay,
            )
            self.redeliveries += 1
            await self._enqueue(envelope, delay)
            return

        logger.error(
            "%s message %s dead-lettered after %s attempt(s) (%s): %s",
            self.name,
            envelope.message_id,
            envelope.attempts,
            "retries exhausted" if retryable else "not retryable",
            error,
        )
        self.dead_letters.append(DeadLetter(envelope=envelope, error=error))
        if self.on_dead_letter is not None:
            await self.on_dead_letter(envelope.body, error)

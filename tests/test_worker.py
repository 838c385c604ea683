"""Tests for the in-process queue worker."""

import asyncio
from typing import Any

from bmgraph.bookmark import BookmarkStatus
from bmgraph.errors import HttpError, NonRetryableError
from bmgraph.ingest import BookmarkIngestionOrchestrator, IngestionOutcome, OutcomeStatus
from bmgraph.retry import RetryPolicy
from bmgraph.storage.memory import InMemoryBookmarkStorage
from bmgraph.worker import QueueWorker

from tests.conftest import (
    BOOKMARK_ID,
    FakeContentExtractor,
    ScriptedLLMProvider,
    make_bookmark,
    make_message,
    summary_response,
)

FAST = RetryPolicy(base_delay_seconds=0.01, max_delay_seconds=0.02, jitter=False)


class FlakyHandler:
    """Raises the queued errors in order, then succeeds."""

    def __init__(self, *errors: BaseException) -> None:
        self.errors = list(errors)
        self.bodies: list[Any] = []

    async def __call__(self, body: Any) -> None:
        self.bodies.append(body)
        if self.errors:
            raise self.errors.pop(0)


async def run(worker: QueueWorker, *bodies: Any) -> None:
    await worker.start()
    try:
        for body in bodies:
            await worker.send(body)
        await asyncio.wait_for(worker.join(), timeout=5)
    finally:
        await worker.stop()


class TestDelivery:
    async def test_success_acknowledges(self) -> None:
        handler = FlakyHandler()
        worker = QueueWorker("test", handler, FAST)

        await run(worker, {"n": 1}, {"n": 2})

        assert handler.bodies == [{"n": 1}, {"n": 2}]
        assert worker.dead_letters == []
        assert worker.redeliveries == 0
        assert not worker.running

    async def test_retryable_failure_redelivered(self) -> None:
        handler = FlakyHandler(HttpError("busy", status=503))
        worker = QueueWorker("test", handler, FAST)

        await run(worker, {"n": 1})

        assert handler.bodies == [{"n": 1}, {"n": 1}]
        assert worker.redeliveries == 1
        assert worker.dead_letters == []

    async def test_retries_exhausted_dead_letters(self) -> None:
        seen: list[tuple[Any, BaseException]] = []

        async def on_dead_letter(body: Any, error: BaseException) -> None:
            seen.append((body, error))

        handler = FlakyHandler(*[HttpError("busy", status=503) for _ in range(5)])
        worker = QueueWorker("test", handler, FAST, on_dead_letter)

        await run(worker, {"n": 1})

        assert len(handler.bodies) == FAST.max_attempts
        assert worker.redeliveries == FAST.max_attempts - 1
        [dead] = worker.dead_letters
        assert dead.envelope.attempts == FAST.max_attempts
        assert seen[0][0] == {"n": 1}
        assert isinstance(seen[0][1], HttpError)

    async def test_non_retryable_dead_lettered_at_once(self) -> None:
        handler = FlakyHandler(NonRetryableError("bad input"))
        worker = QueueWorker("test", handler, FAST)

        await run(worker, {"n": 1})

        assert len(handler.bodies) == 1
        assert worker.redeliveries == 0
        assert len(worker.dead_letters) == 1

    async def test_unknown_errors_fail_closed(self) -> None:
        handler = FlakyHandler(TypeError("bug"))
        worker = QueueWorker("test", handler, FAST)

        await run(worker, {"n": 1})

        assert len(handler.bodies) == 1
        assert len(worker.dead_letters) == 1

    async def test_concurrency_bounded(self) -> None:
        in_flight = 0
        peak = 0

        async def handler(body: Any) -> None:
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.01)
            in_flight -= 1

        worker = QueueWorker("test", handler, FAST.model_copy(update={"max_concurrency": 2}))

        await run(worker, *range(6))

        assert peak == 2

    async def test_cancelled_handler_retried_and_worker_survives(self) -> None:
        handler = FlakyHandler(asyncio.CancelledError())
        worker = QueueWorker("test", handler, FAST)

        await worker.start()
        try:
            await worker.send({"n": 1})
            await asyncio.wait_for(worker.join(), timeout=5)
            assert all(not task.done() for task in worker._tasks)
            await worker.send({"n": 2})
            await asyncio.wait_for(worker.join(), timeout=5)
        finally:
            await worker.stop()

        assert handler.bodies == [{"n": 1}, {"n": 1}, {"n": 2}]
        assert worker.redeliveries == 1
        assert worker.dead_letters == []

    async def test_delayed_send(self) -> None:
        handler = FlakyHandler()
        worker = QueueWorker("test", handler, FAST)
        await worker.start()
        try:
            await worker.send("later", delay_seconds=0.01)
            await asyncio.wait_for(worker.join(), timeout=5)
        finally:
            await worker.stop()
        assert handler.bodies == ["later"]


class TestWorkerWithOrchestrator:
    async def test_transient_fetch_failure_recovers(
        self,
        orchestrator: BookmarkIngestionOrchestrator,
        bookmark_storage: InMemoryBookmarkStorage,
        llm: ScriptedLLMProvider,
    ) -> None:
        await bookmark_storage.add(make_bookmark())
        llm.queue(summary_response())
        extractor = FakeContentExtractor(errors=[HttpError("Service Unavailable", status=503)])
        flaky = orchestrator.model_copy(update={"content_extractor": extractor})
        statuses: list[BookmarkStatus] = []

        async def handler(body: Any) -> None:
            current = await bookmark_storage.get(BOOKMARK_ID)
            assert current is not None
            statuses.append(current.status)
            await flaky.handle(body)

        worker = QueueWorker("ingestion", handler, FAST, flaky.handle_dead_letter)

        await run(worker, make_message().model_dump(by_alias=True))

        assert statuses == [BookmarkStatus.PENDING, BookmarkStatus.PENDING]
        bookmark = await bookmark_storage.get(BOOKMARK_ID)
        assert bookmark is not None and bookmark.status is BookmarkStatus.DONE
        assert worker.dead_letters == []

    async def test_persistent_failure_marks_failed(
        self,
        orchestrator: BookmarkIngestionOrchestrator,
        bookmark_storage: InMemoryBookmarkStorage,
    ) -> None:
        await bookmark_storage.add(make_bookmark())
        errors = [HttpError("Service Unavailable", status=503) for _ in range(FAST.max_attempts)]
        flaky = orchestrator.model_copy(update={"content_extractor": FakeContentExtractor(errors=errors)})
        worker = QueueWorker("ingestion", flaky.handle, FAST, flaky.handle_dead_letter)

        await run(worker, make_message().model_dump(by_alias=True))

        bookmark = await bookmark_storage.get(BOOKMARK_ID)
        assert bookmark is not None
        assert bookmark.status is BookmarkStatus.FAILED
        assert bookmark.error_message == "Retries exhausted: Service Unavailable"

    async def test_duplicate_message_delivered_concurrently(
        self,
        orchestrator: BookmarkIngestionOrchestrator,
        bookmark_storage: InMemoryBookmarkStorage,
    ) -> None:
        await bookmark_storage.add(make_bookmark())
        slow = orchestrator.model_copy(
            update={"llm": ScriptedLLMProvider([summary_response(), summary_response()], delay=0.02)}
        )
        outcomes: list[IngestionOutcome] = []

        async def handler(body: Any) -> None:
            outcomes.append(await slow.handle(body))

        worker = QueueWorker(
            "ingestion",
            handler,
            FAST.model_copy(update={"max_concurrency": 2}),
            slow.handle_dead_letter,
        )
        body = make_message().model_dump(by_alias=True)

        await run(worker, body, body)

        assert worker.dead_letters == []
        assert sorted(outcome.status for outcome in outcomes) == [OutcomeStatus.DONE, OutcomeStatus.SKIPPED]
        bookmark = await bookmark_storage.get(BOOKMARK_ID)
        assert bookmark is not None
        assert bookmark.status is BookmarkStatus.DONE
        assert bookmark.error_message is None

"""
Enrichment pipeline — Async dispatch queue.

FIFO queue keyed by prospect id with configurable concurrency. The batch
orchestrator enqueues and returns immediately; consumer tasks run the worker
in the background. ``halt()`` drops everything still waiting and hands each
dropped task to the discard handler so its lock and JobItem get cleaned up.
"""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

logger = logging.getLogger("enrichment.queue")

PROCESSED_HISTORY = 500


@dataclass(frozen=True)
class EnrichmentTask:
    prospect_id: str
    worker_id: str
    job_id: Optional[str] = None
    item_id: Optional[str] = None


class EnrichmentQueue:
    """Async FIFO enrichment queue with up to ``max_concurrent`` consumers."""

    def __init__(self, max_concurrent: int = 3):
        self._queue: deque[EnrichmentTask] = deque()
        self._max_concurrent = max(1, max_concurrent)
        self._consumers: set[asyncio.Task] = set()
        self._in_flight: set[str] = set()  # prospect ids queued or running
        self._process_fn: Optional[Callable[[EnrichmentTask], Awaitable[None]]] = None
        self._discard_fn: Optional[Callable[[EnrichmentTask, str], Awaitable[None]]] = None
        self._processed: deque[str] = deque(maxlen=PROCESSED_HISTORY)  # recent prospect ids

    def set_processor(self, fn: Callable[[EnrichmentTask], Awaitable[None]]) -> None:
        """Set the async function that runs each task.

        Signature: ``async fn(task: EnrichmentTask) -> None``
        """
        self._process_fn = fn

    def set_discard_handler(self, fn: Callable[[EnrichmentTask, str], Awaitable[None]]) -> None:
        """Set the async function called for every task dropped by ``halt()``.

        Signature: ``async fn(task: EnrichmentTask, reason: str) -> None``
        """
        self._discard_fn = fn

    async def enqueue(self, task: EnrichmentTask) -> bool:
        """Add a task. Returns False when the prospect is already queued/running."""
        if task.prospect_id in self._in_flight:
            logger.info("Prospect %s already queued — ignoring duplicate", task.prospect_id)
            return False
        self._in_flight.add(task.prospect_id)
        self._queue.append(task)
        logger.info("Prospect %s queued (position %d)", task.prospect_id, len(self._queue))

        active = sum(1 for c in self._consumers if not c.done())
        if active < self._max_concurrent:
            consumer = asyncio.create_task(self._consumer())
            self._consumers.add(consumer)
            consumer.add_done_callback(self._consumers.discard)
        return True

    async def _consumer(self) -> None:
        """Pull tasks until the queue is empty."""
        while self._queue:
            task = self._queue.popleft()
            try:
                if self._process_fn:
                    await self._process_fn(task)
            except Exception as e:
                logger.error("Enrichment of %s failed in queue: %s", task.prospect_id, e)
            finally:
                self._in_flight.discard(task.prospect_id)
                self._processed.append(task.prospect_id)

    async def halt(self, reason: str) -> int:
        """Drop every waiting task (running ones finish). Returns the number dropped."""
        dropped = list(self._queue)
        self._queue.clear()
        for task in dropped:
            self._in_flight.discard(task.prospect_id)
            if self._discard_fn:
                try:
                    await self._discard_fn(task, reason)
                except Exception as e:
                    logger.error("Discard handler failed for %s: %s", task.prospect_id, e)
        if dropped:
            logger.warning("⏸️ Queue halted (%s) — %d task(s) dropped", reason, len(dropped))
        return len(dropped)

    def drop_job(self, job_id: str) -> list[EnrichmentTask]:
        """Remove waiting tasks of one job without calling the discard handler."""
        kept: deque[EnrichmentTask] = deque()
        removed: list[EnrichmentTask] = []
        for task in self._queue:
            (removed if task.job_id == job_id else kept).append(task)
        self._queue = kept
        for task in removed:
            self._in_flight.discard(task.prospect_id)
        return removed

    @property
    def pending(self) -> int:
        """Number of tasks waiting in queue."""
        return len(self._queue)

    @property
    def is_running(self) -> bool:
        """Whether any consumer is currently processing."""
        return any(not c.done() for c in self._consumers)

    @property
    def processed(self) -> list[str]:
        """Most recently processed prospect ids, oldest first."""
        return list(self._processed)

    async def drain(self) -> None:
        """Wait for all queued tasks to finish. Useful for testing."""
        while self._consumers:
            await asyncio.gather(*list(self._consumers), return_exceptions=True)

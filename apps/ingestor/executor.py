"""
Single-flight adaptive rate limiter for the extraction service.

Every call to the rate-limited service is submitted here. One worker task
drains a FIFO queue, so at most one operation runs at a time no matter how
many callers submit concurrently, and results are delivered in submission
order.

The next call waits until base_interval * backoff_multiplier has passed since
the last success finished (last_call_start) and since the last attempt
started, whichever is later. The multiplier tracks consecutive failures:

    failure: multiplier = min(max_multiplier, 1 + failures * failure_step)
    success: multiplier = max(1, multiplier * success_decay), failures = 0

After each success the worker pauses post_success_delay before the next
entry, after each failure post_failure_delay.

All queue state is mutated only by the event loop that owns the executor;
submit() appends and wakes the worker, the worker does everything else.
"""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Deque, Optional, TypeVar

from apps.ingestor.retry import RetryingCaller
from utils.clock import Clock
from utils.schemas import ExecutorStatus

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class QueueEntry:
    operation: Callable[[], Awaitable[Any]]
    future: asyncio.Future
    enqueued_at: float
    max_retries: Optional[int] = field(default=None)


class RateLimitedExecutor:
    def __init__(
        self,
        caller: RetryingCaller,
        clock: Clock,
        *,
        base_interval: float = 8.0,
        post_success_delay: float = 2.0,
        post_failure_delay: float = 5.0,
        max_multiplier: float = 5.0,
        failure_step: float = 0.5,
        success_decay: float = 0.8,
    ) -> None:
        self._caller = caller
        self._clock = clock
        self.base_interval = base_interval
        self.post_success_delay = post_success_delay
        self.post_failure_delay = post_failure_delay
        self.max_multiplier = max_multiplier
        self.failure_step = failure_step
        self.success_decay = success_decay

        self.backoff_multiplier = 1.0
        self.consecutive_failures = 0
        self.last_call_start: Optional[float] = None
        self.last_attempt_start: Optional[float] = None

        self._queue: Deque[QueueEntry] = deque()
        self._processing = False
        self._worker: Optional[asyncio.Task] = None
        self._closed = False

    @property
    def effective_interval(self) -> float:
        return self.base_interval * self.backoff_multiplier

    async def submit(
        self,
        operation: Callable[[], Awaitable[T]],
        max_retries: Optional[int] = None,
    ) -> T:
        """Queue operation and wait for its result.

        Cancelling the awaiting caller before the entry is dequeued drops it
        without consuming rate budget. Once started, an operation runs to
        completion or until its retries are exhausted.
        """
        if self._closed:
            raise RuntimeError("RateLimitedExecutor is closed")

        loop = asyncio.get_running_loop()
        entry = QueueEntry(
            operation=operation,
            future=loop.create_future(),
            enqueued_at=self._clock.now(),
            max_retries=max_retries,
        )
        self._queue.append(entry)
        logger.debug("Operation queued", extra={"queue_length": len(self._queue)})

        if not self._processing:
            self._processing = True
            self._worker = asyncio.create_task(self._drain())

        return await entry.future

    def status(self) -> ExecutorStatus:
        queue_length = len(self._queue)
        return ExecutorStatus(
            queue_length=queue_length,
            is_processing=self._processing,
            estimated_wait_time=queue_length * self.effective_interval,
            backoff_multiplier=self.backoff_multiplier,
            consecutive_failures=self.consecutive_failures,
        )

    async def _drain(self) -> None:
        try:
            while self._queue:
                entry = self._queue.popleft()
                if entry.future.done():
                    logger.debug("Skipping cancelled operation")
                    continue
                try:
                    await self._run(entry)
                except asyncio.CancelledError:
                    if not entry.future.done():
                        entry.future.set_exception(RuntimeError("RateLimitedExecutor closed"))
                    raise
        finally:
            self._processing = False

    async def _run(self, entry: QueueEntry) -> None:
        interval = self.effective_interval
        anchors = [t for t in (self.last_call_start, self.last_attempt_start) if t is not None]
        if anchors:
            elapsed = self._clock.now() - max(anchors)
            if elapsed < interval:
                wait = interval - elapsed
                logger.info(
                    "Rate limiting: waiting before next call",
                    extra={"wait_seconds": round(wait, 3), "multiplier": self.backoff_multiplier},
                )
                await self._clock.sleep(wait)

        # The caller may have gone away while we were spacing the call.
        if entry.future.done():
            return

        self.last_attempt_start = self._clock.now()
        try:
            result = await self._caller.call(entry.operation, entry.max_retries)
        except Exception as e:
            self.consecutive_failures += 1
            self.backoff_multiplier = min(
                self.max_multiplier, 1 + self.consecutive_failures * self.failure_step
            )
            logger.warning(
                "Rate-limited operation failed",
                extra={
                    "error": str(e),
                    "consecutive_failures": self.consecutive_failures,
                    "multiplier": self.backoff_multiplier,
                },
            )
            if not entry.future.done():
                entry.future.set_exception(e)
            await self._clock.sleep(self.post_failure_delay)
        else:
            self.last_call_start = self._clock.now()
            self.backoff_multiplier = max(1.0, self.backoff_multiplier * self.success_decay)
            self.consecutive_failures = 0
            if not entry.future.done():
                entry.future.set_result(result)
            await self._clock.sleep(self.post_success_delay)

    async def aclose(self) -> None:
        """Stop the worker and fail everything still queued."""
        self._closed = True
        while self._queue:
            entry = self._queue.popleft()
            if not entry.future.done():
                entry.future.set_exception(RuntimeError("RateLimitedExecutor closed"))

        if self._worker is not None and not self._worker.done():
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass

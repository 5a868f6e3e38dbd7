"""
Per-call retry for rate-limited operations.

Only RateLimitedError is retried. Each retry waits

    min(base_delay * exponent_base ** attempt + uniform(0, jitter), max_delay)

where attempt counts the failures so far (1 for the first retry). Any other
exception propagates on the first attempt. When every attempt is rate
limited the caller raises ExhaustedRetriesError, which the orchestrator
treats as systemic overload.
"""

import logging
import random
from typing import Awaitable, Callable, Optional, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
)

from utils.clock import Clock
from utils.errors import ExhaustedRetriesError, RateLimitedError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RateLimitBackoff:
    """tenacity wait strategy: exponential growth with additive jitter, capped."""

    def __init__(
        self,
        base_delay: float,
        exponent_base: float,
        jitter: float,
        max_delay: float,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.base_delay = base_delay
        self.exponent_base = exponent_base
        self.jitter = jitter
        self.max_delay = max_delay
        self._rng = rng or random.Random()

    def __call__(self, retry_state: RetryCallState) -> float:
        attempt = retry_state.attempt_number
        delay = self.base_delay * self.exponent_base ** attempt
        return min(delay + self._rng.uniform(0, self.jitter), self.max_delay)


class RetryingCaller:
    def __init__(
        self,
        clock: Clock,
        *,
        max_retries: int = 3,
        base_delay: float = 15.0,
        exponent_base: float = 3.0,
        jitter: float = 5.0,
        max_delay: float = 120.0,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._clock = clock
        self.max_retries = max_retries
        self.backoff = RateLimitBackoff(base_delay, exponent_base, jitter, max_delay, rng)

    async def call(
        self,
        operation: Callable[[], Awaitable[T]],
        max_retries: Optional[int] = None,
    ) -> T:
        """Run operation, retrying only while it reports rate limiting.

        Raises:
            ExhaustedRetriesError: every one of max_retries attempts was rate limited
        """
        attempts = max_retries if max_retries is not None else self.max_retries
        retrying = AsyncRetrying(
            retry=retry_if_exception_type(RateLimitedError),
            stop=stop_after_attempt(attempts),
            wait=self.backoff,
            sleep=self._clock.sleep,
            before_sleep=before_sleep_log(logger, logging.WARNING),
        )

        try:
            return await retrying(operation)
        except RetryError as e:
            logger.error("Rate limit retries exhausted", extra={"attempts": attempts})
            raise ExhaustedRetriesError(attempts) from e.last_attempt.exception()

"""
Batch-wide circuit breaker.

Once triggered, no new pipeline work may start until the window elapses.
Expiry is purely time-based; a later trigger can extend the window but never
shorten it.
"""

import logging
from typing import Optional

from utils.clock import Clock

logger = logging.getLogger(__name__)


class CooldownGuard:
    def __init__(self, clock: Clock) -> None:
        self._clock = clock
        self._until: Optional[float] = None

    @property
    def until(self) -> Optional[float]:
        return self._until if self.is_active() else None

    def trigger(self, duration: float, reason: str = "") -> float:
        """Block new work for duration seconds. Returns the expiry timestamp."""
        until = self._clock.now() + duration
        if self._until is None or until > self._until:
            self._until = until
        logger.warning(
            "Cooldown triggered",
            extra={"duration": duration, "until": self._until, "reason": reason},
        )
        return self._until

    def is_active(self) -> bool:
        return self._until is not None and self._clock.now() < self._until

    def remaining(self) -> float:
        if not self.is_active():
            return 0.0
        return self._until - self._clock.now()

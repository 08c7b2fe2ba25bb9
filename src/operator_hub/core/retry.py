"""Retry with exponential backoff for calls that cross the network."""

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 1.0
    multiplier: float = 2.0
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    def delay_for(self, attempt: int) -> float:
        """Delay after the given (1-based) failed attempt: 1s, 2s, 4s, ..."""
        return self.base_delay * (self.multiplier ** (attempt - 1))

    def call(
        self,
        fn: Callable[[], T],
        retry_on: tuple[type[BaseException], ...] = (Exception,),
        label: str = "call",
    ) -> T:
        """Run ``fn`` until it succeeds or attempts run out.

        Only exceptions in ``retry_on`` are retried; anything else propagates
        at once. The last retriable error is re-raised when attempts run out.
        """
        for attempt in range(1, self.max_attempts + 1):
            try:
                return fn()
            except retry_on as e:
                if attempt >= self.max_attempts:
                    logger.error("%s failed after %d attempt(s): %s", label, attempt, e)
                    raise
                delay = self.delay_for(attempt)
                logger.warning(
                    "%s attempt %d/%d failed: %s; retrying in %.1fs",
                    label, attempt, self.max_attempts, e, delay,
                )
                self.sleep(delay)
        raise RuntimeError("unreachable")

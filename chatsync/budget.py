"""Wall-clock budget for a single sync run."""

import logging
import time
from typing import Callable

logger = logging.getLogger(__name__)


class BudgetGuard:
    """
    Tracks elapsed time since run start against a fixed ceiling.

    The hosting environment kills long invocations regardless of state, so
    loops ask may_proceed() before starting each unit of work and stop early
    once it answers no.
    """

    def __init__(self, ceiling_seconds: float, clock: Callable[[], float] = time.monotonic) -> None:
        self.ceiling_seconds = ceiling_seconds
        self._clock = clock
        self._started = clock()
        self.exhausted = False

    def elapsed(self) -> float:
        return self._clock() - self._started

    def elapsed_ms(self) -> int:
        return int(self.elapsed() * 1000)

    def may_proceed(self) -> bool:
        elapsed = self.elapsed()
        if elapsed > self.ceiling_seconds:
            if not self.exhausted:
                logger.warning(
                    f"Execution budget exhausted after {elapsed:.1f}s "
                    f"(ceiling {self.ceiling_seconds:.1f}s), stopping early"
                )
            self.exhausted = True
            return False
        return True

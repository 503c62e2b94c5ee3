"""Retry policy for outbound provider calls."""

import time
from typing import Callable

import httpx


def is_rate_limited(response: httpx.Response) -> bool:
    """Default rate-limit predicate: HTTP 429."""
    return response.status_code == 429


class RetryPolicy:
    """Configuration for retry behavior.

    max_retries counts retries after the first call, so a request is sent at
    most max_retries + 1 times.
    """

    def __init__(
        self,
        max_retries: int = 3,
        base_delay: float = 3.0,
        max_delay: float = 15.0,
        exponential_base: float = 2.0,
        network_delay: float = 2.0,
        rate_limited: Callable[[httpx.Response], bool] = is_rate_limited,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if not isinstance(max_retries, int) or max_retries < 0:
            raise ValueError(f"max_retries must be a non-negative integer, got: {max_retries}")
        if base_delay < 0 or network_delay < 0:
            raise ValueError(
                f"delays must be non-negative, got base_delay={base_delay}, network_delay={network_delay}"
            )
        if max_delay < base_delay:
            raise ValueError(f"max_delay ({max_delay}) must be >= base_delay ({base_delay})")

        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.network_delay = network_delay
        self.rate_limited = rate_limited
        self.sleep = sleep

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def rate_limit_backoff(self, attempt: int) -> float:
        """Delay after the given (1-based) rate-limited attempt."""
        delay = self.base_delay * (self.exponential_base ** (attempt - 1))
        return min(delay, self.max_delay)

    @classmethod
    def from_settings(cls, settings, sleep: Callable[[float], None] = time.sleep) -> "RetryPolicy":
        return cls(
            max_retries=settings.RETRY_MAX_RETRIES,
            base_delay=settings.RETRY_BASE_DELAY_SECONDS,
            max_delay=settings.RETRY_MAX_DELAY_SECONDS,
            network_delay=settings.RETRY_NETWORK_DELAY_SECONDS,
            sleep=sleep,
        )

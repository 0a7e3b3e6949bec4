"""Bounded retries with exponential backoff."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Optional, Tuple, Type, TypeVar

from .errors import RetryExhausted, TransportError
from .logging import get_logger

T = TypeVar("T")

_LOGGER = get_logger("retry")


@dataclass(frozen=True)
class RetryPolicy:
    """How many attempts an operation gets and how long to wait between them."""

    max_attempts: int = 3
    initial_delay: float = 1.0
    max_delay: float = 30.0
    exponential_base: float = 2.0

    def delay_for(self, attempt: int) -> float:
        """Delay after the given zero-based failed attempt."""
        delay = self.initial_delay * (self.exponential_base ** attempt)
        return min(delay, self.max_delay)


def call_with_retry(
    func: Callable[[], T],
    *,
    policy: RetryPolicy,
    description: str,
    retry_on: Tuple[Type[BaseException], ...] = (TransportError,),
    sleep: Callable[[float], None] = time.sleep,
    should_stop: Optional[Callable[[], bool]] = None,
    should_retry: Optional[Callable[[BaseException], bool]] = None,
) -> T:
    """Run ``func`` until it succeeds or ``policy.max_attempts`` is reached.

    Exceptions outside ``retry_on`` propagate immediately. When all attempts
    fail, or ``should_retry`` rejects an error, a :class:`RetryExhausted`
    chained to the last error is raised.
    """
    attempts = max(1, policy.max_attempts)
    last_error: Optional[BaseException] = None
    made = 0
    for attempt in range(attempts):
        made = attempt + 1
        try:
            return func()
        except retry_on as exc:
            last_error = exc
            if attempt + 1 >= attempts:
                break
            if should_retry is not None and not should_retry(exc):
                break
            if should_stop is not None and should_stop():
                break
            delay = policy.delay_for(attempt)
            _LOGGER.warning(
                "%s failed (attempt %d/%d): %s; retrying in %.1fs",
                description,
                attempt + 1,
                attempts,
                exc,
                delay,
            )
            sleep(delay)
    raise RetryExhausted(
        f"{description} failed after {made} attempt(s): {last_error}",
        attempts=made,
    ) from last_error


__all__ = ["RetryPolicy", "call_with_retry"]

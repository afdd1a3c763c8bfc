"""Exponential backoff, retry budget and the retry driver used by the pipeline."""

from __future__ import annotations

import logging
import random
import threading
import time
from dataclasses import dataclass
from typing import Callable, List, Optional, TypeVar

from .errors import CaptureError, ErrorKind, RetryBudgetExhausted, classify_error

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff schedule for one Wikibase request or sink delivery.

    ``attempts`` counts retries after the first try. The ceiling for retry
    ``n`` doubles from ``base_delay`` and is clipped at ``max_delay``; the
    actual wait is drawn below that ceiling (full jitter) so concurrent
    snapshot fetchers do not hammer the API in lockstep.
    """

    attempts: int
    base_delay: float
    max_delay: float
    jitter: Optional[Callable[[float], float]] = None

    def __post_init__(self) -> None:
        if self.attempts < 0:
            raise ValueError("attempts must be >= 0")
        if self.base_delay <= 0 or self.max_delay <= 0:
            raise ValueError("delays must be positive")

    @property
    def max_attempts(self) -> int:
        return self.attempts + 1

    @property
    def retries(self) -> int:
        return self.attempts

    def ceiling(self, retry: int) -> float:
        """Upper bound of the wait before retry number ``retry`` (1-based)."""
        retry = min(max(retry, 1), max(self.attempts, 1))
        return min(self.base_delay * 2 ** (retry - 1), self.max_delay)

    def next_delay(self, attempt: int) -> float:
        """Wait before ``attempt``; the first attempt never waits."""
        if attempt <= 1 or self.attempts == 0:
            return 0.0
        limit = self.ceiling(attempt - 1)
        draw = self.jitter if self.jitter is not None else _full_jitter
        return max(0.0, draw(limit))

    def all_delays(self) -> List[float]:
        return [self.ceiling(retry) for retry in range(1, self.attempts + 1)]


def _full_jitter(limit: float) -> float:
    return random.uniform(0, limit)


class RetryBudget:
    """Total number of retries the capture loop may spend before giving up.

    Shared between the pager, the snapshot workers and the sink delivery, so
    consumption is guarded by a lock. ``limit=None`` means unbounded.
    """

    def __init__(self, limit: Optional[int] = None) -> None:
        if limit is not None and limit < 0:
            raise ValueError("limit must be >= 0")
        self._limit = limit
        self._used = 0
        self._lock = threading.Lock()

    @property
    def limit(self) -> Optional[int]:
        return self._limit

    @property
    def used(self) -> int:
        with self._lock:
            return self._used

    def consume(self) -> None:
        with self._lock:
            if self._limit is not None and self._used >= self._limit:
                raise RetryBudgetExhausted(self._limit)
            self._used += 1

    def reset(self) -> None:
        with self._lock:
            self._used = 0


def call_with_retry(
    operation: Callable[[], T],
    *,
    policy: RetryPolicy,
    description: str,
    sleep: Callable[[float], None] = time.sleep,
    budget: Optional[RetryBudget] = None,
    on_retry: Optional[Callable[[BaseException], None]] = None,
) -> T:
    """Run ``operation``, retrying retryable failures with backoff.

    Fatal failures propagate untouched. Exhausting the attempt ceiling raises a
    fatal :class:`CaptureError` chained to the last failure.
    """
    attempt = 1
    while True:
        try:
            return operation()
        except Exception as exc:  # noqa: BLE001 - classified below
            if classify_error(exc) is ErrorKind.FATAL:
                raise
            if attempt >= policy.max_attempts:
                logger.error(
                    "%s failed after %d attempts: %s", description, attempt, exc
                )
                raise CaptureError(
                    f"{description} failed after {attempt} attempts: {exc}",
                    kind=ErrorKind.FATAL,
                ) from exc
            if budget is not None:
                budget.consume()
            if on_retry is not None:
                on_retry(exc)
            delay = policy.next_delay(attempt + 1)
            logger.warning(
                "%s failed (attempt %d/%d): %s - retrying in %.2fs",
                description,
                attempt,
                policy.max_attempts,
                exc,
                delay,
            )
            if delay > 0:
                sleep(delay)
            attempt += 1


__all__ = ["RetryBudget", "RetryPolicy", "call_with_retry"]

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

from tradejournal.common.logging import log_event

T = TypeVar("T")
logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """
    Bounded exponential backoff.

    The wait before attempt ``n + 1`` is ``base_delay_s * factor ** (n - 1)``.
    There is no ceiling and no jitter.
    """

    max_attempts: int
    base_delay_s: float
    factor: float = 2.0

    def __post_init__(self) -> None:
        if int(self.max_attempts) < 1:
            raise ValueError("max_attempts must be >= 1")
        if float(self.base_delay_s) < 0:
            raise ValueError("base_delay_s must be >= 0")
        if float(self.factor) < 1:
            raise ValueError("factor must be >= 1")

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait after failed attempt number ``attempt`` (1-based)."""
        n = max(1, int(attempt))
        return float(self.base_delay_s) * (float(self.factor) ** (n - 1))

    def total_delay_s(self) -> float:
        return sum(self.delay_for(i) for i in range(1, int(self.max_attempts)))


# 1 attempt + 5 retries: waits 1s, 2s, 4s, 8s, 16s.
CONNECT_RETRY = RetryPolicy(max_attempts=6, base_delay_s=1.0, factor=2.0)
PUBLISH_RETRY = RetryPolicy(max_attempts=3, base_delay_s=0.5, factor=2.0)
APPLY_RETRY = RetryPolicy(max_attempts=3, base_delay_s=0.5, factor=2.0)
STORE_RETRY = RetryPolicy(max_attempts=3, base_delay_s=0.5, factor=2.0)


def retry_with_backoff(
    fn: Callable[[int], T],
    *,
    policy: RetryPolicy,
    operation: str,
    is_retryable: Optional[Callable[[BaseException], bool]] = None,
    on_retry: Optional[Callable[[int, BaseException, float], None]] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Run ``fn(attempt)`` until it succeeds, raises a non-retryable error, or the
    policy's attempts are exhausted. The last exception is re-raised unchanged.

    ``fn`` receives the 1-based attempt number so callers can tag spans/logs.
    """
    attempt = 1
    while True:
        try:
            return fn(attempt)
        except Exception as e:
            retryable = True if is_retryable is None else bool(is_retryable(e))
            if not retryable or attempt >= int(policy.max_attempts):
                raise

            delay_s = policy.delay_for(attempt)
            log_event(
                logger,
                "retry.attempt_failed",
                severity="WARNING",
                operation=operation,
                attempt=attempt,
                max_attempts=int(policy.max_attempts),
                sleep_s=round(delay_s, 3),
                error_type=type(e).__name__,
                error=str(e),
            )
            if on_retry is not None:
                on_retry(attempt, e, delay_s)
            sleep(delay_s)
            attempt += 1

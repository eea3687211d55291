"""
Bounded exponential backoff for remote operations.

    policy = RetryPolicy(max_attempts=3, initial_delay=2.0)
    run_with_retry(lambda: remote.pull("main"), policy, retry_on=(RemoteError,))

Attempt 1 runs immediately; attempt n waits ``policy.delay_for(n - 1)``
before running. After ``max_attempts`` failures the last exception
propagates unchanged.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Optional, TypeVar

from pydantic import BaseModel, Field

logger = logging.getLogger("licensevault.sync.retry")

T = TypeVar("T")


class RetryPolicy(BaseModel):
    """Backoff policy: initial delay doubling per attempt, bounded."""

    max_attempts: int = Field(default=3, ge=1)
    initial_delay: float = Field(default=2.0, ge=0)
    factor: float = Field(default=2.0, ge=1)

    def delay_for(self, failures: int) -> float:
        """Seconds to wait after the given number of failures."""
        if failures < 1:
            return 0.0
        return self.initial_delay * (self.factor ** (failures - 1))

    def delays(self) -> list[float]:
        """Every delay a fully failing run would sleep through."""
        return [self.delay_for(n) for n in range(1, self.max_attempts)]


def run_with_retry(
    operation: Callable[[], T],
    policy: RetryPolicy,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    sleep: Callable[[float], None] = time.sleep,
    on_failure: Optional[Callable[[int, BaseException], None]] = None,
    label: str = "operation",
) -> T:
    """Run ``operation`` until it succeeds or the policy is exhausted.

    Args:
        operation: Zero-argument callable to attempt.
        policy: Backoff policy.
        retry_on: Exception types that count as a retryable failure.
            Anything else propagates on the first occurrence.
        sleep: Injected for tests.
        on_failure: Called with (attempt, exc) after a failed attempt that
            will be retried, before sleeping. Used to repair state between
            attempts.
        label: Name used in log lines.

    Returns:
        Whatever ``operation`` returned.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return operation()
        except retry_on as exc:
            if attempt >= policy.max_attempts:
                logger.error(
                    "%s failed after %d attempt(s): %s", label, attempt, exc
                )
                raise
            if on_failure is not None:
                on_failure(attempt, exc)
            delay = policy.delay_for(attempt)
            logger.warning(
                "%s failed (attempt %d/%d), retrying in %.1fs: %s",
                label, attempt, policy.max_attempts, delay, exc,
            )
            sleep(delay)

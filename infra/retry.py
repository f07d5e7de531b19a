"""
Publication Approvals — Bounded Retry with Exponential Backoff

Used wherever the core retries an outbound delivery:
  - Change Relay: publish StatusChanged to the event bus (3 attempts)
  - Trigger dispatch: deliver ApprovalRequested to the orchestrator
    (1 + 5 attempts, bounded by a maximum event age)

Store writes are never retried here; conditional-write conflicts and
TransientStoreError are the caller's responsibility.

Usage:
    from infra.retry import RetryPolicy, call_with_retry

    policy = RetryPolicy(max_attempts=3, backoff_base=0.2)
    result = call_with_retry(lambda: bus.publish(env), policy, operation="publish")
"""

from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass, field
from typing import Any, Callable

logger = logging.getLogger("publication_approvals.retry")


@dataclass(frozen=True)
class RetryPolicy:
    """Configuration for a bounded retry loop."""
    max_attempts: int = 3
    backoff_base: float = 0.5       # seconds; delay = base * 2^attempt + jitter
    backoff_max: float = 30.0       # cap on delay between attempts
    jitter: float = 0.2             # ±20% randomization on backoff

    # What counts as retryable
    retryable_exceptions: tuple = (Exception,)


@dataclass
class RetryResult:
    """Result of a call that eventually succeeded."""
    value: Any
    attempts: int
    attempt_log: list[dict[str, Any]] = field(default_factory=list)


class RetriesExhausted(Exception):
    """Raised when every attempt allowed by the policy has failed."""

    def __init__(self, operation: str, attempts: int, last_error: BaseException | None):
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"{operation} failed after {attempts} attempt(s): {last_error}"
        )


def calculate_backoff(attempt: int, policy: RetryPolicy) -> float:
    """Calculate backoff delay with jitter. ``attempt`` is zero-based."""
    base_delay = policy.backoff_base * (2 ** attempt)
    capped = min(base_delay, policy.backoff_max)
    jitter_range = capped * policy.jitter
    actual = capped + random.uniform(-jitter_range, jitter_range)
    return max(0.0, actual)


def call_with_retry(
    fn: Callable[[], Any],
    policy: RetryPolicy,
    operation: str = "call",
    sleep_fn: Callable[[float], None] = time.sleep,
    before_attempt: Callable[[int], None] | None = None,
) -> RetryResult:
    """
    Call ``fn`` until it succeeds or the policy is exhausted.

    Args:
        fn:             Zero-argument callable to invoke.
        policy:         Attempt budget and backoff shape.
        operation:      Name used in logs and in RetriesExhausted.
        sleep_fn:       Sleep function (injectable for testing).
        before_attempt: Called with the 1-based attempt number before each
                        attempt. Anything it raises aborts the loop and
                        propagates unchanged.

    Raises:
        RetriesExhausted: every attempt failed with a retryable error.
        Exception: a non-retryable error propagates immediately.
    """
    attempt_log: list[dict[str, Any]] = []
    last_error: BaseException | None = None

    for attempt in range(1, policy.max_attempts + 1):
        if before_attempt is not None:
            before_attempt(attempt)

        start = time.time()
        try:
            value = fn()
        except policy.retryable_exceptions as e:
            last_error = e
            attempt_log.append({
                "attempt": attempt,
                "error": str(e)[:200],
                "latency_ms": round((time.time() - start) * 1000, 1),
            })
            logger.warning(
                "%s attempt %d/%d failed: %s",
                operation, attempt, policy.max_attempts, e,
            )
            if attempt < policy.max_attempts:
                sleep_fn(calculate_backoff(attempt - 1, policy))
            continue

        attempt_log.append({
            "attempt": attempt,
            "status": "success",
            "latency_ms": round((time.time() - start) * 1000, 1),
        })
        if attempt > 1:
            logger.info("%s succeeded on attempt %d", operation, attempt)
        return RetryResult(value=value, attempts=attempt, attempt_log=attempt_log)

    raise RetriesExhausted(operation, policy.max_attempts, last_error)

"""
RetryPolicy - decides whether and when a failed attempt is re-issued.

The decision is a pure function of (spec, attempt number, failure, unknown
retries already spent) plus the injected jitter source, so the same inputs
always produce the same decision modulo jitter.

Delays grow exponentially from base_delay and never exceed max_delay.
Jitter scales the exponential step by a factor in [1, 1 + jitter]; with
jitter <= 1 each step is at least the previous one's upper bound. The top
r = max_delay * jitter / 2 seconds below the cap are reserved for steps that
would otherwise all land on the cap: the k-th such step is drawn from
[cap - r / 2**k, cap - r / 2**(k + 1)], so clients stay spread out there
and successive delays still never decrease.
"""

import random
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from twin_client.services.errors import ErrorKind
from twin_client.services.result import Failure

if TYPE_CHECKING:
    from twin_client.services.transport import RequestSpec


@dataclass(frozen=True)
class RetryDecision:
    retry: bool
    delay: float = 0.0
    reason: str = ""


@dataclass(frozen=True)
class RetryPolicy:
    """Configuration for retry behavior."""

    max_attempts: int = 3  # total attempts, including the first
    base_delay: float = 2.0  # seconds
    max_delay: float = 10.0  # cap on computed backoff
    jitter: float = 0.5  # proportional, 0 disables
    max_retry_after: float = 120.0  # give up on longer Retry-After hints
    unknown_retry_limit: int = 1
    rng: Callable[[], float] = field(default=random.random, compare=False)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0 or self.max_delay < self.base_delay:
            raise ValueError("require 0 <= base_delay <= max_delay")
        if not 0 <= self.jitter <= 1:
            raise ValueError("jitter must be between 0 and 1")

    def backoff(self, attempt: int) -> float:
        """Delay to wait after the given (1-based) failed attempt."""
        step = self.base_delay * (2 ** (attempt - 1))
        if not self.jitter:
            return min(self.max_delay, step)

        reserve = self.max_delay * self.jitter / 2
        ceiling = self.max_delay - reserve
        if step < ceiling:
            return min(ceiling, step * (1 + self.jitter * self.rng()))

        # steps at or past the ceiling share ever narrower bands under the cap
        first = 1
        while self.base_delay * (2 ** (first - 1)) < ceiling:
            first += 1
        k = attempt - first
        low = self.max_delay - reserve / 2**k
        high = self.max_delay - reserve / 2 ** (k + 1)
        return low + (high - low) * self.rng()

    def attempts_for(self, spec: "RequestSpec") -> int:
        if spec.max_attempts is not None:
            return max(1, spec.max_attempts)
        return self.max_attempts

    def decide(
        self,
        spec: "RequestSpec",
        attempt: int,
        failure: Failure,
        unknown_retries: int = 0,
    ) -> RetryDecision:
        """Decide what follows the given failed attempt."""
        if not spec.idempotent:
            return RetryDecision(False, reason="request is not idempotent")

        if not failure.kind.retryable:
            return RetryDecision(False, reason=f"{failure.kind.value} is final")

        if attempt >= self.attempts_for(spec):
            return RetryDecision(False, reason="attempt budget exhausted")

        if (
            failure.kind is ErrorKind.UNKNOWN
            and unknown_retries >= self.unknown_retry_limit
        ):
            return RetryDecision(False, reason="unknown failure already retried")

        if failure.kind is ErrorKind.RATE_LIMITED and failure.retry_after is not None:
            if failure.retry_after > self.max_retry_after:
                return RetryDecision(
                    False,
                    reason=f"Retry-After {failure.retry_after:.0f}s exceeds limit",
                )
            return RetryDecision(
                True, delay=failure.retry_after, reason="honouring Retry-After"
            )

        return RetryDecision(True, delay=self.backoff(attempt), reason="backoff")

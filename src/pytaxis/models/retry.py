"""
Retry policy configuration for step execution.

Design Pattern: Strategy Pattern
RetryPolicy encapsulates the backoff behaviour of a step, so the scheduler
can retry any step kind without knowing which backoff curve applies.

Design Rationale:
- Safe default: no automatic retries (a step without a policy fails once)
- Simple retry: RetryPolicy.with_max_attempts(3) with standard delays
- Advanced control: explicit RetryPolicy for full control
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, cast


class BackoffKind(Enum):
    """How the delay between two attempts grows."""

    FIXED = "FIXED"
    """Every retry waits initial_delay."""

    LINEAR = "LINEAR"
    """Retry n waits initial_delay * (n + 1)."""

    EXPONENTIAL = "EXPONENTIAL"
    """Retry n waits initial_delay * 2^n."""

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class RetryPolicy:
    """
    Configuration for step retry behavior.

    Controls how many times a step is attempted and the backoff applied
    between attempts.

    Examples:
        # Simple: just specify max attempts (uses standard delays)
        policy = RetryPolicy.with_max_attempts(3)

        # Named policy: predefined sensible defaults
        policy = RetryPolicy.STANDARD

        # Custom policy: full control
        policy = RetryPolicy(
            max_attempts=5,
            backoff=BackoffKind.LINEAR,
            initial_delay_ms=500,
            max_delay_ms=5000,
        )
    """

    max_attempts: int
    """Maximum number of attempts (including the first try).

    For example, max_attempts = 3 means:
    - Attempt 1: immediate (first try)
    - Attempt 2: after delay_for(0)
    - Attempt 3: after delay_for(1)

    Must be >= 1.
    """

    backoff: BackoffKind = BackoffKind.EXPONENTIAL
    """Backoff curve applied between attempts."""

    initial_delay_ms: int = 1000
    """Delay before the first retry in milliseconds."""

    max_delay_ms: int = 30000
    """Upper bound for any single delay in milliseconds.

    Must be >= initial_delay_ms.
    """

    # =========================================================================
    # Predefined Policies
    # =========================================================================

    if TYPE_CHECKING:
        NONE: RetryPolicy
        STANDARD: RetryPolicy
        AGGRESSIVE: RetryPolicy
    else:
        # Set after class definition
        NONE = cast("RetryPolicy", None)
        STANDARD = cast("RetryPolicy", None)
        AGGRESSIVE = cast("RetryPolicy", None)

    @classmethod
    def with_max_attempts(cls, max_attempts: int) -> RetryPolicy:
        """
        Create a policy with custom max_attempts (uses standard delays).

        Args:
            max_attempts: Maximum number of attempts

        Returns:
            RetryPolicy with exponential backoff from 1s capped at 30s
        """
        return cls(
            max_attempts=max_attempts,
            backoff=BackoffKind.EXPONENTIAL,
            initial_delay_ms=1000,
            max_delay_ms=30000,
        )

    def delay_for(self, retry_count: int) -> int:
        """
        Calculate the delay before the retry that follows ``retry_count``
        previous retries.

        FIXED → initial; LINEAR → initial * (retry_count + 1);
        EXPONENTIAL → initial * 2^retry_count. Always capped at max_delay.

        Args:
            retry_count: Number of retries already performed (0 for the first)

        Returns:
            Delay in milliseconds

        Example:
            policy = RetryPolicy(10, BackoffKind.EXPONENTIAL, 100, 1000)
            [policy.delay_for(n) for n in range(6)]
            # [100, 200, 400, 800, 1000, 1000]
        """
        if self.backoff == BackoffKind.FIXED:
            delay_ms = self.initial_delay_ms
        elif self.backoff == BackoffKind.LINEAR:
            delay_ms = self.initial_delay_ms * (retry_count + 1)
        else:
            delay_ms = self.initial_delay_ms * (2**retry_count)

        return int(min(delay_ms, self.max_delay_ms))

    def has_attempts_left(self, retry_count: int) -> bool:
        """True if another attempt is allowed after ``retry_count`` retries."""
        return retry_count + 1 < self.max_attempts

    def __repr__(self) -> str:
        return (
            f"RetryPolicy(max_attempts={self.max_attempts}, "
            f"backoff={self.backoff}, "
            f"initial_delay_ms={self.initial_delay_ms}, "
            f"max_delay_ms={self.max_delay_ms})"
        )


RetryPolicy.NONE = RetryPolicy(
    max_attempts=1, backoff=BackoffKind.FIXED, initial_delay_ms=0, max_delay_ms=0
)

RetryPolicy.STANDARD = RetryPolicy(
    max_attempts=3,
    backoff=BackoffKind.EXPONENTIAL,
    initial_delay_ms=1000,  # 1 second
    max_delay_ms=30000,  # 30 seconds
)

RetryPolicy.AGGRESSIVE = RetryPolicy(
    max_attempts=10,
    backoff=BackoffKind.EXPONENTIAL,
    initial_delay_ms=100,  # 100 milliseconds
    max_delay_ms=10000,  # 10 seconds
)


# =============================================================================
# RetryableError - Fine-grained error retry control
# =============================================================================


class RetryableError(Exception):
    """
    Base class for errors that can specify whether they should be retried.

    Example:
        class PaymentError(RetryableError):
            def __init__(self, message: str, is_retryable: bool = True):
                super().__init__(message)
                self._retryable = is_retryable

            def is_retryable(self) -> bool:
                return self._retryable

        # Transient error - step is retried per its policy
        raise PaymentError("Network timeout", is_retryable=True)

        # Permanent error - retry policy is bypassed
        raise PaymentError("Insufficient funds", is_retryable=False)
    """

    def is_retryable(self) -> bool:
        """
        Returns True if this error is transient and the step should be retried.

        Returns:
            True if retryable, False if permanent
        """
        # Default: all errors are retryable
        return True

"""
retry.py - Retry policy for the optimistic-concurrency loop

Ledger.adjust retries whenever its conditional write loses to another
writer. RetryPolicy decides how long to wait between attempts and when to
give up.

The default policy retries immediately, forever.
Backoff, jitter, attempt limits and deadlines are opt-in and never change
what a successful adjust writes. They only bound how long a caller can be
kept spinning under contention on a single user.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Optional
import random


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """
    Immutable retry configuration for conditional-write conflicts.

    Attributes:
        max_attempts: Maximum number of write attempts (None = unbounded).
        base_delay: Seconds to wait after the first conflict (0 = no wait).
        max_delay: Upper bound for any single wait, in seconds.
        multiplier: Growth factor of the wait after each further conflict.
        jitter: Randomize each wait uniformly in [delay/2, delay].
        deadline: Seconds from the first attempt after which the loop gives
                  up (None = no deadline).
    """
    max_attempts: Optional[int] = None
    base_delay: float = 0.0
    max_delay: float = 0.0
    multiplier: float = 2.0
    jitter: bool = False
    deadline: Optional[float] = None

    def __post_init__(self):
        if self.max_attempts is not None and self.max_attempts < 1:
            raise ValueError(f"max_attempts must be at least 1, got {self.max_attempts}")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays cannot be negative")
        if self.max_delay < self.base_delay:
            # max_delay is never below base_delay
            object.__setattr__(self, 'max_delay', self.base_delay)
        if self.multiplier < 1:
            raise ValueError(f"multiplier must be >= 1, got {self.multiplier}")
        if self.deadline is not None and self.deadline <= 0:
            raise ValueError(f"deadline must be positive, got {self.deadline}")

    @classmethod
    def immediate(cls) -> RetryPolicy:
        """Retry at once and without limit."""
        return cls()

    @classmethod
    def exponential(
        cls,
        base_delay: float = 0.01,
        max_delay: float = 0.25,
        max_attempts: Optional[int] = None,
        deadline: Optional[float] = None,
        jitter: bool = True,
    ) -> RetryPolicy:
        """Bounded exponential backoff, optionally capped in attempts or time."""
        return cls(
            max_attempts=max_attempts,
            base_delay=base_delay,
            max_delay=max_delay,
            jitter=jitter,
            deadline=deadline,
        )

    def delay(self, conflicts: int, rng: Optional[random.Random] = None) -> float:
        """
        Seconds to wait after the given number of consecutive conflicts.

        Args:
            conflicts: Conflicts seen so far (1 after the first lost write)
            rng: Random source for jitter (default: module-level random)

        Returns:
            Wait time in seconds, never above max_delay.
        """
        if self.base_delay == 0 or conflicts < 1:
            return 0.0
        wait = min(self.max_delay, self.base_delay * self.multiplier ** (conflicts - 1))
        if self.jitter:
            wait = (rng or random).uniform(wait / 2, wait)
        return wait

    def exhausted(self, attempts: int, elapsed: float) -> bool:
        """
        Return True if no further attempt may be made.

        Args:
            attempts: Write attempts made so far
            elapsed: Seconds since the first attempt started
        """
        if self.max_attempts is not None and attempts >= self.max_attempts:
            return True
        if self.deadline is not None and elapsed >= self.deadline:
            return True
        return False

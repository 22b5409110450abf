"""Exponential backoff with jitter.

delay(attempt) = min(initial * multiplier ** attempt, max_delay), then
+/- jitter_factor of that value, floored at zero. With the defaults the
pre-jitter sequence is 1s, 2s, 4s, 8s, 16s, 32s, 32s...
"""

import random
from typing import Callable, Optional

from .classifier import ErrorClass
from .errors import ConfigurationError
from .models import FaultKind, RetryConfig


RetryPredicate = Callable[[int, ErrorClass], bool]


class RetryPolicy:
    """Decides whether and when a failed step is retried.

    Args:
        config: Backoff settings
        predicates: Extra checks that must all pass for a retry to happen
        rng: Random source for jitter (seed it in tests)
    """

    def __init__(
        self,
        config: Optional[RetryConfig] = None,
        predicates: Optional[list[RetryPredicate]] = None,
        rng: Optional[random.Random] = None,
    ):
        self.config = config or RetryConfig()
        if self.config.jitter_factor <= 0:
            raise ConfigurationError("Retry jitter cannot be disabled")
        self.predicates = list(predicates or [])
        self._rng = rng or random.Random()

    @property
    def max_attempts(self) -> int:
        return self.config.max_attempts

    def base_delay(self, attempt: int, initial_delay: Optional[float] = None) -> float:
        """Delay before jitter for a 0-indexed retry attempt."""
        if attempt < 0:
            raise ValueError(f"attempt must be >= 0, got {attempt}")
        initial = self.config.initial_delay_seconds if initial_delay is None else initial_delay
        delay = initial * (self.config.multiplier ** attempt)
        return min(delay, self.config.max_delay_seconds)

    def next_delay(self, attempt: int, error_class: Optional[ErrorClass] = None) -> float:
        """Seconds to wait before retry number `attempt` (0-indexed)."""
        initial = error_class.initial_delay_seconds if error_class is not None else None
        delay = self.base_delay(attempt, initial)

        # Add jitter (+/- jitter_factor)
        jitter = delay * self.config.jitter_factor
        delay += self._rng.uniform(-jitter, jitter)

        return max(0.0, delay)

    def should_retry(self, attempt: int, error_class: ErrorClass) -> bool:
        """Whether a step that has already used `attempt` retries may retry again."""
        if attempt >= self.config.max_attempts:
            return False

        # Only retryable faults are retried; recoverable ones already succeeded
        if error_class.kind != FaultKind.RETRYABLE:
            return False

        if error_class.eligible is not None and not error_class.eligible(attempt):
            return False

        return all(predicate(attempt, error_class) for predicate in self.predicates)

    def delay_sequence(self, error_class: Optional[ErrorClass] = None) -> list[float]:
        """Pre-jitter delays for every retry the policy allows."""
        initial = error_class.initial_delay_seconds if error_class is not None else None
        return [self.base_delay(a, initial) for a in range(self.config.max_attempts)]

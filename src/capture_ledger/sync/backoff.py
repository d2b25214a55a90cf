"""
Retry backoff for sync ops.

delay(n) = uniform(0, min(cap, base * 2**(n-1)))  ("full jitter")
"""

import random
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional

from ..schemas.records import format_timestamp


@dataclass
class BackoffPolicy:
    """Exponential backoff with full jitter and a bounded attempt budget."""

    base_seconds: float = 2.0
    cap_seconds: float = 300.0
    max_attempts: int = 6
    rng: random.Random = field(default_factory=random.Random, repr=False)

    def ceiling(self, attempt: int) -> float:
        """Upper bound of the delay after the given (1-based) failed attempt."""
        if attempt < 1:
            return 0.0
        # Cap the exponent so large attempt counts cannot overflow
        exponent = min(attempt - 1, 32)
        return min(self.cap_seconds, self.base_seconds * (2**exponent))

    def delay(self, attempt: int) -> float:
        """Jittered delay in seconds after the given failed attempt."""
        return self.rng.uniform(0.0, self.ceiling(attempt))

    def exhausted(self, attempts: int) -> bool:
        """True once the op has used up its retry budget."""
        return attempts >= self.max_attempts

    def next_attempt_at(self, attempt: int, now: Optional[datetime] = None) -> str:
        """Timestamp of the earliest retry after the given failed attempt."""
        now = now or datetime.now(timezone.utc)
        return format_timestamp(now + timedelta(seconds=self.delay(attempt)))

"""Token-bucket admission control keyed by caller identity.

Buckets live in process memory: they are created on first use, refilled
lazily, and evicted least-recently-used once ``max_keys`` is exceeded. Nothing
survives a restart, and separate instances keep separate buckets.
"""

from __future__ import annotations

import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass

DEFAULT_MAX_KEYS = 50_000


@dataclass
class TokenBucket:
    """Token bucket rate limiter."""

    max_tokens: float
    refill_rate: float  # tokens per second
    tokens: float
    last_refill: float

    @classmethod
    def create(cls, per_minute: int, *, now: float) -> TokenBucket:
        """Create a full bucket admitting ``per_minute`` requests per minute."""
        return cls(
            max_tokens=float(per_minute),
            refill_rate=per_minute / 60.0,
            tokens=float(per_minute),
            last_refill=now,
        )

    def _refill(self, now: float) -> None:
        """Refill tokens based on elapsed time."""
        elapsed = max(0.0, now - self.last_refill)
        self.tokens = min(self.max_tokens, self.tokens + elapsed * self.refill_rate)
        self.last_refill = now

    def try_take(self, now: float, tokens: float = 1.0) -> bool:
        """Take tokens if available, without waiting."""
        self._refill(now)
        if self.tokens >= tokens:
            self.tokens -= tokens
            return True
        return False


class RateLimiter:
    """Per-key token buckets sharing one rate.

    Example:
        ```python
        per_ip = RateLimiter(per_minute=60)
        if not per_ip.allow("203.0.113.7"):
            raise RateLimitedError("too many requests")
        ```
    """

    def __init__(
        self,
        per_minute: int,
        *,
        max_keys: int = DEFAULT_MAX_KEYS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if per_minute <= 0:
            raise ValueError("per_minute must be positive")
        self.per_minute = per_minute
        self._max_keys = max_keys
        self._clock = clock
        self._buckets: OrderedDict[str, TokenBucket] = OrderedDict()

    def allow(self, key: str) -> bool:
        """Admit one request for ``key`` if its bucket has a token."""
        now = self._clock()
        bucket = self._buckets.get(key)
        if bucket is None:
            bucket = TokenBucket.create(self.per_minute, now=now)
            self._buckets[key] = bucket
            while len(self._buckets) > self._max_keys:
                self._buckets.popitem(last=False)
        else:
            self._buckets.move_to_end(key)
        return bucket.try_take(now)

    def __len__(self) -> int:
        return len(self._buckets)

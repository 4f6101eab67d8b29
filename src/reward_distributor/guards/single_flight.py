"""Per-key in-flight de-duplication with short-TTL result memoization.

Concurrent callers for the same key share one execution; callers arriving
within ``ttl_seconds`` after it completed receive the memoized result.
Failures are never memoized. State is process-local.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import OrderedDict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_ENTRIES = 10_000


@dataclass
class _Memo(Generic[T]):
    value: T
    expires_at: float


class SingleFlight(Generic[T]):
    """Collapse concurrent calls per key into a single execution.

    Example:
        ```python
        flight: SingleFlight[Preview] = SingleFlight(ttl_seconds=2.5)
        preview = await flight.do(wallet, lambda: build_preview(wallet))
        ```
    """

    def __init__(
        self,
        *,
        ttl_seconds: float = 0.0,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        cache_if: Callable[[T], bool] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the flight group.

        Args:
            ttl_seconds: How long a completed result is served to new callers.
                Zero disables memoization (de-duplication only).
            max_entries: Upper bound on memoized keys (oldest evicted first).
            cache_if: Optional predicate; results failing it are not memoized.
            clock: Monotonic time source in seconds.
        """
        self._ttl = ttl_seconds
        self._max_entries = max_entries
        self._cache_if = cache_if
        self._clock = clock
        self._inflight: dict[str, asyncio.Task[T]] = {}
        self._memo: OrderedDict[str, _Memo[T]] = OrderedDict()

    def in_flight(self, key: str) -> bool:
        return key in self._inflight

    def peek(self, key: str) -> T | None:
        """Return the memoized value for ``key`` if still fresh."""
        memo = self._memo.get(key)
        if memo is None:
            return None
        if memo.expires_at <= self._clock():
            self._memo.pop(key, None)
            return None
        return memo.value

    def forget(self, key: str) -> None:
        self._memo.pop(key, None)

    async def do(self, key: str, fn: Callable[[], Awaitable[T]]) -> T:
        """Run ``fn`` once for all concurrent callers of ``key``.

        Args:
            key: De-duplication key.
            fn: Zero-argument coroutine factory doing the actual work.

        Returns:
            The shared result.
        """
        memo = self.peek(key)
        if memo is not None:
            return memo

        task = self._inflight.get(key)
        if task is None:
            task = asyncio.create_task(self._run(key, fn))
            self._inflight[key] = task
        else:
            logger.debug("Joining in-flight call for %s", key)
        # A cancelled caller must not cancel the shared execution.
        return await asyncio.shield(task)

    async def _run(self, key: str, fn: Callable[[], Awaitable[T]]) -> T:
        try:
            value = await fn()
            if self._ttl > 0 and (self._cache_if is None or self._cache_if(value)):
                self._memo[key] = _Memo(value=value, expires_at=self._clock() + self._ttl)
                self._memo.move_to_end(key)
                while len(self._memo) > self._max_entries:
                    self._memo.popitem(last=False)
            return value
        finally:
            self._inflight.pop(key, None)

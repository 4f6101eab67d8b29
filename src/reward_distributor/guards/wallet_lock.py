"""Per-wallet non-blocking mutual exclusion for claim submission.

A second submit for a wallet that already holds the lock is rejected
immediately with ``ClaimInProgressError``; it is never queued.

``LocalWalletLock`` guards one process. ``RedisWalletLock`` extends the guard
across instances sharing a Redis server and expires a lock whose holder died.
Either way the ledger re-derivation at submit time remains the correctness
backstop.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from typing import Protocol

from redis.asyncio import Redis
from redis.exceptions import LockError, RedisError

from reward_distributor.errors import ClaimInProgressError, TransientUpstreamError

logger = logging.getLogger(__name__)

LOCK_KEY_PREFIX = "rewards:claim-lock:"


class WalletLock(Protocol):
    def hold(self, wallet: str) -> AbstractAsyncContextManager[None]: ...

    def is_held(self, wallet: str) -> bool: ...


class LocalWalletLock:
    """In-process wallet lock set."""

    def __init__(self) -> None:
        self._held: set[str] = set()

    def is_held(self, wallet: str) -> bool:
        return wallet.lower() in self._held

    @asynccontextmanager
    async def hold(self, wallet: str) -> AsyncIterator[None]:
        """Hold the wallet's lock for the duration of the block.

        Raises:
            ClaimInProgressError: If the wallet is already locked.
        """
        key = wallet.lower()
        if key in self._held:
            raise ClaimInProgressError("A claim for this wallet is already in progress")
        self._held.add(key)
        try:
            yield
        finally:
            self._held.discard(key)


class RedisWalletLock:
    """Wallet lock backed by redis-py's ``Lock`` with an expiry.

    The local set is checked first so same-process contention never costs a
    round trip.
    """

    def __init__(self, redis: Redis, *, ttl_seconds: int = 120) -> None:
        self._redis = redis
        self._ttl = ttl_seconds
        self._local = LocalWalletLock()

    def is_held(self, wallet: str) -> bool:
        return self._local.is_held(wallet)

    @asynccontextmanager
    async def hold(self, wallet: str) -> AsyncIterator[None]:
        async with self._local.hold(wallet):
            lock = self._redis.lock(
                f"{LOCK_KEY_PREFIX}{wallet.lower()}",
                timeout=self._ttl,
                blocking=False,
            )
            try:
                acquired = await lock.acquire()
            except RedisError as e:
                raise TransientUpstreamError(f"Wallet lock unavailable: {e}") from e
            if not acquired:
                raise ClaimInProgressError("A claim for this wallet is already in progress")
            try:
                yield
            finally:
                try:
                    await lock.release()
                except (LockError, RedisError) as e:
                    # Expired or unreachable; the TTL frees it either way.
                    logger.warning("Wallet lock release failed for %s: %s", wallet, e)

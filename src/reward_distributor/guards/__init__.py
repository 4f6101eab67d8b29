"""Process-scoped concurrency and admission guards."""

from reward_distributor.guards.rate_limit import RateLimiter, TokenBucket
from reward_distributor.guards.single_flight import SingleFlight
from reward_distributor.guards.wallet_lock import LocalWalletLock, RedisWalletLock, WalletLock

__all__ = [
    "LocalWalletLock",
    "RateLimiter",
    "RedisWalletLock",
    "SingleFlight",
    "TokenBucket",
    "WalletLock",
]

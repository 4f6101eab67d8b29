"""Eligible holder listing for the rewarded coin.

Token accounts are read with ``getProgramAccounts`` against the token program
that owns the coin mint, merged per owner (one wallet can hold several token
accounts), then filtered by the minimum balance and the exclusion list.
"""

from __future__ import annotations

import base64
import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

from solders.pubkey import Pubkey

from reward_distributor.amounts import to_raw
from reward_distributor.chain.rpc import SolanaRpcClient
from reward_distributor.chain.transactions import TOKEN_2022_PROGRAM_ID, TOKEN_PROGRAM_ID

logger = logging.getLogger(__name__)

TOKEN_ACCOUNT_SIZE = 165
# owner (32 bytes) followed by amount (u64 LE)
OWNER_AMOUNT_SLICE = {"offset": 32, "length": 40}
DEFAULT_CACHE_TTL_SECONDS = 5.0


@dataclass(frozen=True)
class HolderBalance:
    """One eligible owner and its merged raw balance."""

    wallet: str  # lowercased
    balance_raw: int
    owner: str = ""  # address as reported on chain

    @property
    def address(self) -> str:
        return self.owner or self.wallet


def parse_classic_account(item: dict[str, Any]) -> tuple[str, int] | None:
    """Decode an (owner, amount) pair from a sliced classic token account."""
    data = (item.get("account") or {}).get("data")
    if not isinstance(data, list) or not data:
        return None
    try:
        raw = base64.b64decode(data[0])
    except (ValueError, TypeError):
        return None
    if len(raw) < 40:
        return None
    owner = str(Pubkey.from_bytes(raw[:32]))
    amount = int.from_bytes(raw[32:40], "little")
    return owner, amount


def parse_parsed_account(item: dict[str, Any]) -> tuple[str, int] | None:
    """Decode an (owner, amount) pair from a jsonParsed token account."""
    data = (item.get("account") or {}).get("data")
    if not isinstance(data, dict):
        return None
    info = (data.get("parsed") or {}).get("info") or {}
    owner = info.get("owner")
    amount = (info.get("tokenAmount") or {}).get("amount")
    if not owner or amount is None:
        return None
    try:
        return str(owner), int(amount)
    except (TypeError, ValueError):
        return None


def merge_by_owner(pairs: Iterable[tuple[str, int]]) -> dict[str, tuple[str, int]]:
    """Sum positive balances per lowercased owner, keeping the first-seen spelling."""
    merged: dict[str, tuple[str, int]] = {}
    for owner, amount in pairs:
        if amount <= 0:
            continue
        key = owner.lower()
        spelled, total = merged.get(key, (owner, 0))
        merged[key] = (spelled, total + amount)
    return merged


class HolderDirectory:
    """Lists eligible holders of the coin mint.

    Results are cached for a few seconds so that the pending-phase pre-fetch
    and the snapshot at the deadline share one network scan.

    Example:
        ```python
        directory = HolderDirectory(rpc, coin_mint, min_balance=Decimal("10000"), decimals=6)
        holders = await directory.list_eligible_holders()
        ```
    """

    def __init__(
        self,
        rpc: SolanaRpcClient,
        coin_mint: Pubkey,
        *,
        min_balance: Decimal = Decimal("10000"),
        decimals: int | None = None,
        excluded_wallets: Iterable[str] = (),
        cache_ttl_seconds: float = DEFAULT_CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the directory.

        Args:
            rpc: Ledger network client.
            coin_mint: Mint of the rewarded coin.
            min_balance: Eligibility threshold in display units.
            decimals: Coin decimals; read from the mint when None.
            excluded_wallets: Owners never eligible (matched case-insensitively).
            cache_ttl_seconds: How long a listing is reused.
            clock: Monotonic time source in seconds.
        """
        self._rpc = rpc
        self._mint = coin_mint
        self._min_balance = min_balance
        self._decimals = decimals
        self._excluded = frozenset(w.strip().lower() for w in excluded_wallets if w.strip())
        self._ttl = cache_ttl_seconds
        self._clock = clock
        self._cached: tuple[float, list[HolderBalance]] | None = None

    async def _threshold_raw(self) -> int:
        if self._decimals is None:
            self._decimals = await self._rpc.get_mint_decimals(self._mint)
        return to_raw(self._min_balance, self._decimals)

    async def _scan(self) -> list[tuple[str, int]]:
        program = await self._rpc.get_mint_program(self._mint)
        mint_filter = {"memcmp": {"offset": 0, "bytes": str(self._mint)}}
        if program == TOKEN_2022_PROGRAM_ID:
            # Token-2022 accounts carry extensions, so their size varies.
            items = await self._rpc.get_program_accounts(
                program,
                {"encoding": "jsonParsed", "filters": [mint_filter], "commitment": self._rpc.commitment},
            )
            parse = parse_parsed_account
        else:
            items = await self._rpc.get_program_accounts(
                TOKEN_PROGRAM_ID,
                {
                    "encoding": "base64",
                    "filters": [{"dataSize": TOKEN_ACCOUNT_SIZE}, mint_filter],
                    "dataSlice": OWNER_AMOUNT_SLICE,
                    "commitment": self._rpc.commitment,
                },
            )
            parse = parse_classic_account

        pairs: list[tuple[str, int]] = []
        skipped = 0
        for item in items:
            pair = parse(item)
            if pair is None:
                skipped += 1
                continue
            pairs.append(pair)
        if skipped:
            logger.warning("Skipped %d undecodable token accounts for %s", skipped, self._mint)
        return pairs

    async def list_eligible_holders(self, *, use_cache: bool = True) -> list[HolderBalance]:
        """Eligible holders sorted by wallet.

        Raises:
            ChainClientError: If the listing cannot be read.
        """
        now = self._clock()
        if use_cache and self._cached is not None and now - self._cached[0] < self._ttl:
            return list(self._cached[1])

        threshold = await self._threshold_raw()
        merged = merge_by_owner(await self._scan())
        holders = [
            HolderBalance(wallet=key, balance_raw=total, owner=spelled)
            for key, (spelled, total) in merged.items()
            if total >= threshold and key not in self._excluded
        ]
        holders.sort(key=lambda h: h.wallet)
        logger.debug("Listed %d eligible holders of %d owners", len(holders), len(merged))

        self._cached = (self._clock(), holders)
        return list(holders)

    def invalidate(self) -> None:
        self._cached = None

"""Entitlement ledger.

Answers "how much is owed to this wallet" and records settlements. Amounts
leave the ledger in raw units only; the persisted representation is converted
exclusively through ``AmountPolicy``.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime

from reward_distributor.amounts import AmountPolicy
from reward_distributor.storage.database import DatabaseManager
from reward_distributor.storage.repos import (
    ClaimDTO,
    ClaimRepository,
    CounterRepository,
    EntitlementDTO,
    EntitlementRepository,
)

logger = logging.getLogger(__name__)

TOTAL_DISTRIBUTED_COUNTER = "total_distributed_raw"


@dataclass(frozen=True)
class LedgerRow:
    """One entitlement row expressed in raw units."""

    snapshot_id: int
    amount_raw: int
    claimed: bool
    claim_signature: str | None = None
    claimed_at: datetime | None = None


@dataclass(frozen=True)
class UnclaimedSet:
    """A wallet's unclaimed rows and their total."""

    wallet: str
    rows: tuple[LedgerRow, ...]

    @property
    def total_raw(self) -> int:
        return sum(r.amount_raw for r in self.rows)

    @property
    def snapshot_ids(self) -> list[int]:
        return [r.snapshot_id for r in self.rows]

    def is_empty(self) -> bool:
        return self.total_raw <= 0


@dataclass(frozen=True)
class EntitlementSummary:
    """``entitled == claimed + unclaimed`` at every observation."""

    wallet: str
    entitled_raw: int
    claimed_raw: int
    unclaimed_raw: int


@dataclass
class Settlement:
    """What a settle call actually changed."""

    rows_marked: int = 0
    claim_recorded: bool = False
    total_incremented: bool = False
    errors: list[str] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return not self.errors


class EntitlementLedger:
    """Stores and queries per-(snapshot, wallet) reward rows.

    Example:
        ```python
        ledger = EntitlementLedger(db, AmountPolicy(decimals=6))
        unclaimed = await ledger.list_unclaimed("wallet")
        print(unclaimed.total_raw, unclaimed.snapshot_ids)
        ```
    """

    def __init__(self, db: DatabaseManager, policy: AmountPolicy) -> None:
        self._db = db
        self.policy = policy

    def _to_row(self, dto: EntitlementDTO) -> LedgerRow:
        return LedgerRow(
            snapshot_id=dto.snapshot_id,
            amount_raw=self.policy.stored_to_raw(dto.amount),
            claimed=dto.claimed,
            claim_signature=dto.claim_signature,
            claimed_at=dto.claimed_at,
        )

    async def write_entitlements(self, snapshot_id: int, shares_raw: dict[str, int]) -> int:
        """Idempotently create the rows of one snapshot.

        Returns:
            Number of rows newly created; pairs that already exist are left
            untouched, so a retried write never changes an amount.
        """
        stored = {wallet.lower(): self.policy.raw_to_stored(raw) for wallet, raw in shares_raw.items() if raw > 0}
        if not stored:
            return 0
        async with self._db.get_async_session() as session:
            return await EntitlementRepository(session).insert_many(snapshot_id, stored)

    async def count_for_snapshot(self, snapshot_id: int) -> int:
        async with self._db.get_async_session() as session:
            return await EntitlementRepository(session).count_for_snapshot(snapshot_id)

    async def rows(self, wallet: str) -> list[LedgerRow]:
        """All rows for a wallet, newest snapshot first."""
        async with self._db.get_async_session() as session:
            dtos = await EntitlementRepository(session).list_for_wallet(wallet)
        return [self._to_row(d) for d in dtos]

    async def list_unclaimed(self, wallet: str, snapshot_ids: Sequence[int] | None = None) -> UnclaimedSet:
        """Unclaimed rows for a wallet, optionally restricted to ``snapshot_ids``."""
        async with self._db.get_async_session() as session:
            dtos = await EntitlementRepository(session).list_for_wallet(
                wallet, claimed=False, snapshot_ids=snapshot_ids
            )
        rows = tuple(r for r in (self._to_row(d) for d in dtos) if r.amount_raw > 0)
        return UnclaimedSet(wallet=wallet.lower(), rows=rows)

    async def summary(self, wallet: str) -> EntitlementSummary:
        rows = await self.rows(wallet)
        claimed = sum(r.amount_raw for r in rows if r.claimed)
        unclaimed = sum(r.amount_raw for r in rows if not r.claimed)
        return EntitlementSummary(
            wallet=wallet.lower(),
            entitled_raw=claimed + unclaimed,
            claimed_raw=claimed,
            unclaimed_raw=unclaimed,
        )

    async def mark_claimed(self, wallet: str, snapshot_ids: Sequence[int], signature: str) -> int:
        """Flip matching unclaimed rows to claimed.

        Re-applying with the same or another signature on claimed rows is a
        no-op: the first signature stays.
        """
        async with self._db.get_async_session() as session:
            return await EntitlementRepository(session).mark_claimed(wallet, snapshot_ids, signature)

    async def record_claim(self, claim: ClaimDTO) -> bool:
        async with self._db.get_async_session() as session:
            return await ClaimRepository(session).insert_if_absent(claim)

    async def add_to_running_total(self, amount_raw: int) -> None:
        """Increase the distributed total; callers dedupe by signature first."""
        if amount_raw <= 0:
            return
        async with self._db.get_async_session() as session:
            await CounterRepository(session).add(TOTAL_DISTRIBUTED_COUNTER, amount_raw)

    async def running_total(self) -> int:
        """Distributed total, falling back to the sum of claim records."""
        async with self._db.get_async_session() as session:
            value = await CounterRepository(session).get(TOTAL_DISTRIBUTED_COUNTER)
            if value is not None:
                return value
            return await ClaimRepository(session).total_raw()

    async def recent_claims(self, limit: int = 50, *, wallet: str | None = None) -> list[ClaimDTO]:
        async with self._db.get_async_session() as session:
            return await ClaimRepository(session).list_recent(limit, wallet=wallet)

    async def settle(
        self,
        *,
        wallet: str,
        snapshot_ids: Sequence[int],
        signature: str,
        amount_raw: int,
    ) -> Settlement:
        """Apply a broadcast claim to the ledger.

        The rows are marked claimed, the claim is recorded by signature, and
        the running total grows only when that record is new. All three
        writes share one transaction. Failures are reported in the returned
        ``Settlement`` instead of raised: the transfer already left the
        system and a later preview re-derives from the ledger anyway.
        """
        settlement = Settlement()
        try:
            async with self._db.get_async_session() as session:
                settlement.rows_marked = await EntitlementRepository(session).mark_claimed(
                    wallet, snapshot_ids, signature
                )
                settlement.claim_recorded = await ClaimRepository(session).insert_if_absent(
                    ClaimDTO(
                        signature=signature,
                        wallet=wallet,
                        amount_raw=amount_raw,
                        snapshot_ids=list(snapshot_ids),
                    )
                )
                if settlement.claim_recorded and amount_raw > 0:
                    await CounterRepository(session).add(TOTAL_DISTRIBUTED_COUNTER, amount_raw)
                    settlement.total_incremented = True
        except Exception as e:
            logger.exception("Ledger settle failed for %s (sig=%s)", wallet, signature)
            settlement = Settlement(errors=[f"settle: {e}"])
        return settlement

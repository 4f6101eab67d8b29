"""Snapshot phase: capture eligible holders and allocate the cycle's reward.

The snapshot row is the commit point of a cycle. It is created under a unique
key before any entitlement is written; a writer that loses that race returns
the winner's row and writes nothing.
"""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any

from reward_distributor.amounts import AmountPolicy, pro_rata_shares
from reward_distributor.chain.holders import HolderBalance, HolderDirectory
from reward_distributor.chain.rpc import ChainClientError
from reward_distributor.cycle.clock import Cycle, WindowClock
from reward_distributor.errors import ClaimValidationError, RaceLostError, new_correlation_id
from reward_distributor.guards.single_flight import SingleFlight
from reward_distributor.ledger import EntitlementLedger
from reward_distributor.storage.database import DatabaseManager
from reward_distributor.storage.repos import PrepRepository, SnapshotDTO, SnapshotRepository

logger = logging.getLogger(__name__)

DEFAULT_PREFETCH_WINDOW_MS = 5_000


class SnapshotStatus(str, Enum):
    PENDING = "pending"
    TAKEN = "taken"
    MISSED = "missed"
    ERROR = "error"


@dataclass(frozen=True)
class SnapshotOutcome:
    """Result of one snapshot call."""

    status: SnapshotStatus
    cycle: Cycle
    snapshot: SnapshotDTO | None = None
    eta_ms: int | None = None
    race_won_elsewhere: bool = False
    entitlements_written: int = 0
    error: str | None = None
    correlation_id: str | None = None

    @property
    def cycle_id(self) -> int:
        return self.cycle.cycle_id

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "status": self.status.value,
            "cycleId": self.cycle.cycle_id,
            "window": self.cycle.to_dict(),
        }
        if self.eta_ms is not None:
            payload["etaMs"] = self.eta_ms
        if self.snapshot is not None:
            payload["snapshot"] = {
                "snapshotId": self.snapshot.snapshot_id,
                "timestamp": self.snapshot.taken_at_ms,
                "acquiredRewardRaw": str(self.snapshot.acquired_reward_raw),
                "allocatedRewardRaw": str(self.snapshot.allocated_reward_raw),
                "eligibleHolderCount": self.snapshot.eligible_holder_count,
                "holdersHash": self.snapshot.holders_hash,
            }
        if self.race_won_elsewhere:
            payload["raceWonElsewhere"] = True
        if self.error:
            payload["error"] = self.error
        return payload


def holders_hash(holders: list[HolderBalance]) -> str:
    """Content hash of a holder set, independent of listing order."""
    rows = sorted([h.wallet.lower(), h.balance_raw] for h in holders)
    encoded = json.dumps(rows, separators=(",", ":")).encode()
    return hashlib.sha256(encoded).hexdigest()


class SnapshotEngine:
    """Takes each cycle's holder snapshot exactly once.

    Example:
        ```python
        engine = SnapshotEngine(db, ledger, holders, clock=clock, policy=policy)
        outcome = await engine.run_snapshot()
        print(outcome.status, outcome.eta_ms)
        ```
    """

    def __init__(
        self,
        db: DatabaseManager,
        ledger: EntitlementLedger,
        holders: HolderDirectory,
        *,
        clock: WindowClock,
        policy: AmountPolicy,
        prefetch_window_ms: int = DEFAULT_PREFETCH_WINDOW_MS,
    ) -> None:
        self._db = db
        self._ledger = ledger
        self._holders = holders
        self._clock = clock
        self._policy = policy
        self._prefetch_window_ms = prefetch_window_ms
        self._flight: SingleFlight[SnapshotOutcome] = SingleFlight()

    def _resolve(self, cycle_id: int | None, now: int) -> Cycle:
        if cycle_id is not None:
            try:
                return self._clock.cycle(cycle_id)
            except ValueError as e:
                raise ClaimValidationError(str(e)) from e
        # A cycle whose grace window is still open takes precedence.
        return self._clock.grace_cycle(now) or self._clock.window_for(now)

    async def get_snapshot(self, cycle_id: int) -> SnapshotDTO | None:
        async with self._db.get_async_session() as session:
            return await SnapshotRepository(session).get_by_cycle(cycle_id)

    async def run_snapshot(self, cycle_id: int | None = None, now: int | None = None) -> SnapshotOutcome:
        """Report or take the snapshot of ``cycle_id``.

        Args:
            cycle_id: Cycle to act on; defaults to the cycle whose grace
                window contains ``now``, else the containing window.
            now: Epoch milliseconds; defaults to the clock.

        Raises:
            ClaimValidationError: If ``cycle_id`` is not a window boundary.
        """
        now = self._clock.now() if now is None else now
        cycle = self._resolve(cycle_id, now)
        cid = new_correlation_id()

        if not cycle.is_snapshot_due(now):
            eta = cycle.snapshot_deadline - now
            if eta <= self._prefetch_window_ms:
                await self._prefetch(cid)
            return SnapshotOutcome(SnapshotStatus.PENDING, cycle, eta_ms=eta, correlation_id=cid)

        existing = await self.get_snapshot(cycle.cycle_id)
        if existing is not None:
            written = await self._resume_entitlements(existing, cid)
            return SnapshotOutcome(
                SnapshotStatus.TAKEN,
                cycle,
                snapshot=existing,
                entitlements_written=written,
                correlation_id=cid,
            )

        if cycle.is_missed(now):
            logger.warning("cid=%s Snapshot for cycle %d missed (grace ended)", cid, cycle.cycle_id)
            return SnapshotOutcome(SnapshotStatus.MISSED, cycle, correlation_id=cid)

        return await self._flight.do(str(cycle.cycle_id), lambda: self._take(cycle, now, cid))

    async def _prefetch(self, cid: str) -> None:
        try:
            await self._holders.list_eligible_holders()
        except ChainClientError as e:
            logger.debug("cid=%s Holder pre-fetch failed: %s", cid, e)

    async def _take(self, cycle: Cycle, now: int, cid: str) -> SnapshotOutcome:
        existing = await self.get_snapshot(cycle.cycle_id)
        if existing is not None:
            return SnapshotOutcome(SnapshotStatus.TAKEN, cycle, snapshot=existing, correlation_id=cid)

        async with self._db.get_async_session() as session:
            prep = await PrepRepository(session).get(cycle.cycle_id)
        if prep is None:
            logger.info("cid=%s Snapshot for cycle %d waiting on prepare", cid, cycle.cycle_id)
            return SnapshotOutcome(SnapshotStatus.ERROR, cycle, error="prepare not recorded yet", correlation_id=cid)

        try:
            holders = await self._holders.list_eligible_holders()
        except ChainClientError as e:
            logger.warning("cid=%s Holder listing failed for cycle %d: %s", cid, cycle.cycle_id, e)
            return SnapshotOutcome(SnapshotStatus.ERROR, cycle, error=f"holder listing failed: {e}", correlation_id=cid)

        allocated = self._policy.allocate(prep.acquired_reward_raw)
        shares = pro_rata_shares(allocated, {h.wallet.lower(): h.balance_raw for h in holders})
        candidate = SnapshotDTO(
            snapshot_id=cycle.cycle_id,
            cycle_id=cycle.cycle_id,
            taken_at_ms=now,
            acquired_reward_raw=prep.acquired_reward_raw,
            allocated_reward_raw=allocated,
            eligible_holder_count=len(holders),
            holders_hash=holders_hash(holders),
            entitlement_count=len(shares),
            allocations=shares,
        )

        try:
            stored = await self._commit(candidate)
        except RaceLostError as e:
            logger.info("cid=%s %s", cid, e)
            async with self._db.get_async_session() as session:
                winner = await SnapshotRepository(session).get_by_cycle(cycle.cycle_id)
            return SnapshotOutcome(
                SnapshotStatus.TAKEN,
                cycle,
                snapshot=winner,
                race_won_elsewhere=True,
                correlation_id=cid,
            )

        written = await self._ledger.write_entitlements(cycle.cycle_id, shares)
        logger.info(
            "cid=%s Snapshot %d taken: holders=%d allocated=%d entitlements=%d",
            cid,
            cycle.cycle_id,
            len(holders),
            allocated,
            written,
        )
        return SnapshotOutcome(
            SnapshotStatus.TAKEN,
            cycle,
            snapshot=stored,
            entitlements_written=written,
            correlation_id=cid,
        )

    async def _commit(self, candidate: SnapshotDTO) -> SnapshotDTO:
        """Create the snapshot row; entitlements may only follow a row this call created.

        Raises:
            RaceLostError: If another writer created the row first.
        """
        async with self._db.get_async_session() as session:
            repo = SnapshotRepository(session)
            if not await repo.create(candidate):
                raise RaceLostError(f"Snapshot for cycle {candidate.cycle_id} was taken by another writer")
            return await repo.get_by_cycle(candidate.cycle_id) or candidate

    async def _resume_entitlements(self, snapshot: SnapshotDTO, cid: str) -> int:
        """Finish an entitlement write interrupted after the snapshot row landed."""
        if snapshot.entitlement_count <= 0:
            return 0
        present = await self._ledger.count_for_snapshot(snapshot.snapshot_id)
        if present >= snapshot.entitlement_count:
            return 0
        logger.warning(
            "cid=%s Snapshot %d has %d/%d entitlements; resuming write",
            cid,
            snapshot.snapshot_id,
            present,
            snapshot.entitlement_count,
        )
        return await self._ledger.write_entitlements(snapshot.snapshot_id, snapshot.allocations)

"""Repository pattern implementations for data access.

This module provides data access abstractions for cycle artifacts,
entitlements, claims, previews and counters. Every create-only write uses
``INSERT ... ON CONFLICT DO NOTHING`` and reports from the affected row count
whether this writer created the row, so a lost race is an ordinary return
value rather than an exception.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from reward_distributor.storage.models import (
    ClaimModel,
    ClaimPreviewModel,
    CounterModel,
    EntitlementModel,
    PrepModel,
    SnapshotModel,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

ENTITLEMENT_INSERT_CHUNK = 500


def _insert(session: AsyncSession, model: type[Any]) -> Any:
    """Dialect-specific INSERT supporting ON CONFLICT clauses."""
    if session.get_bind().dialect.name == "postgresql":
        return pg_insert(model)
    return sqlite_insert(model)


def _created(result: Any) -> int:
    return int(result.rowcount or 0)  # type: ignore[attr-defined]


# ============================================================================
# Prep
# ============================================================================


@dataclass
class PrepDTO:
    """Data transfer object for a cycle's prepare result."""

    cycle_id: int
    status: str
    step: str
    acquired_reward_raw: int = 0
    sol_delta_lamports: int = 0
    operator_lamports: int = 0
    treasury_lamports: int = 0
    swap_in_lamports: int = 0
    claim_signature: str | None = None
    operator_signature: str | None = None
    treasury_signature: str | None = None
    swap_signature: str | None = None
    note: str | None = None
    created_at: datetime | None = None

    @classmethod
    def from_model(cls, model: PrepModel) -> PrepDTO:
        """Create DTO from SQLAlchemy model."""
        return cls(
            cycle_id=model.cycle_id,
            status=model.status,
            step=model.step,
            acquired_reward_raw=int(model.acquired_reward_raw),
            sol_delta_lamports=model.sol_delta_lamports,
            operator_lamports=model.operator_lamports,
            treasury_lamports=model.treasury_lamports,
            swap_in_lamports=model.swap_in_lamports,
            claim_signature=model.claim_signature,
            operator_signature=model.operator_signature,
            treasury_signature=model.treasury_signature,
            swap_signature=model.swap_signature,
            note=model.note,
            created_at=model.created_at,
        )

    def signatures(self) -> dict[str, str | None]:
        return {
            "claim": self.claim_signature,
            "operator": self.operator_signature,
            "treasury": self.treasury_signature,
            "swap": self.swap_signature,
        }


class PrepRepository:
    """Repository for per-cycle prepare results."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, cycle_id: int) -> PrepDTO | None:
        result = await self.session.execute(select(PrepModel).where(PrepModel.cycle_id == cycle_id))
        model = result.scalar_one_or_none()
        return PrepDTO.from_model(model) if model else None

    async def get_many(self, cycle_ids: Iterable[int]) -> dict[int, PrepDTO]:
        ids = list(cycle_ids)
        if not ids:
            return {}
        result = await self.session.execute(select(PrepModel).where(PrepModel.cycle_id.in_(ids)))
        return {m.cycle_id: PrepDTO.from_model(m) for m in result.scalars().all()}

    async def create(self, dto: PrepDTO) -> bool:
        """Create the terminal row for a cycle.

        Returns:
            True if this call created the row, False if one already existed.
        """
        stmt = _insert(self.session, PrepModel).values(
            cycle_id=dto.cycle_id,
            status=dto.status,
            step=dto.step,
            acquired_reward_raw=Decimal(dto.acquired_reward_raw),
            sol_delta_lamports=dto.sol_delta_lamports,
            operator_lamports=dto.operator_lamports,
            treasury_lamports=dto.treasury_lamports,
            swap_in_lamports=dto.swap_in_lamports,
            claim_signature=dto.claim_signature,
            operator_signature=dto.operator_signature,
            treasury_signature=dto.treasury_signature,
            swap_signature=dto.swap_signature,
            note=dto.note,
            created_at=dto.created_at or datetime.now(UTC),
        )
        stmt = stmt.on_conflict_do_nothing(index_elements=["cycle_id"])
        result = await self.session.execute(stmt)
        await self.session.flush()
        return _created(result) > 0


# ============================================================================
# Snapshot
# ============================================================================


@dataclass
class SnapshotDTO:
    """Data transfer object for holder snapshots."""

    snapshot_id: int
    cycle_id: int
    taken_at_ms: int
    acquired_reward_raw: int
    allocated_reward_raw: int
    eligible_holder_count: int
    holders_hash: str
    entitlement_count: int = 0
    allocations: dict[str, int] = field(default_factory=dict)
    created_at: datetime | None = None

    @classmethod
    def from_model(cls, model: SnapshotModel) -> SnapshotDTO:
        """Create DTO from SQLAlchemy model."""
        return cls(
            snapshot_id=model.snapshot_id,
            cycle_id=model.cycle_id,
            taken_at_ms=model.taken_at_ms,
            acquired_reward_raw=int(model.acquired_reward_raw),
            allocated_reward_raw=int(model.allocated_reward_raw),
            eligible_holder_count=model.eligible_holder_count,
            holders_hash=model.holders_hash,
            entitlement_count=model.entitlement_count,
            allocations={str(k): int(v) for k, v in (model.allocations or {}).items()},
            created_at=model.created_at,
        )


class SnapshotRepository:
    """Repository for write-once snapshots."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, snapshot_id: int) -> SnapshotDTO | None:
        result = await self.session.execute(
            select(SnapshotModel).where(SnapshotModel.snapshot_id == snapshot_id)
        )
        model = result.scalar_one_or_none()
        return SnapshotDTO.from_model(model) if model else None

    async def get_by_cycle(self, cycle_id: int) -> SnapshotDTO | None:
        result = await self.session.execute(select(SnapshotModel).where(SnapshotModel.cycle_id == cycle_id))
        model = result.scalar_one_or_none()
        return SnapshotDTO.from_model(model) if model else None

    async def create(self, dto: SnapshotDTO) -> bool:
        """Create the snapshot row if no row exists for its id or cycle.

        Returns:
            True if this call created the row, False if another writer won.
        """
        stmt = _insert(self.session, SnapshotModel).values(
            snapshot_id=dto.snapshot_id,
            cycle_id=dto.cycle_id,
            taken_at_ms=dto.taken_at_ms,
            acquired_reward_raw=Decimal(dto.acquired_reward_raw),
            allocated_reward_raw=Decimal(dto.allocated_reward_raw),
            eligible_holder_count=dto.eligible_holder_count,
            holders_hash=dto.holders_hash,
            entitlement_count=dto.entitlement_count,
            allocations=dict(dto.allocations),
            created_at=dto.created_at or datetime.now(UTC),
        )
        # No conflict target: either the primary key or the cycle_id unique key may collide.
        stmt = stmt.on_conflict_do_nothing()
        result = await self.session.execute(stmt)
        await self.session.flush()
        return _created(result) > 0

    async def list_latest(self, limit: int = 7) -> list[SnapshotDTO]:
        result = await self.session.execute(
            select(SnapshotModel).order_by(SnapshotModel.snapshot_id.desc()).limit(limit)
        )
        return [SnapshotDTO.from_model(m) for m in result.scalars().all()]


# ============================================================================
# Entitlement
# ============================================================================


@dataclass
class EntitlementDTO:
    """Data transfer object for a per-wallet entitlement row."""

    snapshot_id: int
    wallet: str
    amount: Decimal
    claimed: bool = False
    claim_signature: str | None = None
    claimed_at: datetime | None = None
    created_at: datetime | None = None

    @classmethod
    def from_model(cls, model: EntitlementModel) -> EntitlementDTO:
        """Create DTO from SQLAlchemy model."""
        return cls(
            snapshot_id=model.snapshot_id,
            wallet=model.wallet,
            amount=model.amount,
            claimed=model.claimed,
            claim_signature=model.claim_signature,
            claimed_at=model.claimed_at,
            created_at=model.created_at,
        )


class EntitlementRepository:
    """Repository for entitlement rows, unique per (snapshot_id, wallet)."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def insert_many(self, snapshot_id: int, amounts: dict[str, Decimal]) -> int:
        """Insert entitlement rows, ignoring pairs that already exist.

        Args:
            snapshot_id: Owning snapshot.
            amounts: Stored amount per wallet.

        Returns:
            Number of rows newly created.
        """
        now = datetime.now(UTC)
        rows = [
            {
                "snapshot_id": snapshot_id,
                "wallet": wallet.lower(),
                "amount": amount,
                "claimed": False,
                "created_at": now,
            }
            for wallet, amount in amounts.items()
        ]
        created = 0
        for i in range(0, len(rows), ENTITLEMENT_INSERT_CHUNK):
            chunk = rows[i : i + ENTITLEMENT_INSERT_CHUNK]
            stmt = _insert(self.session, EntitlementModel).values(chunk)
            stmt = stmt.on_conflict_do_nothing(index_elements=["snapshot_id", "wallet"])
            result = await self.session.execute(stmt)
            created += _created(result)
        await self.session.flush()
        return created

    async def list_for_wallet(
        self,
        wallet: str,
        *,
        claimed: bool | None = None,
        snapshot_ids: Sequence[int] | None = None,
    ) -> list[EntitlementDTO]:
        """List a wallet's rows, newest snapshot first."""
        query = select(EntitlementModel).where(EntitlementModel.wallet == wallet.lower())
        if claimed is not None:
            query = query.where(EntitlementModel.claimed == claimed)
        if snapshot_ids is not None:
            query = query.where(EntitlementModel.snapshot_id.in_(list(snapshot_ids)))
        query = query.order_by(EntitlementModel.snapshot_id.desc())
        result = await self.session.execute(query)
        return [EntitlementDTO.from_model(m) for m in result.scalars().all()]

    async def count_for_snapshot(self, snapshot_id: int) -> int:
        result = await self.session.execute(
            select(func.count()).select_from(EntitlementModel).where(EntitlementModel.snapshot_id == snapshot_id)
        )
        return int(result.scalar_one())

    async def mark_claimed(self, wallet: str, snapshot_ids: Sequence[int], signature: str) -> int:
        """Flip unclaimed rows to claimed; already-claimed rows keep their signature.

        Returns:
            Number of rows transitioned.
        """
        if not snapshot_ids:
            return 0
        result = await self.session.execute(
            update(EntitlementModel)
            .where(
                EntitlementModel.wallet == wallet.lower(),
                EntitlementModel.snapshot_id.in_(list(snapshot_ids)),
                EntitlementModel.claimed.is_(False),
            )
            .values(claimed=True, claim_signature=signature, claimed_at=datetime.now(UTC))
        )
        await self.session.flush()
        return _created(result)


# ============================================================================
# Claim
# ============================================================================


@dataclass
class ClaimDTO:
    """Data transfer object for settled claims."""

    signature: str
    wallet: str
    amount_raw: int
    snapshot_ids: list[int] = field(default_factory=list)
    created_at: datetime | None = None

    @classmethod
    def from_model(cls, model: ClaimModel) -> ClaimDTO:
        """Create DTO from SQLAlchemy model."""
        return cls(
            signature=model.signature,
            wallet=model.wallet,
            amount_raw=int(model.amount_raw),
            snapshot_ids=list(model.snapshot_ids or []),
            created_at=model.created_at,
        )


class ClaimRepository:
    """Repository for the append-only claim audit trail."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, signature: str) -> ClaimDTO | None:
        result = await self.session.execute(select(ClaimModel).where(ClaimModel.signature == signature))
        model = result.scalar_one_or_none()
        return ClaimDTO.from_model(model) if model else None

    async def insert_if_absent(self, dto: ClaimDTO) -> bool:
        """Append a claim keyed by signature.

        Returns:
            True if the row is new, False if the signature was already recorded.
        """
        stmt = _insert(self.session, ClaimModel).values(
            signature=dto.signature,
            wallet=dto.wallet.lower(),
            amount_raw=Decimal(dto.amount_raw),
            snapshot_ids=list(dto.snapshot_ids),
            created_at=dto.created_at or datetime.now(UTC),
        )
        stmt = stmt.on_conflict_do_nothing(index_elements=["signature"])
        result = await self.session.execute(stmt)
        await self.session.flush()
        return _created(result) > 0

    async def list_recent(self, limit: int = 50, *, wallet: str | None = None) -> list[ClaimDTO]:
        query = select(ClaimModel)
        if wallet is not None:
            query = query.where(ClaimModel.wallet == wallet.lower())
        query = query.order_by(ClaimModel.created_at.desc()).limit(limit)
        result = await self.session.execute(query)
        return [ClaimDTO.from_model(m) for m in result.scalars().all()]

    async def total_raw(self) -> int:
        result = await self.session.execute(select(func.coalesce(func.sum(ClaimModel.amount_raw), 0)))
        return int(result.scalar_one())


# ============================================================================
# Preview
# ============================================================================


@dataclass
class ClaimPreviewDTO:
    """Data transfer object for claim preview bindings."""

    preview_id: str
    wallet: str
    message_hash: str
    snapshot_ids: list[int]
    amount_raw: int
    consumed: bool = False
    created_at: datetime | None = None

    @classmethod
    def from_model(cls, model: ClaimPreviewModel) -> ClaimPreviewDTO:
        """Create DTO from SQLAlchemy model."""
        return cls(
            preview_id=model.preview_id,
            wallet=model.wallet,
            message_hash=model.message_hash,
            snapshot_ids=[int(s) for s in model.snapshot_ids],
            amount_raw=int(model.amount_raw),
            consumed=model.consumed,
            created_at=model.created_at,
        )


class ClaimPreviewRepository:
    """Repository for claim preview bindings."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def insert(self, dto: ClaimPreviewDTO) -> ClaimPreviewDTO:
        model = ClaimPreviewModel(
            preview_id=dto.preview_id,
            wallet=dto.wallet.lower(),
            message_hash=dto.message_hash,
            snapshot_ids=list(dto.snapshot_ids),
            amount_raw=Decimal(dto.amount_raw),
            consumed=False,
            created_at=dto.created_at or datetime.now(UTC),
        )
        self.session.add(model)
        await self.session.flush()
        return ClaimPreviewDTO.from_model(model)

    async def get(self, preview_id: str) -> ClaimPreviewDTO | None:
        result = await self.session.execute(
            select(ClaimPreviewModel).where(ClaimPreviewModel.preview_id == preview_id)
        )
        model = result.scalar_one_or_none()
        return ClaimPreviewDTO.from_model(model) if model else None

    async def consume(self, preview_id: str) -> bool:
        """Flip ``consumed`` once.

        Returns:
            True if this call consumed the preview.
        """
        result = await self.session.execute(
            update(ClaimPreviewModel)
            .where(ClaimPreviewModel.preview_id == preview_id, ClaimPreviewModel.consumed.is_(False))
            .values(consumed=True)
        )
        await self.session.flush()
        return _created(result) > 0


# ============================================================================
# Counter
# ============================================================================


class CounterRepository:
    """Repository for named running totals."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, name: str) -> int | None:
        result = await self.session.execute(select(CounterModel.value).where(CounterModel.name == name))
        value = result.scalar_one_or_none()
        return int(value) if value is not None else None

    async def add(self, name: str, delta: int) -> None:
        """Atomically add ``delta`` to the counter, creating it at ``delta``."""
        if delta < 0:
            raise ValueError("Counters are monotonically increasing")
        now = datetime.now(UTC)
        stmt = _insert(self.session, CounterModel).values(name=name, value=Decimal(delta), updated_at=now)
        stmt = stmt.on_conflict_do_update(
            index_elements=["name"],
            set_={"value": CounterModel.value + stmt.excluded.value, "updated_at": now},
        )
        await self.session.execute(stmt)
        await self.session.flush()

"""SQLAlchemy models for persistent storage.

This module defines the database schema for cycle artifacts (preps and
snapshots), per-wallet entitlements, the claim audit trail, claim preview
bindings and running counters.
"""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class PrepModel(Base):
    """Terminal result of a cycle's fee collection and swap (one per cycle)."""

    __tablename__ = "preps"

    cycle_id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    step: Mapped[str] = mapped_column(String(32), nullable=False)

    # Raw reward-token units produced by the swap.
    acquired_reward_raw: Mapped[Decimal] = mapped_column(Numeric(40, 0), nullable=False, default=0)

    sol_delta_lamports: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    operator_lamports: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    treasury_lamports: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    swap_in_lamports: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    claim_signature: Mapped[str | None] = mapped_column(String(100), nullable=True)
    operator_signature: Mapped[str | None] = mapped_column(String(100), nullable=True)
    treasury_signature: Mapped[str | None] = mapped_column(String(100), nullable=True)
    swap_signature: Mapped[str | None] = mapped_column(String(100), nullable=True)
    note: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )


class SnapshotModel(Base):
    """Write-once holder snapshot for a cycle."""

    __tablename__ = "snapshots"

    snapshot_id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    cycle_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    taken_at_ms: Mapped[int] = mapped_column(BigInteger, nullable=False)

    acquired_reward_raw: Mapped[Decimal] = mapped_column(Numeric(40, 0), nullable=False)
    allocated_reward_raw: Mapped[Decimal] = mapped_column(Numeric(40, 0), nullable=False)
    eligible_holder_count: Mapped[int] = mapped_column(Integer, nullable=False)
    holders_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    entitlement_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    # wallet -> raw reward units; lets an interrupted entitlement write resume.
    allocations: Mapped[dict[str, int]] = mapped_column(JSON, nullable=False, default=dict)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )

    __table_args__ = (
        UniqueConstraint("cycle_id", name="uq_snapshots_cycle_id"),
    )


class EntitlementModel(Base):
    """Per-wallet reward for one snapshot."""

    __tablename__ = "entitlements"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    snapshot_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    wallet: Mapped[str] = mapped_column(String(64), nullable=False)

    # Stored in the configured unit convention (raw or display).
    amount: Mapped[Decimal] = mapped_column(Numeric(40, 12), nullable=False)

    claimed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    claim_signature: Mapped[str | None] = mapped_column(String(100), nullable=True)
    claimed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )

    __table_args__ = (
        UniqueConstraint("snapshot_id", "wallet", name="uq_entitlements_snapshot_wallet"),
        Index("idx_entitlements_wallet_claimed", "wallet", "claimed"),
    )


class ClaimModel(Base):
    """Append-only settled-claim audit row."""

    __tablename__ = "claims"

    signature: Mapped[str] = mapped_column(String(100), primary_key=True)
    wallet: Mapped[str] = mapped_column(String(64), nullable=False)
    amount_raw: Mapped[Decimal] = mapped_column(Numeric(40, 0), nullable=False)
    snapshot_ids: Mapped[list[int]] = mapped_column(JSON, nullable=False, default=list)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )

    __table_args__ = (
        Index("idx_claims_wallet", "wallet"),
        Index("idx_claims_created_at", "created_at"),
    )


class ClaimPreviewModel(Base):
    """Binding between an issued unsigned transaction and ledger rows."""

    __tablename__ = "claim_previews"

    preview_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    wallet: Mapped[str] = mapped_column(String(64), nullable=False)
    message_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    snapshot_ids: Mapped[list[int]] = mapped_column(JSON, nullable=False)
    amount_raw: Mapped[Decimal] = mapped_column(Numeric(40, 0), nullable=False)
    consumed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )

    __table_args__ = (Index("idx_claim_previews_wallet", "wallet"),)


class CounterModel(Base):
    """Named monotonically increasing counters."""

    __tablename__ = "counters"

    name: Mapped[str] = mapped_column(String(64), primary_key=True)
    value: Mapped[Decimal] = mapped_column(Numeric(40, 0), nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )

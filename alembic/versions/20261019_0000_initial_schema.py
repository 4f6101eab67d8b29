"""Initial schema for cycle artifacts, entitlements and claims.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19 00:00:00.000000+00:00
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # One terminal prepare result per cycle
    op.create_table(
        "preps",
        sa.Column("cycle_id", sa.BigInteger(), autoincrement=False, nullable=False),
        sa.Column("status", sa.String(32), nullable=False),
        sa.Column("step", sa.String(32), nullable=False),
        sa.Column("acquired_reward_raw", sa.Numeric(40, 0), nullable=False),
        sa.Column("sol_delta_lamports", sa.BigInteger(), nullable=False),
        sa.Column("operator_lamports", sa.BigInteger(), nullable=False),
        sa.Column("treasury_lamports", sa.BigInteger(), nullable=False),
        sa.Column("swap_in_lamports", sa.BigInteger(), nullable=False),
        sa.Column("claim_signature", sa.String(100), nullable=True),
        sa.Column("operator_signature", sa.String(100), nullable=True),
        sa.Column("treasury_signature", sa.String(100), nullable=True),
        sa.Column("swap_signature", sa.String(100), nullable=True),
        sa.Column("note", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("cycle_id"),
    )

    # Write-once holder snapshots
    op.create_table(
        "snapshots",
        sa.Column("snapshot_id", sa.BigInteger(), autoincrement=False, nullable=False),
        sa.Column("cycle_id", sa.BigInteger(), nullable=False),
        sa.Column("taken_at_ms", sa.BigInteger(), nullable=False),
        sa.Column("acquired_reward_raw", sa.Numeric(40, 0), nullable=False),
        sa.Column("allocated_reward_raw", sa.Numeric(40, 0), nullable=False),
        sa.Column("eligible_holder_count", sa.Integer(), nullable=False),
        sa.Column("holders_hash", sa.String(64), nullable=False),
        sa.Column("entitlement_count", sa.Integer(), nullable=False),
        sa.Column("allocations", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("snapshot_id"),
        sa.UniqueConstraint("cycle_id", name="uq_snapshots_cycle_id"),
    )

    # Per-wallet rewards
    op.create_table(
        "entitlements",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("snapshot_id", sa.BigInteger(), nullable=False),
        sa.Column("wallet", sa.String(64), nullable=False),
        sa.Column("amount", sa.Numeric(40, 12), nullable=False),
        sa.Column("claimed", sa.Boolean(), nullable=False),
        sa.Column("claim_signature", sa.String(100), nullable=True),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("snapshot_id", "wallet", name="uq_entitlements_snapshot_wallet"),
    )
    op.create_index("idx_entitlements_wallet_claimed", "entitlements", ["wallet", "claimed"])

    # Settled claims audit trail
    op.create_table(
        "claims",
        sa.Column("signature", sa.String(100), nullable=False),
        sa.Column("wallet", sa.String(64), nullable=False),
        sa.Column("amount_raw", sa.Numeric(40, 0), nullable=False),
        sa.Column("snapshot_ids", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("signature"),
    )
    op.create_index("idx_claims_wallet", "claims", ["wallet"])
    op.create_index("idx_claims_created_at", "claims", ["created_at"])

    # Preview bindings
    op.create_table(
        "claim_previews",
        sa.Column("preview_id", sa.String(36), nullable=False),
        sa.Column("wallet", sa.String(64), nullable=False),
        sa.Column("message_hash", sa.String(64), nullable=False),
        sa.Column("snapshot_ids", sa.JSON(), nullable=False),
        sa.Column("amount_raw", sa.Numeric(40, 0), nullable=False),
        sa.Column("consumed", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("preview_id"),
    )
    op.create_index("idx_claim_previews_wallet", "claim_previews", ["wallet"])

    # Running totals
    op.create_table(
        "counters",
        sa.Column("name", sa.String(64), nullable=False),
        sa.Column("value", sa.Numeric(40, 0), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("name"),
    )


def downgrade() -> None:
    op.drop_table("counters")
    op.drop_index("idx_claim_previews_wallet", table_name="claim_previews")
    op.drop_table("claim_previews")
    op.drop_index("idx_claims_created_at", table_name="claims")
    op.drop_index("idx_claims_wallet", table_name="claims")
    op.drop_table("claims")
    op.drop_index("idx_entitlements_wallet_claimed", table_name="entitlements")
    op.drop_table("entitlements")
    op.drop_table("snapshots")
    op.drop_table("preps")

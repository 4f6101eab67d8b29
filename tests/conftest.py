"""Pytest configuration and fixtures."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest
from solders.hash import Hash
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from reward_distributor.amounts import AmountPolicy
from reward_distributor.chain.transactions import TOKEN_PROGRAM_ID
from reward_distributor.ledger import EntitlementLedger
from reward_distributor.storage.database import DatabaseManager

WINDOW_MS = 600_000
# A window boundary: 3_000_000 windows of 10 minutes.
CYCLE_ID = 1_800_000_000_000


@pytest.fixture
async def db(tmp_path):
    """File-backed SQLite database with the schema created."""
    manager = DatabaseManager(f"sqlite+aiosqlite:///{tmp_path / 'rewards.db'}")
    await manager.init_schema_async()
    yield manager
    await manager.dispose_async()


@pytest.fixture
def policy() -> AmountPolicy:
    return AmountPolicy(decimals=6)


@pytest.fixture
def ledger(db: DatabaseManager, policy: AmountPolicy) -> EntitlementLedger:
    return EntitlementLedger(db, policy)


@pytest.fixture
def treasury_keypair() -> Keypair:
    return Keypair()


@pytest.fixture
def claimant_keypair() -> Keypair:
    return Keypair()


@pytest.fixture
def operator() -> Pubkey:
    return Keypair().pubkey()


@pytest.fixture
def reward_mint() -> Pubkey:
    return Keypair().pubkey()


@pytest.fixture
def mock_rpc() -> MagicMock:
    """Chain client double answering the reads the claim path makes."""
    rpc = MagicMock()
    rpc.commitment = "confirmed"
    rpc.get_mint_program = AsyncMock(return_value=TOKEN_PROGRAM_ID)
    rpc.get_token_balance = AsyncMock(return_value=10_000_000_000)
    rpc.get_latest_blockhash = AsyncMock(return_value=Hash.new_unique())
    rpc.broadcast = AsyncMock(side_effect=lambda raw, **_: "ignored")
    rpc.confirm = AsyncMock(return_value=True)
    rpc.get_signature_status = AsyncMock(return_value=None)
    rpc.get_transaction = AsyncMock(return_value=None)
    return rpc

"""Tests for eligible holder listing."""

from __future__ import annotations

import base64
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from reward_distributor.chain.holders import (
    HolderDirectory,
    merge_by_owner,
    parse_classic_account,
    parse_parsed_account,
)
from reward_distributor.chain.transactions import TOKEN_2022_PROGRAM_ID, TOKEN_PROGRAM_ID

COIN_MINT = Keypair().pubkey()


def classic_item(owner: Pubkey, amount: int) -> dict:
    data = bytes(owner) + amount.to_bytes(8, "little")
    return {"pubkey": str(Keypair().pubkey()), "account": {"data": [base64.b64encode(data).decode(), "base64"]}}


def parsed_item(owner: Pubkey, amount: int) -> dict:
    return {
        "account": {
            "data": {"parsed": {"info": {"owner": str(owner), "tokenAmount": {"amount": str(amount)}}}},
        }
    }


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def mock_rpc() -> MagicMock:
    rpc = MagicMock()
    rpc.commitment = "confirmed"
    rpc.get_mint_program = AsyncMock(return_value=TOKEN_PROGRAM_ID)
    rpc.get_mint_decimals = AsyncMock(return_value=6)
    rpc.get_program_accounts = AsyncMock(return_value=[])
    return rpc


class TestParsing:
    """Tests for token account decoding."""

    def test_classic_account(self) -> None:
        owner = Keypair().pubkey()
        assert parse_classic_account(classic_item(owner, 42)) == (str(owner), 42)

    def test_classic_account_garbage(self) -> None:
        assert parse_classic_account({"account": {"data": ["AAAA", "base64"]}}) is None
        assert parse_classic_account({"account": {}}) is None

    def test_parsed_account(self) -> None:
        owner = Keypair().pubkey()
        assert parse_parsed_account(parsed_item(owner, 7)) == (str(owner), 7)
        assert parse_parsed_account({"account": {"data": {"parsed": {}}}}) is None

    def test_merge_by_owner(self) -> None:
        merged = merge_by_owner([("OwnerA", 5), ("ownera", 3), ("OwnerB", 0)])
        assert merged == {"ownera": ("OwnerA", 8)}


class TestHolderDirectory:
    """Tests for HolderDirectory."""

    @pytest.mark.asyncio
    async def test_filters_threshold_and_exclusions(self, mock_rpc: MagicMock) -> None:
        whale, minnow, pool = Keypair().pubkey(), Keypair().pubkey(), Keypair().pubkey()
        mock_rpc.get_program_accounts = AsyncMock(
            return_value=[
                classic_item(whale, 20_000_000_000),
                classic_item(whale, 5_000_000_000),
                classic_item(minnow, 9_999_999_999),
                classic_item(pool, 900_000_000_000),
            ]
        )
        directory = HolderDirectory(
            mock_rpc,
            COIN_MINT,
            min_balance=Decimal("10000"),
            decimals=6,
            excluded_wallets=[str(pool).upper(), " "],
        )

        holders = await directory.list_eligible_holders()
        assert [(h.address, h.balance_raw) for h in holders] == [(str(whale), 25_000_000_000)]
        assert holders[0].wallet == str(whale).lower()

        program, config = mock_rpc.get_program_accounts.await_args.args
        assert program == TOKEN_PROGRAM_ID
        assert config["encoding"] == "base64"
        assert {"memcmp": {"offset": 0, "bytes": str(COIN_MINT)}} in config["filters"]

    @pytest.mark.asyncio
    async def test_sorted_by_wallet(self, mock_rpc: MagicMock) -> None:
        owners = [Keypair().pubkey() for _ in range(5)]
        mock_rpc.get_program_accounts = AsyncMock(return_value=[classic_item(o, 10**12) for o in owners])
        directory = HolderDirectory(mock_rpc, COIN_MINT, decimals=6)

        wallets = [h.wallet for h in await directory.list_eligible_holders()]
        assert wallets == sorted(wallets)

    @pytest.mark.asyncio
    async def test_token_2022_uses_parsed_encoding(self, mock_rpc: MagicMock) -> None:
        owner = Keypair().pubkey()
        mock_rpc.get_mint_program = AsyncMock(return_value=TOKEN_2022_PROGRAM_ID)
        mock_rpc.get_program_accounts = AsyncMock(return_value=[parsed_item(owner, 10**11)])
        directory = HolderDirectory(mock_rpc, COIN_MINT, decimals=6)

        holders = await directory.list_eligible_holders()
        assert [h.address for h in holders] == [str(owner)]
        mock_rpc.get_program_accounts.assert_awaited_once()
        program, config = mock_rpc.get_program_accounts.await_args.args
        assert program == TOKEN_2022_PROGRAM_ID
        assert config["encoding"] == "jsonParsed"

    @pytest.mark.asyncio
    async def test_reads_decimals_when_unknown(self, mock_rpc: MagicMock) -> None:
        directory = HolderDirectory(mock_rpc, COIN_MINT, decimals=None)
        await directory.list_eligible_holders()
        mock_rpc.get_mint_decimals.assert_awaited_once_with(COIN_MINT)

    @pytest.mark.asyncio
    async def test_listing_is_cached(self, mock_rpc: MagicMock) -> None:
        clock = FakeClock()
        directory = HolderDirectory(mock_rpc, COIN_MINT, decimals=6, cache_ttl_seconds=5, clock=clock)

        await directory.list_eligible_holders()
        clock.now = 4.0
        await directory.list_eligible_holders()
        assert mock_rpc.get_program_accounts.await_count == 1

        clock.now = 5.5
        await directory.list_eligible_holders()
        assert mock_rpc.get_program_accounts.await_count == 2

        directory.invalidate()
        await directory.list_eligible_holders(use_cache=True)
        assert mock_rpc.get_program_accounts.await_count == 3

    @pytest.mark.asyncio
    async def test_undecodable_accounts_skipped(self, mock_rpc: MagicMock) -> None:
        owner = Keypair().pubkey()
        mock_rpc.get_program_accounts = AsyncMock(
            return_value=[{"account": {"data": ["!!", "base64"]}}, classic_item(owner, 10**11)]
        )
        directory = HolderDirectory(mock_rpc, COIN_MINT, decimals=6)
        assert len(await directory.list_eligible_holders()) == 1

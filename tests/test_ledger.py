"""Tests for the entitlement ledger."""

from decimal import Decimal
from unittest.mock import patch

import pytest

from reward_distributor.amounts import AmountPolicy, AmountUnit
from reward_distributor.ledger import TOTAL_DISTRIBUTED_COUNTER, EntitlementLedger
from reward_distributor.storage.database import DatabaseManager
from reward_distributor.storage.repos import ClaimDTO, CounterRepository, EntitlementRepository

CYCLE_ID = 1_800_000_000_000
NEXT_CYCLE_ID = CYCLE_ID + 600_000
WALLET = "9xQeWvG816bUx9EPjHmaT23yvVM2ZWbrrpZb9PusVFin"


class TestWriteEntitlements:
    """Tests for the idempotent entitlement write."""

    @pytest.mark.asyncio
    async def test_write_is_idempotent(self, ledger: EntitlementLedger) -> None:
        shares = {WALLET: 63_333_333, "other": 31_666_666}
        assert await ledger.write_entitlements(CYCLE_ID, shares) == 2
        assert await ledger.write_entitlements(CYCLE_ID, shares) == 0
        assert await ledger.count_for_snapshot(CYCLE_ID) == 2

    @pytest.mark.asyncio
    async def test_retry_never_changes_amount(self, ledger: EntitlementLedger) -> None:
        await ledger.write_entitlements(CYCLE_ID, {WALLET: 10})
        await ledger.write_entitlements(CYCLE_ID, {WALLET: 99})

        rows = await ledger.rows(WALLET)
        assert [r.amount_raw for r in rows] == [10]

    @pytest.mark.asyncio
    async def test_zero_shares_skipped(self, ledger: EntitlementLedger) -> None:
        assert await ledger.write_entitlements(CYCLE_ID, {WALLET: 0}) == 0
        assert await ledger.write_entitlements(CYCLE_ID, {}) == 0

    @pytest.mark.asyncio
    async def test_stored_in_display_units(self, db: DatabaseManager, ledger: EntitlementLedger) -> None:
        await ledger.write_entitlements(CYCLE_ID, {WALLET: 63_333_333})
        async with db.get_async_session() as session:
            rows = await EntitlementRepository(session).list_for_wallet(WALLET)
        assert rows[0].amount == Decimal("63.333333")

    @pytest.mark.asyncio
    async def test_raw_unit_policy(self, db: DatabaseManager) -> None:
        raw_ledger = EntitlementLedger(db, AmountPolicy(decimals=6, unit=AmountUnit.RAW))
        await raw_ledger.write_entitlements(CYCLE_ID, {WALLET: 63_333_333})

        async with db.get_async_session() as session:
            rows = await EntitlementRepository(session).list_for_wallet(WALLET)
        assert rows[0].amount == Decimal(63_333_333)
        assert (await raw_ledger.summary(WALLET)).entitled_raw == 63_333_333


class TestQueries:
    """Tests for ledger reads."""

    @pytest.mark.asyncio
    async def test_list_unclaimed(self, ledger: EntitlementLedger) -> None:
        await ledger.write_entitlements(CYCLE_ID, {WALLET: 63_333_333})
        await ledger.write_entitlements(NEXT_CYCLE_ID, {WALLET: 1_000_000})

        unclaimed = await ledger.list_unclaimed(WALLET)
        assert unclaimed.total_raw == 64_333_333
        assert unclaimed.snapshot_ids == [NEXT_CYCLE_ID, CYCLE_ID]
        assert unclaimed.wallet == WALLET.lower()

        subset = await ledger.list_unclaimed(WALLET, [CYCLE_ID])
        assert subset.total_raw == 63_333_333

    @pytest.mark.asyncio
    async def test_empty_wallet(self, ledger: EntitlementLedger) -> None:
        unclaimed = await ledger.list_unclaimed("nobody")
        assert unclaimed.is_empty()
        assert unclaimed.snapshot_ids == []

    @pytest.mark.asyncio
    async def test_summary_conserves_totals(self, ledger: EntitlementLedger) -> None:
        await ledger.write_entitlements(CYCLE_ID, {WALLET: 5_000_000})
        await ledger.write_entitlements(NEXT_CYCLE_ID, {WALLET: 2_000_000})
        await ledger.mark_claimed(WALLET, [CYCLE_ID], "sig-1")

        summary = await ledger.summary(WALLET)
        assert summary.claimed_raw == 5_000_000
        assert summary.unclaimed_raw == 2_000_000
        assert summary.entitled_raw == summary.claimed_raw + summary.unclaimed_raw

    @pytest.mark.asyncio
    async def test_running_total_falls_back_to_claims(self, ledger: EntitlementLedger) -> None:
        assert await ledger.running_total() == 0
        await ledger.record_claim(ClaimDTO(signature="sig-1", wallet=WALLET, amount_raw=7))
        assert await ledger.running_total() == 7

        await ledger.add_to_running_total(100)
        assert await ledger.running_total() == 100

    @pytest.mark.asyncio
    async def test_add_to_running_total_ignores_non_positive(
        self, db: DatabaseManager, ledger: EntitlementLedger
    ) -> None:
        await ledger.add_to_running_total(0)
        async with db.get_async_session() as session:
            assert await CounterRepository(session).get(TOTAL_DISTRIBUTED_COUNTER) is None


class TestSettle:
    """Tests for claim settlement."""

    @pytest.mark.asyncio
    async def test_settle_marks_records_and_counts(self, ledger: EntitlementLedger) -> None:
        await ledger.write_entitlements(CYCLE_ID, {WALLET: 63_333_333})

        settlement = await ledger.settle(
            wallet=WALLET, snapshot_ids=[CYCLE_ID], signature="sig-1", amount_raw=63_333_333
        )
        assert settlement.rows_marked == 1
        assert settlement.claim_recorded is True
        assert settlement.total_incremented is True
        assert settlement.complete

        assert (await ledger.list_unclaimed(WALLET)).is_empty()
        assert await ledger.running_total() == 63_333_333
        rows = await ledger.rows(WALLET)
        assert rows[0].claim_signature == "sig-1"

    @pytest.mark.asyncio
    async def test_resettle_same_signature_is_noop(self, ledger: EntitlementLedger) -> None:
        await ledger.write_entitlements(CYCLE_ID, {WALLET: 10})
        await ledger.settle(wallet=WALLET, snapshot_ids=[CYCLE_ID], signature="sig-1", amount_raw=10)

        again = await ledger.settle(wallet=WALLET, snapshot_ids=[CYCLE_ID], signature="sig-1", amount_raw=10)
        assert again.rows_marked == 0
        assert again.claim_recorded is False
        assert again.total_incremented is False
        assert await ledger.running_total() == 10

    @pytest.mark.asyncio
    async def test_settle_failure_is_reported(self, ledger: EntitlementLedger) -> None:
        await ledger.write_entitlements(CYCLE_ID, {WALLET: 10})
        with patch(
            "reward_distributor.ledger.ClaimRepository.insert_if_absent",
            side_effect=RuntimeError("disk full"),
        ):
            settlement = await ledger.settle(
                wallet=WALLET, snapshot_ids=[CYCLE_ID], signature="sig-1", amount_raw=10
            )

        assert not settlement.complete
        assert "disk full" in settlement.errors[0]
        # The shared transaction rolled back the row update too
        assert (await ledger.list_unclaimed(WALLET)).total_raw == 10

    @pytest.mark.asyncio
    async def test_recent_claims(self, ledger: EntitlementLedger) -> None:
        await ledger.write_entitlements(CYCLE_ID, {WALLET: 10})
        await ledger.settle(wallet=WALLET, snapshot_ids=[CYCLE_ID], signature="sig-1", amount_raw=10)

        claims = await ledger.recent_claims(5, wallet=WALLET)
        assert [c.signature for c in claims] == ["sig-1"]
        assert claims[0].snapshot_ids == [CYCLE_ID]

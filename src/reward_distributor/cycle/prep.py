"""Prepare phase: collect fees, split them, and swap the treasury share.

Every cycle ends with exactly one terminal Prep row. The row is create-only:
once written, a later call for the same cycle returns it unchanged, whether
this process or another one wrote it.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from decimal import ROUND_DOWN, Decimal
from enum import Enum
from typing import Any

import httpx
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from reward_distributor.amounts import LAMPORTS_PER_SOL
from reward_distributor.chain.fees import FeeCollector
from reward_distributor.chain.rpc import ChainClientError, SolanaRpcClient
from reward_distributor.chain.swap import JupiterSwapClient, SwapError, SwapQuote
from reward_distributor.chain.transactions import associated_token_address, build_sol_transfer_transaction
from reward_distributor.cycle.clock import Cycle, WindowClock
from reward_distributor.errors import ClaimValidationError, new_correlation_id
from reward_distributor.guards.single_flight import SingleFlight
from reward_distributor.storage.database import DatabaseManager
from reward_distributor.storage.repos import PrepDTO, PrepRepository

logger = logging.getLogger(__name__)

MIN_ARRIVAL_TOLERANCE_LAMPORTS = LAMPORTS_PER_SOL // 10_000  # 0.0001 SOL


class PrepStatus(str, Enum):
    """Persisted status of a cycle's Prep row."""

    OK = "ok"
    SWAP_FAILED_OR_DUST = "swap_failed_or_dust"
    ERROR = "error"


class PrepStep(str, Enum):
    """How a prepare call ended."""

    ALREADY_PREPARED = "already-prepared"
    COMPLETE = "complete"
    CLAIMED_ZERO = "claimed-zero"
    TREASURY_SWAP_FAILED = "treasury-swap-failed"
    FAILED = "failed"


@dataclass(frozen=True)
class PrepConfig:
    """Revenue split and polling parameters."""

    operator_pct: Decimal = Decimal("0.10")
    treasury_pct: Decimal = Decimal("0.85")
    swap_pct: Decimal = Decimal("0.95")
    min_operating_buffer_lamports: int = 4_000_000
    slippage_bps: tuple[int, ...] = (100, 200, 300)
    poll_tries: int = 18
    poll_delay_seconds: float = 0.9
    swap_retry_delay_seconds: float = 1.2
    confirm_timeout_seconds: float = 30.0


@dataclass(frozen=True)
class SplitPlan:
    """How a fee arrival is divided between operator, treasury and buffer."""

    received_lamports: int
    operator_lamports: int
    treasury_lamports: int

    @property
    def retained_lamports(self) -> int:
        return self.received_lamports - self.operator_lamports - self.treasury_lamports


def _fraction(amount: int, pct: Decimal) -> int:
    return int((Decimal(amount) * pct).to_integral_value(rounding=ROUND_DOWN))


def plan_split(
    received_lamports: int,
    *,
    operator_pct: Decimal,
    treasury_pct: Decimal,
    min_buffer_lamports: int,
) -> SplitPlan:
    """Split ``received_lamports``, shrinking the treasury share to keep the buffer."""
    operator = _fraction(received_lamports, operator_pct)
    treasury = _fraction(received_lamports, treasury_pct)
    kept = received_lamports - operator - treasury
    if kept < min_buffer_lamports:
        treasury = max(0, treasury - (min_buffer_lamports - kept))
    return SplitPlan(
        received_lamports=received_lamports,
        operator_lamports=operator,
        treasury_lamports=treasury,
    )


@dataclass(frozen=True)
class PrepOutcome:
    """Result of one prepare call.

    ``prep`` is set whenever the cycle has a terminal row. A call that failed
    before causing any on-chain effect leaves it None so the caller retries.
    """

    cycle_id: int
    step: PrepStep | None
    prep: PrepDTO | None = None
    error: str | None = None
    correlation_id: str | None = None

    @property
    def terminal(self) -> bool:
        return self.prep is not None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "ok": self.step in (PrepStep.ALREADY_PREPARED, PrepStep.COMPLETE, PrepStep.CLAIMED_ZERO),
            "cycleId": self.cycle_id,
            "step": self.step.value if self.step else None,
        }
        if self.prep is not None:
            payload["prep"] = {
                "status": self.prep.status,
                "acquiredRewardRaw": str(self.prep.acquired_reward_raw),
                "solDeltaLamports": self.prep.sol_delta_lamports,
                "operatorLamports": self.prep.operator_lamports,
                "treasuryLamports": self.prep.treasury_lamports,
                "swapInLamports": self.prep.swap_in_lamports,
                "signatures": self.prep.signatures(),
                "note": self.prep.note,
            }
        if self.error:
            payload["error"] = self.error
        return payload


@dataclass
class _Progress:
    """Effects observed so far in one prepare run."""

    claim_signature: str | None = None
    sol_delta_lamports: int = 0
    operator_lamports: int = 0
    treasury_lamports: int = 0
    swap_in_lamports: int = 0
    operator_signature: str | None = None
    treasury_signature: str | None = None
    swap_signature: str | None = None
    acquired_reward_raw: int = 0

    def to_dto(self, cycle_id: int, status: PrepStatus, step: PrepStep, note: str | None) -> PrepDTO:
        return PrepDTO(
            cycle_id=cycle_id,
            status=status.value,
            step=step.value,
            acquired_reward_raw=self.acquired_reward_raw,
            sol_delta_lamports=self.sol_delta_lamports,
            operator_lamports=self.operator_lamports,
            treasury_lamports=self.treasury_lamports,
            swap_in_lamports=self.swap_in_lamports,
            claim_signature=self.claim_signature,
            operator_signature=self.operator_signature,
            treasury_signature=self.treasury_signature,
            swap_signature=self.swap_signature,
            note=note,
        )


class PrepEngine:
    """Runs the fee-collection and swap phase for a cycle exactly once.

    Example:
        ```python
        engine = PrepEngine(db, rpc, fees, swapper, clock=clock, operating=dev_kp,
                            treasury=treasury_kp, operator=team, reward_mint=mint)
        outcome = await engine.run_prepare()
        print(outcome.step, outcome.prep.acquired_reward_raw)
        ```
    """

    def __init__(
        self,
        db: DatabaseManager,
        rpc: SolanaRpcClient,
        fees: FeeCollector,
        swapper: JupiterSwapClient,
        *,
        clock: WindowClock,
        operating: Keypair,
        treasury: Keypair,
        operator: Pubkey,
        reward_mint: Pubkey,
        config: PrepConfig | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        """Initialize the engine.

        Args:
            db: Database manager holding the Prep table.
            rpc: Ledger network client.
            fees: Creator-fee collector.
            swapper: SOL to reward-token swap client.
            clock: Window math used to resolve the current cycle.
            operating: Keypair receiving collected fees.
            treasury: Keypair holding and swapping the treasury share.
            operator: Receives the operator share.
            reward_mint: Mint of the reward token.
            config: Split and polling parameters.
            sleep: Awaitable sleep (overridable in tests).
        """
        self._db = db
        self._rpc = rpc
        self._fees = fees
        self._swapper = swapper
        self._clock = clock
        self._operating = operating
        self._treasury = treasury
        self._operator = operator
        self._reward_mint = reward_mint
        self._config = config or PrepConfig()
        self._sleep = sleep
        self._flight: SingleFlight[PrepOutcome] = SingleFlight()

    def _resolve(self, cycle_id: int | None) -> Cycle:
        if cycle_id is None:
            return self._clock.current()
        try:
            return self._clock.cycle(cycle_id)
        except ValueError as e:
            raise ClaimValidationError(str(e)) from e

    async def get_prep(self, cycle_id: int) -> PrepDTO | None:
        async with self._db.get_async_session() as session:
            return await PrepRepository(session).get(cycle_id)

    async def run_prepare(self, cycle_id: int | None = None) -> PrepOutcome:
        """Prepare ``cycle_id`` (default: the current cycle) once.

        Raises:
            ClaimValidationError: If ``cycle_id`` is not a window boundary.
        """
        cycle = self._resolve(cycle_id)
        cid = new_correlation_id()
        existing = await self.get_prep(cycle.cycle_id)
        if existing is not None:
            logger.info("cid=%s Cycle %d already prepared (status=%s)", cid, cycle.cycle_id, existing.status)
            return PrepOutcome(cycle.cycle_id, PrepStep.ALREADY_PREPARED, existing, correlation_id=cid)
        return await self._flight.do(str(cycle.cycle_id), lambda: self._prepare(cycle.cycle_id, cid))

    async def abandon(self, cycle_id: int, reason: str) -> PrepOutcome:
        """Record a failed terminal row so the snapshot phase is not blocked."""
        cid = new_correlation_id()
        logger.warning("cid=%s Abandoning prepare for cycle %d: %s", cid, cycle_id, reason)
        return await self._record(cycle_id, _Progress(), PrepStatus.ERROR, PrepStep.FAILED, cid, note=reason)

    async def _prepare(self, cycle_id: int, cid: str) -> PrepOutcome:
        existing = await self.get_prep(cycle_id)
        if existing is not None:
            return PrepOutcome(cycle_id, PrepStep.ALREADY_PREPARED, existing, correlation_id=cid)

        operating = self._operating.pubkey()
        try:
            pre_balance = await self._rpc.get_balance(operating)
        except ChainClientError as e:
            logger.warning("cid=%s Cannot read operating balance for cycle %d: %s", cid, cycle_id, e)
            return PrepOutcome(cycle_id, None, error=f"balance unavailable: {e}", correlation_id=cid)

        logger.info("cid=%s Collecting fees for cycle %d", cid, cycle_id)
        progress = _Progress()
        collection = await self._fees.collect()
        progress.claim_signature = collection.signature

        progress.sol_delta_lamports = await self._poll_delta(operating, pre_balance)
        if progress.sol_delta_lamports <= 0:
            logger.info("cid=%s No fees arrived for cycle %d", cid, cycle_id)
            return await self._record(
                cycle_id, progress, PrepStatus.OK, PrepStep.CLAIMED_ZERO, cid, note="no revenue this cycle"
            )

        try:
            return await self._distribute(cycle_id, progress, cid)
        except (ChainClientError, httpx.HTTPError) as e:
            logger.error("cid=%s Prepare for cycle %d failed after fees arrived: %s", cid, cycle_id, e)
            return await self._record(cycle_id, progress, PrepStatus.ERROR, PrepStep.FAILED, cid, note=str(e))

    async def _distribute(self, cycle_id: int, progress: _Progress, cid: str) -> PrepOutcome:
        cfg = self._config
        plan = plan_split(
            progress.sol_delta_lamports,
            operator_pct=cfg.operator_pct,
            treasury_pct=cfg.treasury_pct,
            min_buffer_lamports=cfg.min_operating_buffer_lamports,
        )
        progress.operator_lamports = plan.operator_lamports
        progress.treasury_lamports = plan.treasury_lamports
        logger.info(
            "cid=%s Split %d lamports: operator=%d treasury=%d retained=%d",
            cid,
            plan.received_lamports,
            plan.operator_lamports,
            plan.treasury_lamports,
            plan.retained_lamports,
        )

        if plan.operator_lamports > 0:
            progress.operator_signature = await self._send_sol(self._operator, plan.operator_lamports, cid)

        treasury = self._treasury.pubkey()
        received = 0
        if plan.treasury_lamports > 0:
            pre_treasury = await self._rpc.get_balance(treasury)
            progress.treasury_signature = await self._send_sol(treasury, plan.treasury_lamports, cid)
            post_treasury = await self._wait_arrival(treasury, pre_treasury, plan.treasury_lamports)
            delta = post_treasury - pre_treasury
            received = delta if delta > 0 else plan.treasury_lamports

        progress.swap_in_lamports = _fraction(received, cfg.swap_pct)
        if progress.swap_in_lamports <= 0:
            return await self._record(
                cycle_id,
                progress,
                PrepStatus.SWAP_FAILED_OR_DUST,
                PrepStep.TREASURY_SWAP_FAILED,
                cid,
                note="treasury share too small to swap",
            )

        signature, acquired, error = await self._swap(progress.swap_in_lamports, cid)
        if signature is None:
            return await self._record(
                cycle_id,
                progress,
                PrepStatus.SWAP_FAILED_OR_DUST,
                PrepStep.TREASURY_SWAP_FAILED,
                cid,
                note=f"swap failed: {error}",
            )
        progress.swap_signature = signature
        progress.acquired_reward_raw = acquired
        return await self._record(cycle_id, progress, PrepStatus.OK, PrepStep.COMPLETE, cid, note=None)

    async def _swap(self, amount_in: int, cid: str) -> tuple[str | None, int, str | None]:
        """Walk the slippage ladder; return (signature, acquired raw, last error)."""
        reward_program = await self._rpc.get_mint_program(self._reward_mint)
        reward_account = associated_token_address(self._treasury.pubkey(), self._reward_mint, reward_program)
        pre_reward = await self._rpc.get_token_balance(reward_account) or 0

        last_error: Exception | None = None
        for bps in self._config.slippage_bps:
            quote: SwapQuote | None = None
            try:
                quote = await self._swapper.quote(amount_in, bps)
                signature = await self._swapper.execute(quote, self._treasury)
            except (SwapError, ChainClientError) as e:
                last_error = e
                logger.warning("cid=%s Swap at %d bps failed: %s", cid, bps, e)
                await self._sleep(self._config.swap_retry_delay_seconds)
                continue

            acquired = 0
            try:
                post_reward = await self._rpc.get_token_balance(reward_account) or 0
                acquired = post_reward - pre_reward
            except ChainClientError as e:
                logger.warning("cid=%s Reward balance unreadable after swap %s: %s", cid, signature, e)
            if acquired <= 0:
                acquired = quote.amount_out
            logger.info("cid=%s Swapped %d lamports for %d reward units (%s)", cid, amount_in, acquired, signature)
            return signature, acquired, None

        return None, 0, str(last_error) if last_error else "no slippage steps configured"

    async def _send_sol(self, destination: Pubkey, lamports: int, cid: str) -> str:
        blockhash = await self._rpc.get_latest_blockhash()
        tx = build_sol_transfer_transaction(self._operating, destination, lamports, blockhash)
        signature = await self._rpc.broadcast(bytes(tx))
        if not await self._rpc.confirm(signature, timeout_seconds=self._config.confirm_timeout_seconds):
            logger.warning("cid=%s Transfer %s to %s not confirmed in time", cid, signature, destination)
        return signature

    async def _poll_delta(self, account: Pubkey, pre_balance: int) -> int:
        """Poll until ``account`` grows past ``pre_balance``; the delta or 0."""
        delta = 0
        for attempt in range(self._config.poll_tries):
            try:
                delta = await self._rpc.get_balance(account) - pre_balance
            except ChainClientError as e:
                logger.debug("Balance poll %d failed: %s", attempt + 1, e)
            if delta > 0:
                return delta
            if attempt < self._config.poll_tries - 1:
                await self._sleep(self._config.poll_delay_seconds)
        return max(0, delta)

    async def _wait_arrival(self, account: Pubkey, pre_balance: int, expected: int) -> int:
        """Poll until ``expected`` lamports (within tolerance) reached ``account``."""
        tolerance = max(MIN_ARRIVAL_TOLERANCE_LAMPORTS, expected // 100)
        current = pre_balance
        for attempt in range(self._config.poll_tries):
            try:
                current = await self._rpc.get_balance(account)
            except ChainClientError as e:
                logger.debug("Arrival poll %d failed: %s", attempt + 1, e)
            if current >= pre_balance + expected - tolerance:
                return current
            if attempt < self._config.poll_tries - 1:
                await self._sleep(self._config.poll_delay_seconds)
        return current

    async def _record(
        self,
        cycle_id: int,
        progress: _Progress,
        status: PrepStatus,
        step: PrepStep,
        cid: str,
        *,
        note: str | None,
    ) -> PrepOutcome:
        dto = progress.to_dto(cycle_id, status, step, note)
        async with self._db.get_async_session() as session:
            repo = PrepRepository(session)
            created = await repo.create(dto)
            stored = await repo.get(cycle_id)
        if not created:
            logger.warning("cid=%s Prep for cycle %d was recorded by another writer", cid, cycle_id)
            return PrepOutcome(cycle_id, PrepStep.ALREADY_PREPARED, stored, correlation_id=cid)
        logger.info(
            "cid=%s Cycle %d prepared: step=%s status=%s acquired=%d",
            cid,
            cycle_id,
            step.value,
            status.value,
            progress.acquired_reward_raw,
        )
        return PrepOutcome(cycle_id, step, stored or dto, correlation_id=cid)

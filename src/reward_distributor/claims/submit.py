"""Claim submission: verify, co-sign, broadcast and settle a signed claim.

Nothing the client sends is trusted. The amount and rows are re-derived from
the ledger under the wallet's lock, the transaction is checked structurally,
and only then does the treasury add its signature.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any

from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.transaction import VersionedTransaction

from reward_distributor.amounts import format_display, to_display
from reward_distributor.chain.rpc import (
    AlreadyProcessedError,
    ChainClientError,
    RPCError,
    SolanaRpcClient,
    TransientRPCError,
)
from reward_distributor.chain.transactions import (
    ClaimTransferSpec,
    TransactionDecodeError,
    co_sign,
    deserialize_transaction,
    has_valid_signature,
    message_hash,
    transaction_signature,
)
from reward_distributor.claims.preview import ClaimPreviewBuilder, parse_wallet, treasury_liquidity
from reward_distributor.claims.verification import verify_claim_transaction
from reward_distributor.errors import (
    ClaimValidationError,
    InsufficientLiquidityError,
    NothingToClaimError,
    RateLimitedError,
    TransientUpstreamError,
    new_correlation_id,
)
from reward_distributor.guards.rate_limit import RateLimiter
from reward_distributor.guards.wallet_lock import LocalWalletLock, WalletLock
from reward_distributor.ledger import EntitlementLedger, Settlement
from reward_distributor.storage.database import DatabaseManager
from reward_distributor.storage.repos import ClaimPreviewDTO, ClaimPreviewRepository, ClaimRepository

logger = logging.getLogger(__name__)

DEFAULT_HINT_TOLERANCE = Decimal("1e-9")
DEFAULT_BROADCAST_ATTEMPTS = 4
DEFAULT_BROADCAST_BASE_DELAY_SECONDS = 0.4


@dataclass
class SettlementReport:
    """Post-broadcast bookkeeping, reported rather than raised."""

    confirmed: bool = False
    rows_marked: int = 0
    claim_recorded: bool = False
    total_incremented: bool = False
    preview_consumed: bool | None = None
    errors: list[str] = field(default_factory=list)

    @classmethod
    def from_settlement(cls, settlement: Settlement, *, confirmed: bool) -> SettlementReport:
        return cls(
            confirmed=confirmed,
            rows_marked=settlement.rows_marked,
            claim_recorded=settlement.claim_recorded,
            total_incremented=settlement.total_incremented,
            errors=list(settlement.errors),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "confirmed": self.confirmed,
            "rowsMarked": self.rows_marked,
            "claimRecorded": self.claim_recorded,
            "totalIncremented": self.total_incremented,
            "previewConsumed": self.preview_consumed,
            "errors": list(self.errors),
        }


@dataclass(frozen=True)
class SubmitOutcome:
    """Result of a broadcast (or reported) claim."""

    signature: str
    wallet: str
    amount_raw: int
    decimals: int
    snapshot_ids: tuple[int, ...]
    settlement: SettlementReport
    correlation_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": True,
            "signature": self.signature,
            "wallet": self.wallet,
            "amount": format_display(self.amount_raw, self.decimals),
            "amountRaw": str(self.amount_raw),
            "snapshotIds": list(self.snapshot_ids),
            "settlement": self.settlement.to_dict(),
        }


def normalize_snapshot_ids(snapshot_ids: Iterable[Any]) -> list[int]:
    """Parse, de-duplicate and sort client-supplied snapshot ids.

    Raises:
        ClaimValidationError: If the list is empty or holds non-integers.
    """
    parsed: set[int] = set()
    for raw in snapshot_ids:
        if isinstance(raw, bool):
            raise ClaimValidationError(f"Invalid snapshot id: {raw!r}")
        try:
            value = int(raw)
        except (TypeError, ValueError) as e:
            raise ClaimValidationError(f"Invalid snapshot id: {raw!r}") from e
        if value <= 0 or str(value) != str(raw).strip():
            raise ClaimValidationError(f"Invalid snapshot id: {raw!r}")
        parsed.add(value)
    if not parsed:
        raise ClaimValidationError("snapshotIds must not be empty")
    return sorted(parsed)


class ClaimSubmitValidator:
    """Accepts signed claims and turns them into settled ledger entries.

    At most one claim per wallet is processed at a time; a second concurrent
    submit fails fast with ``ClaimInProgressError`` instead of queueing.

    Example:
        ```python
        validator = ClaimSubmitValidator(db, ledger, rpc, treasury_keypair=kp, operator=op, reward_mint=mint)
        outcome = await validator.submit(wallet, signed_tx_b64, snapshot_ids=[1700000400000])
        print(outcome.signature, outcome.settlement.rows_marked)
        ```
    """

    def __init__(
        self,
        db: DatabaseManager,
        ledger: EntitlementLedger,
        rpc: SolanaRpcClient,
        *,
        treasury_keypair: Keypair,
        operator: Pubkey,
        reward_mint: Pubkey,
        service_fee_lamports: int = 0,
        lock: WalletLock | None = None,
        ip_limiter: RateLimiter | None = None,
        wallet_limiter: RateLimiter | None = None,
        previews: ClaimPreviewBuilder | None = None,
        preview_max_age_seconds: int = 120,
        hint_tolerance: Decimal = DEFAULT_HINT_TOLERANCE,
        broadcast_attempts: int = DEFAULT_BROADCAST_ATTEMPTS,
        broadcast_base_delay_seconds: float = DEFAULT_BROADCAST_BASE_DELAY_SECONDS,
        confirm_timeout_seconds: float = 30.0,
        now: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        """Initialize the validator.

        Args:
            db: Database holding preview bindings and claims.
            ledger: Entitlement ledger.
            rpc: Chain client for mint lookups, broadcast and confirmation.
            treasury_keypair: Treasury signer; co-signs verified claims.
            operator: Expected recipient of the service fee.
            reward_mint: Mint of the reward token.
            service_fee_lamports: Flat SOL fee rebuilt into the expected transfer.
            lock: Per-wallet lock (defaults to an in-process lock).
            ip_limiter: Per-IP admission (``None`` disables).
            wallet_limiter: Per-wallet admission (``None`` disables).
            previews: Preview builder whose cache is dropped after a settle.
            preview_max_age_seconds: Expiry of preview bindings.
            hint_tolerance: Allowed excess of the client's amount hint, in
                display units.
            broadcast_attempts: Broadcast retry budget.
            broadcast_base_delay_seconds: First broadcast backoff step.
            confirm_timeout_seconds: Best-effort confirmation wait.
            now: Wall clock for preview expiry.
        """
        self._db = db
        self._ledger = ledger
        self._rpc = rpc
        self._treasury_keypair = treasury_keypair
        self._treasury = treasury_keypair.pubkey()
        self._operator = operator
        self._reward_mint = reward_mint
        self._service_fee_lamports = service_fee_lamports
        self._lock: WalletLock = lock or LocalWalletLock()
        self._ip_limiter = ip_limiter
        self._wallet_limiter = wallet_limiter
        self._previews = previews
        self._preview_max_age = timedelta(seconds=preview_max_age_seconds)
        self._hint_tolerance = hint_tolerance
        self._broadcast_attempts = broadcast_attempts
        self._broadcast_base_delay = broadcast_base_delay_seconds
        self._confirm_timeout = confirm_timeout_seconds
        self._now = now

    @property
    def decimals(self) -> int:
        return self._ledger.policy.decimals

    def _admit(self, wallet_key: str, ip: str | None) -> None:
        if ip and self._ip_limiter is not None and not self._ip_limiter.allow(ip):
            raise RateLimitedError("Too many claim submissions from this address")
        if self._wallet_limiter is not None and not self._wallet_limiter.allow(wallet_key):
            raise RateLimitedError("Too many claim submissions for this wallet")

    # ------------------------------------------------------------------
    # Submit
    # ------------------------------------------------------------------

    async def submit(
        self,
        wallet: str,
        signed_transaction: str,
        snapshot_ids: Iterable[Any],
        *,
        amount_hint: Decimal | str | None = None,
        preview_id: str | None = None,
        ip: str | None = None,
    ) -> SubmitOutcome:
        """Verify and broadcast a claim the wallet has signed.

        Args:
            wallet: Claiming wallet (base58).
            signed_transaction: Base64 transaction carrying the wallet's signature.
            snapshot_ids: Snapshot rows the client believes it is claiming.
            amount_hint: Client's display amount; rejected only if it exceeds
                the re-derived total.
            preview_id: Binding returned by the preview step.
            ip: Caller address for admission control.

        Raises:
            ClaimValidationError: Bad input or a transaction that fails verification.
            NothingToClaimError: The rows are already claimed.
            ClaimInProgressError: Another claim for the wallet is being processed.
            RateLimitedError: Admission budget exceeded.
            InsufficientLiquidityError: The treasury cannot fund the claim right now.
            TransientUpstreamError: The chain could not be reached.
        """
        claimant = parse_wallet(wallet)
        wallet_key = str(claimant).lower()
        self._admit(wallet_key, ip)
        requested = normalize_snapshot_ids(snapshot_ids)
        cid = new_correlation_id()

        async with self._lock.hold(wallet_key):
            logger.info("cid=%s Claim submit for %s snapshots=%s", cid, claimant, requested)
            try:
                tx = deserialize_transaction(signed_transaction)
            except TransactionDecodeError as e:
                raise ClaimValidationError(f"Invalid transaction: {e}") from e
            if not has_valid_signature(tx, claimant):
                raise ClaimValidationError("Transaction is not signed by the claiming wallet")

            binding = await self._check_binding(preview_id, wallet_key, requested, tx, cid)

            unclaimed = await self._ledger.list_unclaimed(wallet_key, requested)
            if unclaimed.is_empty():
                raise NothingToClaimError("Nothing to claim for these snapshots")
            if sorted(unclaimed.snapshot_ids) != requested:
                raise NothingToClaimError("Some of these snapshots are already claimed")

            self._check_hint(amount_hint, unclaimed.total_raw)
            amount_raw = unclaimed.total_raw
            if binding is not None:
                if binding.amount_raw > unclaimed.total_raw:
                    raise ClaimValidationError("Preview amount exceeds the unclaimed total")
                amount_raw = binding.amount_raw

            spec = await self._expected_spec(claimant, amount_raw)
            verify_claim_transaction(tx, spec)
            await self._require_liquidity(spec, cid)

            try:
                signed = co_sign(tx, self._treasury_keypair)
            except ValueError as e:
                raise ClaimValidationError("Treasury is not a required signer of this transaction") from e
            signature = await self._broadcast(signed, cid)

            confirmed = await self._confirm(signature, cid)
            settlement = await self._ledger.settle(
                wallet=wallet_key,
                snapshot_ids=unclaimed.snapshot_ids,
                signature=signature,
                amount_raw=amount_raw,
            )
            report = SettlementReport.from_settlement(settlement, confirmed=confirmed)
            if binding is not None:
                report.preview_consumed = await self._consume(binding.preview_id, report, cid)
            if self._previews is not None:
                self._previews.invalidate(wallet_key)

        logger.info(
            "cid=%s Claim %s settled for %s: amount=%s rows=%d confirmed=%s errors=%s",
            cid,
            signature,
            claimant,
            to_display(amount_raw, self.decimals),
            report.rows_marked,
            confirmed,
            report.errors,
        )
        return SubmitOutcome(
            signature=signature,
            wallet=str(claimant),
            amount_raw=amount_raw,
            decimals=self.decimals,
            snapshot_ids=tuple(unclaimed.snapshot_ids),
            settlement=report,
            correlation_id=cid,
        )

    async def _check_binding(
        self,
        preview_id: str | None,
        wallet_key: str,
        requested: list[int],
        tx: VersionedTransaction,
        cid: str,
    ) -> ClaimPreviewDTO | None:
        if not preview_id:
            return None
        async with self._db.get_async_session() as session:
            binding = await ClaimPreviewRepository(session).get(preview_id)
        if binding is None or binding.wallet != wallet_key:
            raise ClaimValidationError("Unknown preview")
        if binding.consumed:
            raise ClaimValidationError("Preview was already used")
        created_at = binding.created_at or self._now()
        if created_at.tzinfo is None:
            created_at = created_at.replace(tzinfo=UTC)
        if self._now() - created_at > self._preview_max_age:
            raise ClaimValidationError("Preview expired, request a new one")
        if sorted(binding.snapshot_ids) != requested:
            raise ClaimValidationError("snapshotIds do not match the preview")
        if binding.message_hash != message_hash(tx):
            # Wallets may legitimately rewrite the message (priority fee, fresh blockhash).
            logger.info("cid=%s Signed message differs from preview %s", cid, preview_id)
        return binding

    def _check_hint(self, amount_hint: Decimal | str | None, total_raw: int) -> None:
        if amount_hint is None or amount_hint == "":
            return
        try:
            hint = Decimal(str(amount_hint))
        except InvalidOperation as e:
            raise ClaimValidationError(f"Invalid amount: {amount_hint!r}") from e
        if not hint.is_finite() or hint < 0:
            raise ClaimValidationError(f"Invalid amount: {amount_hint!r}")
        if hint > to_display(total_raw, self.decimals) + self._hint_tolerance:
            raise ClaimValidationError("Requested amount exceeds the unclaimed total")

    async def _expected_spec(self, claimant: Pubkey, amount_raw: int) -> ClaimTransferSpec:
        try:
            token_program = await self._rpc.get_mint_program(self._reward_mint)
        except ChainClientError as e:
            raise TransientUpstreamError("Chain is temporarily unavailable, retry shortly") from e
        return ClaimTransferSpec(
            claimant=claimant,
            treasury=self._treasury,
            operator=self._operator,
            mint=self._reward_mint,
            amount_raw=amount_raw,
            decimals=self.decimals,
            service_fee_lamports=self._service_fee_lamports,
            token_program=token_program,
        )

    async def _require_liquidity(self, spec: ClaimTransferSpec, cid: str) -> None:
        try:
            await treasury_liquidity(self._rpc, spec.treasury_ata, required_raw=spec.amount_raw)
        except InsufficientLiquidityError:
            logger.warning("cid=%s Treasury cannot cover %d raw units for %s", cid, spec.amount_raw, spec.claimant)
            raise
        except ChainClientError as e:
            raise TransientUpstreamError("Chain is temporarily unavailable, retry shortly") from e

    async def _broadcast(self, tx: VersionedTransaction, cid: str) -> str:
        expected = transaction_signature(tx)
        try:
            signature = await self._rpc.broadcast(
                bytes(tx),
                attempts=self._broadcast_attempts,
                base_delay_seconds=self._broadcast_base_delay,
            )
        except AlreadyProcessedError:
            logger.info("cid=%s Broadcast of %s was already processed", cid, expected)
            return expected
        except TransientRPCError as e:
            logger.warning("cid=%s Broadcast of %s failed transiently: %s", cid, expected, e)
            if await self._landed(expected, cid):
                return expected
            raise TransientUpstreamError("Could not reach the network, retry shortly") from e
        except RPCError as e:
            logger.warning("cid=%s Broadcast of %s rejected: %s", cid, expected, e)
            if await self._landed(expected, cid):
                return expected
            raise ClaimValidationError("The network rejected the transaction", code="broadcast_rejected") from e
        if signature != expected:
            logger.warning("cid=%s Node returned signature %s, expected %s", cid, signature, expected)
        return expected

    async def _landed(self, signature: str, cid: str) -> bool:
        """Whether a send that reported failure reached the chain anyway.

        A lost response can hide an accepted transaction.
        """
        try:
            status = await self._rpc.get_signature_status(signature)
        except ChainClientError as e:
            logger.warning("cid=%s Status check of %s failed: %s", cid, signature, e)
            return False
        if not status or status.get("err") is not None:
            return False
        logger.warning("cid=%s Broadcast of %s reported failure but the transaction landed", cid, signature)
        return True

    async def _confirm(self, signature: str, cid: str) -> bool:
        if self._confirm_timeout <= 0:
            return False
        try:
            return await self._rpc.confirm(signature, timeout_seconds=self._confirm_timeout)
        except ChainClientError as e:
            logger.warning("cid=%s Confirmation of %s failed: %s", cid, signature, e)
            return False

    async def _consume(self, preview_id: str, report: SettlementReport, cid: str) -> bool:
        try:
            async with self._db.get_async_session() as session:
                return await ClaimPreviewRepository(session).consume(preview_id)
        except Exception as e:
            logger.exception("cid=%s Could not consume preview %s", cid, preview_id)
            report.errors.append(f"consume preview: {e}")
            return False

    # ------------------------------------------------------------------
    # Report
    # ------------------------------------------------------------------

    async def report(
        self,
        wallet: str,
        signature: str,
        snapshot_ids: Iterable[Any],
        *,
        ip: str | None = None,
    ) -> SubmitOutcome:
        """Settle a claim the wallet broadcast itself.

        The landed transaction is fetched and must contain a treasury
        transfer to the wallet of at most the unclaimed total. Reporting the
        same signature twice is a no-op that returns the recorded claim.

        Raises:
            ClaimValidationError: Unknown, failed or non-matching transaction.
            NothingToClaimError: The rows are already claimed.
            ClaimInProgressError: Another claim for the wallet is being processed.
            RateLimitedError: Admission budget exceeded.
            TransientUpstreamError: The chain could not be reached.
        """
        claimant = parse_wallet(wallet)
        wallet_key = str(claimant).lower()
        self._admit(wallet_key, ip)
        requested = normalize_snapshot_ids(snapshot_ids)
        signature = signature.strip()
        cid = new_correlation_id()

        async with self._lock.hold(wallet_key):
            async with self._db.get_async_session() as session:
                recorded = await ClaimRepository(session).get(signature)
            if recorded is not None:
                if recorded.wallet != wallet_key:
                    raise ClaimValidationError("Signature belongs to another wallet")
                return SubmitOutcome(
                    signature=signature,
                    wallet=str(claimant),
                    amount_raw=recorded.amount_raw,
                    decimals=self.decimals,
                    snapshot_ids=tuple(recorded.snapshot_ids),
                    settlement=SettlementReport(confirmed=True),
                    correlation_id=cid,
                )

            tx = await self._fetch_landed(signature, cid)
            unclaimed = await self._ledger.list_unclaimed(wallet_key, requested)
            if unclaimed.is_empty():
                raise NothingToClaimError("Nothing to claim for these snapshots")

            spec = await self._expected_spec(claimant, unclaimed.total_raw)
            transfer = verify_claim_transaction(tx, spec, allow_less=True)
            settlement = await self._ledger.settle(
                wallet=wallet_key,
                snapshot_ids=unclaimed.snapshot_ids,
                signature=signature,
                amount_raw=transfer.amount,
            )
            if self._previews is not None:
                self._previews.invalidate(wallet_key)

        logger.info("cid=%s Reported claim %s settled for %s", cid, signature, claimant)
        return SubmitOutcome(
            signature=signature,
            wallet=str(claimant),
            amount_raw=transfer.amount,
            decimals=self.decimals,
            snapshot_ids=tuple(unclaimed.snapshot_ids),
            settlement=SettlementReport.from_settlement(settlement, confirmed=True),
            correlation_id=cid,
        )

    async def _fetch_landed(self, signature: str, cid: str) -> VersionedTransaction:
        try:
            result = await self._rpc.get_transaction(signature, encoding="base64")
        except TransientRPCError as e:
            raise TransientUpstreamError("Chain is temporarily unavailable, retry shortly") from e
        except RPCError as e:
            raise ClaimValidationError(f"Unknown transaction signature: {signature}") from e
        if result is None:
            raise ClaimValidationError("Transaction not found or not yet confirmed")
        meta = result.get("meta") or {}
        if meta.get("err") is not None:
            raise ClaimValidationError("Transaction failed on-chain")
        try:
            return deserialize_transaction(result["transaction"][0])
        except (KeyError, IndexError, TypeError, TransactionDecodeError) as e:
            logger.warning("cid=%s Undecodable transaction %s: %s", cid, signature, e)
            raise ClaimValidationError("Transaction could not be decoded") from e

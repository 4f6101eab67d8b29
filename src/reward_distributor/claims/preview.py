"""Claim preview: price a wallet's unclaimed rewards and build the transaction.

A preview binds the exact snapshot rows it priced and the hash of the
message it built. The binding is advisory for the submit step, which always
re-derives the claim from the ledger.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any

from solders.pubkey import Pubkey

from reward_distributor.amounts import format_display, to_display
from reward_distributor.chain.rpc import ChainClientError, SolanaRpcClient
from reward_distributor.chain.transactions import (
    ClaimTransferSpec,
    build_unsigned_claim_transaction,
    message_hash,
    serialize_transaction,
)
from reward_distributor.errors import (
    ClaimValidationError,
    InsufficientLiquidityError,
    RateLimitedError,
    TransientUpstreamError,
    new_correlation_id,
)
from reward_distributor.guards.rate_limit import RateLimiter
from reward_distributor.guards.single_flight import SingleFlight
from reward_distributor.ledger import EntitlementLedger
from reward_distributor.storage.database import DatabaseManager
from reward_distributor.storage.repos import ClaimPreviewDTO, ClaimPreviewRepository

logger = logging.getLogger(__name__)

DEFAULT_PREVIEW_TTL_SECONDS = 2.5
DEFAULT_PREVIEW_MAX_AGE_SECONDS = 120


class PreviewStatus(str, Enum):
    READY = "ready"
    NOTHING_TO_CLAIM = "nothing_to_claim"
    TREASURY_UNAVAILABLE = "treasury_unavailable"


@dataclass(frozen=True)
class PreviewOutcome:
    """Priced claim for one wallet."""

    status: PreviewStatus
    wallet: str
    decimals: int
    unclaimed_raw: int = 0
    amount_raw: int = 0
    treasury_balance_raw: int | None = None
    service_fee_lamports: int = 0
    unsigned_transaction: str | None = None
    bound_snapshot_ids: tuple[int, ...] = field(default_factory=tuple)
    preview_id: str | None = None
    expires_at: datetime | None = None
    correlation_id: str | None = None

    @property
    def capped(self) -> bool:
        """True when the treasury holds less than the wallet is owed."""
        return self.amount_raw < self.unclaimed_raw

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "status": self.status.value,
            "wallet": self.wallet,
            "unclaimed": format_display(self.unclaimed_raw, self.decimals),
            "unclaimedRaw": str(self.unclaimed_raw),
        }
        if self.status is not PreviewStatus.READY:
            return payload
        payload.update(
            {
                "amount": format_display(self.amount_raw, self.decimals),
                "amountRaw": str(self.amount_raw),
                "capped": self.capped,
                "serviceFeeLamports": self.service_fee_lamports,
                "serviceFeeSol": format_display(self.service_fee_lamports, 9),
                "unsignedTransaction": self.unsigned_transaction,
                "boundSnapshotIds": list(self.bound_snapshot_ids),
                "previewId": self.preview_id,
                "expiresAt": self.expires_at.isoformat() if self.expires_at else None,
            }
        )
        return payload


def parse_wallet(wallet: str) -> Pubkey:
    """Parse a base58 wallet address.

    Raises:
        ClaimValidationError: If ``wallet`` is not a valid public key.
    """
    try:
        return Pubkey.from_string(wallet.strip())
    except (ValueError, TypeError) as e:
        raise ClaimValidationError(f"Invalid wallet address: {wallet!r}") from e


async def treasury_liquidity(rpc: SolanaRpcClient, treasury_ata: Pubkey, *, required_raw: int = 1) -> int:
    """Raw reward balance of the treasury token account.

    Raises:
        InsufficientLiquidityError: If the account is missing or holds less
            than ``required_raw``.
        ChainClientError: If the balance cannot be read.
    """
    balance = await rpc.get_token_balance(treasury_ata) or 0
    if balance < required_raw:
        raise InsufficientLiquidityError("Treasury cannot fund this claim right now")
    return balance


class ClaimPreviewBuilder:
    """Builds unsigned claim transactions for wallets with unclaimed rewards.

    Concurrent previews for one wallet share a single execution, and the
    result is served from a short per-wallet cache so bursts of identical
    requests cost one ledger read and one chain round trip.

    Example:
        ```python
        builder = ClaimPreviewBuilder(db, ledger, rpc, treasury=t, operator=o, reward_mint=m)
        outcome = await builder.preview("9xQe...", ip="203.0.113.7")
        print(outcome.amount_raw, outcome.unsigned_transaction)
        ```
    """

    def __init__(
        self,
        db: DatabaseManager,
        ledger: EntitlementLedger,
        rpc: SolanaRpcClient,
        *,
        treasury: Pubkey,
        operator: Pubkey,
        reward_mint: Pubkey,
        service_fee_lamports: int = 0,
        ip_limiter: RateLimiter | None = None,
        wallet_limiter: RateLimiter | None = None,
        cache_ttl_seconds: float = DEFAULT_PREVIEW_TTL_SECONDS,
        max_age_seconds: int = DEFAULT_PREVIEW_MAX_AGE_SECONDS,
        now: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        """Initialize the builder.

        Args:
            db: Database holding preview bindings.
            ledger: Entitlement ledger.
            rpc: Chain client for treasury balance and blockhash reads.
            treasury: Treasury owner; the transfer authority and co-signer.
            operator: Recipient of the claim service fee.
            reward_mint: Mint of the reward token.
            service_fee_lamports: Flat SOL fee paid by the claimant.
            ip_limiter: Per-IP admission (``None`` disables).
            wallet_limiter: Per-wallet admission (``None`` disables).
            cache_ttl_seconds: Per-wallet result cache lifetime.
            max_age_seconds: How long a preview binding stays valid.
            now: Wall clock for binding timestamps.
        """
        self._db = db
        self._ledger = ledger
        self._rpc = rpc
        self._treasury = treasury
        self._operator = operator
        self._reward_mint = reward_mint
        self._service_fee_lamports = service_fee_lamports
        self._ip_limiter = ip_limiter
        self._wallet_limiter = wallet_limiter
        self._max_age = timedelta(seconds=max_age_seconds)
        self._now = now
        self._flight: SingleFlight[PreviewOutcome] = SingleFlight(ttl_seconds=cache_ttl_seconds)

    @property
    def max_age(self) -> timedelta:
        return self._max_age

    def invalidate(self, wallet: str) -> None:
        """Drop the cached preview of ``wallet`` (after a settlement)."""
        self._flight.forget(wallet.strip().lower())

    def _admit(self, wallet_key: str, ip: str | None) -> None:
        if ip and self._ip_limiter is not None and not self._ip_limiter.allow(ip):
            raise RateLimitedError("Too many preview requests from this address")
        if self._wallet_limiter is not None and not self._wallet_limiter.allow(wallet_key):
            raise RateLimitedError("Too many preview requests for this wallet")

    async def preview(self, wallet: str, *, ip: str | None = None) -> PreviewOutcome:
        """Price the wallet's unclaimed rows and build the unsigned transaction.

        Raises:
            ClaimValidationError: If ``wallet`` is not a valid address.
            RateLimitedError: If the caller exceeded its admission budget.
            TransientUpstreamError: If the chain could not be read.
        """
        claimant = parse_wallet(wallet)
        key = str(claimant).lower()
        self._admit(key, ip)
        return await self._flight.do(key, lambda: self._build(claimant))

    async def _build(self, claimant: Pubkey) -> PreviewOutcome:
        cid = new_correlation_id()
        wallet = str(claimant)
        decimals = self._ledger.policy.decimals

        unclaimed = await self._ledger.list_unclaimed(wallet)
        if unclaimed.is_empty():
            logger.debug("cid=%s Nothing to claim for %s", cid, wallet)
            return PreviewOutcome(
                PreviewStatus.NOTHING_TO_CLAIM,
                wallet=wallet,
                decimals=decimals,
                correlation_id=cid,
            )

        try:
            token_program = await self._rpc.get_mint_program(self._reward_mint)
            spec = ClaimTransferSpec(
                claimant=claimant,
                treasury=self._treasury,
                operator=self._operator,
                mint=self._reward_mint,
                amount_raw=unclaimed.total_raw,
                decimals=decimals,
                service_fee_lamports=self._service_fee_lamports,
                token_program=token_program,
            )
            try:
                treasury_balance = await treasury_liquidity(self._rpc, spec.treasury_ata)
            except InsufficientLiquidityError:
                logger.warning("cid=%s Treasury token account empty or missing (%s)", cid, spec.treasury_ata)
                return PreviewOutcome(
                    PreviewStatus.TREASURY_UNAVAILABLE,
                    wallet=wallet,
                    decimals=decimals,
                    unclaimed_raw=unclaimed.total_raw,
                    treasury_balance_raw=0,
                    correlation_id=cid,
                )

            amount = min(unclaimed.total_raw, treasury_balance)
            if amount < unclaimed.total_raw:
                logger.warning(
                    "cid=%s Capping claim for %s at treasury balance: %d < %d",
                    cid,
                    wallet,
                    amount,
                    unclaimed.total_raw,
                )
                spec = replace(spec, amount_raw=amount)
            blockhash = await self._rpc.get_latest_blockhash()
        except ChainClientError as e:
            logger.warning("cid=%s Preview chain read failed for %s: %s", cid, wallet, e)
            raise TransientUpstreamError("Chain is temporarily unavailable, retry shortly") from e

        tx = build_unsigned_claim_transaction(spec, blockhash)
        created_at = self._now()
        async with self._db.get_async_session() as session:
            binding = await ClaimPreviewRepository(session).insert(
                ClaimPreviewDTO(
                    preview_id=uuid.uuid4().hex,
                    wallet=wallet,
                    message_hash=message_hash(tx),
                    snapshot_ids=unclaimed.snapshot_ids,
                    amount_raw=amount,
                    created_at=created_at,
                )
            )

        logger.info(
            "cid=%s Preview %s for %s: amount=%s snapshots=%s",
            cid,
            binding.preview_id,
            wallet,
            to_display(amount, decimals),
            unclaimed.snapshot_ids,
        )
        return PreviewOutcome(
            PreviewStatus.READY,
            wallet=wallet,
            decimals=decimals,
            unclaimed_raw=unclaimed.total_raw,
            amount_raw=amount,
            treasury_balance_raw=treasury_balance,
            service_fee_lamports=self._service_fee_lamports,
            unsigned_transaction=serialize_transaction(tx),
            bound_snapshot_ids=tuple(unclaimed.snapshot_ids),
            preview_id=binding.preview_id,
            expires_at=created_at + self._max_age,
            correlation_id=cid,
        )

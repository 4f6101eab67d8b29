"""Public surface of the distributor and the wiring that builds it.

``DistributorService`` is what the HTTP layer and the CLI call. It turns
component outcomes into response payloads, caches the read views, and keeps
read-path failures from reaching the caller as hard errors.
``Application`` builds every component from ``Settings`` and owns their
lifecycle.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from redis.asyncio import Redis
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from sqlalchemy.exc import SQLAlchemyError

from reward_distributor.amounts import format_display
from reward_distributor.chain.fees import FeeCollector
from reward_distributor.chain.holders import HolderDirectory
from reward_distributor.chain.rpc import SolanaRpcClient
from reward_distributor.chain.swap import JupiterSwapClient
from reward_distributor.claims.preview import ClaimPreviewBuilder, PreviewOutcome, parse_wallet
from reward_distributor.claims.submit import ClaimSubmitValidator, SubmitOutcome
from reward_distributor.config import Settings, get_settings
from reward_distributor.cycle.clock import WindowClock
from reward_distributor.cycle.prep import PrepConfig, PrepEngine, PrepOutcome
from reward_distributor.cycle.snapshot import SnapshotEngine, SnapshotOutcome
from reward_distributor.cycle.worker import CycleWorker
from reward_distributor.errors import InternalError, new_correlation_id
from reward_distributor.guards.rate_limit import RateLimiter
from reward_distributor.guards.single_flight import SingleFlight
from reward_distributor.guards.wallet_lock import LocalWalletLock, RedisWalletLock, WalletLock
from reward_distributor.ledger import EntitlementLedger
from reward_distributor.storage.database import DatabaseManager
from reward_distributor.storage.repos import PrepRepository, SnapshotRepository

logger = logging.getLogger(__name__)

PROOF_SNAPSHOT_COUNT = 7
MAX_RECENT_CLAIMS = 200


def clamp_limit(limit: int | None, default: int = 50) -> int:
    if limit is None:
        return default
    return max(1, min(MAX_RECENT_CLAIMS, int(limit)))


def _iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.isoformat()


class DistributorService:
    """Request-facing operations over the cycle engines, ledger and claim protocol.

    Example:
        ```python
        service = DistributorService(db=db, ledger=ledger, snapshot=snapshots, previews=previews)
        print(await service.entitlement("9xQe..."))
        ```
    """

    def __init__(
        self,
        *,
        db: DatabaseManager,
        ledger: EntitlementLedger,
        snapshot: SnapshotEngine,
        previews: ClaimPreviewBuilder | None = None,
        submits: ClaimSubmitValidator | None = None,
        prep: PrepEngine | None = None,
        claimable_ttl_seconds: float = 15.0,
        proofs_ttl_seconds: float = 15.0,
        metrics_ttl_seconds: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._db = db
        self._ledger = ledger
        self._snapshot = snapshot
        self._previews = previews
        self._submits = submits
        self._prep = prep
        self._claimable: SingleFlight[dict[str, Any]] = SingleFlight(
            ttl_seconds=claimable_ttl_seconds, cache_if=lambda v: not v.get("degraded"), clock=clock
        )
        self._proofs: SingleFlight[list[dict[str, Any]]] = SingleFlight(ttl_seconds=proofs_ttl_seconds, clock=clock)
        self._metrics: SingleFlight[dict[str, Any]] = SingleFlight(ttl_seconds=metrics_ttl_seconds, clock=clock)
        self._last_metrics: dict[str, Any] | None = None

    @property
    def decimals(self) -> int:
        return self._ledger.policy.decimals

    def _display(self, raw: int) -> str:
        return format_display(raw, self.decimals)

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    async def window_status(self, cycle_id: int | None = None) -> SnapshotOutcome:
        """Report the window, taking the snapshot on demand when it is due."""
        return await self._snapshot.run_snapshot(cycle_id)

    async def prepare(self, cycle_id: int | None = None) -> PrepOutcome:
        if self._prep is None:
            raise InternalError("Prepare is not enabled on this instance")
        return await self._prep.run_prepare(cycle_id)

    # ------------------------------------------------------------------
    # Read views
    # ------------------------------------------------------------------

    async def entitlement(self, wallet: str) -> dict[str, Any]:
        """Entitled, claimed and unclaimed totals; zeroed if the store is down."""
        address = str(parse_wallet(wallet))
        key = address.lower()
        try:
            summary = await self._ledger.summary(key)
        except SQLAlchemyError:
            logger.exception("cid=%s Entitlement read failed for %s", new_correlation_id(), key)
            return {"wallet": address, "entitled": "0", "claimed": "0", "unclaimed": "0", "degraded": True}
        return {
            "wallet": address,
            "entitled": self._display(summary.entitled_raw),
            "claimed": self._display(summary.claimed_raw),
            "unclaimed": self._display(summary.unclaimed_raw),
        }

    async def breakdown(self, wallet: str) -> dict[str, Any]:
        address = str(parse_wallet(wallet))
        key = address.lower()
        try:
            rows = await self._ledger.rows(key)
        except SQLAlchemyError:
            logger.exception("cid=%s Breakdown read failed for %s", new_correlation_id(), key)
            return {"wallet": address, "rows": [], "degraded": True}
        rows = sorted(rows, key=lambda r: r.snapshot_id, reverse=True)
        return {
            "wallet": address,
            "rows": [
                {
                    "snapshotId": r.snapshot_id,
                    "amount": self._display(r.amount_raw),
                    "claimed": r.claimed,
                    "claimSignature": r.claim_signature,
                }
                for r in rows
            ],
        }

    async def claimable(self, wallet: str) -> dict[str, Any]:
        address = str(parse_wallet(wallet))
        return await self._claimable.do(address.lower(), lambda: self._load_claimable(address))

    async def _load_claimable(self, address: str) -> dict[str, Any]:
        key = address.lower()
        try:
            unclaimed = await self._ledger.list_unclaimed(key)
        except SQLAlchemyError:
            logger.exception("cid=%s Claimable read failed for %s", new_correlation_id(), key)
            return {"wallet": address, "unclaimed": "0", "snapshotIds": [], "rows": [], "degraded": True}
        return {
            "wallet": address,
            "unclaimed": self._display(unclaimed.total_raw),
            "snapshotIds": unclaimed.snapshot_ids,
            "rows": [{"snapshotId": r.snapshot_id, "amount": self._display(r.amount_raw)} for r in unclaimed.rows],
        }

    async def recent_claims(self, limit: int | None = 50, *, wallet: str | None = None) -> list[dict[str, Any]]:
        key = str(parse_wallet(wallet)).lower() if wallet else None
        try:
            claims = await self._ledger.recent_claims(clamp_limit(limit), wallet=key)
        except SQLAlchemyError:
            logger.exception("cid=%s Recent claims read failed", new_correlation_id())
            return []
        return [
            {
                "signature": c.signature,
                "wallet": c.wallet,
                "amount": self._display(c.amount_raw),
                "snapshotIds": c.snapshot_ids,
                "timestamp": _iso(c.created_at),
            }
            for c in claims
        ]

    async def proofs(self) -> list[dict[str, Any]]:
        """Latest snapshots with the prepare signatures that funded them."""
        return await self._proofs.do("proofs", self._load_proofs)

    async def _load_proofs(self) -> list[dict[str, Any]]:
        async with self._db.get_async_session() as session:
            snapshots = await SnapshotRepository(session).list_latest(PROOF_SNAPSHOT_COUNT)
            preps = await PrepRepository(session).get_many(s.cycle_id for s in snapshots)
        proofs = []
        for snap in snapshots:
            prep = preps.get(snap.cycle_id)
            proofs.append(
                {
                    "snapshotId": snap.snapshot_id,
                    "cycleId": snap.cycle_id,
                    "timestamp": snap.taken_at_ms,
                    "acquiredReward": self._display(snap.acquired_reward_raw),
                    "allocatedReward": self._display(snap.allocated_reward_raw),
                    "eligibleHolderCount": snap.eligible_holder_count,
                    "holdersHash": snap.holders_hash,
                    "prepStatus": prep.status if prep else None,
                    "signatures": prep.signatures() if prep else {},
                }
            )
        return proofs

    async def metrics(self) -> dict[str, Any]:
        """Running distributed total; the last good value if the store fails."""
        try:
            value = await self._metrics.do("metrics", self._load_metrics)
        except SQLAlchemyError:
            logger.exception("cid=%s Metrics read failed", new_correlation_id())
            fallback = dict(self._last_metrics or {"totalDistributed": "0", "totalDistributedRaw": "0"})
            fallback["degraded"] = True
            return fallback
        self._last_metrics = value
        return value

    async def _load_metrics(self) -> dict[str, Any]:
        total = await self._ledger.running_total()
        return {"totalDistributed": self._display(total), "totalDistributedRaw": str(total)}

    # ------------------------------------------------------------------
    # Claims
    # ------------------------------------------------------------------

    def _claim_components(self) -> tuple[ClaimPreviewBuilder, ClaimSubmitValidator]:
        if self._previews is None or self._submits is None:
            raise InternalError("Claims are not enabled on this instance")
        return self._previews, self._submits

    async def preview(self, wallet: str, *, ip: str | None = None) -> PreviewOutcome:
        previews, _ = self._claim_components()
        return await previews.preview(wallet, ip=ip)

    async def submit(
        self,
        wallet: str,
        signed_transaction: str,
        snapshot_ids: list[Any],
        *,
        amount_hint: str | None = None,
        preview_id: str | None = None,
        ip: str | None = None,
    ) -> SubmitOutcome:
        _, submits = self._claim_components()
        outcome = await submits.submit(
            wallet,
            signed_transaction,
            snapshot_ids,
            amount_hint=amount_hint,
            preview_id=preview_id,
            ip=ip,
        )
        self._forget_wallet(wallet)
        return outcome

    async def report_claim(
        self,
        wallet: str,
        signature: str,
        snapshot_ids: list[Any],
        *,
        ip: str | None = None,
    ) -> SubmitOutcome:
        _, submits = self._claim_components()
        outcome = await submits.report(wallet, signature, snapshot_ids, ip=ip)
        self._forget_wallet(wallet)
        return outcome

    def _forget_wallet(self, wallet: str) -> None:
        self._claimable.forget(wallet.strip().lower())
        self._metrics.forget("metrics")


# ============================================================================
# Wiring
# ============================================================================


class AppState(str, Enum):
    """Application lifecycle states."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


@dataclass
class AppStats:
    """Statistics for the application."""

    started_at: datetime | None = None
    last_error: str | None = None


def load_keypair(secret: str) -> Keypair:
    """Parse a base58-encoded 64-byte secret key."""
    return Keypair.from_base58_string(secret.strip())


class Application:
    """Builds every component from settings and manages their lifecycle.

    Example:
        ```python
        from reward_distributor.config import get_settings
        from reward_distributor.service import Application

        app = Application(get_settings(), run_worker=True)
        await app.start()
        # worker runs until stop() is called
        await app.stop()
        ```
    """

    def __init__(self, settings: Settings | None = None, *, run_worker: bool = True) -> None:
        """Initialize the application.

        Args:
            settings: Application settings. If not provided, uses get_settings().
            run_worker: Start the cycle worker alongside the request surface.
        """
        self._settings = settings or get_settings()
        self._run_worker = run_worker

        self._state = AppState.STOPPED
        self._stats = AppStats()

        # Components (initialized in start())
        self._redis: Redis | None = None
        self._db: DatabaseManager | None = None
        self._rpc: SolanaRpcClient | None = None
        self._fees: FeeCollector | None = None
        self._swapper: JupiterSwapClient | None = None
        self._worker: CycleWorker | None = None
        self._service: DistributorService | None = None

        self._stop_event: asyncio.Event | None = None

    @property
    def state(self) -> AppState:
        return self._state

    @property
    def stats(self) -> AppStats:
        return self._stats

    @property
    def service(self) -> DistributorService:
        if self._service is None:
            raise RuntimeError("Application is not started")
        return self._service

    @property
    def worker(self) -> CycleWorker | None:
        return self._worker

    async def start(self) -> None:
        """Start the application.

        Raises:
            RuntimeError: If the application is already running.
            Exception: If any component fails to initialize.
        """
        if self._state != AppState.STOPPED:
            raise RuntimeError(f"Cannot start application in state {self._state}")

        self._state = AppState.STARTING
        self._stop_event = asyncio.Event()
        logger.info("Starting reward distributor...")

        try:
            await self._initialize_components()
            if self._worker is not None:
                await self._worker.start()
            self._stats.started_at = datetime.now(UTC)
            self._state = AppState.RUNNING
            logger.info("Reward distributor started (worker=%s)", self._worker is not None)
        except Exception as e:
            self._state = AppState.ERROR
            self._stats.last_error = str(e)
            logger.error("Failed to start reward distributor: %s", e)
            await self._cleanup()
            raise

    async def stop(self) -> None:
        """Stop the worker and release every connection."""
        if self._state == AppState.STOPPED:
            return

        self._state = AppState.STOPPING
        logger.info("Stopping reward distributor...")
        if self._stop_event:
            self._stop_event.set()
        if self._worker is not None:
            await self._worker.stop()
        await self._cleanup()
        self._state = AppState.STOPPED
        logger.info("Reward distributor stopped")

    async def run(self) -> None:
        """Start and block until stopped or cancelled."""
        await self.start()
        try:
            if self._stop_event:
                await self._stop_event.wait()
        except asyncio.CancelledError:
            pass
        finally:
            await self.stop()

    async def __aenter__(self) -> Application:
        await self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.stop()

    async def _initialize_components(self) -> None:
        settings = self._settings
        wallets = settings.wallets
        claims = settings.claims
        distribution = settings.distribution

        if settings.redis.url:
            logger.debug("Initializing Redis connection...")
            self._redis = Redis.from_url(settings.redis.url)

        logger.debug("Initializing database manager...")
        self._db = DatabaseManager(settings.database.url)
        if settings.database.url.startswith("sqlite"):
            await self._db.init_schema_async()

        logger.debug("Initializing Solana RPC client...")
        self._rpc = SolanaRpcClient(
            settings.solana.rpc_url,
            fallback_rpc_url=settings.solana.fallback_rpc_url,
            redis=self._redis,
            commitment=settings.solana.commitment,
            timeout_seconds=settings.solana.request_timeout_seconds,
            max_requests_per_second=settings.solana.max_requests_per_second,
        )

        policy = distribution.amount_policy()
        clock = WindowClock(
            window_ms=settings.cycle.window_ms,
            prep_lead_ms=settings.cycle.prep_lead_ms,
            snapshot_lead_ms=settings.cycle.snapshot_lead_ms,
            grace_ms=settings.cycle.grace_ms,
        )
        ledger = EntitlementLedger(self._db, policy)
        reward_mint = Pubkey.from_string(wallets.reward_mint)
        operator = Pubkey.from_string(wallets.operator_address) if wallets.operator_address else None
        treasury_kp = load_keypair(wallets.treasury_secret.get_secret_value()) if wallets.treasury_secret else None
        operating_kp = load_keypair(wallets.operating_secret.get_secret_value()) if wallets.operating_secret else None
        if treasury_kp is not None and wallets.treasury_address:
            if str(treasury_kp.pubkey()) != wallets.treasury_address:
                raise ValueError("WALLET_TREASURY_SECRET does not match WALLET_TREASURY_ADDRESS")

        if not wallets.coin_mint:
            raise ValueError("WALLET_COIN_MINT is required to list eligible holders")
        holders = HolderDirectory(
            self._rpc,
            Pubkey.from_string(wallets.coin_mint),
            min_balance=distribution.min_holder_balance,
            decimals=distribution.coin_decimals,
            excluded_wallets=distribution.excluded_wallets,
        )
        snapshot = SnapshotEngine(self._db, ledger, holders, clock=clock, policy=policy)

        prep: PrepEngine | None = None
        if operating_kp is not None and treasury_kp is not None and operator is not None:
            logger.debug("Initializing fee collection and swap clients...")
            api_key = settings.integrations.fee_collect_api_key
            self._fees = FeeCollector(
                self._rpc,
                coin_mint=wallets.coin_mint,
                api_key=api_key.get_secret_value() if api_key else None,
                url=settings.integrations.fee_collect_url,
                log_marker=settings.integrations.fee_log_marker,
            )
            self._swapper = JupiterSwapClient(
                self._rpc,
                output_mint=reward_mint,
                base_url=settings.integrations.swap_api_url,
            )
            prep = PrepEngine(
                self._db,
                self._rpc,
                self._fees,
                self._swapper,
                clock=clock,
                operating=operating_kp,
                treasury=treasury_kp,
                operator=operator,
                reward_mint=reward_mint,
                config=PrepConfig(
                    operator_pct=distribution.operator_pct,
                    treasury_pct=distribution.treasury_pct,
                    swap_pct=distribution.swap_pct,
                    min_operating_buffer_lamports=distribution.min_operating_buffer_lamports,
                    slippage_bps=distribution.slippage_bps,
                    poll_tries=distribution.poll_tries,
                    poll_delay_seconds=distribution.poll_delay_ms / 1000.0,
                ),
            )

        previews: ClaimPreviewBuilder | None = None
        submits: ClaimSubmitValidator | None = None
        if treasury_kp is not None and operator is not None:
            lock: WalletLock = (
                RedisWalletLock(self._redis, ttl_seconds=claims.lock_ttl_seconds)
                if self._redis is not None
                else LocalWalletLock()
            )
            previews = ClaimPreviewBuilder(
                self._db,
                ledger,
                self._rpc,
                treasury=treasury_kp.pubkey(),
                operator=operator,
                reward_mint=reward_mint,
                service_fee_lamports=claims.service_fee_lamports,
                ip_limiter=RateLimiter(claims.preview_ip_per_min),
                wallet_limiter=RateLimiter(claims.preview_wallet_per_min),
                cache_ttl_seconds=claims.preview_cache_ttl_ms / 1000.0,
                max_age_seconds=claims.preview_max_age_seconds,
            )
            submits = ClaimSubmitValidator(
                self._db,
                ledger,
                self._rpc,
                treasury_keypair=treasury_kp,
                operator=operator,
                reward_mint=reward_mint,
                service_fee_lamports=claims.service_fee_lamports,
                lock=lock,
                ip_limiter=RateLimiter(claims.submit_ip_per_min),
                wallet_limiter=RateLimiter(claims.submit_wallet_per_min),
                previews=previews,
                preview_max_age_seconds=claims.preview_max_age_seconds,
                hint_tolerance=claims.hint_tolerance,
                broadcast_attempts=claims.broadcast_attempts,
                broadcast_base_delay_seconds=claims.broadcast_base_delay_ms / 1000.0,
                confirm_timeout_seconds=claims.confirm_timeout_seconds,
            )

        self._service = DistributorService(
            db=self._db,
            ledger=ledger,
            snapshot=snapshot,
            previews=previews,
            submits=submits,
            prep=prep,
            claimable_ttl_seconds=claims.entitlement_cache_ttl_seconds,
            proofs_ttl_seconds=claims.entitlement_cache_ttl_seconds,
            metrics_ttl_seconds=claims.metrics_cache_ttl_seconds,
        )

        if self._run_worker:
            if prep is None:
                raise ValueError("The cycle worker needs the operating and treasury keys and an operator address")
            self._worker = CycleWorker(
                prep,
                snapshot,
                clock=clock,
                boot_jitter_ms=settings.cycle.boot_jitter_ms,
                post_window_slack_ms=settings.cycle.post_window_slack_ms,
            )

    async def _cleanup(self) -> None:
        """Clean up resources."""
        if self._fees is not None:
            await self._fees.close()
            self._fees = None
        if self._swapper is not None:
            await self._swapper.close()
            self._swapper = None
        if self._rpc is not None:
            await self._rpc.close()
            self._rpc = None
        if self._db is not None:
            await self._db.dispose_async()
            self._db = None
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
        logger.debug("Resources cleaned up")

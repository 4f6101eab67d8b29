"""Solana JSON-RPC client with pacing, retries and failover.

This module provides the ledger network client used by the cycle engines and
the claim protocol with:
- Retry logic with exponential backoff on transient upstream errors
- Failover to a secondary RPC URL
- Token-bucket pacing to respect provider limits
- Redis caching of immutable lookups (mint decimals, mint token program)
- Bounded multi-endpoint broadcast for signed transactions
"""

from __future__ import annotations

import asyncio
import base64
import logging
import re
import time
from dataclasses import dataclass
from typing import Any

import httpx
from redis.asyncio import Redis
from solders.hash import Hash
from solders.pubkey import Pubkey

logger = logging.getLogger(__name__)

# Default configuration
DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_MAX_REQUESTS_PER_SECOND = 20.0
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY_SECONDS = 0.4
DEFAULT_CACHE_TTL_SECONDS = 24 * 3600
DEFAULT_BROADCAST_ATTEMPTS = 4
DEFAULT_BROADCAST_BASE_DELAY_SECONDS = 0.4
DEFAULT_CONFIRM_POLL_SECONDS = 1.0

TRANSIENT_ERROR_PATTERNS = (
    re.compile(r"rate|429|too many requests|limit", re.IGNORECASE),
    re.compile(r"blockhash.*not found|node is behind", re.IGNORECASE),
)

# A re-sent transaction that already landed; not a rejection.
ALREADY_PROCESSED_PATTERN = re.compile(r"already (?:been )?processed", re.IGNORECASE)

# getTokenAccountBalance answers a missing account with an "invalid param" error.
ACCOUNT_MISSING_PATTERN = re.compile(r"could not find account", re.IGNORECASE)


def is_transient_error(message: str) -> bool:
    """Whether an upstream error message is worth retrying."""
    return any(p.search(message) for p in TRANSIENT_ERROR_PATTERNS)


class ChainClientError(Exception):
    """Base exception for ledger network client errors."""


class RPCError(ChainClientError):
    """Raised when an RPC call fails permanently."""

    def __init__(self, message: str, *, code: int | None = None) -> None:
        super().__init__(message)
        self.code = code


class TransientRPCError(RPCError):
    """Raised when an RPC call fails in a way that may succeed on retry."""


class AccountNotFoundError(RPCError):
    """Raised when the requested account does not exist."""


class AlreadyProcessedError(RPCError):
    """Raised when the node has already processed this exact transaction."""


@dataclass
class RateLimiter:
    """Token bucket limiter that waits for capacity."""

    max_tokens: float
    refill_rate: float  # tokens per second
    tokens: float
    last_refill: float

    @classmethod
    def create(cls, max_requests_per_second: float) -> RateLimiter:
        return cls(
            max_tokens=max_requests_per_second,
            refill_rate=max_requests_per_second,
            tokens=max_requests_per_second,
            last_refill=time.monotonic(),
        )

    def _refill(self) -> None:
        now = time.monotonic()
        elapsed = now - self.last_refill
        self.tokens = min(self.max_tokens, self.tokens + elapsed * self.refill_rate)
        self.last_refill = now

    async def acquire(self, tokens: float = 1.0) -> None:
        while True:
            self._refill()
            if self.tokens >= tokens:
                self.tokens -= tokens
                return
            await asyncio.sleep((tokens - self.tokens) / self.refill_rate)


class SolanaRpcClient:
    """Solana JSON-RPC client.

    Example:
        ```python
        client = SolanaRpcClient(
            "https://api.mainnet-beta.solana.com",
            fallback_rpc_url="https://solana-rpc.publicnode.com",
        )
        lamports = await client.get_balance(Pubkey.from_string("..."))
        await client.close()
        ```
    """

    def __init__(
        self,
        rpc_url: str,
        *,
        fallback_rpc_url: str | None = None,
        redis: Redis | None = None,
        commitment: str = "confirmed",
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        max_requests_per_second: float = DEFAULT_MAX_REQUESTS_PER_SECOND,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay_seconds: float = DEFAULT_RETRY_DELAY_SECONDS,
        cache_ttl_seconds: int = DEFAULT_CACHE_TTL_SECONDS,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            rpc_url: Primary RPC endpoint URL.
            fallback_rpc_url: Optional fallback RPC URL for failover.
            redis: Optional Redis client for caching immutable lookups.
            commitment: Commitment used for reads and confirmation.
            timeout_seconds: Per-request timeout.
            max_requests_per_second: Client-side pacing.
            max_retries: Attempts per endpoint for transient errors.
            retry_delay_seconds: Initial delay between retries.
            cache_ttl_seconds: TTL for cached immutable lookups.
            http_client: Optional preconfigured client (tests).
        """
        self._rpc_url = rpc_url
        self._fallback_rpc_url = fallback_rpc_url
        self._redis = redis
        self.commitment = commitment
        self._max_retries = max_retries
        self._retry_delay = retry_delay_seconds
        self._cache_ttl = cache_ttl_seconds
        self._http = http_client or httpx.AsyncClient(timeout=timeout_seconds)
        self._owns_http = http_client is None
        self._rate_limiter = RateLimiter.create(max_requests_per_second)
        self._request_id = 0

        # Track primary RPC health
        self._primary_healthy = True
        self._last_primary_check = 0.0
        self._primary_recovery_interval = 60.0

        self._cache_prefix = "solana:"

    @property
    def has_fallback(self) -> bool:
        return self._fallback_rpc_url is not None

    async def close(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _post(self, url: str, method: str, params: list[Any]) -> Any:
        """Send one JSON-RPC request to one endpoint."""
        self._request_id += 1
        payload = {"jsonrpc": "2.0", "id": self._request_id, "method": method, "params": params}
        try:
            response = await self._http.post(url, json=payload)
        except httpx.HTTPError as e:
            raise TransientRPCError(f"{method}: transport error: {e}") from e

        if response.status_code == 429 or response.status_code >= 500:
            raise TransientRPCError(f"{method}: HTTP {response.status_code}")
        if response.status_code >= 400:
            raise RPCError(f"{method}: HTTP {response.status_code}: {response.text[:200]}")

        try:
            body = response.json()
        except ValueError as e:
            raise TransientRPCError(f"{method}: response is not JSON") from e
        if not isinstance(body, dict):
            raise RPCError(f"{method}: unexpected response {type(body).__name__}")
        error = body.get("error")
        if error:
            message = str(error.get("message", error)) if isinstance(error, dict) else str(error)
            code = error.get("code") if isinstance(error, dict) else None
            if ALREADY_PROCESSED_PATTERN.search(message):
                raise AlreadyProcessedError(f"{method}: {message}", code=code)
            if is_transient_error(message):
                raise TransientRPCError(f"{method}: {message}", code=code)
            if ACCOUNT_MISSING_PATTERN.search(message):
                raise AccountNotFoundError(f"{method}: {message}", code=code)
            raise RPCError(f"{method}: {message}", code=code)
        return body.get("result")

    def _should_try_primary(self) -> bool:
        """Check if we should try the primary RPC."""
        if self._primary_healthy:
            return True
        now = time.monotonic()
        if now - self._last_primary_check > self._primary_recovery_interval:
            self._last_primary_check = now
            return True
        return False

    async def _execute_with_retry(self, method: str, params: list[Any]) -> Any:
        """Execute an RPC call with retry and failover logic.

        Args:
            method: JSON-RPC method name.
            params: Positional params.

        Returns:
            The ``result`` member of the response.

        Raises:
            RPCError: On a permanent error, or once all retries and the
                fallback are exhausted (as ``TransientRPCError``).
        """
        await self._rate_limiter.acquire()

        last_error: Exception | None = None
        endpoints: list[tuple[str, str]] = []
        if self._should_try_primary():
            endpoints.append(("Primary", self._rpc_url))
        if self._fallback_rpc_url:
            endpoints.append(("Fallback", self._fallback_rpc_url))
        if not endpoints:
            endpoints.append(("Primary", self._rpc_url))

        for label, url in endpoints:
            delay = self._retry_delay
            for attempt in range(self._max_retries):
                try:
                    result = await self._post(url, method, params)
                    if url == self._rpc_url:
                        self._primary_healthy = True
                    elif label == "Fallback":
                        logger.info("Fallback RPC succeeded for %s", method)
                    return result
                except TransientRPCError as e:
                    last_error = e
                    logger.warning(
                        "%s RPC %s failed (attempt %d/%d): %s",
                        label,
                        method,
                        attempt + 1,
                        self._max_retries,
                        e,
                    )
                    if attempt < self._max_retries - 1:
                        await asyncio.sleep(delay)
                        delay *= 2
            if url == self._rpc_url:
                self._primary_healthy = False
                self._last_primary_check = time.monotonic()

        raise TransientRPCError(f"RPC call {method} failed after all retries: {last_error}")

    async def _get_cached(self, key: str) -> str | None:
        if not self._redis:
            return None
        try:
            value = await self._redis.get(key)
            if isinstance(value, bytes):
                return value.decode()
            return str(value) if value is not None else None
        except Exception as e:
            logger.warning("Cache get failed: %s", e)
            return None

    async def _set_cached(self, key: str, value: str) -> None:
        if not self._redis:
            return
        try:
            await self._redis.set(key, value, ex=self._cache_ttl)
        except Exception as e:
            logger.warning("Cache set failed: %s", e)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_balance(self, account: Pubkey) -> int:
        """Lamport balance of an account (0 if it does not exist)."""
        result = await self._execute_with_retry("getBalance", [str(account), {"commitment": self.commitment}])
        return int(result["value"])

    async def get_token_balance(self, token_account: Pubkey) -> int | None:
        """Raw balance of a token account, or None if the account is missing."""
        try:
            result = await self._execute_with_retry(
                "getTokenAccountBalance", [str(token_account), {"commitment": self.commitment}]
            )
        except AccountNotFoundError:
            return None
        value = (result or {}).get("value")
        if value is None:
            return None
        return int(value["amount"])

    async def get_account_info(self, account: Pubkey) -> dict[str, Any] | None:
        result = await self._execute_with_retry(
            "getAccountInfo",
            [str(account), {"encoding": "base64", "commitment": self.commitment}],
        )
        return (result or {}).get("value")

    async def account_exists(self, account: Pubkey) -> bool:
        return await self.get_account_info(account) is not None

    async def get_mint_program(self, mint: Pubkey) -> Pubkey:
        """Token program that owns ``mint`` (classic or Token-2022); cached."""
        cache_key = f"{self._cache_prefix}mint-program:{mint}"
        cached = await self._get_cached(cache_key)
        if cached is not None:
            return Pubkey.from_string(cached)
        info = await self.get_account_info(mint)
        if info is None:
            raise AccountNotFoundError(f"Mint {mint} not found")
        owner = str(info["owner"])
        await self._set_cached(cache_key, owner)
        return Pubkey.from_string(owner)

    async def get_mint_decimals(self, mint: Pubkey) -> int:
        """Decimals of a mint via getTokenSupply; cached."""
        cache_key = f"{self._cache_prefix}mint-decimals:{mint}"
        cached = await self._get_cached(cache_key)
        if cached is not None:
            return int(cached)
        result = await self._execute_with_retry("getTokenSupply", [str(mint), {"commitment": self.commitment}])
        decimals = int(result["value"]["decimals"])
        await self._set_cached(cache_key, str(decimals))
        return decimals

    async def get_latest_blockhash(self) -> Hash:
        result = await self._execute_with_retry("getLatestBlockhash", [{"commitment": self.commitment}])
        return Hash.from_string(result["value"]["blockhash"])

    async def get_program_accounts(self, program: Pubkey, config: dict[str, Any]) -> list[dict[str, Any]]:
        result = await self._execute_with_retry("getProgramAccounts", [str(program), config])
        if isinstance(result, dict):
            # withContext responses
            return list(result.get("value") or [])
        return list(result or [])

    async def get_signature_status(self, signature: str) -> dict[str, Any] | None:
        """Status of a signature (``err``, ``confirmationStatus``), None if unknown."""
        result = await self._execute_with_retry(
            "getSignatureStatuses", [[signature], {"searchTransactionHistory": False}]
        )
        statuses = (result or {}).get("value") or [None]
        return statuses[0]

    async def get_transaction(self, signature: str, *, encoding: str = "json") -> dict[str, Any] | None:
        return await self._execute_with_retry(
            "getTransaction",
            [
                signature,
                {
                    "encoding": encoding,
                    "commitment": "confirmed",
                    "maxSupportedTransactionVersion": 0,
                },
            ],
        )

    async def get_transaction_logs(self, signature: str) -> list[str]:
        """Log messages of a landed transaction (empty if not found yet)."""
        tx = await self.get_transaction(signature)
        if not tx:
            return []
        return list((tx.get("meta") or {}).get("logMessages") or [])

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def send_transaction(self, raw: bytes, *, skip_preflight: bool = False) -> str:
        """Submit a signed transaction through the retrying path."""
        encoded = base64.b64encode(raw).decode("ascii")
        return str(
            await self._execute_with_retry(
                "sendTransaction",
                [
                    encoded,
                    {
                        "encoding": "base64",
                        "skipPreflight": skip_preflight,
                        "preflightCommitment": self.commitment,
                    },
                ],
            )
        )

    async def broadcast(
        self,
        raw: bytes,
        *,
        attempts: int = DEFAULT_BROADCAST_ATTEMPTS,
        base_delay_seconds: float = DEFAULT_BROADCAST_BASE_DELAY_SECONDS,
        skip_preflight: bool = False,
    ) -> str:
        """Broadcast a signed transaction with bounded, classified retries.

        Each attempt tries the primary endpoint and, on a transient error,
        the fallback endpoint. Permanent errors (simulation failure, bad
        signature) are raised immediately. The same signed bytes are
        re-sent on every attempt, so a duplicate landing is impossible.

        Raises:
            RPCError: Permanent rejection.
            AlreadyProcessedError: A previous attempt already landed these bytes.
            TransientRPCError: Every attempt failed transiently.
        """
        encoded = base64.b64encode(raw).decode("ascii")
        params = [
            encoded,
            {"encoding": "base64", "skipPreflight": skip_preflight, "preflightCommitment": self.commitment},
        ]
        urls = [self._rpc_url] + ([self._fallback_rpc_url] if self._fallback_rpc_url else [])
        last_error: Exception | None = None
        for attempt in range(attempts):
            for url in urls:
                await self._rate_limiter.acquire()
                try:
                    return str(await self._post(url, "sendTransaction", params))
                except TransientRPCError as e:
                    last_error = e
                    logger.warning("Broadcast attempt %d/%d via %s failed: %s", attempt + 1, attempts, url, e)
            if attempt < attempts - 1:
                await asyncio.sleep(base_delay_seconds * (2**attempt))
        raise TransientRPCError(f"Broadcast failed after {attempts} attempts: {last_error}")

    async def confirm(self, signature: str, *, timeout_seconds: float = 30.0) -> bool:
        """Poll signature status until confirmed, failed, or timed out.

        Returns:
            True when confirmed without error, False on timeout or failure.
        """
        deadline = time.monotonic() + timeout_seconds
        while True:
            try:
                status = await self.get_signature_status(signature)
                if status:
                    if status.get("err") is not None:
                        logger.warning("Transaction %s failed on-chain: %s", signature, status["err"])
                        return False
                    if status.get("confirmationStatus") in ("confirmed", "finalized"):
                        return True
            except TransientRPCError as e:
                logger.debug("Status poll for %s failed: %s", signature, e)
            if time.monotonic() >= deadline:
                return False
            await asyncio.sleep(DEFAULT_CONFIRM_POLL_SECONDS)

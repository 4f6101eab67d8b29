"""Creator-fee collection through the PumpPortal trade API."""

from __future__ import annotations

import logging
from dataclasses import dataclass

import httpx
from solders.pubkey import Pubkey

from reward_distributor.chain.rpc import ChainClientError, SolanaRpcClient

logger = logging.getLogger(__name__)

DEFAULT_FEE_COLLECT_URL = "https://pumpportal.fun/api/trade"
DEFAULT_LOG_MARKER = "Instruction: CollectCreatorFee"


@dataclass(frozen=True)
class FeeCollection:
    """Outcome of one collection request.

    ``signature`` is only set once the transaction's logs prove fees were
    collected; a returned but unverified signature is kept in
    ``unverified_signature`` for the log line and nothing else.
    """

    signature: str | None
    unverified_signature: str | None = None
    error: str | None = None

    @property
    def verified(self) -> bool:
        return self.signature is not None


class FeeCollector:
    """Requests creator-fee collection for the coin and verifies the result.

    The amount received is never taken from this call: the prepare phase
    measures the operating account's balance delta instead.
    """

    def __init__(
        self,
        rpc: SolanaRpcClient,
        *,
        coin_mint: Pubkey | str,
        api_key: str | None,
        url: str = DEFAULT_FEE_COLLECT_URL,
        log_marker: str = DEFAULT_LOG_MARKER,
        priority_fee: float = 0.000001,
        confirm_timeout_seconds: float = 30.0,
        http_client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 20.0,
    ) -> None:
        self._rpc = rpc
        self._coin_mint = str(coin_mint)
        self._api_key = api_key
        self._url = url
        self._log_marker = log_marker
        self._priority_fee = priority_fee
        self._confirm_timeout = confirm_timeout_seconds
        self._http = http_client or httpx.AsyncClient(timeout=timeout_seconds)
        self._owns_http = http_client is None

    async def close(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    async def _request(self) -> str | None:
        params = {"api-key": self._api_key} if self._api_key else None
        response = await self._http.post(
            self._url,
            params=params,
            json={
                "action": "collectCreatorFee",
                "priorityFee": self._priority_fee,
                "pool": "pump",
                "mint": self._coin_mint,
            },
        )
        if response.status_code >= 400:
            raise httpx.HTTPStatusError(
                f"Fee collection failed: HTTP {response.status_code}",
                request=response.request,
                response=response,
            )
        try:
            body = response.json()
        except ValueError:
            return None
        if not isinstance(body, dict):
            return None
        signature = body.get("signature") or body.get("txSignature")
        return str(signature) if signature else None

    async def verify(self, signature: str) -> bool:
        """Whether ``signature`` landed and its logs contain the collection marker."""
        await self._rpc.confirm(signature, timeout_seconds=self._confirm_timeout)
        logs = await self._rpc.get_transaction_logs(signature)
        return any(self._log_marker in line for line in logs)

    async def collect(self) -> FeeCollection:
        """Request collection; never raises for upstream failures."""
        try:
            signature = await self._request()
        except httpx.HTTPError as e:
            logger.warning("Fee collection request failed: %s", e)
            return FeeCollection(signature=None, error=str(e))

        if signature is None:
            logger.info("Fee collection returned no signature")
            return FeeCollection(signature=None)

        try:
            verified = await self.verify(signature)
        except ChainClientError as e:
            logger.warning("Could not verify fee collection %s: %s", signature, e)
            return FeeCollection(signature=None, unverified_signature=signature, error=str(e))

        if not verified:
            logger.warning("Discarding fee collection %s: marker not found in logs", signature)
            return FeeCollection(signature=None, unverified_signature=signature)
        return FeeCollection(signature=signature)

"""Jupiter aggregator client for SOL to reward-token swaps."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

import httpx
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from reward_distributor.chain.rpc import AlreadyProcessedError, SolanaRpcClient
from reward_distributor.chain.transactions import (
    TransactionDecodeError,
    co_sign,
    deserialize_transaction,
    transaction_signature,
)

logger = logging.getLogger(__name__)

WRAPPED_SOL_MINT = "So11111111111111111111111111111111111111112"
DEFAULT_SWAP_API_URL = "https://quote-api.jup.ag/v6"
DEFAULT_DEXES = "pump,meteora,raydium"


class SwapError(Exception):
    """Raised when a quote or swap cannot be obtained or lands as failed."""


def _json_object(response: httpx.Response, what: str) -> dict[str, Any]:
    try:
        body = response.json()
    except ValueError as e:
        raise SwapError(f"{what} response is not JSON") from e
    if not isinstance(body, dict):
        raise SwapError(f"{what} response is not an object: {type(body).__name__}")
    return body


@dataclass(frozen=True)
class SwapQuote:
    """A priced route for swapping ``amount_in`` lamports."""

    amount_in: int
    amount_out: int
    slippage_bps: int
    route: dict[str, Any] = field(default_factory=dict, repr=False)


class JupiterSwapClient:
    """Quote and execute swaps through the Jupiter v6 HTTP API.

    Example:
        ```python
        swapper = JupiterSwapClient(rpc, output_mint=reward_mint)
        quote = await swapper.quote(50_000_000, slippage_bps=100)
        signature = await swapper.execute(quote, treasury_keypair)
        ```
    """

    def __init__(
        self,
        rpc: SolanaRpcClient,
        *,
        output_mint: Pubkey | str,
        input_mint: Pubkey | str = WRAPPED_SOL_MINT,
        base_url: str = DEFAULT_SWAP_API_URL,
        dexes: str | None = DEFAULT_DEXES,
        confirm_timeout_seconds: float = 60.0,
        http_client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 20.0,
    ) -> None:
        self._rpc = rpc
        self._output_mint = str(output_mint)
        self._input_mint = str(input_mint)
        self._base_url = base_url.rstrip("/")
        self._dexes = dexes
        self._confirm_timeout = confirm_timeout_seconds
        self._http = http_client or httpx.AsyncClient(timeout=timeout_seconds)
        self._owns_http = http_client is None

    async def close(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    async def quote(self, amount_in: int, slippage_bps: int) -> SwapQuote:
        """Fetch a route for ``amount_in`` lamports.

        Raises:
            SwapError: If the API fails or returns no route.
        """
        if amount_in <= 0:
            raise SwapError("Swap amount must be positive")
        params: dict[str, Any] = {
            "inputMint": self._input_mint,
            "outputMint": self._output_mint,
            "amount": amount_in,
            "slippageBps": slippage_bps,
            "onlyDirectRoutes": "false",
        }
        if self._dexes:
            params["enableDexes"] = self._dexes
        try:
            response = await self._http.get(f"{self._base_url}/quote", params=params)
        except httpx.HTTPError as e:
            raise SwapError(f"Quote request failed: {e}") from e
        if response.status_code != 200:
            raise SwapError(f"Quote failed: HTTP {response.status_code}")
        body = _json_object(response, "Quote")
        if not body.get("routePlan"):
            raise SwapError("No route available")
        try:
            amount_out = int(body.get("outAmount") or 0)
        except (TypeError, ValueError) as e:
            raise SwapError(f"Quote carried a bad outAmount: {body.get('outAmount')!r}") from e
        return SwapQuote(
            amount_in=amount_in,
            amount_out=amount_out,
            slippage_bps=slippage_bps,
            route=body,
        )

    async def execute(self, quote: SwapQuote, signer: Keypair) -> str:
        """Build, sign and broadcast the swap for ``quote``.

        A swap that is broadcast but not confirmed in time is returned as
        landed; only an explicit on-chain failure raises, since retrying an
        unconfirmed swap could spend the input twice.

        Returns:
            The swap transaction signature.

        Raises:
            SwapError: If the swap cannot be built or fails on chain.
            ChainClientError: If the broadcast itself is rejected.
        """
        payload = {
            "quoteResponse": quote.route,
            "userPublicKey": str(signer.pubkey()),
            "wrapAndUnwrapSol": True,
            "dynamicComputeUnitLimit": True,
            "prioritizationFeeLamports": "auto",
        }
        try:
            response = await self._http.post(f"{self._base_url}/swap", json=payload)
        except httpx.HTTPError as e:
            raise SwapError(f"Swap request failed: {e}") from e
        if response.status_code != 200:
            raise SwapError(f"Swap failed: HTTP {response.status_code} {response.text[:200]}")

        encoded = _json_object(response, "Swap").get("swapTransaction")
        if not encoded or not isinstance(encoded, str):
            raise SwapError("Swap response carried no transaction")
        try:
            tx = co_sign(deserialize_transaction(encoded), signer)
        except (TransactionDecodeError, ValueError) as e:
            raise SwapError(f"Unusable swap transaction: {e}") from e

        try:
            signature = await self._rpc.broadcast(bytes(tx))
        except AlreadyProcessedError:
            signature = transaction_signature(tx)
            logger.info("Swap %s was already processed", signature)
        if await self._rpc.confirm(signature, timeout_seconds=self._confirm_timeout):
            return signature

        status = await self._rpc.get_signature_status(signature)
        if status and status.get("err") is not None:
            raise SwapError(f"Swap {signature} failed on chain: {status['err']}")
        logger.warning("Swap %s not confirmed in time; treating as landed", signature)
        return signature

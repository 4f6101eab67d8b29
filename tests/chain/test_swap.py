"""Tests for the Jupiter swap client."""

from __future__ import annotations

import json
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
from solders.hash import Hash
from solders.keypair import Keypair

from reward_distributor.chain.rpc import AlreadyProcessedError, RPCError
from reward_distributor.chain.swap import JupiterSwapClient, SwapError, SwapQuote
from reward_distributor.chain.transactions import build_sol_transfer_transaction, serialize_transaction

BASE_URL = "https://swap.example/v6"
OUTPUT_MINT = "RewardMint111111111111111111111111111111111"

QUOTE_BODY = {"inAmount": "807500000", "outAmount": "100000000", "routePlan": [{"swapInfo": {}}]}


@pytest.fixture
def signer() -> Keypair:
    return Keypair()


@pytest.fixture
def mock_rpc() -> MagicMock:
    rpc = MagicMock()
    rpc.broadcast = AsyncMock(return_value="swap-sig")
    rpc.confirm = AsyncMock(return_value=True)
    rpc.get_signature_status = AsyncMock(return_value=None)
    return rpc


def make_swapper(rpc: MagicMock, handler) -> JupiterSwapClient:
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return JupiterSwapClient(rpc, output_mint=OUTPUT_MINT, base_url=BASE_URL, http_client=http)


def swap_handler(signer: Keypair, seen: list[httpx.Request] | None = None):
    tx = build_sol_transfer_transaction(signer, Keypair().pubkey(), 1_000, Hash.new_unique())

    def handler(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(request)
        if request.url.path.endswith("/quote"):
            return httpx.Response(200, json=QUOTE_BODY)
        return httpx.Response(200, json={"swapTransaction": serialize_transaction(tx)})

    return handler


class TestQuote:
    """Tests for JupiterSwapClient.quote."""

    @pytest.mark.asyncio
    async def test_quote(self, mock_rpc: MagicMock, signer: Keypair) -> None:
        seen: list[httpx.Request] = []
        quote = await make_swapper(mock_rpc, swap_handler(signer, seen)).quote(807_500_000, 100)

        assert quote.amount_in == 807_500_000
        assert quote.amount_out == 100_000_000
        assert quote.slippage_bps == 100
        params = seen[0].url.params
        assert params["outputMint"] == OUTPUT_MINT
        assert params["amount"] == "807500000"
        assert params["slippageBps"] == "100"

    @pytest.mark.asyncio
    async def test_no_route(self, mock_rpc: MagicMock) -> None:
        swapper = make_swapper(mock_rpc, lambda r: httpx.Response(200, json={"routePlan": []}))
        with pytest.raises(SwapError, match="No route"):
            await swapper.quote(1_000, 100)

    @pytest.mark.asyncio
    async def test_http_failure(self, mock_rpc: MagicMock) -> None:
        swapper = make_swapper(mock_rpc, lambda r: httpx.Response(400, json={"error": "bad"}))
        with pytest.raises(SwapError, match="HTTP 400"):
            await swapper.quote(1_000, 100)

    @pytest.mark.asyncio
    async def test_rejects_zero_amount(self, mock_rpc: MagicMock) -> None:
        with pytest.raises(SwapError):
            await make_swapper(mock_rpc, lambda r: httpx.Response(500)).quote(0, 100)

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "body",
        [
            b"<html>upstream error</html>",
            b"null",
            json.dumps([QUOTE_BODY]).encode(),
            json.dumps({**QUOTE_BODY, "outAmount": "lots"}).encode(),
        ],
    )
    async def test_malformed_quote_body(self, mock_rpc: MagicMock, body: bytes) -> None:
        swapper = make_swapper(mock_rpc, lambda r: httpx.Response(200, content=body))
        with pytest.raises(SwapError):
            await swapper.quote(1_000, 100)


class TestExecute:
    """Tests for JupiterSwapClient.execute."""

    @pytest.mark.asyncio
    async def test_execute_confirmed(self, mock_rpc: MagicMock, signer: Keypair) -> None:
        seen: list[httpx.Request] = []
        swapper = make_swapper(mock_rpc, swap_handler(signer, seen))
        quote = await swapper.quote(807_500_000, 100)

        assert await swapper.execute(quote, signer) == "swap-sig"
        payload = json.loads(seen[1].content)
        assert payload["userPublicKey"] == str(signer.pubkey())
        assert payload["quoteResponse"] == QUOTE_BODY
        mock_rpc.broadcast.assert_awaited_once()
        mock_rpc.get_signature_status.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unconfirmed_swap_is_treated_as_landed(self, mock_rpc: MagicMock, signer: Keypair) -> None:
        mock_rpc.confirm = AsyncMock(return_value=False)
        swapper = make_swapper(mock_rpc, swap_handler(signer))
        quote = SwapQuote(amount_in=1_000, amount_out=10, slippage_bps=100, route=QUOTE_BODY)

        assert await swapper.execute(quote, signer) == "swap-sig"

    @pytest.mark.asyncio
    async def test_failed_on_chain(self, mock_rpc: MagicMock, signer: Keypair) -> None:
        mock_rpc.confirm = AsyncMock(return_value=False)
        mock_rpc.get_signature_status = AsyncMock(return_value={"err": {"InstructionError": [2, "Custom"]}})
        swapper = make_swapper(mock_rpc, swap_handler(signer))
        quote = SwapQuote(amount_in=1_000, amount_out=10, slippage_bps=100, route=QUOTE_BODY)

        with pytest.raises(SwapError, match="failed on chain"):
            await swapper.execute(quote, signer)

    @pytest.mark.asyncio
    async def test_signer_not_required(self, mock_rpc: MagicMock, signer: Keypair) -> None:
        swapper = make_swapper(mock_rpc, swap_handler(signer))
        quote = SwapQuote(amount_in=1_000, amount_out=10, slippage_bps=100, route=QUOTE_BODY)

        with pytest.raises(SwapError, match="Unusable swap transaction"):
            await swapper.execute(quote, Keypair())
        mock_rpc.broadcast.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_missing_transaction(self, mock_rpc: MagicMock, signer: Keypair) -> None:
        swapper = make_swapper(mock_rpc, lambda r: httpx.Response(200, json={}))
        quote = SwapQuote(amount_in=1_000, amount_out=10, slippage_bps=100, route=QUOTE_BODY)

        with pytest.raises(SwapError, match="no transaction"):
            await swapper.execute(quote, signer)

    @pytest.mark.asyncio
    async def test_broadcast_rejection_propagates(self, mock_rpc: MagicMock, signer: Keypair) -> None:
        mock_rpc.broadcast = AsyncMock(side_effect=RPCError("simulation failed"))
        swapper = make_swapper(mock_rpc, swap_handler(signer))
        quote = SwapQuote(amount_in=1_000, amount_out=10, slippage_bps=100, route=QUOTE_BODY)

        with pytest.raises(RPCError):
            await swapper.execute(quote, signer)

    @pytest.mark.asyncio
    async def test_malformed_swap_body(self, mock_rpc: MagicMock, signer: Keypair) -> None:
        swapper = make_swapper(mock_rpc, lambda r: httpx.Response(200, text="not json"))
        quote = SwapQuote(amount_in=1_000, amount_out=10, slippage_bps=100, route=QUOTE_BODY)

        with pytest.raises(SwapError, match="not JSON"):
            await swapper.execute(quote, signer)
        mock_rpc.broadcast.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_already_processed_swap_is_landed(self, mock_rpc: MagicMock, signer: Keypair) -> None:
        mock_rpc.broadcast = AsyncMock(side_effect=AlreadyProcessedError("This transaction has already been processed"))
        swapper = make_swapper(mock_rpc, swap_handler(signer))
        quote = SwapQuote(amount_in=1_000, amount_out=10, slippage_bps=100, route=QUOTE_BODY)

        signature = await swapper.execute(quote, signer)

        assert signature != "swap-sig"
        assert mock_rpc.confirm.await_args.args[0] == signature

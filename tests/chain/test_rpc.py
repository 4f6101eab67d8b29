"""Tests for the Solana JSON-RPC client."""

from __future__ import annotations

import json
from collections.abc import Callable
from typing import Any
from unittest.mock import AsyncMock

import httpx
import pytest
from solders.keypair import Keypair

from reward_distributor.chain.rpc import (
    AccountNotFoundError,
    AlreadyProcessedError,
    RPCError,
    SolanaRpcClient,
    TransientRPCError,
    is_transient_error,
)
from reward_distributor.chain.transactions import TOKEN_2022_PROGRAM_ID

PRIMARY = "https://primary.example"
FALLBACK = "https://fallback.example"


def _result(result: Any) -> dict[str, Any]:
    return {"jsonrpc": "2.0", "id": 1, "result": result}


def _error(message: str, code: int = -32000) -> dict[str, Any]:
    return {"jsonrpc": "2.0", "id": 1, "error": {"code": code, "message": message}}


def make_client(
    handler: Callable[[httpx.Request], httpx.Response],
    *,
    fallback: str | None = None,
    **kwargs: Any,
) -> SolanaRpcClient:
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return SolanaRpcClient(
        PRIMARY,
        fallback_rpc_url=fallback,
        http_client=http,
        retry_delay_seconds=0,
        max_requests_per_second=1_000,
        **kwargs,
    )


class Recorder:
    """Routes requests by method and records (host, method) pairs."""

    def __init__(self, routes: dict[str, Callable[[httpx.Request], httpx.Response]]) -> None:
        self.routes = routes
        self.calls: list[tuple[str, str]] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        method = json.loads(request.content)["method"]
        self.calls.append((request.url.host, method))
        return self.routes[method](request)


class TestErrorClassification:
    """Tests for is_transient_error."""

    @pytest.mark.parametrize(
        "message",
        ["429 Too Many Requests", "Blockhash not found", "Node is behind by 40 slots", "rate limit exceeded"],
    )
    def test_transient(self, message: str) -> None:
        assert is_transient_error(message)

    def test_permanent(self) -> None:
        assert not is_transient_error("Transaction simulation failed: insufficient funds")

    def test_already_processed_is_not_transient(self) -> None:
        assert not is_transient_error("Transaction simulation failed: This transaction has already been processed")


class TestReads:
    """Tests for read methods."""

    @pytest.mark.asyncio
    async def test_get_balance(self) -> None:
        client = make_client(lambda r: httpx.Response(200, json=_result({"value": 1_500_000_000})))
        assert await client.get_balance(Keypair().pubkey()) == 1_500_000_000

    @pytest.mark.asyncio
    async def test_token_balance_of_missing_account_is_none(self) -> None:
        client = make_client(
            lambda r: httpx.Response(200, json=_error("Invalid param: could not find account", code=-32602))
        )
        assert await client.get_token_balance(Keypair().pubkey()) is None

    @pytest.mark.asyncio
    async def test_token_balance(self) -> None:
        client = make_client(
            lambda r: httpx.Response(200, json=_result({"value": {"amount": "95000000", "decimals": 6}}))
        )
        assert await client.get_token_balance(Keypair().pubkey()) == 95_000_000

    @pytest.mark.asyncio
    async def test_mint_program_is_cached(self) -> None:
        redis = AsyncMock()
        redis.get = AsyncMock(return_value=None)
        redis.set = AsyncMock()
        client = make_client(
            lambda r: httpx.Response(
                200, json=_result({"value": {"owner": str(TOKEN_2022_PROGRAM_ID), "data": ["", "base64"]}})
            ),
            redis=redis,
        )
        mint = Keypair().pubkey()

        assert await client.get_mint_program(mint) == TOKEN_2022_PROGRAM_ID
        redis.set.assert_awaited_once()
        key, value = redis.set.await_args.args
        assert key == f"solana:mint-program:{mint}"
        assert value == str(TOKEN_2022_PROGRAM_ID)

        redis.get = AsyncMock(return_value=str(TOKEN_2022_PROGRAM_ID).encode())
        assert await client.get_mint_program(mint) == TOKEN_2022_PROGRAM_ID

    @pytest.mark.asyncio
    async def test_mint_program_of_missing_mint(self) -> None:
        client = make_client(lambda r: httpx.Response(200, json=_result({"value": None})))
        with pytest.raises(AccountNotFoundError):
            await client.get_mint_program(Keypair().pubkey())

    @pytest.mark.asyncio
    async def test_permanent_error_is_not_retried(self) -> None:
        recorder = Recorder({"getBalance": lambda r: httpx.Response(200, json=_error("Invalid params"))})
        client = make_client(recorder)
        with pytest.raises(RPCError) as exc_info:
            await client.get_balance(Keypair().pubkey())
        assert not isinstance(exc_info.value, TransientRPCError)
        assert len(recorder.calls) == 1


class TestRetryAndFailover:
    """Tests for retry and failover."""

    @pytest.mark.asyncio
    async def test_retries_transient_errors(self) -> None:
        responses = iter([httpx.Response(429), httpx.Response(200, json=_result({"value": 5}))])
        client = make_client(lambda r: next(responses))
        assert await client.get_balance(Keypair().pubkey()) == 5

    @pytest.mark.asyncio
    async def test_fails_over_to_fallback(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.host == "primary.example":
                return httpx.Response(503)
            return httpx.Response(200, json=_result({"value": 9}))

        client = make_client(handler, fallback=FALLBACK, max_retries=2)
        assert await client.get_balance(Keypair().pubkey()) == 9
        assert client.has_fallback

    @pytest.mark.asyncio
    async def test_exhaustion_raises_transient(self) -> None:
        client = make_client(lambda r: httpx.Response(503), max_retries=2)
        with pytest.raises(TransientRPCError, match="after all retries"):
            await client.get_balance(Keypair().pubkey())


class TestBroadcast:
    """Tests for broadcast and confirmation."""

    @pytest.mark.asyncio
    async def test_broadcast_returns_signature(self) -> None:
        recorder = Recorder({"sendTransaction": lambda r: httpx.Response(200, json=_result("sig-1"))})
        client = make_client(recorder)
        assert await client.broadcast(b"\x01\x02", base_delay_seconds=0) == "sig-1"
        assert recorder.calls == [("primary.example", "sendTransaction")]

    @pytest.mark.asyncio
    async def test_broadcast_uses_fallback_on_transient_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.host == "primary.example":
                return httpx.Response(200, json=_error("Blockhash not found"))
            return httpx.Response(200, json=_result("sig-2"))

        client = make_client(handler, fallback=FALLBACK)
        assert await client.broadcast(b"\x01", base_delay_seconds=0) == "sig-2"

    @pytest.mark.asyncio
    async def test_broadcast_permanent_rejection(self) -> None:
        recorder = Recorder(
            {"sendTransaction": lambda r: httpx.Response(200, json=_error("Transaction simulation failed"))}
        )
        client = make_client(recorder, fallback=FALLBACK)
        with pytest.raises(RPCError) as exc_info:
            await client.broadcast(b"\x01", attempts=3, base_delay_seconds=0)
        assert not isinstance(exc_info.value, TransientRPCError)
        assert len(recorder.calls) == 1

    @pytest.mark.asyncio
    async def test_broadcast_exhausts_attempts(self) -> None:
        recorder = Recorder({"sendTransaction": lambda r: httpx.Response(429)})
        client = make_client(recorder, fallback=FALLBACK)
        with pytest.raises(TransientRPCError):
            await client.broadcast(b"\x01", attempts=2, base_delay_seconds=0)
        assert len(recorder.calls) == 4

    @pytest.mark.asyncio
    async def test_broadcast_already_processed_after_lost_response(self) -> None:
        sends: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            sends.append(request)
            if len(sends) == 1:
                raise httpx.ReadTimeout("timed out", request=request)
            return httpx.Response(
                200, json=_error("Transaction simulation failed: This transaction has already been processed")
            )

        client = make_client(handler)
        with pytest.raises(AlreadyProcessedError):
            await client.broadcast(b"\x01", attempts=3, base_delay_seconds=0)
        assert len(sends) == 2

    @pytest.mark.asyncio
    async def test_non_json_body_is_transient(self) -> None:
        client = make_client(lambda r: httpx.Response(200, text="<html>gateway</html>"), max_retries=1)
        with pytest.raises(TransientRPCError):
            await client.get_balance(Keypair().pubkey())

    @pytest.mark.asyncio
    async def test_non_object_body_is_rejected(self) -> None:
        client = make_client(lambda r: httpx.Response(200, json=[1, 2]))
        with pytest.raises(RPCError) as exc_info:
            await client.get_balance(Keypair().pubkey())
        assert not isinstance(exc_info.value, TransientRPCError)

    @pytest.mark.asyncio
    async def test_confirm_confirmed(self) -> None:
        client = make_client(
            lambda r: httpx.Response(
                200, json=_result({"value": [{"err": None, "confirmationStatus": "confirmed"}]})
            )
        )
        assert await client.confirm("sig-1", timeout_seconds=1) is True

    @pytest.mark.asyncio
    async def test_confirm_failed_on_chain(self) -> None:
        client = make_client(
            lambda r: httpx.Response(
                200,
                json=_result({"value": [{"err": {"InstructionError": [1, "Custom"]}, "confirmationStatus": "confirmed"}]}),
            )
        )
        assert await client.confirm("sig-1", timeout_seconds=1) is False

    @pytest.mark.asyncio
    async def test_confirm_times_out(self) -> None:
        client = make_client(lambda r: httpx.Response(200, json=_result({"value": [None]})))
        assert await client.confirm("sig-1", timeout_seconds=0) is False

    @pytest.mark.asyncio
    async def test_transaction_logs(self) -> None:
        client = make_client(
            lambda r: httpx.Response(
                200, json=_result({"meta": {"err": None, "logMessages": ["Program log: Instruction: CollectCreatorFee"]}})
            )
        )
        assert await client.get_transaction_logs("sig-1") == ["Program log: Instruction: CollectCreatorFee"]

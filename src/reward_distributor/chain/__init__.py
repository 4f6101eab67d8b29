"""Ledger network layer - Solana RPC, transactions and third-party integrations."""

from reward_distributor.chain.fees import FeeCollection, FeeCollector
from reward_distributor.chain.holders import HolderBalance, HolderDirectory
from reward_distributor.chain.rpc import (
    AccountNotFoundError,
    ChainClientError,
    RPCError,
    SolanaRpcClient,
    TransientRPCError,
)
from reward_distributor.chain.swap import JupiterSwapClient, SwapError, SwapQuote

__all__ = [
    "AccountNotFoundError",
    "ChainClientError",
    "FeeCollection",
    "FeeCollector",
    "HolderBalance",
    "HolderDirectory",
    "JupiterSwapClient",
    "RPCError",
    "SolanaRpcClient",
    "SwapError",
    "SwapQuote",
    "TransientRPCError",
]

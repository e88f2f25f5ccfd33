"""
Resolver Layer - Funding output (prevout) resolution.

This module provides:
    - PrevoutCache: Write-once sqlite cache of confirmed funding outputs
    - BitcoinRpcClient: Async JSON-RPC client for Bitcoin Core
    - PrevoutResolver: Cache -> node -> explicit marker, with in-flight
      dedup, backpressure and bounded background retry
"""

from .cache import CacheError, PrevoutCache
from .rpc import (
    BitcoinRpcClient,
    FundingOutput,
    FundingTransaction,
    MempoolSnapshot,
    RpcError,
    RpcTransientError,
    RpcUnavailableError,
    btc_to_sats,
)
from .resolver import PrevoutResolver, ResolverStats

__all__ = [
    "CacheError",
    "PrevoutCache",
    "BitcoinRpcClient",
    "FundingOutput",
    "FundingTransaction",
    "MempoolSnapshot",
    "RpcError",
    "RpcTransientError",
    "RpcUnavailableError",
    "btc_to_sats",
    "PrevoutResolver",
    "ResolverStats",
]

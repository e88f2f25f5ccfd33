"""
Shared test fixtures for cross-component tests.

This file provides fixtures that span multiple components,
unlike component-specific fixtures in src/txradar/{component}/tests/conftest.py
"""
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from txradar.resolver import FundingOutput, FundingTransaction, RpcUnavailableError


# =============================================================================
# Mock External Service Fixtures
# =============================================================================


class FakeChain:
    """
    Funding transactions the fake node knows about.

    Lookups for anything else fail the way Bitcoin Core does without
    -txindex, so the resolver schedules a retry.
    """

    def __init__(self) -> None:
        self.transactions: dict[str, FundingTransaction] = {}

    def confirm(self, txid: str, values=(100_000_000,), height: int = 800_000) -> None:
        self.transactions[txid] = FundingTransaction(
            txid=txid,
            outputs=tuple(
                FundingOutput(vout=i, value=v, script_type="p2wpkh")
                for i, v in enumerate(values)
            ),
            block_height=height,
            block_time=datetime(2023, 1, 1, tzinfo=timezone.utc),
        )

    async def lookup(self, txid: str, block_hash=None) -> FundingTransaction:
        funding = self.transactions.get(txid)
        if funding is None:
            raise RpcUnavailableError(
                "No such mempool or blockchain transaction", code=-5
            )
        return funding


@pytest.fixture
def chain():
    return FakeChain()


@pytest.fixture
def mock_bitcoin_rpc(chain):
    """
    Mock node RPC backed by the fake chain.

    Use this when testing components that resolve prevouts.
    """
    rpc = MagicMock()
    rpc.get_funding_transaction = AsyncMock(side_effect=chain.lookup)
    rpc.get_block_count = AsyncMock(return_value=850_000)
    rpc.close = AsyncMock()
    return rpc

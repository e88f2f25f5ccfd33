"""
Async JSON-RPC client for Bitcoin Core.

Provides the remote lookups the resolver and the resync path need, with
retries and exponential backoff for transient failures.

Error taxonomy:
    RpcError             - non-retryable (auth, bad method, bad params)
    RpcUnavailableError  - the node has no such data (pruned, no -txindex)
    RpcTransientError    - network / timeout / 5xx persisted through retries
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional

import aiohttp

from txradar.core.models import SATS_PER_BTC

logger = logging.getLogger(__name__)

# RPC_INVALID_ADDRESS_OR_KEY: "No such mempool or blockchain transaction"
RPC_NOT_FOUND = -5
_UNAVAILABLE_MARKERS = ("pruned", "no such mempool", "not available", "-txindex")

# Bitcoin Core scriptPubKey.type -> names used by the cache
SCRIPT_TYPES = {
    "pubkeyhash": "p2pkh",
    "scripthash": "p2sh",
    "witness_v0_keyhash": "p2wpkh",
    "witness_v0_scripthash": "p2wsh",
    "witness_v1_taproot": "p2tr",
    "pubkey": "p2pk",
    "nulldata": "op_return",
    "multisig": "multisig",
    "anchor": "anchor",
    "witness_unknown": "witness_unknown",
    "nonstandard": "nonstandard",
}


class RpcError(Exception):
    """Base exception for node RPC errors."""

    def __init__(
        self,
        message: str,
        code: Optional[int] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message)
        self.code = code
        self.status_code = status_code


class RpcUnavailableError(RpcError):
    """The node does not hold the requested data."""
    pass


class RpcTransientError(RpcError):
    """Network-level failure that persisted through all retries."""
    pass


@dataclass(frozen=True)
class FundingOutput:
    vout: int
    value: int
    script_type: str


@dataclass(frozen=True)
class FundingTransaction:
    """Outputs of a funding transaction plus its confirmation, if any."""
    txid: str
    outputs: tuple[FundingOutput, ...]
    block_height: Optional[int] = None
    block_time: Optional[datetime] = None

    @property
    def is_confirmed(self) -> bool:
        return self.block_height is not None

    def output(self, vout: int) -> Optional[FundingOutput]:
        for output in self.outputs:
            if output.vout == vout:
                return output
        return None


@dataclass(frozen=True)
class MempoolSnapshot:
    txids: tuple[str, ...]
    mempool_sequence: Optional[int] = None


def btc_to_sats(amount: Any) -> int:
    """Convert a JSON BTC amount to integer satoshis without float rounding."""
    return int((Decimal(str(amount)) * SATS_PER_BTC).to_integral_value())


def _loads(text: str) -> Any:
    return json.loads(text, parse_float=Decimal)


class BitcoinRpcClient:
    """
    Async JSON-RPC client for a Bitcoin Core node.

    Usage:
        async with BitcoinRpcClient(url, user, password) as rpc:
            funding = await rpc.get_funding_transaction(txid)
            snapshot = await rpc.get_mempool_snapshot()
    """

    def __init__(
        self,
        url: str = "http://127.0.0.1:8332",
        user: Optional[str] = None,
        password: Optional[str] = None,
        session: Optional[aiohttp.ClientSession] = None,
        timeout: float = 10.0,
        max_retries: int = 3,
        retry_delay: float = 0.5,
        header_cache_size: int = 2048,
    ):
        """
        Initialize the RPC client.

        Args:
            url: Node RPC endpoint
            user: RPC user (basic auth)
            password: RPC password (basic auth)
            session: Optional aiohttp session (created if not provided)
            timeout: Per-request timeout in seconds
            max_retries: Attempts per call for transient failures
            retry_delay: Base delay between retries (exponential backoff)
            header_cache_size: Block headers kept in memory for height lookup
        """
        self._url = url
        self._auth = aiohttp.BasicAuth(user, password or "") if user else None
        self._session = session
        self._owns_session = session is None
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._max_retries = max(1, max_retries)
        self._retry_delay = retry_delay
        self._request_id = 0

        self._headers: OrderedDict[str, dict] = OrderedDict()
        self._header_cache_size = header_cache_size

        self.calls = 0
        self.failures = 0

    async def __aenter__(self) -> "BitcoinRpcClient":
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def close(self) -> None:
        """Close the client session."""
        if self._owns_session and self._session:
            await self._session.close()
            self._session = None

    async def call(self, method: str, *params: Any) -> Any:
        """
        Invoke an RPC method with retries.

        Raises:
            RpcUnavailableError: The node reports the data as missing
            RpcError: Non-retryable RPC or HTTP error
            RpcTransientError: Retries exhausted on network errors
            asyncio.CancelledError: When task is cancelled (re-raised)
        """
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
            self._owns_session = True

        self._request_id += 1
        payload = {
            "jsonrpc": "1.0",
            "id": self._request_id,
            "method": method,
            "params": list(params),
        }

        last_error: Optional[Exception] = None

        for attempt in range(self._max_retries):
            self.calls += 1
            try:
                async with self._session.post(
                    self._url, json=payload, auth=self._auth, timeout=self._timeout
                ) as response:
                    text = await response.text()
                    return self._parse_response(method, response.status, text)

            except RpcTransientError as e:
                delay = self._retry_delay * (2 ** attempt)
                logger.warning(
                    f"RPC {method} server error, retry {attempt + 1}/{self._max_retries}"
                )
                last_error = e
                await asyncio.sleep(delay)

            except asyncio.TimeoutError:
                delay = self._retry_delay * (2 ** attempt)
                logger.warning(f"RPC {method} timeout, retry {attempt + 1}/{self._max_retries}")
                last_error = RpcTransientError(f"{method} timed out")
                await asyncio.sleep(delay)

            except asyncio.CancelledError:
                logger.debug(f"RPC {method} cancelled")
                raise

            except aiohttp.ClientError as e:
                delay = self._retry_delay * (2 ** attempt)
                logger.warning(
                    f"RPC {method} failed: {e}, retry {attempt + 1}/{self._max_retries}"
                )
                last_error = RpcTransientError(str(e))
                await asyncio.sleep(delay)

        self.failures += 1
        raise last_error or RpcTransientError(f"{method} failed after retries")

    def _parse_response(self, method: str, status: int, text: str) -> Any:
        if status == 401:
            raise RpcError(f"RPC authentication failed for {method}", status_code=401)

        try:
            body = _loads(text) if text else None
        except json.JSONDecodeError:
            body = None

        # Core answers RPC errors with HTTP 404/500 and a JSON error body
        if isinstance(body, dict) and body.get("error"):
            error = body["error"]
            code = error.get("code")
            message = str(error.get("message", ""))
            if code == RPC_NOT_FOUND or any(m in message.lower() for m in _UNAVAILABLE_MARKERS):
                raise RpcUnavailableError(f"{method}: {message}", code=code, status_code=status)
            raise RpcError(f"{method}: {message}", code=code, status_code=status)

        if status >= 500 or body is None:
            raise RpcTransientError(
                f"{method}: HTTP {status} - {text[:200]}", status_code=status
            )

        if status >= 400:
            raise RpcError(f"{method}: HTTP {status} - {text[:200]}", status_code=status)

        return body.get("result")

    # =========================================================================
    # Node queries
    # =========================================================================

    async def get_raw_transaction(
        self,
        txid: str,
        verbose: bool = True,
        block_hash: Optional[str] = None,
    ) -> Any:
        params: list[Any] = [txid, verbose]
        if block_hash:
            params.append(block_hash)
        return await self.call("getrawtransaction", *params)

    async def get_raw_transaction_bytes(self, txid: str) -> bytes:
        return bytes.fromhex(await self.get_raw_transaction(txid, verbose=False))

    async def get_block_header(self, block_hash: str) -> dict:
        header = self._headers.get(block_hash)
        if header is not None:
            self._headers.move_to_end(block_hash)
            return header

        header = await self.call("getblockheader", block_hash, True)
        self._headers[block_hash] = header
        if len(self._headers) > self._header_cache_size:
            self._headers.popitem(last=False)
        return header

    async def get_block_count(self) -> int:
        return int(await self.call("getblockcount"))

    async def get_mempool_snapshot(self) -> MempoolSnapshot:
        """Current mempool txids with the mempool sequence they correspond to."""
        result = await self.call("getrawmempool", False, True)
        if isinstance(result, dict):
            sequence = result.get("mempool_sequence")
            return MempoolSnapshot(
                txids=tuple(result.get("txids", [])),
                mempool_sequence=int(sequence) if sequence is not None else None,
            )
        return MempoolSnapshot(txids=tuple(result or []))

    async def get_funding_transaction(
        self,
        txid: str,
        block_hash: Optional[str] = None,
    ) -> FundingTransaction:
        """
        Fetch a funding transaction's outputs and confirmation.

        Raises:
            RpcUnavailableError: Node holds no copy (pruned / no index)
        """
        result = await self.get_raw_transaction(txid, True, block_hash)
        if not isinstance(result, dict):
            raise RpcError(f"getrawtransaction {txid}: unexpected result")

        outputs = tuple(
            FundingOutput(
                vout=int(out["n"]),
                value=btc_to_sats(out["value"]),
                script_type=SCRIPT_TYPES.get(
                    out.get("scriptPubKey", {}).get("type", "nonstandard"), "nonstandard"
                ),
            )
            for out in result.get("vout", [])
        )

        confirmed_in = result.get("blockhash")
        if not confirmed_in or not result.get("confirmations"):
            return FundingTransaction(txid=txid, outputs=outputs)

        header = await self.get_block_header(confirmed_in)
        block_time = result.get("blocktime", header.get("time"))
        return FundingTransaction(
            txid=txid,
            outputs=outputs,
            block_height=int(header["height"]),
            block_time=datetime.fromtimestamp(int(block_time), tz=timezone.utc),
        )

"""
Shared test fixtures.

Builders for raw transactions, parsed transactions and prevout records
used by every layer's tests. Component-specific fixtures live in
src/txradar/{component}/tests/conftest.py.
"""
import hashlib
import struct
from datetime import datetime, timedelta, timezone

import pytest

from txradar.core.models import (
    SATS_PER_BTC,
    PrevoutRecord,
    Transaction,
    TxInput,
    TxOutput,
)

P2WPKH_SCRIPT = bytes.fromhex("0014") + bytes(20)
P2PKH_SCRIPT = bytes.fromhex("76a914") + bytes(20) + bytes.fromhex("88ac")


def _varint(n: int) -> bytes:
    if n < 0xFD:
        return bytes([n])
    if n <= 0xFFFF:
        return b"\xfd" + struct.pack("<H", n)
    if n <= 0xFFFFFFFF:
        return b"\xfe" + struct.pack("<I", n)
    return b"\xff" + struct.pack("<Q", n)


def serialize_tx(
    inputs,
    outputs,
    version: int = 2,
    locktime: int = 0,
    witnesses=None,
) -> bytes:
    """
    Serialize a transaction.

    inputs: (prev_txid_hex, vout, script_sig, sequence) tuples
    outputs: (value_sats, script_pubkey) tuples
    witnesses: one tuple of stack items per input, or None for legacy
    """
    body = _varint(len(inputs))
    for prev_txid, vout, script_sig, sequence in inputs:
        body += bytes.fromhex(prev_txid)[::-1]
        body += struct.pack("<I", vout)
        body += _varint(len(script_sig)) + script_sig
        body += struct.pack("<I", sequence)
    body += _varint(len(outputs))
    for value, script in outputs:
        body += struct.pack("<Q", value) + _varint(len(script)) + script

    head = struct.pack("<i", version)
    tail = struct.pack("<I", locktime)
    if not witnesses:
        return head + body + tail

    witness = b""
    for items in witnesses:
        witness += _varint(len(items))
        for item in items:
            witness += _varint(len(item)) + item
    return head + b"\x00\x01" + body + witness + tail


def fake_txid(seed: str) -> str:
    return hashlib.sha256(seed.encode()).hexdigest()


# =============================================================================
# Time Fixtures
# =============================================================================


@pytest.fixture
def now():
    """Fixed instant used as first-seen time."""
    return datetime(2024, 6, 1, 12, 0, 0, tzinfo=timezone.utc)


# =============================================================================
# Transaction Fixtures
# =============================================================================


@pytest.fixture
def raw_tx_builder():
    """
    Build raw transaction bytes.

    Usage:
        raw = raw_tx_builder([(txid, 0)], [50_000], sequence=0xFFFFFFFD)
    """
    def build(
        outpoints,
        output_values,
        sequence: int = 0xFFFFFFFF,
        locktime: int = 0,
        script=P2WPKH_SCRIPT,
    ) -> bytes:
        inputs = [(txid, vout, b"", sequence) for txid, vout in outpoints]
        outputs = [(value, script) for value in output_values]
        return serialize_tx(inputs, outputs, locktime=locktime)

    return build


@pytest.fixture
def make_tx():
    """
    Build a parsed Transaction without going through bytes.

    Inputs spend fake_txid(f"{seed}-in{i}"):0; the txid is fake_txid(seed).
    """
    def build(
        seed: str = "tx",
        n_inputs: int = 1,
        output_values=(SATS_PER_BTC,),
        sequence: int = 0xFFFFFFFF,
        vsize: int = 200,
    ) -> Transaction:
        inputs = tuple(
            TxInput(prev_txid=fake_txid(f"{seed}-in{i}"), prev_vout=0, sequence=sequence)
            for i in range(n_inputs)
        )
        outputs = tuple(TxOutput(value=v, script_pubkey=P2WPKH_SCRIPT) for v in output_values)
        return Transaction(
            txid=fake_txid(seed),
            version=2,
            inputs=inputs,
            outputs=outputs,
            locktime=0,
            size=vsize,
            weight=vsize * 4,
        )

    return build


@pytest.fixture
def make_prevout(now):
    """
    Build a confirmed PrevoutRecord.

    Usage:
        make_prevout(txin.prev_txid, 0, value=SATS_PER_BTC, days_old=100)
    """
    def build(
        txid: str,
        vout: int = 0,
        value: int = SATS_PER_BTC,
        days_old: float = 100,
        block_height: int = 800_000,
    ) -> PrevoutRecord:
        return PrevoutRecord(
            txid=txid,
            vout=vout,
            value=value,
            script_type="p2wpkh",
            block_height=block_height,
            block_time=now - timedelta(days=days_old),
            resolved_at=now,
        )

    return build

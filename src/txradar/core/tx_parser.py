"""
Raw transaction decoding.

Handles legacy and BIP144 (segwit) serializations and computes the txid,
BIP141 weight and virtual size. Also classifies output scripts into the
standard template names used by the prevout cache.
"""
from __future__ import annotations

import hashlib
import struct

from .models import Transaction, TxInput, TxOutput


class MalformedTransactionError(ValueError):
    """Raw bytes do not decode to exactly one complete transaction."""
    pass


class _Reader:
    """Cursor over a byte string that fails loudly on truncation."""

    __slots__ = ("data", "pos")

    def __init__(self, data: bytes) -> None:
        self.data = data
        self.pos = 0

    @property
    def remaining(self) -> int:
        return len(self.data) - self.pos

    def read(self, n: int) -> bytes:
        if n > self.remaining:
            raise MalformedTransactionError(
                f"truncated at byte {self.pos}: wanted {n}, have {self.remaining}"
            )
        chunk = self.data[self.pos:self.pos + n]
        self.pos += n
        return chunk

    def int32(self) -> int:
        return struct.unpack("<i", self.read(4))[0]

    def uint32(self) -> int:
        return struct.unpack("<I", self.read(4))[0]

    def uint64(self) -> int:
        return struct.unpack("<Q", self.read(8))[0]

    def varint(self) -> int:
        prefix = self.read(1)[0]
        if prefix < 0xFD:
            return prefix
        if prefix == 0xFD:
            return struct.unpack("<H", self.read(2))[0]
        if prefix == 0xFE:
            return struct.unpack("<I", self.read(4))[0]
        return struct.unpack("<Q", self.read(8))[0]

    def var_bytes(self) -> bytes:
        return self.read(self.varint())

    def count(self, what: str) -> int:
        n = self.varint()
        # Every item takes at least one byte
        if n > self.remaining:
            raise MalformedTransactionError(f"{what} count {n} exceeds remaining bytes")
        return n


def sha256d(data: bytes) -> bytes:
    return hashlib.sha256(hashlib.sha256(data).digest()).digest()


def parse_transaction(raw: bytes) -> Transaction:
    """
    Decode a serialized transaction.

    Args:
        raw: Network-serialized transaction bytes (with or without witness)

    Returns:
        Transaction with txid, size and weight computed

    Raises:
        MalformedTransactionError: On truncation, trailing bytes, or a
            structurally invalid transaction (no inputs / no outputs)
    """
    reader = _Reader(raw)
    version = reader.int32()

    has_witness = len(raw) > 6 and raw[4] == 0x00 and raw[5] != 0x00
    if has_witness:
        reader.read(2)  # marker + flag

    body_start = reader.pos

    n_in = reader.count("input")
    if n_in == 0:
        raise MalformedTransactionError("transaction has no inputs")

    spent = []
    for _ in range(n_in):
        prev_hash = reader.read(32)
        prev_vout = reader.uint32()
        script_sig = reader.var_bytes()
        sequence = reader.uint32()
        spent.append((prev_hash[::-1].hex(), prev_vout, script_sig, sequence))

    n_out = reader.count("output")
    if n_out == 0:
        raise MalformedTransactionError("transaction has no outputs")

    outputs = []
    for _ in range(n_out):
        value = reader.uint64()
        outputs.append(TxOutput(value=value, script_pubkey=reader.var_bytes()))

    body_end = reader.pos

    witnesses: list[tuple[bytes, ...]] = [()] * n_in
    if has_witness:
        for i in range(n_in):
            items = reader.count("witness item")
            witnesses[i] = tuple(reader.var_bytes() for _ in range(items))
        if not any(witnesses):
            raise MalformedTransactionError("witness flag set but no witness data")

    locktime = reader.uint32()

    if reader.remaining:
        raise MalformedTransactionError(f"{reader.remaining} trailing bytes after locktime")

    if has_witness:
        stripped = raw[:4] + raw[body_start:body_end] + raw[-4:]
    else:
        stripped = raw

    inputs = tuple(
        TxInput(
            prev_txid=prev_txid,
            prev_vout=prev_vout,
            script_sig=script_sig,
            sequence=sequence,
            witness=witnesses[i],
        )
        for i, (prev_txid, prev_vout, script_sig, sequence) in enumerate(spent)
    )

    return Transaction(
        txid=sha256d(stripped)[::-1].hex(),
        version=version,
        inputs=inputs,
        outputs=tuple(outputs),
        locktime=locktime,
        size=len(raw),
        weight=len(stripped) * 3 + len(raw),
    )


def parse_transaction_hex(raw_hex: str) -> Transaction:
    try:
        raw = bytes.fromhex(raw_hex)
    except ValueError as e:
        raise MalformedTransactionError(f"invalid hex: {e}") from e
    return parse_transaction(raw)


def classify_script(script: bytes) -> str:
    """Name the standard template a scriptPubKey matches."""
    n = len(script)
    if n == 25 and script[:3] == b"\x76\xa9\x14" and script[23:] == b"\x88\xac":
        return "p2pkh"
    if n == 23 and script[:2] == b"\xa9\x14" and script[22] == 0x87:
        return "p2sh"
    if n == 22 and script[:2] == b"\x00\x14":
        return "p2wpkh"
    if n == 34 and script[:2] == b"\x00\x20":
        return "p2wsh"
    if n == 34 and script[:2] == b"\x51\x20":
        return "p2tr"
    if n and script[0] == 0x6A:
        return "op_return"
    if (n == 35 and script[0] == 0x21 or n == 67 and script[0] == 0x41) and script[-1] == 0xAC:
        return "p2pk"
    if n and script[-1] == 0xAE:
        return "multisig"
    return "nonstandard"

"""
Lifecycle events consumed by the pipeline.

Every event from the upstream feed carries a strictly increasing sequence
number. Events synthesized locally (resync backfill) carry None.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Union

from .models import RemovalReason, Transaction


@dataclass(frozen=True)
class TxAdded:
    """
    A transaction entered the node's mempool.

    raw holds the serialized bytes when inlined by the feed; tx is filled in
    once the bytes are parsed.
    """
    sequence: Optional[int]
    txid: Optional[str] = None
    raw: Optional[bytes] = None
    tx: Optional[Transaction] = None
    seen_at: Optional[datetime] = None


@dataclass(frozen=True)
class TxRemoved:
    sequence: Optional[int]
    txid: str
    reason: RemovalReason
    replaced_by: Optional[str] = None


@dataclass(frozen=True)
class BlockConnected:
    sequence: Optional[int]
    block_hash: str
    height: Optional[int] = None


@dataclass(frozen=True)
class BlockDisconnected:
    sequence: Optional[int]
    block_hash: str
    height: Optional[int] = None


LifecycleEvent = Union[TxAdded, TxRemoved, BlockConnected, BlockDisconnected]

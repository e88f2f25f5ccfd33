"""
Domain models for the radar core.

Monetary values are integer satoshis throughout. Only ratios (fee rate,
score, coin-days) are floats, and each is produced by a single final division.

Published models (ScoredTx, LifecycleTransition, MempoolStats) expose
to_dict() for JSON consumers.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional, Union

SATS_PER_BTC = 100_000_000
RBF_SEQUENCE_THRESHOLD = 0xFFFFFFFE


class TxState(str, Enum):
    """Lifecycle state of a mempool entry."""
    PENDING = "pending"
    CONFIRMED = "confirmed"
    REPLACED = "replaced"
    EVICTED = "evicted"

    @property
    def is_terminal(self) -> bool:
        return self is not TxState.PENDING


class RemovalReason(str, Enum):
    """Why the node dropped a transaction from its mempool."""
    CONFIRMED = "confirmed"
    REPLACED = "replaced"
    EVICTED = "evicted"
    CONFLICT = "conflict"
    UNKNOWN = "unknown"

    @property
    def target_state(self) -> TxState:
        if self is RemovalReason.CONFIRMED:
            return TxState.CONFIRMED
        if self is RemovalReason.REPLACED:
            return TxState.REPLACED
        return TxState.EVICTED


class TransitionKind(str, Enum):
    """Kind of lifecycle notification published downstream."""
    ADDED = "added"
    CONFIRMED = "confirmed"
    REPLACED = "replaced"
    EVICTED = "evicted"
    BLOCK_CONNECTED = "block_connected"
    BLOCK_DISCONNECTED = "block_disconnected"


class AlertTier(str, Enum):
    """Discrete tier derived from the composite score."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class UnresolvedReason(str, Enum):
    """Why a prevout has no record (yet)."""
    PENDING = "pending"
    UNAVAILABLE = "unavailable"
    TRANSIENT = "transient"
    BACKPRESSURE = "backpressure"
    EXHAUSTED = "exhausted"
    SHUTDOWN = "shutdown"


# =============================================================================
# Transactions
# =============================================================================


@dataclass(frozen=True)
class TxInput:
    """Reference to the output being spent."""
    prev_txid: str
    prev_vout: int
    script_sig: bytes = b""
    sequence: int = 0xFFFFFFFF
    witness: tuple[bytes, ...] = ()

    @property
    def outpoint(self) -> tuple[str, int]:
        return self.prev_txid, self.prev_vout


@dataclass(frozen=True)
class TxOutput:
    value: int
    script_pubkey: bytes = b""


@dataclass(frozen=True)
class Transaction:
    """
    A decoded transaction. Immutable once parsed.

    Attributes:
        txid: Display-order hex id (hash of the non-witness serialization)
        size: Full serialized size in bytes, witness included
        weight: BIP141 weight units
    """
    txid: str
    version: int
    inputs: tuple[TxInput, ...]
    outputs: tuple[TxOutput, ...]
    locktime: int
    size: int
    weight: int

    @property
    def vsize(self) -> int:
        """Virtual size, ceil(weight / 4)."""
        return (self.weight + 3) // 4

    @property
    def is_rbf_signaling(self) -> bool:
        """BIP125: any input with nSequence below 0xFFFFFFFE opts in."""
        return any(i.sequence < RBF_SEQUENCE_THRESHOLD for i in self.inputs)

    @property
    def total_output_value(self) -> int:
        return sum(o.value for o in self.outputs)


# =============================================================================
# Prevouts
# =============================================================================


@dataclass(frozen=True)
class PrevoutRecord:
    """Resolved metadata of a funding output. Immutable once written."""
    txid: str
    vout: int
    value: int
    script_type: str
    block_height: Optional[int]
    block_time: Optional[datetime]
    resolved_at: datetime

    @property
    def key(self) -> tuple[str, int]:
        return self.txid, self.vout

    @property
    def is_confirmed(self) -> bool:
        return self.block_height is not None


@dataclass(frozen=True)
class UnresolvedPrevout:
    """Explicit marker for a prevout with no record."""
    txid: str
    vout: int
    reason: UnresolvedReason

    @property
    def key(self) -> tuple[str, int]:
        return self.txid, self.vout


PrevoutResult = Union[PrevoutRecord, UnresolvedPrevout]


@dataclass(frozen=True)
class ExchangeFlow:
    """Optional address-tagging enrichment."""
    to_exchange: bool = False
    to_confidence: float = 0.0
    from_exchange: bool = False
    from_confidence: float = 0.0


@dataclass(frozen=True)
class AnalyzedTx:
    """
    A transaction with its prevouts resolved (or marked unresolved).

    Unresolved inputs contribute nothing to total_input_value or
    coin_days_destroyed. fee and fee_rate are only non-zero when every input
    resolved, since no estimate is ever inferred for a missing input.
    """
    tx: Transaction
    prevouts: tuple[PrevoutResult, ...]
    seen_at: datetime
    total_input_value: int
    fee: int
    fee_rate: float
    coin_days_destroyed: float
    oldest_input_time: Optional[datetime]
    oldest_input_height: Optional[int]
    resolved_input_count: int
    prevouts_resolved: bool
    exchange_flow: Optional[ExchangeFlow] = None

    @property
    def txid(self) -> str:
        return self.tx.txid

    @property
    def unresolved_keys(self) -> list[tuple[str, int]]:
        return [p.key for p in self.prevouts if isinstance(p, UnresolvedPrevout)]

    def to_dict(self) -> dict:
        return {
            "txid": self.txid,
            "vsize": self.tx.vsize,
            "weight": self.tx.weight,
            "input_count": len(self.tx.inputs),
            "output_count": len(self.tx.outputs),
            "total_input_value": self.total_input_value,
            "total_output_value": self.tx.total_output_value,
            "fee": self.fee,
            "fee_rate": self.fee_rate,
            "coin_days_destroyed": self.coin_days_destroyed,
            "oldest_input_time": (
                self.oldest_input_time.isoformat() if self.oldest_input_time else None
            ),
            "oldest_input_height": self.oldest_input_height,
            "is_rbf_signaling": self.tx.is_rbf_signaling,
            "resolved_inputs": self.resolved_input_count,
            "prevouts_resolved": self.prevouts_resolved,
            "seen_at": self.seen_at.isoformat(),
        }


# =============================================================================
# Lifecycle
# =============================================================================


@dataclass
class MempoolEntry:
    """
    Mutable record owned by the mempool state machine.

    replaced_by is set if and only if state is REPLACED.
    """
    analyzed: AnalyzedTx
    state: TxState
    first_seen: datetime
    state_changed_at: datetime
    sequence: Optional[int] = None
    replaced_by: Optional[str] = None

    @property
    def txid(self) -> str:
        return self.analyzed.txid

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    def to_dict(self) -> dict:
        return {
            "txid": self.txid,
            "state": self.state.value,
            "first_seen": self.first_seen.isoformat(),
            "state_changed_at": self.state_changed_at.isoformat(),
            "sequence": self.sequence,
            "replaced_by": self.replaced_by,
            "analysis": self.analyzed.to_dict(),
        }


@dataclass(frozen=True)
class LifecycleTransition:
    """A state change (or block notice) published downstream."""
    kind: TransitionKind
    subject: str
    occurred_at: datetime
    sequence: Optional[int] = None
    previous_state: Optional[TxState] = None
    replaced_by: Optional[str] = None
    block_height: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "type": "transition",
            "kind": self.kind.value,
            "subject": self.subject,
            "sequence": self.sequence,
            "previous_state": self.previous_state.value if self.previous_state else None,
            "replaced_by": self.replaced_by,
            "block_height": self.block_height,
            "occurred_at": self.occurred_at.isoformat(),
        }


# =============================================================================
# Scoring
# =============================================================================


@dataclass(frozen=True)
class RuleResult:
    name: str
    contribution: float
    weight: float

    @property
    def weighted(self) -> float:
        return self.contribution * self.weight


@dataclass(frozen=True)
class ScoredTx:
    """
    Scoring output for one analysis of a transaction.

    revision is 0 for the first publication and grows with each correction,
    so consumers can keep the latest when updates arrive more than once.
    """
    analyzed: AnalyzedTx
    score: float
    rule_results: tuple[RuleResult, ...]
    tier: AlertTier
    revision: int = 0

    @property
    def txid(self) -> str:
        return self.analyzed.txid

    def to_dict(self) -> dict:
        return {
            "type": "scored_tx",
            "txid": self.txid,
            "score": round(self.score, 4),
            "tier": self.tier.value,
            "revision": self.revision,
            "rules": {r.name: round(r.contribution, 6) for r in self.rule_results},
            "analysis": self.analyzed.to_dict(),
        }


@dataclass(frozen=True)
class MempoolStats:
    """Aggregate snapshot of the pending set."""
    pending_count: int
    total_fees: int
    total_vsize: int
    fee_histogram: tuple[tuple[str, int], ...]
    age_distribution: tuple[tuple[str, int], ...]
    captured_at: datetime
    tip_height: Optional[int] = None
    processed: int = 0

    def to_dict(self) -> dict:
        return {
            "type": "mempool_stats",
            "pending_count": self.pending_count,
            "total_fees": self.total_fees,
            "total_vsize": self.total_vsize,
            "fee_histogram": dict(self.fee_histogram),
            "age_distribution": dict(self.age_distribution),
            "tip_height": self.tip_height,
            "processed": self.processed,
            "captured_at": self.captured_at.isoformat(),
        }

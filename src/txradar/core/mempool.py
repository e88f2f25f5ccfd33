"""
Mempool lifecycle state machine.

The authoritative registry of every transaction the node reported as
unconfirmed, its lifecycle state and its replacement edges.

States:
    PENDING  -> CONFIRMED | REPLACED | EVICTED   (terminal, immutable)

Concurrency:
    Every mutating method is synchronous and never awaits, so on the asyncio
    loop the map has exactly one writer at a time and readers never observe
    a half-applied transition. Never call these from another thread.

Replacement edges live in a txid -> txid map rather than object references.
An edge that would close a cycle is rejected, and check_no_cycles() verifies
that no cycle exists.
"""
from __future__ import annotations

import bisect
import logging
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Iterable, Iterator, Optional, Sequence

from .analyzer import pending_analysis
from .events import BlockConnected, BlockDisconnected, LifecycleEvent, TxAdded, TxRemoved
from .models import (
    AnalyzedTx,
    LifecycleTransition,
    MempoolEntry,
    MempoolStats,
    RemovalReason,
    TransitionKind,
    TxState,
)

logger = logging.getLogger(__name__)

# Lower bounds in sat/vB; the last bucket is open-ended.
DEFAULT_FEE_BUCKETS: tuple[float, ...] = (1, 5, 10, 20, 50, 100)

# Lower bounds in seconds of first-seen age.
AGE_BUCKETS: tuple[tuple[int, str], ...] = (
    (0, "<1m"),
    (60, "1m-10m"),
    (600, "10m-1h"),
    (3600, "1h-6h"),
    (21600, "6h-24h"),
    (86400, "24h+"),
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def fee_bucket_labels(buckets: Sequence[float]) -> list[str]:
    labels = [f"{lo:g}-{hi:g}" for lo, hi in zip(buckets, buckets[1:])]
    labels.append(f"{buckets[-1]:g}+")
    return labels


class SequenceCheck(Enum):
    OK = "ok"
    DUPLICATE = "duplicate"
    GAP = "gap"


class SequenceTracker:
    """
    Tracks the upstream feed's sequence numbers.

    The first number seen is accepted as the baseline. A number at or below
    the last one is a duplicate delivery; a jump of more than one is a gap.
    The gapped number becomes the new baseline, so a single gap is reported
    exactly once.
    """

    def __init__(self) -> None:
        self._last: Optional[int] = None
        self.gaps_detected = 0
        self.duplicates = 0

    @property
    def last(self) -> Optional[int]:
        return self._last

    def observe(self, sequence: int) -> SequenceCheck:
        if self._last is None:
            self._last = sequence
            return SequenceCheck.OK

        if sequence <= self._last:
            self.duplicates += 1
            return SequenceCheck.DUPLICATE

        expected = self._last + 1
        self._last = sequence
        if sequence != expected:
            self.gaps_detected += 1
            logger.warning(f"Sequence gap: expected {expected}, got {sequence}")
            return SequenceCheck.GAP
        return SequenceCheck.OK

    def reset(self, sequence: Optional[int]) -> None:
        """Advance the baseline after a resync (never moves backwards)."""
        if sequence is not None and (self._last is None or sequence > self._last):
            self._last = sequence


class MempoolStateMachine:
    """
    Single-owner registry of mempool entries.

    Usage:
        state = MempoolStateMachine(grace_window=300)
        transition = state.apply(TxAdded(sequence=1, tx=tx))
        state.apply(TxRemoved(sequence=2, txid=tx.txid, reason=RemovalReason.CONFIRMED))
        state.prune_terminal()
    """

    def __init__(
        self,
        grace_window: float = 300.0,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._entries: dict[str, MempoolEntry] = {}
        self._replaced_by: dict[str, str] = {}
        self._grace_window = timedelta(seconds=grace_window)
        self._clock = clock

        self._pending = 0
        self.tip_hash: Optional[str] = None
        self.tip_height: Optional[int] = None
        self.invariant_violations = 0

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, txid: str) -> bool:
        return txid in self._entries

    # =========================================================================
    # Transitions
    # =========================================================================

    def apply(self, event: LifecycleEvent) -> Optional[LifecycleTransition]:
        """
        Apply one lifecycle event.

        Returns:
            The resulting transition, or None when the event was a no-op
            (unknown id, duplicate delivery) or was dropped as invalid.
        """
        if isinstance(event, TxAdded):
            return self._apply_added(event)
        if isinstance(event, TxRemoved):
            return self._apply_removed(event)
        if isinstance(event, BlockConnected):
            return self._apply_block_connected(event)
        if isinstance(event, BlockDisconnected):
            return self._apply_block_disconnected(event)

        logger.warning(f"Ignoring unsupported event type {type(event).__name__}")
        return None

    def _apply_added(self, event: TxAdded) -> Optional[LifecycleTransition]:
        tx = event.tx
        if tx is None:
            logger.warning(f"Added event seq={event.sequence} has no parsed transaction")
            return None

        existing = self._entries.get(tx.txid)
        if existing is not None:
            if existing.is_terminal:
                self._violation(
                    f"Added for {tx.txid} which is already {existing.state.value}",
                    event,
                )
            else:
                logger.debug(f"Duplicate Added for pending {tx.txid}")
            return None

        now = event.seen_at or self._clock()
        self._entries[tx.txid] = MempoolEntry(
            analyzed=pending_analysis(tx, now),
            state=TxState.PENDING,
            first_seen=now,
            state_changed_at=now,
            sequence=event.sequence,
        )
        self._pending += 1
        return LifecycleTransition(
            kind=TransitionKind.ADDED,
            subject=tx.txid,
            occurred_at=now,
            sequence=event.sequence,
        )

    def _apply_removed(self, event: TxRemoved) -> Optional[LifecycleTransition]:
        entry = self._entries.get(event.txid)
        if entry is None:
            logger.debug(f"Removal of unknown {event.txid} ({event.reason.value})")
            return None

        target = event.reason.target_state
        replaced_by = event.replaced_by

        if target is TxState.REPLACED and not replaced_by:
            logger.warning(f"{event.txid} replaced without a replacement id, marking evicted")
            target = TxState.EVICTED

        if entry.is_terminal:
            if entry.state is target and (
                target is not TxState.REPLACED or entry.replaced_by == replaced_by
            ):
                logger.debug(f"Replayed {target.value} for {event.txid}")
            else:
                self._violation(
                    f"{event.txid} is {entry.state.value}, "
                    f"refusing {target.value} (replaced_by={replaced_by})",
                    event,
                )
            return None

        if target is TxState.REPLACED:
            if replaced_by == event.txid or self._reaches(replaced_by, event.txid):
                self._violation(
                    f"Replacement {event.txid} -> {replaced_by} would form a cycle",
                    event,
                )
                return None
            self._replaced_by[event.txid] = replaced_by
        else:
            replaced_by = None

        now = self._clock()
        previous = entry.state
        entry.state = target
        entry.replaced_by = replaced_by
        entry.state_changed_at = now
        self._pending -= 1

        return LifecycleTransition(
            kind=TransitionKind(target.value),
            subject=event.txid,
            occurred_at=now,
            sequence=event.sequence,
            previous_state=previous,
            replaced_by=replaced_by,
        )

    def _apply_block_connected(self, event: BlockConnected) -> LifecycleTransition:
        self.tip_hash = event.block_hash
        if event.height is not None:
            self.tip_height = event.height
        elif self.tip_height is not None:
            self.tip_height += 1
        logger.debug(f"Block connected {event.block_hash} (height={self.tip_height})")
        return LifecycleTransition(
            kind=TransitionKind.BLOCK_CONNECTED,
            subject=event.block_hash,
            occurred_at=self._clock(),
            sequence=event.sequence,
            block_height=self.tip_height,
        )

    def _apply_block_disconnected(self, event: BlockDisconnected) -> LifecycleTransition:
        logger.warning(f"Block disconnected {event.block_hash} (reorg)")
        height = event.height
        if event.block_hash == self.tip_hash:
            self.tip_hash = None
            if self.tip_height is not None:
                if height is None:
                    height = self.tip_height
                self.tip_height -= 1
        return LifecycleTransition(
            kind=TransitionKind.BLOCK_DISCONNECTED,
            subject=event.block_hash,
            occurred_at=self._clock(),
            sequence=event.sequence,
            block_height=height,
        )

    def _violation(self, message: str, event: LifecycleEvent) -> None:
        self.invariant_violations += 1
        logger.warning(f"Invariant violation, dropping event: {message} [event={event!r}]")

    # =========================================================================
    # Queries
    # =========================================================================

    def get(self, txid: str) -> Optional[MempoolEntry]:
        return self._entries.get(txid)

    def entries(self) -> Iterator[MempoolEntry]:
        return iter(list(self._entries.values()))

    def pending(self) -> Iterator[MempoolEntry]:
        return (e for e in list(self._entries.values()) if e.state is TxState.PENDING)

    def resolve_head(self, txid: str) -> Optional[str]:
        """
        Follow replaced_by links to the current head of a replacement chain.

        Returns None for an id that is neither tracked nor part of a chain.
        """
        if txid not in self._entries and txid not in self._replaced_by:
            return None

        current = txid
        visited = {txid}
        while current in self._replaced_by:
            current = self._replaced_by[current]
            if current in visited:
                logger.error(f"Replacement cycle detected at {current}")
                return None
            visited.add(current)
        return current

    def _reaches(self, start: str, target: str) -> bool:
        current = start
        visited = {start}
        while current in self._replaced_by:
            current = self._replaced_by[current]
            if current == target:
                return True
            if current in visited:
                return True
            visited.add(current)
        return False

    def check_no_cycles(self) -> bool:
        """True when no replaced_by chain revisits a txid."""
        for start in self._replaced_by:
            visited = {start}
            current = start
            while current in self._replaced_by:
                current = self._replaced_by[current]
                if current in visited:
                    return False
                visited.add(current)
        return True

    def pending_count(self) -> int:
        return self._pending

    def total_fees(self) -> int:
        return sum(e.analyzed.fee for e in self.pending())

    def total_vsize(self) -> int:
        return sum(e.analyzed.tx.vsize for e in self.pending())

    def fee_histogram(
        self,
        buckets: Sequence[float] = DEFAULT_FEE_BUCKETS,
    ) -> list[tuple[str, int]]:
        """
        Count pending entries by fee rate.

        Entries below the first bound (including those whose fee is unknown
        because a prevout is unresolved) are not counted.
        """
        counts = [0] * len(buckets)
        for entry in self.pending():
            rate = entry.analyzed.fee_rate
            if rate < buckets[0]:
                continue
            counts[bisect.bisect_right(buckets, rate) - 1] += 1
        return list(zip(fee_bucket_labels(buckets), counts))

    def age_distribution(self, now: Optional[datetime] = None) -> list[tuple[str, int]]:
        now = now or self._clock()
        bounds = [lo for lo, _ in AGE_BUCKETS]
        counts = [0] * len(AGE_BUCKETS)
        for entry in self.pending():
            age = max(0.0, (now - entry.first_seen).total_seconds())
            counts[bisect.bisect_right(bounds, age) - 1] += 1
        return [(label, count) for (_, label), count in zip(AGE_BUCKETS, counts)]

    def snapshot_stats(
        self,
        now: Optional[datetime] = None,
        processed: int = 0,
    ) -> MempoolStats:
        now = now or self._clock()
        pending = list(self.pending())
        return MempoolStats(
            pending_count=len(pending),
            total_fees=sum(e.analyzed.fee for e in pending),
            total_vsize=sum(e.analyzed.tx.vsize for e in pending),
            fee_histogram=tuple(self.fee_histogram()),
            age_distribution=tuple(self.age_distribution(now)),
            captured_at=now,
            tip_height=self.tip_height,
            processed=processed,
        )

    # =========================================================================
    # Maintenance
    # =========================================================================

    def update_analysis(self, txid: str, analyzed: AnalyzedTx) -> bool:
        """Attach a newer analysis. Never changes lifecycle state."""
        entry = self._entries.get(txid)
        if entry is None:
            return False
        entry.analyzed = analyzed
        return True

    def prune_terminal(self, now: Optional[datetime] = None) -> list[str]:
        """Purge terminal entries whose grace window has elapsed."""
        now = now or self._clock()
        expired = [
            txid
            for txid, entry in self._entries.items()
            if entry.is_terminal and now - entry.state_changed_at > self._grace_window
        ]
        for txid in expired:
            del self._entries[txid]
            self._replaced_by.pop(txid, None)
        if expired:
            logger.debug(f"Pruned {len(expired)} terminal entries")
        return expired

    def reconcile(
        self,
        snapshot_txids: Iterable[str],
    ) -> tuple[list[LifecycleTransition], list[str]]:
        """
        Align the local view with a fresh node snapshot.

        Pending entries missing from the snapshot are evicted.

        Returns:
            (eviction transitions, snapshot txids not tracked locally)
        """
        ordered = list(snapshot_txids)
        snapshot = set(ordered)

        transitions = []
        for entry in list(self.pending()):
            if entry.txid not in snapshot:
                transition = self.apply(
                    TxRemoved(sequence=None, txid=entry.txid, reason=RemovalReason.UNKNOWN)
                )
                if transition is not None:
                    transitions.append(transition)

        missing = [txid for txid in ordered if txid not in self._entries]
        logger.info(
            f"Reconciled against snapshot of {len(snapshot)}: "
            f"{len(transitions)} evicted, {len(missing)} missing locally"
        )
        return transitions, missing

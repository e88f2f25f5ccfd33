"""
AnalyzedTx construction from a transaction and its resolved prevouts.

Monetary sums stay in integer satoshis. Coin-days-destroyed is accumulated
as integer satoshi-seconds and converted with one final division, so the
result does not drift with the number of inputs.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional, Sequence

from .models import (
    SATS_PER_BTC,
    AnalyzedTx,
    ExchangeFlow,
    PrevoutRecord,
    PrevoutResult,
    Transaction,
    UnresolvedPrevout,
    UnresolvedReason,
)

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86_400
_SAT_SECONDS_PER_COIN_DAY = SATS_PER_BTC * SECONDS_PER_DAY


def build_analyzed_tx(
    tx: Transaction,
    prevouts: Sequence[PrevoutResult],
    seen_at: datetime,
    exchange_flow: Optional[ExchangeFlow] = None,
) -> AnalyzedTx:
    """
    Attach prevout facts and derived economics to a transaction.

    Args:
        tx: Parsed transaction
        prevouts: One result per input, in input order
        seen_at: First-seen time; coin age is measured up to this instant
        exchange_flow: Optional tagging enrichment

    Returns:
        AnalyzedTx. Unresolved inputs add nothing to the value or CDD
        totals; fee and fee_rate stay zero unless every input resolved.
    """
    if len(prevouts) != len(tx.inputs):
        raise ValueError(
            f"{tx.txid}: {len(prevouts)} prevouts for {len(tx.inputs)} inputs"
        )

    seen_ts = int(seen_at.timestamp())
    total_input = 0
    sat_seconds = 0
    resolved = 0
    oldest_time: Optional[datetime] = None
    oldest_height: Optional[int] = None

    for prevout in prevouts:
        if not isinstance(prevout, PrevoutRecord):
            continue
        resolved += 1
        total_input += prevout.value

        if prevout.block_time is not None:
            age = max(0, seen_ts - int(prevout.block_time.timestamp()))
            sat_seconds += prevout.value * age
            if oldest_time is None or prevout.block_time < oldest_time:
                oldest_time = prevout.block_time

        if prevout.block_height is not None:
            if oldest_height is None or prevout.block_height < oldest_height:
                oldest_height = prevout.block_height

    fully_resolved = resolved == len(tx.inputs)
    fee = 0
    fee_rate = 0.0
    if fully_resolved:
        fee = total_input - tx.total_output_value
        if fee < 0:
            logger.warning(
                f"{tx.txid}: outputs exceed resolved inputs by {-fee} sats"
            )
        fee_rate = fee / tx.vsize if tx.vsize else 0.0

    return AnalyzedTx(
        tx=tx,
        prevouts=tuple(prevouts),
        seen_at=seen_at,
        total_input_value=total_input,
        fee=fee,
        fee_rate=fee_rate,
        coin_days_destroyed=sat_seconds / _SAT_SECONDS_PER_COIN_DAY,
        oldest_input_time=oldest_time,
        oldest_input_height=oldest_height,
        resolved_input_count=resolved,
        prevouts_resolved=fully_resolved,
        exchange_flow=exchange_flow,
    )


def pending_analysis(tx: Transaction, seen_at: datetime) -> AnalyzedTx:
    """Placeholder analysis before any prevout lookup has run."""
    markers = [
        UnresolvedPrevout(i.prev_txid, i.prev_vout, UnresolvedReason.PENDING)
        for i in tx.inputs
    ]
    return build_analyzed_tx(tx, markers, seen_at)

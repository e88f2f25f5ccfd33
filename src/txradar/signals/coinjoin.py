"""
CoinJoin pattern detection from output structure alone.

Collaborative transactions produce many outputs of one denomination. They
move coins between the same owners, so they are a negative signal.
"""
from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from txradar.core.models import Transaction

# Whirlpool pool denominations in sats
WHIRLPOOL_DENOMINATIONS = frozenset({100_000, 1_000_000, 5_000_000, 50_000_000})
WHIRLPOOL_OUTPUTS = 5

MIN_PARTICIPANTS = 3
MANY_IO = 5
WASABI_MIN_EQUAL = 10
ROUND_UNIT = 100_000


class CoinJoinPattern(str, Enum):
    WHIRLPOOL = "whirlpool"
    WASABI_LIKE = "wasabi_like"
    EQUAL_OUTPUT = "equal_output"


@dataclass(frozen=True)
class CoinJoinResult:
    pattern: CoinJoinPattern
    confidence: float
    equal_output_count: int
    denomination: int


def detect_coinjoin(tx: Transaction) -> Optional[CoinJoinResult]:
    """
    Classify a transaction's output structure.

    Returns:
        CoinJoinResult, or None when the transaction does not look like a
        CoinJoin (fewer than 3 inputs/outputs, or no dominant denomination).
    """
    n_in = len(tx.inputs)
    n_out = len(tx.outputs)
    if n_in < MIN_PARTICIPANTS or n_out < MIN_PARTICIPANTS:
        return None

    # Ties resolve to the smallest value so detection does not depend on
    # output order.
    counts = Counter(o.value for o in tx.outputs)
    denomination, equal = min(counts.items(), key=lambda kv: (-kv[1], kv[0]))

    equal_ratio = equal / n_out
    if equal < MIN_PARTICIPANTS or equal_ratio <= 0.5:
        return None

    many_io = n_in >= MANY_IO and n_out >= MANY_IO

    if equal == WHIRLPOOL_OUTPUTS and denomination in WHIRLPOOL_DENOMINATIONS and many_io:
        return CoinJoinResult(CoinJoinPattern.WHIRLPOOL, 0.95, equal, denomination)

    if equal >= MANY_IO and many_io:
        is_round = denomination > 0 and denomination % ROUND_UNIT == 0
        if is_round and equal >= WASABI_MIN_EQUAL:
            pattern = CoinJoinPattern.WASABI_LIKE
        else:
            pattern = CoinJoinPattern.EQUAL_OUTPUT
        return CoinJoinResult(pattern, 0.85 if is_round else 0.75, equal, denomination)

    if equal_ratio > 0.7:
        return CoinJoinResult(CoinJoinPattern.EQUAL_OUTPUT, 0.5, equal, denomination)

    return None

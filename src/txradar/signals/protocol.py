"""
Scoring rule protocol and context.

Rules are pure logic: they receive an AnalyzedTx and a RuleContext and
return a contribution. No shared state, no I/O. Everything a rule needs
about "now" comes from the context, which keeps scoring reproducible.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Optional, Protocol, runtime_checkable

if TYPE_CHECKING:
    from txradar.core.models import AnalyzedTx


class Polarity(str, Enum):
    """Which sign of weight a rule accepts."""

    POSITIVE = "positive"  # contribution raises the score
    NEGATIVE = "negative"  # contribution lowers the score
    SIGNED = "signed"  # contribution itself may be negative


@dataclass(frozen=True)
class RuleContext:
    """Mempool context shared by every rule for one scoring pass."""

    now: datetime
    tip_height: Optional[int] = None
    pending_count: int = 0


@runtime_checkable
class Rule(Protocol):
    """
    Protocol that all scoring rules implement.

    Example implementation:
        class InputCountRule:
            name = "input_count"
            polarity = Polarity.POSITIVE
            max_contribution = 1.0
            min_contribution = 0.0

            def evaluate(self, tx, context) -> float:
                return saturate(len(tx.tx.inputs), 20)
    """

    name: str
    polarity: Polarity
    max_contribution: float
    min_contribution: float

    def evaluate(self, tx: "AnalyzedTx", context: RuleContext) -> float:
        """
        Contribution of this rule for one transaction.

        Must be deterministic in (tx, context). Return 0.0 when the data the
        rule depends on is missing.
        """
        ...

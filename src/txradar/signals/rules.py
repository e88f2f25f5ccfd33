"""
Built-in scoring rules.

Magnitude rules use the saturating curve 1 - 1/(1 + x/k): 0 at x=0,
0.5 at x=k, approaching 1 for large x. Rules whose input depends on
unresolved prevouts see zeros from the analysis and contribute nothing.
"""
from __future__ import annotations

from typing import TYPE_CHECKING

from txradar.core.models import SATS_PER_BTC

from .coinjoin import detect_coinjoin
from .protocol import Polarity, RuleContext

if TYPE_CHECKING:
    from txradar.core.models import AnalyzedTx


def saturate(x: float, half_point: float) -> float:
    """Map x >= 0 onto [0, 1) with value 0.5 at half_point."""
    if x <= 0:
        return 0.0
    return 1.0 - 1.0 / (1.0 + x / half_point)


class _PositiveRule:
    polarity = Polarity.POSITIVE
    max_contribution = 1.0
    min_contribution = 0.0


class TxValueRule(_PositiveRule):
    """Moved value in BTC; 0.5 at 10 BTC."""

    name = "tx_value"
    half_point_btc = 10.0

    def evaluate(self, tx: "AnalyzedTx", context: RuleContext) -> float:
        return saturate(tx.total_input_value / SATS_PER_BTC, self.half_point_btc)


class UtxoAgeRule(_PositiveRule):
    """Whole days since the oldest input confirmed; 0.5 at one year."""

    name = "utxo_age"
    half_point_days = 365.0

    def evaluate(self, tx: "AnalyzedTx", context: RuleContext) -> float:
        if tx.oldest_input_time is None:
            return 0.0
        return saturate((context.now - tx.oldest_input_time).days, self.half_point_days)


class CoinDaysDestroyedRule(_PositiveRule):
    """Coin-days destroyed; 0.5 at 1000."""

    name = "cdd"
    half_point = 1000.0

    def evaluate(self, tx: "AnalyzedTx", context: RuleContext) -> float:
        return saturate(tx.coin_days_destroyed, self.half_point)


class InputCountRule(_PositiveRule):
    """Consolidations spend many inputs; 0.5 at 20."""

    name = "input_count"
    half_point = 20.0

    def evaluate(self, tx: "AnalyzedTx", context: RuleContext) -> float:
        return saturate(len(tx.tx.inputs), self.half_point)


class FeeRateRule(_PositiveRule):
    """Urgency from fee rate; 0.5 at 50 sat/vB."""

    name = "fee_rate"
    half_point = 50.0

    def evaluate(self, tx: "AnalyzedTx", context: RuleContext) -> float:
        return saturate(tx.fee_rate, self.half_point)


class RbfFlagRule(_PositiveRule):
    name = "rbf_flag"
    max_contribution = 0.5

    def evaluate(self, tx: "AnalyzedTx", context: RuleContext) -> float:
        return 0.5 if tx.tx.is_rbf_signaling else 0.0


class ExchangeFlowRule:
    """
    Deposits to known exchanges raise the score by the tag confidence;
    withdrawals lower it by half their confidence. Without tagging
    enrichment the rule contributes nothing.
    """

    name = "exchange_flow"
    polarity = Polarity.SIGNED
    max_contribution = 1.0
    min_contribution = -0.5

    def evaluate(self, tx: "AnalyzedTx", context: RuleContext) -> float:
        flow = tx.exchange_flow
        if flow is None:
            return 0.0
        if flow.to_exchange:
            return min(max(flow.to_confidence, 0.0), 1.0)
        if flow.from_exchange:
            return -min(max(flow.from_confidence, 0.0), 1.0) * 0.5
        return 0.0


class CoinJoinRule:
    """Detector confidence; pair with a negative weight."""

    name = "coinjoin"
    polarity = Polarity.NEGATIVE
    max_contribution = 1.0
    min_contribution = 0.0

    def evaluate(self, tx: "AnalyzedTx", context: RuleContext) -> float:
        result = detect_coinjoin(tx.tx)
        if result is None:
            return 0.0
        return min(max(result.confidence, 0.0), 1.0)


def builtin_rules() -> list:
    """Built-in rules in their default order."""
    return [
        TxValueRule(),
        UtxoAgeRule(),
        CoinDaysDestroyedRule(),
        InputCountRule(),
        FeeRateRule(),
        RbfFlagRule(),
        ExchangeFlowRule(),
        CoinJoinRule(),
    ]

"""
Signals Layer - Rule-based notability scoring.

This module provides:
    - Rule: Protocol defining the rule interface
    - RuleContext: Time and mempool context shared by every rule
    - Built-in rules: value, UTXO age, coin-days destroyed, input count,
      fee rate, RBF flag, exchange flow, CoinJoin
    - RuleRegistry: Ordered rule registration and lookup
    - SignalEngine: Weighted aggregation into a 0-100 score and alert tier

Design Principle:
    Rules are PURE LOGIC - no database access, no RPC calls.
    They receive an AnalyzedTx and a RuleContext and return a contribution.
    This makes them trivial to test without mocks.
"""

from .protocol import Polarity, Rule, RuleContext

from .rules import (
    CoinDaysDestroyedRule,
    CoinJoinRule,
    ExchangeFlowRule,
    FeeRateRule,
    InputCountRule,
    RbfFlagRule,
    TxValueRule,
    UtxoAgeRule,
    builtin_rules,
    saturate,
)

from .coinjoin import CoinJoinPattern, CoinJoinResult, detect_coinjoin

from .registry import (
    DuplicateRuleError,
    RuleNotFoundError,
    RuleRegistry,
    default_registry,
)

from .engine import SignalEngine

__all__ = [
    # Protocol
    "Polarity",
    "Rule",
    "RuleContext",
    # Rules
    "CoinDaysDestroyedRule",
    "CoinJoinRule",
    "ExchangeFlowRule",
    "FeeRateRule",
    "InputCountRule",
    "RbfFlagRule",
    "TxValueRule",
    "UtxoAgeRule",
    "builtin_rules",
    "saturate",
    # CoinJoin detection
    "CoinJoinPattern",
    "CoinJoinResult",
    "detect_coinjoin",
    # Registry
    "DuplicateRuleError",
    "RuleNotFoundError",
    "RuleRegistry",
    "default_registry",
    # Engine
    "SignalEngine",
]

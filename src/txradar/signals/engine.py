"""
Signal scoring engine.

Combines rule contributions into a 0-100 composite score:

    weighted = sum(weight_i * clamp(contribution_i, min_i, max_i))
    score    = clamp(100 * weighted / max_possible, 0, 100)

max_possible is the sum of every rule's largest positive weighted
contribution, computed once from the weight table. Rules are evaluated and
summed in weight-table order so identical inputs always produce bit-identical
scores.

Usage:
    engine = SignalEngine(default_registry(), config.signals)
    scored = engine.score(analyzed, RuleContext(now=datetime.now(timezone.utc)))
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from txradar.config import ConfigurationError, SignalConfig
from txradar.core.models import AlertTier, AnalyzedTx, RuleResult, ScoredTx

from .protocol import Polarity, Rule, RuleContext
from .registry import RuleRegistry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class _WeightedRule:
    rule: Rule
    weight: float
    max_contribution: float
    min_contribution: float

    @property
    def name(self) -> str:
        return self.rule.name


class SignalEngine:
    """
    Weighted aggregation of registered rules.

    Construction validates the weight table against the registry and raises
    ConfigurationError for unknown rules, weights whose sign contradicts a
    rule's polarity, or a table whose maximum attainable total is zero.
    """

    def __init__(self, registry: RuleRegistry, config: Optional[SignalConfig] = None):
        self.config = config or SignalConfig()
        self.thresholds = self.config.thresholds
        self._rules = self._build(registry, self.config)
        self._max_possible = sum(
            max(r.weight * r.max_contribution, r.weight * r.min_contribution, 0.0)
            for r in self._rules
        )
        if self._max_possible <= 0:
            raise ConfigurationError(
                "Weight table has no positive maximum; every score would be undefined"
            )
        logger.info(
            f"Signal engine ready: {len(self._rules)} rules, "
            f"max_possible={self._max_possible:.2f}"
        )

    @staticmethod
    def _build(registry: RuleRegistry, config: SignalConfig) -> tuple[_WeightedRule, ...]:
        rules = []
        for row in config.rules:
            rule = registry.find(row.name)
            if rule is None:
                raise ConfigurationError(
                    f"Weight table names unknown rule '{row.name}'. "
                    f"Registered: {', '.join(registry.list_all())}"
                )

            if rule.polarity is Polarity.NEGATIVE and row.weight > 0:
                raise ConfigurationError(
                    f"Rule '{row.name}' lowers the score and needs a weight <= 0 "
                    f"(got {row.weight})"
                )
            if rule.polarity in (Polarity.POSITIVE, Polarity.SIGNED) and row.weight < 0:
                raise ConfigurationError(
                    f"Rule '{row.name}' needs a weight >= 0 (got {row.weight})"
                )

            max_c = rule.max_contribution
            if row.max_contribution is not None:
                max_c = row.max_contribution
            if max_c <= rule.min_contribution:
                raise ConfigurationError(
                    f"Rule '{row.name}' max_contribution {max_c} must exceed "
                    f"its minimum {rule.min_contribution}"
                )
            rules.append(_WeightedRule(rule, row.weight, max_c, rule.min_contribution))
        return tuple(rules)

    @property
    def max_possible(self) -> float:
        return self._max_possible

    @property
    def rule_names(self) -> list[str]:
        return [r.name for r in self._rules]

    def score(self, tx: AnalyzedTx, context: RuleContext, revision: int = 0) -> ScoredTx:
        """
        Score one analyzed transaction. Never raises for rule failures.

        Args:
            tx: Transaction with prevouts resolved or marked unresolved
            context: Time and mempool context shared by all rules
            revision: 0 for the first publication, higher for corrections
        """
        results = []
        total = 0.0
        for wr in self._rules:
            try:
                raw = float(wr.rule.evaluate(tx, context))
            except Exception as e:
                logger.debug(f"Rule {wr.name} failed on {tx.txid}: {e}")
                raw = 0.0
            if raw != raw:  # NaN
                raw = 0.0
            contribution = min(max(raw, wr.min_contribution), wr.max_contribution)
            results.append(RuleResult(wr.name, contribution, wr.weight))
            total += contribution * wr.weight

        score = min(max(100.0 * total / self._max_possible, 0.0), 100.0)
        return ScoredTx(
            analyzed=tx,
            score=score,
            rule_results=tuple(results),
            tier=self.tier_for(score),
            revision=revision,
        )

    def tier_for(self, score: float) -> AlertTier:
        if score >= self.thresholds.critical:
            return AlertTier.CRITICAL
        if score >= self.thresholds.high:
            return AlertTier.HIGH
        if score >= self.thresholds.medium:
            return AlertTier.MEDIUM
        return AlertTier.LOW

"""
Rule registry.

Holds rules in insertion order. The engine iterates in the order given by
the weight table, so summation order never depends on dict hashing or
discovery order.
"""
from __future__ import annotations

from typing import Iterator, Optional

from .protocol import Rule
from .rules import builtin_rules


class RuleNotFoundError(Exception):
    """Raised when a requested rule is not in the registry."""

    pass


class DuplicateRuleError(Exception):
    """Raised when registering a rule under a name that already exists."""

    pass


class RuleRegistry:
    """
    Registry for rule lookup by name.

    Usage:
        registry = RuleRegistry()
        registry.register(CoinDaysDestroyedRule())

        rule = registry.get("cdd")
        names = registry.list_all()
    """

    def __init__(self) -> None:
        self._rules: dict[str, Rule] = {}

    def register(self, rule: Rule) -> None:
        """
        Register a rule instance.

        Raises:
            DuplicateRuleError: If a rule with this name already exists
            TypeError: If the object does not implement the Rule protocol
        """
        if not isinstance(rule, Rule):
            raise TypeError(f"{rule!r} does not implement the Rule protocol")
        if rule.name in self._rules:
            raise DuplicateRuleError(f"Rule '{rule.name}' is already registered")
        self._rules[rule.name] = rule

    def unregister(self, name: str) -> None:
        if name not in self._rules:
            raise RuleNotFoundError(f"Rule '{name}' not found")
        del self._rules[name]

    def get(self, name: str) -> Rule:
        """
        Look up a rule by name.

        Raises:
            RuleNotFoundError: If no rule has this name
        """
        rule = self._rules.get(name)
        if rule is None:
            available = ", ".join(self._rules) or "none"
            raise RuleNotFoundError(f"Rule '{name}' not found. Available: {available}")
        return rule

    def find(self, name: str) -> Optional[Rule]:
        return self._rules.get(name)

    def list_all(self) -> list[str]:
        """Rule names in registration order."""
        return list(self._rules)

    def __contains__(self, name: str) -> bool:
        return name in self._rules

    def __iter__(self) -> Iterator[Rule]:
        return iter(list(self._rules.values()))

    def __len__(self) -> int:
        return len(self._rules)


def default_registry() -> RuleRegistry:
    """Registry pre-loaded with every built-in rule."""
    registry = RuleRegistry()
    for rule in builtin_rules():
        registry.register(rule)
    return registry

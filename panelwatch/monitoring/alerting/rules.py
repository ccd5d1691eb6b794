"""
PanelWatch Rule Engine

Rule table, metric pattern matching and isolated rule evaluation.
"""

from __future__ import annotations

import dataclasses
import re
import threading
from typing import TYPE_CHECKING, Any, Dict, List, Optional

import structlog

from panelwatch.monitoring.alerting.evaluators import evaluate_condition
from panelwatch.monitoring.types import MetricSample, Rule

if TYPE_CHECKING:
    from panelwatch.monitoring.context import EngineContext

logger = structlog.get_logger(__name__)

_IMMUTABLE_FIELDS = {"name", "created_at"}


class RuleEngine:
    """
    Holds alert rules and evaluates them against samples.

    Evaluation failures never propagate: a raising evaluator counts as a
    false condition for that sample.
    """

    def __init__(self):
        self._rules: Dict[str, Rule] = {}
        self._pattern_cache: Dict[str, re.Pattern] = {}
        self._lock = threading.RLock()

        self._stats = {
            "evaluations": 0,
            "evaluation_errors": 0,
        }

    # === Rule Management ===

    def add_rule(self, rule: Rule) -> None:
        """Add or replace an alert rule."""
        with self._lock:
            self._rules[rule.name] = rule
        logger.info(f"Added alert rule: {rule.name}", pattern=rule.metric_pattern)

    def remove_rule(self, name: str) -> bool:
        """Remove an alert rule."""
        with self._lock:
            if name not in self._rules:
                return False
            del self._rules[name]
        logger.info("Removed alert rule", rule=name)
        return True

    def get_rule(self, name: str) -> Optional[Rule]:
        return self._rules.get(name)

    def get_rules(self) -> List[Rule]:
        with self._lock:
            return list(self._rules.values())

    def update_rule(self, name: str, **changes: Any) -> Optional[Rule]:
        """
        Apply field changes to a rule.

        Returns the updated rule, or None if no rule has that name.

        Raises:
            ValueError: If a change names an unknown or immutable field
        """
        known = {f.name for f in dataclasses.fields(Rule)} - _IMMUTABLE_FIELDS
        unknown = set(changes) - known
        if unknown:
            raise ValueError(f"Unknown rule fields: {', '.join(sorted(unknown))}")

        with self._lock:
            rule = self._rules.get(name)
            if rule is None:
                return None
            updated = dataclasses.replace(rule, **changes)
            self._rules[name] = updated

        logger.info(f"Updated alert rule: {name}", fields=sorted(changes))
        return updated

    def enable_rule(self, name: str) -> bool:
        return self._set_enabled(name, True)

    def disable_rule(self, name: str) -> bool:
        return self._set_enabled(name, False)

    def _set_enabled(self, name: str, enabled: bool) -> bool:
        with self._lock:
            rule = self._rules.get(name)
            if rule is None:
                return False
            rule.enabled = enabled
        return True

    # === Matching ===

    @staticmethod
    def _compile(pattern: str) -> re.Pattern:
        return re.compile(".*".join(re.escape(part) for part in pattern.split("*")))

    def matches(self, pattern: str, name: str) -> bool:
        """Check a metric name against an exact or ``*`` wildcard pattern."""
        if pattern == name or pattern == "*":
            return True
        if "*" not in pattern:
            return False

        regex = self._pattern_cache.get(pattern)
        if regex is None:
            regex = self._compile(pattern)
            self._pattern_cache[pattern] = regex
        return regex.fullmatch(name) is not None

    def matching_rules(self, name: str) -> List[Rule]:
        """Enabled rules whose pattern matches ``name``."""
        return [
            rule for rule in self.get_rules()
            if rule.enabled and self.matches(rule.metric_pattern, name)
        ]

    # === Evaluation ===

    def evaluate(self, rule: Rule, sample: MetricSample, ctx: "EngineContext") -> bool:
        self._stats["evaluations"] += 1
        try:
            return evaluate_condition(rule, sample, ctx)
        except Exception as e:
            self._stats["evaluation_errors"] += 1
            logger.error(
                f"Rule evaluation failed: {e}",
                rule=rule.name,
                metric=sample.name,
            )
            return False

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self._stats,
            "rules": len(self._rules),
            "enabled_rules": sum(1 for r in self._rules.values() if r.enabled),
        }

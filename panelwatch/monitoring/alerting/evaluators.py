"""
PanelWatch Condition Evaluators

One strategy per rule condition kind:
- threshold: compare the current value against a fixed bound
- trend: normalized least-squares slope over recent history
- rate: samples per second inside a time window
- anomaly: z-score of the current value against 24h of history
- custom: caller-supplied predicate
"""

from __future__ import annotations

from datetime import timedelta
from typing import TYPE_CHECKING, Callable, Dict, Sequence

import numpy as np
import structlog

from panelwatch.monitoring.types import (
    ComparisonOperator, ConditionKind, MetricSample, Rule, TrendType,
)

if TYPE_CHECKING:
    from panelwatch.monitoring.context import EngineContext

logger = structlog.get_logger(__name__)

DEFAULT_TREND_LOOKBACK = timedelta(minutes=30)
ANOMALY_LOOKBACK = timedelta(hours=24)
ANOMALY_MIN_SAMPLES = 5

# Two-tailed critical z-values by confidence level
Z_SCORE_THRESHOLDS: Dict[float, float] = {
    0.90: 1.645,
    0.95: 1.96,
    0.99: 2.576,
    0.999: 3.291,
}
DEFAULT_Z_SCORE = 2.0

Evaluator = Callable[[Rule, MetricSample, "EngineContext"], bool]


def calculate_trend(values: Sequence[float]) -> float:
    """
    Least-squares slope of ``values`` over their index, divided by the mean.

    Returns 0 for fewer than two values or a zero mean.
    """
    if len(values) < 2:
        return 0.0

    y = np.asarray(values, dtype=float)
    mean = float(y.mean())
    if mean == 0:
        return 0.0

    x = np.arange(len(y), dtype=float)
    slope = np.polyfit(x, y, 1)[0]
    return float(slope) / mean


def z_score_threshold(sensitivity: float) -> float:
    return Z_SCORE_THRESHOLDS.get(sensitivity, DEFAULT_Z_SCORE)


def detect_anomaly(
    values: Sequence[float],
    current: float,
    sensitivity: float = 0.95,
    min_samples: int = ANOMALY_MIN_SAMPLES,
) -> bool:
    """
    Check whether ``current`` is an outlier relative to ``values``.

    Uses the population standard deviation; a flat history yields z = 0.
    """
    if len(values) < min_samples:
        return False

    data = np.asarray(values, dtype=float)
    std = float(data.std())
    if std == 0:
        return False

    z = abs(current - float(data.mean())) / std
    return z > z_score_threshold(sensitivity)


# === Evaluators ===

def evaluate_threshold(rule: Rule, sample: MetricSample, ctx: "EngineContext") -> bool:
    threshold = rule.params.get("threshold")
    if threshold is None:
        return False

    operator = ComparisonOperator.parse(rule.params.get("operator", ">"))
    return operator.compare(sample.scalar(rule.value_key), float(threshold))


def evaluate_trend(rule: Rule, sample: MetricSample, ctx: "EngineContext") -> bool:
    lookback = rule.duration if rule.duration > timedelta(0) else DEFAULT_TREND_LOOKBACK
    history = ctx.history(sample.name, lookback)
    if len(history) < 2:
        return False

    slope = calculate_trend([s.scalar(rule.value_key) for s in history])
    trend_type = TrendType(rule.params.get("trend_type", TrendType.INCREASING))

    if trend_type == TrendType.INCREASING:
        return slope > rule.params.get("trend_threshold", 0.05)
    if trend_type == TrendType.DECREASING:
        return slope < -rule.params.get("trend_threshold", 0.05)
    return abs(slope) < rule.params.get("stability_threshold", 0.02)


def evaluate_rate(rule: Rule, sample: MetricSample, ctx: "EngineContext") -> bool:
    window_seconds = float(rule.params.get("time_window", 60.0))
    if window_seconds <= 0:
        return False

    history = ctx.history(sample.name, timedelta(seconds=window_seconds))
    rate = len(history) / window_seconds
    return rate > float(rule.params.get("rate_threshold", 1.0))


def evaluate_anomaly(rule: Rule, sample: MetricSample, ctx: "EngineContext") -> bool:
    history = ctx.history(sample.name, ANOMALY_LOOKBACK)
    values = [s.scalar(rule.value_key) for s in history]
    return detect_anomaly(
        values,
        sample.scalar(rule.value_key),
        sensitivity=rule.params.get("sensitivity", 0.95),
    )


def evaluate_custom(rule: Rule, sample: MetricSample, ctx: "EngineContext") -> bool:
    if rule.custom_check is None:
        return False
    return bool(rule.custom_check(sample.value, sample))


EVALUATORS: Dict[ConditionKind, Evaluator] = {
    ConditionKind.THRESHOLD: evaluate_threshold,
    ConditionKind.TREND: evaluate_trend,
    ConditionKind.RATE: evaluate_rate,
    ConditionKind.ANOMALY: evaluate_anomaly,
    ConditionKind.CUSTOM: evaluate_custom,
}


def evaluate_condition(rule: Rule, sample: MetricSample, ctx: "EngineContext") -> bool:
    """Dispatch to the evaluator for the rule's condition kind."""
    return EVALUATORS[rule.condition](rule, sample, ctx)

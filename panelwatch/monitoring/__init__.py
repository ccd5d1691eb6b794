"""
PanelWatch Monitoring Module

Metric collection, rollups and alerting for the bot administration panel.
"""

from panelwatch.monitoring.types import (
    AggregationRecord,
    AggregationWindow,
    Alert,
    AlertSeverity,
    AlertState,
    ComparisonOperator,
    ConditionKind,
    EscalationLevel,
    EscalationPolicy,
    MetricSample,
    Notification,
    Rule,
    Suppression,
    TrendType,
    extract_value,
    utcnow,
)
from panelwatch.monitoring.context import EngineContext
from panelwatch.monitoring.manager import MonitoringManager, get_monitoring, set_monitoring

__all__ = [
    "AggregationRecord",
    "AggregationWindow",
    "Alert",
    "AlertSeverity",
    "AlertState",
    "ComparisonOperator",
    "ConditionKind",
    "EscalationLevel",
    "EscalationPolicy",
    "MetricSample",
    "Notification",
    "Rule",
    "Suppression",
    "TrendType",
    "extract_value",
    "utcnow",
    "EngineContext",
    "MonitoringManager",
    "get_monitoring",
    "set_monitoring",
]

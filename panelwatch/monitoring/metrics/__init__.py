"""
PanelWatch Metrics Module

Metric storage, collection and rollups.
"""

from panelwatch.monitoring.metrics.store import MetricStore
from panelwatch.monitoring.metrics.collectors import CollectorRegistry
from panelwatch.monitoring.metrics.aggregator import (
    Aggregator,
    STATISTICS,
    calculate_statistic,
)
from panelwatch.monitoring.metrics.system import (
    ActivityCounter,
    register_activity_counters,
    register_system_collectors,
)

__all__ = [
    "MetricStore",
    "CollectorRegistry",
    "Aggregator",
    "STATISTICS",
    "calculate_statistic",
    "ActivityCounter",
    "register_activity_counters",
    "register_system_collectors",
]

"""
PanelWatch Monitoring Manager

Wires the metric store, collectors, aggregator and alerting pipeline
into one engine and exposes the operations the panel calls.
"""

from __future__ import annotations

import csv
import io
import json
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

import structlog

from panelwatch.core.config import MonitoringConfig
from panelwatch.monitoring.alerting.actions import ActionExecutor
from panelwatch.monitoring.alerting.channels import (
    AuditSink,
    CompositeNotificationSink,
    LogNotificationSink,
    NotificationSink,
    WebhookNotificationSink,
)
from panelwatch.monitoring.alerting.defaults import default_escalation_policies, default_rules
from panelwatch.monitoring.alerting.engine import AlertEngine
from panelwatch.monitoring.alerting.escalation import EscalationScheduler
from panelwatch.monitoring.alerting.rules import RuleEngine
from panelwatch.monitoring.alerting.suppression import SuppressionRegistry
from panelwatch.monitoring.context import EngineContext
from panelwatch.monitoring.metrics.aggregator import Aggregator
from panelwatch.monitoring.metrics.collectors import CollectorFn, CollectorRegistry
from panelwatch.monitoring.metrics.store import MetricStore
from panelwatch.monitoring.metrics.system import (
    ActivityCounter, register_activity_counters, register_system_collectors,
)
from panelwatch.monitoring.storage.base import RollupStore
from panelwatch.monitoring.storage.file import JsonFileRollupStore
from panelwatch.monitoring.storage.memory import InMemoryRollupStore
from panelwatch.monitoring.types import (
    AggregationRecord, Alert, AlertSeverity, MetricSample, MetricValue, Rule,
    Suppression, utcnow,
)

logger = structlog.get_logger(__name__)

ACTIVITY_METRICS = ("bot.messages", "bot.commands", "bot.errors", "app.requests")


class MonitoringManager:
    """
    Central manager for metrics and alerting.

    Provides unified access to:
    - Metric samples and rollups
    - Collectors and activity counters
    - Alert rules, alerts and suppressions
    - Status, statistics and export
    """

    def __init__(
        self,
        config: Optional[MonitoringConfig] = None,
        notifier: Optional[NotificationSink] = None,
        audit: Optional[AuditSink] = None,
        rollup_store: Optional[RollupStore] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.config = config or MonitoringConfig()
        self.clock = clock

        self.store = MetricStore(
            retention=timedelta(seconds=self.config.raw_retention),
            clock=clock,
        )

        if notifier is None and self.config.webhook_url:
            notifier = CompositeNotificationSink([
                LogNotificationSink(),
                WebhookNotificationSink(
                    self.config.webhook_url,
                    headers=self.config.webhook_headers,
                    timeout=self.config.webhook_timeout,
                ),
            ])

        self.context = EngineContext(store=self.store, clock=clock)
        if notifier is not None:
            self.context.notifier = notifier
        if audit is not None:
            self.context.audit = audit

        self.collectors = CollectorRegistry(
            self.store,
            interval=self.config.collect_interval,
            clock=clock,
        )

        if rollup_store is None:
            if self.config.persist_rollups:
                rollup_store = JsonFileRollupStore(self.config.rollup_dir)
            else:
                rollup_store = InMemoryRollupStore()

        self.aggregator = Aggregator(
            self.store,
            rollup_store,
            interval=self.config.aggregation_interval,
            retention=timedelta(days=self.config.rollup_retention_days),
            clock=clock,
        )
        for name, seconds in self.config.aggregation_windows.items():
            self.aggregator.add_window(
                name, timedelta(seconds=seconds), self.config.aggregation_functions,
            )

        self.actions = ActionExecutor(self.context)
        self.alerts = AlertEngine(
            self.context,
            rules=RuleEngine(),
            suppressions=SuppressionRegistry(clock=clock),
            actions=self.actions,
            escalation=EscalationScheduler(self.actions.execute_all, clock=clock),
            retention=timedelta(days=self.config.alert_retention_days),
            sweep_interval=self.config.sweep_interval,
        )

        # Evaluate on store
        self.store.subscribe(self.alerts.process_sample)

        self.activity: Dict[str, ActivityCounter] = {}

        self._apply_defaults()

        self._start_time = clock()
        self._initialized = False

    def _apply_defaults(self) -> None:
        if self.config.enable_default_collectors:
            register_system_collectors(self.collectors)
            self.activity = {
                name: ActivityCounter(clock=self.clock) for name in ACTIVITY_METRICS
            }
            register_activity_counters(self.collectors, self.activity)

        if self.config.enable_default_rules:
            for rule in default_rules():
                self.alerts.rules.add_rule(rule)

        if self.config.enable_default_escalations:
            for policy in default_escalation_policies():
                self.alerts.escalation.add_policy(policy)

    async def initialize(self) -> None:
        """Load alert history and start every background loop."""
        if self._initialized:
            return

        logger.info(
            "Initializing Monitoring Manager",
            collectors=len(self.collectors.names),
            rules=len(self.alerts.rules.get_rules()),
        )

        if self.config.history_path is not None:
            try:
                await self.alerts.load_history(self.config.history_path)
            except (OSError, ValueError, KeyError) as e:
                logger.error(f"Failed to load alert history: {e}", path=str(self.config.history_path))

        await self.aggregator.initialize()
        await self.alerts.initialize()
        await self.collectors.initialize()

        self._initialized = True
        logger.info("Monitoring Manager initialized")

    async def shutdown(self) -> None:
        """Stop collection first, then aggregation and alerting."""
        logger.info("Shutting down Monitoring Manager")

        await self.collectors.shutdown()
        await self.aggregator.shutdown()
        await self.alerts.shutdown()

        if self.config.history_path is not None:
            try:
                await self.alerts.save_history(self.config.history_path)
            except OSError as e:
                logger.error(f"Failed to save alert history: {e}", path=str(self.config.history_path))

        self._initialized = False
        logger.info("Monitoring Manager shutdown complete")

    # === Ingestion ===

    def record(
        self,
        name: str,
        value: MetricValue,
        timestamp: Optional[datetime] = None,
    ) -> MetricSample:
        """Store a sample reported by host code."""
        return self.store.record(name, value, timestamp=timestamp)

    def register_collector(self, name: str, collector: CollectorFn) -> None:
        self.collectors.register(name, collector)

    def unregister_collector(self, name: str) -> bool:
        return self.collectors.unregister(name)

    def track_event(self, name: str, count: int = 1) -> None:
        """Increment an activity counter, creating and registering it on first use."""
        counter = self.activity.get(name)
        if counter is None:
            counter = ActivityCounter(clock=self.clock)
            self.activity[name] = counter
            self.collectors.register(name, counter.snapshot)
        counter.increment(count)

    def set_connection_probe(self, probe: Callable[[], Dict[str, Any]]) -> None:
        """Report bot connection state as ``bot.connections``."""
        register_activity_counters(self.collectors, {}, connection_probe=probe)

    # === Metrics ===

    def get_metrics(
        self,
        name: str,
        time_range: timedelta = timedelta(hours=1),
    ) -> List[MetricSample]:
        return self.store.get_samples(name, time_range)

    async def get_aggregated_metrics(
        self,
        name: str,
        window: str = "1m",
        time_range: timedelta = timedelta(hours=24),
    ) -> List[AggregationRecord]:
        return await self.aggregator.get_aggregated(name, window, time_range)

    # === Alerts ===

    def get_active_alerts(self) -> List[Alert]:
        return self.alerts.get_active_alerts()

    def get_alert_history(self, limit: int = 100) -> List[Alert]:
        return self.alerts.get_alert_history(limit)

    def get_alerts_by_metric(self, name: str) -> List[Alert]:
        return self.alerts.get_alerts_by_metric(name)

    def get_alerts_by_severity(self, severity: AlertSeverity) -> List[Alert]:
        return self.alerts.get_alerts_by_severity(severity)

    # === Rules ===

    def get_rules(self) -> List[Rule]:
        return self.alerts.rules.get_rules()

    def add_rule(self, rule: Rule) -> None:
        self.alerts.rules.add_rule(rule)

    def remove_rule(self, name: str) -> bool:
        return self.alerts.rules.remove_rule(name)

    def update_rule(self, name: str, **changes: Any) -> Optional[Rule]:
        return self.alerts.rules.update_rule(name, **changes)

    def enable_rule(self, name: str) -> bool:
        return self.alerts.rules.enable_rule(name)

    def disable_rule(self, name: str) -> bool:
        return self.alerts.rules.disable_rule(name)

    # === Suppression ===

    def suppress_alert(
        self,
        rule_name: str,
        duration: timedelta = timedelta(hours=1),
        reason: str = "Manual suppression",
    ) -> Suppression:
        return self.alerts.suppressions.suppress(rule_name, duration, reason)

    def unsuppress_alert(self, rule_name: str) -> bool:
        return self.alerts.suppressions.unsuppress(rule_name)

    def is_alert_suppressed(self, rule_name: str) -> bool:
        return self.alerts.suppressions.is_suppressed(rule_name)

    # === Reporting ===

    @property
    def uptime_seconds(self) -> float:
        return (self.clock() - self._start_time).total_seconds()

    def get_status(self) -> Dict[str, Any]:
        """Combined metrics and alerting status."""
        aggregator_stats = self.aggregator.get_stats()
        return {
            "running": self._initialized,
            "uptime_seconds": self.uptime_seconds,
            "metrics": {
                "collect_interval": self.collectors.interval,
                "retention_seconds": self.store.retention.total_seconds(),
                "collectors": self.collectors.names,
                "aggregations": list(aggregator_stats["windows"]),
                "metrics_count": len(self.store.metric_names()),
                "total_data_points": self.store.sample_count(),
            },
            "alerts": self.alerts.get_status(),
        }

    def get_statistics(self, time_range: timedelta = timedelta(hours=24)) -> Dict[str, Any]:
        return self.alerts.get_statistics(time_range)

    def get_stats(self) -> Dict[str, Any]:
        """Internal counters of every component."""
        return {
            "uptime_seconds": self.uptime_seconds,
            "initialized": self._initialized,
            "store": self.store.get_stats(),
            "collectors": self.collectors.get_stats(),
            "aggregator": self.aggregator.get_stats(),
            "alerts": self.alerts.get_stats(),
        }

    def export_metrics(self, format: str = "json") -> str:
        """
        Export every stored sample.

        Args:
            format: "json" or "csv"

        Raises:
            ValueError: If the format is not supported
        """
        snapshot = self.store.snapshot()

        if format == "json":
            return json.dumps(
                {
                    "timestamp": self.clock().isoformat(),
                    "metrics": {
                        name: [s.to_dict() for s in series]
                        for name, series in snapshot.items()
                    },
                    "status": self.get_status(),
                },
                indent=2,
                default=str,
            )

        if format == "csv":
            buffer = io.StringIO()
            writer = csv.writer(buffer, lineterminator="\n")
            writer.writerow(["timestamp", "metric", "value"])
            for name, series in snapshot.items():
                for sample in series:
                    value = sample.value
                    if isinstance(value, dict):
                        value = json.dumps(value, default=str)
                    writer.writerow([sample.timestamp.isoformat(), name, value])
            return buffer.getvalue()

        raise ValueError(f"Unsupported export format: {format}")


# Global instance
_monitoring: Optional[MonitoringManager] = None


def set_monitoring(manager: MonitoringManager) -> None:
    global _monitoring
    _monitoring = manager


def get_monitoring() -> MonitoringManager:
    """Get the global monitoring manager."""
    if _monitoring is None:
        raise RuntimeError("Monitoring not initialized")
    return _monitoring

"""
PanelWatch Alert Engine

Stateful alert lifecycle driven by stored samples:
- Per (rule, metric) state machine: pending -> active -> resolved
- Hysteresis via the rule duration
- Suppression checks before evaluation
- Action dispatch, escalation start and audit events
- Retention sweep and alert history persistence
"""

from __future__ import annotations

import asyncio
import json
from collections import Counter
from datetime import datetime, timedelta
from pathlib import Path
from typing import TYPE_CHECKING, Any, Coroutine, Dict, List, Optional, Set, Tuple

import structlog

from panelwatch.monitoring.alerting.actions import ActionExecutor
from panelwatch.monitoring.alerting.escalation import EscalationScheduler
from panelwatch.monitoring.alerting.rules import RuleEngine
from panelwatch.monitoring.alerting.suppression import SuppressionRegistry
from panelwatch.monitoring.types import (
    Alert, AlertSeverity, AlertState, MetricSample, Rule,
)

if TYPE_CHECKING:
    from panelwatch.monitoring.context import EngineContext

logger = structlog.get_logger(__name__)

RESOLUTION_ACTIONS = ["notify.resolution", "log.resolution"]


class AlertEngine:
    """
    Alert lifecycle manager.

    ``process_sample`` is subscribed to the metric store, so transitions
    happen synchronously in ingestion order. Actions triggered by a
    transition run as background tasks on the running event loop.
    """

    def __init__(
        self,
        context: EngineContext,
        rules: Optional[RuleEngine] = None,
        suppressions: Optional[SuppressionRegistry] = None,
        actions: Optional[ActionExecutor] = None,
        escalation: Optional[EscalationScheduler] = None,
        retention: timedelta = timedelta(days=7),
        sweep_interval: float = 30.0,
        max_history: int = 10000,
    ):
        self.context = context
        self.rules = rules or RuleEngine()
        self.suppressions = suppressions or SuppressionRegistry(clock=context.clock)
        self.actions = actions or ActionExecutor(context)
        self.escalation = escalation or EscalationScheduler(
            self.actions.execute_all, clock=context.clock,
        )
        self.retention = retention
        self.sweep_interval = sweep_interval
        self._max_history = max_history

        # Every known alert by id, and the open (pending/active) one per key
        self._alerts: Dict[str, Alert] = {}
        self._open: Dict[Tuple[str, str], Alert] = {}

        self._action_tasks: Set[asyncio.Task] = set()

        self._sweep_task: Optional[asyncio.Task] = None
        self._shutdown_event = asyncio.Event()

        self._stats = {
            "samples_processed": 0,
            "evaluations_suppressed": 0,
            "alerts_pending": 0,
            "alerts_fired": 0,
            "alerts_resolved": 0,
            "alerts_purged": 0,
            "actions_dropped": 0,
            "audit_errors": 0,
        }

        self._initialized = False

    async def initialize(self) -> None:
        """Start the sweep and escalation loops."""
        if self._initialized:
            return

        logger.info("Initializing Alert Engine", rules=len(self.rules.get_rules()))

        await self.escalation.initialize()

        self._shutdown_event.clear()
        self._sweep_task = asyncio.create_task(self._sweep_loop())

        self._initialized = True

    async def shutdown(self) -> None:
        """Stop background loops and wait for in-flight actions."""
        logger.info("Shutting down Alert Engine")

        self._shutdown_event.set()

        if self._sweep_task:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None

        await self.escalation.shutdown()
        await self.flush_actions()

        self._initialized = False

    # === Sample Processing ===

    def process_sample(self, sample: MetricSample) -> None:
        """Evaluate every enabled matching rule and apply transitions."""
        self._stats["samples_processed"] += 1
        now = self.context.now()

        for rule in self.rules.matching_rules(sample.name):
            if self.suppressions.is_suppressed(rule.name):
                self._stats["evaluations_suppressed"] += 1
                continue

            if self.rules.evaluate(rule, sample, self.context):
                self._on_condition_true(rule, sample, now)
            else:
                self._on_condition_false(rule, sample, now)

    def _on_condition_true(self, rule: Rule, sample: MetricSample, now: datetime) -> None:
        key = (rule.name, sample.name)
        alert = self._open.get(key)

        if alert is None:
            alert = Alert(
                rule_name=rule.name,
                metric_name=sample.name,
                severity=rule.severity,
                description=rule.description,
                first_occurrence=now,
                last_occurrence=now,
                value=sample.value,
                threshold=rule.threshold,
            )
            self._open[key] = alert
            self._alerts[alert.id] = alert
            self._trim_history()

            if rule.duration <= timedelta(0):
                self._activate(rule, alert, sample, now)
            else:
                self._stats["alerts_pending"] += 1
                logger.info(
                    f"Alert pending: {rule.name}",
                    alert_id=alert.id,
                    metric=sample.name,
                    duration_seconds=rule.duration.total_seconds(),
                )
            return

        alert.touch(now)

        if alert.state == AlertState.PENDING and now - alert.first_occurrence >= rule.duration:
            self._activate(rule, alert, sample, now)

    def _activate(self, rule: Rule, alert: Alert, sample: MetricSample, now: datetime) -> None:
        alert.state = AlertState.ACTIVE
        alert.activated_at = now
        alert.severity = rule.severity
        alert.description = rule.description
        alert.value = sample.value
        alert.threshold = rule.threshold
        alert.escalation_level = 0
        alert.last_escalation_time = None

        self._stats["alerts_fired"] += 1
        logger.warning(
            f"Alert fired: {rule.name}",
            alert_id=alert.id,
            metric=alert.metric_name,
            severity=alert.severity.value,
            value=alert.value,
        )

        if "escalate" in rule.actions:
            self.escalation.start(alert)

        self._dispatch(self._run_activation(alert, list(rule.actions)))

    def _on_condition_false(self, rule: Rule, sample: MetricSample, now: datetime) -> None:
        alert = self._open.pop((rule.name, sample.name), None)
        if alert is None:
            return

        alert.resolve(now)
        self.escalation.cancel(alert.id)

        self._stats["alerts_resolved"] += 1
        logger.info(
            f"Alert resolved: {rule.name}",
            alert_id=alert.id,
            metric=alert.metric_name,
            duration_seconds=alert.duration.total_seconds(),
        )

        self._dispatch(self._run_resolution(alert))

    # === Action Dispatch ===

    async def _run_activation(self, alert: Alert, actions: List[str]) -> None:
        await self.actions.execute_all(alert, actions)
        await self._audit("alert.triggered", {
            "alert_id": alert.id,
            "rule_name": alert.rule_name,
            "metric": alert.metric_name,
            "severity": alert.severity.value,
            "value": alert.value,
        })

    async def _run_resolution(self, alert: Alert) -> None:
        await self.actions.execute_all(alert, RESOLUTION_ACTIONS)
        await self._audit("alert.resolved", {
            "alert_id": alert.id,
            "rule_name": alert.rule_name,
            "metric": alert.metric_name,
            "duration_seconds": alert.duration.total_seconds() if alert.duration else 0.0,
        })

    async def _audit(self, event_kind: str, details: Dict[str, Any]) -> None:
        try:
            await self.context.audit.log(event_kind, details)
        except Exception as e:
            self._stats["audit_errors"] += 1
            logger.error(f"Audit log failed: {e}", event_kind=event_kind)

    def _dispatch(self, coro: Coroutine[Any, Any, None]) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            coro.close()
            self._stats["actions_dropped"] += 1
            logger.warning("No running event loop, alert actions dropped")
            return

        task = loop.create_task(coro)
        self._action_tasks.add(task)
        task.add_done_callback(self._action_tasks.discard)

    async def flush_actions(self) -> None:
        """Wait until every dispatched action task has finished."""
        while self._action_tasks:
            await asyncio.gather(*list(self._action_tasks), return_exceptions=True)

    def _resume_escalation(self, alert: Alert) -> None:
        if alert.state != AlertState.ACTIVE:
            return
        rule = self.rules.get_rule(alert.rule_name)
        if rule is not None and "escalate" in rule.actions:
            self.escalation.resume(alert)

    # === Retention ===

    def sweep(self, now: Optional[datetime] = None) -> int:
        """
        Purge resolved alerts older than the retention and expired suppressions.

        Returns:
            Number of alerts purged
        """
        now = now or self.context.now()
        cutoff = now - self.retention

        expired = [
            alert_id for alert_id, alert in self._alerts.items()
            if alert.state == AlertState.RESOLVED
            and alert.resolved_at is not None
            and alert.resolved_at < cutoff
        ]
        for alert_id in expired:
            del self._alerts[alert_id]

        self.suppressions.cleanup_expired()

        if expired:
            self._stats["alerts_purged"] += len(expired)
            logger.debug("Purged resolved alerts", count=len(expired))

        return len(expired)

    def _trim_history(self) -> None:
        overflow = len(self._alerts) - self._max_history
        if overflow <= 0:
            return

        resolved = sorted(
            (a for a in self._alerts.values() if a.state == AlertState.RESOLVED),
            key=lambda a: a.last_occurrence,
        )
        for alert in resolved[:overflow]:
            del self._alerts[alert.id]

    async def _sweep_loop(self) -> None:
        while not self._shutdown_event.is_set():
            try:
                await asyncio.sleep(self.sweep_interval)
                self.sweep()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Sweep loop error: {e}")

    # === Queries ===

    def get_alert(self, alert_id: str) -> Optional[Alert]:
        return self._alerts.get(alert_id)

    def get_active_alerts(self) -> List[Alert]:
        """Get active alerts, most severe first."""
        return sorted(
            (a for a in self._alerts.values() if a.state == AlertState.ACTIVE),
            key=lambda a: a.severity.priority,
            reverse=True,
        )

    def get_pending_alerts(self) -> List[Alert]:
        return [a for a in self._alerts.values() if a.state == AlertState.PENDING]

    def get_alert_history(self, limit: int = 100) -> List[Alert]:
        """All known alerts, newest last occurrence first."""
        ordered = sorted(self._alerts.values(), key=lambda a: a.last_occurrence, reverse=True)
        return ordered[:limit]

    def get_alerts_by_metric(self, metric_name: str) -> List[Alert]:
        return [a for a in self._alerts.values() if a.metric_name == metric_name]

    def get_alerts_by_severity(self, severity: AlertSeverity) -> List[Alert]:
        severity = AlertSeverity(severity)
        return [a for a in self._alerts.values() if a.severity == severity]

    def get_status(self) -> Dict[str, Any]:
        active = self.get_active_alerts()
        rules = self.rules.get_rules()
        return {
            "running": self._initialized,
            "total_rules": len(rules),
            "enabled_rules": sum(1 for r in rules if r.enabled),
            "total_alerts": len(self._alerts),
            "active_alerts": len(active),
            "pending_alerts": len(self.get_pending_alerts()),
            "critical_alerts": sum(1 for a in active if a.severity == AlertSeverity.CRITICAL),
            "warning_alerts": sum(1 for a in active if a.severity == AlertSeverity.WARNING),
            "suppressions": len(self.suppressions.active()),
            "escalation_policies": len(self.escalation.get_policies()),
        }

    def get_statistics(self, time_range: timedelta = timedelta(hours=24)) -> Dict[str, Any]:
        """Alert totals for alerts first seen inside ``time_range``."""
        cutoff = self.context.now() - time_range
        recent = [a for a in self._alerts.values() if a.first_occurrence > cutoff]

        stats: Dict[str, Any] = {
            "total_alerts": len(recent),
            "by_severity": dict(Counter(a.severity.value for a in recent)),
            "by_metric": dict(Counter(a.metric_name for a in recent)),
            "by_rule": dict(Counter(a.rule_name for a in recent)),
            "avg_duration_seconds": 0.0,
            "resolution_rate": 0.0,
        }

        resolved = [a for a in recent if a.state == AlertState.RESOLVED]
        if resolved:
            total = sum((a.duration or timedelta(0)).total_seconds() for a in resolved)
            stats["avg_duration_seconds"] = total / len(resolved)
            stats["resolution_rate"] = len(resolved) / len(recent) * 100

        return stats

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self._stats,
            "open_alerts": len(self._open),
            "known_alerts": len(self._alerts),
            "inflight_actions": len(self._action_tasks),
            "rules": self.rules.get_stats(),
            "actions": self.actions.get_stats(),
            "escalation": self.escalation.get_stats(),
        }

    # === Persistence ===

    async def save_history(self, path: Path) -> None:
        """Write the alert table and suppressions to a JSON file."""
        path = Path(path)
        content = json.dumps(
            {
                "alerts": [a.to_dict() for a in self._alerts.values()],
                "suppressions": self.suppressions.to_dict(),
                "saved_at": self.context.now().isoformat(),
            },
            indent=2,
            default=str,
        )
        temp_file = path.with_suffix(".json.tmp")

        def _write() -> None:
            path.parent.mkdir(parents=True, exist_ok=True)
            temp_file.write_text(content, encoding="utf-8")
            temp_file.replace(path)

        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, _write)

        logger.debug("Saved alert history", path=str(path), alerts=len(self._alerts))

    async def load_history(self, path: Path) -> int:
        """
        Restore alerts and suppressions from a JSON file.

        Open alerts are re-keyed so later samples continue their lifecycle.
        Active alerts whose rule escalates are put back on the escalation
        schedule, so rules should be registered before loading.

        Returns:
            Number of alerts loaded
        """
        path = Path(path)
        if not path.exists():
            return 0

        loop = asyncio.get_running_loop()
        content = await loop.run_in_executor(None, lambda: path.read_text(encoding="utf-8"))
        data = json.loads(content)

        loaded = 0
        for entry in data.get("alerts", []):
            alert = Alert.from_dict(entry)
            self._alerts[alert.id] = alert
            if alert.is_open:
                self._open[alert.key] = alert
                self._resume_escalation(alert)
            loaded += 1

        self.suppressions.load(data.get("suppressions", {}))

        logger.info("Loaded alert history", path=str(path), alerts=loaded)
        return loaded

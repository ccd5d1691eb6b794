"""
PanelWatch Default Rules

Built-in alert rules for host, bot, performance and security metrics,
plus the default escalation policies.
"""

from __future__ import annotations

from datetime import timedelta
from typing import Any, List

from panelwatch.monitoring.types import (
    AlertSeverity, ConditionKind, EscalationLevel, EscalationPolicy, MetricSample, Rule,
)


def _main_bot_down(value: Any, sample: MetricSample) -> bool:
    return isinstance(value, dict) and value.get("main_bot") == 0


def _subbots_low(value: Any, sample: MetricSample) -> bool:
    if not isinstance(value, dict):
        return False
    return value.get("subbots", 0) < value.get("total", 0) * 0.5


def _threshold_rule(
    name: str,
    metric: str,
    threshold: float,
    duration: timedelta,
    severity: AlertSeverity,
    description: str,
    actions: List[str],
    value_key: str = "usage",
) -> Rule:
    return Rule(
        name=name,
        metric_pattern=metric,
        condition=ConditionKind.THRESHOLD,
        params={"threshold": threshold, "operator": ">="},
        duration=duration,
        severity=severity,
        description=description,
        actions=list(actions),
        value_key=value_key,
    )


def default_rules() -> List[Rule]:
    """Fresh copies of the built-in rules."""
    critical_actions = ["notify", "log", "escalate"]
    warning_actions = ["notify", "log"]

    return [
        # System critical
        _threshold_rule(
            "system.cpu.critical", "system.cpu", 95, timedelta(minutes=2),
            AlertSeverity.CRITICAL, "Critical CPU usage", critical_actions,
        ),
        _threshold_rule(
            "system.memory.critical", "system.memory", 90, timedelta(minutes=5),
            AlertSeverity.CRITICAL, "Critical memory usage", critical_actions,
        ),
        _threshold_rule(
            "system.disk.critical", "system.disk", 95, timedelta(minutes=10),
            AlertSeverity.CRITICAL, "Critical disk space", critical_actions,
        ),

        # System warning
        _threshold_rule(
            "system.cpu.warning", "system.cpu", 80, timedelta(minutes=5),
            AlertSeverity.WARNING, "High CPU usage", warning_actions,
        ),
        _threshold_rule(
            "system.memory.warning", "system.memory", 75, timedelta(minutes=10),
            AlertSeverity.WARNING, "High memory usage", warning_actions,
        ),

        # Bot
        Rule(
            name="bot.disconnected",
            metric_pattern="bot.connections",
            condition=ConditionKind.CUSTOM,
            custom_check=_main_bot_down,
            duration=timedelta(seconds=30),
            severity=AlertSeverity.CRITICAL,
            description="Main bot disconnected",
            actions=list(critical_actions),
        ),
        Rule(
            name="bot.subbots.low",
            metric_pattern="bot.connections",
            condition=ConditionKind.CUSTOM,
            custom_check=_subbots_low,
            duration=timedelta(minutes=2),
            severity=AlertSeverity.WARNING,
            description="Many subbots disconnected",
            actions=list(warning_actions),
        ),

        # Performance
        Rule(
            name="process.memory.leak",
            metric_pattern="process.memory",
            condition=ConditionKind.TREND,
            params={"trend_type": "increasing", "trend_threshold": 0.1},
            duration=timedelta(minutes=30),
            severity=AlertSeverity.WARNING,
            description="Possible memory leak detected",
            actions=list(warning_actions),
            value_key="rss",
        ),
        _threshold_rule(
            "process.eventloop.lag", "process.eventloop", 100, timedelta(minutes=1),
            AlertSeverity.WARNING, "High event loop lag", warning_actions,
            value_key="lag_ms",
        ),

        # Security: one sample is recorded per failed login
        Rule(
            name="security.failed.logins",
            metric_pattern="security.failed_logins",
            condition=ConditionKind.RATE,
            params={"rate_threshold": 10 / 60, "time_window": 60},
            severity=AlertSeverity.WARNING,
            description="Multiple failed login attempts",
            actions=["notify", "log", "block"],
        ),

        # Anomalies
        Rule(
            name="system.anomaly.detection",
            metric_pattern="*",
            condition=ConditionKind.ANOMALY,
            params={"sensitivity": 0.95},
            duration=timedelta(minutes=5),
            severity=AlertSeverity.INFO,
            description="Anomaly detected in metrics",
            actions=["log"],
        ),
    ]


def default_escalation_policies() -> List[EscalationPolicy]:
    """Critical and warning escalation policies."""
    return [
        EscalationPolicy(
            severity=AlertSeverity.CRITICAL,
            levels=[
                EscalationLevel(timedelta(0), ["notify.admin", "log"]),
                EscalationLevel(timedelta(minutes=5), ["notify.admin", "notify.email"]),
                EscalationLevel(timedelta(minutes=15), ["notify.admin", "notify.email", "notify.sms"]),
                EscalationLevel(timedelta(minutes=60), ["notify.all", "create.incident"]),
            ],
            max_levels=4,
            cooldown=timedelta(minutes=30),
        ),
        EscalationPolicy(
            severity=AlertSeverity.WARNING,
            levels=[
                EscalationLevel(timedelta(0), ["notify.admin", "log"]),
                EscalationLevel(timedelta(minutes=30), ["notify.admin", "notify.email"]),
            ],
            max_levels=2,
            cooldown=timedelta(hours=1),
        ),
    ]


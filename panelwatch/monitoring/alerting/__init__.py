"""
PanelWatch Alerting Module

Rule evaluation, alert lifecycle, escalation and suppression.
"""

from panelwatch.monitoring.alerting.channels import (
    AuditSink,
    CompositeNotificationSink,
    LogAuditSink,
    LogNotificationSink,
    NotificationSink,
    WebhookNotificationSink,
)
from panelwatch.monitoring.alerting.evaluators import (
    EVALUATORS,
    calculate_trend,
    detect_anomaly,
    evaluate_condition,
)
from panelwatch.monitoring.alerting.rules import RuleEngine
from panelwatch.monitoring.alerting.suppression import SuppressionRegistry
from panelwatch.monitoring.alerting.escalation import EscalationScheduler
from panelwatch.monitoring.alerting.actions import ActionExecutor
from panelwatch.monitoring.alerting.engine import AlertEngine
from panelwatch.monitoring.alerting.defaults import (
    default_escalation_policies,
    default_rules,
)

__all__ = [
    "AuditSink",
    "CompositeNotificationSink",
    "LogAuditSink",
    "LogNotificationSink",
    "NotificationSink",
    "WebhookNotificationSink",
    "EVALUATORS",
    "calculate_trend",
    "detect_anomaly",
    "evaluate_condition",
    "RuleEngine",
    "SuppressionRegistry",
    "EscalationScheduler",
    "ActionExecutor",
    "AlertEngine",
    "default_escalation_policies",
    "default_rules",
]

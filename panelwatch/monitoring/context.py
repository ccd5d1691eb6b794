"""
PanelWatch Engine Context

Explicit dependencies shared by evaluators, action handlers and the
alert lifecycle: the clock, the metric history and the outbound sinks.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, List

from panelwatch.monitoring.alerting.channels import (
    AuditSink, LogAuditSink, LogNotificationSink, NotificationSink,
)
from panelwatch.monitoring.metrics.store import MetricStore
from panelwatch.monitoring.types import MetricSample, utcnow


@dataclass
class EngineContext:
    """Everything an evaluator or action needs besides the rule and sample."""
    store: MetricStore
    clock: Callable[[], datetime] = utcnow
    notifier: NotificationSink = field(default_factory=LogNotificationSink)
    audit: AuditSink = field(default_factory=LogAuditSink)

    def now(self) -> datetime:
        return self.clock()

    def history(self, name: str, window: timedelta) -> List[MetricSample]:
        """Stored samples for ``name`` newer than ``now - window``."""
        return self.store.get_samples(name, window)

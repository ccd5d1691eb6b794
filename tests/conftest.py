"""
Shared fixtures for the PanelWatch test suite.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Tuple

import pytest

from panelwatch.monitoring.alerting.channels import AuditSink, NotificationSink
from panelwatch.monitoring.types import Notification


class ManualClock:
    """Deterministic clock; only moves when told to."""

    def __init__(self, start: datetime = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)):
        self.start = start
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now

    def elapsed(self) -> timedelta:
        return self.now - self.start


class RecordingNotificationSink(NotificationSink):
    def __init__(self):
        self.notifications: List[Notification] = []

    async def send(self, notification: Notification) -> bool:
        self.notifications.append(notification)
        return True


class RecordingAuditSink(AuditSink):
    def __init__(self):
        self.events: List[Tuple[str, Dict[str, Any]]] = []

    async def log(self, event_kind: str, details: Dict[str, Any]) -> None:
        self.events.append((event_kind, details))

    def kinds(self) -> List[str]:
        return [kind for kind, _ in self.events]


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def notifier():
    return RecordingNotificationSink()


@pytest.fixture
def audit():
    return RecordingAuditSink()

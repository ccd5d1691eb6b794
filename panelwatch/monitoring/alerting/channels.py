"""
PanelWatch Alert Sinks

Outbound collaborators invoked by alert actions:
- Notification sinks (log, webhook, composite)
- Audit sinks
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, Dict, List, Optional

import structlog

from panelwatch.monitoring.types import AlertSeverity, Notification

if TYPE_CHECKING:
    import httpx

logger = structlog.get_logger(__name__)


class NotificationSink(ABC):
    """Base class for notification delivery."""

    @abstractmethod
    async def send(self, notification: Notification) -> bool:
        """
        Deliver a notification.

        Args:
            notification: Notification to deliver

        Returns:
            True if delivered successfully
        """
        pass


class AuditSink(ABC):
    """Base class for audit event recording."""

    @abstractmethod
    async def log(self, event_kind: str, details: Dict[str, Any]) -> None:
        """Record an audit event."""
        pass


class LogNotificationSink(NotificationSink):
    """
    Log notification sink.

    Logs notifications using structlog (for testing and debugging).
    """

    _levels = {
        AlertSeverity.INFO: "info",
        AlertSeverity.WARNING: "warning",
        AlertSeverity.ERROR: "error",
        AlertSeverity.CRITICAL: "critical",
    }

    async def send(self, notification: Notification) -> bool:
        log_method = getattr(logger, self._levels.get(notification.severity, "warning"))
        log_method(
            notification.title,
            type=notification.type,
            target=notification.target,
            message=notification.message,
            data=notification.data,
        )
        return True


class WebhookNotificationSink(NotificationSink):
    """
    Generic webhook notification sink.

    Sends JSON POST requests to a webhook URL, e.g. the panel backend
    that fans notifications out over Socket.IO, email or SMS.
    """

    def __init__(
        self,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url = url
        self.headers = headers or {}
        self.timeout = timeout
        self._transport = transport

    async def send(self, notification: Notification) -> bool:
        import httpx

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(
                    self.url,
                    json=notification.to_dict(),
                    headers={
                        "Content-Type": "application/json",
                        **self.headers,
                    },
                )

                if response.status_code >= 400:
                    logger.error(
                        f"Webhook failed: {response.status_code}",
                        url=self.url,
                    )
                    return False

                return True
        except httpx.HTTPError as e:
            logger.error(f"Webhook error: {e}", url=self.url)
            return False


class CompositeNotificationSink(NotificationSink):
    """
    Composite sink that sends to multiple sinks.
    """

    def __init__(
        self,
        sinks: Optional[List[NotificationSink]] = None,
        require_all: bool = False,
    ):
        self.sinks = sinks or []
        self.require_all = require_all

    def add_sink(self, sink: NotificationSink) -> None:
        self.sinks.append(sink)

    async def send(self, notification: Notification) -> bool:
        results = await asyncio.gather(
            *[sink.send(notification) for sink in self.sinks],
            return_exceptions=True,
        )

        successes = []
        for i, result in enumerate(results):
            if isinstance(result, Exception):
                logger.error(f"Sink {i} failed: {result}")
                successes.append(False)
            else:
                successes.append(bool(result))

        if self.require_all:
            return all(successes)
        return any(successes)


class LogAuditSink(AuditSink):
    """Audit sink that writes events to the structured log."""

    async def log(self, event_kind: str, details: Dict[str, Any]) -> None:
        logger.info(f"Audit event: {event_kind}", event_kind=event_kind, details=details)

"""
PanelWatch Alert Actions

Named actions executed when an alert activates, escalates or resolves.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, List

import structlog

from panelwatch.monitoring.types import Alert, AlertSeverity, Notification

if TYPE_CHECKING:
    from panelwatch.monitoring.context import EngineContext

logger = structlog.get_logger(__name__)

ActionHandler = Callable[[Alert], Awaitable[Any]]


def format_alert_message(alert: Alert) -> str:
    """Human-readable alert body for notifications."""
    lines = [
        f"Metric: {alert.metric_name}",
        f"Value: {alert.value}",
        f"Time: {alert.last_occurrence.isoformat()}",
        f"Occurrences: {alert.occurrence_count}",
    ]
    if alert.threshold is not None:
        lines.append(f"Threshold: {alert.threshold}")
    return "\n".join(lines)


def _duration_seconds(alert: Alert) -> int:
    return int(alert.duration.total_seconds()) if alert.duration is not None else 0


class ActionExecutor:
    """
    Runs alert actions against the context's notification and audit sinks.

    Every action is isolated: a failing handler is logged and counted and
    the remaining actions still run.
    """

    def __init__(self, context: "EngineContext"):
        self.context = context

        self._handlers: Dict[str, ActionHandler] = {
            "notify": self._notify_admin,
            "notify.admin": self._notify_admin,
            "notify.all": self._notify_all,
            "notify.email": self._notify_email,
            "notify.sms": self._notify_sms,
            "notify.resolution": self._notify_resolution,
            "log": self._log_alert,
            "log.resolution": self._log_resolution,
            "escalate": self._noop,
            "block": self._block,
            "create.incident": self._create_incident,
        }

        self._stats = {
            "actions_executed": 0,
            "actions_failed": 0,
            "unknown_actions": 0,
            "notifications_sent": 0,
            "notifications_failed": 0,
        }

    def register_handler(self, action: str, handler: ActionHandler) -> None:
        """Add or replace the handler for an action name."""
        self._handlers[action] = handler

    @property
    def actions(self) -> List[str]:
        return list(self._handlers.keys())

    async def execute(self, alert: Alert, action: str) -> bool:
        handler = self._handlers.get(action)
        if handler is None:
            self._stats["unknown_actions"] += 1
            logger.warning(f"Unknown alert action: {action}", alert_id=alert.id)
            return False

        try:
            await handler(alert)
            self._stats["actions_executed"] += 1
            return True
        except Exception as e:
            self._stats["actions_failed"] += 1
            logger.error(
                f"Alert action failed: {e}",
                action=action,
                alert_id=alert.id,
                rule=alert.rule_name,
            )
            return False

    async def execute_all(self, alert: Alert, actions: List[str]) -> int:
        """
        Run actions in order.

        Returns:
            Number of actions that succeeded
        """
        succeeded = 0
        for action in actions:
            if await self.execute(alert, action):
                succeeded += 1
        return succeeded

    # === Notifications ===

    async def _send(self, notification: Notification) -> None:
        delivered = await self.context.notifier.send(notification)
        if delivered:
            self._stats["notifications_sent"] += 1
        else:
            self._stats["notifications_failed"] += 1
            logger.warning("Notification not delivered", title=notification.title)

    def _alert_notification(self, alert: Alert, target: str, channel: str = "default") -> Notification:
        return Notification(
            type="alert",
            severity=alert.severity,
            title=f"{alert.severity.value.upper()}: {alert.description or alert.rule_name}",
            message=format_alert_message(alert),
            data={
                "alert_id": alert.id,
                "rule_name": alert.rule_name,
                "metric": alert.metric_name,
                "value": alert.value,
                "channel": channel,
            },
            target=target,
            created_at=self.context.now(),
        )

    async def _notify_admin(self, alert: Alert) -> None:
        await self._send(self._alert_notification(alert, "admin"))

    async def _notify_all(self, alert: Alert) -> None:
        await self._send(self._alert_notification(alert, "all"))

    async def _notify_email(self, alert: Alert) -> None:
        await self._send(self._alert_notification(alert, "admin", channel="email"))

    async def _notify_sms(self, alert: Alert) -> None:
        await self._send(self._alert_notification(alert, "admin", channel="sms"))

    async def _notify_resolution(self, alert: Alert) -> None:
        seconds = _duration_seconds(alert)
        await self._send(Notification(
            type="resolution",
            severity=AlertSeverity.INFO,
            title="Alert resolved",
            message=f"Alert resolved: {alert.description or alert.rule_name}\nDuration: {seconds}s",
            data={
                "alert_id": alert.id,
                "rule_name": alert.rule_name,
                "metric": alert.metric_name,
                "duration_seconds": seconds,
            },
            created_at=self.context.now(),
        ))

    # === Logging ===

    async def _log_alert(self, alert: Alert) -> None:
        logger.warning(
            f"ALERT [{alert.severity.value.upper()}] {alert.description or alert.rule_name}",
            alert_id=alert.id,
            metric=alert.metric_name,
            value=alert.value,
        )

    async def _log_resolution(self, alert: Alert) -> None:
        logger.info(
            f"RESOLVED [{alert.id}] {alert.description or alert.rule_name}",
            duration_seconds=_duration_seconds(alert),
        )

    # === Side effects ===

    async def _noop(self, alert: Alert) -> None:
        # Escalation is scheduled by the engine on activation
        pass

    async def _block(self, alert: Alert) -> None:
        logger.warning("Block action requested", alert_id=alert.id, metric=alert.metric_name)
        await self.context.audit.log("alert.block", {
            "alert_id": alert.id,
            "rule_name": alert.rule_name,
            "metric": alert.metric_name,
        })

    async def _create_incident(self, alert: Alert) -> None:
        logger.warning("Incident created", alert_id=alert.id, severity=alert.severity.value)
        await self.context.audit.log("incident.created", {
            "alert_id": alert.id,
            "rule_name": alert.rule_name,
            "severity": alert.severity.value,
            "description": alert.description,
        })

    def get_stats(self) -> Dict[str, Any]:
        return dict(self._stats)

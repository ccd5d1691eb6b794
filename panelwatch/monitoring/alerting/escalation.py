"""
PanelWatch Escalation Scheduler

Timed, severity-specific follow-up actions for active alerts, driven by
a single delay queue keyed by alert id.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import structlog

from panelwatch.monitoring.types import (
    Alert, AlertSeverity, AlertState, EscalationPolicy, utcnow,
)

logger = structlog.get_logger(__name__)

ActionRunner = Callable[[Alert, List[str]], Awaitable[Any]]


class EscalationScheduler:
    """
    Fires escalation levels for active alerts.

    Each alert has at most one live queue entry. Superseded heap entries
    are skipped lazily when popped. A fire always re-checks the alert, so
    a resolved alert's pending entry is a no-op.

    A fire that lands inside the policy cooldown is deferred to the end
    of the cooldown rather than dropped.
    """

    def __init__(
        self,
        run_actions: ActionRunner,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._run_actions = run_actions
        self.clock = clock

        self._policies: Dict[AlertSeverity, EscalationPolicy] = {}
        self._alerts: Dict[str, Alert] = {}

        # (due, seq, alert_id)
        self._queue: List[Tuple[datetime, int, str]] = []
        self._due: Dict[str, datetime] = {}
        self._counter = itertools.count()

        self._wakeup = asyncio.Event()
        self._shutdown_event = asyncio.Event()
        self._loop_task: Optional[asyncio.Task] = None

        self._stats = {
            "escalations": 0,
            "deferred": 0,
            "aborted": 0,
            "escalation_errors": 0,
        }

        self._initialized = False

    async def initialize(self) -> None:
        """Start the escalation loop."""
        if self._initialized:
            return

        logger.info("Initializing Escalation Scheduler", policies=len(self._policies))

        self._shutdown_event.clear()
        self._loop_task = asyncio.create_task(self._escalation_loop())

        self._initialized = True

    async def shutdown(self) -> None:
        """Stop the escalation loop."""
        logger.info("Shutting down Escalation Scheduler")

        self._shutdown_event.set()
        self._wakeup.set()

        if self._loop_task:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None

        self._initialized = False

    # === Policies ===

    def add_policy(self, policy: EscalationPolicy) -> None:
        """Add (or replace) the policy for a severity."""
        self._policies[policy.severity] = policy
        logger.info(
            f"Added escalation policy: {policy.severity.value}",
            levels=len(policy.levels),
            max_levels=policy.max_levels,
        )

    def get_policy(self, severity: AlertSeverity) -> Optional[EscalationPolicy]:
        return self._policies.get(AlertSeverity(severity))

    def get_policies(self) -> List[EscalationPolicy]:
        return list(self._policies.values())

    # === Scheduling ===

    def start(self, alert: Alert) -> bool:
        """
        Schedule the first level for a newly active alert.

        Returns:
            False if no usable policy exists for the alert's severity
        """
        policy = self._policies.get(alert.severity)
        if policy is None or not policy.levels:
            logger.debug("No escalation policy for severity", severity=alert.severity.value)
            return False

        self._alerts[alert.id] = alert
        self._push(alert.id, self.clock() + policy.levels[0].delay)
        return True

    def resume(self, alert: Alert) -> bool:
        """
        Reschedule an active alert restored from history.

        The next level is due its delay after the last escalation (or after
        activation when none has fired yet). Overdue levels fire on the next
        pass, still subject to the cooldown.

        Returns:
            False if there is no policy or no level left to fire
        """
        policy = self._policies.get(alert.severity)
        if policy is None or alert.state != AlertState.ACTIVE:
            return False
        if alert.escalation_level >= min(policy.max_levels, len(policy.levels)):
            return False

        base = alert.last_escalation_time or alert.activated_at or self.clock()
        self._alerts[alert.id] = alert
        self._push(alert.id, base + policy.levels[alert.escalation_level].delay)
        return True

    def cancel(self, alert_id: str) -> bool:
        """Forget an alert; any queued entry becomes a no-op."""
        self._due.pop(alert_id, None)
        return self._alerts.pop(alert_id, None) is not None

    def _push(self, alert_id: str, due: datetime) -> None:
        self._due[alert_id] = due
        heapq.heappush(self._queue, (due, next(self._counter), alert_id))
        self._wakeup.set()

    def next_due(self) -> Optional[datetime]:
        while self._queue:
            due, _, alert_id = self._queue[0]
            if self._due.get(alert_id) == due:
                return due
            heapq.heappop(self._queue)
        return None

    @property
    def pending(self) -> int:
        return len(self._due)

    # === Firing ===

    async def process_due(self, now: Optional[datetime] = None) -> int:
        """
        Fire every entry due at or before ``now``.

        Returns:
            Number of levels executed
        """
        now = now or self.clock()
        fired = 0

        while self._queue and self._queue[0][0] <= now:
            due, _, alert_id = heapq.heappop(self._queue)
            if self._due.get(alert_id) != due:
                continue
            del self._due[alert_id]

            alert = self._alerts.get(alert_id)
            if alert is None:
                continue

            if await self._escalate(alert, now):
                fired += 1

        return fired

    async def _escalate(self, alert: Alert, now: datetime) -> bool:
        policy = self._policies.get(alert.severity)
        if (
            policy is None
            or alert.state != AlertState.ACTIVE
            or alert.escalation_level >= policy.max_levels
            or alert.escalation_level >= len(policy.levels)
        ):
            self._stats["aborted"] += 1
            self._alerts.pop(alert.id, None)
            return False

        if (
            alert.last_escalation_time is not None
            and now - alert.last_escalation_time < policy.cooldown
        ):
            self._stats["deferred"] += 1
            self._push(alert.id, alert.last_escalation_time + policy.cooldown)
            logger.debug(
                "Escalation inside cooldown, deferred",
                alert_id=alert.id,
                level=alert.escalation_level,
            )
            return False

        level = policy.levels[alert.escalation_level]
        try:
            await self._run_actions(alert, list(level.actions))
        except Exception as e:
            self._stats["escalation_errors"] += 1
            logger.error(f"Escalation actions failed: {e}", alert_id=alert.id)

        alert.escalation_level += 1
        alert.last_escalation_time = now
        self._stats["escalations"] += 1

        logger.warning(
            f"Alert escalated: {alert.rule_name}",
            alert_id=alert.id,
            level=alert.escalation_level,
            severity=alert.severity.value,
        )

        if alert.escalation_level < min(policy.max_levels, len(policy.levels)):
            next_level = policy.levels[alert.escalation_level]
            self._push(alert.id, now + next_level.delay)
        else:
            self._alerts.pop(alert.id, None)

        return True

    async def _escalation_loop(self) -> None:
        """Sleep until the earliest entry is due, or until an earlier one is pushed."""
        while not self._shutdown_event.is_set():
            try:
                self._wakeup.clear()
                due = self.next_due()
                timeout = None
                if due is not None:
                    timeout = max(0.0, (due - self.clock()).total_seconds())

                try:
                    await asyncio.wait_for(self._wakeup.wait(), timeout=timeout)
                except asyncio.TimeoutError:
                    pass

                await self.process_due()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Escalation loop error: {e}")

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self._stats,
            "pending": self.pending,
            "policies": [p.severity.value for p in self._policies.values()],
        }

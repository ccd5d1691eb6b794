"""
PanelWatch Alerting Tests

Tests cover: condition evaluators, rule matching, the alert lifecycle,
actions, escalation, suppression and the monitoring manager.
"""

import csv
import io
import json
from datetime import timedelta

import pytest


def _engine(clock, notifier=None, audit=None):
    """Alert engine wired to a fresh store, subscribed like the manager does."""
    from panelwatch.monitoring.alerting.engine import AlertEngine
    from panelwatch.monitoring.context import EngineContext
    from panelwatch.monitoring.metrics.store import MetricStore

    store = MetricStore(clock=clock)
    context = EngineContext(store=store, clock=clock)
    if notifier is not None:
        context.notifier = notifier
    if audit is not None:
        context.audit = audit

    engine = AlertEngine(context)
    store.subscribe(engine.process_sample)
    return store, engine


def _threshold_rule(name="queue.high", pattern="queue.depth", threshold=100, **kwargs):
    from panelwatch.monitoring.types import Rule

    kwargs.setdefault("actions", ["notify", "log"])
    return Rule(
        name=name,
        metric_pattern=pattern,
        condition="threshold",
        params={"threshold": threshold, "operator": "gte"},
        **kwargs,
    )


# =============================================================================
# Evaluator Tests
# =============================================================================

class TestTrend:
    """Test normalized trend slopes."""

    def test_increasing_series(self):
        from panelwatch.monitoring.alerting.evaluators import calculate_trend

        assert calculate_trend(list(range(1, 11))) > 0

    def test_flat_series(self):
        from panelwatch.monitoring.alerting.evaluators import calculate_trend

        assert abs(calculate_trend([5, 5, 5, 5, 5])) < 1e-9

    def test_degenerate_series(self):
        from panelwatch.monitoring.alerting.evaluators import calculate_trend

        assert calculate_trend([3]) == 0.0
        assert calculate_trend([0, 0, 0]) == 0.0

    def test_trend_rule_uses_history(self, clock):
        """Trend rules look back over stored samples for the metric."""
        from panelwatch.monitoring.alerting.evaluators import evaluate_condition
        from panelwatch.monitoring.context import EngineContext
        from panelwatch.monitoring.metrics.store import MetricStore
        from panelwatch.monitoring.types import Rule

        store = MetricStore(clock=clock)
        for value in range(1, 11):
            sample = store.record("process.memory", {"rss": value * 100})
            clock.advance(minutes=1)

        ctx = EngineContext(store=store, clock=clock)
        rising = Rule(
            name="leak", metric_pattern="process.memory", condition="trend",
            params={"trend_type": "increasing"}, value_key="rss",
        )
        falling = Rule(
            name="drain", metric_pattern="process.memory", condition="trend",
            params={"trend_type": "decreasing"}, value_key="rss",
        )

        assert evaluate_condition(rising, sample, ctx)
        assert not evaluate_condition(falling, sample, ctx)

    def test_trend_rule_needs_two_samples(self, clock):
        from panelwatch.monitoring.alerting.evaluators import evaluate_condition
        from panelwatch.monitoring.context import EngineContext
        from panelwatch.monitoring.metrics.store import MetricStore
        from panelwatch.monitoring.types import Rule

        store = MetricStore(clock=clock)
        sample = store.record("m", 1)
        ctx = EngineContext(store=store, clock=clock)
        rule = Rule(name="flat", metric_pattern="m", condition="trend",
                    params={"trend_type": "stable"})

        assert not evaluate_condition(rule, sample, ctx)


class TestAnomaly:
    """Test z-score anomaly detection."""

    def test_outlier_flagged(self):
        from panelwatch.monitoring.alerting.evaluators import detect_anomaly

        history = [45.0, 55.0] * 10  # mean 50, stddev 5
        assert detect_anomaly(history, 80.0, sensitivity=0.95)

    def test_normal_value_not_flagged(self):
        from panelwatch.monitoring.alerting.evaluators import detect_anomaly

        history = [45.0, 55.0] * 10
        assert not detect_anomaly(history, 51.0, sensitivity=0.95)

    def test_requires_five_samples(self):
        from panelwatch.monitoring.alerting.evaluators import detect_anomaly

        assert not detect_anomaly([45.0, 55.0, 45.0, 55.0], 1000.0)

    def test_flat_history_never_flags(self):
        from panelwatch.monitoring.alerting.evaluators import detect_anomaly

        assert not detect_anomaly([50.0] * 10, 1000.0)

    def test_sensitivity_table(self):
        from panelwatch.monitoring.alerting.evaluators import z_score_threshold

        assert z_score_threshold(0.95) == 1.96
        assert z_score_threshold(0.999) == 3.291
        assert z_score_threshold(0.5) == 2.0


class TestEvaluators:
    """Test threshold and custom conditions."""

    def test_threshold(self, clock):
        from panelwatch.monitoring.alerting.evaluators import evaluate_condition
        from panelwatch.monitoring.context import EngineContext
        from panelwatch.monitoring.metrics.store import MetricStore
        from panelwatch.monitoring.types import MetricSample

        ctx = EngineContext(store=MetricStore(clock=clock), clock=clock)
        rule = _threshold_rule()

        assert evaluate_condition(rule, MetricSample("queue.depth", {"pending": 120}), ctx)
        assert evaluate_condition(rule, MetricSample("queue.depth", {"pending": 100}), ctx)
        assert not evaluate_condition(rule, MetricSample("queue.depth", {"pending": 99}), ctx)

    def test_threshold_value_key(self, clock):
        from panelwatch.monitoring.alerting.evaluators import evaluate_condition
        from panelwatch.monitoring.context import EngineContext
        from panelwatch.monitoring.metrics.store import MetricStore
        from panelwatch.monitoring.types import MetricSample

        ctx = EngineContext(store=MetricStore(clock=clock), clock=clock)
        rule = _threshold_rule(pattern="system.memory", threshold=90, value_key="usage")
        sample = MetricSample("system.memory", {"total": 16_000_000_000, "usage": 95.0})

        assert evaluate_condition(rule, sample, ctx)

    def test_custom(self, clock):
        from panelwatch.monitoring.alerting.evaluators import evaluate_condition
        from panelwatch.monitoring.context import EngineContext
        from panelwatch.monitoring.metrics.store import MetricStore
        from panelwatch.monitoring.types import MetricSample, Rule

        ctx = EngineContext(store=MetricStore(clock=clock), clock=clock)
        down = Rule(
            name="bot.down", metric_pattern="bot.connections", condition="custom",
            custom_check=lambda value, sample: value["main_bot"] == 0,
        )
        missing = Rule(name="noop", metric_pattern="bot.connections", condition="custom")

        assert evaluate_condition(down, MetricSample("bot.connections", {"main_bot": 0}), ctx)
        assert not evaluate_condition(down, MetricSample("bot.connections", {"main_bot": 1}), ctx)
        assert not evaluate_condition(missing, MetricSample("bot.connections", {"main_bot": 0}), ctx)


# =============================================================================
# Rule Engine Tests
# =============================================================================

class TestRuleEngine:
    """Test rule table management and matching."""

    def test_pattern_matching(self):
        from panelwatch.monitoring.alerting.rules import RuleEngine

        engine = RuleEngine()

        assert engine.matches("system.cpu", "system.cpu")
        assert engine.matches("*", "anything.at.all")
        assert engine.matches("system.*", "system.cpu")
        assert engine.matches("*.cpu", "process.cpu")
        assert not engine.matches("system.*", "process.cpu")
        assert not engine.matches("system.cpu", "system.cpu2")
        assert not engine.matches("sys.em*", "sysXem.cpu")

    def test_matching_rules_skips_disabled(self):
        from panelwatch.monitoring.alerting.rules import RuleEngine

        engine = RuleEngine()
        engine.add_rule(_threshold_rule(name="a", pattern="queue.*"))
        engine.add_rule(_threshold_rule(name="b", pattern="queue.depth"))
        engine.add_rule(_threshold_rule(name="c", pattern="other"))

        assert {r.name for r in engine.matching_rules("queue.depth")} == {"a", "b"}

        engine.disable_rule("a")
        assert [r.name for r in engine.matching_rules("queue.depth")] == ["b"]

        engine.enable_rule("a")
        assert len(engine.matching_rules("queue.depth")) == 2

    def test_update_rule(self):
        from panelwatch.monitoring.alerting.rules import RuleEngine
        from panelwatch.monitoring.types import AlertSeverity

        engine = RuleEngine()
        engine.add_rule(_threshold_rule())

        updated = engine.update_rule(
            "queue.high",
            params={"threshold": 50, "operator": ">"},
            severity="critical",
        )

        assert updated.threshold == 50
        assert updated.severity == AlertSeverity.CRITICAL
        assert engine.get_rule("queue.high") is updated
        assert engine.update_rule("missing", description="x") is None

    def test_update_rule_rejects_unknown_fields(self):
        from panelwatch.monitoring.alerting.rules import RuleEngine

        engine = RuleEngine()
        engine.add_rule(_threshold_rule())

        with pytest.raises(ValueError):
            engine.update_rule("queue.high", colour="red")
        with pytest.raises(ValueError):
            engine.update_rule("queue.high", name="renamed")

    def test_remove_rule(self):
        from panelwatch.monitoring.alerting.rules import RuleEngine

        engine = RuleEngine()
        engine.add_rule(_threshold_rule())

        assert engine.remove_rule("queue.high")
        assert not engine.remove_rule("queue.high")
        assert engine.get_rules() == []

    def test_evaluation_errors_count_as_false(self, clock):
        from panelwatch.monitoring.alerting.rules import RuleEngine
        from panelwatch.monitoring.context import EngineContext
        from panelwatch.monitoring.metrics.store import MetricStore
        from panelwatch.monitoring.types import MetricSample, Rule

        def explode(value, sample):
            raise KeyError("main_bot")

        engine = RuleEngine()
        rule = Rule(name="broken", metric_pattern="m", condition="custom", custom_check=explode)
        ctx = EngineContext(store=MetricStore(clock=clock), clock=clock)

        assert engine.evaluate(rule, MetricSample("m", {}), ctx) is False
        assert engine.get_stats()["evaluation_errors"] == 1


# =============================================================================
# Alert Lifecycle Tests
# =============================================================================

class TestAlertLifecycle:
    """Test the pending -> active -> resolved state machine."""

    @pytest.mark.asyncio
    async def test_zero_duration_activates_immediately(self, clock, notifier, audit):
        from panelwatch.monitoring.types import AlertState

        store, engine = _engine(clock, notifier, audit)
        engine.rules.add_rule(_threshold_rule())

        store.record("queue.depth", {"pending": 120})
        await engine.flush_actions()

        [alert] = engine.get_active_alerts()
        assert alert.state == AlertState.ACTIVE
        assert alert.value == {"pending": 120}
        assert alert.threshold == 100
        assert alert.escalation_level == 0
        assert alert.activated_at == clock()

        assert len(notifier.notifications) == 1
        assert notifier.notifications[0].type == "alert"
        assert notifier.notifications[0].data["alert_id"] == alert.id
        assert audit.kinds() == ["alert.triggered"]

    @pytest.mark.asyncio
    async def test_hysteresis(self, clock, notifier):
        from panelwatch.monitoring.types import AlertState

        store, engine = _engine(clock, notifier)
        engine.rules.add_rule(_threshold_rule(duration=timedelta(minutes=2)))

        store.record("queue.depth", 150)
        [alert] = engine.get_pending_alerts()
        assert alert.occurrence_count == 1

        clock.advance(minutes=1, seconds=59)
        store.record("queue.depth", 150)
        assert alert.state == AlertState.PENDING
        assert alert.occurrence_count == 2
        assert engine.get_active_alerts() == []

        clock.advance(seconds=1)
        store.record("queue.depth", 150)
        await engine.flush_actions()

        assert alert.state == AlertState.ACTIVE
        assert alert.occurrence_count == 3
        assert len(notifier.notifications) == 1

    @pytest.mark.asyncio
    async def test_no_duplicate_alerts(self, clock):
        store, engine = _engine(clock)
        engine.rules.add_rule(_threshold_rule())

        for _ in range(3):
            store.record("queue.depth", 200)
            clock.advance(seconds=5)
        await engine.flush_actions()

        [alert] = engine.get_alert_history()
        assert alert.occurrence_count == 3
        assert engine.get_stats()["alerts_fired"] == 1

    @pytest.mark.asyncio
    async def test_resolution(self, clock, notifier, audit):
        from panelwatch.monitoring.types import AlertState

        store, engine = _engine(clock, notifier, audit)
        engine.rules.add_rule(_threshold_rule())

        store.record("queue.depth", 150)
        clock.advance(minutes=3)
        store.record("queue.depth", 10)
        await engine.flush_actions()

        [alert] = engine.get_alert_history()
        assert alert.state == AlertState.RESOLVED
        assert alert.resolved_at == clock()
        assert alert.duration == timedelta(minutes=3)
        assert engine.get_active_alerts() == []

        assert [n.type for n in notifier.notifications] == ["alert", "resolution"]
        assert notifier.notifications[1].data["duration_seconds"] == 180
        assert audit.kinds() == ["alert.triggered", "alert.resolved"]

    @pytest.mark.asyncio
    async def test_pending_alert_resolves(self, clock, notifier):
        from panelwatch.monitoring.types import AlertState

        store, engine = _engine(clock, notifier)
        engine.rules.add_rule(_threshold_rule(duration=timedelta(minutes=5)))

        store.record("queue.depth", 150)
        store.record("queue.depth", 1)
        await engine.flush_actions()

        [alert] = engine.get_alert_history()
        assert alert.state == AlertState.RESOLVED
        assert alert.duration >= timedelta(0)
        assert [n.type for n in notifier.notifications] == ["resolution"]

    @pytest.mark.asyncio
    async def test_new_alert_after_resolution(self, clock):
        store, engine = _engine(clock)
        engine.rules.add_rule(_threshold_rule())

        store.record("queue.depth", 150)
        clock.advance(seconds=5)
        store.record("queue.depth", 1)
        clock.advance(seconds=5)
        store.record("queue.depth", 150)
        await engine.flush_actions()

        history = engine.get_alert_history()
        assert len(history) == 2
        assert history[0].id != history[1].id
        assert len(engine.get_active_alerts()) == 1

    @pytest.mark.asyncio
    async def test_false_evaluation_without_alert_is_noop(self, clock, notifier):
        store, engine = _engine(clock, notifier)
        engine.rules.add_rule(_threshold_rule())

        store.record("queue.depth", 1)
        await engine.flush_actions()

        assert engine.get_alert_history() == []
        assert notifier.notifications == []

    @pytest.mark.asyncio
    async def test_alerts_keyed_per_metric(self, clock):
        store, engine = _engine(clock)
        engine.rules.add_rule(_threshold_rule(pattern="queue.*"))

        store.record("queue.inbound", 150)
        store.record("queue.outbound", 150)
        await engine.flush_actions()

        assert len(engine.get_active_alerts()) == 2
        assert len(engine.get_alerts_by_metric("queue.inbound")) == 1

    def test_actions_dropped_without_event_loop(self, clock):
        store, engine = _engine(clock)
        engine.rules.add_rule(_threshold_rule())

        store.record("queue.depth", 150)

        assert len(engine.get_active_alerts()) == 1
        assert engine.get_stats()["actions_dropped"] == 1

    @pytest.mark.asyncio
    async def test_suppressed_rule_skipped(self, clock, notifier):
        store, engine = _engine(clock, notifier)
        engine.rules.add_rule(_threshold_rule())
        engine.suppressions.suppress("queue.high", timedelta(minutes=10))

        store.record("queue.depth", 150)
        await engine.flush_actions()

        assert engine.get_alert_history() == []
        assert notifier.notifications == []
        assert engine.get_stats()["evaluations_suppressed"] == 1

        clock.advance(minutes=10)
        store.record("queue.depth", 150)
        await engine.flush_actions()
        assert len(engine.get_active_alerts()) == 1

    @pytest.mark.asyncio
    async def test_suppression_freezes_open_alert(self, clock):
        from panelwatch.monitoring.types import AlertState

        store, engine = _engine(clock)
        engine.rules.add_rule(_threshold_rule())

        store.record("queue.depth", 150)
        engine.suppressions.suppress("queue.high")
        store.record("queue.depth", 1)
        await engine.flush_actions()

        [alert] = engine.get_alert_history()
        assert alert.state == AlertState.ACTIVE


class TestScenarios:
    """End-to-end scenarios through collectors and the store."""

    @pytest.mark.asyncio
    async def test_queue_depth_collector(self, clock):
        from panelwatch.monitoring.metrics.collectors import CollectorRegistry
        from panelwatch.monitoring.types import AlertState

        store, engine = _engine(clock)
        engine.rules.add_rule(_threshold_rule(pattern="queueDepth"))

        registry = CollectorRegistry(store, clock=clock)
        registry.register("queueDepth", lambda: {"pending": 120})

        await registry.run_cycle()
        await engine.flush_actions()

        [alert] = engine.get_active_alerts()
        assert alert.state == AlertState.ACTIVE
        assert alert.value == {"pending": 120}
        assert alert.metric_name == "queueDepth"

    @pytest.mark.asyncio
    async def test_rate_fires_then_resolves(self, clock):
        from panelwatch.monitoring.types import AlertState, Rule

        store, engine = _engine(clock)
        engine.rules.add_rule(Rule(
            name="logins.burst",
            metric_pattern="security.failed_logins",
            condition="rate",
            params={"rate_threshold": 5 / 60, "time_window": 60},
        ))

        fired_at = None
        for i in range(10):
            if i:
                clock.advance(seconds=6)
            store.record("security.failed_logins", 1)
            if fired_at is None and engine.get_active_alerts():
                fired_at = i

        assert fired_at == 5
        [alert] = engine.get_active_alerts()

        clock.advance(seconds=61)
        store.record("security.failed_logins", 1)
        await engine.flush_actions()

        assert alert.state == AlertState.RESOLVED
        assert engine.get_active_alerts() == []

    @pytest.mark.asyncio
    async def test_anomaly_rule_through_engine(self, clock):
        """The incoming sample is part of its own history and still stands out."""
        from panelwatch.monitoring.types import AlertState, Rule

        store, engine = _engine(clock)
        engine.rules.add_rule(Rule(
            name="latency.anomaly",
            metric_pattern="bot.latency",
            condition="anomaly",
            params={"sensitivity": 0.95},
            actions=["log"],
        ))

        for value in [45, 55] * 10:  # mean 50, stddev 5
            store.record("bot.latency", value)
            clock.advance(minutes=1)
        assert engine.get_alert_history() == []

        store.record("bot.latency", 51)
        clock.advance(minutes=1)
        assert engine.get_alert_history() == []

        store.record("bot.latency", 80)
        [alert] = engine.get_active_alerts()
        assert alert.value == 80

        clock.advance(minutes=1)
        store.record("bot.latency", 51)
        await engine.flush_actions()

        assert alert.state == AlertState.RESOLVED
        assert engine.get_active_alerts() == []


class TestAlertActions:
    """Test action execution and isolation."""

    @pytest.mark.asyncio
    async def test_failing_action_does_not_block_others(self, clock, notifier, audit):
        store, engine = _engine(clock, notifier, audit)

        async def broken(alert):
            raise ConnectionError("socket closed")

        engine.actions.register_handler("notify", broken)
        engine.rules.add_rule(_threshold_rule(actions=["notify", "log", "block", "bogus"]))

        store.record("queue.depth", 150)
        await engine.flush_actions()

        stats = engine.actions.get_stats()
        assert stats["actions_failed"] == 1
        assert stats["unknown_actions"] == 1
        assert stats["actions_executed"] == 2
        assert audit.kinds() == ["alert.block", "alert.triggered"]
        assert len(engine.get_active_alerts()) == 1

    @pytest.mark.asyncio
    async def test_notification_targets(self, clock, notifier):
        from panelwatch.monitoring.types import Alert, AlertSeverity

        _, engine = _engine(clock, notifier)
        alert = Alert(rule_name="r", metric_name="m", severity=AlertSeverity.CRITICAL, threshold=5)

        await engine.actions.execute_all(alert, ["notify.admin", "notify.all", "notify.sms"])

        targets = [(n.target, n.data["channel"]) for n in notifier.notifications]
        assert targets == [("admin", "default"), ("all", "default"), ("admin", "sms")]
        assert "Threshold: 5" in notifier.notifications[0].message

    @pytest.mark.asyncio
    async def test_create_incident_audited(self, clock, audit):
        from panelwatch.monitoring.types import Alert

        _, engine = _engine(clock, audit=audit)
        alert = Alert(rule_name="r", metric_name="m")

        await engine.actions.execute(alert, "create.incident")

        assert audit.events[0][0] == "incident.created"
        assert audit.events[0][1]["alert_id"] == alert.id

    @pytest.mark.asyncio
    async def test_audit_actions_with_default_sinks(self, clock):
        store, engine = _engine(clock)
        engine.rules.add_rule(_threshold_rule(actions=["block", "create.incident"]))

        store.record("queue.depth", 150)
        clock.advance(minutes=1)
        store.record("queue.depth", 1)
        await engine.flush_actions()

        actions = engine.actions.get_stats()
        assert actions["actions_executed"] == 4
        assert actions["actions_failed"] == 0
        assert engine.get_stats()["audit_errors"] == 0


# =============================================================================
# Escalation Tests
# =============================================================================

def _critical_policy(levels=(0, 5, 15, 60), cooldown=30):
    from panelwatch.monitoring.types import EscalationLevel, EscalationPolicy

    return EscalationPolicy(
        severity="critical",
        levels=[EscalationLevel(timedelta(minutes=m), [f"level.{i}"]) for i, m in enumerate(levels)],
        max_levels=len(levels),
        cooldown=timedelta(minutes=cooldown),
    )


def _active_alert(clock, severity="critical"):
    from panelwatch.monitoring.types import Alert, AlertSeverity, AlertState

    return Alert(
        rule_name="system.cpu.critical",
        metric_name="system.cpu",
        state=AlertState.ACTIVE,
        severity=AlertSeverity(severity),
        first_occurrence=clock(),
        last_occurrence=clock(),
    )


class TestEscalation:
    """Test the escalation scheduler."""

    def _scheduler(self, clock):
        from panelwatch.monitoring.alerting.escalation import EscalationScheduler

        fired = []

        async def run_actions(alert, actions):
            fired.append((clock.elapsed(), actions))

        return EscalationScheduler(run_actions, clock=clock), fired

    @pytest.mark.asyncio
    async def test_four_levels_respect_cooldown(self, clock):
        scheduler, fired = self._scheduler(clock)
        scheduler.add_policy(_critical_policy())
        alert = _active_alert(clock)

        assert scheduler.start(alert)
        for _ in range(4 * 60):
            await scheduler.process_due()
            clock.advance(minutes=1)

        times = [elapsed for elapsed, _ in fired]
        assert times == [
            timedelta(0),
            timedelta(minutes=30),
            timedelta(minutes=60),
            timedelta(minutes=120),
        ]
        assert [actions for _, actions in fired] == [
            ["level.0"], ["level.1"], ["level.2"], ["level.3"],
        ]
        assert all(b - a >= timedelta(minutes=30) for a, b in zip(times, times[1:]))
        assert alert.escalation_level == 4
        assert scheduler.pending == 0

    @pytest.mark.asyncio
    async def test_fire_inside_cooldown_is_deferred(self, clock):
        scheduler, fired = self._scheduler(clock)
        scheduler.add_policy(_critical_policy(levels=(0, 5)))
        alert = _active_alert(clock)
        scheduler.start(alert)

        assert await scheduler.process_due() == 1

        clock.advance(minutes=5)
        assert await scheduler.process_due() == 0
        assert alert.escalation_level == 1
        assert scheduler.get_stats()["deferred"] == 1
        assert scheduler.next_due() == clock.start + timedelta(minutes=30)

        clock.advance(minutes=24)
        assert await scheduler.process_due() == 0

        clock.advance(minutes=1)
        assert await scheduler.process_due() == 1
        assert alert.escalation_level == 2
        assert len(fired) == 2

    @pytest.mark.asyncio
    async def test_resolved_alert_stops_escalating(self, clock):
        from panelwatch.monitoring.types import AlertState

        scheduler, fired = self._scheduler(clock)
        scheduler.add_policy(_critical_policy(cooldown=0))
        alert = _active_alert(clock)
        scheduler.start(alert)

        await scheduler.process_due()
        alert.state = AlertState.RESOLVED

        clock.advance(minutes=5)
        assert await scheduler.process_due() == 0
        assert len(fired) == 1
        assert scheduler.get_stats()["aborted"] == 1

    def test_no_policy_for_severity(self, clock):
        scheduler, _ = self._scheduler(clock)
        scheduler.add_policy(_critical_policy())

        assert not scheduler.start(_active_alert(clock, severity="info"))
        assert scheduler.pending == 0

    @pytest.mark.asyncio
    async def test_engine_starts_escalation(self, clock, notifier):
        from panelwatch.monitoring.alerting.defaults import default_escalation_policies

        store, engine = _engine(clock, notifier)
        for policy in default_escalation_policies():
            engine.escalation.add_policy(policy)
        engine.rules.add_rule(_threshold_rule(
            severity="critical", actions=["notify", "escalate"],
        ))

        store.record("queue.depth", 150)
        await engine.flush_actions()
        assert engine.escalation.pending == 1

        assert await engine.escalation.process_due() == 1
        [alert] = engine.get_active_alerts()
        assert alert.escalation_level == 1
        assert len(notifier.notifications) == 2

        clock.advance(minutes=1)
        store.record("queue.depth", 1)
        assert engine.escalation.pending == 0
        await engine.flush_actions()


# =============================================================================
# Suppression Tests
# =============================================================================

class TestSuppressionRegistry:
    """Test time-boxed rule suppression."""

    def test_expiry_boundary(self, clock):
        from panelwatch.monitoring.alerting.suppression import SuppressionRegistry

        registry = SuppressionRegistry(clock=clock)
        registry.suppress("system.cpu.warning", timedelta(minutes=10))

        clock.advance(minutes=9, seconds=59)
        assert registry.is_suppressed("system.cpu.warning")

        clock.advance(seconds=1)
        assert not registry.is_suppressed("system.cpu.warning")
        assert len(registry) == 0

    def test_unsuppress(self, clock):
        from panelwatch.monitoring.alerting.suppression import SuppressionRegistry

        registry = SuppressionRegistry(clock=clock)
        registry.suppress("r")

        assert registry.unsuppress("r")
        assert not registry.unsuppress("r")
        assert not registry.is_suppressed("r")

    def test_default_duration_is_one_hour(self, clock):
        from panelwatch.monitoring.alerting.suppression import SuppressionRegistry

        registry = SuppressionRegistry(clock=clock)
        suppression = registry.suppress("r")

        assert suppression.expires_at == clock() + timedelta(hours=1)

    def test_cleanup_expired(self, clock):
        from panelwatch.monitoring.alerting.suppression import SuppressionRegistry

        registry = SuppressionRegistry(clock=clock)
        registry.suppress("short", timedelta(minutes=1))
        registry.suppress("long", timedelta(hours=2))
        clock.advance(minutes=5)

        assert registry.cleanup_expired() == 1
        assert [s.rule_name for s in registry.active()] == ["long"]


# =============================================================================
# Retention, Reporting and Persistence Tests
# =============================================================================

class TestAlertEngineMaintenance:
    """Test sweeping, statistics and history persistence."""

    def test_sweep_purges_old_resolved_alerts(self, clock):
        store, engine = _engine(clock)
        engine.rules.add_rule(_threshold_rule())
        engine.rules.add_rule(_threshold_rule(name="other.high", pattern="other"))

        store.record("queue.depth", 150)
        store.record("queue.depth", 1)
        store.record("other", 150)
        engine.suppressions.suppress("unused", timedelta(days=1))

        clock.advance(days=7, seconds=1)

        assert engine.sweep() == 1
        [remaining] = engine.get_alert_history()
        assert remaining.metric_name == "other"
        assert len(engine.suppressions) == 0

    def test_statistics(self, clock):
        store, engine = _engine(clock)
        engine.rules.add_rule(_threshold_rule())
        engine.rules.add_rule(_threshold_rule(name="other.high", pattern="other", severity="critical"))

        store.record("queue.depth", 150)
        clock.advance(seconds=40)
        store.record("queue.depth", 1)
        store.record("other", 150)

        stats = engine.get_statistics()

        assert stats["total_alerts"] == 2
        assert stats["by_severity"] == {"warning": 1, "critical": 1}
        assert stats["by_rule"] == {"queue.high": 1, "other.high": 1}
        assert stats["avg_duration_seconds"] == 40.0
        assert stats["resolution_rate"] == 50.0

    def test_history_and_severity_queries(self, clock):
        store, engine = _engine(clock)
        engine.rules.add_rule(_threshold_rule(pattern="*", severity="warning"))

        store.record("first", 150)
        clock.advance(seconds=1)
        store.record("second", 150)

        history = engine.get_alert_history(limit=1)
        assert [a.metric_name for a in history] == ["second"]
        assert len(engine.get_alerts_by_severity("warning")) == 2
        assert engine.get_alerts_by_severity("critical") == []

        status = engine.get_status()
        assert status["active_alerts"] == 2
        assert status["warning_alerts"] == 2

    @pytest.mark.asyncio
    async def test_history_round_trip(self, clock, tmp_path):
        from panelwatch.monitoring.types import AlertState

        store, engine = _engine(clock)
        engine.rules.add_rule(_threshold_rule())
        engine.suppressions.suppress("something", timedelta(hours=1))
        store.record("queue.depth", 150)
        await engine.flush_actions()

        path = tmp_path / "alerts" / "alert-history.json"
        await engine.save_history(path)

        store2, restored = _engine(clock)
        restored.rules.add_rule(_threshold_rule())
        assert await restored.load_history(path) == 1
        assert restored.suppressions.is_suppressed("something")

        [alert] = restored.get_active_alerts()
        store2.record("queue.depth", 1)
        await restored.flush_actions()

        assert alert.state == AlertState.RESOLVED
        assert len(restored.get_alert_history()) == 1

    @pytest.mark.asyncio
    async def test_load_missing_history(self, clock, tmp_path):
        _, engine = _engine(clock)
        assert await engine.load_history(tmp_path / "none.json") == 0

    @pytest.mark.asyncio
    async def test_loaded_alert_keeps_escalating(self, clock, tmp_path):
        from panelwatch.monitoring.alerting.defaults import default_escalation_policies

        def build():
            store, engine = _engine(clock)
            for policy in default_escalation_policies():
                engine.escalation.add_policy(policy)
            engine.rules.add_rule(_threshold_rule(
                severity="critical", actions=["log", "escalate"],
            ))
            return store, engine

        store, engine = build()
        store.record("queue.depth", 150)
        await engine.escalation.process_due()
        await engine.flush_actions()

        path = tmp_path / "alert-history.json"
        await engine.save_history(path)

        clock.advance(minutes=5)
        _, restored = build()
        await restored.load_history(path)
        [alert] = restored.get_active_alerts()

        assert alert.escalation_level == 1
        assert restored.escalation.pending == 1

        # Level 2 is due at 5m but the 30m cooldown defers it
        assert await restored.escalation.process_due() == 0

        clock.advance(minutes=25)
        assert await restored.escalation.process_due() == 1
        assert alert.escalation_level == 2

    @pytest.mark.asyncio
    async def test_loaded_alert_without_escalate_action(self, clock, tmp_path):
        from panelwatch.monitoring.alerting.defaults import default_escalation_policies

        store, engine = _engine(clock)
        engine.rules.add_rule(_threshold_rule(severity="critical"))
        store.record("queue.depth", 150)
        await engine.flush_actions()

        path = tmp_path / "alert-history.json"
        await engine.save_history(path)

        _, restored = _engine(clock)
        for policy in default_escalation_policies():
            restored.escalation.add_policy(policy)
        restored.rules.add_rule(_threshold_rule(severity="critical"))
        await restored.load_history(path)

        assert restored.escalation.pending == 0


# =============================================================================
# Monitoring Manager Tests
# =============================================================================

def _manager(clock, tmp_path=None, **overrides):
    from panelwatch.core.config import MonitoringConfig
    from panelwatch.monitoring.manager import MonitoringManager

    settings = {
        "enable_default_collectors": False,
        "enable_default_rules": False,
        "enable_default_escalations": False,
        "persist_rollups": False,
    }
    settings.update(overrides)
    return MonitoringManager(MonitoringConfig(**settings), clock=clock)


class TestMonitoringManager:
    """Test the manager facade."""

    def test_defaults_loaded(self, clock):
        from panelwatch.monitoring.types import AlertSeverity

        manager = _manager(
            clock,
            enable_default_rules=True,
            enable_default_escalations=True,
        )

        names = {r.name for r in manager.get_rules()}
        assert {"system.cpu.critical", "bot.disconnected", "system.anomaly.detection"} <= names

        policy = manager.alerts.escalation.get_policy(AlertSeverity.CRITICAL)
        assert policy.max_levels == 4
        assert policy.cooldown == timedelta(minutes=30)

    def test_default_collectors_registered(self, clock):
        manager = _manager(clock, enable_default_collectors=True)

        names = manager.collectors.names
        assert "system.cpu" in names
        assert "bot.messages" in names

    def test_record_and_query(self, clock):
        manager = _manager(clock)
        manager.record("bot.messages", {"total": 3, "per_minute": 1})

        [sample] = manager.get_metrics("bot.messages")
        assert sample.value["total"] == 3
        assert manager.get_metrics("bot.messages", timedelta(0)) == []

    def test_rule_operations(self, clock):
        manager = _manager(clock)
        manager.add_rule(_threshold_rule())

        assert manager.disable_rule("queue.high")
        manager.record("queue.depth", 500)
        assert manager.get_active_alerts() == []

        assert manager.enable_rule("queue.high")
        manager.update_rule("queue.high", params={"threshold": 1000, "operator": ">="})
        manager.record("queue.depth", 500)
        assert manager.get_active_alerts() == []

        assert manager.remove_rule("queue.high")
        assert manager.get_rules() == []

    def test_suppression_operations(self, clock):
        manager = _manager(clock)

        manager.suppress_alert("queue.high", timedelta(minutes=5))
        assert manager.is_alert_suppressed("queue.high")
        assert manager.unsuppress_alert("queue.high")
        assert not manager.is_alert_suppressed("queue.high")

    def test_track_event(self, clock):
        manager = _manager(clock)
        manager.track_event("bot.commands", 2)

        assert "bot.commands" in manager.collectors.names
        assert manager.activity["bot.commands"].snapshot()["total"] == 2

    def test_status(self, clock):
        manager = _manager(clock)
        manager.record("a", 1)
        manager.record("a", 2)

        status = manager.get_status()

        assert status["metrics"]["metrics_count"] == 1
        assert status["metrics"]["total_data_points"] == 2
        assert set(status["metrics"]["aggregations"]) == {"1m", "1h", "1d"}
        assert status["alerts"]["active_alerts"] == 0

    def test_export_json(self, clock):
        manager = _manager(clock)
        manager.record("system.cpu", {"usage": 12.5})

        data = json.loads(manager.export_metrics("json"))

        assert data["metrics"]["system.cpu"][0]["value"] == {"usage": 12.5}
        assert "status" in data

    def test_export_csv(self, clock):
        manager = _manager(clock)
        manager.record("system.cpu", {"usage": 12.5, "cores": 4})
        manager.record("bot.uptime", 42)

        rows = list(csv.reader(io.StringIO(manager.export_metrics("csv"))))

        assert rows[0] == ["timestamp", "metric", "value"]
        assert rows[1][1:] == ["system.cpu", '{"usage": 12.5, "cores": 4}']
        assert rows[2][1:] == ["bot.uptime", "42"]

    def test_export_unknown_format(self, clock):
        manager = _manager(clock)

        with pytest.raises(ValueError):
            manager.export_metrics("xml")

    @pytest.mark.asyncio
    async def test_aggregated_metrics(self, clock):
        manager = _manager(clock)
        manager.record("queue.depth", 10)
        manager.record("queue.depth", 30)

        await manager.aggregator.run()
        [record] = await manager.get_aggregated_metrics("queue.depth", "1h")

        assert record.stats["avg"] == 20.0

    @pytest.mark.asyncio
    async def test_lifecycle_persists_history(self, clock, tmp_path):
        history = tmp_path / "alert-history.json"
        manager = _manager(clock, history_path=history)
        manager.add_rule(_threshold_rule())

        await manager.initialize()
        manager.record("queue.depth", 150)
        await manager.shutdown()

        assert history.exists()
        saved = json.loads(history.read_text())
        assert saved["alerts"][0]["state"] == "active"

        restarted = _manager(clock, history_path=history)
        restarted.add_rule(_threshold_rule())
        await restarted.initialize()
        try:
            assert len(restarted.get_active_alerts()) == 1
        finally:
            await restarted.shutdown()


# =============================================================================
# Notification Sink Tests
# =============================================================================

def _notification():
    from panelwatch.monitoring.types import AlertSeverity, Notification

    return Notification(
        type="alert",
        severity=AlertSeverity.CRITICAL,
        title="CRITICAL: CPU usage critical",
        message="Metric: system.cpu",
        data={"alert_id": "alert_1"},
    )


class TestNotificationSinks:
    """Test log, webhook and composite delivery."""

    @pytest.mark.asyncio
    async def test_webhook_posts_json(self):
        import httpx

        from panelwatch.monitoring.alerting.channels import WebhookNotificationSink

        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(204)

        sink = WebhookNotificationSink(
            "https://panel.local/hooks/alerts",
            headers={"X-Panel-Token": "abc"},
            transport=httpx.MockTransport(handler),
        )

        assert await sink.send(_notification())

        [request] = seen
        assert request.method == "POST"
        assert request.headers["X-Panel-Token"] == "abc"
        body = json.loads(request.content)
        assert body["severity"] == "critical"
        assert body["data"]["alert_id"] == "alert_1"

    @pytest.mark.asyncio
    async def test_webhook_error_status(self):
        import httpx

        from panelwatch.monitoring.alerting.channels import WebhookNotificationSink

        sink = WebhookNotificationSink(
            "https://panel.local/hooks/alerts",
            transport=httpx.MockTransport(lambda request: httpx.Response(503)),
        )

        assert not await sink.send(_notification())

    @pytest.mark.asyncio
    async def test_webhook_connection_error(self):
        import httpx

        from panelwatch.monitoring.alerting.channels import WebhookNotificationSink

        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        sink = WebhookNotificationSink(
            "https://panel.local/hooks/alerts",
            transport=httpx.MockTransport(handler),
        )

        assert not await sink.send(_notification())

    @pytest.mark.asyncio
    async def test_composite(self, notifier):
        from panelwatch.monitoring.alerting.channels import (
            CompositeNotificationSink,
            LogNotificationSink,
            NotificationSink,
        )

        class Broken(NotificationSink):
            async def send(self, notification):
                raise RuntimeError("down")

        any_sink = CompositeNotificationSink([Broken(), notifier])
        all_sink = CompositeNotificationSink([Broken(), LogNotificationSink()], require_all=True)

        assert await any_sink.send(_notification())
        assert len(notifier.notifications) == 1
        assert not await all_sink.send(_notification())

    def test_manager_wires_webhook(self, clock):
        from panelwatch.monitoring.alerting.channels import (
            CompositeNotificationSink,
            WebhookNotificationSink,
        )

        manager = _manager(clock, webhook_url="https://panel.local/hooks/alerts")

        sink = manager.context.notifier
        assert isinstance(sink, CompositeNotificationSink)
        assert any(isinstance(s, WebhookNotificationSink) for s in sink.sinks)

    @pytest.mark.asyncio
    async def test_log_audit_sink(self):
        from panelwatch.monitoring.alerting.channels import LogAuditSink

        sink = LogAuditSink()

        await sink.log("alert.triggered", {"alert_id": "alert_1", "severity": "critical"})
        await sink.log("alert.block", {"event": "login", "alert_id": "alert_2"})

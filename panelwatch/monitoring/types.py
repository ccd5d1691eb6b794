"""
PanelWatch Monitoring Types

Dataclasses for metric samples, rollups, alert rules, alerts,
escalation policies and suppressions.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union


MetricValue = Union[int, float, Dict[str, Any]]


def utcnow() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def extract_value(value: Any, key: Optional[str] = None) -> float:
    """
    Reduce a sample value to a scalar.

    Numbers are returned as-is. For dict values the field named by ``key``
    wins when it is numeric; otherwise the first numeric field in insertion
    order is used. Anything else yields 0.
    """
    if _is_number(value):
        return float(value)

    if isinstance(value, dict):
        if key is not None and _is_number(value.get(key)):
            return float(value[key])
        for v in value.values():
            if _is_number(v):
                return float(v)

    return 0.0


def _iso(ts: Optional[datetime]) -> Optional[str]:
    return ts.isoformat() if ts else None


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


# === Metrics ===

@dataclass(frozen=True)
class MetricSample:
    """One timestamped value produced by a collector."""
    name: str
    value: MetricValue
    timestamp: datetime = field(default_factory=utcnow)
    collection_duration_ms: float = 0.0

    def scalar(self, key: Optional[str] = None) -> float:
        """Numeric view of the value."""
        return extract_value(self.value, key)

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "value": self.value,
            "timestamp": self.timestamp.isoformat(),
            "collection_duration_ms": self.collection_duration_ms,
        }


@dataclass
class AggregationWindow:
    """A named rollup window and the statistics it computes."""
    name: str
    interval: timedelta
    functions: List[str] = field(default_factory=lambda: ["avg", "min", "max", "sum", "count"])
    last_run: Optional[datetime] = None

    def is_due(self, now: datetime) -> bool:
        """Check if the window's interval has elapsed since its last run."""
        return self.last_run is None or now - self.last_run >= self.interval


@dataclass
class AggregationRecord:
    """Statistics over one metric for one window period."""
    metric: str
    window: str
    timestamp: datetime
    period: timedelta
    count: int
    stats: Dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "metric": self.metric,
            "window": self.window,
            "timestamp": self.timestamp.isoformat(),
            "period_seconds": self.period.total_seconds(),
            "count": self.count,
            **{name: value for name, value in self.stats.items() if name != "count"},
            "stats": dict(self.stats),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AggregationRecord":
        return cls(
            metric=data["metric"],
            window=data["window"],
            timestamp=datetime.fromisoformat(data["timestamp"]),
            period=timedelta(seconds=data.get("period_seconds", 0.0)),
            count=data.get("count", 0),
            stats=dict(data.get("stats", {})),
        )


# === Rules ===

class ConditionKind(str, Enum):
    """Strategies for evaluating a rule against a sample."""
    THRESHOLD = "threshold"
    TREND = "trend"
    RATE = "rate"
    ANOMALY = "anomaly"
    CUSTOM = "custom"


class ComparisonOperator(str, Enum):
    """Threshold comparison operators."""
    GREATER_THAN = ">"
    GREATER_EQUAL = ">="
    LESS_THAN = "<"
    LESS_EQUAL = "<="
    EQUAL = "=="
    NOT_EQUAL = "!="

    @classmethod
    def parse(cls, value: Union[str, "ComparisonOperator"]) -> "ComparisonOperator":
        """Accept symbols (">=") as well as mnemonic aliases ("gte")."""
        if isinstance(value, cls):
            return value
        aliases = {
            "gt": cls.GREATER_THAN,
            "gte": cls.GREATER_EQUAL,
            "lt": cls.LESS_THAN,
            "lte": cls.LESS_EQUAL,
            "eq": cls.EQUAL,
            "ne": cls.NOT_EQUAL,
        }
        if value in aliases:
            return aliases[value]
        return cls(value)

    def compare(self, value: float, threshold: float) -> bool:
        ops = {
            ComparisonOperator.GREATER_THAN: lambda v, t: v > t,
            ComparisonOperator.GREATER_EQUAL: lambda v, t: v >= t,
            ComparisonOperator.LESS_THAN: lambda v, t: v < t,
            ComparisonOperator.LESS_EQUAL: lambda v, t: v <= t,
            ComparisonOperator.EQUAL: lambda v, t: v == t,
            ComparisonOperator.NOT_EQUAL: lambda v, t: v != t,
        }
        return ops[self](value, threshold)


class TrendType(str, Enum):
    """Direction a trend rule looks for."""
    INCREASING = "increasing"
    DECREASING = "decreasing"
    STABLE = "stable"


class AlertSeverity(str, Enum):
    """Alert severity levels."""
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"

    @property
    def priority(self) -> int:
        """Get priority (higher = more severe)."""
        return {"info": 1, "warning": 2, "error": 3, "critical": 4}.get(self.value, 0)


class AlertState(str, Enum):
    """Alert lifecycle states."""
    PENDING = "pending"        # Condition true, waiting out the hysteresis duration
    ACTIVE = "active"          # Condition held long enough, actions executed
    RESOLVED = "resolved"      # Condition went false after pending/active


@dataclass
class Rule:
    """A declarative alert condition bound to a metric pattern."""
    name: str
    metric_pattern: str
    condition: ConditionKind = ConditionKind.THRESHOLD
    params: Dict[str, Any] = field(default_factory=dict)

    # Hysteresis: how long the condition must hold before the alert is active
    duration: timedelta = field(default_factory=timedelta)

    severity: AlertSeverity = AlertSeverity.WARNING
    description: str = ""
    actions: List[str] = field(default_factory=list)

    # Field of a dict-valued sample to read; first numeric field when unset
    value_key: Optional[str] = None

    # Predicate for CUSTOM rules: (value, sample) -> bool
    custom_check: Optional[Callable[[Any, MetricSample], bool]] = None

    enabled: bool = True
    created_at: datetime = field(default_factory=utcnow)

    def __post_init__(self):
        self.condition = ConditionKind(self.condition)
        self.severity = AlertSeverity(self.severity)
        self.params = dict(self.params)
        if "operator" in self.params:
            self.params["operator"] = ComparisonOperator.parse(self.params["operator"])

    @property
    def threshold(self) -> Optional[float]:
        return self.params.get("threshold")

    def to_dict(self) -> dict:
        params = {
            k: (v.value if isinstance(v, Enum) else v) for k, v in self.params.items()
        }
        return {
            "name": self.name,
            "metric_pattern": self.metric_pattern,
            "condition": self.condition.value,
            "params": params,
            "duration_seconds": self.duration.total_seconds(),
            "severity": self.severity.value,
            "description": self.description,
            "actions": list(self.actions),
            "value_key": self.value_key,
            "custom": self.custom_check is not None,
            "enabled": self.enabled,
            "created_at": self.created_at.isoformat(),
        }


# === Alerts ===

@dataclass
class Alert:
    """One alert instance for a (rule, metric) key."""
    rule_name: str
    metric_name: str
    id: str = field(default_factory=lambda: f"alert_{uuid.uuid4().hex[:16]}")

    state: AlertState = AlertState.PENDING
    severity: AlertSeverity = AlertSeverity.WARNING
    description: str = ""

    # Occurrences
    first_occurrence: datetime = field(default_factory=utcnow)
    last_occurrence: datetime = field(default_factory=utcnow)
    occurrence_count: int = 1

    # Snapshot of the triggering sample
    value: Any = None
    threshold: Optional[float] = None

    # Escalation
    escalation_level: int = 0
    last_escalation_time: Optional[datetime] = None

    activated_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    duration: Optional[timedelta] = None

    @property
    def key(self) -> tuple:
        return (self.rule_name, self.metric_name)

    @property
    def is_open(self) -> bool:
        """Pending or active (not yet resolved)."""
        return self.state in (AlertState.PENDING, AlertState.ACTIVE)

    def touch(self, now: datetime) -> None:
        """Record another true evaluation."""
        self.last_occurrence = now
        self.occurrence_count += 1

    def resolve(self, now: datetime) -> None:
        """Transition to resolved state."""
        self.state = AlertState.RESOLVED
        self.resolved_at = now
        self.duration = now - self.first_occurrence

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "rule_name": self.rule_name,
            "metric_name": self.metric_name,
            "state": self.state.value,
            "severity": self.severity.value,
            "description": self.description,
            "first_occurrence": self.first_occurrence.isoformat(),
            "last_occurrence": self.last_occurrence.isoformat(),
            "occurrence_count": self.occurrence_count,
            "value": self.value,
            "threshold": self.threshold,
            "escalation_level": self.escalation_level,
            "last_escalation_time": _iso(self.last_escalation_time),
            "activated_at": _iso(self.activated_at),
            "resolved_at": _iso(self.resolved_at),
            "duration_seconds": self.duration.total_seconds() if self.duration is not None else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Alert":
        duration = data.get("duration_seconds")
        return cls(
            id=data["id"],
            rule_name=data["rule_name"],
            metric_name=data["metric_name"],
            state=AlertState(data["state"]),
            severity=AlertSeverity(data["severity"]),
            description=data.get("description", ""),
            first_occurrence=datetime.fromisoformat(data["first_occurrence"]),
            last_occurrence=datetime.fromisoformat(data["last_occurrence"]),
            occurrence_count=data.get("occurrence_count", 1),
            value=data.get("value"),
            threshold=data.get("threshold"),
            escalation_level=data.get("escalation_level", 0),
            last_escalation_time=_parse_ts(data.get("last_escalation_time")),
            activated_at=_parse_ts(data.get("activated_at")),
            resolved_at=_parse_ts(data.get("resolved_at")),
            duration=timedelta(seconds=duration) if duration is not None else None,
        )


@dataclass
class EscalationLevel:
    """A single step of an escalation policy."""
    delay: timedelta
    actions: List[str] = field(default_factory=list)


@dataclass
class EscalationPolicy:
    """Severity-specific sequence of timed follow-up actions."""
    severity: AlertSeverity
    levels: List[EscalationLevel] = field(default_factory=list)
    max_levels: int = 0
    cooldown: timedelta = field(default_factory=timedelta)

    def __post_init__(self):
        self.severity = AlertSeverity(self.severity)
        if self.max_levels <= 0:
            self.max_levels = len(self.levels)


@dataclass
class Suppression:
    """A time-boxed manual mute of a rule."""
    rule_name: str
    expires_at: datetime
    reason: str = "Manual suppression"
    created_at: datetime = field(default_factory=utcnow)

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def to_dict(self) -> dict:
        return {
            "rule_name": self.rule_name,
            "expires_at": self.expires_at.isoformat(),
            "reason": self.reason,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Suppression":
        return cls(
            rule_name=data["rule_name"],
            expires_at=datetime.fromisoformat(data["expires_at"]),
            reason=data.get("reason", "Manual suppression"),
            created_at=datetime.fromisoformat(data["created_at"]),
        )


@dataclass
class Notification:
    """Payload handed to a notification sink."""
    type: str
    severity: AlertSeverity
    title: str
    message: str
    data: Dict[str, Any] = field(default_factory=dict)
    target: str = "admin"
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict:
        return {
            "type": self.type,
            "severity": self.severity.value,
            "title": self.title,
            "message": self.message,
            "data": self.data,
            "target": self.target,
            "created_at": self.created_at.isoformat(),
        }

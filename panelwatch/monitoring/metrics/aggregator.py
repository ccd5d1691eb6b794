"""
PanelWatch Aggregator

Periodic rollups of raw samples into windowed statistics:
- Named windows (1m / 1h / 1d by default)
- avg, min, max, sum, count, median, p95, p99
- Durable rollup storage with retention pruning
"""

from __future__ import annotations

import asyncio
import math
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence

import structlog

from panelwatch.monitoring.metrics.store import MetricStore
from panelwatch.monitoring.storage.base import RollupStore
from panelwatch.monitoring.types import (
    AggregationRecord, AggregationWindow, extract_value, utcnow,
)

logger = structlog.get_logger(__name__)


def _percentile(values: Sequence[float], p: float) -> float:
    """Nearest-rank percentile: sorted[floor(n * p)], clamped to the last item."""
    ordered = sorted(values)
    idx = int(math.floor(len(ordered) * p))
    return ordered[min(idx, len(ordered) - 1)]


def _median(values: Sequence[float]) -> float:
    """Middle value; the lower of the two middles on even counts."""
    ordered = sorted(values)
    return ordered[(len(ordered) - 1) // 2]


STATISTICS: Dict[str, Callable[[Sequence[float]], float]] = {
    "avg": lambda v: sum(v) / len(v),
    "min": min,
    "max": max,
    "sum": lambda v: float(sum(v)),
    "count": lambda v: float(len(v)),
    "median": _median,
    "p95": lambda v: _percentile(v, 0.95),
    "p99": lambda v: _percentile(v, 0.99),
}


def calculate_statistic(name: str, values: Sequence[float]) -> float:
    """Compute one named statistic; unknown names and empty input yield 0."""
    func = STATISTICS.get(name)
    if func is None or not values:
        return 0.0
    return float(func(values))


class Aggregator:
    """
    Rolls up the metric store on its own timer.

    Reads a snapshot of the store, so collection keeps appending while
    rollups are computed and written.
    """

    def __init__(
        self,
        store: MetricStore,
        rollup_store: RollupStore,
        interval: float = 60.0,
        retention: timedelta = timedelta(days=7),
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.rollup_store = rollup_store
        self.interval = interval
        self.retention = retention
        self.clock = clock

        self._windows: Dict[str, AggregationWindow] = {}

        # Background task
        self._aggregation_task: Optional[asyncio.Task] = None
        self._shutdown_event = asyncio.Event()

        self._stats = {
            "runs": 0,
            "records_written": 0,
            "write_errors": 0,
            "prune_errors": 0,
        }

        self._initialized = False

    async def initialize(self) -> None:
        """Initialize rollup storage and start the aggregation loop."""
        if self._initialized:
            return

        logger.info("Initializing Aggregator", windows=list(self._windows))

        await self.rollup_store.initialize()
        self._shutdown_event.clear()
        self._aggregation_task = asyncio.create_task(self._aggregation_loop())

        self._initialized = True

    async def shutdown(self) -> None:
        """Stop the aggregation loop and close rollup storage."""
        logger.info("Shutting down Aggregator")

        self._shutdown_event.set()

        if self._aggregation_task:
            self._aggregation_task.cancel()
            try:
                await self._aggregation_task
            except asyncio.CancelledError:
                pass
            self._aggregation_task = None

        await self.rollup_store.shutdown()
        self._initialized = False

    # === Windows ===

    def add_window(
        self,
        name: str,
        interval: timedelta,
        functions: Sequence[str] = ("avg", "min", "max", "sum", "count"),
    ) -> AggregationWindow:
        """Add (or replace) an aggregation window."""
        unknown = [f for f in functions if f not in STATISTICS]
        if unknown:
            logger.warning("Unknown aggregation functions will yield 0", window=name, functions=unknown)

        window = AggregationWindow(name=name, interval=interval, functions=list(functions))
        self._windows[name] = window
        return window

    def remove_window(self, name: str) -> bool:
        return self._windows.pop(name, None) is not None

    @property
    def windows(self) -> List[AggregationWindow]:
        return list(self._windows.values())

    # === Aggregation ===

    async def _aggregation_loop(self) -> None:
        """Background aggregation loop."""
        while not self._shutdown_event.is_set():
            try:
                await asyncio.sleep(self.interval)
                await self.run()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Aggregation error: {e}")

    async def run(self, now: Optional[datetime] = None) -> List[AggregationRecord]:
        """Aggregate every window whose interval has elapsed."""
        now = now or self.clock()
        self.store.evict_expired()

        due = [w for w in self._windows.values() if w.is_due(now)]
        if not due:
            return []

        snapshot = self.store.snapshot()
        records: List[AggregationRecord] = []

        for window in due:
            records.extend(self._aggregate_window(window, snapshot, now))
            window.last_run = now

        self._stats["runs"] += 1
        await self._persist(records, now)
        return records

    def _aggregate_window(
        self,
        window: AggregationWindow,
        snapshot: Dict[str, list],
        now: datetime,
    ) -> List[AggregationRecord]:
        cutoff = now - window.interval
        records = []

        for metric, series in snapshot.items():
            period = [s for s in series if s.timestamp > cutoff]
            if not period:
                continue

            values = [v for v in (extract_value(s.value) for s in period) if not math.isnan(v)]

            records.append(AggregationRecord(
                metric=metric,
                window=window.name,
                timestamp=now,
                period=window.interval,
                count=len(period),
                stats={func: calculate_statistic(func, values) for func in window.functions},
            ))

        return records

    async def _persist(self, records: List[AggregationRecord], now: datetime) -> None:
        """Append records and prune old rollups; failures never touch memory state."""
        for record in records:
            try:
                await self.rollup_store.append(record)
                self._stats["records_written"] += 1
            except Exception as e:
                self._stats["write_errors"] += 1
                logger.error(
                    f"Failed to persist rollup: {e}",
                    metric=record.metric,
                    window=record.window,
                )

        try:
            await self.rollup_store.prune(now - self.retention)
        except Exception as e:
            self._stats["prune_errors"] += 1
            logger.error(f"Failed to prune rollups: {e}")

    # === Query ===

    async def get_aggregated(
        self,
        metric: str,
        window: str = "1m",
        time_range: timedelta = timedelta(hours=24),
    ) -> List[AggregationRecord]:
        """Get rollups for a metric and window newer than ``time_range``."""
        since = self.clock() - time_range
        return await self.rollup_store.query(metric, window, since=since)

    def get_stats(self) -> Dict[str, Any]:
        """Get aggregator statistics."""
        return {
            **self._stats,
            "windows": {
                w.name: {
                    "interval_seconds": w.interval.total_seconds(),
                    "functions": list(w.functions),
                    "last_run": w.last_run.isoformat() if w.last_run else None,
                }
                for w in self._windows.values()
            },
            "retention_days": self.retention.total_seconds() / 86400,
        }

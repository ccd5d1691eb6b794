"""
PanelWatch Metric Store

Bounded in-memory time series per metric name:
- Append-only series ordered by collection time
- Retention eviction on every write
- Store-wide eviction for series that stopped reporting
- Synchronous push of stored samples to subscribers
"""

from __future__ import annotations

import threading
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

import structlog

from panelwatch.monitoring.types import MetricSample, MetricValue, utcnow

logger = structlog.get_logger(__name__)

SampleListener = Callable[[MetricSample], None]


class MetricStore:
    """
    In-memory metric series with a rolling retention window.

    Every ``store`` call evicts expired samples for that series before
    notifying subscribers, so memory stays bounded regardless of how often
    collectors report.
    """

    def __init__(
        self,
        retention: timedelta = timedelta(hours=1),
        clock: Callable[[], datetime] = utcnow,
    ):
        self.retention = retention
        self.clock = clock

        self._series: Dict[str, List[MetricSample]] = defaultdict(list)
        self._listeners: List[SampleListener] = []

        # Lock for thread safety
        self._lock = threading.RLock()

        self._stats = {
            "samples_stored": 0,
            "samples_evicted": 0,
            "listener_errors": 0,
        }

    # === Subscribers ===

    def subscribe(self, listener: SampleListener) -> None:
        """Register a callback invoked synchronously after each stored sample."""
        self._listeners.append(listener)

    def unsubscribe(self, listener: SampleListener) -> bool:
        if listener in self._listeners:
            self._listeners.remove(listener)
            return True
        return False

    # === Writes ===

    def store(self, sample: MetricSample) -> None:
        """Append a sample, evict expired entries and notify subscribers."""
        cutoff = self.clock() - self.retention

        with self._lock:
            series = self._series[sample.name]
            series.append(sample)

            kept = [s for s in series if s.timestamp > cutoff]
            evicted = len(series) - len(kept)
            if evicted:
                self._series[sample.name] = kept
                self._stats["samples_evicted"] += evicted

            self._stats["samples_stored"] += 1

        for listener in list(self._listeners):
            try:
                listener(sample)
            except Exception as e:
                self._stats["listener_errors"] += 1
                logger.error(
                    f"Sample listener failed: {e}",
                    metric=sample.name,
                    listener=getattr(listener, "__qualname__", repr(listener)),
                )

    def record(
        self,
        name: str,
        value: MetricValue,
        timestamp: Optional[datetime] = None,
        collection_duration_ms: float = 0.0,
    ) -> MetricSample:
        """Build and store a sample in one call."""
        sample = MetricSample(
            name=name,
            value=value,
            timestamp=timestamp or self.clock(),
            collection_duration_ms=collection_duration_ms,
        )
        self.store(sample)
        return sample

    def evict_expired(self) -> int:
        """
        Drop expired samples from every series, and series left empty.

        Returns:
            Number of samples evicted
        """
        cutoff = self.clock() - self.retention
        evicted = 0

        with self._lock:
            for name in list(self._series):
                series = self._series[name]
                kept = [s for s in series if s.timestamp > cutoff]
                evicted += len(series) - len(kept)
                if kept:
                    self._series[name] = kept
                else:
                    del self._series[name]

            self._stats["samples_evicted"] += evicted

        if evicted:
            logger.debug("Evicted expired samples", count=evicted)

        return evicted

    def clear(self, name: Optional[str] = None) -> None:
        with self._lock:
            if name is None:
                self._series.clear()
            else:
                self._series.pop(name, None)

    # === Queries ===

    def get_samples(
        self,
        name: str,
        window: Optional[timedelta] = None,
    ) -> List[MetricSample]:
        """Get samples for a metric, optionally only those inside ``window``."""
        with self._lock:
            series = list(self._series.get(name, ()))

        if window is not None:
            cutoff = self.clock() - window
            series = [s for s in series if s.timestamp > cutoff]

        return series

    def snapshot(self) -> Dict[str, List[MetricSample]]:
        """Copy of every series, safe to read while collection continues."""
        with self._lock:
            return {name: list(series) for name, series in self._series.items()}

    def get_latest(self) -> Dict[str, MetricSample]:
        with self._lock:
            return {name: series[-1] for name, series in self._series.items() if series}

    def metric_names(self) -> List[str]:
        with self._lock:
            return list(self._series.keys())

    def sample_count(self) -> int:
        with self._lock:
            return sum(len(series) for series in self._series.values())

    def get_stats(self) -> Dict[str, Any]:
        """Get store statistics."""
        return {
            **self._stats,
            "series": len(self._series),
            "total_data_points": self.sample_count(),
            "retention_seconds": self.retention.total_seconds(),
            "listeners": len(self._listeners),
        }

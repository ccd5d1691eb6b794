"""
PanelWatch Collector Registry

Named zero-argument producers of metric values, run on a timer:
- Sync or async collectors
- Concurrent execution per cycle
- Per-collector error isolation
- Overlapping cycles are skipped, not queued
"""

from __future__ import annotations

import asyncio
import inspect
import time
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Union

import structlog

from panelwatch.monitoring.metrics.store import MetricStore
from panelwatch.monitoring.types import MetricSample, MetricValue, utcnow

logger = structlog.get_logger(__name__)

CollectorFn = Callable[[], Union[MetricValue, Awaitable[MetricValue]]]


class CollectorRegistry:
    """
    Runs registered collectors and stores what they produce.

    A failing collector is logged and yields no sample for that cycle;
    the other collectors in the cycle are unaffected.
    """

    def __init__(
        self,
        store: MetricStore,
        interval: float = 5.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.interval = interval
        self.clock = clock

        self._collectors: Dict[str, CollectorFn] = {}

        self._cycle_running = False

        # Background task
        self._collection_task: Optional[asyncio.Task] = None
        self._cycle_tasks: Set[asyncio.Task] = set()
        self._shutdown_event = asyncio.Event()

        self._stats = {
            "cycles": 0,
            "cycles_skipped": 0,
            "samples_collected": 0,
            "collector_errors": 0,
            "last_cycle_at": None,
            "last_cycle_duration_ms": 0.0,
        }

        self._initialized = False

    async def initialize(self) -> None:
        """Start the collection loop."""
        if self._initialized:
            return

        logger.info("Initializing Collector Registry", interval=self.interval)

        self._shutdown_event.clear()
        self._collection_task = asyncio.create_task(self._collection_loop())

        self._initialized = True

    async def shutdown(self) -> None:
        """Stop the collection loop and wait for an in-flight cycle."""
        logger.info("Shutting down Collector Registry")

        self._shutdown_event.set()

        if self._collection_task:
            self._collection_task.cancel()
            try:
                await self._collection_task
            except asyncio.CancelledError:
                pass
            self._collection_task = None

        if self._cycle_tasks:
            await asyncio.gather(*self._cycle_tasks, return_exceptions=True)

        self._initialized = False

    # === Registration ===

    def register(self, name: str, collector: CollectorFn) -> None:
        """Register (or replace) a collector."""
        self._collectors[name] = collector
        logger.debug(f"Registered collector: {name}")

    def unregister(self, name: str) -> bool:
        """Remove a collector."""
        if name in self._collectors:
            del self._collectors[name]
            return True
        return False

    @property
    def names(self) -> List[str]:
        return list(self._collectors.keys())

    # === Collection ===

    async def _collection_loop(self) -> None:
        """Launch a cycle every interval without waiting for the previous one."""
        while not self._shutdown_event.is_set():
            try:
                await asyncio.sleep(self.interval)
                task = asyncio.create_task(self.run_cycle())
                self._cycle_tasks.add(task)
                task.add_done_callback(self._cycle_tasks.discard)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Collection loop error: {e}")

    async def run_cycle(self) -> List[MetricSample]:
        """Run every collector once, concurrently."""
        if self._cycle_running:
            self._stats["cycles_skipped"] += 1
            logger.warning("Collection cycle still running, skipping", collectors=len(self._collectors))
            return []

        self._cycle_running = True
        started = time.perf_counter()
        try:
            timestamp = self.clock()
            results = await asyncio.gather(
                *[
                    self._collect(name, collector, timestamp)
                    for name, collector in list(self._collectors.items())
                ]
            )
        finally:
            self._cycle_running = False

        samples = [s for s in results if s is not None]

        self._stats["cycles"] += 1
        self._stats["samples_collected"] += len(samples)
        self._stats["last_cycle_at"] = timestamp
        self._stats["last_cycle_duration_ms"] = (time.perf_counter() - started) * 1000

        return samples

    async def _collect(
        self,
        name: str,
        collector: CollectorFn,
        timestamp: datetime,
    ) -> Optional[MetricSample]:
        """Invoke one collector and store its sample."""
        started = time.perf_counter()
        try:
            value = collector()
            if inspect.isawaitable(value):
                value = await value
        except Exception as e:
            self._stats["collector_errors"] += 1
            logger.error(f"Collector failed: {e}", collector=name, error_type=type(e).__name__)
            return None

        sample = MetricSample(
            name=name,
            value=value,
            timestamp=timestamp,
            collection_duration_ms=(time.perf_counter() - started) * 1000,
        )
        self.store.store(sample)
        return sample

    def get_stats(self) -> Dict[str, Any]:
        """Get collector statistics."""
        last = self._stats["last_cycle_at"]
        return {
            **self._stats,
            "last_cycle_at": last.isoformat() if last else None,
            "collectors": self.names,
            "interval_seconds": self.interval,
            "running": self._initialized,
        }

"""
PanelWatch In-Memory Rollup Storage

Rollup storage for development, testing and single-process deployments.
"""

from __future__ import annotations

import threading
from collections import defaultdict
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from panelwatch.monitoring.storage.base import RollupStore
from panelwatch.monitoring.types import AggregationRecord


class InMemoryRollupStore(RollupStore):
    """
    In-memory rollup storage.

    Suitable for development and single-instance deployments.
    """

    def __init__(self, max_records_per_key: int = 20000):
        self.max_records_per_key = max_records_per_key

        # Storage: (metric, window) -> [record, ...]
        self._data: Dict[Tuple[str, str], List[AggregationRecord]] = defaultdict(list)

        # Lock for thread safety
        self._lock = threading.RLock()

        self._initialized = False

    async def initialize(self) -> None:
        self._initialized = True

    async def shutdown(self) -> None:
        self._initialized = False

    async def health_check(self) -> bool:
        return self._initialized

    async def append(self, record: AggregationRecord) -> None:
        with self._lock:
            records = self._data[(record.metric, record.window)]
            records.append(record)

            # Trim if needed
            if len(records) > self.max_records_per_key:
                del records[: len(records) - self.max_records_per_key]

    async def prune(self, cutoff: datetime) -> int:
        removed = 0
        with self._lock:
            for key in list(self._data.keys()):
                kept = [r for r in self._data[key] if r.timestamp > cutoff]
                removed += len(self._data[key]) - len(kept)
                if kept:
                    self._data[key] = kept
                else:
                    del self._data[key]
        return removed

    async def query(
        self,
        metric: str,
        window: str,
        since: Optional[datetime] = None,
    ) -> List[AggregationRecord]:
        with self._lock:
            records = list(self._data.get((metric, window), ()))

        if since is not None:
            records = [r for r in records if r.timestamp > since]

        return records

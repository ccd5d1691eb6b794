"""
PanelWatch Storage Base Classes

Abstract base class for rollup storage backends.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional

from panelwatch.monitoring.types import AggregationRecord


class RollupStore(ABC):
    """Durable log of aggregation records keyed by (metric, window)."""

    @abstractmethod
    async def initialize(self) -> None:
        """Initialize the storage backend."""
        pass

    @abstractmethod
    async def shutdown(self) -> None:
        """Shutdown and cleanup resources."""
        pass

    @abstractmethod
    async def health_check(self) -> bool:
        """Check if storage is healthy."""
        pass

    @abstractmethod
    async def append(self, record: AggregationRecord) -> None:
        """Append a record to its (metric, window) log."""
        pass

    @abstractmethod
    async def prune(self, cutoff: datetime) -> int:
        """Drop records with timestamp <= cutoff. Returns count removed."""
        pass

    @abstractmethod
    async def query(
        self,
        metric: str,
        window: str,
        since: Optional[datetime] = None,
    ) -> List[AggregationRecord]:
        """Records for a (metric, window), oldest first, newer than ``since``."""
        pass

"""
PanelWatch File Rollup Storage

One JSON file per (metric, window), e.g. ``system_cpu_1m.json``.
File IO runs in the default executor so slow disks never block collection.
"""

from __future__ import annotations

import asyncio
import json
from datetime import datetime
from pathlib import Path
from typing import List, Optional

import structlog

from panelwatch.monitoring.storage.base import RollupStore
from panelwatch.monitoring.types import AggregationRecord

logger = structlog.get_logger(__name__)


class JsonFileRollupStore(RollupStore):
    """
    File-backed rollup storage.

    Writes go through a temp file and an atomic rename; a single lock
    serializes read-modify-write cycles.
    """

    def __init__(self, directory: Path):
        self.directory = Path(directory)
        self._lock = asyncio.Lock()
        self._initialized = False

    async def initialize(self) -> None:
        loop = asyncio.get_event_loop()
        await loop.run_in_executor(
            None, lambda: self.directory.mkdir(parents=True, exist_ok=True)
        )
        self._initialized = True

    async def shutdown(self) -> None:
        self._initialized = False

    async def health_check(self) -> bool:
        return self._initialized and self.directory.is_dir()

    def path_for(self, metric: str, window: str) -> Path:
        return self.directory / f"{metric.replace('.', '_')}_{window}.json"

    # === File Operations ===

    async def _read(self, filepath: Path) -> list:
        if not filepath.exists():
            return []

        loop = asyncio.get_event_loop()
        content = await loop.run_in_executor(
            None, lambda: filepath.read_text(encoding="utf-8")
        )

        try:
            return json.loads(content)
        except json.JSONDecodeError as e:
            logger.error(f"Corrupt rollup file, starting fresh: {e}", path=str(filepath))
            return []

    async def _write(self, filepath: Path, data: list) -> None:
        content = json.dumps(data, indent=2, default=str)
        temp_file = filepath.with_suffix(".json.tmp")

        loop = asyncio.get_event_loop()
        await loop.run_in_executor(
            None, lambda: temp_file.write_text(content, encoding="utf-8")
        )

        # Atomic rename
        await loop.run_in_executor(None, lambda: temp_file.replace(filepath))

    # === RollupStore ===

    async def append(self, record: AggregationRecord) -> None:
        filepath = self.path_for(record.metric, record.window)
        async with self._lock:
            data = await self._read(filepath)
            data.append(record.to_dict())
            await self._write(filepath, data)

    async def prune(self, cutoff: datetime) -> int:
        removed = 0
        async with self._lock:
            for filepath in sorted(self.directory.glob("*.json")):
                data = await self._read(filepath)
                kept = [
                    d for d in data
                    if datetime.fromisoformat(d["timestamp"]) > cutoff
                ]
                if len(kept) != len(data):
                    removed += len(data) - len(kept)
                    await self._write(filepath, kept)
        return removed

    async def query(
        self,
        metric: str,
        window: str,
        since: Optional[datetime] = None,
    ) -> List[AggregationRecord]:
        async with self._lock:
            data = await self._read(self.path_for(metric, window))

        records = [
            AggregationRecord.from_dict(d) for d in data if d.get("metric") == metric
        ]
        if since is not None:
            records = [r for r in records if r.timestamp > since]
        return records

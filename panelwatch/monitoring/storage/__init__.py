"""
PanelWatch Storage Module

Rollup storage backends.
"""

from panelwatch.monitoring.storage.base import RollupStore
from panelwatch.monitoring.storage.memory import InMemoryRollupStore
from panelwatch.monitoring.storage.file import JsonFileRollupStore

__all__ = [
    "RollupStore",
    "InMemoryRollupStore",
    "JsonFileRollupStore",
]

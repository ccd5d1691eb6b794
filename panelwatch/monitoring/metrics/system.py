"""
PanelWatch System Collectors

Default collectors for host, process and bot activity metrics.
"""

from __future__ import annotations

import asyncio
import os
import socket
import threading
import time
from collections import deque
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

import psutil
import structlog

from panelwatch.monitoring.metrics.collectors import CollectorRegistry
from panelwatch.monitoring.types import utcnow

logger = structlog.get_logger(__name__)


# === Host ===

def collect_cpu() -> Dict[str, Any]:
    load1, _, _ = psutil.getloadavg()
    return {
        "usage": psutil.cpu_percent(interval=None),
        "cores": psutil.cpu_count() or 0,
        "load1": load1,
    }


def collect_memory() -> Dict[str, Any]:
    memory = psutil.virtual_memory()
    return {
        "usage": memory.percent,
        "total": memory.total,
        "used": memory.used,
        "free": memory.free,
        "available": memory.available,
    }


def collect_disk(path: str = "/") -> Dict[str, Any]:
    disk = psutil.disk_usage(path)
    return {
        "usage": disk.percent,
        "total": disk.total,
        "used": disk.used,
        "free": disk.free,
    }


def collect_network() -> Dict[str, Any]:
    """Count interfaces and their non-loopback addresses by family."""
    stats = {"interfaces": 0, "active": 0, "ipv4": 0, "ipv6": 0}
    stats_by_iface = psutil.net_if_stats()

    for name, addrs in psutil.net_if_addrs().items():
        stats["interfaces"] += 1
        iface = stats_by_iface.get(name)
        if iface is not None and iface.isup and not name.startswith("lo"):
            stats["active"] += 1
        for addr in addrs:
            if addr.family == socket.AF_INET and not addr.address.startswith("127."):
                stats["ipv4"] += 1
            elif addr.family == socket.AF_INET6 and addr.address != "::1":
                stats["ipv6"] += 1

    return stats


def collect_load() -> Dict[str, Any]:
    load1, load5, load15 = psutil.getloadavg()
    return {
        "load1": load1,
        "load5": load5,
        "load15": load15,
        "uptime": time.time() - psutil.boot_time(),
    }


# === Process ===

_process = psutil.Process(os.getpid())


def collect_process_memory() -> Dict[str, Any]:
    info = _process.memory_info()
    return {
        "rss": info.rss,
        "vms": info.vms,
        "percent": _process.memory_percent(),
    }


def collect_process_cpu() -> Dict[str, Any]:
    times = _process.cpu_times()
    return {
        "percent": _process.cpu_percent(interval=None),
        "user": times.user,
        "system": times.system,
        "total": times.user + times.system,
    }


def collect_process_handles() -> Dict[str, Any]:
    handles = {"threads": _process.num_threads()}
    if hasattr(_process, "num_fds"):
        handles["fds"] = _process.num_fds()
    return handles


async def collect_event_loop() -> Dict[str, Any]:
    """Measure how late the event loop runs a zero-delay callback."""
    start = time.perf_counter()
    await asyncio.sleep(0)
    return {"lag_ms": (time.perf_counter() - start) * 1000}


SYSTEM_COLLECTORS: Dict[str, Callable] = {
    "system.cpu": collect_cpu,
    "system.memory": collect_memory,
    "system.disk": collect_disk,
    "system.network": collect_network,
    "system.load": collect_load,
    "process.memory": collect_process_memory,
    "process.cpu": collect_process_cpu,
    "process.handles": collect_process_handles,
    "process.eventloop": collect_event_loop,
}


def register_system_collectors(registry: CollectorRegistry) -> None:
    """Register the default host and process collectors."""
    for name, collector in SYSTEM_COLLECTORS.items():
        registry.register(name, collector)
    logger.info("Registered system collectors", count=len(SYSTEM_COLLECTORS))


# === Bot activity ===

class ActivityCounter:
    """
    Counts events reported by the bot or the panel (messages, commands,
    errors, HTTP requests) and exposes them as a collector value.
    """

    def __init__(
        self,
        window: timedelta = timedelta(minutes=1),
        clock: Callable[[], datetime] = utcnow,
    ):
        self.window = window
        self.clock = clock
        self.total = 0
        self._events: deque = deque()
        self._lock = threading.Lock()

    def increment(self, count: int = 1) -> None:
        now = self.clock()
        with self._lock:
            self.total += count
            self._events.append((now, count))

    def _trim(self, now: datetime) -> None:
        cutoff = now - self.window
        while self._events and self._events[0][0] <= cutoff:
            self._events.popleft()

    def snapshot(self) -> Dict[str, int]:
        now = self.clock()
        with self._lock:
            self._trim(now)
            recent = sum(count for _, count in self._events)
            return {"total": self.total, "per_minute": recent}


def register_activity_counters(
    registry: CollectorRegistry,
    counters: Dict[str, ActivityCounter],
    connection_probe: Optional[Callable[[], Dict[str, Any]]] = None,
) -> None:
    """
    Register bot/app activity collectors.

    ``counters`` maps metric names (e.g. ``bot.messages``) to counters the
    host increments. ``connection_probe`` reports ``bot.connections`` as
    ``{"main_bot": 0|1, "subbots": n, "total": n}``.
    """
    for name, counter in counters.items():
        registry.register(name, counter.snapshot)

    if connection_probe is not None:
        registry.register("bot.connections", connection_probe)

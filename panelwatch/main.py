"""
PanelWatch - Monitoring engine for the bot administration panel

Main entry point: runs collection, aggregation and alerting until stopped.
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import List, Optional

import structlog

from panelwatch.core.config import PanelWatchConfig, get_config, set_config
from panelwatch.monitoring.manager import MonitoringManager, set_monitoring


# Configure structured logging
def setup_logging(log_level: str = "INFO") -> None:
    """Configure structured logging."""
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=log_level)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


logger = structlog.get_logger(__name__)


async def run(config: PanelWatchConfig) -> None:
    """Run the monitoring engine until SIGINT or SIGTERM."""
    manager = MonitoringManager(config.monitoring)
    set_monitoring(manager)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows event loops have no signal handlers
            signal.signal(sig, lambda *_: loop.call_soon_threadsafe(stop.set))

    logger.info(
        "Starting PanelWatch",
        instance_id=config.instance_id,
        environment=config.environment,
    )
    await manager.initialize()
    logger.info("PanelWatch ready", status=manager.get_status())

    try:
        await stop.wait()
    finally:
        logger.info("Shutting down PanelWatch")
        await manager.shutdown()
        logger.info("PanelWatch shutdown complete")


def main(argv: Optional[List[str]] = None) -> None:
    import argparse

    parser = argparse.ArgumentParser(description="PanelWatch - bot panel monitoring engine")
    parser.add_argument("--config", type=Path, help="Path to a JSON config file")
    parser.add_argument("--log-level", help="Override the configured log level")
    parser.add_argument("--collect-interval", type=float, help="Seconds between collection cycles")
    parser.add_argument(
        "--no-persist",
        action="store_true",
        help="Keep rollups in memory instead of writing JSON files",
    )

    args = parser.parse_args(argv)

    config = PanelWatchConfig.from_file(args.config) if args.config else get_config()
    if args.collect_interval is not None:
        config.monitoring.collect_interval = args.collect_interval
    if args.no_persist:
        config.monitoring.persist_rollups = False
    set_config(config)

    setup_logging(args.log_level or config.log_level.value)

    asyncio.run(run(config))


if __name__ == "__main__":
    main()

"""
PanelWatch core: configuration shared by all subsystems.
"""

from panelwatch.core.config import (
    LogLevel,
    MonitoringConfig,
    PanelWatchConfig,
    get_config,
    set_config,
    reset_config,
)

__all__ = [
    "LogLevel",
    "MonitoringConfig",
    "PanelWatchConfig",
    "get_config",
    "set_config",
    "reset_config",
]

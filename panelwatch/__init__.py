"""
PanelWatch - Monitoring engine for the bot administration panel

Metric sampling, rollups and a stateful alerting pipeline with:
- Threshold, trend, rate and anomaly conditions
- Hysteresis before alerts become active
- Timed escalation and manual suppression
"""

__version__ = "1.0.0"
__author__ = "PanelWatch Team"

from panelwatch.core.config import MonitoringConfig, PanelWatchConfig
from panelwatch.monitoring.manager import MonitoringManager

__all__ = ["MonitoringManager", "MonitoringConfig", "PanelWatchConfig", "__version__"]

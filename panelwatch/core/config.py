"""
PanelWatch Configuration Management

Centralized configuration for the monitoring engine with:
- Environment-based configuration
- Type-safe settings with Pydantic
- JSON file loading and saving
"""

from __future__ import annotations

import json
from enum import Enum
from pathlib import Path
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings


class LogLevel(str, Enum):
    """Logging levels for PanelWatch."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


def _default_windows() -> Dict[str, float]:
    return {"1m": 60.0, "1h": 3600.0, "1d": 86400.0}


class MonitoringConfig(BaseModel):
    """Configuration for metrics collection and alerting."""
    # Collection
    collect_interval: float = 5.0  # seconds
    raw_retention: float = 3600.0  # seconds kept in memory per series

    # Aggregation
    aggregation_interval: float = 60.0  # seconds
    aggregation_windows: Dict[str, float] = Field(default_factory=_default_windows)
    aggregation_functions: List[str] = Field(
        default_factory=lambda: ["avg", "min", "max", "sum", "count"]
    )
    rollup_retention_days: float = 7.0
    persist_rollups: bool = True
    rollup_dir: Path = Path(".monitoring/metrics")

    # Alerting
    sweep_interval: float = 30.0  # seconds
    alert_retention_days: float = 7.0
    history_path: Optional[Path] = None

    # Notifications
    webhook_url: Optional[str] = None
    webhook_headers: Dict[str, str] = Field(default_factory=dict)
    webhook_timeout: float = 10.0  # seconds

    # Defaults
    enable_default_collectors: bool = True
    enable_default_rules: bool = True
    enable_default_escalations: bool = True

    @field_validator("collect_interval", "aggregation_interval", "sweep_interval")
    @classmethod
    def positive_interval(cls, v: float) -> float:
        """Timer intervals must be positive."""
        if v <= 0:
            raise ValueError("interval must be positive")
        return v


class PanelWatchConfig(BaseSettings):
    """
    Main PanelWatch Configuration

    Loads configuration from environment variables and/or config files.
    Environment variables are prefixed with PANELWATCH_
    (e.g., PANELWATCH_LOG_LEVEL=DEBUG, PANELWATCH_MONITORING__COLLECT_INTERVAL=10).
    """

    instance_id: str = Field(default="panelwatch-primary")
    environment: Literal["development", "staging", "production"] = "development"
    log_level: LogLevel = LogLevel.INFO

    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)

    model_config = {
        "env_prefix": "PANELWATCH_",
        "env_nested_delimiter": "__",
        "case_sensitive": False,
    }

    @classmethod
    def from_file(cls, config_path: Path) -> "PanelWatchConfig":
        """Load configuration from a JSON file."""
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")

        with open(config_path) as f:
            config_data = json.load(f)

        return cls(**config_data)

    def to_file(self, config_path: Path) -> None:
        """Save configuration to a JSON file."""
        config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(config_path, "w") as f:
            json.dump(self.model_dump(mode="json"), f, indent=2)


# Global configuration instance (lazy loaded)
_config: Optional[PanelWatchConfig] = None


def get_config() -> PanelWatchConfig:
    """Get the global PanelWatch configuration instance."""
    global _config
    if _config is None:
        _config = PanelWatchConfig()
    return _config


def set_config(config: PanelWatchConfig) -> None:
    """Set the global PanelWatch configuration instance."""
    global _config
    _config = config


def reset_config() -> None:
    """Reset the global configuration to default."""
    global _config
    _config = None

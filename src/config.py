"""
config.py

Rollup configuration for the Staffing Rollup system.

The working-hours baseline and the allocation conversion constants are not
stored on calendars; they are supplied here and passed into the rollup
engine.  Settings may be loaded from a YAML file:

    baseline_hours_per_day: 7.5
    include_weekends: false
    days_per_month: 21.67

Use get_config() to obtain the process-wide instance.  It reads the file named
by the STAFFING_ROLLUP_CONFIG environment variable, or returns the defaults
when the variable is unset.
"""

from __future__ import annotations

import logging
import os
from functools import lru_cache
from pathlib import Path
from typing import Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "STAFFING_ROLLUP_CONFIG"


class ConfigurationError(Exception):
    """Raised when configuration loading or validation fails."""


class RollupConfig(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    baseline_hours_per_day: float = Field(default=8.0, gt=0.0, le=24.0)
    include_weekends: bool = False

    # Allocation unit conversion constants, in working days
    days_per_week: float = Field(default=5.0, gt=0.0)
    days_per_month: float = Field(default=21.67, gt=0.0)
    days_per_year: float = Field(default=260.0, gt=0.0)

    # Thread pool size for project rollups; None rolls phases up sequentially
    max_workers: Optional[int] = Field(default=None, ge=1)

    @field_validator("days_per_month", "days_per_year")
    @classmethod
    def validate_period_length(cls, v: float, info) -> float:
        if v < 5.0:
            raise ValueError(f"{info.field_name} must cover at least one working week")
        return v


def load_config(path: Union[str, Path]) -> RollupConfig:
    """Load and validate a RollupConfig from a YAML file."""
    config_path = Path(path)
    if not config_path.exists():
        raise ConfigurationError(f"Config file not found: {config_path}")

    try:
        with open(config_path, "r") as f:
            raw = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in config file: {e}") from e

    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ConfigurationError("Config file must contain a YAML mapping")

    try:
        config = RollupConfig(**raw)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid rollup configuration: {e}") from e

    logger.debug("Loaded rollup configuration from %s", config_path)
    return config


@lru_cache(maxsize=1)
def get_config() -> RollupConfig:
    """Return the configured RollupConfig (cached)."""
    path = os.environ.get(CONFIG_ENV_VAR)
    if not path:
        return RollupConfig()
    return load_config(path)

from __future__ import annotations

import os
from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel, Field

from .constants import (
    DEFAULT_MAX_CONCURRENT_FLOWS,
    DEFAULT_RETRY_CLEANUP_INTERVAL,
    DEFAULT_RETRY_STATE_MAX_AGE,
    DEFAULT_TICK_INTERVAL,
)


class SchedulerConfig(BaseModel):
    """Admission settings for the flow scheduler."""

    max_concurrent_flows: int = DEFAULT_MAX_CONCURRENT_FLOWS
    tick_interval: float = DEFAULT_TICK_INTERVAL
    # Retry state sweep, both in seconds.
    retry_cleanup_interval: float = DEFAULT_RETRY_CLEANUP_INTERVAL
    retry_state_max_age: float = DEFAULT_RETRY_STATE_MAX_AGE


class FlowpilotConfig(BaseModel):
    """Top-level configuration model."""

    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    database_url: Optional[str] = None
    defaults: Dict[str, Any] = Field(default_factory=dict)


def load_config(path: Optional[str] = None) -> FlowpilotConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to FLOWPILOT_CONFIG env
            variable or 'flowpilot.yaml' in the current directory.
    """

    config_path = path or os.getenv("FLOWPILOT_CONFIG", "flowpilot.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = FlowpilotConfig(**data)
    else:
        config = FlowpilotConfig()

    env_db_url = os.getenv("FLOWPILOT_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    env_cap = os.getenv("FLOWPILOT_MAX_CONCURRENT_FLOWS")
    if env_cap:
        config.scheduler.max_concurrent_flows = int(env_cap)
    return config

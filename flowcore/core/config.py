"""Configuration loaded from ``.flowcore/config.yaml``.

Example:

    engine:
      max_steps: 500
      db_path: .flowcore/state.db
    tasks:
      stuck_threshold: 5
      max_parallel_subtasks: 4
      stuck_wait_seconds: 0.0
      max_subtasks: 8
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError

DEFAULT_CONFIG_PATH = Path(".flowcore/config.yaml")


class ConfigError(Exception):
    """Configuration file is unreadable or invalid."""

    pass


class EngineConfig(BaseModel):
    """Workflow engine settings."""

    # Steps per start/resume call before a cyclic run is paused
    max_steps: int = Field(default=1000, ge=1)
    db_path: str = ".flowcore/state.db"


class TaskConfig(BaseModel):
    """Task graph scheduling settings."""

    stuck_threshold: int = Field(default=5, ge=1)
    max_parallel_subtasks: int = Field(default=4, ge=1)
    stuck_wait_seconds: float = Field(default=0.0, ge=0.0)
    max_subtasks: int | None = Field(default=None, ge=1)


class FlowConfig(BaseModel):
    engine: EngineConfig = Field(default_factory=EngineConfig)
    tasks: TaskConfig = Field(default_factory=TaskConfig)


def load_config(path: str | Path | None = None) -> FlowConfig:
    """Load configuration, returning defaults if the file does not exist."""
    config_path = Path(path) if path is not None else DEFAULT_CONFIG_PATH
    if not config_path.exists():
        return FlowConfig()

    try:
        with open(config_path, encoding="utf-8") as f:
            data: Any = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {config_path}: {e}")

    if data is None:
        return FlowConfig()
    if not isinstance(data, dict):
        raise ConfigError(f"Config must be a mapping, got {type(data).__name__} in {config_path}")

    try:
        return FlowConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid config in {config_path}: {e}") from e

# Copyright 2025 Vijaykumar Singh <singhvjd@gmail.com>
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Configuration management for graphloom.

Settings resolve in this order (later wins):
    1. Field defaults
    2. YAML file (``~/.graphloom/settings.yaml`` or an explicit path)
    3. ``GRAPHLOOM_*`` environment variables
"""

import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

GRAPHLOOM_DIR_NAME = os.getenv("GRAPHLOOM_DIR_NAME", ".graphloom")
GLOBAL_GRAPHLOOM_DIR = Path.home() / GRAPHLOOM_DIR_NAME
DEFAULT_SETTINGS_FILE = GLOBAL_GRAPHLOOM_DIR / "settings.yaml"

# Ticks per invocation before RecursionLimitExceeded.
DEFAULT_RECURSION_LIMIT = 25


class Settings(BaseSettings):
    """Runtime settings shared by the engine and the CLI."""

    model_config = SettingsConfigDict(
        env_prefix="GRAPHLOOM_",
        extra="ignore",
    )

    recursion_limit: int = Field(
        DEFAULT_RECURSION_LIMIT, gt=0, description="Maximum ticks per invocation"
    )
    step_timeout: Optional[float] = Field(
        None, gt=0, description="Seconds a single tick may run (None = unlimited)"
    )
    checkpoint_db: str = Field(
        str(GLOBAL_GRAPHLOOM_DIR / "checkpoints.db"),
        description="SQLite checkpoint database used by the CLI",
    )
    checkpoint_dir: str = Field(
        str(GLOBAL_GRAPHLOOM_DIR / "checkpoints"),
        description="Directory for JSONFileCheckpointer",
    )
    log_level: str = Field("WARNING", description="Root log level for the CLI")

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        level = value.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level: {value}")
        return level

    @property
    def checkpoint_db_path(self) -> Path:
        return Path(os.path.expanduser(self.checkpoint_db))

    @property
    def checkpoint_dir_path(self) -> Path:
        return Path(os.path.expanduser(self.checkpoint_dir))


def _load_yaml_overrides(path: Path) -> Dict[str, Any]:
    """Read settings overrides from a YAML file (empty dict if missing)."""
    if not path.exists():
        return {}
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Settings file {path} must contain a mapping, got {type(data).__name__}")
    logger.debug(f"Loaded settings overrides from {path}")
    return data


def load_settings(config_file: Optional[Union[str, Path]] = None) -> Settings:
    """Load settings from YAML and environment.

    Environment variables take precedence over the YAML file, so values
    from the file are only applied for fields not set in the environment.

    Args:
        config_file: Optional YAML file; defaults to ~/.graphloom/settings.yaml

    Returns:
        Resolved Settings instance
    """
    path = Path(os.path.expanduser(str(config_file))) if config_file else DEFAULT_SETTINGS_FILE
    overrides = _load_yaml_overrides(path)
    env_fields = {
        name
        for name in Settings.model_fields
        if f"GRAPHLOOM_{name.upper()}" in os.environ
    }
    file_values = {k: v for k, v in overrides.items() if k not in env_fields}
    return Settings(**file_values)


__all__ = [
    "Settings",
    "load_settings",
    "DEFAULT_RECURSION_LIMIT",
    "GLOBAL_GRAPHLOOM_DIR",
]

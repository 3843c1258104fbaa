"""
tutorsync configuration.

Settings are read from a YAML (or JSON) file, looked up in this order:
- explicit path (CLI --config)
- $TUTORSYNC_CONFIG
- ./tutorsync.yaml
- built-in defaults

Example tutorsync.yaml:

    db_path: /var/lib/tutorsync/entities.db
    debounce_seconds: 5
    debounce_overrides:
      assignment: 2
    capabilities:
      course_preview: true
      content_drip: false
    cache_enabled: true
    log_level: INFO
"""

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from tutorsync.capabilities import CapabilitySet
from tutorsync.errors import ConfigError


DEFAULT_CONFIG_FILE = "tutorsync.yaml"

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def _flag(name: str, value: Any) -> bool:
    """Accept real booleans only; "no" or "false" strings are mistakes, not False."""
    if not isinstance(value, bool):
        raise ConfigError(f"{name} must be true or false, got {value!r}")
    return value


@dataclass
class SyncConfig:
    """Runtime configuration for the sync stack."""
    db_path: Optional[str] = None
    debounce_seconds: float = 5.0
    debounce_overrides: Dict[str, float] = field(default_factory=dict)
    capabilities: Dict[str, bool] = field(default_factory=dict)
    cache_enabled: bool = True
    log_level: str = "WARNING"

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        """Raise ConfigError on out-of-range values."""
        if self.debounce_seconds < 0:
            raise ConfigError(f"debounce_seconds must be >= 0, got {self.debounce_seconds}")
        for entity_type, seconds in self.debounce_overrides.items():
            if seconds < 0:
                raise ConfigError(f"debounce_overrides.{entity_type} must be >= 0, got {seconds}")
        if self.log_level.upper() not in LOG_LEVELS:
            raise ConfigError(f"log_level must be one of {', '.join(LOG_LEVELS)}, got {self.log_level!r}")

    def capability_set(self) -> CapabilitySet:
        return CapabilitySet.from_mapping(self.capabilities)

    def log_level_value(self) -> int:
        return getattr(logging, self.log_level.upper())

    def to_dict(self) -> dict:
        return {
            "db_path": self.db_path,
            "debounce_seconds": self.debounce_seconds,
            "debounce_overrides": dict(self.debounce_overrides),
            "capabilities": dict(self.capabilities),
            "cache_enabled": self.cache_enabled,
            "log_level": self.log_level,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SyncConfig":
        if not isinstance(data, dict):
            raise ConfigError(f"Config must be a mapping, got {type(data).__name__}")

        unknown = set(data) - set(cls().to_dict())
        if unknown:
            raise ConfigError(f"Unknown config keys: {', '.join(sorted(unknown))}")

        try:
            return cls(
                db_path=data.get("db_path"),
                debounce_seconds=float(data.get("debounce_seconds", 5.0)),
                debounce_overrides={
                    str(k): float(v) for k, v in (data.get("debounce_overrides") or {}).items()
                },
                capabilities={
                    str(k): _flag(f"capabilities.{k}", v)
                    for k, v in (data.get("capabilities") or {}).items()
                },
                cache_enabled=_flag("cache_enabled", data.get("cache_enabled", True)),
                log_level=str(data.get("log_level", "WARNING")),
            )
        except (TypeError, ValueError, AttributeError) as e:
            raise ConfigError(f"Invalid config value: {e}") from e


def find_config_path(path: Optional[str] = None) -> Optional[Path]:
    """Resolve which config file to load, or None for defaults."""
    if path:
        return Path(path)

    env_path = os.environ.get("TUTORSYNC_CONFIG")
    if env_path:
        return Path(env_path)

    local = Path.cwd() / DEFAULT_CONFIG_FILE
    if local.exists():
        return local
    return None


def load_config(path: Optional[str] = None) -> SyncConfig:
    """Load configuration. Returns defaults if no file is found.

    Raises:
        ConfigError: If an explicitly named file is missing, or a file
            cannot be parsed or holds invalid values
    """
    config_file = find_config_path(path)
    if config_file is None:
        return SyncConfig()
    if not config_file.exists():
        raise ConfigError(f"Config file not found: {config_file}")

    try:
        with open(config_file) as f:
            if config_file.suffix == ".json":
                data = json.load(f)
            else:
                data = yaml.safe_load(f) or {}
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise ConfigError(f"Cannot parse {config_file}: {e}") from e

    return SyncConfig.from_dict(data)


def save_config(config: SyncConfig, path: Optional[str] = None) -> Path:
    """Save configuration as YAML (JSON if the path ends in .json)."""
    config_file = Path(path) if path else Path.cwd() / DEFAULT_CONFIG_FILE
    config_file.parent.mkdir(parents=True, exist_ok=True)

    with open(config_file, "w") as f:
        if config_file.suffix == ".json":
            json.dump(config.to_dict(), f, indent=2)
        else:
            yaml.dump(config.to_dict(), f, default_flow_style=False, sort_keys=False)
    return config_file

"""
Configuration management and loading.

Handles monitor settings from YAML files and environment variables.
"""

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml

from usage_blocks.core.blocks import (
    DEFAULT_RECENT_DAYS,
    DEFAULT_SESSION_DURATION_HOURS,
    InvalidConfiguration,
)
from usage_blocks.core.pricing import CostMode

CLAUDE_CONFIG_DIR_ENV = "CLAUDE_CONFIG_DIR"
OPENCODE_DATA_DIR_ENV = "OPENCODE_DATA_DIR"
CLAUDE_PROJECTS_DIR_NAME = "projects"
DEFAULT_CLAUDE_CONFIG_PATHS = ("~/.config/claude", "~/.claude")
DEFAULT_OPENCODE_DATA_PATH = "~/.local/share/opencode"

DEFAULT_REFRESH_INTERVAL_SECONDS = 1
MIN_REFRESH_INTERVAL_SECONDS = 1
MAX_REFRESH_INTERVAL_SECONDS = 60
DEFAULT_SECONDARY_REFRESH_SECONDS = 5.0


@dataclass(frozen=True)
class MonitorConfig:
    """Settings shared by the block report and the live monitor."""
    window_duration_hours: float = DEFAULT_SESSION_DURATION_HOURS
    refresh_interval_seconds: int = DEFAULT_REFRESH_INTERVAL_SECONDS
    secondary_refresh_seconds: float = DEFAULT_SECONDARY_REFRESH_SECONDS
    data_paths: Tuple[Path, ...] = field(default_factory=tuple)
    secondary_paths: Tuple[Path, ...] = field(default_factory=tuple)
    cost_mode: CostMode = CostMode.AUTO
    token_limit: Optional[int] = None
    recent_days: int = DEFAULT_RECENT_DAYS

    def __post_init__(self):
        """Validate numeric settings."""
        if self.window_duration_hours <= 0:
            raise InvalidConfiguration("window_duration_hours must be > 0")
        if self.refresh_interval_seconds <= 0:
            raise InvalidConfiguration("refresh_interval_seconds must be > 0")
        if self.secondary_refresh_seconds < 0:
            raise InvalidConfiguration("secondary_refresh_seconds cannot be negative")
        if self.token_limit is not None and self.token_limit <= 0:
            raise InvalidConfiguration("token_limit must be > 0")
        if self.recent_days <= 0:
            raise InvalidConfiguration("recent_days must be > 0")

    def with_overrides(self, **overrides: Any) -> "MonitorConfig":
        """Return a copy with the non-None overrides applied."""
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})


def _split_env_dirs(value: str) -> Tuple[Path, ...]:
    return tuple(
        Path(part.strip()).expanduser().resolve()
        for part in value.split(",")
        if part.strip()
    )


def resolve_data_paths() -> Tuple[Path, ...]:
    """Find the directories holding JSONL usage logs.

    ``CLAUDE_CONFIG_DIR`` (comma separated) takes precedence over the
    default locations. Only existing ``projects`` directories are returned.
    """
    env_value = os.environ.get(CLAUDE_CONFIG_DIR_ENV, "")
    if env_value.strip():
        bases = _split_env_dirs(env_value)
    else:
        bases = tuple(Path(p).expanduser() for p in DEFAULT_CLAUDE_CONFIG_PATHS)

    paths = []
    for base in bases:
        projects = base / CLAUDE_PROJECTS_DIR_NAME
        if projects.is_dir() and projects not in paths:
            paths.append(projects)
    return tuple(paths)


def resolve_secondary_paths() -> Tuple[Path, ...]:
    """Find the secondary source data directories (``OPENCODE_DATA_DIR`` or the default)."""
    env_value = os.environ.get(OPENCODE_DATA_DIR_ENV, "")
    if env_value.strip():
        return _split_env_dirs(env_value)
    default = Path(DEFAULT_OPENCODE_DATA_PATH).expanduser()
    return (default,) if default.is_dir() else ()


def clamp_refresh_interval(value: int) -> int:
    """Clamp a live refresh interval to the supported range."""
    return max(MIN_REFRESH_INTERVAL_SECONDS, min(MAX_REFRESH_INTERVAL_SECONDS, value))


def load_monitor_config(path: Optional[str] = None) -> MonitorConfig:
    """Load and validate monitor configuration.

    Without a path, defaults are used. Data directories not set in the file
    are resolved from the environment.

    Args:
        path: Optional path to a YAML configuration file

    Returns:
        Validated MonitorConfig

    Raises:
        FileNotFoundError: If the config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        InvalidConfiguration: If configuration values are invalid
    """
    raw_config: Dict[str, Any] = {}
    if path is not None:
        config_path = Path(path)
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")

        with open(config_path, 'r', encoding='utf-8') as f:
            try:
                raw_config = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

        if not isinstance(raw_config, dict):
            raise InvalidConfiguration("Configuration must be a mapping")

    allowed_keys = {
        'window_duration_hours', 'refresh_interval_seconds',
        'secondary_refresh_seconds', 'data_paths', 'secondary_paths',
        'cost_mode', 'token_limit', 'recent_days',
    }
    unknown_keys = set(raw_config.keys()) - allowed_keys
    if unknown_keys:
        raise InvalidConfiguration(f"Unknown configuration keys: {unknown_keys}")

    return MonitorConfig(
        window_duration_hours=_number(raw_config, 'window_duration_hours',
                                      DEFAULT_SESSION_DURATION_HOURS),
        refresh_interval_seconds=clamp_refresh_interval(int(_number(
            raw_config, 'refresh_interval_seconds', DEFAULT_REFRESH_INTERVAL_SECONDS))),
        secondary_refresh_seconds=_number(raw_config, 'secondary_refresh_seconds',
                                          DEFAULT_SECONDARY_REFRESH_SECONDS),
        data_paths=_paths(raw_config, 'data_paths') or resolve_data_paths(),
        secondary_paths=_paths(raw_config, 'secondary_paths') or resolve_secondary_paths(),
        cost_mode=_cost_mode(raw_config.get('cost_mode', CostMode.AUTO.value)),
        token_limit=_optional_int(raw_config, 'token_limit'),
        recent_days=int(_number(raw_config, 'recent_days', DEFAULT_RECENT_DAYS)),
    )


def _number(data: Dict[str, Any], key: str, default: float) -> float:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise InvalidConfiguration(f"'{key}' must be a number")
    return value


def _optional_int(data: Dict[str, Any], key: str) -> Optional[int]:
    value = data.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidConfiguration(f"'{key}' must be an integer")
    return value


def _paths(data: Dict[str, Any], key: str) -> Tuple[Path, ...]:
    value = data.get(key)
    if value is None:
        return ()
    if not isinstance(value, list) or not all(isinstance(p, str) for p in value):
        raise InvalidConfiguration(f"'{key}' must be a list of paths")
    return tuple(Path(p).expanduser() for p in value)


def _cost_mode(value: Any) -> CostMode:
    if not isinstance(value, str):
        raise InvalidConfiguration("'cost_mode' must be a string")
    try:
        return CostMode(value.lower())
    except ValueError:
        valid_modes = [mode.value for mode in CostMode]
        raise InvalidConfiguration(f"'cost_mode' must be one of: {valid_modes}")

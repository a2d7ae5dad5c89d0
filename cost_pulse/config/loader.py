"""
Configuration management and loading.

Reads the YAML settings file: database location, refresh cadence, tracked
tools, maintenance mode and log level.
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, Optional, Tuple

import yaml

from cost_pulse.storage.db import DEFAULT_DB_PATH
from cost_pulse.storage.models import UsageTool


class MaintenanceMode(Enum):
    """When the maintenance routine is allowed to run."""
    AUTOMATIC = "automatic"  # At startup, at most once per day
    MANUAL = "manual"  # Only when explicitly requested


LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass(frozen=True)
class AppConfig:
    """Complete application configuration."""
    db_path: str = str(DEFAULT_DB_PATH)
    refresh_minutes: float = 10.0
    tools: Dict[UsageTool, bool] = field(
        default_factory=lambda: {tool: True for tool in UsageTool}
    )
    maintenance_mode: MaintenanceMode = MaintenanceMode.AUTOMATIC
    log_level: str = "INFO"

    def __post_init__(self):
        """Validate configuration values."""
        if self.refresh_minutes < 1:
            raise ValueError("refresh minutes must be >= 1")
        if self.log_level not in LOG_LEVELS:
            raise ValueError(f"log level must be one of: {list(LOG_LEVELS)}")

    @property
    def enabled_tools(self) -> Tuple[UsageTool, ...]:
        return tuple(tool for tool in UsageTool if self.tools.get(tool, False))

    @property
    def refresh_seconds(self) -> int:
        return max(60, int(self.refresh_minutes * 60))


def load_app_config(path: str) -> AppConfig:
    """Load and validate configuration from a YAML file.

    Every section is optional and falls back to its default, but unknown
    keys and wrongly typed values are rejected.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated AppConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if raw_config is None:
        return AppConfig()
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a mapping")

    allowed_top_keys = {'database', 'refresh', 'tools', 'maintenance', 'logging'}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    defaults = AppConfig()
    values = {}

    database = _section(raw_config, 'database', {'path'})
    if 'path' in database:
        db_path = database['path']
        if not isinstance(db_path, str) or not db_path.strip():
            raise ValueError("'database.path' must be a non-empty string")
        values['db_path'] = db_path

    refresh = _section(raw_config, 'refresh', {'minutes'})
    if 'minutes' in refresh:
        minutes = refresh['minutes']
        if isinstance(minutes, bool) or not isinstance(minutes, (int, float)):
            raise ValueError("'refresh.minutes' must be a number")
        values['refresh_minutes'] = float(minutes)

    tools = _section(raw_config, 'tools', {tool.value for tool in UsageTool})
    enabled = dict(defaults.tools)
    for name, flag in tools.items():
        if not isinstance(flag, bool):
            raise ValueError(f"'tools.{name}' must be true or false")
        enabled[UsageTool(name)] = flag
    values['tools'] = enabled

    maintenance = _section(raw_config, 'maintenance', {'mode'})
    if 'mode' in maintenance:
        values['maintenance_mode'] = _parse_mode(maintenance['mode'])

    logging_section = _section(raw_config, 'logging', {'level'})
    if 'level' in logging_section:
        level = logging_section['level']
        if not isinstance(level, str):
            raise ValueError("'logging.level' must be a string")
        values['log_level'] = level.upper()

    return AppConfig(**values)


def resolve_config(path: Optional[str] = None) -> AppConfig:
    """Load the config file at path, or the defaults when no path is given."""
    if path is None:
        return AppConfig()
    return load_app_config(path)


def _section(raw_config: Dict, name: str, allowed_keys: set) -> Dict:
    """Fetch an optional mapping section and reject unknown keys.

    Raises:
        ValueError: If the section is not a mapping or has unknown keys
    """
    data = raw_config.get(name)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")

    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown keys in {name}: {unknown_keys}")
    return data


def _parse_mode(value) -> MaintenanceMode:
    if not isinstance(value, str):
        raise ValueError("'maintenance.mode' must be a string")
    try:
        return MaintenanceMode(value.lower())
    except ValueError:
        valid_modes = [mode.value for mode in MaintenanceMode]
        raise ValueError(f"'maintenance.mode' must be one of: {valid_modes}")

"""
AnonChat - Configuration Management

This module handles loading and merging configuration from a TOML file
and environment variables on top of built-in defaults.

Author: anonchat contributors
Version: 1.0.0
"""

import copy
import os
import sys
from pathlib import Path
from typing import Any, Dict, Optional

# Python 3.11+ has tomllib built-in, older versions need tomli
if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib

from .constants import (
    CONFIG_FILENAME,
    DEFAULT_DATA_DIR,
    DEFAULT_SERVER_URL,
    RECONNECT_DELAY,
    REQUEST_TIMEOUT,
)
from .errors import ConfigError, ErrorCode

ENV_PREFIX = "ANONCHAT"

# Default configuration dictionary
DEFAULT_CONFIG: Dict[str, Any] = {
    "server": {
        "base_url": DEFAULT_SERVER_URL,
        "timeout": REQUEST_TIMEOUT,
        "reconnect_delay": RECONNECT_DELAY,
    },
    "logging": {
        "level": "INFO",
        "file_logging": True,
        "console_logging": True,
    },
}


class Config:
    """Configuration manager for AnonChat.

    Loads configuration from a TOML file, merges it with defaults,
    and applies environment variable overrides.

    Attributes:
        config_path: Path to the configuration file
        data: Configuration dictionary
    """

    def __init__(self, config_path: Optional[Path] = None):
        """Initialize configuration manager.

        Args:
            config_path: Path to configuration file (optional)
                If not provided, uses default location
        """
        if config_path is None:
            config_path = Path(DEFAULT_DATA_DIR).expanduser() / CONFIG_FILENAME

        self.config_path = Path(config_path)
        self.data = self._load_config()

    def _load_config(self) -> Dict[str, Any]:
        """Load configuration from file and merge with defaults.

        Raises:
            ConfigError: If the configuration file cannot be parsed
        """
        config = copy.deepcopy(DEFAULT_CONFIG)

        if self.config_path.exists():
            try:
                with open(self.config_path, "rb") as f:
                    file_config = tomllib.load(f)
            except (OSError, tomllib.TOMLDecodeError) as e:
                raise ConfigError(
                    ErrorCode.E704_CONFIG_PARSE_ERROR,
                    f"Failed to parse configuration file: {e}",
                    {"path": str(self.config_path), "error": str(e)},
                ) from e
            config = self._merge_config(config, file_config)

        return self._apply_env_overrides(config)

    def _merge_config(self, base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        """Recursively merge override config into base config."""
        result = base.copy()

        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._merge_config(result[key], value)
            else:
                result[key] = value

        return result

    def _apply_env_overrides(self, config: Dict[str, Any]) -> Dict[str, Any]:
        """Apply environment variable overrides to configuration.

        Environment variables follow the pattern: ANONCHAT_SECTION_KEY
        For example: ANONCHAT_SERVER_BASE_URL=https://chat.example.org

        Values are converted to the type of the current setting; a value
        that does not convert leaves the setting unchanged.
        """
        for section, settings in config.items():
            if not isinstance(settings, dict):
                continue

            for key, current in settings.items():
                env_value = os.environ.get(f"{ENV_PREFIX}_{section.upper()}_{key.upper()}")
                if env_value is None:
                    continue

                try:
                    if isinstance(current, bool):
                        settings[key] = env_value.lower() in ("true", "1", "yes")
                    elif isinstance(current, int):
                        settings[key] = int(env_value)
                    elif isinstance(current, float):
                        settings[key] = float(env_value)
                    else:
                        settings[key] = env_value
                except ValueError:
                    pass

        return config

    def get(self, section: str, key: str, default: Any = None) -> Any:
        """Get a configuration value."""
        return self.data.get(section, {}).get(key, default)

    def set(self, section: str, key: str, value: Any) -> None:
        """Set a configuration value (in memory only until save())."""
        self.data.setdefault(section, {})[key] = value

    def save(self) -> None:
        """Save current configuration to file.

        Raises:
            ConfigError: If saving fails
        """
        try:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.config_path, "w") as f:
                self._write_toml(f, self.data)
        except OSError as e:
            raise ConfigError(
                ErrorCode.E702_CONFIG_SAVE_FAILED,
                f"Failed to save configuration: {e}",
                {"path": str(self.config_path), "error": str(e)},
            ) from e

    def _write_toml(self, file, data: Dict[str, Any]) -> None:
        """Write flat section tables as TOML."""
        for section, settings in data.items():
            if not isinstance(settings, dict):
                continue
            file.write(f"[{section}]\n")
            for key, value in settings.items():
                if isinstance(value, bool):
                    file.write(f"{key} = {str(value).lower()}\n")
                elif isinstance(value, (int, float)):
                    file.write(f"{key} = {value}\n")
                elif isinstance(value, str):
                    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
                    file.write(f'{key} = "{escaped}"\n')
            file.write("\n")

    def to_dict(self) -> Dict[str, Any]:
        """Get a copy of the configuration as a dictionary."""
        return copy.deepcopy(self.data)

"""
SecureChat - Configuration Management

Settings come from three layers, later ones winning:
1. DEFAULT_CONFIG below
2. An optional TOML file (~/.securechat/config.toml by default)
3. SECURECHAT_<SECTION>_<KEY> environment variables

Version: 1.0.0
"""

import copy
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, TextIO

# Python 3.11+ has tomllib built-in, older versions need tomli
if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib

from .constants import (
    CONFIG_FILENAME,
    CONNECTION_TIMEOUT,
    DEFAULT_DATA_DIR,
    ENV_PREFIX,
    HANDSHAKE_TIMEOUT,
    PEER_RETRY_DELAY,
    UI_ERROR_DISPLAY_TIMEOUT,
    UI_MAX_MESSAGE_HISTORY,
)
from .errors import ConfigError, ErrorCode

DEFAULT_CONFIG: Dict[str, Any] = {
    "network": {
        "connect_timeout": CONNECTION_TIMEOUT,
        "peer_retry_delay": PEER_RETRY_DELAY,
        "auto_reconnect": True,
    },
    "handshake": {
        "enabled": True,
        "timeout": HANDSHAKE_TIMEOUT,
        "initiate_on_accept": False,
    },
    "ui": {
        "error_display_timeout": UI_ERROR_DISPLAY_TIMEOUT,
        "max_history": UI_MAX_MESSAGE_HISTORY,
    },
    "logging": {
        "level": "INFO",
        "console_logging": True,
        "file_logging": False,
        "log_file": "",
    },
}

_TRUE_STRINGS = ("true", "1", "yes")


def deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Return base updated with override, merging nested tables key by key."""
    merged = dict(base)
    for key, value in override.items():
        current = merged.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            merged[key] = deep_merge(current, value)
        else:
            merged[key] = value
    return merged


def _coerce(raw: str, like: Any) -> Any:
    """Convert an environment string to the type of an existing value."""
    if isinstance(like, bool):
        return raw.lower() in _TRUE_STRINGS
    if isinstance(like, int):
        return int(raw)
    if isinstance(like, float):
        return float(raw)
    return raw


def _toml_value(value: Any) -> Optional[str]:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, str):
        escaped = value.replace("\\", "\\\\").replace('"', '\\"')
        return f'"{escaped}"'
    return None


def _dump_toml(file: TextIO, data: Dict[str, Any]) -> None:
    # Only one level of tables with scalar values is written
    for section, table in data.items():
        if not isinstance(table, dict):
            continue
        file.write(f"[{section}]\n")
        for key, value in table.items():
            rendered = _toml_value(value)
            if rendered is not None:
                file.write(f"{key} = {rendered}\n")
        file.write("\n")


class Config:
    """Layered configuration for SecureChat.

    Attributes:
        config_path: TOML file the configuration is read from and saved to
        data: Effective configuration, one dict per section
    """

    def __init__(self, config_path: Optional[Path] = None):
        if config_path is None:
            config_path = Path(DEFAULT_DATA_DIR).expanduser() / CONFIG_FILENAME

        self.config_path = Path(config_path)
        self.data = self._load_config()

    def _load_config(self) -> Dict[str, Any]:
        """Build the effective configuration.

        Raises:
            ConfigError: E704 if the file cannot be read or parsed, E703 if an
                environment override has the wrong type
        """
        config = copy.deepcopy(DEFAULT_CONFIG)
        if self.config_path.exists():
            config = deep_merge(config, self._read_file())
        self._apply_env_overrides(config)
        return config

    def _read_file(self) -> Dict[str, Any]:
        try:
            with open(self.config_path, "rb") as f:
                return tomllib.load(f)
        except (OSError, tomllib.TOMLDecodeError) as e:
            raise ConfigError(
                ErrorCode.E704_CONFIG_PARSE_ERROR,
                f"Failed to parse configuration file: {e}",
                {"path": str(self.config_path), "error": str(e)},
            )

    @staticmethod
    def _apply_env_overrides(config: Dict[str, Any]) -> None:
        """Override known keys in place from the environment.

        SECURECHAT_HANDSHAKE_TIMEOUT=20 sets [handshake] timeout to 20. Only
        keys that already exist are looked up, and the string is converted
        to the type of the current value.
        """
        for section, table in config.items():
            if not isinstance(table, dict):
                continue
            for key, current in table.items():
                env_var = f"{ENV_PREFIX}_{section.upper()}_{key.upper()}"
                raw = os.environ.get(env_var)
                if raw is None:
                    continue
                try:
                    table[key] = _coerce(raw, current)
                except ValueError:
                    raise ConfigError(
                        ErrorCode.E703_INVALID_CONFIG,
                        f"Invalid value for {env_var}: {raw!r}",
                        {"variable": env_var, "expected": type(current).__name__},
                    )

    def get(self, section: str, key: str, default: Any = None) -> Any:
        return self.data.get(section, {}).get(key, default)

    def set(self, section: str, key: str, value: Any) -> None:
        self.data.setdefault(section, {})[key] = value

    def save(self) -> None:
        """Write the effective configuration back to config_path.

        Raises:
            ConfigError: E702 if the file cannot be written
        """
        self._write(self.config_path, self.data, "Failed to save configuration")

    def to_dict(self) -> Dict[str, Any]:
        """Return a deep copy of the effective configuration."""
        return copy.deepcopy(self.data)

    @classmethod
    def create_example(cls, path: Path) -> None:
        """Write the default configuration, with a header, to path."""
        header = "# SecureChat Configuration File\n# Generated example configuration\n\n"
        cls._write(Path(path), DEFAULT_CONFIG, "Failed to create example configuration", header)

    @staticmethod
    def _write(path: Path, data: Dict[str, Any], failure: str, header: str = "") -> None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "w") as f:
                f.write(header)
                _dump_toml(f, data)
        except OSError as e:
            raise ConfigError(
                ErrorCode.E702_CONFIG_SAVE_FAILED,
                f"{failure}: {e}",
                {"path": str(path), "error": str(e)},
            )


@dataclass
class SessionSettings:
    """Per-session knobs taken from the [network] and [handshake] sections."""

    connect_timeout: float = CONNECTION_TIMEOUT
    handshake_timeout: float = HANDSHAKE_TIMEOUT
    handshake_enabled: bool = True
    initiate_on_accept: bool = False

    @classmethod
    def from_config(cls, config: Optional[Config]) -> "SessionSettings":
        """Build settings from a Config, falling back to defaults."""
        if config is None:
            return cls()
        return cls(
            connect_timeout=float(config.get("network", "connect_timeout", CONNECTION_TIMEOUT)),
            handshake_timeout=float(config.get("handshake", "timeout", HANDSHAKE_TIMEOUT)),
            handshake_enabled=bool(config.get("handshake", "enabled", True)),
            initiate_on_accept=bool(config.get("handshake", "initiate_on_accept", False)),
        )

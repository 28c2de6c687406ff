"""
SecureChat - Configuration tests.

Tests default values, TOML file merging, environment overrides and the
session settings derived from a Config.
"""

import os

import pytest

from securechat.config import DEFAULT_CONFIG, Config, SessionSettings
from securechat.constants import CONNECTION_TIMEOUT, HANDSHAKE_TIMEOUT
from securechat.errors import ConfigError, ErrorCode


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Remove any SECURECHAT_* variables from the environment."""
    for name in list(os.environ):
        if name.startswith("SECURECHAT_"):
            monkeypatch.delenv(name)


def test_defaults_without_file(temp_dir):
    """Test a missing file yields the defaults."""
    config = Config(temp_dir / "missing.toml")

    assert config.get("network", "connect_timeout") == CONNECTION_TIMEOUT
    assert config.get("handshake", "timeout") == HANDSHAKE_TIMEOUT
    assert config.get("handshake", "enabled") is True
    assert config.get("nope", "key", "fallback") == "fallback"
    assert config.to_dict() == DEFAULT_CONFIG


def test_file_values_merged(temp_dir):
    """Test file values override defaults section by section."""
    path = temp_dir / "config.toml"
    path.write_text("[handshake]\ntimeout = 3\nenabled = false\n\n[extra]\nname = \"x\"\n")

    config = Config(path)

    assert config.get("handshake", "timeout") == 3
    assert config.get("handshake", "enabled") is False
    assert config.get("handshake", "initiate_on_accept") is False
    assert config.get("network", "connect_timeout") == CONNECTION_TIMEOUT
    assert config.get("extra", "name") == "x"


def test_parse_error(temp_dir):
    """Test a malformed file raises a parse error."""
    path = temp_dir / "config.toml"
    path.write_text("[handshake\ntimeout = ")

    with pytest.raises(ConfigError) as exc_info:
        Config(path)

    assert exc_info.value.code == ErrorCode.E704_CONFIG_PARSE_ERROR


def test_env_overrides(temp_dir, monkeypatch):
    """Test environment variables override file and default values."""
    monkeypatch.setenv("SECURECHAT_NETWORK_CONNECT_TIMEOUT", "30")
    monkeypatch.setenv("SECURECHAT_HANDSHAKE_ENABLED", "no")
    monkeypatch.setenv("SECURECHAT_LOGGING_LEVEL", "DEBUG")

    config = Config(temp_dir / "config.toml")

    assert config.get("network", "connect_timeout") == 30
    assert config.get("handshake", "enabled") is False
    assert config.get("logging", "level") == "DEBUG"


def test_invalid_env_value(temp_dir, monkeypatch):
    """Test an env value of the wrong type is rejected."""
    monkeypatch.setenv("SECURECHAT_UI_MAX_HISTORY", "lots")

    with pytest.raises(ConfigError) as exc_info:
        Config(temp_dir / "config.toml")

    assert exc_info.value.code == ErrorCode.E703_INVALID_CONFIG


def test_save_and_reload(temp_dir):
    """Test saved values are read back."""
    path = temp_dir / "nested" / "config.toml"
    config = Config(path)
    config.set("handshake", "initiate_on_accept", True)
    config.set("logging", "log_file", 'C:\\logs\\"chat".log')
    config.save()

    reloaded = Config(path)

    assert reloaded.get("handshake", "initiate_on_accept") is True
    assert reloaded.get("logging", "log_file") == 'C:\\logs\\"chat".log'


def test_create_example(temp_dir):
    """Test the example file parses back to the defaults."""
    path = temp_dir / "example.toml"

    Config.create_example(path)

    assert path.read_text().startswith("# SecureChat Configuration File")
    assert Config(path).to_dict() == DEFAULT_CONFIG


def test_to_dict_is_a_copy(temp_dir):
    """Test mutating to_dict output leaves the config unchanged."""
    config = Config(temp_dir / "config.toml")
    data = config.to_dict()
    data["network"]["connect_timeout"] = 1

    assert config.get("network", "connect_timeout") == CONNECTION_TIMEOUT


def test_session_settings_from_config(temp_dir):
    """Test session settings pick up the network and handshake sections."""
    config = Config(temp_dir / "config.toml")
    config.set("network", "connect_timeout", 2)
    config.set("handshake", "timeout", 1)
    config.set("handshake", "enabled", False)
    config.set("handshake", "initiate_on_accept", True)

    settings = SessionSettings.from_config(config)

    assert settings == SessionSettings(
        connect_timeout=2.0,
        handshake_timeout=1.0,
        handshake_enabled=False,
        initiate_on_accept=True,
    )
    assert SessionSettings.from_config(None) == SessionSettings()

"""Tests for configuration loading (defaults, TOML file, environment)."""

import pytest

from render_orchestrator.config import (
    CONFIG_FILENAME,
    CommandFlags,
    Config,
    SupervisorConfig,
    reload_config,
)
from render_orchestrator.errors import ConfigError


@pytest.fixture
def isolated(tmp_path, monkeypatch):
    """Run with an empty cwd, no home config and no override variables."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(
        Config, "_home_config_path", lambda self: tmp_path / "home" / "config.toml"
    )
    for name in (
        "RENDER_ORCHESTRATOR_KILL_GRACE",
        "RENDER_ORCHESTRATOR_FLOOD_THRESHOLD",
        "RENDER_ORCHESTRATOR_RELAY_PUB",
        "RENDER_ORCHESTRATOR_RELAY_CONTROL",
    ):
        monkeypatch.delenv(name, raising=False)
    return tmp_path


class TestDefaults:
    def test_defaults_without_file(self, isolated):
        config = Config()
        config.load()

        assert config.config_file is None
        assert config.flags == CommandFlags()
        assert config.supervisor.kill_grace_period == 2.0
        assert config.supervisor.flood_threshold == 50
        assert config.supervisor.frame_padding == 4
        assert config.relay.publish_address == "tcp://127.0.0.1:9101"
        assert config.relay.control_address == "tcp://127.0.0.1:9100"


class TestConfigFile:
    """Tests for TOML file loading."""

    def test_cwd_file(self, isolated):
        (isolated / CONFIG_FILENAME).write_text(
            """
[flags]
output_path = "--output"

[supervisor]
kill_grace_period = 5.0
history_limit = 3

[relay]
publish_address = "tcp://0.0.0.0:7001"
"""
        )
        config = Config()
        config.load()

        assert config.config_file == isolated / CONFIG_FILENAME
        assert config.flags.output_path == "--output"
        assert config.flags.single_frame == "-f"
        assert config.supervisor.kill_grace_period == 5.0
        assert config.supervisor.history_limit == 3
        assert config.relay.publish_address == "tcp://0.0.0.0:7001"

    def test_home_file_used_when_cwd_has_none(self, isolated):
        home = isolated / "home"
        home.mkdir()
        (home / "config.toml").write_text("[supervisor]\nflood_threshold = 10\n")

        config = Config()
        config.load()

        assert config.supervisor.flood_threshold == 10

    def test_malformed_file_falls_back_to_defaults(self, isolated):
        (isolated / CONFIG_FILENAME).write_text("this is = = not toml")
        config = Config()
        config.load()

        assert config.config_file is None
        assert config.supervisor == SupervisorConfig()

    def test_invalid_value_raises(self, isolated):
        (isolated / CONFIG_FILENAME).write_text("[supervisor]\nkill_grace_period = 0\n")
        with pytest.raises(ConfigError):
            Config().load()

    def test_empty_flag_raises(self, isolated):
        (isolated / CONFIG_FILENAME).write_text('[flags]\nanimation = ""\n')
        with pytest.raises(ConfigError):
            Config().load()


class TestEnvOverrides:
    """Environment variables win over the file."""

    def test_overrides(self, isolated, monkeypatch):
        (isolated / CONFIG_FILENAME).write_text("[supervisor]\nkill_grace_period = 5.0\n")
        monkeypatch.setenv("RENDER_ORCHESTRATOR_KILL_GRACE", "0.5")
        monkeypatch.setenv("RENDER_ORCHESTRATOR_FLOOD_THRESHOLD", "7")
        monkeypatch.setenv("RENDER_ORCHESTRATOR_RELAY_PUB", "tcp://127.0.0.1:5555")
        monkeypatch.setenv("RENDER_ORCHESTRATOR_RELAY_CONTROL", "ipc:///tmp/ctl")

        config = reload_config()

        assert config.supervisor.kill_grace_period == 0.5
        assert config.supervisor.flood_threshold == 7
        assert config.relay.publish_address == "tcp://127.0.0.1:5555"
        assert config.relay.control_address == "ipc:///tmp/ctl"

    def test_invalid_override(self, isolated, monkeypatch):
        monkeypatch.setenv("RENDER_ORCHESTRATOR_FLOOD_THRESHOLD", "lots")
        with pytest.raises(ConfigError):
            Config().load()


def test_to_dict_sections(isolated):
    data = Config().to_dict()
    assert set(data) == {"flags", "supervisor", "relay"}
    assert data["flags"]["version"] == "--version"

"""Configuration management for render-orchestrator.

This module handles loading configuration from multiple sources with the following priority:
1. CLI arguments (handled by caller)
2. Environment variables (RENDER_ORCHESTRATOR_*)
3. TOML configuration file
4. Default values

Configuration files are loaded from:
- render-orchestrator.toml in current working directory
- ~/.render-orchestrator/config.toml

The launch-command flag spellings live in the ``[flags]`` table so that a
different worker binary can be driven without code changes.
"""

import os
import tomllib
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Optional

from loguru import logger

from render_orchestrator.errors import ConfigError


@dataclass
class CommandFlags:
    """Flag spellings of the worker's launch-command grammar.

    Attributes:
        single_frame: Flag selecting one frame to render (``-f 12``).
        frame_start: Flag selecting the first frame of a range (``-s 1``).
        frame_end: Flag selecting the last frame of a range (``-e 250``).
        output_path: Flag carrying the output path prefix (``-o /tmp/out_``).
        output_format: Flag carrying the image/video format (``-F PNG``).
        animation: Flag requesting an animation render (``-a``).
        version: Flag making the worker print its version and exit.
    """

    single_frame: str = "-f"
    frame_start: str = "-s"
    frame_end: str = "-e"
    output_path: str = "-o"
    output_format: str = "-F"
    animation: str = "-a"
    version: str = "--version"

    def __post_init__(self):
        """Validate flag spellings after initialization."""
        for f in fields(self):
            value = getattr(self, f.name)
            if not isinstance(value, str) or not value.strip():
                raise ConfigError(f"Flag '{f.name}' cannot be empty")

    @classmethod
    def from_dict(cls, data: dict) -> "CommandFlags":
        """Create CommandFlags from the TOML [flags] table.

        Unknown keys are ignored with a warning.
        """
        known = {f.name for f in fields(cls)}
        values = {}
        for key, value in data.items():
            if key not in known:
                logger.warning(f"Ignoring unknown flag setting: {key}")
                continue
            values[key] = value
        return cls(**values)


@dataclass
class SupervisorConfig:
    """Tunables of the process supervisor.

    Attributes:
        kill_grace_period: Seconds between SIGTERM and SIGKILL on POSIX.
        flood_threshold: Diagnostic lines per window above which a job is killed.
        flood_window: Length of the flood-guard window in seconds.
        frame_padding: Zero-padding width of frame numbers in output names.
        history_limit: Number of finished job snapshots kept for late queries.
        read_size: Bytes read from a worker pipe per call.
    """

    kill_grace_period: float = 2.0
    flood_threshold: int = 50
    flood_window: float = 1.0
    frame_padding: int = 4
    history_limit: int = 50
    read_size: int = 4096

    def __post_init__(self):
        if self.kill_grace_period <= 0:
            raise ConfigError("kill_grace_period must be positive")
        if self.flood_threshold < 1:
            raise ConfigError("flood_threshold must be at least 1")
        if self.flood_window <= 0:
            raise ConfigError("flood_window must be positive")
        if self.frame_padding < 1:
            raise ConfigError("frame_padding must be at least 1")
        if self.history_limit < 0:
            raise ConfigError("history_limit cannot be negative")
        if self.read_size < 1:
            raise ConfigError("read_size must be at least 1")

    @classmethod
    def from_dict(cls, data: dict) -> "SupervisorConfig":
        """Create SupervisorConfig from the TOML [supervisor] table."""
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class RelayConfig:
    """ZMQ addresses used by the remote companion relay.

    Attributes:
        publish_address: Address the event PUB socket binds to.
        control_address: Address the command SUB socket binds to.
    """

    publish_address: str = "tcp://127.0.0.1:9101"
    control_address: str = "tcp://127.0.0.1:9100"

    @classmethod
    def from_dict(cls, data: dict) -> "RelayConfig":
        """Create RelayConfig from the TOML [relay] table."""
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


CONFIG_FILENAME = "render-orchestrator.toml"


class Config:
    """Configuration manager for render-orchestrator."""

    def __init__(self):
        """Initialize configuration with defaults."""
        self.flags: CommandFlags = CommandFlags()
        self.supervisor: SupervisorConfig = SupervisorConfig()
        self.relay: RelayConfig = RelayConfig()
        self.config_file: Optional[Path] = None
        self._config_data: dict = {}

    def load(self) -> None:
        """Load configuration from all sources.

        Priority order:
        1. Environment variables
        2. TOML configuration file
        3. Default values
        """
        config_file = self._find_config_file()
        if config_file:
            self._load_config_file(config_file)

        self._apply_env_overrides()

    def _home_config_path(self) -> Path:
        return Path.home() / ".render-orchestrator" / "config.toml"

    def _find_config_file(self) -> Optional[Path]:
        """Find the configuration file.

        Searches in order:
        1. render-orchestrator.toml in current working directory
        2. ~/.render-orchestrator/config.toml

        Returns:
            Path to config file if found, None otherwise.
        """
        cwd_config = Path.cwd() / CONFIG_FILENAME
        if cwd_config.exists():
            logger.info(f"Loading config from {cwd_config}")
            return cwd_config

        home_config = self._home_config_path()
        if home_config.exists():
            logger.info(f"Loading config from {home_config}")
            return home_config

        logger.debug("No config file found, using defaults")
        return None

    def _load_config_file(self, config_file: Path) -> None:
        """Load configuration from TOML file.

        A malformed file is reported and ignored; an out-of-range value
        raises ConfigError.

        Args:
            config_file: Path to the TOML configuration file.
        """
        try:
            with open(config_file, "rb") as f:
                self._config_data = tomllib.load(f)
        except (OSError, tomllib.TOMLDecodeError) as e:
            logger.warning(
                f"Failed to load config file {config_file}: {e}. Using defaults."
            )
            return

        self.config_file = config_file
        self.flags = CommandFlags.from_dict(self._config_data.get("flags", {}))
        self.supervisor = SupervisorConfig.from_dict(
            self._config_data.get("supervisor", {})
        )
        self.relay = RelayConfig.from_dict(self._config_data.get("relay", {}))

    def _apply_env_overrides(self) -> None:
        """Apply environment variable overrides.

        Environment variables take precedence over config file settings
        but are overridden by CLI arguments (handled by caller).
        """
        grace = os.getenv("RENDER_ORCHESTRATOR_KILL_GRACE")
        if grace:
            try:
                self.supervisor = SupervisorConfig(
                    **{**asdict(self.supervisor), "kill_grace_period": float(grace)}
                )
                logger.info(f"Overriding kill_grace_period from env: {grace}")
            except ValueError as e:
                raise ConfigError(f"Invalid RENDER_ORCHESTRATOR_KILL_GRACE: {e}")

        threshold = os.getenv("RENDER_ORCHESTRATOR_FLOOD_THRESHOLD")
        if threshold:
            try:
                self.supervisor = SupervisorConfig(
                    **{**asdict(self.supervisor), "flood_threshold": int(threshold)}
                )
                logger.info(f"Overriding flood_threshold from env: {threshold}")
            except ValueError as e:
                raise ConfigError(
                    f"Invalid RENDER_ORCHESTRATOR_FLOOD_THRESHOLD: {e}"
                )

        pub = os.getenv("RENDER_ORCHESTRATOR_RELAY_PUB")
        if pub:
            self.relay.publish_address = pub
            logger.info(f"Overriding relay publish_address from env: {pub}")

        control = os.getenv("RENDER_ORCHESTRATOR_RELAY_CONTROL")
        if control:
            self.relay.control_address = control
            logger.info(f"Overriding relay control_address from env: {control}")

    def to_dict(self) -> dict:
        """Return the effective configuration as nested dictionaries."""
        return {
            "flags": asdict(self.flags),
            "supervisor": asdict(self.supervisor),
            "relay": asdict(self.relay),
        }


# Global configuration instance
_config: Optional[Config] = None


def get_config() -> Config:
    """Get the global configuration instance.

    Loads configuration on first call.

    Returns:
        Global Config instance.
    """
    global _config
    if _config is None:
        _config = Config()
        _config.load()
    return _config


def reload_config() -> Config:
    """Reload configuration from sources.

    Useful for testing or runtime reconfiguration.

    Returns:
        Reloaded Config instance.
    """
    global _config
    _config = Config()
    _config.load()
    return _config

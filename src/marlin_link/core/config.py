"""Configuration management for Marlin Link.

Handles configuration loading with the following precedence (highest to lowest):
1. Environment variables
2. CLI arguments
3. Config file
4. Default values

Durations are expressed in milliseconds in the file, on the command line and
in the environment; the printer converts them to seconds when it builds its
session, channel and streamer. log.max-age is the exception, in seconds.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from marlin_link.core.logging import get_logger

logger = get_logger()

DEFAULT_CONFIG_PATH = Path.home() / ".config" / "marlin-link" / "config.yaml"
DEFAULT_BAUD_RATES = [115200, 250000, 57600, 38400, 9600]
DEFAULT_EMERGENCY_STOP = ["M112", "M410", "M84"]

# Environment variable names
ENV_CONFIG_FILE = "MARLIN_LINK_CONFIG"
ENV_USB_ID = "MARLIN_LINK_USB_ID"
ENV_PATH = "MARLIN_LINK_PATH"
ENV_BAUD_RATES = "MARLIN_LINK_BAUD_RATES"
ENV_ACK_TIMEOUT = "MARLIN_LINK_ACK_TIMEOUT"
ENV_COMM_LOG_FILE = "MARLIN_LINK_COMM_LOG_FILE"


@dataclass
class ConnectionConfig:
    """Serial port and session settings."""

    usb_id: str | None = None
    path: str | None = None
    baud_rates: list[int] = field(default_factory=lambda: list(DEFAULT_BAUD_RATES))
    handshake_timeout: float = 2000.0  # ms
    open_settle_delay: float = 500.0  # ms
    auto_fetch: bool = True


@dataclass
class ChannelConfig:
    """Command channel and acknowledgment settings."""

    ack_timeout: float = 60000.0  # ms
    busy_hold: float = 3000.0  # ms
    no_ack_delay: float = 50.0  # ms
    error_ok_grace: float = 200.0  # ms


@dataclass
class StreamingConfig:
    """Program streaming settings."""

    pace: float = 0.0  # ms
    wait_for_ack: bool = True
    busy_ceiling: float = 900000.0  # ms
    busy_heartbeat: float = 5000.0  # ms
    history_size: int = 10
    emergency_stop: list[str] = field(default_factory=lambda: list(DEFAULT_EMERGENCY_STOP))


@dataclass
class TelemetryConfig:
    """Telemetry history and polling settings."""

    history_size: int = 60
    poll_interval: float = 0.0  # ms, 0 disables polling
    poll_position: bool = False


@dataclass
class LogConfig:
    """Diagnostic log ring settings."""

    max_entries: int = 1000
    max_age: float = 3600.0  # s
    comm_log_file: str | None = None


def _get(data: dict[str, Any], key: str) -> Any:
    """Look up a key accepting both hyphenated and underscored spellings."""
    if key in data:
        return data[key]
    return data.get(key.replace("-", "_"))


def _parse_baud_rates(value: Any) -> list[int]:
    if isinstance(value, str):
        return [int(v) for v in value.replace(" ", "").split(",") if v]
    if isinstance(value, int):
        return [value]
    return [int(v) for v in value]


@dataclass
class Config:
    """Main configuration container."""

    connection: ConnectionConfig = field(default_factory=ConnectionConfig)
    channel: ChannelConfig = field(default_factory=ChannelConfig)
    streaming: StreamingConfig = field(default_factory=StreamingConfig)
    telemetry: TelemetryConfig = field(default_factory=TelemetryConfig)
    log: LogConfig = field(default_factory=LogConfig)

    @classmethod
    def load(
        cls,
        config_file: Path | str | None = None,
        cli_args: dict[str, Any] | None = None,
    ) -> "Config":
        """Load configuration from all sources with proper precedence.

        Args:
            config_file: Path to configuration file. If None, uses default or env var.
            cli_args: Dictionary of CLI arguments.

        Returns:
            Loaded and merged configuration.

        Raises:
            ValueError: If the merged configuration is invalid.
        """
        config = cls()

        if config_file is None:
            config_file = os.environ.get(ENV_CONFIG_FILE, str(DEFAULT_CONFIG_PATH))

        config_path = Path(config_file).expanduser()

        if config_path.exists():
            config = cls._load_from_file(config_path)

        if cli_args:
            config = cls._apply_cli_args(config, cli_args)

        config = cls._apply_env_vars(config)

        config._validate()

        return config

    @classmethod
    def _load_from_file(cls, path: Path) -> "Config":
        """Load configuration from YAML file.

        Args:
            path: Path to the YAML config file.

        Returns:
            Configuration loaded from file.
        """
        config = cls()

        try:
            with open(path, encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except (yaml.YAMLError, OSError) as e:
            logger.warning(f"Failed to load config file {path}: {e}")
            return config

        connection = data.get("connection") or {}
        if _get(connection, "usb-id") is not None:
            config.connection.usb_id = str(_get(connection, "usb-id"))
        if _get(connection, "path") is not None:
            config.connection.path = str(_get(connection, "path"))
        if _get(connection, "baud-rates") is not None:
            config.connection.baud_rates = _parse_baud_rates(_get(connection, "baud-rates"))
        if _get(connection, "handshake-timeout") is not None:
            config.connection.handshake_timeout = float(_get(connection, "handshake-timeout"))
        if _get(connection, "open-settle-delay") is not None:
            config.connection.open_settle_delay = float(_get(connection, "open-settle-delay"))
        if _get(connection, "auto-fetch") is not None:
            config.connection.auto_fetch = bool(_get(connection, "auto-fetch"))

        channel = data.get("channel") or {}
        if _get(channel, "ack-timeout") is not None:
            config.channel.ack_timeout = float(_get(channel, "ack-timeout"))
        if _get(channel, "busy-hold") is not None:
            config.channel.busy_hold = float(_get(channel, "busy-hold"))
        if _get(channel, "no-ack-delay") is not None:
            config.channel.no_ack_delay = float(_get(channel, "no-ack-delay"))
        if _get(channel, "error-ok-grace") is not None:
            config.channel.error_ok_grace = float(_get(channel, "error-ok-grace"))

        streaming = data.get("streaming") or {}
        if _get(streaming, "pace") is not None:
            config.streaming.pace = float(_get(streaming, "pace"))
        if _get(streaming, "wait-for-ack") is not None:
            config.streaming.wait_for_ack = bool(_get(streaming, "wait-for-ack"))
        if _get(streaming, "busy-ceiling") is not None:
            config.streaming.busy_ceiling = float(_get(streaming, "busy-ceiling"))
        if _get(streaming, "busy-heartbeat") is not None:
            config.streaming.busy_heartbeat = float(_get(streaming, "busy-heartbeat"))
        if _get(streaming, "history-size") is not None:
            config.streaming.history_size = int(_get(streaming, "history-size"))
        if _get(streaming, "emergency-stop") is not None:
            config.streaming.emergency_stop = [str(c) for c in _get(streaming, "emergency-stop")]

        telemetry = data.get("telemetry") or {}
        if _get(telemetry, "history-size") is not None:
            config.telemetry.history_size = int(_get(telemetry, "history-size"))
        if _get(telemetry, "poll-interval") is not None:
            config.telemetry.poll_interval = float(_get(telemetry, "poll-interval"))
        if _get(telemetry, "poll-position") is not None:
            config.telemetry.poll_position = bool(_get(telemetry, "poll-position"))

        log = data.get("log") or {}
        if _get(log, "max-entries") is not None:
            config.log.max_entries = int(_get(log, "max-entries"))
        if _get(log, "max-age") is not None:
            config.log.max_age = float(_get(log, "max-age"))
        if _get(log, "comm-log-file") is not None:
            config.log.comm_log_file = str(_get(log, "comm-log-file"))

        return config

    @classmethod
    def _apply_cli_args(cls, config: "Config", cli_args: dict[str, Any]) -> "Config":
        """Apply CLI arguments to configuration.

        Args:
            config: Existing configuration to modify.
            cli_args: Dictionary of CLI arguments.

        Returns:
            Modified configuration.
        """
        if cli_args.get("usb_id") is not None:
            config.connection.usb_id = str(cli_args["usb_id"])

        if cli_args.get("dev_path") is not None:
            config.connection.path = str(cli_args["dev_path"])

        if cli_args.get("baud_rate") is not None:
            config.connection.baud_rates = _parse_baud_rates(cli_args["baud_rate"])

        if cli_args.get("ack_timeout") is not None:
            config.channel.ack_timeout = float(cli_args["ack_timeout"])

        if cli_args.get("pace") is not None:
            config.streaming.pace = float(cli_args["pace"])

        if cli_args.get("auto_fetch") is not None:
            config.connection.auto_fetch = bool(cli_args["auto_fetch"])

        if cli_args.get("comm_log_file") is not None:
            config.log.comm_log_file = str(cli_args["comm_log_file"])

        return config

    @classmethod
    def _apply_env_vars(cls, config: "Config") -> "Config":
        """Apply environment variables to configuration.

        Args:
            config: Existing configuration to modify.

        Returns:
            Modified configuration.
        """
        if ENV_USB_ID in os.environ:
            config.connection.usb_id = os.environ[ENV_USB_ID]

        if ENV_PATH in os.environ:
            config.connection.path = os.environ[ENV_PATH]

        if ENV_BAUD_RATES in os.environ:
            config.connection.baud_rates = _parse_baud_rates(os.environ[ENV_BAUD_RATES])

        if ENV_ACK_TIMEOUT in os.environ:
            config.channel.ack_timeout = float(os.environ[ENV_ACK_TIMEOUT])

        if ENV_COMM_LOG_FILE in os.environ:
            config.log.comm_log_file = os.environ[ENV_COMM_LOG_FILE]

        return config

    def _validate(self) -> None:
        """Validate configuration values.

        Raises:
            ValueError: If configuration is missing or invalid.
        """
        if not self.connection.baud_rates:
            raise ValueError("At least one baud rate must be configured")

        if any(b <= 0 for b in self.connection.baud_rates):
            raise ValueError(f"Invalid baud rates: {self.connection.baud_rates}")

        if self.channel.ack_timeout <= 0:
            raise ValueError("channel.ack-timeout must be positive")

        if self.streaming.busy_ceiling <= 0:
            raise ValueError("streaming.busy-ceiling must be positive")

        if self.telemetry.history_size <= 0 or self.streaming.history_size <= 0:
            raise ValueError("History sizes must be positive")

        if self.log.max_entries <= 0 or self.log.max_age <= 0:
            raise ValueError("log.max-entries and log.max-age must be positive")

    def to_dict(self) -> dict[str, Any]:
        """Convert configuration to a YAML-friendly dictionary with hyphenated keys."""
        connection: dict[str, Any] = {
            "baud-rates": list(self.connection.baud_rates),
            "handshake-timeout": self.connection.handshake_timeout,
            "open-settle-delay": self.connection.open_settle_delay,
            "auto-fetch": self.connection.auto_fetch,
        }
        if self.connection.usb_id is not None:
            connection["usb-id"] = self.connection.usb_id
        if self.connection.path is not None:
            connection["path"] = self.connection.path

        log: dict[str, Any] = {
            "max-entries": self.log.max_entries,
            "max-age": self.log.max_age,
        }
        if self.log.comm_log_file is not None:
            log["comm-log-file"] = self.log.comm_log_file

        return {
            "connection": connection,
            "channel": {
                "ack-timeout": self.channel.ack_timeout,
                "busy-hold": self.channel.busy_hold,
                "no-ack-delay": self.channel.no_ack_delay,
                "error-ok-grace": self.channel.error_ok_grace,
            },
            "streaming": {
                "pace": self.streaming.pace,
                "wait-for-ack": self.streaming.wait_for_ack,
                "busy-ceiling": self.streaming.busy_ceiling,
                "busy-heartbeat": self.streaming.busy_heartbeat,
                "history-size": self.streaming.history_size,
                "emergency-stop": list(self.streaming.emergency_stop),
            },
            "telemetry": {
                "history-size": self.telemetry.history_size,
                "poll-interval": self.telemetry.poll_interval,
                "poll-position": self.telemetry.poll_position,
            },
            "log": log,
        }

    def save(self, path: Path | str | None = None) -> None:
        """Save configuration to YAML file.

        Args:
            path: Path to save to. If None, uses default config path.
        """
        if path is None:
            path = DEFAULT_CONFIG_PATH

        save_path = Path(path).expanduser()
        save_path.parent.mkdir(parents=True, exist_ok=True)

        with open(save_path, "w", encoding="utf-8") as f:
            yaml.safe_dump(self.to_dict(), f, default_flow_style=False, sort_keys=False)

"""
Configuration management for tsnprobe.
"""

import logging
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Optional

import toml

from .clock import CLOCK_SOURCES
from .packet import Flow

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass
class SenderConfig:
    """Sender configuration settings."""
    control_tos: int = 0x10
    logging_tos: int = 0


@dataclass
class ReceiverConfig:
    """Receiver configuration settings."""
    report_every: int = 100
    latency_window: int = 1000
    recv_buffer_size: int = 0


@dataclass
class ClockConfig:
    """Clock reference settings."""
    source: str = "run"


@dataclass
class NetworkConfig:
    """Network configuration settings."""
    host_name: str = ""


@dataclass
class InfluxDBConfig:
    """InfluxDB configuration settings."""
    enabled: bool = False
    url: str = "http://localhost:8086"
    bucket: str = "tsnprobe"
    organization: str = "tsnprobe"
    token: str = ""


@dataclass
class LoggingConfig:
    """Logging configuration settings."""
    level: str = "INFO"
    file: str = ""
    max_size: int = 10
    backup_count: int = 5


def _section(cls, data: Optional[Dict[str, Any]]):
    """Build a section dataclass, overlaying file values on the defaults."""
    section = cls()
    if not data:
        return section
    known = {f.name: f for f in fields(cls)}
    updates = {}
    for key, value in data.items():
        if key not in known:
            logging.getLogger(__name__).warning(f"Ignoring unknown configuration key: {cls.__name__}.{key}")
            continue
        expected = type(getattr(section, key))
        if (expected is int and isinstance(value, bool)) or not isinstance(value, expected):
            raise ValueError(
                f"Configuration key {key!r} must be {expected.__name__}, got {type(value).__name__}"
            )
        updates[key] = value
    return replace(section, **updates)


@dataclass
class Config:
    """Main configuration class."""
    sender: SenderConfig = field(default_factory=SenderConfig)
    receiver: ReceiverConfig = field(default_factory=ReceiverConfig)
    clock: ClockConfig = field(default_factory=ClockConfig)
    network: NetworkConfig = field(default_factory=NetworkConfig)
    influxdb: InfluxDBConfig = field(default_factory=InfluxDBConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def default(cls) -> 'Config':
        return cls()

    @classmethod
    def from_file(cls, config_path: Path) -> 'Config':
        """Load configuration from TOML file."""
        try:
            config_data = toml.load(config_path)
        except (OSError, toml.TomlDecodeError) as e:
            raise ValueError(f"Failed to load configuration: {e}")

        return cls(
            sender=_section(SenderConfig, config_data.get('sender')),
            receiver=_section(ReceiverConfig, config_data.get('receiver')),
            clock=_section(ClockConfig, config_data.get('clock')),
            network=_section(NetworkConfig, config_data.get('network')),
            influxdb=_section(InfluxDBConfig, config_data.get('influxdb')),
            logging=_section(LoggingConfig, config_data.get('logging'))
        )

    def tos_for(self, flow: Flow) -> Optional[int]:
        """TOS byte to request for a flow, or None to leave the socket unmarked."""
        tos = self.sender.control_tos if flow == Flow.CONTROL else self.sender.logging_tos
        return tos or None

    def validate(self) -> bool:
        """Validate configuration values."""
        for name in ('control_tos', 'logging_tos'):
            value = getattr(self.sender, name)
            if value < 0 or value > 255:
                raise ValueError(f"sender.{name} must be between 0 and 255")

        if self.receiver.report_every < 1:
            raise ValueError("receiver.report_every must be at least 1")

        if self.receiver.latency_window < 1:
            raise ValueError("receiver.latency_window must be at least 1")

        if self.receiver.recv_buffer_size < 0:
            raise ValueError("receiver.recv_buffer_size must not be negative")

        if self.clock.source not in CLOCK_SOURCES:
            raise ValueError(
                f"clock.source must be one of {', '.join(CLOCK_SOURCES)}, got {self.clock.source!r}"
            )

        if self.logging.level.upper() not in LOG_LEVELS:
            raise ValueError(f"Unknown logging level: {self.logging.level}")

        return True

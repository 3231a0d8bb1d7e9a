"""
Configuration Dataclasses

Type-safe configuration structures for the gateway, loaded from a YAML
options file with environment overrides.
"""

import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

import yaml

from .exceptions import ConfigError, InvalidTypeError

DEFAULT_STORAGE_DIR = "/var/lib/modbus-gateway"
DEFAULT_POLLING_INTERVAL_MS = 1000

# Modbus unit identifiers usable by a slave
MIN_UNIT_ID = 1
MAX_UNIT_ID = 247


class ConnectionState(str, Enum):
    """Slave connection states"""
    DISCONNECTED = "disconnected"
    CONNECTED = "connected"


class SourceType(str, Enum):
    """Source value types, persisted as single-character tags"""
    BOOL = "b"
    BYTE = "y"
    UINT16 = "q"
    UINT32 = "u"
    UINT64 = "t"

    @classmethod
    def parse(cls, value: str) -> "SourceType":
        """Accept a type tag or one of its readable aliases"""
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            raise InvalidTypeError(f"Invalid source type: {value!r}")

        text = value.strip()
        try:
            return cls(text)
        except ValueError:
            pass

        alias = _TYPE_ALIASES.get(text.lower())
        if alias is None:
            raise InvalidTypeError(f"Unsupported source type: {value!r}")
        return alias

    @property
    def is_bits(self) -> bool:
        """Read from coils rather than holding registers"""
        return self in (SourceType.BOOL, SourceType.BYTE)

    @property
    def read_count(self) -> int:
        """Number of coils or registers per read"""
        return _READ_COUNTS[self]

    @property
    def default_value(self) -> bool | int:
        return False if self is SourceType.BOOL else 0


_TYPE_ALIASES = {
    "bool": SourceType.BOOL,
    "boolean": SourceType.BOOL,
    "byte": SourceType.BYTE,
    "8bit": SourceType.BYTE,
    "16bit": SourceType.UINT16,
    "uint16": SourceType.UINT16,
    "32bit": SourceType.UINT32,
    "uint32": SourceType.UINT32,
    "64bit": SourceType.UINT64,
    "uint64": SourceType.UINT64,
}

_READ_COUNTS = {
    SourceType.BOOL: 1,
    SourceType.BYTE: 8,
    SourceType.UINT16: 1,
    SourceType.UINT32: 2,
    SourceType.UINT64: 4,
}


@dataclass
class ModbusSettings:
    """Register client settings"""
    timeout_s: float = 3.0
    retries: int = 0


@dataclass
class ApiSettings:
    """Upward request surface (HTTP) settings"""
    enabled: bool = True
    host: str = "127.0.0.1"
    port: int = 8090


@dataclass
class LoggingSettings:
    """Log output configuration"""
    level: str = "INFO"
    format: str = "json"  # json, text


@dataclass
class GatewayOptions:
    """Complete gateway options"""
    storage_dir: Path = field(default_factory=lambda: Path(DEFAULT_STORAGE_DIR))
    polling_interval_ms: int = DEFAULT_POLLING_INTERVAL_MS
    modbus: ModbusSettings = field(default_factory=ModbusSettings)
    api: ApiSettings = field(default_factory=ApiSettings)
    logging: LoggingSettings = field(default_factory=LoggingSettings)

    @property
    def slaves_file(self) -> Path:
        """Top-level store holding one group per slave"""
        return self.storage_dir / "slaves.conf"

    def slave_dir(self, key: str) -> Path:
        """Storage subtree owned by one slave"""
        return self.storage_dir / key

    def sources_file(self, key: str) -> Path:
        return self.slave_dir(key) / "sources.conf"

    def to_dict(self) -> dict[str, Any]:
        return {
            "storage_dir": str(self.storage_dir),
            "polling_interval_ms": self.polling_interval_ms,
            "modbus": {
                "timeout_s": self.modbus.timeout_s,
                "retries": self.modbus.retries,
            },
            "api": {
                "enabled": self.api.enabled,
                "host": self.api.host,
                "port": self.api.port,
            },
            "logging": {
                "level": self.logging.level,
                "format": self.logging.format,
            },
        }


def load_options_dict(data: dict) -> GatewayOptions:
    """Load GatewayOptions from a dictionary (e.g., parsed YAML)"""
    if not isinstance(data, dict):
        raise ConfigError("options must be a mapping")

    modbus_data = data.get("modbus") or {}
    api_data = data.get("api") or {}
    logging_data = data.get("logging") or {}

    api_enabled = api_data.get("enabled", True)
    if not isinstance(api_enabled, bool):
        raise ConfigError(f"api.enabled must be true or false, not {api_enabled!r}")

    try:
        options = GatewayOptions(
            storage_dir=Path(data.get("storage_dir", DEFAULT_STORAGE_DIR)),
            polling_interval_ms=int(
                data.get("polling_interval_ms", DEFAULT_POLLING_INTERVAL_MS)
            ),
            modbus=ModbusSettings(
                timeout_s=float(modbus_data.get("timeout_s", 3.0)),
                retries=int(modbus_data.get("retries", 0)),
            ),
            api=ApiSettings(
                enabled=api_enabled,
                host=str(api_data.get("host", "127.0.0.1")),
                port=int(api_data.get("port", 8090)),
            ),
            logging=LoggingSettings(
                level=str(logging_data.get("level", "INFO")),
                format=str(logging_data.get("format", "json")).lower(),
            ),
        )
    except (TypeError, ValueError) as e:
        raise ConfigError(str(e)) from e

    validate_options(options)
    return options


def validate_options(options: GatewayOptions) -> None:
    """Raise ConfigError on values the gateway cannot run with"""
    errors = []

    if options.polling_interval_ms <= 0:
        errors.append("polling_interval_ms must be positive")
    if options.modbus.timeout_s <= 0:
        errors.append("modbus.timeout_s must be positive")
    if options.modbus.retries < 0:
        errors.append("modbus.retries must not be negative")
    if not 0 < options.api.port < 65536:
        errors.append(f"api.port out of range: {options.api.port}")
    if options.logging.format not in ("json", "text"):
        errors.append(f"logging.format must be json or text, not {options.logging.format}")

    if errors:
        raise ConfigError("; ".join(errors))


def load_options(path: str | Path | None = None) -> GatewayOptions:
    """
    Load gateway options from a YAML file.

    A missing file yields defaults. MODBUS_GATEWAY_STORAGE_DIR,
    MODBUS_GATEWAY_API_PORT, MODBUS_GATEWAY_LOG_LEVEL and
    MODBUS_GATEWAY_LOG_FORMAT override the file.

    Args:
        path: Options file path, or None for defaults only

    Returns:
        Validated GatewayOptions
    """
    data: dict = {}

    if path is not None:
        path = Path(path)
        if path.exists():
            try:
                with open(path, "r", encoding="utf-8") as f:
                    data = yaml.safe_load(f) or {}
            except (OSError, yaml.YAMLError) as e:
                raise ConfigError(f"Unable to load {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError("options must be a mapping")

    storage_dir = os.environ.get("MODBUS_GATEWAY_STORAGE_DIR")
    if storage_dir:
        data["storage_dir"] = storage_dir

    api_port = os.environ.get("MODBUS_GATEWAY_API_PORT")
    if api_port:
        data["api"] = {**(data.get("api") or {}), "port": api_port}

    logging_overrides = {
        "level": os.environ.get("MODBUS_GATEWAY_LOG_LEVEL"),
        "format": os.environ.get("MODBUS_GATEWAY_LOG_FORMAT"),
    }
    logging_overrides = {k: v for k, v in logging_overrides.items() if v}
    if logging_overrides:
        data["logging"] = {**(data.get("logging") or {}), **logging_overrides}

    return load_options_dict(data)

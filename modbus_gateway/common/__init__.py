"""
Common Utilities

Shared modules used across the gateway:
- config.py - Options dataclasses and value types
- exceptions.py - Custom exception classes
- logging_setup.py - Structured logging setup
- scheduler.py - Repeating poll timer
"""

from .config import (
    GatewayOptions,
    ModbusSettings,
    ApiSettings,
    LoggingSettings,
    ConnectionState,
    SourceType,
    load_options,
    load_options_dict,
)
from .exceptions import (
    GatewayError,
    ConfigError,
    InvalidArgsError,
    InvalidTypeError,
    NotFoundError,
    DuplicateAddressError,
    AlreadyInStateError,
    StorageError,
    DeviceError,
    ConnectFailureError,
    ReadFailureError,
)
from .logging_setup import (
    setup_logging,
    get_service_logger,
    log_source_read,
    log_slave_state,
)
from .scheduler import PollTimer

__all__ = [
    # Config
    "GatewayOptions",
    "ModbusSettings",
    "ApiSettings",
    "LoggingSettings",
    "ConnectionState",
    "SourceType",
    "load_options",
    "load_options_dict",
    # Exceptions
    "GatewayError",
    "ConfigError",
    "InvalidArgsError",
    "InvalidTypeError",
    "NotFoundError",
    "DuplicateAddressError",
    "AlreadyInStateError",
    "StorageError",
    "DeviceError",
    "ConnectFailureError",
    "ReadFailureError",
    # Logging
    "setup_logging",
    "get_service_logger",
    "log_source_read",
    "log_slave_state",
    # Scheduling
    "PollTimer",
]

"""
Structured Logging Setup

Consistent logging configuration across the gateway components.
Uses JSON format for structured logs in production.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

# Root of every gateway logger name
LOGGER_NAMESPACE = "modbus_gateway"

_RESERVED_RECORD_KEYS = frozenset((
    "name", "msg", "args", "levelname", "levelno", "pathname",
    "filename", "module", "exc_info", "exc_text", "stack_info",
    "lineno", "funcName", "created", "msecs", "relativeCreated",
    "thread", "threadName", "processName", "process", "component",
    "message", "taskName",
))


class JsonFormatter(logging.Formatter):
    """JSON log formatter for structured logging"""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "component": getattr(record, "component", "unknown"),
            "message": record.getMessage(),
            "logger": record.name,
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        # Add extra fields
        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_KEYS:
                log_data[key] = value

        return json.dumps(log_data, default=str)


class ServiceLoggerAdapter(logging.LoggerAdapter):
    """Logger adapter that adds the component name to all logs"""

    def process(self, msg: str, kwargs: dict) -> tuple[str, dict]:
        kwargs.setdefault("extra", {})
        kwargs["extra"]["component"] = self.extra.get("component", "unknown")
        return msg, kwargs


def setup_logging(
    log_level: str = "INFO",
    json_format: bool = True,
) -> logging.Logger:
    """
    Configure the gateway root logger.

    Every component logger is a child of the namespace logger, so one
    handler here covers the whole process.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: Use JSON format (True for production, False for dev)

    Returns:
        The configured namespace logger
    """
    numeric_level = getattr(logging, log_level.upper(), logging.INFO)

    logger = logging.getLogger(LOGGER_NAMESPACE)
    logger.setLevel(numeric_level)

    # Clear existing handlers
    logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(numeric_level)

    if json_format:
        formatter = JsonFormatter()
    else:
        formatter = logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    handler.setFormatter(formatter)
    logger.addHandler(handler)

    # Don't propagate to root logger
    logger.propagate = False

    return logger


def get_service_logger(component: str) -> ServiceLoggerAdapter:
    """
    Get a logger adapter with component context.

    Args:
        component: Dotted component name (e.g. "device.slave")

    Returns:
        Logger adapter with the component name in all logs
    """
    logger = logging.getLogger(f"{LOGGER_NAMESPACE}.{component}")
    return ServiceLoggerAdapter(logger, {"component": component})


def log_source_read(
    logger: logging.Logger | logging.LoggerAdapter,
    slave_name: str,
    address: int,
    value: Any,
    success: bool = True,
    error: str | None = None,
) -> None:
    """Log a source read performed by the poller"""
    if success:
        logger.debug(
            f"Read {slave_name}[0x{address:04x}] = {value}",
            extra={"slave": slave_name, "address": address, "value": value},
        )
    else:
        logger.warning(
            f"Failed to read {slave_name}[0x{address:04x}]: {error}",
            extra={"slave": slave_name, "address": address},
        )


def log_slave_state(
    logger: logging.Logger | logging.LoggerAdapter,
    slave_key: str,
    slave_name: str,
    online: bool,
    reason: str = "",
) -> None:
    """Log a slave connection state transition"""
    state = "online" if online else "offline"
    message = f"Slave {slave_name} ({slave_key}) is {state}"
    if reason:
        message = f"{message}: {reason}"

    logger.info(
        message,
        extra={"slave_key": slave_key, "online": online},
    )

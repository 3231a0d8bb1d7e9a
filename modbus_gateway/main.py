#!/usr/bin/env python3
"""
Modbus Gateway - Entry Point

Exposes Modbus TCP slaves and their sources through the gateway API and
polls them continuously.

Usage:
    modbus-gateway                          # Start with default options
    modbus-gateway --config gateway.yaml    # Use custom options file
    modbus-gateway --dry-run                # Print options and exit
    modbus-gateway --verbose                # Enable debug logging
"""

import argparse
import asyncio
import sys
from pathlib import Path

import yaml

from . import __version__
from .common.config import GatewayOptions, load_options
from .common.exceptions import ConfigError, GatewayError
from .common.logging_setup import get_service_logger, setup_logging
from .services.device.service import GatewayService

DEFAULT_CONFIG_PATH = "/etc/modbus-gateway/gateway.yaml"

logger = get_service_logger("main")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="modbus-gateway",
        description="Modbus TCP gateway with persistent slaves and polled sources",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    modbus-gateway                               # Default options file
    modbus-gateway -c gateway.yaml               # Custom options file
    modbus-gateway --storage-dir /tmp/gateway    # Override storage location
    modbus-gateway --dry-run                     # Validate options and exit
        """
    )

    parser.add_argument(
        "--config", "-c",
        type=str,
        default=DEFAULT_CONFIG_PATH,
        help=f"Path to options file (default: {DEFAULT_CONFIG_PATH})"
    )

    parser.add_argument(
        "--storage-dir",
        type=str,
        default=None,
        help="Directory holding slaves.conf and per-slave stores"
    )

    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Validate options and exit without starting"
    )

    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose (debug) logging"
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"modbus-gateway {__version__}"
    )

    return parser


def resolve_options(args: argparse.Namespace) -> GatewayOptions:
    """Options file, environment, then command line"""
    options = load_options(args.config)
    if args.storage_dir:
        options.storage_dir = Path(args.storage_dir)
    if args.verbose:
        options.logging.level = "DEBUG"
        options.logging.format = "text"
    return options


async def main_async(options: GatewayOptions) -> None:
    service = GatewayService(options)
    await service.run()


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)

    try:
        options = resolve_options(args)
    except ConfigError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        return 1

    if args.dry_run:
        print(yaml.safe_dump(options.to_dict(), sort_keys=False), end="")
        print("Dry run mode - options valid")
        return 0

    setup_logging(options.logging.level, json_format=options.logging.format == "json")

    try:
        asyncio.run(main_async(options))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    except GatewayError as e:
        logger.critical(f"Gateway failed: {e.message}")
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())

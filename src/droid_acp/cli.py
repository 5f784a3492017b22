#!/usr/bin/env python3
"""
CLI entry point for the Droid ACP agent.

Usage:
    droid-acp
    droid-acp --log-level debug --env-file .env
"""

import argparse
import asyncio
import logging
import os
import sys

from dotenv import load_dotenv

from . import run
from .config import BridgeSettings


def setup_logging(log_level: str) -> None:
    """Set up logging based on log level."""
    level_map = {
        "none": logging.CRITICAL + 1,
        "error": logging.ERROR,
        "warning": logging.WARNING,
        "info": logging.INFO,
        "debug": logging.DEBUG,
        "all": logging.DEBUG,
    }
    level = level_map.get(log_level.lower(), logging.INFO)

    # Log to stderr; stdout carries the ACP stream
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stderr,
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="droid-acp",
        description="Droid ACP - Serve the Factory Droid CLI over the Agent Client Protocol",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Environment Variables:
    FACTORY_API_KEY         API key checked by the factory-api-key auth method
    DROID_DEBUG             Echo every raw droid message to the client
    DROID_INIT_TIMEOUT      Droid initialization timeout in ms (default: 60000)
    DROID_EXECUTABLE        Droid command to run (default: droid)
    DROID_ACP_LOG_LEVEL     Log level (default: warning)
""",
    )
    parser.add_argument(
        "--env-file",
        default=None,
        help="Load environment variables from this .env file (default: ./.env if present)",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        choices=["none", "error", "warning", "info", "debug", "all"],
        help="Log level",
    )
    parser.add_argument(
        "--droid",
        default=None,
        help="Droid command to run",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Echo raw droid messages to the client",
    )
    return parser


def main(argv: list[str] | None = None) -> None:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    # Existing environment variables win over the .env file
    load_dotenv(args.env_file or os.path.join(os.getcwd(), ".env"), override=False)

    try:
        settings = BridgeSettings.from_env()
    except ValueError as e:
        parser.error(str(e))
    if args.log_level:
        settings.log_level = args.log_level
    if args.droid:
        settings.droid_executable = args.droid
    if args.debug:
        settings.debug = True

    setup_logging(settings.log_level)

    logger = logging.getLogger(__name__)
    logger.info(f"Starting Droid ACP agent (droid: {settings.droid_executable})")

    try:
        exit_code = asyncio.run(run(settings))
    except KeyboardInterrupt:
        logger.info("Shutting down...")
        exit_code = 0
    except Exception as e:
        logger.exception(f"Fatal error: {e}")
        sys.exit(1)

    sys.exit(exit_code)


if __name__ == "__main__":
    main()

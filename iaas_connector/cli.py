"""Argument parsing, configuration loading, and server bootstrap."""

from __future__ import annotations

import argparse
import logging
import sys

import uvicorn

from .api import create_app
from .config import load_config
from .exceptions import ConfigError, ConnectorError
from .logging_config import configure_logging

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="iaas-connector",
        description="REST connector provisioning virtual machines on AWS EC2",
    )
    parser.add_argument(
        "-c", "--config",
        required=True,
        help="Path to the YAML configuration file",
    )
    parser.add_argument(
        "--validate",
        action="store_true",
        help="Validate the configuration file and exit",
    )
    parser.add_argument(
        "--host",
        help="Override server.host from the configuration",
    )
    parser.add_argument(
        "--port",
        type=int,
        help="Override server.port from the configuration",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = load_config(args.config)
    except ConfigError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return 1

    configure_logging(config.logging)

    if args.validate:
        logger.info("Configuration is valid")
        return 0

    host = args.host or config.server.host
    port = args.port if args.port is not None else config.server.port

    try:
        app = create_app(config)
    except ConnectorError as exc:
        logger.error("Fatal error: %s", exc)
        return 1

    logger.info("Starting server on %s:%d", host, port)
    try:
        uvicorn.run(app, host=host, port=port, log_level=config.logging.level.lower(), log_config=None)
    except KeyboardInterrupt:
        logger.info("Interrupted")
    return 0


if __name__ == "__main__":
    sys.exit(main())

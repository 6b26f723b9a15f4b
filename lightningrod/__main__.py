"""Lightning-rod entry point.

Usage:
    python -m lightningrod [--config CONFIG_PATH] [--log-level LEVEL]
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
import sys

from lightningrod import __version__
from lightningrod.agent import LightningRod
from lightningrod.config import DEFAULT_CONFIG_FILE, AgentConfig, ConfigurationError

logger = logging.getLogger("lightningrod")

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


def setup_logging(level: str, log_file: str = "") -> None:
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file))
    logging.basicConfig(
        level=_LEVELS.get(level.lower(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=handlers,
    )


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Stack4Things Lightning-rod board agent")
    parser.add_argument(
        "--config", "-c",
        default=DEFAULT_CONFIG_FILE,
        help=f"Path to configuration file (default: {DEFAULT_CONFIG_FILE})",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        choices=sorted(_LEVELS),
        help="Log level (overrides config)",
    )
    parser.add_argument("--version", action="store_true", help="Print version and exit")
    args = parser.parse_args(argv)

    if args.version:
        print(f"Lightning-rod version {__version__}")
        return

    try:
        config = AgentConfig.load(args.config)
    except ConfigurationError as exc:
        logging.basicConfig(level=logging.INFO)
        logger.error("Failed to load configuration: %s", exc)
        sys.exit(1)

    setup_logging(args.log_level or config.lightningrod.log_level, config.lightningrod.log_file)

    logger.info("Lightning-rod:")
    logger.info(" - version: %s", __version__)
    logger.info(" - PID: %d", os.getpid())
    logger.info(" - Config: %s", args.config)
    logger.info(" - Home: %s", config.lightningrod.home)

    try:
        agent = LightningRod(config)
    except (ConfigurationError, OSError) as exc:
        logger.error("Failed to create Lightning Rod: %s", exc)
        sys.exit(1)

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    main_task = loop.create_task(agent.run())

    def _shutdown(sig: int) -> None:
        logger.info("Received signal %d, stopping Lightning Rod...", sig)
        main_task.cancel()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _shutdown, sig)

    exit_code = 0
    try:
        loop.run_until_complete(main_task)
    except asyncio.CancelledError:
        pass
    except (ConfigurationError, OSError) as exc:
        logger.error("Lightning Rod error: %s", exc)
        exit_code = 1
    finally:
        loop.close()

    logger.info("Lightning Rod stopped")
    if exit_code:
        sys.exit(exit_code)


if __name__ == "__main__":
    main()

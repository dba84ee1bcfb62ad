"""
Command line entry point.

    python -m matrix_puppet -c config.yaml associate
    python -m matrix_puppet -c config.yaml run
"""
import argparse
import asyncio
import logging
import sys
from typing import List, Optional

from dotenv import load_dotenv

from matrix_puppet.bridges.puppet import Puppet
from matrix_puppet.core.config_store import SUPPORTED_FORMATS, ConfigStore
from matrix_puppet.core.errors import ConfigurationError, PuppetConnectionError, PuppetError
from matrix_puppet.core.retry import RetryExhaustedError, retry_with_backoff
from matrix_puppet.core.settings import PuppetSettings
from matrix_puppet.matrix.session import SessionManager
from matrix_puppet.utils.logging import setup_logging


def build_parser(settings: PuppetSettings) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="matrix-puppet",
        description="Associate and run the puppeted Matrix user of a bridge",
    )
    parser.add_argument("-c", "--config", default=settings.config_path,
                        help="Bridge config file (default: $PUPPET_CONFIG_PATH)")
    parser.add_argument("--format", choices=SUPPORTED_FORMATS, default=settings.config_format,
                        help="Config file format (default: from the file extension)")
    parser.add_argument("--log-level", default=settings.log_level)
    subparsers = parser.add_subparsers(dest="command", required=True)
    subparsers.add_parser("associate", help="Log in as the puppeted user and store the token")
    subparsers.add_parser("run", help="Connect as the puppeted user and keep syncing")
    return parser


async def associate(puppet: Puppet) -> int:
    await puppet.associate()
    return 0


async def run_session(puppet: Puppet, settings: PuppetSettings, logger: logging.Logger) -> int:
    try:
        client = await retry_with_backoff(
            puppet.start_client,
            operation="Matrix session start",
            max_retries=settings.start_retries,
            logger_instance=logger,
        )
        logger.info("Puppet session ready", extra={"user_id": client.user_id, "rooms": len(client.rooms)})
        await puppet.session_manager.wait_closed()
    finally:
        await puppet.session_manager.close()
    return 0


async def main(argv: Optional[List[str]] = None) -> int:
    load_dotenv(".env")

    try:
        settings = PuppetSettings.from_env()
    except ConfigurationError as e:
        print(f"Configuration error: {e}")
        return 2

    args = build_parser(settings).parse_args(argv)
    logger = setup_logging(args.log_level)

    if not args.config:
        logger.error("No config file given; pass -c/--config or set PUPPET_CONFIG_PATH")
        return 2

    try:
        store = ConfigStore(args.config, args.format)
        puppet = Puppet(
            config_store=store,
            session_manager=SessionManager(sync_timeout_ms=settings.sync_timeout_ms),
        )
        if args.command == "associate":
            return await associate(puppet)
        return await run_session(puppet, settings, logger)
    except (PuppetError, RetryExhaustedError) as e:
        cause = e.last_error if isinstance(e, RetryExhaustedError) else e
        logger.error(f"{args.command} failed: {cause}", extra={"error_type": type(cause).__name__})
        return 3 if isinstance(cause, PuppetConnectionError) else 1


def run() -> None:
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        sys.exit(130)


if __name__ == "__main__":
    run()

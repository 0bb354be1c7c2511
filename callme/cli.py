"""CallMe CLI entry point.

Usage:
    callme run [--config callme.yaml]
    callme check [--config callme.yaml]
    callme init [--output callme.yaml]
    callme health [--url http://127.0.0.1:3334]
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path

from loguru import logger


def _load(args: argparse.Namespace):
    from callme.config import load_config

    if args.config and not Path(args.config).exists():
        logger.error(f"Config file not found: {args.config}")
        sys.exit(1)
    return load_config(args.config)


def cmd_run(args: argparse.Namespace) -> None:
    """Run the CallMe servers."""
    config = _load(args)

    # Configure logging
    logger.remove()
    logger.add(sys.stderr, level=config.logging.level)

    problems = config.validate_config()
    if problems:
        for problem in problems:
            logger.error(problem)
        sys.exit(1)

    logger.info(f"CallMe starting with config: {args.config or 'environment'}")
    logger.info(f"Phone: {config.phone.provider}, TTS: {config.tts.provider}, STT: {config.stt.provider}")
    logger.info(f"Public URL: {config.server.public_url}")

    from callme.errors import ConfigError
    from callme.server import run_server

    try:
        run_server(config)
    except ConfigError as e:
        logger.error(str(e))
        sys.exit(1)
    except KeyboardInterrupt:
        logger.info("CallMe stopped")


def cmd_check(args: argparse.Namespace) -> None:
    """Validate the configuration and print every problem."""
    config = _load(args)
    problems = config.validate_config()
    if problems:
        print("Configuration problems:")
        for problem in problems:
            print(f"  - {problem}")
        sys.exit(1)
    print(f"Configuration OK (phone={config.phone.provider}, tts={config.tts.provider}, stt={config.stt.provider})")


def cmd_init(args: argparse.Namespace) -> None:
    """Generate a starter configuration file."""
    output = Path(args.output)

    if output.exists() and not args.force:
        logger.error(f"File already exists: {output}. Use --force to overwrite.")
        sys.exit(1)

    from callme.config import DEFAULT_CONFIG_YAML

    output.write_text(DEFAULT_CONFIG_YAML)
    print(f"Configuration written to: {output}")
    print(f"\nEdit the file and run: callme run --config {output}")


def cmd_health(args: argparse.Namespace) -> None:
    """Query a running server's control API."""
    from callme.client import ControlClient
    from callme.errors import CallMeError

    async def _query() -> dict:
        async with ControlClient(args.url, timeout_s=10) as client:
            return await client.health()

    try:
        data = asyncio.run(_query())
    except CallMeError as e:
        print(f"CallMe is not healthy: {e}")
        sys.exit(1)
    print(json.dumps(data, indent=2))


def main() -> None:
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="callme",
        description="CallMe - let an AI agent call you on the phone",
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # `callme run`
    run_parser = subparsers.add_parser("run", help="Run the CallMe servers")
    run_parser.add_argument(
        "--config", "-c",
        default=None,
        help="Path to a YAML config file (default: CALLME_* environment variables)",
    )

    # `callme check`
    check_parser = subparsers.add_parser("check", help="Validate the configuration")
    check_parser.add_argument(
        "--config", "-c",
        default=None,
        help="Path to a YAML config file (default: CALLME_* environment variables)",
    )

    # `callme init`
    init_parser = subparsers.add_parser("init", help="Generate a starter config file")
    init_parser.add_argument(
        "--output", "-o",
        default="callme.yaml",
        help="Output file path (default: callme.yaml)",
    )
    init_parser.add_argument(
        "--force", "-f",
        action="store_true",
        help="Overwrite existing file",
    )

    # `callme health`
    health_parser = subparsers.add_parser("health", help="Query a running server")
    health_parser.add_argument(
        "--url",
        default="http://127.0.0.1:3334",
        help="Control API URL (default: http://127.0.0.1:3334)",
    )

    args = parser.parse_args()

    if args.command == "run":
        cmd_run(args)
    elif args.command == "check":
        cmd_check(args)
    elif args.command == "init":
        cmd_init(args)
    elif args.command == "health":
        cmd_health(args)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()

"""
Barber Voice - Command Line Interface

Commands:
    voice   - Start a live voice booking session on the local microphone
    config  - Validate the environment and print the effective settings
    logs    - Print a stored conversation log

Usage:
    python -m barber_voice voice
    python -m barber_voice config
    python -m barber_voice logs conv_1718000000000
"""

import argparse
import asyncio
import json
import sys
from dataclasses import asdict

from barber_voice.config import settings
from barber_voice.logger import get_logger, init_logging

logger = get_logger(__name__)

SECRET_FIELDS = ("api_key",)


def cmd_voice(args: argparse.Namespace) -> int:
    """Run the voice agent until Ctrl+C."""
    from barber_voice.realtime import MicrophoneUnavailable, print_banner, run_voice_agent

    try:
        settings.validate_all()
    except ValueError as e:
        print(f"Configuration error: {e}")
        print("   Set the missing variables in .env and try again")
        return 1

    print_banner()
    print(f"Voice: {settings.elevenlabs.voice_id}")
    print(f"Model: {settings.openai.model}")
    print()

    try:
        asyncio.run(run_voice_agent())
    except MicrophoneUnavailable as e:
        print(f"Microphone unavailable: {e}")
        return 1
    except KeyboardInterrupt:
        print("\nGoodbye!")
    return 0


def _redact(section: dict) -> dict:
    return {
        key: ("***" if key in SECRET_FIELDS and value else value)
        for key, value in section.items()
    }


def cmd_config(args: argparse.Namespace) -> int:
    """Validate settings and print them with secrets redacted."""
    data = asdict(settings)
    for name, section in data.items():
        if isinstance(section, dict):
            print(f"[{name}]")
            for key, value in _redact(section).items():
                print(f"  {key} = {value}")
        else:
            print(f"{name} = {section}")

    try:
        settings.validate_all()
    except ValueError as e:
        print(f"\nInvalid: {e}")
        return 1
    print("\nConfiguration OK")
    return 0


def cmd_logs(args: argparse.Namespace) -> int:
    """Print one stored conversation log as JSON."""
    from barber_voice.db import Database, SqlConversationLogStore

    store = SqlConversationLogStore(Database(args.db_url), shop_id=settings.shop.shop_id)
    log = asyncio.run(store.load(args.log_id))
    if log is None:
        print(f"No conversation log '{args.log_id}'")
        return 1
    print(json.dumps(asdict(log), ensure_ascii=False, indent=2, default=lambda value: value.value))
    return 0


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="barber_voice",
        description="Voice booking agent for a barbershop",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable debug logging"
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    voice_parser = subparsers.add_parser(
        "voice",
        help="Start a live voice booking session"
    )
    voice_parser.set_defaults(func=cmd_voice)

    config_parser = subparsers.add_parser(
        "config",
        help="Validate and print the effective settings"
    )
    config_parser.set_defaults(func=cmd_config)

    logs_parser = subparsers.add_parser(
        "logs",
        help="Print a stored conversation log"
    )
    logs_parser.add_argument("log_id", help="Conversation log id (conv_<epoch ms>)")
    logs_parser.add_argument(
        "--db-url",
        type=str,
        default=None,
        help="SQLAlchemy URL of the log database"
    )
    logs_parser.set_defaults(func=cmd_logs)

    return parser


def main() -> int:
    """Main entry point for the CLI."""
    init_logging()
    parser = create_parser()
    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        return 0

    if args.verbose:
        import logging
        logging.getLogger().setLevel(logging.DEBUG)

    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())

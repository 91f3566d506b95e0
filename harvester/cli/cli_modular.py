"""Command-line interface with lazily loaded command modules."""

from __future__ import annotations

import argparse
import logging
import sys
from collections.abc import Callable

# Command modules are imported on demand so `harvester --help` never pulls in
# selenium, openai or SQLAlchemy.

logger = logging.getLogger(__name__)

CommandHandler = Callable[[argparse.Namespace], int]

COMMAND_MODULES: dict[str, str] = {
    "run": "run",
    "scrape-source": "scrape_source",
    "fetch": "fetch",
    "detect-structure": "detect_structure",
    "init-db": "init_db",
    "add-source": "init_db",
}

COMMAND_HELP: dict[str, str] = {
    "run": "Scrape every active source once",
    "scrape-source": "Scrape a single source by id",
    "fetch": "Fetch a URL through the escalation ladder",
    "detect-structure": "Detect extraction selectors for an article URL",
    "init-db": "Create database tables",
    "add-source": "Register a listing page to scrape",
}


def create_parser() -> argparse.ArgumentParser:
    """Create minimal parser; command arguments are added on demand."""
    parser = argparse.ArgumentParser(
        prog="harvester",
        description="Adaptive article harvester",
        add_help=False,
    )
    parser.add_argument("--log-level", default=None, help="Logging level (e.g. INFO, DEBUG)")
    parser.add_argument(
        "command",
        nargs="?",
        help="Command to run (use 'COMMAND --help' for command-specific help)",
    )
    return parser


def _load_command_parser(command: str) -> tuple[Callable, Callable] | None:
    """Load ``(add_parser, handle_command)`` for ``command``, or None if unknown."""
    module_name = COMMAND_MODULES.get(command)
    if not module_name:
        return None

    try:
        module = __import__(f"harvester.cli.commands.{module_name}", fromlist=["*"])
    except (ImportError, ModuleNotFoundError) as e:
        logger.warning(f"Failed to load command '{command}': {e}")
        return None

    suffix = command.replace("-", "_")
    parser_func = getattr(module, f"add_{suffix}_parser", None)
    handler_func = getattr(module, f"handle_{suffix}_command", None)
    if parser_func and handler_func:
        return (parser_func, handler_func)
    return None


def _default_setup_logging(level: str) -> None:
    from harvester.utils.logging_config import setup_logging

    setup_logging(level=level, service_name="cli")


def main(
    argv: list[str] | None = None,
    *,
    setup_logging_func: Callable[[str], None] | None = None,
    handler_overrides: dict[str, CommandHandler] | None = None,
) -> int:
    """CLI entry point."""
    parser = create_parser()
    args, remaining = parser.parse_known_args(argv)

    from harvester import config

    log_level = args.log_level or config.LOG_LEVEL
    (setup_logging_func or _default_setup_logging)(log_level)

    command = args.command
    if not command:
        print("Available commands:", file=sys.stderr)
        for name, text in COMMAND_HELP.items():
            print(f"  {name:<18}- {text}", file=sys.stderr)
        print("Use: harvester COMMAND --help for more info", file=sys.stderr)
        return 1

    if handler_overrides and command in handler_overrides:
        override_parser = argparse.ArgumentParser()
        override_parser.add_argument("command")
        override_args, _ = override_parser.parse_known_args([command] + remaining)
        return handler_overrides[command](override_args)

    result = _load_command_parser(command)
    if result is None:
        print(f"Unknown command: {command}", file=sys.stderr)
        return 1
    add_parser_func, handle_func = result

    full_parser = argparse.ArgumentParser(prog=f"harvester {command}")
    subparsers = full_parser.add_subparsers(dest="command")
    add_parser_func(subparsers)
    full_args = full_parser.parse_args([command] + remaining)
    return handle_func(full_args)


if __name__ == "__main__":
    sys.exit(main())

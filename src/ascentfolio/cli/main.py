#!/usr/bin/env python3
"""Main entry point for the ascentfolio CLI."""

import argparse
import logging
import sys

from ..errors import PortfolioError
from ..logging_utils import configure_logging
from .common import console

ASCENTFOLIO_BANNER = """
 ascentfolio - multi-currency portfolio valuation and reconciliation
"""

logger = logging.getLogger(__name__)


def build_parser():
    """Create the top-level parser with every subcommand registered."""
    parser = argparse.ArgumentParser(
        prog="ascentfolio",
        description="Track lots, cash and P&L across multi-currency investment accounts.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  ascentfolio open-account "Brokerage" --base-currency USD --initial 10000
  ascentfolio buy Brokerage AAPL 10 185.50 --from-cash
  ascentfolio sell Brokerage AAPL 5 192.00 --to-cash
  ascentfolio report --currency EUR
  ascentfolio history Brokerage
        """,
    )
    parser.add_argument(
        "--store",
        metavar="PATH",
        help="Path to the JSON store (default: ASCENTFOLIO_STORE_PATH or .ascentfolio/store.json)",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Log FIFO steps and operation state transitions",
    )

    subparsers = parser.add_subparsers(
        title="commands",
        dest="command",
        help="Available commands",
    )

    # Import subcommand modules and register them
    from .report import register_subcommand as register_report
    from .trade import register_subcommands as register_trade
    from .version import register_subcommand as register_version

    register_report(subparsers)
    register_trade(subparsers)
    register_version(subparsers)
    return parser


def main(argv=None):
    """Parse CLI arguments and dispatch to the appropriate subcommand.

    Returns:
        int: Exit code (0 for success, non-zero for errors).
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    configure_logging("DEBUG" if args.debug else None)

    # If no command specified, show help
    if args.command is None:
        print(ASCENTFOLIO_BANNER)
        parser.print_help()
        return 0

    try:
        return args.func(args)
    except PortfolioError as e:
        console.print(f"[red]Error: {e}[/red]")
        return 1
    except ValueError as e:
        logger.debug("Command %s failed", args.command, exc_info=True)
        console.print(f"[red]Error: {e}[/red]")
        return 1


if __name__ == "__main__":
    sys.exit(main())

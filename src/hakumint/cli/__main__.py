"""CLI entry point for the hakumint.cli package.

Enables execution via: python -m hakumint.cli reconcile [OPTIONS]
"""

import asyncio
import sys
from argparse import ArgumentParser

from hakumint.cli import reconcile


def main(argv: list[str] | None = None) -> int:
    parser = ArgumentParser(prog="python -m hakumint.cli", description="hakumint maintenance")
    subparsers = parser.add_subparsers(dest="command", required=True)

    reconcile.add_arguments(
        subparsers.add_parser("reconcile", help="Roll back mint attempts stuck in 'applying'")
    )

    args = parser.parse_args(argv)
    if args.command == "reconcile":
        return asyncio.run(reconcile.async_main(args))
    return 2


if __name__ == "__main__":
    sys.exit(main())

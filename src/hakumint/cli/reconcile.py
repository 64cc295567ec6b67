"""CLI command for rolling back mint attempts stuck in 'applying'.

A request that is cancelled after ``begin_apply`` leaves its asset in applying.
The event watcher confirms attempts whose mint log shows up on-chain; this sweep
rolls back the rest once they are older than the stale threshold.

Usage:
    python -m hakumint.cli reconcile [OPTIONS]

Examples:
    # Roll back everything stuck for more than 30 minutes (default)
    python -m hakumint.cli reconcile

    # Custom threshold, report only
    python -m hakumint.cli reconcile --stale-minutes 120 --dry-run
"""

import asyncio
import sys
from argparse import ArgumentParser, Namespace
from dataclasses import dataclass, field

import structlog

from hakumint.core.config import Settings, configure_logging
from hakumint.core.database import setup_db_session
from hakumint.core.timezone import minutes_ago
from hakumint.services.exceptions import AssetNotFound, NotApplying
from hakumint.services.minting.state_machine import MintStateMachine
from hakumint.uow import UnitOfWorkFactory, create_uow_factory

logger = structlog.get_logger()


@dataclass
class ReconcileResult:
    """Counts from one reconciliation sweep."""

    found: int = 0
    rolled_back: list[int] = field(default_factory=list)
    already_resolved: list[int] = field(default_factory=list)


async def reconcile_stale_attempts(
    uow_factory: UnitOfWorkFactory,
    state_machine: MintStateMachine,
    stale_minutes: int,
    dry_run: bool = False,
    limit: int = 100,
) -> ReconcileResult:
    """Roll back applying records last touched more than ``stale_minutes`` ago.

    Each record goes through ``MintStateMachine.rollback``, so a record that was
    confirmed or rolled back after it was listed is left untouched.

    Args:
        uow_factory: Unit of Work factory
        state_machine: Mint state machine performing the rollback
        stale_minutes: Age threshold on updated_at
        dry_run: List candidates without rolling back
        limit: Maximum records per sweep

    Returns:
        ReconcileResult with the ids rolled back and already resolved
    """
    cutoff = minutes_ago(stale_minutes)
    async with await uow_factory() as uow:
        stale = await uow.assets.list_stale_applying(cutoff, limit=limit)

    result = ReconcileResult(found=len(stale))
    logger.info(
        "reconcile.candidates",
        count=len(stale),
        stale_minutes=stale_minutes,
        dry_run=dry_run,
    )

    for asset in stale:
        if dry_run:
            logger.info(
                "reconcile.dry_run_candidate",
                asset_id=asset.id,
                owner=asset.owner_address,
                updated_at=asset.updated_at.isoformat(),
            )
            continue

        try:
            await state_machine.rollback(asset.id, asset.owner_address)  # type: ignore[arg-type]
        except (NotApplying, AssetNotFound) as e:
            logger.warning(
                "reconcile.already_resolved",
                asset_id=asset.id,
                rejection=e.reason,
                current=e.current.value if e.current else None,
            )
            result.already_resolved.append(asset.id)  # type: ignore[arg-type]
            continue

        result.rolled_back.append(asset.id)  # type: ignore[arg-type]

    return result


def add_arguments(parser: ArgumentParser) -> None:
    parser.add_argument(
        "--stale-minutes",
        type=int,
        default=None,
        help="Roll back attempts older than this (default: RECONCILE_STALE_MINUTES)",
    )
    parser.add_argument(
        "--limit",
        type=int,
        default=100,
        help="Maximum number of records per sweep (default: 100)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="List stale attempts without database writes",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging (DEBUG level)",
    )


def parse_args(argv: list[str] | None = None) -> Namespace:
    """Parse command-line arguments."""
    parser = ArgumentParser(description="Roll back mint attempts stuck in 'applying'")
    add_arguments(parser)
    return parser.parse_args(argv)


async def async_main(args: Namespace) -> int:
    """Run the sweep.

    Returns:
        Exit code: 0 (success), 1 (error)
    """
    settings = Settings()  # type: ignore[call-arg]
    if args.verbose:
        settings.log_level = "DEBUG"
    configure_logging(settings)

    stale_minutes = args.stale_minutes or settings.reconcile_stale_minutes
    if stale_minutes < 1:
        logger.error("reconcile.error", message="--stale-minutes must be at least 1")
        return 1

    try:
        session_factory = setup_db_session(settings.database_url, settings.db_pool_size)
        uow_factory = create_uow_factory(session_factory)
        state_machine = MintStateMachine(uow_factory)

        result = await reconcile_stale_attempts(
            uow_factory,
            state_machine,
            stale_minutes=stale_minutes,
            dry_run=args.dry_run,
            limit=args.limit,
        )
    except KeyboardInterrupt:
        logger.warning("reconcile.interrupted", message="Sweep interrupted by user")
        return 130
    except Exception as e:
        logger.error("reconcile.fatal_error", error=str(e), exc_info=True)
        return 1

    logger.info(
        "reconcile.complete",
        found=result.found,
        rolled_back=len(result.rolled_back),
        already_resolved=len(result.already_resolved),
        dry_run=args.dry_run,
    )
    return 0


def main(argv: list[str] | None = None) -> int:
    """Synchronous wrapper for async main."""
    return asyncio.run(async_main(parse_args(argv)))


if __name__ == "__main__":
    sys.exit(main())

"""Event watcher - the log subscription that feeds inbound mint signals.

Polls ``eth_getLogs`` for recognized event topics on the token and NFT
contracts, hands each transaction hash to the coordinator once, and persists
``last_processed_block`` in system_state so a restart resumes where it stopped.

Transient failures (node down, receipt not indexed) abort the current range
without advancing the checkpoint; the range is replayed on the next poll.
Replays are safe because mint logs are deduplicated by (tx_hash, log_index)
and state transitions are compare-and-set.
"""

import asyncio
from typing import Optional, Sequence

import structlog

from hakumint.services.blockchain.events import DecodedEvent, EventSchema
from hakumint.services.blockchain.provider import NodeProvider
from hakumint.services.blockchain.types import LogEntry
from hakumint.services.exceptions import DecodeSkipped, ServiceError, TransientError
from hakumint.services.minting.coordinator import MintCoordinator
from hakumint.uow import UnitOfWorkFactory

logger = structlog.get_logger()

LAST_PROCESSED_BLOCK_KEY = "last_processed_block"
ERROR_BACKOFF_SECONDS = 5


def _decode_primary(schemas: Sequence[EventSchema], log: LogEntry) -> Optional[DecodedEvent]:
    schema = next((s for s in schemas if s.matches(log)), None)
    if schema is None:
        return None
    try:
        return schema.decode(log)
    except DecodeSkipped as e:
        logger.warning(
            "watcher.decode_skipped",
            log_index=e.log_index,
            event_name=e.event_name,
            reason=e.reason,
        )
        return None


async def process_block_range(
    provider: NodeProvider,
    coordinator: MintCoordinator,
    from_block: int,
    to_block: int,
) -> int:
    """Dispatch every watched transaction in ``[from_block, to_block]``.

    Args:
        provider: Node provider for eth_getLogs
        coordinator: Receives one ``handle_mint_signal`` call per transaction
        from_block: First block (inclusive)
        to_block: Last block (inclusive)

    Returns:
        Number of transactions dispatched

    Raises:
        TransientError: Node or receipt failure; the range must be retried
    """
    schemas = coordinator.schemas
    addresses = sorted({s.address for s in schemas})
    topic0s = [s.topic0 for s in schemas]

    logs = await provider.get_logs(addresses, topic0s, from_block, to_block)

    dispatched: set[str] = set()
    for tx_hash, log in logs:
        if tx_hash in dispatched:
            continue
        dispatched.add(tx_hash)

        primary = _decode_primary(schemas, log)
        try:
            outcome = await coordinator.handle_mint_signal(tx_hash, primary)
        except TransientError:
            raise
        except ServiceError as e:
            logger.warning(
                "watcher.signal_rejected",
                tx_hash=tx_hash,
                error=str(e),
                error_type=type(e).__name__,
            )
            continue
        except Exception as e:
            logger.error(
                "watcher.signal_failed",
                tx_hash=tx_hash,
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )
            continue

        if outcome is not None:
            logger.info(
                "watcher.signal_processed",
                tx_hash=tx_hash,
                asset_id=outcome.asset_id,
                status=outcome.status.value,
            )

    if logs:
        logger.info(
            "watcher.range_processed",
            from_block=from_block,
            to_block=to_block,
            logs=len(logs),
            transactions=len(dispatched),
        )
    return len(dispatched)


async def poll_once(
    uow_factory: UnitOfWorkFactory,
    provider: NodeProvider,
    coordinator: MintCoordinator,
    batch_blocks: int,
    start_block: Optional[int] = None,
) -> int:
    """Process every block between the checkpoint and the chain head.

    Only blocks at least ``min_confirmations`` deep (from the coordinator's
    receipt policy) are processed, so receipts in range never wait on depth.
    Without a checkpoint the watcher starts at ``start_block``, or at that
    confirmed head when no start block is configured.

    Returns:
        The last processed block number
    """
    head = max(
        await provider.get_block_height() - coordinator.receipt_policy.min_confirmations, 0
    )

    async with await uow_factory() as uow:
        last = await uow.system_state.get_state(LAST_PROCESSED_BLOCK_KEY)

    if last is None:
        if start_block is None:
            async with await uow_factory() as uow:
                await uow.system_state.set_state(LAST_PROCESSED_BLOCK_KEY, head)
            logger.info("watcher.checkpoint_initialized", block_number=head)
            return head
        last = start_block - 1

    from_block = int(last) + 1
    while from_block <= head:
        to_block = min(from_block + batch_blocks - 1, head)
        await process_block_range(provider, coordinator, from_block, to_block)

        async with await uow_factory() as uow:
            await uow.system_state.set_state(LAST_PROCESSED_BLOCK_KEY, to_block)
        logger.debug("watcher.checkpoint", last_processed_block=to_block)

        from_block = to_block + 1

    return max(int(last), head)


async def run_event_watcher(
    uow_factory: UnitOfWorkFactory,
    provider: NodeProvider,
    coordinator: MintCoordinator,
    poll_interval: float,
    batch_blocks: int,
    start_block: Optional[int] = None,
) -> None:
    """Main watcher loop.

    Polls every ``poll_interval`` seconds until cancelled. Unexpected errors are
    logged and retried after a short backoff.
    """
    logger.info(
        "worker.started",
        worker_type="event_watcher",
        poll_interval=poll_interval,
        batch_blocks=batch_blocks,
        start_block=start_block,
    )

    try:
        while True:
            try:
                await poll_once(uow_factory, provider, coordinator, batch_blocks, start_block)
                await asyncio.sleep(poll_interval)

            except asyncio.CancelledError:
                raise

            except Exception as e:
                logger.error(
                    "worker.error",
                    worker_type="event_watcher",
                    error_type=type(e).__name__,
                    error_message=str(e),
                    exc_info=True,
                )
                await asyncio.sleep(ERROR_BACKOFF_SECONDS)

    except asyncio.CancelledError:
        logger.info("worker.stopped", worker_type="event_watcher")
        raise

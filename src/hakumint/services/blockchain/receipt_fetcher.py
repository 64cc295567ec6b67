"""Receipt fetcher tolerant of node indexing lag.

Polls the node for a transaction receipt with linear backoff, then optionally
waits until the receipt's block is buried under enough confirmations. The
fetcher never looks at log contents.
"""

import asyncio
from typing import Awaitable, Callable

import structlog

from hakumint.services.blockchain.provider import NodeProvider
from hakumint.services.blockchain.types import ReceiptView, normalize_tx_hash
from hakumint.services.exceptions import (
    ReceiptInvalidated,
    ReceiptNotFound,
    ReceiptTimeoutError,
)

logger = structlog.get_logger()

Sleep = Callable[[float], Awaitable[None]]


class ReceiptFetcher:
    """Fetch receipts from a NodeProvider.

    Args:
        provider: Node provider used for receipt and block height queries
        confirmation_poll_interval: Fixed delay between chain height polls (seconds)
        sleep: Awaitable sleep, injectable for tests
    """

    def __init__(
        self,
        provider: NodeProvider,
        confirmation_poll_interval: float = 1.0,
        sleep: Sleep = asyncio.sleep,
    ):
        self.provider = provider
        self.confirmation_poll_interval = confirmation_poll_interval
        self._sleep = sleep

    async def fetch(
        self,
        tx: str | bytes,
        max_attempts: int,
        backoff_base: float,
        min_confirmations: int = 0,
    ) -> ReceiptView:
        """Fetch the receipt for ``tx``.

        A missing receipt means "not yet indexed": the fetcher waits
        ``backoff_base * attempt`` seconds and asks again, up to ``max_attempts``
        queries in total. Once the receipt exists and ``min_confirmations > 0``,
        the chain height is polled on a fixed interval with no attempt cap; wrap
        the call in ``fetch_with_timeout`` to bound it.

        Args:
            tx: Transaction hash
            max_attempts: Maximum number of receipt queries (>= 1)
            backoff_base: Base delay in seconds, multiplied by the attempt number
            min_confirmations: Required blocks on top of the receipt's block

        Returns:
            The receipt

        Raises:
            ReceiptNotFound: Receipt still missing after max_attempts queries
            ReceiptInvalidated: Receipt disappeared while waiting for confirmations
            NodeConnectionError: Node query failed
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

        tx_hash = normalize_tx_hash(tx)

        for attempt in range(1, max_attempts + 1):
            receipt = await self.provider.get_transaction_receipt(tx_hash)
            if receipt is not None:
                logger.debug("receipt.found", tx_hash=tx_hash, attempt=attempt)
                break

            if attempt < max_attempts:
                delay = backoff_base * attempt
                logger.debug(
                    "receipt.not_indexed",
                    tx_hash=tx_hash,
                    attempt=attempt,
                    max_attempts=max_attempts,
                    retry_in_seconds=delay,
                )
                await self._sleep(delay)
        else:
            logger.warning("receipt.not_found", tx_hash=tx_hash, attempts=max_attempts)
            raise ReceiptNotFound(tx_hash, max_attempts)

        if min_confirmations > 0:
            await self._wait_for_confirmations(receipt, min_confirmations)

        return receipt

    async def fetch_with_timeout(
        self,
        tx: str | bytes,
        timeout: float,
        max_attempts: int,
        backoff_base: float,
        min_confirmations: int = 0,
    ) -> ReceiptView:
        """Run ``fetch`` under an overall deadline.

        Raises:
            ReceiptTimeoutError: If the deadline passes first
        """
        try:
            return await asyncio.wait_for(
                self.fetch(tx, max_attempts, backoff_base, min_confirmations), timeout
            )
        except asyncio.TimeoutError as e:
            tx_hash = normalize_tx_hash(tx)
            logger.warning("receipt.timeout", tx_hash=tx_hash, timeout=timeout)
            raise ReceiptTimeoutError(tx_hash, timeout) from e

    async def _wait_for_confirmations(self, receipt: ReceiptView, min_confirmations: int) -> None:
        while True:
            height = await self.provider.get_block_height()
            depth = height - receipt.block_number
            if depth >= min_confirmations:
                logger.debug(
                    "receipt.confirmed",
                    tx_hash=receipt.tx_hash,
                    block_number=receipt.block_number,
                    depth=depth,
                )
                return

            logger.debug(
                "receipt.awaiting_confirmations",
                tx_hash=receipt.tx_hash,
                depth=depth,
                required=min_confirmations,
            )
            await self._sleep(self.confirmation_poll_interval)

            # Reorg check: the receipt must still be visible
            if await self.provider.get_transaction_receipt(receipt.tx_hash) is None:
                logger.warning(
                    "receipt.invalidated",
                    tx_hash=receipt.tx_hash,
                    block_number=receipt.block_number,
                )
                raise ReceiptInvalidated(receipt.tx_hash, receipt.block_number)

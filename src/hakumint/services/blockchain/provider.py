"""Node provider interface and its web3 implementation.

The rest of the package talks to the chain only through ``NodeProvider`` so that
the receipt fetcher and watcher can be driven by an in-process fake in tests.
"""

from typing import Any, Protocol, Sequence

import structlog
from web3 import AsyncHTTPProvider, AsyncWeb3
from web3.exceptions import TransactionNotFound

from hakumint.services.blockchain.types import LogEntry, ReceiptView, normalize_tx_hash
from hakumint.services.exceptions import NodeConnectionError

logger = structlog.get_logger()


class NodeProvider(Protocol):
    """Read access to a chain node."""

    async def get_transaction_receipt(self, tx_hash: str) -> ReceiptView | None:
        """Return the receipt, or None while the node has not indexed it."""
        ...

    async def get_block_height(self) -> int: ...

    async def get_logs(
        self,
        addresses: Sequence[str],
        topic0s: Sequence[bytes],
        from_block: int,
        to_block: int,
    ) -> list[tuple[str, LogEntry]]:
        """Return ``(tx_hash, log)`` pairs for matching logs in a block range."""
        ...


class Web3NodeProvider:
    """NodeProvider backed by ``AsyncWeb3`` over HTTP JSON-RPC."""

    def __init__(self, w3: AsyncWeb3):
        self.w3 = w3

    @classmethod
    def from_url(cls, rpc_url: str, request_timeout: float = 10.0) -> "Web3NodeProvider":
        w3 = AsyncWeb3(AsyncHTTPProvider(rpc_url, request_kwargs={"timeout": request_timeout}))
        return cls(w3)

    async def get_transaction_receipt(self, tx_hash: str) -> ReceiptView | None:
        try:
            raw = await self.w3.eth.get_transaction_receipt(tx_hash)  # type: ignore[arg-type]
        except TransactionNotFound:
            return None
        except Exception as e:
            logger.error("node.receipt_error", tx_hash=tx_hash, error=str(e))
            raise NodeConnectionError(f"Failed to query receipt for {tx_hash}: {e}") from e
        if raw is None:
            return None
        return ReceiptView.from_rpc(raw)

    async def get_block_height(self) -> int:
        try:
            return int(await self.w3.eth.block_number)
        except Exception as e:
            logger.error("node.block_number_error", error=str(e))
            raise NodeConnectionError(f"Failed to query block height: {e}") from e

    async def get_logs(
        self,
        addresses: Sequence[str],
        topic0s: Sequence[bytes],
        from_block: int,
        to_block: int,
    ) -> list[tuple[str, LogEntry]]:
        params: dict[str, Any] = {
            "fromBlock": from_block,
            "toBlock": to_block,
            "address": [AsyncWeb3.to_checksum_address(a) for a in addresses],
            "topics": [["0x" + t.hex() for t in topic0s]],
        }
        try:
            logs = await self.w3.eth.get_logs(params)  # type: ignore[arg-type]
        except Exception as e:
            logger.error(
                "node.get_logs_error", from_block=from_block, to_block=to_block, error=str(e)
            )
            raise NodeConnectionError(f"eth_getLogs failed for {from_block}-{to_block}: {e}") from e
        return [(normalize_tx_hash(log["transactionHash"]), LogEntry.from_rpc(log)) for log in logs]

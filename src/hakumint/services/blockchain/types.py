"""Immutable chain data views shared by the fetcher, correlator and coordinator."""

from dataclasses import dataclass, field
from typing import Any, Mapping

from eth_utils import to_bytes


def normalize_tx_hash(tx_hash: str | bytes) -> str:
    """Normalize a transaction handle to lowercase ``0x`` + 64 hex characters.

    Raises:
        ValueError: If the value is not a 32-byte hash
    """
    raw = bytes(tx_hash) if isinstance(tx_hash, (bytes, bytearray)) else to_bytes(hexstr=tx_hash)
    if len(raw) != 32:
        raise ValueError(f"Transaction hash must be 32 bytes, got {len(raw)}")
    return "0x" + raw.hex()


def _as_bytes(value: Any) -> bytes:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    return to_bytes(hexstr=value)


@dataclass(frozen=True)
class LogEntry:
    """One event emission inside a receipt."""

    address: str  # lowercase 0x-prefixed
    topics: tuple[bytes, ...]
    data: bytes
    log_index: int

    @classmethod
    def from_rpc(cls, raw: Mapping[str, Any]) -> "LogEntry":
        """Build from a web3 ``LogReceipt`` (or the equivalent JSON-RPC dict)."""
        log_index = raw.get("logIndex", 0)
        return cls(
            address=str(raw["address"]).lower(),
            topics=tuple(_as_bytes(t) for t in raw.get("topics", [])),
            data=_as_bytes(raw.get("data", b"")),
            log_index=int(log_index, 16) if isinstance(log_index, str) else int(log_index),
        )


@dataclass(frozen=True)
class ReceiptView:
    """A fetched receipt. Either fully present or absent, never partial."""

    tx_hash: str
    success: bool
    block_number: int
    logs: tuple[LogEntry, ...] = field(default_factory=tuple)

    @classmethod
    def from_rpc(cls, raw: Mapping[str, Any]) -> "ReceiptView":
        """Build from a web3 ``TxReceipt`` mapping."""

        def _int(value: Any) -> int:
            return int(value, 16) if isinstance(value, str) else int(value)

        return cls(
            tx_hash=normalize_tx_hash(raw["transactionHash"]),
            success=_int(raw["status"]) == 1,
            block_number=_int(raw["blockNumber"]),
            logs=tuple(LogEntry.from_rpc(log) for log in raw.get("logs", [])),
        )

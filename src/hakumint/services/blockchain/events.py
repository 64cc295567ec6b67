"""Event schemas, log decoders and the receipt event correlator.

Recognized events form a closed set of variants, one frozen dataclass per
schema. A schema matches a log by emitting address and ``topics[0]``; a log that
matches no schema is ignored, and a log that matches but fails to decode is
skipped with a warning.

Contract events:
    event UserTransfer(
        address indexed from,     // topics[1]
        address indexed to,       // topics[2]
        uint256 value,            // data
        uint256 timestamp,        // data
        uint256 blockNumber,      // data
        string remark             // data
    );
    event UserMint(
        uint256 indexed tokenId,  // topics[1]
        address indexed user,     // topics[2]
        string remark,            // data
        string token_url          // data
    );
    event HakuNFTMint(
        address indexed from,     // topics[1]
        address indexed to,       // topics[2]
        uint256 value,            // data
        uint256 indexed tokenId,  // topics[3]
        string remark             // data
    );
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Iterable, Mapping, Optional, Union

import structlog
from eth_abi import decode as abi_decode
from eth_abi.exceptions import DecodingError
from eth_utils import to_checksum_address
from eth_utils.abi import event_signature_to_log_topic

from hakumint.services.blockchain.types import LogEntry, ReceiptView
from hakumint.services.exceptions import DecodeSkipped

logger = structlog.get_logger()


class EventKind(str, Enum):
    """Recognized event types."""

    USER_TRANSFER = "user_transfer"
    USER_MINT = "user_mint"
    NFT_MINT = "nft_mint"


USER_TRANSFER_SIGNATURE = "UserTransfer(address,address,uint256,uint256,uint256,string)"
USER_MINT_SIGNATURE = "UserMint(uint256,address,string,string)"
NFT_MINT_SIGNATURE = "HakuNFTMint(address,address,uint256,uint256,string)"


@dataclass(frozen=True)
class UserTransfer:
    from_address: str
    to_address: str
    value: int
    timestamp: int
    block_number: int
    remark: str
    log_index: int


@dataclass(frozen=True)
class UserMint:
    token_id: int
    user: str
    remark: str
    token_url: str
    log_index: int


@dataclass(frozen=True)
class NftMint:
    from_address: str
    to_address: str
    value: int
    token_id: int
    remark: str
    log_index: int


DecodedEvent = Union[UserTransfer, UserMint, NftMint]


def _topic_address(topic: bytes) -> str:
    # Indexed address: 32-byte topic, address in the last 20 bytes
    return to_checksum_address(topic[-20:])


def _topic_uint(topic: bytes) -> int:
    return int.from_bytes(topic, "big")


def _require_topics(log: LogEntry, count: int) -> None:
    if len(log.topics) != count:
        raise ValueError(f"expected {count} topics, got {len(log.topics)}")


def decode_user_transfer(log: LogEntry) -> UserTransfer:
    _require_topics(log, 3)
    value, timestamp, block_number, remark = abi_decode(
        ["uint256", "uint256", "uint256", "string"], log.data
    )
    return UserTransfer(
        from_address=_topic_address(log.topics[1]),
        to_address=_topic_address(log.topics[2]),
        value=value,
        timestamp=timestamp,
        block_number=block_number,
        remark=remark,
        log_index=log.log_index,
    )


def decode_user_mint(log: LogEntry) -> UserMint:
    _require_topics(log, 3)
    remark, token_url = abi_decode(["string", "string"], log.data)
    return UserMint(
        token_id=_topic_uint(log.topics[1]),
        user=_topic_address(log.topics[2]),
        remark=remark,
        token_url=token_url,
        log_index=log.log_index,
    )


def decode_nft_mint(log: LogEntry) -> NftMint:
    _require_topics(log, 4)
    value, remark = abi_decode(["uint256", "string"], log.data)
    return NftMint(
        from_address=_topic_address(log.topics[1]),
        to_address=_topic_address(log.topics[2]),
        value=value,
        token_id=_topic_uint(log.topics[3]),
        remark=remark,
        log_index=log.log_index,
    )


@dataclass(frozen=True)
class EventSchema:
    """A recognized event: emitting contract, signature and decoder."""

    kind: EventKind
    address: str
    signature: str
    decoder: Callable[[LogEntry], DecodedEvent] = field(compare=False)
    topic0: bytes = field(init=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "address", self.address.lower())
        object.__setattr__(self, "topic0", event_signature_to_log_topic(self.signature))

    def matches(self, log: LogEntry) -> bool:
        return log.address == self.address and bool(log.topics) and log.topics[0] == self.topic0

    def decode(self, log: LogEntry) -> DecodedEvent:
        """Decode a matching log.

        Raises:
            DecodeSkipped: If the payload is malformed
        """
        try:
            return self.decoder(log)
        except (DecodingError, ValueError, IndexError) as e:
            raise DecodeSkipped(self.signature.split("(")[0], log.log_index, str(e)) from e


def user_transfer_schema(token_contract: str) -> EventSchema:
    return EventSchema(
        EventKind.USER_TRANSFER, token_contract, USER_TRANSFER_SIGNATURE, decode_user_transfer
    )


def user_mint_schema(nft_contract: str) -> EventSchema:
    return EventSchema(EventKind.USER_MINT, nft_contract, USER_MINT_SIGNATURE, decode_user_mint)


def nft_mint_schema(nft_contract: str) -> EventSchema:
    return EventSchema(EventKind.NFT_MINT, nft_contract, NFT_MINT_SIGNATURE, decode_nft_mint)


def default_schemas(token_contract: str, nft_contract: str) -> list[EventSchema]:
    """Schemas for the deployed token and NFT contracts."""
    schemas = [user_mint_schema(nft_contract), nft_mint_schema(nft_contract)]
    if token_contract:
        schemas.append(user_transfer_schema(token_contract))
    return schemas


@dataclass(frozen=True)
class SkippedLog:
    """A log that matched a schema but failed to decode."""

    log_index: int
    event_name: str
    reason: str


@dataclass(frozen=True)
class CorrelatedEventSet:
    """Decoded events of one receipt, keyed by kind (zero or one per kind)."""

    tx_hash: str
    success: bool
    block_number: int
    events: Mapping[EventKind, DecodedEvent]
    skipped: tuple[SkippedLog, ...] = ()

    def get(self, kind: EventKind) -> Optional[DecodedEvent]:
        return self.events.get(kind)

    @property
    def user_transfer(self) -> Optional[UserTransfer]:
        return self.events.get(EventKind.USER_TRANSFER)  # type: ignore[return-value]

    @property
    def user_mint(self) -> Optional[UserMint]:
        return self.events.get(EventKind.USER_MINT)  # type: ignore[return-value]

    @property
    def nft_mint(self) -> Optional[NftMint]:
        return self.events.get(EventKind.NFT_MINT)  # type: ignore[return-value]


def _check_schemas(recognized: Iterable[EventSchema]) -> list[EventSchema]:
    schemas = list(recognized)
    seen: set[tuple[str, bytes]] = set()
    for schema in schemas:
        key = (schema.address, schema.topic0)
        if key in seen:
            raise ValueError(f"Duplicate schema for {schema.signature} at {schema.address}")
        seen.add(key)
    return schemas


def correlate(receipt: ReceiptView, recognized: Iterable[EventSchema]) -> CorrelatedEventSet:
    """Group a receipt's logs by recognized event kind.

    Every log is visited once. The result does not depend on log order: when a
    kind occurs more than once, the occurrence with the lowest log index wins.
    A failed receipt is still correlated; callers must treat it as failed.

    Args:
        receipt: Fetched receipt
        recognized: Event schemas to match against

    Returns:
        CorrelatedEventSet for the receipt
    """
    schemas = _check_schemas(recognized)
    chosen: dict[EventKind, DecodedEvent] = {}
    skipped: list[SkippedLog] = []

    for log in receipt.logs:
        schema = next((s for s in schemas if s.matches(log)), None)
        if schema is None:
            continue

        try:
            event = schema.decode(log)
        except DecodeSkipped as e:
            logger.warning(
                "correlate.decode_skipped",
                tx_hash=receipt.tx_hash,
                log_index=e.log_index,
                event_name=e.event_name,
                reason=e.reason,
            )
            skipped.append(SkippedLog(e.log_index, e.event_name, e.reason))
            continue

        current = chosen.get(schema.kind)
        if current is not None:
            logger.warning(
                "correlate.duplicate_event",
                tx_hash=receipt.tx_hash,
                kind=schema.kind.value,
                log_indexes=sorted([current.log_index, event.log_index]),
            )
        if current is None or event.log_index < current.log_index:
            chosen[schema.kind] = event

    if not receipt.success:
        logger.info(
            "correlate.failed_receipt",
            tx_hash=receipt.tx_hash,
            decoded=[kind.value for kind in chosen],
        )

    logger.debug(
        "correlate.complete",
        tx_hash=receipt.tx_hash,
        total_logs=len(receipt.logs),
        decoded=[kind.value for kind in chosen],
        skipped=len(skipped),
    )

    return CorrelatedEventSet(
        tx_hash=receipt.tx_hash,
        success=receipt.success,
        block_number=receipt.block_number,
        events=chosen,
        skipped=tuple(sorted(skipped, key=lambda s: s.log_index)),
    )

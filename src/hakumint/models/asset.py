"""AssetRecord entity - off-chain NFT record with mint status tracking."""

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import BigInteger
from sqlmodel import Field, SQLModel

from hakumint.core.timezone import utcnow


class MintStatus(str, Enum):
    """Mint lifecycle status of an asset."""

    UNAPPLIED = "unapplied"
    APPLYING = "applying"
    MINTED = "minted"


# expected -> allowed next statuses
ALLOWED_TRANSITIONS: dict[MintStatus, frozenset[MintStatus]] = {
    MintStatus.UNAPPLIED: frozenset({MintStatus.APPLYING}),
    MintStatus.APPLYING: frozenset({MintStatus.MINTED, MintStatus.UNAPPLIED}),
    MintStatus.MINTED: frozenset(),
}


class InvalidStateTransition(Exception):
    """Raised when a status edge outside the mint lifecycle is requested."""

    pass


def check_transition(expected: MintStatus, next_status: MintStatus) -> None:
    """Validate that ``expected -> next_status`` is an edge of the lifecycle.

    Raises:
        InvalidStateTransition: If the edge does not exist
    """
    if next_status not in ALLOWED_TRANSITIONS[expected]:
        raise InvalidStateTransition(
            f"Cannot transition from {expected.value} to {next_status.value}."
        )


class AssetRecord(SQLModel, table=True):
    """An NFT asset owned off-chain, tracked through its on-chain mint."""

    __tablename__ = "nfts"  # type: ignore[assignment]

    id: Optional[int] = Field(default=None, primary_key=True)
    owner_address: Optional[str] = Field(default=None, max_length=255, index=True)
    received: bool = Field(default=False)
    mint_status: MintStatus = Field(default=MintStatus.UNAPPLIED, index=True)
    token_id: Optional[int] = Field(default=None, sa_type=BigInteger, index=True)
    block_number: Optional[int] = Field(default=None, sa_type=BigInteger)
    token_url: Optional[str] = Field(default=None, max_length=512)
    file_name: Optional[str] = Field(default=None, max_length=255)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow, index=True)

    def is_owned_by(self, address: str) -> bool:
        """Case-insensitive ownership check."""
        return self.owner_address is not None and self.owner_address.lower() == address.lower()

"""Chip entity - a fragment of an NFT that a holder must collect before minting."""

from datetime import datetime
from typing import Optional

from sqlmodel import Field, SQLModel

from hakumint.core.timezone import utcnow


class Chip(SQLModel, table=True):
    """Chip belongs to one asset; the asset is mintable once all chips share its owner.

    Once the asset is minted on-chain its chips are recycled: ``is_minted`` is set
    and ``mint_user`` records the minting address, and the chips stop counting
    toward anyone's holdings.
    """

    __tablename__ = "chips"  # type: ignore[assignment]

    id: Optional[int] = Field(default=None, primary_key=True)
    asset_id: int = Field(foreign_key="nfts.id", index=True)
    owner_address: Optional[str] = Field(default=None, max_length=255)
    received: bool = Field(default=False)
    is_minted: bool = Field(default=False, index=True)
    mint_user: Optional[str] = Field(default=None, max_length=42, index=True)
    created_at: datetime = Field(default_factory=utcnow)

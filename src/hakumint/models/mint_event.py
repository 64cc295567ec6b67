"""MintEvent entity - one row per mint log already applied to an asset."""

import string
from datetime import datetime
from typing import Optional
from uuid import UUID, uuid4

from pydantic import field_validator
from sqlalchemy import BigInteger, UniqueConstraint
from sqlmodel import Field, SQLModel

from hakumint.core.timezone import utcnow


class MintEvent(SQLModel, table=True):
    """Applied ``UserMint``/``HakuNFTMint`` log, keyed on-chain by ``(tx_hash, log_index)``."""

    __tablename__ = "mint_events"  # type: ignore[assignment]
    __table_args__ = (UniqueConstraint("tx_hash", "log_index", name="uq_mint_events_tx_log"),)

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    tx_hash: str = Field(max_length=66, index=True)
    log_index: int = Field(ge=0)
    block_number: int = Field(sa_type=BigInteger, index=True)
    asset_id: int = Field(index=True)
    token_id: int = Field(sa_type=BigInteger)
    owner_address: str = Field(max_length=42)
    token_url: Optional[str] = Field(default=None, max_length=512)
    detected_at: datetime = Field(default_factory=utcnow)

    @field_validator("tx_hash")
    @classmethod
    def lowercase_tx_hash(cls, v: str) -> str:
        body = v[2:] if v[:2] in ("0x", "0X") else ""
        if len(body) != 64 or not all(c in string.hexdigits for c in body):
            raise ValueError(f"Not a 32-byte transaction hash: {v!r}")
        return "0x" + body.lower()

"""Asset repository - the persistence gateway for mint status.

Every status mutation is a single conditional UPDATE scoped by asset id, owner
address and expected prior status. Nothing here reads a status and then writes
it in a second statement.
"""

from datetime import datetime
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from hakumint.core.timezone import utcnow
from hakumint.models.asset import AssetRecord, MintStatus, check_transition


class AssetRepository:
    """Repository for AssetRecord entities.

    Methods:
    - get_by_id: Retrieve asset by id
    - get_owned: Retrieve asset by id and owner (case-insensitive)
    - read_status: Status snapshot scoped by owner
    - get_status: Status snapshot by id only
    - compare_and_set: Atomic guarded status transition
    - list_stale_applying: Assets stuck in applying, for the reconciliation sweep
    """

    # Columns a transition may write besides mint_status/updated_at
    CAS_EXTRA_FIELDS = frozenset({"token_id", "block_number", "token_url"})

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def get_by_id(self, asset_id: int) -> AssetRecord | None:
        result = await self.session.execute(select(AssetRecord).where(AssetRecord.id == asset_id))  # type: ignore[arg-type]
        return result.scalar_one_or_none()

    async def get_owned(self, asset_id: int, owner: str) -> AssetRecord | None:
        """Retrieve asset only if it belongs to ``owner``.

        Addresses are compared with LOWER() since checksum casing is optional.
        """
        result = await self.session.execute(
            select(AssetRecord).where(
                AssetRecord.id == asset_id,  # type: ignore[arg-type]
                func.lower(AssetRecord.owner_address) == owner.lower(),
            )
        )
        return result.scalar_one_or_none()

    async def add(self, asset: AssetRecord) -> AssetRecord:
        """Persist new asset and flush to obtain its id."""
        self.session.add(asset)
        await self.session.flush()
        return asset

    async def read_status(self, asset_id: int, owner: str) -> MintStatus | None:
        """Read the mint status of ``(asset_id, owner)``.

        Selects the column rather than the entity so the value always comes from
        the database, never from a stale identity map entry.

        Returns:
            Current status, or None if no record matches the pair
        """
        result = await self.session.execute(
            select(AssetRecord.mint_status).where(
                AssetRecord.id == asset_id,  # type: ignore[arg-type]
                func.lower(AssetRecord.owner_address) == owner.lower(),
            )
        )
        return result.scalar_one_or_none()

    async def get_status(self, asset_id: int) -> MintStatus | None:
        result = await self.session.execute(
            select(AssetRecord.mint_status).where(AssetRecord.id == asset_id)  # type: ignore[arg-type]
        )
        return result.scalar_one_or_none()

    async def compare_and_set(
        self,
        asset_id: int,
        owner: str,
        expected: MintStatus,
        next_status: MintStatus,
        **extra_fields: Any,
    ) -> bool:
        """Atomically move ``(asset_id, owner)`` from ``expected`` to ``next_status``.

        Query explanation:
        - WHERE id = :asset_id AND LOWER(owner_address) = :owner: scope to the owner's record
        - AND mint_status = :expected: the compare part, evaluated by the database
        - SET mint_status = :next, updated_at = now(), extra columns: the set part

        Concurrent callers racing on the same record serialize on the row; exactly
        one of them sees rowcount == 1.

        Args:
            asset_id: Asset identifier
            owner: Owner wallet address (any casing)
            expected: Status the record must currently hold
            next_status: Status to write
            **extra_fields: Additional columns (token_id, block_number, token_url)

        Returns:
            True if the update applied, False if the expected status did not hold
            (or the record does not exist)

        Raises:
            InvalidStateTransition: If expected -> next_status is not a lifecycle edge
            ValueError: If extra_fields names a column transitions may not write
        """
        check_transition(expected, next_status)
        unknown = set(extra_fields) - self.CAS_EXTRA_FIELDS
        if unknown:
            raise ValueError(f"Columns not writable by a status transition: {sorted(unknown)}")

        stmt = (
            update(AssetRecord)
            .where(
                AssetRecord.id == asset_id,  # type: ignore[arg-type]
                func.lower(AssetRecord.owner_address) == owner.lower(),
                AssetRecord.mint_status == expected,  # type: ignore[arg-type]
            )
            .values(mint_status=next_status, updated_at=utcnow(), **extra_fields)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1  # type: ignore[attr-defined]

    async def list_stale_applying(self, older_than: datetime, limit: int = 100) -> list[AssetRecord]:
        """Retrieve assets left in applying since before ``older_than``.

        Used by the reconciliation sweep. Oldest first.
        """
        result = await self.session.execute(
            select(AssetRecord)
            .where(
                AssetRecord.mint_status == MintStatus.APPLYING,  # type: ignore[arg-type]
                AssetRecord.updated_at < older_than,  # type: ignore[arg-type]
            )
            .order_by(AssetRecord.updated_at.asc())  # type: ignore[attr-defined]
            .limit(limit)
        )
        return list(result.scalars().all())

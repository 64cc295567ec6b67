"""Chip repository - ownership counts for the eligibility gate and chip recycling."""

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from hakumint.models.chip import Chip


class ChipRepository:
    """Repository for Chip entities."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def add(self, chip: Chip) -> Chip:
        self.session.add(chip)
        await self.session.flush()
        return chip

    async def count_for_asset(self, asset_id: int) -> int:
        """Count all chips of an asset regardless of owner."""
        result = await self.session.execute(
            select(func.count(Chip.id)).where(Chip.asset_id == asset_id)  # type: ignore[arg-type]
        )
        return result.scalar() or 0

    async def count_owned(self, asset_id: int, owner: str) -> int:
        """Count unrecycled chips of an asset received by ``owner`` (case-insensitive)."""
        result = await self.session.execute(
            select(func.count(Chip.id)).where(
                Chip.asset_id == asset_id,  # type: ignore[arg-type]
                func.lower(Chip.owner_address) == owner.lower(),
                Chip.received.is_(True),  # type: ignore[union-attr,attr-defined]
                Chip.is_minted.is_(False),  # type: ignore[union-attr,attr-defined]
            )
        )
        return result.scalar() or 0

    async def mark_minted(self, asset_id: int, user: str) -> int:
        """Recycle every chip of a minted asset.

        Args:
            asset_id: Asset whose mint was observed on-chain
            user: Minting address, stored lowercase

        Returns:
            Number of chips marked
        """
        result = await self.session.execute(
            update(Chip)
            .where(Chip.asset_id == asset_id)  # type: ignore[arg-type]
            .values(is_minted=True, mint_user=user.lower())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount  # type: ignore[attr-defined]

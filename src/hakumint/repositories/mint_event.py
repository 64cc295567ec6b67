"""MintEvent repository - which mint logs have already been applied."""

from sqlalchemy import exists, select
from sqlalchemy.ext.asyncio import AsyncSession

from hakumint.models.mint_event import MintEvent


class MintEventRepository:
    """Deduplicates mint logs seen by the watcher, replays and the server-paid flow."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def add(self, event: MintEvent) -> MintEvent:
        """Stage a processed log.

        Raises:
            IntegrityError: ``(tx_hash, log_index)`` is already recorded
        """
        self.session.add(event)
        await self.session.flush()
        return event

    async def exists(self, tx_hash: str, log_index: int) -> bool:
        """Whether the log at ``log_index`` of ``tx_hash`` was already applied.

        ``tx_hash`` is compared lowercase, the way rows are stored.
        """
        query = select(
            exists().where(
                MintEvent.tx_hash == tx_hash.lower(),  # type: ignore[arg-type]
                MintEvent.log_index == log_index,  # type: ignore[arg-type]
            )
        )
        return bool(await self.session.scalar(query))

    async def get_by_asset(self, asset_id: int) -> list[MintEvent]:
        """Mint logs recorded for an asset, oldest block first."""
        rows = await self.session.scalars(
            select(MintEvent)
            .where(MintEvent.asset_id == asset_id)  # type: ignore[arg-type]
            .order_by(MintEvent.block_number)  # type: ignore[arg-type]
        )
        return list(rows)

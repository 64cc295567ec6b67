"""Unit of Work: one database transaction spanning every repository.

The mint state machine, eligibility gate, coordinator and watcher never hold a
session themselves. Each step opens a short-lived unit of work, so every
compare-and-set runs in its own transaction.
"""

from typing import Awaitable, Callable

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from hakumint.repositories.asset import AssetRepository
from hakumint.repositories.chip import ChipRepository
from hakumint.repositories.mint_event import MintEventRepository
from hakumint.repositories.system_state import SystemStateRepository

logger = structlog.get_logger()


class UnitOfWork:
    """Transaction boundary exposing ``assets``, ``chips``, ``mint_events`` and
    ``system_state``.

    Example:
        async with await uow_factory() as uow:
            applied = await uow.assets.compare_and_set(
                asset_id, owner, MintStatus.UNAPPLIED, MintStatus.APPLYING
            )
    """

    def __init__(self, session: AsyncSession):
        self.session = session

        self.assets = AssetRepository(session)
        self.chips = ChipRepository(session)
        self.mint_events = MintEventRepository(session)
        self.system_state = SystemStateRepository(session)

    async def __aenter__(self) -> "UnitOfWork":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> bool:
        """Commit when the block finished cleanly, roll back otherwise.

        The session is closed either way and exceptions always propagate.
        """
        try:
            if exc_type is None:
                await self.session.commit()
                logger.debug("uow.committed")
            else:
                await self.session.rollback()
                logger.debug("uow.rolled_back", exc_type=exc_type.__name__)
        finally:
            await self.session.close()

        return False


UnitOfWorkFactory = Callable[[], Awaitable[UnitOfWork]]


def create_uow_factory(session_factory: async_sessionmaker[AsyncSession]) -> UnitOfWorkFactory:
    """Wrap a session factory so callers write ``async with await uow_factory()``.

    Example:
        uow_factory = create_uow_factory(setup_db_session(settings.database_url))

        async with await uow_factory() as uow:
            status = await uow.assets.get_status(asset_id)
    """

    async def _create_uow() -> UnitOfWork:
        return UnitOfWork(session_factory())

    return _create_uow

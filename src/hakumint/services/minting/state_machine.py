"""Mint state machine.

Enforces the only allowed status edges::

    unapplied -> applying -> minted
                 applying -> unapplied   (rollback)

Each write is one compare-and-set at the persistence gateway, executed in its
own unit of work, so concurrent handlers and multiple processes cannot both win
the same edge. The state machine does not know why a transition is requested.
"""

import structlog

from hakumint.models.asset import MintStatus
from hakumint.services.exceptions import (
    AlreadyApplying,
    AlreadyMinted,
    AssetNotFound,
    NotApplying,
)
from hakumint.uow import UnitOfWorkFactory

logger = structlog.get_logger()


class MintStateMachine:
    """Guarded transitions on an asset's mint status."""

    def __init__(self, uow_factory: UnitOfWorkFactory):
        """
        Args:
            uow_factory: Factory producing a UnitOfWork per operation
        """
        self.uow_factory = uow_factory

    async def begin_apply(self, asset_id: int, owner: str) -> None:
        """Start a mint attempt: unapplied -> applying.

        Raises:
            AlreadyApplying: An attempt is already in flight
            AlreadyMinted: The asset is already minted
            AssetNotFound: No record for (asset_id, owner)
        """
        async with await self.uow_factory() as uow:
            applied = await uow.assets.compare_and_set(
                asset_id, owner, MintStatus.UNAPPLIED, MintStatus.APPLYING
            )
            if applied:
                logger.info("mint.begin_apply", asset_id=asset_id, owner=owner)
                return

            current = await uow.assets.read_status(asset_id, owner)

        logger.warning(
            "mint.begin_apply_rejected",
            asset_id=asset_id,
            owner=owner,
            current=current.value if current else None,
        )
        if current is None:
            raise AssetNotFound(asset_id, owner)
        if current == MintStatus.MINTED:
            raise AlreadyMinted(asset_id, owner, current)
        # APPLYING, or UNAPPLIED again because a competing attempt was rolled back
        # between our update and our read: either way another attempt owned the edge.
        raise AlreadyApplying(asset_id, owner, current)

    async def confirm_mint(
        self,
        asset_id: int,
        owner: str,
        token_id: int,
        block_number: int,
        token_url: str | None,
    ) -> None:
        """Record an observed on-chain mint: applying -> minted.

        Raises:
            NotApplying: The asset is not applying (unapplied or already minted)
            AssetNotFound: No record for (asset_id, owner)
        """
        async with await self.uow_factory() as uow:
            applied = await uow.assets.compare_and_set(
                asset_id,
                owner,
                MintStatus.APPLYING,
                MintStatus.MINTED,
                token_id=token_id,
                block_number=block_number,
                token_url=token_url,
            )
            if applied:
                logger.info(
                    "mint.confirmed",
                    asset_id=asset_id,
                    owner=owner,
                    token_id=token_id,
                    block_number=block_number,
                    token_url=token_url,
                )
                return

            current = await uow.assets.read_status(asset_id, owner)

        logger.warning(
            "mint.confirm_rejected",
            asset_id=asset_id,
            owner=owner,
            current=current.value if current else None,
        )
        if current is None:
            raise AssetNotFound(asset_id, owner)
        raise NotApplying(asset_id, owner, current)

    async def rollback(self, asset_id: int, owner: str) -> None:
        """Abandon a mint attempt: applying -> unapplied.

        A ``NotApplying`` failure only means the attempt was already resolved
        elsewhere; callers log it rather than report it to end users.

        Raises:
            NotApplying: The asset is not applying
            AssetNotFound: No record for (asset_id, owner)
        """
        async with await self.uow_factory() as uow:
            applied = await uow.assets.compare_and_set(
                asset_id, owner, MintStatus.APPLYING, MintStatus.UNAPPLIED
            )
            if applied:
                logger.info("mint.rolled_back", asset_id=asset_id, owner=owner)
                return

            current = await uow.assets.read_status(asset_id, owner)

        if current is None:
            raise AssetNotFound(asset_id, owner)
        raise NotApplying(asset_id, owner, current)

    async def status(self, asset_id: int) -> MintStatus:
        """Read-only status snapshot.

        Raises:
            AssetNotFound: No record with this id
        """
        async with await self.uow_factory() as uow:
            current = await uow.assets.get_status(asset_id)
        if current is None:
            raise AssetNotFound(asset_id, owner="", message=f"Asset {asset_id} not found")
        return current

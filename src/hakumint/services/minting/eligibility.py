"""Eligibility gate consulted before a mint attempt starts.

An asset is eligible when its holder owns the NFT record and every one of its
chips. Ineligibility is a normal rejection, not an error.
"""

from typing import Protocol

import structlog

from hakumint.models.asset import MintStatus
from hakumint.uow import UnitOfWorkFactory

logger = structlog.get_logger()


class EligibilityGate(Protocol):
    async def is_eligible(self, asset_id: int, owner: str) -> bool: ...

    async def explain(self, asset_id: int, owner: str) -> str | None:
        """Return the rejection reason, or None when eligible."""
        ...


class OwnershipEligibilityGate:
    """Eligibility computed from asset ownership and chip ownership counts."""

    NOT_FOUND = "not found"
    NOT_OWNED = "not owned"
    NOT_RECEIVED = "not received"
    ALREADY_APPLYING = "already being minted"
    ALREADY_MINTED = "already minted"
    NO_CHIPS = "has no chips"
    CHIPS_INCOMPLETE = "chips incomplete"

    def __init__(self, uow_factory: UnitOfWorkFactory):
        self.uow_factory = uow_factory

    async def is_eligible(self, asset_id: int, owner: str) -> bool:
        return await self.explain(asset_id, owner) is None

    async def explain(self, asset_id: int, owner: str) -> str | None:
        async with await self.uow_factory() as uow:
            asset = await uow.assets.get_by_id(asset_id)
            if asset is None:
                return self._reject(asset_id, owner, self.NOT_FOUND)
            if not asset.is_owned_by(owner):
                return self._reject(asset_id, owner, self.NOT_OWNED)
            if not asset.received:
                return self._reject(asset_id, owner, self.NOT_RECEIVED)
            if asset.mint_status == MintStatus.APPLYING:
                return self._reject(asset_id, owner, self.ALREADY_APPLYING)
            if asset.mint_status == MintStatus.MINTED:
                return self._reject(asset_id, owner, self.ALREADY_MINTED)

            total = await uow.chips.count_for_asset(asset_id)
            owned = await uow.chips.count_owned(asset_id, owner)

        if total == 0:
            return self._reject(asset_id, owner, self.NO_CHIPS)
        if owned != total:
            logger.info(
                "eligibility.chips_incomplete",
                asset_id=asset_id,
                owner=owner,
                owned=owned,
                total=total,
            )
            return self.CHIPS_INCOMPLETE

        logger.debug("eligibility.ok", asset_id=asset_id, owner=owner, chips=total)
        return None

    @staticmethod
    def _reject(asset_id: int, owner: str, reason: str) -> str:
        logger.info("eligibility.rejected", asset_id=asset_id, owner=owner, reason=reason)
        return reason

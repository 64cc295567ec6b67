"""Repository layer for the hakumint backend.

Each repository is self-contained and bound to the session of a UnitOfWork.
"""

from hakumint.repositories.asset import AssetRepository
from hakumint.repositories.chip import ChipRepository
from hakumint.repositories.mint_event import MintEventRepository
from hakumint.repositories.system_state import SystemStateRepository

__all__ = [
    "AssetRepository",
    "ChipRepository",
    "MintEventRepository",
    "SystemStateRepository",
]

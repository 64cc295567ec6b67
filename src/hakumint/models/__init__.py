"""SQLModel database entities.

All models are imported here so they register with SQLModel metadata.
"""

from hakumint.models.asset import (
    AssetRecord,
    InvalidStateTransition,
    MintStatus,
    check_transition,
)
from hakumint.models.chip import Chip
from hakumint.models.mint_event import MintEvent
from hakumint.models.system_state import SystemState

__all__ = [
    "AssetRecord",
    "MintStatus",
    "InvalidStateTransition",
    "check_transition",
    "Chip",
    "MintEvent",
    "SystemState",
]

"""SystemState repository - JSON values keyed by name (watcher checkpoint)."""

from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from hakumint.core.timezone import utcnow
from hakumint.models.system_state import SystemState


class SystemStateRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_state(self, key: str) -> Any | None:
        """Stored value for ``key``, or None when it was never set."""
        row = await self.session.get(SystemState, key)
        return None if row is None else row.state_value

    async def set_state(self, key: str, value: Any) -> None:
        """Upsert ``key``.

        ``session.merge`` keeps this portable across PostgreSQL and SQLite; each
        key has a single writer.
        """
        await self.session.merge(SystemState(key=key, state_value=value, updated_at=utcnow()))
        await self.session.flush()

"""SystemState entity - key-value store for worker checkpoints."""

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel

from hakumint.core.timezone import utcnow


class SystemState(SQLModel, table=True):
    """Operational state such as the watcher's ``last_processed_block``."""

    __tablename__ = "system_state"  # type: ignore[assignment]

    key: str = Field(primary_key=True, max_length=255)
    state_value: Any = Field(default=None, sa_column=Column(JSON))
    updated_at: datetime = Field(default_factory=utcnow)

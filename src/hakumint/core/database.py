"""Async engine and session factory."""

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine


def setup_db_session(db_url: str, pool_size: int = 20) -> async_sessionmaker[AsyncSession]:
    """Build the session factory every UnitOfWork draws from.

    Args:
        db_url: SQLAlchemy async URL, ``postgresql+psycopg://...`` in production
            or ``sqlite+aiosqlite:///...`` for local runs
        pool_size: Connection pool size (ignored for SQLite)

    Returns:
        Session factory whose sessions keep loaded records usable after commit
    """
    engine_kwargs: dict = {"echo": False}
    if make_url(db_url).get_backend_name() == "sqlite":
        # Racing CAS writers wait for the file lock instead of failing immediately
        engine_kwargs["connect_args"] = {"timeout": 30}
    else:
        engine_kwargs.update(pool_size=pool_size, max_overflow=0, pool_pre_ping=True)

    engine = create_async_engine(db_url, **engine_kwargs)
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

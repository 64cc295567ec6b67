"""pytest fixtures for hakumint backend tests.

Provides:
- engine: Function-scoped SQLite database (aiosqlite) with all tables created
- session_factory / session: Sessions bound to that database
- uow_factory: Function-scoped UnitOfWork factory
- make_asset: Inserts an asset with its chips and returns the asset id
- node / sleeper: In-process fake node provider and recording sleep
"""

import os

# Settings validation is skipped in test environments; must be set before
# hakumint.app is imported because it builds the app at import time.
os.environ["APP_ENV"] = "test"
os.environ["TZ"] = "UTC"

from typing import AsyncGenerator  # noqa: E402

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from sqlalchemy.ext.asyncio import (  # noqa: E402
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlmodel import SQLModel  # noqa: E402

import hakumint.models  # noqa: E402, F401
from chain_fakes import OTHER, OWNER, FakeNodeProvider, RecordingSleep  # noqa: E402
from hakumint.models.asset import AssetRecord, MintStatus  # noqa: E402
from hakumint.models.chip import Chip  # noqa: E402
from hakumint.uow import create_uow_factory  # noqa: E402


@pytest_asyncio.fixture(scope="function")
async def engine(tmp_path):
    """Provide a fresh file-backed SQLite database per test.

    File-backed (not :memory:) so concurrent sessions see each other's commits.
    """
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'hakumint_test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture(scope="function")
async def session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Provide a function-scoped session; uncommitted changes are rolled back."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest_asyncio.fixture(scope="function")
async def uow_factory(session_factory):
    """Provide function-scoped UnitOfWork factory bound to the test database."""
    return create_uow_factory(session_factory)


@pytest.fixture
def make_asset(session_factory):
    """Insert an asset (and its chips) in its own committed transaction.

    Usage:
        asset_id = await make_asset(status=MintStatus.APPLYING, chips=3)
    """

    async def _make(
        owner: str = OWNER,
        status: MintStatus = MintStatus.UNAPPLIED,
        received: bool = True,
        chips: int = 2,
        chips_owned: int | None = None,
        file_name: str | None = None,
    ) -> int:
        owned = chips if chips_owned is None else chips_owned
        async with session_factory() as session:
            asset = AssetRecord(
                owner_address=owner,
                received=received,
                mint_status=status,
                file_name=file_name,
            )
            session.add(asset)
            await session.flush()

            for i in range(chips):
                session.add(
                    Chip(
                        asset_id=asset.id,  # type: ignore[arg-type]
                        owner_address=owner if i < owned else OTHER,
                        received=True,
                    )
                )
            await session.commit()
            return asset.id  # type: ignore[return-value]

    return _make


@pytest.fixture
def node() -> FakeNodeProvider:
    return FakeNodeProvider()


@pytest.fixture
def sleeper() -> RecordingSleep:
    return RecordingSleep()

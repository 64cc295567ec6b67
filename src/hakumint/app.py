"""FastAPI application factory."""

import asyncio
from contextlib import asynccontextmanager
from typing import Awaitable, Callable

import structlog
from fastapi import FastAPI, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from hakumint.api.routes import mint
from hakumint.core.config import Settings, configure_logging
from hakumint.core.database import setup_db_session
from hakumint.services.blockchain.events import default_schemas
from hakumint.services.blockchain.minter import MintSubmitter
from hakumint.services.blockchain.provider import Web3NodeProvider
from hakumint.services.blockchain.receipt_fetcher import ReceiptFetcher
from hakumint.services.minting.coordinator import MintCoordinator, ReceiptPolicy
from hakumint.services.minting.eligibility import OwnershipEligibilityGate
from hakumint.services.minting.state_machine import MintStateMachine
from hakumint.uow import create_uow_factory
from hakumint.workers.event_watcher import run_event_watcher

logger = structlog.get_logger()

WORKER_RESTART_DELAY_SECONDS = 1


async def _supervise(
    worker_factory: Callable[[], Awaitable[None]],
    worker_name: str,
    shutdown_event: asyncio.Event,
) -> None:
    while not shutdown_event.is_set():
        try:
            await worker_factory()
            logger.warning("worker.stopped_unexpectedly", worker=worker_name)
        except asyncio.CancelledError:
            logger.info("worker.cancelled", worker=worker_name)
            raise
        except Exception as e:
            logger.error(
                "worker.crashed",
                worker=worker_name,
                error=str(e),
                error_type=type(e).__name__,
                retry_in_seconds=WORKER_RESTART_DELAY_SECONDS,
                exc_info=True,
            )

        if shutdown_event.is_set():
            break
        await asyncio.sleep(WORKER_RESTART_DELAY_SECONDS)
        logger.info("worker.restarting", worker=worker_name)

    logger.info("worker.shutdown_complete", worker=worker_name)


def create_resilient_worker(
    worker_factory: Callable[[], Awaitable[None]],
    worker_name: str,
    shutdown_event: asyncio.Event,
) -> asyncio.Task:
    """Run a long-lived worker, restarting it whenever it crashes or returns.

    Args:
        worker_factory: Zero-argument callable returning a fresh worker coroutine
        worker_name: Name used in log events
        shutdown_event: Once set, the worker is not restarted again

    Returns:
        Supervisor task; cancelling it cancels the running worker
    """
    return asyncio.create_task(_supervise(worker_factory, worker_name, shutdown_event))


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan context manager.

    This is the composition root: every service is built here once and passed
    explicitly to its collaborators.

    - Startup: Configure logging, database, node provider, mint services, event watcher
    - Shutdown: Stop the watcher
    """
    settings = Settings()  # type: ignore[call-arg]
    configure_logging(settings)

    session_factory = setup_db_session(settings.database_url, settings.db_pool_size)
    uow_factory = create_uow_factory(session_factory)

    node = Web3NodeProvider.from_url(settings.rpc_url)
    fetcher = ReceiptFetcher(node, confirmation_poll_interval=settings.confirmation_poll_seconds)
    state_machine = MintStateMachine(uow_factory)

    submitter = None
    if settings.minter_private_key:
        submitter = MintSubmitter(
            w3=node.w3,
            contract_address=settings.nft_contract_address,
            private_key=settings.minter_private_key,
            gas_buffer_percentage=settings.mint_gas_buffer,
            chain_id=settings.chain_id,
        )
    else:
        logger.warning("startup.server_mint_disabled", reason="MINTER_PRIVATE_KEY not set")

    coordinator = MintCoordinator(
        state_machine=state_machine,
        gate=OwnershipEligibilityGate(uow_factory),
        fetcher=fetcher,
        schemas=default_schemas(settings.token_contract_address, settings.nft_contract_address),
        uow_factory=uow_factory,
        nft_contract_address=settings.nft_contract_address,
        submitter=submitter,
        receipt_policy=ReceiptPolicy(
            timeout=settings.receipt_timeout_seconds,
            max_attempts=settings.receipt_max_attempts,
            backoff_base=settings.receipt_backoff_seconds,
            min_confirmations=settings.min_confirmations,
        ),
    )

    app.state.settings = settings
    app.state.session_factory = session_factory
    app.state.uow_factory = uow_factory
    app.state.state_machine = state_machine
    app.state.coordinator = coordinator

    shutdown_event = asyncio.Event()
    watcher_task = None
    if settings.watcher_enabled:
        watcher_task = create_resilient_worker(
            lambda: run_event_watcher(
                uow_factory,
                node,
                coordinator,
                poll_interval=settings.watcher_poll_seconds,
                batch_blocks=settings.watcher_batch_blocks,
                start_block=settings.watcher_start_block,
            ),
            "event_watcher",
            shutdown_event,
        )

    logger.info("application.startup", db_url=settings.database_url.split("@")[-1])

    yield

    logger.info("application.shutdown")
    shutdown_event.set()

    if watcher_task is not None:
        watcher_task.cancel()
        await asyncio.gather(watcher_task, return_exceptions=True)


def create_app() -> FastAPI:
    """Create and configure FastAPI application.

    Returns:
        Configured FastAPI application instance
    """
    settings = Settings()  # type: ignore[call-arg]

    app = FastAPI(
        title="Hakumint Backend API",
        description="NFT mint lifecycle service",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(mint.router)  # Mint router has prefix="/api/mint" in definition

    @app.get("/health")
    async def health_check():
        """Report whether the database answers a trivial query.

        Returns:
            200 ``{"status": "healthy"}``, or 503 with the connection error
        """
        try:
            async with app.state.session_factory() as session:
                await session.execute(text("SELECT 1"))
        except Exception as e:
            logger.error("health_check.failed", error=str(e), error_type=type(e).__name__)
            return JSONResponse(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                content={"status": "unhealthy", "error": {"type": type(e).__name__}},
            )

        return {"status": "healthy"}

    return app


# Create app instance for uvicorn
app = create_app()

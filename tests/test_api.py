"""Integration tests for mint API endpoints.

Tests the HTTP mapping of coordinator outcomes:
- Rejections are HTTP 200 with success=false
- Node/timeout failures are HTTP 503 with retryable=true
- Reverted transactions are HTTP 200 with success=false and status 'unapplied'
"""

import asyncio

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from chain_fakes import (
    NFT_CONTRACT,
    OWNER,
    TOKEN_CONTRACT,
    FakeSubmitter,
    receipt,
    tx_hash,
    user_mint_log,
)
import hakumint.app as app_module
from hakumint.app import app, create_resilient_worker
from hakumint.models.asset import MintStatus
from hakumint.services.blockchain.events import default_schemas
from hakumint.services.blockchain.receipt_fetcher import ReceiptFetcher
from hakumint.services.minting.coordinator import MintCoordinator, ReceiptPolicy
from hakumint.services.minting.eligibility import OwnershipEligibilityGate
from hakumint.services.minting.state_machine import MintStateMachine

MINT_TX = tx_hash(77)


@pytest_asyncio.fixture
async def test_client(uow_factory, session_factory, node, sleeper):
    """Provide AsyncClient with services injected into app.state."""
    state_machine = MintStateMachine(uow_factory)
    app.state.session_factory = session_factory
    app.state.uow_factory = uow_factory
    app.state.state_machine = state_machine
    app.state.coordinator = MintCoordinator(
        state_machine=state_machine,
        gate=OwnershipEligibilityGate(uow_factory),
        fetcher=ReceiptFetcher(node, sleep=sleeper),
        schemas=default_schemas(TOKEN_CONTRACT, NFT_CONTRACT),
        uow_factory=uow_factory,
        nft_contract_address=NFT_CONTRACT,
        submitter=FakeSubmitter(MINT_TX),
        receipt_policy=ReceiptPolicy(timeout=5, max_attempts=2, backoff_base=0.01),
    )

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client


async def _status(uow_factory, asset_id):
    async with await uow_factory() as uow:
        return await uow.assets.get_status(asset_id)


@pytest.mark.asyncio
class TestApplyEndpoint:
    """POST /api/mint/apply"""

    async def test_successful_mint(self, test_client, make_asset, node):
        asset_id = await make_asset()
        node.script_receipt(
            MINT_TX,
            receipt(MINT_TX, [user_mint_log(7, OWNER, str(asset_id), "ipfs://x", 0)]),
        )

        response = await test_client.post(
            "/api/mint/apply", json={"asset_id": asset_id, "owner_address": OWNER}
        )

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["status"] == "minted"
        assert data["token_id"] == 7
        assert data["tx_hash"] == MINT_TX

    async def test_ineligible_is_normal_rejection(self, test_client, make_asset):
        asset_id = await make_asset(chips=0)

        response = await test_client.post(
            "/api/mint/apply", json={"asset_id": asset_id, "owner_address": OWNER}
        )

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is False
        assert data["reason"] == "ineligible"
        assert "has no chips" in data["message"]

    async def test_missing_receipt_is_retryable(self, test_client, make_asset, uow_factory):
        asset_id = await make_asset()

        response = await test_client.post(
            "/api/mint/apply", json={"asset_id": asset_id, "owner_address": OWNER}
        )

        assert response.status_code == 503
        data = response.json()
        assert data["success"] is False
        assert data["retryable"] is True
        assert await _status(uow_factory, asset_id) == MintStatus.UNAPPLIED

    async def test_reverted_transaction_is_definitive_failure(
        self, test_client, make_asset, node, uow_factory
    ):
        asset_id = await make_asset()
        node.script_receipt(MINT_TX, receipt(MINT_TX, [], success=False))

        response = await test_client.post(
            "/api/mint/apply", json={"asset_id": asset_id, "owner_address": OWNER}
        )

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is False
        assert data["status"] == "unapplied"
        assert data["retryable"] is False
        assert await _status(uow_factory, asset_id) == MintStatus.UNAPPLIED

    async def test_invalid_owner_address(self, test_client):
        response = await test_client.post(
            "/api/mint/apply", json={"asset_id": 1, "owner_address": "0x123"}
        )

        assert response.status_code == 422


@pytest.mark.asyncio
class TestSelfMintEndpoints:
    """POST /api/mint/eligibility and POST /api/mint/failed"""

    async def test_eligibility_reserves_asset(self, test_client, make_asset, uow_factory):
        asset_id = await make_asset(file_name="31.png")

        response = await test_client.post(
            "/api/mint/eligibility", json={"asset_id": asset_id, "owner_address": OWNER}
        )

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["status"] == "applying"
        assert data["mint_params"] == {
            "contract_address": NFT_CONTRACT,
            "to": OWNER,
            "token_id": str(asset_id),
            "param": 31,
        }
        assert await _status(uow_factory, asset_id) == MintStatus.APPLYING

    async def test_second_reservation_is_rejected(self, test_client, make_asset):
        asset_id = await make_asset()
        body = {"asset_id": asset_id, "owner_address": OWNER}

        first = await test_client.post("/api/mint/eligibility", json=body)
        second = await test_client.post("/api/mint/eligibility", json=body)

        assert first.json()["success"] is True
        assert second.status_code == 200
        assert second.json()["success"] is False
        assert second.json()["reason"] == "already_applying"
        assert second.json()["status"] == "applying"
        assert "already being minted" in second.json()["message"]

    async def test_failed_report_rolls_back(self, test_client, make_asset, uow_factory):
        asset_id = await make_asset(status=MintStatus.APPLYING)

        response = await test_client.post(
            "/api/mint/failed",
            json={"asset_id": asset_id, "owner_address": OWNER, "reason": "user rejected"},
        )

        assert response.status_code == 200
        assert response.json()["success"] is True
        assert response.json()["status"] == "unapplied"
        assert await _status(uow_factory, asset_id) == MintStatus.UNAPPLIED


@pytest.mark.asyncio
class TestStatusEndpoint:
    """GET /api/mint/{asset_id}/status"""

    async def test_status(self, test_client, make_asset):
        asset_id = await make_asset(status=MintStatus.APPLYING)

        response = await test_client.get(f"/api/mint/{asset_id}/status")

        assert response.status_code == 200
        assert response.json()["status"] == "applying"

    async def test_unknown_asset(self, test_client):
        response = await test_client.get("/api/mint/999/status")

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is False
        assert data["reason"] == "not_found"


@pytest.mark.asyncio
async def test_health_check(test_client):
    response = await test_client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "healthy"}


@pytest.mark.asyncio
async def test_resilient_worker_restarts_after_crash(monkeypatch):
    monkeypatch.setattr(app_module, "WORKER_RESTART_DELAY_SECONDS", 0)
    runs = []
    restarted = asyncio.Event()

    async def worker():
        runs.append(len(runs) + 1)
        if len(runs) == 1:
            raise RuntimeError("node went away")
        restarted.set()
        await asyncio.Event().wait()

    shutdown = asyncio.Event()
    task = create_resilient_worker(worker, "test_worker", shutdown)
    await asyncio.wait_for(restarted.wait(), timeout=1)

    shutdown.set()
    task.cancel()
    await asyncio.gather(task, return_exceptions=True)

    assert runs == [1, 2]
    assert task.cancelled()

"""Mint coordinator tests.

Tests drive the caller-level flows against a fake node and a real database:
- Server-paid mint: success, reverted transaction, missing receipt, submission failure
- User-paid mint: reservation and wallet-reported failure
- Inbound signals: confirmation, deduplication, failed transactions
"""

import pytest
from sqlalchemy import select

from chain_fakes import (
    NFT_CONTRACT,
    OTHER,
    OWNER,
    TOKEN_CONTRACT,
    FakeSubmitter,
    receipt,
    tx_hash,
    user_mint_log,
    user_transfer_log,
)
from hakumint.models.asset import MintStatus
from hakumint.models.chip import Chip
from hakumint.services.blockchain.events import UserTransfer, default_schemas
from hakumint.services.blockchain.receipt_fetcher import ReceiptFetcher
from hakumint.services.exceptions import (
    AlreadyApplying,
    AlreadyMinted,
    AssetNotFound,
    ConfigurationError,
    IneligibleError,
    ReceiptNotFound,
    TransactionFailed,
    TransactionSubmissionError,
)
from hakumint.services.minting.coordinator import MintCoordinator, ReceiptPolicy
from hakumint.services.minting.eligibility import OwnershipEligibilityGate
from hakumint.services.minting.state_machine import MintStateMachine


@pytest.fixture
def build_coordinator(uow_factory, node, sleeper):
    def _build(submitter=None):
        return MintCoordinator(
            state_machine=MintStateMachine(uow_factory),
            gate=OwnershipEligibilityGate(uow_factory),
            fetcher=ReceiptFetcher(node, confirmation_poll_interval=0.01, sleep=sleeper),
            schemas=default_schemas(TOKEN_CONTRACT, NFT_CONTRACT),
            uow_factory=uow_factory,
            nft_contract_address=NFT_CONTRACT,
            submitter=submitter,
            receipt_policy=ReceiptPolicy(timeout=5, max_attempts=3, backoff_base=0.01),
        )

    return _build


async def _asset(uow_factory, asset_id):
    async with await uow_factory() as uow:
        return await uow.assets.get_by_id(asset_id)


@pytest.mark.asyncio
class TestApplyAndMint:
    """Server-paid flow: eligibility -> begin_apply -> submit -> receipt -> confirm."""

    async def test_success_records_minted_token(
        self, build_coordinator, make_asset, node, uow_factory
    ):
        asset_id = await make_asset(file_name="27.png")
        tx = tx_hash(1)
        submitter = FakeSubmitter(tx)
        node.script_receipt(
            tx,
            None,
            receipt(
                tx,
                [user_mint_log(7, OWNER, remark=str(asset_id), token_url="ipfs://x", log_index=0)],
                block_number=1000,
            ),
        )

        outcome = await build_coordinator(submitter).apply_and_mint(asset_id, OWNER)

        assert outcome.status == MintStatus.MINTED
        assert outcome.token_id == 7
        assert outcome.block_number == 1000
        assert outcome.tx_hash == tx
        assert submitter.calls == [(asset_id, OWNER, 27)]

        asset = await _asset(uow_factory, asset_id)
        assert asset.mint_status == MintStatus.MINTED
        assert asset.token_id == 7
        assert asset.token_url == "ipfs://x"
        async with await uow_factory() as uow:
            assert await uow.mint_events.exists(tx, 0) is True

    async def test_reverted_transaction_rolls_back(
        self, build_coordinator, make_asset, node, uow_factory
    ):
        """A failed receipt with decodable logs ends in TransactionFailed, not confirm_mint."""
        asset_id = await make_asset()
        tx = tx_hash(2)
        node.script_receipt(
            tx,
            receipt(
                tx,
                [
                    user_transfer_log(OWNER, NFT_CONTRACT, 1, f"MintNFT#{asset_id}", 0),
                    user_mint_log(7, OWNER, remark=str(asset_id), token_url="ipfs://x", log_index=1),
                ],
                success=False,
            ),
        )

        with pytest.raises(TransactionFailed) as exc_info:
            await build_coordinator(FakeSubmitter(tx)).apply_and_mint(asset_id, OWNER)

        assert exc_info.value.tx_hash == tx
        asset = await _asset(uow_factory, asset_id)
        assert asset.mint_status == MintStatus.UNAPPLIED
        assert asset.token_id is None

    async def test_missing_receipt_rolls_back(
        self, build_coordinator, make_asset, node, uow_factory
    ):
        asset_id = await make_asset()
        tx = tx_hash(3)

        with pytest.raises(ReceiptNotFound):
            await build_coordinator(FakeSubmitter(tx)).apply_and_mint(asset_id, OWNER)

        assert node.receipt_calls[tx] == 3
        assert (await _asset(uow_factory, asset_id)).mint_status == MintStatus.UNAPPLIED

    async def test_submission_failure_rolls_back(self, build_coordinator, make_asset, uow_factory):
        asset_id = await make_asset()
        submitter = FakeSubmitter(tx_hash(4), error=TransactionSubmissionError("nonce too low"))

        with pytest.raises(TransactionSubmissionError):
            await build_coordinator(submitter).apply_and_mint(asset_id, OWNER)

        assert (await _asset(uow_factory, asset_id)).mint_status == MintStatus.UNAPPLIED

    async def test_ineligible_is_rejected_before_any_transition(
        self, build_coordinator, make_asset, uow_factory
    ):
        asset_id = await make_asset(chips=2, chips_owned=1)
        submitter = FakeSubmitter(tx_hash(5))

        with pytest.raises(IneligibleError, match="chips incomplete"):
            await build_coordinator(submitter).apply_and_mint(asset_id, OWNER)

        assert submitter.calls == []
        assert (await _asset(uow_factory, asset_id)).mint_status == MintStatus.UNAPPLIED

    async def test_already_minted_is_rejected(self, build_coordinator, make_asset):
        asset_id = await make_asset(status=MintStatus.MINTED)
        submitter = FakeSubmitter(tx_hash(6))

        with pytest.raises(AlreadyMinted) as exc_info:
            await build_coordinator(submitter).apply_and_mint(asset_id, OWNER)

        assert exc_info.value.reason == "already_minted"
        assert exc_info.value.current == MintStatus.MINTED
        assert submitter.calls == []

    async def test_requires_submitter(self, build_coordinator, make_asset):
        asset_id = await make_asset()

        with pytest.raises(ConfigurationError):
            await build_coordinator().apply_and_mint(asset_id, OWNER)

    async def test_receipt_without_mint_log_stays_applying(
        self, build_coordinator, make_asset, node, uow_factory
    ):
        asset_id = await make_asset()
        tx = tx_hash(7)
        node.script_receipt(tx, receipt(tx, []))

        outcome = await build_coordinator(FakeSubmitter(tx)).apply_and_mint(asset_id, OWNER)

        assert outcome.status == MintStatus.APPLYING
        assert outcome.tx_hash == tx
        assert (await _asset(uow_factory, asset_id)).mint_status == MintStatus.APPLYING


@pytest.mark.asyncio
class TestSelfMint:
    """User-paid flow: reservation and wallet-reported failure."""

    async def test_apply_for_self_mint_returns_call_params(
        self, build_coordinator, make_asset, uow_factory
    ):
        asset_id = await make_asset()

        request = await build_coordinator().apply_for_self_mint(asset_id, OWNER)

        assert request.contract_address == NFT_CONTRACT
        assert request.to_address == OWNER
        assert request.token_id == str(asset_id)
        assert request.param == asset_id
        assert (await _asset(uow_factory, asset_id)).mint_status == MintStatus.APPLYING

    async def test_second_reservation_is_already_applying(self, build_coordinator, make_asset):
        asset_id = await make_asset()
        coordinator = build_coordinator()
        await coordinator.apply_for_self_mint(asset_id, OWNER)

        with pytest.raises(AlreadyApplying) as exc_info:
            await coordinator.apply_for_self_mint(asset_id, OWNER)

        assert exc_info.value.reason == "already_applying"
        assert exc_info.value.current == MintStatus.APPLYING

    async def test_reservation_by_non_owner_is_not_found(self, build_coordinator, make_asset):
        asset_id = await make_asset(owner=OWNER)

        with pytest.raises(AssetNotFound):
            await build_coordinator().apply_for_self_mint(asset_id, OTHER)

    async def test_report_mint_failed_rolls_back(self, build_coordinator, make_asset, uow_factory):
        asset_id = await make_asset(status=MintStatus.APPLYING)

        outcome = await build_coordinator().report_mint_failed(asset_id, OWNER, "user rejected")

        assert outcome.status == MintStatus.UNAPPLIED
        assert (await _asset(uow_factory, asset_id)).mint_status == MintStatus.UNAPPLIED

    async def test_report_mint_failed_when_already_resolved(self, build_coordinator, make_asset):
        asset_id = await make_asset(status=MintStatus.MINTED)

        outcome = await build_coordinator().report_mint_failed(asset_id, OWNER)

        assert outcome.status == MintStatus.MINTED
        assert outcome.message == "Mint attempt already resolved"

    async def test_report_mint_failed_unknown_asset(self, build_coordinator, make_asset):
        asset_id = await make_asset(owner=OWNER)

        with pytest.raises(AssetNotFound):
            await build_coordinator().report_mint_failed(asset_id, OTHER)


@pytest.mark.asyncio
class TestHandleMintSignal:
    """Inbound signal: fetch and correlate the receipt, then confirm or roll back."""

    async def test_confirms_from_user_mint(self, build_coordinator, make_asset, node, uow_factory):
        asset_id = await make_asset(status=MintStatus.APPLYING)
        tx = tx_hash(10)
        node.script_receipt(
            tx,
            receipt(
                tx,
                [
                    # UserMint emitted before the related transfer
                    user_mint_log(9, OWNER, f"MintNFT#{asset_id}", "ipfs://nine", log_index=0),
                    user_transfer_log(OWNER, NFT_CONTRACT, 5, f"MintNFT#{asset_id}", 1),
                ],
                block_number=2000,
            ),
        )

        outcome = await build_coordinator().handle_mint_signal(tx)

        assert outcome.asset_id == asset_id
        assert outcome.status == MintStatus.MINTED
        assert outcome.message == "Minted"
        asset = await _asset(uow_factory, asset_id)
        assert asset.token_id == 9
        assert asset.block_number == 2000
        assert asset.token_url == "ipfs://nine"

    async def test_replayed_signal_is_deduplicated(
        self, build_coordinator, make_asset, node, uow_factory
    ):
        asset_id = await make_asset(status=MintStatus.APPLYING)
        tx = tx_hash(11)
        node.script_receipt(
            tx, receipt(tx, [user_mint_log(9, OWNER, str(asset_id), "ipfs://n", log_index=4)])
        )
        coordinator = build_coordinator()

        await coordinator.handle_mint_signal(tx)
        replay = await coordinator.handle_mint_signal(tx)

        assert replay.status == MintStatus.MINTED
        assert replay.message == "Mint already recorded"
        async with await uow_factory() as uow:
            events = await uow.mint_events.get_by_asset(asset_id)
        assert len(events) == 1

    async def test_signal_after_server_flow_confirmed(
        self, build_coordinator, make_asset, node, uow_factory
    ):
        """Asset already minted without a recorded log: accepted, log recorded."""
        asset_id = await make_asset(status=MintStatus.MINTED)
        tx = tx_hash(12)
        node.script_receipt(
            tx, receipt(tx, [user_mint_log(9, OWNER, str(asset_id), "ipfs://n", log_index=0)])
        )

        outcome = await build_coordinator().handle_mint_signal(tx)

        assert outcome.status == MintStatus.MINTED
        assert outcome.message == "Mint already recorded"
        async with await uow_factory() as uow:
            assert await uow.mint_events.exists(tx, 0) is True

    async def test_mint_mined_after_timeout_rollback_is_recorded(
        self, build_coordinator, make_asset, node, uow_factory
    ):
        """A transaction mined after its attempt was rolled back still ends in minted."""
        asset_id = await make_asset()
        tx = tx_hash(13)
        coordinator = build_coordinator(FakeSubmitter(tx))

        with pytest.raises(ReceiptNotFound):
            await coordinator.apply_and_mint(asset_id, OWNER)
        assert (await _asset(uow_factory, asset_id)).mint_status == MintStatus.UNAPPLIED

        node.script_receipt(
            tx, receipt(tx, [user_mint_log(9, OWNER, str(asset_id), "ipfs://n", log_index=0)])
        )
        outcome = await coordinator.handle_mint_signal(tx)

        assert outcome.status == MintStatus.MINTED
        assert outcome.message == "Minted after rollback"
        asset = await _asset(uow_factory, asset_id)
        assert asset.mint_status == MintStatus.MINTED
        assert asset.token_id == 9
        async with await uow_factory() as uow:
            assert await uow.mint_events.exists(tx, 0) is True
        assert await coordinator.gate.explain(asset_id, OWNER) is not None

    async def test_confirmed_mint_recycles_chips(
        self, build_coordinator, make_asset, node, session_factory
    ):
        asset_id = await make_asset(status=MintStatus.APPLYING, chips=3)
        other_id = await make_asset(status=MintStatus.APPLYING, chips=2)
        tx = tx_hash(17)
        node.script_receipt(
            tx, receipt(tx, [user_mint_log(9, OWNER, str(asset_id), "ipfs://n", log_index=0)])
        )

        await build_coordinator().handle_mint_signal(tx)

        async with session_factory() as session:
            chips = (await session.scalars(select(Chip).order_by(Chip.id))).all()
        minted = [c for c in chips if c.asset_id == asset_id]
        untouched = [c for c in chips if c.asset_id == other_id]
        assert len(minted) == 3
        assert all(c.is_minted and c.mint_user == OWNER.lower() for c in minted)
        assert not any(c.is_minted or c.mint_user for c in untouched)

    async def test_failed_transaction_rolls_back_asset_from_primary_event(
        self, build_coordinator, make_asset, node, uow_factory
    ):
        asset_id = await make_asset(status=MintStatus.APPLYING)
        tx = tx_hash(14)
        node.script_receipt(tx, receipt(tx, [], success=False))
        primary = UserTransfer(
            from_address=OWNER,
            to_address=NFT_CONTRACT,
            value=1,
            timestamp=0,
            block_number=1000,
            remark=f"MintNFT#{asset_id}",
            log_index=0,
        )

        with pytest.raises(TransactionFailed):
            await build_coordinator().handle_mint_signal(tx, primary)

        assert (await _asset(uow_factory, asset_id)).mint_status == MintStatus.UNAPPLIED

    async def test_receipt_without_mint_log(self, build_coordinator, node):
        tx = tx_hash(15)
        node.script_receipt(
            tx, receipt(tx, [user_transfer_log(OWNER, NFT_CONTRACT, 5, "MintNFT#1", 0)])
        )

        assert await build_coordinator().handle_mint_signal(tx) is None

    async def test_unparseable_remark_is_ignored(
        self, build_coordinator, make_asset, node, uow_factory
    ):
        asset_id = await make_asset(status=MintStatus.APPLYING)
        tx = tx_hash(16)
        node.script_receipt(
            tx, receipt(tx, [user_mint_log(9, OWNER, "not-an-id", "ipfs://n", log_index=0)])
        )

        assert await build_coordinator().handle_mint_signal(tx) is None
        assert (await _asset(uow_factory, asset_id)).mint_status == MintStatus.APPLYING

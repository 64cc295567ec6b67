"""Mint coordinator - caller-level flows around the mint state machine.

The coordinator is the only place that knows *why* a transition happens. It
wires the eligibility gate, receipt fetcher, event correlator and state machine
together for three entry points:

- Server-paid mint (``apply_and_mint``): the backend signs ``safeMint`` itself
- User-paid mint (``apply_for_self_mint`` / ``report_mint_failed``): the wallet
  submits the transaction, the backend only reserves the asset
- Inbound signal (``handle_mint_signal``): a watched event on a transaction hash

Any failure after ``begin_apply`` and before ``confirm_mint`` rolls the asset
back to unapplied. Rollback failures are logged, never surfaced to end users.
A mint observed on-chain is always recorded, even for an asset rolled back
before its transaction was mined, and recycles the asset's chips.
"""

from dataclasses import dataclass
from typing import Optional, Sequence, Union

import structlog
from sqlalchemy.exc import IntegrityError

from hakumint.models.asset import MintStatus
from hakumint.models.mint_event import MintEvent
from hakumint.services.blockchain.events import (
    CorrelatedEventSet,
    EventSchema,
    NftMint,
    UserMint,
    UserTransfer,
    correlate,
)
from hakumint.services.blockchain.minter import MintSubmitter, mint_param_from_file_name
from hakumint.services.blockchain.receipt_fetcher import ReceiptFetcher
from hakumint.services.blockchain.types import normalize_tx_hash
from hakumint.services.exceptions import (
    AlreadyApplying,
    AlreadyMinted,
    AssetNotFound,
    ConfigurationError,
    IneligibleError,
    NotApplying,
    TransactionFailed,
)
from hakumint.services.minting.eligibility import EligibilityGate, OwnershipEligibilityGate
from hakumint.services.minting.remark import parse_asset_id
from hakumint.services.minting.state_machine import MintStateMachine
from hakumint.uow import UnitOfWorkFactory

logger = structlog.get_logger()

MintLog = Union[UserMint, NftMint]
PrimaryEvent = Union[UserTransfer, UserMint, NftMint]

# Gate rejections raised as the errors begin_apply uses for the same status
_GATE_STATE_ERRORS = {
    OwnershipEligibilityGate.ALREADY_APPLYING: (AlreadyApplying, MintStatus.APPLYING),
    OwnershipEligibilityGate.ALREADY_MINTED: (AlreadyMinted, MintStatus.MINTED),
    OwnershipEligibilityGate.NOT_FOUND: (AssetNotFound, None),
    OwnershipEligibilityGate.NOT_OWNED: (AssetNotFound, None),
}


@dataclass
class MintOutcome:
    """Result of a coordinator flow, shaped for the HTTP layer."""

    asset_id: int
    status: MintStatus
    tx_hash: Optional[str] = None
    token_id: Optional[int] = None
    block_number: Optional[int] = None
    message: Optional[str] = None


@dataclass(frozen=True)
class SelfMintRequest:
    """Contract call parameters returned to a wallet for a user-paid mint."""

    asset_id: int
    contract_address: str
    to_address: str
    token_id: str
    param: int


@dataclass(frozen=True)
class ReceiptPolicy:
    """How long and how often to wait for a receipt."""

    timeout: float = 12.0
    max_attempts: int = 5
    backoff_base: float = 0.1
    min_confirmations: int = 0


def _event_owner(event: PrimaryEvent) -> str:
    if isinstance(event, UserMint):
        return event.user
    if isinstance(event, NftMint):
        return event.to_address
    return event.from_address


class MintCoordinator:
    """Orchestrates mint attempts end to end."""

    def __init__(
        self,
        state_machine: MintStateMachine,
        gate: EligibilityGate,
        fetcher: ReceiptFetcher,
        schemas: Sequence[EventSchema],
        uow_factory: UnitOfWorkFactory,
        nft_contract_address: str,
        submitter: Optional[MintSubmitter] = None,
        receipt_policy: Optional[ReceiptPolicy] = None,
    ):
        """
        Args:
            state_machine: Guarded status transitions
            gate: Eligibility check consulted before begin_apply
            fetcher: Receipt fetcher bound to a node provider
            schemas: Recognized event schemas for correlation
            uow_factory: Factory for asset lookups and mint event dedup
            nft_contract_address: Contract a user-paid mint must call
            submitter: safeMint submitter; None disables server-paid minting
            receipt_policy: Receipt timeout/retry settings
        """
        self.state_machine = state_machine
        self.gate = gate
        self.fetcher = fetcher
        self.schemas = list(schemas)
        self.uow_factory = uow_factory
        self.nft_contract_address = nft_contract_address
        self.submitter = submitter
        self.receipt_policy = receipt_policy or ReceiptPolicy()

    async def apply_and_mint(self, asset_id: int, owner: str) -> MintOutcome:
        """Server-paid mint: reserve the asset, submit safeMint, record the result.

        Returns:
            MintOutcome in ``minted`` when the receipt carries the mint log for this
            asset, or ``applying`` when it must be picked up by the event watcher.

        Raises:
            IneligibleError: Eligibility gate rejected the request
            StateError: begin_apply rejected the transition
            TransactionFailed: The transaction reverted (asset rolled back)
            TransientError: Submission or receipt retrieval failed (asset rolled back)
            ConfigurationError: No minting key configured
        """
        if self.submitter is None:
            raise ConfigurationError("Server-side minting requires MINTER_PRIVATE_KEY")

        mint_param = await self._check_eligible(asset_id, owner)
        await self.state_machine.begin_apply(asset_id, owner)

        try:
            tx_hash = await self.submitter.submit(asset_id, owner, mint_param)
            receipt = await self.fetcher.fetch_with_timeout(
                tx_hash,
                timeout=self.receipt_policy.timeout,
                max_attempts=self.receipt_policy.max_attempts,
                backoff_base=self.receipt_policy.backoff_base,
                min_confirmations=self.receipt_policy.min_confirmations,
            )
            if not receipt.success:
                raise TransactionFailed(receipt.tx_hash, receipt.block_number)
            events = correlate(receipt, self.schemas)
        except Exception as e:
            logger.warning(
                "mint.apply_failed",
                asset_id=asset_id,
                owner=owner,
                error=str(e),
                error_type=type(e).__name__,
            )
            await self._soft_rollback(asset_id, owner, reason=type(e).__name__)
            raise

        mint_log = self._mint_log_for(events, asset_id)
        if mint_log is None:
            logger.warning(
                "mint.receipt_without_mint_log",
                asset_id=asset_id,
                tx_hash=receipt.tx_hash,
            )
            return MintOutcome(
                asset_id=asset_id,
                status=MintStatus.APPLYING,
                tx_hash=receipt.tx_hash,
                block_number=receipt.block_number,
                message="Mint submitted, awaiting confirmation",
            )

        return await self._apply_mint_log(receipt.tx_hash, receipt.block_number, mint_log)

    async def apply_for_self_mint(self, asset_id: int, owner: str) -> SelfMintRequest:
        """User-paid mint: reserve the asset and hand back the contract call.

        The wallet must call ``safeMint(to, tokenId, param)`` and either let the
        event watcher confirm it or report a cancelled transaction through
        ``report_mint_failed``.

        Raises:
            IneligibleError: Eligibility gate rejected the request
            StateError: begin_apply rejected the transition
        """
        mint_param = await self._check_eligible(asset_id, owner)
        await self.state_machine.begin_apply(asset_id, owner)

        return SelfMintRequest(
            asset_id=asset_id,
            contract_address=self.nft_contract_address,
            to_address=owner,
            token_id=str(asset_id),
            param=mint_param,
        )

    async def report_mint_failed(
        self, asset_id: int, owner: str, reason: Optional[str] = None
    ) -> MintOutcome:
        """Roll back a user-paid attempt the wallet reports as failed or cancelled.

        An attempt that was already resolved is reported with its current status.

        Raises:
            AssetNotFound: No record for (asset_id, owner)
        """
        logger.info("mint.failure_reported", asset_id=asset_id, owner=owner, reason=reason)
        try:
            await self.state_machine.rollback(asset_id, owner)
        except NotApplying as e:
            logger.warning(
                "mint.rollback_already_resolved",
                asset_id=asset_id,
                owner=owner,
                current=e.current.value if e.current else None,
            )
            return MintOutcome(
                asset_id=asset_id,
                status=e.current or MintStatus.UNAPPLIED,
                message="Mint attempt already resolved",
            )

        return MintOutcome(
            asset_id=asset_id,
            status=MintStatus.UNAPPLIED,
            message="Mint attempt rolled back",
        )

    async def handle_mint_signal(
        self, tx: Union[str, bytes], primary_event: Optional[PrimaryEvent] = None
    ) -> Optional[MintOutcome]:
        """Process an inbound signal: a watched event on a transaction hash.

        Fetches and correlates the full receipt instead of trusting the signal's
        event, so arrival order of related events does not matter.

        Args:
            tx: Transaction hash
            primary_event: The decoded event that triggered the signal, if any;
                used to locate the asset when a failed receipt has no logs

        Returns:
            MintOutcome for the asset named by the mint log, or None when the
            transaction carries no mint log this service can attribute

        Raises:
            TransactionFailed: The transaction reverted (asset rolled back)
            TransientError: Receipt retrieval failed (no state changed)
        """
        tx_hash = normalize_tx_hash(tx)
        receipt = await self.fetcher.fetch_with_timeout(
            tx_hash,
            timeout=self.receipt_policy.timeout,
            max_attempts=self.receipt_policy.max_attempts,
            backoff_base=self.receipt_policy.backoff_base,
            min_confirmations=self.receipt_policy.min_confirmations,
        )
        events = correlate(receipt, self.schemas)

        if not receipt.success:
            await self._rollback_failed_signal(events, primary_event)
            raise TransactionFailed(receipt.tx_hash, receipt.block_number)

        mint_log = events.user_mint or events.nft_mint
        if mint_log is None:
            logger.debug("signal.no_mint_log", tx_hash=tx_hash)
            return None

        return await self._apply_mint_log(receipt.tx_hash, receipt.block_number, mint_log)

    async def _check_eligible(self, asset_id: int, owner: str) -> int:
        reason = await self.gate.explain(asset_id, owner)
        if reason in _GATE_STATE_ERRORS:
            error_class, current = _GATE_STATE_ERRORS[reason]
            raise error_class(asset_id, owner, current)
        if reason is not None:
            raise IneligibleError(
                asset_id,
                owner,
                message=f"Asset {asset_id} is not eligible for minting: {reason}",
            )

        async with await self.uow_factory() as uow:
            asset = await uow.assets.get_owned(asset_id, owner)
        if asset is None:
            raise AssetNotFound(asset_id, owner)
        return mint_param_from_file_name(asset.file_name, asset_id)

    def _mint_log_for(self, events: CorrelatedEventSet, asset_id: int) -> Optional[MintLog]:
        for candidate in (events.user_mint, events.nft_mint):
            if candidate is None:
                continue
            try:
                if parse_asset_id(candidate.remark) == asset_id:
                    return candidate
            except ValueError:
                continue
        return None

    async def _apply_mint_log(
        self, tx_hash: str, block_number: int, mint_log: MintLog
    ) -> Optional[MintOutcome]:
        try:
            asset_id = parse_asset_id(mint_log.remark)
        except ValueError as e:
            logger.warning(
                "signal.unparseable_remark",
                tx_hash=tx_hash,
                log_index=mint_log.log_index,
                error=str(e),
            )
            return None

        owner = _event_owner(mint_log)
        token_url = mint_log.token_url if isinstance(mint_log, UserMint) else None

        async with await self.uow_factory() as uow:
            already_recorded = await uow.mint_events.exists(tx_hash, mint_log.log_index)
        if already_recorded:
            logger.info(
                "signal.duplicate_mint_log",
                tx_hash=tx_hash,
                log_index=mint_log.log_index,
                asset_id=asset_id,
            )
            return MintOutcome(
                asset_id=asset_id,
                status=MintStatus.MINTED,
                tx_hash=tx_hash,
                token_id=mint_log.token_id,
                block_number=block_number,
                message="Mint already recorded",
            )

        message = await self._confirm_observed_mint(
            tx_hash, block_number, asset_id, owner, mint_log.token_id, token_url
        )

        await self._record_mint_log(tx_hash, block_number, asset_id, owner, mint_log, token_url)
        return MintOutcome(
            asset_id=asset_id,
            status=MintStatus.MINTED,
            tx_hash=tx_hash,
            token_id=mint_log.token_id,
            block_number=block_number,
            message=message,
        )

    async def _confirm_observed_mint(
        self,
        tx_hash: str,
        block_number: int,
        asset_id: int,
        owner: str,
        token_id: int,
        token_url: Optional[str],
    ) -> str:
        """Move the asset to minted for a mint that already happened on-chain.

        An asset rolled back before its transaction was mined (receipt timeout,
        reconcile sweep) is re-entered through begin_apply so the observed mint
        is never dropped.

        Returns:
            Outcome message
        """
        try:
            await self.state_machine.confirm_mint(
                asset_id, owner, token_id=token_id, block_number=block_number, token_url=token_url
            )
            return "Minted"
        except NotApplying as e:
            if e.current == MintStatus.MINTED:
                return "Mint already recorded"
            if e.current != MintStatus.UNAPPLIED:
                raise

        logger.error(
            "signal.mint_after_rollback",
            tx_hash=tx_hash,
            asset_id=asset_id,
            owner=owner,
            token_id=token_id,
        )
        try:
            await self.state_machine.begin_apply(asset_id, owner)
        except AlreadyMinted:
            return "Mint already recorded"
        except AlreadyApplying:
            # A new attempt started meanwhile; the observed mint still wins
            pass

        try:
            await self.state_machine.confirm_mint(
                asset_id, owner, token_id=token_id, block_number=block_number, token_url=token_url
            )
        except NotApplying as e:
            if e.current != MintStatus.MINTED:
                raise
            return "Mint already recorded"
        return "Minted after rollback"

    async def _record_mint_log(
        self,
        tx_hash: str,
        block_number: int,
        asset_id: int,
        owner: str,
        mint_log: MintLog,
        token_url: Optional[str],
    ) -> None:
        try:
            async with await self.uow_factory() as uow:
                await uow.mint_events.add(
                    MintEvent(
                        tx_hash=tx_hash.lower(),
                        log_index=mint_log.log_index,
                        block_number=block_number,
                        asset_id=asset_id,
                        token_id=mint_log.token_id,
                        owner_address=owner,
                        token_url=token_url,
                    )
                )
                recycled = await uow.chips.mark_minted(asset_id, owner)
        except IntegrityError:
            # Concurrent handler recorded the same (tx_hash, log_index)
            logger.info("signal.mint_log_recorded_concurrently", tx_hash=tx_hash)
        else:
            logger.info("mint.chips_recycled", asset_id=asset_id, user=owner, chips=recycled)

    async def _rollback_failed_signal(
        self, events: CorrelatedEventSet, primary_event: Optional[PrimaryEvent]
    ) -> None:
        candidates = [e for e in (events.user_mint, events.nft_mint, primary_event) if e]
        for event in candidates:
            try:
                asset_id = parse_asset_id(event.remark)
            except ValueError:
                continue
            await self._soft_rollback(asset_id, _event_owner(event), reason="transaction_failed")
            return

        logger.warning("signal.failed_tx_unattributed", tx_hash=events.tx_hash)

    async def _soft_rollback(self, asset_id: int, owner: str, reason: str) -> bool:
        """Roll back, logging instead of raising when there is nothing to undo."""
        try:
            await self.state_machine.rollback(asset_id, owner)
            return True
        except (NotApplying, AssetNotFound) as e:
            logger.warning(
                "mint.rollback_skipped",
                asset_id=asset_id,
                owner=owner,
                reason=reason,
                rejection=e.reason,
                current=e.current.value if e.current else None,
            )
            return False

"""Mint API endpoints.

This module implements the HTTP surface over the mint coordinator:
- POST /api/mint/apply - Server-paid mint (backend signs safeMint)
- POST /api/mint/eligibility - Reserve an asset for a user-paid mint
- POST /api/mint/failed - Wallet reports a cancelled/failed user-paid mint
- GET /api/mint/{asset_id}/status - Current mint status

Eligibility and state rejections are normal outcomes (HTTP 200, success=false).
Node and timeout failures are retryable (HTTP 503, retryable=true). A reverted
transaction is a definitive failure with the asset back in 'unapplied'.
"""

import structlog
from fastapi import APIRouter, Depends, HTTPException, Response, status
from pydantic import BaseModel, Field, field_validator
from web3 import Web3

from hakumint.api.dependencies import get_coordinator, get_state_machine
from hakumint.models.asset import MintStatus
from hakumint.services.exceptions import (
    ConfigurationError,
    StateError,
    TransactionFailed,
    TransientError,
)
from hakumint.services.minting.coordinator import MintCoordinator, MintOutcome
from hakumint.services.minting.state_machine import MintStateMachine

logger = structlog.get_logger()
router = APIRouter(prefix="/api/mint", tags=["mint"])


# Request/Response Models


class MintRequest(BaseModel):
    """Request model identifying an asset and its owner."""

    asset_id: int = Field(..., description="Off-chain asset id", ge=1)
    owner_address: str = Field(
        ...,
        description="Owner wallet address (0x + 40 hex characters)",
        min_length=42,
        max_length=42,
    )

    @field_validator("owner_address")
    @classmethod
    def validate_owner_address(cls, v: str) -> str:
        """Validate and normalize Ethereum wallet address."""
        if not v.startswith("0x"):
            raise ValueError("Wallet address must be 0x followed by 40 hex characters")
        try:
            return Web3.to_checksum_address(v)
        except ValueError as e:
            raise ValueError(f"Invalid Ethereum address: {e}")


class MintFailedRequest(MintRequest):
    """Request model for reporting a failed user-paid mint."""

    reason: str | None = Field(
        default=None,
        description="Wallet-side failure reason (rejected, reverted, ...)",
        max_length=500,
    )


class SelfMintParams(BaseModel):
    """Contract call the wallet must submit: safeMint(to, token_id, param)."""

    contract_address: str
    to: str
    token_id: str
    param: int


class MintResponse(BaseModel):
    """Response model shared by all mint endpoints."""

    success: bool = Field(..., description="False for rejections and failures")
    asset_id: int
    status: str | None = Field(
        default=None, description="Mint status after the request (unapplied, applying, minted)"
    )
    reason: str | None = Field(default=None, description="Machine-readable rejection reason")
    message: str | None = None
    retryable: bool = Field(default=False, description="True when the request may be retried")
    tx_hash: str | None = None
    token_id: int | None = None
    block_number: int | None = None
    mint_params: SelfMintParams | None = None


def _from_outcome(outcome: MintOutcome) -> MintResponse:
    return MintResponse(
        success=True,
        asset_id=outcome.asset_id,
        status=outcome.status.value,
        message=outcome.message,
        tx_hash=outcome.tx_hash,
        token_id=outcome.token_id,
        block_number=outcome.block_number,
    )


def _rejection(asset_id: int, e: StateError) -> MintResponse:
    logger.info("mint_api.rejected", asset_id=asset_id, reason=e.reason, message=str(e))
    return MintResponse(
        success=False,
        asset_id=asset_id,
        status=e.current.value if e.current else None,
        reason=e.reason,
        message=str(e),
    )


def _transaction_failed(asset_id: int, e: TransactionFailed) -> MintResponse:
    logger.warning("mint_api.transaction_failed", asset_id=asset_id, tx_hash=e.tx_hash)
    return MintResponse(
        success=False,
        asset_id=asset_id,
        status=MintStatus.UNAPPLIED.value,
        reason="transaction_failed",
        message=str(e),
        tx_hash=e.tx_hash,
        block_number=e.block_number,
    )


def _unavailable(asset_id: int, e: Exception, response: Response, retryable: bool) -> MintResponse:
    logger.warning(
        "mint_api.unavailable",
        asset_id=asset_id,
        error=str(e),
        error_type=type(e).__name__,
        retryable=retryable,
    )
    response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    return MintResponse(
        success=False,
        asset_id=asset_id,
        reason=type(e).__name__,
        message=str(e),
        retryable=retryable,
    )


def _internal_error(event: str, asset_id: int, e: Exception) -> HTTPException:
    logger.error(
        event,
        asset_id=asset_id,
        error=str(e),
        error_type=type(e).__name__,
        exc_info=True,
    )
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail="Internal server error",
    )


@router.post("/apply", response_model=MintResponse, status_code=status.HTTP_200_OK)
async def apply_and_mint(
    request: MintRequest,
    response: Response,
    coordinator: MintCoordinator = Depends(get_coordinator),
) -> MintResponse:
    """Mint an asset on the owner's behalf.

    The backend checks eligibility, marks the asset applying, submits safeMint,
    waits for the receipt and records the minted token.
    """
    logger.info("mint_api.apply", asset_id=request.asset_id, owner=request.owner_address)
    try:
        outcome = await coordinator.apply_and_mint(request.asset_id, request.owner_address)
        return _from_outcome(outcome)
    except StateError as e:
        return _rejection(request.asset_id, e)
    except TransactionFailed as e:
        return _transaction_failed(request.asset_id, e)
    except TransientError as e:
        return _unavailable(request.asset_id, e, response, retryable=True)
    except ConfigurationError as e:
        return _unavailable(request.asset_id, e, response, retryable=False)
    except Exception as e:
        raise _internal_error("mint_api.apply_failed", request.asset_id, e)


@router.post("/eligibility", response_model=MintResponse, status_code=status.HTTP_200_OK)
async def apply_for_self_mint(
    request: MintRequest,
    response: Response,
    coordinator: MintCoordinator = Depends(get_coordinator),
) -> MintResponse:
    """Reserve an asset for a user-paid mint and return the contract call."""
    try:
        params = await coordinator.apply_for_self_mint(request.asset_id, request.owner_address)
    except StateError as e:
        return _rejection(request.asset_id, e)
    except TransientError as e:
        return _unavailable(request.asset_id, e, response, retryable=True)
    except Exception as e:
        raise _internal_error("mint_api.eligibility_failed", request.asset_id, e)

    return MintResponse(
        success=True,
        asset_id=request.asset_id,
        status=MintStatus.APPLYING.value,
        message="Asset reserved, submit the mint transaction",
        mint_params=SelfMintParams(
            contract_address=params.contract_address,
            to=params.to_address,
            token_id=params.token_id,
            param=params.param,
        ),
    )


@router.post("/failed", response_model=MintResponse, status_code=status.HTTP_200_OK)
async def report_mint_failed(
    request: MintFailedRequest,
    coordinator: MintCoordinator = Depends(get_coordinator),
) -> MintResponse:
    """Return a reserved asset to 'unapplied' after a wallet-side failure."""
    try:
        outcome = await coordinator.report_mint_failed(
            request.asset_id, request.owner_address, request.reason
        )
    except StateError as e:
        return _rejection(request.asset_id, e)
    except Exception as e:
        raise _internal_error("mint_api.failed_report_failed", request.asset_id, e)

    return _from_outcome(outcome)


@router.get("/{asset_id}/status", response_model=MintResponse, status_code=status.HTTP_200_OK)
async def get_mint_status(
    asset_id: int,
    state_machine: MintStateMachine = Depends(get_state_machine),
) -> MintResponse:
    """Read-only mint status snapshot."""
    try:
        current = await state_machine.status(asset_id)
    except StateError as e:
        return _rejection(asset_id, e)
    except Exception as e:
        raise _internal_error("mint_api.status_failed", asset_id, e)

    return MintResponse(success=True, asset_id=asset_id, status=current.value)

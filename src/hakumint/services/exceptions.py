"""Service error hierarchy for receipt handling and mint state transitions.

This module defines the exception hierarchy for service-level errors:
- ServiceError: Base for all service errors
- TransientError: Retryable errors (node lag, timeouts, connectivity)
- PermanentError: Non-retryable errors (failed transactions, configuration)
- StateError: Rejected mint status transitions (terminal for the request)
"""

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from hakumint.models.asset import MintStatus


class ServiceError(Exception):
    """Base exception for all service errors."""

    pass


class TransientError(ServiceError):
    """Transient error that may succeed if the whole flow is retried later.

    Examples:
    - Receipt not yet indexed after all attempts
    - Overall receipt timeout
    - RPC connection failures
    """

    pass


class PermanentError(ServiceError):
    """Permanent error that will not succeed on retry.

    Examples:
    - Transaction executed but reverted on-chain
    - Missing configuration
    """

    pass


# Receipt Fetcher errors
class ReceiptNotFound(TransientError):
    """Receipt still not indexed after the last attempt."""

    def __init__(self, tx_hash: str, attempts: int):
        self.tx_hash = tx_hash
        self.attempts = attempts
        super().__init__(f"Receipt for {tx_hash} not found after {attempts} attempts")


class ReceiptTimeoutError(TransientError):
    """Receipt fetch (including confirmation wait) exceeded the overall timeout."""

    def __init__(self, tx_hash: str, timeout: float):
        self.tx_hash = tx_hash
        self.timeout = timeout
        super().__init__(f"Timed out after {timeout}s waiting for receipt of {tx_hash}")


class ReceiptInvalidated(TransientError):
    """A previously fetched receipt disappeared while waiting for confirmations."""

    def __init__(self, tx_hash: str, block_number: int):
        self.tx_hash = tx_hash
        self.block_number = block_number
        super().__init__(f"Receipt for {tx_hash} (block {block_number}) is no longer available")


class NodeConnectionError(TransientError):
    """Failed to talk to the chain node."""

    pass


class TransactionSubmissionError(TransientError):
    """Signing or broadcasting a transaction failed."""

    pass


class TransactionFailed(PermanentError):
    """Transaction was mined with a failure status."""

    def __init__(self, tx_hash: str, block_number: Optional[int] = None):
        self.tx_hash = tx_hash
        self.block_number = block_number
        super().__init__(f"Transaction {tx_hash} failed on-chain (block {block_number})")


class ConfigurationError(PermanentError):
    """Required configuration is missing or invalid."""

    pass


# Event Correlator errors
class DecodeSkipped(ServiceError):
    """A log matched a schema but its payload could not be decoded.

    Raised by individual decoders and handled by the correlator, which logs it
    and moves on to the next log.
    """

    def __init__(self, event_name: str, log_index: int, reason: str):
        self.event_name = event_name
        self.log_index = log_index
        self.reason = reason
        super().__init__(f"Skipped {event_name} log {log_index}: {reason}")


# Mint State Machine errors
class StateError(ServiceError):
    """Base for rejected mint status transitions."""

    reason = "state_error"

    def __init__(
        self,
        asset_id: int,
        owner: str,
        current: Optional["MintStatus"] = None,
        message: Optional[str] = None,
    ):
        self.asset_id = asset_id
        self.owner = owner
        self.current = current
        super().__init__(message or self.default_message())

    def default_message(self) -> str:
        return f"Asset {self.asset_id} rejected transition ({self.reason})"


class AlreadyApplying(StateError):
    """A mint attempt for the asset is already in flight."""

    reason = "already_applying"

    def default_message(self) -> str:
        return f"Asset {self.asset_id} is already being minted, please wait"


class AlreadyMinted(StateError):
    """The asset has already been minted."""

    reason = "already_minted"

    def default_message(self) -> str:
        return f"Asset {self.asset_id} has already been minted"


class NotApplying(StateError):
    """The asset has no mint attempt in flight."""

    reason = "not_applying"

    def default_message(self) -> str:
        status = self.current.value if self.current is not None else "unknown"
        return f"Asset {self.asset_id} is not applying for mint (status: {status})"


class AssetNotFound(StateError):
    """No asset record matches the asset id and owner."""

    reason = "not_found"

    def default_message(self) -> str:
        return f"Asset {self.asset_id} not found for owner {self.owner}"


class IneligibleError(StateError):
    """The eligibility gate rejected the mint request."""

    reason = "ineligible"

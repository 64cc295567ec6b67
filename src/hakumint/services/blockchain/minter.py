"""Mint submitter - sends server-paid ``safeMint`` transactions."""

from pathlib import PurePosixPath

import structlog
from eth_account import Account
from web3 import AsyncWeb3

from hakumint.abi import get_contract_abi
from hakumint.services.exceptions import TransactionSubmissionError

logger = structlog.get_logger()


def mint_param_from_file_name(file_name: str | None, asset_id: int) -> int:
    """Derive the ``uint256`` mint parameter from an asset's image file name.

    ``"27.png"`` gives 27. Falls back to the asset id when the stem is not numeric.
    """
    if file_name:
        stem = PurePosixPath(file_name).stem
        if stem.isdigit():
            return int(stem)
    return asset_id


class MintSubmitter:
    """Signs and broadcasts ``safeMint(address to, string tokenId, uint256 param)``.

    Only submits; confirmation is the receipt fetcher's job.
    """

    def __init__(
        self,
        w3: AsyncWeb3,
        contract_address: str,
        private_key: str,
        gas_buffer_percentage: float = 0.20,
        chain_id: int | None = None,
    ):
        """
        Args:
            w3: AsyncWeb3 instance connected to the chain
            contract_address: NFT contract address
            private_key: Signer key for the minting wallet (0x-prefixed hex)
            gas_buffer_percentage: Safety buffer for gas estimation (default: 0.20 = 20%)
            chain_id: Chain id, queried from the node when None
        """
        self.w3 = w3
        self.contract_address = AsyncWeb3.to_checksum_address(contract_address)
        self.private_key = private_key
        self.gas_buffer = 1.0 + gas_buffer_percentage
        self.chain_id = chain_id

        self.contract = self.w3.eth.contract(
            address=self.contract_address, abi=get_contract_abi("HakuNFT")
        )
        self.account = Account.from_key(private_key)

        logger.info(
            "minter.initialized",
            minter_address=self.account.address,
            contract_address=self.contract_address,
            gas_buffer=self.gas_buffer,
        )

    async def submit(self, asset_id: int, to_address: str, mint_param: int) -> str:
        """Build, sign and send a safeMint transaction.

        Args:
            asset_id: Off-chain asset id, passed as the string token id
            to_address: Recipient wallet
            mint_param: uint256 parameter (see mint_param_from_file_name)

        Returns:
            Transaction hash (0x-prefixed hex)

        Raises:
            TransactionSubmissionError: Gas estimation, signing or broadcast failed
        """
        to_checksum = AsyncWeb3.to_checksum_address(to_address)
        call = self.contract.functions.safeMint(to_checksum, str(asset_id), mint_param)

        try:
            estimated_gas = await call.estimate_gas({"from": self.account.address})
            max_priority_fee = await self.w3.eth.max_priority_fee
            latest_block = await self.w3.eth.get_block("latest")
            base_fee = latest_block.get("baseFeePerGas", 0)
            chain_id = self.chain_id if self.chain_id is not None else await self.w3.eth.chain_id
            nonce = await self.w3.eth.get_transaction_count(self.account.address, "pending")

            priority_fee = int(max_priority_fee * self.gas_buffer)
            transaction = await call.build_transaction(
                {
                    "from": self.account.address,
                    "nonce": nonce,
                    "gas": int(estimated_gas * self.gas_buffer),
                    "maxFeePerGas": int(base_fee * 2) + priority_fee,
                    "maxPriorityFeePerGas": priority_fee,
                    "chainId": chain_id,
                }  # type: ignore[arg-type]
            )
            signed = self.account.sign_transaction(transaction)
            tx_hash = await self.w3.eth.send_raw_transaction(signed.raw_transaction)
        except Exception as e:
            logger.error(
                "minter.submission_failed",
                asset_id=asset_id,
                to_address=to_checksum,
                error=str(e),
            )
            if "insufficient funds" in str(e).lower():
                raise TransactionSubmissionError(
                    f"Minting wallet {self.account.address} has insufficient balance for gas"
                ) from e
            raise TransactionSubmissionError(f"safeMint submission failed: {e}") from e

        tx_hash_hex = "0x" + bytes(tx_hash).hex()
        logger.info(
            "minter.transaction_submitted",
            tx_hash=tx_hash_hex,
            asset_id=asset_id,
            to_address=to_checksum,
            mint_param=mint_param,
            nonce=nonce,
        )
        return tx_hash_hex

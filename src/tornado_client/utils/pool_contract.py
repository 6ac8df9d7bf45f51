"""
Calls against the pool instance and proxy contracts.

RPC and transport failures are wrapped into SourceUnavailable here so the
synchronizer and tree service only deal with the client's own error kinds.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

import aiohttp
from hexbytes import HexBytes
from web3.contract import AsyncContract
from web3.contract.async_contract import AsyncContractFunction
from web3.exceptions import TransactionNotFound, Web3Exception
from web3.types import EventData, TxParams, TxReceipt

from ..errors import ReceiptTimeout, SourceUnavailable
from ..models import EventKind, ProofData
from .contract_utility import ContractUtility

logger = logging.getLogger(__name__)

RPC_ERRORS = (Web3Exception, aiohttp.ClientError, OSError)


class PoolContract:
    """Read and write access to one pool instance through its proxy."""

    def __init__(
        self,
        contract_util: ContractUtility,
        instance_address: str,
        proxy_address: str,
        token_address: str | None = None,
    ):
        """
        Initialize the PoolContract.

        Args:
            contract_util: Connection holding the AsyncWeb3 instance
            instance_address: Address of the pool instance (events, roots, nullifiers)
            proxy_address: Address of the proxy that accepts deposits and withdrawals
            token_address: ERC20 token of a token pool, None for native currency pools
        """
        self.contract_util = contract_util
        self.w3 = contract_util.w3
        self.instance = contract_util.contract("TornadoInstance", instance_address)
        self.proxy = contract_util.contract("TornadoProxy", proxy_address)
        self.token = contract_util.contract("ERC20", token_address) if token_address else None

    async def block_number(self) -> int:
        try:
            return await self.w3.eth.block_number
        except RPC_ERRORS as e:
            raise SourceUnavailable(f"Could not fetch the chain head: {e}") from e

    async def get_block_timestamp(self, block_number: int) -> int:
        try:
            block = await self.w3.eth.get_block(block_number)
        except RPC_ERRORS as e:
            raise SourceUnavailable(f"Could not fetch block {block_number}: {e}") from e
        return int(block["timestamp"])

    async def get_events(self, kind: EventKind, from_block: int, to_block: int) -> list[EventData]:
        """
        Fetch the pool's Deposit or Withdrawal logs over an inclusive block range.

        Raises:
            SourceUnavailable: If the RPC node fails the request
        """
        event_obj = getattr(self.instance.events, kind.contract_event_name)
        try:
            return list(await event_obj.get_logs(from_block=from_block, to_block=to_block))
        except RPC_ERRORS as e:
            raise SourceUnavailable(
                f"Could not fetch {kind.value} logs for blocks {from_block}-{to_block}: {e}"
            ) from e

    async def is_known_root(self, root: str) -> bool:
        try:
            return bool(await self.instance.functions.isKnownRoot(root).call())
        except RPC_ERRORS as e:
            raise SourceUnavailable(f"isKnownRoot call failed: {e}") from e

    async def is_spent(self, nullifier_hash: str) -> bool:
        try:
            return bool(await self.instance.functions.isSpent(nullifier_hash).call())
        except RPC_ERRORS as e:
            raise SourceUnavailable(f"isSpent call failed: {e}") from e

    async def get_transaction_receipt(self, tx_hash: str) -> TxReceipt | None:
        """Receipt of a transaction, None while it is not mined."""
        try:
            return await self.w3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            return None
        except RPC_ERRORS as e:
            raise SourceUnavailable(f"Could not fetch receipt of {tx_hash}: {e}") from e

    async def gas_price(self) -> int:
        try:
            return int(await self.w3.eth.gas_price)
        except RPC_ERRORS as e:
            raise SourceUnavailable(f"Could not fetch the gas price: {e}") from e

    async def estimate_gas(self, tx: TxParams) -> int:
        return int(await self.w3.eth.estimate_gas(tx))

    async def get_balance(self, address: str) -> int:
        try:
            return int(await self.w3.eth.get_balance(address))
        except RPC_ERRORS as e:
            raise SourceUnavailable(f"Could not fetch the balance of {address}: {e}") from e

    def _withdraw_args(self, proof_data: ProofData) -> list[Any]:
        root, nullifier_hash, recipient, relayer, fee, refund = proof_data.args
        return [
            self.instance.address,
            HexBytes(proof_data.proof),
            root,
            nullifier_hash,
            self.w3.to_checksum_address(recipient),
            self.w3.to_checksum_address(relayer),
            int(fee, 16),
            int(refund, 16),
        ]

    def withdraw_transaction(self, proof_data: ProofData, sender: str) -> TxParams:
        """Unsigned proxy ``withdraw`` call, used for gas estimation."""
        return {
            "from": sender,
            "to": self.proxy.address,
            "value": proof_data.refund,
            "data": self.proxy.encode_abi("withdraw", args=self._withdraw_args(proof_data)),
        }

    async def _transact(self, function: AsyncContractFunction, value: int, description: str) -> str:
        if self.contract_util.account is None:
            raise ValueError(f"A private key is required to send the {description} transaction")

        tx: TxParams = {"from": self.contract_util.account.address}
        if value:
            tx["value"] = value
        try:
            tx_hash = await function.transact(tx)
        except RPC_ERRORS as e:
            raise SourceUnavailable(f"Could not submit the {description} transaction: {e}") from e

        logger.info(f"Submitted {description} transaction {tx_hash.to_0x_hex()}")
        return tx_hash.to_0x_hex()

    async def send_withdrawal(self, proof_data: ProofData) -> str:
        """
        Send ``withdraw`` to the proxy from the signing account.

        Returns:
            Transaction hash as hex string

        Raises:
            SourceUnavailable: If the transaction could not be submitted
        """
        function = self.proxy.functions.withdraw(*self._withdraw_args(proof_data))
        return await self._transact(function, proof_data.refund, "withdrawal")

    async def send_deposit(self, commitment: str, value: int = 0) -> str:
        """
        Send ``deposit`` to the proxy from the signing account.

        Args:
            commitment: Commitment as 32-byte hex string
            value: Native currency attached, the denomination of a native pool

        Returns:
            Transaction hash as hex string
        """
        function = self.proxy.functions.deposit(self.instance.address, commitment, b"")
        return await self._transact(function, value, "deposit")

    def _require_token(self) -> AsyncContract:
        if self.token is None:
            raise ValueError("A token address is required for token pools (TOKEN_ADDRESS)")
        return self.token

    async def token_allowance(self, owner: str) -> int:
        """Amount of the pool token the proxy may pull from ``owner``."""
        token = self._require_token()
        try:
            return int(await token.functions.allowance(owner, self.proxy.address).call())
        except RPC_ERRORS as e:
            raise SourceUnavailable(f"allowance call failed: {e}") from e

    async def token_balance(self, owner: str) -> int:
        token = self._require_token()
        try:
            return int(await token.functions.balanceOf(owner).call())
        except RPC_ERRORS as e:
            raise SourceUnavailable(f"balanceOf call failed: {e}") from e

    async def send_approve(self, amount: int) -> str:
        """Approve the proxy to pull ``amount`` of the pool token from the signing account."""
        function = self._require_token().functions.approve(self.proxy.address, amount)
        return await self._transact(function, 0, "token approval")

    async def wait_for_receipt(
        self,
        tx_hash: str,
        attempts: int = 60,
        delay: float = 1.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> TxReceipt:
        """
        Wait until a transaction is mined.

        Args:
            tx_hash: Transaction hash
            attempts: Number of receipt lookups
            delay: Seconds between lookups
            sleep: Sleep function awaited between lookups

        Returns:
            The transaction receipt

        Raises:
            ReceiptTimeout: If no mined receipt was seen within ``attempts`` lookups
        """
        for attempt in range(1, attempts + 1):
            receipt = await self.get_transaction_receipt(tx_hash)
            if receipt is not None and receipt.get("blockNumber") is not None:
                if receipt.get("status") == 0:
                    logger.error(f"Transaction {tx_hash} was mined but reverted")
                return receipt
            logger.debug(f"Transaction {tx_hash} not mined yet (attempt {attempt}/{attempts})")
            if attempt < attempts:
                await sleep(delay)

        raise ReceiptTimeout(tx_hash, attempts)

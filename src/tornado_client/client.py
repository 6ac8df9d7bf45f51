"""
Operation context of the tornado client.

This module wires the event cache, the synchronizer, the tree service and the
relay client for one pool instance and exposes the library entry points.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass

import httpx
from web3 import Web3
from web3.types import TxReceipt

from .config import ClientConfig
from .errors import DataCorrupt, LeafNotFound, RootInvalid, TornadoClientError
from .event_store import EventStore
from .event_synchronizer import EventSynchronizer
from .fee_oracle import FeeOracle, GasFeeOracle, from_decimals
from .merkle_tree import HashFunction, MerkleTreeService, keccak_hash_left_right
from .models import (
    DepositEvent,
    DepositResult,
    EventKey,
    EventKind,
    MerkleProof,
    ProofData,
    WithdrawalEvent,
    WithdrawalResult,
)
from .notes import (
    ZERO_ADDRESS,
    Deposit,
    Invoice,
    Note,
    NoteHasher,
    Prover,
    create_note,
    generate_proof,
)
from .relay_client import RelayClient, WithdrawalRequest
from .utils.contract_utility import ContractUtility
from .utils.pool_contract import PoolContract
from .utils.subgraph_client import SubgraphClient

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ComplianceReport:
    """Deposit and, if spent, withdrawal of one note.

    Attributes:
        deposit: The deposit event of the note's commitment
        spent: Whether the note's nullifier is spent on-chain
        withdrawal: The matching withdrawal event, None while unspent
        withdrawal_timestamp: Timestamp of the withdrawal block
        withdrawn_amount: Denomination net of the relay fee, in base units
    """
    deposit: DepositEvent
    spent: bool
    withdrawal: WithdrawalEvent | None = None
    withdrawal_timestamp: int | None = None
    withdrawn_amount: int | None = None


class TornadoClient:
    """
    Client of one pool instance.

    Holds the collaborators every operation needs instead of process-wide
    state; build one per (network, currency, amount).
    """

    def __init__(
        self,
        config: ClientConfig,
        store: EventStore | None = None,
        pool: PoolContract | None = None,
        subgraph: SubgraphClient | None = None,
        fee_oracle: FeeOracle | None = None,
        hash_fn: HashFunction = keccak_hash_left_right,
        relay_transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the TornadoClient.

        Args:
            config: Client configuration
            store: Event cache (defaults to ``config.sync.cache_dir``)
            pool: Pool contract access (defaults to an RPC connection from ``config``)
            subgraph: Subgraph client (defaults to ``config.network.subgraph_url`` if set)
            fee_oracle: Relay fee oracle (defaults to the RPC gas price oracle)
            hash_fn: Two-to-one hash of the pool's Merkle tree
            relay_transport: HTTP transport override for the relay
            sleep: Sleep function used while polling
            clock: Monotonic clock for the relay job deadline
        """
        self.config = config
        self.store = store or EventStore(config.sync.cache_dir)

        if pool is None:
            contract_util = ContractUtility(
                rpc_url=config.network.rpc_url,
                secret=config.private_key or "",
                request_timeout=config.sync.request_timeout,
            )
            pool = PoolContract(
                contract_util,
                config.instance.address,
                config.network.proxy_address,
                token_address=config.instance.token_address,
            )
        self.pool = pool

        if subgraph is None and config.network.subgraph_url:
            subgraph = SubgraphClient(
                config.network.subgraph_url,
                timeout=config.sync.request_timeout,
                proxy=config.relay.proxy_url,
            )
        self.subgraph = subgraph

        self.synchronizer = EventSynchronizer(self.store, self.pool, self.subgraph, config)
        self.tree_service = MerkleTreeService(self.pool, config.merkle_tree_height, hash_fn)
        self.fee_oracle = fee_oracle or GasFeeOracle(self.pool)
        self.relay_transport = relay_transport
        self.sleep = sleep
        self.clock = clock

    def key(self, kind: EventKind) -> EventKey:
        return EventKey(
            network=self.config.network.name,
            kind=kind,
            currency=self.config.instance.currency,
            amount=self.config.instance.amount,
        )

    async def synchronize(self, kind: EventKind = EventKind.DEPOSIT, local_only: bool = False) -> int:
        """Bring the cache of ``kind`` events up to the chain head.

        Returns:
            Block number the cache is synchronized through
        """
        try:
            return await self.synchronizer.synchronize(self.key(kind), local_only=local_only)
        except TornadoClientError as e:
            logger.error(f"{type(e).__name__}: {e}")
            raise

    async def build_merkle_proof(self, deposit: Deposit) -> MerkleProof:
        """
        Synchronize deposits and compute the inclusion proof of a deposit.

        A commitment not found after the first pass triggers one more
        synchronization before LeafNotFound is raised. A local root the
        contract does not know, or an inconsistent cache, resets and rebuilds
        the deposit cache once.

        Raises:
            RootInvalid: If the rebuilt cache still has an unknown root
            NullifierSpent: If the note was already withdrawn
            LeafNotFound: If the commitment is not among the deposits
        """
        await self.synchronize(EventKind.DEPOSIT)
        try:
            try:
                return await self._merkle_proof(deposit)
            except LeafNotFound:
                logger.info(f"Deposit {deposit.commitment_hex} not cached yet, synchronizing again")
                await self.synchronize(EventKind.DEPOSIT)
                return await self._merkle_proof(deposit)
            except (RootInvalid, DataCorrupt) as e:
                logger.warning(f"{e}, rebuilding the deposit cache")
                await self.repair_cache()
                return await self._merkle_proof(deposit)
        except TornadoClientError as e:
            logger.error(f"{type(e).__name__}: {e}")
            raise

    async def _merkle_proof(self, deposit: Deposit) -> MerkleProof:
        return await self.tree_service.merkle_proof(
            self.store.load_events(self.key(EventKind.DEPOSIT)),
            deposit.commitment,
            deposit.nullifier_hash,
        )

    def _validate_withdrawal(self, recipient: str, refund: int) -> None:
        if not Web3.is_address(recipient):
            raise ValueError(f"Invalid recipient address: {recipient}")
        if refund < 0:
            raise ValueError(f"Refund must be non-negative, got {refund}")
        if refund and self.config.is_native_currency:
            raise ValueError(
                f"Cannot send non-zero refund for {self.config.instance.currency.upper()} withdrawal"
            )

    async def generate_proof(
        self,
        deposit: Deposit,
        merkle_proof: MerkleProof,
        prover: Prover,
        recipient: str,
        relayer: str = ZERO_ADDRESS,
        fee: int = 0,
        refund: int = 0,
    ) -> ProofData:
        """Prove a withdrawal of ``deposit`` against an inclusion proof."""
        self._validate_withdrawal(recipient, refund)
        return await generate_proof(deposit, merkle_proof, prover, recipient, relayer, fee, refund)

    async def withdraw_via_relay(
        self,
        deposit: Deposit,
        recipient: str,
        prover: Prover,
        refund: int = 0,
    ) -> WithdrawalResult:
        """
        Withdraw a deposit to ``recipient`` through the configured relay.

        Raises:
            ValueError: If the recipient or refund is invalid, or no relay is configured
            RelayNetworkMismatch: If the relay serves another network
            RelayRejected: If the relay refuses or fails the job
            RelayJobTimeout: If the job does not finish before the deadline
            ReceiptTimeout: If the transaction is not seen mined
        """
        self._validate_withdrawal(recipient, refund)
        relay = RelayClient(
            self.config,
            self.pool,
            self.fee_oracle,
            transport=self.relay_transport,
            sleep=self.sleep,
            clock=self.clock,
        )

        merkle_proof = await self.build_merkle_proof(deposit)
        request = WithdrawalRequest(deposit=deposit, recipient=recipient, refund=refund)
        try:
            result = await relay.withdraw(request, merkle_proof, prover)
        except TornadoClientError as e:
            logger.error(f"{type(e).__name__}: {e}")
            raise

        logger.info(f"Withdrawal mined in block {result.block_number}: {result.tx_hash}")
        return result

    async def withdraw_direct(
        self,
        deposit: Deposit,
        recipient: str,
        prover: Prover,
        refund: int = 0,
    ) -> WithdrawalResult:
        """
        Withdraw a deposit by sending the transaction from the configured key.

        The recipient must be the signing account itself and the account must
        hold native currency for gas.

        Raises:
            ValueError: If no key is configured, the recipient differs from the
                signing account, or the account has no balance
            ReceiptTimeout: If the transaction is not seen mined
        """
        self._validate_withdrawal(recipient, refund)
        account = self.pool.contract_util.account
        if account is None:
            raise ValueError("PRIVATE_KEY is required for withdrawals without a relay")
        if recipient.lower() != account.address.lower():
            raise ValueError(
                "Withdrawal recipient mismatches with the account of the provided private key"
            )
        if await self.pool.get_balance(account.address) == 0:
            raise ValueError(
                "You have 0 balance, make sure to fund the account by withdrawing through a relay first"
            )

        merkle_proof = await self.build_merkle_proof(deposit)
        proof_data = await generate_proof(deposit, merkle_proof, prover, recipient, refund=refund)

        logger.info("Submitting withdraw transaction")
        tx_hash = await self.pool.send_withdrawal(proof_data)
        receipt = await self._wait_for_receipt(tx_hash)
        return WithdrawalResult(tx_hash=tx_hash, block_number=int(receipt["blockNumber"]))

    async def _wait_for_receipt(self, tx_hash: str) -> TxReceipt:
        return await self.pool.wait_for_receipt(
            tx_hash,
            attempts=self.config.relay.receipt_attempts,
            delay=self.config.relay.receipt_delay,
            sleep=self.sleep,
        )

    def create_note(self, hasher: NoteHasher) -> Note:
        """Generate a note for a new deposit into this instance."""
        instance = self.config.instance
        return create_note(instance.currency, instance.amount, self.config.network.net_id, hasher)

    async def deposit(self, commitment: str) -> DepositResult:
        """
        Deposit the instance's denomination for ``commitment`` from the configured key.

        Token pools are approved for the denomination first when the current
        allowance of the proxy is lower.

        Raises:
            ValueError: If no key is configured or the account cannot cover the denomination
            ReceiptTimeout: If a transaction is not seen mined
        """
        account = self.pool.contract_util.account
        if account is None:
            raise ValueError("PRIVATE_KEY is required to make a deposit")

        instance = self.config.instance
        denomination = from_decimals(instance.amount, instance.decimals)
        logger.info(f"Depositing {instance} from {account.address} for commitment {commitment}")

        if self.config.is_native_currency:
            balance = await self.pool.get_balance(account.address)
            if balance < denomination:
                raise ValueError(f"You do not have enough {instance.currency.upper()} for this deposit")
            tx_hash = await self.pool.send_deposit(commitment, value=denomination)
        else:
            balance = await self.pool.token_balance(account.address)
            if balance < denomination:
                raise ValueError(f"You do not have enough {instance.currency.upper()} for this deposit")
            allowance = await self.pool.token_allowance(account.address)
            if allowance < denomination:
                logger.info(f"Approving {instance.currency.upper()} for deposit, allowance was {allowance}")
                await self._wait_for_receipt(await self.pool.send_approve(denomination))
            tx_hash = await self.pool.send_deposit(commitment)

        receipt = await self._wait_for_receipt(tx_hash)
        logger.info(f"Deposit mined in block {receipt['blockNumber']}: {tx_hash}")
        return DepositResult(tx_hash=tx_hash, block_number=int(receipt["blockNumber"]), commitment=commitment)

    async def deposit_invoice(self, invoice: Invoice) -> DepositResult:
        """
        Pay a deposit invoice created for this instance.

        Raises:
            ValueError: If the invoice is for another currency, amount or network
        """
        instance = self.config.instance
        if invoice.net_id != self.config.network.net_id:
            raise ValueError(
                f"Invoice is for network {invoice.net_id}, connected to {self.config.network.net_id}"
            )
        if invoice.currency != instance.currency or invoice.amount != instance.amount:
            raise ValueError(
                f"Invoice is for {invoice.amount} {invoice.currency.upper()}, instance is {instance}"
            )
        return await self.deposit(invoice.commitment)

    async def update_cache(self) -> None:
        """Synchronize deposits, rebuild them if their root is unknown, then synchronize withdrawals."""
        await self.synchronize(EventKind.DEPOSIT)
        await self.repair_cache()
        await self.synchronize(EventKind.WITHDRAWAL)

    async def check_cache_validity(self) -> bool:
        """Whether the root of the cached deposits is known to the contract."""
        key = self.key(EventKind.DEPOSIT)
        try:
            snapshot = self.tree_service.build_tree(self.store.load_events(key))
        except DataCorrupt as e:
            logger.error(f"{type(e).__name__}: {e}")
            return False

        valid = await self.tree_service.validate_root(snapshot.root)
        if valid:
            logger.info(f"Cache for {key} is valid, root {snapshot.root_hex}")
        else:
            logger.warning(f"Cache for {key} has unknown root {snapshot.root_hex}")
        return valid

    async def repair_cache(self) -> bool:
        """
        Reset and resynchronize the deposit cache if its root is invalid.

        Returns:
            True if the cache was rebuilt, False if it was already valid

        Raises:
            RootInvalid: If the rebuilt cache still has an unknown root
        """
        if await self.check_cache_validity():
            return False

        key = self.key(EventKind.DEPOSIT)
        self.store.reset(key)
        await self.synchronize(EventKind.DEPOSIT)

        snapshot = self.tree_service.build_tree(self.store.load_events(key))
        if not await self.tree_service.validate_root(snapshot.root):
            e = RootInvalid(snapshot.root_hex)
            logger.error(f"{type(e).__name__}: {e}")
            raise e
        return True

    async def compliance_report(self, deposit: Deposit) -> ComplianceReport:
        """
        Find the deposit of a note and, if spent, its withdrawal.

        Raises:
            LeafNotFound: If the note's commitment was never deposited
            DataCorrupt: If the note is spent but no withdrawal event is cached
        """
        await self.synchronize(EventKind.DEPOSIT)
        deposit_event = next(
            (
                event for event in self.store.load_events(self.key(EventKind.DEPOSIT))
                if isinstance(event, DepositEvent) and event.commitment == deposit.commitment_hex
            ),
            None,
        )
        if deposit_event is None:
            raise LeafNotFound(deposit.commitment_hex)

        if not await self.pool.is_spent(deposit.nullifier_hex):
            return ComplianceReport(deposit=deposit_event, spent=False)

        await self.synchronize(EventKind.WITHDRAWAL)
        withdrawal_event = next(
            (
                event for event in self.store.load_events(self.key(EventKind.WITHDRAWAL))
                if isinstance(event, WithdrawalEvent) and event.nullifier_hash == deposit.nullifier_hex
            ),
            None,
        )
        if withdrawal_event is None:
            raise DataCorrupt(f"No withdrawal event cached for spent nullifier {deposit.nullifier_hex}")

        denomination = from_decimals(self.config.instance.amount, self.config.instance.decimals)
        return ComplianceReport(
            deposit=deposit_event,
            spent=True,
            withdrawal=withdrawal_event,
            withdrawal_timestamp=await self.pool.get_block_timestamp(withdrawal_event.block_number),
            withdrawn_amount=denomination - withdrawal_event.fee,
        )


async def update_all_caches(clients: Iterable[TornadoClient]) -> dict[str, bool]:
    """
    Update the caches of several instances one after another.

    An instance that fails is logged and skipped so the rest are still swept.

    Returns:
        Whether each instance, keyed by its name, was updated
    """
    results: dict[str, bool] = {}
    for client in clients:
        name = f"{client.config.network.name} {client.config.instance}"
        logger.info(f"Updating cache of {name}")
        try:
            await client.update_cache()
        except TornadoClientError as e:
            logger.error(f"Cache update of {name} failed: {type(e).__name__}: {e}")
            results[name] = False
        else:
            results[name] = True

    failed = [name for name, ok in results.items() if not ok]
    if failed:
        logger.warning(f"Caches not updated: {', '.join(failed)}")
    return results

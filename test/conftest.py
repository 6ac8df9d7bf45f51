"""Shared fixtures: an in-memory pool contract, stub collaborators and configs."""

from types import SimpleNamespace

import pytest
from eth_account import Account
from web3 import Web3

from tornado_client.config import ClientConfig, InstanceConfig, NetworkConfig, RelayConfig, SyncConfig
from tornado_client.errors import SourceUnavailable
from tornado_client.event_store import EventStore
from tornado_client.merkle_tree import FIELD_SIZE, MerkleTree
from tornado_client.models import EventKind, ProofData, to_hex32
from tornado_client.notes import CircuitInput, Deposit
from tornado_client.utils.pool_contract import PoolContract

TREE_HEIGHT = 8
INSTANCE_ADDRESS = "0x12d66f87a04a9e220743712ce6d9bb1b5616b8fc"
PROXY_ADDRESS = "0xd90e2f925da726b50c4ed8d0fb90ad053324f31b"
RELAYER_ADDRESS = "0x4750bcfcc340aa4b31be7e71fa072716d28c29c5"
RECIPIENT_ADDRESS = "0x7e5f4552091a69125d5dfcb7b8c2659029395bdf"
TEST_PRIVATE_KEY = "0x" + "1" * 64


def deposit_log(block_number: int, leaf_index: int, commitment: int, timestamp: int = 1_700_000_000) -> dict:
    return {
        "blockNumber": block_number,
        "transactionHash": Web3.keccak(text=f"deposit-{leaf_index}"),
        "args": {
            "commitment": commitment.to_bytes(32, "big"),
            "leafIndex": leaf_index,
            "timestamp": timestamp + block_number,
        },
    }


def withdrawal_log(block_number: int, nullifier_hash: int, to: str, fee: int) -> dict:
    return {
        "blockNumber": block_number,
        "transactionHash": Web3.keccak(text=f"withdrawal-{nullifier_hash}"),
        "args": {
            "to": to,
            "nullifierHash": nullifier_hash.to_bytes(32, "big"),
            "relayer": RELAYER_ADDRESS,
            "fee": fee,
        },
    }


class KeccakNoteHasher:
    """Stand-in for the commitment hash of the canonical pools."""

    def hash(self, data: bytes) -> int:
        return int.from_bytes(Web3.keccak(data), "big") % FIELD_SIZE


class FakeProver:
    def __init__(self):
        self.calls: list[CircuitInput] = []

    async def prove(self, circuit_input: CircuitInput) -> str:
        self.calls.append(circuit_input)
        return "0x" + "ab" * 256


class FakePool(PoolContract):
    """In-memory pool contract with a root history like the real contract."""

    def __init__(self, height: int = TREE_HEIGHT, head: int = 0):
        self.height = height
        self.head = head
        self.logs: dict[EventKind, list[dict]] = {EventKind.DEPOSIT: [], EventKind.WITHDRAWAL: []}
        self.commitments: list[int] = []
        self.known_roots = {to_hex32(MerkleTree(height).root())}
        self.spent: set[str] = set()
        self.receipts: dict[str, dict] = {}
        self.failing_ranges: set[tuple[int, int]] = set()
        self.get_events_calls: list[tuple[EventKind, int, int]] = []
        self.sent: list[ProofData] = []
        self.balance = 10 ** 18
        self.deposits_sent: list[tuple[str, int]] = []
        self.allowance = 0
        self.token_funds = 0
        self.approvals: list[int] = []
        self.contract_util = SimpleNamespace(account=None)

    def add_deposit(self, commitment: int, block_number: int | None = None) -> int:
        if block_number is not None:
            self.head = max(self.head, block_number)
        leaf_index = len(self.commitments)
        self.logs[EventKind.DEPOSIT].append(deposit_log(self.head, leaf_index, commitment))
        self.commitments.append(commitment)
        self.known_roots.add(to_hex32(MerkleTree(self.height, self.commitments).root()))
        return leaf_index

    def add_withdrawal(self, nullifier_hash: int, to: str, fee: int, block_number: int | None = None) -> None:
        if block_number is not None:
            self.head = max(self.head, block_number)
        self.logs[EventKind.WITHDRAWAL].append(withdrawal_log(self.head, nullifier_hash, to, fee))
        self.spent.add(to_hex32(nullifier_hash))

    async def block_number(self) -> int:
        return self.head

    async def get_block_timestamp(self, block_number: int) -> int:
        return 1_700_000_000 + block_number

    async def get_events(self, kind, from_block, to_block):
        self.get_events_calls.append((kind, from_block, to_block))
        if (from_block, to_block) in self.failing_ranges:
            raise SourceUnavailable(f"RPC down for {from_block}-{to_block}")
        return [log for log in self.logs[kind] if from_block <= log["blockNumber"] <= to_block]

    async def is_known_root(self, root: str) -> bool:
        return root in self.known_roots

    async def is_spent(self, nullifier_hash: str) -> bool:
        return nullifier_hash in self.spent

    async def get_transaction_receipt(self, tx_hash: str):
        return self.receipts.get(tx_hash)

    async def gas_price(self) -> int:
        return 20 * 10 ** 9

    async def estimate_gas(self, tx) -> int:
        return 400_000

    async def get_balance(self, address: str) -> int:
        return self.balance

    def withdraw_transaction(self, proof_data: ProofData, sender: str):
        return {"from": sender, "to": PROXY_ADDRESS, "value": proof_data.refund, "data": "0x"}

    async def send_withdrawal(self, proof_data: ProofData) -> str:
        self.sent.append(proof_data)
        tx_hash = "0x" + "cd" * 32
        self.receipts[tx_hash] = {"blockNumber": self.head + 1, "status": 1}
        return tx_hash

    async def send_deposit(self, commitment: str, value: int = 0) -> str:
        self.deposits_sent.append((commitment, value))
        self.add_deposit(int(commitment, 16), self.head + 1)
        tx_hash = "0x" + "de" * 32
        self.receipts[tx_hash] = {"blockNumber": self.head, "status": 1}
        return tx_hash

    async def token_allowance(self, owner: str) -> int:
        return self.allowance

    async def token_balance(self, owner: str) -> int:
        return self.token_funds

    async def send_approve(self, amount: int) -> str:
        self.approvals.append(amount)
        self.allowance = amount
        tx_hash = "0x" + "a1" * 32
        self.receipts[tx_hash] = {"blockNumber": self.head, "status": 1}
        return tx_hash


def make_config(
    cache_dir,
    subgraph_url: str | None = None,
    deployed_block: int = 0,
    block_chunk_size: int = 10_000,
    page_size: int = 1000,
    network: NetworkConfig | None = None,
    instance: InstanceConfig | None = None,
    relay: RelayConfig | None = None,
    **overrides,
) -> ClientConfig:
    network = network or NetworkConfig(
        rpc_url="https://rpc.example.org",
        net_id=1,
        proxy_address=PROXY_ADDRESS,
        subgraph_url=subgraph_url,
    )
    instance = instance or InstanceConfig(
        currency="eth",
        amount="0.1",
        address=INSTANCE_ADDRESS,
        deployed_block=deployed_block,
    )
    sync = SyncConfig(
        cache_dir=str(cache_dir),
        block_chunk_size=block_chunk_size,
        page_size=page_size,
    )
    relay = relay or RelayConfig(url="https://relay.example.org")
    return ClientConfig(
        network=network,
        instance=instance,
        sync=sync,
        relay=relay,
        merkle_tree_height=TREE_HEIGHT,
        **overrides,
    )


@pytest.fixture
def config(tmp_path) -> ClientConfig:
    return make_config(tmp_path / "cache")


@pytest.fixture
def store(config) -> EventStore:
    return EventStore(config.sync.cache_dir)


@pytest.fixture
def pool() -> FakePool:
    return FakePool()


@pytest.fixture
def hasher() -> KeccakNoteHasher:
    return KeccakNoteHasher()


@pytest.fixture
def prover() -> FakeProver:
    return FakeProver()


@pytest.fixture
def note_deposit(hasher) -> Deposit:
    return Deposit.create(nullifier=123456789, secret=987654321, hasher=hasher)


@pytest.fixture
def signer():
    return Account.from_key(TEST_PRIVATE_KEY)

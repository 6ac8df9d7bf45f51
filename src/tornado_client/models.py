"""
Shared data models for the tornado client.

This module contains the cached event records, the cache key, the relay job
mirror and the proof-related value objects passed between components.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from web3 import Web3

from .errors import DataCorrupt


class EventKind(str, Enum):
    """Pool contract event kinds mirrored in the cache."""
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"

    @property
    def contract_event_name(self) -> str:
        return self.value.capitalize()


def to_hex32(value: int | str | bytes) -> str:
    """Normalize a field element to a 0x-prefixed, 32-byte lowercase hex string."""
    match value:
        case bytes():
            number = int.from_bytes(value, "big")
        case str():
            number = int(value, 16) if value.startswith("0x") else int(value)
        case _:
            number = int(value)
    return "0x" + format(number, "064x")


@dataclass(frozen=True, slots=True)
class EventKey:
    """Addresses one cache file: (network, event kind, currency, denomination).

    Attributes:
        network: Lowercase network name, used as cache sub-directory
        kind: Deposit or withdrawal events
        currency: Lowercase currency symbol of the pool instance
        amount: Denomination of the pool instance, as written in notes (e.g. "0.1")
    """
    network: str
    kind: EventKind
    currency: str
    amount: str

    def __post_init__(self) -> None:
        object.__setattr__(self, "network", self.network.lower())
        object.__setattr__(self, "currency", self.currency.lower())
        object.__setattr__(self, "kind", EventKind(self.kind))

    @property
    def file_name(self) -> str:
        return f"{self.kind.value}s_{self.currency}_{self.amount}.json"

    def __str__(self) -> str:
        return f"{self.network}/{self.kind.value}/{self.currency}/{self.amount}"


@dataclass(frozen=True, slots=True)
class DepositEvent:
    """A Deposit event of the pool contract.

    Attributes:
        block_number: Block the deposit was mined in
        transaction_hash: Hash of the deposit transaction
        commitment: Commitment as 32-byte hex string
        leaf_index: Tree position assigned by the contract at emission
        timestamp: Block timestamp emitted with the event
    """
    block_number: int
    transaction_hash: str
    commitment: str
    leaf_index: int
    timestamp: int

    @classmethod
    def from_log(cls, event: Mapping[str, Any]) -> "DepositEvent":
        args: Mapping[str, Any] = event["args"]
        return cls(
            block_number=int(event["blockNumber"]),
            transaction_hash=Web3.to_hex(event["transactionHash"]),
            commitment=to_hex32(args["commitment"]),
            leaf_index=int(args["leafIndex"]),
            timestamp=int(args["timestamp"]),
        )

    @classmethod
    def from_subgraph(cls, record: Mapping[str, Any]) -> "DepositEvent":
        return cls(
            block_number=int(record["blockNumber"]),
            transaction_hash=record["transactionHash"],
            commitment=to_hex32(record["commitment"]),
            leaf_index=int(record["index"]),
            timestamp=int(record["timestamp"]),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "blockNumber": self.block_number,
            "transactionHash": self.transaction_hash,
            "commitment": self.commitment,
            "leafIndex": self.leaf_index,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True, slots=True)
class WithdrawalEvent:
    """A Withdrawal event of the pool contract.

    Attributes:
        block_number: Block the withdrawal was mined in
        transaction_hash: Hash of the withdrawal transaction
        nullifier_hash: Nullifier hash as 32-byte hex string
        to: Recipient address
        fee: Relay fee in the smallest unit of the pool currency
    """
    block_number: int
    transaction_hash: str
    nullifier_hash: str
    to: str
    fee: int

    @classmethod
    def from_log(cls, event: Mapping[str, Any]) -> "WithdrawalEvent":
        args: Mapping[str, Any] = event["args"]
        return cls(
            block_number=int(event["blockNumber"]),
            transaction_hash=Web3.to_hex(event["transactionHash"]),
            nullifier_hash=to_hex32(args["nullifierHash"]),
            to=Web3.to_checksum_address(args["to"]),
            fee=int(args["fee"]),
        )

    @classmethod
    def from_subgraph(cls, record: Mapping[str, Any]) -> "WithdrawalEvent":
        return cls(
            block_number=int(record["blockNumber"]),
            transaction_hash=record["transactionHash"],
            nullifier_hash=to_hex32(record["nullifier"]),
            to=Web3.to_checksum_address(record["to"]),
            fee=int(record["fee"]),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "blockNumber": self.block_number,
            "transactionHash": self.transaction_hash,
            "nullifierHash": self.nullifier_hash,
            "to": self.to,
            "fee": str(self.fee),
        }


@dataclass(frozen=True, slots=True)
class ZeroEvent:
    """Sentinel marking "synchronized through this block"."""
    block_number: int
    transaction_hash: None = None

    def to_dict(self) -> dict[str, Any]:
        return {"blockNumber": self.block_number, "transactionHash": None}


Event = DepositEvent | WithdrawalEvent | ZeroEvent


def is_zero_event(event: Event) -> bool:
    return event.transaction_hash is None


def filter_zero_events(events: list[Event]) -> list[Event]:
    """Strip sentinel records; they carry no transaction hash."""
    return [event for event in events if not is_zero_event(event)]


def event_from_record(record: Any) -> Event:
    """Map one cache file record back to its event type.

    Raises:
        DataCorrupt: If the record does not match any known event layout
    """
    if not isinstance(record, Mapping):
        raise DataCorrupt(f"Cache record is not an object: {record!r}")
    try:
        if record.get("transactionHash") is None:
            return ZeroEvent(block_number=int(record["blockNumber"]))
        if "commitment" in record:
            return DepositEvent(
                block_number=int(record["blockNumber"]),
                transaction_hash=record["transactionHash"],
                commitment=to_hex32(record["commitment"]),
                leaf_index=int(record["leafIndex"]),
                timestamp=int(record["timestamp"]),
            )
        if "nullifierHash" in record:
            return WithdrawalEvent(
                block_number=int(record["blockNumber"]),
                transaction_hash=record["transactionHash"],
                nullifier_hash=to_hex32(record["nullifierHash"]),
                to=record["to"],
                fee=int(record["fee"]),
            )
    except (KeyError, TypeError, ValueError) as e:
        raise DataCorrupt(f"Malformed cache record {record!r}: {e}") from e
    raise DataCorrupt(f"Unknown cache record layout: {record!r}")


class JobStatus(str, Enum):
    """Relay job statuses. Only CONFIRMED and FAILED are terminal."""
    QUEUED = "QUEUED"
    ACCEPTED = "ACCEPTED"
    SENT = "SENT"
    MINED = "MINED"
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    FAILED = "FAILED"


@dataclass(frozen=True, slots=True)
class RelayJob:
    """In-memory mirror of a relay job resource."""
    id: str
    status: str
    tx_hash: str | None = None
    confirmations: int = 0
    failed_reason: str | None = None

    @classmethod
    def from_response(cls, job_id: str, data: Mapping[str, Any]) -> "RelayJob":
        return cls(
            id=job_id,
            status=str(data.get("status", "")),
            tx_hash=data.get("txHash") or data.get("transactionHash"),
            confirmations=int(data.get("confirmations") or 0),
            failed_reason=data.get("failedReason"),
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in (JobStatus.CONFIRMED, JobStatus.FAILED)


@dataclass(frozen=True, slots=True)
class RelayerStatus:
    """Relay /status payload.

    Attributes:
        reward_account: Address the relay wants its fee paid to
        net_id: Network the relay serves, or "*" for any network
        service_fee_percent: Relay service fee as percent of the withdrawn amount
        prices: Token prices in the native currency, keyed by lowercase symbol
    """
    reward_account: str
    net_id: int | str
    service_fee_percent: float
    prices: dict[str, int] = field(default_factory=dict)

    @classmethod
    def from_response(cls, data: Mapping[str, Any]) -> "RelayerStatus":
        net_id = data["netId"]
        fee_percent = data.get("tornadoServiceFee", data.get("serviceFeePercent", 0))
        prices = data.get("ethPrices", data.get("assetPrices")) or {}
        return cls(
            reward_account=Web3.to_checksum_address(data["rewardAccount"]),
            net_id=net_id if net_id == "*" else int(net_id),
            service_fee_percent=float(fee_percent),
            prices={str(k).lower(): int(v) for k, v in prices.items()},
        )


@dataclass(frozen=True, slots=True)
class MerkleProof:
    """Inclusion proof of one commitment, private input to the prover."""
    root: int
    path_elements: list[int]
    path_indices: list[int]
    leaf_index: int

    @property
    def root_hex(self) -> str:
        return to_hex32(self.root)


@dataclass(frozen=True, slots=True)
class ProofData:
    """Zero-knowledge proof plus the six public withdrawal arguments.

    ``args`` is ``[root, nullifierHash, recipient, relayer, fee, refund]``.
    """
    proof: str
    args: list[str]

    @property
    def refund(self) -> int:
        return int(self.args[5], 16)


@dataclass(frozen=True, slots=True)
class WithdrawalResult:
    """Outcome of a mined withdrawal."""
    tx_hash: str
    block_number: int
    fee: int = 0
    job_id: str | None = None


@dataclass(frozen=True, slots=True)
class DepositResult:
    """Outcome of a mined deposit."""
    tx_hash: str
    block_number: int
    commitment: str

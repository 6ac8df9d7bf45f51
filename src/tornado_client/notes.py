"""
Deposit notes, invoices and the interfaces of the cryptographic collaborators.

A note ``tornado-<currency>-<amount>-<netId>-0x<hex>`` carries the 62-byte
preimage of a deposit: a 31-byte nullifier followed by a 31-byte secret, both
little-endian. Commitment and nullifier hash are derived from it by an
injected NoteHasher; proofs are produced by an injected Prover.
"""

import logging
import re
import secrets
from dataclasses import dataclass
from typing import Any, Protocol

from .models import MerkleProof, ProofData, to_hex32

logger = logging.getLogger(__name__)

ZERO_ADDRESS = "0x" + "0" * 40

NOTE_REGEX = re.compile(
    r"tornado-(?P<currency>\w+)-(?P<amount>[\d.]+)-(?P<net_id>\d+)-0x(?P<note>[0-9a-fA-F]{124})"
)
INVOICE_REGEX = re.compile(
    r"tornadoInvoice-(?P<currency>\w+)-(?P<amount>[\d.]+)-(?P<net_id>\d+)-0x(?P<commitment>[0-9a-fA-F]{64})"
)

PREIMAGE_PART_BYTES = 31


class NoteHasher(Protocol):
    """Hash used for commitments and nullifier hashes (Pedersen on the canonical pools)."""

    def hash(self, data: bytes) -> int:
        ...


@dataclass(frozen=True, slots=True)
class CircuitInput:
    """Public and private inputs of the withdrawal circuit."""
    root: int
    nullifier_hash: int
    recipient: str
    relayer: str
    fee: int
    refund: int
    nullifier: int
    secret: int
    path_elements: list[int]
    path_indices: list[int]

    def to_dict(self) -> dict[str, Any]:
        return {
            "root": self.root,
            "nullifierHash": self.nullifier_hash,
            "recipient": int(self.recipient, 16),
            "relayer": int(self.relayer, 16),
            "fee": self.fee,
            "refund": self.refund,
            "nullifier": self.nullifier,
            "secret": self.secret,
            "pathElements": self.path_elements,
            "pathIndices": self.path_indices,
        }


class Prover(Protocol):
    """Zero-knowledge proving engine. Returns the proof as 0x-prefixed hex."""

    async def prove(self, circuit_input: CircuitInput) -> str:
        ...


@dataclass(frozen=True, slots=True)
class Deposit:
    """Secret material of one deposit and the values derived from it."""
    nullifier: int
    secret: int
    commitment: int
    nullifier_hash: int

    @classmethod
    def create(cls, nullifier: int, secret: int, hasher: NoteHasher) -> "Deposit":
        nullifier_bytes = nullifier.to_bytes(PREIMAGE_PART_BYTES, "little")
        preimage = nullifier_bytes + secret.to_bytes(PREIMAGE_PART_BYTES, "little")
        return cls(
            nullifier=nullifier,
            secret=secret,
            commitment=hasher.hash(preimage),
            nullifier_hash=hasher.hash(nullifier_bytes),
        )

    @classmethod
    def generate(cls, hasher: NoteHasher) -> "Deposit":
        """A deposit with a fresh random 31-byte nullifier and secret."""
        return cls.create(
            nullifier=secrets.randbits(PREIMAGE_PART_BYTES * 8),
            secret=secrets.randbits(PREIMAGE_PART_BYTES * 8),
            hasher=hasher,
        )

    @property
    def preimage(self) -> bytes:
        return (
            self.nullifier.to_bytes(PREIMAGE_PART_BYTES, "little")
            + self.secret.to_bytes(PREIMAGE_PART_BYTES, "little")
        )

    @property
    def commitment_hex(self) -> str:
        return to_hex32(self.commitment)

    @property
    def nullifier_hex(self) -> str:
        return to_hex32(self.nullifier_hash)


@dataclass(frozen=True, slots=True)
class Note:
    """A parsed deposit note."""
    currency: str
    amount: str
    net_id: int
    deposit: Deposit

    def __str__(self) -> str:
        return f"tornado-{self.currency}-{self.amount}-{self.net_id}-0x{self.deposit.preimage.hex()}"

    @property
    def invoice(self) -> "Invoice":
        """The invoice anyone can deposit for this note with."""
        return Invoice(
            currency=self.currency,
            amount=self.amount,
            net_id=self.net_id,
            commitment=self.deposit.commitment_hex,
        )


@dataclass(frozen=True, slots=True)
class Invoice:
    """A parsed deposit invoice: the commitment without its secret material."""
    currency: str
    amount: str
    net_id: int
    commitment: str

    def __str__(self) -> str:
        return f"tornadoInvoice-{self.currency}-{self.amount}-{self.net_id}-{self.commitment}"


def create_note(currency: str, amount: str, net_id: int, hasher: NoteHasher) -> Note:
    """
    Create a note for a new deposit.

    The note string is the only way to withdraw the deposit later; its invoice
    carries just the commitment and can be handed to whoever pays the deposit.
    """
    note = Note(currency=currency.lower(), amount=amount, net_id=net_id, deposit=Deposit.generate(hasher))
    logger.info(f"Your note: {note}")
    logger.info(f"Your invoice for deposit: {note.invoice}")
    return note


def parse_note(note_string: str, hasher: NoteHasher) -> Note:
    """
    Parse a deposit note.

    Args:
        note_string: Note in the ``tornado-<currency>-<amount>-<netId>-0x<hex>`` format
        hasher: Hash deriving the commitment and the nullifier hash

    Returns:
        The parsed note

    Raises:
        ValueError: If the string is not a note
    """
    match = NOTE_REGEX.search(note_string)
    if not match:
        raise ValueError("The note has invalid format")

    buf = bytes.fromhex(match["note"])
    nullifier = int.from_bytes(buf[:PREIMAGE_PART_BYTES], "little")
    secret = int.from_bytes(buf[PREIMAGE_PART_BYTES:2 * PREIMAGE_PART_BYTES], "little")
    return Note(
        currency=match["currency"].lower(),
        amount=match["amount"],
        net_id=int(match["net_id"]),
        deposit=Deposit.create(nullifier, secret, hasher),
    )


def parse_invoice(invoice_string: str) -> Invoice:
    """Parse a deposit invoice.

    Raises:
        ValueError: If the string is not an invoice
    """
    match = INVOICE_REGEX.search(invoice_string)
    if not match:
        raise ValueError("The invoice has invalid format")

    return Invoice(
        currency=match["currency"].lower(),
        amount=match["amount"],
        net_id=int(match["net_id"]),
        commitment="0x" + match["commitment"].lower(),
    )


def _to_hex(value: int, length: int = 32) -> str:
    return "0x" + format(value, f"0{length * 2}x")


async def generate_proof(
    deposit: Deposit,
    merkle_proof: MerkleProof,
    prover: Prover,
    recipient: str,
    relayer: str = ZERO_ADDRESS,
    fee: int = 0,
    refund: int = 0,
) -> ProofData:
    """
    Prove a withdrawal of ``deposit`` and encode its public arguments.

    Args:
        deposit: Deposit being withdrawn
        merkle_proof: Inclusion proof of the deposit's commitment
        prover: Proving engine
        recipient: Address receiving the denomination
        relayer: Address receiving the fee (zero address for direct withdrawals)
        fee: Relay fee in base units
        refund: Native currency forwarded to the recipient, in wei

    Returns:
        Proof plus ``[root, nullifierHash, recipient, relayer, fee, refund]`` as hex
    """
    circuit_input = CircuitInput(
        root=merkle_proof.root,
        nullifier_hash=deposit.nullifier_hash,
        recipient=recipient,
        relayer=relayer,
        fee=fee,
        refund=refund,
        nullifier=deposit.nullifier,
        secret=deposit.secret,
        path_elements=merkle_proof.path_elements,
        path_indices=merkle_proof.path_indices,
    )

    logger.info("Generating SNARK proof")
    proof = await prover.prove(circuit_input)

    args = [
        _to_hex(merkle_proof.root),
        _to_hex(deposit.nullifier_hash),
        _to_hex(int(recipient, 16), 20),
        _to_hex(int(relayer, 16), 20),
        _to_hex(fee),
        _to_hex(refund),
    ]
    return ProofData(proof=proof, args=args)

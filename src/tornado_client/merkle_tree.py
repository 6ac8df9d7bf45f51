"""
Deterministic reconstruction of the pool's commitment tree.

The tree is rebuilt from the cached deposit events on every use and never
persisted. For a fixed leaf sequence and height the root is a pure function of
the configured two-to-one hash.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING

from web3 import Web3

from .errors import DataCorrupt, LeafNotFound, NullifierSpent, RootInvalid
from .models import DepositEvent, Event, MerkleProof, filter_zero_events, to_hex32

if TYPE_CHECKING:
    from .utils.pool_contract import PoolContract

logger = logging.getLogger(__name__)

FIELD_SIZE = 21888242871839275222246405745257275088548364400416034343698204186575808495617
ZERO_VALUE = int.from_bytes(Web3.keccak(text="tornado"), "big") % FIELD_SIZE

HashFunction = Callable[[int, int], int]


def keccak_hash_left_right(left: int, right: int) -> int:
    """Keccak-256 of two uint256 words, reduced into the SNARK scalar field.

    Stand-in two-to-one hash; deployments whose contract hashes nodes with a
    different primitive (MiMC sponge for the canonical pools) pass that
    primitive to MerkleTreeService instead.
    """
    digest = Web3.solidity_keccak(["uint256", "uint256"], [left, right])
    return int.from_bytes(digest, "big") % FIELD_SIZE


class MerkleTree:
    """Fixed-height binary Merkle tree padded with precomputed zero subtrees."""

    def __init__(
        self,
        levels: int,
        elements: list[int] | None = None,
        hash_fn: HashFunction = keccak_hash_left_right,
        zero_element: int = ZERO_VALUE,
    ):
        self.levels = levels
        self.capacity = 2 ** levels
        self._hash = hash_fn

        elements = list(elements or [])
        if len(elements) > self.capacity:
            raise ValueError(f"Tree is full: {len(elements)} leaves exceed capacity {self.capacity}")

        self.zeros = [zero_element]
        for level in range(1, levels + 1):
            self.zeros.append(hash_fn(self.zeros[level - 1], self.zeros[level - 1]))

        self.layers: list[list[int]] = [elements]
        self._build()

    def _build(self) -> None:
        for level in range(1, self.levels + 1):
            below = self.layers[level - 1]
            layer = []
            for i in range(0, len(below), 2):
                right = below[i + 1] if i + 1 < len(below) else self.zeros[level - 1]
                layer.append(self._hash(below[i], right))
            self.layers.append(layer)

    @property
    def elements(self) -> list[int]:
        return self.layers[0]

    def root(self) -> int:
        top = self.layers[self.levels]
        return top[0] if top else self.zeros[self.levels]

    def index_of(self, element: int) -> int | None:
        try:
            return self.layers[0].index(element)
        except ValueError:
            return None

    def path(self, index: int) -> tuple[list[int], list[int]]:
        """
        Sibling hashes and left/right bits from a leaf up to the root.

        Args:
            index: Leaf index

        Returns:
            (path_elements, path_indices), both of length ``levels``
        """
        if not 0 <= index < len(self.layers[0]):
            raise IndexError(f"Leaf index {index} out of bounds")

        path_elements: list[int] = []
        path_indices: list[int] = []
        for level in range(self.levels):
            path_indices.append(index % 2)
            sibling = index ^ 1
            layer = self.layers[level]
            path_elements.append(layer[sibling] if sibling < len(layer) else self.zeros[level])
            index >>= 1
        return path_elements, path_indices


@dataclass(frozen=True, slots=True)
class TreeSnapshot:
    """A tree built from one cache snapshot."""
    tree: MerkleTree
    leaves: list[int]
    root: int

    @property
    def root_hex(self) -> str:
        return to_hex32(self.root)


class MerkleTreeService:
    """Builds commitment trees, issues inclusion paths and checks roots on-chain."""

    def __init__(
        self,
        pool: "PoolContract",
        height: int = 20,
        hash_fn: HashFunction = keccak_hash_left_right,
    ):
        """
        Initialize the MerkleTreeService.

        Args:
            pool: Pool contract used for the known-root and spent-nullifier checks
            height: Tree height of the pool contract
            hash_fn: Two-to-one hash the pool contract uses for tree nodes
        """
        self.pool = pool
        self.height = height
        self.hash_fn = hash_fn

    def build_tree(self, events: list[Event]) -> TreeSnapshot:
        """
        Build the commitment tree from cached events.

        Sentinels and non-deposit records are ignored; deposits are ordered by
        the leaf index the contract assigned them.

        Raises:
            DataCorrupt: If leaf indices are duplicated with different
                commitments or do not form a contiguous range from zero
        """
        deposits = sorted(
            (event for event in filter_zero_events(events) if isinstance(event, DepositEvent)),
            key=lambda event: event.leaf_index,
        )

        leaves: list[int] = []
        for event in deposits:
            if event.leaf_index < len(leaves):
                if leaves[event.leaf_index] != int(event.commitment, 16):
                    raise DataCorrupt(
                        f"Conflicting commitments cached for leaf index {event.leaf_index}"
                    )
                continue
            if event.leaf_index != len(leaves):
                raise DataCorrupt(
                    f"Deposit leaf indices are not contiguous: expected {len(leaves)}, "
                    f"found {event.leaf_index}"
                )
            leaves.append(int(event.commitment, 16))

        logger.info(f"Computing deposit events merkle tree over {len(leaves)} leaves")
        tree = MerkleTree(self.height, leaves, hash_fn=self.hash_fn)
        return TreeSnapshot(tree=tree, leaves=leaves, root=tree.root())

    @staticmethod
    def find_leaf_index(snapshot: TreeSnapshot, commitment: int | str) -> int | None:
        """Position of a commitment in the snapshot, None if not observed yet."""
        return snapshot.tree.index_of(int(to_hex32(commitment), 16))

    @staticmethod
    def path(snapshot: TreeSnapshot, leaf_index: int) -> tuple[list[int], list[int]]:
        return snapshot.tree.path(leaf_index)

    async def validate_root(self, root: int) -> bool:
        """Whether the pool contract currently accepts ``root``."""
        return await self.pool.is_known_root(to_hex32(root))

    async def merkle_proof(
        self,
        events: list[Event],
        commitment: int | str,
        nullifier_hash: int | str,
    ) -> MerkleProof:
        """
        Validate the preconditions of a withdrawal and compute the inclusion proof.

        The root must be known, the nullifier unspent and the commitment present,
        checked in that order before any proving work happens.

        Raises:
            RootInvalid: If the contract does not know the local root
            NullifierSpent: If the note was already withdrawn
            LeafNotFound: If the commitment is not in the synchronized events
        """
        snapshot = self.build_tree(events)

        if not await self.validate_root(snapshot.root):
            raise RootInvalid(snapshot.root_hex)

        if await self.pool.is_spent(to_hex32(nullifier_hash)):
            raise NullifierSpent(to_hex32(nullifier_hash))

        leaf_index = self.find_leaf_index(snapshot, commitment)
        if leaf_index is None:
            raise LeafNotFound(to_hex32(commitment))

        path_elements, path_indices = self.path(snapshot, leaf_index)
        logger.info(f"Merkle proof computed for leaf {leaf_index} under root {snapshot.root_hex}")
        return MerkleProof(
            root=snapshot.root,
            path_elements=path_elements,
            path_indices=path_indices,
            leaf_index=leaf_index,
        )

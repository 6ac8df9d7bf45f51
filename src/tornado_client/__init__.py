"""
Tornado client package.

Deposits, event cache synchronization, commitment tree reconstruction and relayed
withdrawals for fixed-denomination deposit pools.
"""

from .client import ComplianceReport, TornadoClient, update_all_caches
from .config import ClientConfig, InstanceConfig, parse_instances
from .event_store import EventStore
from .event_synchronizer import EventSynchronizer
from .merkle_tree import MerkleTree, MerkleTreeService
from .models import EventKey, EventKind
from .notes import Deposit, create_note, parse_invoice, parse_note
from .relay_client import RelayClient, WithdrawalRequest

__all__ = [
    "ClientConfig",
    "ComplianceReport",
    "Deposit",
    "EventKey",
    "EventKind",
    "EventStore",
    "EventSynchronizer",
    "InstanceConfig",
    "MerkleTree",
    "MerkleTreeService",
    "RelayClient",
    "TornadoClient",
    "WithdrawalRequest",
    "create_note",
    "parse_instances",
    "parse_invoice",
    "parse_note",
    "update_all_caches",
]
__version__ = "0.1.0"

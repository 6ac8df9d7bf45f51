"""
Error kinds raised by the tornado client.

Every fatal condition surfaces as its own exception class so callers and logs
can tell them apart. "Not found" outcomes (missing cache file, unknown
commitment in a tree snapshot) are not errors and are returned as empty
results or ``None`` instead.
"""


class TornadoClientError(Exception):
    """Base class for all client errors."""


class SourceUnavailable(TornadoClientError):
    """An RPC node, subgraph or relay could not be reached. Retryable."""


class DataCorrupt(TornadoClientError):
    """A cache file holds unparsable or inconsistent records. Requires a cache reset."""


class RootInvalid(TornadoClientError):
    """The locally computed Merkle root is not a known root of the pool contract."""

    def __init__(self, root: str):
        super().__init__(
            f"Merkle tree root {root} is not known to the contract, "
            "the local event cache has drifted and must be resynchronized"
        )
        self.root = root


class NullifierSpent(TornadoClientError):
    """The note was already withdrawn."""

    def __init__(self, nullifier_hash: str):
        super().__init__(f"The note is already spent (nullifier hash {nullifier_hash})")
        self.nullifier_hash = nullifier_hash


class LeafNotFound(TornadoClientError):
    """The commitment is absent from the synchronized deposit events."""

    def __init__(self, commitment: str):
        super().__init__(f"The deposit {commitment} is not found in the tree")
        self.commitment = commitment


class RelayRejected(TornadoClientError):
    """The relay refused the withdrawal or reported its job as FAILED."""

    def __init__(self, job_id: str | None, reason: str | None):
        if job_id is None:
            super().__init__(f"Relay refused the withdrawal, reason: {reason}")
        else:
            super().__init__(f"Relay job {job_id} failed, reason: {reason}")
        self.job_id = job_id
        self.reason = reason


class RelayNetworkMismatch(TornadoClientError):
    """The relay serves a different network than the one the client operates on."""

    def __init__(self, relay_net_id: int | str, expected_net_id: int):
        super().__init__(
            f"This relay is for network {relay_net_id}, expected network {expected_net_id}"
        )
        self.relay_net_id = relay_net_id
        self.expected_net_id = expected_net_id


class ReceiptTimeout(TornadoClientError):
    """The transaction was not seen in a mined block within the allowed attempts.

    The transaction may still be pending and has to be checked manually.
    """

    def __init__(self, tx_hash: str, attempts: int):
        super().__init__(f"Transaction {tx_hash} was not mined after {attempts} attempts")
        self.tx_hash = tx_hash
        self.attempts = attempts


class RelayJobTimeout(TornadoClientError):
    """The relay did not bring the job to a terminal status before the deadline."""

    def __init__(self, job_id: str, timeout: float):
        super().__init__(f"Relay job {job_id} did not finish within {timeout:.0f}s")
        self.job_id = job_id
        self.timeout = timeout


class IndexerDataError(TornadoClientError):
    """The subgraph returned data that cannot be interpreted."""

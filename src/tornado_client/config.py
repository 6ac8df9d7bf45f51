#!/usr/bin/env python3
"""Configuration management for the tornado client.

This module provides type-safe configuration dataclasses with validation.
Configuration is loaded from environment variables with sensible defaults
where appropriate.
"""

import logging
import os
from dataclasses import dataclass, field, replace
from decimal import Decimal, InvalidOperation
from typing import ClassVar
from urllib.parse import urlparse

from web3 import Web3

# Get logger for this module
logger = logging.getLogger(__name__)

NETWORK_NAMES: dict[int, str] = {
    1: "Ethereum",
    5: "Goerli",
    10: "Optimism",
    56: "BinanceSmartChain",
    100: "GnosisChain",
    137: "Polygon",
    42161: "Arbitrum",
    43114: "Avalanche",
}

NATIVE_CURRENCIES: dict[int, str] = {
    56: "bnb",
    100: "xdai",
    137: "matic",
    43114: "avax",
}


def _checksummed(address: str, label: str) -> str:
    if not address:
        raise ValueError(f"{label} is required")
    if not Web3.is_address(address):
        raise ValueError(f"Invalid {label}: {address}")
    return Web3.to_checksum_address(address)


def _validate_url(url: str, label: str, schemes: tuple[str, ...] = ("http", "https", "ws", "wss")) -> None:
    parsed = urlparse(url)
    if parsed.scheme not in schemes:
        raise ValueError(
            f"Invalid {label} scheme: {parsed.scheme}. Expected {', '.join(schemes)}"
        )


@dataclass(frozen=True, slots=True)
class NetworkConfig:
    """Configuration of the chain the pool is deployed on.

    Attributes:
        rpc_url: HTTP(S) RPC endpoint
        net_id: Chain ID the client operates against
        proxy_address: Checksummed address of the pool proxy (router) contract
        name: Network name, used as cache directory (derived from net_id if empty)
        subgraph_url: GraphQL endpoint of the indexed query service (optional)
        native_currency: Lowercase symbol of the chain's native currency
    """

    rpc_url: str
    net_id: int
    proxy_address: str
    name: str = ""
    subgraph_url: str | None = None
    native_currency: str = ""

    def __post_init__(self) -> None:
        """Validate network configuration."""
        if not self.rpc_url:
            raise ValueError("RPC URL is required (RPC_URL)")
        _validate_url(self.rpc_url, "RPC URL")

        if self.net_id <= 0:
            raise ValueError(f"Network id must be positive, got {self.net_id}")

        object.__setattr__(self, "proxy_address", _checksummed(self.proxy_address, "proxy address"))

        if not self.name:
            object.__setattr__(self, "name", NETWORK_NAMES.get(self.net_id, "testRPC"))

        if not self.native_currency:
            object.__setattr__(self, "native_currency", NATIVE_CURRENCIES.get(self.net_id, "eth"))

        if self.subgraph_url:
            _validate_url(self.subgraph_url, "subgraph URL", ("http", "https"))


@dataclass(frozen=True, slots=True)
class InstanceConfig:
    """Configuration of one pool instance (currency + denomination).

    Attributes:
        currency: Lowercase currency symbol
        amount: Denomination as written in notes, e.g. "0.1"
        address: Checksummed address of the instance contract
        decimals: Token decimals of the currency
        deployed_block: Block the instance was deployed in, start of an empty cache
        token_address: Checksummed ERC20 address of a token pool, None for native pools
    """

    currency: str
    amount: str
    address: str
    decimals: int = 18
    deployed_block: int = 0
    token_address: str | None = None

    def __post_init__(self) -> None:
        """Validate instance configuration."""
        if not self.currency:
            raise ValueError("Currency is required (CURRENCY)")
        object.__setattr__(self, "currency", self.currency.lower())

        try:
            if Decimal(self.amount) <= 0:
                raise ValueError(f"Amount must be positive, got {self.amount}")
        except InvalidOperation:
            raise ValueError(f"Invalid amount: {self.amount}") from None

        object.__setattr__(self, "address", _checksummed(self.address, "instance address"))

        if not 0 <= self.decimals <= 36:
            raise ValueError(f"Token decimals out of range, got {self.decimals}")
        if self.deployed_block < 0:
            raise ValueError(f"Deployed block must be non-negative, got {self.deployed_block}")

        if self.token_address:
            object.__setattr__(self, "token_address", _checksummed(self.token_address, "token address"))

    def __str__(self) -> str:
        return f"{self.amount} {self.currency.upper()}"


def parse_instances(value: str) -> tuple[InstanceConfig, ...]:
    """Parse a comma-separated instance list.

    Each entry is ``currency:amount:address[:deployed_block[:decimals[:token_address]]]``,
    e.g. ``eth:0.1:0x12D6...:9116966,dai:100:0xD4B8...:9117720:18:0x6B17...``.

    Raises:
        ValueError: If an entry is malformed
    """
    instances = []
    for entry in filter(None, (part.strip() for part in value.split(","))):
        fields = entry.split(":")
        if not 3 <= len(fields) <= 6:
            raise ValueError(
                f"Invalid instance entry: {entry}. "
                "Expected currency:amount:address[:deployed_block[:decimals[:token_address]]]"
            )
        currency, amount, address, *rest = fields
        instances.append(InstanceConfig(
            currency=currency,
            amount=amount,
            address=address,
            deployed_block=int(rest[0]) if len(rest) > 0 and rest[0] else 0,
            decimals=int(rest[1]) if len(rest) > 1 and rest[1] else 18,
            token_address=rest[2] if len(rest) > 2 and rest[2] else None,
        ))
    return tuple(instances)


@dataclass(frozen=True, slots=True)
class SyncConfig:
    """Configuration for event cache synchronization."""
    cache_dir: str = "cache"
    block_chunk_size: int = 10_000  # blocks per eth_getLogs range
    page_size: int = 1000  # subgraph records per page
    request_timeout: int = 30  # seconds, RPC and HTTP

    def __post_init__(self) -> None:
        """Validate sync configuration."""
        if self.block_chunk_size <= 0:
            raise ValueError(f"Block chunk size must be positive, got {self.block_chunk_size}")
        if not 0 < self.page_size <= 1000:
            raise ValueError(f"Page size must be within 1..1000, got {self.page_size}")
        if self.request_timeout <= 0:
            raise ValueError(f"Request timeout must be positive, got {self.request_timeout}")
        if self.request_timeout > 300:
            raise ValueError(f"Request timeout too long (max 300s), got {self.request_timeout}")


@dataclass(frozen=True, slots=True)
class RelayConfig:
    """Configuration for relay job tracking."""
    url: str | None = None
    poll_interval: float = 3.0  # seconds between job polls
    job_timeout: float = 1800.0  # seconds until a non-terminal job is given up
    receipt_attempts: int = 60
    receipt_delay: float = 1.0  # seconds between receipt lookups
    tor_port: int | None = None

    def __post_init__(self) -> None:
        """Validate relay configuration."""
        if self.url:
            if self.url.endswith(".eth"):
                raise ValueError(
                    "ENS name resolving is not supported, provide the DNS name of the relayer"
                )
            _validate_url(self.url, "relayer URL", ("http", "https"))
            parsed = urlparse(self.url)
            object.__setattr__(self, "url", f"{parsed.scheme}://{parsed.netloc}")

        if self.poll_interval <= 0:
            raise ValueError(f"Poll interval must be positive, got {self.poll_interval}")
        if self.job_timeout <= 0:
            raise ValueError(f"Job timeout must be positive, got {self.job_timeout}")
        if self.receipt_attempts <= 0:
            raise ValueError(f"Receipt attempts must be positive, got {self.receipt_attempts}")

    @property
    def proxy_url(self) -> str | None:
        return f"socks5://127.0.0.1:{self.tor_port}" if self.tor_port else None


@dataclass(frozen=True, slots=True)
class ClientConfig:
    """Main configuration for the tornado client.

    Attributes:
        network: Chain configuration
        instance: Pool instance configuration
        sync: Event cache synchronization settings
        relay: Relay settings
        merkle_tree_height: Height of the pool's commitment tree
        private_rpc: Local-only mode, never query the subgraph
        private_key: Key for deposits and the direct withdrawal path (optional)
        instances: Every instance cache sweeps cover, ``(instance,)`` if empty
    """

    network: NetworkConfig
    instance: InstanceConfig
    sync: SyncConfig = field(default_factory=SyncConfig)
    relay: RelayConfig = field(default_factory=RelayConfig)
    merkle_tree_height: int = 20
    private_rpc: bool = False
    private_key: str | None = None
    instances: tuple[InstanceConfig, ...] = ()

    MAX_TREE_HEIGHT: ClassVar[int] = 32

    def __post_init__(self) -> None:
        """Validate client configuration."""
        if not self.instances:
            object.__setattr__(self, "instances", (self.instance,))

        if not 0 < self.merkle_tree_height <= self.MAX_TREE_HEIGHT:
            raise ValueError(
                f"Merkle tree height must be within 1..{self.MAX_TREE_HEIGHT}, "
                f"got {self.merkle_tree_height}"
            )

        if self.private_key:
            key = self.private_key.removeprefix("0x")
            if len(key) != 64:
                raise ValueError(
                    f"Invalid private key length. Expected 64 hex characters, got {len(key)}"
                )
            try:
                int(key, 16)
            except ValueError:
                raise ValueError("Invalid private key format. Must be hexadecimal") from None

    @property
    def is_native_currency(self) -> bool:
        return self.instance.currency == self.network.native_currency

    def for_instance(self, instance: InstanceConfig) -> "ClientConfig":
        """The same configuration operating on another pool instance."""
        return replace(self, instance=instance)

    @classmethod
    def from_env(cls) -> "ClientConfig":
        """Load configuration from environment variables.

        Returns:
            ClientConfig instance with loaded values

        Raises:
            ValueError: If required environment variables are missing or invalid
        """
        rpc_url = os.environ.get("RPC_URL", "")
        if not rpc_url:
            raise ValueError(
                "RPC_URL environment variable is required. "
                "Example: https://ethereum-goerli.publicnode.com"
            )

        instances = parse_instances(os.environ.get("INSTANCES", ""))
        instance_address = os.environ.get("INSTANCE_ADDRESS", "")
        if not instance_address and not instances:
            raise ValueError(
                "INSTANCE_ADDRESS environment variable is required. "
                "This is the pool instance contract for CURRENCY and AMOUNT "
                "(or list every instance in INSTANCES)."
            )

        proxy_address = os.environ.get("PROXY_ADDRESS", "")
        if not proxy_address:
            raise ValueError(
                "PROXY_ADDRESS environment variable is required. "
                "This is the proxy contract withdrawals are sent to."
            )

        network = NetworkConfig(
            rpc_url=rpc_url,
            net_id=int(os.environ.get("NET_ID", "1")),
            proxy_address=proxy_address,
            name=os.environ.get("NETWORK_NAME", ""),
            subgraph_url=os.environ.get("SUBGRAPH_URL") or None,
        )

        if instance_address:
            instance = InstanceConfig(
                currency=os.environ.get("CURRENCY", "eth"),
                amount=os.environ.get("AMOUNT", "0.1"),
                address=instance_address,
                decimals=int(os.environ.get("TOKEN_DECIMALS", "18")),
                deployed_block=int(os.environ.get("DEPLOYED_BLOCK", "0")),
                token_address=os.environ.get("TOKEN_ADDRESS") or None,
            )
        else:
            instance = instances[0]

        sync = SyncConfig(
            cache_dir=os.environ.get("CACHE_DIR", "cache"),
            block_chunk_size=int(os.environ.get("BLOCK_CHUNK_SIZE", "10000")),
            page_size=int(os.environ.get("SUBGRAPH_PAGE_SIZE", "1000")),
            request_timeout=int(os.environ.get("REQUEST_TIMEOUT", "30")),
        )

        tor_port = os.environ.get("TOR_PORT")
        relay = RelayConfig(
            url=os.environ.get("RELAYER_URL") or None,
            poll_interval=float(os.environ.get("RELAY_POLL_INTERVAL", "3")),
            job_timeout=float(os.environ.get("RELAY_JOB_TIMEOUT", "1800")),
            tor_port=int(tor_port) if tor_port else None,
        )

        return cls(
            network=network,
            instance=instance,
            sync=sync,
            relay=relay,
            merkle_tree_height=int(os.environ.get("MERKLE_TREE_HEIGHT", "20")),
            private_rpc=os.environ.get("PRIVATE_RPC", "").lower() in ("1", "true", "yes"),
            private_key=os.environ.get("PRIVATE_KEY") or None,
            instances=instances,
        )

    def log_config(self) -> None:
        """Log the configuration in a readable format for debugging."""
        logger.info("=" * 60)
        logger.info("Tornado Client Configuration")
        logger.info("=" * 60)

        logger.info("Network:")
        logger.info(f"  Name: {self.network.name} (id {self.network.net_id})")
        logger.info(f"  RPC URL: {self.network.rpc_url}")
        logger.info(f"  Proxy: {self.network.proxy_address}")
        logger.info(f"  Subgraph: {self.network.subgraph_url or '[NOT SET]'}")

        logger.info("Instance:")
        logger.info(f"  Pool: {self.instance}")
        logger.info(f"  Address: {self.instance.address}")
        logger.info(f"  Token: {self.instance.token_address or '[NATIVE]'}")
        logger.info(f"  Deployed Block: {self.instance.deployed_block}")
        if len(self.instances) > 1:
            logger.info(f"  Sweep: {', '.join(str(instance) for instance in self.instances)}")

        logger.info("Sync Settings:")
        logger.info(f"  Cache Dir: {self.sync.cache_dir}")
        logger.info(f"  Block Chunk Size: {self.sync.block_chunk_size}")
        logger.info(f"  Request Timeout: {self.sync.request_timeout} seconds")
        logger.info(f"  Mode: {'PRIVATE RPC' if self.private_rpc else 'SUBGRAPH PREFERRED'}")

        logger.info("Relay Settings:")
        logger.info(f"  Relayer: {self.relay.url or '[NOT SET]'}")
        logger.info(f"  Poll Interval: {self.relay.poll_interval} seconds")
        logger.info(f"  Job Timeout: {self.relay.job_timeout} seconds")
        logger.info(f"  Tor: {'[ENABLED]' if self.relay.tor_port else '[DISABLED]'}")

        logger.info(f"Private Key: {'[SET]' if self.private_key else '[NOT SET]'}")
        logger.info("=" * 60)

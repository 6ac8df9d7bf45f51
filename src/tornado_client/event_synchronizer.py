"""
Brings the event cache of one pool instance up to the chain head.

The indexed query service (subgraph) is preferred when configured and
reachable; the direct log scan is the fallback and also covers whatever range
the indexer has not caught up with yet. Every pass ends with a sentinel
recording the head block it synchronized through.
"""

import logging

from .config import ClientConfig
from .errors import IndexerDataError, SourceUnavailable
from .event_store import EventStore
from .models import DepositEvent, Event, EventKey, EventKind, WithdrawalEvent, ZeroEvent
from .utils.pool_contract import PoolContract
from .utils.subgraph_client import SubgraphClient

logger = logging.getLogger(__name__)


class EventSynchronizer:
    """Synchronizes cached pool events from the subgraph or the chain."""

    def __init__(
        self,
        store: EventStore,
        pool: PoolContract,
        subgraph: SubgraphClient | None,
        config: ClientConfig,
    ):
        """
        Initialize the EventSynchronizer.

        Args:
            store: Cache the events are appended to
            pool: Pool contract for the chain head and direct log scans
            subgraph: Indexed query client, None when no subgraph is configured
            config: Client configuration
        """
        self.store = store
        self.pool = pool
        self.subgraph = subgraph
        self.config = config

    async def synchronize(self, key: EventKey, local_only: bool = False) -> int:
        """
        Append every event between the cache's last block and the chain head.

        Args:
            key: Cache key to synchronize
            local_only: Never query the subgraph in this pass

        Returns:
            Block number of the sentinel appended at the end of the pass

        Raises:
            SourceUnavailable: If the chain (or the subgraph mid-paging) cannot be reached
        """
        async with self.store.lock(key):
            last_block = self.store.last_synced_block(key)
            start_block = (
                last_block + 1 if last_block is not None else self.config.instance.deployed_block
            )

            head: int | None = None
            subgraph = self._active_subgraph(local_only)
            if subgraph is not None:
                try:
                    head = await self._sync_from_subgraph(subgraph, key, start_block)
                except IndexerDataError as e:
                    logger.warning(
                        f"{type(e).__name__}: {e}. Falling back to a direct scan for {key}"
                    )

            if head is None:
                head = await self._sync_direct(key, start_block)

            self.store.append(key, [ZeroEvent(block_number=head)])
            logger.info(f"Events for {key} synchronized through block {head}")
            return head

    def _active_subgraph(self, local_only: bool) -> SubgraphClient | None:
        if local_only or self.config.private_rpc:
            return None
        return self.subgraph

    async def _sync_from_subgraph(
        self, subgraph: SubgraphClient, key: EventKey, start_block: int
    ) -> int | None:
        """Page the subgraph forward, then scan the range it has not indexed yet.

        Returns:
            Head block the pass reached, None if the subgraph cannot serve this key

        Raises:
            IndexerDataError: If a page cannot be interpreted or cannot be paged past
        """
        try:
            latest = await subgraph.latest_block(key.kind, key.currency, key.amount)
        except SourceUnavailable as e:
            logger.warning(f"{type(e).__name__}: {e}. Using a direct scan for {key}")
            return None

        if latest is None:
            logger.info(f"Subgraph has no {key.kind.value} events for {key}, using a direct scan")
            return None

        # Re-reading the start block is harmless: identical records are not stored twice.
        cursor = max(start_block - 1, self.config.instance.deployed_block)
        high_water = cursor
        page_size = self.config.sync.page_size

        while True:
            page = await subgraph.fetch_page(
                key.kind, key.currency, key.amount, cursor, page_size
            )
            added = self.store.append(key, page)
            logger.debug(f"Subgraph page from block {cursor}: {len(page)} records, {added} new")

            if page:
                high_water = max(high_water, page[-1].block_number)
            if len(page) < page_size:
                break

            last_in_page = page[-1].block_number
            if last_in_page <= cursor:
                raise IndexerDataError(
                    f"Subgraph page for {key} is filled by block {cursor} alone, "
                    f"more than {page_size} events cannot be paged by block number"
                )
            cursor = last_in_page

        high_water = max(high_water, latest)
        head = await self.pool.block_number()
        if head > high_water:
            logger.info(f"Subgraph indexed {key} through block {high_water}, scanning to {head}")
            await self._scan(key, high_water + 1, head)
        return head

    async def _sync_direct(self, key: EventKey, start_block: int) -> int:
        head = await self.pool.block_number()
        await self._scan(key, start_block, head)
        return head

    async def _scan(self, key: EventKey, from_block: int, to_block: int) -> None:
        """Fetch and append logs chunk by chunk over an inclusive block range."""
        chunk_size = self.config.sync.block_chunk_size
        if from_block > to_block:
            logger.debug(f"Nothing to scan for {key}: cache is at the head")
            return

        logger.info(f"Fetching {key.kind.value} events from block {from_block} to {to_block}")
        for chunk_start in range(from_block, to_block + 1, chunk_size):
            chunk_end = min(chunk_start + chunk_size - 1, to_block)
            try:
                logs = await self.pool.get_events(key.kind, chunk_start, chunk_end)
            except SourceUnavailable as e:
                logger.error(f"{type(e).__name__}: {e}")
                raise

            events: list[Event] = [
                DepositEvent.from_log(log) if key.kind is EventKind.DEPOSIT else WithdrawalEvent.from_log(log)
                for log in logs
            ]
            added = self.store.append(key, events)
            logger.info(
                f"Fetched {key.kind.value} events {chunk_start}-{chunk_end}: {added} new records"
            )

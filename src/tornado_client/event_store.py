"""
Append-only event cache.

One JSON file per (network, event kind, currency, denomination) holds the
ordered list of observed events plus the sentinel records written at the end
of every sync pass. Writers never drop sentinels; readers filter them.
"""

import asyncio
import json
import logging
import os
import tempfile
from pathlib import Path

from .errors import DataCorrupt
from .models import DepositEvent, Event, EventKey, event_from_record, filter_zero_events

logger = logging.getLogger(__name__)


def sort_deposit_batch(events: list[Event]) -> list[Event]:
    """Sort the deposit records of a batch by leaf index.

    Deposits are reordered among the positions they occupy; sentinels and
    withdrawals stay where they are.
    """
    deposits = iter(sorted(
        (event for event in events if isinstance(event, DepositEvent)),
        key=lambda event: event.leaf_index,
    ))
    return [next(deposits) if isinstance(event, DepositEvent) else event for event in events]


class EventStore:
    """File-backed, append-only mirror of pool contract events."""

    def __init__(self, cache_dir: str | Path = "cache"):
        """
        Initialize the event store.

        Args:
            cache_dir: Root directory of the cache files
        """
        self.cache_dir = Path(cache_dir)
        self._locks: dict[EventKey, asyncio.Lock] = {}

    def path_for(self, key: EventKey) -> Path:
        return self.cache_dir / key.network / key.file_name

    def lock(self, key: EventKey) -> asyncio.Lock:
        """Per-key lock serializing read-merge-append sequences in this process."""
        if key not in self._locks:
            self._locks[key] = asyncio.Lock()
        return self._locks[key]

    def load(self, key: EventKey) -> list[Event]:
        """
        Load the full event sequence of a key, sentinels included.

        Args:
            key: Cache key

        Returns:
            Ordered list of events; empty if the cache file does not exist

        Raises:
            DataCorrupt: If the file cannot be decoded
        """
        path = self.path_for(key)
        if not path.exists():
            return []

        try:
            with path.open(encoding="utf-8") as file:
                records = json.load(file)
        except json.JSONDecodeError as e:
            raise DataCorrupt(f"Cache file {path} is not valid JSON: {e}") from e

        if not isinstance(records, list):
            raise DataCorrupt(f"Cache file {path} does not contain a list of events")

        return [event_from_record(record) for record in records]

    def load_events(self, key: EventKey) -> list[Event]:
        """Load the events of a key with sentinels filtered out."""
        return filter_zero_events(self.load(key))

    def last_synced_block(self, key: EventKey) -> int | None:
        """Block number of the last cached record (sentinel or real), None if empty."""
        events = self.load(key)
        return events[-1].block_number if events else None

    def append(self, key: EventKey, new_events: list[Event]) -> int:
        """
        Merge new events onto the cached sequence and persist atomically.

        Records identical to an already cached record are skipped, so
        re-appending a batch leaves the cache unchanged.

        Args:
            key: Cache key
            new_events: Events to append, in source order

        Returns:
            Number of records actually written
        """
        existing = self.load(key)
        seen = set(existing)

        added: list[Event] = []
        for event in sort_deposit_batch(new_events):
            if event in seen:
                continue
            seen.add(event)
            added.append(event)

        if not added:
            return 0

        self._write(key, existing + added)
        logger.debug(f"Appended {len(added)} records to {key}")
        return len(added)

    def reset(self, key: EventKey) -> None:
        """Delete the cache file of a key. The next sync starts from scratch."""
        path = self.path_for(key)
        if path.exists():
            path.unlink()
            logger.warning(f"Cache for {key} was reset")

    def _write(self, key: EventKey, events: list[Event]) -> None:
        path = self.path_for(key)
        path.parent.mkdir(parents=True, exist_ok=True)

        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as file:
                json.dump([event.to_dict() for event in events], file, indent=2)
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

import json
import logging
import typing
from typing import Any

import httpx

from ..errors import IndexerDataError, SourceUnavailable
from ..models import DepositEvent, Event, EventKind, WithdrawalEvent

logger = logging.getLogger(__name__)

_FIELDS = {
    EventKind.DEPOSIT: "blockNumber transactionHash commitment index timestamp",
    EventKind.WITHDRAWAL: "blockNumber transactionHash nullifier to fee",
}

_LATEST_QUERY = """
query($currency: String!, $amount: String!) {
  %(entity)s(
    first: 1,
    orderBy: blockNumber,
    orderDirection: desc,
    where: {currency: $currency, amount: $amount}
  ) {
    blockNumber
  }
}
"""

_PAGE_QUERY = """
query($currency: String!, $amount: String!, $blockNumber: BigInt!, $first: Int!) {
  %(entity)s(
    first: $first,
    orderBy: blockNumber,
    orderDirection: asc,
    where: {currency: $currency, amount: $amount, blockNumber_gte: $blockNumber}
  ) {
    %(fields)s
  }
}
"""


class SubgraphClient:
    """GraphQL client of the indexed query service for pool events."""

    def __init__(
        self,
        url: str,
        timeout: float = 30,
        proxy: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.url = url
        self.timeout = timeout
        self.proxy = proxy
        self.transport = transport

    async def _query(self, query: str, variables: dict[str, Any]) -> dict[str, Any]:
        async with httpx.AsyncClient(
            transport=self.transport, proxy=self.proxy, timeout=self.timeout
        ) as client:
            logger.debug(f"Querying {self.url}: {json.dumps(variables)}")
            try:
                response = await client.post(self.url, json={"query": query, "variables": variables})
                response.raise_for_status()
            except httpx.HTTPError as e:
                raise SourceUnavailable(f"Subgraph request failed: {e}") from e

        try:
            payload = response.json()
        except ValueError as e:
            raise IndexerDataError(f"Subgraph returned invalid JSON: {e}") from e

        if not isinstance(payload, dict) or payload.get("errors"):
            raise IndexerDataError(f"Subgraph returned errors: {payload!r}")
        data = payload.get("data")
        if not isinstance(data, dict):
            raise IndexerDataError(f"Subgraph response has no data: {payload!r}")
        return data

    @staticmethod
    def _entity(kind: EventKind) -> str:
        return f"{kind.value}s"

    async def latest_block(self, kind: EventKind, currency: str, amount: str) -> int | None:
        """
        Block number of the newest indexed event for an instance.

        Returns:
            Block number, or None if the subgraph holds no events for the instance

        Raises:
            SourceUnavailable: If the subgraph cannot be reached
            IndexerDataError: If the response cannot be interpreted
        """
        entity = self._entity(kind)
        data = await self._query(
            _LATEST_QUERY % {"entity": entity},
            {"currency": currency, "amount": amount},
        )
        records = data.get(entity)
        if not isinstance(records, list):
            raise IndexerDataError(f"Subgraph response is missing {entity}")
        if not records:
            return None
        try:
            return int(records[0]["blockNumber"])
        except (KeyError, TypeError, ValueError) as e:
            raise IndexerDataError(f"Malformed latest {kind.value} record: {records[0]!r}") from e

    async def fetch_page(
        self,
        kind: EventKind,
        currency: str,
        amount: str,
        from_block: int,
        first: int = 1000,
    ) -> list[Event]:
        """
        One page of events at or after ``from_block``, ordered by block number.

        Raises:
            SourceUnavailable: If the subgraph cannot be reached
            IndexerDataError: If the response or a record cannot be interpreted
        """
        entity = self._entity(kind)
        data = await self._query(
            _PAGE_QUERY % {"entity": entity, "fields": _FIELDS[kind]},
            {"currency": currency, "amount": amount, "blockNumber": str(from_block), "first": first},
        )
        records = data.get(entity)
        if not isinstance(records, list):
            raise IndexerDataError(f"Subgraph response is missing {entity}")

        mapper: typing.Callable[[Any], Event] = (
            DepositEvent.from_subgraph if kind is EventKind.DEPOSIT else WithdrawalEvent.from_subgraph
        )
        try:
            return [mapper(record) for record in records]
        except (KeyError, TypeError, ValueError) as e:
            raise IndexerDataError(f"Malformed {kind.value} record in subgraph page: {e}") from e

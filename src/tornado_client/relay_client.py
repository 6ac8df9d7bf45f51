"""
Client of the relay withdrawal protocol.

A relay submits the withdrawal transaction on the user's behalf in exchange
for a fee taken out of the withdrawn denomination. The client negotiates the
fee from the relay's status, proves twice (provisional and final fee), submits
the job and tracks it until the relay reports it confirmed or failed.
"""

import asyncio
import json
import logging
import time
import typing
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

import httpx
from web3.types import TxReceipt

from .config import ClientConfig
from .errors import RelayJobTimeout, RelayNetworkMismatch, RelayRejected, SourceUnavailable
from .fee_oracle import FeeOracle, relayer_service_fee, to_decimals
from .models import JobStatus, MerkleProof, ProofData, RelayerStatus, RelayJob, WithdrawalResult
from .notes import Deposit, Prover, generate_proof
from .utils.pool_contract import PoolContract

logger = logging.getLogger(__name__)

TOR_USER_AGENT = "Mozilla/5.0 (Windows NT 10.0; rv:91.0) Gecko/20100101 Firefox/91.0"


@dataclass(frozen=True, slots=True)
class WithdrawalRequest:
    """What to withdraw and where to."""
    deposit: Deposit
    recipient: str
    refund: int = 0


class RelayClient:
    """Negotiates, submits and tracks relayed withdrawals."""

    def __init__(
        self,
        config: ClientConfig,
        pool: PoolContract,
        fee_oracle: FeeOracle,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the RelayClient.

        Args:
            config: Client configuration; ``config.relay.url`` must be set
            pool: Pool contract for the withdrawal calldata and receipts
            fee_oracle: Computes the total relay fee of a withdrawal
            transport: HTTP transport override (tests, unix sockets)
            sleep: Sleep function awaited between polls
            clock: Monotonic clock the job deadline is measured on
        """
        if not config.relay.url:
            raise ValueError("Relayer URL is required (RELAYER_URL)")

        self.config = config
        self.url = config.relay.url
        self.pool = pool
        self.fee_oracle = fee_oracle
        self.transport = transport
        self.sleep = sleep
        self.clock = clock

    async def _request(self, method: str, path: str, payload: typing.Any = None) -> typing.Any:
        headers = {"User-Agent": TOR_USER_AGENT} if self.config.relay.tor_port else None
        async with httpx.AsyncClient(
            transport=self.transport,
            proxy=self.config.relay.proxy_url,
            timeout=self.config.sync.request_timeout,
            headers=headers,
        ) as client:
            if payload is not None:
                logger.debug(f"{method} {self.url + path}: {json.dumps(payload)}")
            try:
                response = await client.request(method, self.url + path, json=payload)
            except httpx.TransportError as e:
                raise SourceUnavailable(f"Relay {self.url} is unreachable: {e}") from e
            response.raise_for_status()

        try:
            return response.json()
        except ValueError as e:
            raise SourceUnavailable(
                f"Relay {self.url} returned a non-JSON response to {method} {path}: {e}"
            ) from e

    async def get_status(self) -> RelayerStatus:
        """
        Fetch the relay's status.

        Raises:
            SourceUnavailable: If the status cannot be fetched or interpreted
        """
        try:
            data = await self._request("GET", "/status")
            status = RelayerStatus.from_response(data)
        except (httpx.HTTPStatusError, KeyError, TypeError, ValueError) as e:
            raise SourceUnavailable(f"Cannot get relayer status: {e}") from e

        logger.info(f"Relay address: {status.reward_account}")
        return status

    def check_network(self, status: RelayerStatus) -> None:
        """Raise RelayNetworkMismatch unless the relay serves this network."""
        expected = self.config.network.net_id
        if status.net_id != "*" and status.net_id != expected:
            raise RelayNetworkMismatch(status.net_id, expected)

    async def withdraw(
        self,
        request: WithdrawalRequest,
        merkle_proof: MerkleProof,
        prover: Prover,
    ) -> WithdrawalResult:
        """
        Withdraw a deposit through the relay.

        Args:
            request: Deposit, recipient and refund
            merkle_proof: Inclusion proof of the deposit's commitment
            prover: Proving engine

        Returns:
            The mined withdrawal

        Raises:
            RelayNetworkMismatch: If the relay serves another network (nothing is proved or sent)
            RelayRejected: If the relay refuses the job or reports it FAILED
            RelayJobTimeout: If the job does not finish before the deadline
            ReceiptTimeout: If the confirmed transaction is not seen mined
        """
        status = await self.get_status()
        self.check_network(status)

        instance = self.config.instance
        service_fee = relayer_service_fee(status.service_fee_percent, instance.amount, instance.decimals)

        dummy = await generate_proof(
            request.deposit,
            merkle_proof,
            prover,
            recipient=request.recipient,
            relayer=status.reward_account,
            fee=service_fee,
            refund=request.refund,
        )

        total_fee = await self.fee_oracle.withdrawal_fee_via_relayer(
            tx=self.pool.withdraw_transaction(dummy, status.reward_account),
            service_fee_percent=status.service_fee_percent,
            amount=instance.amount,
            decimals=instance.decimals,
            refund=request.refund,
            token_price=status.prices.get(instance.currency),
            is_native=self.config.is_native_currency,
        )

        proof_data = await generate_proof(
            request.deposit,
            merkle_proof,
            prover,
            recipient=request.recipient,
            relayer=status.reward_account,
            fee=total_fee,
            refund=request.refund,
        )

        logger.info(
            f"Sending withdraw transaction through relay, relayer fee "
            f"{to_decimals(service_fee, instance.decimals)}, total fees "
            f"{to_decimals(total_fee, instance.decimals)} {instance.currency.upper()}"
        )

        job_id = await self.submit(proof_data)
        tx_hash = await self.wait_for_job(job_id)
        receipt = await self.wait_for_receipt(tx_hash)

        return WithdrawalResult(
            tx_hash=tx_hash,
            block_number=int(receipt["blockNumber"]),
            fee=total_fee,
            job_id=job_id,
        )

    async def submit(self, proof_data: ProofData) -> str:
        """
        Submit a withdrawal job.

        Returns:
            Job id assigned by the relay

        Raises:
            RelayRejected: If the relay refuses the job
            SourceUnavailable: If the relay cannot be reached or does not answer with JSON
        """
        payload = {
            "contract": self.config.instance.address,
            "proof": proof_data.proof,
            "args": proof_data.args,
        }
        try:
            data = await self._request("POST", "/v1/tornadoWithdraw", payload)
        except httpx.HTTPStatusError as e:
            raise RelayRejected(None, _error_reason(e.response)) from e

        try:
            job_id = str(data["id"])
        except (KeyError, TypeError) as e:
            raise RelayRejected(None, f"no job id in response {data!r}") from e

        logger.info(f"Relay accepted withdrawal job {job_id}")
        return job_id

    async def _poll_job(self, job_id: str) -> RelayJob | None:
        """One status lookup; None if this poll could not be completed."""
        try:
            data = await self._request("GET", f"/v1/jobs/{job_id}")
            return RelayJob.from_response(job_id, data)
        except (SourceUnavailable, httpx.HTTPStatusError, AttributeError, TypeError, ValueError) as e:
            logger.warning(f"Polling relay job {job_id} failed: {e}")
            return None

    async def wait_for_job(self, job_id: str) -> str:
        """
        Poll a relay job until it is CONFIRMED or FAILED.

        Returns:
            Hash of the transaction the relay confirmed

        Raises:
            RelayRejected: If the job FAILED, with the relay's reason
            RelayJobTimeout: If the job is not terminal by the deadline
        """
        relay = self.config.relay
        deadline = self.clock() + relay.job_timeout
        last_status: str | None = None

        while True:
            job = await self._poll_job(job_id)
            if job is not None:
                if job.status != last_status:
                    logger.info(f"Job {job_id} status: {job.status}")
                    last_status = job.status
                if job.is_terminal:
                    return self._confirmed_tx_hash(job)

            if self.clock() >= deadline:
                raise RelayJobTimeout(job_id, relay.job_timeout)
            await self.sleep(relay.poll_interval)

    @staticmethod
    def _confirmed_tx_hash(job: RelayJob) -> str:
        if job.status == JobStatus.FAILED:
            raise RelayRejected(job.id, job.failed_reason)
        if not job.tx_hash:
            raise RelayRejected(job.id, "confirmed without a transaction hash")
        logger.info(f"Job {job.id} confirmed in transaction {job.tx_hash}")
        return job.tx_hash

    async def wait_for_receipt(self, tx_hash: str) -> TxReceipt:
        relay = self.config.relay
        return await self.pool.wait_for_receipt(
            tx_hash,
            attempts=relay.receipt_attempts,
            delay=relay.receipt_delay,
            sleep=self.sleep,
        )


def _error_reason(response: httpx.Response) -> str:
    try:
        data: Any = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}"
    if isinstance(data, dict):
        return str(data.get("error") or data)
    return str(data)

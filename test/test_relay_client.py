"""Tests for RelayClient against a mocked relay."""

import json

import httpx
import pytest
from web3 import Web3

from conftest import INSTANCE_ADDRESS, RECIPIENT_ADDRESS, RELAYER_ADDRESS, make_config
from tornado_client.config import RelayConfig
from tornado_client.errors import (
    ReceiptTimeout,
    RelayJobTimeout,
    RelayNetworkMismatch,
    RelayRejected,
    SourceUnavailable,
)
from tornado_client.models import MerkleProof
from tornado_client.relay_client import RelayClient, WithdrawalRequest

TX_HASH = "0x" + "ef" * 32
SERVICE_FEE = 10 ** 17 * 50_000 // 10 ** 8  # 0.05% of 0.1
TOTAL_FEE = 3 * 10 ** 15


class FakeRelay:
    """Relay speaking the status / submit / job protocol."""

    def __init__(
        self,
        net_id=1,
        statuses=("QUEUED", "SENT", "MINED", "CONFIRMED"),
        submit_status=200,
        submit_body=None,
    ):
        self.net_id = net_id
        self.statuses = list(statuses)
        self.submit_status = submit_status
        self.submit_body = submit_body
        self.status_code = 200
        self.requests: list[httpx.Request] = []
        self.submitted: dict | None = None
        self.polls = 0

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        match request.url.path:
            case "/status":
                return httpx.Response(self.status_code, json={
                    "rewardAccount": RELAYER_ADDRESS,
                    "netId": self.net_id,
                    "ethPrices": {"dai": "500000000000000"},
                    "tornadoServiceFee": 0.05,
                })
            case "/v1/tornadoWithdraw":
                self.submitted = json.loads(request.content)
                if self.submit_status != 200:
                    return httpx.Response(self.submit_status, json={"error": "Invalid fee"})
                if self.submit_body is not None:
                    return httpx.Response(200, text=self.submit_body)
                return httpx.Response(200, json={"id": "job-1"})
            case "/v1/jobs/job-1":
                status = self.statuses[min(self.polls, len(self.statuses) - 1)]
                self.polls += 1
                if isinstance(status, int):
                    return httpx.Response(status, text="unavailable")
                return httpx.Response(200, json={
                    "status": status,
                    "txHash": TX_HASH if status in ("MINED", "CONFIRMED") else None,
                    "confirmations": 1 if status == "CONFIRMED" else 0,
                    "failedReason": "Proof is invalid" if status == "FAILED" else None,
                })
        return httpx.Response(404)

    @property
    def paths(self) -> list[str]:
        return [request.url.path for request in self.requests]


class FakeClock:
    """Monotonic clock advanced only by the injected sleep."""

    def __init__(self):
        self.now = 0.0
        self.sleeps: list[float] = []

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds

    def __call__(self) -> float:
        return self.now


class FixedFeeOracle:
    def __init__(self, fee: int = TOTAL_FEE):
        self.fee = fee
        self.calls: list[dict] = []

    async def withdrawal_fee_via_relayer(self, **kwargs) -> int:
        self.calls.append(kwargs)
        return self.fee


@pytest.fixture
def merkle_proof() -> MerkleProof:
    return MerkleProof(root=5, path_elements=[0] * 8, path_indices=[0] * 8, leaf_index=0)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fee_oracle() -> FixedFeeOracle:
    return FixedFeeOracle()


def make_client(config, pool, relay, clock, fee_oracle=None) -> RelayClient:
    pool.receipts.setdefault(TX_HASH, {"blockNumber": 77, "status": 1})
    return RelayClient(
        config,
        pool,
        fee_oracle or FixedFeeOracle(),
        transport=httpx.MockTransport(relay.handler),
        sleep=clock.sleep,
        clock=clock,
    )


class TestRelayWithdraw:
    """Tests for RelayClient.withdraw."""

    @pytest.mark.asyncio
    async def test_job_confirmed_after_n_plus_one_polls(
        self, config, pool, clock, fee_oracle, note_deposit, prover, merkle_proof
    ):
        """Test three non-terminal statuses then CONFIRMED take four polls and three sleeps."""
        relay = FakeRelay()
        client = make_client(config, pool, relay, clock, fee_oracle)

        result = await client.withdraw(
            WithdrawalRequest(deposit=note_deposit, recipient=RECIPIENT_ADDRESS), merkle_proof, prover
        )

        assert relay.polls == 4
        assert clock.sleeps == [config.relay.poll_interval] * 3
        assert result.tx_hash == TX_HASH
        assert result.block_number == 77
        assert result.job_id == "job-1"
        assert result.fee == TOTAL_FEE

    @pytest.mark.asyncio
    async def test_fee_negotiation(self, config, pool, clock, fee_oracle, note_deposit, prover, merkle_proof):
        """Test the dummy proof carries the service fee and the submitted proof the total fee."""
        relay = FakeRelay()
        client = make_client(config, pool, relay, clock, fee_oracle)

        await client.withdraw(
            WithdrawalRequest(deposit=note_deposit, recipient=RECIPIENT_ADDRESS), merkle_proof, prover
        )

        assert [call.fee for call in prover.calls] == [SERVICE_FEE, TOTAL_FEE]
        assert all(call.relayer == Web3.to_checksum_address(RELAYER_ADDRESS) for call in prover.calls)
        assert fee_oracle.calls[0]["service_fee_percent"] == 0.05
        assert fee_oracle.calls[0]["is_native"] is True

        assert relay.submitted["contract"] == Web3.to_checksum_address(INSTANCE_ADDRESS)
        args = relay.submitted["args"]
        assert len(args) == 6
        assert int(args[4], 16) == TOTAL_FEE
        assert args[2] == RECIPIENT_ADDRESS
        assert len(args[0]) == 66 and len(args[2]) == 42

    @pytest.mark.asyncio
    async def test_failed_job(self, config, pool, clock, note_deposit, prover, merkle_proof):
        """Test a FAILED job raises RelayRejected with the relay's reason and stops polling."""
        relay = FakeRelay(statuses=("QUEUED", "FAILED", "CONFIRMED"))
        client = make_client(config, pool, relay, clock)

        with pytest.raises(RelayRejected, match="Proof is invalid") as exc_info:
            await client.withdraw(
                WithdrawalRequest(deposit=note_deposit, recipient=RECIPIENT_ADDRESS), merkle_proof, prover
            )

        assert exc_info.value.job_id == "job-1"
        assert exc_info.value.reason == "Proof is invalid"
        assert relay.polls == 2

    @pytest.mark.asyncio
    async def test_network_mismatch_before_any_submission(
        self, config, pool, clock, note_deposit, prover, merkle_proof
    ):
        """Test a relay for another network is rejected before proving or submitting."""
        relay = FakeRelay(net_id=5)
        client = make_client(config, pool, relay, clock)

        with pytest.raises(RelayNetworkMismatch):
            await client.withdraw(
                WithdrawalRequest(deposit=note_deposit, recipient=RECIPIENT_ADDRESS), merkle_proof, prover
            )

        assert prover.calls == []
        assert relay.paths == ["/status"]

    @pytest.mark.asyncio
    async def test_wildcard_network(self, config, pool, clock, note_deposit, prover, merkle_proof):
        """Test a relay serving any network is accepted."""
        relay = FakeRelay(net_id="*", statuses=("CONFIRMED",))
        client = make_client(config, pool, relay, clock)

        result = await client.withdraw(
            WithdrawalRequest(deposit=note_deposit, recipient=RECIPIENT_ADDRESS), merkle_proof, prover
        )
        assert result.tx_hash == TX_HASH

    @pytest.mark.asyncio
    async def test_submission_refused(self, config, pool, clock, note_deposit, prover, merkle_proof):
        """Test a refused submission raises RelayRejected without polling."""
        relay = FakeRelay(submit_status=400)
        client = make_client(config, pool, relay, clock)

        with pytest.raises(RelayRejected, match="Invalid fee") as exc_info:
            await client.withdraw(
                WithdrawalRequest(deposit=note_deposit, recipient=RECIPIENT_ADDRESS), merkle_proof, prover
            )

        assert exc_info.value.job_id is None
        assert relay.polls == 0

    @pytest.mark.asyncio
    async def test_submission_answered_without_json(self, config, pool, clock, note_deposit, prover, merkle_proof):
        """Test a submission answered with a non-JSON body raises SourceUnavailable, not ValueError."""
        relay = FakeRelay(submit_body="<html>Bad Gateway</html>")
        client = make_client(config, pool, relay, clock)

        with pytest.raises(SourceUnavailable, match="non-JSON response to POST /v1/tornadoWithdraw"):
            await client.withdraw(
                WithdrawalRequest(deposit=note_deposit, recipient=RECIPIENT_ADDRESS), merkle_proof, prover
            )

        assert relay.polls == 0

    @pytest.mark.asyncio
    async def test_status_unavailable(self, config, pool, clock, note_deposit, prover, merkle_proof):
        """Test an erroring status endpoint raises SourceUnavailable."""
        relay = FakeRelay()
        relay.status_code = 500
        client = make_client(config, pool, relay, clock)

        with pytest.raises(SourceUnavailable, match="Cannot get relayer status"):
            await client.withdraw(
                WithdrawalRequest(deposit=note_deposit, recipient=RECIPIENT_ADDRESS), merkle_proof, prover
            )


class TestJobPolling:
    """Tests for RelayClient.wait_for_job and wait_for_receipt."""

    @pytest.mark.asyncio
    async def test_deadline(self, tmp_path, pool, clock):
        """Test a job that never finishes raises RelayJobTimeout at the deadline."""
        config = make_config(
            tmp_path, relay=RelayConfig(url="https://relay.example.org", poll_interval=3, job_timeout=10)
        )
        relay = FakeRelay(statuses=("PENDING",))
        client = make_client(config, pool, relay, clock)

        with pytest.raises(RelayJobTimeout):
            await client.wait_for_job("job-1")

        assert relay.polls == 5
        assert clock.now == 12

    @pytest.mark.asyncio
    async def test_transient_poll_errors_are_retried(self, config, pool, clock):
        """Test an erroring poll is logged and polling continues."""
        relay = FakeRelay(statuses=(503, "CONFIRMED"))
        client = make_client(config, pool, relay, clock)

        tx_hash = await client.wait_for_job("job-1")

        assert tx_hash == TX_HASH
        assert relay.polls == 2

    @pytest.mark.asyncio
    async def test_unknown_status_is_not_terminal(self, config, pool, clock):
        """Test statuses the client does not know keep the job polling."""
        relay = FakeRelay(statuses=("RESUBMITTED", "CONFIRMED"))
        client = make_client(config, pool, relay, clock)

        await client.wait_for_job("job-1")
        assert relay.polls == 2

    @pytest.mark.asyncio
    async def test_receipt_timeout(self, tmp_path, pool, clock):
        """Test a confirmed transaction that is never seen mined raises ReceiptTimeout."""
        config = make_config(tmp_path, relay=RelayConfig(url="https://relay.example.org", receipt_attempts=3))
        client = RelayClient(
            config, pool, FixedFeeOracle(),
            transport=httpx.MockTransport(FakeRelay().handler), sleep=clock.sleep, clock=clock,
        )

        with pytest.raises(ReceiptTimeout) as exc_info:
            await client.wait_for_receipt("0x" + "99" * 32)

        assert exc_info.value.attempts == 3
        assert clock.sleeps == [config.relay.receipt_delay] * 2

    def test_relay_url_required(self, tmp_path, pool):
        """Test a RelayClient cannot be built without a relay URL."""
        config = make_config(tmp_path, relay=RelayConfig())
        with pytest.raises(ValueError, match="Relayer URL is required"):
            RelayClient(config, pool, FixedFeeOracle())

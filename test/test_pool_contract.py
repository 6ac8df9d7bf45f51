#!/usr/bin/env python3
"""Tests for ContractUtility and PoolContract.

No RPC node is involved: AsyncWeb3 does not connect on construction and the
calls under test are replaced with mocks where they would hit the network.
"""

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import aiohttp
import pytest
from eth_account import Account
from web3 import Web3
from web3.exceptions import TransactionNotFound, Web3Exception

from conftest import INSTANCE_ADDRESS, PROXY_ADDRESS, RECIPIENT_ADDRESS, RELAYER_ADDRESS, TEST_PRIVATE_KEY
from tornado_client.errors import SourceUnavailable
from tornado_client.models import EventKind, ProofData, to_hex32
from tornado_client.utils.contract_utility import ContractUtility
from tornado_client.utils.pool_contract import PoolContract

WITHDRAW_SELECTOR = Web3.keccak(
    text="withdraw(address,bytes,bytes32,bytes32,address,address,uint256,uint256)"
)[:4].hex()
TOKEN_ADDRESS = "0x6b175474e89094c44da98b954eedeac495271d0f"


@pytest.fixture
def pool_contract() -> PoolContract:
    return PoolContract(ContractUtility("https://rpc.example.org"), INSTANCE_ADDRESS, PROXY_ADDRESS)


def proof_data(refund: int = 0) -> ProofData:
    return ProofData(
        proof="0x" + "ab" * 64,
        args=[
            to_hex32(1),
            to_hex32(2),
            RECIPIENT_ADDRESS,
            RELAYER_ADDRESS,
            to_hex32(1000),
            to_hex32(refund),
        ],
    )


class TestContractUtility:
    """Tests for ContractUtility."""

    def test_read_only_mode(self):
        """Test no account is attached without a secret."""
        utility = ContractUtility("https://rpc.example.org")
        assert utility.account is None

    def test_signing_mode(self):
        """Test the signing account becomes the default account."""
        utility = ContractUtility("https://rpc.example.org", TEST_PRIVATE_KEY)
        expected = Account.from_key(TEST_PRIVATE_KEY).address
        assert utility.account.address == expected
        assert utility.w3.eth.default_account == expected

    def test_rpc_url_required(self):
        """Test initialization fails without RPC URL."""
        with pytest.raises(ValueError, match="RPC URL is required"):
            ContractUtility("")

    def test_packaged_abi(self):
        """Test the pool ABIs ship with the package."""
        utility = ContractUtility("https://rpc.example.org")
        names = {item["name"] for item in utility.get_contract_abi("TornadoInstance")}
        assert {"Deposit", "Withdrawal", "isKnownRoot", "isSpent"} <= names
        assert utility.get_contract_abi("TornadoProxy")[0]["name"] == "withdraw"

    def test_missing_abi(self):
        """Test an unknown contract name raises FileNotFoundError."""
        with pytest.raises(FileNotFoundError):
            ContractUtility("https://rpc.example.org").get_contract_abi("Missing")


class TestPoolContract:
    """Tests for PoolContract."""

    def test_withdraw_transaction(self, pool_contract):
        """Test the unsigned withdraw call targets the proxy and carries the refund."""
        tx = pool_contract.withdraw_transaction(proof_data(refund=7), RELAYER_ADDRESS)

        assert tx["to"] == Web3.to_checksum_address(PROXY_ADDRESS)
        assert tx["value"] == 7
        assert tx["data"].removeprefix("0x").startswith(WITHDRAW_SELECTOR.removeprefix("0x"))

    @pytest.mark.asyncio
    async def test_get_events_wraps_rpc_errors(self, pool_contract):
        """Test log fetch failures surface as SourceUnavailable."""
        get_logs = AsyncMock(side_effect=Web3Exception("query returned more than 10000 results"))
        pool_contract.instance = SimpleNamespace(
            events=SimpleNamespace(Deposit=SimpleNamespace(get_logs=get_logs))
        )

        with pytest.raises(SourceUnavailable, match="blocks 0-9"):
            await pool_contract.get_events(EventKind.DEPOSIT, 0, 9)
        get_logs.assert_awaited_once_with(from_block=0, to_block=9)

    @pytest.mark.asyncio
    async def test_is_known_root(self, pool_contract):
        """Test the known-root view is called with the hex root."""
        functions = MagicMock()
        functions.isKnownRoot.return_value.call = AsyncMock(return_value=True)
        pool_contract.instance = SimpleNamespace(functions=functions)

        assert await pool_contract.is_known_root(to_hex32(5)) is True
        functions.isKnownRoot.assert_called_once_with(to_hex32(5))

    @pytest.mark.asyncio
    async def test_is_spent_connection_error(self, pool_contract):
        """Test transport errors on view calls surface as SourceUnavailable."""
        functions = MagicMock()
        functions.isSpent.return_value.call = AsyncMock(side_effect=aiohttp.ClientConnectionError())
        pool_contract.instance = SimpleNamespace(functions=functions)

        with pytest.raises(SourceUnavailable):
            await pool_contract.is_spent(to_hex32(5))

    @pytest.mark.asyncio
    async def test_receipt_not_found_is_none(self, pool_contract):
        """Test an unknown transaction has no receipt yet."""
        pool_contract.w3 = SimpleNamespace(eth=SimpleNamespace(
            get_transaction_receipt=AsyncMock(side_effect=TransactionNotFound("not found"))
        ))
        assert await pool_contract.get_transaction_receipt("0x" + "00" * 32) is None

    @pytest.mark.asyncio
    async def test_wait_for_receipt_until_mined(self, pool_contract):
        """Test receipts without a block number are treated as pending."""
        receipts = [None, {"blockNumber": None}, {"blockNumber": 9, "status": 1}]
        pool_contract.get_transaction_receipt = AsyncMock(side_effect=receipts)
        sleep = AsyncMock()

        receipt = await pool_contract.wait_for_receipt("0x01", attempts=5, delay=1.0, sleep=sleep)

        assert receipt["blockNumber"] == 9
        assert sleep.await_count == 2

    @pytest.mark.asyncio
    async def test_send_withdrawal_requires_key(self, pool_contract):
        """Test sending needs a signing account."""
        with pytest.raises(ValueError, match="private key"):
            await pool_contract.send_withdrawal(proof_data())

    def test_deposit_calldata(self, pool_contract):
        """Test the proxy ABI encodes deposit(instance, commitment, encryptedNote)."""
        selector = Web3.keccak(text="deposit(address,bytes32,bytes)")[:4].hex().removeprefix("0x")
        data = pool_contract.proxy.encode_abi(
            "deposit", args=[pool_contract.instance.address, to_hex32(5), b""]
        )
        assert data.removeprefix("0x").startswith(selector)

    @pytest.mark.asyncio
    async def test_send_deposit_requires_key(self, pool_contract):
        """Test a deposit cannot be sent without a signing account."""
        with pytest.raises(ValueError, match="private key is required to send the deposit"):
            await pool_contract.send_deposit(to_hex32(5), value=10 ** 17)

    @pytest.mark.asyncio
    async def test_token_calls_need_token_address(self, pool_contract):
        """Test token helpers refuse a pool without a token contract."""
        with pytest.raises(ValueError, match="TOKEN_ADDRESS"):
            await pool_contract.token_allowance(RELAYER_ADDRESS)
        with pytest.raises(ValueError, match="TOKEN_ADDRESS"):
            await pool_contract.send_approve(1)

    @pytest.mark.asyncio
    async def test_token_allowance_toward_proxy(self):
        """Test the allowance is read for the proxy as spender."""
        pool_contract = PoolContract(
            ContractUtility("https://rpc.example.org"), INSTANCE_ADDRESS, PROXY_ADDRESS, token_address=TOKEN_ADDRESS
        )
        assert pool_contract.token.address == Web3.to_checksum_address(TOKEN_ADDRESS)

        functions = MagicMock()
        functions.allowance.return_value.call = AsyncMock(return_value=500)
        pool_contract.token = SimpleNamespace(functions=functions)

        assert await pool_contract.token_allowance(RELAYER_ADDRESS) == 500
        functions.allowance.assert_called_once_with(RELAYER_ADDRESS, Web3.to_checksum_address(PROXY_ADDRESS))

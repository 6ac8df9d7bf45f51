"""
Relay fee arithmetic.

All amounts are integers in the smallest unit of the pool currency. The relay
service fee is a percentage of the denomination; the total fee adds the
withdrawal's gas cost (plus any refund), converted into the pool token with
the price the relay advertises.
"""

import logging
from decimal import Decimal, InvalidOperation
from typing import Protocol

from web3.types import TxParams

from .utils.pool_contract import RPC_ERRORS, PoolContract

logger = logging.getLogger(__name__)

ROUNDING_FACTOR = 10 ** 6
DEFAULT_WITHDRAWAL_GAS = 550_000


def from_decimals(amount: str | int | Decimal, decimals: int) -> int:
    """Convert a human-readable amount ("0.1") into base units.

    Raises:
        ValueError: If the amount has more fractional digits than ``decimals``
    """
    try:
        scaled = Decimal(str(amount)).scaleb(decimals)
    except InvalidOperation:
        raise ValueError(f"Invalid amount: {amount}") from None
    if scaled != scaled.to_integral_value():
        raise ValueError(f"Amount {amount} has more than {decimals} decimal places")
    return int(scaled)


def to_decimals(value: int, decimals: int) -> str:
    """Render base units as a human-readable amount, without trailing zeros."""
    return format(Decimal(value).scaleb(-decimals).normalize(), "f")


def relayer_service_fee(service_fee_percent: float | str, amount: str, decimals: int) -> int:
    """Service fee a relay charges on a denomination, in base units."""
    percent = Decimal(str(service_fee_percent))
    scaled_percent = int((percent * ROUNDING_FACTOR).to_integral_value())
    return from_decimals(amount, decimals) * scaled_percent // (ROUNDING_FACTOR * 100)


class FeeOracle(Protocol):
    async def withdrawal_fee_via_relayer(
        self,
        tx: TxParams,
        service_fee_percent: float,
        amount: str,
        decimals: int,
        refund: int,
        token_price: int | None,
        is_native: bool,
    ) -> int:
        ...


class GasFeeOracle:
    """Fee oracle over the RPC node's gas price and gas estimation."""

    def __init__(self, pool: PoolContract, fallback_gas_limit: int = DEFAULT_WITHDRAWAL_GAS):
        self.pool = pool
        self.fallback_gas_limit = fallback_gas_limit

    async def gas_params(self, tx: TxParams) -> tuple[int, int]:
        """Current gas price and the gas limit of ``tx``."""
        gas_price = await self.pool.gas_price()
        try:
            gas_limit = await self.pool.estimate_gas(tx)
        except RPC_ERRORS as e:
            logger.warning(
                f"Gas estimation failed ({e}), using the default limit {self.fallback_gas_limit}"
            )
            gas_limit = self.fallback_gas_limit
        return gas_price, gas_limit

    async def withdrawal_fee_via_relayer(
        self,
        tx: TxParams,
        service_fee_percent: float,
        amount: str,
        decimals: int,
        refund: int,
        token_price: int | None,
        is_native: bool,
    ) -> int:
        """
        Total fee a relay charges for submitting ``tx``.

        Args:
            tx: Unsigned withdrawal transaction built with the provisional fee
            service_fee_percent: Relay service fee percent
            amount: Pool denomination
            decimals: Token decimals of the pool currency
            refund: Native currency forwarded to the recipient, in wei
            token_price: Price of one whole token in wei, required for token pools
            is_native: Whether the pool currency is the chain's native currency

        Returns:
            Total fee in base units of the pool currency

        Raises:
            ValueError: If a token pool has no advertised price
        """
        gas_price, gas_limit = await self.gas_params(tx)
        costs = gas_price * gas_limit + refund

        if not is_native:
            if not token_price:
                raise ValueError("The relay does not advertise a price for the pool token")
            costs = costs * 10 ** decimals // token_price

        total = costs + relayer_service_fee(service_fee_percent, amount, decimals)
        logger.info(
            f"Relay fee: gas price {gas_price}, gas limit {gas_limit}, "
            f"total {to_decimals(total, decimals)}"
        )
        return total

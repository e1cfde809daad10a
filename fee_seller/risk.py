import logging
from decimal import Decimal, ROUND_FLOOR

from .config import FeeSellerConfig
from .errors import InsufficientOutputError
from .models import SaleQuote, eth_to_wei, wei_to_eth

logger = logging.getLogger(__name__)

class LiquidationPolicy:
    """
    Bounds for selling fee tokens and moving the proceeds
    """

    def __init__(self, max_fee_percent: Decimal, max_slippage_percent: Decimal,
                 min_sell_value_wei: int = 0, transfer_threshold_wei: int = 0,
                 gas_reserve_wei: int = 0):
        """
        Initialize liquidation policy

        Args:
            max_fee_percent: Maximum fee paid on a sale, in percent of its reference value
            max_slippage_percent: Maximum price slippage, in percent
            min_sell_value_wei: Token balances worth less than this are not sold
            transfer_threshold_wei: Transfers happen only above this amount
            gas_reserve_wei: ETH kept in the fee account to pay for gas
        """
        self.max_fee_percent = Decimal(max_fee_percent)
        self.max_slippage_percent = Decimal(max_slippage_percent)
        self.min_sell_value_wei = min_sell_value_wei
        self.transfer_threshold_wei = transfer_threshold_wei
        self.gas_reserve_wei = gas_reserve_wei

        if self.max_fee_percent + self.max_slippage_percent >= 100:
            raise ValueError("Fee plus slippage must stay below 100%")

        logger.info(f"Initialized LiquidationPolicy with max fee {self.max_fee_percent}%, "
                    f"max slippage {self.max_slippage_percent}%")

    @classmethod
    def from_config(cls, config: FeeSellerConfig) -> "LiquidationPolicy":
        return cls(
            max_fee_percent=config.max_liquidation_fee_percent,
            max_slippage_percent=config.max_liquidation_fee_slippage,
            min_sell_value_wei=eth_to_wei(config.min_sell_value_eth),
            transfer_threshold_wei=eth_to_wei(config.eth_transfer_threshold),
            gas_reserve_wei=eth_to_wei(config.eth_gas_reserve),
        )

    @property
    def output_fraction(self) -> Decimal:
        """Share of the reference value that must come back from a sale"""
        return 1 - (self.max_fee_percent + self.max_slippage_percent) / 100

    def minimum_output(self, value: int) -> int:
        """
        Calculate the minimum acceptable proceeds for a sale

        Args:
            value: Reference value of the sold balance in wei

        Returns:
            int: Minimum proceeds in wei, rounded down
        """
        if value <= 0:
            return 0
        return int((Decimal(value) * self.output_fraction).to_integral_value(rounding=ROUND_FLOOR))

    def should_sell(self, value: int) -> bool:
        """Check whether a balance is worth liquidating"""
        return value > 0 and value >= self.min_sell_value_wei

    def check_quote(self, quote: SaleQuote) -> int:
        """
        Validate a router quote against the output bound

        Args:
            quote: Quote for the full token balance

        Returns:
            int: Minimum acceptable output for the sale

        Raises:
            InsufficientOutputError: If the quoted output is below the bound
        """
        min_output = self.minimum_output(quote.reference_out)
        if quote.expected_out < min_output:
            raise InsufficientOutputError(
                f"Quoted {wei_to_eth(quote.expected_out)} ETH for {quote.token.units} "
                f"{quote.token.symbol}, minimum is {wei_to_eth(min_output)} ETH",
                minimum=min_output,
                actual=quote.expected_out,
            )
        return min_output

    def check_proceeds(self, proceeds: int, min_output: int, symbol: str = "") -> None:
        """Raise InsufficientOutputError if executed proceeds violate the bound"""
        if proceeds < min_output:
            raise InsufficientOutputError(
                f"Sale of {symbol or 'token'} returned {wei_to_eth(proceeds)} ETH, "
                f"minimum is {wei_to_eth(min_output)} ETH",
                minimum=min_output,
                actual=proceeds,
            )

    @staticmethod
    def realized_fee(reference_value: int, proceeds: int) -> float:
        """
        Fraction of the reference value lost on a sale

        Returns:
            float: 0.01 means 1% was lost to fees and slippage
        """
        if reference_value <= 0:
            return 0.0
        return float(1 - Decimal(proceeds) / Decimal(reference_value))

    def settled_amount(self, eth_balance_wei: int) -> int:
        """
        Calculate how much ETH is available to move to the accumulator

        Args:
            eth_balance_wei: Current ETH balance of the fee account

        Returns:
            int: Balance minus the gas reserve, never negative
        """
        return max(eth_balance_wei - self.gas_reserve_wei, 0)

    def should_transfer(self, amount: int) -> bool:
        """Check whether a settled amount exceeds the transfer threshold"""
        if amount <= 0 or amount <= self.transfer_threshold_wei:
            logger.debug(f"Transfer skipped - amount: {wei_to_eth(amount)} ETH, "
                         f"threshold: {wei_to_eth(self.transfer_threshold_wei)} ETH")
            return False
        return True

from dataclasses import dataclass, field, asdict
from decimal import Decimal
from typing import Any, Dict, List, Optional

WEI_PER_ETH = Decimal(10) ** 18

SUCCESS = "success"
FAILED = "failed"


def wei_to_eth(amount: int) -> Decimal:
    return Decimal(amount) / WEI_PER_ETH


def eth_to_wei(amount: Decimal) -> int:
    return int(Decimal(amount) * WEI_PER_ETH)


@dataclass
class TokenBalance:
    """
    Balance of one ERC-20 fee token held by the fee account
    """
    address: str
    symbol: str
    decimals: int
    amount: int

    @property
    def units(self) -> Decimal:
        return Decimal(self.amount) / (Decimal(10) ** self.decimals)


@dataclass
class FeeBalance:
    """
    Snapshot of the fee account holdings for one poll cycle
    """
    eth_wei: int
    tokens: List[TokenBalance] = field(default_factory=list)


@dataclass
class SaleQuote:
    """
    Router quote for selling a full token balance for ETH
    """
    token: TokenBalance
    amount_in: int
    reference_out: int
    expected_out: int


@dataclass
class LiquidationAttempt:
    """
    One sell of a fee token for ETH
    """
    token: str
    symbol: str
    decimals: int
    amount_in: int
    reference_value: int
    min_output: int
    proceeds: int = 0
    tx_hash: Optional[str] = None
    status: str = FAILED
    reason: Optional[str] = None

    @property
    def units(self) -> Decimal:
        return Decimal(self.amount_in) / (Decimal(10) ** self.decimals)

    @property
    def succeeded(self) -> bool:
        return self.status == SUCCESS

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class TransferAttempt:
    """
    One ETH transfer from the fee account to the accumulator
    """
    amount: int
    destination: str
    tx_hash: Optional[str] = None
    status: str = FAILED
    reason: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == SUCCESS

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class CycleOutcome:
    """
    Typed result of a single poll cycle
    """
    liquidations: List[LiquidationAttempt] = field(default_factory=list)
    transfer: Optional[TransferAttempt] = None
    error_kind: Optional[str] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def idle(self) -> bool:
        """
        True when the cycle neither sold nor transferred anything
        """
        return self.ok and not self.liquidations and self.transfer is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "liquidations": [attempt.to_dict() for attempt in self.liquidations],
            "transfer": self.transfer.to_dict() if self.transfer else None,
            "error_kind": self.error_kind,
            "error": self.error,
        }

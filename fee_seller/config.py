import os
import re
from decimal import Decimal
from typing import Dict, Any, Mapping, Optional, Tuple

from dotenv import load_dotenv
from eth_account import Account
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .errors import ConfigError

UNISWAP_V2_ROUTER = "0x7a250d5630B4cF539739dF2C5dAcb4c659F2488D"

# Per-network constants
NETWORKS = {
    "mainnet": {"chain_id": 1, "router": UNISWAP_V2_ROUTER},
    "ropsten": {"chain_id": 3, "router": UNISWAP_V2_ROUTER},
    "rinkeby": {"chain_id": 4, "router": UNISWAP_V2_ROUTER},
    "goerli": {"chain_id": 5, "router": UNISWAP_V2_ROUTER},
    "localhost": {"chain_id": 9, "router": None},
}

# Environment variable -> config field
ENV_FIELDS = {
    "FEE_ACCOUNT_PRIVATE_KEY": "fee_account_private_key",
    "MAX_LIQUIDATION_FEE_PERCENT": "max_liquidation_fee_percent",
    "FEE_ACCUMULATOR_ADDRESS": "fee_accumulator_address",
    "ETH_NETWORK": "eth_network",
    "WEB3_URL": "web3_url",
    "NOTIFICATION_WEBHOOK_URL": "notification_webhook_url",
    "MAX_LIQUIDATION_FEE_SLIPPAGE": "max_liquidation_fee_slippage",
    "ETH_TRANSFER_THRESHOLD": "eth_transfer_threshold",
    "FEE_TOKENS": "fee_tokens",
    "MIN_SELL_VALUE_ETH": "min_sell_value_eth",
    "ETH_GAS_RESERVE": "eth_gas_reserve",
    "POLL_INTERVAL_SECONDS": "poll_interval_seconds",
    "MAX_BACKOFF_SECONDS": "max_backoff_seconds",
    "RPC_TIMEOUT_SECONDS": "rpc_timeout_seconds",
    "CONFIRMATION_TIMEOUT_SECONDS": "confirmation_timeout_seconds",
    "WEBHOOK_TIMEOUT_SECONDS": "webhook_timeout_seconds",
    "DEX_ROUTER_ADDRESS": "dex_router_address",
    "JOURNAL_FILE": "journal_file",
    "LOG_LEVEL": "log_level",
}

REQUIRED_ENV = (
    "FEE_ACCOUNT_PRIVATE_KEY",
    "MAX_LIQUIDATION_FEE_PERCENT",
    "FEE_ACCUMULATOR_ADDRESS",
    "ETH_NETWORK",
    "WEB3_URL",
    "NOTIFICATION_WEBHOOK_URL",
)

_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")
_PRIVATE_KEY_RE = re.compile(r"^(0x)?[0-9a-fA-F]{64}$")


def _check_address(value: str, name: str) -> str:
    value = value.strip()
    if not _ADDRESS_RE.match(value):
        raise ValueError(f"{name} is not a valid hex address: {value!r}")
    return value


class FeeSellerConfig(BaseModel):
    """
    Process-wide fee seller settings, loaded once at startup
    """
    model_config = ConfigDict(frozen=True)

    # Required
    fee_account_private_key: str = Field(repr=False)
    max_liquidation_fee_percent: Decimal
    fee_accumulator_address: str
    eth_network: str
    web3_url: str
    notification_webhook_url: str

    # Optional
    max_liquidation_fee_slippage: Decimal = Decimal("1.0")   # percent
    eth_transfer_threshold: Decimal = Decimal("1.0")         # ETH
    fee_tokens: Tuple[str, ...] = ()
    min_sell_value_eth: Decimal = Decimal("0.05")
    eth_gas_reserve: Decimal = Decimal("0.05")
    poll_interval_seconds: float = 60.0
    max_backoff_seconds: float = 900.0
    rpc_timeout_seconds: float = 30.0
    confirmation_timeout_seconds: float = 300.0
    webhook_timeout_seconds: float = 10.0
    dex_router_address: Optional[str] = None
    journal_file: Optional[str] = "fee_seller_log.json"
    log_level: str = "INFO"

    @field_validator("fee_account_private_key")
    @classmethod
    def _validate_private_key(cls, value: str) -> str:
        value = value.strip()
        if not _PRIVATE_KEY_RE.match(value):
            raise ValueError("must be 32 bytes of hex, optionally 0x-prefixed")
        if not value.startswith("0x"):
            value = "0x" + value
        try:
            Account.from_key(value)
        except Exception as e:
            raise ValueError("is not a usable secp256k1 private key") from e
        return value

    @field_validator("fee_accumulator_address")
    @classmethod
    def _validate_accumulator(cls, value: str) -> str:
        return _check_address(value, "fee accumulator address")

    @field_validator("dex_router_address")
    @classmethod
    def _validate_router(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return _check_address(value, "DEX router address")

    @field_validator("fee_tokens", mode="before")
    @classmethod
    def _split_fee_tokens(cls, value: Any) -> Tuple[str, ...]:
        if isinstance(value, str):
            value = [item for item in value.split(",") if item.strip()]

        tokens = []
        seen = set()
        for item in value:
            address = _check_address(item, "fee token")
            if address.lower() in seen:
                continue
            seen.add(address.lower())
            tokens.append(address)
        return tuple(tokens)

    @field_validator("eth_network")
    @classmethod
    def _validate_network(cls, value: str) -> str:
        value = value.strip().lower()
        if value not in NETWORKS:
            raise ValueError(f"unknown network {value!r}, expected one of {sorted(NETWORKS)}")
        return value

    @field_validator("web3_url", "notification_webhook_url")
    @classmethod
    def _validate_url(cls, value: str) -> str:
        value = value.strip()
        if not value.startswith(("http://", "https://")):
            raise ValueError("must be an http(s) URL")
        return value

    @field_validator("max_liquidation_fee_percent", "max_liquidation_fee_slippage")
    @classmethod
    def _validate_percent(cls, value: Decimal) -> Decimal:
        if not 0 <= value < 100:
            raise ValueError("must be a percent in [0, 100)")
        return value

    @field_validator("eth_transfer_threshold", "min_sell_value_eth", "eth_gas_reserve")
    @classmethod
    def _validate_non_negative(cls, value: Decimal) -> Decimal:
        if value < 0:
            raise ValueError("must not be negative")
        return value

    @field_validator(
        "poll_interval_seconds",
        "max_backoff_seconds",
        "rpc_timeout_seconds",
        "confirmation_timeout_seconds",
        "webhook_timeout_seconds",
    )
    @classmethod
    def _validate_positive(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @field_validator("log_level")
    @classmethod
    def _validate_log_level(cls, value: str) -> str:
        value = value.strip().upper()
        if value not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"unknown log level {value!r}")
        return value

    @model_validator(mode="after")
    def _validate_combination(self) -> "FeeSellerConfig":
        if self.max_liquidation_fee_percent + self.max_liquidation_fee_slippage >= 100:
            raise ValueError("max fee percent plus max slippage must stay below 100")
        if self.router_address is None:
            raise ValueError(f"DEX_ROUTER_ADDRESS is required on network {self.eth_network!r}")
        return self

    @property
    def chain_id(self) -> int:
        """Chain id expected from the RPC endpoint"""
        return NETWORKS[self.eth_network]["chain_id"]

    @property
    def router_address(self) -> Optional[str]:
        """Configured router, falling back to the network default"""
        return self.dex_router_address or NETWORKS[self.eth_network]["router"]


def load_config(environ: Optional[Mapping[str, str]] = None) -> FeeSellerConfig:
    """
    Build the configuration from environment variables

    Args:
        environ: Mapping to read from (default: os.environ after loading .env)

    Returns:
        FeeSellerConfig: Validated, immutable configuration

    Raises:
        ConfigError: If a required variable is missing or a value is malformed
    """
    if environ is None:
        load_dotenv()
        environ = os.environ

    values: Dict[str, Any] = {}
    for env_name, field_name in ENV_FIELDS.items():
        raw = environ.get(env_name)
        if raw is not None and raw.strip():
            values[field_name] = raw.strip()

    missing = [name for name in REQUIRED_ENV if ENV_FIELDS[name] not in values]
    if missing:
        raise ConfigError(f"Missing required environment variables: {', '.join(missing)}")

    try:
        return FeeSellerConfig(**values)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'config'}: {err['msg']}"
            for err in e.errors()
        )
        raise ConfigError(f"Invalid configuration: {problems}") from e

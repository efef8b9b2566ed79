"""Configuration containers for the gasless relayer."""

from __future__ import annotations

import os
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

from dotenv import load_dotenv
from web3 import Web3

from ..constants import (
    BPS_DENOMINATOR,
    DEFAULT_EIP712_NAME,
    DEFAULT_EIP712_VERSION,
    PYUSD_USD_PRICE_FEED_ID,
    USDC_USD_PRICE_FEED_ID,
    SignatureSchemeName,
)
from ..exceptions import MisconfiguredChainError, ValidationError

DEFAULT_REQUEST_TIMEOUT = 10.0
DEFAULT_PRICE_TIMEOUT = 5.0
DEFAULT_RECEIPT_TIMEOUT = 120.0
DEFAULT_PRICE_TTL = 30.0
DEFAULT_GAS_PRICE_TTL = 30.0
DEFAULT_REPLAY_TTL = 600.0
DEFAULT_REPLAY_MAX_ENTRIES = 10_000
DEFAULT_MAX_BATCH_SIZE = 10
DEFAULT_MAX_DEADLINE_WINDOW = 24 * 60 * 60
DEFAULT_BUFFER_MULTIPLIER = Decimal("1.2")
DEFAULT_PRICE_SERVICE_URL = "https://hermes.pyth.network"

_ENV_PLACEHOLDER = re.compile(r"\$\{([^}]+)\}")


@dataclass(frozen=True)
class GasPolicy:
    """Static gas defaults and bounds for one chain."""

    max_fee_per_gas: int
    max_priority_fee_per_gas: int
    gas_limit_cap: int
    buffer_multiplier: Decimal = DEFAULT_BUFFER_MULTIPLIER
    max_gas_price: int | None = None


@dataclass(frozen=True)
class FeePolicy:
    """Relayer fee settings; bps are basis points of the transfer amount."""

    base_fee_bps: int
    max_fee_bps: int
    min_fee_usd: Decimal

    def __post_init__(self) -> None:
        if not 0 <= self.base_fee_bps <= self.max_fee_bps <= BPS_DENOMINATOR:
            raise MisconfiguredChainError(
                f"Fee bps must satisfy 0 <= base ({self.base_fee_bps}) <= "
                f"max ({self.max_fee_bps}) <= {BPS_DENOMINATOR}",
                field="feeSettings",
                details={"base_fee_bps": self.base_fee_bps, "max_fee_bps": self.max_fee_bps},
            )
        if self.min_fee_usd < 0:
            raise MisconfiguredChainError(
                "Minimum fee cannot be negative",
                field="feeSettings",
                details={"min_fee_usd": str(self.min_fee_usd)},
            )


@dataclass(frozen=True)
class TokenProfile:
    symbol: str
    contract_address: str
    decimals: int
    price_feed_id: str | None = None
    name: str | None = None


@dataclass(frozen=True)
class ChainProfile:
    """Immutable per-chain configuration owned by the chain registry."""

    chain_id: int
    name: str
    rpc_url: str
    contract_address: str
    explorer_url: str
    gas_policy: GasPolicy
    fee_policy: FeePolicy
    tokens: Mapping[str, TokenProfile] = field(default_factory=dict)
    native_decimals: int = 18
    signature_scheme: SignatureSchemeName = SignatureSchemeName.TYPED_DATA
    eip712_name: str = DEFAULT_EIP712_NAME
    eip712_version: str = DEFAULT_EIP712_VERSION

    def explorer_tx_url(self, tx_hash: str) -> str:
        return f"{self.explorer_url.rstrip('/')}/tx/{tx_hash}"


@dataclass(frozen=True)
class RelayerConfig:
    """Process-wide relayer settings."""

    private_key: str
    price_service_url: str = DEFAULT_PRICE_SERVICE_URL
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    price_timeout: float = DEFAULT_PRICE_TIMEOUT
    receipt_timeout: float = DEFAULT_RECEIPT_TIMEOUT
    wait_for_receipt: bool = True
    price_ttl: float = DEFAULT_PRICE_TTL
    gas_price_ttl: float = DEFAULT_GAS_PRICE_TTL
    replay_ttl: float = DEFAULT_REPLAY_TTL
    replay_max_entries: int = DEFAULT_REPLAY_MAX_ENTRIES
    max_batch_size: int = DEFAULT_MAX_BATCH_SIZE
    max_deadline_window: int = DEFAULT_MAX_DEADLINE_WINDOW

    @classmethod
    def from_env(cls, *, dotenv_path: str | None = None) -> RelayerConfig:
        """Build the configuration from environment variables (and an optional .env file).

        Raises:
            ValidationError: If RELAYER_PRIVATE_KEY is missing
        """
        load_dotenv(dotenv_path)

        private_key = os.environ.get("RELAYER_PRIVATE_KEY")
        if not private_key:
            raise ValidationError(
                "RELAYER_PRIVATE_KEY environment variable is required",
                field="RELAYER_PRIVATE_KEY",
            )

        return cls(
            private_key=private_key,
            price_service_url=os.environ.get("PYTH_HERMES_API_URL", DEFAULT_PRICE_SERVICE_URL),
            request_timeout=_env_float("RPC_TIMEOUT", DEFAULT_REQUEST_TIMEOUT),
            price_timeout=_env_float("PRICE_TIMEOUT", DEFAULT_PRICE_TIMEOUT),
            receipt_timeout=_env_float("RECEIPT_TIMEOUT", DEFAULT_RECEIPT_TIMEOUT),
            wait_for_receipt=os.environ.get("WAIT_FOR_RECEIPT", "true").lower() != "false",
        )


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ValidationError(f"{name} must be numeric", field=name, value=raw) from exc


def expand_env_placeholders(value: Any) -> Any:
    """Replace ``${VAR}`` placeholders in strings (recursively) with environment values."""

    if isinstance(value, str):
        return _ENV_PLACEHOLDER.sub(lambda match: os.environ.get(match.group(1), ""), value)
    if isinstance(value, Mapping):
        return {key: expand_env_placeholders(item) for key, item in value.items()}
    if isinstance(value, list | tuple):
        return [expand_env_placeholders(item) for item in value]
    return value


def _address_or_empty(value: Any) -> str:
    if not value:
        return ""
    try:
        return Web3.to_checksum_address(str(value))
    except ValueError as exc:
        raise ValidationError("Invalid address in chain configuration", value=value) from exc


def chain_profile_from_mapping(name: str, data: Mapping[str, Any]) -> ChainProfile:
    """Build a ChainProfile from the relayer's chain configuration format."""

    data = expand_env_placeholders(data)
    fee_settings = data.get("feeSettings") or {}
    gas_settings = data.get("gasSettings") or {}

    tokens: dict[str, TokenProfile] = {}
    for symbol, entry in (data.get("tokens") or {}).items():
        tokens[str(symbol).upper()] = TokenProfile(
            symbol=str(entry.get("symbol") or symbol).upper(),
            contract_address=_address_or_empty(entry.get("address")),
            decimals=int(entry.get("decimals", 18)),
            price_feed_id=entry.get("priceFeedId") or entry.get("priceId") or None,
            name=entry.get("name"),
        )

    multiplier = gas_settings.get("bufferMultiplier")
    max_gas_price = gas_settings.get("maxGasPrice")
    scheme = data.get("signatureScheme") or SignatureSchemeName.TYPED_DATA.value

    try:
        signature_scheme = SignatureSchemeName(scheme)
    except ValueError as exc:
        raise ValidationError(
            f"Unknown signature scheme '{scheme}'", field="signatureScheme", value=scheme
        ) from exc

    return ChainProfile(
        chain_id=int(data.get("chainId") or data["id"]),
        name=str(data.get("name") or name),
        rpc_url=str(data.get("rpcUrl") or ""),
        contract_address=_address_or_empty(
            data.get("contractAddress") or data.get("gaslessContract")
        ),
        explorer_url=str(data.get("explorerUrl") or ""),
        native_decimals=int((data.get("nativeCurrency") or {}).get("decimals", 18)),
        gas_policy=GasPolicy(
            max_fee_per_gas=int(gas_settings.get("maxFeePerGas", 0)),
            max_priority_fee_per_gas=int(gas_settings.get("maxPriorityFeePerGas", 0)),
            gas_limit_cap=int(gas_settings.get("gasLimit", 0)),
            buffer_multiplier=(
                Decimal(str(multiplier)) if multiplier is not None else DEFAULT_BUFFER_MULTIPLIER
            ),
            max_gas_price=int(max_gas_price) if max_gas_price is not None else None,
        ),
        fee_policy=FeePolicy(
            base_fee_bps=int(fee_settings.get("baseFeeBps", 0)),
            max_fee_bps=int(fee_settings.get("maxFeeBps", 0)),
            min_fee_usd=Decimal(str(fee_settings.get("minFeeUsd", 0))),
        ),
        tokens=tokens,
        signature_scheme=signature_scheme,
        eip712_name=str(data.get("eip712Name") or DEFAULT_EIP712_NAME),
        eip712_version=str(data.get("eip712Version") or DEFAULT_EIP712_VERSION),
    )


def default_chain_settings() -> dict[str, dict[str, Any]]:
    """Chain settings for the reference testnet deployment, with ``${VAR}`` placeholders."""

    fee_settings = {
        "minFeeUsd": os.environ.get("MINIMUM_FEE_USD", "0.10"),
        "maxFeeBps": int(os.environ.get("MAXIMUM_FEE_BPS", "500")),
    }
    usdc_feed = os.environ.get("USDC_USD_PRICE_FEED_ID", USDC_USD_PRICE_FEED_ID)
    pyusd_feed = os.environ.get("PYUSD_USD_PRICE_FEED_ID", PYUSD_USD_PRICE_FEED_ID)

    return {
        "kadena-testnet": {
            "chainId": 5920,
            "name": "Kadena Testnet",
            "rpcUrl": os.environ.get(
                "KADENA_TESTNET_RPC_URL",
                "https://evm-testnet.chainweb.com/chainweb/0.0/evm-testnet/chain/20/evm/rpc",
            ),
            "explorerUrl": "https://chain-20.evm-testnet-blockscout.chainweb.com",
            "contractAddress": "${KADENA_GASLESS_CONTRACT}",
            "tokens": {
                "TUSDC": {
                    "address": os.environ.get(
                        "KADENA_TUSDC_ADDRESS", "0x7EDfA2193d4c2664C9e0128Ae25Ae5c9eC72D365"
                    ),
                    "decimals": 6,
                    "name": "Test USDC",
                    "priceFeedId": usdc_feed,
                }
            },
            "feeSettings": {
                **fee_settings,
                "baseFeeBps": int(os.environ.get("KADENA_FEE_BPS", "25")),
            },
            "gasSettings": {
                "maxFeePerGas": 2_000_000_000,
                "maxPriorityFeePerGas": 1_500_000_000,
                "gasLimit": 300_000,
            },
        },
        "base-sepolia": {
            "chainId": 84532,
            "name": "Base Sepolia",
            "rpcUrl": os.environ.get("BASE_TESTNET_RPC_URL", "https://sepolia.base.org"),
            "explorerUrl": "https://sepolia.basescan.org",
            "contractAddress": "${BASE_GASLESS_CONTRACT}",
            "tokens": {
                "USDC": {
                    "address": os.environ.get(
                        "BASE_USDC_ADDRESS", "0x036CbD53842c5426634e7929541eC2318f3dCF7e"
                    ),
                    "decimals": 6,
                    "name": "USD Coin",
                    "priceFeedId": usdc_feed,
                }
            },
            "feeSettings": {
                **fee_settings,
                "baseFeeBps": int(os.environ.get("BASE_FEE_BPS", "25")),
            },
            "gasSettings": {
                "maxFeePerGas": 2_000_000_000,
                "maxPriorityFeePerGas": 1_000_000_000,
                "gasLimit": 200_000,
            },
        },
        "arbitrum-sepolia": {
            "chainId": 421614,
            "name": "Arbitrum Sepolia",
            "rpcUrl": os.environ.get(
                "ARBITRUM_TESTNET_RPC_URL", "https://sepolia-rollup.arbitrum.io/rpc"
            ),
            "explorerUrl": "https://sepolia.arbiscan.io",
            "contractAddress": "${ARBITRUM_GASLESS_CONTRACT}",
            "tokens": {
                "PYUSD": {
                    "address": os.environ.get(
                        "ARBITRUM_PYUSD_ADDRESS", "0x637A1259C6afd7E3AdF63993cA7E58BB438aB1B1"
                    ),
                    "decimals": 6,
                    "name": "PayPal USD",
                    "priceFeedId": pyusd_feed,
                },
                "USDC": {
                    "address": os.environ.get(
                        "ARBITRUM_USDC_ADDRESS", "0x75faf114eafb1BDbe2F0316DF893fd58CE46AA4d"
                    ),
                    "decimals": 6,
                    "name": "USD Coin",
                    "priceFeedId": usdc_feed,
                },
            },
            "feeSettings": {
                **fee_settings,
                "baseFeeBps": int(os.environ.get("ARBITRUM_FEE_BPS", "25")),
            },
            "gasSettings": {
                "maxFeePerGas": 100_000_000,
                "maxPriorityFeePerGas": 10_000_000,
                "gasLimit": 500_000,
            },
        },
    }

"""Gas limit estimation and cached per-chain gas pricing."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

from web3.exceptions import Web3Exception

from ..exceptions import NetworkError
from ..types import GasEstimate, ResolvedTransfer
from .cache import TTLCache
from .config import DEFAULT_GAS_PRICE_TTL, ChainProfile, GasPolicy
from .connections import CONTRACT_CALL_ERRORS, Web3Connections
from .transactions import build_transfer_call, revert_error_from_exception

logger = logging.getLogger(__name__)

BASE_FEE_MULTIPLIER = 2
FEE_BUFFER_PERCENT = 110
REASONABLE_PRICE_PERCENT = 150


@dataclass(frozen=True)
class GasPrice:
    max_fee_per_gas: int
    max_priority_fee_per_gas: int
    legacy: bool = False
    source: str = "network"


def buffered_gas_limit(raw_estimate: int, multiplier: Decimal, cap: int) -> int:
    """Return ``ceil(raw_estimate * multiplier)`` capped at ``cap``."""

    numerator, denominator = Decimal(multiplier).as_integer_ratio()
    buffered = -(-raw_estimate * numerator // denominator)
    return min(buffered, cap)


def clamp_gas_price(price: GasPrice, policy: GasPolicy) -> GasPrice:
    max_fee = price.max_fee_per_gas
    if policy.max_gas_price is not None:
        max_fee = min(max_fee, policy.max_gas_price)
    priority = min(price.max_priority_fee_per_gas, max_fee)
    if max_fee == price.max_fee_per_gas and priority == price.max_priority_fee_per_gas:
        return price
    return GasPrice(max_fee, priority, legacy=price.legacy, source=price.source)


class _FeeDataUnavailable(Exception):
    pass


class GasEstimator:
    """Estimate gas limits for relay calls and price them from cached fee data."""

    def __init__(
        self,
        connections: Web3Connections,
        *,
        ttl: float = DEFAULT_GAS_PRICE_TTL,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._connections = connections
        self._cache: TTLCache[int, GasPrice] = TTLCache(ttl, clock=clock)

    def estimate(self, chain: ChainProfile, transfer: ResolvedTransfer) -> GasEstimate:
        policy = chain.gas_policy
        raw_estimate = self._raw_estimate(chain, transfer)

        if raw_estimate is None:
            gas_limit = policy.gas_limit_cap
            source = "fallback"
        else:
            gas_limit = buffered_gas_limit(
                raw_estimate, policy.buffer_multiplier, policy.gas_limit_cap
            )
            source = "network"

        price = self.gas_price(chain)
        logger.debug(
            "Gas estimate for chain %s: raw=%s limit=%s maxFee=%s priority=%s",
            chain.chain_id,
            raw_estimate,
            gas_limit,
            price.max_fee_per_gas,
            price.max_priority_fee_per_gas,
        )
        return GasEstimate(
            gas_limit=gas_limit,
            max_fee_per_gas=price.max_fee_per_gas,
            max_priority_fee_per_gas=price.max_priority_fee_per_gas,
            raw_estimate=raw_estimate,
            source=source,
            legacy=price.legacy,
        )

    def gas_price(self, chain: ChainProfile) -> GasPrice:
        """Current fee data for ``chain``; static policy values when the node has none."""

        try:
            price = self._cache.get_or_load(chain.chain_id, lambda: self._fetch_gas_price(chain))
        except _FeeDataUnavailable as exc:
            logger.warning(
                "Fee data unavailable for chain %s, using configured defaults: %s",
                chain.chain_id,
                exc,
            )
            price = GasPrice(
                chain.gas_policy.max_fee_per_gas,
                chain.gas_policy.max_priority_fee_per_gas,
                source="default",
            )
        return clamp_gas_price(price, chain.gas_policy)

    def transaction_cost(self, chain: ChainProfile, gas_used: int) -> int:
        """Upper bound, in wei, for a transaction using ``gas_used``."""
        return gas_used * self.gas_price(chain).max_fee_per_gas

    def is_gas_price_reasonable(self, chain: ChainProfile, max_fee_per_gas: int) -> bool:
        current = self.gas_price(chain).max_fee_per_gas
        return max_fee_per_gas * 100 <= current * REASONABLE_PRICE_PERCENT

    def clear_cache(self) -> None:
        self._cache.clear()

    def cache_stats(self) -> dict[str, Any]:
        return self._cache.stats()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _raw_estimate(self, chain: ChainProfile, transfer: ResolvedTransfer) -> int | None:
        contract = self._connections.gasless_contract(chain)
        relayer = self._connections.account.address
        contract_function = build_transfer_call(contract, transfer)

        try:
            return int(contract_function.estimate_gas({"from": relayer}))
        except CONTRACT_CALL_ERRORS as exc:
            logger.info("Gas simulation reverted on chain %s: %s", chain.chain_id, exc)
            raise revert_error_from_exception(exc) from exc
        except Exception as exc:
            logger.warning(
                "Gas estimation failed on chain %s, using gas limit cap %s: %s",
                chain.chain_id,
                chain.gas_policy.gas_limit_cap,
                exc,
            )
            return None

    def _fetch_gas_price(self, chain: ChainProfile) -> GasPrice:
        try:
            web3 = self._connections.web3(chain)
            block = web3.eth.get_block("latest")
            base_fee = block.get("baseFeePerGas")
            if base_fee is None:
                gas_price = int(web3.eth.gas_price)
                return GasPrice(gas_price, gas_price, legacy=True)

            priority = int(web3.eth.max_priority_fee)
        except (NetworkError, Web3Exception, OSError, ValueError, KeyError) as exc:
            raise _FeeDataUnavailable(str(exc)) from exc

        max_fee = BASE_FEE_MULTIPLIER * int(base_fee) + priority
        max_fee = max_fee * FEE_BUFFER_PERCENT // 100
        logger.debug(
            "Fetched fee data for chain %s: baseFee=%s priority=%s maxFee=%s",
            chain.chain_id,
            base_fee,
            priority,
            max_fee,
        )
        return GasPrice(max_fee, priority)

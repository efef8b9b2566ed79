"""Relayer fee computation."""

from __future__ import annotations

import logging
from decimal import ROUND_DOWN, Decimal

from ..constants import BPS_DENOMINATOR
from ..exceptions import PriceUnavailableError, RelayError, ValidationError
from ..types import FeeBreakdown, FeeEstimateRequest, FeeEstimateResponse
from ..utils import format_units
from .config import ChainProfile, TokenProfile
from .oracle import PriceOracleClient, usd_to_token_units
from .registry import ChainRegistry

logger = logging.getLogger(__name__)

USD_DISPLAY_QUANTUM = Decimal("0.000001")


def percentage_of(amount: int, bps: int) -> int:
    return amount * bps // BPS_DENOMINATOR


class FeeCalculator:
    """Compute the fee a relayer keeps for a transfer.

    The fee is the percentage fee raised to the USD minimum, then capped at
    the maximum percentage.  Without a price the minimum floor is skipped.
    """

    def __init__(self, oracle: PriceOracleClient, registry: ChainRegistry | None = None):
        self._oracle = oracle
        self._registry = registry

    def compute_fee(self, chain: ChainProfile, token: TokenProfile, amount: int) -> FeeBreakdown:
        if amount <= 0:
            raise ValidationError("Amount must be greater than zero", field="amount", value=amount)

        policy = chain.fee_policy
        percentage_fee = percentage_of(amount, policy.base_fee_bps)
        max_fee_allowed = percentage_of(amount, policy.max_fee_bps)

        usd_price: Decimal | None = None
        min_fee_tokens = 0
        degraded = False
        if token.price_feed_id:
            try:
                quote = self._oracle.get_usd_price(token.price_feed_id)
            except PriceUnavailableError as exc:
                logger.warning(
                    "Price unavailable for %s on chain %s, using percentage fee only: %s",
                    token.symbol,
                    chain.chain_id,
                    exc.message,
                )
                degraded = True
            else:
                usd_price = quote.usd_price
                min_fee_tokens = usd_to_token_units(policy.min_fee_usd, usd_price, token.decimals)
        else:
            logger.warning(
                "No price feed configured for %s on chain %s, using percentage fee only",
                token.symbol,
                chain.chain_id,
            )
            degraded = True

        relayer_fee = min(max(percentage_fee, min_fee_tokens), max_fee_allowed)

        fee_usd = "0"
        if usd_price is not None:
            value = format_units(relayer_fee, token.decimals) * usd_price
            fee_usd = str(value.quantize(USD_DISPLAY_QUANTUM, rounding=ROUND_DOWN))

        logger.info(
            "Fee calculated for %s %s on chain %s: %s (percentage=%s, minimum=%s, cap=%s)",
            amount,
            token.symbol,
            chain.chain_id,
            relayer_fee,
            percentage_fee,
            min_fee_tokens,
            max_fee_allowed,
        )
        return FeeBreakdown(
            relayer_fee=relayer_fee,
            percentage_fee=percentage_fee,
            min_fee_tokens=min_fee_tokens,
            max_fee_allowed=max_fee_allowed,
            degraded=degraded,
            usd_price=usd_price,
            fee_usd=fee_usd,
        )

    def estimate(self, request: FeeEstimateRequest) -> FeeEstimateResponse:
        """Quote the fee for a prospective transfer; errors become a failed response."""

        if self._registry is None:
            raise RuntimeError("FeeCalculator.estimate requires a chain registry")

        try:
            chain = self._registry.resolve(request.chain_id)
            token = self._registry.resolve_token(chain.chain_id, request.token_symbol)
            breakdown = self.compute_fee(chain, token, request.amount)
        except RelayError as exc:
            logger.debug("Fee estimate rejected: %s", exc.message)
            return FeeEstimateResponse(
                success=False, fee="0", fee_usd="0", message=exc.message, error_kind=exc.kind
            )

        return FeeEstimateResponse(
            success=True, fee=str(breakdown.relayer_fee), fee_usd=breakdown.fee_usd
        )

"""USD price lookups against a Pyth Hermes compatible price service."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import replace
from decimal import ROUND_DOWN, Decimal, InvalidOperation
from typing import Any

import requests

from ..exceptions import InvalidPriceDataError, NetworkError, PriceUnavailableError
from ..types import PriceQuote
from .cache import TTLCache
from .config import DEFAULT_PRICE_SERVICE_URL, DEFAULT_PRICE_TIMEOUT, DEFAULT_PRICE_TTL

logger = logging.getLogger(__name__)

LATEST_PRICE_PATH = "/v2/updates/price/latest"


def normalise_feed_id(feed_id: str) -> str:
    feed = feed_id.strip().lower()
    return feed[2:] if feed.startswith("0x") else feed


class PriceOracleClient:
    """Fetch and cache USD prices per feed; stale quotes are served when the oracle is down."""

    def __init__(
        self,
        session: requests.Session,
        *,
        base_url: str = DEFAULT_PRICE_SERVICE_URL,
        request_timeout: float = DEFAULT_PRICE_TIMEOUT,
        ttl: float = DEFAULT_PRICE_TTL,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._session = session
        self._base_url = base_url.rstrip("/")
        self._request_timeout = request_timeout
        self._clock = clock
        self._cache: TTLCache[str, PriceQuote] = TTLCache(ttl, clock=clock)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def get_usd_price(self, feed_id: str) -> PriceQuote:
        key = normalise_feed_id(feed_id)

        try:
            return self._cache.get_or_load(key, lambda: self._fetch([key])[key])
        except InvalidPriceDataError:
            raise
        except (NetworkError, PriceUnavailableError) as exc:
            return self._stale_or_raise(key, exc)

    def get_usd_prices(self, feed_ids: Iterable[str]) -> dict[str, PriceQuote]:
        """Return quotes for several feeds with one outbound fetch for the missing ones.

        Feeds that cannot be priced (no fresh or stale quote) are omitted.
        """

        keys = list(dict.fromkeys(normalise_feed_id(feed) for feed in feed_ids))
        quotes: dict[str, PriceQuote] = {}
        missing: list[str] = []
        for key in keys:
            cached = self._cache.get_fresh(key)
            if cached is not None:
                quotes[key] = cached
            else:
                missing.append(key)

        if not missing:
            return quotes

        try:
            fetched = self._fetch(missing)
        except (NetworkError, PriceUnavailableError) as exc:
            logger.error("Failed to fetch multiple prices: %s", exc)
            fetched = {}

        for key in missing:
            quote = fetched.get(key)
            if quote is not None:
                self._cache.put(key, quote)
                quotes[key] = quote
                continue
            stale = self._cache.peek(key)
            if stale is not None:
                quotes[key] = replace(stale.value, stale=True)

        logger.debug("Retrieved %s prices from price service", len(quotes))
        return quotes

    def to_usd(self, amount: int, decimals: int, feed_id: str) -> Decimal:
        """Convert token base units into a USD value."""
        quote = self.get_usd_price(feed_id)
        return (Decimal(amount) / (Decimal(10) ** decimals)) * quote.usd_price

    def from_usd(self, usd_amount: Decimal | float | str, decimals: int, feed_id: str) -> int:
        """Convert a USD value into token base units, rounding toward zero."""
        quote = self.get_usd_price(feed_id)
        return usd_to_token_units(usd_amount, quote.usd_price, decimals)

    def clear_expired(self) -> int:
        return self._cache.clear_expired()

    def cache_stats(self) -> dict[str, Any]:
        return self._cache.stats()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _stale_or_raise(self, key: str, exc: Exception) -> PriceQuote:
        stale = self._cache.peek(key)
        if stale is None:
            logger.error("Failed to fetch price for %s and no cached quote exists: %s", key, exc)
            raise PriceUnavailableError(key, details={"error": str(exc)}) from exc

        logger.warning(
            "Serving stale price for %s (age=%.1fs) after fetch failure: %s",
            key,
            self._clock() - stale.stored_at,
            exc,
        )
        return replace(stale.value, stale=True)

    def _fetch(self, keys: Sequence[str]) -> dict[str, PriceQuote]:
        url = f"{self._base_url}{LATEST_PRICE_PATH}"
        logger.debug("Fetching prices for %s from %s", list(keys), url)

        try:
            response = self._session.get(
                url,
                params={"ids[]": [f"0x{key}" for key in keys], "parsed": "true"},
                timeout=self._request_timeout,
            )
            response.raise_for_status()
            payload = response.json()
        except requests.RequestException as exc:
            raise NetworkError(
                "Price service request failed",
                endpoint=url,
                status_code=getattr(getattr(exc, "response", None), "status_code", None),
                details={"error": str(exc)},
            ) from exc
        except ValueError as exc:
            raise NetworkError(
                "Price service returned invalid JSON", endpoint=url, details={"error": str(exc)}
            ) from exc

        entries = _extract_entries(payload)
        if not entries:
            raise PriceUnavailableError(
                ",".join(keys), message="Price service returned no price data"
            )

        fetched_at = self._clock()
        quotes: dict[str, PriceQuote] = {}
        for entry in entries:
            quote = _parse_quote(entry, fetched_at)
            quotes[quote.feed_id] = quote

        absent = [key for key in keys if key not in quotes]
        if absent and len(keys) == 1:
            raise PriceUnavailableError(keys[0], message=f"No price data found for feed {keys[0]}")
        return quotes


def usd_to_token_units(usd_amount: Decimal | float | str, usd_price: Decimal, decimals: int) -> int:
    usd = usd_amount if isinstance(usd_amount, Decimal) else Decimal(str(usd_amount))
    if usd_price <= 0:
        raise ValueError("usd_price must be positive")
    units = (usd / usd_price) * (Decimal(10) ** decimals)
    return int(units.to_integral_value(rounding=ROUND_DOWN))


def _extract_entries(payload: Any) -> list[Mapping[str, Any]]:
    if isinstance(payload, Mapping):
        parsed = payload.get("parsed")
        if parsed is None:
            parsed = payload.get("data")
    else:
        parsed = payload
    if not isinstance(parsed, list):
        return []
    return [entry for entry in parsed if isinstance(entry, Mapping)]


def _parse_quote(entry: Mapping[str, Any], fetched_at: float) -> PriceQuote:
    feed_id = normalise_feed_id(str(entry.get("id", "")))
    price_block = entry.get("price")
    if not isinstance(price_block, Mapping):
        raise InvalidPriceDataError(feed_id, "missing price block")

    raw_mantissa = price_block.get("price", price_block.get("mantissa"))
    raw_exponent = price_block.get("expo", price_block.get("exponent"))
    try:
        mantissa = int(raw_mantissa)  # type: ignore[arg-type]
        exponent = int(raw_exponent)  # type: ignore[arg-type]
        price = Decimal(mantissa).scaleb(exponent)
    except (TypeError, ValueError, InvalidOperation) as exc:
        raise InvalidPriceDataError(
            feed_id,
            "unparseable mantissa/exponent",
            details={"mantissa": raw_mantissa, "exponent": raw_exponent},
        ) from exc

    if price <= 0:
        raise InvalidPriceDataError(feed_id, f"non-positive price {price}")

    publish_time = price_block.get("publish_time", price_block.get("publishTime"))
    return PriceQuote(
        feed_id=feed_id,
        usd_price=price,
        fetched_at=fetched_at,
        publish_time=int(publish_time) if publish_time is not None else None,
    )

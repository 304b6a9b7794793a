"""Currency conversion service.

Converts amounts between currencies using the ECB daily reference rates,
cached in the shared RateCache (12 hours by default). When the rate table
cannot be refreshed the last known table is used, and when no table has
ever been fetched the static USD-based fallback table is used. Currencies
pegged to another currency are derived from the anchor's rate.
"""

import logging
from decimal import Decimal
from typing import Any

import aiohttp
from defusedxml import ElementTree as ET

from ..config import Config
from ..exceptions import CacheMissError, ProviderUnavailableError, UnrecoverableConversionError
from ..models import ConversionResult, RateSource
from .rate_cache import RateCache

logger = logging.getLogger(__name__)

RATE_TABLE_KEY = RateCache.make_key("fx", "ecb")


class EcbRateSource:
    """Fetches the ECB euro foreign exchange reference rates."""

    name = "ecb"

    def __init__(self, url: str, timeout: float = 3.0):
        self.url = url
        self.timeout = timeout

    async def fetch_rates(self, session: aiohttp.ClientSession | None) -> dict[str, Decimal]:
        """Download and parse the reference rate table.

        Args:
            session: HTTP session for the request.

        Returns:
            Units of each currency per 1 EUR, including EUR itself.

        Raises:
            ProviderUnavailableError: No session, or the response holds no rates.
        """
        if session is None:
            raise ProviderUnavailableError("No HTTP session for rate download", provider=self.name)

        logger.info(f"Fetching exchange rates from {self.url}")
        timeout = aiohttp.ClientTimeout(total=self.timeout)
        async with session.get(self.url, timeout=timeout) as response:
            response.raise_for_status()
            content = await response.text()

        root = ET.fromstring(content)
        rates = {"EUR": Decimal("1")}
        for cube in root.iter():
            if not cube.tag.endswith("Cube"):
                continue
            currency = cube.get("currency")
            rate = cube.get("rate")
            if currency and rate:
                rates[currency.upper()] = Decimal(rate)

        if len(rates) == 1:
            raise ProviderUnavailableError("Rate table contained no currencies", provider=self.name)

        logger.info(f"Fetched {len(rates) - 1} exchange rates")
        return rates


class CurrencyConverter:
    """Converts money between currencies with cache and fallback handling."""

    def __init__(self, cache: RateCache, config: Config, rate_source: EcbRateSource | None = None):
        """Initialize the converter.

        Args:
            cache: Shared rate cache.
            config: Engine configuration with the fallback table.
            rate_source: Live rate table source, defaults to the ECB feed.
        """
        self.cache = cache
        self.config = config
        self.rate_source = rate_source or EcbRateSource(
            config.currency.rates_url, config.currency.fetch_timeout
        )
        fallback = config.currency_fallback
        self._fallback_rates: dict[str, Decimal] = {
            code.upper(): Decimal(str(rate)) for code, rate in fallback.get("rates", {}).items()
        }
        self._pegs: dict[str, dict[str, Any]] = {
            code.upper(): peg for code, peg in fallback.get("pegs", {}).items()
        }

    async def convert(
        self,
        amount: Decimal,
        from_currency: str,
        to_currency: str,
        session: aiohttp.ClientSession | None = None,
    ) -> ConversionResult:
        """Convert an amount between currencies.

        Args:
            amount: Amount in `from_currency`.
            from_currency: Source currency code.
            to_currency: Target currency code.
            session: HTTP session used if the rate table needs refreshing.

        Returns:
            ConversionResult with the unrounded converted amount.

        Raises:
            UnrecoverableConversionError: No rate exists for the pair.
        """
        rate = await self.get_rate(from_currency, to_currency, session)
        return rate.model_copy(update={"amount": amount * rate.rate})

    async def get_rate(
        self,
        from_currency: str,
        to_currency: str,
        session: aiohttp.ClientSession | None = None,
    ) -> ConversionResult:
        """Get the multiplier converting `from_currency` into `to_currency`.

        Returns:
            ConversionResult for an amount of 1.
        """
        from_currency = from_currency.upper()
        to_currency = to_currency.upper()

        if from_currency == to_currency:
            return ConversionResult(
                amount=Decimal("1"),
                rate=Decimal("1"),
                source=RateSource.EXACT,
                from_currency=from_currency,
                to_currency=to_currency,
            )

        try:
            lookup = await self.cache.get_or_fetch(
                RATE_TABLE_KEY,
                lambda: self.rate_source.fetch_rates(session),
                ttl=self.config.cache.exchange_rate_ttl,
                timeout=self.config.currency.fetch_timeout,
            )
        except CacheMissError as e:
            logger.warning(f"Exchange rate table unavailable: {e.cause}")
        else:
            rate = self._cross_rate(lookup.value, from_currency, to_currency)
            if rate is not None:
                return ConversionResult(
                    amount=rate,
                    rate=rate,
                    source=lookup.source,
                    from_currency=from_currency,
                    to_currency=to_currency,
                    stale=lookup.stale,
                )
            logger.warning(f"{from_currency}/{to_currency} not in exchange rate table")

        return self._fallback_rate(from_currency, to_currency)

    def _fallback_rate(self, from_currency: str, to_currency: str) -> ConversionResult:
        if self.config.currency.fallback_enabled:
            rate = self._cross_rate(self._fallback_rates, from_currency, to_currency)
            if rate is not None:
                logger.warning(f"Using fallback exchange rate for {from_currency}/{to_currency}: {rate}")
                return ConversionResult(
                    amount=rate,
                    rate=rate,
                    source=RateSource.FALLBACK,
                    from_currency=from_currency,
                    to_currency=to_currency,
                    stale=True,
                )

        logger.error(f"No exchange rate available for {from_currency}/{to_currency}")
        raise UnrecoverableConversionError(from_currency, to_currency)

    def _cross_rate(self, rates: dict[str, Decimal], from_currency: str, to_currency: str) -> Decimal | None:
        """Compute a cross rate from a table of units per base currency."""
        from_units = self._units(rates, from_currency)
        to_units = self._units(rates, to_currency)
        if from_units is None or to_units is None or from_units == 0:
            return None
        return to_units / from_units

    def _units(self, rates: dict[str, Decimal], currency: str) -> Decimal | None:
        if currency in rates:
            return rates[currency]

        peg = self._pegs.get(currency)
        if peg:
            anchor = rates.get(str(peg["anchor"]).upper())
            if anchor is not None:
                return anchor * Decimal(str(peg["rate"]))
        return None

    def invalidate_cache(self) -> int:
        """Drop the cached rate table."""
        removed = self.cache.invalidate_prefix(RATE_TABLE_KEY)
        logger.info(f"Exchange rate cache cleared: {removed} entries")
        return removed

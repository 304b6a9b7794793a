"""Base tax provider protocol and abstractions for jurisdiction rate lookups.

Defines the unified interface every rate provider (customs duty, GST, VAT,
sales tax) implements. Providers never raise for an unknown rate: they
return a fallback RateResult with reduced confidence instead.

Lookup order for one query:
1. fresh cached answer
2. remote API (when configured) or the local rate table
3. stale cached answer
4. local rate table, when the remote API failed
5. configured fallback rate
"""

import asyncio
import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Protocol

import aiohttp

from ..config import Config
from ..exceptions import CacheMissError, ProviderTimeoutError, ProviderUnavailableError
from ..models import MinimumValuation, RateQuery, RateResult, RateSource, ValuationBasis
from ..services.rate_cache import CacheLookup, RateCache

logger = logging.getLogger(__name__)

LIVE_CONFIDENCE = 0.9
LOCAL_CONFIDENCE = 0.7
STALE_CONFIDENCE = 0.5
FALLBACK_CONFIDENCE = 0.3
WARNING_PENALTY = 0.1


class TaxProviderProtocol(Protocol):
    """Protocol defining the interface for all jurisdiction rate providers.

    Methods:
        get_rate: Look up the rate for one item in one jurisdiction.
        fallback_result: Build the degraded answer used when no rate is available.
        get_provider_name: Get provider identifier.
    """

    async def get_rate(
        self,
        query: RateQuery,
        session: aiohttp.ClientSession | None = None,
        timeout: float | None = None,
    ) -> RateResult:
        """Look up a rate.

        Args:
            query: Jurisdiction and item classification to look up.
            session: HTTP session for remote sources.
            timeout: How long the caller waits for a refresh, in seconds.

        Returns:
            Normalized RateResult; never raises for an unknown rate.
        """
        ...

    def fallback_result(
        self, query: RateQuery, error: str | None = None, timed_out: bool = False
    ) -> RateResult:
        """Build the fallback answer for a query."""
        ...

    def get_provider_name(self) -> str:
        """Get the provider name identifier ('customs', 'gst', 'vat', 'sales_tax')."""
        ...


class BaseTaxProvider:
    """Base class providing cache handling, local tables and fallbacks.

    Subclasses implement `_fetch_remote` to normalize their API's response
    shape; the raw shape never leaves the subclass.
    """

    rate_class = "customs"

    def __init__(
        self,
        name: str,
        config: Config,
        cache: RateCache,
        api_url: str | None = None,
        api_key: str | None = None,
    ):
        """Initialize base provider.

        Args:
            name: Provider name, also the rate table section in tax_rates.yml.
            config: Engine configuration.
            cache: Shared rate cache.
            api_url: Remote rate endpoint, local table only when None.
            api_key: Credential for the remote endpoint.
        """
        self.name = name
        self.config = config
        self.cache = cache
        self.api_url = api_url
        self.api_key = api_key
        self.table: dict[str, Any] = config.tax_rates.get(name, {})
        self.logger = logging.getLogger(f"{__name__}.{name}")

    def get_provider_name(self) -> str:
        return self.name

    @property
    def ttl(self) -> int:
        return self.config.cache.ttl_for(self.rate_class)

    @property
    def has_remote(self) -> bool:
        return bool(self.api_url)

    def cache_key(self, query: RateQuery) -> str:
        return RateCache.make_key(self.name, query.jurisdiction, query.classification_code, query.category)

    async def get_rate(
        self,
        query: RateQuery,
        session: aiohttp.ClientSession | None = None,
        timeout: float | None = None,
    ) -> RateResult:
        """Look up a rate through the cache, degrading to local and fallback rates."""
        key = self.cache_key(query)
        try:
            lookup = await self.cache.get_or_fetch(
                key, lambda: self._fetch(query, session), ttl=self.ttl, timeout=timeout
            )
        except CacheMissError as e:
            cause = e.cause or e
            timed_out = isinstance(cause, ProviderTimeoutError | asyncio.TimeoutError)
            self._log_lookup_error(query, cause)

            if self.has_remote:
                local = self.local_rate(query)
                if local is not None:
                    return local.model_copy(
                        update={
                            "confidence": local.confidence - WARNING_PENALTY,
                            "error": str(cause),
                            "timed_out": timed_out,
                        }
                    )
            return self.fallback_result(query, error=str(cause), timed_out=timed_out)

        return self._from_lookup(lookup)

    def _from_lookup(self, lookup: CacheLookup) -> RateResult:
        result: RateResult = lookup.value
        if lookup.source == RateSource.CACHE and result.source == RateSource.LIVE:
            return result.model_copy(update={"source": RateSource.CACHE})
        if lookup.source == RateSource.FALLBACK:
            return result.model_copy(
                update={
                    "source": RateSource.FALLBACK,
                    "stale": True,
                    "confidence": min(result.confidence, STALE_CONFIDENCE),
                    "error": lookup.error,
                }
            )
        return result

    async def _fetch(self, query: RateQuery, session: aiohttp.ClientSession | None) -> RateResult:
        """Fetch a fresh answer; raises so that failures are never cached."""
        if self.has_remote and session is not None:
            try:
                return await self._fetch_remote(query, session)
            except asyncio.TimeoutError as e:
                raise ProviderTimeoutError(f"{self.name} API timed out", provider=self.name) from e
            except (aiohttp.ClientError, KeyError, TypeError, ValueError, ArithmeticError) as e:
                raise ProviderUnavailableError(f"{self.name} API failed: {e}", provider=self.name) from e

        local = self.local_rate(query)
        if local is None:
            raise ProviderUnavailableError(
                f"No {self.name} rate for {query.jurisdiction}", provider=self.name
            )
        return local

    async def _fetch_remote(self, query: RateQuery, session: aiohttp.ClientSession) -> RateResult:
        """Query the remote API and normalize its response. Overridden by subclasses."""
        raise ProviderUnavailableError(f"{self.name} has no remote source", provider=self.name)

    async def _get_json(
        self, session: aiohttp.ClientSession, url: str, params: dict[str, str], headers: dict[str, str] | None = None
    ) -> dict[str, Any]:
        timeout = aiohttp.ClientTimeout(total=self.config.engine.provider_timeout)
        async with session.get(url, params=params, headers=headers or {}, timeout=timeout) as response:
            response.raise_for_status()
            return await response.json()

    def local_rate(self, query: RateQuery) -> RateResult | None:
        """Look up the local rate table.

        Returns:
            RateResult tagged LOCAL, None if the jurisdiction has no entry.
        """
        entry = self.country_entry(query.jurisdiction)
        if entry is None:
            return None

        rate = self.chapter_rate(entry, query.classification_code)
        floor = self.minimum_valuation(entry, query.category)
        return RateResult(
            rate=rate,
            basis=ValuationBasis.MINIMUM_VALUATION if floor else ValuationBasis.DECLARED,
            minimum_valuation=floor,
            confidence=LOCAL_CONFIDENCE,
            source=RateSource.LOCAL,
            provider=self.name,
            jurisdiction=query.jurisdiction,
        )

    def fallback_result(
        self, query: RateQuery, error: str | None = None, timed_out: bool = False
    ) -> RateResult:
        """Build the fallback answer for a query."""
        rate = self.fallback_rate(query.jurisdiction)
        self.logger.warning(f"Using fallback {self.name} rate {rate} for {query.jurisdiction}")
        return RateResult(
            rate=rate,
            confidence=FALLBACK_CONFIDENCE,
            source=RateSource.FALLBACK,
            provider=self.name,
            jurisdiction=query.jurisdiction,
            timed_out=timed_out,
            error=error or "rate unavailable",
        )

    def fallback_rate(self, jurisdiction: str) -> Decimal:
        entry = self.country_entry(jurisdiction) or {}
        value = entry.get("fallback", self.table.get("fallback_rate", 0))
        return Decimal(str(value))

    def country_entry(self, jurisdiction: str) -> dict[str, Any] | None:
        countries = self.table.get("countries", {})
        country = jurisdiction.split("-")[0].upper()
        return countries.get(country)

    @staticmethod
    def chapter_rate(entry: dict[str, Any], code: str) -> Decimal:
        """Rate for the longest chapter prefix of `code`, else the entry default."""
        chapters: dict[str, Any] = {str(k): v for k, v in entry.get("chapters", {}).items()}
        for length in range(len(code), 0, -1):
            prefix = code[:length]
            if prefix in chapters:
                return Decimal(str(chapters[prefix]))
        return Decimal(str(entry.get("default", 0)))

    @staticmethod
    def minimum_valuation(entry: dict[str, Any], category: str | None) -> MinimumValuation | None:
        floors = entry.get("minimum_valuation", {})
        floor = floors.get((category or "").lower())
        if not floor:
            return None
        return MinimumValuation(amount=Decimal(str(floor["amount"])), currency=str(floor["currency"]).upper())

    @staticmethod
    def parse_timestamp(value: Any) -> datetime:
        if isinstance(value, str):
            try:
                return datetime.fromisoformat(value.replace("Z", "+00:00"))
            except ValueError:
                pass
        return datetime.now()

    @staticmethod
    def percent(value: Any) -> Decimal:
        """Convert a percentage such as 18 or '18.0' to a fraction."""
        return Decimal(str(value)) / Decimal("100")

    def _log_lookup_error(self, query: RateQuery, error: BaseException) -> None:
        self.logger.warning(f"{self.name} lookup failed for {query.jurisdiction}/{query.classification_code}: {error}")


class ProviderRegistry:
    """Registry routing jurisdictions to rate providers.

    Destination providers are chosen by the country's tax regime from
    countries.yml; customs duty always uses the 'customs' provider.
    """

    def __init__(self, config: Config) -> None:
        self.config = config
        self._providers: dict[str, TaxProviderProtocol] = {}
        self.logger = logging.getLogger(f"{__name__}.registry")

    def register(self, provider: TaxProviderProtocol) -> None:
        """Register a provider under its name."""
        name = provider.get_provider_name()
        self._providers[name] = provider
        self.logger.debug(f"Registered rate provider: {name}")

    def get(self, name: str) -> TaxProviderProtocol | None:
        return self._providers.get(name)

    def customs_provider(self) -> TaxProviderProtocol | None:
        return self._providers.get("customs")

    def destination_provider(self, country: str) -> TaxProviderProtocol | None:
        """Provider for the destination's tax regime, None for untaxed countries."""
        regime = self.config.tax_regime(country)
        if regime == "none":
            return None

        provider = self._providers.get(regime)
        if provider is None:
            self.logger.warning(f"No provider registered for tax regime '{regime}' ({country})")
        return provider

    def origin_provider(self, country: str) -> TaxProviderProtocol | None:
        """Provider for origin purchase tax; only sales tax countries charge it."""
        if self.config.tax_regime(country) != "sales_tax":
            return None
        return self._providers.get("sales_tax")

    def get_all_providers(self) -> list[str]:
        return list(self._providers.keys())

    @staticmethod
    def zero_rate(query: RateQuery, provider: str) -> RateResult:
        """Answer for a jurisdiction that levies nothing."""
        return RateResult(
            rate=Decimal("0"),
            confidence=1.0,
            source=RateSource.LOCAL,
            provider=provider,
            jurisdiction=query.jurisdiction,
        )

"""Sales tax provider.

Used as the origin purchase tax for US purchases and as the destination tax
for US deliveries. Jurisdictions are country codes optionally suffixed with
a state ('US-CA'). The remote source follows the TaxJar rates response
shape; the local table holds per-state rates and a national average.
"""

from decimal import Decimal
from typing import Any

import aiohttp

from ..config import Config
from ..models import RateQuery, RateResult, RateSource
from ..services.rate_cache import RateCache
from .base import LIVE_CONFIDENCE, LOCAL_CONFIDENCE, BaseTaxProvider


class SalesTaxProvider(BaseTaxProvider):
    rate_class = "sales_tax"

    def __init__(self, config: Config, cache: RateCache):
        super().__init__(
            "sales_tax",
            config,
            cache,
            api_url=config.providers.sales_tax_api_url,
            api_key=config.providers.sales_tax_api_key,
        )

    def cache_key(self, query: RateQuery) -> str:
        # Sales tax does not vary by classification
        return self.cache.make_key(self.name, query.jurisdiction)

    def local_rate(self, query: RateQuery) -> RateResult | None:
        entry = self.country_entry(query.jurisdiction)
        if entry is None:
            return None

        state = self._state(query.jurisdiction)
        states: dict[str, Any] = entry.get("states", {})
        value = states.get(state, entry.get("default", 0)) if state else entry.get("default", 0)
        return RateResult(
            rate=Decimal(str(value)),
            confidence=LOCAL_CONFIDENCE,
            source=RateSource.LOCAL,
            provider=self.name,
            jurisdiction=query.jurisdiction,
        )

    async def _fetch_remote(self, query: RateQuery, session: aiohttp.ClientSession) -> RateResult:
        """Expected response: {rate: {combined_rate, state_rate, ...}}."""
        params = {"country": query.jurisdiction.split("-")[0]}
        state = self._state(query.jurisdiction)
        if state:
            params["state"] = state
        headers = {"Authorization": f"Token token=\"{self.api_key}\""} if self.api_key else None
        payload = await self._get_json(session, self.api_url, params=params, headers=headers)

        return RateResult(
            rate=Decimal(str(payload["rate"]["combined_rate"])),
            confidence=LIVE_CONFIDENCE,
            source=RateSource.LIVE,
            provider=self.name,
            jurisdiction=query.jurisdiction,
            last_updated=self.parse_timestamp(payload["rate"].get("last_updated")),
        )

    @staticmethod
    def _state(jurisdiction: str) -> str | None:
        parts = jurisdiction.upper().split("-", 1)
        return parts[1] if len(parts) == 2 else None

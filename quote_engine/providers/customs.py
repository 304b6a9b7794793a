"""Customs duty provider.

Looks up destination customs duty by classification chapter, with optional
per-category minimum valuation floors. Uses the tariff API when configured,
otherwise the customs section of tax_rates.yml.
"""

from decimal import Decimal

import aiohttp

from ..config import Config
from ..models import MinimumValuation, RateQuery, RateResult, RateSource, ValuationBasis
from ..services.rate_cache import RateCache
from .base import LIVE_CONFIDENCE, BaseTaxProvider

# Duty applied when a destination has no tariff entry at all
DEFAULT_DUTY_RATE = Decimal("0.10")


class CustomsDutyProvider(BaseTaxProvider):
    """Destination customs duty rates."""

    rate_class = "customs"

    def __init__(self, config: Config, cache: RateCache):
        super().__init__("customs", config, cache, api_url=config.providers.customs_api_url)

    def fallback_rate(self, jurisdiction: str) -> Decimal:
        entry = self.country_entry(jurisdiction) or {}
        value = entry.get("fallback", self.table.get("fallback_rate"))
        if value is None:
            return DEFAULT_DUTY_RATE
        return Decimal(str(value))

    async def _fetch_remote(self, query: RateQuery, session: aiohttp.ClientSession) -> RateResult:
        """Expected response: {duty_rate, minimum_valuation?, basis?, last_updated}."""
        data = await self._get_json(
            session,
            self.api_url,
            params={"country": query.jurisdiction, "hsn_code": query.classification_code},
        )

        floor = None
        if data.get("minimum_valuation"):
            floor = MinimumValuation(
                amount=Decimal(str(data["minimum_valuation"]["amount"])),
                currency=str(data["minimum_valuation"]["currency"]).upper(),
            )

        return RateResult(
            rate=self.percent(data["duty_rate"]),
            basis=ValuationBasis(data.get("basis") or ("minimum_valuation" if floor else "declared")),
            minimum_valuation=floor,
            confidence=LIVE_CONFIDENCE,
            source=RateSource.LIVE,
            provider=self.name,
            jurisdiction=query.jurisdiction,
            last_updated=self.parse_timestamp(data.get("last_updated")),
        )

"""Destination VAT provider.

VAT jurisdictions may impose a minimum valuation per product category; the
floor is returned with the rate and applied by the orchestrator. A remote
answer may instead require the actual invoice value, which overrides any
floor. Local rates come from the vat section of tax_rates.yml.
"""

from decimal import Decimal

import aiohttp

from ..config import Config
from ..models import MinimumValuation, RateQuery, RateResult, RateSource, ValuationBasis
from ..services.rate_cache import RateCache
from .base import LIVE_CONFIDENCE, BaseTaxProvider


class VATProvider(BaseTaxProvider):
    """Value added tax for VAT countries (NP, GB, EU members and others)."""

    rate_class = "vat"

    def __init__(self, config: Config, cache: RateCache):
        super().__init__("vat", config, cache, api_url=config.providers.vat_api_url)

    async def _fetch_remote(self, query: RateQuery, session: aiohttp.ClientSession) -> RateResult:
        """Expected response: {vat_rate, minimum_valuation?, basis?, last_updated}."""
        params = {"country": query.jurisdiction, "hsn_code": query.classification_code}
        if query.category:
            params["category"] = query.category
        data = await self._get_json(session, self.api_url, params=params)

        floor = None
        raw_floor = data.get("minimum_valuation")
        if raw_floor:
            floor = MinimumValuation(
                amount=Decimal(str(raw_floor["amount"])),
                currency=str(raw_floor.get("currency", query.currency)).upper(),
            )

        basis = data.get("basis")
        if basis is None:
            basis = ValuationBasis.MINIMUM_VALUATION if floor else ValuationBasis.DECLARED

        return RateResult(
            rate=self.percent(data["vat_rate"]),
            basis=ValuationBasis(basis),
            minimum_valuation=floor,
            confidence=LIVE_CONFIDENCE,
            source=RateSource.LIVE,
            provider=self.name,
            jurisdiction=query.jurisdiction,
            last_updated=self.parse_timestamp(data.get("last_updated")),
        )

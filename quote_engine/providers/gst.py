"""Destination GST provider.

Queries a government GST rate API by HSN code. The response carries the GST
and compensation cess percentages; the effective rate is their sum, or zero
for exempt goods. Falls back to the gst section of tax_rates.yml.
"""

from decimal import Decimal

import aiohttp

from ..config import Config
from ..models import RateQuery, RateResult, RateSource
from ..services.rate_cache import RateCache
from .base import LIVE_CONFIDENCE, BaseTaxProvider


class GSTProvider(BaseTaxProvider):
    """Goods and services tax for GST countries (IN, AU, CA, NZ, SG)."""

    rate_class = "gst"

    def __init__(self, config: Config, cache: RateCache):
        super().__init__(
            "gst",
            config,
            cache,
            api_url=config.providers.gst_api_url,
            api_key=config.providers.gst_api_key,
        )

    async def _fetch_remote(self, query: RateQuery, session: aiohttp.ClientSession) -> RateResult:
        """Expected response: {data: {gst_rate, cess_rate, exemption_status, last_updated}}."""
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else None
        payload = await self._get_json(
            session,
            self.api_url,
            params={"hsn_code": query.classification_code, "country": query.jurisdiction},
            headers=headers,
        )
        data = payload["data"]

        if data.get("exemption_status") == "exempt":
            rate = Decimal("0")
        else:
            rate = self.percent(data["gst_rate"]) + self.percent(data.get("cess_rate") or 0)

        return RateResult(
            rate=rate,
            confidence=LIVE_CONFIDENCE,
            source=RateSource.LIVE,
            provider=self.name,
            jurisdiction=query.jurisdiction,
            last_updated=self.parse_timestamp(data.get("last_updated")),
        )

"""Regional fee schedule resolution.

Resolves shipping, handling, insurance and payment gateway fees for a
destination country from regional_pricing.yml. Each country falls back to
its continent's record and then to the global record; fields missing from a
more specific record are inherited from the global one.

Handling charges combine a fixed minimum fee and a percentage of the order
value using one of four methods:
- max: the larger of the two
- sum: both added together
- percentage_only / fixed_only: one part alone
An optional cap is applied after combining.
"""

import logging
from decimal import Decimal
from typing import Any

from ..config import Config, HandlingMethod
from ..models import FeeSchedule

logger = logging.getLogger(__name__)

HANDLING_METHODS = ("max", "sum", "percentage_only", "fixed_only")


class FeeScheduleResolver:
    def __init__(self, config: Config):
        self.config = config
        pricing = config.regional_pricing
        self.table_currency = str(pricing.get("currency", "USD")).upper()
        self._global: dict[str, Any] = pricing.get("global", {})
        self._continents: dict[str, dict[str, Any]] = {
            str(code).upper(): record for code, record in pricing.get("continents", {}).items()
        }
        self._countries: dict[str, dict[str, Any]] = {
            str(code).upper(): record for code, record in pricing.get("countries", {}).items()
        }

    def resolve_fees(
        self,
        country: str,
        order_value: Decimal,
        currency_rate: Decimal = Decimal("1"),
        currency: str | None = None,
        handling_method: HandlingMethod | None = None,
    ) -> FeeSchedule:
        """Resolve the fee schedule for a destination.

        Args:
            country: Destination country code.
            order_value: Items value the percentage fees apply to, in `currency`.
            currency_rate: Multiplier from the pricing table currency to `currency`.
            currency: Currency of the returned fixed amounts, defaults to the table currency.
            handling_method: Override of the configured handling combination method.

        Returns:
            FeeSchedule with handling already combined and capped.
        """
        country = country.upper()
        method = handling_method or self.config.engine.handling_method
        if method not in HANDLING_METHODS:
            raise ValueError(f"Unknown handling method: {method}")

        record, tier, misses = self._find_record(country)
        if misses:
            logger.info(f"No country fee record for {country}, using {tier} tier")

        handling = {**self._global.get("handling", {}), **record.get("handling", {})}
        insurance = {**self._global.get("insurance", {}), **record.get("insurance", {})}
        gateway = {**self._global.get("gateway", {}), **record.get("gateway", {})}

        def amount(value: Any) -> Decimal:
            return self._decimal(value) * currency_rate

        handling_fee = self._combine_handling(
            method,
            minimum_fee=amount(handling.get("minimum_fee")),
            percentage=self._decimal(handling.get("percentage")),
            order_value=order_value,
        )
        if handling.get("cap") is not None:
            handling_fee = min(handling_fee, amount(handling["cap"]))

        return FeeSchedule(
            base_shipping=amount(record.get("base_shipping", self._global.get("base_shipping"))),
            cost_per_kg=amount(record.get("cost_per_kg", self._global.get("cost_per_kg"))),
            handling=handling_fee,
            insurance_rate=self._decimal(insurance.get("rate")),
            insurance_minimum=amount(insurance.get("minimum_fee")),
            gateway_percent=self._decimal(gateway.get("percent")),
            gateway_fixed=amount(gateway.get("fixed")),
            currency=(currency or self.table_currency).upper(),
            tier=tier,
            tier_misses=misses,
        )

    def _find_record(self, country: str) -> tuple[dict[str, Any], str, int]:
        """Find the most specific fee record.

        Returns:
            Tuple of (record, tier name, number of tiers missed).
        """
        if country in self._countries:
            return self._countries[country], "country", 0

        continent = self.config.continent_for(country)
        if continent and continent.upper() in self._continents:
            return self._continents[continent.upper()], "continent", 1

        return self._global, "global", 2

    @staticmethod
    def _combine_handling(
        method: str, minimum_fee: Decimal, percentage: Decimal, order_value: Decimal
    ) -> Decimal:
        percentage_fee = order_value * percentage
        if method == "max":
            return max(minimum_fee, percentage_fee)
        if method == "sum":
            return minimum_fee + percentage_fee
        if method == "percentage_only":
            return percentage_fee
        return minimum_fee

    @staticmethod
    def _decimal(value: Any) -> Decimal:
        if value is None:
            return Decimal("0")
        return Decimal(str(value))

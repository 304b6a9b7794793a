"""Tests for quote arithmetic and confidence scoring."""

from decimal import Decimal

import pytest

from quote_engine.engine.breakdown import (
    CalculationTrace,
    build_confidence_envelope,
    build_item_breakdown,
    build_quote_breakdown,
    discount_amount,
    taxable_unit_value,
)
from quote_engine.models import (
    ClassificationResult,
    ConversionResult,
    Discount,
    FeeSchedule,
    ItemInput,
    RateResult,
    RateSource,
    ValuationBasis,
    WeightResult,
)


def rate(value: str, source: RateSource = RateSource.LOCAL, confidence: float = 0.9, **kwargs) -> RateResult:
    return RateResult(
        rate=Decimal(value), source=source, confidence=confidence, provider="test", jurisdiction="IN", **kwargs
    )


WEIGHT = WeightResult(weight_kg=Decimal("1.0"), confidence=0.6, method="category")
CLASSIFICATION = ClassificationResult(code="8517", confidence=0.8, method="category")


def item_breakdown(tax_base: str, unit_price: str = "100", quantity: int = 1, fx: str = "1", places: int = 2):
    item = ItemInput(id="item-1", unit_price=Decimal(unit_price), quantity=quantity)
    return build_item_breakdown(
        item,
        WEIGHT,
        CLASSIFICATION,
        Decimal(unit_price),
        ValuationBasis.DECLARED,
        customs=rate("0.10"),
        destination=rate("0.18"),
        origin=None,
        tax_base=tax_base,
        fx_rate=Decimal(fx),
        places=places,
    )


class TestTaxableValue:
    def test_declared_value_without_floors(self):
        assert taxable_unit_value(Decimal("20"), [], []) == (Decimal("20"), ValuationBasis.DECLARED)

    def test_highest_floor_above_price_applies(self):
        value, basis = taxable_unit_value(Decimal("20"), [Decimal("10"), Decimal("50")], [])

        assert value == Decimal("50")
        assert basis == ValuationBasis.MINIMUM_VALUATION

    def test_floor_below_price_is_ignored(self):
        assert taxable_unit_value(Decimal("80"), [Decimal("50")], []) == (Decimal("80"), ValuationBasis.DECLARED)

    def test_actual_invoice_overrides_floor(self):
        results = [rate("0.13", basis=ValuationBasis.ACTUAL_INVOICE_REQUIRED)]
        value, basis = taxable_unit_value(Decimal("20"), [Decimal("50")], results)

        assert value == Decimal("20")
        assert basis == ValuationBasis.ACTUAL_INVOICE_REQUIRED


class TestItemBreakdown:
    def test_tax_on_price_plus_duty(self):
        breakdown = item_breakdown("item_price_plus_duty")

        assert breakdown.customs == Decimal("10.00")
        assert breakdown.destination_tax == Decimal("19.80")
        assert breakdown.landed_cost == Decimal("129.80")

    def test_tax_on_item_price_only(self):
        breakdown = item_breakdown("item_price")

        assert breakdown.customs == Decimal("10.00")
        assert breakdown.destination_tax == Decimal("18.00")
        assert breakdown.landed_cost == Decimal("128.00")

    def test_quantity_and_weight(self):
        breakdown = item_breakdown("item_price", unit_price="12.50", quantity=3)

        assert breakdown.declared_value == Decimal("37.50")
        assert breakdown.weight_kg == Decimal("3.000")
        assert breakdown.customs == Decimal("3.75")

    def test_amounts_rounded_half_up_in_target_currency(self):
        breakdown = item_breakdown("item_price", unit_price="1.05", fx="83.33")

        # 1.05 * 83.33 = 87.4965
        assert breakdown.declared_value == Decimal("87.50")
        # 0.105 * 83.33 = 8.74965
        assert breakdown.customs == Decimal("8.75")

    def test_zero_decimal_currency(self):
        breakdown = item_breakdown("item_price", fx="150", places=0)

        assert breakdown.declared_value == Decimal("15000")
        assert breakdown.destination_tax == Decimal("2700")

    def test_confidence_is_lowest_component(self):
        assert item_breakdown("item_price").confidence == 0.6

    def test_origin_tax_on_declared_value(self):
        item = ItemInput(id="item-1", unit_price=Decimal("20"))
        breakdown = build_item_breakdown(
            item,
            WEIGHT,
            CLASSIFICATION,
            Decimal("50"),
            ValuationBasis.MINIMUM_VALUATION,
            customs=rate("0.15"),
            destination=rate("0.13"),
            origin=rate("0.0888"),
            tax_base="item_price_plus_duty",
            fx_rate=Decimal("1"),
            places=2,
        )

        assert breakdown.taxable_value == Decimal("50.00")
        assert breakdown.customs == Decimal("7.50")
        assert breakdown.destination_tax == Decimal("7.48")
        assert breakdown.origin_tax == Decimal("1.78")


def fee_schedule() -> FeeSchedule:
    return FeeSchedule(
        base_shipping=Decimal("15"),
        cost_per_kg=Decimal("8"),
        handling=Decimal("3"),
        insurance_rate=Decimal("0.015"),
        insurance_minimum=Decimal("1.5"),
        gateway_percent=Decimal("0.029"),
        gateway_fixed=Decimal("0.30"),
    )


class TestQuoteBreakdown:
    def test_grand_total_is_sum_of_components(self):
        items = [item_breakdown("item_price_plus_duty")]
        breakdown = build_quote_breakdown(
            items, fee_schedule(), Decimal("1.0"), Decimal("100"), False, Decimal("1"), "USD", 2
        )

        assert breakdown.shipping == Decimal("23.00")
        assert breakdown.handling == Decimal("3.00")
        assert breakdown.insurance == Decimal("0.00")
        assert breakdown.gateway_fee == Decimal("4.82")
        assert breakdown.grand_total == Decimal("160.62")
        assert breakdown.grand_total == breakdown.components_total()

    def test_insurance_opt_in(self):
        items = [item_breakdown("item_price")]
        breakdown = build_quote_breakdown(
            items, fee_schedule(), Decimal("1.0"), Decimal("100"), True, Decimal("1"), "USD", 2
        )

        assert breakdown.insurance == Decimal("1.50")
        assert breakdown.grand_total == breakdown.components_total()

    def test_fees_converted_to_target_currency(self):
        items = [item_breakdown("item_price", fx="83.33")]
        breakdown = build_quote_breakdown(
            items, fee_schedule(), Decimal("1.0"), Decimal("100"), False, Decimal("83.33"), "INR", 2
        )

        assert breakdown.shipping == Decimal("1916.59")
        assert breakdown.handling == Decimal("249.99")
        assert breakdown.currency == "INR"
        assert breakdown.grand_total == breakdown.components_total()


class TestConfidenceEnvelope:
    def envelope(self, trace: CalculationTrace):
        return build_confidence_envelope(trace, fallback_penalty=0.9, timeout_penalty=0.85)

    def test_clean_calculation_scores_one(self):
        trace = CalculationTrace()
        trace.add_rate("a", "customs", rate("0.1"))
        trace.add_rate("a", "destination", rate("0.18", source=RateSource.LIVE))
        trace.add_conversion("quote", ConversionResult(
            amount=Decimal("1"), rate=Decimal("1"), source=RateSource.EXACT, from_currency="USD", to_currency="USD"
        ))

        envelope = self.envelope(trace)
        assert envelope.score == 1.0
        assert envelope.api_calls_made == 1
        assert envelope.cache_hits == 1
        assert envelope.fallbacks_used == 0
        assert envelope.warnings == []

    def test_counts_fallbacks_errors_and_timeouts(self):
        trace = CalculationTrace()
        trace.add_rate("a", "customs", rate("0.1", source=RateSource.FALLBACK, error="down", timed_out=True))
        trace.weights.append(("a", WeightResult(weight_kg=Decimal("0.5"), confidence=0.3, method="default")))
        trace.fee_schedule = FeeSchedule(tier="global", tier_misses=2)

        envelope = self.envelope(trace)
        assert envelope.fallbacks_used == 4
        assert envelope.errors_handled == 1
        assert envelope.timeouts == 1
        assert envelope.score == pytest.approx(round(0.9 ** 4 * 0.85, 4))
        assert len(envelope.warnings) == 3

    def test_score_never_increases_as_events_are_added(self):
        trace = CalculationTrace()
        scores = [self.envelope(trace).score]
        events = [
            rate("0.1", source=RateSource.FALLBACK),
            rate("0.1", source=RateSource.LOCAL, timed_out=True, error="timeout"),
            rate("0.1", source=RateSource.FALLBACK, timed_out=True),
        ]
        for event in events:
            trace.add_rate("a", "customs", event)
            scores.append(self.envelope(trace).score)

        assert scores == sorted(scores, reverse=True)
        assert scores[-1] < scores[0]


class TestDiscounts:
    def test_discount_amounts(self):
        base = Decimal("80")

        assert discount_amount(None, base) == Decimal("0")
        assert discount_amount(Discount(type="percentage", value=Decimal("25")), base) == Decimal("20")
        assert discount_amount(Discount(type="fixed", value=Decimal("15")), base) == Decimal("15")
        assert discount_amount(Discount(type="fixed", value=Decimal("500")), base) == base
        assert discount_amount(Discount(type="free"), base) == base
        assert discount_amount(Discount(type="free"), Decimal("0")) == Decimal("0")

    def test_discounts_keep_total_identity(self):
        items = [item_breakdown("item_price_plus_duty")]
        breakdown = build_quote_breakdown(
            items,
            fee_schedule(),
            Decimal("1.0"),
            Decimal("100"),
            False,
            Decimal("1"),
            "USD",
            2,
            order_discount=Discount(type="fixed", value=Decimal("12.5"), code="WELCOME"),
            shipping_discount=Discount(type="percentage", value=Decimal("50")),
        )

        assert breakdown.discount == Decimal("24.00")
        assert breakdown.grand_total == Decimal("136.62")
        assert breakdown.grand_total == breakdown.components_total()
        assert breakdown.applied_discount_codes == ["WELCOME"]

    def test_volumetric_weight_sets_chargeable_weight(self):
        items = [item_breakdown("item_price_plus_duty")]
        breakdown = build_quote_breakdown(
            items,
            fee_schedule(),
            Decimal("1.0"),
            Decimal("100"),
            False,
            Decimal("1"),
            "USD",
            2,
            volumetric_weight_kg=Decimal("4.8"),
        )

        assert breakdown.chargeable_weight_kg == Decimal("4.800")
        assert breakdown.shipping == Decimal("53.40")
        assert breakdown.grand_total == Decimal("191.90")

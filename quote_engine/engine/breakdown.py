"""Quote arithmetic.

Pure functions turning resolved rates into item and quote breakdowns, and a
trace of everything a calculation relied on into its ConfidenceEnvelope.
All money is Decimal; every component is converted and rounded half-up to
the target currency's precision before it is summed, so totals are exact
sums of the reported lines.
"""

from decimal import Decimal

from ..models import (
    ClassificationResult,
    ConfidenceEnvelope,
    ConversionResult,
    Discount,
    FeeSchedule,
    ItemBreakdown,
    ItemInput,
    QuoteBreakdown,
    RateResult,
    RateSource,
    ValuationBasis,
    WeightResult,
    quantize_money,
)


class CalculationTrace:
    """Everything one calculation looked up, in the order it was used."""

    def __init__(self) -> None:
        self.rates: list[tuple[str, str, RateResult]] = []
        self.conversions: list[tuple[str, ConversionResult]] = []
        self.weights: list[tuple[str, WeightResult]] = []
        self.classifications: list[tuple[str, ClassificationResult]] = []
        self.fee_schedule: FeeSchedule | None = None

    def add_rate(self, item_id: str, role: str, result: RateResult) -> None:
        self.rates.append((item_id, role, result))

    def add_conversion(self, label: str, result: ConversionResult) -> None:
        self.conversions.append((label, result))


def taxable_unit_value(
    unit_price: Decimal,
    floors: list[Decimal],
    results: list[RateResult],
) -> tuple[Decimal, ValuationBasis]:
    """Per-unit value duties and taxes apply to.

    Args:
        unit_price: Declared price of one unit.
        floors: Minimum valuations, already converted to the price currency.
        results: Rate answers that may require the actual invoice value.

    Returns:
        Tuple of (unit value, valuation basis used).
    """
    if any(result.basis == ValuationBasis.ACTUAL_INVOICE_REQUIRED for result in results):
        return unit_price, ValuationBasis.ACTUAL_INVOICE_REQUIRED

    if floors:
        floor = max(floors)
        if floor > unit_price:
            return floor, ValuationBasis.MINIMUM_VALUATION
    return unit_price, ValuationBasis.DECLARED


def build_item_breakdown(
    item: ItemInput,
    weight: WeightResult,
    classification: ClassificationResult,
    taxable_unit: Decimal,
    basis: ValuationBasis,
    customs: RateResult,
    destination: RateResult,
    origin: RateResult | None,
    tax_base: str,
    fx_rate: Decimal,
    places: int,
) -> ItemBreakdown:
    """Compute one item's duties and taxes and express them in the target currency.

    Customs applies to the taxable value. Destination tax applies to the
    taxable value, plus customs duty when `tax_base` is 'item_price_plus_duty'.
    Origin purchase tax applies to the declared value.
    """
    declared = item.unit_price * item.quantity
    taxable = taxable_unit * item.quantity
    customs_amount = taxable * customs.rate

    destination_base = taxable + customs_amount if tax_base == "item_price_plus_duty" else taxable
    destination_amount = destination_base * destination.rate
    origin_rate = origin.rate if origin is not None else Decimal("0")
    origin_amount = declared * origin_rate

    declared_t = quantize_money(declared * fx_rate, places)
    customs_t = quantize_money(customs_amount * fx_rate, places)
    destination_t = quantize_money(destination_amount * fx_rate, places)
    origin_t = quantize_money(origin_amount * fx_rate, places)

    confidences = [customs.confidence, destination.confidence, weight.confidence, classification.confidence]
    if origin is not None:
        confidences.append(origin.confidence)

    return ItemBreakdown(
        item_id=item.id,
        quantity=item.quantity,
        weight_kg=(weight.weight_kg * item.quantity).quantize(Decimal("0.001")),
        classification_code=classification.code,
        declared_value=declared_t,
        taxable_value=quantize_money(taxable * fx_rate, places),
        valuation_basis=basis,
        customs_rate=customs.rate,
        customs=customs_t,
        destination_tax_rate=destination.rate,
        destination_tax=destination_t,
        origin_tax_rate=origin_rate,
        origin_tax=origin_t,
        landed_cost=declared_t + customs_t + destination_t + origin_t,
        confidence=round(min(confidences), 4),
    )


def discount_amount(discount: Discount | None, base: Decimal) -> Decimal:
    """Amount a discount takes off `base`, never more than `base`."""
    if discount is None or base <= 0:
        return Decimal("0")
    if discount.type == "free":
        return base
    if discount.type == "percentage":
        amount = base * discount.value / Decimal("100")
    else:
        amount = discount.value
    return min(max(amount, Decimal("0")), base)


def build_quote_breakdown(
    items: list[ItemBreakdown],
    schedule: FeeSchedule,
    total_weight_kg: Decimal,
    items_value: Decimal,
    include_insurance: bool,
    fx_rate: Decimal,
    currency: str,
    places: int,
    volumetric_weight_kg: Decimal = Decimal("0"),
    order_discount: Discount | None = None,
    shipping_discount: Discount | None = None,
) -> QuoteBreakdown:
    """Compute order-level fees and the grand total in the target currency.

    Shipping is charged on the larger of the actual and volumetric weight.
    Discounts come off last and never take the total below zero.

    Args:
        items: Item breakdowns, already in the target currency.
        schedule: Fee schedule in the price currency.
        total_weight_kg: Combined weight of all lines.
        items_value: Declared value of all lines in the price currency.
        include_insurance: Whether insurance is charged.
        fx_rate: Price currency to target currency multiplier.
        currency: Target currency code.
        places: Target currency precision.
        volumetric_weight_kg: Combined volumetric weight of all lines.
        order_discount: Discount on the items value.
        shipping_discount: Discount on the shipping charge.
    """
    chargeable_weight = max(total_weight_kg, volumetric_weight_kg)
    shipping = schedule.shipping_for(chargeable_weight)
    insurance = schedule.insurance_for(items_value) if include_insurance else Decimal("0")

    def to_target(amount: Decimal) -> Decimal:
        return quantize_money(amount * fx_rate, places)

    items_subtotal = sum((item.declared_value for item in items), Decimal("0"))
    customs_total = sum((item.customs for item in items), Decimal("0"))
    destination_total = sum((item.destination_tax for item in items), Decimal("0"))
    origin_total = sum((item.origin_tax for item in items), Decimal("0"))
    shipping_t = to_target(shipping)
    handling_t = to_target(schedule.handling)
    insurance_t = to_target(insurance)

    # Gateway fee is charged on everything else the customer pays
    charged = items_subtotal + shipping_t + customs_total + destination_total + origin_total + handling_t + insurance_t
    if fx_rate:
        gateway_t = to_target(schedule.gateway_fee_for(charged / fx_rate))
    else:
        gateway_t = Decimal("0")

    discount_t = to_target(discount_amount(order_discount, items_value) + discount_amount(shipping_discount, shipping))
    discount_t = min(discount_t, charged + gateway_t)
    codes = [d.code for d in (order_discount, shipping_discount) if d is not None and d.code]

    grand_total = charged + gateway_t - discount_t

    return QuoteBreakdown(
        items_subtotal=items_subtotal,
        shipping=shipping_t,
        customs_total=customs_total,
        destination_tax_total=destination_total,
        origin_tax_total=origin_total,
        handling=handling_t,
        insurance=insurance_t,
        gateway_fee=gateway_t,
        discount=discount_t,
        grand_total=grand_total,
        currency=currency,
        exchange_rate=fx_rate.quantize(Decimal("0.000001")),
        total_weight_kg=total_weight_kg.quantize(Decimal("0.001")),
        volumetric_weight_kg=volumetric_weight_kg.quantize(Decimal("0.001")),
        chargeable_weight_kg=chargeable_weight.quantize(Decimal("0.001")),
        applied_discount_codes=codes,
    )


def build_confidence_envelope(
    trace: CalculationTrace, fallback_penalty: float, timeout_penalty: float
) -> ConfidenceEnvelope:
    """Derive counters and the confidence score from a calculation trace.

    Every fallback event multiplies the score by `fallback_penalty` and every
    timeout by `timeout_penalty`, so the score never increases as events are
    added. Fallback events are fallback rates and conversions, default
    weights and classifications, and each missed fee tier.
    """
    api_calls = cache_hits = fallbacks = errors = timeouts = 0
    warnings: list[str] = []

    for item_id, role, result in trace.rates:
        if result.source == RateSource.LIVE:
            api_calls += 1
        elif result.source in (RateSource.CACHE, RateSource.LOCAL):
            cache_hits += 1
        elif result.source == RateSource.FALLBACK:
            fallbacks += 1
            warnings.append(f"{role} rate for item {item_id} is a fallback value")
        if result.error is not None:
            errors += 1
        if result.timed_out:
            timeouts += 1

    for label, conversion in trace.conversions:
        if conversion.source == RateSource.LIVE:
            api_calls += 1
        elif conversion.source == RateSource.CACHE:
            cache_hits += 1
        elif conversion.source == RateSource.FALLBACK:
            fallbacks += 1
            warnings.append(
                f"{label} exchange rate {conversion.from_currency}/{conversion.to_currency} is a fallback value"
            )

    for item_id, weight in trace.weights:
        if weight.is_default:
            fallbacks += 1
            warnings.append(f"default weight used for item {item_id}")

    for item_id, classification in trace.classifications:
        if classification.is_default:
            fallbacks += 1
            warnings.append(f"default classification used for item {item_id}")

    if trace.fee_schedule is not None and trace.fee_schedule.tier_misses:
        fallbacks += trace.fee_schedule.tier_misses
        warnings.append(f"fee schedule resolved from {trace.fee_schedule.tier} tier")

    score = (fallback_penalty ** fallbacks) * (timeout_penalty ** timeouts)
    score = round(min(1.0, max(0.0, score)), 4)

    return ConfidenceEnvelope(
        api_calls_made=api_calls,
        cache_hits=cache_hits,
        fallbacks_used=fallbacks,
        errors_handled=errors,
        timeouts=timeouts,
        score=score,
        warnings=warnings,
    )

"""Data models for the quote engine.

Defines Pydantic models for every data structure that crosses a component
boundary: calculation requests, normalized rate answers from tax providers,
currency conversions, fee schedules, and the immutable calculation result
with its itemized breakdown and confidence envelope.
"""

from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


def quantize_money(amount: Decimal, places: int = 2) -> Decimal:
    """Round a money amount half-up to the given number of decimal places."""
    exponent = Decimal(1).scaleb(-places)
    return amount.quantize(exponent, ROUND_HALF_UP)


class CalculationState(str, Enum):
    """Lifecycle state of a single calculation."""

    VALIDATING = "validating"
    FANNING_OUT = "fanning_out"
    AGGREGATING = "aggregating"
    FINALIZED = "finalized"
    REJECTED = "rejected"


class RateSource(str, Enum):
    """Where a rate answer came from.

    LOCAL answers come from a static table shipped with the engine and are
    counted as cache hits. EXACT is the same-currency identity conversion.
    """

    LIVE = "live"
    CACHE = "cache"
    LOCAL = "local"
    FALLBACK = "fallback"
    EXACT = "exact"


class ValuationBasis(str, Enum):
    """Which value a rate is applied to."""

    DECLARED = "declared"
    MINIMUM_VALUATION = "minimum_valuation"
    ACTUAL_INVOICE_REQUIRED = "actual_invoice_required"


class Dimensions(BaseModel):
    """Package dimensions of one unit."""

    model_config = ConfigDict(frozen=True)

    length: Decimal
    width: Decimal
    height: Decimal
    unit: Literal["cm", "in"] = "cm"


class Discount(BaseModel):
    """A discount on the order or on shipping.

    Attributes:
        type: 'percentage' of the discounted amount, 'fixed' amount in the
            price currency, or 'free' (shipping only).
        value: Percentage (10 == 10%) or fixed amount.
        code: Promotion code the discount came from, if any.
    """

    model_config = ConfigDict(frozen=True)

    type: Literal["percentage", "fixed", "free"]
    value: Decimal = Decimal("0")
    code: str | None = None


class ItemInput(BaseModel):
    """A single cart line.

    Attributes:
        id: Caller-assigned item identifier, unique within a request.
        unit_price: Price of one unit in the request's price currency.
        quantity: Number of units.
        weight_kg: Known weight of one unit, estimated when missing.
        category: Product category used for weight and classification heuristics.
        classification_code: Customs (HSN) code, resolved from category when missing.
        name: Product title used for keyword heuristics.
        dimensions: Package size of one unit, for volumetric weight.
        volumetric_weight_kg: Known volumetric weight of one unit; wins over dimensions.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    unit_price: Decimal
    quantity: int = 1
    weight_kg: Decimal | None = None
    category: str | None = None
    classification_code: str | None = None
    name: str | None = None
    dimensions: Dimensions | None = None
    volumetric_weight_kg: Decimal | None = None


class CalculationRequest(BaseModel):
    """A landed-cost quote request. Immutable once submitted.

    Attributes:
        origin_country: ISO country code the goods are bought in.
        destination_country: ISO country code the goods are delivered to.
        target_currency: Currency the quote is expressed in.
        items: Cart lines, in the order they are reported back.
        price_currency: Currency of item prices, defaults to the origin country's currency.
        include_insurance: Opt in or out of insurance, defaults to configuration.
        tax_base: Override of the configured destination tax base.
        order_discount: Discount on the items subtotal.
        shipping_discount: Discount on the shipping charge.
    """

    model_config = ConfigDict(frozen=True)

    origin_country: str
    destination_country: str
    target_currency: str
    items: list[ItemInput] = Field(default_factory=list)
    price_currency: str | None = None
    include_insurance: bool | None = None
    tax_base: str | None = None
    order_discount: Discount | None = None
    shipping_discount: Discount | None = None


class RateQuery(BaseModel):
    """What a tax provider is asked for one item."""

    model_config = ConfigDict(frozen=True)

    jurisdiction: str
    classification_code: str
    category: str | None = None
    valuation_amount: Decimal = Decimal("0")
    currency: str = "USD"


class MinimumValuation(BaseModel):
    """Per-unit valuation floor imposed by a jurisdiction."""

    model_config = ConfigDict(frozen=True)

    amount: Decimal
    currency: str


class RateResult(BaseModel):
    """Normalized answer from any tax provider family.

    Attributes:
        rate: Fraction applied to the taxable basis (0.18 == 18%).
        basis: Which value the rate applies to.
        minimum_valuation: Per-unit floor for the taxable value, if any.
        confidence: Provider confidence in this answer (0.0-1.0).
        source: Where the answer came from.
        provider: Provider identifier (e.g. 'gst', 'customs').
        jurisdiction: Country code the rate belongs to.
        last_updated: When the rate was published or fetched.
        stale: True if the answer is past its cache lifetime.
        timed_out: True if the provider missed its deadline.
        error: Description of the failure that forced a fallback.
    """

    model_config = ConfigDict(frozen=True)

    rate: Decimal
    basis: ValuationBasis = ValuationBasis.DECLARED
    minimum_valuation: MinimumValuation | None = None
    confidence: float = 1.0
    source: RateSource = RateSource.LOCAL
    provider: str
    jurisdiction: str
    last_updated: datetime = Field(default_factory=datetime.now)
    stale: bool = False
    timed_out: bool = False
    error: str | None = None

    @property
    def is_fallback(self) -> bool:
        """Whether the answer is a degraded fallback value."""
        return self.source == RateSource.FALLBACK


class ConversionResult(BaseModel):
    """Outcome of a currency conversion.

    Attributes:
        amount: Converted amount, unrounded.
        rate: Multiplier applied to the source amount.
        source: Where the rate came from.
        from_currency: Source currency code.
        to_currency: Target currency code.
        stale: True if the rate table was past its lifetime.
    """

    model_config = ConfigDict(frozen=True)

    amount: Decimal
    rate: Decimal
    source: RateSource
    from_currency: str
    to_currency: str
    stale: bool = False


class WeightResult(BaseModel):
    """Resolved per-unit weight of an item."""

    model_config = ConfigDict(frozen=True)

    weight_kg: Decimal
    confidence: float
    method: str  # 'explicit', 'keyword', 'category', 'default'

    @property
    def is_default(self) -> bool:
        return self.method == "default"


class ClassificationResult(BaseModel):
    """Resolved customs classification of an item."""

    model_config = ConfigDict(frozen=True)

    code: str
    confidence: float
    method: str  # 'explicit', 'category', 'keyword', 'default'

    @property
    def is_default(self) -> bool:
        return self.method == "default"


class FeeSchedule(BaseModel):
    """Fees resolved for a destination and order value.

    Fixed amounts are expressed in `currency`; percentages are fractions.

    Attributes:
        base_shipping: Flat shipping charge.
        cost_per_kg: Shipping charge per kilogram of total weight.
        handling: Handling charge for the order, already combined and capped.
        insurance_rate: Insurance charge as a fraction of the items value.
        insurance_minimum: Smallest insurance charge.
        gateway_percent: Payment gateway fee as a fraction of the charged amount.
        gateway_fixed: Flat payment gateway fee.
        currency: Currency of the fixed amounts.
        tier: Pricing tier the schedule was resolved from.
        tier_misses: Number of more specific tiers that had no entry.
    """

    model_config = ConfigDict(frozen=True)

    base_shipping: Decimal = Decimal("0")
    cost_per_kg: Decimal = Decimal("0")
    handling: Decimal = Decimal("0")
    insurance_rate: Decimal = Decimal("0")
    insurance_minimum: Decimal = Decimal("0")
    gateway_percent: Decimal = Decimal("0")
    gateway_fixed: Decimal = Decimal("0")
    currency: str = "USD"
    tier: str = "global"
    tier_misses: int = 0

    def shipping_for(self, total_weight_kg: Decimal) -> Decimal:
        return self.base_shipping + self.cost_per_kg * total_weight_kg

    def insurance_for(self, items_value: Decimal) -> Decimal:
        return max(self.insurance_minimum, items_value * self.insurance_rate)

    def gateway_fee_for(self, amount: Decimal) -> Decimal:
        if self.gateway_percent == 0 and self.gateway_fixed == 0:
            return Decimal("0")
        return amount * self.gateway_percent + self.gateway_fixed


class ItemBreakdown(BaseModel):
    """Per-item amounts in the target currency. Never mutated after creation.

    Attributes:
        item_id: Identifier from the request.
        quantity: Number of units.
        weight_kg: Total weight of the line.
        classification_code: Customs code the rates were looked up for.
        declared_value: Price times quantity.
        taxable_value: Value customs and destination tax were applied to.
        valuation_basis: Whether a minimum valuation floor was applied.
        customs_rate: Customs duty rate.
        customs: Customs duty amount.
        destination_tax_rate: Destination GST/VAT/sales tax rate.
        destination_tax: Destination tax amount.
        origin_tax_rate: Origin purchase tax rate.
        origin_tax: Origin purchase tax amount.
        landed_cost: Declared value plus item-level duties and taxes.
        confidence: Lowest provider confidence among this item's answers.
    """

    model_config = ConfigDict(frozen=True)

    item_id: str
    quantity: int
    weight_kg: Decimal
    classification_code: str
    declared_value: Decimal
    taxable_value: Decimal
    valuation_basis: ValuationBasis = ValuationBasis.DECLARED
    customs_rate: Decimal = Decimal("0")
    customs: Decimal = Decimal("0")
    destination_tax_rate: Decimal = Decimal("0")
    destination_tax: Decimal = Decimal("0")
    origin_tax_rate: Decimal = Decimal("0")
    origin_tax: Decimal = Decimal("0")
    landed_cost: Decimal = Decimal("0")
    confidence: float = 1.0


class QuoteBreakdown(BaseModel):
    """Quote totals in the target currency.

    grand_total always equals the sum of the eight charge lines minus the
    discount, which never exceeds those charges.
    """

    model_config = ConfigDict(frozen=True)

    items_subtotal: Decimal
    shipping: Decimal
    customs_total: Decimal
    destination_tax_total: Decimal
    origin_tax_total: Decimal = Decimal("0")
    handling: Decimal
    insurance: Decimal
    gateway_fee: Decimal
    discount: Decimal = Decimal("0")
    grand_total: Decimal
    currency: str
    exchange_rate: Decimal = Decimal("1")
    total_weight_kg: Decimal = Decimal("0")
    volumetric_weight_kg: Decimal = Decimal("0")
    chargeable_weight_kg: Decimal = Decimal("0")
    applied_discount_codes: list[str] = Field(default_factory=list)

    def components_total(self) -> Decimal:
        """Sum of the charge lines less the discount."""
        return (
            self.items_subtotal
            + self.shipping
            + self.customs_total
            + self.destination_tax_total
            + self.origin_tax_total
            + self.handling
            + self.insurance
            + self.gateway_fee
            - self.discount
        )


class RateCacheEntry(BaseModel):
    """A cached rate answer.

    Attributes:
        key: Cache key.
        value: Cached payload.
        fetched_at: Clock reading when the value was written.
        ttl: Lifetime in seconds, attached at write time.
        source: Where the value came from.
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    key: str
    value: Any
    fetched_at: float
    ttl: float
    source: RateSource = RateSource.LIVE

    @property
    def expires_at(self) -> float:
        return self.fetched_at + self.ttl

    def is_fresh(self, now: float) -> bool:
        return now < self.expires_at


class ConfidenceEnvelope(BaseModel):
    """Degradation counters and score for one calculation."""

    model_config = ConfigDict(frozen=True)

    api_calls_made: int = 0
    cache_hits: int = 0
    fallbacks_used: int = 0
    errors_handled: int = 0
    timeouts: int = 0
    score: float = 1.0
    warnings: list[str] = Field(default_factory=list)


class ValidationIssue(BaseModel):
    """A single problem found in a calculation request."""

    model_config = ConfigDict(frozen=True)

    field: str
    message: str
    code: str


class ValidationResult(BaseModel):
    """Outcome of request validation."""

    model_config = ConfigDict(frozen=True)

    is_valid: bool
    errors: list[ValidationIssue] = Field(default_factory=list)

    @property
    def summary(self) -> str:
        return "; ".join(f"{issue.field}: {issue.message}" for issue in self.errors)


class QuoteCalculationResult(BaseModel):
    """Immutable result of a quote calculation.

    Attributes:
        success: False only for rejected requests and unrecoverable conversions.
        breakdown: Quote totals, present on success.
        item_breakdowns: Per-item amounts, in request order.
        confidence: Degradation counters and score, present on success.
        error: Human-readable failure summary.
        errors: Validation issues of a rejected request.
        state: Final lifecycle state.
        processing_time_ms: Wall-clock time spent on the calculation.
    """

    model_config = ConfigDict(frozen=True)

    success: bool
    breakdown: QuoteBreakdown | None = None
    item_breakdowns: list[ItemBreakdown] = Field(default_factory=list)
    confidence: ConfidenceEnvelope | None = None
    error: str | None = None
    errors: list[ValidationIssue] = Field(default_factory=list)
    state: CalculationState = CalculationState.FINALIZED
    processing_time_ms: int = 0

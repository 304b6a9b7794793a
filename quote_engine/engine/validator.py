"""Calculation request validation.

Checks a request before any cache or network work is done. Validation is
side-effect free and reports every problem found, not just the first one.
"""

import logging
import re

from ..config import Config
from ..exceptions import ValidationError
from ..models import CalculationRequest, ValidationIssue, ValidationResult

logger = logging.getLogger(__name__)

CURRENCY_CODE_RE = re.compile(r"^[A-Za-z]{3}$")
CLASSIFICATION_CODE_RE = re.compile(r"^\d{4,10}$")
TAX_BASES = ("item_price", "item_price_plus_duty")


class CalculationValidator:
    def __init__(self, config: Config):
        self.config = config

    def validate(self, request: CalculationRequest) -> ValidationResult:
        """Validate a calculation request.

        Args:
            request: Request to check.

        Returns:
            ValidationResult listing every issue found.
        """
        issues: list[ValidationIssue] = []

        def add(field: str, message: str, code: str) -> None:
            issues.append(ValidationIssue(field=field, message=message, code=code))

        for field in ("origin_country", "destination_country"):
            value = getattr(request, field)
            if not value or self.config.country(value) is None:
                add(field, f"Unknown country code: {value!r}", "unknown_country")

        if not CURRENCY_CODE_RE.match(request.target_currency or ""):
            add("target_currency", f"Malformed currency code: {request.target_currency!r}", "invalid_currency")
        if request.price_currency is not None and not CURRENCY_CODE_RE.match(request.price_currency):
            add("price_currency", f"Malformed currency code: {request.price_currency!r}", "invalid_currency")

        if request.tax_base is not None and request.tax_base not in TAX_BASES:
            add("tax_base", f"Unknown tax base: {request.tax_base!r}", "invalid_tax_base")

        if not request.items:
            add("items", "At least one item is required", "empty_items")

        seen_ids: set[str] = set()
        for index, item in enumerate(request.items):
            prefix = f"items.{index}"
            if not item.id or not item.id.strip():
                add(f"{prefix}.id", f"Item {index + 1}: id is required", "missing_item_id")
            elif item.id in seen_ids:
                add(f"{prefix}.id", f"Item {index + 1}: duplicate id {item.id!r}", "duplicate_item_id")
            else:
                seen_ids.add(item.id)

            if item.quantity <= 0:
                add(f"{prefix}.quantity", f"Item {index + 1}: quantity must be greater than 0", "invalid_quantity")
            if not item.unit_price.is_finite() or item.unit_price <= 0:
                add(f"{prefix}.unit_price", f"Item {index + 1}: price must be greater than 0", "invalid_price")
            if item.weight_kg is not None and (not item.weight_kg.is_finite() or item.weight_kg < 0):
                add(f"{prefix}.weight_kg", f"Item {index + 1}: weight cannot be negative", "invalid_weight")
            if item.volumetric_weight_kg is not None and (
                not item.volumetric_weight_kg.is_finite() or item.volumetric_weight_kg < 0
            ):
                add(
                    f"{prefix}.volumetric_weight_kg",
                    f"Item {index + 1}: volumetric weight cannot be negative",
                    "invalid_weight",
                )
            if item.dimensions is not None and any(
                not side.is_finite() or side <= 0
                for side in (item.dimensions.length, item.dimensions.width, item.dimensions.height)
            ):
                add(f"{prefix}.dimensions", f"Item {index + 1}: dimensions must be positive", "invalid_dimensions")
            if item.classification_code and not CLASSIFICATION_CODE_RE.match(
                re.sub(r"[\s.]", "", item.classification_code)
            ):
                add(
                    f"{prefix}.classification_code",
                    f"Item {index + 1}: invalid classification code format",
                    "invalid_classification_code",
                )

        for field in ("order_discount", "shipping_discount"):
            discount = getattr(request, field)
            if discount is None:
                continue
            if discount.type == "free" and field == "order_discount":
                add(field, "Only shipping can be discounted to free", "invalid_discount")
            elif not discount.value.is_finite() or discount.value < 0:
                add(field, "Discount value cannot be negative", "invalid_discount")
            elif discount.type == "percentage" and discount.value > 100:
                add(field, "Percentage discount cannot exceed 100", "invalid_discount")

        if issues:
            logger.info(f"Request rejected with {len(issues)} validation issue(s)")
        return ValidationResult(is_valid=not issues, errors=issues)

    def ensure_valid(self, request: CalculationRequest) -> None:
        """Raise ValidationError carrying every issue if the request is invalid."""
        result = self.validate(request)
        if not result.is_valid:
            raise ValidationError(result.summary, result.errors)

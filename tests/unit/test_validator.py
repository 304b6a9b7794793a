"""Tests for calculation request validation."""

from decimal import Decimal

import pytest

from quote_engine.engine.validator import CalculationValidator
from quote_engine.exceptions import ValidationError
from quote_engine.models import CalculationRequest, Dimensions, Discount, ItemInput


def request(**overrides) -> CalculationRequest:
    data = {
        "origin_country": "US",
        "destination_country": "IN",
        "target_currency": "INR",
        "items": [ItemInput(id="a", unit_price=Decimal("25.00"), category="clothing")],
    }
    data.update(overrides)
    return CalculationRequest(**data)


def codes(result) -> list[str]:
    return [issue.code for issue in result.errors]


class TestCalculationValidator:
    def test_valid_request(self, config):
        result = CalculationValidator(config).validate(request())

        assert result.is_valid
        assert result.errors == []

    def test_country_codes_are_case_insensitive(self, config):
        assert CalculationValidator(config).validate(request(origin_country="us", destination_country="in")).is_valid

    def test_unknown_countries(self, config):
        result = CalculationValidator(config).validate(request(origin_country="XX", destination_country=""))

        assert codes(result) == ["unknown_country", "unknown_country"]
        assert result.errors[0].field == "origin_country"

    def test_malformed_currencies(self, config):
        result = CalculationValidator(config).validate(request(target_currency="RUPEE", price_currency="U$"))

        assert codes(result) == ["invalid_currency", "invalid_currency"]

    def test_unknown_tax_base(self, config):
        result = CalculationValidator(config).validate(request(tax_base="gross"))
        assert codes(result) == ["invalid_tax_base"]

    def test_empty_items(self, config):
        result = CalculationValidator(config).validate(request(items=[]))
        assert codes(result) == ["empty_items"]

    def test_item_problems_are_all_reported(self, config):
        items = [
            ItemInput(id="a", unit_price=Decimal("0"), quantity=0),
            ItemInput(id="a", unit_price=Decimal("-5"), weight_kg=Decimal("-1")),
            ItemInput(id=" ", unit_price=Decimal("5"), classification_code="85AB"),
        ]
        result = CalculationValidator(config).validate(request(items=items))

        assert codes(result) == [
            "invalid_quantity",
            "invalid_price",
            "duplicate_item_id",
            "invalid_price",
            "invalid_weight",
            "missing_item_id",
            "invalid_classification_code",
        ]
        assert result.errors[0].field == "items.0.quantity"
        assert "items.1.id" in result.summary

    def test_dotted_classification_code_accepted(self, config):
        items = [ItemInput(id="a", unit_price=Decimal("5"), classification_code="8517.12")]
        assert CalculationValidator(config).validate(request(items=items)).is_valid

    def test_ensure_valid_raises_with_issues(self, config):
        with pytest.raises(ValidationError) as exc_info:
            CalculationValidator(config).ensure_valid(request(items=[]))

        assert [issue.code for issue in exc_info.value.issues] == ["empty_items"]
        assert "items" in str(exc_info.value)

    def test_ensure_valid_accepts_valid_request(self, config):
        CalculationValidator(config).ensure_valid(request())

    def test_discount_problems(self, config):
        result = CalculationValidator(config).validate(
            request(
                order_discount=Discount(type="free"),
                shipping_discount=Discount(type="percentage", value=Decimal("150")),
            )
        )

        assert codes(result) == ["invalid_discount", "invalid_discount"]
        assert [issue.field for issue in result.errors] == ["order_discount", "shipping_discount"]

    def test_negative_fixed_discount(self, config):
        result = CalculationValidator(config).validate(
            request(order_discount=Discount(type="fixed", value=Decimal("-5")))
        )
        assert codes(result) == ["invalid_discount"]

    def test_package_size_problems(self, config):
        items = [
            ItemInput(
                id="a",
                unit_price=Decimal("5"),
                dimensions=Dimensions(length=Decimal("10"), width=Decimal("0"), height=Decimal("5")),
                volumetric_weight_kg=Decimal("-1"),
            )
        ]
        result = CalculationValidator(config).validate(request(items=items))

        assert codes(result) == ["invalid_weight", "invalid_dimensions"]

"""Tests for customs classification resolution."""

from decimal import Decimal

from quote_engine.models import ItemInput
from quote_engine.services.classification import ClassificationResolver


def item(**kwargs) -> ItemInput:
    return ItemInput(id="item-1", unit_price=Decimal("10"), **kwargs)


class TestClassificationResolver:
    def test_explicit_code_is_normalized(self, config):
        result = ClassificationResolver(config).resolve(item(classification_code="8517.12 00", category="books"))

        assert result.code == "85171200"
        assert result.method == "explicit"
        assert result.confidence == 1.0

    def test_category_mapping(self, config):
        result = ClassificationResolver(config).resolve(item(category="Books", name="Running Sneakers"))

        assert result.code == "4901"
        assert result.method == "category"

    def test_keyword_in_name(self, config):
        result = ClassificationResolver(config).resolve(item(name="Running Sneakers"))

        assert result.code == "6403"
        assert result.method == "keyword"

    def test_default_code(self, config):
        result = ClassificationResolver(config).resolve(item(name="Mystery Gadget", category="curios"))

        assert result.code == "9999"
        assert result.is_default

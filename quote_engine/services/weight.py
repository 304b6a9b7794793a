"""Item weight resolution.

Resolves the per-unit shipping weight of an item: an explicit weight is used
as-is; otherwise the item name is matched against keyword patterns, then the
category average is used, and finally the configured default weight.
Volumetric weight is resolved separately from the package dimensions.
"""

import logging
import re
from decimal import Decimal

from ..config import Config
from ..models import ItemInput, WeightResult

logger = logging.getLogger(__name__)

KEYWORD_CONFIDENCE = 0.7
CATEGORY_CONFIDENCE = 0.6
DEFAULT_CONFIDENCE = 0.3
CM_PER_INCH = Decimal("2.54")


class WeightResolver:
    def __init__(self, config: Config):
        self.config = config

    def resolve_weight(self, item: ItemInput) -> WeightResult:
        """Resolve the per-unit weight of an item.

        Args:
            item: Cart line to resolve.

        Returns:
            WeightResult with the weight in kilograms and how it was found.
        """
        if item.weight_kg is not None:
            return WeightResult(weight_kg=Decimal(item.weight_kg), confidence=1.0, method="explicit")

        weight = self._match_keyword(item.name)
        if weight is not None:
            return WeightResult(weight_kg=weight, confidence=KEYWORD_CONFIDENCE, method="keyword")

        categories = self.config.weight_table.get("categories", {})
        category = (item.category or "").strip().lower()
        if category in categories:
            return WeightResult(
                weight_kg=self._to_decimal(categories[category], self.config.default_weight_kg),
                confidence=CATEGORY_CONFIDENCE,
                method="category",
            )

        logger.debug(f"No weight heuristic for item {item.id}, using default weight")
        return WeightResult(
            weight_kg=Decimal(str(self.config.default_weight_kg)),
            confidence=DEFAULT_CONFIDENCE,
            method="default",
        )

    def volumetric_weight(self, item: ItemInput) -> Decimal:
        """Per-unit volumetric weight in kilograms, zero when the package size is unknown."""
        if item.volumetric_weight_kg is not None:
            return Decimal(item.volumetric_weight_kg)
        if item.dimensions is None:
            return Decimal("0")

        sides = [item.dimensions.length, item.dimensions.width, item.dimensions.height]
        if item.dimensions.unit == "in":
            sides = [side * CM_PER_INCH for side in sides]
        volume_cm3 = sides[0] * sides[1] * sides[2]
        return volume_cm3 / Decimal(self.config.engine.volumetric_divisor)

    def _match_keyword(self, name: str | None) -> Decimal | None:
        """Match the item name against weight patterns from weight_table.yml."""
        name_lower = (name or "").lower()
        if not name_lower:
            return None

        for entry in self.config.weight_table.get("patterns", []):
            pattern = entry.get("pattern")
            weight = entry.get("weight")

            if pattern and weight is not None:
                try:
                    if re.search(r"\b(?:" + pattern + r")\b", name_lower):
                        return self._to_decimal(weight, self.config.default_weight_kg)
                except re.error:
                    logger.warning(f"Invalid weight pattern skipped: {pattern}")
                    continue
        return None

    @staticmethod
    def _to_decimal(value: object, default: Decimal | float) -> Decimal:
        """Convert arbitrary value to Decimal with fallback."""
        if isinstance(value, Decimal):
            return value
        if value is None:
            return Decimal(str(default))

        try:
            return Decimal(str(value))
        except ArithmeticError:
            return Decimal(str(default))

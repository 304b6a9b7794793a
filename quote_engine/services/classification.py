"""Customs classification resolution.

Resolves the HSN classification code used for customs and tax lookups from
an explicit code, the item category, or keywords in the item name.
"""

import logging
import re

from ..config import Config
from ..models import ClassificationResult, ItemInput

logger = logging.getLogger(__name__)


class ClassificationResolver:
    """Maps cart items to classification codes using classification.yml."""

    def __init__(self, config: Config):
        self.config = config
        table = config.classification
        self._categories: dict[str, str] = {
            str(name).lower(): str(code) for name, code in table.get("categories", {}).items()
        }
        self._keywords: list[dict[str, str]] = table.get("keywords", [])
        self.default_code = str(table.get("default_code", "9999"))

    def resolve(self, item: ItemInput) -> ClassificationResult:
        """Resolve the classification code of an item.

        Args:
            item: Cart line to classify.

        Returns:
            ClassificationResult; method 'default' means nothing matched.
        """
        if item.classification_code:
            code = re.sub(r"[\s.]", "", item.classification_code)
            return ClassificationResult(code=code, confidence=1.0, method="explicit")

        category = (item.category or "").strip().lower()
        if category in self._categories:
            return ClassificationResult(code=self._categories[category], confidence=0.8, method="category")

        name_lower = (item.name or "").lower()
        if name_lower:
            for entry in self._keywords:
                pattern = entry.get("pattern")
                try:
                    if pattern and re.search(r"\b(?:" + pattern + r")\b", name_lower):
                        return ClassificationResult(code=str(entry["code"]), confidence=0.6, method="keyword")
                except re.error:
                    logger.warning(f"Invalid classification pattern skipped: {pattern}")

        logger.debug(f"No classification for item {item.id}, using default code {self.default_code}")
        return ClassificationResult(code=self.default_code, confidence=0.3, method="default")

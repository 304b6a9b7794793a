"""Jurisdiction rate providers.

Exposes the concrete providers and a helper that builds a registry with
all of them registered against one shared RateCache.
"""

from ..config import Config
from ..services.rate_cache import RateCache
from .base import BaseTaxProvider, ProviderRegistry, TaxProviderProtocol
from .customs import CustomsDutyProvider
from .gst import GSTProvider
from .sales_tax import SalesTaxProvider
from .vat import VATProvider


def build_registry(config: Config, cache: RateCache) -> ProviderRegistry:
    """Create a registry with the customs, GST, VAT and sales tax providers."""
    registry = ProviderRegistry(config)
    registry.register(CustomsDutyProvider(config, cache))
    registry.register(GSTProvider(config, cache))
    registry.register(VATProvider(config, cache))
    registry.register(SalesTaxProvider(config, cache))
    return registry


__all__ = [
    "BaseTaxProvider",
    "CustomsDutyProvider",
    "GSTProvider",
    "ProviderRegistry",
    "SalesTaxProvider",
    "TaxProviderProtocol",
    "VATProvider",
    "build_registry",
]

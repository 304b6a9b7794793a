"""Dependency-injection container.

Wires the engine's components around one explicitly constructed RateCache.
The process entry point owns the container and the cache lifecycle.
"""

from dependency_injector import containers, providers

from ..config import Config
from ..engine.orchestrator import QuoteOrchestrator
from ..engine.validator import CalculationValidator
from ..providers import build_registry
from ..services.classification import ClassificationResolver
from ..services.currency import CurrencyConverter
from ..services.fees import FeeScheduleResolver
from ..services.rate_cache import RateCache
from ..services.weight import WeightResolver


class Container(containers.DeclarativeContainer):
    """DI container for the quote engine."""

    settings = providers.Configuration()

    config = providers.Singleton(Config, config_dir=settings.config_dir)

    # Services
    rate_cache = providers.Singleton(RateCache, config=config.provided.cache)
    provider_registry = providers.Singleton(build_registry, config=config, cache=rate_cache)
    currency_converter = providers.Singleton(CurrencyConverter, cache=rate_cache, config=config)
    weight_resolver = providers.Singleton(WeightResolver, config=config)
    classification_resolver = providers.Singleton(ClassificationResolver, config=config)
    fee_resolver = providers.Singleton(FeeScheduleResolver, config=config)

    # Engine
    validator = providers.Singleton(CalculationValidator, config=config)
    orchestrator = providers.Singleton(
        QuoteOrchestrator,
        config=config,
        cache=rate_cache,
        registry=provider_registry,
        converter=currency_converter,
        weight_resolver=weight_resolver,
        classification_resolver=classification_resolver,
        fee_resolver=fee_resolver,
        validator=validator,
    )

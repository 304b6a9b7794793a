"""Configuration management for the quote engine.

Handles all engine configuration including environment variables, YAML data
tables, and default settings. Provides structured configuration classes for
the different parts of a calculation (engine, cache, currency, providers).
"""

from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .exceptions import ConfigurationError

TaxBase = Literal["item_price", "item_price_plus_duty"]
HandlingMethod = Literal["max", "sum", "percentage_only", "fixed_only"]


class EngineConfig(BaseSettings):
    """Core calculation parameters.

    Attributes:
        max_concurrency: Concurrent provider sub-calls allowed per calculation.
        global_max_concurrency: Provider sub-calls allowed across all calculations.
        calculation_timeout: Deadline for the whole fan-out phase, in seconds.
        provider_timeout: Timeout for a single provider sub-call, in seconds.
        tax_base: Whether destination tax is charged on the item price alone
            or on the item price plus customs duty.
        handling_method: How the fixed and percentage handling fees combine.
        insurance_default_opt_in: Insurance applied when a request does not say.
        default_weight_kg: Weight used when nothing is known about an item.
        volumetric_divisor: Cubic centimetres per kilogram of volumetric weight.
        origin_tax_enabled: Whether origin purchase tax is added to quotes.
        fallback_penalty: Confidence multiplier applied per fallback event.
        timeout_penalty: Confidence multiplier applied per timed-out sub-call.
        currency_precision: Decimal places for currencies not listed as zero-decimal.
    """
    model_config = SettingsConfigDict(env_prefix="QUOTE_ENGINE_")

    max_concurrency: int = 8
    global_max_concurrency: int = 32
    calculation_timeout: float = 5.0
    provider_timeout: float = 2.0
    tax_base: TaxBase = "item_price_plus_duty"
    handling_method: HandlingMethod = "max"
    insurance_default_opt_in: bool = False
    default_weight_kg: float = 0.5
    volumetric_divisor: int = 5000
    origin_tax_enabled: bool = False
    fallback_penalty: float = 0.9
    timeout_penalty: float = 0.85
    currency_precision: int = 2

    @field_validator("fallback_penalty", "timeout_penalty")
    @classmethod
    def _check_penalty(cls, value: float) -> float:
        if not 0.0 <= value <= 1.0:
            raise ValueError("confidence penalties must be between 0 and 1")
        return value

    @field_validator("max_concurrency", "global_max_concurrency", "volumetric_divisor")
    @classmethod
    def _check_positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("concurrency limits and the volumetric divisor must be at least 1")
        return value


class CacheConfig(BaseSettings):
    """Rate cache lifetimes in seconds.

    Attributes:
        enabled: Whether rate answers are cached at all.
        exchange_rate_ttl: Lifetime of the exchange rate table (12 hours).
        gst_ttl: Lifetime of GST answers (6 hours).
        vat_ttl: Lifetime of VAT answers (24 hours).
        sales_tax_ttl: Lifetime of sales tax answers (1 hour).
        customs_ttl: Lifetime of customs duty answers (24 hours).
        stale_grace: How long an expired entry is kept for fallback use.
        sweep_interval: Period of the background eviction sweep.
    """
    model_config = SettingsConfigDict(env_prefix="QUOTE_CACHE_")

    enabled: bool = True
    exchange_rate_ttl: int = 43200
    gst_ttl: int = 21600
    vat_ttl: int = 86400
    sales_tax_ttl: int = 3600
    customs_ttl: int = 86400
    stale_grace: int = 86400
    sweep_interval: int = 300

    def ttl_for(self, rate_class: str) -> int:
        """Get the TTL for a rate class ('gst', 'vat', 'sales_tax', 'customs', 'exchange_rate')."""
        return getattr(self, f"{rate_class}_ttl", self.customs_ttl)


class CurrencyConfig(BaseSettings):
    """Currency conversion settings.

    Attributes:
        rates_url: ECB daily reference rate XML feed.
        fetch_timeout: Timeout for a rate table download, in seconds.
        fallback_enabled: Whether the static fallback table may be used.
    """
    model_config = SettingsConfigDict(env_prefix="QUOTE_CURRENCY_")

    rates_url: str = "https://www.ecb.europa.eu/stats/eurofxref/eurofxref-daily.xml"
    fetch_timeout: float = 3.0
    fallback_enabled: bool = True


class ProviderConfig(BaseSettings):
    """Remote rate source endpoints. A provider without a URL uses its local table.

    Attributes:
        gst_api_url: GST rate lookup endpoint.
        gst_api_key: Bearer token for the GST endpoint.
        vat_api_url: VAT rate lookup endpoint.
        sales_tax_api_url: Sales tax rate lookup endpoint.
        sales_tax_api_key: Token for the sales tax endpoint.
        customs_api_url: Tariff lookup endpoint.
    """
    model_config = SettingsConfigDict(env_prefix="QUOTE_PROVIDER_")

    gst_api_url: str | None = None
    gst_api_key: str | None = None
    vat_api_url: str | None = None
    sales_tax_api_url: str | None = None
    sales_tax_api_key: str | None = None
    customs_api_url: str | None = None


class Config:
    """Engine configuration manager.

    Centralizes loading of environment settings and the YAML data tables
    (countries, regional pricing, tax rates, weights, classification and
    fallback exchange rates). Missing table files resolve to empty tables.
    """

    def __init__(self, config_dir: Path | None = None, **overrides: Any):
        """Initialize configuration manager.

        Args:
            config_dir: Path to the data table directory, defaults to quote_engine/data.
            **overrides: Keyword overrides for EngineConfig fields.
        """
        if config_dir is None:
            config_dir = Path(__file__).parent / "data"

        self.config_dir = Path(config_dir)

        try:
            self.engine = EngineConfig(**overrides)
            self.cache = CacheConfig()
            self.currency = CurrencyConfig()
            self.providers = ProviderConfig()
        except ValueError as e:
            raise ConfigurationError(f"Invalid configuration: {e}") from e

        self.countries: dict[str, dict[str, Any]] = {
            code.upper(): data for code, data in self._load("countries.yml").get("countries", {}).items()
        }
        self.regional_pricing = self._load("regional_pricing.yml")
        self.tax_rates = self._load("tax_rates.yml")
        self.weight_table = self._load("weight_table.yml")
        self.classification = self._load("classification.yml")
        self.currency_fallback = self._load("currency_fallback.yml")

    def _load(self, filename: str) -> dict[str, Any]:
        """Load a YAML table from the config directory.

        Args:
            filename: Table file name.

        Returns:
            Parsed mapping, empty if the file does not exist.
        """
        path = self.config_dir / filename
        if not path.exists():
            return {}

        with open(path) as f:
            data = yaml.safe_load(f)

        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ConfigurationError(f"{filename} must contain a mapping at the top level")
        return data

    def country(self, code: str) -> dict[str, Any] | None:
        """Get the country table entry for an ISO code, None if unknown."""
        return self.countries.get(code.upper())

    def currency_for(self, country_code: str) -> str | None:
        """Get the local currency of a country."""
        entry = self.country(country_code)
        return entry.get("currency") if entry else None

    def continent_for(self, country_code: str) -> str | None:
        """Get the continent code of a country."""
        entry = self.country(country_code)
        return entry.get("continent") if entry else None

    def tax_regime(self, country_code: str) -> str:
        """Get the destination tax regime ('gst', 'vat', 'sales_tax' or 'none')."""
        entry = self.country(country_code)
        return (entry or {}).get("tax_regime", "none")

    @property
    def zero_decimal_currencies(self) -> set[str]:
        """Currencies quoted without minor units."""
        return set(self.currency_fallback.get("zero_decimal", []))

    def precision_for(self, currency: str) -> int:
        """Get the number of decimal places money in a currency is rounded to."""
        if currency.upper() in self.zero_decimal_currencies:
            return 0
        return self.engine.currency_precision

    @property
    def default_weight_kg(self) -> float:
        """Get default weight for items nothing is known about.

        An explicit engine setting (keyword override or
        QUOTE_ENGINE_DEFAULT_WEIGHT_KG) wins over the table value.

        Returns:
            Default weight in kilograms.
        """
        if "default_weight_kg" in self.engine.model_fields_set:
            return self.engine.default_weight_kg
        return float(self.weight_table.get("default_weight", self.engine.default_weight_kg))

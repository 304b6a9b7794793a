"""Global test configuration and fixtures.

Provides shared fixtures for all test levels: engine configuration backed by
the packaged data tables, a controllable clock for the rate cache, fake rate
providers and exchange rate sources, mocked aiohttp sessions, and an
orchestrator factory wiring them together.
"""

import asyncio
import inspect
import os
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import aiohttp
import pytest

from quote_engine.config import Config
from quote_engine.engine.orchestrator import QuoteOrchestrator
from quote_engine.engine.validator import CalculationValidator
from quote_engine.models import (
    CalculationRequest,
    ItemInput,
    MinimumValuation,
    RateResult,
    RateSource,
    ValuationBasis,
)
from quote_engine.providers import build_registry
from quote_engine.providers.base import ProviderRegistry
from quote_engine.services.classification import ClassificationResolver
from quote_engine.services.currency import CurrencyConverter
from quote_engine.services.fees import FeeScheduleResolver
from quote_engine.services.rate_cache import RateCache
from quote_engine.services.weight import WeightResolver

GST_API_URL = "https://gst.example.test/v1/rates"
VAT_API_URL = "https://vat.example.test/v1/rates"
SALES_TAX_API_URL = "https://salestax.example.test/v2/rates"

ECB_XML = """<?xml version="1.0" encoding="UTF-8"?>
<gesmes:Envelope xmlns:gesmes="http://www.gesmes.org/xml/2002-08-01" xmlns="http://www.ecb.int/vocabulary/2002-08-01/eurofxref">
    <gesmes:subject>Reference rates</gesmes:subject>
    <Cube>
        <Cube time="2025-01-10">
            <Cube currency="USD" rate="1.0800"/>
            <Cube currency="INR" rate="90.00"/>
            <Cube currency="GBP" rate="0.8500"/>
            <Cube currency="JPY" rate="162.00"/>
        </Cube>
    </Cube>
</gesmes:Envelope>"""


class FakeClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeRateSource:
    """Exchange rate source returning a fixed table, or failing on demand."""

    name = "fake"

    def __init__(self, rates: dict[str, str] | None = None, error: Exception | None = None, delay: float = 0.0):
        self.rates = {code: Decimal(rate) for code, rate in (rates or {"EUR": "1", "USD": "1.08", "INR": "90"}).items()}
        self.error = error
        self.delay = delay
        self.calls = 0

    async def fetch_rates(self, session) -> dict[str, Decimal]:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return dict(self.rates)


class FakeProvider:
    """Rate provider with scripted behaviour that records its concurrency."""

    def __init__(
        self,
        name: str,
        rate: str = "0.10",
        delay: float = 0.0,
        error: Exception | None = None,
        source: RateSource = RateSource.LIVE,
        basis: ValuationBasis = ValuationBasis.DECLARED,
        floor: MinimumValuation | None = None,
        fallback_rate: str = "0.05",
    ):
        self.name = name
        self.rate = Decimal(rate)
        self.delay = delay
        self.error = error
        self.source = source
        self.basis = basis
        self.floor = floor
        self.fallback_rate = Decimal(fallback_rate)
        self.calls = 0
        self.active = 0
        self.max_active = 0

    def get_provider_name(self) -> str:
        return self.name

    async def get_rate(self, query, session=None, timeout=None) -> RateResult:
        self.calls += 1
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.error is not None:
                raise self.error
            return RateResult(
                rate=self.rate,
                basis=self.basis,
                minimum_valuation=self.floor,
                confidence=0.9,
                source=self.source,
                provider=self.name,
                jurisdiction=query.jurisdiction,
            )
        finally:
            self.active -= 1

    def fallback_result(self, query, error=None, timed_out=False) -> RateResult:
        return RateResult(
            rate=self.fallback_rate,
            confidence=0.3,
            source=RateSource.FALLBACK,
            provider=self.name,
            jurisdiction=query.jurisdiction,
            timed_out=timed_out,
            error=error or "rate unavailable",
        )


def make_response(json_data=None, text: str | None = None, status: int = 200, error: Exception | None = None):
    """Build a mocked aiohttp response."""
    response = AsyncMock()
    response.status = status
    response.json = AsyncMock(return_value=json_data)
    response.text = AsyncMock(return_value=text)
    response.raise_for_status = MagicMock(side_effect=error)
    return response


def make_session(routes: dict):
    """Build a mocked aiohttp session routing GET requests by URL.

    Route values are responses, exceptions raised on entering the request
    context, or coroutine functions awaited before returning a response.
    """
    session = MagicMock(spec=aiohttp.ClientSession)

    def get(url, **kwargs):
        context = MagicMock()
        route = routes[url]
        if isinstance(route, BaseException):
            context.__aenter__ = AsyncMock(side_effect=route)
        elif inspect.isfunction(route):
            context.__aenter__ = AsyncMock(side_effect=route)
        else:
            context.__aenter__ = AsyncMock(return_value=route)
        context.__aexit__ = AsyncMock(return_value=False)
        return context

    session.get = MagicMock(side_effect=get)
    return session


@pytest.fixture(autouse=True)
def test_environment(monkeypatch):
    """Keep engine settings independent of the developer's environment."""
    for key in list(os.environ):
        if key.startswith("QUOTE_"):
            monkeypatch.delenv(key, raising=False)


@pytest.fixture
def config() -> Config:
    """Engine configuration with the packaged data tables."""
    return Config()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def rate_cache(config, clock) -> RateCache:
    return RateCache(config.cache, clock=clock)


@pytest.fixture
def fake_rate_source():
    return FakeRateSource


@pytest.fixture
def fake_provider():
    return FakeProvider


@pytest.fixture
def mock_session():
    """Factory for mocked aiohttp sessions keyed by URL."""
    return make_session


@pytest.fixture
def mock_response():
    return make_response


@pytest.fixture
def ecb_xml() -> str:
    return ECB_XML


@pytest.fixture
def gst_payload():
    """GST API response for an 18% taxable good."""
    return {
        "data": {
            "gst_rate": 18,
            "cess_rate": 0,
            "exemption_status": "taxable",
            "last_updated": "2025-01-01T00:00:00Z",
        }
    }


@pytest.fixture
def fake_registry(config):
    """Factory for a registry filled with fake providers."""

    def _build(**providers: FakeProvider) -> ProviderRegistry:
        registry = ProviderRegistry(config)
        for name, provider in providers.items():
            provider.name = name
            registry.register(provider)
        return registry

    return _build


@pytest.fixture
def make_orchestrator(clock):
    """Factory wiring an orchestrator from a config and optional fakes."""

    def _build(
        config: Config | None = None,
        registry: ProviderRegistry | None = None,
        rate_source=None,
        cache: RateCache | None = None,
    ) -> QuoteOrchestrator:
        config = config or Config()
        cache = cache or RateCache(config.cache, clock=clock)
        return QuoteOrchestrator(
            config=config,
            cache=cache,
            registry=registry or build_registry(config, cache),
            converter=CurrencyConverter(cache, config, rate_source=rate_source or FakeRateSource()),
            weight_resolver=WeightResolver(config),
            classification_resolver=ClassificationResolver(config),
            fee_resolver=FeeScheduleResolver(config),
            validator=CalculationValidator(config),
        )

    return _build


@pytest.fixture
def electronics_request() -> CalculationRequest:
    """One 100 USD electronics item shipped from the US to India, quoted in USD."""
    return CalculationRequest(
        origin_country="US",
        destination_country="IN",
        target_currency="USD",
        items=[ItemInput(id="item-1", unit_price=Decimal("100.00"), quantity=1, category="electronics")],
    )

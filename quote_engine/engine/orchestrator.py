"""Quote calculation orchestration.

Coordinates one landed-cost calculation: validates the request, fans out
rate lookups to the jurisdiction providers under bounded concurrency and a
per-calculation deadline, aggregates the answers into an itemized breakdown,
and records how much of the result relied on degraded data.

Lifecycle: validating -> fanning_out -> aggregating -> finalized, or
validating -> rejected.
"""

import asyncio
import logging
import time
from collections.abc import Callable, Iterable
from decimal import Decimal

import aiohttp

from ..config import Config
from ..exceptions import UnrecoverableConversionError, ValidationError
from ..models import (
    CalculationRequest,
    CalculationState,
    ConversionResult,
    ItemBreakdown,
    ItemInput,
    QuoteCalculationResult,
    RateQuery,
    RateResult,
    ValuationBasis,
    ValidationIssue,
)
from ..providers.base import ProviderRegistry, TaxProviderProtocol
from ..services.classification import ClassificationResolver
from ..services.currency import CurrencyConverter
from ..services.fees import FeeScheduleResolver
from ..services.http import create_session
from ..services.rate_cache import RateCache
from ..services.weight import WeightResolver
from .breakdown import (
    CalculationTrace,
    build_confidence_envelope,
    build_item_breakdown,
    build_quote_breakdown,
    taxable_unit_value,
)
from .validator import CalculationValidator

logger = logging.getLogger(__name__)

DEADLINE_EXCEEDED = "calculation deadline exceeded"


class QuoteOrchestrator:
    """Runs quote calculations against injected services.

    Responsibilities:
    - Reject invalid requests before any lookup
    - Run provider lookups concurrently, bounded per calculation and globally
    - Replace late or failed lookups with provider fallbacks
    - Aggregate results into an immutable QuoteCalculationResult
    - Track calculation statistics for operational dashboards
    """

    def __init__(
        self,
        config: Config,
        cache: RateCache,
        registry: ProviderRegistry,
        converter: CurrencyConverter,
        weight_resolver: WeightResolver,
        classification_resolver: ClassificationResolver,
        fee_resolver: FeeScheduleResolver,
        validator: CalculationValidator,
        session_factory: Callable[[], aiohttp.ClientSession] | None = None,
    ):
        self.config = config
        self.cache = cache
        self.registry = registry
        self.converter = converter
        self.weight_resolver = weight_resolver
        self.classification_resolver = classification_resolver
        self.fee_resolver = fee_resolver
        self.validator = validator
        self.session_factory = session_factory or create_session
        self._session: aiohttp.ClientSession | None = None
        self._session_loop: asyncio.AbstractEventLoop | None = None
        self._global_limit: asyncio.Semaphore | None = None
        self._global_limit_loop: asyncio.AbstractEventLoop | None = None
        self._stats = {
            "calculations": 0,
            "successful": 0,
            "rejected": 0,
            "failed": 0,
            "api_calls_made": 0,
            "cache_hits": 0,
            "fallbacks_used": 0,
            "errors_handled": 0,
            "timeouts": 0,
            "total_time_ms": 0,
        }

    def _global_semaphore(self) -> asyncio.Semaphore:
        """Semaphore shared by all calculations on the running loop."""
        loop = asyncio.get_running_loop()
        if self._global_limit is None or self._global_limit_loop is not loop:
            self._global_limit = asyncio.Semaphore(self.config.engine.global_max_concurrency)
            self._global_limit_loop = loop
        return self._global_limit

    async def _get_session(self) -> aiohttp.ClientSession:
        """Session owned by the orchestrator, created lazily on the running loop."""
        loop = asyncio.get_running_loop()
        if self._session is None or self._session.closed or self._session_loop is not loop:
            self._session = self.session_factory()
            self._session_loop = loop
        return self._session

    async def close(self) -> None:
        """Close the orchestrator's own HTTP session."""
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None
        self._session_loop = None

    async def calculate(
        self,
        request: CalculationRequest,
        session: aiohttp.ClientSession | None = None,
        deadline: float | None = None,
    ) -> QuoteCalculationResult:
        """Calculate a landed-cost quote.

        Args:
            request: Quote request.
            session: HTTP session for rate sources, the orchestrator's own
                long-lived session if None.
            deadline: Fan-out deadline in seconds, defaults to the configured
                calculation timeout.

        Returns:
            QuoteCalculationResult; success is False only for rejected requests
            and currencies with no conversion path.
        """
        start_time = time.perf_counter()
        logger.info(
            f"Calculating quote {request.origin_country}->{request.destination_country} "
            f"({len(request.items)} items, {request.target_currency})"
        )

        try:
            self.validator.ensure_valid(request)
        except ValidationError as e:
            result = self._rejected(e.message, e.issues, start_time)
            self._record(result)
            return result

        try:
            if session is None:
                session = await self._get_session()
            result = await self._calculate(request, session, deadline, start_time)
        except UnrecoverableConversionError as e:
            logger.error(f"Quote calculation failed: {e}")
            result = self._rejected(str(e), [], start_time)

        self._record(result)
        return result

    async def _calculate(
        self,
        request: CalculationRequest,
        session: aiohttp.ClientSession,
        deadline: float | None,
        start_time: float,
    ) -> QuoteCalculationResult:
        engine = self.config.engine
        origin = request.origin_country.upper()
        destination = request.destination_country.upper()
        target_currency = request.target_currency.upper()
        price_currency = (request.price_currency or self.config.currency_for(origin) or "USD").upper()
        tax_base = request.tax_base or engine.tax_base
        include_insurance = (
            request.include_insurance if request.include_insurance is not None else engine.insurance_default_opt_in
        )
        places = self.config.precision_for(target_currency)
        trace = CalculationTrace()

        # Fanning out
        weights = [self.weight_resolver.resolve_weight(item) for item in request.items]
        classifications = [self.classification_resolver.resolve(item) for item in request.items]
        for item, weight, classification in zip(request.items, weights, classifications):
            trace.weights.append((item.id, weight))
            trace.classifications.append((item.id, classification))

        lookups: list[tuple[int, str, TaxProviderProtocol | None, RateQuery]] = []
        for index, (item, classification) in enumerate(zip(request.items, classifications)):
            lookups.append(
                (index, "customs", self.registry.customs_provider(),
                 self._query(destination, item, classification.code, price_currency))
            )
            lookups.append(
                (index, "destination", self.registry.destination_provider(destination),
                 self._query(destination, item, classification.code, price_currency))
            )
            if engine.origin_tax_enabled:
                lookups.append(
                    (index, "origin", self.registry.origin_provider(origin),
                     self._query(origin, item, classification.code, price_currency))
                )

        answers = await self._fan_out(
            lookups, session, engine.calculation_timeout if deadline is None else deadline
        )

        # Aggregating
        fx = await self.converter.get_rate(price_currency, target_currency, session)
        trace.add_conversion("quote", fx)

        item_breakdowns: list[ItemBreakdown] = []
        for index, item in enumerate(request.items):
            customs = answers[(index, "customs")]
            destination_result = answers[(index, "destination")]
            origin_result = answers.get((index, "origin"))
            for role, answer in (("customs", customs), ("destination", destination_result), ("origin", origin_result)):
                if answer is not None:
                    trace.add_rate(item.id, role, answer)

            floors = await self._floors(
                [customs, destination_result], price_currency, session, trace
            )
            taxable_unit, basis = taxable_unit_value(item.unit_price, floors, [customs, destination_result])
            if basis == ValuationBasis.MINIMUM_VALUATION:
                logger.info(f"Item {item.id}: minimum valuation {taxable_unit} applied over {item.unit_price}")

            item_breakdowns.append(
                build_item_breakdown(
                    item,
                    weights[index],
                    classifications[index],
                    taxable_unit,
                    basis,
                    customs,
                    destination_result,
                    origin_result,
                    tax_base,
                    fx.rate,
                    places,
                )
            )

        items_value = sum((item.unit_price * item.quantity for item in request.items), Decimal("0"))
        total_weight = sum((item.weight_kg for item in item_breakdowns), Decimal("0"))
        volumetric_weight = sum(
            (self.weight_resolver.volumetric_weight(item) * item.quantity for item in request.items), Decimal("0")
        )

        fee_fx = await self.converter.get_rate(self.fee_resolver.table_currency, price_currency, session)
        trace.add_conversion("fee schedule", fee_fx)
        schedule = self.fee_resolver.resolve_fees(destination, items_value, fee_fx.rate, price_currency)
        trace.fee_schedule = schedule

        breakdown = build_quote_breakdown(
            item_breakdowns,
            schedule,
            total_weight,
            items_value,
            include_insurance,
            fx.rate,
            target_currency,
            places,
            volumetric_weight_kg=volumetric_weight,
            order_discount=request.order_discount,
            shipping_discount=request.shipping_discount,
        )
        envelope = build_confidence_envelope(trace, engine.fallback_penalty, engine.timeout_penalty)

        processing_time = int((time.perf_counter() - start_time) * 1000)
        logger.info(
            f"Quote finalized: {breakdown.grand_total} {target_currency}, "
            f"confidence {envelope.score}, fallbacks {envelope.fallbacks_used} ({processing_time}ms)"
        )

        return QuoteCalculationResult(
            success=True,
            breakdown=breakdown,
            item_breakdowns=item_breakdowns,
            confidence=envelope,
            state=CalculationState.FINALIZED,
            processing_time_ms=processing_time,
        )

    @staticmethod
    def _query(jurisdiction: str, item: ItemInput, code: str, currency: str) -> RateQuery:
        return RateQuery(
            jurisdiction=jurisdiction,
            classification_code=code,
            category=(item.category or "").lower() or None,
            valuation_amount=item.unit_price,
            currency=currency,
        )

    async def _fan_out(
        self,
        lookups: list[tuple[int, str, TaxProviderProtocol | None, RateQuery]],
        session: aiohttp.ClientSession,
        deadline: float,
    ) -> dict[tuple[int, str], RateResult]:
        """Run provider lookups concurrently under the calculation deadline.

        Lookups still pending at the deadline are cancelled and replaced with
        the provider's fallback answer, flagged as timed out.
        """
        answers: dict[tuple[int, str], RateResult] = {}
        limit = asyncio.Semaphore(self.config.engine.max_concurrency)
        tasks: dict[asyncio.Task, tuple[int, str, TaxProviderProtocol, RateQuery]] = {}

        for index, role, provider, query in lookups:
            if provider is None:
                answers[(index, role)] = ProviderRegistry.zero_rate(query, role)
                continue
            task = asyncio.create_task(self._lookup(provider, query, session, limit))
            tasks[task] = (index, role, provider, query)

        if not tasks:
            return answers

        done, pending = await asyncio.wait(tasks.keys(), timeout=deadline)
        for task in pending:
            task.cancel()
        if pending:
            logger.warning(f"{len(pending)} rate lookup(s) missed the {deadline}s deadline")
            await asyncio.gather(*pending, return_exceptions=True)

        for task, (index, role, provider, query) in tasks.items():
            if task in done and not task.cancelled():
                answers[(index, role)] = task.result()
            else:
                answers[(index, role)] = provider.fallback_result(query, error=DEADLINE_EXCEEDED, timed_out=True)
        return answers

    async def _lookup(
        self,
        provider: TaxProviderProtocol,
        query: RateQuery,
        session: aiohttp.ClientSession,
        limit: asyncio.Semaphore,
    ) -> RateResult:
        """One provider lookup; never raises except on cancellation."""
        timeout = self.config.engine.provider_timeout
        async with limit:
            async with self._global_semaphore():
                try:
                    # The provider honours `timeout` itself; the outer bound catches
                    # providers that do not.
                    return await asyncio.wait_for(
                        provider.get_rate(query, session=session, timeout=timeout), timeout * 2
                    )
                except asyncio.TimeoutError:
                    logger.warning(f"{provider.get_provider_name()} lookup for {query.jurisdiction} timed out")
                    return provider.fallback_result(query, error="provider timeout", timed_out=True)
                except Exception as e:
                    logger.error(f"{provider.get_provider_name()} lookup for {query.jurisdiction} failed: {e}")
                    return provider.fallback_result(query, error=str(e))

    async def _floors(
        self,
        results: list[RateResult],
        price_currency: str,
        session: aiohttp.ClientSession,
        trace: CalculationTrace,
    ) -> list[Decimal]:
        """Minimum valuation floors converted to the price currency."""
        floors: list[Decimal] = []
        for result in results:
            floor = result.minimum_valuation
            if floor is None:
                continue
            conversion: ConversionResult = await self.converter.convert(
                floor.amount, floor.currency, price_currency, session
            )
            if floor.currency.upper() != price_currency:
                trace.add_conversion("valuation floor", conversion)
            floors.append(conversion.amount)
        return floors

    def _rejected(
        self, message: str, issues: list[ValidationIssue], start_time: float
    ) -> QuoteCalculationResult:
        return QuoteCalculationResult(
            success=False,
            error=message,
            errors=issues,
            state=CalculationState.REJECTED,
            processing_time_ms=int((time.perf_counter() - start_time) * 1000),
        )

    def _record(self, result: QuoteCalculationResult) -> None:
        self._stats["calculations"] += 1
        self._stats["total_time_ms"] += result.processing_time_ms
        if result.success:
            self._stats["successful"] += 1
        elif result.errors:
            self._stats["rejected"] += 1
        else:
            self._stats["failed"] += 1

        envelope = result.confidence
        if envelope is not None:
            self._stats["api_calls_made"] += envelope.api_calls_made
            self._stats["cache_hits"] += envelope.cache_hits
            self._stats["fallbacks_used"] += envelope.fallbacks_used
            self._stats["errors_handled"] += envelope.errors_handled
            self._stats["timeouts"] += envelope.timeouts

    def calculate_sync(self, request: CalculationRequest, deadline: float | None = None) -> QuoteCalculationResult:
        """Blocking calculation for callers without an event loop.

        Must not be called from a running event loop. Background cache
        refreshes started by the call are given up to the provider timeout to
        finish before the loop shuts down.
        """

        async def run() -> QuoteCalculationResult:
            try:
                result = await self.calculate(request, deadline=deadline)
                await self.cache.wait_for_refreshes(self.config.engine.provider_timeout)
                return result
            finally:
                await self.close()

        return asyncio.run(run())

    async def calculate_batch(
        self,
        requests: Iterable[tuple[str, CalculationRequest]],
        session: aiohttp.ClientSession | None = None,
    ) -> dict[str, QuoteCalculationResult]:
        """Calculate many quotes concurrently, each under its own deadline.

        Args:
            requests: Pairs of (batch id, request).
            session: Shared HTTP session, the orchestrator's own session if None.

        Returns:
            Results keyed by batch id.
        """
        pairs = list(requests)
        logger.info(f"Processing batch of {len(pairs)} quote requests")

        if session is None:
            session = await self._get_session()
        return await self._run_batch(pairs, session)

    async def _run_batch(
        self, pairs: list[tuple[str, CalculationRequest]], session: aiohttp.ClientSession
    ) -> dict[str, QuoteCalculationResult]:
        outcomes = await asyncio.gather(
            *(self.calculate(request, session=session) for _, request in pairs),
            return_exceptions=True,
        )

        results: dict[str, QuoteCalculationResult] = {}
        for (batch_id, _), outcome in zip(pairs, outcomes):
            if isinstance(outcome, BaseException):
                logger.error(f"Batch calculation {batch_id} failed: {outcome}")
                result = QuoteCalculationResult(
                    success=False, error=str(outcome), state=CalculationState.REJECTED
                )
                self._record(result)
                results[batch_id] = result
            else:
                results[batch_id] = outcome
        return results

    def clear_cache(self) -> None:
        """Drop every cached rate."""
        self.cache.clear()

    def get_stats(self) -> dict[str, float | int | dict[str, int]]:
        """Get calculation and cache statistics."""
        calculations = self._stats["calculations"]
        average = self._stats["total_time_ms"] / calculations if calculations else 0.0
        return {
            **{key: value for key, value in self._stats.items() if key != "total_time_ms"},
            "average_calculation_time_ms": round(average, 2),
            "cache": self.cache.get_stats(),
        }

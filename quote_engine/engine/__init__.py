"""Calculation engine: validation, orchestration and quote arithmetic."""

from .orchestrator import QuoteOrchestrator
from .validator import CalculationValidator

__all__ = ["CalculationValidator", "QuoteOrchestrator"]

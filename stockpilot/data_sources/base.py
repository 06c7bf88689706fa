"""Interfaces the pipeline expects from its collaborators.

Any object with the right methods qualifies; the yfinance, Anthropic and
JSONL implementations in this package are the defaults.
"""

from __future__ import annotations

from typing import List, Optional, Protocol, runtime_checkable

from stockpilot.models import (
    AnalysisReport,
    FinancialRatios,
    FundamentalReport,
    PricePoint,
    SentimentResult,
    TechnicalSnapshot,
)


@runtime_checkable
class PriceHistoryProvider(Protocol):
    def get_price_points(self, symbol: str, period: str = "2y", interval: str = "1d") -> List[PricePoint]:
        """Chronological price history; empty when nothing is available."""
        ...


@runtime_checkable
class FundamentalsProvider(Protocol):
    def get_reports(self, symbol: str) -> List[FundamentalReport]:
        """One report per period; empty when nothing is available."""
        ...


@runtime_checkable
class SentimentProvider(Protocol):
    def analyze(
        self,
        symbol: str,
        snapshot: TechnicalSnapshot,
        ratios: FinancialRatios,
        current_price: Optional[float] = None,
    ) -> SentimentResult:
        """Sentiment verdict; raises ExternalServiceError on failure."""
        ...


@runtime_checkable
class AnalysisSink(Protocol):
    def write(self, report: AnalysisReport) -> None:
        ...

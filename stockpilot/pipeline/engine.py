"""AnalysisPipeline: fetch -> analyze -> score -> predict -> persist.

The engines are pure; everything that can block goes through ``_call``,
which runs the collaborator on an I/O thread and waits at most the
configured timeout.  Price or fundamentals failures degrade the run to
neutral scores, and a failing sentiment provider is replaced by the
rule-based fallback, so a report is always produced for a valid symbol.
"""

from __future__ import annotations

import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

import pandas as pd

from stockpilot.analysis.backtesting import BacktestEngine, get_strategy
from stockpilot.analysis.fundamental import FundamentalAnalyzer
from stockpilot.analysis.prediction import PricePredictor
from stockpilot.analysis.recommendation import RecommendationEngine
from stockpilot.analysis.sentiment import fallback_sentiment, sentiment_score
from stockpilot.analysis.technical import TechnicalAnalyzer, technical_score
from stockpilot.config import SETTINGS
from stockpilot.data_sources.base import (
    AnalysisSink,
    FundamentalsProvider,
    PriceHistoryProvider,
    SentimentProvider,
)
from stockpilot.errors import ExternalServiceError, InvalidInputError
from stockpilot.models import (
    AnalysisReport,
    AnalysisScores,
    BacktestResult,
    FundamentalReport,
    MarketTrend,
    OverallScore,
    PricePoint,
    TechnicalSnapshot,
    prices_to_frame,
)
from stockpilot.utils.logger import setup_logger

logger = setup_logger("pipeline")

ProgressCallback = Callable[[str, str, float], None]


@dataclass
class PipelineTimeouts:
    prices: float = 30.0
    fundamentals: float = 30.0
    sentiment: float = 45.0
    run: float = 300.0

    @classmethod
    def from_settings(cls) -> "PipelineTimeouts":
        cfg = SETTINGS["pipeline"]
        return cls(
            prices=float(cfg["price_timeout_seconds"]),
            fundamentals=float(cfg["fundamentals_timeout_seconds"]),
            sentiment=float(cfg["sentiment_timeout_seconds"]),
            run=float(cfg["run_timeout_seconds"]),
        )


@dataclass
class BatchResult:
    reports: Dict[str, AnalysisReport] = field(default_factory=dict)
    errors: Dict[str, str] = field(default_factory=dict)
    elapsed: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "reports": {s: r.to_dict() for s, r in self.reports.items()},
            "errors": dict(self.errors),
            "elapsed": round(self.elapsed, 3),
        }


def market_trend(snapshot: TechnicalSnapshot) -> MarketTrend:
    """Trend from the latest close against the 50- and 200-day SMAs."""
    if snapshot.close is None:
        return MarketTrend.NEUTRAL
    averages = [a for a in (snapshot.sma_50, snapshot.sma_200) if a is not None]
    if not averages:
        return MarketTrend.NEUTRAL
    if all(snapshot.close > a for a in averages):
        return MarketTrend.BULLISH
    if all(snapshot.close < a for a in averages):
        return MarketTrend.BEARISH
    return MarketTrend.NEUTRAL


class AnalysisPipeline:
    """Run the full analysis for one or many symbols.

    Attributes:
        timeouts: Per-collaborator and whole-batch time limits in seconds.
        progress_callback: Optional callable invoked per symbol with
            (symbol, status, elapsed_seconds).
    """

    def __init__(
        self,
        prices: PriceHistoryProvider,
        fundamentals: FundamentalsProvider,
        sentiment: Optional[SentimentProvider] = None,
        sink: Optional[AnalysisSink] = None,
        macro_score: Optional[float] = None,
        recommender: Optional[RecommendationEngine] = None,
        predictor: Optional[PricePredictor] = None,
        timeouts: Optional[PipelineTimeouts] = None,
        max_workers: Optional[int] = None,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> None:
        cfg = SETTINGS["pipeline"]
        self.prices = prices
        self.fundamentals = fundamentals
        self.sentiment = sentiment
        self.sink = sink
        self.macro_score = float(cfg["macro_score"] if macro_score is None else macro_score)
        if not 0.0 <= self.macro_score <= 1.0:
            raise InvalidInputError("macro_score", f"must be within [0, 1], got {self.macro_score}")
        self.recommender = recommender or RecommendationEngine()
        self.predictor = predictor or PricePredictor()
        self.timeouts = timeouts or PipelineTimeouts.from_settings()
        self.max_workers = int(max_workers or cfg["max_workers"])
        self.progress_callback = progress_callback
        self.period = SETTINGS["data"]["price_period"]
        self.interval = SETTINGS["data"]["price_interval"]

        self._technical = TechnicalAnalyzer()
        self._fundamental = FundamentalAnalyzer()
        # Collaborator calls run here so a hung call can be abandoned
        self._io_pool = ThreadPoolExecutor(
            max_workers=max(4, self.max_workers * 3), thread_name_prefix="stockpilot-io",
        )
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def close(self) -> None:
        self._io_pool.shutdown(wait=False, cancel_futures=True)

    def __enter__(self) -> "AnalysisPipeline":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Collaborator calls
    # ------------------------------------------------------------------

    def _call(self, service: str, timeout: float, fn: Callable, *args) -> Any:
        future = self._io_pool.submit(fn, *args)
        try:
            return future.result(timeout=timeout)
        except FutureTimeout:
            future.cancel()
            raise ExternalServiceError(service, f"timed out after {timeout:g}s") from None
        except ExternalServiceError:
            raise
        except Exception as e:
            raise ExternalServiceError(service, str(e)) from e

    def _fetch_prices(self, symbol: str, warnings: List[str]) -> List[PricePoint]:
        try:
            return self._call(
                "prices", self.timeouts.prices,
                self.prices.get_price_points, symbol, self.period, self.interval,
            ) or []
        except ExternalServiceError as e:
            logger.warning("Price history unavailable for %s: %s", symbol, e)
            warnings.append(f"price history unavailable: {e}")
            return []

    def _fetch_reports(self, symbol: str, warnings: List[str]) -> List[FundamentalReport]:
        try:
            return self._call(
                "fundamentals", self.timeouts.fundamentals,
                self.fundamentals.get_reports, symbol,
            ) or []
        except ExternalServiceError as e:
            logger.warning("Fundamentals unavailable for %s: %s", symbol, e)
            warnings.append(f"fundamentals unavailable: {e}")
            return []

    # ------------------------------------------------------------------
    # Single symbol
    # ------------------------------------------------------------------

    def analyze(self, symbol: str) -> AnalysisReport:
        """Analyze one symbol and emit the report to the sink."""
        if not isinstance(symbol, str) or not symbol.strip():
            raise InvalidInputError("symbol", "must be a non-empty string")
        symbol = symbol.strip().upper()
        warnings: List[str] = []
        logger.info("Analysis started: %s", symbol)

        points = self._fetch_prices(symbol, warnings)
        reports = self._fetch_reports(symbol, warnings)

        df = prices_to_frame(points)
        if df.empty:
            snapshot = TechnicalSnapshot()
        else:
            snapshot = self._technical.snapshot(df)
        current_price = snapshot.close
        tech_score = technical_score(snapshot)

        fund = self._fundamental.analyze(reports, current_price)
        ratios = fund["ratios"]
        trend = market_trend(snapshot)

        sentiment, used_fallback = None, True
        if self.sentiment is not None:
            try:
                sentiment = self._call(
                    "sentiment", self.timeouts.sentiment,
                    self.sentiment.analyze, symbol, snapshot, ratios, current_price,
                )
                used_fallback = sentiment is None
                if used_fallback:
                    warnings.append("sentiment fallback used: provider returned no result")
            except ExternalServiceError as e:
                logger.warning("Sentiment provider failed for %s: %s", symbol, e)
                warnings.append(f"sentiment fallback used: {e}")
        if sentiment is None:
            sentiment = fallback_sentiment(tech_score, fund["score"])

        scores = AnalysisScores(
            technical=tech_score,
            fundamental=fund["score"],
            sentiment=sentiment_score(sentiment.sentiment),
            macro=self.macro_score,
        )
        rec = self.recommender.recommend(scores)

        prediction = None
        if current_price is not None and current_price > 0:
            prediction = self.predictor.predict(
                current_price, snapshot, ratios, rec.recommendation,
                rec.confidence, trend, confidence_scale="fraction",
            )
        else:
            warnings.append("no current price; prediction skipped")

        report = AnalysisReport(
            symbol=symbol,
            generated_at=datetime.now(timezone.utc),
            current_price=current_price,
            price_points=len(df),
            fundamental_reports=len(reports),
            snapshot=snapshot,
            ratios=ratios,
            fundamental_summary=fund["summary"],
            sentiment=sentiment,
            sentiment_fallback=used_fallback,
            market_trend=trend,
            scores=scores,
            overall=OverallScore(rec.overall_score, rec.confidence, scores.as_dict()),
            recommendation=rec,
            prediction=prediction,
            warnings=warnings,
        )

        if self.sink is not None:
            try:
                self.sink.write(report)
            except OSError as e:
                logger.error("Could not persist analysis for %s: %s", symbol, e)
                report.warnings.append(f"not persisted: {e}")

        logger.info(
            "Analysis finished: %s -> %s (%.2f)",
            symbol, rec.recommendation.value, rec.overall_score,
        )
        return report

    # ------------------------------------------------------------------
    # Many symbols
    # ------------------------------------------------------------------

    def _notify(self, symbol: str, status: str, elapsed: float) -> None:
        if self.progress_callback is not None:
            with self._lock:
                self.progress_callback(symbol, status, elapsed)

    def analyze_many(self, symbols: List[str], timeout: Optional[float] = None) -> BatchResult:
        """Analyze symbols in parallel under one overall deadline.

        Per-symbol errors are collected instead of raised; symbols still
        running at the deadline are reported as timed out.
        """
        timeout = self.timeouts.run if timeout is None else timeout
        batch = BatchResult()
        start = time.monotonic()
        pool = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="stockpilot-run")
        futures = {pool.submit(self.analyze, s): s for s in dict.fromkeys(symbols)}
        collected = set()

        def collect(future) -> None:
            symbol = futures[future]
            collected.add(future)
            elapsed = time.monotonic() - start
            try:
                report = future.result()
                batch.reports[report.symbol] = report
                self._notify(symbol, "done", elapsed)
            except Exception as e:
                logger.error("Analysis failed for %s: %s", symbol, e)
                batch.errors[symbol] = str(e)
                self._notify(symbol, "failed", elapsed)

        try:
            for future in as_completed(futures, timeout=timeout):
                collect(future)
        except FutureTimeout:
            unfinished = 0
            for future, symbol in futures.items():
                if future in collected:
                    continue
                if future.done():
                    collect(future)
                    continue
                future.cancel()
                unfinished += 1
                batch.errors[symbol] = f"timed out after {timeout:g}s"
                self._notify(symbol, "timeout", time.monotonic() - start)
            logger.warning("Batch deadline reached with %d symbols unfinished", unfinished)
        finally:
            pool.shutdown(wait=False, cancel_futures=True)

        batch.elapsed = time.monotonic() - start
        logger.info(
            "Batch finished: %d ok, %d failed in %.1fs",
            len(batch.reports), len(batch.errors), batch.elapsed,
        )
        return batch

    # ------------------------------------------------------------------
    # Backtest
    # ------------------------------------------------------------------

    def load_prices(self, symbol: str) -> pd.DataFrame:
        """Fetch history and return it as an OHLCV frame."""
        points = self._call(
            "prices", self.timeouts.prices,
            self.prices.get_price_points, symbol, self.period, self.interval,
        )
        return prices_to_frame(points or [])

    def backtest(
        self,
        symbol: str,
        strategy_name: str,
        engine: Optional[BacktestEngine] = None,
        **params,
    ) -> BacktestResult:
        """Backtest a catalog strategy on the symbol's price history."""
        strategy = get_strategy(strategy_name, **params)
        prices = self.load_prices(symbol.strip().upper())
        return (engine or BacktestEngine()).run(strategy, prices)

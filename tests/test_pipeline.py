"""Tests for stockpilot.pipeline.engine -- orchestration with mocked providers."""

import time
from unittest.mock import MagicMock

import pytest

from stockpilot.data_sources.market_data import frame_to_points
from stockpilot.data_sources.sink import MemorySink
from stockpilot.errors import ExternalServiceError, InvalidInputError
from stockpilot.models import (
    MarketTrend,
    Recommendation,
    Sentiment,
    SentimentResult,
    TechnicalSnapshot,
)
from stockpilot.pipeline.engine import AnalysisPipeline, PipelineTimeouts, market_trend


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _providers(sample_ohlcv, quarterly_reports):
    prices = MagicMock()
    prices.get_price_points.return_value = frame_to_points(sample_ohlcv)
    fundamentals = MagicMock()
    fundamentals.get_reports.return_value = quarterly_reports
    return prices, fundamentals


def _sentiment(verdict=Sentiment.BULLISH):
    provider = MagicMock()
    provider.analyze.return_value = SentimentResult(verdict, 0.8, "test", [], [], "llm")
    return provider


_FAST = PipelineTimeouts(prices=5.0, fundamentals=5.0, sentiment=0.2, run=10.0)


@pytest.fixture
def pipeline_parts(sample_ohlcv, quarterly_reports):
    prices, fundamentals = _providers(sample_ohlcv, quarterly_reports)
    return prices, fundamentals, MemorySink()


# ---------------------------------------------------------------------------
# Single symbol
# ---------------------------------------------------------------------------

class TestAnalyze:

    def test_full_run(self, pipeline_parts, sample_ohlcv):
        prices, fundamentals, sink = pipeline_parts
        with AnalysisPipeline(prices, fundamentals, _sentiment(), sink, timeouts=_FAST) as pipeline:
            report = pipeline.analyze(" aapl ")
        assert report.symbol == "AAPL"
        assert report.current_price == pytest.approx(sample_ohlcv["Close"].iloc[-1])
        assert report.price_points == len(sample_ohlcv)
        assert report.fundamental_reports == 5
        assert not report.sentiment_fallback
        assert report.scores.sentiment == 0.8
        assert report.scores.macro == 0.5
        assert isinstance(report.recommendation.recommendation, Recommendation)
        assert report.prediction is not None
        assert report.prediction.current_price == report.current_price
        assert sink.reports == [report]
        prices.get_price_points.assert_called_once_with("AAPL", "2y", "1d")

    def test_report_serialises(self, pipeline_parts):
        prices, fundamentals, sink = pipeline_parts
        with AnalysisPipeline(prices, fundamentals, _sentiment(), sink, timeouts=_FAST) as pipeline:
            d = pipeline.analyze("AAPL").to_dict()
        assert d["symbol"] == "AAPL"
        assert d["sentiment"]["sentiment"] == "bullish"
        assert isinstance(d["generated_at"], str)

    def test_sentiment_failure_uses_fallback(self, pipeline_parts):
        prices, fundamentals, sink = pipeline_parts
        sentiment = MagicMock()
        sentiment.analyze.side_effect = ExternalServiceError("anthropic", "overloaded")
        with AnalysisPipeline(prices, fundamentals, sentiment, sink, timeouts=_FAST) as pipeline:
            report = pipeline.analyze("AAPL")
        assert report.sentiment_fallback
        assert report.sentiment.source == "fallback"
        assert any("sentiment fallback" in w for w in report.warnings)

    def test_sentiment_timeout_uses_fallback(self, pipeline_parts):
        prices, fundamentals, sink = pipeline_parts
        sentiment = MagicMock()
        sentiment.analyze.side_effect = lambda *args: time.sleep(2.0)
        start = time.monotonic()
        with AnalysisPipeline(prices, fundamentals, sentiment, sink, timeouts=_FAST) as pipeline:
            report = pipeline.analyze("AAPL")
        assert time.monotonic() - start < 1.5
        assert report.sentiment_fallback
        assert any("timed out" in w for w in report.warnings)

    def test_sentiment_none_result_uses_fallback(self, pipeline_parts):
        prices, fundamentals, sink = pipeline_parts
        sentiment = MagicMock()
        sentiment.analyze.return_value = None
        with AnalysisPipeline(prices, fundamentals, sentiment, sink, timeouts=_FAST) as pipeline:
            report = pipeline.analyze("AAPL")
        assert report.sentiment_fallback
        assert report.sentiment.source == "fallback"
        assert any("no result" in w for w in report.warnings)

    def test_no_sentiment_provider(self, pipeline_parts):
        prices, fundamentals, sink = pipeline_parts
        with AnalysisPipeline(prices, fundamentals, None, sink, timeouts=_FAST) as pipeline:
            report = pipeline.analyze("AAPL")
        assert report.sentiment_fallback
        assert report.warnings == []

    def test_price_failure_degrades_to_neutral(self, pipeline_parts):
        prices, fundamentals, sink = pipeline_parts
        prices.get_price_points.side_effect = ConnectionError("down")
        with AnalysisPipeline(prices, fundamentals, None, sink, timeouts=_FAST) as pipeline:
            report = pipeline.analyze("AAPL")
        assert report.scores.technical == 0.5
        assert report.current_price is None
        assert report.prediction is None
        assert report.ratios.pe_ratio is None
        assert any("price history unavailable" in w for w in report.warnings)
        assert any("prediction skipped" in w for w in report.warnings)

    def test_fundamentals_failure_degrades_to_neutral(self, pipeline_parts):
        prices, fundamentals, sink = pipeline_parts
        fundamentals.get_reports.side_effect = RuntimeError("bad payload")
        with AnalysisPipeline(prices, fundamentals, None, sink, timeouts=_FAST) as pipeline:
            report = pipeline.analyze("AAPL")
        assert report.scores.fundamental == 0.5
        assert report.fundamental_reports == 0
        assert report.prediction is not None

    def test_sink_failure_is_a_warning(self, pipeline_parts):
        prices, fundamentals, _ = pipeline_parts
        sink = MagicMock()
        sink.write.side_effect = OSError("disk full")
        with AnalysisPipeline(prices, fundamentals, None, sink, timeouts=_FAST) as pipeline:
            report = pipeline.analyze("AAPL")
        assert any("not persisted" in w for w in report.warnings)

    def test_invalid_symbol(self, pipeline_parts):
        prices, fundamentals, sink = pipeline_parts
        with AnalysisPipeline(prices, fundamentals, timeouts=_FAST) as pipeline:
            with pytest.raises(InvalidInputError) as exc:
                pipeline.analyze("  ")
        assert exc.value.field == "symbol"

    def test_invalid_macro_score(self, pipeline_parts):
        prices, fundamentals, _ = pipeline_parts
        with pytest.raises(InvalidInputError):
            AnalysisPipeline(prices, fundamentals, macro_score=1.5)


# ---------------------------------------------------------------------------
# Many symbols
# ---------------------------------------------------------------------------

class TestAnalyzeMany:

    def test_collects_reports_and_errors(self, pipeline_parts):
        prices, fundamentals, sink = pipeline_parts
        progress = MagicMock()
        with AnalysisPipeline(
            prices, fundamentals, None, sink, timeouts=_FAST, progress_callback=progress,
        ) as pipeline:
            batch = pipeline.analyze_many(["AAPL", "MSFT", " "])
        assert set(batch.reports) == {"AAPL", "MSFT"}
        assert " " in batch.errors
        assert progress.call_count == 3
        assert len(sink.reports) == 2
        assert batch.to_dict()["errors"][" "].startswith("symbol")

    def test_duplicates_analyzed_once(self, pipeline_parts):
        prices, fundamentals, sink = pipeline_parts
        with AnalysisPipeline(prices, fundamentals, None, sink, timeouts=_FAST) as pipeline:
            batch = pipeline.analyze_many(["AAPL", "AAPL"])
        assert len(batch.reports) == 1
        assert prices.get_price_points.call_count == 1

    def test_batch_deadline(self, pipeline_parts):
        prices, fundamentals, sink = pipeline_parts
        sentiment = MagicMock()
        sentiment.analyze.side_effect = lambda *args: time.sleep(1.0)
        slow = PipelineTimeouts(prices=5.0, fundamentals=5.0, sentiment=5.0, run=10.0)
        with AnalysisPipeline(prices, fundamentals, sentiment, sink, timeouts=slow) as pipeline:
            batch = pipeline.analyze_many(["AAPL"], timeout=0.1)
        assert batch.reports == {}
        assert "timed out" in batch.errors["AAPL"]


# ---------------------------------------------------------------------------
# Backtest and helpers
# ---------------------------------------------------------------------------

class TestPipelineBacktest:

    def test_backtest_catalog_strategy(self, pipeline_parts, sample_ohlcv):
        prices, fundamentals, _ = pipeline_parts
        with AnalysisPipeline(prices, fundamentals, timeouts=_FAST) as pipeline:
            result = pipeline.backtest("aapl", "macd")
        assert result.strategy_name == "macd_crossover"
        assert result.evaluated_bars + result.skipped_bars == len(sample_ohlcv)
        prices.get_price_points.assert_called_once_with("AAPL", "2y", "1d")

    def test_unknown_strategy(self, pipeline_parts):
        prices, fundamentals, _ = pipeline_parts
        with AnalysisPipeline(prices, fundamentals, timeouts=_FAST) as pipeline:
            with pytest.raises(InvalidInputError):
                pipeline.backtest("AAPL", "nope")


class TestMarketTrend:

    @pytest.mark.parametrize("snap, expected", [
        (TechnicalSnapshot(), MarketTrend.NEUTRAL),
        (TechnicalSnapshot(close=110.0, sma_50=100.0, sma_200=90.0), MarketTrend.BULLISH),
        (TechnicalSnapshot(close=80.0, sma_50=100.0), MarketTrend.BEARISH),
        (TechnicalSnapshot(close=95.0, sma_50=100.0, sma_200=90.0), MarketTrend.NEUTRAL),
    ])
    def test_trend(self, snap, expected):
        assert market_trend(snap) is expected

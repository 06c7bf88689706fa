"""Tests for stockpilot.analysis.accuracy."""

import argparse
import json
from unittest.mock import patch

import pytest

from stockpilot.analysis.accuracy import (
    PredictionRecord,
    price_accuracy,
    recommendation_correct,
    records_from_analyses,
    summarize_accuracy,
)
from stockpilot.data_sources.sink import JsonlAnalysisSink
from stockpilot.errors import InvalidInputError
from stockpilot.models import Recommendation


class TestPriceAccuracy:

    def test_exact_prediction(self):
        assert price_accuracy(100.0, 100.0) == 1.0

    def test_relative_error(self):
        assert price_accuracy(90.0, 100.0) == pytest.approx(0.9)
        assert price_accuracy(110.0, 100.0) == pytest.approx(0.9)

    def test_floored_at_zero(self):
        assert price_accuracy(300.0, 100.0) == 0.0

    @pytest.mark.parametrize("actual", [0.0, -1.0, float("nan")])
    def test_invalid_actual(self, actual):
        with pytest.raises(InvalidInputError) as exc:
            price_accuracy(100.0, actual)
        assert exc.value.field == "actual_price"

    def test_invalid_predicted(self):
        with pytest.raises(InvalidInputError) as exc:
            price_accuracy(float("inf"), 100.0)
        assert exc.value.field == "predicted_price"


class TestRecommendationCorrect:

    def test_buy_needs_rise(self):
        assert recommendation_correct(Recommendation.STRONG_BUY, 100.0, 105.0)
        assert not recommendation_correct("buy", 100.0, 100.5)

    def test_sell_needs_fall(self):
        assert recommendation_correct("sell", 100.0, 95.0)
        assert not recommendation_correct(Recommendation.STRONG_SELL, 100.0, 101.0)

    def test_hold_needs_small_move(self):
        assert recommendation_correct("hold", 100.0, 100.5)
        assert not recommendation_correct("hold", 100.0, 103.0)

    def test_invalid_entry(self):
        with pytest.raises(InvalidInputError):
            recommendation_correct("buy", 0.0, 10.0)


class TestSummarizeAccuracy:

    def test_empty(self):
        stats = summarize_accuracy([])
        assert stats.total_analyses == 0
        assert stats.accuracy_rate == 0.0
        assert set(stats.by_recommendation) == {"buy", "hold", "sell"}

    def test_breakdown_by_reduced_recommendation(self):
        records = [
            PredictionRecord(Recommendation.STRONG_BUY, 0.8, predicted_price=105.0, actual_price=100.0),
            PredictionRecord(Recommendation.BUY, 0.6, predicted_price=150.0, actual_price=100.0),
            PredictionRecord(Recommendation.SELL, 0.7, predicted_price=98.0, actual_price=100.0),
            PredictionRecord(Recommendation.HOLD, 0.5),
        ]
        stats = summarize_accuracy(records)
        assert stats.total_analyses == 4
        assert stats.scored == 3
        assert stats.correct_predictions == 2
        assert stats.accuracy_rate == pytest.approx(0.5)
        assert stats.price_accuracy == pytest.approx((0.95 + 0.5 + 0.98) / 3)
        assert stats.average_confidence == pytest.approx(0.65)
        buy = stats.by_recommendation["buy"]
        assert (buy.total, buy.correct) == (2, 1)
        assert buy.accuracy == pytest.approx(0.5)
        assert stats.by_recommendation["hold"].correct == 0

    def test_to_dict(self):
        stats = summarize_accuracy([PredictionRecord("buy", 0.9, 100.0, 100.0)])
        d = stats.to_dict()
        assert d["by_recommendation"]["buy"] == {"total": 1, "correct": 1, "accuracy": 1.0}


# ---------------------------------------------------------------------------
# Saved analyses
# ---------------------------------------------------------------------------

def _row(symbol, recommendation="buy", confidence=0.7, predicted=110.0):
    return {
        "symbol": symbol,
        "recommendation": {"recommendation": recommendation, "confidence": confidence},
        "prediction": {"predicted_price": predicted} if predicted is not None else None,
    }


class TestRecordsFromAnalyses:

    def test_rows_become_records(self):
        rows = [_row("AAPL"), _row("MSFT", "strong_sell", 0.9, None)]
        records = records_from_analyses(rows, {"AAPL": 100.0, "MSFT": 50.0})
        assert len(records) == 2
        assert records[0].recommendation is Recommendation.BUY
        assert records[0].accuracy == pytest.approx(0.9)
        assert records[1].recommendation is Recommendation.STRONG_SELL
        assert records[1].predicted_price is None
        assert records[1].accuracy is None

    def test_row_without_recommendation_skipped(self):
        rows = [{"symbol": "AAPL", "recommendation": None}, _row("AAPL")]
        assert len(records_from_analyses(rows, {"AAPL": 100.0})) == 1

    def test_unknown_price_is_unscored(self):
        records = records_from_analyses([_row("NVDA")], {})
        stats = summarize_accuracy(records)
        assert (stats.total_analyses, stats.scored) == (1, 0)

    def test_reads_sink_output(self, tmp_path):
        path = tmp_path / "analyses.jsonl"
        path.write_text("\n".join(json.dumps(r) for r in [_row("AAPL"), _row("AAPL", "hold", 0.5, 100.0)]) + "\n")
        rows = JsonlAnalysisSink(path).read_all()
        stats = summarize_accuracy(records_from_analyses(rows, {"AAPL": 100.0}))
        assert stats.scored == 2
        assert stats.correct_predictions == 2
        assert stats.by_recommendation["hold"].total == 1


class TestAccuracyCommand:

    @patch("main.MarketDataClient")
    def test_prints_summary(self, mock_client, tmp_path, capsys):
        import main

        path = tmp_path / "analyses.jsonl"
        path.write_text("\n".join(json.dumps(r) for r in [_row("AAPL"), _row("MSFT")]) + "\n")
        mock_client.return_value.get_current_price.return_value = 100.0
        main.cmd_accuracy(argparse.Namespace(symbols=["aapl"], file=path))
        out = json.loads(capsys.readouterr().out)
        assert out["total_analyses"] == 1
        assert out["by_recommendation"]["buy"]["correct"] == 1
        mock_client.return_value.get_current_price.assert_called_once_with("AAPL")

    @patch("main.MarketDataClient")
    def test_price_failure_leaves_rows_unscored(self, mock_client, tmp_path, capsys):
        import main
        from stockpilot.errors import ExternalServiceError

        path = tmp_path / "analyses.jsonl"
        path.write_text(json.dumps(_row("AAPL")) + "\n")
        mock_client.return_value.get_current_price.side_effect = ExternalServiceError("yfinance", "down")
        main.cmd_accuracy(argparse.Namespace(symbols=[], file=path))
        out = json.loads(capsys.readouterr().out)
        assert (out["total_analyses"], out["scored"]) == (1, 0)

"""Scoring past predictions against realised prices."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from stockpilot.errors import InvalidInputError
from stockpilot.models import Recommendation, _jsonify
from stockpilot.utils.logger import setup_logger

logger = setup_logger("accuracy")

CORRECT_THRESHOLD = 0.6


def price_accuracy(predicted: float, actual: float) -> float:
    """``max(0, 1 - |predicted - actual| / actual)``."""
    if not isinstance(actual, (int, float)) or not math.isfinite(actual) or actual <= 0:
        raise InvalidInputError("actual_price", f"must be a positive number, got {actual!r}")
    if not isinstance(predicted, (int, float)) or not math.isfinite(predicted):
        raise InvalidInputError("predicted_price", f"must be a finite number, got {predicted!r}")
    return max(0.0, 1.0 - abs(predicted - actual) / actual)


def recommendation_correct(
    recommendation: Union[Recommendation, str],
    entry_price: float,
    actual_price: float,
    tolerance: float = 0.01,
) -> bool:
    """Whether the realised move agrees with the reduced recommendation.

    A buy needs a rise beyond *tolerance*, a sell a fall beyond it, and a
    hold a move within it.
    """
    if entry_price <= 0:
        raise InvalidInputError("entry_price", "must be positive")
    change = actual_price / entry_price - 1
    reduced = Recommendation(recommendation).reduced()
    if reduced is Recommendation.BUY:
        return change > tolerance
    if reduced is Recommendation.SELL:
        return change < -tolerance
    return abs(change) <= tolerance


@dataclass
class PredictionRecord:
    recommendation: Recommendation
    confidence: float
    predicted_price: Optional[float] = None
    actual_price: Optional[float] = None

    @property
    def accuracy(self) -> Optional[float]:
        if self.predicted_price is None or self.actual_price is None:
            return None
        return price_accuracy(self.predicted_price, self.actual_price)


@dataclass
class BucketStats:
    total: int = 0
    correct: int = 0

    @property
    def accuracy(self) -> float:
        return self.correct / self.total if self.total else 0.0


@dataclass
class AccuracyStats:
    total_analyses: int = 0
    scored: int = 0
    correct_predictions: int = 0
    accuracy_rate: float = 0.0
    price_accuracy: float = 0.0
    average_confidence: float = 0.0
    by_recommendation: Dict[str, BucketStats] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return _jsonify({
            "total_analyses": self.total_analyses,
            "scored": self.scored,
            "correct_predictions": self.correct_predictions,
            "accuracy_rate": self.accuracy_rate,
            "price_accuracy": self.price_accuracy,
            "average_confidence": self.average_confidence,
            "by_recommendation": {
                k: {"total": b.total, "correct": b.correct, "accuracy": b.accuracy}
                for k, b in self.by_recommendation.items()
            },
        })


def summarize_accuracy(records: Iterable[PredictionRecord]) -> AccuracyStats:
    """Aggregate accuracy over records, broken down by buy / hold / sell.

    A record counts as correct when its price accuracy is at least 0.6.
    Records without a realised price count toward totals but never as
    correct.
    """
    records = list(records)
    stats = AccuracyStats(
        total_analyses=len(records),
        by_recommendation={r.value: BucketStats() for r in (
            Recommendation.BUY, Recommendation.HOLD, Recommendation.SELL,
        )},
    )
    if not records:
        return stats

    accuracies = []
    for rec in records:
        acc = rec.accuracy
        bucket = stats.by_recommendation[Recommendation(rec.recommendation).reduced().value]
        bucket.total += 1
        if acc is None:
            continue
        accuracies.append(acc)
        if acc >= CORRECT_THRESHOLD:
            bucket.correct += 1
            stats.correct_predictions += 1

    stats.scored = len(accuracies)
    stats.accuracy_rate = stats.correct_predictions / stats.total_analyses
    stats.price_accuracy = sum(accuracies) / len(accuracies) if accuracies else 0.0
    stats.average_confidence = sum(r.confidence for r in records) / len(records)
    return stats


def records_from_analyses(
    analyses: Iterable[Dict[str, Any]],
    current_prices: Mapping[str, Optional[float]],
) -> List[PredictionRecord]:
    """Build records from persisted analysis rows and today's prices.

    Rows are the dicts written by the analysis sink.  The realised price of
    each row is ``current_prices[symbol]``; rows without a stored
    recommendation are skipped.
    """
    records: List[PredictionRecord] = []
    for row in analyses:
        rec = row.get("recommendation") or {}
        if "recommendation" not in rec:
            logger.warning("Skipping analysis of %s without a recommendation", row.get("symbol"))
            continue
        prediction = row.get("prediction") or {}
        records.append(PredictionRecord(
            recommendation=Recommendation(rec["recommendation"]),
            confidence=float(rec.get("confidence", 0.0)),
            predicted_price=prediction.get("predicted_price"),
            actual_price=current_prices.get(row.get("symbol")),
        ))
    return records

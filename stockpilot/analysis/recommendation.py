"""Signal aggregator and recommendation engine.

Blends the technical, fundamental, sentiment and macro component scores
into one overall score, measures how much the components agree, and maps
the result onto a five-step recommendation with reasoning, a risk level,
a holding horizon and an escalating risk warning.
"""

from __future__ import annotations

import math
from typing import Dict, List, Optional

import numpy as np

from stockpilot.config import SETTINGS
from stockpilot.errors import InvalidInputError
from stockpilot.models import (
    AnalysisScores,
    OverallScore,
    Recommendation,
    RecommendationResult,
    RiskLevel,
    TimeHorizon,
)
from stockpilot.utils.logger import setup_logger

logger = setup_logger("recommendation")

COMPONENTS = ("technical", "fundamental", "sentiment", "macro")

# ---------------------------------------------------------------------------
# Cut points -- symmetric around 0.5
# ---------------------------------------------------------------------------
_STRONG_BUY_AT = 0.8
_BUY_AT = 0.6
_SELL_AT = 0.4
_STRONG_SELL_AT = 0.2

_AGREEMENT_WEIGHT = 0.6
_DECISIVENESS_WEIGHT = 0.4
_WEIGHT_TOLERANCE = 1e-6

_COMPONENT_LABELS = {
    "technical": "Technical",
    "fundamental": "Fundamental",
    "sentiment": "Sentiment",
    "macro": "Macro",
}

# (strong positive, mildly positive, strong negative, neutral)
_COMPONENT_PHRASES = {
    "technical": (
        "indicators show a strong uptrend",
        "indicators lean mildly positive",
        "indicators point to a downtrend",
        "indicators give no clear signal",
    ),
    "fundamental": (
        "financials are excellent and healthy",
        "financials are sound with investment merit",
        "financials carry material risk",
        "fundamental data is limited or mixed",
    ),
    "sentiment": (
        "market sentiment is upbeat",
        "market sentiment is mildly optimistic",
        "market sentiment is depressed",
        "market sentiment is neutral",
    ),
    "macro": (
        "the macro backdrop is favourable",
        "the macro backdrop is stable",
        "the macro backdrop is uncertain",
        "macro influence is neutral",
    ),
}

_CONCLUSIONS = {
    Recommendation.STRONG_BUY: "Overall: strong buy.",
    Recommendation.BUY: "Overall: buy.",
    Recommendation.HOLD: "Overall: hold and monitor.",
    Recommendation.SELL: "Overall: sell.",
    Recommendation.STRONG_SELL: "Overall: strong sell.",
}

_BASE_WARNINGS = {
    0: "Standard market risk applies; a hold call implies no new exposure.",
    1: "Moderate risk: the call relies on a directional tilt in the scores and may reverse as new data arrives.",
    2: "High risk: the call acts on an extreme composite score. Size positions conservatively and expect sharp moves against the position.",
}


def _validate_weights(weights: Dict[str, float]) -> Dict[str, float]:
    missing = [c for c in COMPONENTS if c not in weights]
    if missing:
        raise InvalidInputError("weights", f"missing components: {', '.join(missing)}")
    unknown = [k for k in weights if k not in COMPONENTS]
    if unknown:
        raise InvalidInputError("weights", f"unknown components: {', '.join(unknown)}")
    for name in COMPONENTS:
        w = weights[name]
        if not isinstance(w, (int, float)) or not math.isfinite(w) or w < 0:
            raise InvalidInputError("weights", f"{name} weight must be a non-negative number")
    total = sum(weights[c] for c in COMPONENTS)
    if abs(total - 1.0) > _WEIGHT_TOLERANCE:
        raise InvalidInputError("weights", f"must sum to 1, got {total:.6f}")
    return {c: float(weights[c]) for c in COMPONENTS}


def classify(score: float) -> Recommendation:
    """Map an overall score in [0, 1] to a recommendation.

    >=0.8 strong_buy, >=0.6 buy, (0.4, 0.6) hold, <=0.4 sell, <=0.2 strong_sell.
    """
    if score >= _STRONG_BUY_AT:
        return Recommendation.STRONG_BUY
    if score >= _BUY_AT:
        return Recommendation.BUY
    if score > _SELL_AT:
        return Recommendation.HOLD
    if score > _STRONG_SELL_AT:
        return Recommendation.SELL
    return Recommendation.STRONG_SELL


class RecommendationEngine:
    """Combine component scores into a recommendation.

    Args:
        weights: Per-component weights summing to 1.  Defaults to the
            ``recommendation.weights`` setting.
        clamp: When True, out-of-range component scores are clamped to
            [0, 1] with a warning instead of rejected.
    """

    def __init__(self, weights: Optional[Dict[str, float]] = None, clamp: bool = False):
        self.weights = _validate_weights(weights or SETTINGS["recommendation"]["weights"])
        self.clamp = clamp

    # ------------------------------------------------------------------
    # Scoring
    # ------------------------------------------------------------------

    def _checked(self, scores: AnalysisScores) -> Dict[str, float]:
        values: Dict[str, float] = {}
        for name, value in scores.as_dict().items():
            if not isinstance(value, (int, float)) or not math.isfinite(value):
                raise InvalidInputError(name, f"score must be a finite number, got {value!r}")
            if not 0.0 <= value <= 1.0:
                if not self.clamp:
                    raise InvalidInputError(name, f"score must be within [0, 1], got {value}")
                logger.warning("Clamping %s score %.4f into [0, 1]", name, value)
                value = min(max(value, 0.0), 1.0)
            values[name] = float(value)
        return values

    def overall_score(self, scores: AnalysisScores) -> OverallScore:
        """Weighted blend plus a confidence from agreement and decisiveness.

        Agreement is ``1 - 4 * variance`` of the four components (variance of
        values in [0, 1] never exceeds 0.25); decisiveness is how far the
        blend sits from the 0.5 midpoint, scaled to [0, 1].
        """
        values = self._checked(scores)
        score = sum(self.weights[c] * values[c] for c in COMPONENTS)
        score = min(max(score, 0.0), 1.0)

        variance = float(np.var([values[c] for c in COMPONENTS]))
        agreement = max(0.0, 1.0 - 4.0 * variance)
        decisiveness = min(1.0, 2.0 * abs(score - 0.5))
        confidence = _AGREEMENT_WEIGHT * agreement + _DECISIVENESS_WEIGHT * decisiveness

        return OverallScore(score=score, confidence=min(max(confidence, 0.0), 1.0), breakdown=values)

    # ------------------------------------------------------------------
    # Narrative
    # ------------------------------------------------------------------

    @staticmethod
    def _risk_level(confidence: float, values: Dict[str, float]) -> RiskLevel:
        divergence = abs(values["technical"] - values["fundamental"])
        if confidence >= 0.8 and divergence < 0.2:
            return RiskLevel.LOW
        if confidence >= 0.6:
            return RiskLevel.MEDIUM
        return RiskLevel.HIGH

    @staticmethod
    def _time_horizon(values: Dict[str, float]) -> TimeHorizon:
        if values["technical"] > 0.7 and values["sentiment"] > 0.6:
            return TimeHorizon.SHORT
        if values["fundamental"] > 0.7:
            return TimeHorizon.LONG
        return TimeHorizon.MEDIUM

    def _reasoning(self, values: Dict[str, float], score: float, rec: Recommendation) -> List[str]:
        reasons: List[str] = []
        for name in COMPONENTS:
            value = values[name]
            strong, mild, weak, neutral = _COMPONENT_PHRASES[name]
            if value > 0.7:
                phrase = strong
            elif value > 0.5:
                phrase = mild
            elif value < 0.3:
                phrase = weak
            else:
                phrase = neutral
            reasons.append(f"{_COMPONENT_LABELS[name]} score {value:.2f}: {phrase}")

        # Drivers: weighted pull of each component away from neutral
        pulls = {c: self.weights[c] * (values[c] - 0.5) for c in COMPONENTS}
        if rec.rank > 0:
            drivers = [c for c, p in sorted(pulls.items(), key=lambda kv: -kv[1]) if p > 0]
        elif rec.rank < 0:
            drivers = [c for c, p in sorted(pulls.items(), key=lambda kv: kv[1]) if p < 0]
        else:
            drivers = []
        if drivers:
            reasons.append(
                f"Driven mainly by {' and '.join(_COMPONENT_LABELS[c].lower() for c in drivers[:2])} "
                f"(overall {score:.2f})"
            )
        else:
            reasons.append(f"No component dominates (overall {score:.2f})")
        reasons.append(_CONCLUSIONS[rec])
        return reasons

    @staticmethod
    def _risk_warning(rec: Recommendation, confidence: float, risk: RiskLevel, values: Dict[str, float]) -> str:
        warnings = [_BASE_WARNINGS[abs(rec.rank)]]
        if confidence < 0.6:
            warnings.append("Confidence is low; treat this call with caution.")
        if risk is RiskLevel.HIGH:
            warnings.append("Risk level is high; weigh it against your own risk tolerance.")
        if abs(values["technical"] - values["fundamental"]) > 0.3:
            warnings.append("Technical and fundamental views diverge sharply; research further.")
        if values["sentiment"] < 0.3:
            warnings.append("Sentiment is depressed, which may signal systemic risk.")
        return " ".join(warnings)

    @staticmethod
    def _summary(rec: Recommendation, confidence: float, risk: RiskLevel, horizon: TimeHorizon) -> str:
        label = rec.value.replace("_", " ").title()
        return (
            f"{label} with {confidence * 100:.0f}% confidence, {risk.value} risk, "
            f"suited to a {horizon.value}-term horizon."
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def recommend(self, scores: AnalysisScores) -> RecommendationResult:
        overall = self.overall_score(scores)
        values = overall.breakdown
        rec = classify(overall.score)
        risk = self._risk_level(overall.confidence, values)
        horizon = self._time_horizon(values)

        logger.info(
            "Recommendation %s (score=%.3f, confidence=%.3f)",
            rec.value, overall.score, overall.confidence,
        )
        return RecommendationResult(
            recommendation=rec,
            confidence=overall.confidence,
            overall_score=overall.score,
            reasoning=self._reasoning(values, overall.score, rec),
            scores=AnalysisScores(**values),
            risk_level=risk,
            time_horizon=horizon,
            summary=self._summary(rec, overall.confidence, risk, horizon),
            risk_warning=self._risk_warning(rec, overall.confidence, risk, values),
        )


def recommend(scores: AnalysisScores, weights: Optional[Dict[str, float]] = None) -> RecommendationResult:
    """Module-level convenience wrapper around ``RecommendationEngine``."""
    return RecommendationEngine(weights).recommend(scores)

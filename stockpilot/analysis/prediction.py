"""Rule-based short-horizon price prediction.

Starts from a base move keyed by the recommendation, adds fixed technical,
fundamental and market-trend adjustments, scales the total by confidence
and applies it to the current price.  Every contribution is reported in the
reasoning with its signed size.
"""

from __future__ import annotations

import math
from typing import List, Optional, Tuple, Union

from stockpilot.errors import InvalidInputError
from stockpilot.models import (
    FinancialRatios,
    MarketTrend,
    PricePrediction,
    PriceScenarios,
    Recommendation,
    TechnicalSnapshot,
    TimeFrame,
)
from stockpilot.utils.logger import setup_logger

logger = setup_logger("prediction")

# ---------------------------------------------------------------------------
# Policy constants (fractions of price)
# ---------------------------------------------------------------------------
_BASE_MOVES = {
    Recommendation.STRONG_BUY: 0.08,
    Recommendation.BUY: 0.05,
    Recommendation.HOLD: 0.01,
    Recommendation.SELL: -0.05,
    Recommendation.STRONG_SELL: -0.08,
}
_RSI_ADJ = 0.03
_MACD_ADJ = 0.02
_BOLLINGER_ADJ = 0.04
_PE_ADJ = 0.02
_EARNINGS_ADJ = 0.03
_TREND_ADJ = 0.02

_CONFIDENCE_CAP = 95.0
_SCENARIO_BAND = 0.05
_CONFIDENCE_SCALES = {"percent": 100.0, "fraction": 1.0}


def _coerce_enum(enum_cls, value, field: str):
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).lower())
    except ValueError:
        allowed = ", ".join(e.value for e in enum_cls)
        raise InvalidInputError(field, f"{value!r} is not one of: {allowed}") from None


def _confidence_percent(confidence, scale: str) -> float:
    if scale not in _CONFIDENCE_SCALES:
        raise InvalidInputError("confidence_scale", f"must be one of: {', '.join(_CONFIDENCE_SCALES)}")
    upper = _CONFIDENCE_SCALES[scale]
    if not isinstance(confidence, (int, float)) or not math.isfinite(confidence) or not 0 <= confidence <= upper:
        raise InvalidInputError("confidence", f"must be in [0, {upper:g}] for scale {scale!r}, got {confidence!r}")
    return float(confidence) * 100.0 / upper


def _fmt(adj: float) -> str:
    return f"{adj * 100:+.1f}%"


def _round_price(price: float) -> float:
    rounded = round(price, 2)
    # Sub-cent prices would round to zero
    return rounded if rounded > 0 else price


class PricePredictor:
    """One-week price target from recommendation, indicators and ratios."""

    def __init__(self, time_frame: TimeFrame = TimeFrame.ONE_WEEK):
        self.time_frame = time_frame

    # ------------------------------------------------------------------
    # Adjustments
    # ------------------------------------------------------------------

    @staticmethod
    def _technical_adjustments(price: float, snap: TechnicalSnapshot) -> List[Tuple[str, float]]:
        adj: List[Tuple[str, float]] = []
        if snap.rsi_14 is not None:
            if snap.rsi_14 < 30:
                adj.append((f"RSI oversold ({snap.rsi_14:.1f})", _RSI_ADJ))
            elif snap.rsi_14 > 70:
                adj.append((f"RSI overbought ({snap.rsi_14:.1f})", -_RSI_ADJ))
        if snap.macd is not None and snap.macd_signal is not None:
            if snap.macd > snap.macd_signal:
                adj.append(("MACD above signal line", _MACD_ADJ))
            elif snap.macd < snap.macd_signal:
                adj.append(("MACD below signal line", -_MACD_ADJ))
        if snap.bb_lower is not None and price < snap.bb_lower:
            adj.append(("Price below lower Bollinger band", _BOLLINGER_ADJ))
        elif snap.bb_upper is not None and price > snap.bb_upper:
            adj.append(("Price above upper Bollinger band", -_BOLLINGER_ADJ))
        return adj

    @staticmethod
    def _fundamental_adjustments(ratios: FinancialRatios) -> List[Tuple[str, float]]:
        adj: List[Tuple[str, float]] = []
        if ratios.pe_ratio is not None:
            if ratios.pe_ratio < 15:
                adj.append((f"Low P/E ({ratios.pe_ratio:.1f})", _PE_ADJ))
            elif ratios.pe_ratio > 25:
                adj.append((f"High P/E ({ratios.pe_ratio:.1f})", -_PE_ADJ))
        if ratios.earnings_growth is not None:
            if ratios.earnings_growth > 10:
                adj.append((f"Earnings growth {ratios.earnings_growth:.1f}%", _EARNINGS_ADJ))
            elif ratios.earnings_growth < -5:
                adj.append((f"Earnings decline {ratios.earnings_growth:.1f}%", -_EARNINGS_ADJ))
        return adj

    @staticmethod
    def _risk_factors(
        snap: TechnicalSnapshot, ratios: FinancialRatios, confidence: float, trend: MarketTrend,
    ) -> List[str]:
        risks: List[str] = []
        if confidence < 60:
            risks.append("Low prediction confidence; treat the target as indicative only")
        if snap.rsi_14 is not None and snap.rsi_14 > 80:
            risks.append("RSI severely overbought; pullback risk")
        if snap.rsi_14 is not None and snap.rsi_14 < 20:
            risks.append("RSI severely oversold; the decline may continue")
        if ratios.pe_ratio is not None and ratios.pe_ratio > 30:
            risks.append("P/E above 30; valuation risk")
        if ratios.debt_to_equity is not None and ratios.debt_to_equity > 1:
            risks.append("Debt-to-equity above 1; financial leverage risk")
        if trend is MarketTrend.BEARISH:
            risks.append("Bearish market trend may weigh on the stock")
        return risks

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def predict(
        self,
        current_price: float,
        snapshot: Optional[TechnicalSnapshot],
        ratios: Optional[FinancialRatios],
        recommendation: Union[Recommendation, str],
        confidence: float,
        market_trend: Union[MarketTrend, str] = MarketTrend.NEUTRAL,
        confidence_scale: str = "percent",
    ) -> PricePrediction:
        """Predict the price over ``time_frame``.

        Args:
            current_price: Latest price, must be positive.
            snapshot: Latest indicator values (``None`` for no adjustments).
            ratios: Financial ratios (``None`` for no adjustments).
            recommendation: Recommendation to start from.
            confidence: Confidence in [0, 100], or in [0, 1] when
                *confidence_scale* is ``"fraction"``.
            market_trend: bullish / bearish / neutral.
            confidence_scale: ``"percent"`` or ``"fraction"``.
        """
        if not isinstance(current_price, (int, float)) or not math.isfinite(current_price) or current_price <= 0:
            raise InvalidInputError("current_price", f"must be a positive number, got {current_price!r}")
        confidence = _confidence_percent(confidence, confidence_scale)
        rec = _coerce_enum(Recommendation, recommendation, "recommendation")
        trend = _coerce_enum(MarketTrend, market_trend, "market_trend")
        snap = snapshot or TechnicalSnapshot()
        ratios = ratios or FinancialRatios()

        base = _BASE_MOVES[rec]
        contributions: List[Tuple[str, float]] = [(f"Base move for {rec.value}", base)]
        contributions += self._technical_adjustments(current_price, snap)
        contributions += self._fundamental_adjustments(ratios)
        if trend is MarketTrend.BULLISH:
            contributions.append(("Bullish market trend", _TREND_ADJ))
        elif trend is MarketTrend.BEARISH:
            contributions.append(("Bearish market trend", -_TREND_ADJ))

        total = sum(adj for _, adj in contributions)
        move = total * confidence / 100.0
        predicted = _round_price(current_price * (1 + move))

        reasoning = [f"{name}: {_fmt(adj)}" for name, adj in contributions]
        reasoning.append(f"Total {_fmt(total)} scaled by {confidence:.0f}% confidence to {_fmt(move)}")

        scenarios = PriceScenarios(
            bullish=_round_price(predicted * (1 + _SCENARIO_BAND)),
            base=predicted,
            bearish=_round_price(predicted * (1 - _SCENARIO_BAND)),
        )
        logger.info(
            "Predicted %.2f -> %.2f (%s, confidence %.0f%%)",
            current_price, predicted, rec.value, confidence,
        )
        return PricePrediction(
            current_price=float(current_price),
            predicted_price=predicted,
            expected_change_pct=round((predicted / current_price - 1) * 100, 2),
            confidence=min(float(confidence), _CONFIDENCE_CAP),
            time_frame=self.time_frame,
            reasoning=reasoning,
            risk_factors=self._risk_factors(snap, ratios, confidence, trend),
            scenarios=scenarios,
        )


def predict_price(
    current_price: float,
    snapshot: Optional[TechnicalSnapshot],
    ratios: Optional[FinancialRatios],
    recommendation: Union[Recommendation, str],
    confidence: float,
    market_trend: Union[MarketTrend, str] = MarketTrend.NEUTRAL,
    confidence_scale: str = "percent",
) -> PricePrediction:
    """Module-level convenience wrapper around ``PricePredictor``."""
    return PricePredictor().predict(
        current_price, snapshot, ratios, recommendation, confidence, market_trend,
        confidence_scale,
    )

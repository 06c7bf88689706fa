"""Shared data model for the analysis engines.

Price history travels through the engines as an OHLCV ``pd.DataFrame``
(capitalised ``Open/High/Low/Close/Volume`` columns on a ``DatetimeIndex``);
everything else is a plain dataclass with a JSON-safe ``to_dict``.
"""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from stockpilot.utils.logger import setup_logger

logger = setup_logger("models")

OHLCV_COLUMNS = ["Open", "High", "Low", "Close", "Volume"]


# ---------------------------------------------------------------------------
# Helper: ensure JSON-serialisability
# ---------------------------------------------------------------------------

def _jsonify(obj: Any) -> Any:
    """Recursively convert numpy/pandas/enum types to native Python types."""
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, dict):
        return {str(_jsonify(k)): _jsonify(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [_jsonify(v) for v in obj]
    if isinstance(obj, np.integer):
        return int(obj)
    if isinstance(obj, np.floating):
        obj = float(obj)
    if isinstance(obj, np.ndarray):
        return [_jsonify(v) for v in obj.tolist()]
    if isinstance(obj, (pd.Timestamp, datetime, date)):
        return obj.isoformat()
    if isinstance(obj, float) and (math.isnan(obj) or math.isinf(obj)):
        return None
    return obj


# ===================================================================
# Closed enumerations
# ===================================================================

class Recommendation(str, Enum):
    STRONG_BUY = "strong_buy"
    BUY = "buy"
    HOLD = "hold"
    SELL = "sell"
    STRONG_SELL = "strong_sell"

    @property
    def rank(self) -> int:
        """Bullishness rank: +2 for strong_buy down to -2 for strong_sell."""
        return {
            "strong_buy": 2,
            "buy": 1,
            "hold": 0,
            "sell": -1,
            "strong_sell": -2,
        }[self.value]

    def reduced(self) -> "Recommendation":
        """Collapse to the {buy, hold, sell} set used by accuracy tracking."""
        if self.rank > 0:
            return Recommendation.BUY
        if self.rank < 0:
            return Recommendation.SELL
        return Recommendation.HOLD


class Sentiment(str, Enum):
    BULLISH = "bullish"
    BEARISH = "bearish"
    NEUTRAL = "neutral"


class MarketTrend(str, Enum):
    BULLISH = "bullish"
    BEARISH = "bearish"
    NEUTRAL = "neutral"


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class TimeHorizon(str, Enum):
    SHORT = "short"
    MEDIUM = "medium"
    LONG = "long"


class TimeFrame(str, Enum):
    ONE_DAY = "1d"
    ONE_WEEK = "1w"
    ONE_MONTH = "1m"
    THREE_MONTHS = "3m"


# ===================================================================
# Price history
# ===================================================================

@dataclass(frozen=True)
class PricePoint:
    timestamp: datetime
    open: float
    high: float
    low: float
    close: float
    volume: float
    interval: str = "1d"


def prices_to_frame(points: Sequence[PricePoint]) -> pd.DataFrame:
    """Build a chronological OHLCV frame from price points.

    Points are sorted ascending by timestamp.  History is unique per
    timestamp and interval, so when a timestamp repeats within an interval
    the last point supplied wins.  Mixed intervals are rejected by keeping
    only the interval of the first point.
    """
    if not points:
        return pd.DataFrame(columns=OHLCV_COLUMNS, index=pd.DatetimeIndex([]), dtype=float)

    interval = points[0].interval
    same = [p for p in points if p.interval == interval]
    if len(same) != len(points):
        logger.warning(
            "Ignoring %d price points with interval other than %s",
            len(points) - len(same), interval,
        )

    df = pd.DataFrame(
        {
            "Open": [p.open for p in same],
            "High": [p.high for p in same],
            "Low": [p.low for p in same],
            "Close": [p.close for p in same],
            "Volume": [p.volume for p in same],
        },
        index=pd.DatetimeIndex([pd.Timestamp(p.timestamp) for p in same]),
        dtype=float,
    )
    dupes = df.index.duplicated(keep="last")
    if dupes.any():
        logger.info("Dropping %d duplicate price points", int(dupes.sum()))
        df = df[~dupes]
    return df.sort_index(kind="mergesort")


# ===================================================================
# Fundamentals
# ===================================================================

@dataclass(frozen=True)
class FundamentalReport:
    report_date: date
    year: int
    quarter: Optional[int] = None
    revenue: Optional[float] = None
    net_income: Optional[float] = None
    eps: Optional[float] = None
    total_assets: Optional[float] = None
    total_liabilities: Optional[float] = None
    total_equity: Optional[float] = None
    operating_cash_flow: Optional[float] = None
    shares_outstanding: Optional[float] = None


@dataclass
class FinancialRatios:
    """Ratios derived from the latest report.  ``None`` means unavailable.

    ``roe``, ``profit_margin`` and the growth rates are percentages.
    """

    pe_ratio: Optional[float] = None
    pb_ratio: Optional[float] = None
    roe: Optional[float] = None
    debt_to_equity: Optional[float] = None
    profit_margin: Optional[float] = None
    revenue_growth: Optional[float] = None
    earnings_growth: Optional[float] = None

    def available(self) -> Dict[str, float]:
        return {k: v for k, v in asdict(self).items() if v is not None}

    def to_dict(self) -> Dict[str, Any]:
        return _jsonify(asdict(self))


# ===================================================================
# Technical snapshot
# ===================================================================

@dataclass
class TechnicalSnapshot:
    """Latest value of every indicator; ``None`` where history is too short."""

    close: Optional[float] = None
    sma_20: Optional[float] = None
    sma_50: Optional[float] = None
    sma_200: Optional[float] = None
    ema_12: Optional[float] = None
    ema_26: Optional[float] = None
    rsi_14: Optional[float] = None
    macd: Optional[float] = None
    macd_signal: Optional[float] = None
    macd_hist: Optional[float] = None
    bb_upper: Optional[float] = None
    bb_middle: Optional[float] = None
    bb_lower: Optional[float] = None
    stoch_k: Optional[float] = None
    stoch_d: Optional[float] = None
    williams_r: Optional[float] = None
    obv: Optional[float] = None
    atr_14: Optional[float] = None
    cci_20: Optional[float] = None
    mfi_14: Optional[float] = None
    adx_14: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return _jsonify(asdict(self))


# ===================================================================
# Scores and recommendation
# ===================================================================

@dataclass
class AnalysisScores:
    technical: float = 0.5
    fundamental: float = 0.5
    sentiment: float = 0.5
    macro: float = 0.5

    def as_dict(self) -> Dict[str, float]:
        return {
            "technical": self.technical,
            "fundamental": self.fundamental,
            "sentiment": self.sentiment,
            "macro": self.macro,
        }

    def to_dict(self) -> Dict[str, Any]:
        return _jsonify(self.as_dict())


@dataclass
class OverallScore:
    score: float
    confidence: float
    breakdown: Dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return _jsonify(asdict(self))


@dataclass
class RecommendationResult:
    recommendation: Recommendation
    confidence: float
    overall_score: float
    reasoning: List[str]
    scores: AnalysisScores
    risk_level: RiskLevel
    time_horizon: TimeHorizon
    summary: str
    risk_warning: str

    def to_dict(self) -> Dict[str, Any]:
        return _jsonify({
            "recommendation": self.recommendation,
            "confidence": round(self.confidence, 4),
            "overall_score": round(self.overall_score, 4),
            "reasoning": self.reasoning,
            "scores": self.scores.as_dict(),
            "risk_level": self.risk_level,
            "time_horizon": self.time_horizon,
            "summary": self.summary,
            "risk_warning": self.risk_warning,
        })


# ===================================================================
# Price prediction
# ===================================================================

@dataclass
class PriceScenarios:
    bullish: float
    base: float
    bearish: float


@dataclass
class PricePrediction:
    current_price: float
    predicted_price: float
    expected_change_pct: float
    confidence: float
    time_frame: TimeFrame
    reasoning: List[str]
    risk_factors: List[str]
    scenarios: PriceScenarios

    def to_dict(self) -> Dict[str, Any]:
        return _jsonify(asdict(self))


# ===================================================================
# Sentiment
# ===================================================================

@dataclass
class SentimentResult:
    sentiment: Sentiment
    confidence: float
    reasoning: str = ""
    key_factors: List[str] = field(default_factory=list)
    risk_factors: List[str] = field(default_factory=list)
    source: str = "llm"

    def to_dict(self) -> Dict[str, Any]:
        return _jsonify(asdict(self))


# ===================================================================
# Backtesting
# ===================================================================

# Rule signature: (current bar, previous evaluated bar or None) -> bool.
# Each bar is a row of the indicator frame: OHLCV plus indicator columns.
Rule = Callable[[pd.Series, Optional[pd.Series]], bool]


@dataclass
class Trade:
    entry_date: pd.Timestamp
    entry_price: float
    exit_date: pd.Timestamp
    exit_price: float
    quantity: float
    commission: float
    slippage: float
    pnl: float
    pnl_pct: float
    holding_bars: int
    forced_exit: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return _jsonify(asdict(self))


@dataclass
class BacktestResult:
    """Performance tearsheet for one strategy over one price series."""

    strategy_name: str
    initial_capital: float
    final_equity: float = 0.0
    trades: List[Trade] = field(default_factory=list)
    equity_curve: List[Tuple[pd.Timestamp, float]] = field(default_factory=list)

    total_return: float = 0.0
    annual_return: float = 0.0
    win_rate: float = 0.0
    max_drawdown: float = 0.0
    sharpe_ratio: float = 0.0
    profit_factor: float = 0.0
    average_win: float = 0.0
    average_loss: float = 0.0
    largest_win: float = 0.0
    largest_loss: float = 0.0
    avg_holding_period: float = 0.0
    evaluated_bars: int = 0
    skipped_bars: int = 0
    monthly_returns: Dict[str, float] = field(default_factory=dict)

    @property
    def num_trades(self) -> int:
        return len(self.trades)

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["trades"] = [t.to_dict() for t in self.trades]
        d["equity_curve"] = [{"date": ts, "equity": eq} for ts, eq in self.equity_curve]
        d["num_trades"] = self.num_trades
        return _jsonify(d)


# ===================================================================
# Pipeline output
# ===================================================================

@dataclass
class AnalysisReport:
    """Everything one analysis run produced for a symbol, as persisted."""

    symbol: str
    generated_at: datetime
    current_price: Optional[float]
    price_points: int
    fundamental_reports: int
    snapshot: TechnicalSnapshot
    ratios: FinancialRatios
    fundamental_summary: str
    sentiment: SentimentResult
    sentiment_fallback: bool
    market_trend: MarketTrend
    scores: AnalysisScores
    overall: OverallScore
    recommendation: RecommendationResult
    prediction: Optional[PricePrediction] = None
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return _jsonify({
            "symbol": self.symbol,
            "generated_at": self.generated_at,
            "current_price": self.current_price,
            "price_points": self.price_points,
            "fundamental_reports": self.fundamental_reports,
            "technical": self.snapshot.to_dict(),
            "ratios": self.ratios.to_dict(),
            "fundamental_summary": self.fundamental_summary,
            "sentiment": self.sentiment.to_dict(),
            "sentiment_fallback": self.sentiment_fallback,
            "market_trend": self.market_trend,
            "scores": self.scores.as_dict(),
            "overall": self.overall.to_dict(),
            "recommendation": self.recommendation.to_dict(),
            "prediction": self.prediction.to_dict() if self.prediction else None,
            "warnings": self.warnings,
        })

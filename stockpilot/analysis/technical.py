"""Technical indicator engine.

Every indicator is a pure function returning a ``pd.Series`` keyed by the
input's index labels.  Early bars that fall inside an indicator's lookback
window are *absent* from the result rather than NaN or zero, and an input
shorter than the lookback yields an empty series.  NaN/inf inputs are
dropped before computation so they never reach the output.

Standard indicators come from the ``ta`` library; RSI (Wilder smoothing
seeded with a simple average) and OBV (flat closes leave it unchanged) are
computed directly with numpy.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, NamedTuple, Optional

import numpy as np
import pandas as pd
from ta.momentum import StochasticOscillator, WilliamsRIndicator
from ta.trend import ADXIndicator, CCIIndicator, EMAIndicator, MACD, SMAIndicator
from ta.volatility import AverageTrueRange, BollingerBands
from ta.volume import MFIIndicator

from stockpilot.errors import InvalidInputError
from stockpilot.models import TechnicalSnapshot
from stockpilot.utils.logger import setup_logger

logger = setup_logger("technical")

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------
RSI_OVERSOLD = 30.0
RSI_OVERBOUGHT = 70.0
STOCH_OVERSOLD = 20.0
STOCH_OVERBOUGHT = 80.0
WILLIAMS_OVERSOLD = -80.0
WILLIAMS_OVERBOUGHT = -20.0

# Vote weights for the technical score.  RSI carries the most weight so an
# oversold reading can outvote a bearish moving-average trend.
SCORE_WEIGHTS: Dict[str, float] = {
    "rsi": 0.35,
    "macd": 0.20,
    "bollinger": 0.15,
    "moving_average": 0.10,
    "stochastic": 0.10,
    "williams_r": 0.10,
}

BULLISH, NEUTRAL, BEARISH = 1.0, 0.5, 0.0

# Column names produced by compute_indicators(); strategies reference these.
INDICATOR_COLUMNS = (
    "SMA_20", "SMA_50", "SMA_200", "EMA_12", "EMA_26", "RSI_14",
    "MACD", "MACD_signal", "MACD_hist",
    "BB_upper", "BB_middle", "BB_lower",
    "STOCH_K", "STOCH_D", "WILLIAMS_R", "OBV", "ATR_14", "CCI_20", "MFI_14", "ADX_14",
)


class MACDResult(NamedTuple):
    macd: pd.Series
    signal: pd.Series
    histogram: pd.Series


class BollingerResult(NamedTuple):
    upper: pd.Series
    middle: pd.Series
    lower: pd.Series


class StochasticResult(NamedTuple):
    k: pd.Series
    d: pd.Series


@dataclass
class Signal:
    indicator: str
    direction: str          # bullish / bearish
    reason: str

    def to_dict(self) -> dict:
        return {
            "indicator": self.indicator,
            "direction": self.direction,
            "reason": self.reason,
        }


# ---------------------------------------------------------------------------
# Input / output hygiene
# ---------------------------------------------------------------------------

def _clean(values, name: str = "value") -> pd.Series:
    """Coerce to a float Series and drop NaN/inf entries."""
    s = values if isinstance(values, pd.Series) else pd.Series(values)
    s = pd.to_numeric(s, errors="coerce").astype(float)
    s = s.replace([np.inf, -np.inf], np.nan).dropna()
    s.name = name
    return s


def _clean_frame(**columns) -> pd.DataFrame:
    """Align several inputs on their index, dropping rows with any gap."""
    df = pd.DataFrame({
        k: pd.to_numeric(v if isinstance(v, pd.Series) else pd.Series(v), errors="coerce")
        for k, v in columns.items()
    }).astype(float)
    return df.replace([np.inf, -np.inf], np.nan).dropna()


def _empty(name: str) -> pd.Series:
    return pd.Series([], dtype=float, name=name)


def _finish(series: pd.Series, name: str, lo: float | None = None, hi: float | None = None) -> pd.Series:
    out = series.replace([np.inf, -np.inf], np.nan).dropna().astype(float)
    if lo is not None or hi is not None:
        out = out.clip(lower=lo, upper=hi)
    out.name = name
    return out


def _check_period(period: int, field: str = "period") -> None:
    if not isinstance(period, (int, np.integer)) or period < 1:
        raise InvalidInputError(field, f"must be a positive integer, got {period!r}")


# ===================================================================
# Indicators
# ===================================================================

def sma(close, period: int = 20) -> pd.Series:
    """Simple moving average; ``len(close) - period + 1`` values."""
    _check_period(period)
    s = _clean(close)
    name = f"SMA_{period}"
    if len(s) < period:
        return _empty(name)
    return _finish(SMAIndicator(s, window=period).sma_indicator(), name)


def ema(close, period: int = 12) -> pd.Series:
    """Exponential moving average (span ``period``), first value at bar p-1."""
    _check_period(period)
    s = _clean(close)
    name = f"EMA_{period}"
    if len(s) < period:
        return _empty(name)
    return _finish(EMAIndicator(s, window=period).ema_indicator(), name)


def _rsi_value(avg_gain: float, avg_loss: float) -> float:
    if avg_loss == 0:
        return 100.0 if avg_gain > 0 else 50.0
    rs = avg_gain / avg_loss
    return 100.0 - 100.0 / (1.0 + rs)


def rsi(close, period: int = 14) -> pd.Series:
    """Relative Strength Index with Wilder smoothing.

    The first average gain/loss is the simple mean over the first
    ``period`` price changes, so at least ``period + 1`` closes are needed.
    A window with no losses reads 100 (50 when price did not move at all).
    """
    _check_period(period)
    s = _clean(close)
    name = f"RSI_{period}"
    if len(s) < period + 1:
        return _empty(name)

    delta = np.diff(s.to_numpy())
    gains = np.clip(delta, 0.0, None)
    losses = np.clip(-delta, 0.0, None)

    avg_gain = gains[:period].mean()
    avg_loss = losses[:period].mean()
    values = [_rsi_value(avg_gain, avg_loss)]
    for gain, loss in zip(gains[period:], losses[period:]):
        avg_gain = (avg_gain * (period - 1) + gain) / period
        avg_loss = (avg_loss * (period - 1) + loss) / period
        values.append(_rsi_value(avg_gain, avg_loss))

    return _finish(pd.Series(values, index=s.index[period:]), name, 0.0, 100.0)


def macd(close, fast: int = 12, slow: int = 26, signal: int = 9) -> MACDResult:
    """MACD line (fast EMA - slow EMA), its signal EMA and the histogram."""
    for field_name, p in (("fast", fast), ("slow", slow), ("signal", signal)):
        _check_period(p, field_name)
    if fast >= slow:
        raise InvalidInputError("fast", "fast period must be shorter than slow period")

    s = _clean(close)
    if len(s) < slow:
        return MACDResult(_empty("MACD"), _empty("MACD_signal"), _empty("MACD_hist"))

    ind = MACD(s, window_slow=slow, window_fast=fast, window_sign=signal)
    return MACDResult(
        _finish(ind.macd(), "MACD"),
        _finish(ind.macd_signal(), "MACD_signal"),
        _finish(ind.macd_diff(), "MACD_hist"),
    )


def bollinger_bands(close, period: int = 20, k: float = 2.0) -> BollingerResult:
    """SMA middle band with bands ``k`` population standard deviations away."""
    _check_period(period)
    if k < 0:
        raise InvalidInputError("k", "band width must be non-negative")
    s = _clean(close)
    if len(s) < period:
        return BollingerResult(_empty("BB_upper"), _empty("BB_middle"), _empty("BB_lower"))

    # ta computes the rolling std with ddof=0
    bb = BollingerBands(s, window=period, window_dev=k)
    return BollingerResult(
        _finish(bb.bollinger_hband(), "BB_upper"),
        _finish(bb.bollinger_mavg(), "BB_middle"),
        _finish(bb.bollinger_lband(), "BB_lower"),
    )


def stochastic(high, low, close, period: int = 14, smooth: int = 3) -> StochasticResult:
    """Stochastic oscillator: %K over ``period`` bars and %D = SMA(smooth) of %K.

    Windows whose high equals their low have no defined %K.
    """
    _check_period(period)
    _check_period(smooth, "smooth")
    df = _clean_frame(high=high, low=low, close=close)
    if len(df) < period:
        return StochasticResult(_empty("STOCH_K"), _empty("STOCH_D"))

    ind = StochasticOscillator(
        df["high"], df["low"], df["close"], window=period, smooth_window=smooth,
    )
    k = _finish(ind.stoch(), "STOCH_K", 0.0, 100.0)
    if len(k) < smooth:
        return StochasticResult(k, _empty("STOCH_D"))
    d = _finish(k.rolling(smooth, min_periods=smooth).mean(), "STOCH_D", 0.0, 100.0)
    return StochasticResult(k, d)


def williams_r(high, low, close, period: int = 14) -> pd.Series:
    """Williams %R in [-100, 0]."""
    _check_period(period)
    df = _clean_frame(high=high, low=low, close=close)
    if len(df) < period:
        return _empty("WILLIAMS_R")
    ind = WilliamsRIndicator(df["high"], df["low"], df["close"], lbp=period)
    return _finish(ind.williams_r(), "WILLIAMS_R", -100.0, 0.0)


def obv(close, volume) -> pd.Series:
    """On-balance volume.

    Starts at the first bar's volume; each later bar adds its volume on an
    up close, subtracts it on a down close and leaves the total unchanged
    on a flat close.
    """
    df = _clean_frame(close=close, volume=volume)
    if df.empty:
        return _empty("OBV")
    direction = np.sign(df["close"].diff().fillna(0.0))
    flow = direction * df["volume"]
    flow.iloc[0] = df["volume"].iloc[0]
    return _finish(flow.cumsum(), "OBV")


def atr(high, low, close, period: int = 14) -> pd.Series:
    """Average true range."""
    _check_period(period)
    df = _clean_frame(high=high, low=low, close=close)
    if len(df) < period:
        return _empty(f"ATR_{period}")
    ind = AverageTrueRange(df["high"], df["low"], df["close"], window=period)
    # ta pads the warm-up bars with zeros instead of NaN
    return _finish(ind.average_true_range().iloc[period - 1:], f"ATR_{period}", 0.0)


def adx(high, low, close, period: int = 14) -> pd.Series:
    """Average directional index in [0, 100]; first value at bar 2 * period - 1."""
    _check_period(period)
    df = _clean_frame(high=high, low=low, close=close)
    name = f"ADX_{period}"
    if len(df) < 2 * period:
        return _empty(name)
    ind = ADXIndicator(df["high"], df["low"], df["close"], window=period)
    # ta pads the warm-up bars with zeros instead of NaN
    return _finish(ind.adx().iloc[2 * period - 1:], name, 0.0, 100.0)


def cci(high, low, close, period: int = 20, constant: float = 0.015) -> pd.Series:
    """Commodity channel index."""
    _check_period(period)
    df = _clean_frame(high=high, low=low, close=close)
    if len(df) < period:
        return _empty(f"CCI_{period}")
    ind = CCIIndicator(df["high"], df["low"], df["close"], window=period, constant=constant)
    return _finish(ind.cci(), f"CCI_{period}")


def mfi(high, low, close, volume, period: int = 14) -> pd.Series:
    """Money flow index in [0, 100]."""
    _check_period(period)
    df = _clean_frame(high=high, low=low, close=close, volume=volume)
    if len(df) < period + 1:
        return _empty(f"MFI_{period}")
    ind = MFIIndicator(df["high"], df["low"], df["close"], df["volume"], window=period)
    return _finish(ind.money_flow_index(), f"MFI_{period}", 0.0, 100.0)


# ===================================================================
# Scoring
# ===================================================================

def _vote_oscillator(value: Optional[float], oversold: float, overbought: float) -> Optional[float]:
    if value is None:
        return None
    if value < oversold:
        return BULLISH
    if value > overbought:
        return BEARISH
    return NEUTRAL


def technical_votes(snapshot: TechnicalSnapshot, current_price: Optional[float] = None) -> Dict[str, float]:
    """Per-indicator vote (1 bullish, 0.5 neutral, 0 bearish) for what is available."""
    price = current_price if current_price is not None else snapshot.close
    votes: Dict[str, Optional[float]] = {}

    votes["rsi"] = _vote_oscillator(snapshot.rsi_14, RSI_OVERSOLD, RSI_OVERBOUGHT)

    if snapshot.macd is not None and snapshot.macd_signal is not None:
        if snapshot.macd > snapshot.macd_signal:
            votes["macd"] = BULLISH
        elif snapshot.macd < snapshot.macd_signal:
            votes["macd"] = BEARISH
        else:
            votes["macd"] = NEUTRAL

    if price is not None and snapshot.bb_lower is not None and snapshot.bb_upper is not None:
        if price < snapshot.bb_lower:
            votes["bollinger"] = BULLISH
        elif price > snapshot.bb_upper:
            votes["bollinger"] = BEARISH
        else:
            votes["bollinger"] = NEUTRAL

    averages = [a for a in (snapshot.sma_50, snapshot.sma_200) if a is not None]
    if price is not None and averages:
        if all(price > a for a in averages):
            votes["moving_average"] = BULLISH
        elif all(price < a for a in averages):
            votes["moving_average"] = BEARISH
        else:
            votes["moving_average"] = NEUTRAL

    votes["stochastic"] = _vote_oscillator(snapshot.stoch_k, STOCH_OVERSOLD, STOCH_OVERBOUGHT)
    votes["williams_r"] = _vote_oscillator(
        snapshot.williams_r, WILLIAMS_OVERSOLD, WILLIAMS_OVERBOUGHT,
    )
    return {k: v for k, v in votes.items() if v is not None}


def technical_score(snapshot: TechnicalSnapshot, current_price: Optional[float] = None) -> float:
    """Weighted average of the available indicator votes, in [0, 1].

    Missing indicators are left out of both numerator and denominator, so
    with nothing available the score is the neutral 0.5.
    """
    votes = technical_votes(snapshot, current_price)
    if not votes:
        logger.info("No technical indicators available, using neutral score")
        return 0.5
    total_weight = sum(SCORE_WEIGHTS[k] for k in votes)
    score = sum(SCORE_WEIGHTS[k] * v for k, v in votes.items()) / total_weight
    return float(min(max(score, 0.0), 1.0))


def generate_signals(snapshot: TechnicalSnapshot, current_price: Optional[float] = None) -> dict:
    """Readable trading signals with an overall direction and strength."""
    price = current_price if current_price is not None else snapshot.close
    signals: List[Signal] = []

    if snapshot.rsi_14 is not None:
        if snapshot.rsi_14 < RSI_OVERSOLD:
            signals.append(Signal("RSI", "bullish", f"RSI oversold ({snapshot.rsi_14:.1f})"))
        elif snapshot.rsi_14 > RSI_OVERBOUGHT:
            signals.append(Signal("RSI", "bearish", f"RSI overbought ({snapshot.rsi_14:.1f})"))

    if snapshot.macd is not None and snapshot.macd_signal is not None:
        if snapshot.macd > snapshot.macd_signal:
            signals.append(Signal("MACD", "bullish", "MACD above signal line"))
        elif snapshot.macd < snapshot.macd_signal:
            signals.append(Signal("MACD", "bearish", "MACD below signal line"))

    if price is not None and snapshot.bb_lower is not None and price < snapshot.bb_lower:
        signals.append(Signal("Bollinger", "bullish", "Price below lower Bollinger band"))
    elif price is not None and snapshot.bb_upper is not None and price > snapshot.bb_upper:
        signals.append(Signal("Bollinger", "bearish", "Price above upper Bollinger band"))

    if snapshot.sma_50 is not None and snapshot.sma_200 is not None:
        if snapshot.sma_50 > snapshot.sma_200:
            signals.append(Signal("MA", "bullish", "SMA 50 above SMA 200 (golden cross regime)"))
        elif snapshot.sma_50 < snapshot.sma_200:
            signals.append(Signal("MA", "bearish", "SMA 50 below SMA 200 (death cross regime)"))

    if snapshot.stoch_k is not None:
        if snapshot.stoch_k < STOCH_OVERSOLD:
            signals.append(Signal("Stochastic", "bullish", "Stochastic oversold"))
        elif snapshot.stoch_k > STOCH_OVERBOUGHT:
            signals.append(Signal("Stochastic", "bearish", "Stochastic overbought"))

    if snapshot.williams_r is not None:
        if snapshot.williams_r < WILLIAMS_OVERSOLD:
            signals.append(Signal("Williams %R", "bullish", "Williams %R oversold"))
        elif snapshot.williams_r > WILLIAMS_OVERBOUGHT:
            signals.append(Signal("Williams %R", "bearish", "Williams %R overbought"))

    bullish = sum(1 for s in signals if s.direction == "bullish")
    bearish = len(signals) - bullish
    if bullish > bearish:
        direction = "bullish"
    elif bearish > bullish:
        direction = "bearish"
    else:
        direction = "neutral"

    dominant = max(bullish, bearish)
    strength = "strong" if dominant >= 4 else "moderate" if dominant >= 2 else "weak"

    return {
        "signals": [s.to_dict() for s in signals],
        "direction": direction,
        "strength": strength,
        "bullish_count": bullish,
        "bearish_count": bearish,
    }


# =====================================================================
# Frame-level analyzer
# =====================================================================

def _last(series: pd.Series) -> Optional[float]:
    return float(series.iloc[-1]) if len(series) else None


class TechnicalAnalyzer:
    """Compute every indicator over an OHLCV frame and score the latest bar.

    Only ``Close`` is required.  Missing ``High``/``Low`` fall back to the
    close so range oscillators stay computable; without ``Volume`` the
    volume indicators are simply absent.
    """

    def _columns(self, df: pd.DataFrame):
        if "Close" not in df.columns:
            raise InvalidInputError("prices", "price frame needs a 'Close' column")
        close = df["Close"]
        high = df["High"] if "High" in df.columns else close
        low = df["Low"] if "Low" in df.columns else close
        volume = df["Volume"] if "Volume" in df.columns else None
        return close, high, low, volume

    def indicator_series(self, df: pd.DataFrame) -> Dict[str, pd.Series]:
        """Every indicator as its own index-aligned, gap-free series."""
        close, high, low, volume = self._columns(df)
        out: Dict[str, pd.Series] = {
            "SMA_20": sma(close, 20),
            "SMA_50": sma(close, 50),
            "SMA_200": sma(close, 200),
            "EMA_12": ema(close, 12),
            "EMA_26": ema(close, 26),
            "RSI_14": rsi(close, 14),
        }
        m = macd(close)
        out.update({"MACD": m.macd, "MACD_signal": m.signal, "MACD_hist": m.histogram})
        bb = bollinger_bands(close)
        out.update({"BB_upper": bb.upper, "BB_middle": bb.middle, "BB_lower": bb.lower})
        st = stochastic(high, low, close)
        out.update({"STOCH_K": st.k, "STOCH_D": st.d})
        out["WILLIAMS_R"] = williams_r(high, low, close)
        out["ATR_14"] = atr(high, low, close)
        out["CCI_20"] = cci(high, low, close)
        out["ADX_14"] = adx(high, low, close)
        if volume is not None:
            out["OBV"] = obv(close, volume)
            out["MFI_14"] = mfi(high, low, close, volume)
        else:
            out["OBV"] = _empty("OBV")
            out["MFI_14"] = _empty("MFI_14")
        return out

    def compute_indicators(self, df: pd.DataFrame) -> pd.DataFrame:
        """Return *df* with one column per indicator, NaN where undefined."""
        r = df.copy()
        for name, series in self.indicator_series(df).items():
            r[name] = series.reindex(r.index)
        return r

    def snapshot(self, df: pd.DataFrame) -> TechnicalSnapshot:
        """Latest value of every indicator."""
        close, _, _, _ = self._columns(df)
        series = self.indicator_series(df)
        return TechnicalSnapshot(
            close=_last(_clean(close)),
            sma_20=_last(series["SMA_20"]),
            sma_50=_last(series["SMA_50"]),
            sma_200=_last(series["SMA_200"]),
            ema_12=_last(series["EMA_12"]),
            ema_26=_last(series["EMA_26"]),
            rsi_14=_last(series["RSI_14"]),
            macd=_last(series["MACD"]),
            macd_signal=_last(series["MACD_signal"]),
            macd_hist=_last(series["MACD_hist"]),
            bb_upper=_last(series["BB_upper"]),
            bb_middle=_last(series["BB_middle"]),
            bb_lower=_last(series["BB_lower"]),
            stoch_k=_last(series["STOCH_K"]),
            stoch_d=_last(series["STOCH_D"]),
            williams_r=_last(series["WILLIAMS_R"]),
            obv=_last(series["OBV"]),
            atr_14=_last(series["ATR_14"]),
            cci_20=_last(series["CCI_20"]),
            mfi_14=_last(series["MFI_14"]),
            adx_14=_last(series["ADX_14"]),
        )

    def analyze(self, df: pd.DataFrame) -> dict:
        """Snapshot, score and signals for the latest bar."""
        snap = self.snapshot(df)
        score = technical_score(snap)
        logger.info("Technical score %.3f over %d bars", score, len(df))
        return {
            "snapshot": snap,
            "score": score,
            "votes": technical_votes(snap),
            "signals": generate_signals(snap),
        }

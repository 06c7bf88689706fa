"""Bar-by-bar strategy backtester.

Replays a long-only strategy over an OHLCV frame.  The simulation is a
two-state machine (flat / long): flat bars evaluate the entry rule, long
bars the exit rule, so at most one transition happens per bar.  Entries
fill at the close plus slippage, exits at the close minus slippage, and
commission is charged on the notional at both ends.

Bars on which any indicator the strategy requires is still undefined are
skipped entirely: no rule is evaluated and no equity point is recorded.
The same applies when a rule reads an undeclared column that is undefined
on the bar; the read aborts the evaluation and the bar is skipped.
"""

from __future__ import annotations

import itertools
import math
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from stockpilot.analysis.technical import (
    INDICATOR_COLUMNS,
    TechnicalAnalyzer,
    bollinger_bands,
    rsi,
    sma,
)
from stockpilot.config import SETTINGS
from stockpilot.errors import InvalidInputError
from stockpilot.models import BacktestResult, Rule, Trade, _jsonify
from stockpilot.utils.logger import setup_logger

logger = setup_logger("backtesting")

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------
TRADING_DAYS_PER_YEAR = 252


def _safe_div(a: float, b: float, default: float = 0.0) -> float:
    """Division that returns *default* when denominator is zero/nan."""
    if b == 0 or np.isnan(b):
        return default
    return float(a / b)


# ===================================================================
# Strategy definition
# ===================================================================

IndicatorFn = Callable[[pd.DataFrame], pd.Series]


@dataclass
class Strategy:
    """Entry/exit rule pair over a bar and its indicator values.

    Rules receive the current bar (a row holding ``Close`` and every
    indicator column) and the previous evaluated bar, or ``None`` on the
    first one.  ``requires`` lists the columns that must be defined before
    a bar is evaluated.  ``indicators`` adds strategy-specific columns
    computed from the price frame.
    """

    name: str
    entry_rule: Rule
    exit_rule: Rule
    requires: Tuple[str, ...] = ()
    description: str = ""
    parameters: Dict[str, Any] = field(default_factory=dict)
    position_size: float = 1.0
    indicators: Dict[str, IndicatorFn] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.name:
            raise InvalidInputError("strategy.name", "must not be empty")
        if not callable(self.entry_rule):
            raise InvalidInputError("strategy.entry_rule", "must be callable")
        if not callable(self.exit_rule):
            raise InvalidInputError("strategy.exit_rule", "must be callable")
        for name, fn in self.indicators.items():
            if not callable(fn):
                raise InvalidInputError("strategy.indicators", f"{name} must be callable")
        self.requires = tuple(self.requires)
        known = set(INDICATOR_COLUMNS) | set(self.indicators) | {"Open", "High", "Low", "Close", "Volume"}
        unknown = [r for r in self.requires if r not in known]
        if unknown:
            raise InvalidInputError("strategy.requires", f"unknown indicators: {', '.join(unknown)}")
        if not (0 < self.position_size <= 1):
            raise InvalidInputError("strategy.position_size", "must be in (0, 1]")


# ===================================================================
# Simulation state
# ===================================================================

@dataclass
class _Position:
    entry_date: pd.Timestamp
    entry_bar: int
    entry_fill: float
    quantity: float
    cost_basis: float        # notional + entry commission
    commission: float
    slippage: float


@dataclass
class _SimState:
    cash: float
    position: Optional[_Position] = None
    trades: List[Trade] = field(default_factory=list)
    equity_curve: List[Tuple[pd.Timestamp, float]] = field(default_factory=list)


class _UndefinedIndicator(LookupError):
    """A rule read a column that has no value on this bar."""


class _GuardedBar:
    """Read-only view of a bar that refuses to hand out undefined values.

    Indexing a NaN column raises ``_UndefinedIndicator`` so the engine can
    skip the bar instead of letting the comparison silently read as False.
    """

    __slots__ = ("_row",)

    def __init__(self, row: pd.Series) -> None:
        self._row = row

    @property
    def name(self):
        return self._row.name

    def __getitem__(self, key: str) -> Any:
        value = self._row[key]
        if isinstance(value, float) and math.isnan(value):
            raise _UndefinedIndicator(key)
        return value

    def __getattr__(self, key: str) -> Any:
        if key.startswith("_"):
            raise AttributeError(key)
        try:
            return self[key]
        except KeyError:
            raise AttributeError(key) from None

    def __contains__(self, key: str) -> bool:
        return key in self._row.index

    def get(self, key: str, default: Any = None) -> Any:
        return self[key] if key in self._row.index else default

    def keys(self):
        return self._row.index


def _evaluate(rule: Rule, which: str, bar: _GuardedBar, prev: Optional[_GuardedBar]) -> bool:
    try:
        return bool(rule(bar, prev))
    except _UndefinedIndicator:
        raise
    except Exception as e:
        raise InvalidInputError(f"strategy.{which}", f"rule failed on {bar.name}: {e}") from e


# ===================================================================
# Engine
# ===================================================================

@dataclass
class OptimizationResult:
    best_params: Dict[str, Any]
    best_result: BacktestResult
    results: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return _jsonify({
            "best_params": self.best_params,
            "best_result": self.best_result.to_dict(),
            "results": self.results,
        })


class BacktestEngine:
    """Simulate strategies with a commission and slippage cost model.

    Args:
        initial_capital: Starting cash.
        commission: Fraction of notional charged on entry and on exit.
        slippage: Fraction of the close lost on each fill.
    """

    def __init__(
        self,
        initial_capital: Optional[float] = None,
        commission: Optional[float] = None,
        slippage: Optional[float] = None,
    ) -> None:
        cfg = SETTINGS["backtest"]
        self.initial_capital = float(cfg["initial_capital"] if initial_capital is None else initial_capital)
        self.commission = float(cfg["commission"] if commission is None else commission)
        self.slippage = float(cfg["slippage"] if slippage is None else slippage)
        if not self.initial_capital > 0:
            raise InvalidInputError("initial_capital", "must be positive")
        if not 0 <= self.commission < 1:
            raise InvalidInputError("commission", "must be in [0, 1)")
        if not 0 <= self.slippage < 1:
            raise InvalidInputError("slippage", "must be in [0, 1)")
        self._technical = TechnicalAnalyzer()

    # ------------------------------------------------------------------
    # Preparation
    # ------------------------------------------------------------------

    def _prepare(self, strategy: Strategy, prices: pd.DataFrame) -> pd.DataFrame:
        if "Close" not in prices.columns:
            raise InvalidInputError("prices", "price frame needs a 'Close' column")
        frame = prices.sort_index()
        close = pd.to_numeric(frame["Close"], errors="coerce").replace([np.inf, -np.inf], np.nan)
        non_positive = close[close <= 0]
        if len(non_positive):
            raise InvalidInputError(
                "close", f"non-positive close {non_positive.iloc[0]} at {non_positive.index[0]}",
            )
        frame = self._technical.compute_indicators(frame.assign(Close=close))
        for name, fn in strategy.indicators.items():
            frame[name] = pd.Series(fn(frame), dtype=float).reindex(frame.index)
        return frame

    # ------------------------------------------------------------------
    # Fills
    # ------------------------------------------------------------------

    def _open(self, state: _SimState, ts: pd.Timestamp, bar_no: int, close: float, size: float) -> None:
        fill = close * (1 + self.slippage)
        quantity = state.cash * size / (fill * (1 + self.commission))
        notional = quantity * fill
        commission = notional * self.commission
        state.cash -= notional + commission
        state.position = _Position(
            entry_date=ts,
            entry_bar=bar_no,
            entry_fill=fill,
            quantity=quantity,
            cost_basis=notional + commission,
            commission=commission,
            slippage=quantity * close * self.slippage,
        )

    def _close(self, state: _SimState, ts: pd.Timestamp, bar_no: int, close: float, forced: bool) -> None:
        pos = state.position
        fill = close * (1 - self.slippage)
        proceeds = pos.quantity * fill
        commission = proceeds * self.commission
        state.cash += proceeds - commission
        pnl = proceeds - commission - pos.cost_basis
        state.trades.append(Trade(
            entry_date=pos.entry_date,
            entry_price=pos.entry_fill,
            exit_date=ts,
            exit_price=fill,
            quantity=pos.quantity,
            commission=pos.commission + commission,
            slippage=pos.slippage + pos.quantity * close * self.slippage,
            pnl=pnl,
            pnl_pct=_safe_div(pnl, pos.cost_basis) * 100,
            holding_bars=bar_no - pos.entry_bar,
            forced_exit=forced,
        ))
        state.position = None

    def _settle_open_position(self, state: _SimState, close: float) -> None:
        """Close a position left open because the final bars were skipped."""
        ts, _ = state.equity_curve[-1]
        pos = state.position
        last_no = len(state.equity_curve) - 1
        if pos.entry_bar == last_no:
            # Entered on the last evaluable bar: unwind, entry and exit cannot share a bar
            state.cash += pos.cost_basis
            state.position = None
        else:
            self._close(state, ts, last_no, close, forced=True)
        state.equity_curve[-1] = (ts, state.cash)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def run(self, strategy: Strategy, prices: Optional[pd.DataFrame]) -> BacktestResult:
        """Replay *strategy* over *prices* and return its tearsheet."""
        if not isinstance(strategy, Strategy):
            raise InvalidInputError("strategy", "expected a Strategy")

        result = BacktestResult(
            strategy_name=strategy.name,
            initial_capital=self.initial_capital,
            final_equity=self.initial_capital,
        )
        if prices is None or prices.empty:
            logger.info("Empty price series for %s, nothing to backtest", strategy.name)
            return result

        frame = self._prepare(strategy, prices)
        mask = frame["Close"].notna()
        if strategy.requires:
            mask &= frame[list(strategy.requires)].notna().all(axis=1)
        bars = frame[mask]
        result.skipped_bars = int(len(frame) - len(bars))
        if bars.empty:
            logger.info("No evaluable bars for %s (%d skipped)", strategy.name, result.skipped_bars)
            return result

        state = _SimState(cash=self.initial_capital)
        last = len(bars) - 1
        prev: Optional[_GuardedBar] = None
        last_close = float("nan")

        for i, (ts, row) in enumerate(bars.iterrows()):
            bar = _GuardedBar(row)
            close = float(row["Close"])
            bar_no = len(state.equity_curve)
            try:
                if state.position is not None:
                    if _evaluate(strategy.exit_rule, "exit_rule", bar, prev):
                        self._close(state, ts, bar_no, close, forced=False)
                    elif i == last:
                        self._close(state, ts, bar_no, close, forced=True)
                elif i < last and _evaluate(strategy.entry_rule, "entry_rule", bar, prev):
                    self._open(state, ts, bar_no, close, strategy.position_size)
            except _UndefinedIndicator as e:
                logger.debug("Skipping %s: %s undefined", ts, e)
                result.skipped_bars += 1
                continue

            held = state.position.quantity * close if state.position else 0.0
            state.equity_curve.append((ts, state.cash + held))
            prev = bar
            last_close = close

        if not state.equity_curve:
            logger.info("No evaluable bars for %s (%d skipped)", strategy.name, result.skipped_bars)
            return result
        if state.position is not None:
            self._settle_open_position(state, last_close)

        self._fill_stats(result, state, len(state.equity_curve))
        logger.info(
            "Backtest %s: %d trades, return %.2f%%, sharpe %.2f",
            strategy.name, result.num_trades, result.total_return * 100, result.sharpe_ratio,
        )
        return result

    def run_many(
        self,
        strategies: Sequence[Strategy],
        prices: pd.DataFrame,
        max_workers: int = 4,
    ) -> Dict[str, BacktestResult]:
        """Backtest independent strategies over the same prices in parallel."""
        with ThreadPoolExecutor(max_workers=max_workers) as pool:
            futures = {s.name: pool.submit(self.run, s, prices) for s in strategies}
            return {name: f.result() for name, f in futures.items()}

    def optimize(
        self,
        factory: Callable[..., Strategy],
        prices: pd.DataFrame,
        grid: Mapping[str, Sequence[Any]],
    ) -> OptimizationResult:
        """Grid-search strategy parameters, keeping the best Sharpe ratio.

        *factory* builds a ``Strategy`` from keyword parameters; every
        combination of the values in *grid* is tried.  Ties keep the first
        combination in grid order.
        """
        if not grid or any(len(values) == 0 for values in grid.values()):
            raise InvalidInputError("grid", "every parameter needs at least one value")

        names = list(grid)
        best: Optional[Tuple[Dict[str, Any], BacktestResult]] = None
        rows: List[Dict[str, Any]] = []
        for combo in itertools.product(*(grid[n] for n in names)):
            params = dict(zip(names, combo))
            result = self.run(factory(**params), prices)
            rows.append({
                "params": params,
                "sharpe_ratio": result.sharpe_ratio,
                "total_return": result.total_return,
                "num_trades": result.num_trades,
            })
            if best is None or result.sharpe_ratio > best[1].sharpe_ratio:
                best = (params, result)

        logger.info("Optimized %d combinations; best %s", len(rows), best[0])
        return OptimizationResult(best_params=best[0], best_result=best[1], results=rows)

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    def _fill_stats(self, result: BacktestResult, state: _SimState, n_bars: int) -> None:
        result.trades = state.trades
        result.equity_curve = state.equity_curve
        result.evaluated_bars = n_bars

        equity = np.array([eq for _, eq in state.equity_curve], dtype=float)
        result.final_equity = float(equity[-1])
        result.total_return = result.final_equity / self.initial_capital - 1
        result.annual_return = float(
            (1 + result.total_return) ** (TRADING_DAYS_PER_YEAR / max(n_bars, 1)) - 1
        )

        # Max drawdown as a positive fraction of the running peak
        running_max = np.maximum.accumulate(np.concatenate([[self.initial_capital], equity]))
        drawdowns = (running_max - np.concatenate([[self.initial_capital], equity])) / running_max
        result.max_drawdown = float(drawdowns.max())

        returns = np.diff(np.concatenate([[self.initial_capital], equity])) / np.concatenate(
            [[self.initial_capital], equity[:-1]]
        )
        if len(returns) > 1:
            std = float(np.std(returns, ddof=1))
            sharpe = _safe_div(float(np.mean(returns)), std) * math.sqrt(TRADING_DAYS_PER_YEAR)
            result.sharpe_ratio = sharpe if std > 1e-12 else 0.0

        pnls = [t.pnl for t in state.trades]
        wins = [p for p in pnls if p > 0]
        losses = [p for p in pnls if p < 0]
        result.win_rate = _safe_div(len(wins), len(pnls))
        result.average_win = float(np.mean(wins)) if wins else 0.0
        result.average_loss = float(np.mean(losses)) if losses else 0.0
        result.largest_win = max(wins) if wins else 0.0
        result.largest_loss = min(losses) if losses else 0.0
        result.profit_factor = _safe_div(sum(wins), abs(sum(losses)))
        result.avg_holding_period = (
            float(np.mean([t.holding_bars for t in state.trades])) if state.trades else 0.0
        )
        result.monthly_returns = self._monthly_returns(state.equity_curve)

    def _monthly_returns(self, curve: List[Tuple[pd.Timestamp, float]]) -> Dict[str, float]:
        """Month-over-month change in month-end equity."""
        if not curve or not isinstance(curve[0][0], (pd.Timestamp, np.datetime64)):
            return {}
        s = pd.Series([eq for _, eq in curve], index=pd.DatetimeIndex([ts for ts, _ in curve]))
        month_end = s.resample("ME").last().dropna()
        previous = month_end.shift(1).fillna(self.initial_capital)
        monthly = month_end / previous - 1
        return {dt.strftime("%Y-%m"): round(float(v), 6) for dt, v in monthly.items()}


# ===================================================================
# Strategy catalog
# ===================================================================

def ma_crossover_strategy(fast: int = 50, slow: int = 200) -> Strategy:
    """Long while the fast SMA is above the slow SMA."""
    if fast >= slow:
        raise InvalidInputError("fast", "fast period must be shorter than slow period")
    return Strategy(
        name=f"ma_crossover_{fast}_{slow}",
        description="Buy when the short SMA crosses above the long SMA, sell when it crosses below",
        parameters={"fast": fast, "slow": slow},
        indicators={
            "SMA_fast": lambda df: sma(df["Close"], fast),
            "SMA_slow": lambda df: sma(df["Close"], slow),
        },
        requires=("SMA_fast", "SMA_slow"),
        entry_rule=lambda bar, prev: bar["SMA_fast"] > bar["SMA_slow"],
        exit_rule=lambda bar, prev: bar["SMA_fast"] < bar["SMA_slow"],
    )


def rsi_strategy(period: int = 14, oversold: float = 30, overbought: float = 70) -> Strategy:
    """Buy oversold, sell overbought."""
    return Strategy(
        name=f"rsi_{period}_{oversold:g}_{overbought:g}",
        description=f"Buy when RSI falls below {oversold:g}, sell when it rises above {overbought:g}",
        parameters={"period": period, "oversold": oversold, "overbought": overbought},
        indicators={"RSI": lambda df: rsi(df["Close"], period)},
        requires=("RSI",),
        entry_rule=lambda bar, prev: bar["RSI"] < oversold,
        exit_rule=lambda bar, prev: bar["RSI"] > overbought,
    )


def macd_strategy() -> Strategy:
    return Strategy(
        name="macd_crossover",
        description="Buy when MACD is above its signal line, sell when it drops below",
        parameters={"fast": 12, "slow": 26, "signal": 9},
        requires=("MACD", "MACD_signal"),
        entry_rule=lambda bar, prev: bar["MACD"] > bar["MACD_signal"],
        exit_rule=lambda bar, prev: bar["MACD"] < bar["MACD_signal"],
    )


def bollinger_strategy(period: int = 20, k: float = 2.0) -> Strategy:
    """Mean reversion between the Bollinger bands."""
    def _bands(df: pd.DataFrame):
        return bollinger_bands(df["Close"], period, k)

    return Strategy(
        name=f"bollinger_{period}_{k:g}",
        description="Buy at the lower band, sell at the upper band",
        parameters={"period": period, "k": k},
        indicators={
            "BB_lo": lambda df: _bands(df).lower,
            "BB_hi": lambda df: _bands(df).upper,
        },
        requires=("BB_lo", "BB_hi"),
        entry_rule=lambda bar, prev: bar["Close"] <= bar["BB_lo"],
        exit_rule=lambda bar, prev: bar["Close"] >= bar["BB_hi"],
    )


def multi_signal_strategy(oversold: float = 30, overbought: float = 70) -> Strategy:
    """RSI confirmed by either MACD or a Bollinger band touch."""
    def entry(bar, prev):
        oversold_rsi = bar["RSI_14"] < oversold
        macd_up = bar["MACD"] > bar["MACD_signal"]
        at_lower = bar["Close"] <= bar["BB_lower"]
        return oversold_rsi and (macd_up or at_lower)

    def exit_(bar, prev):
        overbought_rsi = bar["RSI_14"] > overbought
        macd_down = bar["MACD"] < bar["MACD_signal"]
        at_upper = bar["Close"] >= bar["BB_upper"]
        return overbought_rsi and (macd_down or at_upper)

    return Strategy(
        name="multi_signal",
        description="RSI extreme confirmed by MACD or Bollinger band",
        parameters={"oversold": oversold, "overbought": overbought},
        requires=("RSI_14", "MACD", "MACD_signal", "BB_lower", "BB_upper"),
        entry_rule=entry,
        exit_rule=exit_,
    )


STRATEGY_CATALOG: Dict[str, Callable[..., Strategy]] = {
    "ma_crossover": ma_crossover_strategy,
    "rsi": rsi_strategy,
    "macd": macd_strategy,
    "bollinger": bollinger_strategy,
    "multi_signal": multi_signal_strategy,
}


def get_strategy(name: str, **params) -> Strategy:
    """Build a catalog strategy by name."""
    try:
        factory = STRATEGY_CATALOG[name]
    except KeyError:
        raise InvalidInputError(
            "strategy", f"unknown strategy {name!r}; choose from {', '.join(STRATEGY_CATALOG)}",
        ) from None
    return factory(**params)


def list_strategies() -> List[Dict[str, Any]]:
    """Name, description and default parameters of every catalog strategy."""
    out = []
    for key, factory in STRATEGY_CATALOG.items():
        s = factory()
        out.append({"key": key, "name": s.name, "description": s.description, "parameters": s.parameters})
    return out


# ===================================================================
# Module-level convenience wrapper
# ===================================================================

def backtest(strategy: Strategy, prices: pd.DataFrame, **engine_kwargs) -> BacktestResult:
    """Convenience wrapper around ``BacktestEngine.run``."""
    return BacktestEngine(**engine_kwargs).run(strategy, prices)

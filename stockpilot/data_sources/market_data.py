"""Market data client - OHLCV price history via yfinance."""

from __future__ import annotations

from typing import List

import pandas as pd
import yfinance as yf

from stockpilot.errors import ExternalServiceError
from stockpilot.models import PricePoint
from stockpilot.utils.logger import setup_logger

logger = setup_logger("market_data")


def frame_to_points(df: pd.DataFrame, interval: str = "1d") -> List[PricePoint]:
    """Convert a yfinance history frame into price points, skipping empty rows."""
    if df is None or df.empty:
        return []
    points: List[PricePoint] = []
    for ts, row in df.sort_index().iterrows():
        if pd.isna(row.get("Close")):
            continue
        close = float(row["Close"])
        points.append(PricePoint(
            timestamp=pd.Timestamp(ts).to_pydatetime(),
            open=float(row["Open"]) if pd.notna(row.get("Open")) else close,
            high=float(row["High"]) if pd.notna(row.get("High")) else close,
            low=float(row["Low"]) if pd.notna(row.get("Low")) else close,
            close=close,
            volume=float(row["Volume"]) if pd.notna(row.get("Volume")) else 0.0,
            interval=interval,
        ))
    return points


class MarketDataClient:
    """Fetch price history from Yahoo Finance."""

    def get_price_history(self, symbol: str, period: str = "2y", interval: str = "1d") -> pd.DataFrame:
        """Raw OHLCV frame as returned by yfinance."""
        logger.info("Fetching price history: %s (period=%s, interval=%s)", symbol, period, interval)
        try:
            df = yf.Ticker(symbol).history(period=period, interval=interval)
        except Exception as e:
            raise ExternalServiceError("yfinance", f"price history for {symbol} failed: {e}") from e
        if df is None or df.empty:
            logger.warning("No price data for %s", symbol)
            return pd.DataFrame()
        return df

    def get_price_points(self, symbol: str, period: str = "2y", interval: str = "1d") -> List[PricePoint]:
        return frame_to_points(self.get_price_history(symbol, period, interval), interval)

    def get_current_price(self, symbol: str) -> float | None:
        df = self.get_price_history(symbol, period="5d")
        if df.empty:
            return None
        return float(df["Close"].dropna().iloc[-1])

"""Shared pytest fixtures for the stockpilot test suite.

Provides synthetic market data with a fixed random seed for reproducibility.
All fixtures are independent of external APIs.
"""

from datetime import date

import numpy as np
import pandas as pd
import pytest

from stockpilot.models import FundamentalReport


# ---------------------------------------------------------------------------
# 1. OHLCV fixture
# ---------------------------------------------------------------------------

@pytest.fixture
def sample_ohlcv():
    """Synthetic OHLCV DataFrame with 252 business days.

    Geometric Brownian motion seeded at 42: start ~150, daily drift ~0.04%,
    daily vol ~1.5%.
    """
    np.random.seed(42)
    n = 252
    dates = pd.bdate_range(start="2023-01-02", periods=n)
    close = 150.0 * np.exp(np.cumsum(np.random.normal(0.0004, 0.015, n)))
    high = close * (1 + np.abs(np.random.normal(0.002, 0.005, n)))
    low = close * (1 - np.abs(np.random.normal(0.002, 0.005, n)))
    open_ = close * (1 + np.random.normal(0, 0.003, n))
    volume = np.random.randint(1_000_000, 10_000_000, n).astype(float)
    return pd.DataFrame(
        {"Open": open_, "High": high, "Low": low, "Close": close, "Volume": volume},
        index=dates,
    )


# ---------------------------------------------------------------------------
# 2. Financial statement fixtures (yfinance layout: items x period ends)
# ---------------------------------------------------------------------------

_PERIODS = pd.to_datetime(["2023-12-31", "2022-12-31", "2021-12-31"])


@pytest.fixture
def sample_income_statement():
    """Annual income statement, most recent period first."""
    return pd.DataFrame(
        {
            _PERIODS[0]: {"Total Revenue": 120_000_000, "Net Income": 20_540_000},
            _PERIODS[1]: {"Total Revenue": 110_000_000, "Net Income": 18_170_000},
            _PERIODS[2]: {"Total Revenue": 100_000_000, "Net Income": 15_405_000},
        }
    )


@pytest.fixture
def sample_balance_sheet():
    """Annual balance sheet matching the income statement periods."""
    return pd.DataFrame(
        {
            _PERIODS[0]: {
                "Total Assets": 200_000_000,
                "Total Liabilities Net Minority Interest": 90_000_000,
                "Stockholders Equity": 110_000_000,
                "Ordinary Shares Number": 10_000_000,
            },
            _PERIODS[1]: {
                "Total Assets": 185_000_000,
                "Total Liabilities Net Minority Interest": 85_000_000,
                "Stockholders Equity": 100_000_000,
                "Ordinary Shares Number": 10_000_000,
            },
            _PERIODS[2]: {
                "Total Assets": 170_000_000,
                "Total Liabilities Net Minority Interest": 80_000_000,
                "Stockholders Equity": 90_000_000,
                "Ordinary Shares Number": 10_000_000,
            },
        }
    )


@pytest.fixture
def sample_cash_flow():
    return pd.DataFrame(
        {
            _PERIODS[0]: {"Operating Cash Flow": 28_000_000},
            _PERIODS[1]: {"Operating Cash Flow": 25_000_000},
            _PERIODS[2]: {"Operating Cash Flow": 22_000_000},
        }
    )


# ---------------------------------------------------------------------------
# 3. Report fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def quarterly_reports():
    """Five quarters: Q1 2023 through Q1 2024, deliberately unordered."""
    def q(year, quarter, month, revenue, net_income):
        return FundamentalReport(
            report_date=date(year, month, 28),
            year=year,
            quarter=quarter,
            revenue=revenue,
            net_income=net_income,
            eps=net_income / 1_000_000,
            total_assets=500_000_000,
            total_liabilities=100_000_000,
            total_equity=400_000_000,
            operating_cash_flow=net_income * 1.2,
            shares_outstanding=1_000_000,
        )

    return [
        q(2023, 3, 9, 105_000_000, 19_000_000),
        q(2024, 1, 3, 120_000_000, 25_000_000),
        q(2023, 1, 3, 100_000_000, 20_000_000),
        q(2023, 4, 12, 110_000_000, 22_000_000),
        q(2023, 2, 6, 102_000_000, 18_000_000),
    ]

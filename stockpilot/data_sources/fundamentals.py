"""Fundamental data client - financial statements via yfinance.

Statements arrive as frames with line items on the rows and period end
dates on the columns.  Line-item names vary between filers, so each field
is looked up through a list of aliases.
"""

from __future__ import annotations

from typing import List, Optional

import pandas as pd
import yfinance as yf

from stockpilot.errors import ExternalServiceError
from stockpilot.models import FundamentalReport
from stockpilot.utils.logger import setup_logger

logger = setup_logger("fundamentals")

_FIELD_ALIASES: dict[str, list[str]] = {
    # Income statement
    "revenue": ["Total Revenue", "Revenue", "Operating Revenue"],
    "net_income": [
        "Net Income", "Net Income Common Stockholders",
        "Net Income From Continuing Operation Net Minority Interest",
    ],
    "eps": ["Diluted EPS", "Basic EPS"],
    # Balance sheet
    "total_assets": ["Total Assets"],
    "total_liabilities": [
        "Total Liabilities Net Minority Interest", "Total Liabilities",
        "Total Liab",
    ],
    "total_equity": [
        "Stockholders Equity", "Total Stockholder Equity",
        "Common Stock Equity", "Total Equity Gross Minority Interest",
    ],
    "shares_outstanding": ["Ordinary Shares Number", "Share Issued"],
    # Cash flow
    "operating_cash_flow": [
        "Operating Cash Flow", "Total Cash From Operating Activities",
        "Cash Flow From Continuing Operating Activities",
    ],
}


def _extract(df: Optional[pd.DataFrame], field_key: str, column) -> Optional[float]:
    """Pull one value for *column* (a period end date) or ``None``."""
    if df is None or df.empty or column not in df.columns:
        return None
    for alias in _FIELD_ALIASES.get(field_key, [field_key]):
        if alias not in df.index:
            continue
        row = df.loc[alias]
        # Duplicate index labels would give a DataFrame
        val = row.iloc[0][column] if isinstance(row, pd.DataFrame) else row[column]
        if pd.notna(val):
            try:
                return float(val)
            except (TypeError, ValueError):
                continue
    return None


def statements_to_reports(
    income: Optional[pd.DataFrame],
    balance: Optional[pd.DataFrame],
    cash_flow: Optional[pd.DataFrame],
    quarterly: bool = True,
) -> List[FundamentalReport]:
    """Merge the three statements into one report per period end date."""
    periods = set()
    for df in (income, balance, cash_flow):
        if df is not None and not df.empty:
            periods.update(df.columns)

    reports: List[FundamentalReport] = []
    for period in sorted(periods):
        ts = pd.Timestamp(period)
        net_income = _extract(income, "net_income", period)
        shares = _extract(balance, "shares_outstanding", period)
        eps = _extract(income, "eps", period)
        if eps is None and net_income is not None and shares:
            eps = net_income / shares
        reports.append(FundamentalReport(
            report_date=ts.date(),
            year=ts.year,
            quarter=(ts.month - 1) // 3 + 1 if quarterly else None,
            revenue=_extract(income, "revenue", period),
            net_income=net_income,
            eps=eps,
            total_assets=_extract(balance, "total_assets", period),
            total_liabilities=_extract(balance, "total_liabilities", period),
            total_equity=_extract(balance, "total_equity", period),
            operating_cash_flow=_extract(cash_flow, "operating_cash_flow", period),
            shares_outstanding=shares,
        ))
    return reports


class FundamentalsClient:
    """Fetch financial statements and turn them into reports."""

    def __init__(self, quarterly: bool = True):
        self.quarterly = quarterly

    def get_statements(self, symbol: str) -> tuple[pd.DataFrame, pd.DataFrame, pd.DataFrame]:
        logger.info("Fetching %s statements: %s", "quarterly" if self.quarterly else "annual", symbol)
        try:
            stock = yf.Ticker(symbol)
            if self.quarterly:
                return stock.quarterly_income_stmt, stock.quarterly_balance_sheet, stock.quarterly_cashflow
            return stock.income_stmt, stock.balance_sheet, stock.cashflow
        except Exception as e:
            raise ExternalServiceError("yfinance", f"statements for {symbol} failed: {e}") from e

    def get_reports(self, symbol: str) -> List[FundamentalReport]:
        income, balance, cash_flow = self.get_statements(symbol)
        reports = statements_to_reports(income, balance, cash_flow, self.quarterly)
        if not reports:
            logger.warning("No fundamental data for %s", symbol)
        return reports

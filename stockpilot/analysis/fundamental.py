"""Fundamental ratio engine.

Derives valuation, profitability, leverage and growth ratios from quarterly
or annual ``FundamentalReport`` records, reduces them to a [0, 1] score and
describes them in plain English.  A ratio whose inputs are missing, or whose
denominator is zero, is ``None``; the score then leans toward neutral
instead of treating the gap as good or bad news.
"""

from __future__ import annotations

import math
from typing import Dict, List, Optional, Sequence

from stockpilot.config import SETTINGS
from stockpilot.errors import InvalidInputError
from stockpilot.models import FinancialRatios, FundamentalReport
from stockpilot.utils.logger import setup_logger

logger = setup_logger("fundamental")

# ---------------------------------------------------------------------------
# Score weights -- sum to 1.0
# ---------------------------------------------------------------------------
_RATIO_WEIGHTS: Dict[str, float] = {
    "pe_ratio": 0.15,
    "pb_ratio": 0.10,
    "roe": 0.20,
    "debt_to_equity": 0.10,
    "profit_margin": 0.15,
    "revenue_growth": 0.15,
    "earnings_growth": 0.15,
}

_INDUSTRY_ADJUSTMENT = 0.05


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _finite(value) -> bool:
    return value is not None and isinstance(value, (int, float)) and math.isfinite(value)


def _safe_div(num, den, default=None):
    """Divide, returning *default* when either side is missing or den == 0."""
    if not _finite(num) or not _finite(den) or den == 0:
        return default
    return num / den


def _clamp(value: float, lo: float = 0.0, hi: float = 1.0) -> float:
    return max(lo, min(hi, value))


def _growth(current, previous) -> Optional[float]:
    if not _finite(current) or not _finite(previous) or previous == 0:
        return None
    return (current - previous) / abs(previous) * 100


def _prior_period(latest: FundamentalReport, older: Sequence[FundamentalReport]) -> Optional[FundamentalReport]:
    """Same quarter one year earlier, else the immediately preceding report."""
    for report in older:
        if report.year == latest.year - 1 and report.quarter == latest.quarter:
            return report
    return older[0] if older else None


# ===================================================================
# Ratio calculation
# ===================================================================

def calculate_ratios(
    reports: Sequence[FundamentalReport],
    current_price: Optional[float] = None,
) -> FinancialRatios:
    """Compute ratios from the latest report (and its prior period for growth).

    Reports may arrive in any order; the latest is chosen by ``report_date``.
    Price-based ratios need *current_price*.
    """
    if current_price is not None and (not _finite(current_price) or current_price <= 0):
        raise InvalidInputError("current_price", f"must be a positive number, got {current_price!r}")
    if not reports:
        logger.info("No fundamental reports available")
        return FinancialRatios()

    # Restated reports share a date; the last one supplied wins
    by_date = {r.report_date: r for r in reports}
    if len(by_date) < len(reports):
        logger.info("Dropped %d duplicate report(s)", len(reports) - len(by_date))
    ordered: List[FundamentalReport] = sorted(by_date.values(), key=lambda r: r.report_date, reverse=True)
    latest, older = ordered[0], ordered[1:]

    pe_ratio = None
    if current_price is not None and _finite(latest.eps) and latest.eps > 0:
        pe_ratio = current_price / latest.eps

    pb_ratio = None
    book_per_share = _safe_div(latest.total_equity, latest.shares_outstanding)
    if current_price is not None and book_per_share is not None and book_per_share > 0:
        pb_ratio = current_price / book_per_share

    roe = _safe_div(latest.net_income, latest.total_equity)
    margin = _safe_div(latest.net_income, latest.revenue)

    prior = _prior_period(latest, older)
    revenue_growth = earnings_growth = None
    if prior is not None:
        revenue_growth = _growth(latest.revenue, prior.revenue)
        earnings_growth = _growth(latest.net_income, prior.net_income)

    ratios = FinancialRatios(
        pe_ratio=pe_ratio,
        pb_ratio=pb_ratio,
        roe=roe * 100 if roe is not None else None,
        debt_to_equity=_safe_div(latest.total_liabilities, latest.total_equity),
        profit_margin=margin * 100 if margin is not None else None,
        revenue_growth=revenue_growth,
        earnings_growth=earnings_growth,
    )
    missing = [k for k, v in ratios.to_dict().items() if v is None]
    if missing:
        logger.info("Ratios unavailable: %s", ", ".join(missing))
    return ratios


# ===================================================================
# Scoring
# ===================================================================

def _score_pe(pe: float) -> float:
    if pe < 10:
        return 1.0
    if pe < 20:
        return 0.7
    if pe < 30:
        return 0.4
    return 0.1


def _score_pb(pb: float) -> float:
    if pb < 1:
        return 1.0
    if pb < 3:
        return 0.7
    return 0.3


def _score_roe(roe: float) -> float:
    if roe > 15:
        return 1.0
    if roe > 10:
        return 0.8
    if roe > 5:
        return 0.5
    return 0.2


def _score_debt(de: float) -> float:
    if de < 0.3:
        return 1.0
    if de < 0.7:
        return 0.7
    return 0.3


def _score_margin(margin: float) -> float:
    if margin > 15:
        return 1.0
    if margin > 8:
        return 0.8
    if margin > 0:
        return 0.5
    return 0.1


def _score_revenue_growth(growth: float) -> float:
    if growth > 20:
        return 1.0
    if growth > 10:
        return 0.9
    if growth > 0:
        return 0.6
    return 0.2


def _score_earnings_growth(growth: float) -> float:
    if growth > 25:
        return 1.0
    if growth > 15:
        return 0.9
    if growth > 0:
        return 0.6
    return 0.2


_SCORERS = {
    "pe_ratio": _score_pe,
    "pb_ratio": _score_pb,
    "roe": _score_roe,
    "debt_to_equity": _score_debt,
    "profit_margin": _score_margin,
    "revenue_growth": _score_revenue_growth,
    "earnings_growth": _score_earnings_growth,
}


def ratio_scores(ratios: FinancialRatios) -> Dict[str, float]:
    """Bucketed [0, 1] score for each available ratio."""
    return {k: _SCORERS[k](v) for k, v in ratios.available().items()}


def fundamental_score(ratios: FinancialRatios, comparison: Optional[dict] = None) -> float:
    """Weighted ratio score in [0, 1].

    The weighted average over available ratios is pulled toward 0.5 by the
    share of weight that is missing, so one glowing ratio cannot produce a
    top score on its own.  An industry *comparison* (see
    ``compare_with_industry``) nudges the result by its adjustment.
    """
    scores = ratio_scores(ratios)
    if not scores:
        logger.info("No fundamental ratios available, using neutral score")
        base = 0.5
    else:
        covered = sum(_RATIO_WEIGHTS[k] for k in scores)
        raw = sum(_RATIO_WEIGHTS[k] * s for k, s in scores.items()) / covered
        base = 0.5 + (raw - 0.5) * covered

    if comparison:
        base += comparison.get("adjustment", 0.0)
    return _clamp(base)


# ===================================================================
# Industry comparison
# ===================================================================

def _percentile(value: float, average: float) -> float:
    """25 points per doubling above the average, 25 per halving below it.

    Sign changes have no ratio scale, so a value on the other side of zero
    from the average falls back to the linear distance.
    """
    if value > 0 and average > 0:
        return _clamp(50 + 25 * math.log2(value / average), 0.0, 100.0)
    return _clamp(50 + (value - average) / abs(average) * 25, 0.0, 100.0)


def compare_with_industry(
    ratios: FinancialRatios,
    averages: Optional[Dict[str, float]] = None,
) -> dict:
    """Rough percentile of each ratio against industry averages.

    Percentiles are a log-ratio approximation around the average (50th): half
    the average reads as the 25th percentile, double it as the 75th.  A
    P/E in the cheapest quartile or an ROE in the top quartile adds 0.05 to
    the fundamental score; the opposite quartiles subtract it.
    """
    averages = averages or SETTINGS["fundamental"]["industry_averages"]
    percentiles: Dict[str, float] = {}
    for key, value in ratios.available().items():
        avg = averages.get(key)
        if _finite(avg) and avg != 0:
            percentiles[key] = _percentile(value, avg)

    adjustment = 0.0
    pe_pct = percentiles.get("pe_ratio")
    if pe_pct is not None:
        if pe_pct < 25:
            adjustment += _INDUSTRY_ADJUSTMENT
        elif pe_pct > 75:
            adjustment -= _INDUSTRY_ADJUSTMENT
    roe_pct = percentiles.get("roe")
    if roe_pct is not None:
        if roe_pct > 75:
            adjustment += _INDUSTRY_ADJUSTMENT
        elif roe_pct < 25:
            adjustment -= _INDUSTRY_ADJUSTMENT

    return {
        "percentiles": percentiles,
        "industry_averages": dict(averages),
        "adjustment": adjustment,
    }


# ===================================================================
# Summary
# ===================================================================

def summarize(ratios: FinancialRatios) -> str:
    """Deterministic one-paragraph description of the ratios."""
    parts: List[str] = []

    if ratios.pe_ratio is not None:
        if ratios.pe_ratio < 15:
            parts.append("Valuation looks reasonable with a low P/E")
        elif ratios.pe_ratio > 25:
            parts.append("Valuation is stretched with a high P/E")
        else:
            parts.append("P/E sits in a fair range")

    if ratios.roe is not None:
        if ratios.roe > 15:
            parts.append("return on equity is strong")
        elif ratios.roe < 8:
            parts.append("return on equity is weak")
        else:
            parts.append("return on equity is healthy")

    if ratios.revenue_growth is not None:
        if ratios.revenue_growth > 15:
            parts.append("revenue is growing fast")
        elif ratios.revenue_growth < 0:
            parts.append("revenue is declining")
        else:
            parts.append("revenue is growing steadily")

    if ratios.debt_to_equity is not None:
        if ratios.debt_to_equity > 1:
            parts.append("leverage is high and worth watching")
        elif ratios.debt_to_equity < 0.3:
            parts.append("the balance sheet carries little debt")
        else:
            parts.append("debt is at a moderate level")

    if not parts:
        return "Insufficient fundamental data for a detailed assessment."
    text = "; ".join(parts)
    return text[0].upper() + text[1:] + "."


class FundamentalAnalyzer:
    """Ratios, score, industry comparison and summary in one call."""

    def __init__(self, industry_averages: Optional[Dict[str, float]] = None):
        self.industry_averages = industry_averages

    def analyze(self, reports: Sequence[FundamentalReport], current_price: Optional[float] = None) -> dict:
        ratios = calculate_ratios(reports, current_price)
        comparison = compare_with_industry(ratios, self.industry_averages)
        score = fundamental_score(ratios, comparison)
        logger.info("Fundamental score %.3f from %d reports", score, len(reports))
        return {
            "ratios": ratios,
            "comparison": comparison,
            "score": score,
            "summary": summarize(ratios),
        }

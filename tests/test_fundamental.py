"""Tests for stockpilot.analysis.fundamental and the statement adapter."""

from datetime import date

import pytest

from stockpilot.analysis.fundamental import (
    FundamentalAnalyzer,
    calculate_ratios,
    compare_with_industry,
    fundamental_score,
    ratio_scores,
    summarize,
)
from stockpilot.data_sources.fundamentals import statements_to_reports
from stockpilot.errors import InvalidInputError
from stockpilot.models import FinancialRatios, FundamentalReport


# ---------------------------------------------------------------------------
# Ratio calculation
# ---------------------------------------------------------------------------

class TestCalculateRatios:

    def test_latest_report_chosen_by_date(self, quarterly_reports):
        ratios = calculate_ratios(quarterly_reports, current_price=250.0)
        # Latest is Q1 2024: EPS 25, equity 400M over 1M shares
        assert ratios.pe_ratio == pytest.approx(10.0)
        assert ratios.pb_ratio == pytest.approx(250.0 / 400.0)
        assert ratios.roe == pytest.approx(25 / 400 * 100)
        assert ratios.debt_to_equity == pytest.approx(0.25)
        assert ratios.profit_margin == pytest.approx(25 / 120 * 100)

    def test_growth_against_same_quarter_last_year(self, quarterly_reports):
        ratios = calculate_ratios(quarterly_reports, current_price=250.0)
        assert ratios.revenue_growth == pytest.approx(20.0)
        assert ratios.earnings_growth == pytest.approx(25.0)

    def test_growth_falls_back_to_previous_report(self):
        reports = [
            FundamentalReport(date(2023, 6, 30), 2023, 2, revenue=110.0, net_income=11.0),
            FundamentalReport(date(2023, 3, 31), 2023, 1, revenue=100.0, net_income=10.0),
        ]
        ratios = calculate_ratios(reports)
        assert ratios.revenue_growth == pytest.approx(10.0)
        assert ratios.earnings_growth == pytest.approx(10.0)

    def test_restated_report_replaces_original(self):
        reports = [
            FundamentalReport(date(2023, 3, 31), 2023, 1, revenue=100.0, net_income=10.0),
            FundamentalReport(date(2023, 6, 30), 2023, 2, revenue=105.0, net_income=10.5),
            FundamentalReport(date(2023, 6, 30), 2023, 2, revenue=110.0, net_income=12.0),
        ]
        ratios = calculate_ratios(reports)
        assert ratios.revenue_growth == pytest.approx(10.0)
        assert ratios.earnings_growth == pytest.approx(20.0)
        assert ratios.profit_margin == pytest.approx(12 / 110 * 100)

    def test_growth_from_negative_base_uses_absolute_value(self):
        reports = [
            FundamentalReport(date(2023, 12, 31), 2023, revenue=100.0, net_income=5.0),
            FundamentalReport(date(2022, 12, 31), 2022, revenue=100.0, net_income=-10.0),
        ]
        assert calculate_ratios(reports).earnings_growth == pytest.approx(150.0)

    def test_single_report_has_no_growth(self, quarterly_reports):
        ratios = calculate_ratios(quarterly_reports[:1], current_price=100.0)
        assert ratios.revenue_growth is None
        assert ratios.earnings_growth is None

    def test_missing_inputs_are_none(self):
        report = FundamentalReport(date(2023, 12, 31), 2023, revenue=0.0, net_income=5.0)
        ratios = calculate_ratios([report], current_price=50.0)
        assert ratios.pe_ratio is None
        assert ratios.pb_ratio is None
        assert ratios.roe is None
        assert ratios.profit_margin is None   # zero revenue
        assert ratios.debt_to_equity is None

    def test_negative_eps_has_no_pe(self):
        report = FundamentalReport(date(2023, 12, 31), 2023, eps=-1.5)
        assert calculate_ratios([report], current_price=30.0).pe_ratio is None

    def test_no_price_means_no_valuation_ratios(self, quarterly_reports):
        ratios = calculate_ratios(quarterly_reports)
        assert ratios.pe_ratio is None
        assert ratios.pb_ratio is None
        assert ratios.roe is not None

    def test_no_reports(self):
        assert calculate_ratios([]).available() == {}

    @pytest.mark.parametrize("price", [0.0, -5.0, float("nan")])
    def test_invalid_price_raises(self, quarterly_reports, price):
        with pytest.raises(InvalidInputError) as exc:
            calculate_ratios(quarterly_reports, current_price=price)
        assert exc.value.field == "current_price"


# ---------------------------------------------------------------------------
# Scoring
# ---------------------------------------------------------------------------

class TestFundamentalScore:

    def test_no_data_is_neutral(self):
        assert fundamental_score(FinancialRatios()) == 0.5

    def test_strong_company_scores_high(self):
        ratios = FinancialRatios(
            pe_ratio=8.0, pb_ratio=0.8, roe=22.0, debt_to_equity=0.1,
            profit_margin=25.0, revenue_growth=30.0, earnings_growth=40.0,
        )
        assert fundamental_score(ratios) == pytest.approx(1.0)

    def test_weak_company_scores_low(self):
        ratios = FinancialRatios(
            pe_ratio=60.0, pb_ratio=8.0, roe=2.0, debt_to_equity=2.5,
            profit_margin=-5.0, revenue_growth=-10.0, earnings_growth=-30.0,
        )
        assert fundamental_score(ratios) < 0.3

    def test_partial_data_pulled_toward_neutral(self):
        full = FinancialRatios(roe=22.0, profit_margin=25.0, pe_ratio=8.0)
        partial = FinancialRatios(roe=22.0)
        assert 0.5 < fundamental_score(partial) < fundamental_score(full) < 1.0

    def test_bucket_scores(self):
        scores = ratio_scores(FinancialRatios(pe_ratio=15.0, roe=12.0, debt_to_equity=0.5))
        assert scores == {"pe_ratio": 0.7, "roe": 0.8, "debt_to_equity": 0.7}

    def test_comparison_adjustment_is_applied_and_clamped(self):
        ratios = FinancialRatios(pe_ratio=8.0, pb_ratio=0.8, roe=22.0, debt_to_equity=0.1,
                                 profit_margin=25.0, revenue_growth=30.0, earnings_growth=40.0)
        assert fundamental_score(ratios, {"adjustment": 0.1}) == 1.0
        assert fundamental_score(FinancialRatios(), {"adjustment": -0.05}) == pytest.approx(0.45)


class TestIndustryComparison:

    def test_average_sits_at_50th_percentile(self):
        result = compare_with_industry(FinancialRatios(pe_ratio=15.5))
        assert result["percentiles"]["pe_ratio"] == pytest.approx(50.0)
        assert result["adjustment"] == 0.0

    def test_high_roe_adds_adjustment(self):
        result = compare_with_industry(FinancialRatios(pe_ratio=15.5, roe=30.0))
        assert result["percentiles"]["roe"] > 75
        assert result["adjustment"] == pytest.approx(0.05)

    def test_expensive_pe_and_low_roe_subtract_adjustment(self):
        result = compare_with_industry(FinancialRatios(pe_ratio=40.0, roe=-5.0))
        assert result["percentiles"]["pe_ratio"] > 75
        assert result["percentiles"]["roe"] < 25
        assert result["adjustment"] == pytest.approx(-0.10)

    def test_half_average_pe_is_25th_percentile(self):
        result = compare_with_industry(FinancialRatios(pe_ratio=7.75))
        assert result["percentiles"]["pe_ratio"] == pytest.approx(25.0)
        assert result["adjustment"] == 0.0

    def test_cheap_pe_adds_adjustment(self):
        result = compare_with_industry(FinancialRatios(pe_ratio=5.0))
        assert result["percentiles"]["pe_ratio"] < 25
        assert result["adjustment"] == pytest.approx(0.05)

    def test_cheap_pe_reaches_score(self, quarterly_reports):
        # latest EPS 25, so a price of 100 is a P/E of 4
        result = FundamentalAnalyzer().analyze(quarterly_reports, 100.0)
        assert result["ratios"].pe_ratio == pytest.approx(4.0)
        assert result["comparison"]["adjustment"] >= 0.05

    def test_sign_change_uses_linear_distance(self):
        result = compare_with_industry(FinancialRatios(revenue_growth=-5.8))
        assert result["percentiles"]["revenue_growth"] == pytest.approx(0.0)

    def test_percentiles_clamped(self):
        result = compare_with_industry(FinancialRatios(roe=500.0))
        assert result["percentiles"]["roe"] == 100.0

    def test_custom_averages(self):
        result = compare_with_industry(FinancialRatios(pe_ratio=30.0), {"pe_ratio": 30.0})
        assert result["percentiles"] == {"pe_ratio": 50.0}


class TestSummary:

    def test_insufficient_data(self):
        assert summarize(FinancialRatios()) == "Insufficient fundamental data for a detailed assessment."

    def test_mentions_each_available_ratio(self):
        text = summarize(FinancialRatios(pe_ratio=30.0, roe=20.0, revenue_growth=-3.0, debt_to_equity=1.5))
        assert text.startswith("Valuation is stretched")
        assert "return on equity is strong" in text
        assert "revenue is declining" in text
        assert "leverage is high" in text
        assert text.endswith(".")


class TestFundamentalAnalyzer:

    def test_analyze_returns_all_parts(self, quarterly_reports):
        result = FundamentalAnalyzer().analyze(quarterly_reports, 250.0)
        assert set(result) == {"ratios", "comparison", "score", "summary"}
        assert 0.0 <= result["score"] <= 1.0


# ---------------------------------------------------------------------------
# Statement adapter
# ---------------------------------------------------------------------------

class TestStatementsToReports:

    def test_one_report_per_period(self, sample_income_statement, sample_balance_sheet, sample_cash_flow):
        reports = statements_to_reports(
            sample_income_statement, sample_balance_sheet, sample_cash_flow, quarterly=False,
        )
        assert [r.year for r in reports] == [2021, 2022, 2023]
        latest = reports[-1]
        assert latest.revenue == 120_000_000
        assert latest.total_liabilities == 90_000_000
        assert latest.total_equity == 110_000_000
        assert latest.operating_cash_flow == 28_000_000
        assert latest.quarter is None

    def test_eps_derived_from_shares(self, sample_income_statement, sample_balance_sheet, sample_cash_flow):
        reports = statements_to_reports(
            sample_income_statement, sample_balance_sheet, sample_cash_flow, quarterly=False,
        )
        assert reports[-1].eps == pytest.approx(2.054)

    def test_quarter_from_period_end(self, sample_income_statement):
        reports = statements_to_reports(sample_income_statement, None, None, quarterly=True)
        assert all(r.quarter == 4 for r in reports)
        assert reports[-1].total_equity is None

    def test_feeds_ratio_engine(self, sample_income_statement, sample_balance_sheet, sample_cash_flow):
        reports = statements_to_reports(
            sample_income_statement, sample_balance_sheet, sample_cash_flow, quarterly=False,
        )
        ratios = calculate_ratios(reports, current_price=30.0)
        assert ratios.revenue_growth == pytest.approx(10 / 110 * 100)
        assert ratios.debt_to_equity == pytest.approx(90 / 110)
        assert ratios.pb_ratio == pytest.approx(30.0 / 11.0)

    def test_empty_statements(self):
        assert statements_to_reports(None, None, None) == []

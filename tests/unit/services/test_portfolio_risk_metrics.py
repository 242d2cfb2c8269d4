"""
Tests for PortfolioRiskCalculator.

Tests cover:
- Parametric and historical VaR, expected shortfall
- Position VaR method selection
- Herfindahl concentration and liquidity risk
- Portfolio beta and correlation matrix availability
"""

import math
from datetime import date, timedelta

import numpy as np
import pytest
from scipy import stats

from quant_engine.models.portfolio import PortfolioHistoryPoint, PortfolioPosition
from quant_engine.services.portfolio_risk_metrics import (
    calculate_returns,
    get_portfolio_risk_calculator,
    z_score,
)

pytestmark = pytest.mark.unit


def position(symbol, quantity=100, price=50.0, **kwargs):
    return PortfolioPosition(
        symbol=symbol,
        quantity=quantity,
        average_cost=price,
        current_price=price,
        **kwargs,
    )


def history_with_volatility(daily_vol, n=40, seed=7):
    rng = np.random.default_rng(seed)
    values = 100_000 * np.cumprod(1 + rng.normal(0.0, daily_vol, n))
    return [
        PortfolioHistoryPoint(day=date(2024, 1, 1) + timedelta(days=i), value=float(v))
        for i, v in enumerate(values)
    ]


class TestReturns:
    def test_simple_returns(self):
        assert calculate_returns([100.0, 110.0, 99.0]) == pytest.approx([0.1, -0.1])

    def test_zero_value_does_not_divide(self):
        returns = calculate_returns([0.0, 10.0, 20.0])
        assert returns[0] == 0.0
        assert returns[1] == pytest.approx(1.0)

    def test_too_short(self):
        assert calculate_returns([100.0]).size == 0

    def test_z_score(self):
        assert z_score(0.95) == pytest.approx(-1.6449, abs=1e-4)


class TestValueAtRisk:
    def test_parametric_var_formula(self, risk_calculator):
        returns = np.array([0.01, -0.02, 0.015, -0.005, 0.0])
        var = risk_calculator.parametric_var(1_000_000.0, returns, 0.95)
        assert var == pytest.approx(1_000_000.0 * 1.6449 * np.std(returns), rel=1e-4)

    def test_var_monotone_in_volatility(self, risk_calculator):
        base = np.array([0.01, -0.01, 0.02, -0.02, 0.005])
        low = risk_calculator.parametric_var(100_000.0, base, 0.95)
        high = risk_calculator.parametric_var(100_000.0, base * 3, 0.95)
        assert high > low

    def test_var_increases_with_confidence(self, risk_calculator):
        returns = np.array([0.01, -0.01, 0.02, -0.02])
        assert risk_calculator.parametric_var(1e5, returns, 0.99) > risk_calculator.parametric_var(
            1e5, returns, 0.95
        )

    def test_no_returns_no_var(self, risk_calculator):
        assert risk_calculator.parametric_var(1e5, np.empty(0), 0.95) == 0.0
        assert risk_calculator.expected_shortfall(1e5, np.empty(0), 0.95) == 0.0

    def test_expected_shortfall_exceeds_var(self, risk_calculator):
        returns = np.array([0.01, -0.02, 0.015, -0.005])
        var = risk_calculator.parametric_var(1e5, returns, 0.95)
        es = risk_calculator.expected_shortfall(1e5, returns, 0.95)
        assert es > var
        assert es == pytest.approx(stats.norm.pdf(1.6449) / 0.05 * np.std(returns) * 1e5, rel=1e-3)

    def test_historical_var_needs_enough_history(self, risk_calculator):
        short = np.full(10, -0.01)
        assert risk_calculator.historical_var(1e5, short, 0.95) is None

        returns = np.linspace(-0.05, 0.05, 100)
        var = risk_calculator.historical_var(1e5, returns, 0.95)
        assert var == pytest.approx(abs(np.sort(returns)[5]) * 1e5)

    def test_risk_metrics_monotone_in_history_volatility(self, risk_calculator):
        positions = [position("AAPL"), position("MSFT")]
        calm = risk_calculator.calculate_risk_metrics(positions, history_with_volatility(0.005))
        wild = risk_calculator.calculate_risk_metrics(positions, history_with_volatility(0.03))

        assert wild.portfolio_var > calm.portfolio_var
        assert wild.var_method == "parametric"
        assert wild.historical_var is not None

    def test_risk_metrics_without_history(self, risk_calculator):
        metrics = risk_calculator.calculate_risk_metrics([position("AAPL")], [])
        assert metrics.portfolio_var == 0.0
        assert metrics.var_method == "unavailable"
        assert metrics.historical_var is None
        assert metrics.confidence_level == 0.95


class TestPositionVar:
    def test_assumed_volatility(self, risk_calculator):
        var, method = risk_calculator.calculate_position_var(position("AAPL"), 0.95)
        assert method == "assumed_volatility"
        assert var == pytest.approx(5000.0 * 1.6449 * 0.20 / math.sqrt(252), rel=1e-4)

    def test_supplied_volatility(self, risk_calculator):
        var, method = risk_calculator.calculate_position_var(
            position("AAPL", volatility=0.40), 0.95
        )
        assert method == "supplied_volatility"
        assert var == pytest.approx(5000.0 * 1.6449 * 0.40 / math.sqrt(252), rel=1e-4)

    def test_historical_prices_preferred(self, risk_calculator):
        prices = [50.0, 51.0, 49.5, 50.5, 52.0]
        var, method = risk_calculator.calculate_position_var(
            position("AAPL", volatility=0.40), 0.95, historical_prices=prices
        )
        assert method == "historical"
        assert var == pytest.approx(5000.0 * 1.6449 * np.std(calculate_returns(prices)), rel=1e-4)

    def test_per_position_methods_reported(self, risk_calculator):
        metrics = risk_calculator.calculate_risk_metrics(
            [position("AAPL"), position("MSFT", volatility=0.3)],
            [],
            position_histories={"AAPL": [50.0, 50.5, 49.0, 51.0]},
        )
        assert metrics.position_var_method == {
            "AAPL": "historical",
            "MSFT": "supplied_volatility",
        }


class TestConcentrationAndLiquidity:
    def test_equal_positions_with_empty_slot(self, risk_calculator):
        positions = [position(s) for s in ("A", "B", "C", "D")]
        positions.append(position("E", quantity=0))
        assert risk_calculator.calculate_concentration_risk(positions) == pytest.approx(0.25)

    def test_single_position_is_fully_concentrated(self, risk_calculator):
        assert risk_calculator.calculate_concentration_risk([position("A")]) == pytest.approx(1.0)

    def test_empty_portfolio(self, risk_calculator):
        assert risk_calculator.calculate_concentration_risk([]) == 0.0
        assert risk_calculator.calculate_liquidity_risk([]) == 0.0

    def test_liquidity_counts_positions_above_threshold(self, risk_calculator):
        positions = [position(f"S{i}", quantity=1) for i in range(30)]
        positions.append(position("BIG", quantity=100))
        # BIG holds 100/130 of the value; every S position is under 5%
        assert risk_calculator.calculate_liquidity_risk(positions) == pytest.approx(1 / 31)


class TestBetaAndCorrelation:
    def test_beta_requires_every_position(self, risk_calculator):
        assert risk_calculator.calculate_portfolio_beta(
            [position("A", beta=1.2), position("B")]
        ) is None

    def test_value_weighted_beta(self, risk_calculator):
        beta = risk_calculator.calculate_portfolio_beta(
            [position("A", quantity=300, beta=1.5), position("B", quantity=100, beta=0.5)]
        )
        assert beta == pytest.approx(0.75 * 1.5 + 0.25 * 0.5)

    def test_correlation_absent_without_histories(self, risk_calculator):
        assert risk_calculator.calculate_correlation_matrix(["A", "B"], None) is None
        assert (
            risk_calculator.calculate_correlation_matrix(["A", "B"], {"A": [1.0, 2.0, 3.0]})
            is None
        )

    def test_correlation_matrix(self, risk_calculator):
        histories = {
            "A": [100.0, 101.0, 99.0, 102.0, 103.0],
            "B": [50.0, 50.5, 49.5, 51.0, 51.5],
            "C": [20.0, 19.8, 20.2, 19.6, 19.4],
        }
        matrix = risk_calculator.calculate_correlation_matrix(["A", "B", "C"], histories)

        assert matrix["A"]["A"] == 1.0
        assert matrix["A"]["B"] == pytest.approx(1.0, abs=1e-6)
        assert matrix["A"]["C"] < 0
        assert matrix["B"]["C"] == pytest.approx(matrix["C"]["B"])

    def test_global_calculator(self):
        assert get_portfolio_risk_calculator() is get_portfolio_risk_calculator()

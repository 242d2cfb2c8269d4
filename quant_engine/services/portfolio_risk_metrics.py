"""
Portfolio risk metrics: Value at Risk, concentration and liquidity.

This module provides the risk primitives shared by portfolio analytics and
the risk engine. VaR is parametric (normal returns) with an optional
historical estimate when enough history exists.
"""

import logging
import math
from collections.abc import Mapping, Sequence

import numpy as np
from scipy import stats

from ..core.config import settings
from ..models.portfolio import PortfolioHistoryPoint, PortfolioPosition, RiskMetrics

logger = logging.getLogger(__name__)

MIN_HISTORICAL_OBSERVATIONS = 30


def calculate_returns(values: Sequence[float]) -> np.ndarray:
    """Simple period returns of a value series."""
    series = np.asarray(values, dtype=float)
    if series.size < 2:
        return np.empty(0)
    previous = series[:-1]
    with np.errstate(divide="ignore", invalid="ignore"):
        returns = np.where(previous != 0, (series[1:] - previous) / previous, 0.0)
    return returns


def history_returns(history: Sequence[PortfolioHistoryPoint]) -> np.ndarray:
    return calculate_returns([point.value for point in history])


def z_score(confidence_level: float) -> float:
    """Lower-tail z-score for a VaR confidence level (negative for c > 0.5)."""
    return float(stats.norm.ppf(1 - confidence_level))


class PortfolioRiskCalculator:
    """
    Calculate portfolio risk metrics.

    Provides:
    - Parametric Value at Risk and expected shortfall
    - Historical VaR when enough observations exist
    - Per-position VaR
    - Herfindahl concentration and liquidity risk
    - Correlation matrix from supplied price histories
    """

    def __init__(self, trading_days: int | None = None):
        self.trading_days = trading_days or settings.TRADING_DAYS_PER_YEAR

    def calculate_risk_metrics(
        self,
        positions: Sequence[PortfolioPosition],
        history: Sequence[PortfolioHistoryPoint],
        confidence_level: float | None = None,
        position_histories: Mapping[str, Sequence[float]] | None = None,
    ) -> RiskMetrics:
        """
        Calculate risk metrics for a set of positions.

        Args:
            positions: Current position snapshots
            history: Chronological portfolio value history
            confidence_level: VaR confidence level (default from settings)
            position_histories: Optional per-symbol price histories

        Returns:
            RiskMetrics snapshot
        """
        confidence = confidence_level or settings.VAR_CONFIDENCE
        returns = history_returns(history)
        portfolio_value = self.total_value(positions)

        if returns.size == 0:
            logger.info("No return history, portfolio VaR unavailable")

        position_var: dict[str, float] = {}
        position_var_method: dict[str, str] = {}
        for position in positions:
            prices = (position_histories or {}).get(position.symbol)
            var_amount, method = self.calculate_position_var(
                position, confidence, historical_prices=prices
            )
            position_var[position.symbol] = var_amount
            position_var_method[position.symbol] = method

        return RiskMetrics(
            confidence_level=confidence,
            portfolio_var=self.parametric_var(portfolio_value, returns, confidence),
            expected_shortfall=self.expected_shortfall(
                portfolio_value, returns, confidence
            ),
            historical_var=self.historical_var(portfolio_value, returns, confidence),
            var_method="parametric" if returns.size else "unavailable",
            position_var=position_var,
            position_var_method=position_var_method,
            beta=self.calculate_portfolio_beta(positions),
            correlation_matrix=self.calculate_correlation_matrix(
                [p.symbol for p in positions], position_histories
            ),
            concentration_risk=self.calculate_concentration_risk(positions),
            liquidity_risk=self.calculate_liquidity_risk(positions),
        )

    @staticmethod
    def total_value(positions: Sequence[PortfolioPosition]) -> float:
        return sum(p.total_value for p in positions)

    def parametric_var(
        self, portfolio_value: float, returns: np.ndarray, confidence_level: float
    ) -> float:
        """VaR = value * |z| * stdev(returns), assuming normal returns."""
        if returns.size == 0:
            return 0.0
        std_dev = float(np.std(returns))
        return abs(portfolio_value) * abs(z_score(confidence_level)) * std_dev

    def expected_shortfall(
        self, portfolio_value: float, returns: np.ndarray, confidence_level: float
    ) -> float:
        """Expected shortfall for the normal distribution."""
        if returns.size == 0:
            return 0.0
        std_dev = float(np.std(returns))
        z = z_score(confidence_level)
        return (
            (stats.norm.pdf(z) / (1 - confidence_level)) * std_dev * abs(portfolio_value)
        )

    def historical_var(
        self, portfolio_value: float, returns: np.ndarray, confidence_level: float
    ) -> float | None:
        """Historical-simulation VaR, None without enough observations."""
        if returns.size < MIN_HISTORICAL_OBSERVATIONS:
            return None
        sorted_returns = np.sort(returns)
        var_index = int((1 - confidence_level) * len(sorted_returns))
        return abs(float(sorted_returns[var_index]) * portfolio_value)

    def calculate_position_var(
        self,
        position: PortfolioPosition,
        confidence_level: float = 0.95,
        historical_prices: Sequence[float] | None = None,
    ) -> tuple[float, str]:
        """
        One-day VaR for a single position.

        Uses the position's own price history when available, then an
        externally supplied volatility, then the configured annual
        volatility assumption.
        """
        position_value = abs(position.total_value)
        z = abs(z_score(confidence_level))

        if historical_prices is not None and len(historical_prices) > 2:
            daily_vol = float(np.std(calculate_returns(historical_prices)))
            method = "historical"
        elif position.volatility is not None:
            daily_vol = position.volatility / math.sqrt(self.trading_days)
            method = "supplied_volatility"
        else:
            daily_vol = settings.DEFAULT_POSITION_VOLATILITY / math.sqrt(
                self.trading_days
            )
            method = "assumed_volatility"

        return position_value * z * daily_vol, method

    def calculate_portfolio_beta(
        self, positions: Sequence[PortfolioPosition]
    ) -> float | None:
        """Value-weighted beta, None unless every position carries a beta."""
        invested = [p for p in positions if p.total_value != 0]
        if not invested or any(p.beta is None for p in invested):
            return None
        total = sum(abs(p.total_value) for p in invested)
        return sum(abs(p.total_value) / total * p.beta for p in invested)

    def position_weights(self, positions: Sequence[PortfolioPosition]) -> dict[str, float]:
        """Fraction of invested value per symbol, empty positions ignored."""
        values: dict[str, float] = {}
        for position in positions:
            value = abs(position.total_value)
            if value > 0:
                values[position.symbol] = values.get(position.symbol, 0.0) + value
        total = sum(values.values())
        if total <= 0:
            return {}
        return {symbol: value / total for symbol, value in values.items()}

    def calculate_concentration_risk(
        self, positions: Sequence[PortfolioPosition]
    ) -> float:
        """Herfindahl-Hirschman index of position weights, in [1/n, 1]."""
        weights = self.position_weights(positions)
        return sum(w**2 for w in weights.values())

    def calculate_liquidity_risk(
        self,
        positions: Sequence[PortfolioPosition],
        threshold: float | None = None,
    ) -> float:
        """Share of positions larger than the threshold fraction of the portfolio."""
        threshold = settings.LIQUIDITY_POSITION_THRESHOLD if threshold is None else threshold
        weights = self.position_weights(positions)
        if not weights:
            return 0.0
        large_positions = [w for w in weights.values() if w > threshold]
        return len(large_positions) / len(weights)

    def calculate_correlation_matrix(
        self,
        symbols: Sequence[str],
        historical_data: Mapping[str, Sequence[float]] | None,
    ) -> dict[str, dict[str, float]] | None:
        """Correlation of returns, None unless every symbol has a history."""
        if not historical_data or len(symbols) < 2:
            return None

        returns_data = {}
        for symbol in symbols:
            prices = historical_data.get(symbol)
            if prices is None or len(prices) < 3:
                return None
            returns_data[symbol] = calculate_returns(prices)

        min_length = min(len(r) for r in returns_data.values())
        returns_matrix = np.vstack([returns_data[s][-min_length:] for s in symbols])

        with np.errstate(divide="ignore", invalid="ignore"):
            matrix = np.nan_to_num(np.corrcoef(returns_matrix))
        np.fill_diagonal(matrix, 1.0)

        return {
            row_symbol: {
                col_symbol: float(matrix[i, j]) for j, col_symbol in enumerate(symbols)
            }
            for i, row_symbol in enumerate(symbols)
        }


# Global portfolio risk calculator
portfolio_risk_calculator = PortfolioRiskCalculator()


def get_portfolio_risk_calculator() -> PortfolioRiskCalculator:
    """Get the global portfolio risk calculator."""
    return portfolio_risk_calculator

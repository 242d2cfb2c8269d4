"""
Portfolio performance and risk analytics.

All calculations are pure functions of the supplied snapshots: positions
from the position store, a chronological value history, transactions and an
optional benchmark history. Nothing is persisted here.
"""

import logging
import math
from collections import defaultdict, deque
from collections.abc import Mapping, Sequence

import numpy as np

from ..core.config import settings
from ..models.portfolio import (
    AssetAllocation,
    PerformanceMetrics,
    PortfolioAnalytics,
    PortfolioHistoryPoint,
    PortfolioPosition,
    PortfolioSummary,
    RiskMetrics,
    SectorAllocation,
    TradeMatchingPolicy,
    TradeRecord,
    Transaction,
    TransactionType,
)
from .portfolio_risk_metrics import (
    PortfolioRiskCalculator,
    calculate_returns,
    get_portfolio_risk_calculator,
)

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86400


class PortfolioAnalyticsService:
    """Performance, allocation and risk statistics for a portfolio."""

    def __init__(
        self,
        risk_calculator: PortfolioRiskCalculator | None = None,
        risk_free_rate: float | None = None,
        trading_days: int | None = None,
    ):
        self.risk_calculator = risk_calculator or get_portfolio_risk_calculator()
        self.risk_free_rate = (
            settings.ANALYTICS_RISK_FREE_RATE if risk_free_rate is None else risk_free_rate
        )
        self.trading_days = trading_days or settings.TRADING_DAYS_PER_YEAR

    # ------------------------------------------------------------------
    # Summary and allocation
    # ------------------------------------------------------------------

    def calculate_portfolio_summary(
        self,
        positions: Sequence[PortfolioPosition],
        cash_balance: float | None = None,
    ) -> PortfolioSummary:
        """
        Totals across positions.

        Daily P&L is only reported when every position carries a previous
        close; otherwise it is None rather than an estimate.
        """
        total_value = sum(p.total_value for p in positions)
        total_cost = sum(p.total_cost for p in positions)
        total_pnl = sum(p.unrealized_pnl for p in positions)
        realized_pnl = sum(p.realized_pnl for p in positions)

        daily_pnl = None
        daily_pnl_percent = None
        daily_changes = [p.daily_pnl for p in positions]
        if positions and all(change is not None for change in daily_changes):
            daily_pnl = sum(daily_changes)
            previous_value = total_value - daily_pnl
            daily_pnl_percent = (
                daily_pnl / previous_value * 100 if previous_value > 0 else 0.0
            )

        return PortfolioSummary(
            total_value=total_value,
            total_cost=total_cost,
            total_pnl=total_pnl,
            total_pnl_percent=total_pnl / total_cost * 100 if total_cost > 0 else 0.0,
            daily_pnl=daily_pnl,
            daily_pnl_percent=daily_pnl_percent,
            realized_pnl=realized_pnl,
            total_return=total_pnl + realized_pnl,
            total_return_percent=(
                (total_pnl + realized_pnl) / total_cost * 100 if total_cost > 0 else 0.0
            ),
            cash_balance=cash_balance,
            positions_count=len(positions),
        )

    def calculate_asset_allocation(
        self, positions: Sequence[PortfolioPosition], cash_balance: float = 0.0
    ) -> AssetAllocation:
        stocks = sum(p.total_value for p in positions)
        return AssetAllocation(stocks=stocks, cash=cash_balance, total=stocks + cash_balance)

    def calculate_sector_allocation(
        self, positions: Sequence[PortfolioPosition]
    ) -> list[SectorAllocation]:
        grouped: dict[str, list[PortfolioPosition]] = defaultdict(list)
        for position in positions:
            grouped[position.sector].append(position)

        total_value = sum(p.total_value for p in positions)
        allocations = []

        for sector, members in grouped.items():
            value = sum(p.total_value for p in members)
            changes = [p.daily_pnl for p in members]
            daily_change = sum(changes) if all(c is not None for c in changes) else None
            daily_change_percent = None
            if daily_change is not None and value - daily_change > 0:
                daily_change_percent = daily_change / (value - daily_change) * 100

            allocations.append(
                SectorAllocation(
                    sector=sector,
                    value=value,
                    weight=value / total_value * 100 if total_value > 0 else 0.0,
                    positions_count=len(members),
                    daily_change=daily_change,
                    daily_change_percent=daily_change_percent,
                )
            )

        return sorted(allocations, key=lambda a: a.value, reverse=True)

    # ------------------------------------------------------------------
    # Performance
    # ------------------------------------------------------------------

    def calculate_performance_metrics(
        self,
        history: Sequence[PortfolioHistoryPoint],
        transactions: Sequence[Transaction],
        benchmark_history: Sequence[PortfolioHistoryPoint] | None = None,
        matching: TradeMatchingPolicy = TradeMatchingPolicy.FIRST_AVAILABLE,
    ) -> PerformanceMetrics:
        """
        Calculate return, risk-adjusted and trade statistics.

        Args:
            history: Portfolio value history (sorted by day internally)
            transactions: Executed transactions used for trade statistics
            benchmark_history: Optional benchmark value history
            matching: Buy/sell matching policy for trade statistics

        Returns:
            PerformanceMetrics; return statistics are zero with fewer than
            two history points
        """
        trade_stats = self._trade_statistics(self.extract_trades(transactions, matching))
        trade_stats["trade_matching"] = matching

        ordered = sorted(history, key=lambda point: point.day)
        if len(ordered) < 2:
            return PerformanceMetrics(**trade_stats)

        values = [point.value for point in ordered]
        returns = calculate_returns(values)

        first, last = values[0], values[-1]
        total_return_fraction = last / first - 1 if first > 0 else 0.0
        annualized_return = self.annualized_return(total_return_fraction, len(ordered))
        volatility = self.volatility(returns)
        max_drawdown = self.max_drawdown(values)

        metrics = dict(
            total_return=last - first,
            total_return_percent=total_return_fraction * 100,
            annualized_return=annualized_return,
            volatility=volatility,
            sharpe_ratio=self.sharpe_ratio(returns),
            sortino_ratio=self.sortino_ratio(returns),
            calmar_ratio=annualized_return / max_drawdown if max_drawdown > 0 else 0.0,
            max_drawdown=max_drawdown,
        )

        if benchmark_history:
            metrics.update(self._benchmark_statistics(ordered, benchmark_history))

        return PerformanceMetrics(**metrics, **trade_stats)

    def annualized_return(self, total_return: float, periods: int) -> float:
        """(1 + R)^(trading_days / periods) - 1."""
        if periods <= 0:
            return 0.0
        growth = 1 + total_return
        if growth <= 0:
            return -1.0
        return growth ** (self.trading_days / periods) - 1

    def volatility(self, returns: np.ndarray) -> float:
        """Annualized standard deviation of returns."""
        if returns.size == 0:
            return 0.0
        return float(np.std(returns) * math.sqrt(self.trading_days))

    def sharpe_ratio(self, returns: np.ndarray) -> float:
        volatility = self.volatility(returns)
        if volatility <= 0:
            return 0.0
        annual_mean = float(np.mean(returns)) * self.trading_days
        return (annual_mean - self.risk_free_rate) / volatility

    def sortino_ratio(self, returns: np.ndarray) -> float:
        """Excess return over downside deviation below the per-period risk-free target."""
        if returns.size == 0:
            return 0.0
        target = self.risk_free_rate / self.trading_days
        downside = returns[returns < target]
        if downside.size == 0:
            return math.inf
        downside_deviation = math.sqrt(
            float(np.mean((downside - target) ** 2)) * self.trading_days
        )
        if downside_deviation <= 0:
            return 0.0
        annual_mean = float(np.mean(returns)) * self.trading_days
        return (annual_mean - self.risk_free_rate) / downside_deviation

    @staticmethod
    def max_drawdown(values: Sequence[float]) -> float:
        """Largest peak-to-trough decline as a fraction of the peak."""
        peak = -math.inf
        max_drawdown = 0.0
        for value in values:
            peak = max(peak, value)
            if peak > 0:
                max_drawdown = max(max_drawdown, (peak - value) / peak)
        return max_drawdown

    def _benchmark_statistics(
        self,
        history: Sequence[PortfolioHistoryPoint],
        benchmark_history: Sequence[PortfolioHistoryPoint],
    ) -> dict[str, float | None]:
        """Beta, alpha, information ratio, tracking error and capture ratios."""
        benchmark_by_day = {point.day: point.value for point in benchmark_history}
        common = [p for p in history if p.day in benchmark_by_day]
        if len(common) < 3:
            logger.warning(
                f"Only {len(common)} overlapping benchmark days, skipping relative stats"
            )
            return {}

        portfolio_returns = calculate_returns([p.value for p in common])
        benchmark_returns = calculate_returns([benchmark_by_day[p.day] for p in common])

        benchmark_variance = float(np.var(benchmark_returns))
        covariance = float(
            np.mean(
                (portfolio_returns - portfolio_returns.mean())
                * (benchmark_returns - benchmark_returns.mean())
            )
        )
        beta = covariance / benchmark_variance if benchmark_variance > 0 else None

        annual_portfolio = float(np.mean(portfolio_returns)) * self.trading_days
        annual_benchmark = float(np.mean(benchmark_returns)) * self.trading_days
        alpha = None
        if beta is not None:
            alpha = annual_portfolio - (
                self.risk_free_rate + beta * (annual_benchmark - self.risk_free_rate)
            )

        excess = portfolio_returns - benchmark_returns
        tracking_error = float(np.std(excess) * math.sqrt(self.trading_days))
        information_ratio = (
            float(np.mean(excess)) * self.trading_days / tracking_error
            if tracking_error > 0
            else 0.0
        )

        up = benchmark_returns > 0
        down = benchmark_returns < 0
        up_capture = (
            float(portfolio_returns[up].sum() / benchmark_returns[up].sum() * 100)
            if up.any()
            else None
        )
        down_capture = (
            float(portfolio_returns[down].sum() / benchmark_returns[down].sum() * 100)
            if down.any()
            else None
        )

        return {
            "beta": beta,
            "alpha": alpha,
            "information_ratio": information_ratio,
            "tracking_error": tracking_error,
            "up_capture": up_capture,
            "down_capture": down_capture,
        }

    # ------------------------------------------------------------------
    # Trades
    # ------------------------------------------------------------------

    def extract_trades(
        self,
        transactions: Sequence[Transaction],
        matching: TradeMatchingPolicy = TradeMatchingPolicy.FIRST_AVAILABLE,
    ) -> list[TradeRecord]:
        """Pair buys with sells according to the matching policy."""
        if matching == TradeMatchingPolicy.FIFO:
            return self._match_fifo(transactions)
        return self._match_first_available(transactions)

    @staticmethod
    def _match_first_available(transactions: Sequence[Transaction]) -> list[TradeRecord]:
        """
        Match each buy to the earliest later sell of the same symbol.

        A sell may close several buys and quantities are not reconciled, so
        overlapping lots are not accounted for correctly. Use FIFO for lot
        accounting.
        """
        ordered = sorted(transactions, key=lambda t: t.executed_at)
        sells = [t for t in ordered if t.type == TransactionType.SELL]
        trades = []

        for buy in (t for t in ordered if t.type == TransactionType.BUY):
            sell = next(
                (
                    s
                    for s in sells
                    if s.symbol == buy.symbol and s.executed_at > buy.executed_at
                ),
                None,
            )
            if sell is None:
                continue
            trades.append(
                TradeRecord(
                    symbol=buy.symbol,
                    quantity=buy.quantity,
                    entry_price=buy.price,
                    exit_price=sell.price,
                    pnl=(sell.price - buy.price) * buy.quantity
                    - sell.commission
                    - buy.commission,
                    holding_period_days=(
                        sell.executed_at - buy.executed_at
                    ).total_seconds()
                    / SECONDS_PER_DAY,
                )
            )

        return trades

    @staticmethod
    def _match_fifo(transactions: Sequence[Transaction]) -> list[TradeRecord]:
        """First-in first-out lot matching with proportional commissions."""
        lots: dict[str, deque[list]] = defaultdict(deque)
        trades = []

        for txn in sorted(transactions, key=lambda t: t.executed_at):
            if txn.quantity <= 0:
                continue
            if txn.type == TransactionType.BUY:
                # [remaining quantity, price, commission per share, executed_at]
                lots[txn.symbol].append(
                    [txn.quantity, txn.price, txn.commission / txn.quantity, txn.executed_at]
                )
            elif txn.type == TransactionType.SELL:
                remaining = txn.quantity
                sell_commission_per_share = txn.commission / txn.quantity
                open_lots = lots[txn.symbol]
                while remaining > 0 and open_lots:
                    lot = open_lots[0]
                    matched = min(remaining, lot[0])
                    pnl = (txn.price - lot[1]) * matched - (
                        lot[2] + sell_commission_per_share
                    ) * matched
                    trades.append(
                        TradeRecord(
                            symbol=txn.symbol,
                            quantity=matched,
                            entry_price=lot[1],
                            exit_price=txn.price,
                            pnl=pnl,
                            holding_period_days=(
                                txn.executed_at - lot[3]
                            ).total_seconds()
                            / SECONDS_PER_DAY,
                        )
                    )
                    lot[0] -= matched
                    remaining -= matched
                    if lot[0] <= 0:
                        open_lots.popleft()
                if remaining > 0:
                    logger.warning(
                        f"Sell of {txn.quantity} {txn.symbol} exceeds open lots by {remaining}"
                    )

        return trades

    @staticmethod
    def _trade_statistics(trades: Sequence[TradeRecord]) -> dict:
        wins = [t.pnl for t in trades if t.pnl > 0]
        losses = [t.pnl for t in trades if t.pnl < 0]
        gross_wins = sum(wins)
        gross_losses = abs(sum(losses))

        return {
            "win_rate": len(wins) / len(trades) * 100 if trades else 0.0,
            "profit_factor": gross_wins / gross_losses if gross_losses > 0 else 0.0,
            "average_win": gross_wins / len(wins) if wins else 0.0,
            "average_loss": gross_losses / len(losses) if losses else 0.0,
            "largest_win": max(wins) if wins else 0.0,
            "largest_loss": min(losses) if losses else 0.0,
            "total_trades": len(trades),
            "winning_trades": len(wins),
            "losing_trades": len(losses),
            "average_holding_period": (
                sum(t.holding_period_days for t in trades) / len(trades) if trades else 0.0
            ),
        }

    # ------------------------------------------------------------------
    # Risk
    # ------------------------------------------------------------------

    def calculate_risk_metrics(
        self,
        positions: Sequence[PortfolioPosition],
        history: Sequence[PortfolioHistoryPoint],
        confidence_level: float | None = None,
        position_histories: Mapping[str, Sequence[float]] | None = None,
    ) -> RiskMetrics:
        ordered = sorted(history, key=lambda point: point.day)
        return self.risk_calculator.calculate_risk_metrics(
            positions, ordered, confidence_level, position_histories
        )

    def generate_portfolio_analytics(
        self,
        positions: Sequence[PortfolioPosition],
        history: Sequence[PortfolioHistoryPoint],
        transactions: Sequence[Transaction],
        benchmark_history: Sequence[PortfolioHistoryPoint] | None = None,
        cash_balance: float | None = None,
        matching: TradeMatchingPolicy = TradeMatchingPolicy.FIRST_AVAILABLE,
    ) -> PortfolioAnalytics:
        """Compose summary, performance, allocation and risk into one snapshot."""
        return PortfolioAnalytics(
            summary=self.calculate_portfolio_summary(positions, cash_balance),
            performance=self.calculate_performance_metrics(
                history, transactions, benchmark_history, matching
            ),
            asset_allocation=self.calculate_asset_allocation(
                positions, cash_balance or 0.0
            ),
            sector_allocation=self.calculate_sector_allocation(positions),
            risk=self.calculate_risk_metrics(positions, history),
            positions=list(positions),
            history=sorted(history, key=lambda point: point.day),
            transactions=list(transactions),
            benchmark_history=list(benchmark_history or []),
        )


portfolio_analytics_service = PortfolioAnalyticsService()


def get_portfolio_analytics_service() -> PortfolioAnalyticsService:
    """Get the global portfolio analytics service."""
    return portfolio_analytics_service

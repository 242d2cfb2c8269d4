"""
Portfolio models consumed and produced by the analytics service.

Positions, history and transactions are read-only snapshots owned by the
portfolio accounting collaborator. Metrics are derived on demand and never
persisted here.
"""

from datetime import UTC, date, datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class TransactionType(str, Enum):
    BUY = "buy"
    SELL = "sell"
    DIVIDEND = "dividend"
    FEE = "fee"


class TradeMatchingPolicy(str, Enum):
    """How buy transactions are paired with sells for trade statistics."""

    FIRST_AVAILABLE = "first_available"
    FIFO = "fifo"


class PortfolioPosition(BaseModel):
    """Position snapshot supplied by the position store."""

    model_config = ConfigDict(frozen=True)

    symbol: str
    quantity: float
    average_cost: float = Field(..., description="Cost basis per share")
    current_price: float
    previous_close: float | None = Field(
        default=None, description="Prior session close, required for daily P&L"
    )
    realized_pnl: float = 0.0
    sector: str = "Unknown"
    weight: float | None = Field(
        default=None, description="Percent of portfolio value, if known"
    )
    beta: float | None = Field(default=None, description="Supplied externally")
    volatility: float | None = Field(
        default=None, description="Annualized volatility, supplied externally"
    )

    @property
    def total_cost(self) -> float:
        return self.quantity * self.average_cost

    @property
    def total_value(self) -> float:
        return self.quantity * self.current_price

    @property
    def unrealized_pnl(self) -> float:
        return self.total_value - self.total_cost

    @property
    def daily_pnl(self) -> float | None:
        if self.previous_close is None:
            return None
        return self.quantity * (self.current_price - self.previous_close)

    def value_at(self, price: float) -> float:
        return self.quantity * price


class PortfolioHistoryPoint(BaseModel):
    model_config = ConfigDict(frozen=True)

    day: date
    value: float


class Transaction(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str | None = None
    symbol: str
    type: TransactionType
    quantity: float
    price: float
    commission: float = 0.0
    executed_at: datetime


class TradeRecord(BaseModel):
    """A matched buy/sell round trip."""

    model_config = ConfigDict(frozen=True)

    symbol: str
    quantity: float
    entry_price: float
    exit_price: float
    pnl: float
    holding_period_days: float


class PortfolioSummary(BaseModel):
    model_config = ConfigDict(frozen=True)

    total_value: float
    total_cost: float
    total_pnl: float
    total_pnl_percent: float
    daily_pnl: float | None = Field(
        default=None, description="None when any position lacks a previous close"
    )
    daily_pnl_percent: float | None = None
    realized_pnl: float
    total_return: float
    total_return_percent: float
    cash_balance: float | None = None
    positions_count: int
    last_updated: datetime = Field(default_factory=lambda: datetime.now(UTC))


class PerformanceMetrics(BaseModel):
    """Return, risk-adjusted and trade statistics.

    Benchmark-relative fields are None when no benchmark history is given.
    """

    model_config = ConfigDict(frozen=True)

    total_return: float = 0.0
    total_return_percent: float = 0.0
    annualized_return: float = 0.0
    volatility: float = 0.0
    sharpe_ratio: float = 0.0
    sortino_ratio: float = 0.0
    calmar_ratio: float = 0.0
    max_drawdown: float = 0.0

    win_rate: float = 0.0
    profit_factor: float = 0.0
    average_win: float = 0.0
    average_loss: float = 0.0
    largest_win: float = 0.0
    largest_loss: float = 0.0
    total_trades: int = 0
    winning_trades: int = 0
    losing_trades: int = 0
    average_holding_period: float = 0.0
    trade_matching: TradeMatchingPolicy = TradeMatchingPolicy.FIRST_AVAILABLE

    beta: float | None = None
    alpha: float | None = None
    information_ratio: float | None = None
    tracking_error: float | None = None
    up_capture: float | None = None
    down_capture: float | None = None


class AssetAllocation(BaseModel):
    model_config = ConfigDict(frozen=True)

    stocks: float
    cash: float
    total: float


class SectorAllocation(BaseModel):
    model_config = ConfigDict(frozen=True)

    sector: str
    value: float
    weight: float = Field(..., description="Percent of invested value")
    positions_count: int
    daily_change: float | None = None
    daily_change_percent: float | None = None


class RiskMetrics(BaseModel):
    """Portfolio risk statistics at one confidence level."""

    model_config = ConfigDict(frozen=True)

    confidence_level: float
    portfolio_var: float = Field(..., description="Parametric VaR in currency")
    expected_shortfall: float = 0.0
    historical_var: float | None = None
    var_method: str = "parametric"
    position_var: dict[str, float] = Field(default_factory=dict)
    position_var_method: dict[str, str] = Field(default_factory=dict)
    beta: float | None = None
    correlation_matrix: dict[str, dict[str, float]] | None = None
    concentration_risk: float = Field(0.0, description="Herfindahl index of weights")
    liquidity_risk: float = Field(0.0, description="Share of positions above 5% weight")


class PortfolioAnalytics(BaseModel):
    model_config = ConfigDict(frozen=True)

    summary: PortfolioSummary
    performance: PerformanceMetrics
    asset_allocation: AssetAllocation
    sector_allocation: list[SectorAllocation]
    risk: RiskMetrics
    positions: list[PortfolioPosition]
    history: list[PortfolioHistoryPoint]
    transactions: list[Transaction]
    benchmark_history: list[PortfolioHistoryPoint] = Field(default_factory=list)
    last_updated: datetime = Field(default_factory=lambda: datetime.now(UTC))

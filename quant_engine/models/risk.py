"""
Risk engine models: protective orders, rules, alerts and reports.

Orders and alerts are frozen snapshots. The order registry swaps in a new
snapshot on every transition; the alert log swaps in an acknowledged copy.
Rules are the only mutable configuration and are owned by the rule engine.
"""

import math
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .portfolio import RiskMetrics


def _now() -> datetime:
    return datetime.now(UTC)


class OrderStatus(str, Enum):
    """Protective order status. Only ACTIVE can transition."""

    ACTIVE = "active"
    TRIGGERED = "triggered"
    CANCELLED = "cancelled"


class OrderKind(str, Enum):
    STOP_LOSS = "stop_loss"
    TAKE_PROFIT = "take_profit"


class OrderType(str, Enum):
    """Execution style requested once the order triggers."""

    MARKET = "market"
    LIMIT = "limit"


class TimeInForce(str, Enum):
    GTC = "gtc"
    DAY = "day"
    IOC = "ioc"


class Severity(str, Enum):
    """Rule priority and alert severity."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class RiskRuleType(str, Enum):
    POSITION_SIZE = "position_size"
    STOP_LOSS = "stop_loss"
    DRAWDOWN = "drawdown"
    CONCENTRATION = "concentration"
    VARIANCE = "variance"


class RuleAction(str, Enum):
    ALERT = "alert"
    RESTRICT = "restrict"


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    EXTREME = "extreme"


class AlertType(str, Enum):
    STOP_LOSS = "stop_loss"
    TAKE_PROFIT = "take_profit"
    DRAWDOWN = "drawdown"
    MARGIN = "margin"
    VARIANCE = "variance"
    CONCENTRATION = "concentration"
    LIQUIDITY = "liquidity"


class RiskEvent(str, Enum):
    """Events published by the risk engine."""

    ORDER_CREATED = "order_created"
    ORDER_CANCELLED = "order_cancelled"
    STOP_LOSS_TRIGGERED = "stop_loss_triggered"
    TAKE_PROFIT_TRIGGERED = "take_profit_triggered"
    RISK_ALERT = "risk_alert"


class ReportPeriod(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    YEARLY = "yearly"


class StopLossOrder(BaseModel):
    """Stop-loss order snapshot.

    For trailing orders the high-water mark only rises and the trigger price
    only moves up (protectively).
    """

    model_config = ConfigDict(frozen=True)

    id: str
    kind: Literal[OrderKind.STOP_LOSS] = OrderKind.STOP_LOSS
    symbol: str
    quantity: float
    trigger_price: float
    order_type: OrderType = OrderType.MARKET
    limit_price: float | None = None
    trailing: bool = False
    trailing_percent: float | None = None
    high_water_mark: float | None = None
    status: OrderStatus = OrderStatus.ACTIVE
    time_in_force: TimeInForce = TimeInForce.GTC
    notes: str | None = None
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)
    triggered_at: datetime | None = None
    triggered_price: float | None = None
    cancelled_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        return self.status == OrderStatus.ACTIVE


class TakeProfitOrder(BaseModel):
    """Take-profit order snapshot."""

    model_config = ConfigDict(frozen=True)

    id: str
    kind: Literal[OrderKind.TAKE_PROFIT] = OrderKind.TAKE_PROFIT
    symbol: str
    quantity: float
    target_price: float
    order_type: OrderType = OrderType.MARKET
    limit_price: float | None = None
    status: OrderStatus = OrderStatus.ACTIVE
    time_in_force: TimeInForce = TimeInForce.GTC
    notes: str | None = None
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)
    triggered_at: datetime | None = None
    triggered_price: float | None = None
    cancelled_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        return self.status == OrderStatus.ACTIVE


ProtectiveOrder = StopLossOrder | TakeProfitOrder


class RiskRule(BaseModel):
    """Configurable risk rule. Mutated only by the rule engine."""

    model_config = ConfigDict(validate_assignment=True)

    id: str
    name: str
    type: RiskRuleType
    parameters: dict[str, Any] = Field(default_factory=dict)
    priority: Severity = Severity.MEDIUM
    action: RuleAction = RuleAction.ALERT
    enabled: bool = True
    created_at: datetime = Field(default_factory=_now)
    last_triggered: datetime | None = None
    trigger_count: int = 0


class RiskAlert(BaseModel):
    """Alert record. Acknowledgement is the only change ever applied."""

    model_config = ConfigDict(frozen=True)

    id: str
    type: AlertType
    severity: Severity
    symbol: str | None = None
    message: str
    source_id: str | None = Field(
        default=None, description="Id of the rule or order that raised the alert"
    )
    data: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=_now)
    acknowledged: bool = False
    acknowledged_at: datetime | None = None


class PriceTick(BaseModel):
    """Price update delivered by the market-data transport."""

    model_config = ConfigDict(frozen=True)

    symbol: str
    price: float
    timestamp: datetime = Field(default_factory=_now)

    @field_validator("symbol")
    @classmethod
    def _normalize_symbol(cls, v: str) -> str:
        return v.strip().upper()

    @field_validator("price")
    @classmethod
    def _positive_price(cls, v: float) -> float:
        if not math.isfinite(v) or v <= 0:
            raise ValueError("Tick price must be positive and finite")
        return v

    @field_validator("timestamp")
    @classmethod
    def _utc_timestamp(cls, v: datetime) -> datetime:
        # Naive timestamps are taken as UTC so ticks always compare
        if v.tzinfo is None:
            return v.replace(tzinfo=UTC)
        return v


class TickOutcome(BaseModel):
    """What a single price tick did to the order book."""

    model_config = ConfigDict(frozen=True)

    symbol: str
    price: float
    stale: bool = False
    triggered_stop_losses: list[StopLossOrder] = Field(default_factory=list)
    triggered_take_profits: list[TakeProfitOrder] = Field(default_factory=list)


class RuleEvaluationResult(BaseModel):
    """Alerts raised by one rule pass plus rules that could not be evaluated."""

    model_config = ConfigDict(frozen=True)

    alerts: list[RiskAlert] = Field(default_factory=list)
    failed_rules: dict[str, str] = Field(default_factory=dict)
    unsupported_rules: list[str] = Field(default_factory=list)


class PositionRisk(BaseModel):
    model_config = ConfigDict(frozen=True)

    symbol: str
    position_size: float
    position_value: float
    unrealized_pnl: float
    unrealized_pnl_percent: float
    stop_loss_price: float | None = None
    take_profit_price: float | None = None
    risk_amount: float
    risk_percent: float
    reward_amount: float
    reward_percent: float
    risk_reward_ratio: float
    volatility: float
    volatility_assumed: bool = Field(
        default=False, description="True when the configured default was used"
    )
    beta: float | None = None
    var95: float
    concentration_risk: float
    liquidity_risk: float
    overall_risk: RiskLevel
    last_updated: datetime = Field(default_factory=_now)


class PortfolioRisk(BaseModel):
    model_config = ConfigDict(frozen=True)

    total_value: float
    total_risk: float
    total_risk_percent: float
    max_drawdown: float | None = Field(
        default=None, description="From value history; None without history"
    )
    current_drawdown: float | None = None
    value_at_risk_95: float
    value_at_risk_99: float = Field(
        ..., description="Approximation: VAR99_SCALING times the 95% VaR"
    )
    var_method: str
    beta: float | None = None
    concentration_risk: float
    liquidity_risk: float
    market_risk: float
    overall_risk: RiskLevel
    risk_budget: float
    risk_utilization: float
    last_updated: datetime = Field(default_factory=_now)


class ComplianceStatus(BaseModel):
    model_config = ConfigDict(frozen=True)

    position_size: bool
    stop_loss: bool
    concentration: bool
    margin: bool
    overall: bool

    @property
    def compliant(self) -> bool:
        return all(
            (self.position_size, self.stop_loss, self.concentration, self.margin, self.overall)
        )


class RiskReport(BaseModel):
    """Point-in-time risk report. Never mutated after generation."""

    model_config = ConfigDict(frozen=True)

    id: str
    portfolio_id: str
    generated_at: datetime = Field(default_factory=_now)
    period: ReportPeriod = ReportPeriod.MONTHLY
    portfolio_risk: PortfolioRisk
    position_risks: list[PositionRisk]
    risk_metrics: RiskMetrics | None = Field(
        default=None, description="Present when a value history was supplied"
    )
    alerts: list[RiskAlert]
    recommendations: list[str]
    compliance: ComplianceStatus

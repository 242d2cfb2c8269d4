"""
Risk management service.

Owns the protective order lifecycle (stop-loss and take-profit), reacts to
price ticks, evaluates risk rules and composes risk reports.

Order lifecycle:
    active -> triggered   (price crossed the trigger/target)
    active -> cancelled   (explicit cancel)
Terminal orders never change again; repeated triggers and cancels are no-ops.
"""

import logging
import math
import threading
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime

from ..core.config import settings
from ..core.exceptions import OrderValidationError
from ..core.id_utils import generate_id
from ..models.portfolio import PortfolioHistoryPoint, PortfolioPosition
from ..models.risk import (
    AlertType,
    ComplianceStatus,
    OrderKind,
    OrderStatus,
    OrderType,
    PortfolioRisk,
    PositionRisk,
    PriceTick,
    ProtectiveOrder,
    ReportPeriod,
    RiskAlert,
    RiskEvent,
    RiskLevel,
    RiskReport,
    RiskRule,
    RuleEvaluationResult,
    Severity,
    StopLossOrder,
    TakeProfitOrder,
    TickOutcome,
    TimeInForce,
)
from .alerts import AlertLog, EventCallback, RiskEventEmitter
from .order_registry import OrderRegistry
from .portfolio_analytics import PortfolioAnalyticsService, get_portfolio_analytics_service
from .portfolio_risk_metrics import history_returns
from .price_feed import LoggingPriceFeedSubscriber, PriceFeedSubscriber
from .risk_rules import RiskRuleEngine

logger = logging.getLogger(__name__)

# Simplified margin requirement: total risk must stay below this share of value
MARGIN_REQUIREMENT = 0.5


@dataclass(frozen=True)
class OrderTrigger:
    """Payload of the *_TRIGGERED events."""

    order: ProtectiveOrder
    current_price: float


def classify_risk(
    risk_fraction: float,
    volatility: float,
    concentration_risk: float,
    liquidity_risk: float,
) -> RiskLevel:
    """Weighted risk score mapped to a level at 0.4 / 0.6 / 0.8."""
    score = (
        risk_fraction * 0.3
        + volatility * 0.3
        + concentration_risk * 0.2
        + liquidity_risk * 0.2
    )
    if score > 0.8:
        return RiskLevel.EXTREME
    if score > 0.6:
        return RiskLevel.HIGH
    if score > 0.4:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


def _validate_price(name: str, value: float | None) -> None:
    if value is None or not math.isfinite(value) or value <= 0:
        raise OrderValidationError(f"{name} must be a positive number, got {value}")


class RiskManagementService:
    """
    Protective orders, rule alerts and risk reporting.

    Price ticks for one symbol are processed under that symbol's lock; each
    status change is a compare-and-set on the order entry, so a trigger and
    a cancel racing on the same order resolve to exactly one winner.
    """

    def __init__(
        self,
        price_feed: PriceFeedSubscriber | None = None,
        analytics: PortfolioAnalyticsService | None = None,
        rules: Sequence[RiskRule] | None = None,
    ):
        self.price_feed = price_feed or LoggingPriceFeedSubscriber()
        self.analytics = analytics or get_portfolio_analytics_service()
        self.events = RiskEventEmitter()
        self.alert_log = AlertLog(self.events)
        self.orders = OrderRegistry()
        self.rule_engine = RiskRuleEngine(self.alert_log, rules)
        self._last_tick_at: dict[str, datetime] = {}
        self._tick_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Order creation
    # ------------------------------------------------------------------

    def create_stop_loss(
        self,
        symbol: str,
        quantity: float,
        trigger_price: float,
        trailing: bool = False,
        trailing_percent: float | None = None,
        order_type: OrderType = OrderType.MARKET,
        limit_price: float | None = None,
        time_in_force: TimeInForce = TimeInForce.GTC,
        notes: str | None = None,
    ) -> StopLossOrder:
        """
        Create an active stop-loss order.

        Raises:
            OrderValidationError: On an empty symbol, non-positive quantity or
                price, a trailing order without a percent in (0, 100), or a
                limit order without a limit price
        """
        symbol = self._validate_common(symbol, quantity, order_type, limit_price)
        _validate_price("trigger_price", trigger_price)
        if trailing and (
            trailing_percent is None
            or not math.isfinite(trailing_percent)
            or not 0 < trailing_percent < 100
        ):
            raise OrderValidationError(
                f"trailing_percent must be between 0 and 100, got {trailing_percent}"
            )

        order = StopLossOrder(
            id=generate_id("sl"),
            symbol=symbol,
            quantity=quantity,
            trigger_price=trigger_price,
            order_type=order_type,
            limit_price=limit_price,
            trailing=trailing,
            trailing_percent=trailing_percent if trailing else None,
            time_in_force=time_in_force,
            notes=notes,
        )
        self._register(order, f"Stop loss order created for {symbol} at {trigger_price}")
        return order

    def create_take_profit(
        self,
        symbol: str,
        quantity: float,
        target_price: float,
        order_type: OrderType = OrderType.MARKET,
        limit_price: float | None = None,
        time_in_force: TimeInForce = TimeInForce.GTC,
        notes: str | None = None,
    ) -> TakeProfitOrder:
        """Create an active take-profit order. Validation as for stop losses."""
        symbol = self._validate_common(symbol, quantity, order_type, limit_price)
        _validate_price("target_price", target_price)

        order = TakeProfitOrder(
            id=generate_id("tp"),
            symbol=symbol,
            quantity=quantity,
            target_price=target_price,
            order_type=order_type,
            limit_price=limit_price,
            time_in_force=time_in_force,
            notes=notes,
        )
        self._register(order, f"Take profit order created for {symbol} at {target_price}")
        return order

    @staticmethod
    def _validate_common(
        symbol: str,
        quantity: float,
        order_type: OrderType,
        limit_price: float | None,
    ) -> str:
        if not symbol or not symbol.strip():
            raise OrderValidationError("symbol is required")
        if quantity is None or not math.isfinite(quantity) or quantity <= 0:
            raise OrderValidationError(f"quantity must be positive, got {quantity}")
        if order_type == OrderType.LIMIT:
            _validate_price("limit_price", limit_price)
        return symbol.strip().upper()

    def _register(self, order: ProtectiveOrder, message: str) -> None:
        self.orders.add(order)
        self.price_feed.subscribe(order.symbol)
        self.alert_log.record(
            self._alert_type(order),
            Severity.MEDIUM,
            message,
            symbol=order.symbol,
            source_id=order.id,
        )
        self.events.emit(RiskEvent.ORDER_CREATED, order)

    @staticmethod
    def _alert_type(order: ProtectiveOrder) -> AlertType:
        return AlertType.STOP_LOSS if order.kind == OrderKind.STOP_LOSS else AlertType.TAKE_PROFIT

    # ------------------------------------------------------------------
    # Price processing
    # ------------------------------------------------------------------

    def update_trailing(self, symbol: str, current_price: float) -> list[StopLossOrder]:
        """
        Ratchet trailing stops for a symbol.

        The high-water mark never decreases and the trigger only moves up:
        trigger = max(trigger, hwm * (1 - pct / 100)).
        """
        symbol = symbol.upper()

        def ratchet(order: StopLossOrder) -> dict | None:
            hwm = order.high_water_mark
            if hwm is not None and current_price <= hwm:
                return None
            candidate = current_price * (1 - order.trailing_percent / 100)
            return {
                "high_water_mark": current_price,
                "trigger_price": max(order.trigger_price, candidate),
            }

        updated = []
        with self.orders.symbol_lock(symbol):
            for order in self.orders.orders_for_symbol(
                symbol, OrderKind.STOP_LOSS, OrderStatus.ACTIVE
            ):
                if not order.trailing:
                    continue
                result = self.orders.update_active(order.id, ratchet)
                if result is not None and result is not order:
                    logger.debug(
                        f"Trailing stop {order.id} on {symbol}: "
                        f"hwm={result.high_water_mark}, trigger={result.trigger_price:.4f}"
                    )
                    updated.append(result)
        return updated

    def check_stop_loss(self, symbol: str, current_price: float) -> list[StopLossOrder]:
        """Trigger active stop losses with price <= trigger price."""
        return self._check_orders(
            symbol,
            current_price,
            OrderKind.STOP_LOSS,
            lambda order: current_price <= order.trigger_price,
        )

    def check_take_profit(self, symbol: str, current_price: float) -> list[TakeProfitOrder]:
        """Trigger active take profits with price >= target price."""
        return self._check_orders(
            symbol,
            current_price,
            OrderKind.TAKE_PROFIT,
            lambda order: current_price >= order.target_price,
        )

    def _check_orders(self, symbol, current_price, kind, crossed) -> list:
        symbol = symbol.upper()
        triggered = []

        with self.orders.symbol_lock(symbol):
            for order in self.orders.orders_for_symbol(symbol, kind, OrderStatus.ACTIVE):
                result = self.orders.transition(
                    order.id,
                    OrderStatus.TRIGGERED,
                    condition=crossed,
                    triggered_at=datetime.now(UTC),
                    triggered_price=current_price,
                )
                if result is not None:
                    triggered.append(result)

        label = "Stop loss" if kind == OrderKind.STOP_LOSS else "Take profit"
        event = (
            RiskEvent.STOP_LOSS_TRIGGERED
            if kind == OrderKind.STOP_LOSS
            else RiskEvent.TAKE_PROFIT_TRIGGERED
        )
        for order in triggered:
            logger.warning(f"{label} {order.id} triggered for {symbol} at {current_price}")
            self.alert_log.record(
                self._alert_type(order),
                Severity.HIGH,
                f"{label} triggered for {symbol} at {current_price}",
                symbol=symbol,
                source_id=order.id,
                data={"current_price": current_price},
            )
            self.events.emit(event, OrderTrigger(order=order, current_price=current_price))

        return triggered

    def on_price_tick(self, tick: PriceTick) -> TickOutcome:
        """
        Apply one price tick: trailing update, then stop-loss and take-profit
        checks. Ticks older than the newest seen for the symbol are ignored
        when IGNORE_STALE_TICKS is set.
        """
        with self.orders.symbol_lock(tick.symbol):
            if self._is_stale(tick):
                logger.debug(f"Ignoring stale tick for {tick.symbol} at {tick.timestamp}")
                return TickOutcome(symbol=tick.symbol, price=tick.price, stale=True)

            self.update_trailing(tick.symbol, tick.price)
            stop_losses = self.check_stop_loss(tick.symbol, tick.price)
            take_profits = self.check_take_profit(tick.symbol, tick.price)

        return TickOutcome(
            symbol=tick.symbol,
            price=tick.price,
            triggered_stop_losses=stop_losses,
            triggered_take_profits=take_profits,
        )

    def _is_stale(self, tick: PriceTick) -> bool:
        with self._tick_lock:
            last = self._last_tick_at.get(tick.symbol)
            if settings.IGNORE_STALE_TICKS and last is not None and tick.timestamp < last:
                return True
            if last is None or tick.timestamp > last:
                self._last_tick_at[tick.symbol] = tick.timestamp
            return False

    # ------------------------------------------------------------------
    # Cancellation and queries
    # ------------------------------------------------------------------

    def cancel(self, order_id: str) -> bool:
        """
        Cancel an active order of either kind.

        Returns:
            True if this call cancelled the order; False if it is unknown or
            already terminal
        """
        order = self.orders.transition(
            order_id, OrderStatus.CANCELLED, cancelled_at=datetime.now(UTC)
        )
        if order is None:
            return False

        label = "Stop loss" if order.kind == OrderKind.STOP_LOSS else "Take profit"
        self.alert_log.record(
            self._alert_type(order),
            Severity.LOW,
            f"{label} order cancelled",
            symbol=order.symbol,
            source_id=order.id,
        )
        self.events.emit(RiskEvent.ORDER_CANCELLED, order)
        return True

    def cancel_stop_loss(self, order_id: str) -> bool:
        order = self.orders.get(order_id)
        return order is not None and order.kind == OrderKind.STOP_LOSS and self.cancel(order_id)

    def cancel_take_profit(self, order_id: str) -> bool:
        order = self.orders.get(order_id)
        return (
            order is not None and order.kind == OrderKind.TAKE_PROFIT and self.cancel(order_id)
        )

    def get_order(self, order_id: str) -> ProtectiveOrder | None:
        return self.orders.get(order_id)

    def get_stop_loss_orders(self, symbol: str | None = None) -> list[StopLossOrder]:
        if symbol:
            return self.orders.orders_for_symbol(symbol.upper(), OrderKind.STOP_LOSS)
        return self.orders.all_orders(OrderKind.STOP_LOSS)

    def get_take_profit_orders(self, symbol: str | None = None) -> list[TakeProfitOrder]:
        if symbol:
            return self.orders.orders_for_symbol(symbol.upper(), OrderKind.TAKE_PROFIT)
        return self.orders.all_orders(OrderKind.TAKE_PROFIT)

    def _active_order(self, symbol: str, kind: OrderKind) -> ProtectiveOrder | None:
        active = self.orders.orders_for_symbol(symbol.upper(), kind, OrderStatus.ACTIVE)
        return active[0] if active else None

    # ------------------------------------------------------------------
    # Risk calculation
    # ------------------------------------------------------------------

    def position_risk(
        self,
        position: PortfolioPosition,
        current_price: float,
        portfolio_value: float | None = None,
    ) -> PositionRisk:
        """
        Risk profile of one position at a price.

        Risk and reward come from the first active stop loss and take profit
        for the symbol, or DEFAULT_RISK_PERCENT / DEFAULT_REWARD_PERCENT of
        cost when none exists.
        """
        repriced = position.model_copy(update={"current_price": current_price})
        position_value = repriced.total_value
        unrealized_pnl = position_value - position.total_cost

        stop_loss = self._active_order(position.symbol, OrderKind.STOP_LOSS)
        take_profit = self._active_order(position.symbol, OrderKind.TAKE_PROFIT)
        stop_loss_price = stop_loss.trigger_price if stop_loss else None
        take_profit_price = take_profit.target_price if take_profit else None

        if stop_loss_price is not None:
            risk_amount = position.quantity * (current_price - stop_loss_price)
        else:
            risk_amount = position.total_cost * settings.DEFAULT_RISK_PERCENT / 100

        if take_profit_price is not None:
            reward_amount = position.quantity * (take_profit_price - current_price)
        else:
            reward_amount = position.total_cost * settings.DEFAULT_REWARD_PERCENT / 100

        risk_percent = risk_amount / position_value * 100 if position_value > 0 else 0.0
        reward_percent = reward_amount / position_value * 100 if position_value > 0 else 0.0

        volatility_assumed = position.volatility is None
        volatility = (
            settings.DEFAULT_POSITION_VOLATILITY if volatility_assumed else position.volatility
        )
        var95, _ = self.analytics.risk_calculator.calculate_position_var(repriced, 0.95)

        if portfolio_value:
            concentration_risk = min(abs(position_value) / portfolio_value, 1.0)
        elif position.weight is not None:
            concentration_risk = min(position.weight / 100, 1.0)
        else:
            concentration_risk = 0.0
        liquidity_risk = 0.3 if position_value > settings.LARGE_POSITION_VALUE else 0.1

        return PositionRisk(
            symbol=position.symbol,
            position_size=position.quantity,
            position_value=position_value,
            unrealized_pnl=unrealized_pnl,
            unrealized_pnl_percent=(
                unrealized_pnl / position.total_cost * 100 if position.total_cost > 0 else 0.0
            ),
            stop_loss_price=stop_loss_price,
            take_profit_price=take_profit_price,
            risk_amount=risk_amount,
            risk_percent=risk_percent,
            reward_amount=reward_amount,
            reward_percent=reward_percent,
            risk_reward_ratio=reward_amount / risk_amount if risk_amount > 0 else 0.0,
            volatility=volatility,
            volatility_assumed=volatility_assumed,
            beta=position.beta,
            var95=var95,
            concentration_risk=concentration_risk,
            liquidity_risk=liquidity_risk,
            overall_risk=classify_risk(
                risk_percent / 100, volatility, concentration_risk, liquidity_risk
            ),
        )

    def portfolio_risk(
        self,
        positions: Sequence[PortfolioPosition],
        prices: Mapping[str, float] | None = None,
        history: Sequence[PortfolioHistoryPoint] | None = None,
    ) -> PortfolioRisk:
        """
        Aggregate risk across positions.

        VaR95 is parametric over the value history when one is supplied,
        otherwise the sum of per-position VaRs. VaR99 is VAR99_SCALING times
        VaR95 and is only an approximation.
        """
        prices = prices or {}
        repriced = [
            p.model_copy(update={"current_price": prices.get(p.symbol, p.current_price)})
            for p in positions
        ]
        total_value = sum(p.total_value for p in repriced)
        position_risks = [
            self.position_risk(p, p.current_price, total_value) for p in repriced
        ]

        total_risk = sum(r.risk_amount for r in position_risks)
        total_risk_percent = total_risk / total_value * 100 if total_value > 0 else 0.0

        calculator = self.analytics.risk_calculator
        ordered_history = sorted(history or [], key=lambda point: point.day)
        returns = history_returns(ordered_history)
        if returns.size:
            value_at_risk_95 = calculator.parametric_var(total_value, returns, 0.95)
            var_method = "parametric"
        else:
            value_at_risk_95 = sum(r.var95 for r in position_risks)
            var_method = "sum_of_positions"

        max_drawdown = current_drawdown = None
        if len(ordered_history) >= 2:
            values = [point.value for point in ordered_history]
            max_drawdown = self.analytics.max_drawdown(values)
            peak = max(values)
            current_drawdown = (peak - values[-1]) / peak if peak > 0 else 0.0

        concentration_risk = calculator.calculate_concentration_risk(repriced)
        liquidity_risk = calculator.calculate_liquidity_risk(repriced)

        return PortfolioRisk(
            total_value=total_value,
            total_risk=total_risk,
            total_risk_percent=total_risk_percent,
            max_drawdown=max_drawdown,
            current_drawdown=current_drawdown,
            value_at_risk_95=value_at_risk_95,
            value_at_risk_99=value_at_risk_95 * settings.VAR99_SCALING,
            var_method=var_method,
            beta=calculator.calculate_portfolio_beta(repriced),
            concentration_risk=concentration_risk,
            liquidity_risk=liquidity_risk,
            market_risk=value_at_risk_95,
            overall_risk=classify_risk(
                total_risk_percent / 100,
                value_at_risk_95 / total_value if total_value > 0 else 0.0,
                concentration_risk,
                liquidity_risk,
            ),
            risk_budget=total_value * settings.RISK_BUDGET_PERCENT / 100,
            risk_utilization=total_risk_percent / settings.RISK_BUDGET_PERCENT * 100,
        )

    # ------------------------------------------------------------------
    # Rules, alerts and reports
    # ------------------------------------------------------------------

    def check_risk_rules(
        self,
        positions: Sequence[PortfolioPosition],
        prices: Mapping[str, float] | None = None,
    ) -> RuleEvaluationResult:
        return self.rule_engine.evaluate(positions, prices)

    def get_risk_rules(self) -> list[RiskRule]:
        return self.rule_engine.list_rules()

    def update_risk_rule(self, rule_id: str, **updates) -> bool:
        return self.rule_engine.update_rule(rule_id, **updates)

    def get_active_alerts(self) -> list[RiskAlert]:
        return self.alert_log.active()

    def get_alerts(self) -> list[RiskAlert]:
        return self.alert_log.all()

    def acknowledge_alert(self, alert_id: str) -> bool:
        return self.alert_log.acknowledge(alert_id)

    def on(self, event: RiskEvent | str, callback: EventCallback) -> None:
        self.events.on(event, callback)

    def off(self, event: RiskEvent | str, callback: EventCallback) -> bool:
        return self.events.off(event, callback)

    def generate_report(
        self,
        portfolio_id: str,
        positions: Sequence[PortfolioPosition],
        prices: Mapping[str, float] | None = None,
        period: ReportPeriod = ReportPeriod.MONTHLY,
        history: Sequence[PortfolioHistoryPoint] | None = None,
    ) -> RiskReport:
        """Compose a point-in-time risk report."""
        prices = prices or {}
        portfolio_risk = self.portfolio_risk(positions, prices, history)
        total_value = portfolio_risk.total_value
        position_risks = [
            self.position_risk(p, prices.get(p.symbol, p.current_price), total_value)
            for p in positions
        ]

        risk_metrics = None
        if history:
            repriced = [
                p.model_copy(update={"current_price": prices.get(p.symbol, p.current_price)})
                for p in positions
            ]
            risk_metrics = self.analytics.calculate_risk_metrics(repriced, history)

        report = RiskReport(
            id=generate_id("report"),
            portfolio_id=portfolio_id,
            period=ReportPeriod(period),
            portfolio_risk=portfolio_risk,
            position_risks=position_risks,
            risk_metrics=risk_metrics,
            alerts=self.get_active_alerts(),
            recommendations=self.generate_recommendations(portfolio_risk, position_risks),
            compliance=self.check_compliance(positions, prices, portfolio_risk, position_risks),
        )
        logger.info(
            f"Generated {report.period.value} risk report {report.id} for {portfolio_id}: "
            f"overall={portfolio_risk.overall_risk.value}"
        )
        return report

    @staticmethod
    def generate_recommendations(
        portfolio_risk: PortfolioRisk, position_risks: Sequence[PositionRisk]
    ) -> list[str]:
        recommendations = []

        if portfolio_risk.risk_utilization > 80:
            recommendations.append(
                "Consider reducing position sizes to stay within risk budget"
            )
        if portfolio_risk.concentration_risk > 0.3:
            recommendations.append("Diversify portfolio to reduce concentration risk")

        high_risk = [
            r for r in position_risks if r.overall_risk in (RiskLevel.HIGH, RiskLevel.EXTREME)
        ]
        if high_risk:
            recommendations.append(
                f"Consider setting stop loss orders for {len(high_risk)} high-risk positions"
            )

        unprotected = [r for r in position_risks if r.stop_loss_price is None]
        if unprotected:
            recommendations.append(
                f"Set stop loss orders for {len(unprotected)} positions without protection"
            )

        if portfolio_risk.liquidity_risk > 0.2:
            recommendations.append("Consider reducing positions in less liquid securities")

        return recommendations

    def check_compliance(
        self,
        positions: Sequence[PortfolioPosition],
        prices: Mapping[str, float],
        portfolio_risk: PortfolioRisk,
        position_risks: Sequence[PositionRisk],
    ) -> ComplianceStatus:
        total_value = portfolio_risk.total_value
        sectors: dict[str, float] = {}
        for position in positions:
            value = position.value_at(prices.get(position.symbol, position.current_price))
            sectors[position.sector] = sectors.get(position.sector, 0.0) + value

        max_position_percent = max_sector_percent = 0.0
        if total_value > 0:
            max_position_percent = (
                max((r.position_value for r in position_risks), default=0.0) / total_value * 100
            )
            max_sector_percent = max(sectors.values(), default=0.0) / total_value * 100

        return ComplianceStatus(
            position_size=max_position_percent <= settings.MAX_POSITION_CONCENTRATION,
            stop_loss=all(r.stop_loss_price is not None for r in position_risks),
            concentration=max_sector_percent < settings.MAX_SECTOR_CONCENTRATION,
            margin=total_value * MARGIN_REQUIREMENT > portfolio_risk.total_risk,
            overall=portfolio_risk.overall_risk != RiskLevel.EXTREME,
        )


# Global risk management service
risk_management_service = RiskManagementService()


def get_risk_management_service() -> RiskManagementService:
    """Get the global risk management service."""
    return risk_management_service

"""
Risk rule engine.

Rules are evaluated independently against the current positions and
prices. Each rule type has one evaluator; a rule that raises is logged and
reported but never stops the remaining rules. Drawdown and variance rules
need a value history the engine does not have and are reported as
unsupported.
"""

import logging
import threading
from collections import defaultdict
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from ..core.config import settings
from ..core.exceptions import NotFoundError, RuleEvaluationError, ValidationError
from ..models.portfolio import PortfolioPosition
from ..models.risk import (
    AlertType,
    RiskAlert,
    RiskRule,
    RiskRuleType,
    RuleAction,
    RuleEvaluationResult,
    Severity,
)
from .alerts import AlertLog

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RuleContext:
    """Positions repriced at the latest known prices."""

    positions: Sequence[PortfolioPosition]
    prices: Mapping[str, float]

    def price_of(self, position: PortfolioPosition) -> float:
        return self.prices.get(position.symbol, position.current_price)

    def value_of(self, position: PortfolioPosition) -> float:
        return position.value_at(self.price_of(position))

    @property
    def total_value(self) -> float:
        return sum(self.value_of(p) for p in self.positions)

    def sector_weights(self) -> dict[str, float]:
        """Percent of total value per sector."""
        total = self.total_value
        sectors: dict[str, float] = defaultdict(float)
        for position in self.positions:
            sectors[position.sector] += self.value_of(position)
        if total <= 0:
            return {sector: 0.0 for sector in sectors}
        return {sector: value / total * 100 for sector, value in sectors.items()}


@dataclass(frozen=True)
class RuleMatch:
    alert_type: AlertType
    message: str
    symbol: str | None = None
    data: dict[str, Any] | None = None


RuleEvaluator = Callable[[RiskRule, RuleContext], list[RuleMatch]]


def _parameter(rule: RiskRule, name: str) -> float:
    try:
        return float(rule.parameters[name])
    except KeyError as e:
        raise RuleEvaluationError(rule.id, f"missing parameter '{name}'") from e
    except (TypeError, ValueError) as e:
        raise RuleEvaluationError(rule.id, f"parameter '{name}' is not numeric") from e


def evaluate_position_size(rule: RiskRule, ctx: RuleContext) -> list[RuleMatch]:
    max_percent = _parameter(rule, "max_percent")
    max_absolute = _parameter(rule, "max_absolute")
    total_value = ctx.total_value

    matches = []
    for position in ctx.positions:
        value = ctx.value_of(position)
        percent = value / total_value * 100 if total_value > 0 else 0.0
        if percent > max_percent or value > max_absolute:
            matches.append(
                RuleMatch(
                    alert_type=AlertType.CONCENTRATION,
                    symbol=position.symbol,
                    message=(
                        f"Position size for {position.symbol} exceeds limit: "
                        f"{percent:.2f}% (${value:,.2f})"
                    ),
                    data={"percent": percent, "value": value},
                )
            )
    return matches


def evaluate_stop_loss(rule: RiskRule, ctx: RuleContext) -> list[RuleMatch]:
    """Flag positions whose unrealized loss exceeds the threshold. Alert only."""
    max_loss_percent = _parameter(rule, "max_loss_percent")

    matches = []
    for position in ctx.positions:
        if position.total_cost <= 0:
            continue
        pnl_percent = (ctx.value_of(position) - position.total_cost) / position.total_cost * 100
        if pnl_percent < -max_loss_percent:
            matches.append(
                RuleMatch(
                    alert_type=AlertType.STOP_LOSS,
                    symbol=position.symbol,
                    message=(
                        f"Position {position.symbol} exceeds stop loss threshold: "
                        f"{pnl_percent:.2f}%"
                    ),
                    data={"unrealized_pnl_percent": pnl_percent},
                )
            )
    return matches


def evaluate_concentration(rule: RiskRule, ctx: RuleContext) -> list[RuleMatch]:
    max_sector_percent = _parameter(rule, "max_sector_percent")

    matches = [
        RuleMatch(
            alert_type=AlertType.CONCENTRATION,
            message=f"Sector concentration for {sector} exceeds limit: {weight:.2f}%",
            data={"sector": sector, "percent": weight},
        )
        for sector, weight in ctx.sector_weights().items()
        if weight > max_sector_percent
    ]

    if "max_single_position" in rule.parameters:
        max_single = _parameter(rule, "max_single_position")
        total_value = ctx.total_value
        for position in ctx.positions:
            percent = ctx.value_of(position) / total_value * 100 if total_value > 0 else 0.0
            if percent > max_single:
                matches.append(
                    RuleMatch(
                        alert_type=AlertType.CONCENTRATION,
                        symbol=position.symbol,
                        message=(
                            f"Single position {position.symbol} exceeds limit: {percent:.2f}%"
                        ),
                        data={"percent": percent},
                    )
                )
    return matches


RULE_EVALUATORS: dict[RiskRuleType, RuleEvaluator] = {
    RiskRuleType.POSITION_SIZE: evaluate_position_size,
    RiskRuleType.STOP_LOSS: evaluate_stop_loss,
    RiskRuleType.CONCENTRATION: evaluate_concentration,
}

# Need portfolio value history, which rule evaluation does not receive
UNSUPPORTED_RULE_TYPES = frozenset({RiskRuleType.DRAWDOWN, RiskRuleType.VARIANCE})


def default_rules() -> list[RiskRule]:
    return [
        RiskRule(
            id="max_position_size",
            name="Maximum Position Size",
            type=RiskRuleType.POSITION_SIZE,
            parameters={"max_percent": 10, "max_absolute": settings.LARGE_POSITION_VALUE},
            priority=Severity.HIGH,
            action=RuleAction.RESTRICT,
        ),
        RiskRule(
            id="mandatory_stop_loss",
            name="Mandatory Stop Loss",
            type=RiskRuleType.STOP_LOSS,
            parameters={"max_loss_percent": 5, "timeframe": "day"},
            priority=Severity.CRITICAL,
            action=RuleAction.ALERT,
        ),
        RiskRule(
            id="portfolio_drawdown",
            name="Portfolio Drawdown Limit",
            type=RiskRuleType.DRAWDOWN,
            parameters={"max_drawdown_percent": 15, "timeframe": "month"},
            priority=Severity.HIGH,
            action=RuleAction.RESTRICT,
        ),
        RiskRule(
            id="concentration_limit",
            name="Concentration Risk Limit",
            type=RiskRuleType.CONCENTRATION,
            parameters={
                "max_sector_percent": settings.MAX_SECTOR_CONCENTRATION,
                "max_single_position": settings.MAX_POSITION_CONCENTRATION,
            },
            priority=Severity.MEDIUM,
            action=RuleAction.ALERT,
        ),
        RiskRule(
            id="variance_limit",
            name="Daily Variance Limit",
            type=RiskRuleType.VARIANCE,
            parameters={"max_daily_variance": 2},
            priority=Severity.MEDIUM,
            action=RuleAction.ALERT,
        ),
    ]


class RiskRuleEngine:
    """Holds the rule set and evaluates it against portfolio snapshots."""

    def __init__(
        self,
        alert_log: AlertLog,
        rules: Sequence[RiskRule] | None = None,
        evaluators: Mapping[RiskRuleType, RuleEvaluator] | None = None,
    ) -> None:
        self.alert_log = alert_log
        self.evaluators: dict[RiskRuleType, RuleEvaluator] = dict(
            evaluators or RULE_EVALUATORS
        )
        self._rules: dict[str, RiskRule] = {
            rule.id: rule for rule in (default_rules() if rules is None else rules)
        }
        self._warned_unsupported: set[str] = set()
        self._lock = threading.RLock()

    def list_rules(self) -> list[RiskRule]:
        """Copies of the configured rules."""
        with self._lock:
            return [rule.model_copy(deep=True) for rule in self._rules.values()]

    def get_rule(self, rule_id: str) -> RiskRule:
        with self._lock:
            rule = self._rules.get(rule_id)
            if rule is None:
                raise NotFoundError(f"Risk rule {rule_id} not found")
            return rule.model_copy(deep=True)

    def add_rule(self, rule: RiskRule) -> None:
        with self._lock:
            self._rules[rule.id] = rule
        logger.info(f"Added risk rule {rule.id} ({rule.type.value})")

    def update_rule(self, rule_id: str, **updates: Any) -> bool:
        """
        Replace rule fields. Returns False for an unknown rule.

        The updated rule is validated as a whole before it is stored, so a
        rejected update leaves the rule unchanged.

        Raises:
            ValidationError: On a field name RiskRule does not have
            pydantic.ValidationError: On an invalid field value
        """
        updates.pop("id", None)
        unknown = set(updates) - set(RiskRule.model_fields)
        if unknown:
            raise ValidationError(f"Unknown risk rule fields: {sorted(unknown)}")

        with self._lock:
            rule = self._rules.get(rule_id)
            if rule is None:
                return False
            self._rules[rule_id] = RiskRule.model_validate({**rule.model_dump(), **updates})
        logger.info(f"Updated risk rule {rule_id}: {sorted(updates)}")
        return True

    def evaluate(
        self,
        positions: Sequence[PortfolioPosition],
        prices: Mapping[str, float] | None = None,
    ) -> RuleEvaluationResult:
        """
        Evaluate all enabled rules.

        Every match raises an alert and bumps the rule's trigger counter and
        timestamp. A failing rule is recorded in ``failed_rules``.
        """
        ctx = RuleContext(positions=positions, prices=prices or {})
        alerts: list[RiskAlert] = []
        failed: dict[str, str] = {}
        unsupported: list[str] = []

        with self._lock:
            rules = [rule for rule in self._rules.values() if rule.enabled]

        for rule in rules:
            if rule.type in UNSUPPORTED_RULE_TYPES or rule.type not in self.evaluators:
                unsupported.append(rule.id)
                with self._lock:
                    first_time = rule.id not in self._warned_unsupported
                    self._warned_unsupported.add(rule.id)
                if first_time:
                    logger.warning(
                        f"Risk rule {rule.id} ({rule.type.value}) cannot be evaluated "
                        "without portfolio history, skipping"
                    )
                continue

            try:
                matches = self.evaluators[rule.type](rule, ctx)
            except Exception as e:
                logger.exception(f"Risk rule {rule.id} failed")
                failed[rule.id] = str(e)
                continue

            if not matches:
                continue

            for match in matches:
                alerts.append(
                    self.alert_log.record(
                        match.alert_type,
                        rule.priority,
                        match.message,
                        symbol=match.symbol,
                        source_id=rule.id,
                        data={"rule": rule.name, **(match.data or {})},
                    )
                )

            with self._lock:
                # The stored rule may have been replaced by update_rule meanwhile
                stored = self._rules.get(rule.id)
                if stored is not None:
                    stored.trigger_count += len(matches)
                    stored.last_triggered = datetime.now(UTC)

        return RuleEvaluationResult(
            alerts=alerts, failed_rules=failed, unsupported_rules=unsupported
        )

"""
Multi-leg strategy builders.

Each strategy kind has one pure builder that prices its legs and derives
the payoff profile. ``build_strategy`` dispatches on the kind.
"""

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import UTC, date, datetime

from ...core.exceptions import ValidationError
from ...core.id_utils import generate_id
from ...models.options import (
    LegAction,
    OptionContract,
    OptionKind,
    OptionStrategy,
    StrategyKind,
    StrategyLeg,
)
from ..option_chain import create_option_contract, days_to_expiration
from .analyzer import calculate_strategy_greeks, probability_of_profit, risk_reward_ratio

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StrategyContext:
    """Market inputs shared by all legs of a strategy."""

    symbol: str
    expiration: date
    current_price: float
    volatility: float
    risk_free_rate: float | None = None
    dividend_yield: float | None = None
    as_of: datetime | None = None

    @property
    def days_to_expiration(self) -> int:
        return days_to_expiration(self.expiration, self.as_of)

    def contract(self, kind: OptionKind, strike: float) -> OptionContract:
        return create_option_contract(
            self.symbol,
            kind,
            strike,
            self.expiration,
            self.current_price,
            self.volatility,
            self.risk_free_rate,
            self.dividend_yield,
            as_of=self.as_of,
        )

    def pop(self, break_even_points: Sequence[float]) -> float:
        return probability_of_profit(
            break_even_points,
            self.current_price,
            self.volatility,
            self.days_to_expiration,
        )


@dataclass(frozen=True)
class StrategyShape:
    """Payoff profile produced by a builder."""

    name: str
    description: str
    legs: tuple[StrategyLeg, ...]
    net_debit: float
    max_profit: float
    max_loss: float
    break_even_points: list[float]
    probability_of_profit: float


def _leg(index: int, contract: OptionContract, action: LegAction, quantity: int = 1) -> StrategyLeg:
    return StrategyLeg(id=str(index), contract=contract, action=action, quantity=quantity)


def _require_strikes(kind: StrategyKind, strikes: Sequence[float], count: int) -> list[float]:
    if len(strikes) < count:
        raise ValidationError(f"{kind.value} requires {count} strikes, got {len(strikes)}")
    selected = [float(k) for k in strikes[:count]]
    if any(k <= 0 for k in selected):
        raise ValidationError(f"{kind.value}: strikes must be positive")
    if any(lower >= upper for lower, upper in zip(selected, selected[1:], strict=False)):
        raise ValidationError(f"{kind.value}: strikes must be strictly ascending")
    return selected


def build_straddle(ctx: StrategyContext, strikes: Sequence[float]) -> StrategyShape:
    """Long call and put at the same strike (defaults to the current price)."""
    strike = float(strikes[0]) if strikes else ctx.current_price
    call = ctx.contract(OptionKind.CALL, strike)
    put = ctx.contract(OptionKind.PUT, strike)

    cost = call.last_price + put.last_price
    break_evens = [strike - cost, strike + cost]

    return StrategyShape(
        name="Straddle",
        description="Long call and put at same strike",
        legs=(_leg(1, call, LegAction.BUY), _leg(2, put, LegAction.BUY)),
        net_debit=cost,
        max_profit=float("inf"),
        max_loss=cost,
        break_even_points=break_evens,
        probability_of_profit=ctx.pop(break_evens),
    )


def build_strangle(ctx: StrategyContext, strikes: Sequence[float]) -> StrategyShape:
    """Long OTM put (lower strike) and long OTM call (higher strike)."""
    put_strike, call_strike = _require_strikes(StrategyKind.STRANGLE, strikes, 2)
    call = ctx.contract(OptionKind.CALL, call_strike)
    put = ctx.contract(OptionKind.PUT, put_strike)

    cost = call.last_price + put.last_price
    break_evens = [put_strike - cost, call_strike + cost]

    return StrategyShape(
        name="Strangle",
        description="Long OTM call and put",
        legs=(_leg(1, call, LegAction.BUY), _leg(2, put, LegAction.BUY)),
        net_debit=cost,
        max_profit=float("inf"),
        max_loss=cost,
        break_even_points=break_evens,
        probability_of_profit=ctx.pop(break_evens),
    )


def build_butterfly(ctx: StrategyContext, strikes: Sequence[float]) -> StrategyShape:
    """Long one low call, short two middle calls, long one high call."""
    low, middle, high = _require_strikes(StrategyKind.BUTTERFLY, strikes, 3)
    low_call = ctx.contract(OptionKind.CALL, low)
    middle_call = ctx.contract(OptionKind.CALL, middle)
    high_call = ctx.contract(OptionKind.CALL, high)

    debit = low_call.last_price - 2 * middle_call.last_price + high_call.last_price
    break_evens = [low + debit, high - debit]

    return StrategyShape(
        name="Butterfly Spread",
        description="Long one low strike, short two middle strikes, long one high strike",
        legs=(
            _leg(1, low_call, LegAction.BUY),
            _leg(2, middle_call, LegAction.SELL, quantity=2),
            _leg(3, high_call, LegAction.BUY),
        ),
        net_debit=debit,
        max_profit=(high - low) - 2 * debit,
        max_loss=debit,
        break_even_points=break_evens,
        probability_of_profit=ctx.pop(break_evens),
    )


def build_bull_call_spread(ctx: StrategyContext, strikes: Sequence[float]) -> StrategyShape:
    """Long lower strike call, short higher strike call."""
    low, high = _require_strikes(StrategyKind.BULL_CALL_SPREAD, strikes, 2)
    long_call = ctx.contract(OptionKind.CALL, low)
    short_call = ctx.contract(OptionKind.CALL, high)

    debit = long_call.last_price - short_call.last_price
    break_evens = [low + debit]

    return StrategyShape(
        name="Bull Call Spread",
        description="Long lower strike call, short higher strike call",
        legs=(_leg(1, long_call, LegAction.BUY), _leg(2, short_call, LegAction.SELL)),
        net_debit=debit,
        max_profit=(high - low) - debit,
        max_loss=debit,
        break_even_points=break_evens,
        probability_of_profit=ctx.pop(break_evens),
    )


def build_bear_put_spread(ctx: StrategyContext, strikes: Sequence[float]) -> StrategyShape:
    """Long higher strike put, short lower strike put."""
    low, high = _require_strikes(StrategyKind.BEAR_PUT_SPREAD, strikes, 2)
    long_put = ctx.contract(OptionKind.PUT, high)
    short_put = ctx.contract(OptionKind.PUT, low)

    debit = long_put.last_price - short_put.last_price
    break_evens = [high - debit]

    return StrategyShape(
        name="Bear Put Spread",
        description="Long higher strike put, short lower strike put",
        legs=(_leg(1, long_put, LegAction.BUY), _leg(2, short_put, LegAction.SELL)),
        net_debit=debit,
        max_profit=(high - low) - debit,
        max_loss=debit,
        break_even_points=break_evens,
        # Profits below the break-even
        probability_of_profit=1.0 - ctx.pop(break_evens),
    )


def build_iron_condor(ctx: StrategyContext, strikes: Sequence[float]) -> StrategyShape:
    """Short put spread below and short call spread above the market."""
    k1, k2, k3, k4 = _require_strikes(StrategyKind.IRON_CONDOR, strikes, 4)
    long_put = ctx.contract(OptionKind.PUT, k1)
    short_put = ctx.contract(OptionKind.PUT, k2)
    short_call = ctx.contract(OptionKind.CALL, k3)
    long_call = ctx.contract(OptionKind.CALL, k4)

    credit = (
        short_put.last_price
        - long_put.last_price
        + short_call.last_price
        - long_call.last_price
    )
    lower, upper = k2 - credit, k3 + credit

    # Profits between the break-evens
    pop = max(0.0, ctx.pop([lower]) - ctx.pop([upper]))

    return StrategyShape(
        name="Iron Condor",
        description="Short OTM put and call spreads around the current price",
        legs=(
            _leg(1, long_put, LegAction.BUY),
            _leg(2, short_put, LegAction.SELL),
            _leg(3, short_call, LegAction.SELL),
            _leg(4, long_call, LegAction.BUY),
        ),
        net_debit=-credit,
        max_profit=credit,
        max_loss=max(k2 - k1, k4 - k3) - credit,
        break_even_points=[lower, upper],
        probability_of_profit=pop,
    )


StrategyBuilder = Callable[[StrategyContext, Sequence[float]], StrategyShape]

STRATEGY_BUILDERS: dict[StrategyKind, StrategyBuilder] = {
    StrategyKind.STRADDLE: build_straddle,
    StrategyKind.STRANGLE: build_strangle,
    StrategyKind.BUTTERFLY: build_butterfly,
    StrategyKind.BULL_CALL_SPREAD: build_bull_call_spread,
    StrategyKind.BEAR_PUT_SPREAD: build_bear_put_spread,
    StrategyKind.IRON_CONDOR: build_iron_condor,
}


def build_strategy(
    kind: StrategyKind | str,
    symbol: str,
    strikes: Sequence[float],
    expiration: date,
    current_price: float,
    volatility: float,
    risk_free_rate: float | None = None,
    dividend_yield: float | None = None,
    as_of: datetime | None = None,
) -> OptionStrategy:
    """
    Build a priced multi-leg strategy.

    Args:
        kind: Strategy kind (enum or its string value)
        symbol: Underlying symbol
        strikes: Strikes in ascending order, as many as the kind needs
        expiration: Common expiration for all legs
        current_price: Current underlying price
        volatility: Volatility used to price every leg

    Returns:
        Immutable OptionStrategy snapshot
    """
    try:
        kind = StrategyKind(kind)
    except ValueError as e:
        raise ValidationError(f"Unknown strategy kind: {kind}") from e

    ctx = StrategyContext(
        symbol=symbol,
        expiration=expiration,
        current_price=current_price,
        volatility=volatility,
        risk_free_rate=risk_free_rate,
        dividend_yield=dividend_yield,
        as_of=as_of or datetime.now(UTC),
    )
    shape = STRATEGY_BUILDERS[kind](ctx, strikes)

    logger.debug(
        f"Built {shape.name} on {symbol}: debit={shape.net_debit:.4f}, "
        f"break-evens={shape.break_even_points}"
    )

    return OptionStrategy(
        id=generate_id("strategy"),
        name=shape.name,
        kind=kind,
        description=shape.description,
        underlying_symbol=symbol.upper(),
        legs=shape.legs,
        net_debit=shape.net_debit,
        max_profit=shape.max_profit,
        max_loss=shape.max_loss,
        break_even_points=shape.break_even_points,
        greeks=calculate_strategy_greeks(shape.legs),
        probability_of_profit=shape.probability_of_profit,
        risk_reward_ratio=risk_reward_ratio(shape.max_profit, shape.max_loss),
    )

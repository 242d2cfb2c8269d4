"""
Strategy analysis helpers.

Greeks aggregation across legs and the log-normal probability of profit
estimate used by every strategy builder.
"""

import math
from collections.abc import Sequence

from ...core.config import settings
from ...models.options import Greeks, StrategyLeg
from ..greeks import norm_cdf


def calculate_strategy_greeks(legs: Sequence[StrategyLeg]) -> Greeks:
    """
    Aggregate leg Greeks into strategy Greeks.

    Each leg contributes greek * (+1 buy / -1 sell) * quantity * ratio.
    Implied volatility is the contract-weighted mean across legs.
    """
    totals = dict.fromkeys(("delta", "gamma", "theta", "vega", "rho"), 0.0)
    total_iv = 0.0
    total_contracts = 0

    for leg in legs:
        contracts = leg.quantity * leg.ratio
        weight = leg.sign * contracts
        for name in totals:
            totals[name] += getattr(leg.contract.greeks, name) * weight
        total_iv += leg.contract.greeks.implied_volatility * contracts
        total_contracts += contracts

    return Greeks(
        **totals,
        implied_volatility=total_iv / total_contracts if total_contracts > 0 else 0.0,
    )


def probability_of_profit(
    break_even_points: Sequence[float],
    current_price: float,
    volatility: float,
    days_to_expiration: int,
) -> float:
    """
    Approximate probability of profit.

    For each break-even a z-score is taken against the current price and the
    time-scaled volatility; the result is the mean of 1 - N(z). This is a
    heuristic, not a strategy-specific closed form.
    """
    if not break_even_points or current_price <= 0:
        return 0.0

    time_to_expiration = max(days_to_expiration, 0) / settings.DAYS_PER_YEAR
    standard_deviation = volatility * math.sqrt(time_to_expiration)

    probability = 0.0
    for break_even in break_even_points:
        if standard_deviation <= 0:
            # No diffusion left: the outcome is already decided
            probability += 1.0 if current_price > break_even else 0.0
            continue
        z_score = (break_even - current_price) / (current_price * standard_deviation)
        probability += 1.0 - norm_cdf(z_score)

    return min(probability / len(break_even_points), 1.0)


def risk_reward_ratio(max_profit: float, max_loss: float) -> float:
    """Max profit over max loss; inf for unbounded profit, 0 without risk."""
    return max_profit / max_loss if max_loss > 0 else 0.0

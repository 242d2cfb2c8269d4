"""
Option strategy building and analysis.

The module is organized into focused components:
- builders: one pure builder per strategy kind plus the build_strategy dispatcher
- analyzer: Greeks aggregation and probability of profit
"""

from .analyzer import (
    calculate_strategy_greeks,
    probability_of_profit,
    risk_reward_ratio,
)
from .builders import (
    STRATEGY_BUILDERS,
    StrategyContext,
    StrategyShape,
    build_bear_put_spread,
    build_bull_call_spread,
    build_butterfly,
    build_iron_condor,
    build_straddle,
    build_strangle,
    build_strategy,
)

__all__ = [
    "STRATEGY_BUILDERS",
    "StrategyContext",
    "StrategyShape",
    "build_bear_put_spread",
    "build_bull_call_spread",
    "build_butterfly",
    "build_iron_condor",
    "build_straddle",
    "build_strangle",
    "build_strategy",
    "calculate_strategy_greeks",
    "probability_of_profit",
    "risk_reward_ratio",
]

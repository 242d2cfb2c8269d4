"""
Tests for multi-leg strategy builders and analysis helpers.
"""

import math
from datetime import date

import pytest

from quant_engine.core.exceptions import ValidationError
from quant_engine.models.options import LegAction, OptionKind, StrategyKind
from quant_engine.services.strategies import (
    STRATEGY_BUILDERS,
    build_strategy,
    calculate_strategy_greeks,
    probability_of_profit,
    risk_reward_ratio,
)

pytestmark = pytest.mark.unit

EXPIRY = date(2024, 3, 15)


@pytest.fixture
def build(as_of):
    def _build(kind, strikes, price=195.0, volatility=0.25):
        return build_strategy(kind, "AAPL", strikes, EXPIRY, price, volatility, as_of=as_of)

    return _build


class TestStrategyRegistry:
    def test_every_kind_has_a_builder(self):
        assert set(STRATEGY_BUILDERS) == set(StrategyKind)

    def test_unknown_kind_rejected(self, build):
        with pytest.raises(ValidationError, match="Unknown strategy kind"):
            build("covered_call", [195.0])

    def test_kind_accepts_string_value(self, build):
        strategy = build("straddle", [195.0])
        assert strategy.kind == StrategyKind.STRADDLE
        assert strategy.id.startswith("strategy_")


class TestStraddle:
    def test_structure_and_payoff(self, build):
        strategy = build(StrategyKind.STRADDLE, [195.0])
        call, put = (leg.contract for leg in strategy.legs)
        cost = call.last_price + put.last_price

        assert [leg.action for leg in strategy.legs] == [LegAction.BUY, LegAction.BUY]
        assert call.kind == OptionKind.CALL and put.kind == OptionKind.PUT
        assert strategy.net_debit == pytest.approx(cost)
        assert strategy.max_loss == pytest.approx(cost)
        assert strategy.unlimited_profit
        assert strategy.break_even_points == pytest.approx([195.0 - cost, 195.0 + cost])
        assert math.isinf(strategy.risk_reward_ratio)

    def test_defaults_to_current_price_strike(self, build):
        strategy = build(StrategyKind.STRADDLE, [], price=187.5)
        assert {leg.contract.strike for leg in strategy.legs} == {187.5}

    def test_aggregate_greeks(self, build):
        strategy = build(StrategyKind.STRADDLE, [195.0])
        call, put = (leg.contract for leg in strategy.legs)
        assert strategy.greeks.delta == pytest.approx(call.greeks.delta + put.greeks.delta)
        assert strategy.greeks.gamma == pytest.approx(2 * call.greeks.gamma)
        assert strategy.greeks.implied_volatility == pytest.approx(0.25)


class TestStrangle:
    def test_put_below_call_above(self, build):
        strategy = build(StrategyKind.STRANGLE, [185.0, 205.0])
        call, put = (leg.contract for leg in strategy.legs)
        cost = call.last_price + put.last_price

        assert call.strike == 205.0 and put.strike == 185.0
        assert strategy.break_even_points == pytest.approx([185.0 - cost, 205.0 + cost])
        assert strategy.max_loss == pytest.approx(cost)

    def test_requires_two_ascending_strikes(self, build):
        with pytest.raises(ValidationError):
            build(StrategyKind.STRANGLE, [195.0])
        with pytest.raises(ValidationError, match="ascending"):
            build(StrategyKind.STRANGLE, [205.0, 185.0])


class TestButterfly:
    def test_legs_and_payoff(self, build):
        strategy = build(StrategyKind.BUTTERFLY, [185.0, 195.0, 205.0])
        low, middle, high = (leg.contract for leg in strategy.legs)
        debit = low.last_price - 2 * middle.last_price + high.last_price

        assert [leg.quantity for leg in strategy.legs] == [1, 2, 1]
        assert strategy.legs[1].action == LegAction.SELL
        assert strategy.net_debit == pytest.approx(debit)
        assert strategy.max_loss == pytest.approx(debit)
        assert strategy.max_profit == pytest.approx(20.0 - 2 * debit)
        assert strategy.break_even_points == pytest.approx([185.0 + debit, 205.0 - debit])

    def test_short_middle_leg_weights_greeks(self, build):
        strategy = build(StrategyKind.BUTTERFLY, [185.0, 195.0, 205.0])
        low, middle, high = (leg.contract.greeks for leg in strategy.legs)
        assert strategy.greeks.gamma == pytest.approx(low.gamma - 2 * middle.gamma + high.gamma)
        assert strategy.greeks.gamma < 0

    def test_non_positive_strike_rejected(self, build):
        with pytest.raises(ValidationError, match="positive"):
            build(StrategyKind.BUTTERFLY, [0.0, 195.0, 205.0])


class TestSpreads:
    def test_bull_call_spread(self, build):
        strategy = build(StrategyKind.BULL_CALL_SPREAD, [190.0, 200.0])
        long_call, short_call = (leg.contract for leg in strategy.legs)
        debit = long_call.last_price - short_call.last_price

        assert debit > 0
        assert strategy.max_profit == pytest.approx(10.0 - debit)
        assert strategy.break_even_points == pytest.approx([190.0 + debit])

    def test_bear_put_spread(self, build):
        strategy = build(StrategyKind.BEAR_PUT_SPREAD, [190.0, 200.0])
        long_put, short_put = (leg.contract for leg in strategy.legs)

        assert long_put.strike == 200.0 and short_put.strike == 190.0
        assert strategy.break_even_points == pytest.approx([200.0 - strategy.net_debit])
        assert 0.0 <= strategy.probability_of_profit <= 1.0

    def test_iron_condor_is_a_credit(self, build):
        strategy = build(StrategyKind.IRON_CONDOR, [170.0, 180.0, 210.0, 220.0])
        credit = strategy.max_profit

        assert credit > 0
        assert strategy.net_debit == pytest.approx(-credit)
        assert strategy.max_loss == pytest.approx(10.0 - credit)
        lower, upper = strategy.break_even_points
        assert lower == pytest.approx(180.0 - credit)
        assert upper == pytest.approx(210.0 + credit)
        assert 0.0 < strategy.probability_of_profit < 1.0


class TestProbabilityOfProfit:
    def test_range(self, build):
        for kind, strikes in [
            (StrategyKind.STRADDLE, [195.0]),
            (StrategyKind.STRANGLE, [185.0, 205.0]),
            (StrategyKind.BUTTERFLY, [185.0, 195.0, 205.0]),
        ]:
            assert 0.0 <= build(kind, strikes).probability_of_profit <= 1.0

    def test_formula(self):
        pop = probability_of_profit([110.0], 100.0, 0.2, 365)
        # z = (110 - 100) / (100 * 0.2) = 0.5 -> 1 - N(0.5)
        assert pop == pytest.approx(0.3085, abs=1e-4)

    def test_expired_is_decided(self):
        assert probability_of_profit([90.0], 100.0, 0.2, 0) == 1.0
        assert probability_of_profit([110.0], 100.0, 0.2, 0) == 0.0

    def test_no_break_evens(self):
        assert probability_of_profit([], 100.0, 0.2, 30) == 0.0


class TestHelpers:
    def test_risk_reward_ratio(self):
        assert risk_reward_ratio(300.0, 100.0) == 3.0
        assert risk_reward_ratio(300.0, 0.0) == 0.0

    def test_empty_legs(self):
        greeks = calculate_strategy_greeks([])
        assert greeks.delta == 0.0
        assert greeks.implied_volatility == 0.0

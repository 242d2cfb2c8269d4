"""
End-to-end risk pipeline: a tick stream drives protective orders through
the dispatcher, then rules, analytics and the risk report are computed on
the resulting portfolio.
"""

from datetime import UTC, datetime, timedelta

import pytest

from quant_engine.models.risk import AlertType, OrderStatus, PriceTick, RiskEvent
from quant_engine.services.price_feed import PriceTickDispatcher

pytestmark = pytest.mark.integration

T0 = datetime(2024, 1, 2, 14, 30, tzinfo=UTC)


async def replay(prices):
    """Yield ticks for (symbol, price) pairs one second apart."""
    for i, (symbol, price) in enumerate(prices):
        yield PriceTick(symbol=symbol, price=price, timestamp=T0 + timedelta(seconds=i))


class TestRiskPipeline:
    @pytest.mark.asyncio
    async def test_tick_stream_to_report(
        self,
        risk_service,
        price_feed,
        sample_positions,
        value_history,
        sample_transactions,
    ):
        events = []
        for event in RiskEvent:
            risk_service.on(event, lambda payload, event=event: events.append(event))

        trailing = risk_service.create_stop_loss(
            "AAPL", 100, 150.0, trailing=True, trailing_percent=5.0
        )
        fixed = risk_service.create_stop_loss("JPM", 80, 130.0)
        target = risk_service.create_take_profit("XOM", 120, 115.0)
        spare = risk_service.create_take_profit("MSFT", 50, 400.0)
        assert price_feed.symbols == {"AAPL", "JPM", "XOM", "MSFT"}

        dispatcher = PriceTickDispatcher(risk_service.on_price_tick)
        await dispatcher.run(
            replay(
                [
                    ("AAPL", 160.0),
                    ("JPM", 134.0),
                    ("XOM", 112.0),
                    ("AAPL", 170.0),
                    ("XOM", 116.0),
                    ("AAPL", 165.0),
                    ("JPM", 131.0),
                    ("AAPL", 161.0),
                ]
            )
        )

        assert dispatcher.processed_count == 8
        assert dispatcher.error_count == 0

        # 170 * 0.95 = 161.5, so the final AAPL tick at 161 fires the trailing stop
        aapl = risk_service.get_order(trailing.id)
        assert aapl.status == OrderStatus.TRIGGERED
        assert aapl.high_water_mark == 170.0
        assert aapl.triggered_price == 161.0
        assert risk_service.get_order(fixed.id).is_active
        assert risk_service.get_order(target.id).status == OrderStatus.TRIGGERED
        assert risk_service.get_order(spare.id).is_active

        assert events.count(RiskEvent.ORDER_CREATED) == 4
        assert events.count(RiskEvent.STOP_LOSS_TRIGGERED) == 1
        assert events.count(RiskEvent.TAKE_PROFIT_TRIGGERED) == 1

        assert risk_service.cancel(spare.id)
        assert not risk_service.cancel(target.id)
        assert events.count(RiskEvent.ORDER_CANCELLED) == 1

        prices = {"AAPL": 161.0, "JPM": 131.0, "XOM": 116.0}
        rules = risk_service.check_risk_rules(sample_positions, prices)
        # JPM is down (131 - 140) / 140 = 6.4%, past the 5% stop-loss rule
        assert any(
            a.type == AlertType.STOP_LOSS and a.symbol == "JPM" for a in rules.alerts
        )

        report = risk_service.generate_report(
            "paper-1", sample_positions, prices, history=value_history
        )
        risks = {r.symbol: r for r in report.position_risks}
        assert risks["JPM"].stop_loss_price == 130.0
        assert risks["AAPL"].stop_loss_price is None
        assert not report.compliance.stop_loss
        assert report.risk_metrics is not None
        assert report.portfolio_risk.var_method == "parametric"
        assert all(not a.acknowledged for a in report.alerts)

        analytics = risk_service.analytics.generate_portfolio_analytics(
            sample_positions, value_history, sample_transactions
        )
        assert analytics.performance.total_trades == 2
        assert analytics.performance.max_drawdown == pytest.approx(
            report.portfolio_risk.max_drawdown
        )

"""Tests for the protective order arena."""

import threading

import pytest

from quant_engine.core.exceptions import ConflictError
from quant_engine.models.risk import OrderKind, OrderStatus, StopLossOrder, TakeProfitOrder
from quant_engine.services.order_registry import OrderRegistry

pytestmark = pytest.mark.unit


@pytest.fixture
def registry():
    return OrderRegistry()


def stop_loss(order_id="sl_000000000001", symbol="AAPL", trigger=95.0, **kwargs):
    return StopLossOrder(id=order_id, symbol=symbol, quantity=10, trigger_price=trigger, **kwargs)


def take_profit(order_id="tp_000000000001", symbol="AAPL", target=120.0):
    return TakeProfitOrder(id=order_id, symbol=symbol, quantity=10, target_price=target)


class TestRegistration:
    def test_add_and_get(self, registry):
        order = registry.add(stop_loss())
        assert registry.get(order.id) == order
        assert order.id in registry
        assert len(registry) == 1

    def test_duplicate_id_rejected(self, registry):
        registry.add(stop_loss())
        with pytest.raises(ConflictError):
            registry.add(stop_loss())

    def test_unknown_order(self, registry):
        assert registry.get("sl_missing") is None

    def test_symbol_index_and_filters(self, registry):
        registry.add(stop_loss("sl_1"))
        registry.add(take_profit("tp_1"))
        registry.add(stop_loss("sl_2", symbol="MSFT"))

        assert [o.id for o in registry.orders_for_symbol("AAPL")] == ["sl_1", "tp_1"]
        assert [o.id for o in registry.orders_for_symbol("AAPL", OrderKind.TAKE_PROFIT)] == ["tp_1"]
        assert {o.id for o in registry.all_orders(OrderKind.STOP_LOSS)} == {"sl_1", "sl_2"}
        assert registry.orders_for_symbol("TSLA") == []
        assert sorted(registry.symbols()) == ["AAPL", "MSFT"]


class TestTransitions:
    def test_active_to_triggered(self, registry):
        registry.add(stop_loss())
        updated = registry.transition("sl_000000000001", OrderStatus.TRIGGERED, triggered_price=94.0)

        assert updated.status == OrderStatus.TRIGGERED
        assert updated.triggered_price == 94.0
        assert registry.get(updated.id).status == OrderStatus.TRIGGERED

    def test_terminal_orders_never_change(self, registry):
        registry.add(stop_loss())
        assert registry.transition("sl_000000000001", OrderStatus.CANCELLED) is not None
        assert registry.transition("sl_000000000001", OrderStatus.TRIGGERED) is None
        assert registry.transition("sl_000000000001", OrderStatus.CANCELLED) is None
        assert registry.get("sl_000000000001").status == OrderStatus.CANCELLED

    def test_cannot_transition_to_active(self, registry):
        registry.add(stop_loss())
        with pytest.raises(ValueError):
            registry.transition("sl_000000000001", OrderStatus.ACTIVE)

    def test_condition_checked_on_current_snapshot(self, registry):
        registry.add(stop_loss(trigger=95.0))
        assert registry.transition(
            "sl_000000000001", OrderStatus.TRIGGERED, condition=lambda o: 96.0 <= o.trigger_price
        ) is None
        assert registry.get("sl_000000000001").is_active

    def test_unknown_order_transition(self, registry):
        assert registry.transition("sl_missing", OrderStatus.CANCELLED) is None

    def test_concurrent_transitions_have_one_winner(self, registry):
        registry.add(stop_loss())
        barrier = threading.Barrier(8)
        results = []

        def race(status):
            barrier.wait()
            results.append(registry.transition("sl_000000000001", status))

        threads = [
            threading.Thread(
                target=race,
                args=(OrderStatus.TRIGGERED if i % 2 else OrderStatus.CANCELLED,),
            )
            for i in range(8)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        winners = [r for r in results if r is not None]
        assert len(winners) == 1
        assert registry.get("sl_000000000001").status == winners[0].status


class TestUpdateActive:
    def test_updates_active_order(self, registry):
        registry.add(stop_loss(trailing=True, trailing_percent=5.0))
        updated = registry.update_active(
            "sl_000000000001", lambda o: {"trigger_price": 97.0, "high_water_mark": 102.0}
        )
        assert updated.trigger_price == 97.0
        assert updated.updated_at >= updated.created_at

    def test_no_changes_returns_current(self, registry):
        order = registry.add(stop_loss())
        assert registry.update_active(order.id, lambda o: None) is order

    def test_terminal_order_not_updated(self, registry):
        registry.add(stop_loss())
        registry.transition("sl_000000000001", OrderStatus.TRIGGERED)
        assert registry.update_active("sl_000000000001", lambda o: {"trigger_price": 1.0}) is None
        assert registry.get("sl_000000000001").trigger_price == 95.0


class TestHousekeeping:
    def test_symbol_lock_is_stable(self, registry):
        assert registry.symbol_lock("AAPL") is registry.symbol_lock("AAPL")
        assert registry.symbol_lock("AAPL") is not registry.symbol_lock("MSFT")

    def test_statistics(self, registry):
        registry.add(stop_loss("sl_1"))
        registry.add(take_profit("tp_1"))
        registry.transition("tp_1", OrderStatus.CANCELLED)

        stats = registry.get_statistics()
        assert stats["total_orders"] == 2
        assert stats["status_breakdown"] == {"active": 1, "triggered": 0, "cancelled": 1}

    def test_clear(self, registry):
        registry.add(stop_loss())
        registry.clear()
        assert len(registry) == 0

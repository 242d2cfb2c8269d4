"""
Protective order registry.

Orders live in an arena keyed by id. Each entry holds the current immutable
snapshot and its own lock, so status changes are an atomic compare-and-set:
when a price check and a cancel race on the same order, the first writer
wins and the loser observes a terminal status and does nothing.
"""

import logging
import threading
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime

from ..core.exceptions import ConflictError
from ..models.risk import OrderKind, OrderStatus, ProtectiveOrder

logger = logging.getLogger(__name__)

TERMINAL_STATES = frozenset({OrderStatus.TRIGGERED, OrderStatus.CANCELLED})


@dataclass
class OrderEntry:
    """Arena slot: the latest snapshot of one order."""

    order: ProtectiveOrder
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)


class OrderRegistry:
    """
    Thread-safe store of stop-loss and take-profit orders.

    Provides:
    - Atomic ACTIVE -> TRIGGERED / CANCELLED transitions
    - In-place updates of active orders (trailing stops)
    - Per-symbol index and per-symbol locks for tick processing
    """

    def __init__(self) -> None:
        self._entries: dict[str, OrderEntry] = {}
        self._by_symbol: dict[str, list[str]] = defaultdict(list)
        self._symbol_locks: dict[str, threading.RLock] = {}
        self._lock = threading.RLock()

    def add(self, order: ProtectiveOrder) -> ProtectiveOrder:
        with self._lock:
            if order.id in self._entries:
                raise ConflictError(f"Order {order.id} already exists")
            self._entries[order.id] = OrderEntry(order=order)
            self._by_symbol[order.symbol].append(order.id)
        logger.info(f"Registered {order.kind.value} order {order.id} for {order.symbol}")
        return order

    def get(self, order_id: str) -> ProtectiveOrder | None:
        with self._lock:
            entry = self._entries.get(order_id)
        return entry.order if entry else None

    def __contains__(self, order_id: str) -> bool:
        with self._lock:
            return order_id in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def symbol_lock(self, symbol: str) -> threading.RLock:
        """Lock serializing tick processing for one symbol."""
        with self._lock:
            lock = self._symbol_locks.get(symbol)
            if lock is None:
                lock = self._symbol_locks[symbol] = threading.RLock()
            return lock

    def symbols(self) -> list[str]:
        with self._lock:
            return list(self._by_symbol)

    def orders_for_symbol(
        self,
        symbol: str,
        kind: OrderKind | None = None,
        status: OrderStatus | None = None,
    ) -> list[ProtectiveOrder]:
        """Orders for a symbol in creation order."""
        with self._lock:
            entries = [self._entries[order_id] for order_id in self._by_symbol.get(symbol, [])]
        return self._filter([entry.order for entry in entries], kind, status)

    def all_orders(
        self, kind: OrderKind | None = None, status: OrderStatus | None = None
    ) -> list[ProtectiveOrder]:
        with self._lock:
            orders = [entry.order for entry in self._entries.values()]
        return self._filter(orders, kind, status)

    def transition(
        self,
        order_id: str,
        to_status: OrderStatus,
        condition: Callable[[ProtectiveOrder], bool] | None = None,
        **changes,
    ) -> ProtectiveOrder | None:
        """
        Move an ACTIVE order to a terminal status.

        Args:
            order_id: Order to transition
            to_status: TRIGGERED or CANCELLED
            condition: Optional check evaluated on the current snapshot under
                the entry lock
            **changes: Extra fields to set on the new snapshot

        Returns:
            The new snapshot, or None if the order is unknown, already
            terminal, or the condition did not hold
        """
        if to_status not in TERMINAL_STATES:
            raise ValueError(f"Cannot transition to {to_status}")

        with self._lock:
            entry = self._entries.get(order_id)
        if entry is None:
            return None

        with entry.lock:
            current = entry.order
            if current.status != OrderStatus.ACTIVE:
                logger.debug(
                    f"Order {order_id} already {current.status.value}, ignoring {to_status.value}"
                )
                return None
            if condition is not None and not condition(current):
                return None
            now = datetime.now(UTC)
            updated = current.model_copy(
                update={"status": to_status, "updated_at": now, **changes}
            )
            entry.order = updated

        logger.info(
            f"Order {order_id} transitioned from {current.status.value} to {to_status.value}"
        )
        return updated

    def update_active(
        self,
        order_id: str,
        updater: Callable[[ProtectiveOrder], dict | None],
    ) -> ProtectiveOrder | None:
        """
        Apply field changes to an ACTIVE order.

        The updater receives the current snapshot and returns the fields to
        change, or None to leave it untouched.
        """
        with self._lock:
            entry = self._entries.get(order_id)
        if entry is None:
            return None

        with entry.lock:
            current = entry.order
            if current.status != OrderStatus.ACTIVE:
                return None
            changes = updater(current)
            if not changes:
                return current
            entry.order = current.model_copy(
                update={**changes, "updated_at": datetime.now(UTC)}
            )
            return entry.order

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._by_symbol.clear()
            self._symbol_locks.clear()

    def get_statistics(self) -> dict:
        orders = self.all_orders()
        status_counts = {status.value: 0 for status in OrderStatus}
        for order in orders:
            status_counts[order.status.value] += 1
        return {
            "total_orders": len(orders),
            "symbols": len(self.symbols()),
            "status_breakdown": status_counts,
        }

    @staticmethod
    def _filter(
        orders: list[ProtectiveOrder],
        kind: OrderKind | None,
        status: OrderStatus | None,
    ) -> list[ProtectiveOrder]:
        return [
            order
            for order in orders
            if (kind is None or order.kind == kind)
            and (status is None or order.status == status)
        ]

"""
Risk alert log and event publication.

The alert log is append-only and safe under concurrent appends.
Subscribers register callbacks per event; a failing callback is logged and
never affects other subscribers or the publisher.
"""

import logging
import threading
from collections import defaultdict
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from ..core.id_utils import generate_id
from ..models.risk import AlertType, RiskAlert, RiskEvent, Severity

logger = logging.getLogger(__name__)

EventCallback = Callable[[Any], None]

_SEVERITY_LOG_LEVELS = {
    Severity.LOW: logging.DEBUG,
    Severity.MEDIUM: logging.INFO,
    Severity.HIGH: logging.WARNING,
    Severity.CRITICAL: logging.ERROR,
}


class RiskEventEmitter:
    """Callback registry keyed by RiskEvent."""

    def __init__(self) -> None:
        self._callbacks: dict[RiskEvent, list[EventCallback]] = defaultdict(list)
        self._lock = threading.Lock()

    def on(self, event: RiskEvent | str, callback: EventCallback) -> None:
        with self._lock:
            self._callbacks[RiskEvent(event)].append(callback)

    def off(self, event: RiskEvent | str, callback: EventCallback) -> bool:
        """Remove one registration of a callback. Returns False if absent."""
        with self._lock:
            callbacks = self._callbacks.get(RiskEvent(event), [])
            if callback in callbacks:
                callbacks.remove(callback)
                return True
            return False

    def emit(self, event: RiskEvent, payload: Any) -> None:
        with self._lock:
            callbacks = list(self._callbacks.get(event, []))
        for callback in callbacks:
            try:
                callback(payload)
            except Exception as e:
                logger.error(f"Error in event callback for {event.value}: {e}", exc_info=True)

    def listener_count(self, event: RiskEvent) -> int:
        with self._lock:
            return len(self._callbacks.get(event, []))


class AlertLog:
    """Append-only log of risk alerts."""

    def __init__(self, emitter: RiskEventEmitter | None = None) -> None:
        self.emitter = emitter
        self._alerts: list[RiskAlert] = []
        self._index: dict[str, int] = {}
        self._lock = threading.Lock()

    def record(
        self,
        alert_type: AlertType,
        severity: Severity,
        message: str,
        symbol: str | None = None,
        source_id: str | None = None,
        data: dict[str, Any] | None = None,
    ) -> RiskAlert:
        """Create, append and publish an alert."""
        alert = RiskAlert(
            id=generate_id("alert"),
            type=alert_type,
            severity=severity,
            symbol=symbol,
            message=message,
            source_id=source_id,
            data=data or {},
        )
        self.append(alert)
        return alert

    def append(self, alert: RiskAlert) -> None:
        with self._lock:
            self._index[alert.id] = len(self._alerts)
            self._alerts.append(alert)

        logger.log(
            _SEVERITY_LOG_LEVELS.get(alert.severity, logging.INFO),
            f"Risk alert [{alert.severity.value.upper()}] {alert.type.value}: {alert.message}",
        )
        if self.emitter is not None:
            self.emitter.emit(RiskEvent.RISK_ALERT, alert)

    def acknowledge(self, alert_id: str) -> bool:
        with self._lock:
            position = self._index.get(alert_id)
            if position is None:
                return False
            alert = self._alerts[position]
            if not alert.acknowledged:
                self._alerts[position] = alert.model_copy(
                    update={"acknowledged": True, "acknowledged_at": datetime.now(UTC)}
                )
            return True

    def get(self, alert_id: str) -> RiskAlert | None:
        with self._lock:
            position = self._index.get(alert_id)
            return self._alerts[position] if position is not None else None

    def active(self) -> list[RiskAlert]:
        """Unacknowledged alerts, oldest first."""
        with self._lock:
            return [alert for alert in self._alerts if not alert.acknowledged]

    def all(self) -> list[RiskAlert]:
        with self._lock:
            return list(self._alerts)

    def __len__(self) -> int:
        with self._lock:
            return len(self._alerts)

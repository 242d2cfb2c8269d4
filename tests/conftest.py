from datetime import UTC, date, datetime, timedelta

import pytest

from quant_engine.models.portfolio import (
    PortfolioHistoryPoint,
    PortfolioPosition,
    Transaction,
    TransactionType,
)
from quant_engine.services.portfolio_analytics import PortfolioAnalyticsService
from quant_engine.services.portfolio_risk_metrics import PortfolioRiskCalculator
from quant_engine.services.price_feed import LoggingPriceFeedSubscriber
from quant_engine.services.risk_management import RiskManagementService


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Integration tests")


@pytest.fixture
def as_of():
    """Fixed valuation time so expirations are deterministic."""
    return datetime(2024, 1, 2, 16, 0, tzinfo=UTC)


@pytest.fixture
def risk_calculator():
    return PortfolioRiskCalculator()


@pytest.fixture
def analytics_service(risk_calculator):
    return PortfolioAnalyticsService(risk_calculator=risk_calculator)


@pytest.fixture
def price_feed():
    return LoggingPriceFeedSubscriber()


@pytest.fixture
def risk_service(price_feed, analytics_service):
    """Fresh risk service per test, isolated from the global instance."""
    return RiskManagementService(price_feed=price_feed, analytics=analytics_service)


@pytest.fixture
def sample_positions():
    return [
        PortfolioPosition(
            symbol="AAPL",
            quantity=100,
            average_cost=150.0,
            current_price=160.0,
            previous_close=158.0,
            sector="Technology",
        ),
        PortfolioPosition(
            symbol="MSFT",
            quantity=50,
            average_cost=300.0,
            current_price=310.0,
            previous_close=305.0,
            sector="Technology",
        ),
        PortfolioPosition(
            symbol="JPM",
            quantity=80,
            average_cost=140.0,
            current_price=135.0,
            previous_close=136.0,
            sector="Financials",
        ),
        PortfolioPosition(
            symbol="XOM",
            quantity=120,
            average_cost=100.0,
            current_price=110.0,
            previous_close=109.0,
            sector="Energy",
        ),
    ]


@pytest.fixture
def value_history():
    """Sixty days of portfolio values with a drawdown in the middle."""
    start = date(2024, 1, 1)
    values = []
    value = 100_000.0
    for i in range(60):
        if i < 20:
            value *= 1.004
        elif i < 35:
            value *= 0.992
        else:
            value *= 1.003 if i % 2 else 0.999
        values.append(PortfolioHistoryPoint(day=start + timedelta(days=i), value=value))
    return values


@pytest.fixture
def sample_transactions():
    t0 = datetime(2024, 1, 2, 15, 0, tzinfo=UTC)

    def txn(symbol, side, quantity, price, day, commission=0.0):
        return Transaction(
            symbol=symbol,
            type=side,
            quantity=quantity,
            price=price,
            commission=commission,
            executed_at=t0 + timedelta(days=day),
        )

    return [
        txn("AAPL", TransactionType.BUY, 10, 100.0, 0, commission=1.0),
        txn("AAPL", TransactionType.SELL, 10, 110.0, 5, commission=1.0),
        txn("MSFT", TransactionType.BUY, 5, 300.0, 1),
        txn("MSFT", TransactionType.SELL, 5, 290.0, 3),
        txn("XOM", TransactionType.BUY, 20, 100.0, 2),
    ]

"""
Tests for order state machine.

Ensures proper lifecycle transitions and fill tracking.
"""

import pytest

from core.exceptions import InvalidTransition
from core.order_state import Order, OrderStatus


class TestOrder:
    """Test Order dataclass"""

    def test_order_creation(self):
        order = Order(symbol="BTC", side="buy", size=0.1, decision_id="d1")

        assert order.status == OrderStatus.PENDING.value
        assert order.order_type == "market"
        assert order.created_at is not None
        assert order.is_terminal() is False

    def test_order_requires_symbol(self):
        with pytest.raises(ValueError, match="symbol is required"):
            Order(symbol="", side="buy", size=0.1)

    def test_order_requires_size(self):
        with pytest.raises(ValueError, match="size must be positive"):
            Order(symbol="BTC", side="buy", size=0)

    def test_limit_requires_price(self):
        with pytest.raises(ValueError, match="require a price"):
            Order(symbol="BTC", side="buy", size=0.1, order_type="limit")

    def test_stop_limit_requires_stop_price(self):
        with pytest.raises(ValueError, match="stop price"):
            Order(symbol="BTC", side="sell", size=0.1, order_type="stop_limit", price=49_000)


class TestTransitions:
    def test_full_fill(self):
        order = Order(symbol="BTC", side="buy", size=0.1)
        order.submit("PAPER-1")
        order.fill(50_000)

        assert order.status == "filled"
        assert order.filled_size == pytest.approx(0.1)
        assert order.average_fill_price == 50_000
        assert order.completed_at is not None
        assert order.fill_percent() == pytest.approx(100.0)

    def test_partial_fills_average_price(self):
        order = Order(symbol="BTC", side="buy", size=1.0)
        order.submit("X-1")

        order.partially_fill(100.0, 0.4)
        assert order.status == "partially_filled"
        assert order.remaining_size() == pytest.approx(0.6)

        order.partially_fill(110.0, 0.6)
        assert order.status == "filled"
        assert order.average_fill_price == pytest.approx(106.0)

    def test_no_regression_from_terminal(self):
        order = Order(symbol="BTC", side="buy", size=0.1)
        order.submit("X-1")
        order.fill(50_000)

        with pytest.raises(InvalidTransition):
            order.cancel()

    def test_fail_records_error(self):
        order = Order(symbol="BTC", side="sell", size=0.1)
        order.fail("Exchange write operation not supported: place_order")

        assert order.status == "failed"
        assert order.is_terminal()
        assert "not supported" in order.error

    def test_cannot_fill_before_submit(self):
        order = Order(symbol="BTC", side="buy", size=0.1)
        with pytest.raises(InvalidTransition):
            order.fill(50_000)

    def test_to_dict(self):
        order = Order(symbol="ETH", side="sell", size=2.0, position_id="p1")
        data = order.to_dict()
        assert data["position_id"] == "p1"
        assert data["status"] == "pending"
        assert data["fill_percent"] == 0.0

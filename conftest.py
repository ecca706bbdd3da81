"""
Pytest fixtures shared by all service tests
"""

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from order_service.broker import BrokerState


class FakeOrderStore:
    """In-memory stand-in for OrderStore (ids assigned like a SERIAL column)"""

    def __init__(self):
        self.rows = []
        self._next_id = 1
        self.fail = False

    async def list_orders(self):
        if self.fail:
            raise OSError("database unavailable")
        return sorted(self.rows, key=lambda r: r["order_date"], reverse=True)

    async def create_order(self, product_name, quantity, price, order_date=None):
        if self.fail:
            raise OSError("database unavailable")
        row = {
            "id": self._next_id,
            "product_name": product_name,
            "quantity": quantity,
            "price": float(price),
            "order_date": (order_date or datetime.now(timezone.utc)).isoformat(),
        }
        self._next_id += 1
        self.rows.append(row)
        return row

    async def dispose(self):
        pass


@pytest.fixture
def fake_store():
    return FakeOrderStore()


@pytest.fixture
def stub_consumer():
    """Broker consumer that never touches the network"""
    consumer = MagicMock()
    consumer.state = BrokerState.CONNECTED
    consumer.stop = AsyncMock()
    return consumer

import pytest
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

from payment_relay.models import CreateOrderRequest, RelayConfig
from payment_relay.provider import ProviderClient
from payment_relay.relay import PaymentOrderRelay
from payment_relay.store import InMemoryOrderStore

SECRET = "s3cret-signing-key-do-not-log"


class FakeClock:
    def __init__(self):
        self.now = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


def make_config(**overrides) -> RelayConfig:
    values = {
        "api_key": "pub-cert-sn",
        "api_secret": SECRET,
        "order_url": "https://provider.test/binancepay/openapi/v2/order",
        "timeout_seconds": 10.0,
        "in_flight_window_seconds": 60.0,
        "max_attempts": 3,
    }
    values.update(overrides)
    return RelayConfig(**values)


def order_request(amount=49.99, key="order-abc", currency="USD") -> CreateOrderRequest:
    return CreateOrderRequest(amount=amount, currency=currency, idempotencyKey=key)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return InMemoryOrderStore(clock=clock)


@pytest.fixture
def provider():
    mock = AsyncMock(spec=ProviderClient)
    mock.create_order.return_value = "https://pay.example/abc"
    return mock


@pytest.fixture
def relay(store, provider):
    return PaymentOrderRelay(make_config(), store, provider=provider)

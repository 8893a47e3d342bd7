import json
from decimal import Decimal

import httpx
import pytest

from payment_relay.errors import ProviderRejected, TransportFailure
from payment_relay.provider import ProviderClient
from payment_relay.signing import NonceSource, sign_payload

from conftest import SECRET, make_config


def client_with(handler, **config):
    return ProviderClient(
        make_config(**config),
        nonces=NonceSource(clock=lambda: 1700000000.0),
        transport=httpx.MockTransport(handler),
    )


def success(request):
    return httpx.Response(200, json={
        "status": "SUCCESS",
        "code": "000000",
        "data": {"checkoutUrl": "https://pay.example/abc", "qrContent": "https://pay.example/qr"},
    })


def test_payload_has_fixed_two_decimal_amount():
    client = client_with(success)
    payload = client.build_payload("abc123", Decimal("5"), "USD")

    assert payload["merchantTradeNo"] == "abc123"
    assert payload["totalAmount"] == "5.00"
    assert payload["currency"] == "USD"
    assert payload["goods"]["referenceGoodsId"] == "ArocShop"


def test_refuses_plain_http_endpoint():
    with pytest.raises(ValueError):
        ProviderClient(make_config(order_url="http://provider.test/order"))


def test_plain_http_allowed_when_insecure_is_enabled():
    ProviderClient(make_config(order_url="http://localhost:8000/_provider/order", allow_insecure=True))


@pytest.mark.asyncio
async def test_create_order_sends_signed_request():
    captured = []

    def handler(request):
        captured.append(request)
        return success(request)

    pay_url = await client_with(handler).create_order("abc123", Decimal("49.99"), "USD")

    assert pay_url == "https://pay.example/abc"
    request = captured[0]
    body = request.content.decode()
    assert json.loads(body)["totalAmount"] == "49.99"
    assert request.headers["BinancePay-Timestamp"] == "1700000000000"
    assert request.headers["BinancePay-Certificate-SN"] == "pub-cert-sn"
    assert request.headers["BinancePay-Signature"] == sign_payload(SECRET, body, "1700000000000")
    assert SECRET not in body
    assert SECRET not in str(request.headers)


@pytest.mark.asyncio
async def test_falls_back_to_qr_content():
    def handler(request):
        return httpx.Response(200, json={"status": "SUCCESS", "data": {"qrContent": "https://pay.example/qr"}})

    assert await client_with(handler).create_order("abc", Decimal("1.00"), "USD") == "https://pay.example/qr"


@pytest.mark.asyncio
async def test_provider_failure_payload_is_rejected():
    def handler(request):
        return httpx.Response(400, json={"status": "FAIL", "code": "400201", "errorMessage": "bad goods"})

    with pytest.raises(ProviderRejected) as exc:
        await client_with(handler).create_order("abc", Decimal("1.00"), "USD")

    assert exc.value.provider_code == "400201"
    assert exc.value.provider_message == "bad goods"
    assert "bad goods" not in exc.value.message


@pytest.mark.asyncio
async def test_timeout_is_transport_failure():
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    with pytest.raises(TransportFailure) as exc:
        await client_with(handler).create_order("abc", Decimal("1.00"), "USD")
    assert exc.value.reason == "timeout"


@pytest.mark.asyncio
async def test_connection_error_is_transport_failure():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(TransportFailure) as exc:
        await client_with(handler).create_order("abc", Decimal("1.00"), "USD")
    assert exc.value.reason == "connection_error"


@pytest.mark.asyncio
@pytest.mark.parametrize("response", [
    httpx.Response(502, text="<html>bad gateway</html>"),
    httpx.Response(200, json=["not", "an", "object"]),
    httpx.Response(200, json={"data": {}}),
    httpx.Response(200, json={"status": "SUCCESS", "data": {}}),
    httpx.Response(200, json={"status": "SUCCESS", "data": "oops"}),
    httpx.Response(200, json={"status": "SUCCESS", "data": ["x"]}),
    httpx.Response(200, json={"status": "SUCCESS", "data": 5}),
])
async def test_malformed_responses_are_transport_failures(response):
    with pytest.raises(TransportFailure) as exc:
        await client_with(lambda request: response).create_order("abc", Decimal("1.00"), "USD")
    assert exc.value.reason == "malformed_response"

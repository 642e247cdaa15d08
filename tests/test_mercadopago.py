import pytest
import requests

from config import settings
from marketplace.errors import GatewayError
from marketplace.mercadopago import MercadoPagoClient, build_preference_body


class FakeResponse:
    def __init__(self, status_code, body):
        self.status_code = status_code
        self._body = body
        self.text = str(body)

    def json(self):
        if isinstance(self._body, Exception):
            raise self._body
        return self._body


class FakeSession:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.requests = []

    def request(self, **kwargs):
        self.requests.append(kwargs)
        if self.error:
            raise self.error
        return self.response


def _client(session):
    client = MercadoPagoClient(access_token="TEST-token", base_url="https://mp.test/", timeout=3)
    client._session = session
    return client


def test_create_payment_sends_auth_and_idempotency_key():
    session = FakeSession(FakeResponse(201, {"id": 1, "status": "approved"}))

    result = _client(session).create_payment({"transaction_amount": 10}, idempotency_key="tok_1")

    assert result["status"] == "approved"
    sent = session.requests[0]
    assert sent["method"] == "POST"
    assert sent["url"] == "https://mp.test/v1/payments"
    assert sent["headers"]["Authorization"] == "Bearer TEST-token"
    assert sent["headers"]["X-Idempotency-Key"] == "tok_1"
    assert sent["timeout"] == 3


def test_error_status_becomes_gateway_error():
    session = FakeSession(FakeResponse(400, {"message": "invalid token"}))

    with pytest.raises(GatewayError) as info:
        _client(session).get_payment("42")

    assert info.value.message == "invalid token"
    assert info.value.gateway_status == 400
    assert info.value.status_code == 502


def test_non_json_error_body():
    session = FakeSession(FakeResponse(503, ValueError("no json")))

    with pytest.raises(GatewayError, match="MercadoPago returned 503"):
        _client(session).get_merchant_order("7")


def test_network_failure_becomes_gateway_error():
    session = FakeSession(error=requests.ConnectionError("refused"))

    with pytest.raises(GatewayError, match="request failed"):
        _client(session).create_preference({})


def test_unconfigured_client_refuses_calls():
    client = MercadoPagoClient(access_token="")
    assert client.configured is False
    with pytest.raises(GatewayError, match="not configured"):
        client.get_payment("1")


def test_preference_body(monkeypatch):
    monkeypatch.setattr(settings, "app_url", "https://shop.example")
    monkeypatch.setattr(settings, "mercadopago_webhook_url", "")
    monkeypatch.setattr(settings, "currency", "MXN")

    body = build_preference_body(
        [{"id": "prod_1", "title": "Smartphone XYZ", "quantity": 2, "price": 599.99}],
        external_reference="order_1",
        payer_email="buyer@example.com",
    )

    assert body["items"] == [
        {"id": "prod_1", "title": "Smartphone XYZ", "quantity": 2, "unit_price": 599.99, "currency_id": "MXN"}
    ]
    assert body["back_urls"]["success"] == "https://shop.example/checkout/confirmation"
    assert body["notification_url"] == "https://shop.example/api/webhooks/mercadopago"
    assert body["auto_return"] == "approved"
    assert body["external_reference"] == "order_1"
    assert body["payer"] == {"email": "buyer@example.com"}

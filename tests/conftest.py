from __future__ import annotations

from typing import Any, Dict, List, Optional

import pytest
from fastapi.testclient import TestClient

from config import load_catalog_config, settings
from marketplace import storage
from marketplace.cart import carts
from marketplace.errors import GatewayError
from marketplace.mercadopago import get_gateway
from marketplace_service import app


class FakeGateway:
    """In-process stand-in for MercadoPagoClient."""

    configured = True

    def __init__(self, payment_status: str = "approved", fail: bool = False) -> None:
        self.payment_status = payment_status
        self.fail = fail
        self.payments: Dict[str, Dict[str, Any]] = {}
        self.calls: List[tuple] = []

    def _maybe_fail(self) -> None:
        if self.fail:
            raise GatewayError("gateway unavailable", gateway_status=500)

    def create_preference(self, body: Dict[str, Any]) -> Dict[str, Any]:
        self.calls.append(("create_preference", body))
        self._maybe_fail()
        return {
            "id": "pref_123",
            "init_point": "https://mp.example/checkout?pref_id=pref_123",
            "sandbox_init_point": "https://sandbox.mp.example/checkout?pref_id=pref_123",
        }

    def create_payment(self, body: Dict[str, Any], idempotency_key: Optional[str] = None) -> Dict[str, Any]:
        self.calls.append(("create_payment", body, idempotency_key))
        self._maybe_fail()
        return {
            "id": 9001,
            "status": self.payment_status,
            "status_detail": "accredited" if self.payment_status == "approved" else "cc_rejected_other_reason",
            "payment_method_id": body["payment_method_id"],
            "payment_type_id": "credit_card",
        }

    def get_payment(self, payment_id: str) -> Dict[str, Any]:
        self.calls.append(("get_payment", payment_id))
        self._maybe_fail()
        if payment_id not in self.payments:
            raise GatewayError(f"Payment {payment_id} not found", gateway_status=404)
        return self.payments[payment_id]


@pytest.fixture
def db(tmp_path, monkeypatch):
    monkeypatch.setattr(settings, "db_path", str(tmp_path / "marketplace.db"))
    monkeypatch.setattr(settings, "sync_with_store", True)
    monkeypatch.setattr(settings, "environment", "development")
    monkeypatch.setattr(settings, "tax_rate", 0.16)
    storage.init_db()
    storage.seed_catalog(load_catalog_config())
    yield settings.db_path


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def client(db, gateway):
    app.dependency_overrides[get_gateway] = lambda: gateway
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()
    carts.clear_all()


@pytest.fixture
def buyer():
    return {"X-User-Id": "buyer_1"}


@pytest.fixture
def seller():
    return {"X-User-Id": "seller_1"}

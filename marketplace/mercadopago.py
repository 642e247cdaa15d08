from __future__ import annotations

import logging
import time
import uuid
from typing import Any, Dict, List, Optional

import requests

from config import settings

from .errors import GatewayError

logger = logging.getLogger(__name__)


class MercadoPagoClient:
    """Thin REST client for the MercadoPago endpoints the checkout uses."""

    def __init__(
        self,
        access_token: str | None = None,
        base_url: str | None = None,
        timeout: float | None = None,
    ) -> None:
        self.access_token = access_token if access_token is not None else settings.mercadopago_access_token
        self.base_url = (base_url or settings.mercadopago_api_url).rstrip("/")
        self.timeout = timeout or settings.gateway_timeout
        self._session = requests.Session()

    @property
    def configured(self) -> bool:
        return bool(self.access_token)

    def create_preference(self, body: Dict[str, Any]) -> Dict[str, Any]:
        return self._request("POST", "/checkout/preferences", json=body)

    def create_payment(self, body: Dict[str, Any], idempotency_key: Optional[str] = None) -> Dict[str, Any]:
        headers = {"X-Idempotency-Key": idempotency_key or str(uuid.uuid4())}
        return self._request("POST", "/v1/payments", json=body, headers=headers)

    def get_payment(self, payment_id: str) -> Dict[str, Any]:
        return self._request("GET", f"/v1/payments/{payment_id}")

    def get_merchant_order(self, merchant_order_id: str) -> Dict[str, Any]:
        return self._request("GET", f"/merchant_orders/{merchant_order_id}")

    def _build_url(self, path: str) -> str:
        if not path.startswith("/"):
            path = f"/{path}"
        return f"{self.base_url}{path}"

    def _request(
        self,
        method: str,
        path: str,
        json: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        if not self.configured:
            raise GatewayError("MercadoPago access token is not configured")

        request_headers = {"Authorization": f"Bearer {self.access_token}"}
        request_headers.update(headers or {})

        start = time.time()
        try:
            response = self._session.request(
                method=method,
                url=self._build_url(path),
                json=json,
                headers=request_headers,
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            logger.error("%s %s failed: %s", method, path, exc)
            raise GatewayError(f"MercadoPago request failed: {exc}") from exc

        latency = time.time() - start
        logger.info("%s %s -> %s (%.3fs)", method, path, response.status_code, latency)

        try:
            body = response.json()
        except ValueError:
            body = {"raw": response.text[:500]}

        if response.status_code >= 400:
            message = body.get("message") if isinstance(body, dict) else None
            raise GatewayError(
                message or f"MercadoPago returned {response.status_code}",
                gateway_status=response.status_code,
                body=body,
            )
        return body


def build_preference_body(
    items: List[Dict[str, Any]],
    external_reference: Optional[str] = None,
    payer_email: Optional[str] = None,
) -> Dict[str, Any]:
    """Hosted-checkout preference for ``id``/``title``/``quantity``/``price`` items."""

    body: Dict[str, Any] = {
        "items": [
            {
                "id": item["id"],
                "title": item["title"],
                "quantity": item["quantity"],
                "unit_price": item["price"],
                "currency_id": settings.currency,
            }
            for item in items
        ],
        "back_urls": {
            "success": settings.success_url,
            "failure": settings.failure_url,
            "pending": settings.pending_url,
        },
        "auto_return": "approved",
        "notification_url": settings.notification_url,
    }
    if external_reference:
        body["external_reference"] = external_reference
    if payer_email:
        body["payer"] = {"email": payer_email}
    return body


def get_gateway() -> MercadoPagoClient:
    """FastAPI dependency; tests override it with a fake client."""

    return MercadoPagoClient()

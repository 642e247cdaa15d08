"""Keeps orders and payments in step with the payment gateway."""
from __future__ import annotations

import hashlib
import json
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from config import settings

from . import storage
from .cart import money
from .errors import GatewayError, MarketplaceError, NotFoundError, ValidationError
from .mercadopago import MercadoPagoClient, build_preference_body
from .schemas import CardPaymentRequest, LineItem, PreferenceRequest, WebhookNotification
from .status import derive_order_status

logger = logging.getLogger(__name__)

PAYMENT_ACTIONS = {"payment.created", "payment.updated"}
MERCHANT_ORDER_ACTIONS = {"merchant_order.created", "merchant_order.updated"}


def price_items(items: List[LineItem]) -> List[Dict[str, Any]]:
    """Re-price checkout items from the catalog.

    Returns dicts in the shape ``storage.create_order`` expects, plus the
    ``id``/``price`` keys the preference body uses.
    """

    priced = []
    for item in items:
        product = storage.get_product(item.id)
        if product is None:
            raise ValidationError(f"Unknown product {item.id}")
        priced.append(
            {
                "id": product["id"],
                "product_id": product["id"],
                "title": product["title"],
                "quantity": item.quantity,
                "price": product["price"],
                "unit_price": product["price"],
            }
        )
    return priced


def _mark_failed(order: Optional[Dict[str, Any]], exc: GatewayError) -> None:
    if order is None:
        return
    logger.warning("Gateway call failed for order %s: %s", order["id"], exc.message)
    storage.update_order_status(order["id"], "payment_failed")


def create_preference(gateway: MercadoPagoClient, request: PreferenceRequest) -> Dict[str, Any]:
    """Create a hosted-checkout preference.

    With store sync on and a known customer, the order and a pending payment
    row are stored too and the preference references the order.
    """

    order = None
    if settings.sync_with_store:
        items = price_items(request.items)
        if request.customer_id:
            order = storage.create_order(
                customer_id=request.customer_id,
                items=items,
                shipping_address=request.shipping_address,
                billing_address=request.billing_address,
            )
    else:
        items = [item.model_dump() for item in request.items]

    body = build_preference_body(
        items,
        external_reference=order["id"] if order else None,
        payer_email=request.payer_email,
    )
    try:
        result = gateway.create_preference(body)
    except GatewayError as exc:
        _mark_failed(order, exc)
        raise

    if order:
        storage.create_payment_record(
            order_id=order["id"],
            status="pending",
            amount=order["total_amount"],
            preference_id=result.get("id"),
            metadata={"init_point": result.get("init_point")},
        )

    init_point = result.get("sandbox_init_point") if settings.sandbox else None
    return {
        "preferenceId": result.get("id"),
        "initPoint": init_point or result.get("init_point"),
        "orderId": order["id"] if order else None,
    }


def _resolve_card_order(request: CardPaymentRequest) -> tuple[Optional[Dict[str, Any]], bool]:
    """Return the order being paid and whether this call created it."""

    if request.order_id:
        order = storage.get_order_by_id(request.order_id)
        if order is None:
            raise NotFoundError(f"Order {request.order_id} not found")
        return order, False
    if settings.sync_with_store and request.items and request.customer_id:
        # A retried charge reuses its token, so it finds the order of the first attempt.
        order = storage.get_order_by_checkout_key(request.token)
        if order is not None:
            return order, False
        order = storage.create_order(
            customer_id=request.customer_id,
            items=price_items(request.items),
            checkout_key=request.token,
        )
        return order, True
    return None, False


def create_card_payment(gateway: MercadoPagoClient, request: CardPaymentRequest) -> Dict[str, Any]:
    """Charge a tokenized card directly and record the outcome."""

    order, created = _resolve_card_order(request)

    amount = request.transaction_amount
    if order is not None:
        if amount is not None and round(amount, 2) != round(order["total_amount"], 2):
            raise ValidationError("transaction_amount does not match the order total")
        amount = order["total_amount"]
    elif amount is None and request.items:
        amount = money(sum(item.price * item.quantity for item in request.items))
    if amount is None:
        raise ValidationError("transaction_amount is required without an order")

    body: Dict[str, Any] = {
        "transaction_amount": amount,
        "token": request.token,
        "description": request.description or "Marketplace purchase",
        "installments": request.installments,
        "payment_method_id": request.payment_method_id,
        "payer": request.payer.model_dump(exclude_none=True),
        "notification_url": settings.notification_url,
    }
    if request.issuer_id:
        body["issuer_id"] = request.issuer_id
    if order is not None:
        body["external_reference"] = order["id"]

    try:
        # Card tokens are single use, so the token doubles as the idempotency key.
        result = gateway.create_payment(body, idempotency_key=request.token)
    except GatewayError as exc:
        if created:
            _mark_failed(order, exc)
        raise

    status = result.get("status", "pending")
    response: Dict[str, Any] = {
        "id": result.get("id"),
        "status": status,
        "status_detail": result.get("status_detail"),
        "orderId": order["id"] if order else None,
        "orderStatus": order["status"] if order else None,
    }

    if settings.sync_with_store and order is not None:
        storage.save_gateway_payment(
            order_id=order["id"],
            payment_id=str(result.get("id")),
            status=status,
            amount=amount,
            payment_method=result.get("payment_method_id", request.payment_method_id),
            payment_type=result.get("payment_type_id"),
            installments=request.installments,
            metadata={"status_detail": result.get("status_detail")},
        )
        new_status = derive_order_status(status, order["status"])
        if new_status != order["status"]:
            storage.update_order_status(order["id"], new_status)
        response["orderStatus"] = new_status

    return response


def delivery_key(payload: Dict[str, Any]) -> str:
    """Identify a webhook delivery across gateway retries."""

    notification_id = payload.get("id")
    if notification_id not in (None, ""):
        return f"notification:{notification_id}"
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return "sha256:" + hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def _local_payment_for(
    gateway: MercadoPagoClient,
    payment_id: str,
    status: str,
    info: Dict[str, Any],
) -> Dict[str, Any]:
    payment = storage.get_payment_by_external_id(payment_id)
    if payment is not None:
        return payment

    # First notice of this payment: tie it to the order it was created for.
    info = info or gateway.get_payment(payment_id)
    order_id = info.get("external_reference")
    order = storage.get_order_by_id(order_id) if order_id else None
    if order is None:
        raise NotFoundError(f"No local record for payment {payment_id}")

    details = {
        "status": status,
        "amount": info.get("transaction_amount"),
        "payment_method": info.get("payment_method_id"),
        "payment_type": info.get("payment_type_id"),
        "installments": info.get("installments"),
    }
    open_row = storage.get_open_preference_payment(order["id"])
    if open_row is not None:
        return storage.attach_gateway_payment(open_row["id"], payment_id, **details)
    details["amount"] = details["amount"] or order["total_amount"]
    return storage.create_payment_record(order_id=order["id"], payment_id=payment_id, **details)


def sync_payment(gateway: MercadoPagoClient, action: str, data: Dict[str, Any]) -> Dict[str, Any]:
    """Apply a payment notification: payment status, event row, order status."""

    payment_id = str(data["id"])
    info: Dict[str, Any] = {}
    status = data.get("status")
    if not status:
        info = gateway.get_payment(payment_id)
        status = info.get("status", "pending")

    payment = _local_payment_for(gateway, payment_id, status, info)
    storage.update_payment_status(payment_id, status, metadata={"raw": data})
    storage.create_payment_event(payment_id, event_type=action, status=status, raw_data=data)

    order_status = None
    if payment.get("order_id"):
        order = storage.get_order_by_id(payment["order_id"])
        order_status = derive_order_status(status, order["status"])
        if order_status != order["status"]:
            storage.update_order_status(order["id"], order_status)
            logger.info("Order %s moved %s -> %s", order["id"], order["status"], order_status)

    return {"payment_id": payment_id, "status": status, "order_status": order_status}


def process_webhook(gateway: MercadoPagoClient, notification: WebhookNotification) -> Dict[str, Any]:
    payload = notification.model_dump()
    action = notification.action
    resource_id = str(notification.data["id"])

    if not settings.sync_with_store:
        if action in PAYMENT_ACTIONS:
            info = gateway.get_payment(resource_id)
            logger.info("Payment %s updated. Status: %s", resource_id, info.get("status"))
        elif action in MERCHANT_ORDER_ACTIONS:
            logger.info("Merchant order %s updated", resource_id)
        else:
            logger.info("Unhandled webhook action: %s", action)
        return {"success": True}

    key = delivery_key(payload)
    if not storage.claim_webhook_delivery(key, action, resource_id):
        logger.info("Duplicate webhook delivery %s ignored", key)
        return {"success": True, "duplicate": True}

    # Only a completed delivery counts as a duplicate; if processing raises or
    # the process dies first, the gateway's resend is processed again.
    response: Dict[str, Any] = {"success": True}
    if action in PAYMENT_ACTIONS:
        response.update(sync_payment(gateway, action, notification.data))
    elif action in MERCHANT_ORDER_ACTIONS:
        logger.info("Merchant order %s updated", resource_id)
    else:
        logger.info("Unhandled webhook action: %s", action)
    storage.complete_webhook_delivery(key)
    return response


def record_webhook_failure(payload: Dict[str, Any], exc: Exception) -> None:
    """Best-effort ``webhook.error`` event; failures here are only logged."""

    logger.error("Error processing MercadoPago webhook: %s", exc)
    logger.error("Webhook payload: %s", json.dumps(payload, default=str))

    resource_id = (payload.get("data") or {}).get("id")
    if not settings.sync_with_store or not resource_id:
        return
    try:
        storage.create_payment_event(
            str(resource_id),
            event_type="webhook.error",
            status="error",
            raw_data={"error": str(exc), "webhook": payload},
        )
    except MarketplaceError as log_exc:
        logger.error("Could not record webhook.error event: %s", log_exc)


def webhook_health(gateway: MercadoPagoClient) -> Dict[str, Any]:
    return {
        "status": "ok",
        "message": "MercadoPago webhook endpoint is up",
        "config": {
            "mercadopago": {
                "publicKey": "configured" if settings.mercadopago_public_key else "not configured",
                "accessToken": "configured" if gateway.configured else "not configured",
                "webhookUrl": settings.notification_url,
                "syncWithStore": "enabled" if settings.sync_with_store else "disabled",
                "sandbox": settings.sandbox,
                "currency": settings.currency,
                "country": settings.country,
            }
        },
        "timestamp": datetime.now().isoformat(),
    }

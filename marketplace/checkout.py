"""Checkout form handling: card-field masks, payment branches, confirmation."""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from config import settings

from . import payments, storage
from .card_input import (
    card_digits,
    expiry_in_future,
    luhn_valid,
    mask_card_number,
    mask_cvc,
    mask_expiry,
)
from .cart import Cart
from .errors import NotFoundError, ValidationError
from .mercadopago import MercadoPagoClient
from .schemas import CardPaymentRequest, LineItem, Payer, PreferenceRequest
from .status import confirmation_headline, format_payment_status

logger = logging.getLogger(__name__)


class CardForm(BaseModel):
    """Manual card fields. Values are masked before they are checked."""

    card_number: str
    card_name: str
    card_expiry: str
    card_cvc: str

    @field_validator("card_number", mode="before")
    @classmethod
    def _mask_number(cls, value: str) -> str:
        return mask_card_number(str(value))

    @field_validator("card_expiry", mode="before")
    @classmethod
    def _mask_expiry(cls, value: str) -> str:
        return mask_expiry(str(value))

    @field_validator("card_cvc", mode="before")
    @classmethod
    def _mask_cvc(cls, value: str) -> str:
        return mask_cvc(str(value))

    @field_validator("card_number")
    @classmethod
    def _check_number(cls, value: str) -> str:
        if not luhn_valid(value):
            raise ValueError("Invalid card number")
        return value

    @field_validator("card_name")
    @classmethod
    def _check_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Name on card is required")
        return value.upper()

    @field_validator("card_expiry")
    @classmethod
    def _check_expiry(cls, value: str) -> str:
        if not expiry_in_future(value):
            raise ValueError("Expiry must be a future MM/YY date")
        return value

    @field_validator("card_cvc")
    @classmethod
    def _check_cvc(cls, value: str) -> str:
        if len(value) < 3:
            raise ValueError("CVC must have 3 or 4 digits")
        return value

    @property
    def last_four(self) -> str:
        return card_digits(self.card_number)[-4:]


class BillingAddress(BaseModel):
    address: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1)
    state: str = Field(..., min_length=1)
    zip_code: str = Field(..., min_length=1)
    country: str = "Mexico"


class CheckoutRequest(BaseModel):
    session_id: str = "default"
    payment_method: Literal["credit_card", "mp"] = "credit_card"
    billing: BillingAddress
    shipping_address: Optional[Dict[str, Any]] = None
    payer_email: Optional[str] = None
    card: Optional[CardForm] = None
    card_token: Optional[str] = None
    card_payment_method_id: Optional[str] = None
    installments: int = Field(1, ge=1)

    @model_validator(mode="after")
    def _card_path_needs_token(self) -> "CheckoutRequest":
        if self.payment_method == "credit_card":
            if not self.card_token or not self.card_payment_method_id:
                raise ValueError("card_token and card_payment_method_id are required for card payments")
            if not self.payer_email:
                raise ValueError("payer_email is required for card payments")
        return self


def mask_card_fields(fields: Dict[str, str]) -> Dict[str, Any]:
    """Apply the keystroke masks and report which fields are not yet valid."""

    masked = {
        "card_number": mask_card_number(fields.get("card_number", "")),
        "card_name": fields.get("card_name", ""),
        "card_expiry": mask_expiry(fields.get("card_expiry", "")),
        "card_cvc": mask_cvc(fields.get("card_cvc", "")),
    }
    errors: List[str] = []
    if not luhn_valid(masked["card_number"]):
        errors.append("card_number")
    if not masked["card_name"].strip():
        errors.append("card_name")
    if not expiry_in_future(masked["card_expiry"]):
        errors.append("card_expiry")
    if len(masked["card_cvc"]) < 3:
        errors.append("card_cvc")
    return {"fields": masked, "errors": errors, "valid": not errors}


def _line_items(cart: Cart) -> List[LineItem]:
    return [
        LineItem(id=line["product_id"], title=line["title"], quantity=line["quantity"], price=line["price"])
        for line in cart.lines
    ]


def process_checkout(
    gateway: MercadoPagoClient,
    cart: Cart,
    request: CheckoutRequest,
    customer_id: str,
) -> Dict[str, Any]:
    """Pay for the session cart through the hosted widget or a direct card charge."""

    if cart.is_empty():
        raise ValidationError("Cart is empty")

    summary = cart.summary(settings.tax_rate)
    items = _line_items(cart)
    billing = request.billing.model_dump()

    if request.payment_method == "mp":
        result = payments.create_preference(
            gateway,
            PreferenceRequest(
                items=items,
                customer_id=customer_id,
                payer_email=request.payer_email,
                shipping_address=request.shipping_address,
                billing_address=billing,
            ),
        )
        return {"payment_method": "mp", "summary": summary, **result}

    card_request = CardPaymentRequest(
        token=request.card_token,
        payment_method_id=request.card_payment_method_id,
        payer=Payer(email=request.payer_email),
        installments=request.installments,
        customer_id=customer_id,
        items=items,
    )
    result = payments.create_card_payment(gateway, card_request)
    if result["status"] == "approved":
        cart.clear()
    logger.info("Card checkout for session %s finished with status %s", request.session_id, result["status"])

    response = {"payment_method": "credit_card", "summary": summary, **result}
    if request.card is not None:
        response["card_last_four"] = request.card.last_four
    return response


def build_confirmation(
    payment_id: Optional[str] = None,
    status: Optional[str] = None,
    payment_type: Optional[str] = None,
    merchant_order_id: Optional[str] = None,
    external_reference: Optional[str] = None,
) -> Dict[str, Any]:
    """Summary shown after the gateway redirects the buyer back."""

    order = storage.get_order_by_id(external_reference) if external_reference else None
    payment = None
    if payment_id:
        payment = storage.get_payment_info(payment_id)
        if order is None and payment is not None:
            order = payment["order"]
    if order is None:
        raise NotFoundError("Order not found")

    payment_status = status or (payment["status"] if payment else None) or "pending"
    return {
        "id": order["id"],
        "merchant_order_id": merchant_order_id,
        "date": order.get("created_at") or datetime.now().isoformat(),
        "headline": confirmation_headline(payment_status),
        "payment_status": payment_status,
        "payment_status_label": format_payment_status(payment_status).model_dump(),
        "payment_method": payment_type or (payment or {}).get("payment_type") or "mercadopago",
        "payment_id": payment_id,
        "items": [
            {
                "id": item["product_id"],
                "title": item["title"],
                "quantity": item["quantity"],
                "price": item["unit_price"],
                "total": item["total_price"],
            }
            for item in order["items"]
        ],
        "total": order["total_amount"],
        "shipping_address": order.get("shipping_address"),
    }

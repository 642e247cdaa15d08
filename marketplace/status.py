from __future__ import annotations

from typing import Dict, Optional, Tuple

from .schemas import StatusLabel

PAYMENT_STATUS_LABELS: Dict[str, Tuple[str, str]] = {
    "pending": ("Pending", "yellow"),
    "approved": ("Approved", "green"),
    "authorized": ("Authorized", "blue"),
    "in_process": ("In process", "blue"),
    "in_mediation": ("In mediation", "orange"),
    "rejected": ("Rejected", "red"),
    "cancelled": ("Cancelled", "gray"),
    "refunded": ("Refunded", "purple"),
    "charged_back": ("Charged back", "red"),
}

ORDER_STATUS_LABELS: Dict[str, Tuple[str, str]] = {
    "pending": ("Pending", "yellow"),
    "pending_payment": ("Payment pending", "yellow"),
    "paid": ("Paid", "green"),
    "processing": ("Processing", "blue"),
    "shipped": ("Shipped", "blue"),
    "delivered": ("Delivered", "green"),
    "cancelled": ("Cancelled", "gray"),
    "refunded": ("Refunded", "purple"),
    "payment_failed": ("Payment failed", "red"),
}

FAILED_PAYMENT_STATUSES = {"rejected", "cancelled"}


def format_payment_status(status: str) -> StatusLabel:
    label, color = PAYMENT_STATUS_LABELS.get(status, (status, "gray"))
    return StatusLabel(label=label, color=color)


def format_order_status(status: str) -> StatusLabel:
    label, color = ORDER_STATUS_LABELS.get(status, (status, "gray"))
    return StatusLabel(label=label, color=color)


def derive_order_status(payment_status: str, current: Optional[str] = None) -> Optional[str]:
    """Order status implied by a payment status; ``current`` when none is implied."""

    if payment_status == "approved":
        return "paid"
    if payment_status in FAILED_PAYMENT_STATUSES:
        return "payment_failed"
    return current


def confirmation_headline(payment_status: str) -> str:
    if payment_status == "approved":
        return "Order confirmed!"
    if payment_status in ("pending", "in_process"):
        return "Order in process"
    return "Payment rejected"

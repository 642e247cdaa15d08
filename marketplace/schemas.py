from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .card_input import sanitize_price

PaymentStatus = Literal[
    "pending",
    "approved",
    "authorized",
    "in_process",
    "in_mediation",
    "rejected",
    "cancelled",
    "refunded",
    "charged_back",
]

OrderStatus = Literal[
    "pending",
    "pending_payment",
    "paid",
    "processing",
    "shipped",
    "delivered",
    "cancelled",
    "refunded",
    "payment_failed",
]

Role = Literal["buyer", "seller", "admin"]


class Category(BaseModel):
    id: str
    name: str
    slug: str
    product_count: int = 0


class Product(BaseModel):
    id: str
    title: str
    description: str = ""
    price: float = Field(..., ge=0)
    stock: int = Field(0, ge=0)
    images: List[str] = Field(default_factory=list)
    rating: Optional[float] = None
    review_count: int = 0
    category_id: Optional[str] = None
    seller_id: Optional[str] = None
    status: str = "active"
    created_at: Optional[str] = None


class ProductCreate(BaseModel):
    """Seller product form. Price accepts the raw text the seller typed."""

    title: str = Field(..., min_length=1)
    description: str = ""
    price: float = Field(..., gt=0)
    stock: int = Field(0, ge=0)
    category_id: Optional[str] = None
    images: List[str] = Field(default_factory=list, max_length=5)

    @field_validator("title")
    @classmethod
    def _strip_title(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Title is required")
        return value

    @field_validator("price", mode="before")
    @classmethod
    def _sanitize_price(cls, value: Any) -> Any:
        if isinstance(value, str):
            cleaned = sanitize_price(value)
            if not cleaned:
                raise ValueError("Price is required")
            return cleaned
        return value


class CartItemIn(BaseModel):
    product_id: str
    quantity: int = Field(1, ge=1, le=100)


class LineItem(BaseModel):
    """Item as sent by the checkout page to the payment routes."""

    id: str
    title: str
    quantity: int = Field(..., ge=1)
    price: float = Field(..., gt=0)


class PreferenceRequest(BaseModel):
    items: List[LineItem] = Field(..., min_length=1)
    customer_id: Optional[str] = None
    payer_email: Optional[str] = None
    shipping_address: Optional[Dict[str, Any]] = None
    billing_address: Optional[Dict[str, Any]] = None


class Payer(BaseModel):
    email: str
    identification: Optional[Dict[str, str]] = None


class CardPaymentRequest(BaseModel):
    """Direct card charge. The card itself arrives as a gateway token."""

    token: str
    payment_method_id: str
    payer: Payer
    installments: int = Field(1, ge=1)
    issuer_id: Optional[str] = None
    transaction_amount: Optional[float] = Field(None, gt=0)
    description: Optional[str] = None
    order_id: Optional[str] = None
    customer_id: Optional[str] = None
    items: Optional[List[LineItem]] = None


class WebhookNotification(BaseModel):
    model_config = ConfigDict(extra="allow")

    action: str = Field(..., min_length=1)
    data: Dict[str, Any]
    id: Optional[Any] = None
    type: Optional[str] = None

    @field_validator("data")
    @classmethod
    def _require_resource_id(cls, value: Dict[str, Any]) -> Dict[str, Any]:
        if value.get("id") in (None, ""):
            raise ValueError("data.id is required")
        return value


class OrderStatusUpdate(BaseModel):
    status: OrderStatus


class StatusLabel(BaseModel):
    label: str
    color: str

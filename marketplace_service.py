"""
Marketplace REST API: catalog, cart, checkout, MercadoPago payments and dashboards.

Run with:
    uvicorn marketplace_service:app --reload --port 8000
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, Query, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError as PydanticValidationError

from config import settings
from marketplace import auth, catalog, checkout, payments, storage
from marketplace.cart import carts
from marketplace.errors import AuthorizationError, MarketplaceError, NotFoundError
from marketplace.mercadopago import MercadoPagoClient, get_gateway
from marketplace.schemas import (
    CardPaymentRequest,
    CartItemIn,
    OrderStatusUpdate,
    PreferenceRequest,
    Product,
    ProductCreate,
    WebhookNotification,
)
from marketplace.status import format_order_status, format_payment_status

logger = logging.getLogger("marketplace.api")


@asynccontextmanager
async def lifespan(app: FastAPI):
    storage.init_db()
    yield


app = FastAPI(title="Marketplace API", version="1.0.0", lifespan=lifespan)


@app.exception_handler(MarketplaceError)
async def handle_marketplace_error(request: Request, exc: MarketplaceError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


def _with_labels(order: Dict[str, Any]) -> Dict[str, Any]:
    order["status_label"] = format_order_status(order["status"]).model_dump()
    for payment in order.get("payments", []):
        payment["status_label"] = format_payment_status(payment["status"]).model_dump()
    return order


def _own_order(order_id: str, user_id: str) -> Dict[str, Any]:
    order = storage.get_order_by_id(order_id)
    if order is None:
        raise NotFoundError("Order not found")
    if order["customer_id"] != user_id and not auth.is_admin(user_id):
        raise AuthorizationError("Not your order")
    return order


# Catalog
@app.get("/api/products")
def get_products(search: Optional[str] = None, sort: catalog.SortKey = "recent"):
    """List products, optionally filtered by a search term."""
    return catalog.list_products(search=search, sort=sort)


@app.get("/api/products/{product_id}")
def get_product(product_id: str):
    """Get a single product with its seller and category."""
    return catalog.get_product(product_id)


@app.get("/api/categories")
def get_categories():
    """List top-level categories with their product counts."""
    return {"categories": catalog.list_categories()}


@app.get("/api/categories/{slug}")
def get_category(slug: str):
    """Get a category and its products."""
    return catalog.get_category(slug)


# Cart
@app.get("/api/cart")
def get_cart(session_id: str = Query("default")):
    """Get shopping cart contents with subtotal, tax and total."""
    return carts.get(session_id).summary(settings.tax_rate)


@app.post("/api/cart/add")
def add_to_cart(item: CartItemIn, session_id: str = Query("default")):
    """Add item to shopping cart."""
    product = Product(**catalog.get_product(item.product_id))
    cart = carts.get(session_id)
    cart.add(product, item.quantity)
    return {"message": "Item added to cart", "cart_size": len(cart.lines)}


@app.put("/api/cart/item/{product_id}")
def update_cart_item(product_id: str, quantity: int = Query(...), session_id: str = Query("default")):
    """Set the quantity of a cart line."""
    cart = carts.get(session_id)
    cart.set_quantity(product_id, quantity)
    return cart.summary(settings.tax_rate)


@app.post("/api/cart/item/{product_id}/step")
def step_cart_item(product_id: str, delta: int = Query(...), session_id: str = Query("default")):
    """Increment or decrement a cart line; the quantity stays at least one."""
    cart = carts.get(session_id)
    cart.step(product_id, delta)
    return cart.summary(settings.tax_rate)


@app.delete("/api/cart/item/{product_id}")
def remove_from_cart(product_id: str, session_id: str = Query("default")):
    """Remove item from shopping cart."""
    cart = carts.get(session_id)
    cart.remove(product_id)
    return {"message": "Item removed from cart", "cart_size": len(cart.lines)}


@app.delete("/api/cart")
def clear_cart(session_id: str = Query("default")):
    """Clear entire shopping cart."""
    carts.get(session_id).clear()
    return {"message": "Cart cleared", "cart_size": 0}


# Checkout
@app.post("/api/checkout")
def post_checkout(
    request: checkout.CheckoutRequest,
    user_id: str = Depends(auth.current_user_id),
    gateway: MercadoPagoClient = Depends(get_gateway),
):
    """Pay for the session cart with a card token or a hosted-checkout preference."""
    return checkout.process_checkout(gateway, carts.get(request.session_id), request, user_id)


@app.post("/api/checkout/card-fields")
def post_card_fields(fields: Dict[str, str]):
    """Mask raw card inputs and report which ones are still invalid."""
    return checkout.mask_card_fields(fields)


@app.get("/api/checkout/confirmation")
def get_confirmation(
    payment_id: Optional[str] = None,
    status: Optional[str] = None,
    payment_type: Optional[str] = None,
    merchant_order_id: Optional[str] = None,
    external_reference: Optional[str] = None,
    session_id: Optional[str] = None,
    user_id: str = Depends(auth.current_user_id),
):
    """Order summary for the gateway's return URL; only the buyer (or an admin) may read it."""
    confirmation = checkout.build_confirmation(
        payment_id=payment_id,
        status=status,
        payment_type=payment_type,
        merchant_order_id=merchant_order_id,
        external_reference=external_reference,
    )
    _own_order(confirmation["id"], user_id)
    if session_id and confirmation["payment_status"] == "approved":
        carts.get(session_id).clear()
    return confirmation


# Payments
@app.post("/api/create-payment")
def create_payment(request: PreferenceRequest, gateway: MercadoPagoClient = Depends(get_gateway)):
    """Create a MercadoPago checkout preference."""
    return payments.create_preference(gateway, request)


@app.put("/api/create-payment")
def create_card_payment(request: CardPaymentRequest, gateway: MercadoPagoClient = Depends(get_gateway)):
    """Charge a tokenized card directly."""
    return payments.create_card_payment(gateway, request)


@app.post("/api/webhooks/mercadopago")
async def mercadopago_webhook(request: Request, gateway: MercadoPagoClient = Depends(get_gateway)):
    """Receive MercadoPago notifications.

    Anything past format validation answers 200, because MercadoPago retries
    on 4xx and 5xx responses.
    """
    try:
        payload = await request.json()
    except ValueError:
        return JSONResponse(status_code=400, content={"error": "Invalid webhook format"})
    if not isinstance(payload, dict):
        return JSONResponse(status_code=400, content={"error": "Invalid webhook format"})

    try:
        notification = WebhookNotification.model_validate(payload)
    except PydanticValidationError:
        return JSONResponse(status_code=400, content={"error": "Invalid webhook format"})

    try:
        return payments.process_webhook(gateway, notification)
    except Exception as exc:
        payments.record_webhook_failure(payload, exc)
        message = exc.message if isinstance(exc, MarketplaceError) else "Error processing webhook"
        return JSONResponse(status_code=200, content={"error": message})


@app.get("/api/webhooks/mercadopago")
def mercadopago_webhook_health(gateway: MercadoPagoClient = Depends(get_gateway)):
    """Check that the webhook endpoint is up and report its configuration."""
    return payments.webhook_health(gateway)


# Buyer dashboard
@app.get("/api/orders")
def get_orders(user_id: str = Depends(auth.current_user_id)):
    """Order history of the current user, newest first."""
    return {"orders": [_with_labels(order) for order in storage.get_user_orders(user_id)]}


@app.get("/api/orders/{order_id}")
def get_order(order_id: str, user_id: str = Depends(auth.current_user_id)):
    """Get one order with items and payments."""
    return _with_labels(_own_order(order_id, user_id))


@app.get("/api/orders/{order_id}/payments")
def get_order_payments(order_id: str, user_id: str = Depends(auth.current_user_id)):
    """Payments recorded for an order, newest first."""
    _own_order(order_id, user_id)
    return {"payments": storage.get_order_payments(order_id)}


@app.get("/api/payments/{payment_id}")
def get_payment(payment_id: str, user_id: str = Depends(auth.current_user_id)):
    """Payment details with its event log."""
    payment = storage.get_payment_details(payment_id)
    if payment is None:
        raise NotFoundError("Payment not found")
    if payment["order_id"]:
        _own_order(payment["order_id"], user_id)
    elif not auth.is_admin(user_id):
        raise AuthorizationError("Not your payment")
    payment["status_label"] = format_payment_status(payment["status"]).model_dump()
    return payment


@app.get("/api/me/role")
def get_my_role(user_id: str = Depends(auth.current_user_id)):
    """Role flags for the current user."""
    role = auth.get_role(user_id)
    return {"user_id": user_id, "role": role, "is_admin": role == "admin", "is_seller": role == "seller"}


# Seller dashboard
@app.get("/api/seller/products")
def get_seller_products(seller_id: str = Depends(auth.require_seller)):
    """Products listed by the current seller."""
    return {"products": catalog.seller_products(seller_id)}


@app.post("/api/seller/products", status_code=201)
def create_seller_product(product: ProductCreate, seller_id: str = Depends(auth.require_seller)):
    """Create a new product for the current seller."""
    return catalog.create_product(seller_id, product)


@app.get("/api/seller/orders")
def get_seller_orders(seller_id: str = Depends(auth.require_seller)):
    """Orders that include the seller's products."""
    orders = storage.get_seller_sales(seller_id)
    for order in orders:
        order["status_label"] = format_order_status(order["status"]).model_dump()
    return {"orders": orders}


@app.patch("/api/seller/orders/{order_id}/status")
def update_seller_order_status(
    order_id: str,
    update: OrderStatusUpdate,
    seller_id: str = Depends(auth.require_seller),
):
    """Update the status of an order containing the seller's products."""
    if not storage.seller_owns_order(seller_id, order_id):
        raise NotFoundError("Order not found")
    return _with_labels(storage.update_order_status(order_id, update.status))


@app.get("/health")
def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "timestamp": datetime.now().isoformat()}

"""Per-session shopping carts kept in memory."""
from __future__ import annotations

from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, List, Optional

from .errors import NotFoundError, ValidationError
from .schemas import Product

MAX_QUANTITY = 100
CENT = Decimal("0.01")


def money(value: Any) -> float:
    """Round a monetary amount half-up to cents."""

    return float(Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP))


def line_total(price: Any, quantity: int) -> float:
    """Price times quantity in cents; carts and stored orders both use this."""

    return money(Decimal(str(price)) * quantity)


def compute_totals(lines: List[Dict[str, Any]], tax_rate: float) -> Dict[str, float]:
    """Subtotal, fixed-rate tax and total for ``price``/``quantity`` lines."""

    subtotal = sum(
        (Decimal(str(line_total(line["price"], line["quantity"]))) for line in lines),
        Decimal("0"),
    )
    tax = subtotal * Decimal(str(tax_rate))
    return {
        "subtotal": money(subtotal),
        "tax": money(tax),
        "total": money(subtotal + tax),
    }


class Cart:
    """Lines keyed by product id, in the order they were first added."""

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        self.lines: List[Dict[str, Any]] = []

    def _find(self, product_id: str) -> Optional[Dict[str, Any]]:
        return next((line for line in self.lines if line["product_id"] == product_id), None)

    def _require(self, product_id: str) -> Dict[str, Any]:
        line = self._find(product_id)
        if line is None:
            raise NotFoundError("Item not found in cart")
        return line

    @staticmethod
    def _check_quantity(quantity: int, stock: int) -> None:
        if quantity <= 0:
            raise ValidationError("Quantity must be positive")
        if quantity > MAX_QUANTITY:
            raise ValidationError(f"Quantity cannot exceed {MAX_QUANTITY}")
        if quantity > stock:
            raise ValidationError(f"Only {stock} items available")

    def add(self, product: Product, quantity: int = 1) -> Dict[str, Any]:
        existing = self._find(product.id)
        new_quantity = quantity + (existing["quantity"] if existing else 0)
        self._check_quantity(quantity, product.stock)
        self._check_quantity(new_quantity, product.stock)

        if existing:
            existing["quantity"] = new_quantity
            return existing

        line = {
            "product_id": product.id,
            "title": product.title,
            "price": product.price,
            "quantity": quantity,
            "stock": product.stock,
            "seller_id": product.seller_id,
            "image": product.images[0] if product.images else None,
            "added_at": datetime.now().isoformat(),
        }
        self.lines.append(line)
        return line

    def step(self, product_id: str, delta: int) -> Dict[str, Any]:
        """Increment or decrement a line, clamped to 1 and to the stock on hand."""

        line = self._require(product_id)
        upper = min(MAX_QUANTITY, line["stock"])
        line["quantity"] = max(1, min(line["quantity"] + delta, upper))
        return line

    def set_quantity(self, product_id: str, quantity: int) -> Dict[str, Any]:
        line = self._require(product_id)
        self._check_quantity(quantity, line["stock"])
        line["quantity"] = quantity
        return line

    def remove(self, product_id: str) -> None:
        # Removing a missing item is not an error.
        self.lines = [line for line in self.lines if line["product_id"] != product_id]

    def clear(self) -> None:
        self.lines = []

    def is_empty(self) -> bool:
        return not self.lines

    def summary(self, tax_rate: float) -> Dict[str, Any]:
        items = [
            {**line, "subtotal": line_total(line["price"], line["quantity"])}
            for line in self.lines
        ]
        return {
            "session_id": self.session_id,
            "items": items,
            "item_count": sum(line["quantity"] for line in self.lines),
            **compute_totals(self.lines, tax_rate),
        }


class CartStore:
    """Session id -> Cart. Carts live only as long as the process."""

    def __init__(self) -> None:
        self._carts: Dict[str, Cart] = {}

    def get(self, session_id: str) -> Cart:
        if session_id not in self._carts:
            self._carts[session_id] = Cart(session_id)
        return self._carts[session_id]

    def drop(self, session_id: str) -> None:
        self._carts.pop(session_id, None)

    def clear_all(self) -> int:
        count = len(self._carts)
        self._carts.clear()
        return count


carts = CartStore()

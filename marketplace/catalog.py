from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from . import storage
from .errors import NotFoundError, ValidationError
from .schemas import ProductCreate

SortKey = Literal["recent", "price_asc", "price_desc"]


def search_products(
    products: List[Dict[str, Any]],
    search: Optional[str] = None,
    sort: SortKey = "recent",
) -> List[Dict[str, Any]]:
    """Filter by a case-insensitive title/description substring, then sort.

    ``recent`` keeps the incoming order, which the store returns newest first.
    """

    filtered = products
    if search:
        term = search.lower()
        filtered = [
            p for p in filtered
            if term in p["title"].lower() or term in (p.get("description") or "").lower()
        ]

    if sort == "price_asc":
        return sorted(filtered, key=lambda p: p["price"])
    if sort == "price_desc":
        return sorted(filtered, key=lambda p: p["price"], reverse=True)
    return list(filtered)


def list_products(search: Optional[str] = None, sort: SortKey = "recent") -> Dict[str, Any]:
    products = search_products(storage.list_products(), search, sort)
    return {"products": products, "total": len(products)}


def get_product(product_id: str) -> Dict[str, Any]:
    product = storage.get_product(product_id)
    if product is None:
        raise NotFoundError("Product not found")
    product["seller"] = {"id": product["seller_id"], "name": product.pop("seller_name")}
    product["category"] = {
        "id": product["category_id"],
        "name": product.pop("category_name"),
        "slug": product.pop("category_slug"),
    }
    return product


def list_categories() -> List[Dict[str, Any]]:
    return storage.list_categories()


def get_category(slug: str) -> Dict[str, Any]:
    category = storage.get_category_by_slug(slug)
    if category is None:
        raise NotFoundError("Category not found")
    return {"category": category, "products": storage.list_products(category_id=category["id"])}


def seller_products(seller_id: str) -> List[Dict[str, Any]]:
    return storage.list_products(seller_id=seller_id, include_inactive=True)


def create_product(seller_id: str, product: ProductCreate) -> Dict[str, Any]:
    if product.category_id and not storage.category_exists(product.category_id):
        raise ValidationError(f"Unknown category {product.category_id}")
    return storage.create_product(seller_id, product)

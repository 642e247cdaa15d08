"""SQLite persistence for the catalog, orders, payments and webhook deliveries."""
from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional

from config import settings

from .cart import line_total, money
from .errors import NotFoundError, StorageError
from .schemas import ProductCreate

logger = logging.getLogger(__name__)

JSON_COLUMNS = {"images", "shipping_address", "billing_address", "metadata", "raw_data"}

SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS profiles(
        id TEXT PRIMARY KEY,
        name TEXT,
        email TEXT,
        role TEXT NOT NULL DEFAULT 'buyer' CHECK(role IN ('buyer', 'seller', 'admin')),
        created_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS categories(
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        slug TEXT NOT NULL UNIQUE,
        parent_id TEXT REFERENCES categories(id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS products(
        id TEXT PRIMARY KEY,
        title TEXT NOT NULL,
        description TEXT,
        price REAL NOT NULL CHECK(price >= 0),
        stock INTEGER NOT NULL DEFAULT 0 CHECK(stock >= 0),
        images TEXT,
        rating REAL,
        review_count INTEGER DEFAULT 0,
        category_id TEXT REFERENCES categories(id),
        seller_id TEXT REFERENCES profiles(id),
        status TEXT NOT NULL DEFAULT 'active',
        created_at TEXT,
        updated_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS orders(
        id TEXT PRIMARY KEY,
        customer_id TEXT REFERENCES profiles(id),
        status TEXT NOT NULL,
        total_amount REAL NOT NULL,
        currency TEXT,
        shipping_address TEXT,
        billing_address TEXT,
        checkout_key TEXT UNIQUE,
        created_at TEXT,
        updated_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS order_items(
        id TEXT PRIMARY KEY,
        order_id TEXT NOT NULL REFERENCES orders(id) ON DELETE CASCADE,
        product_id TEXT NOT NULL REFERENCES products(id),
        title TEXT,
        quantity INTEGER NOT NULL CHECK(quantity > 0),
        unit_price REAL NOT NULL CHECK(unit_price >= 0),
        total_price REAL NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS payments(
        id TEXT PRIMARY KEY,
        order_id TEXT REFERENCES orders(id),
        payment_id TEXT UNIQUE,
        preference_id TEXT,
        status TEXT NOT NULL,
        amount REAL,
        currency TEXT,
        payment_method TEXT,
        payment_type TEXT,
        installments INTEGER,
        metadata TEXT,
        created_at TEXT,
        updated_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS payment_events(
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        payment_id TEXT NOT NULL REFERENCES payments(id),
        event_type TEXT NOT NULL,
        status TEXT,
        raw_data TEXT,
        created_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS webhook_deliveries(
        dedup_key TEXT PRIMARY KEY,
        action TEXT,
        resource_id TEXT,
        received_at TEXT,
        processed_at TEXT
    )
    """,
)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _new_id() -> str:
    return str(uuid.uuid4())


@contextmanager
def _connection() -> Iterator[sqlite3.Connection]:
    """One connection per operation; the block runs as a single transaction."""

    conn = sqlite3.connect(settings.db_path)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    try:
        with conn:
            yield conn
    except sqlite3.Error as exc:
        logger.error("Database operation failed: %s", exc)
        raise StorageError(f"Database operation failed: {exc}") from exc
    finally:
        conn.close()


def _decode(row: Optional[sqlite3.Row]) -> Optional[Dict[str, Any]]:
    if row is None:
        return None
    record = dict(row)
    for column in JSON_COLUMNS & record.keys():
        if record[column] is not None:
            record[column] = json.loads(record[column])
    return record


def _decode_all(rows: List[sqlite3.Row]) -> List[Dict[str, Any]]:
    return [_decode(row) for row in rows]


def _encode(value: Any) -> Optional[str]:
    return None if value is None else json.dumps(value)


def init_db() -> None:
    with _connection() as conn:
        for statement in SCHEMA:
            conn.execute(statement)


def seed_catalog(data: Dict[str, Any]) -> Dict[str, int]:
    """Insert profiles, categories and products; rows that already exist are kept."""

    now = _now()
    with _connection() as conn:
        for profile in data.get("profiles", []):
            conn.execute(
                "INSERT OR IGNORE INTO profiles(id, name, email, role, created_at) VALUES (?,?,?,?,?)",
                (profile["id"], profile.get("name"), profile.get("email"), profile.get("role", "buyer"), now),
            )
        slug_to_id = {}
        for category in data["categories"]:
            conn.execute(
                "INSERT OR IGNORE INTO categories(id, name, slug) VALUES (?,?,?)",
                (category["id"], category["name"], category["slug"]),
            )
            slug_to_id[category["slug"]] = category["id"]
        for product in data["products"]:
            conn.execute(
                """INSERT OR IGNORE INTO products(id, title, description, price, stock, images, rating,
                       review_count, category_id, seller_id, status, created_at, updated_at)
                   VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?)""",
                (
                    product["id"],
                    product["title"],
                    product.get("description", ""),
                    float(product["price"]),
                    int(product.get("stock", 0)),
                    _encode(product.get("images", [])),
                    product.get("rating"),
                    int(product.get("review_count", 0)),
                    slug_to_id[product["category"]],
                    product.get("seller_id"),
                    product.get("status", "active"),
                    product.get("created_at", now),
                    now,
                ),
            )
    return {
        "profiles": len(data.get("profiles", [])),
        "categories": len(data["categories"]),
        "products": len(data["products"]),
    }


# Profiles
def get_profile(user_id: str) -> Optional[Dict[str, Any]]:
    with _connection() as conn:
        row = conn.execute("SELECT * FROM profiles WHERE id=?", (user_id,)).fetchone()
        return _decode(row)


def get_profile_role(user_id: str) -> Optional[str]:
    with _connection() as conn:
        row = conn.execute("SELECT role FROM profiles WHERE id=?", (user_id,)).fetchone()
        return row["role"] if row else None


def upsert_profile(user_id: str, name: str, email: str, role: str = "buyer") -> Dict[str, Any]:
    with _connection() as conn:
        conn.execute(
            """INSERT INTO profiles(id, name, email, role, created_at) VALUES (?,?,?,?,?)
               ON CONFLICT(id) DO UPDATE SET name=excluded.name, email=excluded.email, role=excluded.role""",
            (user_id, name, email, role, _now()),
        )
        return _decode(conn.execute("SELECT * FROM profiles WHERE id=?", (user_id,)).fetchone())


# Catalog
def list_categories() -> List[Dict[str, Any]]:
    with _connection() as conn:
        rows = conn.execute(
            """SELECT c.id, c.name, c.slug, COUNT(p.id) AS product_count
               FROM categories c
               LEFT JOIN products p ON p.category_id = c.id AND p.status = 'active'
               WHERE c.parent_id IS NULL
               GROUP BY c.id
               ORDER BY c.name"""
        ).fetchall()
        return _decode_all(rows)


def category_exists(category_id: str) -> bool:
    with _connection() as conn:
        return conn.execute("SELECT 1 FROM categories WHERE id=?", (category_id,)).fetchone() is not None


def get_category_by_slug(slug: str) -> Optional[Dict[str, Any]]:
    with _connection() as conn:
        return _decode(conn.execute("SELECT * FROM categories WHERE slug=?", (slug,)).fetchone())


def list_products(
    category_id: Optional[str] = None,
    seller_id: Optional[str] = None,
    include_inactive: bool = False,
) -> List[Dict[str, Any]]:
    """Products newest first."""

    query = "SELECT * FROM products"
    conditions: List[str] = []
    params: List[Any] = []
    if category_id:
        conditions.append("category_id=?")
        params.append(category_id)
    if seller_id:
        conditions.append("seller_id=?")
        params.append(seller_id)
    if not include_inactive:
        conditions.append("status='active'")
    if conditions:
        query += " WHERE " + " AND ".join(conditions)
    query += " ORDER BY created_at DESC"

    with _connection() as conn:
        return _decode_all(conn.execute(query, params).fetchall())


def get_product(product_id: str) -> Optional[Dict[str, Any]]:
    with _connection() as conn:
        row = conn.execute(
            """SELECT p.*, s.name AS seller_name, c.name AS category_name, c.slug AS category_slug
               FROM products p
               LEFT JOIN profiles s ON s.id = p.seller_id
               LEFT JOIN categories c ON c.id = p.category_id
               WHERE p.id=?""",
            (product_id,),
        ).fetchone()
        return _decode(row)


def create_product(seller_id: str, product: ProductCreate) -> Dict[str, Any]:
    product_id = _new_id()
    now = _now()
    with _connection() as conn:
        conn.execute(
            """INSERT INTO products(id, title, description, price, stock, images, category_id,
                   seller_id, status, created_at, updated_at)
               VALUES (?,?,?,?,?,?,?,?,?,?,?)""",
            (
                product_id,
                product.title,
                product.description,
                product.price,
                product.stock,
                _encode(product.images),
                product.category_id,
                seller_id,
                "active",
                now,
                now,
            ),
        )
        return _decode(conn.execute("SELECT * FROM products WHERE id=?", (product_id,)).fetchone())


# Orders
def create_order(
    customer_id: Optional[str],
    items: List[Dict[str, Any]],
    shipping_address: Optional[Dict[str, Any]] = None,
    billing_address: Optional[Dict[str, Any]] = None,
    status: str = "pending_payment",
    checkout_key: Optional[str] = None,
) -> Dict[str, Any]:
    """Insert an order and its items in one transaction.

    ``items`` carry ``product_id``, ``quantity``, ``unit_price`` and optionally
    ``title``. The order total is the sum of the item totals. If any item
    insert fails, the order row is rolled back with it. ``checkout_key`` is
    unique across orders, so a replayed checkout can find its first order.
    """

    if not items:
        raise StorageError("An order needs at least one item")

    order_id = _new_id()
    now = _now()
    rows = [
        (
            _new_id(),
            order_id,
            item["product_id"],
            item.get("title"),
            item["quantity"],
            item["unit_price"],
            line_total(item["unit_price"], item["quantity"]),
        )
        for item in items
    ]
    total_amount = money(sum(row[6] for row in rows))

    with _connection() as conn:
        conn.execute(
            """INSERT INTO orders(id, customer_id, status, total_amount, currency, shipping_address,
                   billing_address, checkout_key, created_at, updated_at)
               VALUES (?,?,?,?,?,?,?,?,?,?)""",
            (
                order_id,
                customer_id,
                status,
                total_amount,
                settings.currency,
                _encode(shipping_address),
                _encode(billing_address),
                checkout_key,
                now,
                now,
            ),
        )
        conn.executemany(
            """INSERT INTO order_items(id, order_id, product_id, title, quantity, unit_price, total_price)
               VALUES (?,?,?,?,?,?,?)""",
            rows,
        )
        order = _load_order(conn, order_id)

    logger.info("Created order %s with %d items (total %.2f)", order_id, len(rows), total_amount)
    return order


def _load_order(conn: sqlite3.Connection, order_id: str) -> Optional[Dict[str, Any]]:
    order = _decode(conn.execute("SELECT * FROM orders WHERE id=?", (order_id,)).fetchone())
    if order is None:
        return None
    items = _decode_all(
        conn.execute(
            """SELECT oi.*, p.title AS product_title, p.images AS images, p.seller_id AS seller_id
               FROM order_items oi
               LEFT JOIN products p ON p.id = oi.product_id
               WHERE oi.order_id=?""",
            (order_id,),
        ).fetchall()
    )
    for item in items:
        item["product"] = {
            "id": item["product_id"],
            "title": item.pop("product_title"),
            "images": item.pop("images") or [],
            "seller_id": item.pop("seller_id"),
        }
    order["items"] = items
    order["payments"] = _decode_all(
        conn.execute(
            "SELECT * FROM payments WHERE order_id=? ORDER BY created_at DESC",
            (order_id,),
        ).fetchall()
    )
    return order


def get_order_by_id(order_id: str) -> Optional[Dict[str, Any]]:
    with _connection() as conn:
        return _load_order(conn, order_id)


def get_order_by_checkout_key(checkout_key: str) -> Optional[Dict[str, Any]]:
    with _connection() as conn:
        row = conn.execute("SELECT id FROM orders WHERE checkout_key=?", (checkout_key,)).fetchone()
        return _load_order(conn, row["id"]) if row else None


def get_user_orders(customer_id: str) -> List[Dict[str, Any]]:
    with _connection() as conn:
        ids = conn.execute(
            "SELECT id FROM orders WHERE customer_id=? ORDER BY created_at DESC",
            (customer_id,),
        ).fetchall()
        return [_load_order(conn, row["id"]) for row in ids]


def update_order_status(order_id: str, status: str) -> Dict[str, Any]:
    with _connection() as conn:
        cursor = conn.execute(
            "UPDATE orders SET status=?, updated_at=? WHERE id=?",
            (status, _now(), order_id),
        )
        if cursor.rowcount == 0:
            raise NotFoundError(f"Order {order_id} not found")
        return _decode(conn.execute("SELECT * FROM orders WHERE id=?", (order_id,)).fetchone())


def get_seller_sales(seller_id: str) -> List[Dict[str, Any]]:
    """Orders containing at least one of the seller's products.

    Only the seller's own lines are listed; ``total`` is their sum.
    """

    with _connection() as conn:
        rows = conn.execute(
            """SELECT o.id AS order_id, o.status, o.created_at, o.customer_id,
                      b.name AS buyer_name, b.email AS buyer_email,
                      oi.product_id, oi.title, oi.quantity, oi.unit_price, oi.total_price
               FROM order_items oi
               JOIN orders o ON o.id = oi.order_id
               JOIN products p ON p.id = oi.product_id
               LEFT JOIN profiles b ON b.id = o.customer_id
               WHERE p.seller_id=?
               ORDER BY o.created_at DESC""",
            (seller_id,),
        ).fetchall()

    sales: Dict[str, Dict[str, Any]] = {}
    for row in rows:
        sale = sales.setdefault(
            row["order_id"],
            {
                "id": row["order_id"],
                "status": row["status"],
                "created_at": row["created_at"],
                "buyer": {"id": row["customer_id"], "name": row["buyer_name"], "email": row["buyer_email"]},
                "items": [],
                "total": 0.0,
            },
        )
        sale["items"].append(
            {
                "product_id": row["product_id"],
                "title": row["title"],
                "quantity": row["quantity"],
                "unit_price": row["unit_price"],
            }
        )
        sale["total"] = money(sale["total"] + row["total_price"])
    return list(sales.values())


def seller_owns_order(seller_id: str, order_id: str) -> bool:
    with _connection() as conn:
        row = conn.execute(
            """SELECT 1 FROM order_items oi JOIN products p ON p.id = oi.product_id
               WHERE oi.order_id=? AND p.seller_id=? LIMIT 1""",
            (order_id, seller_id),
        ).fetchone()
        return row is not None


# Payments
def create_payment_record(
    order_id: Optional[str],
    status: str,
    amount: float,
    payment_id: Optional[str] = None,
    preference_id: Optional[str] = None,
    currency: Optional[str] = None,
    payment_method: Optional[str] = None,
    payment_type: Optional[str] = None,
    installments: Optional[int] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    record_id = _new_id()
    now = _now()
    with _connection() as conn:
        conn.execute(
            """INSERT INTO payments(id, order_id, payment_id, preference_id, status, amount, currency,
                   payment_method, payment_type, installments, metadata, created_at, updated_at)
               VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?)""",
            (
                record_id,
                order_id,
                payment_id,
                preference_id,
                status,
                amount,
                currency or settings.currency,
                payment_method,
                payment_type,
                installments,
                _encode(metadata or {}),
                now,
                now,
            ),
        )
        return _decode(conn.execute("SELECT * FROM payments WHERE id=?", (record_id,)).fetchone())


def save_gateway_payment(
    order_id: Optional[str],
    payment_id: str,
    status: str,
    amount: Optional[float],
    payment_method: Optional[str] = None,
    payment_type: Optional[str] = None,
    installments: Optional[int] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Insert or update the row for a gateway payment id.

    The gateway replays the same payment for a repeated idempotency key, and a
    webhook may have stored it already; either way there is one row per id.
    """

    now = _now()
    with _connection() as conn:
        conn.execute(
            """INSERT INTO payments(id, order_id, payment_id, status, amount, currency, payment_method,
                   payment_type, installments, metadata, created_at, updated_at)
               VALUES (?,?,?,?,?,?,?,?,?,?,?,?)
               ON CONFLICT(payment_id) DO UPDATE SET
                   order_id=COALESCE(payments.order_id, excluded.order_id),
                   status=excluded.status,
                   amount=COALESCE(excluded.amount, payments.amount),
                   payment_method=COALESCE(excluded.payment_method, payments.payment_method),
                   payment_type=COALESCE(excluded.payment_type, payments.payment_type),
                   installments=COALESCE(excluded.installments, payments.installments),
                   metadata=excluded.metadata,
                   updated_at=excluded.updated_at""",
            (
                _new_id(),
                order_id,
                payment_id,
                status,
                amount,
                settings.currency,
                payment_method,
                payment_type,
                installments,
                _encode(metadata or {}),
                now,
                now,
            ),
        )
        return _decode(conn.execute("SELECT * FROM payments WHERE payment_id=?", (payment_id,)).fetchone())


def get_payment_by_external_id(payment_id: str) -> Optional[Dict[str, Any]]:
    with _connection() as conn:
        row = conn.execute("SELECT * FROM payments WHERE payment_id=?", (payment_id,)).fetchone()
        return _decode(row)


def get_open_preference_payment(order_id: str) -> Optional[Dict[str, Any]]:
    """The preference row of an order that no gateway payment has claimed yet."""

    with _connection() as conn:
        row = conn.execute(
            """SELECT * FROM payments
               WHERE order_id=? AND payment_id IS NULL AND preference_id IS NOT NULL
               ORDER BY created_at DESC LIMIT 1""",
            (order_id,),
        ).fetchone()
        return _decode(row)


def attach_gateway_payment(record_id: str, payment_id: str, **fields: Any) -> Dict[str, Any]:
    """Bind a gateway payment id (and any known details) to an existing payment row."""

    allowed = {"status", "amount", "payment_method", "payment_type", "installments"}
    assignments = ["payment_id=?", "updated_at=?"]
    params: List[Any] = [payment_id, _now()]
    for key, value in fields.items():
        if key in allowed and value is not None:
            assignments.append(f"{key}=?")
            params.append(value)
    params.append(record_id)

    with _connection() as conn:
        conn.execute(f"UPDATE payments SET {', '.join(assignments)} WHERE id=?", params)
        return _decode(conn.execute("SELECT * FROM payments WHERE id=?", (record_id,)).fetchone())


def update_payment_status(
    payment_id: str,
    status: str,
    metadata: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    with _connection() as conn:
        cursor = conn.execute(
            "UPDATE payments SET status=?, metadata=?, updated_at=? WHERE payment_id=?",
            (status, _encode(metadata or {}), _now(), payment_id),
        )
        if cursor.rowcount == 0:
            raise NotFoundError(f"Payment {payment_id} not found")
        return _decode(conn.execute("SELECT * FROM payments WHERE payment_id=?", (payment_id,)).fetchone())


def create_payment_event(
    payment_id: str,
    event_type: str,
    status: str,
    raw_data: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Record an event against the payment whose gateway id is ``payment_id``."""

    with _connection() as conn:
        payment = conn.execute("SELECT id FROM payments WHERE payment_id=?", (payment_id,)).fetchone()
        if payment is None:
            raise NotFoundError(f"Payment {payment_id} not found")
        cursor = conn.execute(
            """INSERT INTO payment_events(payment_id, event_type, status, raw_data, created_at)
               VALUES (?,?,?,?,?)""",
            (payment["id"], event_type, status, _encode(raw_data or {}), _now()),
        )
        row = conn.execute("SELECT * FROM payment_events WHERE id=?", (cursor.lastrowid,)).fetchone()
        return _decode(row)


def get_order_payments(order_id: str) -> List[Dict[str, Any]]:
    with _connection() as conn:
        rows = conn.execute(
            "SELECT * FROM payments WHERE order_id=? ORDER BY created_at DESC",
            (order_id,),
        ).fetchall()
        return _decode_all(rows)


def get_payment_details(record_id: str) -> Optional[Dict[str, Any]]:
    """Payment row by internal id, with its events oldest first."""

    with _connection() as conn:
        payment = _decode(conn.execute("SELECT * FROM payments WHERE id=?", (record_id,)).fetchone())
        if payment is None:
            return None
        payment["events"] = _decode_all(
            conn.execute(
                "SELECT * FROM payment_events WHERE payment_id=? ORDER BY id",
                (record_id,),
            ).fetchall()
        )
        return payment


def get_payment_info(payment_id: str) -> Optional[Dict[str, Any]]:
    """Payment by gateway id with its order, the order's customer and items."""

    with _connection() as conn:
        payment = _decode(conn.execute("SELECT * FROM payments WHERE payment_id=?", (payment_id,)).fetchone())
        if payment is None:
            return None
        order = _load_order(conn, payment["order_id"]) if payment["order_id"] else None
        if order is not None:
            order["customer"] = _decode(
                conn.execute("SELECT * FROM profiles WHERE id=?", (order["customer_id"],)).fetchone()
            )
        payment["order"] = order
        return payment


# Webhook deliveries
def claim_webhook_delivery(dedup_key: str, action: str, resource_id: str) -> bool:
    """Record a delivery; False only when the same delivery was already processed.

    A claim that never reached ``complete_webhook_delivery`` (failed or
    interrupted processing) can be taken again by the gateway's resend.
    """

    with _connection() as conn:
        row = conn.execute(
            "SELECT processed_at FROM webhook_deliveries WHERE dedup_key=?",
            (dedup_key,),
        ).fetchone()
        if row is not None and row["processed_at"]:
            return False
        conn.execute(
            """INSERT INTO webhook_deliveries(dedup_key, action, resource_id, received_at)
               VALUES (?,?,?,?)
               ON CONFLICT(dedup_key) DO UPDATE SET received_at=excluded.received_at""",
            (dedup_key, action, resource_id, _now()),
        )
        return True


def complete_webhook_delivery(dedup_key: str) -> None:
    with _connection() as conn:
        conn.execute(
            "UPDATE webhook_deliveries SET processed_at=? WHERE dedup_key=?",
            (_now(), dedup_key),
        )

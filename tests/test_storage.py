import sqlite3

import pytest

from marketplace import storage
from marketplace.errors import NotFoundError, StorageError


def _count(db_path, table):
    with sqlite3.connect(db_path) as conn:
        return conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]


def test_create_order_total_is_sum_of_items(db):
    order = storage.create_order(
        customer_id="buyer_1",
        items=[
            {"product_id": "prod_1", "title": "Smartphone XYZ", "quantity": 1, "unit_price": 599.99},
            {"product_id": "prod_4", "title": "Casual Shirt", "quantity": 3, "unit_price": 39.99},
        ],
    )

    assert order["status"] == "pending_payment"
    assert order["total_amount"] == 719.96
    assert order["total_amount"] == round(sum(item["total_price"] for item in order["items"]), 2)
    assert {item["product"]["id"] for item in order["items"]} == {"prod_1", "prod_4"}


def test_failed_item_insert_leaves_no_order(db):
    with pytest.raises(StorageError):
        storage.create_order(
            customer_id="buyer_1",
            items=[
                {"product_id": "prod_1", "quantity": 1, "unit_price": 599.99},
                {"product_id": "does_not_exist", "quantity": 1, "unit_price": 10.0},
            ],
        )

    assert _count(db, "orders") == 0
    assert _count(db, "order_items") == 0


def test_non_positive_quantity_rolls_back(db):
    with pytest.raises(StorageError):
        storage.create_order(
            customer_id="buyer_1",
            items=[{"product_id": "prod_1", "quantity": 0, "unit_price": 599.99}],
        )
    assert _count(db, "orders") == 0


def test_order_needs_items(db):
    with pytest.raises(StorageError):
        storage.create_order(customer_id="buyer_1", items=[])


def test_update_order_status(db):
    order = storage.create_order("buyer_1", [{"product_id": "prod_5", "quantity": 1, "unit_price": 49.99}])

    updated = storage.update_order_status(order["id"], "shipped")
    assert updated["status"] == "shipped"
    with pytest.raises(NotFoundError):
        storage.update_order_status("nope", "shipped")


def test_user_orders_newest_first(db):
    first = storage.create_order("buyer_1", [{"product_id": "prod_5", "quantity": 1, "unit_price": 49.99}])
    second = storage.create_order("buyer_1", [{"product_id": "prod_6", "quantity": 1, "unit_price": 79.99}])

    orders = storage.get_user_orders("buyer_1")
    assert [order["id"] for order in orders] == [second["id"], first["id"]]
    assert storage.get_user_orders("seller_1") == []


def test_payment_lifecycle(db):
    order = storage.create_order("buyer_1", [{"product_id": "prod_1", "quantity": 1, "unit_price": 599.99}])
    record = storage.create_payment_record(order["id"], "pending", 599.99, payment_id="mp_1", metadata={"a": 1})
    assert record["metadata"] == {"a": 1}
    assert record["currency"] == "MXN"

    storage.update_payment_status("mp_1", "approved", metadata={"raw": {"id": "mp_1"}})
    storage.create_payment_event("mp_1", "payment.updated", "approved", raw_data={"id": "mp_1"})

    details = storage.get_payment_details(record["id"])
    assert details["status"] == "approved"
    assert [event["event_type"] for event in details["events"]] == ["payment.updated"]

    info = storage.get_payment_info("mp_1")
    assert info["order"]["id"] == order["id"]
    assert info["order"]["customer"]["email"] == "buyer@example.com"
    assert storage.get_order_payments(order["id"])[0]["payment_id"] == "mp_1"


def test_payment_event_requires_known_payment(db):
    with pytest.raises(NotFoundError):
        storage.create_payment_event("missing", "payment.updated", "approved")
    with pytest.raises(NotFoundError):
        storage.update_payment_status("missing", "approved")


def test_open_preference_row_is_claimed_once(db):
    order = storage.create_order("buyer_1", [{"product_id": "prod_1", "quantity": 1, "unit_price": 599.99}])
    row = storage.create_payment_record(order["id"], "pending", 599.99, preference_id="pref_1")

    assert storage.get_open_preference_payment(order["id"])["id"] == row["id"]
    storage.attach_gateway_payment(row["id"], "mp_2", status="approved", amount=599.99)
    assert storage.get_open_preference_payment(order["id"]) is None
    assert storage.get_payment_by_external_id("mp_2")["status"] == "approved"


def test_webhook_delivery_claim(db):
    assert storage.claim_webhook_delivery("notification:1", "payment.updated", "mp_1")
    # Not completed yet, so a resend may take it again.
    assert storage.claim_webhook_delivery("notification:1", "payment.updated", "mp_1")
    storage.complete_webhook_delivery("notification:1")
    assert not storage.claim_webhook_delivery("notification:1", "payment.updated", "mp_1")


def test_order_line_totals_round_like_the_cart(db):
    order = storage.create_order("buyer_1", [{"product_id": "prod_4", "quantity": 3, "unit_price": 1.005}])
    assert order["items"][0]["total_price"] == 3.02
    assert order["total_amount"] == 3.02


def test_gateway_payment_is_saved_once_per_id(db):
    order = storage.create_order("buyer_1", [{"product_id": "prod_1", "quantity": 1, "unit_price": 599.99}])
    storage.create_payment_record(order["id"], "pending", 599.99, payment_id="mp_9", payment_method="visa")

    saved = storage.save_gateway_payment(order["id"], "mp_9", "approved", None, payment_type="credit_card")

    assert saved["status"] == "approved"
    assert saved["amount"] == 599.99
    assert saved["payment_method"] == "visa"
    assert saved["payment_type"] == "credit_card"
    assert len(storage.get_order_payments(order["id"])) == 1


def test_checkout_key_finds_order(db):
    order = storage.create_order(
        "buyer_1", [{"product_id": "prod_1", "quantity": 1, "unit_price": 599.99}], checkout_key="tok_1"
    )
    assert storage.get_order_by_checkout_key("tok_1")["id"] == order["id"]
    assert storage.get_order_by_checkout_key("tok_2") is None
    with pytest.raises(StorageError):
        storage.create_order("buyer_1", [{"product_id": "prod_1", "quantity": 1, "unit_price": 1.0}], checkout_key="tok_1")


def test_seller_sales_only_list_own_lines(db):
    order = storage.create_order(
        "buyer_1",
        [
            {"product_id": "prod_1", "title": "Smartphone XYZ", "quantity": 1, "unit_price": 599.99},
            {"product_id": "prod_4", "title": "Casual Shirt", "quantity": 2, "unit_price": 39.99},
        ],
    )

    sales = storage.get_seller_sales("seller_3")
    assert len(sales) == 1
    assert sales[0]["id"] == order["id"]
    assert sales[0]["total"] == 79.98
    assert sales[0]["buyer"]["name"] == "Demo Buyer"
    assert [item["product_id"] for item in sales[0]["items"]] == ["prod_4"]
    assert storage.seller_owns_order("seller_1", order["id"])
    assert not storage.seller_owns_order("seller_4", order["id"])


def test_seed_is_repeatable(db):
    storage.seed_catalog({"categories": [], "products": [], "profiles": []})
    assert _count(db, "products") == 6
    counts = {c["slug"]: c["product_count"] for c in storage.list_categories()}
    assert counts == {"clothing": 2, "electronics": 3, "home": 0, "sports": 1, "toys": 0}

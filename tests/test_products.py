import pytest

from stockbook import db as app_db
from stockbook.errors import NotFoundError, ValidationError
from stockbook.services import activity, bookings, products


def test_create_product_derives_available_stock(conn, make_product):
    pid = make_product("Walnut Table", total=12, bad=2, dead=1, size="180x90", finish="Oiled")
    p = products.get_product(conn, pid)
    assert p["available_stock"] == 9
    assert p["bookings"] == 0
    assert p["status"] == "In Stock"
    assert p["size"] == "180x90"

    entry = activity.recent_activity(conn, limit=1)[0]
    assert entry["description"] == f"Created product Walnut Table ({p['model_no']})"


@pytest.mark.parametrize(
    "data, message",
    [
        ({"model_no": "", "name": "X"}, "Model number is required"),
        ({"model_no": "X-1", "name": "  "}, "Name is required"),
        ({"model_no": "X-1", "name": "X", "total_stock": "-1"}, "Total stock cannot be negative"),
        ({"model_no": "X-1", "name": "X", "bad_stock": "two"}, "Bad stock must be a whole number"),
        ({"model_no": "X-1", "name": "X", "manufacturer_id": "42"}, "Unknown manufacturer 42"),
    ],
)
def test_create_product_validation(conn, data, message):
    with pytest.raises(ValidationError) as exc:
        products.create_product(conn, data)
    assert str(exc.value) == message


def test_model_number_is_unique(conn, make_product):
    make_product(model_no="AB-100")
    with pytest.raises(ValidationError, match="Model number ab-100 already exists"):
        products.create_product(conn, {"model_no": "ab-100", "name": "Copy"})


def test_update_product_logs_changes(conn, make_product):
    pid = make_product("Lamp", total=4, model_no="LP-1")
    updated = products.update_product(
        conn, pid, {"model_no": "LP-1", "name": "Floor Lamp", "total_stock": "8"}, actor={"id": 3, "username": "sam"}
    )
    assert updated["name"] == "Floor Lamp"
    assert updated["available_stock"] == 8

    entry = activity.recent_activity(conn, limit=1)[0]
    assert entry["action_type"] == "update"
    assert entry["username"] == "sam"
    changes = entry["metadata"]["changes"]
    assert changes["name"] == {"from": "Lamp", "to": "Floor Lamp"}
    assert changes["total_stock"] == {"from": 4, "to": 8}


def test_update_without_changes_logs_nothing(conn, make_product):
    pid = make_product("Lamp", total=4, model_no="LP-1")
    before = activity.latest_activity_id(conn)
    products.update_product(conn, pid, {"model_no": "LP-1", "name": "Lamp", "total_stock": 4})
    assert activity.latest_activity_id(conn) == before


def test_update_cannot_drop_below_bookings(conn, make_product, make_customer):
    pid = make_product("Cabinet", total=5, model_no="CB-1")
    cid = make_customer()
    bookings.create_booking(conn, cid, "pending", [{"product_id": pid, "quantity": 4}])
    with pytest.raises(ValidationError, match="4 units of Cabinet are booked"):
        products.update_product(conn, pid, {"model_no": "CB-1", "name": "Cabinet", "total_stock": 3})
    assert products.get_product(conn, pid)["total_stock"] == 5


def test_update_sees_booking_committed_after_validation(conn, make_product, make_customer, monkeypatch):
    pid = make_product("Cabinet", total=5, model_no="CB-2")
    cid = make_customer()
    real_clean = products.clean_product_data

    def _clean_then_book_elsewhere(c, data):
        other = app_db.db()
        try:
            bookings.create_booking(other, cid, "pending", [{"product_id": pid, "quantity": 4}])
        finally:
            other.close()
        return real_clean(c, data)

    monkeypatch.setattr(products, "clean_product_data", _clean_then_book_elsewhere)
    with pytest.raises(ValidationError, match="4 units of Cabinet are booked"):
        products.update_product(conn, pid, {"model_no": "CB-2", "name": "Cabinet", "total_stock": 2})

    p = products.get_product(conn, pid)
    assert p["total_stock"] == 5
    assert p["available_stock"] == 1
    assert not conn.in_transaction


def test_delete_product(conn, make_product):
    pid = make_product("Spare")
    products.delete_product(conn, pid)
    with pytest.raises(NotFoundError):
        products.get_product(conn, pid)


def test_list_products_filters_and_sorts(conn, make_product, make_manufacturer):
    maker = make_manufacturer("Fjord Works")
    a = make_product("Armchair", total=20, manufacturer_id=maker)
    b = make_product("Bookcase", total=3)
    c = make_product("Cupboard", total=0)

    assert [p["id"] for p in products.list_products(conn)] == [a, b, c]
    assert [p["id"] for p in products.list_products(conn, sort="total_stock", direction="desc")] == [a, b, c]
    assert [p["id"] for p in products.list_products(conn, stock="low")] == [b]
    assert [p["id"] for p in products.list_products(conn, stock="out")] == [c]
    assert [p["id"] for p in products.list_products(conn, q="fjord")] == [a]
    assert [p["id"] for p in products.list_products(conn, manufacturer_id=maker)] == [a]
    assert [p["id"] for p in products.list_products(conn, stock="low", low_threshold=25)] == [a, b]
    # unknown sort column falls back to name
    assert [p["id"] for p in products.list_products(conn, sort="drop table")] == [a, b, c]

    assert products.stock_counts(conn) == {"total": 3, "low": 1, "out": 1}


def test_search_products(conn, make_product):
    make_product("Glass Table", model_no="GT-1")
    make_product("Glass Shelf", model_no="GS-1")
    make_product("Oak Shelf", model_no="OS-1")

    assert products.search_products(conn, "") == []
    assert [r["name"] for r in products.search_products(conn, "glass")] == ["Glass Shelf", "Glass Table"]
    assert [r["model_no"] for r in products.search_products(conn, "os-")] == ["OS-1"]
    assert len(products.search_products(conn, "shelf", limit=1)) == 1

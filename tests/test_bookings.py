import pytest

from stockbook.errors import BookingError, NotFoundError, OverbookingError, ValidationError
from stockbook.services import activity, bookings, customers, products


ADMIN = {"id": 1, "username": "admin"}


def _product(conn, pid):
    return products.get_product(conn, pid)


def test_create_booking_reserves_stock(conn, make_product, make_customer):
    pid = make_product("Oak Chair", total=10, bad=1, dead=1)
    cid = make_customer("Harbor Hotel")

    bid = bookings.create_booking(
        conn, cid, "advance_paid", [{"product_id": pid, "quantity": 3}],
        booking_date="2024-05-01", notes="  deliver in June ", actor=ADMIN,
    )

    p = _product(conn, pid)
    assert p["bookings"] == 3
    assert p["available_stock"] == 5

    b = bookings.get_booking(conn, bid)
    assert b["customer_name"] == "Harbor Hotel"
    assert b["status_label"] == "Advance paid"
    assert b["booking_date"] == "2024-05-01"
    assert b["notes"] == "deliver in June"
    assert b["total_quantity"] == 3
    assert [(i["product_id"], i["quantity"]) for i in b["items"]] == [(pid, 3)]

    entry = activity.recent_activity(conn, limit=1)[0]
    assert entry["action_type"] == "create"
    assert entry["entity_type"] == "booking"
    assert entry["entity_id"] == str(bid)
    assert entry["username"] == "admin"
    assert entry["metadata"]["items"][0]["name"] == "Oak Chair"


def test_create_booking_merges_duplicate_lines(conn, make_product, make_customer):
    pid = make_product("Bench", total=10)
    cid = make_customer()
    bid = bookings.create_booking(
        conn, cid, "pending",
        [{"product_id": pid, "quantity": 2}, {"product_id": str(pid), "quantity": "3"}],
    )
    b = bookings.get_booking(conn, bid)
    assert len(b["items"]) == 1
    assert b["items"][0]["quantity"] == 5
    assert _product(conn, pid)["bookings"] == 5


def test_overbooking_names_all_products_and_writes_nothing(conn, make_product, make_customer):
    chair = make_product("Chair", total=2)
    table = make_product("Table", total=1)
    lamp = make_product("Lamp", total=50)
    cid = make_customer()
    before = activity.latest_activity_id(conn)

    with pytest.raises(OverbookingError) as exc:
        bookings.create_booking(
            conn, cid, "pending",
            [
                {"product_id": chair, "quantity": 3},
                {"product_id": lamp, "quantity": 1},
                {"product_id": table, "quantity": 2},
            ],
        )

    assert exc.value.products == ["Chair", "Table"]
    assert "Chair" in str(exc.value) and "Table" in str(exc.value)
    assert bookings.count_bookings(conn) == 0
    assert conn.execute("SELECT COUNT(*) FROM booking_item").fetchone()[0] == 0
    assert _product(conn, lamp)["bookings"] == 0
    assert activity.latest_activity_id(conn) == before


def test_booking_exactly_available_is_allowed(conn, make_product, make_customer):
    pid = make_product("Stool", total=4, bad=1)
    cid = make_customer()
    bookings.create_booking(conn, cid, "pending", [{"product_id": pid, "quantity": 3}])
    assert _product(conn, pid)["available_stock"] == 0
    with pytest.raises(OverbookingError):
        bookings.create_booking(conn, cid, "pending", [{"product_id": pid, "quantity": 1}])


@pytest.mark.parametrize(
    "status, items, message",
    [
        ("pending", [], "Add at least one product to the booking"),
        ("shipped", [{"product_id": 1, "quantity": 1}], "Unknown booking status: shipped"),
    ],
)
def test_create_booking_validation(conn, make_product, make_customer, status, items, message):
    make_product()
    cid = make_customer()
    with pytest.raises(BookingError) as exc:
        bookings.create_booking(conn, cid, status, items)
    assert str(exc.value) == message


def test_create_booking_requires_existing_customer(conn, make_product):
    pid = make_product()
    with pytest.raises(BookingError, match="Select a customer"):
        bookings.create_booking(conn, "", "pending", [{"product_id": pid, "quantity": 1}])
    with pytest.raises(BookingError, match="Customer 77 does not exist"):
        bookings.create_booking(conn, 77, "pending", [{"product_id": pid, "quantity": 1}])


def test_create_booking_rejects_bad_date(conn, make_product, make_customer):
    pid = make_product()
    cid = make_customer()
    with pytest.raises(BookingError, match="Invalid booking date"):
        bookings.create_booking(
            conn, cid, "pending", [{"product_id": pid, "quantity": 1}], booking_date="31/12/2024"
        )


def test_update_booking_counts_own_reservation(conn, make_product, make_customer):
    pid = make_product("Desk", total=5)
    cid = make_customer()
    bid = bookings.create_booking(conn, cid, "pending", [{"product_id": pid, "quantity": 4}])

    updated = bookings.update_booking(
        conn, bid, cid, "full_paid", [{"product_id": pid, "quantity": 5}], actor=ADMIN
    )
    assert updated["status"] == "full_paid"
    assert updated["total_quantity"] == 5
    assert _product(conn, pid)["bookings"] == 5

    with pytest.raises(OverbookingError) as exc:
        bookings.update_booking(conn, bid, cid, "full_paid", [{"product_id": pid, "quantity": 6}])
    assert exc.value.products == ["Desk"]
    assert _product(conn, pid)["bookings"] == 5
    assert bookings.get_booking(conn, bid)["total_quantity"] == 5


def test_update_booking_replaces_items(conn, make_product, make_customer):
    old = make_product("Old Shelf", total=5)
    new = make_product("New Shelf", total=5)
    cid = make_customer()
    other = make_customer("Second Customer")
    bid = bookings.create_booking(conn, cid, "pending", [{"product_id": old, "quantity": 2}])

    bookings.update_booking(conn, bid, other, "pending", [{"product_id": new, "quantity": 3}])

    assert _product(conn, old)["bookings"] == 0
    assert _product(conn, new)["bookings"] == 3
    b = bookings.get_booking(conn, bid)
    assert b["customer_id"] == other
    assert [i["product_id"] for i in b["items"]] == [new]

    entry = activity.recent_activity(conn, limit=1)[0]
    assert entry["action_type"] == "update"
    assert entry["metadata"]["before"]["items"] == [{"product_id": old, "quantity": 2}]


def test_update_missing_booking(conn, make_product, make_customer):
    pid = make_product()
    cid = make_customer()
    with pytest.raises(NotFoundError):
        bookings.update_booking(conn, 404, cid, "pending", [{"product_id": pid, "quantity": 1}])


def test_delete_booking_releases_stock(conn, make_product, make_customer):
    pid = make_product("Rug", total=6)
    cid = make_customer()
    bid = bookings.create_booking(conn, cid, "pending", [{"product_id": pid, "quantity": 6}])
    assert _product(conn, pid)["available_stock"] == 0

    removed = bookings.delete_booking(conn, bid, actor=ADMIN)

    assert removed["id"] == bid
    assert _product(conn, pid)["available_stock"] == 6
    assert conn.execute("SELECT COUNT(*) FROM booking_item").fetchone()[0] == 0
    with pytest.raises(NotFoundError):
        bookings.get_booking(conn, bid)
    assert activity.recent_activity(conn, limit=1)[0]["action_type"] == "delete"


def test_listing_and_grouping(conn, make_product, make_customer):
    pid = make_product(total=100)
    alice = make_customer("Alice Studio")
    bob = make_customer("Bob Builders")
    b1 = bookings.create_booking(conn, bob, "pending", [{"product_id": pid, "quantity": 1}], booking_date="2024-01-01")
    b2 = bookings.create_booking(conn, alice, "pending", [{"product_id": pid, "quantity": 2}], booking_date="2024-03-01")
    b3 = bookings.create_booking(conn, bob, "full_paid", [{"product_id": pid, "quantity": 4}], booking_date="2024-03-01")

    assert [b["id"] for b in bookings.list_bookings(conn)] == [b3, b2, b1]
    assert [b["id"] for b in bookings.list_bookings(conn, q="bob")] == [b3, b1]
    assert [b["id"] for b in bookings.list_bookings(conn, status="full_paid")] == [b3]
    assert len(bookings.list_bookings(conn, limit=2)) == 2

    groups = bookings.grouped_by_customer(conn)
    assert [g["customer"]["name"] for g in groups] == ["Alice Studio", "Bob Builders"]
    assert groups[1]["total_quantity"] == 5

    data = bookings.customer_bookings(conn, bob)
    assert data["customer"]["name"] == "Bob Builders"
    assert [b["id"] for b in data["bookings"]] == [b3, b1]


def test_referenced_product_and_customer_cannot_be_deleted(conn, make_product, make_customer):
    pid = make_product("Vase", total=3)
    cid = make_customer("Bay Florist")
    bid = bookings.create_booking(conn, cid, "pending", [{"product_id": pid, "quantity": 1}])

    with pytest.raises(ValidationError, match="Cannot delete product. 1 bookings include Vase."):
        products.delete_product(conn, pid)
    with pytest.raises(ValidationError, match="Bay Florist has 1 bookings"):
        customers.delete_customer(conn, cid)

    bookings.delete_booking(conn, bid)
    products.delete_product(conn, pid)
    customers.delete_customer(conn, cid)

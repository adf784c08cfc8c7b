import pytest

from stockbook.errors import NotFoundError, ValidationError
from stockbook.services import catalog, products


def test_manufacturer_crud(conn, make_manufacturer):
    mid = make_manufacturer("Lakeside Oak", contact_person="Ines")
    with pytest.raises(ValidationError, match="Manufacturer lakeside oak already exists"):
        catalog.create_manufacturer(conn, {"factory_name": "lakeside oak"})
    with pytest.raises(ValidationError, match="Factory name is required"):
        catalog.create_manufacturer(conn, {"factory_name": " "})

    updated = catalog.update_manufacturer(conn, mid, {"factory_name": "Lakeside Oak", "notes": "Ships monthly"})
    assert updated["notes"] == "Ships monthly"
    assert updated["contact_person"] is None

    catalog.delete_manufacturer(conn, mid)
    with pytest.raises(NotFoundError):
        catalog.get_manufacturer(conn, mid)


def test_deleting_manufacturer_keeps_products(conn, make_manufacturer, make_product):
    mid = make_manufacturer()
    pid = make_product(manufacturer_id=mid)
    catalog.delete_manufacturer(conn, mid)
    assert products.get_product(conn, pid)["manufacturer_id"] is None


def test_category_breakdown(conn, make_manufacturer, make_product):
    mid = make_manufacturer("Birch & Co")
    chairs = catalog.create_category(conn, {"name": "Chairs"})
    tables = catalog.create_category(conn, {"name": "Tables"})
    make_product(manufacturer_id=mid, category_id=chairs)
    make_product(manufacturer_id=mid, category_id=chairs)
    make_product(manufacturer_id=mid, category_id=tables)
    make_product(manufacturer_id=mid)

    rows = catalog.list_manufacturers(conn)
    assert len(rows) == 1
    assert rows[0]["product_count"] == 4
    assert rows[0]["categories"] == [
        {"category": "Chairs", "count": 2},
        {"category": "Tables", "count": 1},
        {"category": "Uncategorized", "count": 1},
    ]


def test_manufacturer_detail_uses_double_threshold(conn, make_manufacturer, make_product):
    mid = make_manufacturer()
    make_product("Eight Left", total=8, manufacturer_id=mid)
    make_product("Plenty", total=30, manufacturer_id=mid)
    make_product("Elsewhere", total=8)

    detail = catalog.manufacturer_detail(conn, mid)
    assert detail["low_threshold"] == 10
    assert detail["manufacturer"]["product_count"] == 2
    by_name = {p["name"]: p["status"] for p in detail["products"]}
    assert by_name == {"Eight Left": "Low Stock", "Plenty": "In Stock"}

    low = catalog.manufacturer_detail(conn, mid, stock="low")
    assert [p["name"] for p in low["products"]] == ["Eight Left"]


def test_category_in_use_cannot_be_deleted(conn, make_product):
    cid = catalog.create_category(conn, {"name": "Lighting"})
    pid = make_product(category_id=cid)
    with pytest.raises(ValidationError) as exc:
        catalog.delete_category(conn, cid)
    assert str(exc.value) == "Cannot delete category. 1 products are using this category."

    products.delete_product(conn, pid)
    catalog.delete_category(conn, cid)
    assert catalog.list_categories(conn) == []


def test_category_names_are_unique(conn):
    catalog.create_category(conn, {"name": "Rugs"})
    with pytest.raises(ValidationError, match="Category RUGS already exists"):
        catalog.create_category(conn, {"name": "RUGS"})


def test_find_or_create_manufacturer(conn, make_manufacturer):
    mid = make_manufacturer("Pine Forge")
    with conn:
        assert catalog.find_or_create_manufacturer(conn, "pine forge") == mid
        created = catalog.find_or_create_manufacturer(conn, "Cedar Works")
    assert catalog.get_manufacturer(conn, created)["factory_name"] == "Cedar Works"
    assert [m["factory_name"] for m in catalog.manufacturer_choices(conn)] == ["Cedar Works", "Pine Forge"]

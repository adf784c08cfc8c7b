import io

import pandas as pd
import pytest

from stockbook.errors import ValidationError
from stockbook.services import activity, bookings, catalog, imports, products


def _write(tmp_path, name: str, body: str):
    path = tmp_path / name
    path.write_text(body, encoding="utf-8")
    return str(path)


def test_map_columns_uses_aliases():
    mapping = imports.map_columns(["Model No.", " Product  Name ", "Factory", "Stock", "Colour", "SKU"])
    assert mapping == {
        "Model No.": "model_no",
        " Product  Name ": "name",
        "Factory": "manufacturer",
        "Stock": "total_stock",
    }


def test_import_creates_products_and_reports_row_errors(conn, tmp_path):
    path = _write(
        tmp_path,
        "stock.csv",
        "Model No,Name,Factory,Total Stock,Bad Stock\n"
        "A-1,Chair,Acme Mills,10,1\n"
        "A-2,,Acme Mills,3,0\n"
        "A-3,Table,Acme Mills,x,0\n"
        ",,,,\n"
        "A-4,Stool,Birch Yard,4,\n",
    )

    stats = imports.import_products_csv(conn, path, "stock.csv", actor={"id": 1, "username": "admin"})

    assert stats["created"] == 2
    assert stats["updated"] == 0
    assert stats["imported"] == 2
    assert stats["errors"] == [
        "Row 3: Name is required",
        "Row 4: Total stock must be a whole number",
    ]
    chair = products.list_products(conn, q="A-1")[0]
    assert chair["available_stock"] == 9
    assert chair["manufacturer_name"] == "Acme Mills"
    assert [m["factory_name"] for m in catalog.manufacturer_choices(conn)] == ["Acme Mills", "Birch Yard"]

    summary = activity.recent_activity(conn, limit=1)[0]
    assert summary["description"] == "Imported 2 products via CSV"
    assert summary["metadata"]["errors"] == 2


def test_import_updates_existing_and_reads_semicolons(conn, tmp_path, make_product):
    make_product("Chair", total=10, bad=1, model_no="A-1")
    path = _write(tmp_path, "update.csv", "model no;name;stock\na-1;Chair v2;20\n")

    stats = imports.import_products_csv(conn, path)

    assert stats == {"created": 0, "updated": 1, "imported": 1, "errors": []}
    chair = products.list_products(conn, q="A-1")[0]
    assert chair["name"] == "Chair v2"
    assert chair["bad_stock"] == 1
    assert chair["available_stock"] == 19


def test_import_unknown_category_is_a_row_error(conn, tmp_path):
    catalog.create_category(conn, {"name": "Seating"})
    path = _write(
        tmp_path,
        "cats.csv",
        "model,name,category\nS-1,Sofa,seating\nS-2,Shelf,Storage\n",
    )
    stats = imports.import_products_csv(conn, path)
    assert stats["created"] == 1
    assert stats["errors"] == ["Row 3: Unknown category Storage"]
    assert products.list_products(conn, q="S-1")[0]["category_name"] == "Seating"


def test_import_refuses_same_file_twice(conn, tmp_path):
    path = _write(tmp_path, "once.csv", "sku,name\nX-1,Thing\n")
    imports.import_products_csv(conn, path, "once.csv")
    with pytest.raises(ValidationError, match="already imported"):
        imports.import_products_csv(conn, path, "once.csv")
    assert len(products.list_products(conn)) == 1


def test_import_with_row_errors_can_be_retried(conn, tmp_path):
    path = _write(tmp_path, "seating.csv", "model,name,category\nP-1,Pouf,Seating\n")

    first = imports.import_products_csv(conn, path, "seating.csv")
    assert first["imported"] == 0
    assert first["errors"] == ["Row 2: Unknown category Seating"]
    assert imports.check_import_duplicate(conn, imports.compute_sha256(path)) is None

    catalog.create_category(conn, {"name": "Seating"})
    second = imports.import_products_csv(conn, path, "seating.csv")
    assert second == {"created": 1, "updated": 0, "imported": 1, "errors": []}
    assert products.list_products(conn, q="P-1")[0]["category_name"] == "Seating"

    with pytest.raises(ValidationError, match="already imported"):
        imports.import_products_csv(conn, path, "seating.csv")


def test_import_reads_bookings_under_write_lock(conn, tmp_path, make_product, make_customer, monkeypatch):
    pid = make_product("Bench", total=5, model_no="B-1")
    cid = make_customer()
    path = _write(tmp_path, "shrink.csv", "model,name,stock\nB-1,Bench,2\n")
    real_upsert = imports._upsert_row
    seen = []

    def _upsert(c, fields, actor=None):
        seen.append(c.in_transaction)
        return real_upsert(c, fields, actor)

    monkeypatch.setattr(imports, "_upsert_row", _upsert)
    bookings.create_booking(conn, cid, "pending", [{"product_id": pid, "quantity": 4}])

    stats = imports.import_products_csv(conn, path)

    assert seen == [True]
    assert stats["errors"] == ["Row 2: 4 units of B-1 are booked; stock counts too low"]
    assert products.get_product(conn, pid)["available_stock"] == 1


def test_import_requires_model_and_name(conn, tmp_path):
    path = _write(tmp_path, "bad.csv", "title,stock\nThing,3\n")
    with pytest.raises(ValidationError) as exc:
        imports.import_products_csv(conn, path)
    assert str(exc.value) == "CSV is missing required columns: model no, name"


def test_export_products_csv(conn, make_product, make_manufacturer):
    mid = make_manufacturer("Delta Works")
    make_product("Arc Lamp", total=2, model_no="AL-1", manufacturer_id=mid)
    make_product("Box Shelf", total=40, model_no="BS-1")

    frame = pd.read_csv(io.StringIO(imports.export_products_csv(conn)))
    assert list(frame.columns) == [label for label, _ in imports.EXPORT_COLUMNS]
    assert list(frame["Model No"]) == ["AL-1", "BS-1"]
    assert list(frame["Status"]) == ["Low Stock", "In Stock"]

    only_delta = pd.read_csv(io.StringIO(imports.export_products_csv(conn, manufacturer_id=mid)))
    assert list(only_delta["Name"]) == ["Arc Lamp"]

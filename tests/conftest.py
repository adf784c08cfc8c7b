from __future__ import annotations

import pytest

from stockbook import config as app_config
from stockbook import db as app_db
from stockbook.services import catalog, customers, products


@pytest.fixture()
def conn(tmp_path, monkeypatch):
    monkeypatch.setattr(app_config, "DB_PATH", str(tmp_path / "stockbook.sqlite3"))
    monkeypatch.setattr(app_config, "PHOTOS_DIR", tmp_path / "photos")
    monkeypatch.setattr(app_config, "UPLOAD_DIR", tmp_path / "uploads")
    monkeypatch.setattr(app_config, "SUPER_ADMIN_PASSWORD", None)
    monkeypatch.setattr(app_config, "LOW_STOCK_THRESHOLD", 5)
    app_db.init_db()
    c = app_db.db()
    yield c
    c.close()


@pytest.fixture()
def make_product(conn):
    counter = {"n": 0}

    def _make(name: str = None, total: int = 10, bad: int = 0, dead: int = 0, **extra) -> int:
        counter["n"] += 1
        data = {
            "model_no": extra.pop("model_no", f"MD-{counter['n']:03d}"),
            "name": name or f"Product {counter['n']}",
            "total_stock": total,
            "bad_stock": bad,
            "dead_stock": dead,
        }
        data.update(extra)
        return products.create_product(conn, data)

    return _make


@pytest.fixture()
def make_customer(conn):
    def _make(name: str = "Acme Interiors", **extra) -> int:
        return customers.create_customer(conn, {"name": name, **extra})

    return _make


@pytest.fixture()
def make_manufacturer(conn):
    def _make(name: str = "Northwind Mills", **extra) -> int:
        return catalog.create_manufacturer(conn, {"factory_name": name, **extra})

    return _make

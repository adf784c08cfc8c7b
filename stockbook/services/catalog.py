from __future__ import annotations

import sqlite3
from typing import Any, Dict, List, Mapping, Optional

from stockbook import config as app_config
from stockbook.errors import NotFoundError, ValidationError
from stockbook.services.activity import diff_changes, log_activity
from stockbook.services.products import list_products

UNCATEGORIZED = "Uncategorized"


def _text(data: Mapping[str, Any], key: str) -> Optional[str]:
    val = data.get(key)
    val = str(val).strip() if val is not None else ""
    return val or None


# ===== Manufacturers =====

def _clean_manufacturer(data: Mapping[str, Any]) -> Dict[str, Any]:
    fields = {
        "factory_name": _text(data, "factory_name"),
        "contact_person": _text(data, "contact_person"),
        "notes": _text(data, "notes"),
    }
    if not fields["factory_name"]:
        raise ValidationError("Factory name is required")
    return fields


def _ensure_unique_factory(conn: sqlite3.Connection, name: str, exclude_id: Optional[int] = None) -> None:
    row = conn.execute(
        "SELECT id FROM manufacturer WHERE LOWER(factory_name)=LOWER(?)", (name,)
    ).fetchone()
    if row and row["id"] != exclude_id:
        raise ValidationError(f"Manufacturer {name} already exists")


def get_manufacturer(conn: sqlite3.Connection, mid: int) -> Dict[str, Any]:
    row = conn.execute("SELECT * FROM manufacturer WHERE id=?", (mid,)).fetchone()
    if not row:
        raise NotFoundError(f"Manufacturer {mid} not found")
    return dict(row)


def create_manufacturer(conn, data, actor=None) -> int:
    fields = _clean_manufacturer(data)
    _ensure_unique_factory(conn, fields["factory_name"])
    with conn:
        cur = conn.execute(
            "INSERT INTO manufacturer(factory_name, contact_person, notes) VALUES (?,?,?)",
            (fields["factory_name"], fields["contact_person"], fields["notes"]),
        )
        mid = int(cur.lastrowid)
        log_activity(
            conn, "create", "manufacturer", mid,
            f"Created manufacturer {fields['factory_name']}",
            {"after": fields}, actor,
        )
    return mid


def update_manufacturer(conn, mid: int, data, actor=None) -> Dict[str, Any]:
    current = get_manufacturer(conn, mid)
    fields = _clean_manufacturer(data)
    _ensure_unique_factory(conn, fields["factory_name"], exclude_id=mid)
    before = {k: current.get(k) for k in fields}
    changes = diff_changes(before, fields)
    if changes:
        with conn:
            conn.execute(
                """
                UPDATE manufacturer SET factory_name=?, contact_person=?, notes=?,
                    updated_at=datetime('now','localtime')
                WHERE id=?
                """,
                (fields["factory_name"], fields["contact_person"], fields["notes"], mid),
            )
            log_activity(
                conn, "update", "manufacturer", mid,
                f"Updated manufacturer {fields['factory_name']}: {', '.join(changes)}",
                {"before": before, "after": fields, "changes": changes}, actor,
            )
    return get_manufacturer(conn, mid)


def delete_manufacturer(conn, mid: int, actor=None) -> Dict[str, Any]:
    """Products of a deleted manufacturer are kept without a manufacturer."""
    current = get_manufacturer(conn, mid)
    with conn:
        conn.execute("DELETE FROM manufacturer WHERE id=?", (mid,))
        log_activity(
            conn, "delete", "manufacturer", mid,
            f"Deleted manufacturer {current['factory_name']}",
            {"before": current}, actor,
        )
    return current


def list_manufacturers(conn: sqlite3.Connection, q: str = "") -> List[Dict[str, Any]]:
    """Manufacturer cards: product count plus a per-category breakdown."""
    params: List[Any] = []
    where = ""
    q = (q or "").strip()
    if q:
        like = f"%{q.lower()}%"
        where = "WHERE LOWER(m.factory_name) LIKE ? OR LOWER(IFNULL(m.contact_person,'')) LIKE ?"
        params = [like, like]
    rows = conn.execute(
        f"""
        SELECT m.*, (SELECT COUNT(*) FROM product p WHERE p.manufacturer_id=m.id) AS product_count
        FROM manufacturer m {where}
        ORDER BY m.factory_name COLLATE NOCASE ASC
        """,
        params,
    ).fetchall()
    breakdown = category_breakdown(conn)
    out = []
    for r in rows:
        d = dict(r)
        d["categories"] = breakdown.get(int(r["id"]), [])
        out.append(d)
    return out


def category_breakdown(conn: sqlite3.Connection) -> Dict[int, List[Dict[str, Any]]]:
    rows = conn.execute(
        """
        SELECT p.manufacturer_id AS mid, c.name AS category, COUNT(*) AS n
        FROM product p LEFT JOIN category c ON c.id = p.category_id
        WHERE p.manufacturer_id IS NOT NULL
        GROUP BY p.manufacturer_id, c.name
        """
    ).fetchall()
    out: Dict[int, List[Dict[str, Any]]] = {}
    for r in rows:
        out.setdefault(int(r["mid"]), []).append(
            {"category": r["category"] or UNCATEGORIZED, "count": int(r["n"])}
        )
    for items in out.values():
        items.sort(key=lambda i: (-i["count"], i["category"]))
    return out


def manufacturer_detail(
    conn: sqlite3.Connection,
    mid: int,
    q: str = "",
    stock: str = "all",
    sort: str = "name",
    direction: str = "asc",
) -> Dict[str, Any]:
    # The manufacturer view flags low stock at twice the catalog threshold.
    threshold = app_config.LOW_STOCK_THRESHOLD * 2
    manufacturer = get_manufacturer(conn, mid)
    products = list_products(
        conn,
        q=q,
        manufacturer_id=mid,
        stock=stock,
        sort=sort,
        direction=direction,
        low_threshold=threshold,
    )
    manufacturer["categories"] = category_breakdown(conn).get(mid, [])
    manufacturer["product_count"] = conn.execute(
        "SELECT COUNT(*) FROM product WHERE manufacturer_id=?", (mid,)
    ).fetchone()[0]
    return {"manufacturer": manufacturer, "products": products, "low_threshold": threshold}


def manufacturer_choices(conn: sqlite3.Connection) -> List[Dict[str, Any]]:
    rows = conn.execute(
        "SELECT id, factory_name FROM manufacturer ORDER BY factory_name COLLATE NOCASE"
    ).fetchall()
    return [dict(r) for r in rows]


# ===== Categories =====

def _clean_category(data: Mapping[str, Any]) -> Dict[str, Any]:
    fields = {"name": _text(data, "name"), "description": _text(data, "description")}
    if not fields["name"]:
        raise ValidationError("Category name is required")
    return fields


def _ensure_unique_category(conn: sqlite3.Connection, name: str, exclude_id: Optional[int] = None) -> None:
    row = conn.execute("SELECT id FROM category WHERE LOWER(name)=LOWER(?)", (name,)).fetchone()
    if row and row["id"] != exclude_id:
        raise ValidationError(f"Category {name} already exists")


def get_category(conn: sqlite3.Connection, cid: int) -> Dict[str, Any]:
    row = conn.execute("SELECT * FROM category WHERE id=?", (cid,)).fetchone()
    if not row:
        raise NotFoundError(f"Category {cid} not found")
    return dict(row)


def list_categories(conn: sqlite3.Connection) -> List[Dict[str, Any]]:
    rows = conn.execute(
        """
        SELECT c.*, (SELECT COUNT(*) FROM product p WHERE p.category_id=c.id) AS product_count
        FROM category c ORDER BY c.name COLLATE NOCASE
        """
    ).fetchall()
    return [dict(r) for r in rows]


def create_category(conn, data, actor=None) -> int:
    fields = _clean_category(data)
    _ensure_unique_category(conn, fields["name"])
    with conn:
        cur = conn.execute(
            "INSERT INTO category(name, description) VALUES (?,?)",
            (fields["name"], fields["description"]),
        )
        cid = int(cur.lastrowid)
        log_activity(
            conn, "create", "category", cid,
            f"Created category {fields['name']}", {"after": fields}, actor,
        )
    return cid


def update_category(conn, cid: int, data, actor=None) -> Dict[str, Any]:
    current = get_category(conn, cid)
    fields = _clean_category(data)
    _ensure_unique_category(conn, fields["name"], exclude_id=cid)
    before = {k: current.get(k) for k in fields}
    changes = diff_changes(before, fields)
    if changes:
        with conn:
            conn.execute(
                "UPDATE category SET name=?, description=?, updated_at=datetime('now','localtime') WHERE id=?",
                (fields["name"], fields["description"], cid),
            )
            log_activity(
                conn, "update", "category", cid,
                f"Updated category {fields['name']}: {', '.join(changes)}",
                {"before": before, "after": fields, "changes": changes}, actor,
            )
    return get_category(conn, cid)


def delete_category(conn, cid: int, actor=None) -> Dict[str, Any]:
    current = get_category(conn, cid)
    used = conn.execute("SELECT COUNT(*) FROM product WHERE category_id=?", (cid,)).fetchone()[0]
    if used:
        raise ValidationError(
            f"Cannot delete category. {used} products are using this category."
        )
    with conn:
        conn.execute("DELETE FROM category WHERE id=?", (cid,))
        log_activity(
            conn, "delete", "category", cid,
            f"Deleted category {current['name']}", {"before": current}, actor,
        )
    return current


def find_or_create_manufacturer(conn: sqlite3.Connection, name: str, actor=None) -> int:
    """Resolve a manufacturer by name (case-insensitive), creating it if missing.

    Runs inside the caller's transaction.
    """
    row = conn.execute(
        "SELECT id FROM manufacturer WHERE LOWER(factory_name)=LOWER(?)", (name,)
    ).fetchone()
    if row:
        return int(row["id"])
    cur = conn.execute("INSERT INTO manufacturer(factory_name) VALUES (?)", (name,))
    mid = int(cur.lastrowid)
    log_activity(conn, "create", "manufacturer", mid, f"Created manufacturer {name}", None, actor)
    return mid

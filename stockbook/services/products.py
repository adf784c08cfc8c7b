from __future__ import annotations

import logging
import sqlite3
from typing import Any, Dict, List, Mapping, Optional

from stockbook import config as app_config
from stockbook.db import begin_immediate
from stockbook.errors import NotFoundError, ValidationError
from stockbook.services.activity import diff_changes, log_activity
from stockbook.services.stock import derived_available, stock_status

logger = logging.getLogger(__name__)

TEXT_FIELDS = ("model_no", "name", "description", "size", "finish", "remarks", "internal_notes")
STOCK_FIELDS = ("total_stock", "bad_stock", "dead_stock")
REF_FIELDS = ("manufacturer_id", "category_id")
EDITABLE_FIELDS = TEXT_FIELDS + REF_FIELDS + STOCK_FIELDS

SORTABLE_FIELDS = (
    "name",
    "model_no",
    "total_stock",
    "bad_stock",
    "dead_stock",
    "bookings",
    "available_stock",
)

_PRODUCT_SELECT = """
    SELECT p.*, m.factory_name AS manufacturer_name, c.name AS category_name
    FROM product p
    LEFT JOIN manufacturer m ON m.id = p.manufacturer_id
    LEFT JOIN category c ON c.id = p.category_id
"""


def _parse_count(field: str, raw: Any) -> int:
    if raw is None or (isinstance(raw, str) and raw.strip() == ""):
        return 0
    if isinstance(raw, bool):
        raise ValidationError(f"{field} must be a whole number")
    try:
        val = int(str(raw).strip()) if not isinstance(raw, (int, float)) else raw
    except ValueError:
        raise ValidationError(f"{field} must be a whole number")
    if isinstance(val, float):
        if not val.is_integer():
            raise ValidationError(f"{field} must be a whole number")
        val = int(val)
    if val < 0:
        raise ValidationError(f"{field} cannot be negative")
    return val


def _parse_ref(conn: sqlite3.Connection, field: str, raw: Any) -> Optional[int]:
    if raw is None or str(raw).strip() == "":
        return None
    try:
        ref_id = int(raw)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} is invalid")
    table = "manufacturer" if field == "manufacturer_id" else "category"
    if not conn.execute(f"SELECT 1 FROM {table} WHERE id=?", (ref_id,)).fetchone():
        raise ValidationError(f"Unknown {table} {ref_id}")
    return ref_id


def clean_product_data(conn: sqlite3.Connection, data: Mapping[str, Any]) -> Dict[str, Any]:
    """Normalise submitted product fields; raises ValidationError on bad input."""
    out: Dict[str, Any] = {}
    for field in TEXT_FIELDS:
        val = data.get(field)
        val = str(val).strip() if val is not None else ""
        out[field] = val or None
    if not out["model_no"]:
        raise ValidationError("Model number is required")
    if not out["name"]:
        raise ValidationError("Name is required")
    for field in REF_FIELDS:
        out[field] = _parse_ref(conn, field, data.get(field))
    for field in STOCK_FIELDS:
        out[field] = _parse_count(field.replace("_", " ").capitalize(), data.get(field))
    return out


def _decorate(row: sqlite3.Row) -> Dict[str, Any]:
    d = dict(row)
    d["status"] = stock_status(d.get("available_stock") or 0)
    return d


def get_product(conn: sqlite3.Connection, pid: int) -> Dict[str, Any]:
    row = conn.execute(_PRODUCT_SELECT + " WHERE p.id=?", (pid,)).fetchone()
    if not row:
        raise NotFoundError(f"Product {pid} not found")
    return _decorate(row)


def _ensure_unique_model(conn: sqlite3.Connection, model_no: str, exclude_id: Optional[int] = None) -> None:
    row = conn.execute(
        "SELECT id FROM product WHERE LOWER(model_no)=LOWER(?)",
        (model_no,),
    ).fetchone()
    if row and row["id"] != exclude_id:
        raise ValidationError(f"Model number {model_no} already exists")


def create_product(
    conn: sqlite3.Connection,
    data: Mapping[str, Any],
    actor: Optional[Mapping[str, Any]] = None,
) -> int:
    fields = clean_product_data(conn, data)
    _ensure_unique_model(conn, fields["model_no"])
    cols = ", ".join(fields.keys())
    marks = ",".join("?" for _ in fields)
    try:
        with conn:
            cur = conn.execute(
                f"INSERT INTO product({cols}) VALUES ({marks})",
                tuple(fields.values()),
            )
            pid = int(cur.lastrowid)
            log_activity(
                conn,
                "create",
                "product",
                pid,
                f"Created product {fields['name']} ({fields['model_no']})",
                {"after": fields},
                actor,
            )
    except sqlite3.IntegrityError as e:
        raise ValidationError(f"Could not save product: {e}")
    return pid


def update_product(
    conn: sqlite3.Connection,
    pid: int,
    data: Mapping[str, Any],
    actor: Optional[Mapping[str, Any]] = None,
) -> Dict[str, Any]:
    fields = clean_product_data(conn, data)
    assignments = ", ".join(f"{k}=?" for k in fields)
    try:
        with conn:
            # bookings must be read under the write lock
            begin_immediate(conn)
            current = get_product(conn, pid)
            _ensure_unique_model(conn, fields["model_no"], exclude_id=pid)
            left = derived_available(
                fields["total_stock"], fields["bad_stock"], fields["dead_stock"], current["bookings"]
            )
            if left < 0:
                raise ValidationError(
                    f"{current['bookings']} units of {current['name']} are booked; "
                    f"stock counts would leave {left} available"
                )
            before = {k: current.get(k) for k in EDITABLE_FIELDS}
            changes = diff_changes(before, fields)
            if not changes:
                return current
            conn.execute(
                f"UPDATE product SET {assignments}, updated_at=datetime('now','localtime') WHERE id=?",
                (*fields.values(), pid),
            )
            log_activity(
                conn,
                "update",
                "product",
                pid,
                f"Updated product {fields['name']} ({fields['model_no']}): {', '.join(changes)}",
                {"before": before, "after": fields, "changes": changes},
                actor,
            )
    except sqlite3.IntegrityError as e:
        raise ValidationError(f"Could not save product: {e}")
    return get_product(conn, pid)


def delete_product(
    conn: sqlite3.Connection,
    pid: int,
    actor: Optional[Mapping[str, Any]] = None,
) -> Dict[str, Any]:
    current = get_product(conn, pid)
    used = conn.execute(
        "SELECT COUNT(DISTINCT booking_id) AS n FROM booking_item WHERE product_id=?",
        (pid,),
    ).fetchone()["n"]
    if used:
        raise ValidationError(
            f"Cannot delete product. {used} bookings include {current['name']}."
        )
    with conn:
        conn.execute("DELETE FROM product WHERE id=?", (pid,))
        log_activity(
            conn,
            "delete",
            "product",
            pid,
            f"Deleted product {current['name']} ({current['model_no']})",
            {"before": {k: current.get(k) for k in EDITABLE_FIELDS}},
            actor,
        )
    return current


def list_products(
    conn: sqlite3.Connection,
    q: str = "",
    manufacturer_id: Optional[int] = None,
    category_id: Optional[int] = None,
    stock: str = "all",
    sort: str = "name",
    direction: str = "asc",
    low_threshold: Optional[int] = None,
) -> List[Dict[str, Any]]:
    """Search by name, model number or manufacturer; filter and sort.

    ``stock`` is one of ``all``, ``low`` (in stock but at or under the low
    threshold) or ``out`` (nothing available).
    """
    where: List[str] = []
    params: List[Any] = []
    q = (q or "").strip()
    if q:
        like = f"%{q.lower()}%"
        where.append(
            "(LOWER(p.name) LIKE ? OR LOWER(p.model_no) LIKE ? OR LOWER(IFNULL(m.factory_name,'')) LIKE ?)"
        )
        params.extend([like, like, like])
    if manufacturer_id:
        where.append("p.manufacturer_id=?")
        params.append(int(manufacturer_id))
    if category_id:
        where.append("p.category_id=?")
        params.append(int(category_id))
    threshold = app_config.LOW_STOCK_THRESHOLD if low_threshold is None else low_threshold
    if stock == "low":
        where.append("p.available_stock > 0 AND p.available_stock <= ?")
        params.append(int(threshold))
    elif stock == "out":
        where.append("p.available_stock <= 0")
    order_col = sort if sort in SORTABLE_FIELDS else "name"
    order_dir = "DESC" if (direction or "").lower() == "desc" else "ASC"
    sql = _PRODUCT_SELECT
    if where:
        sql += " WHERE " + " AND ".join(where)
    sql += f" ORDER BY p.{order_col} {order_dir}, p.id ASC"
    rows = conn.execute(sql, params).fetchall()
    out = []
    for r in rows:
        d = dict(r)
        d["status"] = stock_status(d.get("available_stock") or 0, threshold)
        out.append(d)
    return out


def search_products(conn: sqlite3.Connection, q: str, limit: Optional[int] = None) -> List[Dict[str, Any]]:
    """Product picker lookup: empty query yields nothing."""
    q = (q or "").strip()
    if not q:
        return []
    limit = limit or app_config.SEARCH_LIMIT
    like = f"%{q.lower()}%"
    rows = conn.execute(
        """
        SELECT id, model_no, name, available_stock FROM product
        WHERE LOWER(name) LIKE ? OR LOWER(model_no) LIKE ?
        ORDER BY name ASC, id ASC LIMIT ?
        """,
        (like, like, int(limit)),
    ).fetchall()
    return [dict(r) for r in rows]


def stock_counts(conn: sqlite3.Connection, threshold: Optional[int] = None) -> Dict[str, int]:
    threshold = app_config.LOW_STOCK_THRESHOLD if threshold is None else threshold
    row = conn.execute(
        """
        SELECT COUNT(*) AS total,
               SUM(CASE WHEN available_stock > 0 AND available_stock <= ? THEN 1 ELSE 0 END) AS low,
               SUM(CASE WHEN available_stock <= 0 THEN 1 ELSE 0 END) AS out
        FROM product
        """,
        (int(threshold),),
    ).fetchone()
    return {"total": int(row["total"] or 0), "low": int(row["low"] or 0), "out": int(row["out"] or 0)}


def set_photo_path(conn: sqlite3.Connection, pid: int, path: Optional[str]) -> None:
    with conn:
        conn.execute(
            "UPDATE product SET photo_path=?, updated_at=datetime('now','localtime') WHERE id=?",
            (path, pid),
        )

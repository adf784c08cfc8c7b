from __future__ import annotations

import re
import sqlite3
from typing import Any, Dict, List, Mapping, Optional

from stockbook.errors import NotFoundError, ValidationError
from stockbook.services.activity import diff_changes, log_activity

_EMAIL_RX = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

FIELDS = ("name", "email", "phone", "address")


def clean_customer_data(data: Mapping[str, Any]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for field in FIELDS:
        val = data.get(field)
        val = str(val).strip() if val is not None else ""
        out[field] = val or None
    if not out["name"]:
        raise ValidationError("Customer name is required")
    if out["email"] and not _EMAIL_RX.match(out["email"]):
        raise ValidationError(f"Invalid email address: {out['email']}")
    return out


def get_customer(conn: sqlite3.Connection, cid: int) -> Dict[str, Any]:
    row = conn.execute("SELECT * FROM customer WHERE id=?", (cid,)).fetchone()
    if not row:
        raise NotFoundError(f"Customer {cid} not found")
    return dict(row)


def list_customers(conn: sqlite3.Connection, q: str = "") -> List[Dict[str, Any]]:
    params: List[Any] = []
    where = ""
    q = (q or "").strip()
    if q:
        like = f"%{q.lower()}%"
        where = (
            "WHERE LOWER(c.name) LIKE ? OR LOWER(IFNULL(c.email,'')) LIKE ? "
            "OR IFNULL(c.phone,'') LIKE ?"
        )
        params = [like, like, like]
    rows = conn.execute(
        f"""
        SELECT c.*, (SELECT COUNT(*) FROM booking b WHERE b.customer_id=c.id) AS booking_count
        FROM customer c {where}
        ORDER BY c.name COLLATE NOCASE ASC
        """,
        params,
    ).fetchall()
    return [dict(r) for r in rows]


def create_customer(conn, data, actor=None) -> int:
    fields = clean_customer_data(data)
    with conn:
        cur = conn.execute(
            "INSERT INTO customer(name, email, phone, address) VALUES (?,?,?,?)",
            (fields["name"], fields["email"], fields["phone"], fields["address"]),
        )
        cid = int(cur.lastrowid)
        log_activity(
            conn, "create", "customer", cid,
            f"Created customer {fields['name']}", {"after": fields}, actor,
        )
    return cid


def update_customer(conn, cid: int, data, actor=None) -> Dict[str, Any]:
    current = get_customer(conn, cid)
    fields = clean_customer_data(data)
    before = {k: current.get(k) for k in FIELDS}
    changes = diff_changes(before, fields)
    if changes:
        with conn:
            conn.execute(
                """
                UPDATE customer SET name=?, email=?, phone=?, address=?,
                    updated_at=datetime('now','localtime')
                WHERE id=?
                """,
                (fields["name"], fields["email"], fields["phone"], fields["address"], cid),
            )
            log_activity(
                conn, "update", "customer", cid,
                f"Updated customer {fields['name']}: {', '.join(changes)}",
                {"before": before, "after": fields, "changes": changes}, actor,
            )
    return get_customer(conn, cid)


def delete_customer(conn, cid: int, actor=None) -> Dict[str, Any]:
    current = get_customer(conn, cid)
    n = conn.execute("SELECT COUNT(*) FROM booking WHERE customer_id=?", (cid,)).fetchone()[0]
    if n:
        raise ValidationError(
            f"Cannot delete customer. {current['name']} has {n} bookings; delete them first."
        )
    with conn:
        conn.execute("DELETE FROM customer WHERE id=?", (cid,))
        log_activity(
            conn, "delete", "customer", cid,
            f"Deleted customer {current['name']}", {"before": current}, actor,
        )
    return current


def customer_choices(conn: sqlite3.Connection) -> List[Dict[str, Any]]:
    rows = conn.execute("SELECT id, name FROM customer ORDER BY name COLLATE NOCASE").fetchall()
    return [dict(r) for r in rows]

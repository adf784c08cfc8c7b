from __future__ import annotations

import datetime as dt
import logging
import sqlite3
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from stockbook.db import begin_immediate
from stockbook.errors import BookingError, NotFoundError
from stockbook.services.activity import log_activity
from stockbook.services.stock import aggregate_items, check_availability

logger = logging.getLogger(__name__)

STATUSES = ("pending", "advance_paid", "full_paid")
STATUS_LABELS = {
    "pending": "Pending",
    "advance_paid": "Advance paid",
    "full_paid": "Fully paid",
}


def _validate_status(status: Optional[str]) -> str:
    status = (status or "pending").strip()
    if status not in STATUSES:
        raise BookingError(f"Unknown booking status: {status}")
    return status


def _validate_date(raw: Any) -> str:
    if raw is None or str(raw).strip() == "":
        return dt.date.today().isoformat()
    if isinstance(raw, dt.date):
        return raw.isoformat()
    try:
        return dt.date.fromisoformat(str(raw).strip()).isoformat()
    except ValueError:
        raise BookingError(f"Invalid booking date: {raw}")


def _customer_name(conn: sqlite3.Connection, customer_id: Any) -> Tuple[int, str]:
    try:
        cid = int(customer_id)
    except (TypeError, ValueError):
        raise BookingError("Select a customer")
    row = conn.execute("SELECT name FROM customer WHERE id=?", (cid,)).fetchone()
    if not row:
        raise BookingError(f"Customer {cid} does not exist")
    return cid, row["name"]


def _items_metadata(conn: sqlite3.Connection, lines: Sequence[Tuple[int, int]]) -> List[Dict[str, Any]]:
    out = []
    for pid, qty in lines:
        row = conn.execute("SELECT model_no, name FROM product WHERE id=?", (pid,)).fetchone()
        out.append({
            "product_id": pid,
            "model_no": row["model_no"] if row else None,
            "name": row["name"] if row else None,
            "quantity": qty,
        })
    return out


def _prepare(items: Iterable[Mapping[str, Any]]) -> List[Tuple[int, int]]:
    lines = aggregate_items(items or [])
    if not lines:
        raise BookingError("Add at least one product to the booking")
    return lines


def create_booking(
    conn: sqlite3.Connection,
    customer_id: Any,
    status: Optional[str],
    items: Iterable[Mapping[str, Any]],
    booking_date: Any = None,
    notes: Optional[str] = None,
    actor: Optional[Mapping[str, Any]] = None,
) -> int:
    """Create a booking and reserve stock for every item.

    Raises OverbookingError naming every product that lacks stock; nothing is
    written in that case.
    """
    status = _validate_status(status)
    booking_date = _validate_date(booking_date)
    lines = _prepare(items)
    with conn:
        begin_immediate(conn)
        cid, cname = _customer_name(conn, customer_id)
        check_availability(conn, lines)
        cur = conn.execute(
            "INSERT INTO booking(customer_id, status, booking_date, notes) VALUES (?,?,?,?)",
            (cid, status, booking_date, (notes or "").strip() or None),
        )
        bid = int(cur.lastrowid)
        conn.executemany(
            "INSERT INTO booking_item(booking_id, product_id, quantity) VALUES (?,?,?)",
            [(bid, pid, qty) for pid, qty in lines],
        )
        log_activity(
            conn,
            "create",
            "booking",
            bid,
            f"Created booking #{bid} for {cname} ({len(lines)} products)",
            {
                "customer_id": cid,
                "status": status,
                "booking_date": booking_date,
                "items": _items_metadata(conn, lines),
            },
            actor,
        )
    logger.info("Booking %s created for customer %s", bid, cid)
    return bid


def update_booking(
    conn: sqlite3.Connection,
    booking_id: int,
    customer_id: Any,
    status: Optional[str],
    items: Iterable[Mapping[str, Any]],
    booking_date: Any = None,
    notes: Optional[str] = None,
    actor: Optional[Mapping[str, Any]] = None,
) -> Dict[str, Any]:
    """Replace a booking's header and item set in one transaction."""
    status = _validate_status(status)
    booking_date = _validate_date(booking_date)
    lines = _prepare(items)
    before = get_booking(conn, booking_id)
    with conn:
        begin_immediate(conn)
        cid, cname = _customer_name(conn, customer_id)
        check_availability(conn, lines, editing_booking_id=booking_id)
        conn.execute(
            """
            UPDATE booking SET customer_id=?, status=?, booking_date=?, notes=?,
                updated_at=datetime('now','localtime')
            WHERE id=?
            """,
            (cid, status, booking_date, (notes or "").strip() or None, booking_id),
        )
        conn.execute("DELETE FROM booking_item WHERE booking_id=?", (booking_id,))
        conn.executemany(
            "INSERT INTO booking_item(booking_id, product_id, quantity) VALUES (?,?,?)",
            [(booking_id, pid, qty) for pid, qty in lines],
        )
        after_items = _items_metadata(conn, lines)
        log_activity(
            conn,
            "update",
            "booking",
            booking_id,
            f"Updated booking #{booking_id} for {cname}",
            {
                "before": {
                    "customer_id": before["customer_id"],
                    "status": before["status"],
                    "booking_date": before["booking_date"],
                    "items": [
                        {"product_id": i["product_id"], "quantity": i["quantity"]}
                        for i in before["items"]
                    ],
                },
                "after": {
                    "customer_id": cid,
                    "status": status,
                    "booking_date": booking_date,
                    "items": after_items,
                },
            },
            actor,
        )
    return get_booking(conn, booking_id)


def delete_booking(
    conn: sqlite3.Connection,
    booking_id: int,
    actor: Optional[Mapping[str, Any]] = None,
) -> Dict[str, Any]:
    """Delete a booking; its items cascade and their reservation is released."""
    current = get_booking(conn, booking_id)
    with conn:
        conn.execute("DELETE FROM booking WHERE id=?", (booking_id,))
        log_activity(
            conn,
            "delete",
            "booking",
            booking_id,
            f"Deleted booking #{booking_id} for {current['customer_name']}",
            {"before": {k: current[k] for k in ("customer_id", "status", "booking_date", "items")}},
            actor,
        )
    return current


def _items_for(conn: sqlite3.Connection, booking_ids: Sequence[int]) -> Dict[int, List[Dict[str, Any]]]:
    if not booking_ids:
        return {}
    placeholders = ",".join("?" for _ in booking_ids)
    rows = conn.execute(
        f"""
        SELECT bi.booking_id, bi.product_id, bi.quantity, p.model_no, p.name, p.available_stock
        FROM booking_item bi JOIN product p ON p.id = bi.product_id
        WHERE bi.booking_id IN ({placeholders})
        ORDER BY bi.id
        """,
        tuple(booking_ids),
    ).fetchall()
    out: Dict[int, List[Dict[str, Any]]] = {}
    for r in rows:
        out.setdefault(int(r["booking_id"]), []).append(
            {
                "product_id": r["product_id"],
                "model_no": r["model_no"],
                "name": r["name"],
                "quantity": int(r["quantity"]),
                "available_stock": r["available_stock"],
            }
        )
    return out


def _decorate(rows: Sequence[sqlite3.Row], conn: sqlite3.Connection) -> List[Dict[str, Any]]:
    items = _items_for(conn, [int(r["id"]) for r in rows])
    out = []
    for r in rows:
        d = dict(r)
        d["items"] = items.get(int(r["id"]), [])
        d["total_quantity"] = sum(i["quantity"] for i in d["items"])
        d["status_label"] = STATUS_LABELS.get(d["status"], d["status"])
        out.append(d)
    return out


_BOOKING_SELECT = """
    SELECT b.*, c.name AS customer_name, c.email AS customer_email, c.phone AS customer_phone
    FROM booking b JOIN customer c ON c.id = b.customer_id
"""


def get_booking(conn: sqlite3.Connection, booking_id: int) -> Dict[str, Any]:
    row = conn.execute(_BOOKING_SELECT + " WHERE b.id=?", (booking_id,)).fetchone()
    if not row:
        raise NotFoundError(f"Booking {booking_id} not found")
    return _decorate([row], conn)[0]


def list_bookings(
    conn: sqlite3.Connection,
    q: str = "",
    status: Optional[str] = None,
    limit: Optional[int] = None,
) -> List[Dict[str, Any]]:
    """Newest booking date first."""
    where: List[str] = []
    params: List[Any] = []
    q = (q or "").strip()
    if q:
        where.append("LOWER(c.name) LIKE ?")
        params.append(f"%{q.lower()}%")
    if status:
        where.append("b.status=?")
        params.append(status)
    sql = _BOOKING_SELECT
    if where:
        sql += " WHERE " + " AND ".join(where)
    sql += " ORDER BY b.booking_date DESC, b.id DESC"
    if limit:
        sql += " LIMIT ?"
        params.append(int(limit))
    return _decorate(conn.execute(sql, params).fetchall(), conn)


def grouped_by_customer(conn: sqlite3.Connection, q: str = "") -> List[Dict[str, Any]]:
    groups: Dict[int, Dict[str, Any]] = {}
    for b in list_bookings(conn, q=q):
        cid = int(b["customer_id"])
        group = groups.get(cid)
        if group is None:
            group = groups[cid] = {
                "customer": {
                    "id": cid,
                    "name": b["customer_name"],
                    "email": b["customer_email"],
                    "phone": b["customer_phone"],
                },
                "bookings": [],
                "total_quantity": 0,
            }
        group["bookings"].append(b)
        group["total_quantity"] += b["total_quantity"]
    return sorted(groups.values(), key=lambda g: (g["customer"]["name"] or "").lower())


def customer_bookings(conn: sqlite3.Connection, customer_id: int) -> Dict[str, Any]:
    row = conn.execute("SELECT * FROM customer WHERE id=?", (customer_id,)).fetchone()
    if not row:
        raise NotFoundError(f"Customer {customer_id} not found")
    rows = conn.execute(
        _BOOKING_SELECT + " WHERE b.customer_id=? ORDER BY b.booking_date DESC, b.id DESC",
        (customer_id,),
    ).fetchall()
    return {"customer": dict(row), "bookings": _decorate(rows, conn)}


def count_bookings(conn: sqlite3.Connection) -> int:
    return int(conn.execute("SELECT COUNT(*) FROM booking").fetchone()[0])

from __future__ import annotations

import sqlite3
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from stockbook import config as app_config
from stockbook.errors import BookingError, OverbookingError

OUT_OF_STOCK = "Out of Stock"
LOW_STOCK = "Low Stock"
IN_STOCK = "In Stock"


def derived_available(total: int, bad: int, dead: int, booked: int) -> int:
    return int(total or 0) - int(bad or 0) - int(dead or 0) - int(booked or 0)


def stock_status(available: int, threshold: Optional[int] = None) -> str:
    if threshold is None:
        threshold = app_config.LOW_STOCK_THRESHOLD
    available = int(available or 0)
    if available <= 0:
        return OUT_OF_STOCK
    if available <= threshold:
        return LOW_STOCK
    return IN_STOCK


def _parse_quantity(raw: Any) -> Optional[int]:
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, int):
        return raw
    if isinstance(raw, float):
        return int(raw) if raw.is_integer() else None
    s = str(raw).strip()
    if not s or not s.lstrip("-").isdigit():
        return None
    return int(s)


def aggregate_items(items: Iterable[Mapping[str, Any]]) -> List[Tuple[int, int]]:
    """Validate request lines and merge them by product.

    Returns ``[(product_id, quantity), ...]`` in order of first appearance.
    """
    if isinstance(items, (str, bytes, Mapping)) or not isinstance(items, Iterable):
        raise BookingError("Booking items must be a list of products")
    merged: Dict[int, int] = {}
    for pos, item in enumerate(items, start=1):
        if not isinstance(item, Mapping):
            raise BookingError(f"Item {pos}: expected a product and quantity")
        raw_pid = item.get("product_id")
        try:
            pid = int(raw_pid)
        except (TypeError, ValueError):
            raise BookingError(f"Item {pos}: select a product")
        qty = _parse_quantity(item.get("quantity"))
        if qty is None or qty < 1:
            raise BookingError(f"Item {pos}: quantity must be a whole number of at least 1")
        merged[pid] = merged.get(pid, 0) + qty
    return list(merged.items())


def reserved_by_booking(conn: sqlite3.Connection, booking_id: Optional[int]) -> Dict[int, int]:
    if booking_id is None:
        return {}
    rows = conn.execute(
        "SELECT product_id, SUM(quantity) AS q FROM booking_item WHERE booking_id=? GROUP BY product_id",
        (booking_id,),
    ).fetchall()
    return {int(r["product_id"]): int(r["q"] or 0) for r in rows}


def find_overbooked(
    conn: sqlite3.Connection,
    items: Iterable[Tuple[int, int]],
    editing_booking_id: Optional[int] = None,
) -> List[str]:
    """Names of every product whose requested quantity exceeds what can be booked.

    When editing, the booking's own reservation counts as available again.
    """
    own = reserved_by_booking(conn, editing_booking_id)
    offending: List[str] = []
    for pid, qty in items:
        row = conn.execute(
            "SELECT name, available_stock FROM product WHERE id=?",
            (pid,),
        ).fetchone()
        if not row:
            raise BookingError(f"Product {pid} does not exist")
        bookable = int(row["available_stock"] or 0) + own.get(pid, 0)
        if qty > bookable:
            offending.append(row["name"])
    return offending


def check_availability(
    conn: sqlite3.Connection,
    items: Iterable[Tuple[int, int]],
    editing_booking_id: Optional[int] = None,
) -> None:
    offending = find_overbooked(conn, items, editing_booking_id)
    if offending:
        raise OverbookingError(offending)


def bookable_quantity(
    conn: sqlite3.Connection, pid: int, editing_booking_id: Optional[int] = None
) -> Optional[int]:
    row = conn.execute("SELECT available_stock FROM product WHERE id=?", (pid,)).fetchone()
    if not row:
        return None
    return int(row["available_stock"] or 0) + reserved_by_booking(conn, editing_booking_id).get(pid, 0)

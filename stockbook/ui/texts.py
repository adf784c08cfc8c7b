import html
from typing import Any, Dict, List, Mapping, Optional

from stockbook.services.auth import visible_fields


def product_caption(user: Optional[Mapping[str, Any]], product: Mapping[str, Any]) -> str:
    """Product card limited to the columns the user is allowed to see."""
    lines = [f"<b>{html.escape(product.get('name') or '')}</b>"]
    for label, value in visible_fields(user, product):
        if label == "Name":
            continue
        shown = "—" if value is None or value == "" else html.escape(str(value))
        lines.append(f"{label}: {shown}")
    if user and user.get("role") == "admin":
        lines.append(f"Booked: {product.get('bookings') or 0}")
        lines.append(f"Status: {product.get('status')}")
    return "\n".join(lines)


def bookings_text(rows: List[Dict[str, Any]], page: int, pages: int) -> str:
    if not rows:
        return "No bookings yet."
    parts = [f"<b>Bookings</b> (page {page}/{pages})"]
    for b in rows:
        items = ", ".join(
            f"{html.escape(i['name'])} × {i['quantity']}" for i in b["items"]
        )
        parts.append(
            f"#{b['id']} · {html.escape(b['booking_date'])} · {html.escape(b['customer_name'])}\n"
            f"{b['status_label']}: {items}"
        )
    return "\n\n".join(parts)


def low_stock_text(rows: List[Dict[str, Any]]) -> str:
    if not rows:
        return "Everything is in stock."
    lines = ["<b>Low and out of stock</b>"]
    for r in rows:
        lines.append(
            f"• {html.escape(r['name'])} ({html.escape(r['model_no'])}): {r['available_stock']} · {r['status']}"
        )
    return "\n".join(lines)


def notify_text() -> str:
    return (
        "<b>Notifications</b>\n\n"
        "Choose how to hear about dashboard changes. The current choice is marked ✅.\n\n"
        "Created, Updated, Deleted: off, a summary at the end of the day, or instantly."
    )


def unlinked_text(tg_id: int) -> str:
    return (
        "This Telegram account is not linked to a dashboard user.\n"
        f"Ask an admin to enter your Telegram ID <code>{tg_id}</code> on your user record, then send /start again."
    )

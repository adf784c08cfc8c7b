from typing import Any, Dict, Mapping, Optional

from aiogram.types import InlineKeyboardButton, InlineKeyboardMarkup
from aiogram.utils.keyboard import InlineKeyboardBuilder

from stockbook.services.notify import NOTIFY_LABELS, NOTIFY_TYPES


def kb_main(user: Optional[Mapping[str, Any]]) -> InlineKeyboardMarkup:
    b = InlineKeyboardBuilder()
    b.button(text="Bookings", callback_data="bookings|1")
    if user and user.get("role") == "admin":
        b.button(text="Low stock", callback_data="lowstock")
        b.button(text="🔔 Notifications", callback_data="notify")
    b.adjust(2)
    b.row(InlineKeyboardButton(text="🔎 Search products", switch_inline_query_current_chat=""))
    return b.as_markup()


def kb_product(pid: int, is_admin: bool) -> InlineKeyboardMarkup:
    b = InlineKeyboardBuilder()
    if is_admin:
        b.button(text="📷 Set photo", callback_data=f"photo|{pid}")
    b.button(text="← Menu", callback_data="home")
    b.adjust(1)
    return b.as_markup()


def kb_pages(prefix: str, page: int, pages: int) -> InlineKeyboardMarkup:
    b = InlineKeyboardBuilder()
    if page > 1:
        b.button(text="‹", callback_data=f"{prefix}|{page - 1}")
    b.button(text=f"{page}/{pages}", callback_data="noop")
    if page < pages:
        b.button(text="›", callback_data=f"{prefix}|{page + 1}")
    b.adjust(3)
    b.row(InlineKeyboardButton(text="← Menu", callback_data="home"))
    return b.as_markup()


_MODE_LABELS = {"off": "Off", "daily": "End of day", "instant": "Instant"}


def _notify_button_row(notif_type: str, label: str, mode: str) -> list[list[InlineKeyboardButton]]:
    def style(key: str) -> str:
        text = _MODE_LABELS[key]
        return ("✅ " + text) if mode == key else text

    return [
        [InlineKeyboardButton(text=f"{label}: {_MODE_LABELS.get(mode, 'Off')}", callback_data="noop")],
        [
            InlineKeyboardButton(text=style("off"), callback_data=f"notif|{notif_type}|off"),
            InlineKeyboardButton(text=style("daily"), callback_data=f"notif|{notif_type}|daily"),
            InlineKeyboardButton(text=style("instant"), callback_data=f"notif|{notif_type}|instant"),
        ],
    ]


def kb_notify(modes: Dict[str, str]) -> InlineKeyboardMarkup:
    rows = []
    for t in NOTIFY_TYPES:
        rows += _notify_button_row(t, NOTIFY_LABELS[t], modes.get(t, "off"))
    rows.append([InlineKeyboardButton(text="← Back", callback_data="home")])
    return InlineKeyboardMarkup(inline_keyboard=rows)

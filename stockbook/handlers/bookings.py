from __future__ import annotations

import math

from aiogram import F, Router
from aiogram.types import CallbackQuery

from stockbook import config as app_config
from stockbook.db import db
from stockbook.services.bookings import count_bookings, list_bookings
from stockbook.ui.keyboards import kb_pages
from stockbook.ui.texts import bookings_text
from stockbook.utils import extract_id_from_cbdata, safe_cb_answer, user_for

router = Router()


@router.callback_query(F.data.startswith("bookings|"))
async def cb_bookings(cb: CallbackQuery):
    if not user_for(cb.from_user.id):
        await safe_cb_answer(cb, "Account not linked", show_alert=True)
        return
    await safe_cb_answer(cb)
    page = extract_id_from_cbdata(cb.data) or 1
    conn = db()
    try:
        total = count_bookings(conn)
        pages = max(1, math.ceil(total / app_config.PAGE_SIZE))
        page = min(max(page, 1), pages)
        rows = list_bookings(conn, limit=page * app_config.PAGE_SIZE)[(page - 1) * app_config.PAGE_SIZE:]
    finally:
        conn.close()
    await cb.message.edit_text(bookings_text(rows, page, pages), reply_markup=kb_pages("bookings", page, pages))

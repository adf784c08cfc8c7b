from __future__ import annotations

from aiogram import F, Router
from aiogram.types import CallbackQuery

from stockbook.db import db
from stockbook.errors import ValidationError
from stockbook.services.notify import get_notify_modes, set_notify_mode
from stockbook.ui.keyboards import kb_notify
from stockbook.ui.texts import notify_text
from stockbook.utils import require_admin, safe_cb_answer

router = Router()


def _modes(user_id: int):
    conn = db()
    try:
        return get_notify_modes(conn, user_id)
    finally:
        conn.close()


@router.callback_query(F.data == "notify")
async def cb_notify(cb: CallbackQuery):
    user = await require_admin(cb)
    if not user:
        return
    await safe_cb_answer(cb)
    await cb.message.edit_text(notify_text(), reply_markup=kb_notify(_modes(user["id"])))


@router.callback_query(F.data.startswith("notif|"))
async def cb_notif_set(cb: CallbackQuery):
    user = await require_admin(cb)
    if not user:
        return
    _, t, mode = cb.data.split("|", 2)
    conn = db()
    try:
        set_notify_mode(conn, user["id"], t, mode)
    except ValidationError:
        await safe_cb_answer(cb, "Unknown option")
        return
    finally:
        conn.close()
    await safe_cb_answer(cb, "Saved")
    await cb.message.edit_text(notify_text(), reply_markup=kb_notify(_modes(user["id"])))

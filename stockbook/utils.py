from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from aiogram.exceptions import TelegramBadRequest
from aiogram.types import CallbackQuery

from stockbook.db import db
from stockbook.services.auth import get_user_by_tg, is_admin

logger = logging.getLogger(__name__)


def user_for(tg_id: int) -> Optional[Dict[str, Any]]:
    conn = db()
    try:
        return get_user_by_tg(conn, tg_id)
    finally:
        conn.close()


async def require_admin(cb: CallbackQuery) -> Optional[Dict[str, Any]]:
    user = user_for(cb.from_user.id)
    if is_admin(user):
        return user
    await safe_cb_answer(cb, "Admins only", show_alert=True)
    return None


async def safe_cb_answer(cb: CallbackQuery, text: Optional[str] = None, show_alert: bool = False) -> None:
    try:
        await cb.answer(text, show_alert=show_alert)
    except TelegramBadRequest:
        # query too old to answer
        logger.debug("Callback %s could not be answered", cb.id)


def extract_id_from_cbdata(data: str) -> Optional[int]:
    """First numeric token after the prefix of ``prefix|...`` callback data."""
    if not data:
        return None
    for token in data.split("|")[1:]:
        if token.isdigit():
            return int(token)
    return None

from __future__ import annotations

from aiogram import Router
from aiogram.types import InlineQuery, InlineQueryResultArticle, InputTextMessageContent

from stockbook.db import db
from stockbook.services.products import search_products
from stockbook.utils import user_for

router = Router()

INLINE_LIMIT = 20


@router.inline_query()
async def inline_query(iq: InlineQuery):
    if not user_for(iq.from_user.id):
        await iq.answer(results=[], cache_time=1, is_personal=True)
        return
    conn = db()
    try:
        rows = search_products(conn, iq.query or "", limit=INLINE_LIMIT)
    finally:
        conn.close()
    results = [
        InlineQueryResultArticle(
            id=str(r["id"]),
            title=r["name"],
            description=f"{r['model_no']} · {r['available_stock']} available",
            input_message_content=InputTextMessageContent(message_text=f"/open_{r['id']}"),
        )
        for r in rows
    ]
    await iq.answer(results=results, cache_time=1, is_personal=True)

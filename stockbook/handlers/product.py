from __future__ import annotations

import logging
import re

from aiogram import F, Router
from aiogram.exceptions import TelegramBadRequest
from aiogram.fsm.context import FSMContext
from aiogram.types import CallbackQuery, FSInputFile, Message

from stockbook.db import db
from stockbook.errors import NotFoundError
from stockbook.services.auth import is_admin
from stockbook.services.photos import download_and_compress_photo, photo_exists
from stockbook.services.products import get_product, list_products, set_photo_path
from stockbook.ui.keyboards import kb_main, kb_product
from stockbook.ui.states import ProductPhoto
from stockbook.ui.texts import low_stock_text, product_caption
from stockbook.utils import extract_id_from_cbdata, require_admin, safe_cb_answer, user_for

logger = logging.getLogger(__name__)

router = Router()

_OPEN_RX = re.compile(r"^/open_(\d+)$")


@router.message(F.text.regexp(_OPEN_RX))
async def cmd_open(m: Message):
    user = user_for(m.from_user.id)
    if not user:
        return
    pid = int(_OPEN_RX.match(m.text).group(1))
    conn = db()
    try:
        product = get_product(conn, pid)
    except NotFoundError:
        await m.answer("Product not found")
        return
    finally:
        conn.close()
    caption = product_caption(user, product)
    kb = kb_product(pid, is_admin(user))
    path = product.get("photo_path")
    if photo_exists(path):
        try:
            await m.answer_photo(FSInputFile(path), caption=caption, reply_markup=kb)
            return
        except TelegramBadRequest:
            logger.warning("Sending photo for product %s failed, falling back to text", pid, exc_info=True)
    await m.answer(caption, reply_markup=kb)


@router.callback_query(F.data == "lowstock")
async def cb_low_stock(cb: CallbackQuery):
    user = await require_admin(cb)
    if not user:
        return
    await safe_cb_answer(cb)
    conn = db()
    try:
        rows = list_products(conn, stock="out", sort="name") + list_products(
            conn, stock="low", sort="available_stock"
        )
    finally:
        conn.close()
    await cb.message.edit_text(low_stock_text(rows[:40]), reply_markup=kb_main(user))


@router.callback_query(F.data.startswith("photo|"))
async def cb_set_photo(cb: CallbackQuery, state: FSMContext):
    if not await require_admin(cb):
        return
    pid = extract_id_from_cbdata(cb.data)
    if pid is None:
        await safe_cb_answer(cb, "Unknown product", show_alert=True)
        return
    await safe_cb_answer(cb)
    await state.set_state(ProductPhoto.wait_photo)
    await state.update_data(pid=pid)
    await cb.message.answer("Send the product photo as a picture (not a file).")


@router.message(ProductPhoto.wait_photo, F.photo)
async def on_product_photo(m: Message, state: FSMContext):
    user = user_for(m.from_user.id)
    if not is_admin(user):
        await state.clear()
        return
    data = await state.get_data()
    pid = data.get("pid")
    await state.clear()
    conn = db()
    try:
        product = get_product(conn, pid)
    except NotFoundError:
        conn.close()
        await m.answer("Product not found")
        return
    path = await download_and_compress_photo(m.bot, m.photo[-1].file_id, product["model_no"])
    if not path:
        conn.close()
        await m.answer("Could not save the photo, please try again.")
        return
    try:
        set_photo_path(conn, pid, path)
    finally:
        conn.close()
    await m.answer(f"Photo saved for {product['name']}. /open_{pid}")


@router.message(ProductPhoto.wait_photo)
async def on_product_photo_wrong(m: Message):
    await m.answer("Please send a photo, or press /start to cancel.")

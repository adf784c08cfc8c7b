from __future__ import annotations

from aiogram import F, Router
from aiogram.filters import CommandStart
from aiogram.fsm.context import FSMContext
from aiogram.types import CallbackQuery, Message

from stockbook.ui.keyboards import kb_main
from stockbook.ui.texts import unlinked_text
from stockbook.utils import safe_cb_answer, user_for

router = Router()


@router.message(CommandStart())
async def on_start(m: Message, state: FSMContext):
    await state.clear()
    user = user_for(m.from_user.id)
    if not user:
        await m.answer(unlinked_text(m.from_user.id))
        return
    await m.answer(f"Hello, {user['username']}! Main menu:", reply_markup=kb_main(user))


@router.callback_query(F.data == "home")
async def cb_home(cb: CallbackQuery, state: FSMContext):
    await state.clear()
    user = user_for(cb.from_user.id)
    if not user:
        await safe_cb_answer(cb, "Account not linked", show_alert=True)
        return
    await safe_cb_answer(cb)
    if cb.message.text:
        await cb.message.edit_text("Main menu:", reply_markup=kb_main(user))
    else:
        # photo cards cannot be edited into text
        await cb.message.answer("Main menu:", reply_markup=kb_main(user))


@router.callback_query(F.data == "noop")
async def cb_noop(cb: CallbackQuery):
    await safe_cb_answer(cb)

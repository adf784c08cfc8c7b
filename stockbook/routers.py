from __future__ import annotations

from aiogram import Dispatcher


def register(dp: Dispatcher) -> None:
    # Local import keeps handler modules out of the import graph of services
    from stockbook.handlers import bookings, core, inline, notify_ui, product

    dp.include_router(core.router)
    dp.include_router(inline.router)
    dp.include_router(product.router)
    dp.include_router(bookings.router)
    dp.include_router(notify_ui.router)

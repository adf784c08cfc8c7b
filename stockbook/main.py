from __future__ import annotations

import asyncio
import datetime as dt
import logging

from aiogram import Bot, Dispatcher
from aiogram.client.default import DefaultBotProperties
from aiogram.client.session.aiohttp import AiohttpSession
from aiogram.enums import ParseMode

from stockbook import config as app_config
from stockbook import db as app_db
from stockbook.routers import register as register_routers
from stockbook.services.notify import dispatch_new_activity, send_daily_digests

logger = logging.getLogger(__name__)


def next_run_at(now: dt.datetime, hhmm: str) -> dt.datetime:
    """Next local datetime matching ``HH:MM``; falls back to 21:10 on bad input."""
    try:
        hour, minute = (int(x) for x in hhmm.split(":", 1))
        run_time = now.replace(hour=hour, minute=minute, second=0, microsecond=0)
    except ValueError:
        logger.warning("Invalid DIGEST_TIME %r, using 21:10", hhmm)
        run_time = now.replace(hour=21, minute=10, second=0, microsecond=0)
    if run_time <= now:
        run_time = run_time + dt.timedelta(days=1)
    return run_time


async def _activity_watcher(bot: Bot) -> None:
    while True:
        try:
            sent = await dispatch_new_activity(bot)
            if sent:
                logger.info("Sent %s instant notifications", sent)
        except Exception:
            logger.exception("Activity notification pass failed")
        await asyncio.sleep(app_config.ACTIVITY_POLL_SECONDS)


async def _daily_scheduler(bot: Bot) -> None:
    while True:
        now = dt.datetime.now()
        run_time = next_run_at(now, app_config.DIGEST_TIME)
        await asyncio.sleep((run_time - now).total_seconds())
        try:
            sent = await send_daily_digests(bot)
            logger.info("Sent %s daily digests", sent)
        except Exception:
            logger.exception("Daily digest failed")
        await asyncio.sleep(5)


async def main() -> None:
    logging.basicConfig(
        level=app_config.LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    app_db.init_db()

    if not app_config.BOT_TOKEN:
        logger.error("BOT_TOKEN is not set. Put it in config.json or the BOT_TOKEN environment variable.")
        raise SystemExit(2)

    session = AiohttpSession(timeout=40)
    bot = Bot(app_config.BOT_TOKEN, default=DefaultBotProperties(parse_mode=ParseMode.HTML), session=session)
    dp = Dispatcher()
    register_routers(dp)

    tasks = [
        asyncio.create_task(_activity_watcher(bot)),
        asyncio.create_task(_daily_scheduler(bot)),
    ]
    logger.info("Bot started. Ctrl+C to stop.")
    try:
        await dp.start_polling(bot)
    finally:
        for task in tasks:
            task.cancel()


if __name__ == "__main__":
    asyncio.run(main())

from __future__ import annotations

import html
import logging
import sqlite3
from typing import Any, Dict, List, Mapping

from stockbook import config as app_config
from stockbook.db import db, get_state, set_state
from stockbook.errors import ValidationError
from stockbook.services.activity import activity_since, activity_today, latest_activity_id

logger = logging.getLogger(__name__)

NOTIFY_TYPES = ("create", "update", "delete")
NOTIFY_MODES = ("off", "daily", "instant")
NOTIFY_LABELS = {"create": "Created", "update": "Updated", "delete": "Deleted"}

CURSOR_KEY = "notify_activity_cursor"
DIGEST_PRODUCTS_LIMIT = 30


def get_notify_mode(conn: sqlite3.Connection, user_id: int, notif_type: str) -> str:
    row = conn.execute(
        "SELECT mode FROM user_notify WHERE user_id=? AND notif_type=?",
        (user_id, notif_type),
    ).fetchone()
    return row["mode"] if row else "off"


def get_notify_modes(conn: sqlite3.Connection, user_id: int) -> Dict[str, str]:
    return {t: get_notify_mode(conn, user_id, t) for t in NOTIFY_TYPES}


def set_notify_mode(conn: sqlite3.Connection, user_id: int, notif_type: str, mode: str) -> None:
    if notif_type not in NOTIFY_TYPES or mode not in NOTIFY_MODES:
        raise ValidationError(f"Invalid notification setting {notif_type}={mode}")
    with conn:
        conn.execute(
            "INSERT INTO user_notify(user_id, notif_type, mode) VALUES (?,?,?)\n"
            "             ON CONFLICT(user_id, notif_type) DO UPDATE SET mode=excluded.mode",
            (user_id, notif_type, mode),
        )


def _admins_for_mode(conn: sqlite3.Connection, notif_type: str, mode: str) -> List[Dict[str, Any]]:
    rows = conn.execute(
        """
        SELECT u.id, u.tg_id FROM user_account u JOIN user_notify n ON n.user_id=u.id
        WHERE u.role='admin' AND n.notif_type=? AND n.mode=? AND u.tg_id IS NOT NULL
        """,
        (notif_type, mode),
    ).fetchall()
    return [{"id": int(r["id"]), "tg_id": int(r["tg_id"])} for r in rows]


def _admin_daily_prefs(conn: sqlite3.Connection) -> Dict[int, set]:
    rows = conn.execute(
        """
        SELECT u.tg_id AS uid, n.notif_type AS t
        FROM user_notify n
        JOIN user_account u ON u.id = n.user_id AND u.role='admin'
        WHERE n.mode='daily' AND u.tg_id IS NOT NULL
        """
    ).fetchall()
    out: Dict[int, set] = {}
    for r in rows:
        out.setdefault(int(r["uid"]), set()).add(r["t"])
    return out


def format_activity(entry: Mapping[str, Any]) -> str:
    label = NOTIFY_LABELS.get(entry["action_type"], entry["action_type"])
    who = html.escape(entry.get("username") or "system")
    return (
        f"<b>{label}</b> · {html.escape(entry['entity_type'])}\n"
        f"{html.escape(entry['description'])}\n"
        f"<i>{who}, {html.escape(str(entry.get('created_at') or ''))}</i>"
    )


async def dispatch_new_activity(bot) -> int:
    """Push activity entries logged since the last run to ``instant`` subscribers.

    The first run only records the cursor. Returns the number of messages sent.
    """
    conn = db()
    try:
        raw = get_state(conn, CURSOR_KEY)
        if raw is None:
            set_state(conn, CURSOR_KEY, str(latest_activity_id(conn)))
            return 0
        entries = activity_since(conn, int(raw))
        if not entries:
            return 0
        recipients = {t: _admins_for_mode(conn, t, "instant") for t in NOTIFY_TYPES}
        # Advance first: a failed send is not retried
        set_state(conn, CURSOR_KEY, str(entries[-1]["id"]))
    finally:
        conn.close()

    sent = 0
    for entry in entries:
        text = format_activity(entry)
        for admin in recipients.get(entry["action_type"], []):
            if admin["id"] == entry.get("user_id"):
                continue
            try:
                await bot.send_message(admin["tg_id"], text)
                sent += 1
            except Exception:
                logger.warning("Failed to notify %s about activity %s", admin["tg_id"], entry["id"], exc_info=True)
    return sent


def _stock_alerts(conn: sqlite3.Connection) -> List[sqlite3.Row]:
    return conn.execute(
        """
        SELECT model_no, name, available_stock FROM product
        WHERE available_stock <= ?
        ORDER BY available_stock ASC, name ASC
        LIMIT ?
        """,
        (app_config.LOW_STOCK_THRESHOLD, DIGEST_PRODUCTS_LIMIT),
    ).fetchall()


def build_digest(entries: List[Mapping[str, Any]], types: set, alerts: List[Mapping[str, Any]]) -> str:
    sections = []
    for t in NOTIFY_TYPES:
        if t not in types:
            continue
        lines = [
            f"• {html.escape(e['description'])}"
            for e in entries
            if e["action_type"] == t
        ]
        if lines:
            sections.append(f"<b>{NOTIFY_LABELS[t]}</b>:\n" + "\n".join(lines))
    if not sections:
        return ""
    if alerts:
        lines = []
        for r in alerts:
            avail = int(r["available_stock"] or 0)
            mark = "out" if avail <= 0 else f"{avail} left"
            lines.append(f"• {html.escape(r['name'])} ({html.escape(r['model_no'])}): {mark}")
        sections.append("<b>Low and out of stock</b>:\n" + "\n".join(lines))
    return f"<b>Daily summary ({app_config.DIGEST_TIME})</b>\n\n" + "\n\n".join(sections)


async def send_daily_digests(bot) -> int:
    conn = db()
    try:
        entries = activity_today(conn)
        alerts = _stock_alerts(conn)
        prefs = _admin_daily_prefs(conn)
    finally:
        conn.close()

    sent = 0
    for uid, types in prefs.items():
        text = build_digest(entries, types, alerts)
        if not text:
            continue
        try:
            await bot.send_message(uid, text)
            sent += 1
        except Exception:
            logger.warning("Failed to send daily digest to %s", uid, exc_info=True)
    return sent

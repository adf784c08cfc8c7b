from __future__ import annotations

import json
import logging
import sqlite3
from typing import Any, Dict, List, Mapping, Optional

from stockbook import config as app_config
from stockbook.errors import ValidationError

logger = logging.getLogger(__name__)

ACTION_TYPES = ("create", "update", "delete")


def _actor_fields(actor: Optional[Mapping[str, Any]]) -> tuple[Optional[int], str]:
    if not actor:
        return None, "system"
    return actor.get("id"), actor.get("username") or "system"


def log_activity(
    conn: sqlite3.Connection,
    action_type: str,
    entity_type: str,
    entity_id: Any,
    description: str,
    metadata: Optional[Dict[str, Any]] = None,
    actor: Optional[Mapping[str, Any]] = None,
) -> int:
    """Append one entry to the activity log.

    Must be called inside the caller's transaction so that the entry is
    committed (or rolled back) together with the change it describes.
    """
    if action_type not in ACTION_TYPES:
        raise ValidationError(f"Unknown action type: {action_type}")
    user_id, username = _actor_fields(actor)
    payload = json.dumps(metadata, ensure_ascii=False, default=str) if metadata else None
    cur = conn.execute(
        """
        INSERT INTO activity_log(user_id, username, action_type, entity_type, entity_id, description, metadata)
        VALUES (?,?,?,?,?,?,?)
        """,
        (
            user_id,
            username,
            action_type,
            entity_type,
            None if entity_id is None else str(entity_id),
            description,
            payload,
        ),
    )
    logger.debug("activity %s %s %s: %s", action_type, entity_type, entity_id, description)
    return int(cur.lastrowid)


def diff_changes(before: Mapping[str, Any], after: Mapping[str, Any]) -> Dict[str, Dict[str, Any]]:
    changes: Dict[str, Dict[str, Any]] = {}
    for key, new_val in after.items():
        old_val = before.get(key)
        if old_val != new_val:
            changes[key] = {"from": old_val, "to": new_val}
    return changes


def _row_to_entry(r: sqlite3.Row) -> Dict[str, Any]:
    entry = dict(r)
    raw = entry.get("metadata")
    try:
        entry["metadata"] = json.loads(raw) if raw else {}
    except ValueError:
        logger.warning("Activity %s has malformed metadata", entry.get("id"))
        entry["metadata"] = {}
    return entry


def recent_activity(
    conn: sqlite3.Connection,
    limit: Optional[int] = None,
    after_id: Optional[int] = None,
) -> List[Dict[str, Any]]:
    """Newest entries first. ``after_id`` restricts to entries created after it."""
    limit = limit or app_config.ACTIVITY_LIMIT
    if after_id is not None:
        rows = conn.execute(
            "SELECT * FROM activity_log WHERE id>? ORDER BY id DESC LIMIT ?",
            (int(after_id), int(limit)),
        ).fetchall()
    else:
        rows = conn.execute(
            "SELECT * FROM activity_log ORDER BY id DESC LIMIT ?",
            (int(limit),),
        ).fetchall()
    return [_row_to_entry(r) for r in rows]


def activity_since(conn: sqlite3.Connection, last_id: int) -> List[Dict[str, Any]]:
    rows = conn.execute(
        "SELECT * FROM activity_log WHERE id>? ORDER BY id ASC",
        (int(last_id),),
    ).fetchall()
    return [_row_to_entry(r) for r in rows]


def activity_today(conn: sqlite3.Connection) -> List[Dict[str, Any]]:
    rows = conn.execute(
        "SELECT * FROM activity_log WHERE date(created_at)=date('now','localtime') ORDER BY id ASC"
    ).fetchall()
    return [_row_to_entry(r) for r in rows]


def latest_activity_id(conn: sqlite3.Connection) -> int:
    row = conn.execute("SELECT IFNULL(MAX(id),0) AS m FROM activity_log").fetchone()
    return int(row["m"] or 0)

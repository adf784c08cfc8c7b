from __future__ import annotations

import json
import sqlite3
from typing import Any, Dict, List, Mapping, Optional

from werkzeug.security import check_password_hash, generate_password_hash

from stockbook.errors import NotFoundError, ValidationError
from stockbook.services.activity import log_activity

ROLES = ("admin", "user")
ACCESS_LEVELS = ("read", "read-write")

# Product columns a regular user may be granted, in display order
AVAILABLE_COLUMNS: Dict[str, str] = {
    "model_no": "Model No",
    "name": "Name",
    "description": "Description",
    "size": "Size",
    "finish": "Finish",
    "manufacturer": "Manufacturer",
    "total_stock": "Total Stock",
    "bad_stock": "Bad Stock",
    "available_stock": "Available Stock",
}


def _decode_columns(raw: Any) -> List[str]:
    if isinstance(raw, (list, tuple)):
        cols = list(raw)
    else:
        try:
            cols = json.loads(raw or "[]")
        except ValueError:
            cols = []
    return [c for c in cols if c in AVAILABLE_COLUMNS]


def _user_dict(row: Optional[sqlite3.Row]) -> Optional[Dict[str, Any]]:
    if not row:
        return None
    d = dict(row)
    d["assigned_columns"] = _decode_columns(d.get("assigned_columns"))
    d.pop("password_hash", None)
    return d


def authenticate(conn: sqlite3.Connection, username: str, password: str) -> Optional[Dict[str, Any]]:
    username = (username or "").strip()
    if not username or not password:
        return None
    row = conn.execute(
        "SELECT * FROM user_account WHERE LOWER(username)=LOWER(?)", (username,)
    ).fetchone()
    if not row or not row["password_hash"]:
        return None
    if not check_password_hash(row["password_hash"], password):
        return None
    return _user_dict(row)


def get_user(conn: sqlite3.Connection, uid: int) -> Optional[Dict[str, Any]]:
    return _user_dict(conn.execute("SELECT * FROM user_account WHERE id=?", (uid,)).fetchone())


def get_user_by_tg(conn: sqlite3.Connection, tg_id: int) -> Optional[Dict[str, Any]]:
    return _user_dict(conn.execute("SELECT * FROM user_account WHERE tg_id=?", (tg_id,)).fetchone())


def is_admin(user: Optional[Mapping[str, Any]]) -> bool:
    return bool(user) and user.get("role") == "admin"


def can_write(user: Optional[Mapping[str, Any]]) -> bool:
    if not user:
        return False
    return is_admin(user) or user.get("access_level") == "read-write"


def allowed_columns(user: Optional[Mapping[str, Any]]) -> List[str]:
    if not user:
        return []
    if is_admin(user):
        return list(AVAILABLE_COLUMNS)
    assigned = set(_decode_columns(user.get("assigned_columns")))
    return [c for c in AVAILABLE_COLUMNS if c in assigned]


def list_users(conn: sqlite3.Connection) -> List[Dict[str, Any]]:
    rows = conn.execute("SELECT * FROM user_account ORDER BY role, username COLLATE NOCASE").fetchall()
    return [_user_dict(r) for r in rows]


def _clean_user(data: Mapping[str, Any], *, creating: bool) -> Dict[str, Any]:
    username = str(data.get("username") or "").strip()
    if not username:
        raise ValidationError("Username is required")
    role = str(data.get("role") or "user").strip()
    if role not in ROLES:
        raise ValidationError(f"Unknown role: {role}")
    access = str(data.get("access_level") or "read").strip()
    if access not in ACCESS_LEVELS:
        raise ValidationError(f"Unknown access level: {access}")
    columns = data.get("assigned_columns") or []
    if isinstance(columns, str):
        columns = [c.strip() for c in columns.split(",") if c.strip()]
    unknown = [c for c in columns if c not in AVAILABLE_COLUMNS]
    if unknown:
        raise ValidationError("Unknown columns: " + ", ".join(unknown))
    password = data.get("password") or ""
    if creating and not password:
        raise ValidationError("Password is required")
    tg_raw = str(data.get("tg_id") or "").strip()
    if tg_raw and not tg_raw.lstrip("-").isdigit():
        raise ValidationError("Telegram ID must be a number")
    email = str(data.get("email") or "").strip() or None
    return {
        "username": username,
        "email": email,
        "role": role,
        "access_level": "read-write" if role == "admin" else access,
        "assigned_columns": json.dumps([c for c in AVAILABLE_COLUMNS if c in columns]),
        "tg_id": int(tg_raw) if tg_raw else None,
        "password": password,
    }


def _ensure_unique(conn, fields: Mapping[str, Any], exclude_id: Optional[int] = None) -> None:
    row = conn.execute(
        "SELECT id FROM user_account WHERE LOWER(username)=LOWER(?)", (fields["username"],)
    ).fetchone()
    if row and row["id"] != exclude_id:
        raise ValidationError(f"Username {fields['username']} is taken")
    if fields["tg_id"] is not None:
        row = conn.execute("SELECT id FROM user_account WHERE tg_id=?", (fields["tg_id"],)).fetchone()
        if row and row["id"] != exclude_id:
            raise ValidationError(f"Telegram ID {fields['tg_id']} is linked to another user")


def create_user(conn, data: Mapping[str, Any], actor=None) -> int:
    fields = _clean_user(data, creating=True)
    _ensure_unique(conn, fields)
    with conn:
        cur = conn.execute(
            """
            INSERT INTO user_account(username, email, password_hash, role, access_level, assigned_columns, tg_id)
            VALUES (?,?,?,?,?,?,?)
            """,
            (
                fields["username"],
                fields["email"],
                generate_password_hash(fields["password"]),
                fields["role"],
                fields["access_level"],
                fields["assigned_columns"],
                fields["tg_id"],
            ),
        )
        uid = int(cur.lastrowid)
        log_activity(
            conn, "create", "user", uid,
            f"Created {fields['role']} {fields['username']}",
            {"role": fields["role"], "access_level": fields["access_level"]}, actor,
        )
    return uid


def update_user(conn, uid: int, data: Mapping[str, Any], actor=None) -> Dict[str, Any]:
    current = get_user(conn, uid)
    if not current:
        raise NotFoundError(f"User {uid} not found")
    fields = _clean_user(data, creating=False)
    _ensure_unique(conn, fields, exclude_id=uid)
    if current["role"] == "admin" and fields["role"] != "admin":
        _ensure_other_admin(conn, uid)
    with conn:
        conn.execute(
            """
            UPDATE user_account SET username=?, email=?, role=?, access_level=?, assigned_columns=?, tg_id=?
            WHERE id=?
            """,
            (
                fields["username"],
                fields["email"],
                fields["role"],
                fields["access_level"],
                fields["assigned_columns"],
                fields["tg_id"],
                uid,
            ),
        )
        if fields["password"]:
            conn.execute(
                "UPDATE user_account SET password_hash=? WHERE id=?",
                (generate_password_hash(fields["password"]), uid),
            )
        log_activity(
            conn, "update", "user", uid, f"Updated user {fields['username']}",
            {"role": fields["role"], "access_level": fields["access_level"]}, actor,
        )
    return get_user(conn, uid)


def _ensure_other_admin(conn, uid: int) -> None:
    n = conn.execute(
        "SELECT COUNT(*) FROM user_account WHERE role='admin' AND id<>?", (uid,)
    ).fetchone()[0]
    if not n:
        raise ValidationError("At least one admin account must remain")


def delete_user(conn, uid: int, actor=None) -> Dict[str, Any]:
    current = get_user(conn, uid)
    if not current:
        raise NotFoundError(f"User {uid} not found")
    if current["role"] == "admin":
        _ensure_other_admin(conn, uid)
    with conn:
        conn.execute("DELETE FROM user_notify WHERE user_id=?", (uid,))
        conn.execute("DELETE FROM user_account WHERE id=?", (uid,))
        log_activity(conn, "delete", "user", uid, f"Deleted user {current['username']}", None, actor)
    return current


def link_telegram(conn, uid: int, tg_id: Optional[int]) -> None:
    if tg_id is not None:
        row = conn.execute("SELECT id FROM user_account WHERE tg_id=?", (tg_id,)).fetchone()
        if row and row["id"] != uid:
            raise ValidationError(f"Telegram ID {tg_id} is linked to another user")
    with conn:
        conn.execute("UPDATE user_account SET tg_id=? WHERE id=?", (tg_id, uid))


def admin_tg_ids(conn: sqlite3.Connection) -> List[int]:
    rows = conn.execute(
        "SELECT tg_id FROM user_account WHERE role='admin' AND tg_id IS NOT NULL"
    ).fetchall()
    return [int(r["tg_id"]) for r in rows]


def visible_fields(user: Optional[Mapping[str, Any]], product: Mapping[str, Any]) -> List[tuple]:
    """``[(label, value), ...]`` for the columns the user may see."""
    out = []
    for col in allowed_columns(user):
        key = "manufacturer_name" if col == "manufacturer" else col
        out.append((AVAILABLE_COLUMNS[col], product.get(key)))
    return out

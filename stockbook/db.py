from __future__ import annotations

import logging
import sqlite3
from pathlib import Path

from werkzeug.security import generate_password_hash

from stockbook import config as _config

logger = logging.getLogger(__name__)


def db() -> sqlite3.Connection:
    """Create a new SQLite connection with concurrency-friendly pragmas."""
    conn = sqlite3.connect(_config.DB_PATH, timeout=30.0, isolation_level="DEFERRED")
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA synchronous=NORMAL")
    conn.execute("PRAGMA busy_timeout=10000")
    conn.execute("PRAGMA temp_store=MEMORY")
    conn.execute("PRAGMA foreign_keys = ON")
    conn.row_factory = sqlite3.Row
    return conn


def begin_immediate(conn: sqlite3.Connection) -> None:
    """Take the write lock now so reads made before a write see committed stock."""
    if not conn.in_transaction:
        conn.execute("BEGIN IMMEDIATE")


def init_db():
    Path(_config.DB_PATH).parent.mkdir(parents=True, exist_ok=True)
    conn = db()
    try:
        with conn:
            conn.execute("""
            CREATE TABLE IF NOT EXISTS manufacturer(
                id INTEGER PRIMARY KEY,
                factory_name TEXT UNIQUE NOT NULL,
                contact_person TEXT,
                notes TEXT,
                created_at TEXT DEFAULT (datetime('now','localtime')),
                updated_at TEXT DEFAULT (datetime('now','localtime'))
            );
            """)
            conn.execute("""
            CREATE TABLE IF NOT EXISTS category(
                id INTEGER PRIMARY KEY,
                name TEXT UNIQUE NOT NULL,
                description TEXT,
                created_at TEXT DEFAULT (datetime('now','localtime')),
                updated_at TEXT DEFAULT (datetime('now','localtime'))
            );
            """)
            # available_stock is owned by the database: clients never write it,
            # and `bookings` is kept in sync by the booking_item triggers below.
            conn.execute("""
            CREATE TABLE IF NOT EXISTS product(
                id INTEGER PRIMARY KEY,
                model_no TEXT UNIQUE NOT NULL,
                name TEXT NOT NULL,
                description TEXT,
                size TEXT,
                finish TEXT,
                manufacturer_id INTEGER REFERENCES manufacturer(id) ON DELETE SET NULL,
                category_id INTEGER REFERENCES category(id) ON DELETE RESTRICT,
                remarks TEXT,
                internal_notes TEXT,
                photo_path TEXT,
                total_stock INTEGER NOT NULL DEFAULT 0 CHECK (total_stock >= 0),
                bad_stock INTEGER NOT NULL DEFAULT 0 CHECK (bad_stock >= 0),
                dead_stock INTEGER NOT NULL DEFAULT 0 CHECK (dead_stock >= 0),
                bookings INTEGER NOT NULL DEFAULT 0,
                available_stock INTEGER GENERATED ALWAYS AS (
                    total_stock - bad_stock - dead_stock - bookings
                ) VIRTUAL,
                created_at TEXT DEFAULT (datetime('now','localtime')),
                updated_at TEXT DEFAULT (datetime('now','localtime'))
            );
            """)
            conn.execute("""
            CREATE TABLE IF NOT EXISTS customer(
                id INTEGER PRIMARY KEY,
                name TEXT NOT NULL,
                email TEXT,
                phone TEXT,
                address TEXT,
                created_at TEXT DEFAULT (datetime('now','localtime')),
                updated_at TEXT DEFAULT (datetime('now','localtime'))
            );
            """)
            conn.execute("""
            CREATE TABLE IF NOT EXISTS booking(
                id INTEGER PRIMARY KEY,
                customer_id INTEGER NOT NULL REFERENCES customer(id) ON DELETE RESTRICT,
                status TEXT NOT NULL DEFAULT 'pending'
                    CHECK (status IN ('pending','advance_paid','full_paid')),
                booking_date TEXT NOT NULL DEFAULT (date('now','localtime')),
                notes TEXT,
                created_at TEXT DEFAULT (datetime('now','localtime')),
                updated_at TEXT DEFAULT (datetime('now','localtime'))
            );
            """)
            conn.execute("""
            CREATE TABLE IF NOT EXISTS booking_item(
                id INTEGER PRIMARY KEY,
                booking_id INTEGER NOT NULL REFERENCES booking(id) ON DELETE CASCADE,
                product_id INTEGER NOT NULL REFERENCES product(id) ON DELETE RESTRICT,
                quantity INTEGER NOT NULL CHECK (quantity > 0),
                created_at TEXT DEFAULT (datetime('now','localtime')),
                UNIQUE(booking_id, product_id)
            );
            """)
            conn.executescript("""
            CREATE TRIGGER IF NOT EXISTS booking_item_ai AFTER INSERT ON booking_item BEGIN
                UPDATE product SET bookings = bookings + new.quantity WHERE id = new.product_id;
            END;
            CREATE TRIGGER IF NOT EXISTS booking_item_ad AFTER DELETE ON booking_item BEGIN
                UPDATE product SET bookings = bookings - old.quantity WHERE id = old.product_id;
            END;
            CREATE TRIGGER IF NOT EXISTS booking_item_au AFTER UPDATE OF quantity, product_id ON booking_item BEGIN
                UPDATE product SET bookings = bookings - old.quantity WHERE id = old.product_id;
                UPDATE product SET bookings = bookings + new.quantity WHERE id = new.product_id;
            END;
            """)
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS user_account(
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    username TEXT UNIQUE NOT NULL,
                    email TEXT,
                    password_hash TEXT,
                    role TEXT NOT NULL CHECK(role IN ('admin','user')) DEFAULT 'user',
                    access_level TEXT NOT NULL CHECK(access_level IN ('read','read-write')) DEFAULT 'read',
                    assigned_columns TEXT NOT NULL DEFAULT '[]',
                    tg_id INTEGER UNIQUE,
                    created_at TEXT DEFAULT (datetime('now','localtime'))
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS activity_log(
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    created_at TEXT DEFAULT (datetime('now','localtime')),
                    user_id INTEGER,
                    username TEXT,
                    action_type TEXT NOT NULL CHECK(action_type IN ('create','update','delete')),
                    entity_type TEXT NOT NULL,
                    entity_id TEXT,
                    description TEXT NOT NULL,
                    metadata TEXT
                )
                """
            )
            # Notification preferences: per admin and action type
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS user_notify(
                    user_id INTEGER NOT NULL,
                    notif_type TEXT NOT NULL CHECK (notif_type IN ('create','update','delete')),
                    mode TEXT NOT NULL CHECK (mode IN ('off','daily','instant')) DEFAULT 'off',
                    PRIMARY KEY (user_id, notif_type)
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS import_log(
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    original_name TEXT,
                    source_hash TEXT UNIQUE,
                    created_count INTEGER NOT NULL DEFAULT 0,
                    updated_count INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT DEFAULT (datetime('now','localtime'))
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS app_state(
                    key TEXT PRIMARY KEY,
                    value TEXT
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_booking_customer ON booking(customer_id)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_booking_item_product ON booking_item(product_id)"
            )
        _seed_super_admin(conn)
    finally:
        conn.close()


def _seed_super_admin(conn: sqlite3.Connection) -> None:
    have_admin = conn.execute(
        "SELECT 1 FROM user_account WHERE role='admin' LIMIT 1"
    ).fetchone()
    if have_admin or not _config.SUPER_ADMIN_PASSWORD:
        return
    with conn:
        conn.execute(
            """
            INSERT OR IGNORE INTO user_account(username, password_hash, role, access_level, tg_id)
            VALUES (?,?, 'admin', 'read-write', ?)
            """,
            (
                _config.SUPER_ADMIN_USERNAME,
                generate_password_hash(_config.SUPER_ADMIN_PASSWORD),
                _config.SUPER_ADMIN_TG_ID or None,
            ),
        )
    logger.info("Seeded admin account %s", _config.SUPER_ADMIN_USERNAME)


def get_state(conn: sqlite3.Connection, key: str, default: str | None = None) -> str | None:
    row = conn.execute("SELECT value FROM app_state WHERE key=?", (key,)).fetchone()
    return row["value"] if row else default


def set_state(conn: sqlite3.Connection, key: str, value: str) -> None:
    with conn:
        conn.execute(
            "INSERT INTO app_state(key, value) VALUES (?,?) "
            "ON CONFLICT(key) DO UPDATE SET value=excluded.value",
            (key, value),
        )

from __future__ import annotations

import hashlib
import logging
import re
import sqlite3
from typing import Any, Dict, List, Mapping, Optional, Tuple

import pandas as pd

from stockbook.db import begin_immediate
from stockbook.errors import ValidationError
from stockbook.services.activity import log_activity
from stockbook.services.catalog import find_or_create_manufacturer
from stockbook.services.products import EDITABLE_FIELDS, clean_product_data, list_products
from stockbook.services.stock import derived_available, stock_status

logger = logging.getLogger(__name__)

# Normalised header -> product field
HEADER_ALIASES: Dict[str, str] = {
    "model no": "model_no",
    "model no.": "model_no",
    "model_no": "model_no",
    "model number": "model_no",
    "model": "model_no",
    "sku": "model_no",
    "name": "name",
    "product name": "name",
    "description": "description",
    "size": "size",
    "finish": "finish",
    "factory": "manufacturer",
    "factory name": "manufacturer",
    "manufacturer": "manufacturer",
    "manufacturer_id": "manufacturer",
    "category": "category",
    "category_id": "category",
    "total stock": "total_stock",
    "total_stock": "total_stock",
    "stock": "total_stock",
    "bad stock": "bad_stock",
    "bad_stock": "bad_stock",
    "dead stock": "dead_stock",
    "dead_stock": "dead_stock",
    "remarks": "remarks",
    "internal notes": "internal_notes",
    "internal_notes": "internal_notes",
}

EXPORT_COLUMNS: List[Tuple[str, str]] = [
    ("Model No", "model_no"),
    ("Name", "name"),
    ("Description", "description"),
    ("Total Stock", "total_stock"),
    ("Available Stock", "available_stock"),
    ("Bad Stock", "bad_stock"),
    ("Dead Stock", "dead_stock"),
    ("Bookings", "bookings"),
    ("Remarks", "remarks"),
    ("Status", "status"),
]


def _norm_header(s: str) -> str:
    return re.sub(r"\s+", " ", (str(s) if s is not None else "").strip().lower())


def _emptyish(val: Any) -> bool:
    if val is None:
        return True
    s = str(val).strip().lower()
    return s == "" or s in {"nan", "none", "null"}


def map_columns(columns) -> Dict[str, str]:
    """Map source CSV headers onto product fields; unknown headers are dropped."""
    mapping: Dict[str, str] = {}
    taken = set()
    for col in columns:
        field = HEADER_ALIASES.get(_norm_header(col))
        if field and field not in taken:
            mapping[col] = field
            taken.add(field)
    return mapping


def _read_frame(path: str) -> pd.DataFrame:
    df = pd.read_csv(path, dtype=str, keep_default_na=False)
    if df.shape[1] < 2:
        # semicolon-separated exports
        df = pd.read_csv(path, dtype=str, keep_default_na=False, sep=";")
    return df


def read_product_rows(path: str) -> Tuple[List[Tuple[int, Dict[str, Any]]], Dict[str, str]]:
    """Parse a CSV file into ``[(line_no, fields), ...]`` plus the header mapping used."""
    try:
        df = _read_frame(path)
    except (pd.errors.ParserError, pd.errors.EmptyDataError, UnicodeDecodeError) as e:
        raise ValidationError(f"Could not read CSV: {e}")
    mapping = map_columns(df.columns)
    missing = [f for f in ("model_no", "name") if f not in mapping.values()]
    if missing:
        raise ValidationError(
            "CSV is missing required columns: " + ", ".join(m.replace("_", " ") for m in missing)
        )
    rows: List[Tuple[int, Dict[str, Any]]] = []
    # header is line 1
    for line_no, (_, raw) in enumerate(df.iterrows(), start=2):
        fields = {
            field: (None if _emptyish(raw.get(col)) else str(raw.get(col)).strip())
            for col, field in mapping.items()
        }
        if all(v is None for v in fields.values()):
            continue
        rows.append((line_no, fields))
    return rows, mapping


def _resolve_refs(conn: sqlite3.Connection, fields: Dict[str, Any], actor=None) -> Dict[str, Any]:
    data = dict(fields)
    maker = data.pop("manufacturer", None)
    if maker:
        if maker.isdigit() and conn.execute("SELECT 1 FROM manufacturer WHERE id=?", (int(maker),)).fetchone():
            data["manufacturer_id"] = int(maker)
        else:
            data["manufacturer_id"] = find_or_create_manufacturer(conn, maker, actor)
    cat = data.pop("category", None)
    if cat:
        row = conn.execute(
            "SELECT id FROM category WHERE LOWER(name)=LOWER(?) OR CAST(id AS TEXT)=?",
            (cat, cat),
        ).fetchone()
        if not row:
            raise ValidationError(f"Unknown category {cat}")
        data["category_id"] = int(row["id"])
    return data


def _upsert_row(conn: sqlite3.Connection, fields: Dict[str, Any], actor=None) -> str:
    existing = conn.execute(
        "SELECT * FROM product WHERE LOWER(model_no)=LOWER(?)",
        (fields.get("model_no") or "",),
    ).fetchone()
    data = _resolve_refs(conn, fields, actor)
    if existing:
        # Columns absent from the file keep their stored value
        merged = {k: existing[k] for k in EDITABLE_FIELDS}
        merged.update({k: v for k, v in data.items() if k in EDITABLE_FIELDS})
        merged["model_no"] = existing["model_no"]
        clean = clean_product_data(conn, merged)
        left = derived_available(
            clean["total_stock"], clean["bad_stock"], clean["dead_stock"], existing["bookings"]
        )
        if left < 0:
            raise ValidationError(
                f"{existing['bookings']} units of {existing['model_no']} are booked; stock counts too low"
            )
        assignments = ", ".join(f"{k}=?" for k in clean)
        conn.execute(
            f"UPDATE product SET {assignments}, updated_at=datetime('now','localtime') WHERE id=?",
            (*clean.values(), existing["id"]),
        )
        return "updated"
    clean = clean_product_data(conn, data)
    cols = ", ".join(clean.keys())
    marks = ",".join("?" for _ in clean)
    conn.execute(f"INSERT INTO product({cols}) VALUES ({marks})", tuple(clean.values()))
    return "created"


def _empty_import_stats() -> dict:
    return {"created": 0, "updated": 0, "imported": 0, "errors": []}


def import_products_csv(
    conn: sqlite3.Connection,
    path: str,
    original_name: Optional[str] = None,
    actor: Optional[Mapping[str, Any]] = None,
) -> dict:
    """Create or update products from a CSV file.

    Rows that fail validation are skipped and reported as ``Row <line>: ...``.
    Refuses a file whose content was already imported cleanly; a file
    with row errors is not recorded so it can be fixed up and retried.
    """
    source_hash = compute_sha256(path)
    dup = check_import_duplicate(conn, source_hash)
    if dup:
        raise ValidationError(
            f"This file was already imported on {dup['created_at']} ({dup['original_name'] or 'unnamed'})"
        )
    rows, _ = read_product_rows(path)
    stats = _empty_import_stats()
    for line_no, fields in rows:
        try:
            with conn:
                begin_immediate(conn)
                outcome = _upsert_row(conn, fields, actor)
            stats[outcome] += 1
            stats["imported"] += 1
        except (ValidationError, sqlite3.IntegrityError) as e:
            stats["errors"].append(f"Row {line_no}: {e}")
    with conn:
        if stats["imported"]:
            log_activity(
                conn,
                "create",
                "product",
                None,
                f"Imported {stats['imported']} products via CSV",
                {
                    "file": original_name,
                    "created": stats["created"],
                    "updated": stats["updated"],
                    "errors": len(stats["errors"]),
                },
                actor,
            )
        # files with row errors stay retryable; rows are upserts
        if not stats["errors"]:
            record_import_log(
                conn,
                original_name=original_name,
                source_hash=source_hash,
                created=stats["created"],
                updated=stats["updated"],
            )
    logger.info(
        "CSV import %s: %s created, %s updated, %s errors",
        original_name or path,
        stats["created"],
        stats["updated"],
        len(stats["errors"]),
    )
    return stats


def compute_sha256(path: str) -> str:
    h = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b""):
            h.update(chunk)
    return h.hexdigest()


def check_import_duplicate(conn: sqlite3.Connection, source_hash: str) -> Optional[dict]:
    row = conn.execute(
        "SELECT id, original_name, created_at FROM import_log WHERE source_hash=?",
        (source_hash,),
    ).fetchone()
    return dict(row) if row else None


def record_import_log(
    conn: sqlite3.Connection,
    *,
    original_name: Optional[str],
    source_hash: str,
    created: int,
    updated: int,
) -> None:
    conn.execute(
        """
        INSERT INTO import_log(original_name, source_hash, created_count, updated_count)
        VALUES (?,?,?,?)
        """,
        (original_name, source_hash, created, updated),
    )


def export_products_frame(
    conn: sqlite3.Connection,
    manufacturer_id: Optional[int] = None,
    low_threshold: Optional[int] = None,
    **filters,
) -> pd.DataFrame:
    products = list_products(
        conn, manufacturer_id=manufacturer_id, low_threshold=low_threshold, **filters
    )
    records = []
    for p in products:
        p["status"] = stock_status(p.get("available_stock") or 0, low_threshold)
        records.append({label: p.get(field) for label, field in EXPORT_COLUMNS})
    return pd.DataFrame(records, columns=[label for label, _ in EXPORT_COLUMNS])


def export_products_csv(conn: sqlite3.Connection, manufacturer_id: Optional[int] = None, **kwargs) -> str:
    return export_products_frame(conn, manufacturer_id=manufacturer_id, **kwargs).to_csv(index=False)

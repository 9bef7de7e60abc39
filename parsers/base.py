from __future__ import annotations

import hashlib
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable
from zoneinfo import ZoneInfo


def md5_hex(value: str) -> str:
    return hashlib.md5(value.encode("utf-8")).hexdigest()


def unix_timestamp(value: float | int | None) -> datetime | None:
    if value is None:
        return None
    try:
        value = float(value)
    except (TypeError, ValueError):
        return None
    if value > 10_000_000_000:  # milliseconds
        value = value / 1000
    return datetime.fromtimestamp(value, tz=timezone.utc)


def format_display_time(value: float | int | None, fmt: str = "%Y-%m-%d %H:%M:%S", tz: str | None = None) -> str:
    moment = unix_timestamp(value)
    if moment is None:
        return ""
    return moment.astimezone(ZoneInfo(tz) if tz else None).strftime(fmt)


@contextmanager
def sqlite_connection(path: Path):
    """Open ``path`` read-only so the source backup is never modified."""
    conn = sqlite3.connect(f"{Path(path).resolve().as_uri()}?mode=ro", uri=True)
    conn.row_factory = sqlite3.Row
    try:
        yield conn
    finally:
        conn.close()


def available_columns(conn: sqlite3.Connection, table: str) -> set[str]:
    cursor = conn.execute(f"PRAGMA table_info({table})")
    return {row[1] for row in cursor.fetchall()}


def columns_subset(conn: sqlite3.Connection, table: str, desired: Iterable[str]) -> list[str]:
    cols = available_columns(conn, table)
    return [col for col in desired if col in cols]


def table_exists(conn: sqlite3.Connection, table: str) -> bool:
    cursor = conn.execute(
        "SELECT 1 FROM sqlite_master WHERE type='table' AND name=? COLLATE NOCASE",
        (table,),
    )
    return cursor.fetchone() is not None

from __future__ import annotations

import os
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from .settings import settings


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _resolve_db_path() -> str:
    """Return a file path usable by sqlite.

    A bind-mounted path that did not exist on the host shows up as a
    directory inside the container; in that case the DB file goes inside it.
    """

    p = os.path.abspath(settings.db_path)

    if os.path.isdir(p):
        p = os.path.join(p, "gwsync.db")

    parent = os.path.dirname(p)
    if parent and not os.path.exists(parent):
        os.makedirs(parent, exist_ok=True)

    return p


def connect() -> sqlite3.Connection:
    conn = sqlite3.connect(_resolve_db_path(), check_same_thread=False)
    conn.row_factory = sqlite3.Row
    return conn


def init_db() -> None:
    """Create tables if they do not exist."""
    with connect() as conn:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS events (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              ts TEXT NOT NULL,
              level TEXT NOT NULL,
              route TEXT,
              message TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS service_mappings (
              identity TEXT PRIMARY KEY,
              api_name TEXT,
              created_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_events_ts ON events(ts);
            """
        )


def log_event(level: str, message: str, route: str | None = None) -> None:
    with connect() as conn:
        conn.execute(
            "INSERT INTO events (ts, level, route, message) VALUES (?, ?, ?, ?)",
            (utc_now(), level.upper(), route, message),
        )


def latest_events(limit: int = 100) -> list[dict[str, Any]]:
    with connect() as conn:
        rows = conn.execute("SELECT * FROM events ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
        return [dict(r) for r in rows]


@dataclass(frozen=True)
class MappingRow:
    identity: str
    api_name: str | None
    created_at: str


def upsert_mapping(identity: str, api_name: str | None = None) -> MappingRow:
    with connect() as conn:
        conn.execute(
            """
            INSERT INTO service_mappings (identity, api_name, created_at)
            VALUES (?, ?, ?)
            ON CONFLICT(identity) DO UPDATE SET api_name=excluded.api_name
            """,
            (identity, api_name, utc_now()),
        )
        row = conn.execute("SELECT * FROM service_mappings WHERE identity=?", (identity,)).fetchone()
        return MappingRow(**dict(row))


def get_mapping(identity: str) -> MappingRow | None:
    with connect() as conn:
        row = conn.execute("SELECT * FROM service_mappings WHERE identity=?", (identity,)).fetchone()
        return MappingRow(**dict(row)) if row else None


def list_mappings() -> list[MappingRow]:
    with connect() as conn:
        rows = conn.execute("SELECT * FROM service_mappings ORDER BY identity").fetchall()
        return [MappingRow(**dict(r)) for r in rows]


def delete_mapping(identity: str) -> bool:
    with connect() as conn:
        cur = conn.execute("DELETE FROM service_mappings WHERE identity=?", (identity,))
        return cur.rowcount > 0

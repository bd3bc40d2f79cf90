from __future__ import annotations

import os
import sqlite3
from dataclasses import dataclass
from typing import Any, Iterable

from .runtime import ServiceSnapshot, utc_now
from .settings import settings


def _resolve_db_path() -> str:
    """Return a file path usable by sqlite.

    If the configured path is a directory (Docker creates one when a
    bind-mounted file does not exist yet), the DB file is placed inside it.
    """

    p = os.path.abspath(settings.db_path)

    if os.path.isdir(p):
        p = os.path.join(p, "dso.db")

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
            CREATE TABLE IF NOT EXISTS service_states (
              name TEXT PRIMARY KEY,
              status TEXT NOT NULL, -- pending|starting|healthy|unhealthy|stopped|failed
              restart_count INTEGER NOT NULL DEFAULT 0,
              last_transition TEXT NOT NULL,
              message TEXT NOT NULL DEFAULT '',
              process TEXT
            );

            CREATE TABLE IF NOT EXISTS migrations (
              version INTEGER PRIMARY KEY,
              applied_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS certificates (
              domain TEXT PRIMARY KEY,
              state TEXT NOT NULL, -- unissued|pending|valid|renewal_due|failed
              not_before TEXT,
              not_after TEXT,
              cert_path TEXT,
              key_path TEXT,
              attempts INTEGER NOT NULL DEFAULT 0,
              updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS events (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              ts TEXT NOT NULL,
              level TEXT NOT NULL,
              service_name TEXT,
              message TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_events_ts ON events(ts);
            """
        )


def log_event(level: str, message: str, service_name: str | None = None) -> None:
    with connect() as conn:
        conn.execute(
            "INSERT INTO events (ts, level, service_name, message) VALUES (?, ?, ?, ?)",
            (utc_now(), level.upper(), service_name, message),
        )


def latest_events(limit: int = 100, service_name: str | None = None) -> list[dict[str, Any]]:
    with connect() as conn:
        if service_name:
            rows = conn.execute(
                "SELECT * FROM events WHERE service_name=? ORDER BY id DESC LIMIT ?", (service_name, limit)
            ).fetchall()
        else:
            rows = conn.execute("SELECT * FROM events ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
        return [dict(r) for r in rows]


# --- service state snapshots ---


def save_service_state(snap: ServiceSnapshot) -> None:
    with connect() as conn:
        conn.execute(
            """
            INSERT INTO service_states (name, status, restart_count, last_transition, message, process)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(name) DO UPDATE SET
              status=excluded.status,
              restart_count=excluded.restart_count,
              last_transition=excluded.last_transition,
              message=excluded.message,
              process=excluded.process
            """,
            (snap.name, snap.status, snap.restart_count, snap.last_transition, snap.message, snap.process),
        )


def clear_service_states() -> None:
    with connect() as conn:
        conn.execute("DELETE FROM service_states")


def list_service_states() -> list[ServiceSnapshot]:
    with connect() as conn:
        rows = conn.execute("SELECT * FROM service_states ORDER BY name").fetchall()
        return _rows_to_dataclass(rows, ServiceSnapshot)


# --- migrations ---


@dataclass(frozen=True)
class MigrationRecord:
    version: int
    applied_at: str


def list_migrations() -> list[MigrationRecord]:
    with connect() as conn:
        rows = conn.execute("SELECT * FROM migrations ORDER BY version").fetchall()
        return _rows_to_dataclass(rows, MigrationRecord)


def append_migration(version: int) -> MigrationRecord:
    """Record an applied version. Raises sqlite3.IntegrityError if it is already recorded."""
    rec = MigrationRecord(version=int(version), applied_at=utc_now())
    with connect() as conn:
        conn.execute("INSERT INTO migrations (version, applied_at) VALUES (?, ?)", (rec.version, rec.applied_at))
    return rec


# --- certificates ---


@dataclass(frozen=True)
class CertificateRow:
    domain: str
    state: str
    not_before: str | None
    not_after: str | None
    cert_path: str | None
    key_path: str | None
    attempts: int
    updated_at: str


def upsert_certificate(
    domain: str,
    state: str,
    not_before: str | None = None,
    not_after: str | None = None,
    cert_path: str | None = None,
    key_path: str | None = None,
    attempts: int = 0,
) -> CertificateRow:
    with connect() as conn:
        conn.execute(
            """
            INSERT INTO certificates (domain, state, not_before, not_after, cert_path, key_path, attempts, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(domain) DO UPDATE SET
              state=excluded.state,
              not_before=excluded.not_before,
              not_after=excluded.not_after,
              cert_path=excluded.cert_path,
              key_path=excluded.key_path,
              attempts=excluded.attempts,
              updated_at=excluded.updated_at
            """,
            (domain, state, not_before, not_after, cert_path, key_path, attempts, utc_now()),
        )
        row = conn.execute("SELECT * FROM certificates WHERE domain=?", (domain,)).fetchone()
        return CertificateRow(**dict(row))


def get_certificate(domain: str) -> CertificateRow | None:
    with connect() as conn:
        row = conn.execute("SELECT * FROM certificates WHERE domain=?", (domain,)).fetchone()
        return CertificateRow(**dict(row)) if row else None


def list_certificates() -> list[CertificateRow]:
    with connect() as conn:
        rows = conn.execute("SELECT * FROM certificates ORDER BY domain").fetchall()
        return _rows_to_dataclass(rows, CertificateRow)


def _rows_to_dataclass(rows: Iterable[sqlite3.Row], cls: Any) -> list[Any]:
    out: list[Any] = []
    for r in rows:
        out.append(cls(**dict(r)))
    return out

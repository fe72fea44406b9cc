from __future__ import annotations

import logging
import os
import sqlite3
from dataclasses import dataclass
from typing import Any, Iterable

from .runtime import ReconciliationResult, utc_now
from .settings import settings

logger = logging.getLogger("dpr")

_LEVELS = {"DEBUG": logging.DEBUG, "INFO": logging.INFO, "WARN": logging.WARNING, "ERROR": logging.ERROR}


def _resolve_db_path() -> str:
    """Return a file path usable by sqlite.

    A bind-mounted file path that does not exist on the host gets created as a
    directory by Docker; in that case the database file goes inside it.
    """
    p = os.path.abspath(settings.db_path)

    if os.path.isdir(p):
        p = os.path.join(p, "dpr.db")

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
              container TEXT,
              message TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS reconciliations (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              ts TEXT NOT NULL,
              trigger TEXT NOT NULL,
              outcome TEXT NOT NULL, -- applied|unchanged|rejected|skipped-container|fatal
              container TEXT,
              routes INTEGER,
              digest TEXT,
              diagnostic TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_events_ts ON events(ts);
            CREATE INDEX IF NOT EXISTS idx_reconciliations_ts ON reconciliations(ts);
            """
        )


def log_event(level: str, message: str, container: str | None = None) -> None:
    level = level.upper()
    logger.log(_LEVELS.get(level, logging.INFO), "%s%s", f"[{container}] " if container else "", message)
    with connect() as conn:
        conn.execute(
            "INSERT INTO events (ts, level, container, message) VALUES (?, ?, ?, ?)",
            (utc_now(), level, container, message),
        )


def record_result(result: ReconciliationResult) -> None:
    level = logging.INFO if result.outcome in {"applied", "unchanged"} else logging.WARNING
    if result.outcome == "fatal":
        level = logging.ERROR
    logger.log(
        level,
        "reconciliation trigger=%s outcome=%s%s: %s",
        result.trigger,
        result.outcome,
        f" container={result.container}" if result.container else "",
        result.diagnostic,
    )
    with connect() as conn:
        conn.execute(
            """
            INSERT INTO reconciliations (ts, trigger, outcome, container, routes, digest, diagnostic)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                result.timestamp,
                result.trigger,
                result.outcome,
                result.container,
                result.routes,
                result.digest,
                result.diagnostic,
            ),
        )


@dataclass(frozen=True)
class ResultRow:
    id: int
    ts: str
    trigger: str
    outcome: str
    container: str | None
    routes: int | None
    digest: str | None
    diagnostic: str


def _rows_to_dataclass(rows: Iterable[sqlite3.Row], cls: Any) -> list[Any]:
    out: list[Any] = []
    for r in rows:
        out.append(cls(**dict(r)))
    return out


def latest_results(limit: int = 100, outcome: str | None = None) -> list[ResultRow]:
    with connect() as conn:
        if outcome:
            rows = conn.execute(
                "SELECT * FROM reconciliations WHERE outcome=? ORDER BY id DESC LIMIT ?", (outcome, limit)
            ).fetchall()
        else:
            rows = conn.execute("SELECT * FROM reconciliations ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
        return _rows_to_dataclass(rows, ResultRow)


def latest_events(limit: int = 100) -> list[dict[str, Any]]:
    with connect() as conn:
        rows = conn.execute("SELECT * FROM events ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
        return [dict(r) for r in rows]

"""
Append-only SQLite performance ledger. WAL mode for concurrent read/write.

The trading loop appends one record per settled position; the report server
and CLI read the same file. Records are never updated or deleted, and the
store does no aggregation (see monitor/pnl.py).
"""

from __future__ import annotations

import logging
import sqlite3
import threading
import time
from pathlib import Path
from typing import Any

from scanner.models import PerformanceRecord

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = Path("ledger.db")


class DuplicateRecordError(Exception):
    """A record for this (window_close_time, opportunity_id) already exists."""


def _dict_factory(cursor: sqlite3.Cursor, row: tuple) -> dict[str, Any]:
    return {col[0]: row[i] for i, col in enumerate(cursor.description)}


def _to_record(row: dict[str, Any]) -> PerformanceRecord:
    return PerformanceRecord(
        window_close_time=row["window_close_time"],
        opportunity_id=row["opportunity_id"],
        realized_pnl=row["realized_pnl"],
        fees_paid=row["fees_paid"],
        outcome_settled=bool(row["outcome_settled"]),
        linked_set_id=row["linked_set_id"],
        entry_cost=row["entry_cost"],
        payout=row["payout"],
        recorded_at=row["recorded_at"],
    )


class LedgerStore:
    """Thread-safe SQLite ledger. One connection per thread."""

    def __init__(self, db_path: str | Path | None = None) -> None:
        self._db_path = str(db_path or DEFAULT_DB_PATH)
        self._local = threading.local()
        self._init_schema()

    @property
    def _conn(self) -> sqlite3.Connection:
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = sqlite3.connect(self._db_path, check_same_thread=False)
            conn.row_factory = _dict_factory
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA busy_timeout=5000")
            self._local.conn = conn
        return conn

    def _init_schema(self) -> None:
        conn = self._conn
        conn.executescript(_SCHEMA)
        conn.commit()

    # ── Write ──

    def append(self, record: PerformanceRecord) -> None:
        """Insert *record*. Raises DuplicateRecordError if its key already exists."""
        recorded_at = record.recorded_at or time.time()
        try:
            self._conn.execute(
                """INSERT INTO performance_records
                   (window_close_time, opportunity_id, linked_set_id, realized_pnl,
                    fees_paid, outcome_settled, entry_cost, payout, recorded_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    record.window_close_time, record.opportunity_id, record.linked_set_id,
                    record.realized_pnl, record.fees_paid, int(record.outcome_settled),
                    record.entry_cost, record.payout, recorded_at,
                ),
            )
            self._conn.commit()
        except sqlite3.IntegrityError as e:
            self._conn.rollback()
            raise DuplicateRecordError(
                f"record for {record.opportunity_id} @ {record.window_close_time:.0f} already exists"
            ) from e
        logger.debug("Ledger append: %s pnl=%.4f", record.opportunity_id, record.realized_pnl)

    # ── Read ──

    def query(self, start: float | None = None, end: float | None = None) -> list[PerformanceRecord]:
        """Records with start <= window_close_time < end, oldest window first."""
        clauses: list[str] = []
        params: list[float] = []
        if start is not None:
            clauses.append("window_close_time >= ?")
            params.append(start)
        if end is not None:
            clauses.append("window_close_time < ?")
            params.append(end)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self._conn.execute(
            f"SELECT * FROM performance_records {where} ORDER BY window_close_time, id",
            params,
        ).fetchall()
        return [_to_record(r) for r in rows]

    def get(self, window_close_time: float, opportunity_id: str) -> PerformanceRecord | None:
        row = self._conn.execute(
            "SELECT * FROM performance_records WHERE window_close_time = ? AND opportunity_id = ?",
            (window_close_time, opportunity_id),
        ).fetchone()
        return _to_record(row) if row else None

    def all(self) -> list[PerformanceRecord]:
        return self.query()

    def get_stats(self) -> tuple[float, int]:
        """(total realized profit, trades executed) over the whole ledger."""
        row = self._conn.execute(
            "SELECT COALESCE(SUM(realized_pnl), 0.0) AS total, COUNT(*) AS n FROM performance_records"
        ).fetchone()
        return float(row["total"]), int(row["n"])

    def close(self) -> None:
        conn = getattr(self._local, "conn", None)
        if conn is not None:
            conn.close()
            self._local.conn = None


_SCHEMA = """
CREATE TABLE IF NOT EXISTS performance_records (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    window_close_time REAL NOT NULL,
    opportunity_id TEXT NOT NULL,
    linked_set_id TEXT NOT NULL DEFAULT '',
    realized_pnl REAL NOT NULL,
    fees_paid REAL NOT NULL,
    outcome_settled INTEGER NOT NULL,
    entry_cost REAL NOT NULL DEFAULT 0,
    payout REAL NOT NULL DEFAULT 0,
    recorded_at REAL NOT NULL,
    UNIQUE (window_close_time, opportunity_id)
);
CREATE INDEX IF NOT EXISTS idx_records_window ON performance_records(window_close_time);
"""

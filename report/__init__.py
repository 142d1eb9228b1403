"""
Report module: append-only performance ledger and the operator HTTP API.

Usage:
    from report import open_ledger
    store = open_ledger("ledger.db")
"""

from __future__ import annotations

from report.store import DuplicateRecordError, LedgerStore

__all__ = ["DuplicateRecordError", "LedgerStore", "open_ledger"]


def open_ledger(db_path: str | None = None) -> LedgerStore:
    """Factory: returns a LedgerStore at *db_path* (default ledger.db)."""
    return LedgerStore(db_path=db_path)

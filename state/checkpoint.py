"""
Checkpoint manager. Persists engine and bankroll state to SQLite for crash recovery.

Components register once; tick() saves all of them every N cycles and the
driver saves once more on shutdown. Each save is a single SQLite transaction.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import time
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS component_state (
    name TEXT PRIMARY KEY,
    data_json TEXT NOT NULL,
    cycle_num INTEGER DEFAULT 0,
    updated_at REAL NOT NULL
);
"""

DEFAULT_DB_PATH = Path("state.db")


@runtime_checkable
class Snapshottable(Protocol):
    """Anything that can describe its state as a JSON-safe dict."""

    def to_dict(self) -> dict: ...


class CheckpointManager:
    """
    Persists component state to SQLite. Thread-safe for single-writer usage.

    Usage:
        mgr = CheckpointManager(db_path="state.db", auto_save_interval=10)
        mgr.register("engine", engine)
        mgr.register("bankroll", bankroll)
        mgr.tick()                       # every cycle; saves every N cycles
        data = mgr.load_data("engine")   # -> engine.restore(data)
        bankroll = mgr.load("bankroll", BankrollState)
    """

    def __init__(
        self,
        db_path: str | Path = DEFAULT_DB_PATH,
        auto_save_interval: int = 10,
    ) -> None:
        self._db_path = str(db_path)
        self._auto_save_interval = auto_save_interval
        self._cycle_count = 0
        self._save_count = 0
        self._components: dict[str, Snapshottable] = {}
        self._lock = threading.Lock()
        self._conn: sqlite3.Connection | None = None
        self._init_db()

    def _get_conn(self) -> sqlite3.Connection:
        if self._conn is None:
            self._conn = sqlite3.connect(self._db_path, check_same_thread=False)
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA busy_timeout=5000")
        return self._conn

    def _init_db(self) -> None:
        conn = self._get_conn()
        conn.executescript(_SCHEMA)
        conn.commit()

    def register(self, name: str, component: Snapshottable) -> None:
        """Register a component for auto-save. Does not save immediately."""
        with self._lock:
            self._components[name] = component

    def save_all(self, cycle_num: int | None = None) -> int:
        """Save every registered component in one transaction. Returns count saved."""
        if cycle_num is None:
            cycle_num = self._cycle_count
        with self._lock:
            snapshot = dict(self._components)

        rows: list[tuple[str, str, int, float]] = []
        now = time.time()
        for name, component in snapshot.items():
            # Serialization errors propagate: a partial checkpoint would
            # restore an engine that disagrees with its bankroll.
            data_json = json.dumps(component.to_dict(), default=str)
            rows.append((name, data_json, cycle_num, now))

        if not rows:
            return 0

        with self._lock:
            conn = self._get_conn()
            conn.executemany(
                "INSERT OR REPLACE INTO component_state "
                "(name, data_json, cycle_num, updated_at) VALUES (?, ?, ?, ?)",
                rows,
            )
            conn.commit()
            self._save_count += len(rows)

        logger.debug("Checkpoint saved: %d component(s) at cycle %d", len(rows), cycle_num)
        return len(rows)

    def load_data(self, name: str) -> dict | None:
        """Raw saved dict for *name*, or None if missing or corrupt."""
        with self._lock:
            row = self._get_conn().execute(
                "SELECT data_json, cycle_num, updated_at FROM component_state WHERE name = ?",
                (name,),
            ).fetchone()

        if row is None:
            logger.debug("Checkpoint not found: %s", name)
            return None

        data_json, cycle_num, updated_at = row
        try:
            data = json.loads(data_json)
        except (json.JSONDecodeError, TypeError) as e:
            logger.warning("Corrupt checkpoint for %s, ignoring: %s", name, e)
            return None
        if not isinstance(data, dict):
            logger.warning("Checkpoint for %s is not an object, ignoring", name)
            return None

        logger.info(
            "Checkpoint found: %s (cycle %d, %.1fs ago)", name, cycle_num, time.time() - updated_at,
        )
        return data

    def load(self, name: str, cls: type) -> Any | None:
        """New instance via cls.from_dict(), or None if there is nothing usable."""
        data = self.load_data(name)
        if data is None:
            return None
        try:
            return cls.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("Failed to restore %s from checkpoint: %s", name, e)
            return None

    def tick(self) -> int:
        """
        Called once per cycle. Saves all registered components every
        auto_save_interval cycles. Returns count saved (0 if not a save cycle).
        """
        self._cycle_count += 1
        if self._cycle_count % self._auto_save_interval == 0:
            return self.save_all(cycle_num=self._cycle_count)
        return 0

    def delete(self, name: str) -> bool:
        """Delete a checkpoint. Returns True if it existed."""
        with self._lock:
            conn = self._get_conn()
            cur = conn.execute("DELETE FROM component_state WHERE name = ?", (name,))
            conn.commit()
        return cur.rowcount > 0

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "db_path": self._db_path,
            "save_count": self._save_count,
            "cycle_count": self._cycle_count,
        }

"""
Unit tests for state/checkpoint.py -- engine and bankroll persistence.
"""

from __future__ import annotations

import sqlite3

import pytest

from executor.bankroll import BankrollState
from state.checkpoint import CheckpointManager, Snapshottable


class FakeComponent:
    def __init__(self, value: int = 0):
        self.value = value

    def to_dict(self) -> dict:
        return {"value": self.value}

    @classmethod
    def from_dict(cls, data: dict) -> FakeComponent:
        return cls(value=data["value"])


class BrokenSerializer:
    def to_dict(self) -> dict:
        raise RuntimeError("to_dict exploded")


def _make_mgr(tmp_path, **kw):
    return CheckpointManager(db_path=tmp_path / "state.db", **kw)


class TestSaveLoad:
    def test_round_trip(self, tmp_path):
        mgr = _make_mgr(tmp_path)
        mgr.register("fake", FakeComponent(7))
        assert mgr.save_all() == 1
        assert mgr.load("fake", FakeComponent).value == 7
        assert mgr.load_data("fake") == {"value": 7}

    def test_bankroll_round_trip(self, tmp_path):
        bankroll = BankrollState(100.0)
        bankroll.reserve("o1", 5.0)
        mgr = _make_mgr(tmp_path)
        mgr.register("bankroll", bankroll)
        mgr.save_all()
        restored = mgr.load("bankroll", BankrollState)
        assert restored.snapshot() == bankroll.snapshot()

    def test_survives_reopen(self, tmp_path):
        mgr = _make_mgr(tmp_path)
        mgr.register("fake", FakeComponent(3))
        mgr.save_all()
        mgr.close()
        assert _make_mgr(tmp_path).load_data("fake") == {"value": 3}

    def test_missing_returns_none(self, tmp_path):
        mgr = _make_mgr(tmp_path)
        assert mgr.load_data("nothing") is None
        assert mgr.load("nothing", FakeComponent) is None

    def test_nothing_registered(self, tmp_path):
        assert _make_mgr(tmp_path).save_all() == 0

    def test_satisfies_protocol(self):
        assert isinstance(FakeComponent(), Snapshottable)


class TestCorruption:
    def _write_raw(self, mgr, tmp_path, payload):
        conn = sqlite3.connect(tmp_path / "state.db")
        conn.execute(
            "INSERT OR REPLACE INTO component_state (name, data_json, cycle_num, updated_at) VALUES (?, ?, 0, 0)",
            ("fake", payload),
        )
        conn.commit()
        conn.close()

    def test_corrupt_json_ignored(self, tmp_path):
        mgr = _make_mgr(tmp_path)
        self._write_raw(mgr, tmp_path, "{not json")
        assert mgr.load_data("fake") is None

    def test_non_object_ignored(self, tmp_path):
        mgr = _make_mgr(tmp_path)
        self._write_raw(mgr, tmp_path, "[1, 2]")
        assert mgr.load_data("fake") is None

    def test_bad_shape_returns_none(self, tmp_path):
        mgr = _make_mgr(tmp_path)
        self._write_raw(mgr, tmp_path, '{"other": 1}')
        assert mgr.load("fake", FakeComponent) is None

    def test_serializer_error_propagates(self, tmp_path):
        mgr = _make_mgr(tmp_path)
        mgr.register("good", FakeComponent(1))
        mgr.register("bad", BrokenSerializer())
        with pytest.raises(RuntimeError):
            mgr.save_all()
        # Nothing partial was written.
        assert mgr.load_data("good") is None


class TestAutoSave:
    def test_saves_every_n_ticks(self, tmp_path):
        mgr = _make_mgr(tmp_path, auto_save_interval=3)
        mgr.register("fake", FakeComponent(1))
        assert [mgr.tick() for _ in range(6)] == [0, 0, 1, 0, 0, 1]
        assert mgr.stats["save_count"] == 2
        assert mgr.stats["cycle_count"] == 6

    def test_latest_state_wins(self, tmp_path):
        comp = FakeComponent(1)
        mgr = _make_mgr(tmp_path, auto_save_interval=1)
        mgr.register("fake", comp)
        mgr.tick()
        comp.value = 2
        mgr.tick()
        assert mgr.load_data("fake") == {"value": 2}


class TestDelete:
    def test_delete(self, tmp_path):
        mgr = _make_mgr(tmp_path)
        mgr.register("fake", FakeComponent(1))
        mgr.save_all()
        assert mgr.delete("fake") is True
        assert mgr.delete("fake") is False

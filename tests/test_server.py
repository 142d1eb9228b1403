"""Tests for report.server -- operator API endpoints."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import MagicMock

import pytest

from client.paper import PaperVenue
from executor.bankroll import BankrollState
from executor.engine import ExecutionEngine
from executor.sizing import SizedOrder
from monitor.status import StatusWriter
from report.store import LedgerStore
from scanner.models import ArbitrageOpportunity, CandidateLeg, PerformanceRecord, Side

# FastAPI test client requires httpx
try:
    from fastapi.testclient import TestClient
    from report.server import create_app
    HAS_FASTAPI = True
except ImportError:
    HAS_FASTAPI = False

pytestmark = pytest.mark.skipif(not HAS_FASTAPI, reason="fastapi not installed")

NOW = 1_700_000_100.0
CLOSE = 1_700_000_900.0


def _make_opp() -> ArbitrageOpportunity:
    legs = tuple(
        CandidateLeg(oid, "m1", Side.BUY, p, 50.0, p)
        for oid, p in (("up", 0.46), ("down", 0.52))
    )
    return ArbitrageOpportunity("btc-set", CLOSE, Side.BUY, 0.98, 0.02, legs, detected_at=NOW)


@pytest.fixture
def store(tmp_path: Path) -> LedgerStore:
    return LedgerStore(db_path=tmp_path / "ledger.db")


@pytest.fixture
def engine() -> ExecutionEngine:
    return ExecutionEngine(PaperVenue(quote_lookup=lambda oid: None), BankrollState(100.0), clock=lambda: NOW)


@pytest.fixture
def client(store: LedgerStore, engine: ExecutionEngine) -> "TestClient":
    return TestClient(create_app(store, engine))


def _submit(engine: ExecutionEngine) -> ArbitrageOpportunity:
    opp = _make_opp()
    engine.submit(opp, [SizedOrder(opp.opportunity_id, i, 10.0, leg.limit_price, 0.02)
                        for i, leg in enumerate(opp.candidate_legs)], now=NOW)
    return opp


class TestReadEndpoints:
    def test_status_without_driver(self, client: "TestClient") -> None:
        body = client.get("/api/status").json()
        assert body["venue"] == "paper"
        assert body["bankroll"]["available"] == 100.0
        assert body["live_orders"] == 0
        assert body["trades_executed"] == 0
        assert "mode" not in body

    def test_status_with_driver_and_alerts(self, store, engine, tmp_path) -> None:
        driver = MagicMock()
        driver.settings.mode = "DRY-RUN"
        driver.windows.current_close = CLOSE
        driver.linked_sets = []
        driver.stopping = False
        status = StatusWriter(file_path=str(tmp_path / "status.md"))
        status.add_alert("btc-set", "compensation failed")

        body = TestClient(create_app(store, engine, driver, status)).get("/api/status").json()
        assert body["mode"] == "DRY-RUN"
        assert body["window_close_time"] == CLOSE
        assert body["alerts"][0]["subject"] == "btc-set"

    def test_positions(self, client: "TestClient", engine: ExecutionEngine) -> None:
        opp = _submit(engine)
        rows = client.get("/api/positions").json()
        assert len(rows) == 1
        assert rows[0]["opportunity_id"] == opp.opportunity_id
        assert len(rows[0]["orders"]) == 2
        assert rows[0]["halted"] is False

    def test_ledger_range(self, client: "TestClient", store: LedgerStore) -> None:
        for i, close in enumerate((900.0, 1800.0)):
            store.append(PerformanceRecord(close, f"o{i}", 0.3, 0.0, True))
        rows = client.get("/api/ledger", params={"start": 1000}).json()
        assert [r["opportunity_id"] for r in rows] == ["o1"]

    def test_summary(self, client: "TestClient", store: LedgerStore) -> None:
        store.append(PerformanceRecord(900.0, "a", 0.3, 0.0, True, entry_cost=14.7))
        store.append(PerformanceRecord(1800.0, "b", -0.1, 0.0, True, entry_cost=9.0))
        body = client.get("/api/summary").json()
        assert body["total_trades"] == 2
        assert body["total_pnl"] == pytest.approx(0.2)


class TestControlEndpoints:
    def test_flatten_unknown(self, client: "TestClient") -> None:
        assert client.post("/api/positions/nope/flatten").status_code == 404

    def test_flatten_resting_position(self, client: "TestClient", engine: ExecutionEngine) -> None:
        opp = _submit(engine)
        resp = client.post(f"/api/positions/{opp.opportunity_id}/flatten")
        assert resp.status_code == 200
        assert resp.json()["orders"] == []
        assert engine.live_orders() == []

    def test_cancel_order(self, client: "TestClient", engine: ExecutionEngine) -> None:
        opp = _submit(engine)
        resp = client.post(f"/api/orders/{opp.opportunity_id}:0/cancel")
        assert resp.status_code == 200
        assert resp.json()["state"] == "cancelled"
        assert client.post(f"/api/orders/{opp.opportunity_id}:0/cancel").status_code == 404

    def test_stop_without_driver(self, client: "TestClient") -> None:
        assert client.post("/api/engine/stop").status_code == 409

    def test_stop_with_driver(self, store, engine) -> None:
        driver = MagicMock()
        resp = TestClient(create_app(store, engine, driver)).post("/api/engine/stop")
        assert resp.json() == {"stopping": True}
        driver.stop.assert_called_once()

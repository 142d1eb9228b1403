"""
FastAPI operator surface. Runs as a daemon thread next to the trading loop.

Read endpoints serve engine state and the ledger; the POST endpoints are the
operator's controls (flatten, cancel, stop).
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import asdict
from typing import TYPE_CHECKING, Any

from monitor.pnl import PnLSummary
from report.store import LedgerStore

if TYPE_CHECKING:
    from executor.engine import ExecutionEngine
    from monitor.status import StatusWriter
    from pipeline.driver import TickDriver

logger = logging.getLogger(__name__)


def create_app(
    store: LedgerStore,
    engine: ExecutionEngine,
    driver: TickDriver | None = None,
    status: StatusWriter | None = None,
) -> Any:
    """Build and return the FastAPI application."""
    from fastapi import FastAPI, HTTPException, Query

    app = FastAPI(title="Up/Down Arbitrage", docs_url="/docs")

    # ── Read ──

    @app.get("/api/status")
    async def get_status():
        snap = engine.bankroll.snapshot()
        total_profit, trades = store.get_stats()
        body: dict[str, Any] = {
            "timestamp": time.time(),
            "venue": engine.venue.name,
            "bankroll": {
                "cash": snap.cash,
                "reserved": snap.reserved,
                "open_exposure": snap.open_exposure,
                "available": snap.available,
                "open_positions": snap.open_positions,
            },
            "live_orders": len(engine.live_orders()),
            "halted_sets": engine.halted_sets(),
            "total_profit": total_profit,
            "trades_executed": trades,
        }
        if driver is not None:
            body["mode"] = driver.settings.mode
            body["window_close_time"] = driver.windows.current_close
            body["linked_sets"] = [s.set_id for s in driver.linked_sets]
            body["stopping"] = driver.stopping
        if status is not None:
            body["alerts"] = [asdict(a) for a in status.alerts()]
        return body

    @app.get("/api/positions")
    async def get_positions():
        return engine.open_positions()

    @app.get("/api/ledger")
    async def get_ledger(
        start: float | None = Query(None, description="Window close time, inclusive"),
        end: float | None = Query(None, description="Window close time, exclusive"),
    ):
        return [asdict(r) for r in store.query(start, end)]

    @app.get("/api/summary")
    async def get_summary(start: float | None = None, end: float | None = None):
        return PnLSummary.from_records(store.query(start, end)).to_dict()

    # ── Control ──

    @app.post("/api/positions/{opportunity_id}/flatten")
    def flatten(opportunity_id: str):
        try:
            orders = engine.force_flatten(opportunity_id)
        except KeyError:
            raise HTTPException(status_code=404, detail=f"No open position {opportunity_id}")
        return {"opportunity_id": opportunity_id, "orders": [o.to_dict() for o in orders]}

    @app.post("/api/orders/{client_order_id}/cancel")
    def cancel(client_order_id: str):
        if not engine.cancel_order(client_order_id):
            raise HTTPException(status_code=404, detail=f"No live order {client_order_id}")
        order = engine.get_order(client_order_id)
        return order.to_dict() if order is not None else {"client_order_id": client_order_id}

    @app.post("/api/engine/stop")
    def stop():
        if driver is None:
            raise HTTPException(status_code=409, detail="No trading loop attached")
        driver.stop()
        return {"stopping": True}

    return app


def start_server(
    store: LedgerStore,
    engine: ExecutionEngine,
    driver: TickDriver | None = None,
    status: StatusWriter | None = None,
    host: str = "127.0.0.1",
    port: int = 8765,
) -> threading.Thread:
    """Start FastAPI in a daemon thread. Returns the thread."""
    import uvicorn

    app = create_app(store, engine, driver, status)

    def _run():
        uvicorn.run(app, host=host, port=port, log_level="warning", access_log=False)

    thread = threading.Thread(target=_run, daemon=True, name="report-server")
    thread.start()
    logger.info("Operator API started at http://%s:%d", host, port)
    return thread

#!/usr/bin/env python3
"""
Up/Down Arbitrage -- entry point.

Wires the pipeline together and runs the tick loop:
  1. Restore engine + bankroll from the checkpoint, reconcile with the venue
  2. Each tick: discover window markets, fetch quotes, detect, size, submit
  3. Poll orders, enforce expiry, settle closed windows into the ledger
  4. On SIGINT/SIGTERM: drain in-flight orders, save checkpoint, exit

Usage:
  uv run python run.py                         # paper venue (default, dry run)
  uv run python run.py --live                  # real orders (needs wallet)
  uv run python run.py positions               # open positions
  uv run python run.py ledger --start T --end T
  uv run python run.py flatten <opportunity_id>
"""

from __future__ import annotations

import argparse
import json
import logging
import signal
import sys
import time
from dataclasses import asdict
from functools import partial

import httpx

from client.clob import ClobQuoteSource, ClobVenue, build_clob_client
from client.gamma import GammaResolutionSource, discover_window_markets
from client.paper import PaperVenue
from client.platform import TransientIOError, Venue
from client.ws import QuoteStream
from config import Config, load_config
from executor.bankroll import BankrollState
from executor.engine import ExecutionEngine
from executor.reconcile import reconcile_with_venue
from executor.sizing import PositionSizer
from monitor.logger import setup_logging
from monitor.pnl import PnLSummary
from monitor.status import StatusWriter
from pipeline.driver import DriverSettings, TickDriver
from report.server import start_server
from report.store import LedgerStore
from scanner.detector import ArbitrageDetector
from scanner.fees import FeeSchedule
from state.checkpoint import CheckpointManager

logger = logging.getLogger(__name__)


_BANNER = r"""
 _   _       ______                        _         _
| | | |_ __ |  _ \ _____      ___ __      / \   _ __| |__
| | | | '_ \| | | / _ \ \ /\ / / '_ \    / _ \ | '__| '_ \
| |_| | |_) | |_| | (_) \ V  V /| | | |  / ___ \| |  | |_) |
 \___/| .__/|____/ \___/ \_/\_/ |_| |_| /_/   \_\_|  |_.__/
      |_|                      15-minute window arbitrage
"""


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Up/Down window arbitrage")
    parser.add_argument("--live", action="store_true", help="Send real orders (disables dry run)")
    parser.add_argument("--dry-run", action="store_true", help="Simulated venue, no wallet needed (default)")
    parser.add_argument("--json-log", type=str, default=None, help="Path to ndjson log file")

    sub = parser.add_subparsers(dest="command")
    sub.add_parser("run", help="Run the trading loop (default)")
    sub.add_parser("positions", help="Show open positions")
    ledger = sub.add_parser("ledger", help="Show settled records and a summary")
    ledger.add_argument("--start", type=float, default=None, help="Window close time lower bound (inclusive)")
    ledger.add_argument("--end", type=float, default=None, help="Window close time upper bound (exclusive)")
    flatten = sub.add_parser("flatten", help="Force-flatten an open position")
    flatten.add_argument("opportunity_id")

    args = parser.parse_args(argv)
    if args.command is None:
        args.command = "run"
    if args.live and args.dry_run:
        parser.error("--live and --dry-run are mutually exclusive")
    return args


def apply_overrides(cfg: Config, args: argparse.Namespace) -> Config:
    """CLI flags win over environment. Returns a new Config."""
    if args.live:
        return cfg.model_copy(update={"dry_run": False})
    if args.dry_run:
        return cfg.model_copy(update={"dry_run": True})
    return cfg


def _mode_label(cfg: Config) -> str:
    if cfg.dry_run:
        return f"DRY-RUN (paper venue, fill ratio {cfg.paper_fill_ratio:.2f})"
    return "LIVE TRADING"


def _api_url(cfg: Config, path: str) -> str:
    return f"http://{cfg.report_host}:{cfg.report_port}{path}"


# ── Subcommands ──


def cmd_positions(cfg: Config) -> int:
    """Ask the running process; fall back to the last checkpoint."""
    try:
        resp = httpx.get(_api_url(cfg, "/api/positions"), timeout=5.0)
        resp.raise_for_status()
        positions = resp.json()
        source = "live"
    except httpx.HTTPError as e:
        logger.info("Operator API unavailable (%s); reading checkpoint %s", e, cfg.state_db_path)
        checkpoint = CheckpointManager(cfg.state_db_path)
        try:
            data = checkpoint.load_data("engine") or {}
        finally:
            checkpoint.close()
        positions = data.get("positions", [])
        source = "checkpoint"

    print(f"{len(positions)} open position(s) [{source}]")
    for p in positions:
        print(json.dumps(p, indent=2, default=str))
    return 0


def cmd_ledger(cfg: Config, start: float | None, end: float | None) -> int:
    store = LedgerStore(cfg.ledger_db_path)
    try:
        records = store.query(start, end)
    finally:
        store.close()
    for r in records:
        print(
            f"{time.strftime('%Y-%m-%d %H:%M', time.localtime(r.window_close_time))}  "
            f"{r.opportunity_id:<48}  pnl=${r.realized_pnl:>8.4f}  fees=${r.fees_paid:.4f}"
        )
    summary = PnLSummary.from_records(records)
    print(
        f"\n{summary.total_trades} record(s)  total=${summary.total_pnl:.4f}  "
        f"win rate={summary.win_rate:.1f}%  fees=${summary.total_fees:.4f}"
    )
    return 0


def cmd_flatten(cfg: Config, opportunity_id: str) -> int:
    try:
        resp = httpx.post(_api_url(cfg, f"/api/positions/{opportunity_id}/flatten"), timeout=30.0)
    except httpx.HTTPError as e:
        logger.error("Operator API unavailable: %s (is the trading loop running?)", e)
        return 1
    if resp.status_code == 404:
        logger.error("No open position %s", opportunity_id)
        return 1
    resp.raise_for_status()
    body = resp.json()
    print(f"Flatten sent {len(body['orders'])} order(s) for {opportunity_id}")
    return 0


# ── Trading loop ──


def build_venue(cfg: Config, quote_lookup) -> tuple[Venue, ClobQuoteSource]:
    """Venue plus the REST quote source it pairs with."""
    if cfg.dry_run:
        client = build_clob_client(cfg, authenticated=False)
        venue: Venue = PaperVenue(fill_ratio=cfg.paper_fill_ratio, quote_lookup=quote_lookup)
    else:
        logger.debug("Deriving L2 API credentials from wallet...")
        client = build_clob_client(cfg)
        venue = ClobVenue(client, max_retries=cfg.max_retries, backoff_sec=cfg.retry_backoff_sec)
    quotes = ClobQuoteSource(
        client,
        max_workers=cfg.book_fetch_workers,
        max_retries=cfg.max_retries,
        backoff_sec=cfg.retry_backoff_sec,
    )
    return venue, quotes


def cmd_run(cfg: Config) -> int:
    if not cfg.dry_run and (not cfg.private_key or not cfg.polymarket_profile_address):
        logger.error("PRIVATE_KEY and POLYMARKET_PROFILE_ADDRESS required for live trading.")
        logger.error("Use --dry-run to trade against the paper venue.")
        return 1

    mode = _mode_label(cfg)
    logger.info(_BANNER.strip("\n"))
    logger.info("  Mode: %s", mode)
    logger.info("  Assets: %s (cross-asset %s)", ", ".join(cfg.asset_list), "on" if cfg.cross_asset_enabled else "off")
    logger.info(
        "  Margin %.4f | ceiling %s | sync %.0fms | buffer %.0fs",
        cfg.min_edge_margin,
        f"{cfg.per_trade_risk_ceiling:.0%} of available" if cfg.risk_ceiling_is_fraction else f"${cfg.per_trade_risk_ceiling:.2f}",
        cfg.quote_staleness_ms, cfg.expiry_safety_buffer_sec,
    )

    checkpoint = CheckpointManager(cfg.state_db_path, auto_save_interval=cfg.state_checkpoint_interval)
    bankroll = checkpoint.load("bankroll", BankrollState) or BankrollState(cfg.starting_bankroll)
    ledger = LedgerStore(cfg.ledger_db_path)
    status = StatusWriter(file_path=cfg.status_file)
    fees = FeeSchedule(enabled=cfg.fee_model_enabled, max_rate=cfg.crypto_fee_max_rate)

    engine: ExecutionEngine | None = None

    def _quote_lookup(outcome_id: str):
        return engine.last_quote(outcome_id) if engine is not None else None

    venue, quote_source = build_venue(cfg, _quote_lookup)
    engine = ExecutionEngine(
        venue,
        bankroll,
        fees=fees,
        ledger=ledger,
        max_concurrent_positions_per_market_set=cfg.max_concurrent_positions_per_market_set,
        expiry_safety_buffer_sec=cfg.expiry_safety_buffer_sec,
        max_slippage=cfg.max_slippage,
        on_alert=status.add_alert,
    )

    saved = checkpoint.load_data("engine")
    if saved is not None:
        engine.restore(saved)
        if isinstance(venue, ClobVenue):
            for order in engine.live_orders():
                if order.venue_order_id:
                    venue.remember(order.client_order_id, order.venue_order_id)
    try:
        report = reconcile_with_venue(engine, venue)
    except (TransientIOError, httpx.HTTPError) as e:
        logger.error("Startup reconciliation failed: %s", e)
        return 1
    if report.orphans_failed:
        status.add_alert("reconcile", f"could not cancel orphan order(s): {', '.join(report.orphans_failed)}")

    checkpoint.register("engine", engine)
    checkpoint.register("bankroll", bankroll)

    stream = QuoteStream(cfg.ws_market_url, max_retries=cfg.ws_reconnect_max) if cfg.ws_enabled else None
    driver = TickDriver(
        DriverSettings(
            poll_interval_seconds=cfg.poll_interval_seconds,
            window_duration_minutes=cfg.window_duration_minutes,
            quote_max_age_ms=cfg.quote_max_age_ms,
            settlement_check_delay_sec=cfg.settlement_check_delay_sec,
            cross_asset_enabled=cfg.cross_asset_enabled,
            fetch_workers=cfg.book_fetch_workers,
            mode=mode,
        ),
        engine=engine,
        detector=ArbitrageDetector(
            min_edge_margin=cfg.min_edge_margin,
            sync_window_ms=cfg.quote_staleness_ms,
            cross_asset_min_leg_price=cfg.cross_asset_min_leg_price,
        ),
        sizer=PositionSizer(
            per_trade_risk_ceiling=cfg.per_trade_risk_ceiling,
            risk_ceiling_is_fraction=cfg.risk_ceiling_is_fraction,
            min_trade_amount=cfg.min_trade_amount,
            min_tradable_unit=cfg.min_tradable_unit,
            max_slippage=cfg.max_slippage,
            max_concurrent_positions_per_market_set=cfg.max_concurrent_positions_per_market_set,
        ),
        fees=fees,
        quote_source=quote_source,
        discover=partial(
            discover_window_markets, cfg.gamma_host, cfg.asset_list,
            duration_minutes=cfg.window_duration_minutes,
        ),
        resolution_source=GammaResolutionSource(cfg.gamma_host),
        checkpoint=checkpoint,
        status=status,
        stream=stream,
    )

    if cfg.report_server_enabled:
        start_server(ledger, engine, driver, status, host=cfg.report_host, port=cfg.report_port)

    def handle_signal(signum, frame):
        logger.info("Signal %d received", signum)
        driver.stop()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    session_start = time.time()
    try:
        driver.run()
    finally:
        checkpoint.close()

    total_profit, trades = ledger.get_stats()
    logger.info(
        "Session over after %.0fs: %d opportunity(ies), %d settled this session (pnl $%.2f), ledger total $%.2f over %d",
        time.time() - session_start, driver.opportunities_found, driver.records_written,
        driver.session_pnl, total_profit, trades,
    )
    logger.info("Final bankroll: %s", json.dumps(asdict(bankroll.snapshot()), default=str))
    return 0


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    cfg = apply_overrides(load_config(), args)
    log_path = setup_logging(cfg.log_level, json_log_file=args.json_log)
    logger.debug("Log file: %s", log_path)

    if args.command == "positions":
        return cmd_positions(cfg)
    if args.command == "ledger":
        return cmd_ledger(cfg, args.start, args.end)
    if args.command == "flatten":
        return cmd_flatten(cfg, args.opportunity_id)
    return cmd_run(cfg)


if __name__ == "__main__":
    sys.exit(main())

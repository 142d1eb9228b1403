"""
Tick driver: the trading loop.

Each tick:
  1. roll to the next window set at a window boundary
  2. poll live orders and cancel anything at its expiry deadline
  3. fetch quotes for every linked set concurrently
  4. per set, under a non-blocking lock: normalize -> detect -> size -> submit
  5. settle closed positions whose markets have resolved
  6. checkpoint and status file

stop() asks run() to exit; run() then drains in-flight orders and saves a
final checkpoint before returning.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable

import httpx

from client.platform import QuoteSource, SettlementSource, TransientIOError
from client.ws import QuoteStream
from executor.engine import ExecutionEngine
from executor.sizing import PositionSizer
from monitor.status import StatusWriter
from report.store import DuplicateRecordError
from scanner.detector import ArbitrageDetector
from scanner.fees import FeeSchedule
from scanner.models import ArbitrageOpportunity, LinkedMarketSet, RawQuote, UpDownMarket
from scanner.normalizer import normalize_all
from scanner.windows import WindowTracker, build_linked_sets, window_period
from state.checkpoint import CheckpointManager

logger = logging.getLogger(__name__)

MarketDiscovery = Callable[[int], "dict[str, UpDownMarket]"]


@dataclass
class DriverSettings:
    poll_interval_seconds: float = 2.0
    window_duration_minutes: int = 15
    quote_max_age_ms: float = 2000.0
    settlement_check_delay_sec: float = 840.0
    cross_asset_enabled: bool = True
    fetch_workers: int = 8
    drain_timeout_sec: float = 30.0
    mode: str = "DRY-RUN"


@dataclass
class TickResult:
    tick: int
    sets_evaluated: int = 0
    sets_skipped: int = 0
    opportunities: int = 0
    submitted: int = 0
    settled: int = 0


class TickDriver:
    """Runs the per-window trading loop on the calling thread."""

    def __init__(
        self,
        settings: DriverSettings,
        engine: ExecutionEngine,
        detector: ArbitrageDetector,
        sizer: PositionSizer,
        fees: FeeSchedule,
        quote_source: QuoteSource,
        discover: MarketDiscovery,
        resolution_source: SettlementSource,
        checkpoint: CheckpointManager | None = None,
        status: StatusWriter | None = None,
        stream: QuoteStream | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings
        self.engine = engine
        self.detector = detector
        self.sizer = sizer
        self.fees = fees
        self.quote_source = quote_source
        self.discover = discover
        self.resolution_source = resolution_source
        self.checkpoint = checkpoint
        self.status = status
        self.stream = stream
        self._clock = clock

        self.windows = WindowTracker(settings.window_duration_minutes)
        self.linked_sets: list[LinkedMarketSet] = []
        self._set_locks: dict[str, threading.Lock] = {}
        self._stop = threading.Event()
        self._tick = 0
        self.opportunities_found = 0
        self.records_written = 0
        self.session_pnl = 0.0

    # ── Lifecycle ──

    def stop(self) -> None:
        """Request shutdown. Safe to call from a signal handler or another thread."""
        if not self._stop.is_set():
            logger.info("Shutdown requested")
        self._stop.set()

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    def run(self) -> None:
        logger.info("Trading loop started (%s, tick every %.1fs)", self.settings.mode, self.settings.poll_interval_seconds)
        try:
            while not self._stop.is_set():
                started = time.monotonic()
                self.tick()
                remaining = self.settings.poll_interval_seconds - (time.monotonic() - started)
                if remaining > 0:
                    self._stop.wait(remaining)
        finally:
            self.shutdown()

    def shutdown(self) -> None:
        cancelled = self.engine.drain(timeout_sec=self.settings.drain_timeout_sec)
        logger.info("Drained in-flight orders (%d cancelled)", cancelled)
        if self.stream is not None:
            self.stream.stop()
        if self.checkpoint is not None:
            self.checkpoint.save_all()
            logger.info("Final checkpoint saved")

    # ── Tick ──

    def tick(self, now: float | None = None) -> TickResult:
        if now is None:
            now = self._clock()
        self._tick += 1
        result = TickResult(tick=self._tick)

        if self.windows.should_roll(now):
            self.roll_window(now)

        self.engine.poll_orders()
        self.engine.enforce_deadlines(now)

        if self.linked_sets:
            batches = self.fetch_all(now)
            for linked_set in self.linked_sets:
                raws = batches.get(linked_set.set_id)
                if raws is None:
                    result.sets_skipped += 1
                    continue
                opps, submitted = self.process_set(linked_set, raws, now)
                if opps is None:
                    result.sets_skipped += 1
                    continue
                result.sets_evaluated += 1
                result.opportunities += len(opps)
                result.submitted += submitted

        result.settled = self.settle_due(now)
        self.opportunities_found += result.opportunities

        if self.checkpoint is not None:
            self.checkpoint.tick()
        self._write_status()
        logger.debug(
            "Tick %d: %d set(s) evaluated, %d skipped, %d opp(s), %d submitted, %d settled",
            result.tick, result.sets_evaluated, result.sets_skipped,
            result.opportunities, result.submitted, result.settled,
        )
        return result

    def roll_window(self, now: float) -> None:
        """Discover the new window's markets and rebuild the linked sets."""
        start = self.windows.roll(now)
        self.linked_sets = []
        self.engine.prune_quotes(start)
        try:
            markets = self.discover(start)
        except (TransientIOError, httpx.HTTPError) as e:
            logger.warning("Market discovery failed for window %d: %s (retrying next tick)", start, e)
            # Force another roll attempt on the next tick.
            self.windows.current_start = None
            return

        if not markets:
            logger.warning("No markets found for window %d", start)
            return
        self.linked_sets = build_linked_sets(markets, cross_asset_enabled=self.settings.cross_asset_enabled)
        self._set_locks = {s.set_id: self._set_locks.get(s.set_id, threading.Lock()) for s in self.linked_sets}
        logger.info(
            "Window %d: %d market(s), %d linked set(s)",
            start, len(markets), len(self.linked_sets),
        )
        if self.stream is not None:
            tokens = sorted({oid for s in self.linked_sets for oid in s.outcome_ids})
            self.stream.start(tokens)

    def fetch_all(self, now: float) -> dict[str, list[RawQuote]]:
        """Quotes per set_id, fetched concurrently. Failed sets are left out with a logged reason."""
        deadline = self.windows.current_close
        if deadline is not None and now >= deadline - self.engine.expiry_safety_buffer_sec:
            logger.debug("Past cancel deadline for window %d, not fetching quotes", deadline)
            return {}

        def _fetch(linked_set: LinkedMarketSet) -> list[RawQuote]:
            specs = list(linked_set.members)
            if self.stream is not None and self.stream.is_healthy():
                streamed = self.stream.quotes_for(
                    specs, linked_set.window_close_time, self.settings.quote_max_age_ms / 1000.0, now,
                )
                if streamed is not None:
                    return streamed
            return self.quote_source.fetch_quotes(specs, linked_set.window_close_time)

        out: dict[str, list[RawQuote]] = {}
        workers = max(1, min(self.settings.fetch_workers, len(self.linked_sets)))
        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = {s.set_id: pool.submit(_fetch, s) for s in self.linked_sets}
            for set_id, future in futures.items():
                try:
                    out[set_id] = future.result()
                except (TransientIOError, httpx.HTTPError) as e:
                    logger.warning("Skip %s this tick: quote fetch failed: %s", set_id, e)
        return out

    def process_set(
        self, linked_set: LinkedMarketSet, raws: list[RawQuote], now: float,
    ) -> tuple[list[ArbitrageOpportunity] | None, int]:
        """
        Normalize -> detect -> size -> submit for one set. Returns
        (opportunities, orders submitted); opportunities is None when the set
        was skipped.
        """
        lock = self._set_locks.setdefault(linked_set.set_id, threading.Lock())
        if not lock.acquire(blocking=False):
            logger.info("Skip %s: previous evaluation still running", linked_set.set_id)
            return None, 0
        try:
            quotes, skipped = normalize_all(raws, self.fees, now=now, max_age_ms=self.settings.quote_max_age_ms)
            self.engine.observe_quotes(quotes)
            if skipped:
                logger.info("Skip %s: %d quote(s) discarded", linked_set.set_id, len(skipped))
                return None, 0
            if self.engine.is_halted(linked_set.set_id):
                logger.info("Skip %s: halted pending operator review", linked_set.set_id)
                return None, 0

            opps = self.detector.detect(linked_set, quotes, now=now)
            submitted = 0
            for opp in opps:
                sized = self.sizer.size(opp, self.engine.bankroll.snapshot())
                if not sized:
                    continue
                submitted += len(self.engine.submit(opp, sized, now=now))
            return opps, submitted
        finally:
            lock.release()

    # ── Settlement ──

    def settle_due(self, now: float) -> int:
        """Settle every closed position whose markets have resolved. Returns records written."""
        period = window_period(self.settings.window_duration_minutes)
        written = 0
        for position in self.engine.positions_awaiting_settlement(now):
            window_age = now - (position.window_close_time - period)
            if window_age < self.settings.settlement_check_delay_sec:
                continue
            winners: dict[str, bool] = {}
            try:
                for market_id in sorted(set(self.engine.outcome_ids(position.opportunity_id).values())):
                    result = self.resolution_source.get_resolution(market_id)
                    if result is None:
                        break
                    winners.update(result)
            except (TransientIOError, httpx.HTTPError) as e:
                logger.warning("Settlement check for %s failed: %s", position.opportunity_id, e)
                continue

            try:
                record = self.engine.settle(position.opportunity_id, winners)
            except DuplicateRecordError as e:
                logger.error("Ledger already holds %s: %s", position.opportunity_id, e)
                continue
            if record is not None:
                written += 1
                self.records_written += 1
                self.session_pnl += record.realized_pnl
        return written

    def _write_status(self) -> None:
        if self.status is None:
            return
        try:
            self.status.write(
                tick=self._tick,
                mode=self.settings.mode,
                window_close_time=self.windows.current_close,
                bankroll=self.engine.bankroll.snapshot(),
                positions=self.engine.open_positions(),
                halted=self.engine.halted_sets(),
                opportunities_found=self.opportunities_found,
                records_written=self.records_written,
                total_pnl=self.session_pnl,
            )
        except OSError as e:
            logger.warning("Status file write failed: %s", e)

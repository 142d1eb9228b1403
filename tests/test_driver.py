"""
Unit tests for pipeline/driver.py -- the per-tick trading loop.
"""

import threading
from unittest.mock import MagicMock

import pytest

from client.paper import PaperVenue
from client.platform import TransientIOError
from executor.bankroll import BankrollState
from executor.engine import ExecutionEngine
from executor.sizing import PositionSizer
from pipeline.driver import DriverSettings, TickDriver
from report.store import DuplicateRecordError
from scanner.detector import ArbitrageDetector
from scanner.fees import FeeSchedule
from scanner.models import RawQuote, UpDownMarket
from scanner.windows import market_slug

START = 1_700_000_100 // 900 * 900
NOW = START + 100
CLOSE = START + 900


def _make_market(start):
    return UpDownMarket(
        condition_id=f"cond-{start}",
        asset="btc",
        slug=market_slug("btc", start),
        up_token_id=f"up-{start}",
        down_token_id=f"down-{start}",
        window_start=float(start),
        window_close_time=float(start + 900),
    )


def _make_quote_source(up_ask=0.46, down_ask=0.52, ts=NOW):
    def fetch(specs, window_close_time):
        asks = {"UP": up_ask, "DOWN": down_ask}
        return [
            RawQuote(
                market_id=s.market_id,
                outcome_id=s.outcome_id,
                bid=round(asks[s.direction.value] - 0.01, 2),
                ask=asks[s.direction.value],
                bid_size=15.0,
                ask_size=15.0,
                timestamp=ts,
                window_close_time=window_close_time,
            )
            for s in specs
        ]

    source = MagicMock()
    source.fetch_quotes.side_effect = fetch
    return source


def _make_driver(quote_source=None, discover=None, resolution=None, **kw):
    ledger = MagicMock()
    engine = ExecutionEngine(PaperVenue(), BankrollState(100.0), ledger=ledger, clock=lambda: NOW)
    discover = discover or MagicMock(side_effect=lambda start: {"btc": _make_market(start)})
    driver = TickDriver(
        settings=DriverSettings(cross_asset_enabled=False),
        engine=engine,
        detector=ArbitrageDetector(min_edge_margin=0.01, sync_window_ms=500),
        sizer=PositionSizer(per_trade_risk_ceiling=20.0),
        fees=FeeSchedule.zero(),
        quote_source=quote_source or _make_quote_source(),
        discover=discover,
        resolution_source=resolution or MagicMock(),
        clock=lambda: NOW,
        **kw,
    )
    return driver, engine, ledger


class TestTick:
    def test_detects_and_submits(self):
        driver, engine, _ = _make_driver()
        result = driver.tick(NOW)
        assert result.sets_evaluated == 1
        assert result.opportunities == 1
        assert result.submitted == 2
        snap = engine.bankroll.snapshot()
        assert snap.open_exposure == pytest.approx(14.7)
        assert driver.opportunities_found == 1

    def test_no_opportunity_no_orders(self):
        driver, engine, _ = _make_driver(quote_source=_make_quote_source(0.50, 0.52))
        result = driver.tick(NOW)
        assert result.opportunities == 0
        assert engine.live_orders() == []
        assert engine.open_positions() == []

    def test_window_rolls_once(self):
        driver, _, _ = _make_driver()
        driver.tick(NOW)
        driver.tick(NOW + 2)
        driver.discover.assert_called_once_with(START)
        assert driver.windows.current_close == CLOSE

    def test_roll_forgets_previous_window_quotes(self):
        driver, engine, _ = _make_driver()
        driver.tick(NOW)
        assert engine.last_quote(f"up-{START}") is not None
        driver.roll_window(CLOSE + 5)
        assert engine.last_quote(f"up-{START}") is None

    def test_discovery_failure_retried(self):
        discover = MagicMock(side_effect=[TransientIOError("gamma down"), {"btc": _make_market(START)}])
        driver, _, _ = _make_driver(discover=discover)
        first = driver.tick(NOW)
        assert first.sets_evaluated == 0
        assert driver.windows.current_start is None
        driver.tick(NOW + 2)
        assert discover.call_count == 2
        assert len(driver.linked_sets) == 1

    def test_fetch_failure_skips_set(self):
        source = MagicMock()
        source.fetch_quotes.side_effect = TransientIOError("timeout")
        driver, engine, _ = _make_driver(quote_source=source)
        result = driver.tick(NOW)
        assert result.sets_skipped == 1
        assert engine.live_orders() == []

    def test_stale_quotes_skip_set(self):
        driver, engine, _ = _make_driver(quote_source=_make_quote_source(ts=NOW - 10))
        result = driver.tick(NOW)
        assert result.sets_skipped == 1
        assert result.submitted == 0

    def test_no_fetch_past_deadline(self):
        source = _make_quote_source(ts=CLOSE - 20)
        driver, _, _ = _make_driver(quote_source=source)
        result = driver.tick(CLOSE - 20)
        assert result.sets_skipped == 1
        source.fetch_quotes.assert_not_called()

    def test_halted_set_skipped(self):
        driver, engine, _ = _make_driver()
        driver.roll_window(NOW)
        engine._halted[driver.linked_sets[0].set_id] = "test halt"
        result = driver.tick(NOW)
        assert result.sets_skipped == 1
        assert engine.live_orders() == []

    def test_busy_set_skipped(self):
        driver, _, _ = _make_driver()
        driver.roll_window(NOW)
        linked_set = driver.linked_sets[0]
        lock = driver._set_locks[linked_set.set_id]
        lock.acquire()
        try:
            opps, submitted = driver.process_set(linked_set, [], NOW)
        finally:
            lock.release()
        assert opps is None
        assert submitted == 0

    def test_status_written(self):
        status = MagicMock()
        driver, _, _ = _make_driver(status=status)
        driver.tick(NOW)
        kwargs = status.write.call_args.kwargs
        assert kwargs["tick"] == 1
        assert kwargs["window_close_time"] == CLOSE
        assert kwargs["opportunities_found"] == 1


class TestSettlement:
    def _filled_driver(self, resolution):
        driver, engine, ledger = _make_driver(resolution=resolution)
        driver.tick(NOW)
        return driver, engine, ledger

    def test_settles_after_resolution(self):
        resolution = MagicMock()
        resolution.get_resolution.return_value = {f"up-{START}": True, f"down-{START}": False}
        driver, engine, ledger = self._filled_driver(resolution)

        assert driver.settle_due(CLOSE - 1) == 0
        assert driver.settle_due(CLOSE + 5) == 1
        resolution.get_resolution.assert_called_with(f"cond-{START}")
        assert driver.records_written == 1
        assert driver.session_pnl == pytest.approx(0.3)
        ledger.append.assert_called_once()
        assert engine.open_positions() == []

    def test_unresolved_market_waits(self):
        resolution = MagicMock()
        resolution.get_resolution.return_value = None
        driver, engine, ledger = self._filled_driver(resolution)
        assert driver.settle_due(CLOSE + 5) == 0
        ledger.append.assert_not_called()
        assert len(engine.open_positions()) == 1

    def test_resolution_error_logged_and_skipped(self):
        resolution = MagicMock()
        resolution.get_resolution.side_effect = TransientIOError("timeout")
        driver, _, _ = self._filled_driver(resolution)
        assert driver.settle_due(CLOSE + 5) == 0

    def test_duplicate_record_not_counted(self):
        resolution = MagicMock()
        resolution.get_resolution.return_value = {f"up-{START}": True, f"down-{START}": False}
        driver, _, ledger = self._filled_driver(resolution)
        ledger.append.side_effect = DuplicateRecordError("exists")
        assert driver.settle_due(CLOSE + 5) == 0
        assert driver.records_written == 0


class TestLifecycle:
    def test_stop_before_run_still_shuts_down(self):
        checkpoint = MagicMock()
        driver, _, _ = _make_driver(checkpoint=checkpoint)
        driver.stop()
        driver.run()
        assert driver.stopping
        checkpoint.save_all.assert_called_once()
        driver.discover.assert_not_called()

    def test_stop_from_other_thread(self):
        driver, _, _ = _make_driver()
        driver.settings.poll_interval_seconds = 0.01
        timer = threading.Timer(0.05, driver.stop)
        timer.start()
        driver.run()
        timer.join()
        assert driver.stopping

    def test_shutdown_stops_stream(self):
        stream = MagicMock()
        stream.is_healthy.return_value = False
        driver, _, _ = _make_driver(stream=stream)
        driver.tick(NOW)
        stream.start.assert_called_once_with([f"down-{START}", f"up-{START}"])
        driver.shutdown()
        stream.stop.assert_called_once()

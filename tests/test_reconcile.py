"""
Unit tests for executor/reconcile.py -- restart reconciliation against the venue.
"""

from unittest.mock import MagicMock

import pytest

from client.paper import PaperVenue
from client.platform import OrderRequest, TransientIOError, VenueRejectionError
from executor.bankroll import BankrollState
from executor.engine import ExecutionEngine
from executor.order_state import OrderState
from executor.reconcile import reconcile_with_venue
from executor.sizing import SizedOrder
from scanner.models import ArbitrageOpportunity, CandidateLeg, Side

NOW = 1_700_000_100.0
CLOSE = 1_700_000_900.0


def _make_opp():
    legs = tuple(
        CandidateLeg(oid, "m1", Side.BUY, p, 50.0, p)
        for oid, p in (("up", 0.46), ("down", 0.52))
    )
    return ArbitrageOpportunity("btc-set", CLOSE, Side.BUY, 0.98, 0.02, legs, detected_at=NOW)


def _restarted(mutate=None):
    """Submit resting orders on a paper venue, then restore them into a fresh engine."""
    venue = PaperVenue(quote_lookup=lambda oid: None)
    before = ExecutionEngine(venue, BankrollState(100.0), clock=lambda: NOW)
    opp = _make_opp()
    before.submit(opp, [SizedOrder(opp.opportunity_id, i, 15.0, leg.limit_price, 0.02)
                        for i, leg in enumerate(opp.candidate_legs)], now=NOW)
    data = before.to_dict()
    if mutate is not None:
        mutate(data)
    after = ExecutionEngine(venue, BankrollState.from_dict(before.bankroll.to_dict()), clock=lambda: NOW)
    after.restore(data)
    return after, venue, opp


class TestReconcile:
    def test_clean_restart(self):
        engine, venue, opp = _restarted()
        report = reconcile_with_venue(engine, venue)
        assert report.clean
        assert sorted(report.still_open) == [f"{opp.opportunity_id}:0", f"{opp.opportunity_id}:1"]
        assert len(engine.live_orders()) == 2

    def test_order_gone_from_venue_is_finalized(self):
        engine, venue, opp = _restarted()
        leg0 = engine.get_order(f"{opp.opportunity_id}:0")
        venue.cancel(leg0.venue_order_id)

        report = reconcile_with_venue(engine, venue)
        assert report.finalized == [leg0.client_order_id]
        assert leg0.state is OrderState.CANCELLED
        assert not report.clean
        # The sibling was cancelled as part of the abort.
        assert engine.live_orders() == []

    def test_orphan_cancelled(self):
        engine, venue, _ = _restarted()
        stray = venue.submit(OrderRequest("someone-else", "m9", "x", Side.BUY, 0.3, 5.0))

        report = reconcile_with_venue(engine, venue)
        assert report.orphans_cancelled == [stray.venue_order_id]
        assert len(venue.get_open_orders()) == 2

    def test_pending_order_matched_by_client_id(self):
        def forget_ack(data):
            data["orders"][0]["venue_order_id"] = ""
            data["orders"][0]["state"] = "pending"

        engine, venue, opp = _restarted(forget_ack)
        report = reconcile_with_venue(engine, venue)
        assert report.clean
        order = engine.get_order(f"{opp.opportunity_id}:0")
        assert order.state is OrderState.OPEN
        assert order.venue_order_id.startswith("paper-")

    def test_unsent_order_cancelled_locally(self):
        def never_sent(data):
            data["orders"][0]["venue_order_id"] = ""
            data["orders"][0]["state"] = "pending"
            data["orders"][0]["client_order_id"] = "lost"
            data["positions"][0]["entry_order_ids"][0] = "lost"

        engine, venue, _ = _restarted(never_sent)
        report = reconcile_with_venue(engine, venue)
        assert report.cancelled_locally == ["lost"]
        assert engine.get_order("lost").state is OrderState.CANCELLED

    def test_query_failure_cancels_locally(self):
        engine, paper, opp = _restarted()
        venue = MagicMock()
        venue.get_open_orders.return_value = []
        venue.get_order.side_effect = VenueRejectionError("unknown order")
        venue.cancel.return_value = True

        report = reconcile_with_venue(engine, venue)
        assert f"{opp.opportunity_id}:0" in report.cancelled_locally
        assert engine.live_orders() == []

    def test_unreachable_venue_raises(self):
        engine, _, _ = _restarted()
        venue = MagicMock()
        venue.get_open_orders.side_effect = TransientIOError("timeout")
        with pytest.raises(TransientIOError):
            reconcile_with_venue(engine, venue)

    def test_report_to_dict(self):
        engine, venue, _ = _restarted()
        d = reconcile_with_venue(engine, venue).to_dict()
        assert set(d) == {"still_open", "finalized", "cancelled_locally", "orphans_cancelled", "orphans_failed"}

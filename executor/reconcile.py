"""
Startup reconciliation between restored engine state and the venue's open orders.

Runs once after a checkpoint restore and before the first tick:
  - tracked orders the venue still lists stay live, with fills brought current
  - tracked orders missing from the list are queried one by one and moved to
    their terminal state; if the query fails they are cancelled locally
  - venue orders the engine is not tracking as live (orphans) are cancelled
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from client.platform import TransientIOError, Venue, VenueOrderStatus, VenueRejectionError, VenueStatus
from executor.engine import ExecutionEngine, OrderUpdate, UpdateKind, updates_from_status

logger = logging.getLogger(__name__)


@dataclass
class ReconcileReport:
    still_open: list[str] = field(default_factory=list)
    finalized: list[str] = field(default_factory=list)
    cancelled_locally: list[str] = field(default_factory=list)
    orphans_cancelled: list[str] = field(default_factory=list)
    orphans_failed: list[str] = field(default_factory=list)

    @property
    def clean(self) -> bool:
        return not (self.finalized or self.cancelled_locally or self.orphans_cancelled or self.orphans_failed)

    def to_dict(self) -> dict:
        return {
            "still_open": list(self.still_open),
            "finalized": list(self.finalized),
            "cancelled_locally": list(self.cancelled_locally),
            "orphans_cancelled": list(self.orphans_cancelled),
            "orphans_failed": list(self.orphans_failed),
        }


def reconcile_with_venue(engine: ExecutionEngine, venue: Venue) -> ReconcileReport:
    """Bring restored engine state in line with the venue. Raises TransientIOError if the venue is unreachable."""
    report = ReconcileReport()
    venue_open = venue.get_open_orders()
    by_venue_id: dict[str, VenueOrderStatus] = {s.venue_order_id: s for s in venue_open}
    by_client_id: dict[str, VenueOrderStatus] = {
        s.client_order_id: s for s in venue_open if s.client_order_id
    }

    claimed: set[str] = set()
    for order in engine.live_orders():
        if not order.is_live:
            # Finalized earlier in this pass by a sibling's abort.
            claimed.add(order.venue_order_id)
            continue
        status = by_venue_id.get(order.venue_order_id) if order.venue_order_id else None
        if status is None and not order.venue_order_id:
            # Sent just before the crash: the ack may never have been recorded.
            status = by_client_id.get(order.client_order_id)

        if status is not None:
            claimed.add(status.venue_order_id)
            for update in updates_from_status(order, status):
                engine.apply_update(update)
            report.still_open.append(order.client_order_id)
            continue

        if not order.venue_order_id:
            engine.apply_update(OrderUpdate(
                order.client_order_id, UpdateKind.CANCEL, reason="not found at venue after restart",
            ))
            report.cancelled_locally.append(order.client_order_id)
            continue

        try:
            final = venue.get_order(order.venue_order_id)
        except (TransientIOError, VenueRejectionError) as e:
            logger.warning("Reconcile: %s unknown at venue (%s); cancelling locally", order.client_order_id, e)
            engine.apply_update(OrderUpdate(
                order.client_order_id, UpdateKind.CANCEL, reason=f"reconcile: {e}",
            ))
            report.cancelled_locally.append(order.client_order_id)
            continue

        if final.status is VenueStatus.OPEN:
            # Not in the open list but reported open: treat as gone.
            final = VenueOrderStatus(
                venue_order_id=final.venue_order_id or order.venue_order_id,
                status=VenueStatus.CANCELLED,
                filled_quantity=final.filled_quantity,
                client_order_id=order.client_order_id,
                reason="missing from venue open orders",
            )
        for update in updates_from_status(order, final):
            engine.apply_update(update)
        report.finalized.append(order.client_order_id)

    live_ids = {o.venue_order_id for o in engine.live_orders() if o.venue_order_id}
    for status in venue_open:
        vid = status.venue_order_id
        if vid in claimed or vid in live_ids:
            continue
        try:
            if venue.cancel(vid):
                report.orphans_cancelled.append(vid)
            else:
                report.orphans_failed.append(vid)
        except (TransientIOError, VenueRejectionError) as e:
            logger.error("Reconcile: cancel of orphan %s failed: %s", vid, e)
            report.orphans_failed.append(vid)

    level = logging.INFO if report.clean else logging.WARNING
    logger.log(
        level,
        "Reconcile: %d still open, %d finalized, %d cancelled locally, %d orphan(s) cancelled, %d orphan cancel(s) failed",
        len(report.still_open), len(report.finalized), len(report.cancelled_locally),
        len(report.orphans_cancelled), len(report.orphans_failed),
    )
    return report

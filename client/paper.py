"""
Simulated venue for dry runs. Implements the Venue protocol with a simple
fill model so the full execution state machine runs without real orders.

Fill model:
  - an order is marketable when its limit crosses the latest quote
    (buy limit >= ask, sell limit <= bid); without a quote feed every
    order counts as marketable
  - a marketable order fills fill_ratio of its remaining quantity each time
    the venue looks at it (on submit and on every query)
  - non-marketable orders rest open until cancelled
"""

from __future__ import annotations

import itertools
import logging
import threading
from dataclasses import dataclass
from typing import Callable

from client.platform import OrderRequest, VenueOrderStatus, VenueRejectionError, VenueStatus
from scanner.models import MarketQuote, Side

logger = logging.getLogger(__name__)

QuoteLookup = Callable[[str], "MarketQuote | None"]


@dataclass
class _PaperOrder:
    venue_order_id: str
    request: OrderRequest
    status: VenueStatus = VenueStatus.OPEN
    filled: float = 0.0


class PaperVenue:
    """In-memory venue. Idempotent on client_order_id."""

    def __init__(
        self,
        fill_ratio: float = 1.0,
        quote_lookup: QuoteLookup | None = None,
    ) -> None:
        if not 0.0 <= fill_ratio <= 1.0:
            raise ValueError(f"fill_ratio must be in [0, 1], got {fill_ratio}")
        self.fill_ratio = fill_ratio
        self._quote_lookup = quote_lookup
        self._lock = threading.Lock()
        self._orders: dict[str, _PaperOrder] = {}
        self._by_client_id: dict[str, str] = {}
        self._ids = itertools.count(1)

    @property
    def name(self) -> str:
        return "paper"

    def submit(self, request: OrderRequest) -> VenueOrderStatus:
        if request.quantity <= 0:
            raise VenueRejectionError(f"invalid size {request.quantity}", request.client_order_id)
        if not 0.0 < request.price < 1.0:
            raise VenueRejectionError(f"invalid price {request.price}", request.client_order_id)

        with self._lock:
            existing = self._by_client_id.get(request.client_order_id)
            if existing is not None:
                logger.debug("[PAPER] Duplicate submit for %s", request.client_order_id)
                return self._status(self._orders[existing])

            vid = f"paper-{next(self._ids)}"
            order = _PaperOrder(venue_order_id=vid, request=request)
            self._orders[vid] = order
            self._by_client_id[request.client_order_id] = vid
            self._try_fill(order)
            logger.info(
                "[PAPER] %s %s %.2f @ %.4f -> %s (filled %.2f)",
                request.side.value, request.outcome_id[:12], request.quantity,
                request.price, order.status.value, order.filled,
            )
            return self._status(order)

    def cancel(self, venue_order_id: str) -> bool:
        with self._lock:
            order = self._orders.get(venue_order_id)
            if order is None:
                return False
            if order.status is VenueStatus.OPEN:
                order.status = VenueStatus.CANCELLED
            return order.status is VenueStatus.CANCELLED

    def get_order(self, venue_order_id: str) -> VenueOrderStatus:
        with self._lock:
            order = self._orders.get(venue_order_id)
            if order is None:
                raise VenueRejectionError(f"unknown order {venue_order_id}")
            if order.status is VenueStatus.OPEN:
                self._try_fill(order)
            return self._status(order)

    def get_open_orders(self) -> list[VenueOrderStatus]:
        with self._lock:
            return [self._status(o) for o in self._orders.values() if o.status is VenueStatus.OPEN]

    def _marketable(self, request: OrderRequest) -> bool:
        if self._quote_lookup is None:
            return True
        quote = self._quote_lookup(request.outcome_id)
        if quote is None:
            return False
        if request.side is Side.BUY:
            return quote.ask_size > 0 and request.price >= quote.raw_ask
        return quote.bid_size > 0 and request.price <= quote.raw_bid

    def _try_fill(self, order: _PaperOrder) -> None:
        if not self._marketable(order.request):
            return
        remaining = order.request.quantity - order.filled
        order.filled += remaining * self.fill_ratio
        if order.request.quantity - order.filled <= 1e-9:
            order.filled = order.request.quantity
            order.status = VenueStatus.FILLED

    @staticmethod
    def _status(order: _PaperOrder) -> VenueOrderStatus:
        return VenueOrderStatus(
            venue_order_id=order.venue_order_id,
            status=order.status,
            filled_quantity=order.filled,
            client_order_id=order.request.client_order_id,
            outcome_id=order.request.outcome_id,
            quantity=order.request.quantity,
        )

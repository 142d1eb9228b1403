"""
Venue capability interfaces. The execution engine only talks to these, so
the order state machine stays venue-agnostic.

Any venue (the live CLOB, the paper simulator) that satisfies Venue can be
plugged into the engine. Quote and settlement sources are separate, narrower
protocols so a simulated venue can still read real market data.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Protocol, runtime_checkable

from scanner.models import OutcomeSpec, RawQuote, Side


class TransientIOError(Exception):
    """Network failure or timeout that survived the bounded retry policy."""


class VenueRejectionError(Exception):
    """Raised when the venue refuses an order (bad price, balance, closed market)."""

    def __init__(self, message: str, client_order_id: str = "") -> None:
        super().__init__(message)
        self.client_order_id = client_order_id


class VenueStatus(str, Enum):
    OPEN = "open"
    FILLED = "filled"
    CANCELLED = "cancelled"
    REJECTED = "rejected"


@dataclass(frozen=True)
class OrderRequest:
    client_order_id: str
    market_id: str
    outcome_id: str
    side: Side
    price: float
    quantity: float
    tick_size: str = "0.01"
    neg_risk: bool = False


@dataclass(frozen=True)
class VenueOrderStatus:
    """Venue view of one order: the submit acknowledgment and every later query."""

    venue_order_id: str
    status: VenueStatus
    filled_quantity: float = 0.0
    client_order_id: str = ""
    outcome_id: str = ""
    quantity: float = 0.0
    reason: str = ""


@runtime_checkable
class Venue(Protocol):
    """
    Minimal order-venue interface: submit, cancel, query.

    submit() and cancel() must be idempotent for a repeated client_order_id /
    venue_order_id.
    """

    @property
    def name(self) -> str:
        """Short identifier: 'clob', 'paper'."""
        ...

    def submit(self, request: OrderRequest) -> VenueOrderStatus:
        """Place an order. Raises VenueRejectionError if refused."""
        ...

    def cancel(self, venue_order_id: str) -> bool:
        """Cancel an order. True if the venue confirmed the cancel."""
        ...

    def get_order(self, venue_order_id: str) -> VenueOrderStatus:
        """Current status of one order."""
        ...

    def get_open_orders(self) -> list[VenueOrderStatus]:
        """Every order the venue still holds open for this account."""
        ...


@runtime_checkable
class QuoteSource(Protocol):
    def fetch_quotes(self, specs: list[OutcomeSpec], window_close_time: float) -> list[RawQuote]:
        """Top-of-book quotes for each outcome."""
        ...


@runtime_checkable
class SettlementSource(Protocol):
    def get_resolution(self, market_id: str) -> dict[str, bool] | None:
        """{outcome_id: won} once the market has resolved, None while open."""
        ...

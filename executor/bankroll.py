"""
Process-wide bankroll with a narrow, lock-guarded mutation API.

Capital moves through three buckets:
  cash           - capital not committed to filled positions
  reserved       - holds placed for live orders' unfilled quantity (part of cash)
  open_exposure  - cost basis of filled positions awaiting settlement
available = cash - reserved. Only the execution engine mutates this object;
the sizer reads it through snapshot().
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Iterable

logger = logging.getLogger(__name__)

_EPS = 1e-9


class InsufficientCapitalError(Exception):
    """Raised when a reservation exceeds the available capital."""


@dataclass(frozen=True)
class BankrollSnapshot:
    cash: float
    reserved: float
    open_exposure: float
    open_positions: dict[str, int] = field(default_factory=dict)

    @property
    def available(self) -> float:
        return max(0.0, self.cash - self.reserved)


class BankrollState:
    """Single serialization point for every capital movement."""

    def __init__(self, starting_capital: float = 0.0) -> None:
        self._lock = threading.Lock()
        self._cash = float(starting_capital)
        self._open_exposure = 0.0
        self._reservations: dict[str, float] = {}
        self._released: set[str] = set()
        self._open_positions: dict[str, int] = {}

    def snapshot(self) -> BankrollSnapshot:
        with self._lock:
            return BankrollSnapshot(
                cash=self._cash,
                reserved=sum(self._reservations.values()),
                open_exposure=self._open_exposure,
                open_positions=dict(self._open_positions),
            )

    @property
    def available(self) -> float:
        return self.snapshot().available

    # ── Reservations ──

    def reserve(self, order_id: str, amount: float) -> None:
        """Hold *amount* for a live order. Raises InsufficientCapitalError."""
        if amount < 0:
            raise ValueError(f"reservation must be non-negative, got {amount}")
        with self._lock:
            if order_id in self._reservations or order_id in self._released:
                raise ValueError(f"order {order_id} already has a reservation")
            available = self._cash - sum(self._reservations.values())
            if amount > available + _EPS:
                raise InsufficientCapitalError(
                    f"reserve ${amount:.2f} for {order_id} exceeds available ${available:.2f}"
                )
            self._reservations[order_id] = amount
        logger.debug("Reserved $%.4f for %s", amount, order_id)

    def apply_fill(self, order_id: str, amount: float) -> None:
        """A confirmed fill: cash becomes open exposure, the hold shrinks by the same amount."""
        with self._lock:
            held = self._reservations.get(order_id, 0.0)
            self._reservations[order_id] = max(0.0, held - amount)
            self._cash -= amount
            self._open_exposure += amount
        logger.debug("Fill applied for %s: $%.4f to exposure", order_id, amount)

    def release(self, order_id: str) -> float:
        """
        Release what is left of an order's hold. Exactly once per order:
        a second call changes nothing and returns 0.
        """
        with self._lock:
            if order_id in self._released:
                logger.error("Duplicate release for %s ignored", order_id)
                return 0.0
            self._released.add(order_id)
            remaining = self._reservations.pop(order_id, 0.0)
        logger.debug("Released $%.4f hold for %s", remaining, order_id)
        return remaining

    def forget(self, order_ids: Iterable[str]) -> int:
        """Drop release markers for orders whose position has resolved. Live holds are kept."""
        dropped = 0
        with self._lock:
            for order_id in order_ids:
                if order_id in self._released:
                    self._released.discard(order_id)
                    dropped += 1
        return dropped

    def is_released(self, order_id: str) -> bool:
        with self._lock:
            return order_id in self._released

    # ── Positions ──

    def close_exposure(self, cost_basis: float, proceeds: float) -> None:
        """Retire *cost_basis* of open exposure and credit *proceeds* to cash."""
        with self._lock:
            if cost_basis > self._open_exposure + _EPS:
                logger.warning(
                    "Closing $%.4f exceeds open exposure $%.4f; clamping",
                    cost_basis, self._open_exposure,
                )
            self._open_exposure = max(0.0, self._open_exposure - cost_basis)
            self._cash += proceeds

    def try_open_position(self, set_id: str, limit: int) -> bool:
        """Count a new position on *set_id* unless *limit* is already reached."""
        with self._lock:
            count = self._open_positions.get(set_id, 0)
            if count >= limit:
                return False
            self._open_positions[set_id] = count + 1
            return True

    def resolve_position(self, set_id: str) -> None:
        with self._lock:
            count = self._open_positions.get(set_id, 0)
            if count <= 1:
                self._open_positions.pop(set_id, None)
            else:
                self._open_positions[set_id] = count - 1

    # ── Persistence ──

    def to_dict(self) -> dict:
        with self._lock:
            return {
                "cash": self._cash,
                "open_exposure": self._open_exposure,
                "reservations": dict(self._reservations),
                "released": sorted(self._released),
                "open_positions": dict(self._open_positions),
            }

    @classmethod
    def from_dict(cls, data: dict) -> BankrollState:
        state = cls(starting_capital=float(data.get("cash", 0.0)))
        state._open_exposure = float(data.get("open_exposure", 0.0))
        state._reservations = {k: float(v) for k, v in data.get("reservations", {}).items()}
        state._released = set(data.get("released", []))
        state._open_positions = {k: int(v) for k, v in data.get("open_positions", {}).items()}
        return state

"""
Position sizing against a bounded per-trade risk ceiling.

quantity = min(venue size across legs, ceiling / capital_per_set), floored to
the venue's minimum tradable unit. Every leg of one opportunity trades the
same quantity so the covering combination stays balanced.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass

from executor.bankroll import BankrollSnapshot
from scanner.models import ArbitrageOpportunity

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SizedOrder:
    opportunity_id: str
    leg_index: int
    quantity: float
    limit_price: float
    max_slippage: float


def floor_to_unit(quantity: float, unit: float) -> float:
    """Round *quantity* down to a whole multiple of *unit*."""
    if unit <= 0:
        raise ValueError(f"unit must be positive, got {unit}")
    if quantity <= 0:
        return 0.0
    return math.floor(quantity / unit) * unit


class PositionSizer:
    """Turns an opportunity into zero or more SizedOrders. Never touches the bankroll."""

    def __init__(
        self,
        per_trade_risk_ceiling: float,
        risk_ceiling_is_fraction: bool = False,
        min_trade_amount: float = 1.0,
        min_tradable_unit: float = 1.0,
        max_slippage: float = 0.02,
        max_concurrent_positions_per_market_set: int = 1,
    ) -> None:
        if risk_ceiling_is_fraction and not 0 < per_trade_risk_ceiling <= 1:
            raise ValueError(
                f"fractional risk ceiling must be in (0, 1], got {per_trade_risk_ceiling}"
            )
        self.per_trade_risk_ceiling = per_trade_risk_ceiling
        self.risk_ceiling_is_fraction = risk_ceiling_is_fraction
        self.min_trade_amount = min_trade_amount
        self.min_tradable_unit = min_tradable_unit
        self.max_slippage = max_slippage
        self.max_concurrent = max_concurrent_positions_per_market_set
        self.last_skip_reason = ""

    def ceiling_for(self, snapshot: BankrollSnapshot) -> float:
        """Capital the next trade may commit, never more than what is available."""
        if self.risk_ceiling_is_fraction:
            ceiling = self.per_trade_risk_ceiling * snapshot.available
        else:
            ceiling = self.per_trade_risk_ceiling
        return max(0.0, min(ceiling, snapshot.available))

    def size(
        self,
        opportunity: ArbitrageOpportunity,
        snapshot: BankrollSnapshot,
    ) -> list[SizedOrder]:
        """Return one SizedOrder per leg, or [] with last_skip_reason set."""
        self.last_skip_reason = ""
        set_id = opportunity.linked_set_id

        if snapshot.available < self.min_trade_amount:
            return self._skip(
                f"available ${snapshot.available:.2f} below minimum trade ${self.min_trade_amount:.2f}"
            )

        open_count = snapshot.open_positions.get(set_id, 0)
        if open_count >= self.max_concurrent:
            return self._skip(f"{set_id} already has {open_count} unresolved position(s)")

        capital_per_set = opportunity.capital_per_set
        if capital_per_set <= 0:
            return self._skip(f"non-positive capital per set {capital_per_set:.4f}")

        ceiling = self.ceiling_for(snapshot)
        by_risk = ceiling / capital_per_set
        by_venue = opportunity.max_venue_size
        quantity = floor_to_unit(min(by_venue, by_risk), self.min_tradable_unit)
        # Guard against float error pushing committed capital past the ceiling.
        if quantity * capital_per_set > ceiling:
            quantity = max(0.0, quantity - self.min_tradable_unit)

        if quantity <= 0:
            return self._skip(
                f"quantity rounds to zero (venue={by_venue:.2f} risk={by_risk:.2f} "
                f"unit={self.min_tradable_unit})"
            )

        committed = quantity * capital_per_set
        logger.info(
            "Sizing: %s qty=%.2f (venue=%.2f risk=%.2f) committed=$%.2f ceiling=$%.2f",
            set_id, quantity, by_venue, by_risk, committed, ceiling,
        )
        return [
            SizedOrder(
                opportunity_id=opportunity.opportunity_id,
                leg_index=i,
                quantity=quantity,
                limit_price=leg.limit_price,
                max_slippage=self.max_slippage,
            )
            for i, leg in enumerate(opportunity.candidate_legs)
        ]

    def _skip(self, reason: str) -> list[SizedOrder]:
        self.last_skip_reason = reason
        logger.info("Sizing skipped: %s", reason)
        return []

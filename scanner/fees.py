"""
Taker fee schedule for 15-minute crypto up/down markets.

Fee types:
- Dynamic: highest (~3.15%) at 50/50 odds, drops parabolically toward 0% at
  extreme odds. Applied by the venue on 15-min crypto markets.
- Flat: a fixed taker rate, for venues or markets without the dynamic curve.

Effective prices fold the fee into the quote so that the detector compares
post-fee costs:
  buy:  ask * (1 + rate(ask))
  sell: bid * (1 - rate(bid))
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

logger = logging.getLogger(__name__)

# Max dynamic fee rate at 50/50 odds for crypto 15-min markets
MAX_CRYPTO_FEE_RATE = 0.0315  # 3.15%


@dataclass(frozen=True)
class FeeSchedule:
    """Per-trade taker fee as a function of trade price."""

    enabled: bool = True
    dynamic: bool = True
    max_rate: float = MAX_CRYPTO_FEE_RATE
    flat_rate: float = 0.0

    @classmethod
    def zero(cls) -> FeeSchedule:
        return cls(enabled=False)

    def taker_rate(self, price: float) -> float:
        """
        Return the taker fee rate for a trade at *price*.
        Formula (dynamic): rate = max_rate * 4 * price * (1 - price)
        At price=0.50: 0.0315 * 4 * 0.5 * 0.5 = 0.0315
        At price=0.10: 0.0315 * 4 * 0.1 * 0.9 = 0.01134
        """
        if not self.enabled:
            return 0.0
        if self.dynamic:
            p = max(0.0, min(1.0, price))
            return self.max_rate * 4.0 * p * (1.0 - p)
        return self.flat_rate

    def effective_ask(self, ask: float) -> float:
        """Cost of buying one unit at *ask*, fee included. Capped at 1.0."""
        return min(1.0, ask * (1.0 + self.taker_rate(ask)))

    def effective_bid(self, bid: float) -> float:
        """Proceeds of selling one unit at *bid*, fee deducted."""
        return max(0.0, bid * (1.0 - self.taker_rate(bid)))

    def fee_per_unit(self, price: float) -> float:
        return price * self.taker_rate(price)

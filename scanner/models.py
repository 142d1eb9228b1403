"""
Data models for the up/down arbitrage engine. Pure data, no behavior.
"""

from __future__ import annotations

import time
from enum import Enum
from dataclasses import dataclass, field


class Side(Enum):
    BUY = "BUY"
    SELL = "SELL"

    @property
    def opposite(self) -> Side:
        return Side.SELL if self is Side.BUY else Side.BUY


class Direction(Enum):
    UP = "UP"
    DOWN = "DOWN"


class SetKind(Enum):
    # One market's UP + DOWN: mutually exclusive and exhaustive.
    COMPLEMENTARY = "complementary"
    # ETH leg + opposite-direction BTC leg: positive expectancy only.
    CROSS_ASSET = "cross_asset"


@dataclass(frozen=True)
class UpDownMarket:
    """A single 15-minute "Up or Down" market for one asset."""

    condition_id: str
    asset: str
    slug: str
    up_token_id: str
    down_token_id: str
    window_start: float
    window_close_time: float
    tick_size: str = "0.01"
    neg_risk: bool = False

    def token_for(self, direction: Direction) -> str:
        return self.up_token_id if direction is Direction.UP else self.down_token_id


@dataclass(frozen=True)
class OutcomeSpec:
    """One member of a linked set: a specific outcome token of a specific market."""

    market_id: str
    outcome_id: str
    asset: str
    direction: Direction
    tick_size: str = "0.01"

    @property
    def label(self) -> str:
        return f"{self.asset.upper()}-{self.direction.value}"


@dataclass(frozen=True)
class LinkedMarketSet:
    set_id: str
    window_close_time: float
    members: tuple[OutcomeSpec, ...]
    kind: SetKind = SetKind.COMPLEMENTARY

    @property
    def outcome_ids(self) -> list[str]:
        return [m.outcome_id for m in self.members]

    @property
    def market_ids(self) -> list[str]:
        return sorted({m.market_id for m in self.members})


@dataclass(frozen=True)
class RawQuote:
    """Top of book as the venue reports it. Missing sides are None."""

    market_id: str
    outcome_id: str
    bid: float | None
    ask: float | None
    bid_size: float
    ask_size: float
    timestamp: float
    window_close_time: float


@dataclass(frozen=True)
class MarketQuote:
    """Normalized, fee-inclusive quote. best_* are effective prices, raw_* venue prices."""

    market_id: str
    outcome_id: str
    best_bid: float
    best_ask: float
    bid_size: float
    ask_size: float
    timestamp: float
    window_close_time: float
    raw_bid: float = 0.0
    raw_ask: float = 1.0


@dataclass(frozen=True)
class CandidateLeg:
    outcome_id: str
    market_id: str
    side: Side
    limit_price: float
    venue_size: float
    effective_price: float
    tick_size: str = "0.01"

    @property
    def capital_per_unit(self) -> float:
        """Capital locked per unit: the price paid, or the collateral net of proceeds for a sell."""
        if self.side is Side.BUY:
            return self.effective_price
        return 1.0 - self.effective_price


@dataclass(frozen=True)
class ArbitrageOpportunity:
    linked_set_id: str
    window_close_time: float
    direction: Side
    implied_cost: float
    theoretical_edge: float
    candidate_legs: tuple[CandidateLeg, ...]
    risk_free: bool = True
    detected_at: float = field(default_factory=time.time)

    @property
    def opportunity_id(self) -> str:
        return f"{self.linked_set_id}:{self.direction.value.lower()}:{int(self.detected_at * 1000)}"

    @property
    def capital_per_set(self) -> float:
        return sum(leg.capital_per_unit for leg in self.candidate_legs)

    @property
    def max_venue_size(self) -> float:
        return min((leg.venue_size for leg in self.candidate_legs), default=0.0)


@dataclass(frozen=True)
class PerformanceRecord:
    """Outcome of one opportunity in one settlement window. Immutable once written."""

    window_close_time: float
    opportunity_id: str
    realized_pnl: float
    fees_paid: float
    outcome_settled: bool
    linked_set_id: str = ""
    entry_cost: float = 0.0
    payout: float = 0.0
    recorded_at: float = field(default_factory=time.time)

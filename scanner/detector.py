"""
Arbitrage detector for linked up/down market sets.

Complementary sets (one market's UP + DOWN, or any N exhaustive outcomes):
  buy arb  when sum(ask) < 1 - margin
  sell arb when sum(bid) > 1 + margin
Cross-asset sets (ETH-UP + BTC-DOWN, ETH-DOWN + BTC-UP): buy side only, and
flagged as positive expectancy rather than risk-free.

Comparisons are strict: an edge exactly at the margin is no opportunity.
All prices are the fee-inclusive prices produced by the normalizer.
"""

from __future__ import annotations

import logging
import time

from scanner.models import (
    ArbitrageOpportunity,
    CandidateLeg,
    LinkedMarketSet,
    MarketQuote,
    SetKind,
    Side,
)

logger = logging.getLogger(__name__)

# Sums are rounded before comparison so float noise never flips a boundary case.
_PRECISION = 9


class ArbitrageDetector:
    """Stateless check of one linked set against its latest normalized quotes."""

    def __init__(
        self,
        min_edge_margin: float,
        sync_window_ms: float,
        cross_asset_min_leg_price: float = 0.6,
    ) -> None:
        self.min_edge_margin = min_edge_margin
        self.sync_window_ms = sync_window_ms
        self.cross_asset_min_leg_price = cross_asset_min_leg_price

    def detect(
        self,
        linked_set: LinkedMarketSet,
        quotes: dict[str, MarketQuote],
        now: float | None = None,
    ) -> list[ArbitrageOpportunity]:
        """Return the opportunities present in *quotes* for *linked_set* (possibly empty)."""
        if now is None:
            now = time.time()

        members = self._collect(linked_set, quotes)
        if members is None:
            return []

        stamps = [q.timestamp for q in members]
        spread_ms = (max(stamps) - min(stamps)) * 1000.0
        if spread_ms > self.sync_window_ms:
            logger.info(
                "Skip %s: quotes out of sync by %.0fms (max %.0fms)",
                linked_set.set_id, spread_ms, self.sync_window_ms,
            )
            return []

        if now >= linked_set.window_close_time:
            logger.debug("Skip %s: window already closed", linked_set.set_id)
            return []

        opps: list[ArbitrageOpportunity] = []
        buy = self._check_buy(linked_set, members, now)
        if buy is not None:
            opps.append(buy)
        if linked_set.kind is SetKind.COMPLEMENTARY:
            sell = self._check_sell(linked_set, members, now)
            if sell is not None:
                opps.append(sell)
        return opps

    def _collect(
        self, linked_set: LinkedMarketSet, quotes: dict[str, MarketQuote],
    ) -> list[MarketQuote] | None:
        members: list[MarketQuote] = []
        for spec in linked_set.members:
            q = quotes.get(spec.outcome_id)
            if q is None:
                logger.debug("Skip %s: no quote for %s", linked_set.set_id, spec.label)
                return None
            if q.window_close_time != linked_set.window_close_time:
                logger.warning(
                    "Skip %s: %s quote belongs to window %.0f, set is %.0f",
                    linked_set.set_id, spec.label, q.window_close_time, linked_set.window_close_time,
                )
                return None
            members.append(q)
        return members

    def _check_buy(
        self,
        linked_set: LinkedMarketSet,
        members: list[MarketQuote],
        now: float,
    ) -> ArbitrageOpportunity | None:
        """
        Buying one of each outcome costs sum(ask) and pays at least $1.00 at
        settlement for a complementary set.
        """
        if any(q.ask_size <= 0 for q in members):
            return None

        if linked_set.kind is SetKind.CROSS_ASSET and all(
            q.raw_ask < self.cross_asset_min_leg_price for q in members
        ):
            logger.debug(
                "Skip %s: every leg below %.2f",
                linked_set.set_id, self.cross_asset_min_leg_price,
            )
            return None

        implied_cost = round(sum(q.best_ask for q in members), _PRECISION)
        threshold = round(1.0 - self.min_edge_margin, _PRECISION)
        if not implied_cost < threshold:
            return None

        legs = tuple(
            CandidateLeg(
                outcome_id=q.outcome_id,
                market_id=q.market_id,
                side=Side.BUY,
                limit_price=q.raw_ask,
                venue_size=q.ask_size,
                effective_price=q.best_ask,
                tick_size=spec.tick_size,
            )
            for spec, q in zip(linked_set.members, members)
        )
        edge = round(1.0 - implied_cost, _PRECISION)
        risk_free = linked_set.kind is SetKind.COMPLEMENTARY

        logger.info(
            "%s BUY ARB: %s | cost=%.4f edge=%.4f size=%.1f",
            "RISK-FREE" if risk_free else "CROSS-ASSET",
            linked_set.set_id, implied_cost, edge, min(q.ask_size for q in members),
        )
        return ArbitrageOpportunity(
            linked_set_id=linked_set.set_id,
            window_close_time=linked_set.window_close_time,
            direction=Side.BUY,
            implied_cost=implied_cost,
            theoretical_edge=edge,
            candidate_legs=legs,
            risk_free=risk_free,
            detected_at=now,
        )

    def _check_sell(
        self,
        linked_set: LinkedMarketSet,
        members: list[MarketQuote],
        now: float,
    ) -> ArbitrageOpportunity | None:
        """
        Selling one of each outcome collects sum(bid) and owes exactly $1.00
        at settlement.
        """
        if any(q.bid_size <= 0 for q in members):
            return None

        proceeds = round(sum(q.best_bid for q in members), _PRECISION)
        threshold = round(1.0 + self.min_edge_margin, _PRECISION)
        if not proceeds > threshold:
            return None

        legs = tuple(
            CandidateLeg(
                outcome_id=q.outcome_id,
                market_id=q.market_id,
                side=Side.SELL,
                limit_price=q.raw_bid,
                venue_size=q.bid_size,
                effective_price=q.best_bid,
                tick_size=spec.tick_size,
            )
            for spec, q in zip(linked_set.members, members)
        )
        edge = round(proceeds - 1.0, _PRECISION)

        logger.info(
            "RISK-FREE SELL ARB: %s | proceeds=%.4f edge=%.4f size=%.1f",
            linked_set.set_id, proceeds, edge, min(q.bid_size for q in members),
        )
        return ArbitrageOpportunity(
            linked_set_id=linked_set.set_id,
            window_close_time=linked_set.window_close_time,
            direction=Side.SELL,
            implied_cost=proceeds,
            theoretical_edge=edge,
            candidate_legs=legs,
            risk_free=True,
            detected_at=now,
        )

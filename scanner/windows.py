"""
Settlement window arithmetic and linked-set construction.

Windows are aligned to the epoch: a 15-minute window starts at
floor(now / 900) * 900 and closes 900 seconds later. Each window has one
"Up or Down" market per asset, addressed by slug.
"""

from __future__ import annotations

import logging
import time

from scanner.models import Direction, LinkedMarketSet, OutcomeSpec, SetKind, UpDownMarket

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_MINUTES = 15


def window_period(duration_minutes: int = DEFAULT_WINDOW_MINUTES) -> int:
    return int(duration_minutes * 60)


def window_start(now: float, duration_minutes: int = DEFAULT_WINDOW_MINUTES) -> int:
    period = window_period(duration_minutes)
    return (int(now) // period) * period


def window_close(now: float, duration_minutes: int = DEFAULT_WINDOW_MINUTES) -> int:
    return window_start(now, duration_minutes) + window_period(duration_minutes)


def market_slug(asset: str, start: int, duration_minutes: int = DEFAULT_WINDOW_MINUTES) -> str:
    """Slug of an asset's up/down market for the window starting at *start*."""
    return f"{asset.lower()}-updown-{duration_minutes}m-{start}"


def _spec(market: UpDownMarket, direction: Direction) -> OutcomeSpec:
    return OutcomeSpec(
        market_id=market.condition_id,
        outcome_id=market.token_for(direction),
        asset=market.asset,
        direction=direction,
        tick_size=market.tick_size,
    )


def build_linked_sets(
    markets: dict[str, UpDownMarket],
    cross_asset_enabled: bool = True,
) -> list[LinkedMarketSet]:
    """
    Build the linked sets for one window from {asset: market}.

    Every market yields a complementary UP/DOWN set. With both ETH and BTC
    present and cross-asset enabled, the two cross pairs are added:
    ETH-UP + BTC-DOWN and ETH-DOWN + BTC-UP.
    """
    sets: list[LinkedMarketSet] = []
    closes = {m.window_close_time for m in markets.values()}
    if len(closes) > 1:
        raise ValueError(f"Markets span several windows: {sorted(closes)}")

    for asset in sorted(markets):
        m = markets[asset]
        sets.append(LinkedMarketSet(
            set_id=m.slug,
            window_close_time=m.window_close_time,
            members=(_spec(m, Direction.UP), _spec(m, Direction.DOWN)),
            kind=SetKind.COMPLEMENTARY,
        ))

    eth, btc = markets.get("eth"), markets.get("btc")
    if cross_asset_enabled and eth is not None and btc is not None:
        start = int(eth.window_start)
        for eth_dir, btc_dir in ((Direction.UP, Direction.DOWN), (Direction.DOWN, Direction.UP)):
            sets.append(LinkedMarketSet(
                set_id=f"eth-{eth_dir.value.lower()}+btc-{btc_dir.value.lower()}-{start}",
                window_close_time=eth.window_close_time,
                members=(_spec(eth, eth_dir), _spec(btc, btc_dir)),
                kind=SetKind.CROSS_ASSET,
            ))
    return sets


class WindowTracker:
    """Tracks the current window and reports when a rollover is due."""

    def __init__(self, duration_minutes: int = DEFAULT_WINDOW_MINUTES) -> None:
        self.duration_minutes = duration_minutes
        self.current_start: int | None = None

    @property
    def current_close(self) -> int | None:
        if self.current_start is None:
            return None
        return self.current_start + window_period(self.duration_minutes)

    def should_roll(self, now: float | None = None) -> bool:
        if now is None:
            now = time.time()
        return window_start(now, self.duration_minutes) != self.current_start

    def roll(self, now: float | None = None) -> int:
        if now is None:
            now = time.time()
        previous = self.current_start
        self.current_start = window_start(now, self.duration_minutes)
        logger.info(
            "Window rollover: %s -> %d (closes %d)",
            previous, self.current_start, self.current_close,
        )
        return self.current_start

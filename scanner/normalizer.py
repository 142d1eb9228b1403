"""
Snapshot normalizer. Converts raw venue quotes into fee-inclusive MarketQuotes.

Rejects quotes at the ingestion boundary:
  - StaleQuoteError: quote older than the configured max age
  - InvalidPriceError: NaN/Inf, outside [0, 1], negative size, or crossed book
Rejected quotes are discarded, never propagated to the detector.
"""

from __future__ import annotations

import logging
import math
import time

from scanner.fees import FeeSchedule
from scanner.models import MarketQuote, RawQuote

logger = logging.getLogger(__name__)

DEFAULT_MAX_AGE_MS = 2000.0


class StaleQuoteError(Exception):
    """Raised when a quote's source timestamp is older than the allowed max age."""


class InvalidPriceError(ValueError):
    """Raised when a quote carries prices outside [0, 1] or a crossed book."""


def _check_price(p: float, context: str) -> float:
    if math.isnan(p) or math.isinf(p):
        raise InvalidPriceError(f"Invalid {context}: {p}")
    if p < 0.0 or p > 1.0:
        raise InvalidPriceError(f"Invalid {context}: {p} out of range [0.0, 1.0]")
    return p


def _check_size(s: float, context: str) -> float:
    if math.isnan(s) or math.isinf(s) or s < 0.0:
        raise InvalidPriceError(f"Invalid {context}: {s}")
    return s


def normalize_quote(
    raw: RawQuote,
    fees: FeeSchedule,
    now: float | None = None,
    max_age_ms: float = DEFAULT_MAX_AGE_MS,
) -> MarketQuote:
    """
    Validate *raw* and fold taker fees into its prices.

    A missing ask normalizes to 1.0 with zero size (nothing to buy), a missing
    bid to 0.0 with zero size (nothing to sell into).

    Raises:
        StaleQuoteError: now - raw.timestamp exceeds max_age_ms.
        InvalidPriceError: bad price or size, or bid > ask.
    """
    if now is None:
        now = time.time()

    age_ms = (now - raw.timestamp) * 1000.0
    if age_ms > max_age_ms:
        raise StaleQuoteError(
            f"Quote for {raw.outcome_id} is {age_ms:.0f}ms old (max {max_age_ms:.0f}ms)"
        )

    raw_bid = _check_price(raw.bid, "bid") if raw.bid is not None else 0.0
    raw_ask = _check_price(raw.ask, "ask") if raw.ask is not None else 1.0
    bid_size = _check_size(raw.bid_size, "bid_size") if raw.bid is not None else 0.0
    ask_size = _check_size(raw.ask_size, "ask_size") if raw.ask is not None else 0.0

    if raw_bid > raw_ask:
        raise InvalidPriceError(
            f"Crossed book for {raw.outcome_id}: bid {raw_bid} > ask {raw_ask}"
        )

    best_ask = fees.effective_ask(raw_ask) if raw.ask is not None else 1.0
    best_bid = fees.effective_bid(raw_bid) if raw.bid is not None else 0.0

    return MarketQuote(
        market_id=raw.market_id,
        outcome_id=raw.outcome_id,
        best_bid=best_bid,
        best_ask=best_ask,
        bid_size=bid_size,
        ask_size=ask_size,
        timestamp=raw.timestamp,
        window_close_time=raw.window_close_time,
        raw_bid=raw_bid,
        raw_ask=raw_ask,
    )


def normalize_all(
    raws: list[RawQuote],
    fees: FeeSchedule,
    now: float | None = None,
    max_age_ms: float = DEFAULT_MAX_AGE_MS,
) -> tuple[dict[str, MarketQuote], list[str]]:
    """
    Normalize a batch. Returns ({outcome_id: quote}, [skip reasons]).
    A rejected quote is logged and left out of the result.
    """
    quotes: dict[str, MarketQuote] = {}
    skipped: list[str] = []
    for raw in raws:
        try:
            quotes[raw.outcome_id] = normalize_quote(raw, fees, now=now, max_age_ms=max_age_ms)
        except (StaleQuoteError, InvalidPriceError) as e:
            logger.info("Quote discarded: %s", e)
            skipped.append(str(e))
    return quotes, skipped

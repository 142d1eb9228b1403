"""
Gamma API client for up/down market discovery and settlement results.
Pure REST over httpx, no SDK dependency.
"""

from __future__ import annotations

import json
import logging
import threading
import time

import httpx

from client.platform import TransientIOError
from scanner.models import UpDownMarket
from scanner.windows import DEFAULT_WINDOW_MINUTES, market_slug, window_period

logger = logging.getLogger(__name__)

_TIMEOUT = 30.0
_MAX_RETRIES = 3
_RETRY_BACKOFF_SEC = 1.0

_UP_NAMES = ("UP", "1", "YES")
_DOWN_NAMES = ("DOWN", "0", "NO")


def _get(
    base_url: str,
    path: str,
    params: dict | None = None,
    max_retries: int = _MAX_RETRIES,
    backoff_sec: float = _RETRY_BACKOFF_SEC,
) -> dict | list:
    """GET with bounded retries on transport errors. Raises on non-200."""
    url = f"{base_url}{path}"
    for attempt in range(max_retries):
        try:
            resp = httpx.get(url, params=params, timeout=_TIMEOUT)
        except httpx.TransportError as exc:
            if attempt == max_retries - 1:
                raise TransientIOError(f"GET {path} failed after {max_retries} attempts: {exc}") from exc
            wait = backoff_sec * (2 ** attempt)
            logger.debug("Gamma retry %d/%d after %.1fs: %s", attempt + 1, max_retries, wait, exc)
            time.sleep(wait)
            continue
        resp.raise_for_status()
        return resp.json()
    raise TransientIOError(f"GET {path} not attempted (max_retries={max_retries})")


def _json_list(value) -> list:
    """Gamma returns some list fields as JSON-encoded strings."""
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except (json.JSONDecodeError, TypeError):
            return []
    return list(value) if isinstance(value, (list, tuple)) else []


def parse_updown_market(
    raw: dict,
    asset: str,
    window_start: int,
    duration_minutes: int = DEFAULT_WINDOW_MINUTES,
) -> UpDownMarket | None:
    """Map a Gamma market payload to UpDownMarket. None if outcomes are unrecognized."""
    token_ids = [str(t) for t in _json_list(raw.get("clobTokenIds") or raw.get("clob_token_ids"))]
    outcomes = [str(o).strip().upper() for o in _json_list(raw.get("outcomes"))]
    if len(token_ids) < 2 or len(outcomes) != len(token_ids):
        return None

    up = down = ""
    for name, token in zip(outcomes, token_ids):
        if name in _UP_NAMES:
            up = token
        elif name in _DOWN_NAMES:
            down = token
    if not up or not down:
        logger.warning("Unrecognized outcomes %s for %s", outcomes, raw.get("slug"))
        return None

    tick_raw = raw.get("orderPriceMinTickSize") or raw.get("minimumTickSize") or "0.01"
    return UpDownMarket(
        condition_id=str(raw.get("conditionId", raw.get("condition_id", ""))),
        asset=asset.lower(),
        slug=str(raw.get("slug") or market_slug(asset, window_start, duration_minutes)),
        up_token_id=up,
        down_token_id=down,
        window_start=float(window_start),
        window_close_time=float(window_start + window_period(duration_minutes)),
        tick_size=str(tick_raw),
        neg_risk=bool(raw.get("negRisk", raw.get("neg_risk", False))),
    )


def find_updown_market(
    gamma_host: str,
    asset: str,
    window_start: int,
    duration_minutes: int = DEFAULT_WINDOW_MINUTES,
) -> UpDownMarket | None:
    """Look up one asset's up/down market for the window starting at *window_start*."""
    slug = market_slug(asset, window_start, duration_minutes)
    rows = _get(gamma_host, "/markets", {"slug": slug})
    rows = rows if isinstance(rows, list) else [rows]
    for raw in rows:
        market = parse_updown_market(raw, asset, window_start, duration_minutes)
        if market is not None:
            logger.info("Discovered %s (%s)", market.slug, market.condition_id[:16])
            return market
    logger.warning("No up/down market found for slug %s", slug)
    return None


def discover_window_markets(
    gamma_host: str,
    assets: list[str],
    window_start: int,
    duration_minutes: int = DEFAULT_WINDOW_MINUTES,
) -> dict[str, UpDownMarket]:
    """{asset: market} for every asset whose market exists this window."""
    found: dict[str, UpDownMarket] = {}
    for asset in assets:
        market = find_updown_market(gamma_host, asset, window_start, duration_minutes)
        if market is not None:
            found[asset.lower()] = market
    return found


def resolution_from_payload(raw: dict) -> dict[str, bool] | None:
    """{token_id: won} for a closed market, None while it is still open."""
    if not raw.get("closed"):
        return None
    token_ids = [str(t) for t in _json_list(raw.get("clobTokenIds"))]
    prices = _json_list(raw.get("outcomePrices"))
    if len(token_ids) != len(prices) or not token_ids:
        return None
    try:
        values = [float(p) for p in prices]
    except (TypeError, ValueError):
        return None
    # Closed but not yet finalized: prices still between 0 and 1.
    if not any(v >= 0.99 for v in values):
        return None
    return {tid: v >= 0.99 for tid, v in zip(token_ids, values)}


class GammaResolutionSource:
    """
    Settlement results by condition id. Closed markets are cached forever,
    open ones for cache_sec to limit polling.
    """

    def __init__(self, gamma_host: str, cache_sec: float = 60.0) -> None:
        self._host = gamma_host
        self._cache_sec = cache_sec
        self._lock = threading.Lock()
        self._cache: dict[str, tuple[dict[str, bool] | None, float]] = {}

    def get_resolution(self, market_id: str) -> dict[str, bool] | None:
        now = time.monotonic()
        with self._lock:
            cached = self._cache.get(market_id)
        if cached is not None:
            result, fetched_at = cached
            if result is not None or now - fetched_at < self._cache_sec:
                return result

        rows = _get(self._host, "/markets", {"condition_ids": market_id})
        rows = rows if isinstance(rows, list) else [rows]
        result = resolution_from_payload(rows[0]) if rows else None
        with self._lock:
            self._cache[market_id] = (result, now)
        if result is not None:
            logger.info("Market %s resolved: %s", market_id[:16], result)
        return result

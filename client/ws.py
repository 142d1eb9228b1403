"""
Push quote feed over the market WebSocket. Fail-fast: raises after max retries.

MarketFeed is the async listener; QuoteStream runs it on its own event loop
in a daemon thread and keeps the latest top of book per token for the
synchronous driver.
"""

from __future__ import annotations

import asyncio
import json
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable

import websockets
from websockets.asyncio.client import connect

from scanner.models import OutcomeSpec, RawQuote

logger = logging.getLogger(__name__)

MAX_RETRIES = 5
BACKOFF_BASE = 1.0  # seconds
BACKOFF_MAX = 30.0


@dataclass(frozen=True)
class TopOfBook:
    token_id: str
    bid: float | None
    bid_size: float
    ask: float | None
    ask_size: float
    timestamp: float


def top_of_book(event: dict, received_at: float) -> TopOfBook | None:
    """Best bid/ask from a 'book' event. Levels are not guaranteed sorted."""
    try:
        bids = [(float(b["price"]), float(b["size"])) for b in event.get("bids", [])]
        asks = [(float(a["price"]), float(a["size"])) for a in event.get("asks", [])]
    except (KeyError, TypeError, ValueError) as e:
        logger.warning("Bad book event for %s: %s", event.get("asset_id"), e)
        return None
    bid, bid_size = max(bids) if bids else (None, 0.0)
    ask, ask_size = min(asks) if asks else (None, 0.0)
    ts_raw = event.get("timestamp")
    try:
        ts = float(ts_raw) / 1000.0
    except (TypeError, ValueError):
        ts = received_at
    return TopOfBook(
        token_id=str(event.get("asset_id", "")),
        bid=bid, bid_size=bid_size, ask=ask, ask_size=ask_size, timestamp=ts,
    )


@dataclass
class MarketFeed:
    """Async WebSocket listener for the market channel."""

    url: str
    token_ids: list[str]
    on_book: Callable[[TopOfBook], None]
    max_retries: int = MAX_RETRIES
    _running: bool = False
    _ws: object = None
    _last_message_time: float = field(default_factory=lambda: 0.0)
    _connect_time: float = field(default_factory=lambda: 0.0)

    async def run(self) -> None:
        """Connect and listen, with exponential backoff on failures."""
        self._running = True
        retries = 0
        while self._running:
            try:
                async with connect(self.url) as ws:
                    self._ws = ws
                    self._connect_time = time.time()
                    self._last_message_time = 0.0
                    retries = 0
                    logger.info("WebSocket connected to %s", self.url)
                    await ws.send(json.dumps({"assets_ids": self.token_ids, "type": "market"}))
                    async for raw_msg in ws:
                        if not self._running:
                            break
                        self._last_message_time = time.time()
                        self.handle_message(raw_msg)
            except (websockets.ConnectionClosed, ConnectionError, OSError) as e:
                retries += 1
                if retries > self.max_retries:
                    logger.error("WebSocket max retries (%d) exceeded. Last error: %s", self.max_retries, e)
                    raise RuntimeError(
                        f"WebSocket connection failed after {self.max_retries} retries: {e}"
                    ) from e
                backoff = min(BACKOFF_BASE * (2 ** (retries - 1)), BACKOFF_MAX)
                logger.warning(
                    "WebSocket disconnected (retry %d/%d), backoff %.1fs: %s",
                    retries, self.max_retries, backoff, e,
                )
                await asyncio.sleep(backoff)
            finally:
                self._ws = None

    async def stop(self) -> None:
        self._running = False
        if self._ws is not None:
            await self._ws.close()

    def is_healthy(self, max_silence_sec: float = 30.0) -> bool:
        if not self._running or not self._ws:
            return False
        now = time.time()
        if self._last_message_time == 0.0:
            return now - self._connect_time <= max_silence_sec
        return now - self._last_message_time <= max_silence_sec

    def handle_message(self, raw_msg: str) -> int:
        """Parse a message and emit book tops. Returns the number emitted."""
        try:
            data = json.loads(raw_msg)
        except json.JSONDecodeError:
            logger.warning("Unparseable WebSocket message: %s", raw_msg[:200])
            return 0
        events = data if isinstance(data, list) else [data]
        now = time.time()
        emitted = 0
        for event in events:
            if not isinstance(event, dict) or event.get("event_type") != "book":
                continue
            top = top_of_book(event, now)
            if top is not None:
                self.on_book(top)
                emitted += 1
        return emitted


class QuoteStream:
    """Synchronous facade: latest top of book per token, fed by a background MarketFeed."""

    def __init__(self, url: str, max_retries: int = MAX_RETRIES) -> None:
        self._url = url
        self._max_retries = max_retries
        self._lock = threading.Lock()
        self._tops: dict[str, TopOfBook] = {}
        self._feed: MarketFeed | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._thread: threading.Thread | None = None

    def update(self, top: TopOfBook) -> None:
        with self._lock:
            self._tops[top.token_id] = top

    def start(self, token_ids: list[str]) -> None:
        """(Re)subscribe to *token_ids* on a fresh connection."""
        self.stop()
        self._feed = MarketFeed(
            url=self._url, token_ids=list(token_ids), on_book=self.update,
            max_retries=self._max_retries,
        )
        self._loop = asyncio.new_event_loop()
        self._thread = threading.Thread(
            target=self._run_loop, args=(self._loop, self._feed), daemon=True, name="quote-stream",
        )
        self._thread.start()
        logger.info("Quote stream started (%d tokens)", len(token_ids))

    def _run_loop(self, loop: asyncio.AbstractEventLoop, feed: MarketFeed) -> None:
        asyncio.set_event_loop(loop)
        try:
            loop.run_until_complete(feed.run())
        except RuntimeError as e:
            logger.error("Quote stream stopped: %s (falling back to REST)", e)

    def stop(self) -> None:
        if self._loop is not None and self._feed is not None and self._loop.is_running():
            asyncio.run_coroutine_threadsafe(self._feed.stop(), self._loop)
        if self._thread is not None:
            self._thread.join(timeout=5.0)
        if self._loop is not None:
            if self._thread is not None and self._thread.is_alive():
                logger.warning("Quote stream thread did not exit; leaving its loop open")
            elif not self._loop.is_closed():
                self._loop.close()
        self._thread = None
        self._loop = None
        self._feed = None
        with self._lock:
            self._tops.clear()

    def is_healthy(self) -> bool:
        return self._feed is not None and self._feed.is_healthy()

    def quotes_for(
        self,
        specs: list[OutcomeSpec],
        window_close_time: float,
        max_age_sec: float,
        now: float | None = None,
    ) -> list[RawQuote] | None:
        """RawQuotes for every spec if all are fresh, else None (caller falls back to REST)."""
        if now is None:
            now = time.time()
        with self._lock:
            tops = [self._tops.get(s.outcome_id) for s in specs]
        if any(t is None or now - t.timestamp > max_age_sec for t in tops):
            return None
        return [
            RawQuote(
                market_id=spec.market_id,
                outcome_id=spec.outcome_id,
                bid=top.bid,
                ask=top.ask,
                bid_size=top.bid_size,
                ask_size=top.ask_size,
                timestamp=top.timestamp,
                window_close_time=window_close_time,
            )
            for spec, top in zip(specs, tops)
        ]

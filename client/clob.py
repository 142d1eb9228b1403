"""
CLOB REST adapter. Thin layer converting py_clob_client calls and payloads
into the engine's quote and venue types.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor

import httpx
from py_clob_client.client import ClobClient
from py_clob_client.clob_types import ApiCreds, OpenOrderParams, OrderArgs, OrderType, PartialCreateOrderOptions
from py_clob_client.exceptions import PolyApiException
from py_clob_client.http_helpers import helpers as _clob_helpers
from py_clob_client.order_builder.constants import BUY, SELL

from client.platform import (
    OrderRequest,
    TransientIOError,
    VenueOrderStatus,
    VenueRejectionError,
    VenueStatus,
)
from config import Config
from scanner.models import OutcomeSpec, RawQuote, Side

logger = logging.getLogger(__name__)

# Retry config for flaky CLOB API (HTTP/2 connection resets, SSL errors)
_MAX_RETRIES = 3
_RETRY_BACKOFF_SEC = 1.0

# Disable HTTP/2 on the SDK's shared client: the server's GOAWAY frames kill
# the pooled connection. Also give batch requests a real timeout.
_clob_helpers._http_client = httpx.Client(http2=False, timeout=15.0)


def build_clob_client(cfg: Config, authenticated: bool = True) -> ClobClient:
    """
    Build a ClobClient. Unauthenticated clients can read books and markets;
    authenticated ones derive L2 API credentials from the wallet key.
    """
    if not authenticated:
        return ClobClient(host=cfg.clob_host, chain_id=cfg.chain_id)

    client = ClobClient(
        host=cfg.clob_host,
        chain_id=cfg.chain_id,
        key=cfg.private_key,
        signature_type=cfg.signature_type,
        funder=cfg.polymarket_profile_address,
    )
    creds: ApiCreds = client.create_or_derive_api_creds()
    client.set_api_creds(creds)
    return client


def _is_connection_error(exc: Exception) -> bool:
    if isinstance(exc, httpx.TransportError):
        return True
    if isinstance(exc, PolyApiException):
        # The SDK reports transport failures with no status code.
        return exc.status_code is None or "Request exception" in str(exc)
    return False


def _retry_api_call(
    fn,
    *args,
    max_retries: int = _MAX_RETRIES,
    backoff_sec: float = _RETRY_BACKOFF_SEC,
    **kwargs,
):
    """
    Call *fn*, retrying connection-level errors with exponential backoff.
    HTTP errors with a status code are raised immediately. After the last
    attempt the failure surfaces as TransientIOError.
    """
    for attempt in range(max_retries):
        try:
            return fn(*args, **kwargs)
        except (PolyApiException, httpx.TransportError) as exc:
            if not _is_connection_error(exc):
                raise
            if attempt == max_retries - 1:
                raise TransientIOError(f"{getattr(fn, '__name__', fn)} failed after {max_retries} attempts: {exc}") from exc
            wait = backoff_sec * (2 ** attempt)
            logger.debug("CLOB API retry %d/%d after %.1fs: %s", attempt + 1, max_retries, wait, exc)
            time.sleep(wait)
    raise TransientIOError(f"{getattr(fn, '__name__', fn)} not attempted (max_retries={max_retries})")


# ── Quotes ──


def _best(levels, highest: bool) -> tuple[float | None, float]:
    """Best price and its size. The SDK does NOT guarantee level ordering."""
    parsed = [(float(lvl.price), float(lvl.size)) for lvl in (levels or [])]
    if not parsed:
        return None, 0.0
    price, size = max(parsed) if highest else min(parsed)
    return price, size


def _book_timestamp(raw_book) -> float:
    ts = getattr(raw_book, "timestamp", None)
    try:
        value = float(ts)
    except (TypeError, ValueError):
        return time.time()
    # Venue reports milliseconds.
    return value / 1000.0 if value > 1e11 else value


def raw_quote_from_book(raw_book, spec: OutcomeSpec, window_close_time: float) -> RawQuote:
    bid, bid_size = _best(raw_book.bids, highest=True)
    ask, ask_size = _best(raw_book.asks, highest=False)
    return RawQuote(
        market_id=spec.market_id,
        outcome_id=spec.outcome_id,
        bid=bid,
        ask=ask,
        bid_size=bid_size,
        ask_size=ask_size,
        timestamp=_book_timestamp(raw_book),
        window_close_time=window_close_time,
    )


class ClobQuoteSource:
    """Pull quote feed: one book request per outcome, fetched in parallel."""

    def __init__(
        self,
        client: ClobClient,
        max_workers: int = 8,
        max_retries: int = _MAX_RETRIES,
        backoff_sec: float = _RETRY_BACKOFF_SEC,
    ) -> None:
        self._client = client
        self._max_workers = max_workers
        self._max_retries = max_retries
        self._backoff_sec = backoff_sec

    def fetch_quotes(self, specs: list[OutcomeSpec], window_close_time: float) -> list[RawQuote]:
        if not specs:
            return []

        def _fetch(spec: OutcomeSpec) -> RawQuote:
            raw = _retry_api_call(
                self._client.get_order_book, spec.outcome_id,
                max_retries=self._max_retries, backoff_sec=self._backoff_sec,
            )
            return raw_quote_from_book(raw, spec, window_close_time)

        with ThreadPoolExecutor(max_workers=min(self._max_workers, len(specs))) as pool:
            futures = [pool.submit(_fetch, spec) for spec in specs]
            return [f.result() for f in futures]


# ── Orders ──

_FILLED = ("matched", "filled")
_OPEN = ("live", "open", "delayed", "unmatched")
_CANCELLED = ("canceled", "cancelled", "expired")


def _filled_size(payload: dict, requested: float) -> float:
    """Best-effort filled size from an order payload. 0.0 if absent."""
    for key in ("size_matched", "sizeMatched", "filled_size", "filledSize", "matched_size"):
        if key not in payload:
            continue
        try:
            parsed = float(payload[key])
        except (TypeError, ValueError):
            continue
        return max(0.0, min(parsed, requested)) if requested > 0 else max(0.0, parsed)
    return 0.0


def status_from_payload(payload: dict, requested: float, client_order_id: str = "") -> VenueOrderStatus:
    """Map a CLOB order / post-order response onto VenueOrderStatus."""
    vid = str(payload.get("orderID") or payload.get("id") or "")
    raw_status = str(payload.get("status", "")).lower()
    if requested <= 0:
        try:
            requested = float(payload.get("original_size", 0) or 0)
        except (TypeError, ValueError):
            requested = 0.0
    filled = _filled_size(payload, requested)

    if raw_status in _FILLED:
        status = VenueStatus.FILLED
        filled = filled or requested
    elif raw_status in _CANCELLED:
        status = VenueStatus.CANCELLED
    elif raw_status == "rejected":
        status = VenueStatus.REJECTED
    else:
        status = VenueStatus.OPEN

    return VenueOrderStatus(
        venue_order_id=vid,
        status=status,
        filled_quantity=filled,
        client_order_id=client_order_id,
        outcome_id=str(payload.get("asset_id", "")),
        quantity=requested,
        reason=str(payload.get("errorMsg", "") or ""),
    )


class ClobVenue:
    """Live venue over py_clob_client. GTC limit orders, idempotent on client_order_id."""

    def __init__(
        self,
        client: ClobClient,
        max_retries: int = _MAX_RETRIES,
        backoff_sec: float = _RETRY_BACKOFF_SEC,
    ) -> None:
        self._client = client
        self._max_retries = max_retries
        self._backoff_sec = backoff_sec
        self._lock = threading.Lock()
        self._by_client_id: dict[str, VenueOrderStatus] = {}
        self._client_ids: dict[str, str] = {}

    @property
    def name(self) -> str:
        return "clob"

    def _call(self, fn, *args):
        try:
            return _retry_api_call(fn, *args, max_retries=self._max_retries, backoff_sec=self._backoff_sec)
        except PolyApiException as exc:
            raise VenueRejectionError(f"{getattr(fn, '__name__', fn)}: {exc}") from exc

    def submit(self, request: OrderRequest) -> VenueOrderStatus:
        with self._lock:
            known = self._by_client_id.get(request.client_order_id)
        if known is not None:
            logger.debug("Duplicate submit for %s returns %s", request.client_order_id, known.venue_order_id)
            return known

        args = OrderArgs(
            token_id=request.outcome_id,
            price=request.price,
            size=request.quantity,
            side=BUY if request.side is Side.BUY else SELL,
        )
        options = PartialCreateOrderOptions(tick_size=request.tick_size, neg_risk=request.neg_risk)
        try:
            signed = self._client.create_order(args, options)
        except (ValueError, PolyApiException) as exc:
            raise VenueRejectionError(f"order build failed: {exc}", request.client_order_id) from exc

        resp = self._call(self._client.post_order, signed, OrderType.GTC) or {}
        if not resp.get("success", True) or not (resp.get("orderID") or resp.get("id")):
            raise VenueRejectionError(
                str(resp.get("errorMsg") or "order not accepted"), request.client_order_id,
            )

        status = status_from_payload(resp, request.quantity, request.client_order_id)
        with self._lock:
            self._by_client_id[request.client_order_id] = status
            self._client_ids[status.venue_order_id] = request.client_order_id
        return status

    def cancel(self, venue_order_id: str) -> bool:
        resp = self._call(self._client.cancel, venue_order_id) or {}
        cancelled = resp.get("canceled") or []
        return venue_order_id in cancelled

    def get_order(self, venue_order_id: str) -> VenueOrderStatus:
        payload = self._call(self._client.get_order, venue_order_id) or {}
        payload.setdefault("id", venue_order_id)
        with self._lock:
            cid = self._client_ids.get(venue_order_id, "")
        return status_from_payload(payload, 0.0, cid)

    def get_open_orders(self) -> list[VenueOrderStatus]:
        rows = self._call(self._client.get_orders, OpenOrderParams()) or []
        with self._lock:
            ids = dict(self._client_ids)
        return [status_from_payload(r, 0.0, ids.get(str(r.get("id", "")), "")) for r in rows]

    def remember(self, client_order_id: str, venue_order_id: str) -> None:
        """Re-link a restored order so queries can report its client id."""
        with self._lock:
            self._client_ids[venue_order_id] = client_order_id

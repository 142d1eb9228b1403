"""
Execution state machine. Owns every Order from creation to a terminal state.

Venue responses arrive as OrderUpdate messages (from submit acks, polling,
or reconciliation) and are applied one at a time under the engine lock.
Follow-up work an update triggers (cancelling sibling legs, sending a
compensating order) is returned as actions and performed after the lock is
released, so venue I/O never runs inside the critical section.

Exposure rules:
  - capital is reserved when an order is created
  - each fill moves reserved capital into open exposure
  - each terminal state releases the unused reservation exactly once
  - a leg that ends Rejected/Cancelled aborts its live siblings; any filled
    quantity left unhedged is flattened with a compensating order
  - a compensating order that does not fully fill halts the linked set
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Callable, Protocol

from client.platform import (
    OrderRequest,
    TransientIOError,
    Venue,
    VenueOrderStatus,
    VenueRejectionError,
    VenueStatus,
)
from executor.bankroll import BankrollState, InsufficientCapitalError
from executor.order_state import OrderState, is_terminal_state, live_states, transition_to
from executor.sizing import SizedOrder
from executor.tick_size import slipped_price
from scanner.fees import FeeSchedule
from scanner.models import ArbitrageOpportunity, MarketQuote, PerformanceRecord, Side

logger = logging.getLogger(__name__)

_QTY_EPS = 1e-9
_DRAIN_SWEEPS = 4


class ExposureInconsistencyError(Exception):
    """A compensating order failed: the linked set holds one-sided exposure."""

    def __init__(self, message: str, linked_set_id: str, opportunity_id: str) -> None:
        super().__init__(message)
        self.linked_set_id = linked_set_id
        self.opportunity_id = opportunity_id


class UpdateKind(str, Enum):
    ACK = "ack"
    FILL = "fill"
    CANCEL = "cancel"
    REJECT = "reject"


class OrderRole(str, Enum):
    ENTRY = "entry"
    COMPENSATION = "compensation"


@dataclass(frozen=True)
class OrderUpdate:
    """One venue event for one order. filled_quantity is cumulative."""

    client_order_id: str
    kind: UpdateKind
    filled_quantity: float | None = None
    venue_order_id: str = ""
    reason: str = ""


@dataclass
class Order:
    client_order_id: str
    opportunity_id: str
    linked_set_id: str
    leg_index: int
    market_id: str
    outcome_id: str
    side: Side
    quantity: float
    limit_price: float
    effective_price: float
    window_close_time: float
    role: OrderRole = OrderRole.ENTRY
    tick_size: str = "0.01"
    state: OrderState = OrderState.PENDING
    filled_quantity: float = 0.0
    venue_order_id: str = ""
    reject_reason: str = ""
    created_at: float = field(default_factory=time.time)

    @property
    def capital_per_unit(self) -> float:
        if self.side is Side.BUY:
            return self.effective_price
        return 1.0 - self.effective_price

    @property
    def fee_per_unit(self) -> float:
        return abs(self.effective_price - self.limit_price)

    @property
    def remaining(self) -> float:
        return max(0.0, self.quantity - self.filled_quantity)

    @property
    def is_live(self) -> bool:
        return self.state in live_states()

    def to_dict(self) -> dict:
        d = asdict(self)
        d["side"] = self.side.value
        d["role"] = self.role.value
        d["state"] = self.state.value
        return d

    @classmethod
    def from_dict(cls, data: dict) -> Order:
        data = dict(data)
        data["side"] = Side(data["side"])
        data["role"] = OrderRole(data["role"])
        data["state"] = OrderState(data["state"])
        return cls(**data)


@dataclass
class Position:
    """Engine-side aggregate of one opportunity's orders and exposure."""

    opportunity_id: str
    linked_set_id: str
    window_close_time: float
    direction: Side
    risk_free: bool
    entry_order_ids: list[str] = field(default_factory=list)
    compensation_order_ids: list[str] = field(default_factory=list)
    # Filled quantity per entry leg not yet flattened.
    leg_open: dict[int, float] = field(default_factory=dict)
    entry_cost: float = 0.0
    fees_paid: float = 0.0
    compensation_proceeds: float = 0.0
    ever_filled: bool = False
    resolved: bool = False
    opened_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        d = asdict(self)
        d["direction"] = self.direction.value
        d["leg_open"] = {str(k): v for k, v in self.leg_open.items()}
        return d

    @classmethod
    def from_dict(cls, data: dict) -> Position:
        data = dict(data)
        data["direction"] = Side(data["direction"])
        data["leg_open"] = {int(k): float(v) for k, v in data.get("leg_open", {}).items()}
        return cls(**data)


class Ledger(Protocol):
    def append(self, record: PerformanceRecord) -> None: ...


# Actions returned by _apply_locked, performed outside the lock.
@dataclass(frozen=True)
class _Send:
    client_order_id: str


@dataclass(frozen=True)
class _Cancel:
    client_order_id: str
    reason: str


class ExecutionEngine:
    """Venue-agnostic order state machine plus exposure bookkeeping."""

    def __init__(
        self,
        venue: Venue,
        bankroll: BankrollState,
        fees: FeeSchedule | None = None,
        ledger: Ledger | None = None,
        max_concurrent_positions_per_market_set: int = 1,
        expiry_safety_buffer_sec: float = 30.0,
        max_slippage: float = 0.02,
        on_alert: Callable[[str, str], None] | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.venue = venue
        self.bankroll = bankroll
        self.fees = fees or FeeSchedule.zero()
        self.ledger = ledger
        self.max_concurrent = max_concurrent_positions_per_market_set
        self.expiry_safety_buffer_sec = expiry_safety_buffer_sec
        self.max_slippage = max_slippage
        self._on_alert = on_alert
        self._clock = clock
        self._lock = threading.RLock()
        self._orders: dict[str, Order] = {}
        self._positions: dict[str, Position] = {}
        self._halted: dict[str, str] = {}
        self._last_quotes: dict[str, MarketQuote] = {}
        self._comp_seq = 0

    # ── Queries ──

    def get_order(self, client_order_id: str) -> Order | None:
        with self._lock:
            return self._orders.get(client_order_id)

    def get_position(self, opportunity_id: str) -> Position | None:
        with self._lock:
            return self._positions.get(opportunity_id)

    def live_orders(self) -> list[Order]:
        with self._lock:
            return [o for o in self._orders.values() if o.is_live]
    def open_positions(self) -> list[dict]:
        """Unresolved positions with their orders, for operators."""
        with self._lock:
            out = []
            for pos in self._positions.values():
                if pos.resolved:
                    continue
                view = pos.to_dict()
                view["orders"] = [
                    self._orders[oid].to_dict()
                    for oid in pos.entry_order_ids + pos.compensation_order_ids
                    if oid in self._orders
                ]
                view["halted"] = pos.linked_set_id in self._halted
                out.append(view)
            return out

    def halted_sets(self) -> dict[str, str]:
        with self._lock:
            return dict(self._halted)

    def is_halted(self, linked_set_id: str) -> bool:
        with self._lock:
            return linked_set_id in self._halted

    def clear_halt(self, linked_set_id: str) -> bool:
        """Operator acknowledgment: allow new orders on a halted set again."""
        with self._lock:
            reason = self._halted.pop(linked_set_id, None)
        if reason is not None:
            logger.warning("Halt cleared for %s (was: %s)", linked_set_id, reason)
        return reason is not None

    def observe_quotes(self, quotes: dict[str, MarketQuote]) -> None:
        """Latest normalized quotes, used to price compensating orders."""
        with self._lock:
            self._last_quotes.update(quotes)

    def last_quote(self, outcome_id: str) -> MarketQuote | None:
        with self._lock:
            return self._last_quotes.get(outcome_id)

    def prune_quotes(self, before: float) -> int:
        """Drop remembered quotes for windows that closed at or before *before*."""
        with self._lock:
            stale = [k for k, q in self._last_quotes.items() if q.window_close_time <= before]
            for k in stale:
                del self._last_quotes[k]
        return len(stale)

    # ── Submission ──

    def submit(
        self,
        opportunity: ArbitrageOpportunity,
        sized_orders: list[SizedOrder],
        now: float | None = None,
    ) -> list[Order]:
        """
        Create and send one order per sized leg. Returns the created orders
        (empty if the submission was refused; the reason is logged).
        """
        if now is None:
            now = self._clock()
        set_id = opportunity.linked_set_id
        deadline = opportunity.window_close_time - self.expiry_safety_buffer_sec

        if not sized_orders:
            return []
        if self.is_halted(set_id):
            logger.warning("Submit refused: %s is halted (%s)", set_id, self._halted.get(set_id))
            return []
        if now >= deadline:
            logger.info(
                "Submit refused: %s past cancel deadline (%.0fs to close)",
                set_id, opportunity.window_close_time - now,
            )
            return []
        if not self.bankroll.try_open_position(set_id, self.max_concurrent):
            logger.info("Submit refused: %s already has an unresolved position", set_id)
            return []

        with self._lock:
            if opportunity.opportunity_id in self._positions:
                self.bankroll.resolve_position(set_id)
                logger.warning("Submit refused: %s already submitted", opportunity.opportunity_id)
                return []
            orders = self._create_entry_orders(opportunity, sized_orders)
            if not orders:
                self.bankroll.resolve_position(set_id)
                return []
            position = Position(
                opportunity_id=opportunity.opportunity_id,
                linked_set_id=set_id,
                window_close_time=opportunity.window_close_time,
                direction=opportunity.direction,
                risk_free=opportunity.risk_free,
                entry_order_ids=[o.client_order_id for o in orders],
                leg_open={o.leg_index: 0.0 for o in orders},
                opened_at=now,
            )
            self._positions[position.opportunity_id] = position
            for o in orders:
                self._orders[o.client_order_id] = o

        logger.info(
            "Submitting %s: %d legs x %.2f (edge %.4f)",
            opportunity.opportunity_id, len(orders), orders[0].quantity,
            opportunity.theoretical_edge,
        )
        for order in orders:
            self._perform(_Send(order.client_order_id))
        return orders

    def _create_entry_orders(
        self, opportunity: ArbitrageOpportunity, sized_orders: list[SizedOrder],
    ) -> list[Order]:
        """Build and reserve capital for each leg. All-or-nothing."""
        orders: list[Order] = []
        for sized in sized_orders:
            leg = opportunity.candidate_legs[sized.leg_index]
            order = Order(
                client_order_id=f"{opportunity.opportunity_id}:{sized.leg_index}",
                opportunity_id=opportunity.opportunity_id,
                linked_set_id=opportunity.linked_set_id,
                leg_index=sized.leg_index,
                market_id=leg.market_id,
                outcome_id=leg.outcome_id,
                side=leg.side,
                quantity=sized.quantity,
                limit_price=sized.limit_price,
                effective_price=leg.effective_price,
                window_close_time=opportunity.window_close_time,
                tick_size=leg.tick_size,
                created_at=self._clock(),
            )
            try:
                self.bankroll.reserve(order.client_order_id, order.quantity * order.capital_per_unit)
            except InsufficientCapitalError as e:
                logger.warning("Submit refused: %s", e)
                for done in orders:
                    self.bankroll.release(done.client_order_id)
                return []
            orders.append(order)
        return orders

    # ── Update handling ──

    def apply_update(self, update: OrderUpdate) -> None:
        """Apply one venue message, then perform whatever follow-up it triggers."""
        try:
            with self._lock:
                actions = self._apply_locked(update)
        except ExposureInconsistencyError as e:
            self._halt(e)
            return
        for action in actions:
            self._perform(action)

    def _apply_locked(self, update: OrderUpdate) -> list[_Send | _Cancel]:
        order = self._orders.get(update.client_order_id)
        if order is None:
            logger.warning("Update for unknown order %s ignored", update.client_order_id)
            return []
        if is_terminal_state(order.state):
            logger.debug(
                "Update %s for terminal order %s ignored", update.kind.value, order.client_order_id,
            )
            return []

        if update.venue_order_id and not order.venue_order_id:
            order.venue_order_id = update.venue_order_id

        if update.filled_quantity is not None:
            self._record_fill(order, update.filled_quantity)

        if update.kind is UpdateKind.REJECT:
            order.reject_reason = update.reason
            if order.state is OrderState.PENDING:
                order.state = transition_to(order.state, OrderState.REJECTED)
            else:
                order.state = transition_to(order.state, OrderState.CANCELLED)
        elif update.kind is UpdateKind.CANCEL:
            order.reject_reason = update.reason
            if order.remaining <= _QTY_EPS:
                order.state = transition_to(order.state, OrderState.FILLED)
            else:
                order.state = transition_to(order.state, OrderState.CANCELLED)
        elif order.remaining <= _QTY_EPS:
            order.state = transition_to(order.state, OrderState.FILLED)
        elif order.filled_quantity > 0:
            order.state = transition_to(order.state, OrderState.PARTIALLY_FILLED)
        elif order.state is OrderState.PENDING:
            order.state = transition_to(order.state, OrderState.OPEN)

        if not is_terminal_state(order.state):
            return []
        return self._on_terminal(order)

    def _record_fill(self, order: Order, cumulative: float) -> None:
        cumulative = min(cumulative, order.quantity)
        delta = cumulative - order.filled_quantity
        if delta <= _QTY_EPS:
            return
        order.filled_quantity = cumulative
        position = self._positions[order.opportunity_id]
        position.ever_filled = True
        position.fees_paid += delta * order.fee_per_unit

        if order.role is OrderRole.ENTRY:
            amount = delta * order.capital_per_unit
            self.bankroll.apply_fill(order.client_order_id, amount)
            position.entry_cost += amount
            position.leg_open[order.leg_index] = position.leg_open.get(order.leg_index, 0.0) + delta
        else:
            entry = self._entry_order(position, order.leg_index)
            cost_basis = delta * entry.capital_per_unit
            if order.side is Side.SELL:
                proceeds = delta * order.effective_price
            else:
                proceeds = delta * (1.0 - order.effective_price)
            self.bankroll.close_exposure(cost_basis, proceeds)
            position.compensation_proceeds += proceeds
            position.leg_open[order.leg_index] = max(
                0.0, position.leg_open.get(order.leg_index, 0.0) - delta,
            )

        logger.info(
            "FILL %s %s %.2f/%.2f @ %.4f",
            order.client_order_id, order.side.value, order.filled_quantity,
            order.quantity, order.limit_price,
        )

    def _on_terminal(self, order: Order) -> list[_Send | _Cancel]:
        """Runs exactly once per order, on its transition into a terminal state."""
        self.bankroll.release(order.client_order_id)
        logger.info(
            "Order %s -> %s (filled %.2f/%.2f)%s",
            order.client_order_id, order.state.value, order.filled_quantity, order.quantity,
            f" reason={order.reject_reason}" if order.reject_reason else "",
        )
        position = self._positions[order.opportunity_id]

        if order.role is OrderRole.COMPENSATION:
            if order.remaining > _QTY_EPS:
                raise ExposureInconsistencyError(
                    f"compensating order {order.client_order_id} ended {order.state.value} "
                    f"with {order.remaining:.2f} unflattened ({order.reject_reason or 'no reason'})",
                    linked_set_id=order.linked_set_id,
                    opportunity_id=order.opportunity_id,
                )
            self._note_if_flat(position)
            return []

        actions: list[_Send | _Cancel] = []
        if order.state in (OrderState.REJECTED, OrderState.CANCELLED):
            for sibling in self._entry_orders(position):
                if sibling.is_live:
                    actions.append(_Cancel(
                        sibling.client_order_id,
                        f"companion leg {order.leg_index} {order.state.value}",
                    ))

        if not actions and not any(o.is_live for o in self._entry_orders(position)):
            actions.extend(self._rebalance(position))
        return actions

    def _rebalance(self, position: Position) -> list[_Send]:
        """
        All entry legs are terminal. Flatten whatever exceeds the hedged
        quantity (the smallest fill across legs); release a position that
        never filled.
        """
        entries = self._entry_orders(position)
        if not position.ever_filled:
            position.resolved = True
            self.bankroll.resolve_position(position.linked_set_id)
            self.bankroll.forget(o.client_order_id for o in self._orders_of(position))
            logger.info("Position %s closed with no fills", position.opportunity_id)
            return []

        hedged = min(o.filled_quantity for o in entries)
        actions: list[_Send] = []
        for entry in entries:
            excess = position.leg_open.get(entry.leg_index, 0.0) - hedged - self._pending_flatten(position, entry.leg_index)
            if excess > _QTY_EPS:
                comp = self._create_compensation(position, entry, excess)
                actions.append(_Send(comp.client_order_id))
        if actions:
            logger.warning(
                "Position %s one-sided after leg failure: flattening %d leg(s)",
                position.opportunity_id, len(actions),
            )
        return actions

    def _create_compensation(self, position: Position, entry: Order, quantity: float) -> Order:
        side = entry.side.opposite
        quote = self._last_quotes.get(entry.outcome_id)
        if quote is not None:
            reference = quote.raw_bid if side is Side.SELL else quote.raw_ask
        else:
            reference = entry.limit_price
        price = slipped_price(reference, self.max_slippage, side, entry.tick_size)
        if side is Side.SELL:
            effective = self.fees.effective_bid(price)
        else:
            effective = self.fees.effective_ask(price)

        self._comp_seq += 1
        comp = Order(
            client_order_id=f"{entry.client_order_id}:flat{self._comp_seq}",
            opportunity_id=entry.opportunity_id,
            linked_set_id=entry.linked_set_id,
            leg_index=entry.leg_index,
            market_id=entry.market_id,
            outcome_id=entry.outcome_id,
            side=side,
            quantity=quantity,
            limit_price=price,
            effective_price=effective,
            window_close_time=entry.window_close_time,
            role=OrderRole.COMPENSATION,
            tick_size=entry.tick_size,
            created_at=self._clock(),
        )
        self._orders[comp.client_order_id] = comp
        position.compensation_order_ids.append(comp.client_order_id)
        logger.warning(
            "COMPENSATE %s: %s %.2f @ %.4f to flatten leg %d",
            position.opportunity_id, side.value, quantity, price, entry.leg_index,
        )
        return comp

    def _pending_flatten(self, position: Position, leg_index: int) -> float:
        return sum(
            self._orders[oid].remaining
            for oid in position.compensation_order_ids
            if self._orders[oid].leg_index == leg_index and self._orders[oid].is_live
        )

    def _note_if_flat(self, position: Position) -> None:
        """A position with no open quantity left still waits for settlement to book its PnL."""
        if all(q <= _QTY_EPS for q in position.leg_open.values()):
            logger.info("Position %s fully flattened", position.opportunity_id)

    def _entry_orders(self, position: Position) -> list[Order]:
        return [self._orders[oid] for oid in position.entry_order_ids]

    def _entry_order(self, position: Position, leg_index: int) -> Order:
        for o in self._entry_orders(position):
            if o.leg_index == leg_index:
                return o
        raise KeyError(f"{position.opportunity_id} has no leg {leg_index}")

    def _halt(self, err: ExposureInconsistencyError) -> None:
        with self._lock:
            self._halted[err.linked_set_id] = str(err)
        logger.critical("EXPOSURE ALERT %s: %s -- new orders halted", err.linked_set_id, err)
        if self._on_alert is not None:
            self._on_alert(err.linked_set_id, str(err))

    # ── Venue I/O ──

    def _perform(self, action: _Send | _Cancel) -> None:
        if isinstance(action, _Send):
            updates = self._send(action.client_order_id)
        else:
            updates = self._cancel(action.client_order_id, action.reason)
        for update in updates:
            self.apply_update(update)

    def _send_deadline(self, order: Order) -> float:
        """Entries stop at the safety buffer; hedges may still go out until the window closes."""
        if order.role is OrderRole.COMPENSATION:
            return order.window_close_time
        return order.window_close_time - self.expiry_safety_buffer_sec

    def _send(self, client_order_id: str) -> list[OrderUpdate]:
        order = self.get_order(client_order_id)
        if order is None or order.state is not OrderState.PENDING or order.venue_order_id:
            return []
        if self._clock() >= self._send_deadline(order):
            return [OrderUpdate(client_order_id, UpdateKind.CANCEL, reason="window expiry before send")]

        request = OrderRequest(
            client_order_id=order.client_order_id,
            market_id=order.market_id,
            outcome_id=order.outcome_id,
            side=order.side,
            price=order.limit_price,
            quantity=order.quantity,
            tick_size=order.tick_size,
        )
        try:
            status = self.venue.submit(request)
        except VenueRejectionError as e:
            logger.warning("Venue rejected %s: %s", client_order_id, e)
            return [OrderUpdate(client_order_id, UpdateKind.REJECT, reason=str(e))]
        except TransientIOError as e:
            # Not resubmitted: the opportunity is priced for this instant only.
            logger.warning("Submit of %s failed after retries: %s", client_order_id, e)
            return [OrderUpdate(client_order_id, UpdateKind.REJECT, reason=f"transient: {e}")]
        return updates_from_status(order, status)

    def _cancel(self, client_order_id: str, reason: str) -> list[OrderUpdate]:
        """
        Cancel once, no retry. The order is marked cancelled locally even when
        the venue call fails; the final fill is read back when possible.
        """
        order = self.get_order(client_order_id)
        if order is None or not order.is_live:
            return []
        if not order.venue_order_id:
            return [OrderUpdate(client_order_id, UpdateKind.CANCEL, reason=reason)]

        filled = order.filled_quantity
        try:
            confirmed = self.venue.cancel(order.venue_order_id)
            if not confirmed:
                logger.warning("Venue did not confirm cancel of %s", client_order_id)
        except (TransientIOError, VenueRejectionError) as e:
            logger.warning("Cancel of %s failed (%s); marking cancelled locally", client_order_id, e)
        try:
            final = self.venue.get_order(order.venue_order_id)
            filled = max(filled, final.filled_quantity)
        except (TransientIOError, VenueRejectionError) as e:
            logger.warning("Final fill for %s unknown (%s); using %.2f", client_order_id, e, filled)
        return [OrderUpdate(client_order_id, UpdateKind.CANCEL, filled_quantity=filled, reason=reason)]

    # ── Periodic work ──

    def poll_orders(self) -> int:
        """Query the venue for every live, acknowledged order. Returns updates applied."""
        applied = 0
        for order in self.live_orders():
            if not order.venue_order_id:
                continue
            try:
                status = self.venue.get_order(order.venue_order_id)
            except (TransientIOError, VenueRejectionError) as e:
                logger.warning("Poll of %s skipped: %s", order.client_order_id, e)
                continue
            for update in updates_from_status(order, status):
                self.apply_update(update)
                applied += 1
        return applied

    def enforce_deadlines(self, now: float | None = None) -> int:
        """Cancel every live order at or past its cancel deadline (window close for hedges)."""
        if now is None:
            now = self._clock()
        expired = [o for o in self.live_orders() if now >= self._send_deadline(o)]
        for order in expired:
            logger.info(
                "Expiry cancel %s (%.0fs to close)", order.client_order_id, order.window_close_time - now,
            )
            self._perform(_Cancel(order.client_order_id, "window expiry"))
        return len(expired)

    def cancel_order(self, client_order_id: str, reason: str = "operator cancel") -> bool:
        order = self.get_order(client_order_id)
        if order is None or not order.is_live:
            return False
        self._perform(_Cancel(client_order_id, reason))
        return True

    def force_flatten(self, opportunity_id: str) -> list[Order]:
        """Cancel live legs of a position and flatten all of its open quantity."""
        position = self.get_position(opportunity_id)
        if position is None or position.resolved:
            raise KeyError(f"no open position {opportunity_id}")
        logger.warning("Force-flatten requested for %s", opportunity_id)

        for oid in position.entry_order_ids + position.compensation_order_ids:
            order = self.get_order(oid)
            if order is not None and order.is_live and order.role is OrderRole.ENTRY:
                self._perform(_Cancel(oid, "operator flatten"))

        created: list[Order] = []
        with self._lock:
            for entry in self._entry_orders(position):
                open_qty = position.leg_open.get(entry.leg_index, 0.0) - self._pending_flatten(position, entry.leg_index)
                if open_qty > _QTY_EPS:
                    created.append(self._create_compensation(position, entry, open_qty))
        for comp in created:
            self._perform(_Send(comp.client_order_id))
        return created

    def drain(self, timeout_sec: float = 30.0, poll_interval_sec: float = 1.0) -> int:
        """
        Shutdown: poll until every order is terminal, then cancel whatever is
        still live. Returns the number of orders cancelled.
        """
        deadline = time.monotonic() + timeout_sec
        while self.live_orders() and time.monotonic() < deadline:
            self.poll_orders()
            if self.live_orders():
                time.sleep(poll_interval_sec)
        # Cancelling an entry leg can send a hedge; sweep again for those.
        cancelled = 0
        for sweep in range(_DRAIN_SWEEPS):
            if sweep:
                self.poll_orders()
            stragglers = self.live_orders()
            if not stragglers:
                break
            for order in stragglers:
                self._perform(_Cancel(order.client_order_id, "shutdown"))
            cancelled += len(stragglers)
        left = self.live_orders()
        if left:
            logger.error(
                "Drain gave up with %d live order(s): %s",
                len(left), ", ".join(o.client_order_id for o in left),
            )
        if cancelled:
            logger.info("Drain cancelled %d order(s)", cancelled)
        return cancelled

    # ── Settlement ──

    def positions_awaiting_settlement(self, now: float | None = None) -> list[Position]:
        if now is None:
            now = self._clock()
        with self._lock:
            return [
                p for p in self._positions.values()
                if not p.resolved and p.ever_filled and now >= p.window_close_time
            ]

    def outcome_ids(self, opportunity_id: str) -> dict[str, str]:
        """{outcome_id: market_id} for a position's entry legs."""
        with self._lock:
            position = self._positions[opportunity_id]
            return {o.outcome_id: o.market_id for o in self._entry_orders(position)}

    def settle(self, opportunity_id: str, winners: dict[str, bool]) -> PerformanceRecord | None:
        """
        Book the settlement of one position. *winners* maps outcome_id to
        whether it won. Returns the record appended to the ledger, or None if
        the position cannot settle yet.
        """
        with self._lock:
            position = self._positions.get(opportunity_id)
            if position is None or position.resolved:
                return None
            entries = self._entry_orders(position)
            if any(o.is_live for o in self._orders_of(position)):
                logger.info("Settlement of %s deferred: orders still live", opportunity_id)
                return None
            missing = [o.outcome_id for o in entries if o.outcome_id not in winners]
            if missing:
                logger.debug("Settlement of %s deferred: no result for %s", opportunity_id, missing)
                return None

            payout = 0.0
            cost_basis = 0.0
            for entry in entries:
                held = position.leg_open.get(entry.leg_index, 0.0)
                if held <= _QTY_EPS:
                    continue
                won = winners[entry.outcome_id]
                pays = won if entry.side is Side.BUY else not won
                if pays:
                    payout += held
                cost_basis += held * entry.capital_per_unit

            self.bankroll.close_exposure(cost_basis, payout)
            realized = payout + position.compensation_proceeds - position.entry_cost
            record = PerformanceRecord(
                window_close_time=position.window_close_time,
                opportunity_id=opportunity_id,
                realized_pnl=realized,
                fees_paid=position.fees_paid,
                outcome_settled=True,
                linked_set_id=position.linked_set_id,
                entry_cost=position.entry_cost,
                payout=payout + position.compensation_proceeds,
                recorded_at=self._clock(),
            )
            position.resolved = True
            self.bankroll.resolve_position(position.linked_set_id)
            self.bankroll.forget(o.client_order_id for o in self._orders_of(position))

        logger.info(
            "SETTLED %s: payout=$%.2f cost=$%.2f fees=$%.2f pnl=$%.2f",
            opportunity_id, record.payout, record.entry_cost, record.fees_paid, record.realized_pnl,
        )
        if self.ledger is not None:
            self.ledger.append(record)
        return record

    def _orders_of(self, position: Position) -> list[Order]:
        return [self._orders[oid] for oid in position.entry_order_ids + position.compensation_order_ids]

    # ── Persistence ──

    def to_dict(self) -> dict:
        with self._lock:
            open_positions = [p for p in self._positions.values() if not p.resolved]
            return {
                "orders": [o.to_dict() for p in open_positions for o in self._orders_of(p)],
                "positions": [p.to_dict() for p in open_positions],
                "halted": dict(self._halted),
                "comp_seq": self._comp_seq,
            }

    def restore(self, data: dict) -> None:
        """Load orders and unresolved positions saved by to_dict()."""
        with self._lock:
            positions = [Position.from_dict(p) for p in data.get("positions", [])]
            keep = {
                oid for p in positions
                for oid in p.entry_order_ids + p.compensation_order_ids
            }
            self._positions = {p.opportunity_id: p for p in positions}
            self._orders = {
                o["client_order_id"]: Order.from_dict(o)
                for o in data.get("orders", [])
                if o["client_order_id"] in keep
            }
            self._halted = dict(data.get("halted", {}))
            self._comp_seq = int(data.get("comp_seq", 0))
        logger.info(
            "Engine restored: %d position(s), %d live order(s), %d halted set(s)",
            len(self._positions), len(self.live_orders()), len(self._halted),
        )


def updates_from_status(order: Order, status: VenueOrderStatus) -> list[OrderUpdate]:
    """Translate a venue status report into engine messages for *order*."""
    cid = order.client_order_id
    vid = status.venue_order_id
    if status.status is VenueStatus.REJECTED:
        return [OrderUpdate(cid, UpdateKind.REJECT, venue_order_id=vid, reason=status.reason)]
    if status.status is VenueStatus.CANCELLED:
        return [OrderUpdate(
            cid, UpdateKind.CANCEL, filled_quantity=status.filled_quantity,
            venue_order_id=vid, reason=status.reason or "cancelled by venue",
        )]
    if status.status is VenueStatus.FILLED:
        filled = status.filled_quantity or order.quantity
        return [OrderUpdate(cid, UpdateKind.FILL, filled_quantity=filled, venue_order_id=vid)]
    if status.filled_quantity > order.filled_quantity + _QTY_EPS:
        return [OrderUpdate(cid, UpdateKind.FILL, filled_quantity=status.filled_quantity, venue_order_id=vid)]
    if order.state is OrderState.PENDING:
        return [OrderUpdate(cid, UpdateKind.ACK, venue_order_id=vid)]
    return []

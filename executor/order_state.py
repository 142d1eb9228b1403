"""
Order lifecycle state machine.

State flow:
  PENDING -> OPEN -> PARTIALLY_FILLED (self-loop) -> FILLED
  Any live state -> CANCELLED (may carry a partial fill)
  PENDING -> REJECTED
A venue may report a fill in the same message as its acknowledgment, so
PENDING can move straight to PARTIALLY_FILLED or FILLED.
"""

from __future__ import annotations

import logging
from enum import Enum

logger = logging.getLogger(__name__)


class InvalidTransitionError(ValueError):
    """Raised on a transition the lifecycle does not allow."""


class OrderState(str, Enum):
    PENDING = "pending"
    OPEN = "open"
    PARTIALLY_FILLED = "partially_filled"
    FILLED = "filled"
    CANCELLED = "cancelled"
    REJECTED = "rejected"


# Valid state transitions: {from_state: set[valid_to_states]}
_VALID_TRANSITIONS: dict[OrderState, set[OrderState]] = {
    OrderState.PENDING: {
        OrderState.OPEN,
        OrderState.PARTIALLY_FILLED,
        OrderState.FILLED,
        OrderState.REJECTED,
        OrderState.CANCELLED,
    },
    OrderState.OPEN: {OrderState.PARTIALLY_FILLED, OrderState.FILLED, OrderState.CANCELLED},
    OrderState.PARTIALLY_FILLED: {
        OrderState.PARTIALLY_FILLED,
        OrderState.FILLED,
        OrderState.CANCELLED,
    },
    OrderState.FILLED: set(),
    OrderState.CANCELLED: set(),
    OrderState.REJECTED: set(),
}

_TERMINAL = frozenset({OrderState.FILLED, OrderState.CANCELLED, OrderState.REJECTED})


def can_transition_to(from_state: OrderState, to_state: OrderState) -> bool:
    if not isinstance(from_state, OrderState):
        raise InvalidTransitionError(f"Invalid from_state: {from_state}")
    if not isinstance(to_state, OrderState):
        raise InvalidTransitionError(f"Invalid to_state: {to_state}")
    return to_state in _VALID_TRANSITIONS[from_state]


def transition_to(from_state: OrderState, to_state: OrderState) -> OrderState:
    """
    Perform a state transition, returning the new state.

    Raises:
        InvalidTransitionError: If the transition is not allowed.
    """
    if not can_transition_to(from_state, to_state):
        raise InvalidTransitionError(
            f"Invalid state transition: {from_state.value} -> {to_state.value}"
        )
    logger.debug("State transition: %s -> %s", from_state.value, to_state.value)
    return to_state


def is_terminal_state(state: OrderState) -> bool:
    return state in _TERMINAL


def live_states() -> set[OrderState]:
    """States in which an order may still fill."""
    return {OrderState.PENDING, OrderState.OPEN, OrderState.PARTIALLY_FILLED}

"""
Unit tests for executor/order_state.py -- order lifecycle transitions.
"""

import pytest

from executor.order_state import (
    InvalidTransitionError,
    OrderState,
    can_transition_to,
    is_terminal_state,
    live_states,
    transition_to,
)


class TestTransitions:
    @pytest.mark.parametrize(
        "src,dst",
        [
            (OrderState.PENDING, OrderState.OPEN),
            (OrderState.PENDING, OrderState.FILLED),
            (OrderState.PENDING, OrderState.REJECTED),
            (OrderState.OPEN, OrderState.PARTIALLY_FILLED),
            (OrderState.PARTIALLY_FILLED, OrderState.PARTIALLY_FILLED),
            (OrderState.PARTIALLY_FILLED, OrderState.FILLED),
            (OrderState.PARTIALLY_FILLED, OrderState.CANCELLED),
        ],
    )
    def test_allowed(self, src, dst):
        assert transition_to(src, dst) is dst

    @pytest.mark.parametrize(
        "src,dst",
        [
            (OrderState.OPEN, OrderState.REJECTED),
            (OrderState.OPEN, OrderState.PENDING),
            (OrderState.FILLED, OrderState.CANCELLED),
            (OrderState.CANCELLED, OrderState.OPEN),
            (OrderState.REJECTED, OrderState.OPEN),
        ],
    )
    def test_rejected(self, src, dst):
        assert not can_transition_to(src, dst)
        with pytest.raises(InvalidTransitionError):
            transition_to(src, dst)

    def test_non_state_argument(self):
        with pytest.raises(InvalidTransitionError):
            can_transition_to("open", OrderState.FILLED)


class TestClassification:
    def test_terminal_states(self):
        terminal = {s for s in OrderState if is_terminal_state(s)}
        assert terminal == {OrderState.FILLED, OrderState.CANCELLED, OrderState.REJECTED}

    def test_live_and_terminal_partition(self):
        assert live_states() | {s for s in OrderState if is_terminal_state(s)} == set(OrderState)

    def test_string_values(self):
        assert OrderState("partially_filled") is OrderState.PARTIALLY_FILLED

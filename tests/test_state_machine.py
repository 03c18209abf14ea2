"""Unit tests for the payment/booking/seat edge table."""

import pytest

from seatpay.common.state_machine import (
    EDGES,
    CancelState,
    Edge,
    InvalidTransition,
    LifecycleState,
    lifecycle_state,
    validate_edge,
)


def test_valid_edge():
    """Sanity check: a legal edge returns the target triple."""

    assert validate_edge(Edge.PROVIDER_CONFIRMS, "PENDING", "PENDING", "RESERVED") == (
        "COMPLETED",
        "CONFIRMED",
        "OCCUPIED",
    )


def test_invalid_edge():
    """A triple that is not the edge's source row must raise."""

    with pytest.raises(InvalidTransition):
        validate_edge(Edge.PROVIDER_CONFIRMS, "PENDING", "CONFIRMED", "RESERVED")


def test_invalid_transition_is_a_value_error():
    with pytest.raises(ValueError):
        validate_edge(Edge.VOID_AFTER_CONFIRM, "PENDING", "PENDING", "RESERVED")


def test_seat_must_match_even_when_payment_and_booking_do():
    with pytest.raises(InvalidTransition):
        validate_edge(Edge.VOID_BEFORE_CONFIRM, "PENDING", "PENDING", "AVAILABLE")


@pytest.mark.parametrize("edge", list(Edge))
def test_every_edge_accepts_its_own_source_row(edge):
    (p_from, p_to), (b_from, b_to), (s_from, s_to) = EDGES[edge]
    assert validate_edge(edge, p_from.value, b_from.value, s_from.value) == (p_to.value, b_to.value, s_to.value)


def test_cancel_edges_release_the_seat():
    for edge in (Edge.VOID_BEFORE_CONFIRM, Edge.VOID_AFTER_CONFIRM, Edge.TIMEOUT_BEFORE_CONFIRM):
        _, (_, booking_to), (_, seat_to) = EDGES[edge]
        assert booking_to == "CANCELLED"
        assert seat_to == "AVAILABLE"


def test_lifecycle_state_projection():
    assert lifecycle_state("PENDING", None) == LifecycleState.CREATED
    assert lifecycle_state("COMPLETED", None) == LifecycleState.COMPLETED
    assert lifecycle_state("CANCELLED", CancelState.BEFORE_CONFIRM.value) == LifecycleState.CANCELLED_BEFORE_CONFIRM
    assert lifecycle_state("CANCELLED", CancelState.AFTER_CONFIRM.value) == LifecycleState.CANCELLED_AFTER_CONFIRM

"""Payment x Booking x Seat edges enforced by the reconciliation coordinator.

The triple only ever moves along one of the rows of `EDGES`; every provider
operation maps to exactly one of them.
"""

from enum import Enum


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class BookingStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"


class SeatStatus(str, Enum):
    AVAILABLE = "AVAILABLE"
    RESERVED = "RESERVED"
    OCCUPIED = "OCCUPIED"
    DISABLED = "DISABLED"
    HIDDEN = "HIDDEN"


class CancelState(str, Enum):
    """How a cancelled payment got there; stored, never inferred from `paid_at`."""

    BEFORE_CONFIRM = "cancelled-before-confirm"
    AFTER_CONFIRM = "cancelled-after-confirm"


class LifecycleState(str, Enum):
    """Provider-facing lifecycle code of one payment transaction."""

    CREATED = "created"
    COMPLETED = "completed"
    CANCELLED_BEFORE_CONFIRM = "cancelled-before-confirm"
    CANCELLED_AFTER_CONFIRM = "cancelled-after-confirm"


class Edge(str, Enum):
    CHECKOUT_OPENED = "checkout_opened"
    PROVIDER_CONFIRMS = "provider_confirms"
    VOID_BEFORE_CONFIRM = "void_before_confirm"
    VOID_AFTER_CONFIRM = "void_after_confirm"
    TIMEOUT_BEFORE_CONFIRM = "timeout_before_confirm"


# edge -> ((payment from, to), (booking from, to), (seat from, to))
EDGES: dict[Edge, tuple[tuple[str, str], tuple[str, str], tuple[str, str]]] = {
    Edge.CHECKOUT_OPENED: (
        (PaymentStatus.PENDING, PaymentStatus.PENDING),
        (BookingStatus.PENDING, BookingStatus.PENDING),
        (SeatStatus.RESERVED, SeatStatus.RESERVED),
    ),
    Edge.PROVIDER_CONFIRMS: (
        (PaymentStatus.PENDING, PaymentStatus.COMPLETED),
        (BookingStatus.PENDING, BookingStatus.CONFIRMED),
        (SeatStatus.RESERVED, SeatStatus.OCCUPIED),
    ),
    Edge.VOID_BEFORE_CONFIRM: (
        (PaymentStatus.PENDING, PaymentStatus.CANCELLED),
        (BookingStatus.PENDING, BookingStatus.CANCELLED),
        (SeatStatus.RESERVED, SeatStatus.AVAILABLE),
    ),
    Edge.VOID_AFTER_CONFIRM: (
        (PaymentStatus.COMPLETED, PaymentStatus.CANCELLED),
        (BookingStatus.CONFIRMED, BookingStatus.CANCELLED),
        (SeatStatus.OCCUPIED, SeatStatus.AVAILABLE),
    ),
    Edge.TIMEOUT_BEFORE_CONFIRM: (
        (PaymentStatus.PENDING, PaymentStatus.CANCELLED),
        (BookingStatus.PENDING, BookingStatus.CANCELLED),
        (SeatStatus.RESERVED, SeatStatus.AVAILABLE),
    ),
}

CANCEL_STATE_BY_EDGE: dict[Edge, CancelState] = {
    Edge.VOID_BEFORE_CONFIRM: CancelState.BEFORE_CONFIRM,
    Edge.TIMEOUT_BEFORE_CONFIRM: CancelState.BEFORE_CONFIRM,
    Edge.VOID_AFTER_CONFIRM: CancelState.AFTER_CONFIRM,
}


class InvalidTransition(ValueError):
    """Raised when the current triple is not the source row of an edge."""


def validate_edge(edge: Edge, payment_status: str, booking_status: str, seat_status: str) -> tuple[str, str, str]:
    """Return the target triple, raising when the triple is not the edge's source row."""

    (p_from, p_to), (b_from, b_to), (s_from, s_to) = EDGES[edge]
    current = (payment_status, booking_status, seat_status)
    if current != (p_from, b_from, s_from):
        raise InvalidTransition(
            f"Invalid edge {edge.value}: expected {p_from.value}/{b_from.value}/{s_from.value}, "
            f"got {'/'.join(str(getattr(s, 'value', s)) for s in current)}"
        )
    return p_to.value, b_to.value, s_to.value


def lifecycle_state(status: str, cancel_state: str | None) -> LifecycleState:
    """Project an internal payment status onto the provider lifecycle code."""

    if status == PaymentStatus.PENDING:
        return LifecycleState.CREATED
    if status == PaymentStatus.COMPLETED:
        return LifecycleState.COMPLETED
    if cancel_state == CancelState.AFTER_CONFIRM:
        return LifecycleState.CANCELLED_AFTER_CONFIRM
    return LifecycleState.CANCELLED_BEFORE_CONFIRM

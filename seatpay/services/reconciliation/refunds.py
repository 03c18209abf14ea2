"""Refund arithmetic.

Works on the ledger's major-unit `Decimal` amounts. The coordinator applies
the resulting plan; nothing here touches the database.
"""

from dataclasses import dataclass
from decimal import Decimal

from seatpay.common.money import exact_minor, from_minor, to_minor
from seatpay.common.state_machine import PaymentStatus
from seatpay.services.reconciliation.results import ErrorKind


@dataclass(frozen=True)
class RefundPlan:
    amount: Decimal = Decimal("0")
    refunded_total: Decimal = Decimal("0")
    is_full: bool = False
    error: ErrorKind | None = None
    detail: str = ""


def plan_refund(
    status: str,
    payment_amount: Decimal,
    already_refunded: Decimal | None,
    requested: Decimal | None = None,
) -> RefundPlan:
    """Validate a refund request against the remaining refundable balance.

    `requested=None` means "everything that is left". A refund that brings the
    cumulative total up to the payment amount is a full refund.
    """

    if status != PaymentStatus.COMPLETED:
        return RefundPlan(error=ErrorKind.NOT_COMPLETED, detail="Can only refund completed payments")

    paid_minor = to_minor(payment_amount)
    refunded_minor = to_minor(already_refunded or 0)
    remaining_minor = paid_minor - refunded_minor

    if requested is None:
        amount_minor = remaining_minor
    else:
        try:
            amount_minor = exact_minor(requested)
        except ValueError:
            return RefundPlan(error=ErrorKind.INVALID_REFUND_AMOUNT, detail=f"invalid amount {requested!r}")
    if amount_minor <= 0:
        return RefundPlan(error=ErrorKind.INVALID_REFUND_AMOUNT, detail="Refund amount must be positive")
    if amount_minor > remaining_minor:
        return RefundPlan(
            error=ErrorKind.REFUND_EXCEEDS,
            detail=f"Refund amount exceeds remaining balance {from_minor(remaining_minor)}",
        )

    total_minor = refunded_minor + amount_minor
    return RefundPlan(
        amount=from_minor(amount_minor),
        refunded_total=from_minor(total_minor),
        is_full=total_minor == paid_minor,
    )

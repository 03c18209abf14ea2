"""Explicit outcomes returned by the reconciliation engine.

Provider adapters pattern-match on `Outcome.error` to build their own wire
responses; nothing here knows about provider error codes.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict

from seatpay.common.state_machine import LifecycleState


class ErrorKind(str, Enum):
    ORDER_NOT_FOUND = "order_not_found"
    TRANSACTION_NOT_FOUND = "transaction_not_found"
    INVALID_AMOUNT = "invalid_amount"
    BOOKING_NOT_PENDING = "booking_not_pending"
    ALREADY_COMPLETED = "already_completed"
    ALREADY_CANCELLED = "already_cancelled"
    CONCURRENT_TRANSACTION = "concurrent_transaction"
    TRANSACTION_EXPIRED = "transaction_expired"
    PREPARE_NOT_FOUND = "prepare_not_found"
    NOT_COMPLETED = "not_completed"
    REFUND_EXCEEDS = "refund_exceeds"
    INVALID_REFUND_AMOUNT = "invalid_refund_amount"
    INVALID_STATE = "invalid_state"
    PROVIDER_REPORTED_ERROR = "provider_reported_error"
    RETRY_NOT_ALLOWED = "retry_not_allowed"
    INTERNAL = "internal"


class LedgerEntryView(BaseModel):
    """Read-only projection of one ledger row."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    payment_id: str
    provider: str
    type: str
    amount: Decimal
    status: str
    external_id: str | None = None
    idempotency_key: str | None = None
    error_code: str | None = None
    error_message: str | None = None
    retry_count: int = 0
    max_retries: int = 3
    created_at: datetime


class PaymentView(BaseModel):
    """Read-only projection of one payment."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    booking_id: str
    owner_id: str | None = None
    amount: Decimal
    provider: str
    status: str
    external_id: str | None = None
    paid_at: datetime | None = None
    refunded_amount: Decimal | None = None
    refunded_at: datetime | None = None
    refund_reason: str | None = None
    cancel_state: str | None = None
    cancel_reason: int | None = None
    cancelled_at: datetime | None = None
    created_at: datetime | None = None


class TransactionTimes(BaseModel):
    """Lifecycle timestamps of one provider transaction, epoch milliseconds."""

    create_time: int = 0
    perform_time: int = 0
    cancel_time: int = 0
    state: LifecycleState
    reason: int | None = None


class Outcome(BaseModel):
    """Result of one engine operation.

    `replayed` is set when the answer came from a previously recorded ledger
    row rather than from applying an edge now.
    """

    ok: bool
    error: ErrorKind | None = None
    detail: str = ""
    payment: PaymentView | None = None
    entry: LedgerEntryView | None = None
    times: TransactionTimes | None = None
    data: dict[str, Any] | None = None
    replayed: bool = False

    @classmethod
    def fail(cls, error: ErrorKind, detail: str = "", **kwargs) -> "Outcome":
        return cls(ok=False, error=error, detail=detail, **kwargs)


class PaymentSnapshot(PaymentView):
    """Payment plus its ledger history for diagnostics."""

    transactions: list[LedgerEntryView] = []


class StatementLine(BaseModel):
    """One payment in a reconciliation statement range."""

    external_id: str | None
    payment_id: str
    amount: Decimal
    opened_at: datetime
    times: TransactionTimes


class CheckoutLink(BaseModel):
    """Where to send the customer to pay for one payment."""

    payment_id: str
    payment_url: str
    provider: str
    amount: Decimal
    expires_at: datetime
    reused: bool = False

"""Admin API request/response schemas."""

from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, Field

from seatpay.services.reconciliation.results import LedgerEntryView, PaymentView


class CheckoutRequest(BaseModel):
    """Payload accepted by `POST /payments`."""

    booking_id: str = Field(min_length=1)
    provider: Literal["PAYME", "CLICK"]


class RefundRequest(BaseModel):
    """Omit `amount` to refund the whole remaining balance."""

    payment_id: str = Field(min_length=1)
    amount: Decimal | None = Field(default=None, gt=0)
    reason: str = Field(min_length=1, max_length=500)


class RefundResponse(BaseModel):
    payment: PaymentView
    refunded_amount: Decimal
    full: bool


class PaymentPage(BaseModel):
    items: list[PaymentView]
    total: int
    page: int
    limit: int


class TransactionPage(BaseModel):
    items: list[LedgerEntryView]
    total: int
    page: int
    limit: int

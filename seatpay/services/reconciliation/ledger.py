"""Append-only ledger of protocol steps per payment."""

from datetime import datetime
from decimal import Decimal
from enum import Enum

from seatpay.services.reconciliation.models import Payment, PaymentTransaction
from seatpay.services.reconciliation.store import UnitOfWork


class TransactionType(str, Enum):
    OPEN = "OPEN"
    INSPECT = "INSPECT"
    CONFIRM = "CONFIRM"
    VOID = "VOID"
    REFUND = "REFUND"
    PREPARE = "PREPARE"
    COMPLETE = "COMPLETE"


class TransactionStatus(str, Enum):
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    ERROR = "ERROR"


# Webhook-driven steps that an operator may retry by hand.
RETRYABLE_TYPES = {TransactionType.PREPARE.value, TransactionType.COMPLETE.value}


def idempotency_key(provider: str, type_: TransactionType, external_id: str | None) -> str | None:
    """`provider:type:externalId`, or `None` when no external id is known."""

    if not external_id:
        return None
    return f"{provider}:{type_.value}:{external_id}"


class Ledger:
    """Writes and queries ledger rows through a unit of work."""

    def __init__(self, max_retries: int = 3) -> None:
        self.max_retries = max_retries

    def append(
        self,
        uow: UnitOfWork,
        payment: Payment,
        type_: TransactionType,
        now: datetime,
        status: TransactionStatus = TransactionStatus.SUCCESS,
        amount: Decimal | None = None,
        external_id: str | None = None,
        request_data: dict | None = None,
        response_data: dict | None = None,
        error_code: str | None = None,
        error_message: str | None = None,
    ) -> PaymentTransaction:
        """Append one row; the idempotency key is derived for successful steps only."""

        key = None
        if status == TransactionStatus.SUCCESS:
            key = idempotency_key(payment.provider, type_, external_id)
        entry = PaymentTransaction(
            payment_id=payment.id,
            provider=payment.provider,
            type=type_.value,
            amount=payment.amount if amount is None else amount,
            status=status.value,
            external_id=external_id,
            idempotency_key=key,
            request_data=request_data,
            response_data=response_data,
            error_code=error_code,
            error_message=error_message,
            retry_count=0,
            max_retries=self.max_retries,
            created_at=now,
        )
        uow.add(entry)
        uow.flush()
        return entry

    def recorded(
        self, uow: UnitOfWork, provider: str, type_: TransactionType, external_id: str | None
    ) -> PaymentTransaction | None:
        """Previously recorded successful step for this provider transaction id."""

        key = idempotency_key(provider, type_, external_id)
        if key is None:
            return None
        return uow.entry_by_key(key)

    def successful(
        self, uow: UnitOfWork, payment_id: str, *types: TransactionType, external_id: str | None = None
    ) -> list[PaymentTransaction]:
        return uow.entries(
            payment_id,
            types=tuple(t.value for t in types),
            status=TransactionStatus.SUCCESS.value,
            external_id=external_id,
        )

    def latest(self, uow: UnitOfWork, payment_id: str, *types: TransactionType) -> PaymentTransaction | None:
        rows = self.successful(uow, payment_id, *types)
        return rows[-1] if rows else None


def can_retry(entry: PaymentTransaction) -> tuple[bool, str]:
    """Whether a manual retry of `entry` is allowed, with the refusal reason."""

    if entry.type not in RETRYABLE_TYPES:
        return False, f"{entry.type} entries are not webhook steps"
    if entry.status not in (TransactionStatus.FAILED.value, TransactionStatus.ERROR.value):
        return False, f"entry is {entry.status}"
    if entry.retry_count >= entry.max_retries:
        return False, f"maximum retries ({entry.max_retries}) exceeded"
    return True, ""

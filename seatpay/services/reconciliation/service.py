"""Reconciliation coordinator.

The only component that mutates Payment, Booking and Seat. Every provider
operation becomes one unit of work: idempotency lookup in the ledger, window
check, one edge from `EDGES`, one ledger row and, when something changed, one
outbox notification. A unit either commits whole or leaves nothing behind.
"""

from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from uuid import uuid4

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from seatpay.common.config import settings
from seatpay.common.db import as_utc, epoch_ms
from seatpay.common.events import EventEnvelope
from seatpay.common.logging import logger, payment_id_ctx, trace_id_ctx
from seatpay.common.metrics import (
    idempotent_replays_total,
    payment_confirm_seconds,
    payment_edges_total,
    refunds_total,
    sweeper_cancellations_total,
)
from seatpay.common.money import WireUnit, amount_matches
from seatpay.common.state_machine import (
    CANCEL_STATE_BY_EDGE,
    BookingStatus,
    Edge,
    InvalidTransition,
    LifecycleState,
    PaymentStatus,
    SeatStatus,
    lifecycle_state,
    validate_edge,
)
from seatpay.common.tracing import tracer
from seatpay.services.reconciliation.ledger import (
    Ledger,
    TransactionStatus,
    TransactionType,
    can_retry,
)
from seatpay.services.reconciliation.models import OutboxEvent, Payment, PaymentTransaction
from seatpay.services.reconciliation.refunds import plan_refund
from seatpay.services.reconciliation.results import (
    ErrorKind,
    LedgerEntryView,
    Outcome,
    PaymentSnapshot,
    PaymentView,
    StatementLine,
    TransactionTimes,
)
from seatpay.services.reconciliation.store import PaymentStore, UnitOfWork

# Provider cancel reason recorded when the open window elapses.
TIMEOUT_REASON = 4


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ReconciliationCoordinator:
    """Applies provider operations to the Payment x Booking x Seat triple."""

    def __init__(
        self,
        store: PaymentStore,
        ledger: Ledger | None = None,
        window_seconds: int | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.ledger = ledger or Ledger(max_retries=settings.ledger_max_retries)
        self.window = timedelta(
            seconds=settings.transaction_timeout_seconds if window_seconds is None else window_seconds
        )
        self.clock = clock

    # ------------------------------------------------------------------
    # plumbing
    # ------------------------------------------------------------------

    def _execute(self, operation: str, work: Callable[[UnitOfWork], Outcome]) -> Outcome:
        """Run `work` in one transaction.

        A unique-key violation means a concurrent call won the race; the work
        is run once more so it observes the winner's rows and answers from
        them.
        """

        for attempt in (1, 2):
            try:
                with self.store.begin() as uow:
                    return work(uow)
            except IntegrityError as exc:
                if attempt == 2:
                    logger.error("persistence conflict operation=%s error=%s", operation, exc)
                    return Outcome.fail(ErrorKind.INTERNAL, "persistence conflict")
                logger.info("idempotency race lost operation=%s, re-reading", operation)
            except InvalidTransition as exc:
                logger.warning("rejected edge operation=%s error=%s", operation, exc)
                return Outcome.fail(ErrorKind.INVALID_STATE, str(exc))
            except SQLAlchemyError as exc:
                logger.exception("persistence failure operation=%s error=%s", operation, exc)
                return Outcome.fail(ErrorKind.INTERNAL, "persistence failure")
        return Outcome.fail(ErrorKind.INTERNAL, "unreachable")

    def _is_stale(self, opened_at: datetime | None, now: datetime) -> bool:
        if opened_at is None:
            return False
        return now - as_utc(opened_at) > self.window

    def _notify(self, uow: UnitOfWork, event_type: str, payment: Payment, amount: Decimal | None = None) -> None:
        """Queue a fire-and-forget notification for the fan-out channel."""

        uow.add_outbox(
            OutboxEvent(
                aggregate_type="payment",
                aggregate_id=payment.id,
                event_type=event_type,
                topic=f"payments.{event_type}",
                payload=EventEnvelope(
                    event_type=event_type,
                    aggregate_id=payment.id,
                    trace_id=trace_id_ctx.get() or str(uuid4()),
                    payload={
                        "paymentId": payment.id,
                        "bookingId": payment.booking_id,
                        "provider": payment.provider,
                        "amount": str(payment.amount if amount is None else amount),
                    },
                ).model_dump(),
            )
        )

    def _apply_edge(
        self,
        uow: UnitOfWork,
        edge: Edge,
        payment: Payment,
        now: datetime,
        cancel_reason: int | None = None,
        refund_reason: str | None = None,
    ) -> None:
        """Move the triple along `edge`; raises `InvalidTransition` otherwise."""

        with tracer.start_as_current_span("payment.edge") as span:
            span.set_attribute("payment.id", payment.id)
            span.set_attribute("payment.edge", edge.value)
            booking = uow.booking(payment.booking_id)
            seat = uow.seat(booking.seat_id) if booking else None
            if booking is None or seat is None:
                raise InvalidTransition(f"payment {payment.id} has no booking/seat")

            payment_to, booking_to, seat_to = validate_edge(edge, payment.status, booking.status, seat.status)
            payment.status = payment_to
            booking.status = booking_to
            seat.status = seat_to

            if edge == Edge.PROVIDER_CONFIRMS:
                payment.paid_at = now
            cancel_state = CANCEL_STATE_BY_EDGE.get(edge)
            if cancel_state is not None:
                payment.cancel_state = cancel_state.value
                payment.cancel_reason = cancel_reason
                payment.cancelled_at = now
            if edge == Edge.VOID_AFTER_CONFIRM:
                payment.refunded_amount = payment.amount
                payment.refunded_at = now
                payment.refund_reason = refund_reason
            uow.flush()

        payment_edges_total.labels(edge=edge.value).inc()
        logger.info(
            "transition edge=%s payment_id=%s booking_id=%s seat_id=%s",
            edge.value,
            payment.id,
            booking.id,
            seat.id,
        )

    def _times(self, uow: UnitOfWork, payment: Payment, open_entry: PaymentTransaction) -> TransactionTimes:
        """Lifecycle timestamps of the provider transaction behind `open_entry`."""

        recorded = open_entry.response_data or {}
        create_time = recorded.get("create_time") or epoch_ms(open_entry.created_at)
        if payment.external_id == open_entry.external_id:
            return TransactionTimes(
                create_time=create_time,
                perform_time=epoch_ms(payment.paid_at),
                cancel_time=epoch_ms(payment.cancelled_at),
                state=lifecycle_state(payment.status, payment.cancel_state),
                reason=payment.cancel_reason,
            )
        # Superseded by a later transaction after its window elapsed.
        void = self.ledger.recorded(uow, payment.provider, TransactionType.VOID, open_entry.external_id)
        voided = (void.response_data or {}) if void else {}
        return TransactionTimes(
            create_time=create_time,
            cancel_time=voided.get("cancel_time") or (epoch_ms(void.created_at) if void else 0),
            state=LifecycleState.CANCELLED_BEFORE_CONFIRM,
            reason=voided.get("reason", TIMEOUT_REASON),
        )

    def _cancel_record(self, payment: Payment) -> dict:
        return {
            "cancel_time": epoch_ms(payment.cancelled_at),
            "transaction": payment.id,
            "state": lifecycle_state(payment.status, payment.cancel_state).value,
            "reason": payment.cancel_reason,
        }

    def _force_timeout(
        self, uow: UnitOfWork, payment: Payment, external_id: str | None, now: datetime, trigger: str
    ) -> PaymentTransaction:
        """Timeout-before-confirm edge plus its VOID ledger row."""

        self._apply_edge(uow, Edge.TIMEOUT_BEFORE_CONFIRM, payment, now, cancel_reason=TIMEOUT_REASON)
        entry = self.ledger.append(
            uow,
            payment,
            TransactionType.VOID,
            now,
            external_id=external_id,
            request_data={"reason": TIMEOUT_REASON, "trigger": trigger},
            response_data=self._cancel_record(payment),
        )
        self._notify(uow, "payment_cancelled", payment)
        sweeper_cancellations_total.labels(trigger=trigger).inc()
        logger.warning(
            "open window elapsed, payment cancelled payment_id=%s external_id=%s trigger=%s",
            payment.id,
            external_id,
            trigger,
        )
        return entry

    def _supersede(self, uow: UnitOfWork, payment: Payment, stale: PaymentTransaction, now: datetime) -> None:
        """Void a stale provider transaction without touching the triple."""

        self.ledger.append(
            uow,
            payment,
            TransactionType.VOID,
            now,
            external_id=stale.external_id,
            request_data={"reason": TIMEOUT_REASON, "trigger": "superseded"},
            response_data={
                "cancel_time": epoch_ms(now),
                "transaction": payment.id,
                "state": LifecycleState.CANCELLED_BEFORE_CONFIRM.value,
                "reason": TIMEOUT_REASON,
            },
        )
        sweeper_cancellations_total.labels(trigger="superseded").inc()
        logger.info("stale transaction superseded payment_id=%s external_id=%s", payment.id, stale.external_id)

    def _replayed(self, provider: str, operation: str, outcome: Outcome) -> Outcome:
        idempotent_replays_total.labels(provider=provider, operation=operation).inc()
        outcome.replayed = True
        return outcome

    # ------------------------------------------------------------------
    # checkout
    # ------------------------------------------------------------------

    def open_checkout(self, booking_id: str, provider: str) -> Outcome:
        """Create (or reuse) the PENDING payment of a booking for one provider."""

        def work(uow: UnitOfWork) -> Outcome:
            booking = uow.booking(booking_id)
            if booking is None:
                return Outcome.fail(ErrorKind.ORDER_NOT_FOUND, f"booking {booking_id} not found")
            if booking.status != BookingStatus.PENDING:
                return Outcome.fail(ErrorKind.BOOKING_NOT_PENDING, f"booking is {booking.status}")
            seat = uow.seat(booking.seat_id, lock=False)
            if seat is None or seat.status != SeatStatus.RESERVED:
                return Outcome.fail(ErrorKind.INVALID_STATE, "seat is not reserved for this booking")

            existing = uow.pending_payment_for(booking.id, provider)
            if existing is not None:
                return Outcome(ok=True, payment=PaymentView.model_validate(existing), data={"reused": True})

            now = self.clock()
            payment = Payment(
                booking_id=booking.id,
                owner_id=booking.user_id,
                amount=booking.total_price,
                provider=provider,
                status=PaymentStatus.PENDING.value,
                created_at=now,
                updated_at=now,
            )
            uow.add(payment)
            uow.flush()
            self._notify(uow, "payment_created", payment)
            payment_id_ctx.set(payment.id)
            logger.info("checkout opened payment_id=%s booking_id=%s provider=%s", payment.id, booking.id, provider)
            return Outcome(ok=True, payment=PaymentView.model_validate(payment), data={"reused": False})

        return self._execute("open_checkout", work)

    # ------------------------------------------------------------------
    # stateful RPC operations
    # ------------------------------------------------------------------

    def validate(self, provider: str, order_ref: str, wire_amount, unit: WireUnit, request_data: dict | None = None) -> Outcome:
        """Allow/deny a prospective payment; records an INSPECT row when allowed."""

        def work(uow: UnitOfWork) -> Outcome:
            payment = uow.payment(order_ref, lock=False)
            if payment is None or payment.provider != provider:
                return Outcome.fail(ErrorKind.ORDER_NOT_FOUND, f"order {order_ref} not found")
            if not amount_matches(payment.amount, wire_amount, unit):
                return Outcome.fail(ErrorKind.INVALID_AMOUNT, f"expected {payment.amount}, got {wire_amount}")
            booking = uow.booking(payment.booking_id, lock=False)
            if booking is None or booking.status != BookingStatus.PENDING:
                return Outcome.fail(ErrorKind.BOOKING_NOT_PENDING, "booking is not pending")
            if payment.status == PaymentStatus.COMPLETED:
                return Outcome.fail(ErrorKind.ALREADY_COMPLETED, "payment already completed")
            if payment.status in (PaymentStatus.CANCELLED, PaymentStatus.FAILED):
                return Outcome.fail(ErrorKind.ALREADY_CANCELLED, "payment already cancelled")

            entry = self.ledger.append(uow, payment, TransactionType.INSPECT, self.clock(), request_data=request_data)
            return Outcome(
                ok=True,
                payment=PaymentView.model_validate(payment),
                entry=LedgerEntryView.model_validate(entry),
            )

        return self._execute("validate", work)

    def open_transaction(
        self,
        provider: str,
        external_id: str,
        order_ref: str,
        wire_amount,
        unit: WireUnit,
        request_data: dict | None = None,
    ) -> Outcome:
        """Bind a provider transaction id onto a PENDING payment (idempotent)."""

        def work(uow: UnitOfWork) -> Outcome:
            recorded = self.ledger.recorded(uow, provider, TransactionType.OPEN, external_id)
            if recorded is not None:
                payment = uow.payment(recorded.payment_id, lock=False)
                return self._replayed(
                    provider,
                    "open",
                    Outcome(
                        ok=True,
                        payment=PaymentView.model_validate(payment),
                        entry=LedgerEntryView.model_validate(recorded),
                        times=self._times(uow, payment, recorded),
                    ),
                )

            payment = uow.payment(order_ref)
            if payment is None or payment.provider != provider:
                return Outcome.fail(ErrorKind.ORDER_NOT_FOUND, f"order {order_ref} not found")
            if not amount_matches(payment.amount, wire_amount, unit):
                return Outcome.fail(ErrorKind.INVALID_AMOUNT, f"expected {payment.amount}, got {wire_amount}")

            now = self.clock()
            superseded = None
            if payment.status == PaymentStatus.PENDING and payment.external_id not in (None, external_id):
                superseded = self.ledger.recorded(uow, provider, TransactionType.OPEN, payment.external_id)
                if superseded is not None and not self._is_stale(superseded.created_at, now):
                    return Outcome.fail(
                        ErrorKind.CONCURRENT_TRANSACTION,
                        f"transaction {payment.external_id} is still open",
                    )

            if payment.status == PaymentStatus.COMPLETED:
                return Outcome.fail(ErrorKind.ALREADY_COMPLETED, "payment already completed")
            if payment.status in (PaymentStatus.CANCELLED, PaymentStatus.FAILED):
                return Outcome.fail(ErrorKind.ALREADY_CANCELLED, "payment already cancelled")
            booking = uow.booking(payment.booking_id, lock=False)
            if booking is None or booking.status != BookingStatus.PENDING:
                return Outcome.fail(ErrorKind.BOOKING_NOT_PENDING, "booking is not pending")

            if superseded is not None:
                self._supersede(uow, payment, superseded, now)

            payment.external_id = external_id
            create_time = epoch_ms(now)
            entry = self.ledger.append(
                uow,
                payment,
                TransactionType.OPEN,
                now,
                external_id=external_id,
                request_data=request_data,
                response_data={
                    "create_time": create_time,
                    "transaction": payment.id,
                    "state": LifecycleState.CREATED.value,
                },
            )
            logger.info("transaction opened payment_id=%s external_id=%s", payment.id, external_id)
            return Outcome(
                ok=True,
                payment=PaymentView.model_validate(payment),
                entry=LedgerEntryView.model_validate(entry),
                times=TransactionTimes(create_time=create_time, state=LifecycleState.CREATED),
            )

        return self._execute("open_transaction", work)

    def confirm(self, provider: str, external_id: str, request_data: dict | None = None) -> Outcome:
        """Provider confirms funds: PENDING/PENDING/RESERVED -> COMPLETED/CONFIRMED/OCCUPIED."""

        def work(uow: UnitOfWork) -> Outcome:
            opened = self.ledger.recorded(uow, provider, TransactionType.OPEN, external_id)
            if opened is None:
                return Outcome.fail(ErrorKind.TRANSACTION_NOT_FOUND, f"transaction {external_id} not found")
            payment = uow.payment(opened.payment_id)
            if payment.external_id != external_id:
                return Outcome.fail(ErrorKind.ALREADY_CANCELLED, "transaction was superseded")
            if payment.status == PaymentStatus.COMPLETED:
                return self._replayed(
                    provider,
                    "confirm",
                    Outcome(ok=True, payment=PaymentView.model_validate(payment), times=self._times(uow, payment, opened)),
                )
            if payment.status in (PaymentStatus.CANCELLED, PaymentStatus.FAILED):
                return Outcome.fail(ErrorKind.ALREADY_CANCELLED, "payment already cancelled")

            now = self.clock()
            if self._is_stale(opened.created_at, now):
                self._force_timeout(uow, payment, external_id, now, trigger="inline")
                return Outcome.fail(
                    ErrorKind.TRANSACTION_EXPIRED,
                    "open window elapsed",
                    payment=PaymentView.model_validate(payment),
                )
            booking = uow.booking(payment.booking_id)
            if booking is None or booking.status != BookingStatus.PENDING:
                return Outcome.fail(ErrorKind.BOOKING_NOT_PENDING, "booking is not pending")

            self._apply_edge(uow, Edge.PROVIDER_CONFIRMS, payment, now)
            times = self._times(uow, payment, opened)
            entry = self.ledger.append(
                uow,
                payment,
                TransactionType.CONFIRM,
                now,
                external_id=external_id,
                request_data=request_data,
                response_data={
                    "perform_time": times.perform_time,
                    "transaction": payment.id,
                    "state": times.state.value,
                },
            )
            self._notify(uow, "payment_completed", payment)
            payment_confirm_seconds.labels(provider=provider).observe(
                max(0.0, (now - as_utc(payment.created_at)).total_seconds())
            )
            return Outcome(
                ok=True,
                payment=PaymentView.model_validate(payment),
                entry=LedgerEntryView.model_validate(entry),
                times=times,
            )

        return self._execute("confirm", work)

    def void(self, provider: str, external_id: str, reason_code: int | None, request_data: dict | None = None) -> Outcome:
        """Provider cancels a transaction, before or after confirmation."""

        def work(uow: UnitOfWork) -> Outcome:
            opened = self.ledger.recorded(uow, provider, TransactionType.OPEN, external_id)
            if opened is None:
                return Outcome.fail(ErrorKind.TRANSACTION_NOT_FOUND, f"transaction {external_id} not found")
            voided = self.ledger.recorded(uow, provider, TransactionType.VOID, external_id)
            if voided is not None:
                payment = uow.payment(voided.payment_id, lock=False)
                return self._replayed(
                    provider,
                    "void",
                    Outcome(
                        ok=True,
                        payment=PaymentView.model_validate(payment),
                        entry=LedgerEntryView.model_validate(voided),
                        data=dict(voided.response_data or {}),
                    ),
                )

            payment = uow.payment(opened.payment_id)
            if payment.external_id != external_id:
                return Outcome.fail(ErrorKind.INVALID_STATE, "transaction is no longer bound to its order")
            if payment.status in (PaymentStatus.CANCELLED, PaymentStatus.FAILED):
                # Cancelled elsewhere (full refund); answer from the payment itself.
                return self._replayed(
                    provider,
                    "void",
                    Outcome(ok=True, payment=PaymentView.model_validate(payment), data=self._cancel_record(payment)),
                )

            now = self.clock()
            was_completed = payment.status == PaymentStatus.COMPLETED
            if was_completed:
                self._apply_edge(
                    uow,
                    Edge.VOID_AFTER_CONFIRM,
                    payment,
                    now,
                    cancel_reason=reason_code,
                    refund_reason=f"{provider} cancel reason: {reason_code}",
                )
            else:
                self._apply_edge(uow, Edge.VOID_BEFORE_CONFIRM, payment, now, cancel_reason=reason_code)
            record = self._cancel_record(payment)
            entry = self.ledger.append(
                uow,
                payment,
                TransactionType.VOID,
                now,
                external_id=external_id,
                request_data=request_data,
                response_data=record,
            )
            self._notify(uow, "payment_cancelled", payment)
            if was_completed:
                self._notify(uow, "payment_refunded", payment)
                refunds_total.labels(kind="provider_void").inc()
            return Outcome(
                ok=True,
                payment=PaymentView.model_validate(payment),
                entry=LedgerEntryView.model_validate(entry),
                data=record,
            )

        return self._execute("void", work)

    def inspect(self, provider: str, external_id: str) -> Outcome:
        """Lifecycle projection of one provider transaction.

        Reading a PENDING transaction whose window has elapsed first applies
        the timeout edge, so callers never see a stale `created` state.
        """

        def work(uow: UnitOfWork) -> Outcome:
            opened = self.ledger.recorded(uow, provider, TransactionType.OPEN, external_id)
            if opened is None:
                return Outcome.fail(ErrorKind.TRANSACTION_NOT_FOUND, f"transaction {external_id} not found")
            payment = uow.payment(opened.payment_id)
            now = self.clock()
            if (
                payment.status == PaymentStatus.PENDING
                and payment.external_id == external_id
                and self._is_stale(opened.created_at, now)
            ):
                self._force_timeout(uow, payment, external_id, now, trigger="inline")
            return Outcome(ok=True, payment=PaymentView.model_validate(payment), times=self._times(uow, payment, opened))

        return self._execute("inspect", work)

    def list_range(self, provider: str, start: datetime, end: datetime) -> list[StatementLine]:
        """Payments whose first OPEN row falls inside `[start, end]`."""

        with self.store.read() as uow:
            first_open = (
                select(
                    PaymentTransaction.payment_id.label("payment_id"),
                    func.min(PaymentTransaction.created_at).label("opened_at"),
                )
                .where(
                    PaymentTransaction.provider == provider,
                    PaymentTransaction.type == TransactionType.OPEN.value,
                    PaymentTransaction.status == TransactionStatus.SUCCESS.value,
                )
                .group_by(PaymentTransaction.payment_id)
                .subquery()
            )
            rows = uow.db.execute(
                select(Payment, first_open.c.opened_at)
                .join(first_open, first_open.c.payment_id == Payment.id)
                .where(first_open.c.opened_at >= start, first_open.c.opened_at <= end)
                .order_by(first_open.c.opened_at)
            ).all()

            lines = []
            for payment, opened_at in rows:
                bound = self.ledger.recorded(uow, provider, TransactionType.OPEN, payment.external_id)
                times = (
                    self._times(uow, payment, bound)
                    if bound is not None
                    else TransactionTimes(
                        create_time=epoch_ms(opened_at),
                        state=lifecycle_state(payment.status, payment.cancel_state),
                    )
                )
                lines.append(
                    StatementLine(
                        external_id=payment.external_id,
                        payment_id=payment.id,
                        amount=payment.amount,
                        opened_at=as_utc(opened_at),
                        times=times,
                    )
                )
            return lines

    # ------------------------------------------------------------------
    # two-phase webhook operations
    # ------------------------------------------------------------------

    def prepare(
        self,
        provider: str,
        order_ref: str,
        wire_amount,
        unit: WireUnit,
        provider_txn_id: str,
        provider_error: int = 0,
        request_data: dict | None = None,
    ) -> Outcome:
        """Quote step: validate the order and record a PREPARE row."""

        def work(uow: UnitOfWork) -> Outcome:
            recorded = self.ledger.recorded(uow, provider, TransactionType.PREPARE, provider_txn_id)
            if recorded is not None and recorded.payment_id == order_ref:
                payment = uow.payment(recorded.payment_id, lock=False)
                return self._replayed(
                    provider,
                    "prepare",
                    Outcome(
                        ok=True,
                        payment=PaymentView.model_validate(payment),
                        entry=LedgerEntryView.model_validate(recorded),
                    ),
                )

            payment = uow.payment(order_ref, lock=False)
            if payment is None or payment.provider != provider:
                return Outcome.fail(ErrorKind.ORDER_NOT_FOUND, f"order {order_ref} not found")
            booking = uow.booking(payment.booking_id, lock=False)
            now = self.clock()

            def rejected(kind: ErrorKind, detail: str, code: int | None = None) -> Outcome:
                entry = self.ledger.append(
                    uow,
                    payment,
                    TransactionType.PREPARE,
                    now,
                    status=TransactionStatus.FAILED,
                    external_id=provider_txn_id,
                    request_data=request_data,
                    error_code=str(code) if code is not None else kind.value,
                    error_message=detail,
                )
                return Outcome.fail(
                    kind,
                    detail,
                    payment=PaymentView.model_validate(payment),
                    entry=LedgerEntryView.model_validate(entry),
                )

            if recorded is not None:
                return rejected(ErrorKind.INVALID_STATE, "transaction id already prepared for another order")
            if provider_error < 0:
                return rejected(ErrorKind.PROVIDER_REPORTED_ERROR, "provider reported error", provider_error)
            if not amount_matches(payment.amount, wire_amount, unit):
                return rejected(ErrorKind.INVALID_AMOUNT, f"expected {payment.amount}, got {wire_amount}")
            if payment.status == PaymentStatus.COMPLETED:
                return rejected(ErrorKind.ALREADY_COMPLETED, "already paid")
            if payment.status in (PaymentStatus.CANCELLED, PaymentStatus.FAILED):
                return rejected(ErrorKind.ALREADY_CANCELLED, "transaction cancelled")
            if booking is None or booking.status != BookingStatus.PENDING:
                return rejected(ErrorKind.BOOKING_NOT_PENDING, "booking not available")

            entry = self.ledger.append(
                uow,
                payment,
                TransactionType.PREPARE,
                now,
                external_id=provider_txn_id,
                request_data=request_data,
            )
            logger.info("prepared payment_id=%s provider_txn_id=%s prepare_id=%s", payment.id, provider_txn_id, entry.id)
            return Outcome(ok=True, payment=PaymentView.model_validate(payment), entry=LedgerEntryView.model_validate(entry))

        return self._execute("prepare", work)

    def complete(
        self,
        provider: str,
        order_ref: str,
        wire_amount,
        unit: WireUnit,
        provider_txn_id: str,
        preparation_id: int | None,
        provider_error: int = 0,
        request_data: dict | None = None,
    ) -> Outcome:
        """Second phase: re-validate and apply the confirm edge (idempotent per provider txn id)."""

        def work(uow: UnitOfWork) -> Outcome:
            recorded = self.ledger.recorded(uow, provider, TransactionType.COMPLETE, provider_txn_id)
            if recorded is not None:
                payment = uow.payment(recorded.payment_id, lock=False)
                return self._replayed(
                    provider,
                    "complete",
                    Outcome(
                        ok=True,
                        payment=PaymentView.model_validate(payment),
                        entry=LedgerEntryView.model_validate(recorded),
                    ),
                )

            payment = uow.payment(order_ref)
            if payment is None or payment.provider != provider:
                return Outcome.fail(ErrorKind.ORDER_NOT_FOUND, f"order {order_ref} not found")
            now = self.clock()

            def rejected(kind: ErrorKind, detail: str, code: int | None = None) -> Outcome:
                entry = self.ledger.append(
                    uow,
                    payment,
                    TransactionType.COMPLETE,
                    now,
                    status=TransactionStatus.FAILED,
                    external_id=provider_txn_id,
                    request_data=request_data,
                    error_code=str(code) if code is not None else kind.value,
                    error_message=detail,
                )
                return Outcome.fail(
                    kind,
                    detail,
                    payment=PaymentView.model_validate(payment),
                    entry=LedgerEntryView.model_validate(entry),
                )

            if provider_error < 0:
                if payment.status == PaymentStatus.PENDING:
                    self._apply_edge(uow, Edge.VOID_BEFORE_CONFIRM, payment, now, cancel_reason=provider_error)
                    self._notify(uow, "payment_cancelled", payment)
                return rejected(ErrorKind.PROVIDER_REPORTED_ERROR, "provider reported error", provider_error)
            if payment.status == PaymentStatus.COMPLETED:
                return rejected(ErrorKind.ALREADY_COMPLETED, "already paid")
            if payment.status in (PaymentStatus.CANCELLED, PaymentStatus.FAILED):
                return rejected(ErrorKind.ALREADY_CANCELLED, "transaction cancelled")

            prepared = self.ledger.recorded(uow, provider, TransactionType.PREPARE, provider_txn_id)
            if (
                prepared is None
                or prepared.payment_id != payment.id
                or (preparation_id is not None and prepared.id != preparation_id)
            ):
                return rejected(ErrorKind.PREPARE_NOT_FOUND, "prepare transaction not found")
            if not amount_matches(payment.amount, wire_amount, unit):
                return rejected(ErrorKind.INVALID_AMOUNT, f"expected {payment.amount}, got {wire_amount}")
            if self._is_stale(prepared.created_at, now):
                self._force_timeout(uow, payment, provider_txn_id, now, trigger="inline")
                return rejected(ErrorKind.TRANSACTION_EXPIRED, "open window elapsed")
            booking = uow.booking(payment.booking_id)
            if booking is None or booking.status != BookingStatus.PENDING:
                return rejected(ErrorKind.BOOKING_NOT_PENDING, "booking not available")

            payment.external_id = provider_txn_id
            self._apply_edge(uow, Edge.PROVIDER_CONFIRMS, payment, now)
            entry = self.ledger.append(
                uow,
                payment,
                TransactionType.COMPLETE,
                now,
                external_id=provider_txn_id,
                request_data=request_data,
                response_data={"prepare_id": prepared.id},
            )
            self._notify(uow, "payment_completed", payment)
            payment_confirm_seconds.labels(provider=provider).observe(
                max(0.0, (now - as_utc(payment.created_at)).total_seconds())
            )
            return Outcome(ok=True, payment=PaymentView.model_validate(payment), entry=LedgerEntryView.model_validate(entry))

        return self._execute("complete", work)

    # ------------------------------------------------------------------
    # refunds, expiry, retries
    # ------------------------------------------------------------------

    def refund(self, payment_id: str, amount: Decimal | None = None, reason: str | None = None) -> Outcome:
        """Partial or full reversal of a COMPLETED payment."""

        def work(uow: UnitOfWork) -> Outcome:
            payment = uow.payment(payment_id)
            if payment is None:
                return Outcome.fail(ErrorKind.ORDER_NOT_FOUND, f"payment {payment_id} not found")
            plan = plan_refund(payment.status, payment.amount, payment.refunded_amount, amount)
            if plan.error is not None:
                return Outcome.fail(plan.error, plan.detail, payment=PaymentView.model_validate(payment))

            now = self.clock()
            refund_reason = reason or "Manual refund"
            if plan.is_full:
                self._apply_edge(uow, Edge.VOID_AFTER_CONFIRM, payment, now, refund_reason=refund_reason)
                self._notify(uow, "payment_cancelled", payment)
            payment.refunded_amount = plan.refunded_total
            payment.refunded_at = now
            payment.refund_reason = refund_reason
            entry = self.ledger.append(
                uow,
                payment,
                TransactionType.REFUND,
                now,
                amount=plan.amount,
                request_data={"amount": str(plan.amount), "reason": refund_reason},
                response_data={"refunded_total": str(plan.refunded_total), "full": plan.is_full},
            )
            self._notify(uow, "payment_refunded", payment, amount=plan.amount)
            refunds_total.labels(kind="full" if plan.is_full else "partial").inc()
            logger.info(
                "refund applied payment_id=%s amount=%s total=%s full=%s",
                payment.id,
                plan.amount,
                plan.refunded_total,
                plan.is_full,
            )
            return Outcome(
                ok=True,
                payment=PaymentView.model_validate(payment),
                entry=LedgerEntryView.model_validate(entry),
                data={"refunded_amount": plan.amount, "full": plan.is_full},
            )

        return self._execute("refund", work)

    def expire(self, payment_id: str, trigger: str = "background") -> Outcome:
        """Force the timeout edge on a PENDING payment whose window has elapsed."""

        def work(uow: UnitOfWork) -> Outcome:
            payment = uow.payment(payment_id)
            if payment is None:
                return Outcome.fail(ErrorKind.ORDER_NOT_FOUND, f"payment {payment_id} not found")
            if payment.status != PaymentStatus.PENDING:
                return Outcome.fail(ErrorKind.INVALID_STATE, f"payment is {payment.status}")

            now = self.clock()
            last = self.ledger.latest(uow, payment.id, TransactionType.OPEN, TransactionType.PREPARE)
            if payment.external_id:
                bound = self.ledger.recorded(uow, payment.provider, TransactionType.OPEN, payment.external_id)
                last = bound or last
            opened_at = last.created_at if last is not None else payment.created_at
            if not self._is_stale(opened_at, now):
                return Outcome.fail(ErrorKind.INVALID_STATE, "open window has not elapsed")

            external_id = last.external_id if last is not None else None
            entry = self._force_timeout(uow, payment, external_id, now, trigger=trigger)
            return Outcome(ok=True, payment=PaymentView.model_validate(payment), entry=LedgerEntryView.model_validate(entry))

        return self._execute("expire", work)

    def stale_candidates(self, limit: int) -> list[str]:
        """Ids of PENDING payments old enough that their window may have elapsed."""

        with self.store.read() as uow:
            return [p.id for p in uow.stale_pending_payments(None, self.clock() - self.window, limit)]

    def retry_entry(self, entry_id: int) -> Outcome:
        """Count a manual retry of a failed webhook step."""

        def work(uow: UnitOfWork) -> Outcome:
            entry = uow.entry(entry_id, lock=True)
            if entry is None:
                return Outcome.fail(ErrorKind.TRANSACTION_NOT_FOUND, f"transaction {entry_id} not found")
            allowed, detail = can_retry(entry)
            if not allowed:
                return Outcome.fail(ErrorKind.RETRY_NOT_ALLOWED, detail, entry=LedgerEntryView.model_validate(entry))
            entry.retry_count += 1
            uow.flush()
            logger.info("ledger retry entry_id=%s retry_count=%s", entry.id, entry.retry_count)
            return Outcome(ok=True, entry=LedgerEntryView.model_validate(entry))

        return self._execute("retry_entry", work)

    # ------------------------------------------------------------------
    # diagnostics
    # ------------------------------------------------------------------

    def snapshot(self, payment_id: str) -> PaymentSnapshot | None:
        """Current payment state with its full ledger history, newest first."""

        with self.store.read() as uow:
            payment = uow.payment(payment_id, lock=False)
            if payment is None:
                return None
            entries = uow.entries(payment.id)
            return PaymentSnapshot(
                **PaymentView.model_validate(payment).model_dump(),
                transactions=[LedgerEntryView.model_validate(e) for e in reversed(entries)],
            )

    def list_payments(
        self,
        booking_id: str | None = None,
        provider: str | None = None,
        status: str | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> tuple[list[PaymentView], int]:
        with self.store.read() as uow:
            rows, total = uow.list_payments(booking_id, provider, status, (page - 1) * limit, limit)
            return [PaymentView.model_validate(p) for p in rows], total

    def list_transactions(
        self,
        payment_id: str | None = None,
        provider: str | None = None,
        type_: str | None = None,
        status: str | None = None,
        page: int = 1,
        limit: int = 50,
    ) -> tuple[list[LedgerEntryView], int]:
        with self.store.read() as uow:
            rows, total = uow.list_entries(payment_id, provider, type_, status, (page - 1) * limit, limit)
            return [LedgerEntryView.model_validate(e) for e in rows], total

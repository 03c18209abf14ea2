"""Persistence port for the reconciliation engine.

`PaymentStore.begin()` hands out a `UnitOfWork` bound to one database
transaction. Everything written through it commits together or not at all.
"""

from contextlib import contextmanager
from datetime import datetime
from typing import Iterator

from sqlalchemy import func, select

from seatpay.services.reconciliation.models import (
    Booking,
    OutboxEvent,
    Payment,
    PaymentTransaction,
    Seat,
)


class UnitOfWork:
    """Row-level reads and writes inside one open transaction."""

    def __init__(self, db) -> None:
        self.db = db

    def payment(self, payment_id: str, lock: bool = True) -> Payment | None:
        return self.db.get(Payment, payment_id, with_for_update=lock)

    def booking(self, booking_id: str, lock: bool = True) -> Booking | None:
        return self.db.get(Booking, booking_id, with_for_update=lock)

    def seat(self, seat_id: str, lock: bool = True) -> Seat | None:
        return self.db.get(Seat, seat_id, with_for_update=lock)

    def pending_payment_for(self, booking_id: str, provider: str) -> Payment | None:
        return self.db.execute(
            select(Payment)
            .where(
                Payment.booking_id == booking_id,
                Payment.provider == provider,
                Payment.status == "PENDING",
            )
            .order_by(Payment.created_at)
            .limit(1)
        ).scalar_one_or_none()

    def entry(self, entry_id: int, lock: bool = False) -> PaymentTransaction | None:
        return self.db.get(PaymentTransaction, entry_id, with_for_update=lock)

    def entry_by_key(self, idempotency_key: str) -> PaymentTransaction | None:
        return self.db.execute(
            select(PaymentTransaction).where(PaymentTransaction.idempotency_key == idempotency_key)
        ).scalar_one_or_none()

    def entries(
        self,
        payment_id: str,
        types: tuple[str, ...] | None = None,
        status: str | None = None,
        external_id: str | None = None,
    ) -> list[PaymentTransaction]:
        stmt = select(PaymentTransaction).where(PaymentTransaction.payment_id == payment_id)
        if types:
            stmt = stmt.where(PaymentTransaction.type.in_(types))
        if status:
            stmt = stmt.where(PaymentTransaction.status == status)
        if external_id:
            stmt = stmt.where(PaymentTransaction.external_id == external_id)
        return list(
            self.db.execute(stmt.order_by(PaymentTransaction.created_at, PaymentTransaction.id)).scalars().all()
        )

    def stale_pending_payments(self, provider: str | None, opened_before: datetime, limit: int) -> list[Payment]:
        """PENDING payments whose last OPEN/PREPARE (or creation) is before the cutoff.

        Oldest activity first; a payment kept alive by a fresh step never
        takes a slot from an abandoned one.
        """

        last_step = (
            select(
                PaymentTransaction.payment_id.label("payment_id"),
                func.max(PaymentTransaction.created_at).label("opened_at"),
            )
            .where(
                PaymentTransaction.type.in_(("OPEN", "PREPARE")),
                PaymentTransaction.status == "SUCCESS",
            )
            .group_by(PaymentTransaction.payment_id)
            .subquery()
        )
        last_activity = func.coalesce(last_step.c.opened_at, Payment.created_at)
        stmt = (
            select(Payment)
            .outerjoin(last_step, last_step.c.payment_id == Payment.id)
            .where(Payment.status == "PENDING", last_activity < opened_before)
        )
        if provider:
            stmt = stmt.where(Payment.provider == provider)
        return list(self.db.execute(stmt.order_by(last_activity).limit(limit)).scalars().all())

    def list_payments(
        self, booking_id: str | None, provider: str | None, status: str | None, offset: int, limit: int
    ) -> tuple[list[Payment], int]:
        stmt = select(Payment)
        if booking_id:
            stmt = stmt.where(Payment.booking_id == booking_id)
        if provider:
            stmt = stmt.where(Payment.provider == provider)
        if status:
            stmt = stmt.where(Payment.status == status)
        total = self.db.execute(select(func.count()).select_from(stmt.subquery())).scalar_one()
        rows = self.db.execute(stmt.order_by(Payment.created_at.desc()).offset(offset).limit(limit)).scalars().all()
        return list(rows), total

    def list_entries(
        self,
        payment_id: str | None,
        provider: str | None,
        type_: str | None,
        status: str | None,
        offset: int,
        limit: int,
    ) -> tuple[list[PaymentTransaction], int]:
        stmt = select(PaymentTransaction)
        if payment_id:
            stmt = stmt.where(PaymentTransaction.payment_id == payment_id)
        if provider:
            stmt = stmt.where(PaymentTransaction.provider == provider)
        if type_:
            stmt = stmt.where(PaymentTransaction.type == type_)
        if status:
            stmt = stmt.where(PaymentTransaction.status == status)
        total = self.db.execute(select(func.count()).select_from(stmt.subquery())).scalar_one()
        rows = self.db.execute(
            stmt.order_by(PaymentTransaction.created_at.desc(), PaymentTransaction.id.desc()).offset(offset).limit(limit)
        ).scalars().all()
        return list(rows), total

    def add(self, row) -> None:
        self.db.add(row)

    def add_outbox(self, event: OutboxEvent) -> None:
        self.db.add(event)

    def flush(self) -> None:
        self.db.flush()


class PaymentStore:
    """Factory for units of work over one session factory."""

    def __init__(self, session_factory) -> None:
        self.session_factory = session_factory

    @contextmanager
    def begin(self) -> Iterator[UnitOfWork]:
        """Open a transaction; commit on clean exit, roll back on any exception."""

        with self.session_factory() as db:
            try:
                yield UnitOfWork(db)
                db.commit()
            except Exception:
                db.rollback()
                raise

    @contextmanager
    def read(self) -> Iterator[UnitOfWork]:
        """Read-only session; never commits."""

        with self.session_factory() as db:
            try:
                yield UnitOfWork(db)
            finally:
                db.rollback()

"""Shared fixtures: in-memory SQLite store, fake clock, seeded bookings."""

import os

os.environ["POSTGRES_DSN"] = "sqlite+pysqlite://"
os.environ["API_KEY"] = "test-api-key"
os.environ["OTEL_EXPORTER_OTLP_ENDPOINT"] = ""

from datetime import datetime, timedelta, timezone  # noqa: E402
from decimal import Decimal  # noqa: E402

import pytest  # noqa: E402
from sqlalchemy import create_engine, select  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from seatpay.common.db import Base  # noqa: E402
from seatpay.common.money import WireUnit  # noqa: E402
from seatpay.services.reconciliation.models import (  # noqa: E402
    Booking,
    OutboxEvent,
    Payment,
    PaymentTransaction,
    Seat,
)
from seatpay.services.reconciliation.service import ReconciliationCoordinator  # noqa: E402
from seatpay.services.reconciliation.store import PaymentStore  # noqa: E402

WINDOW_SECONDS = 12 * 60 * 60


class FakeClock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite+pysqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def coordinator(session_factory, clock):
    return ReconciliationCoordinator(PaymentStore(session_factory), window_seconds=WINDOW_SECONDS, clock=clock)


@pytest.fixture
def seed_booking(session_factory):
    """Insert a seat + booking; returns `(booking_id, seat_id)`."""

    def _seed(price: str = "50000.00", booking_status: str = "PENDING", seat_status: str = "RESERVED"):
        with session_factory() as db:
            seat = Seat(session_id="session-1", status=seat_status)
            db.add(seat)
            db.flush()
            booking = Booking(
                session_id="session-1",
                seat_id=seat.id,
                user_id="user-1",
                status=booking_status,
                total_price=Decimal(price),
            )
            db.add(booking)
            db.commit()
            return booking.id, seat.id

    return _seed


@pytest.fixture
def checkout(coordinator, seed_booking):
    """Seed a booking and open its checkout; returns the payment id."""

    def _checkout(provider: str = "PAYME", price: str = "50000.00") -> str:
        booking_id, _ = seed_booking(price=price)
        outcome = coordinator.open_checkout(booking_id, provider)
        assert outcome.ok, outcome.detail
        return outcome.payment.id

    return _checkout


@pytest.fixture
def completed_payment(coordinator, checkout):
    """A Payme payment taken through Open + Confirm."""

    def _completed(price: str = "50000.00", external_id: str = "txn-completed") -> str:
        payment_id = checkout("PAYME", price)
        minor = int(Decimal(price) * 100)
        assert coordinator.open_transaction("PAYME", external_id, payment_id, minor, WireUnit.MINOR).ok
        assert coordinator.confirm("PAYME", external_id).ok
        return payment_id

    return _completed


@pytest.fixture
def triple(session_factory):
    """Read back `(payment, booking, seat)` statuses for a payment."""

    def _read(payment_id: str) -> tuple[str, str, str]:
        with session_factory() as db:
            payment = db.get(Payment, payment_id)
            booking = db.get(Booking, payment.booking_id)
            seat = db.get(Seat, booking.seat_id)
            return payment.status, booking.status, seat.status

    return _read


@pytest.fixture
def load_payment(session_factory):
    def _load(payment_id: str) -> Payment:
        with session_factory() as db:
            return db.get(Payment, payment_id)

    return _load


@pytest.fixture
def ledger_rows(session_factory):
    """Ledger rows of a payment, oldest first, optionally filtered by type."""

    def _rows(payment_id: str, type_: str | None = None) -> list[PaymentTransaction]:
        with session_factory() as db:
            stmt = select(PaymentTransaction).where(PaymentTransaction.payment_id == payment_id)
            if type_:
                stmt = stmt.where(PaymentTransaction.type == type_)
            return list(db.execute(stmt.order_by(PaymentTransaction.id)).scalars().all())

    return _rows


@pytest.fixture
def outbox_events(session_factory):
    def _events(payment_id: str | None = None) -> list[OutboxEvent]:
        with session_factory() as db:
            stmt = select(OutboxEvent)
            if payment_id:
                stmt = stmt.where(OutboxEvent.aggregate_id == payment_id)
            return list(db.execute(stmt.order_by(OutboxEvent.created_at)).scalars().all())

    return _events

"""Coordinator behaviour: edges, idempotency, the open window and atomicity."""

from datetime import timedelta
from decimal import Decimal

from sqlalchemy.exc import OperationalError

from seatpay.common.money import WireUnit
from seatpay.common.state_machine import LifecycleState
from seatpay.services.reconciliation.models import Booking
from seatpay.services.reconciliation.results import ErrorKind

PRICE_MINOR = 5_000_000
PENDING = ("PENDING", "PENDING", "RESERVED")
COMPLETED = ("COMPLETED", "CONFIRMED", "OCCUPIED")
RELEASED = ("CANCELLED", "CANCELLED", "AVAILABLE")


def open_txn(coordinator, payment_id, external_id, amount=PRICE_MINOR):
    return coordinator.open_transaction("PAYME", external_id, payment_id, amount, WireUnit.MINOR)


def test_checkout_creates_pending_payment(coordinator, seed_booking, outbox_events):
    booking_id, _ = seed_booking()

    outcome = coordinator.open_checkout(booking_id, "PAYME")

    assert outcome.ok
    assert outcome.payment.status == "PENDING"
    assert outcome.payment.amount == Decimal("50000.00")
    assert [e.event_type for e in outbox_events(outcome.payment.id)] == ["payment_created"]


def test_checkout_reuses_pending_payment_per_provider(coordinator, seed_booking):
    booking_id, _ = seed_booking()

    first = coordinator.open_checkout(booking_id, "PAYME")
    second = coordinator.open_checkout(booking_id, "PAYME")
    other = coordinator.open_checkout(booking_id, "CLICK")

    assert second.payment.id == first.payment.id
    assert second.data["reused"] is True
    assert other.payment.id != first.payment.id


def test_checkout_requires_pending_booking_and_reserved_seat(coordinator, seed_booking):
    confirmed, _ = seed_booking(booking_status="CONFIRMED", seat_status="OCCUPIED")
    loose_seat, _ = seed_booking(seat_status="AVAILABLE")

    assert coordinator.open_checkout(confirmed, "PAYME").error == ErrorKind.BOOKING_NOT_PENDING
    assert coordinator.open_checkout(loose_seat, "PAYME").error == ErrorKind.INVALID_STATE
    assert coordinator.open_checkout("missing", "PAYME").error == ErrorKind.ORDER_NOT_FOUND


def test_open_confirm_void_scenario(coordinator, checkout, triple, load_payment, ledger_rows):
    payment_id = checkout()

    opened = open_txn(coordinator, payment_id, "X1")
    assert opened.ok
    assert opened.times.state == LifecycleState.CREATED
    assert triple(payment_id) == PENDING

    confirmed = coordinator.confirm("PAYME", "X1")
    assert confirmed.ok
    assert confirmed.times.state == LifecycleState.COMPLETED
    assert triple(payment_id) == COMPLETED

    voided = coordinator.void("PAYME", "X1", 1)
    assert voided.ok
    assert voided.data["state"] == LifecycleState.CANCELLED_AFTER_CONFIRM.value
    assert triple(payment_id) == RELEASED

    payment = load_payment(payment_id)
    assert payment.refunded_amount == Decimal("50000.00")
    assert payment.cancel_state == "cancelled-after-confirm"
    assert payment.cancel_reason == 1
    assert [row.type for row in ledger_rows(payment_id)] == ["OPEN", "CONFIRM", "VOID"]


def test_open_is_idempotent(coordinator, checkout, ledger_rows):
    payment_id = checkout()

    first = open_txn(coordinator, payment_id, "X1")
    second = open_txn(coordinator, payment_id, "X1")

    assert second.replayed
    assert second.times == first.times
    assert second.payment.id == first.payment.id
    assert len(ledger_rows(payment_id, "OPEN")) == 1


def test_amount_mismatch_never_mutates(coordinator, checkout, triple, ledger_rows, load_payment):
    payment_id = checkout()

    assert coordinator.validate("PAYME", payment_id, PRICE_MINOR - 1, WireUnit.MINOR).error == ErrorKind.INVALID_AMOUNT
    assert open_txn(coordinator, payment_id, "X1", PRICE_MINOR + 100).error == ErrorKind.INVALID_AMOUNT

    assert triple(payment_id) == PENDING
    assert load_payment(payment_id).external_id is None
    assert ledger_rows(payment_id) == []


def test_second_open_rejected_inside_window(coordinator, checkout, clock):
    payment_id = checkout()
    assert open_txn(coordinator, payment_id, "A").ok

    clock.advance(hours=11)
    outcome = open_txn(coordinator, payment_id, "B")

    assert outcome.error == ErrorKind.CONCURRENT_TRANSACTION


def test_second_open_after_window_supersedes_first(coordinator, checkout, clock, triple, load_payment):
    payment_id = checkout()
    assert open_txn(coordinator, payment_id, "A").ok

    clock.advance(hours=12, seconds=1)
    outcome = open_txn(coordinator, payment_id, "B")

    assert outcome.ok
    assert load_payment(payment_id).external_id == "B"
    inspected = coordinator.inspect("PAYME", "A")
    assert inspected.times.state == LifecycleState.CANCELLED_BEFORE_CONFIRM
    assert inspected.times.reason == 4
    assert coordinator.confirm("PAYME", "A").error == ErrorKind.ALREADY_CANCELLED

    assert coordinator.confirm("PAYME", "B").ok
    assert triple(payment_id) == COMPLETED


def test_confirm_after_window_forces_release(coordinator, checkout, clock, triple, load_payment, ledger_rows):
    payment_id = checkout()
    assert open_txn(coordinator, payment_id, "X1").ok

    clock.advance(hours=12, seconds=1)
    outcome = coordinator.confirm("PAYME", "X1")

    assert outcome.error == ErrorKind.TRANSACTION_EXPIRED
    assert triple(payment_id) == RELEASED
    assert load_payment(payment_id).cancel_reason == 4

    again = coordinator.confirm("PAYME", "X1")
    assert again.error == ErrorKind.ALREADY_CANCELLED
    assert len(ledger_rows(payment_id, "VOID")) == 1


def test_inspect_applies_timeout_exactly_once(coordinator, checkout, clock, triple, ledger_rows):
    payment_id = checkout()
    assert open_txn(coordinator, payment_id, "X1").ok

    fresh = coordinator.inspect("PAYME", "X1")
    assert fresh.times.state == LifecycleState.CREATED

    clock.advance(hours=13)
    first = coordinator.inspect("PAYME", "X1")
    second = coordinator.inspect("PAYME", "X1")

    assert first.times.state == LifecycleState.CANCELLED_BEFORE_CONFIRM
    assert second.times == first.times
    assert triple(payment_id) == RELEASED
    assert len(ledger_rows(payment_id, "VOID")) == 1


def test_confirm_is_idempotent(coordinator, checkout, ledger_rows, outbox_events):
    payment_id = checkout()
    assert open_txn(coordinator, payment_id, "X1").ok

    first = coordinator.confirm("PAYME", "X1")
    second = coordinator.confirm("PAYME", "X1")

    assert second.ok and second.replayed
    assert second.times.perform_time == first.times.perform_time
    assert len(ledger_rows(payment_id, "CONFIRM")) == 1
    assert [e.event_type for e in outbox_events(payment_id)].count("payment_completed") == 1


def test_void_before_confirm(coordinator, checkout, triple, load_payment):
    payment_id = checkout()
    assert open_txn(coordinator, payment_id, "X1").ok

    first = coordinator.void("PAYME", "X1", 3)
    second = coordinator.void("PAYME", "X1", 3)

    assert first.data["state"] == LifecycleState.CANCELLED_BEFORE_CONFIRM.value
    assert second.replayed
    assert second.data == first.data
    assert triple(payment_id) == RELEASED
    payment = load_payment(payment_id)
    assert payment.cancel_state == "cancelled-before-confirm"
    assert payment.refunded_amount is None


def test_unknown_transaction(coordinator):
    assert coordinator.confirm("PAYME", "nope").error == ErrorKind.TRANSACTION_NOT_FOUND
    assert coordinator.void("PAYME", "nope", 1).error == ErrorKind.TRANSACTION_NOT_FOUND
    assert coordinator.inspect("PAYME", "nope").error == ErrorKind.TRANSACTION_NOT_FOUND


def test_validate(coordinator, checkout, completed_payment, ledger_rows):
    payment_id = checkout()

    assert coordinator.validate("PAYME", payment_id, PRICE_MINOR, WireUnit.MINOR).ok
    assert [row.type for row in ledger_rows(payment_id)] == ["INSPECT"]
    assert coordinator.validate("PAYME", "missing", PRICE_MINOR, WireUnit.MINOR).error == ErrorKind.ORDER_NOT_FOUND
    assert coordinator.validate("CLICK", payment_id, PRICE_MINOR, WireUnit.MINOR).error == ErrorKind.ORDER_NOT_FOUND

    done = completed_payment()
    assert coordinator.validate("PAYME", done, PRICE_MINOR, WireUnit.MINOR).error == ErrorKind.BOOKING_NOT_PENDING


def test_open_rejected_when_completed(coordinator, completed_payment):
    payment_id = completed_payment(external_id="first")

    assert open_txn(coordinator, payment_id, "second").error == ErrorKind.ALREADY_COMPLETED


def test_list_range_uses_first_open_time(coordinator, checkout, clock):
    early = checkout()
    assert open_txn(coordinator, early, "E1").ok
    start = clock()
    clock.advance(hours=1)
    late = checkout()
    assert open_txn(coordinator, late, "L1").ok

    everything = coordinator.list_range("PAYME", start - timedelta(minutes=1), clock() + timedelta(minutes=1))
    only_late = coordinator.list_range("PAYME", start + timedelta(minutes=1), clock() + timedelta(minutes=1))

    assert [line.external_id for line in everything] == ["E1", "L1"]
    assert [line.payment_id for line in only_late] == [late]
    assert only_late[0].times.state == LifecycleState.CREATED


def test_failed_ledger_write_rolls_back_the_edge(coordinator, checkout, triple, monkeypatch):
    payment_id = checkout()
    assert open_txn(coordinator, payment_id, "X1").ok

    def broken_append(*args, **kwargs):
        raise OperationalError("INSERT INTO payment_transactions", {}, Exception("disk I/O error"))

    monkeypatch.setattr(coordinator.ledger, "append", broken_append)
    outcome = coordinator.confirm("PAYME", "X1")

    assert outcome.error == ErrorKind.INTERNAL
    assert triple(payment_id) == PENDING


def test_lost_race_replays_winner(coordinator, checkout, ledger_rows, monkeypatch):
    payment_id = checkout()
    assert open_txn(coordinator, payment_id, "X1").ok

    real_recorded = coordinator.ledger.recorded
    calls = []

    def stale_then_real(uow, provider, type_, external_id):
        calls.append(type_)
        if len(calls) == 1:
            return None
        return real_recorded(uow, provider, type_, external_id)

    monkeypatch.setattr(coordinator.ledger, "recorded", stale_then_real)
    outcome = open_txn(coordinator, payment_id, "X1")

    assert outcome.ok and outcome.replayed
    assert len(ledger_rows(payment_id, "OPEN")) == 1


def test_snapshot_includes_ledger_history(coordinator, completed_payment):
    payment_id = completed_payment()

    snapshot = coordinator.snapshot(payment_id)

    assert snapshot.status == "COMPLETED"
    assert [entry.type for entry in snapshot.transactions] == ["CONFIRM", "OPEN"]
    assert coordinator.snapshot("missing") is None


def test_rejected_open_leaves_stale_transaction_unvoided(coordinator, checkout, clock, session_factory, load_payment, ledger_rows):
    payment_id = checkout()
    assert open_txn(coordinator, payment_id, "A").ok
    with session_factory() as db:
        db.get(Booking, load_payment(payment_id).booking_id).status = "EXPIRED"
        db.commit()

    clock.advance(hours=12, seconds=1)
    outcome = open_txn(coordinator, payment_id, "B")

    assert outcome.error == ErrorKind.BOOKING_NOT_PENDING
    assert load_payment(payment_id).external_id == "A"
    assert ledger_rows(payment_id, "VOID") == []

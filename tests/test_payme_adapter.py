import base64

import pytest

from seatpay.services.payme.service import PaymeAdapter

AUTH = "Basic " + base64.b64encode(b"Paycom:secret").decode()
PRICE_MINOR = 5_000_000


@pytest.fixture
def payme(coordinator):
    return PaymeAdapter(coordinator, merchant_id="m-1", login="Paycom", secret_key="secret", checkout_url="https://checkout.test")


def rpc(payme, method, params, request_id=1, authorization=AUTH):
    return payme.handle({"method": method, "params": params, "id": request_id}, authorization)


def ms(dt):
    return int(dt.timestamp() * 1000)


def test_rejects_bad_credentials(payme, checkout):
    payment_id = checkout()
    params = {"amount": PRICE_MINOR, "account": {"order_id": payment_id}}

    assert rpc(payme, "CheckPerformTransaction", params, authorization=None)["error"]["code"] == -32504
    wrong = "Basic " + base64.b64encode(b"Paycom:other").decode()
    assert rpc(payme, "CheckPerformTransaction", params, authorization=wrong)["error"]["code"] == -32504


def test_malformed_calls(payme):
    unknown = payme.handle({"method": "Refund", "params": {}, "id": 7}, AUTH)
    assert unknown["error"]["code"] == -32700
    assert unknown["id"] == 7

    missing_params = rpc(payme, "CreateTransaction", {"account": {"order_id": "x"}}, request_id=8)
    assert missing_params["error"]["code"] == -32700
    assert missing_params["id"] == 8

    assert payme.handle(["not", "an", "object"], AUTH)["error"]["code"] == -32700


def test_full_lifecycle(payme, checkout, clock, triple):
    payment_id = checkout()
    account = {"order_id": payment_id}

    allowed = rpc(payme, "CheckPerformTransaction", {"amount": PRICE_MINOR, "account": account})
    assert allowed == {"result": {"allow": True}, "id": 1}

    created = rpc(payme, "CreateTransaction", {"id": "p-1", "time": ms(clock()), "amount": PRICE_MINOR, "account": account}, 2)
    assert created == {"result": {"create_time": ms(clock()), "transaction": payment_id, "state": 1}, "id": 2}

    clock.advance(minutes=5)
    performed = rpc(payme, "PerformTransaction", {"id": "p-1"}, 3)
    assert performed["result"]["state"] == 2
    assert performed["result"]["perform_time"] == ms(clock())
    assert triple(payment_id) == ("COMPLETED", "CONFIRMED", "OCCUPIED")

    clock.advance(minutes=5)
    cancelled = rpc(payme, "CancelTransaction", {"id": "p-1", "reason": 5}, 4)
    assert cancelled["result"] == {"cancel_time": ms(clock()), "transaction": payment_id, "state": -2}
    assert triple(payment_id) == ("CANCELLED", "CANCELLED", "AVAILABLE")

    checked = rpc(payme, "CheckTransaction", {"id": "p-1"}, 5)["result"]
    assert checked["state"] == -2
    assert checked["reason"] == 5
    assert checked["perform_time"] == performed["result"]["perform_time"]
    assert checked["cancel_time"] == cancelled["result"]["cancel_time"]


def test_create_replay_returns_identical_result(payme, checkout, clock):
    payment_id = checkout()
    params = {"id": "p-2", "time": ms(clock()), "amount": PRICE_MINOR, "account": {"order_id": payment_id}}

    first = rpc(payme, "CreateTransaction", params)
    clock.advance(minutes=1)
    second = rpc(payme, "CreateTransaction", params)

    assert second == first


def test_error_codes(payme, checkout):
    payment_id = checkout()

    wrong_amount = rpc(payme, "CheckPerformTransaction", {"amount": 100, "account": {"order_id": payment_id}})
    assert wrong_amount["error"]["code"] == -31001
    unknown_order = rpc(payme, "CheckPerformTransaction", {"amount": PRICE_MINOR, "account": {"order_id": "nope"}})
    assert unknown_order["error"]["code"] == -31050
    assert rpc(payme, "PerformTransaction", {"id": "ghost"})["error"]["code"] == -31003
    assert rpc(payme, "CheckTransaction", {"id": "ghost"})["error"]["code"] == -31003


def test_second_transaction_inside_window_cannot_perform(payme, checkout):
    payment_id = checkout()
    account = {"order_id": payment_id}
    assert "result" in rpc(payme, "CreateTransaction", {"id": "A", "amount": PRICE_MINOR, "account": account})

    other = rpc(payme, "CreateTransaction", {"id": "B", "amount": PRICE_MINOR, "account": account})

    assert other["error"]["code"] == -31008


def test_create_on_completed_order(payme, completed_payment):
    payment_id = completed_payment(external_id="done-1")

    again = rpc(payme, "CreateTransaction", {"id": "late", "amount": PRICE_MINOR, "account": {"order_id": payment_id}})

    assert again["error"]["code"] == -31060


def test_cancel_before_perform(payme, checkout, triple):
    payment_id = checkout()
    rpc(payme, "CreateTransaction", {"id": "p-3", "amount": PRICE_MINOR, "account": {"order_id": payment_id}})

    cancelled = rpc(payme, "CancelTransaction", {"id": "p-3", "reason": 3})
    replay = rpc(payme, "CancelTransaction", {"id": "p-3", "reason": 3})

    assert cancelled["result"]["state"] == -1
    assert replay == cancelled
    assert triple(payment_id) == ("CANCELLED", "CANCELLED", "AVAILABLE")
    assert rpc(payme, "PerformTransaction", {"id": "p-3"})["error"]["code"] == -31008


def test_get_statement(payme, checkout, clock):
    first = checkout()
    rpc(payme, "CreateTransaction", {"id": "s-1", "amount": PRICE_MINOR, "account": {"order_id": first}})
    start = ms(clock())
    clock.advance(hours=1)
    second = checkout()
    rpc(payme, "CreateTransaction", {"id": "s-2", "amount": PRICE_MINOR, "account": {"order_id": second}})
    rpc(payme, "PerformTransaction", {"id": "s-2"})

    statement = rpc(payme, "GetStatement", {"from": start, "to": ms(clock())})["result"]["transactions"]

    assert [t["id"] for t in statement] == ["s-1", "s-2"]
    assert statement[1]["state"] == 2
    assert statement[1]["amount"] == PRICE_MINOR
    assert statement[1]["account"] == {"order_id": second}

    later = rpc(payme, "GetStatement", {"from": start + 1, "to": ms(clock())})["result"]["transactions"]
    assert [t["id"] for t in later] == ["s-2"]


def test_checkout_url_encodes_account(payme, seed_booking):
    booking_id, _ = seed_booking()

    link = payme.checkout(booking_id)

    encoded = link.payment_url.rsplit("/", 1)[1]
    assert base64.b64decode(encoded).decode() == f"m=m-1;ac.order_id={link.payment_id};a={PRICE_MINOR}"
    assert link.provider == "PAYME"
    assert not link.reused

import base64

import pytest
from fastapi.testclient import TestClient

from seatpay.common.money import WireUnit
from seatpay.services.api.main import Services, create_app
from seatpay.services.click.service import ClickAdapter, sign
from seatpay.services.notification.service import NotificationPublisher
from seatpay.services.payme.service import PaymeAdapter
from seatpay.services.reconciliation.sweeper import TimeoutSweeper

HEADERS = {"X-API-Key": "test-api-key"}
PAYME_AUTH = {"Authorization": "Basic " + base64.b64encode(b"Paycom:secret").decode()}


@pytest.fixture
def client(coordinator, session_factory):
    services = Services(
        coordinator=coordinator,
        payme=PaymeAdapter(coordinator, merchant_id="m-1", login="Paycom", secret_key="secret"),
        click=ClickAdapter(coordinator, service_id="100", merchant_id="200", merchant_user_id="300", secret_key="k"),
        sweeper=TimeoutSweeper(coordinator),
        publisher=NotificationPublisher(session_factory),
    )
    return TestClient(create_app(services, run_workers=False))


def payme_call(client, method, params, request_id=1):
    return client.post(
        "/payments/payme/callback",
        json={"method": method, "params": params, "id": request_id},
        headers=PAYME_AUTH,
    )


def test_health_and_metrics(client):
    assert client.get("/health").json() == {"ok": True}
    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    assert "http_requests_total" in metrics.text


def test_admin_endpoints_require_api_key(client):
    assert client.get("/payments").status_code == 401
    assert client.post("/payments", json={"booking_id": "b", "provider": "PAYME"}).status_code == 401


def test_checkout_and_snapshot(client, seed_booking):
    booking_id, _ = seed_booking()

    created = client.post("/payments", json={"booking_id": booking_id, "provider": "PAYME"}, headers=HEADERS)
    assert created.status_code == 200
    body = created.json()
    assert body["provider"] == "PAYME"
    assert body["reused"] is False

    snapshot = client.get(f"/payments/{body['payment_id']}", headers=HEADERS).json()
    assert snapshot["status"] == "PENDING"
    assert snapshot["transactions"] == []

    assert client.get("/payments/missing", headers=HEADERS).status_code == 404
    assert client.post("/payments", json={"booking_id": "missing", "provider": "CLICK"}, headers=HEADERS).status_code == 404


def test_list_payments(client, checkout):
    first = checkout()
    checkout("CLICK")

    page = client.get("/payments", params={"provider": "PAYME"}, headers=HEADERS).json()

    assert page["total"] == 1
    assert page["items"][0]["id"] == first


def test_payme_flow_and_refund_over_http(client, checkout):
    payment_id = checkout()
    account = {"order_id": payment_id}

    created = payme_call(client, "CreateTransaction", {"id": "h-1", "amount": 5_000_000, "account": account})
    assert created.status_code == 200
    assert created.json()["result"]["state"] == 1
    assert payme_call(client, "PerformTransaction", {"id": "h-1"}).json()["result"]["state"] == 2

    refund = client.post("/payments/refund", json={"payment_id": payment_id, "reason": "event cancelled"}, headers=HEADERS)
    assert refund.status_code == 200
    assert refund.json()["full"] is True
    assert refund.json()["payment"]["status"] == "CANCELLED"

    again = client.post("/payments/refund", json={"payment_id": payment_id, "reason": "twice"}, headers=HEADERS)
    assert again.status_code == 409


def test_refund_rejects_negative_amount(client, completed_payment):
    payment_id = completed_payment()

    response = client.post(
        "/payments/refund",
        json={"payment_id": payment_id, "amount": "-5", "reason": "x"},
        headers=HEADERS,
    )

    assert response.status_code == 422


def test_payme_invalid_json(client):
    response = client.post("/payments/payme/callback", content=b"{not json", headers=PAYME_AUTH)

    assert response.status_code == 200
    assert response.json()["error"]["code"] == -32700


def test_payme_unauthorized_is_http_200(client):
    response = client.post("/payments/payme/callback", json={"method": "CheckTransaction", "params": {"id": "x"}, "id": 3})

    assert response.status_code == 200
    assert response.json()["error"]["code"] == -32504


def test_click_prepare_form_post(client, checkout):
    payment_id = checkout("CLICK")
    form = {
        "click_trans_id": "77",
        "service_id": "100",
        "merchant_trans_id": payment_id,
        "amount": "50000",
        "action": "0",
        "error": "0",
        "sign_time": "2026-03-01 12:00:00",
    }
    form["sign_string"] = sign("77", "100", "k", payment_id, "50000", "0", form["sign_time"])

    response = client.post("/payments/click/prepare", data=form)

    assert response.status_code == 200
    assert response.json()["error"] == 0
    assert response.json()["merchant_prepare_id"] > 0


def test_transactions_and_retry(client, coordinator, checkout):
    payment_id = checkout("CLICK")
    failed = coordinator.prepare("CLICK", payment_id, "1", WireUnit.MAJOR, "88")

    listed = client.get("/transactions", params={"payment_id": payment_id}, headers=HEADERS).json()
    assert listed["total"] == 1
    assert listed["items"][0]["status"] == "FAILED"

    retried = client.post(f"/transactions/{failed.entry.id}/retry", headers=HEADERS)
    assert retried.status_code == 200
    assert retried.json()["retry_count"] == 1

    ok = coordinator.prepare("CLICK", payment_id, "50000", WireUnit.MAJOR, "89")
    assert client.post(f"/transactions/{ok.entry.id}/retry", headers=HEADERS).status_code == 409
    assert client.post("/transactions/424242/retry", headers=HEADERS).status_code == 404


@pytest.mark.parametrize(
    "content_type",
    ["multipart/form-data; boundary=zz", "multipart/form-data"],
)
def test_click_broken_multipart_is_error_in_request(client, content_type):
    response = client.post("/payments/click/prepare", content=b"garbage", headers={"content-type": content_type})

    assert response.status_code == 200
    assert response.json()["error"] == -8
    assert response.json()["merchant_prepare_id"] == 0


def test_refund_rejects_sub_cent_amount(client, completed_payment):
    payment_id = completed_payment()

    response = client.post(
        "/payments/refund",
        json={"payment_id": payment_id, "amount": "30.004", "reason": "x"},
        headers=HEADERS,
    )

    assert response.status_code == 422

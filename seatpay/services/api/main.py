"""HTTP surface: provider callbacks, checkout and admin diagnostics.

Provider callbacks always answer HTTP 200 in the provider's own shape. Admin
endpoints require `X-API-Key` and use ordinary HTTP status codes.
"""

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
from time import perf_counter
from uuid import uuid4

from fastapi import FastAPI, Header, HTTPException, Query, Request
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.formparsers import MultiPartException

from seatpay.common.config import settings
from seatpay.common.db import SessionLocal
from seatpay.common.logging import configure_logging, logger, trace_id_ctx
from seatpay.common.metrics import http_request_duration_seconds, http_requests_total, metrics_response
from seatpay.common.startup import log_startup_config
from seatpay.common.tracing import instrument_app, setup_tracing
from seatpay.services.api.schemas import (
    CheckoutRequest,
    PaymentPage,
    RefundRequest,
    RefundResponse,
    TransactionPage,
)
from seatpay.services.click.service import ClickAdapter
from seatpay.services.notification.service import NotificationPublisher
from seatpay.services.payme.service import INVALID_JSON, PaymeAdapter, error_response
from seatpay.services.reconciliation.results import (
    CheckoutLink,
    ErrorKind,
    LedgerEntryView,
    Outcome,
    PaymentSnapshot,
)
from seatpay.services.reconciliation.service import ReconciliationCoordinator, utcnow
from seatpay.services.reconciliation.store import PaymentStore
from seatpay.services.reconciliation.sweeper import TimeoutSweeper

STATUS_BY_ERROR = {
    ErrorKind.ORDER_NOT_FOUND: 404,
    ErrorKind.TRANSACTION_NOT_FOUND: 404,
    ErrorKind.BOOKING_NOT_PENDING: 409,
    ErrorKind.INVALID_STATE: 409,
    ErrorKind.NOT_COMPLETED: 409,
    ErrorKind.REFUND_EXCEEDS: 409,
    ErrorKind.RETRY_NOT_ALLOWED: 409,
    ErrorKind.INVALID_REFUND_AMOUNT: 422,
    ErrorKind.INTERNAL: 500,
}


@dataclass
class Services:
    """Process-wide collaborators; one coordinator shared by both adapters."""

    coordinator: ReconciliationCoordinator
    payme: PaymeAdapter
    click: ClickAdapter
    sweeper: TimeoutSweeper
    publisher: NotificationPublisher


def build_services(session_factory, clock=utcnow) -> Services:
    coordinator = ReconciliationCoordinator(PaymentStore(session_factory), clock=clock)
    return Services(
        coordinator=coordinator,
        payme=PaymeAdapter(coordinator),
        click=ClickAdapter(coordinator),
        sweeper=TimeoutSweeper(coordinator),
        publisher=NotificationPublisher(session_factory),
    )


def enforce_api_key(x_api_key: str | None) -> None:
    """Reject requests that do not provide the configured API key."""

    if x_api_key != settings.api_key:
        raise HTTPException(status_code=401, detail="invalid API key")


def raise_for_outcome(outcome: Outcome) -> None:
    if not outcome.ok:
        raise HTTPException(status_code=STATUS_BY_ERROR.get(outcome.error, 409), detail=outcome.detail)


async def _form_or_json(request: Request):
    """Click posts urlencoded forms; JSON is accepted for sandbox tooling."""

    if request.headers.get("content-type", "").startswith("application/json"):
        try:
            return await request.json()
        except ValueError:
            return None
    try:
        form = await request.form()
    except (StarletteHTTPException, MultiPartException) as exc:
        logger.warning("click form rejected: %s", exc)
        return None
    return dict(form)


def create_app(services: Services, run_workers: bool = True) -> FastAPI:
    """Build the FastAPI application around an explicit services container."""

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        """Run the outbox publisher and timeout sweeper with app lifecycle."""

        tasks = []
        if run_workers:
            tasks.append(asyncio.create_task(services.publisher.run()))
            if services.sweeper.interval_seconds > 0:
                tasks.append(asyncio.create_task(services.sweeper.run()))
        yield
        for task in tasks:
            task.cancel()
        if run_workers:
            await services.publisher.close()

    app = FastAPI(title="SeatPay Reconciliation", lifespan=lifespan)
    app.state.services = services
    instrument_app(app)

    @app.middleware("http")
    async def metrics_middleware(request: Request, call_next):
        """Record request count and latency for every HTTP call."""

        trace_id_ctx.set(request.headers.get("x-trace-id") or str(uuid4()))
        start = perf_counter()
        route = request.url.path
        method = request.method
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            route_obj = request.scope.get("route")
            if route_obj is not None and getattr(route_obj, "path", None):
                route = route_obj.path
            return response
        finally:
            elapsed = max(0.0, perf_counter() - start)
            http_request_duration_seconds.labels(
                service=settings.service_name,
                route=route,
                method=method,
            ).observe(elapsed)
            http_requests_total.labels(
                service=settings.service_name,
                route=route,
                method=method,
                status_code=str(status_code),
            ).inc()

    @app.post("/payments", response_model=CheckoutLink)
    def create_checkout(req: CheckoutRequest, x_api_key: str | None = Header(default=None)):
        """Open (or reuse) a PENDING payment for a booking and return its checkout URL."""

        enforce_api_key(x_api_key)
        adapter = services.payme if req.provider == "PAYME" else services.click
        result = adapter.checkout(req.booking_id)
        if isinstance(result, Outcome):
            raise_for_outcome(result)
        return result

    @app.get("/payments", response_model=PaymentPage)
    def list_payments(
        booking_id: str | None = None,
        provider: str | None = None,
        status: str | None = None,
        page: int = Query(default=1, ge=1),
        limit: int = Query(default=20, ge=1, le=100),
        x_api_key: str | None = Header(default=None),
    ):
        enforce_api_key(x_api_key)
        items, total = services.coordinator.list_payments(booking_id, provider, status, page, limit)
        return PaymentPage(items=items, total=total, page=page, limit=limit)

    @app.get("/payments/{payment_id}", response_model=PaymentSnapshot)
    def get_payment(payment_id: str, x_api_key: str | None = Header(default=None)):
        """Current payment state with its full ledger history."""

        enforce_api_key(x_api_key)
        snapshot = services.coordinator.snapshot(payment_id)
        if snapshot is None:
            raise HTTPException(status_code=404, detail="payment not found")
        return snapshot

    @app.post("/payments/refund", response_model=RefundResponse)
    def refund_payment(req: RefundRequest, x_api_key: str | None = Header(default=None)):
        enforce_api_key(x_api_key)
        outcome = services.coordinator.refund(req.payment_id, req.amount, req.reason)
        raise_for_outcome(outcome)
        return RefundResponse(
            payment=outcome.payment,
            refunded_amount=outcome.data["refunded_amount"],
            full=outcome.data["full"],
        )

    @app.get("/transactions", response_model=TransactionPage)
    def list_transactions(
        payment_id: str | None = None,
        provider: str | None = None,
        type: str | None = None,
        status: str | None = None,
        page: int = Query(default=1, ge=1),
        limit: int = Query(default=50, ge=1, le=200),
        x_api_key: str | None = Header(default=None),
    ):
        enforce_api_key(x_api_key)
        items, total = services.coordinator.list_transactions(payment_id, provider, type, status, page, limit)
        return TransactionPage(items=items, total=total, page=page, limit=limit)

    @app.post("/transactions/{entry_id}/retry", response_model=LedgerEntryView)
    def retry_transaction(entry_id: int, x_api_key: str | None = Header(default=None)):
        """Count a manual retry of a failed Prepare/Complete step."""

        enforce_api_key(x_api_key)
        outcome = services.coordinator.retry_entry(entry_id)
        raise_for_outcome(outcome)
        return outcome.entry

    @app.post("/payments/payme/callback")
    async def payme_callback(request: Request, authorization: str | None = Header(default=None)):
        """Payme JSON-RPC endpoint; always HTTP 200."""

        try:
            body = await request.json()
        except ValueError:
            logger.warning("payme body is not JSON")
            return error_response(INVALID_JSON, None)
        return await asyncio.to_thread(services.payme.handle, body, authorization)

    @app.post("/payments/click/prepare")
    async def click_prepare(request: Request):
        body = await _form_or_json(request)
        return await asyncio.to_thread(services.click.prepare, body)

    @app.post("/payments/click/complete")
    async def click_complete(request: Request):
        body = await _form_or_json(request)
        return await asyncio.to_thread(services.click.complete, body)

    @app.get("/metrics")
    def metrics():
        """Prometheus scrape endpoint."""

        return metrics_response()

    @app.get("/health")
    def health():
        """Container health probe endpoint."""

        return {"ok": True}

    return app


configure_logging()
setup_tracing(settings.service_name)
log_startup_config(
    settings.service_name,
    ["SERVICE_NAME", "POSTGRES_DSN", "KAFKA_BOOTSTRAP_SERVERS", "PAYME_SANDBOX", "TRANSACTION_TIMEOUT_SECONDS"],
)
app = create_app(build_services(SessionLocal))

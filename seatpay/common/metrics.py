"""Prometheus metric definitions shared across the service."""

from prometheus_client import Counter, Gauge, Histogram, generate_latest
from starlette.responses import Response


http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["service", "route", "method", "status_code"],
)
http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration seconds",
    ["service", "route", "method"],
)
provider_callbacks_total = Counter(
    "provider_callbacks_total",
    "Provider callbacks by method and outcome",
    ["provider", "method", "outcome"],
)
payment_edges_total = Counter(
    "payment_edges_total",
    "Applied payment/booking/seat edges",
    ["edge"],
)
idempotent_replays_total = Counter(
    "idempotent_replays_total",
    "Replayed provider operations answered from the ledger",
    ["provider", "operation"],
)
refunds_total = Counter("refunds_total", "Refunds by kind", ["kind"])
sweeper_cancellations_total = Counter(
    "sweeper_cancellations_total",
    "Payments force-cancelled after the open window elapsed",
    ["trigger"],
)
payment_confirm_seconds = Histogram(
    "payment_confirm_seconds",
    "Seconds between checkout creation and provider confirmation",
    ["provider"],
)
outbox_pending_total = Gauge(
    "outbox_pending_total",
    "Current count of outbox events not yet sent",
    ["service"],
)
outbox_oldest_pending_age_seconds = Gauge(
    "outbox_oldest_pending_age_seconds",
    "Age in seconds of the oldest pending outbox event",
    ["service"],
)


def metrics_response() -> Response:
    """Expose all registered Prometheus metrics in text format."""

    return Response(content=generate_latest(), media_type="text/plain")

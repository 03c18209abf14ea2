"""Structured JSON logging with request/callback context fields."""

import logging
import sys
from contextvars import ContextVar

from pythonjsonlogger.json import JsonFormatter

from seatpay.common.config import settings


trace_id_ctx: ContextVar[str] = ContextVar("trace_id", default="")
payment_id_ctx: ContextVar[str] = ContextVar("payment_id", default="")
provider_txn_id_ctx: ContextVar[str] = ContextVar("provider_txn_id", default="")


class ContextFilter(logging.Filter):
    """Inject service and correlation identifiers into every log record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.service_name = settings.service_name
        record.trace_id = trace_id_ctx.get()
        record.payment_id = payment_id_ctx.get()
        record.provider_txn_id = provider_txn_id_ctx.get()
        return True


def configure_logging() -> None:
    """Configure root logger once per process."""

    handler = logging.StreamHandler(sys.stdout)
    context_filter = ContextFilter()
    handler.addFilter(context_filter)
    formatter = JsonFormatter(
        "%(asctime)s %(levelname)s %(service_name)s %(trace_id)s %(payment_id)s %(provider_txn_id)s %(message)s"
    )
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(settings.log_level)
    root.addFilter(context_filter)


logger = logging.getLogger("seatpay")

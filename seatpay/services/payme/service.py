"""Payme merchant API adapter (stateful JSON-RPC provider).

Translates JSON-RPC calls into coordinator operations and coordinator
outcomes back into Payme's `{result, id}` / `{error, id}` envelopes. Every
call gets an envelope; nothing raised here reaches the HTTP layer.
"""

import base64
import hmac
from datetime import datetime, timezone

from pydantic import ValidationError

from seatpay.common.config import settings
from seatpay.common.logging import logger, provider_txn_id_ctx
from seatpay.common.metrics import provider_callbacks_total
from seatpay.common.money import WireUnit, to_minor
from seatpay.common.state_machine import LifecycleState
from seatpay.common.tracing import tracer
from seatpay.services.payme.schemas import (
    CancelTransactionParams,
    CheckPerformParams,
    CreateTransactionParams,
    PaymeRequest,
    StatementParams,
    TransactionIdParams,
)
from seatpay.services.reconciliation.results import CheckoutLink, ErrorKind, Outcome, TransactionTimes
from seatpay.services.reconciliation.service import ReconciliationCoordinator

PROVIDER = "PAYME"

INVALID_AMOUNT = -31001
ORDER_NOT_FOUND = -31050
CANNOT_PERFORM = -31008
TRANSACTION_NOT_FOUND = -31003
INVALID_STATE = -31007
ALREADY_DONE = -31060
UNAUTHORIZED = -32504
INVALID_JSON = -32700
SYSTEM_ERROR = -32400

MESSAGES = {
    INVALID_AMOUNT: {"uz": "Noto'g'ri summa", "ru": "Неверная сумма", "en": "Invalid amount"},
    ORDER_NOT_FOUND: {"uz": "Buyurtma topilmadi", "ru": "Заказ не найден", "en": "Order not found"},
    CANNOT_PERFORM: {
        "uz": "Operatsiyani bajarib bo'lmaydi",
        "ru": "Невозможно выполнить операцию",
        "en": "Cannot perform operation",
    },
    TRANSACTION_NOT_FOUND: {"uz": "Tranzaksiya topilmadi", "ru": "Транзакция не найдена", "en": "Transaction not found"},
    INVALID_STATE: {"uz": "Noto'g'ri holat", "ru": "Неверное состояние", "en": "Invalid state"},
    ALREADY_DONE: {"uz": "Allaqachon bajarilgan", "ru": "Уже выполнено", "en": "Already done"},
    UNAUTHORIZED: {"uz": "Ruxsat yo'q", "ru": "Нет доступа", "en": "Unauthorized"},
    INVALID_JSON: {"uz": "Noto'g'ri JSON", "ru": "Неверный JSON", "en": "Invalid JSON"},
    SYSTEM_ERROR: {"uz": "Tizim xatosi", "ru": "Системная ошибка", "en": "System error"},
}

ERROR_CODES = {
    ErrorKind.ORDER_NOT_FOUND: ORDER_NOT_FOUND,
    ErrorKind.INVALID_AMOUNT: INVALID_AMOUNT,
    ErrorKind.TRANSACTION_NOT_FOUND: TRANSACTION_NOT_FOUND,
    ErrorKind.ALREADY_COMPLETED: ALREADY_DONE,
    ErrorKind.INVALID_STATE: INVALID_STATE,
    ErrorKind.INTERNAL: SYSTEM_ERROR,
}

STATE_CODES = {
    LifecycleState.CREATED: 1,
    LifecycleState.COMPLETED: 2,
    LifecycleState.CANCELLED_BEFORE_CONFIRM: -1,
    LifecycleState.CANCELLED_AFTER_CONFIRM: -2,
}


def error_response(code: int, request_id, data: str | None = None) -> dict:
    error = {"code": code, "message": MESSAGES[code]}
    if data:
        error["data"] = data
    return {"error": error, "id": request_id}


def success_response(result: dict, request_id) -> dict:
    return {"result": result, "id": request_id}


def state_code(state: LifecycleState | str) -> int:
    return STATE_CODES[LifecycleState(state)]


def ms_to_datetime(value: int) -> datetime:
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)


class PaymeAdapter:
    """Dispatches Payme JSON-RPC methods onto the shared coordinator."""

    def __init__(
        self,
        coordinator: ReconciliationCoordinator,
        merchant_id: str | None = None,
        login: str | None = None,
        secret_key: str | None = None,
        checkout_url: str | None = None,
    ) -> None:
        self.coordinator = coordinator
        self.merchant_id = merchant_id if merchant_id is not None else settings.payme_merchant_id
        self.login = login if login is not None else settings.payme_login
        if secret_key is None:
            secret_key = settings.payme_test_secret_key if settings.payme_sandbox else settings.payme_secret_key
        self.secret_key = secret_key
        self.checkout_url = checkout_url or settings.payme_checkout_url

    def verify_auth(self, authorization: str | None) -> bool:
        """HTTP Basic `login:secret` against the environment-selected key."""

        if not authorization or not self.secret_key:
            return False
        scheme, _, credentials = authorization.partition(" ")
        if scheme != "Basic" or not credentials:
            return False
        try:
            decoded = base64.b64decode(credentials.strip(), validate=True).decode("utf-8")
        except (ValueError, UnicodeDecodeError):
            return False
        login, _, password = decoded.partition(":")
        return hmac.compare_digest(login, self.login) and hmac.compare_digest(password, self.secret_key)

    def checkout(self, booking_id: str) -> Outcome | CheckoutLink:
        """Open (or reuse) the booking's Payme payment and build its checkout URL."""

        outcome = self.coordinator.open_checkout(booking_id, PROVIDER)
        if not outcome.ok:
            return outcome
        payment = outcome.payment
        account = f"m={self.merchant_id};ac.order_id={payment.id};a={to_minor(payment.amount)}"
        encoded = base64.b64encode(account.encode("utf-8")).decode("ascii")
        return CheckoutLink(
            payment_id=payment.id,
            payment_url=f"{self.checkout_url}/{encoded}",
            provider=PROVIDER,
            amount=payment.amount,
            expires_at=self.coordinator.clock() + self.coordinator.window,
            reused=bool(outcome.data and outcome.data.get("reused")),
        )

    def handle(self, body, authorization: str | None) -> dict:
        """Answer one JSON-RPC call; always returns an envelope."""

        try:
            request = PaymeRequest.model_validate(body)
        except ValidationError as exc:
            request_id = body.get("id") if isinstance(body, dict) else None
            logger.warning("payme envelope rejected error_count=%s", exc.error_count())
            provider_callbacks_total.labels(provider=PROVIDER, method="unknown", outcome="malformed").inc()
            return error_response(INVALID_JSON, request_id if isinstance(request_id, (int, str)) else None)

        if not self.verify_auth(authorization):
            logger.warning("payme auth failed method=%s", request.method)
            provider_callbacks_total.labels(provider=PROVIDER, method=request.method, outcome="unauthorized").inc()
            return error_response(UNAUTHORIZED, request.id)

        handler = {
            "CheckPerformTransaction": self.check_perform_transaction,
            "CreateTransaction": self.create_transaction,
            "PerformTransaction": self.perform_transaction,
            "CancelTransaction": self.cancel_transaction,
            "CheckTransaction": self.check_transaction,
            "GetStatement": self.get_statement,
        }[request.method]

        with tracer.start_as_current_span("payme.callback") as span:
            span.set_attribute("payme.method", request.method)
            try:
                response = handler(request.params, request.id)
            except ValidationError as exc:
                logger.warning("payme params rejected method=%s error_count=%s", request.method, exc.error_count())
                response = error_response(INVALID_JSON, request.id)
            except Exception as exc:
                logger.exception("payme callback failed method=%s: %s", request.method, exc)
                response = error_response(SYSTEM_ERROR, request.id)
        outcome = "ok" if "result" in response else str(response["error"]["code"])
        provider_callbacks_total.labels(provider=PROVIDER, method=request.method, outcome=outcome).inc()
        return response

    def _error(self, outcome: Outcome, request_id) -> dict:
        code = ERROR_CODES.get(outcome.error, CANNOT_PERFORM)
        logger.info("payme rejected error=%s code=%s detail=%s", outcome.error.value, code, outcome.detail)
        return error_response(code, request_id)

    def check_perform_transaction(self, params: dict, request_id) -> dict:
        data = CheckPerformParams.model_validate(params)
        outcome = self.coordinator.validate(
            PROVIDER, data.account.order_id, data.amount, WireUnit.MINOR, request_data=params
        )
        if not outcome.ok:
            return self._error(outcome, request_id)
        return success_response({"allow": True}, request_id)

    def create_transaction(self, params: dict, request_id) -> dict:
        data = CreateTransactionParams.model_validate(params)
        provider_txn_id_ctx.set(data.id)
        outcome = self.coordinator.open_transaction(
            PROVIDER, data.id, data.account.order_id, data.amount, WireUnit.MINOR, request_data=params
        )
        if not outcome.ok:
            return self._error(outcome, request_id)
        return success_response(
            {
                "create_time": outcome.times.create_time,
                "transaction": outcome.payment.id,
                "state": state_code(outcome.times.state),
            },
            request_id,
        )

    def perform_transaction(self, params: dict, request_id) -> dict:
        data = TransactionIdParams.model_validate(params)
        provider_txn_id_ctx.set(data.id)
        outcome = self.coordinator.confirm(PROVIDER, data.id, request_data=params)
        if not outcome.ok:
            return self._error(outcome, request_id)
        return success_response(
            {
                "perform_time": outcome.times.perform_time,
                "transaction": outcome.payment.id,
                "state": state_code(outcome.times.state),
            },
            request_id,
        )

    def cancel_transaction(self, params: dict, request_id) -> dict:
        data = CancelTransactionParams.model_validate(params)
        provider_txn_id_ctx.set(data.id)
        outcome = self.coordinator.void(PROVIDER, data.id, data.reason, request_data=params)
        if not outcome.ok:
            return self._error(outcome, request_id)
        record = outcome.data or {}
        return success_response(
            {
                "cancel_time": record.get("cancel_time", 0),
                "transaction": record.get("transaction", outcome.payment.id),
                "state": state_code(record.get("state", LifecycleState.CANCELLED_BEFORE_CONFIRM)),
            },
            request_id,
        )

    def check_transaction(self, params: dict, request_id) -> dict:
        data = TransactionIdParams.model_validate(params)
        provider_txn_id_ctx.set(data.id)
        outcome = self.coordinator.inspect(PROVIDER, data.id)
        if not outcome.ok:
            return self._error(outcome, request_id)
        return success_response(self._transaction_times(outcome.payment.id, outcome.times), request_id)

    def get_statement(self, params: dict, request_id) -> dict:
        data = StatementParams.model_validate(params)
        lines = self.coordinator.list_range(PROVIDER, ms_to_datetime(data.from_), ms_to_datetime(data.to))
        transactions = []
        for line in lines:
            row = {
                "id": line.external_id,
                "time": line.times.create_time,
                "amount": to_minor(line.amount),
                "account": {"order_id": line.payment_id},
            }
            row.update(self._transaction_times(line.payment_id, line.times))
            transactions.append(row)
        return success_response({"transactions": transactions}, request_id)

    @staticmethod
    def _transaction_times(payment_id: str, times: TransactionTimes) -> dict:
        return {
            "create_time": times.create_time,
            "perform_time": times.perform_time,
            "cancel_time": times.cancel_time,
            "transaction": payment_id,
            "state": state_code(times.state),
            "reason": times.reason,
        }

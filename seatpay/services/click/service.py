"""Click adapter (two-phase signed webhook provider).

Prepare quotes the order, Complete confirms it. Both verify the md5 signature
before reading any state and always answer with the fixed response shape.
"""

import hashlib
import hmac
from urllib.parse import urlencode

from pydantic import ValidationError

from seatpay.common.config import settings
from seatpay.common.logging import logger, provider_txn_id_ctx
from seatpay.common.metrics import provider_callbacks_total
from seatpay.common.money import WireUnit
from seatpay.common.tracing import tracer
from seatpay.services.click.schemas import ClickCompleteResponse, ClickPrepareResponse, ClickRequest
from seatpay.services.reconciliation.results import CheckoutLink, ErrorKind, Outcome
from seatpay.services.reconciliation.service import ReconciliationCoordinator

PROVIDER = "CLICK"

SUCCESS = 0
SIGN_CHECK_FAILED = -1
INCORRECT_PARAMETER = -2
ACTION_NOT_FOUND = -3
ALREADY_PAID = -4
USER_NOT_FOUND = -5
TRANSACTION_NOT_FOUND = -6
UPDATE_FAILED = -7
ERROR_IN_REQUEST = -8
TRANSACTION_CANCELLED = -9

ACTION_PREPARE = 0
ACTION_COMPLETE = 1

NOTES = {
    SUCCESS: "Success",
    SIGN_CHECK_FAILED: "SIGN CHECK FAILED",
    INCORRECT_PARAMETER: "Incorrect amount",
    ACTION_NOT_FOUND: "Action not found",
    ALREADY_PAID: "Already paid",
    USER_NOT_FOUND: "User not found",
    TRANSACTION_NOT_FOUND: "Transaction not found",
    UPDATE_FAILED: "Update failed",
    ERROR_IN_REQUEST: "Error in request",
    TRANSACTION_CANCELLED: "Transaction cancelled",
}

ERROR_CODES = {
    ErrorKind.ORDER_NOT_FOUND: USER_NOT_FOUND,
    ErrorKind.INVALID_AMOUNT: INCORRECT_PARAMETER,
    ErrorKind.ALREADY_COMPLETED: ALREADY_PAID,
    ErrorKind.ALREADY_CANCELLED: TRANSACTION_CANCELLED,
    ErrorKind.BOOKING_NOT_PENDING: TRANSACTION_CANCELLED,
    ErrorKind.TRANSACTION_EXPIRED: TRANSACTION_CANCELLED,
    ErrorKind.PREPARE_NOT_FOUND: TRANSACTION_NOT_FOUND,
    ErrorKind.TRANSACTION_NOT_FOUND: TRANSACTION_NOT_FOUND,
}


def sign(
    click_trans_id: str,
    service_id: str,
    secret_key: str,
    merchant_trans_id: str,
    amount: str,
    action: int | str,
    sign_time: str,
    merchant_prepare_id: str | None = None,
) -> str:
    """md5 over the concatenated fields; the prepare id only takes part on complete."""

    parts = [click_trans_id, service_id, secret_key, merchant_trans_id]
    if str(action) == str(ACTION_COMPLETE) and merchant_prepare_id is not None:
        parts.append(str(merchant_prepare_id))
    parts += [amount, str(action), sign_time]
    return hashlib.md5("".join(parts).encode("utf-8")).hexdigest()


def _int_or_zero(value) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


class ClickAdapter:
    """Maps Click Prepare/Complete webhooks onto the shared coordinator."""

    def __init__(
        self,
        coordinator: ReconciliationCoordinator,
        service_id: str | None = None,
        merchant_id: str | None = None,
        merchant_user_id: str | None = None,
        secret_key: str | None = None,
        checkout_url: str | None = None,
        return_url: str | None = None,
    ) -> None:
        self.coordinator = coordinator
        self.service_id = service_id if service_id is not None else settings.click_service_id
        self.merchant_id = merchant_id if merchant_id is not None else settings.click_merchant_id
        self.merchant_user_id = merchant_user_id if merchant_user_id is not None else settings.click_merchant_user_id
        self.secret_key = secret_key if secret_key is not None else settings.click_secret_key
        self.checkout_url = checkout_url or settings.click_checkout_url
        self.return_url = return_url or settings.click_return_url

    def verify_signature(self, request: ClickRequest) -> bool:
        expected = sign(
            request.click_trans_id,
            request.service_id,
            self.secret_key,
            request.merchant_trans_id,
            request.amount,
            request.action,
            request.sign_time,
            merchant_prepare_id=request.merchant_prepare_id,
        )
        return hmac.compare_digest(expected, request.sign_string.lower())

    def checkout(self, booking_id: str) -> Outcome | CheckoutLink:
        """Open (or reuse) the booking's Click payment and build its checkout URL."""

        outcome = self.coordinator.open_checkout(booking_id, PROVIDER)
        if not outcome.ok:
            return outcome
        payment = outcome.payment
        query = urlencode(
            {
                "service_id": self.service_id,
                "merchant_id": self.merchant_id,
                "merchant_user_id": self.merchant_user_id,
                "amount": str(payment.amount),
                "transaction_param": payment.id,
                "return_url": self.return_url,
            }
        )
        return CheckoutLink(
            payment_id=payment.id,
            payment_url=f"{self.checkout_url}?{query}",
            provider=PROVIDER,
            amount=payment.amount,
            expires_at=self.coordinator.clock() + self.coordinator.window,
            reused=bool(outcome.data and outcome.data.get("reused")),
        )

    def _parse(self, body, action: int) -> tuple[ClickRequest | None, int]:
        try:
            request = ClickRequest.model_validate(body)
        except ValidationError as exc:
            logger.warning("click request rejected error_count=%s", exc.error_count())
            return None, ERROR_IN_REQUEST
        if not self.verify_signature(request):
            logger.warning("click signature mismatch click_trans_id=%s", request.click_trans_id)
            return request, SIGN_CHECK_FAILED
        if request.action != action:
            return request, ACTION_NOT_FOUND
        return request, SUCCESS

    def _code(self, outcome: Outcome, request: ClickRequest) -> int:
        if outcome.error == ErrorKind.PROVIDER_REPORTED_ERROR:
            return request.error
        return ERROR_CODES.get(outcome.error, UPDATE_FAILED)

    def prepare(self, body) -> dict:
        """Answer a Prepare webhook (action 0)."""

        with tracer.start_as_current_span("click.prepare"):
            request, code = self._parse(body, ACTION_PREPARE)
            prepare_id = 0
            if code == SUCCESS:
                provider_txn_id_ctx.set(request.click_trans_id)
                outcome = self.coordinator.prepare(
                    PROVIDER,
                    request.merchant_trans_id,
                    request.amount,
                    WireUnit.MAJOR,
                    request.click_trans_id,
                    provider_error=request.error,
                    request_data=request.model_dump(exclude={"sign_string"}),
                )
                if outcome.ok:
                    prepare_id = outcome.entry.id
                else:
                    code = self._code(outcome, request)
                    logger.info("click prepare rejected error=%s detail=%s", outcome.error.value, outcome.detail)
            response = self._response(ClickPrepareResponse, "merchant_prepare_id", body, request, prepare_id, code)
        provider_callbacks_total.labels(provider=PROVIDER, method="prepare", outcome=str(code)).inc()
        return response

    def complete(self, body) -> dict:
        """Answer a Complete webhook (action 1)."""

        with tracer.start_as_current_span("click.complete"):
            request, code = self._parse(body, ACTION_COMPLETE)
            confirm_id = 0
            if code == SUCCESS:
                provider_txn_id_ctx.set(request.click_trans_id)
                outcome = self.coordinator.complete(
                    PROVIDER,
                    request.merchant_trans_id,
                    request.amount,
                    WireUnit.MAJOR,
                    request.click_trans_id,
                    _int_or_zero(request.merchant_prepare_id) if request.merchant_prepare_id else None,
                    provider_error=request.error,
                    request_data=request.model_dump(exclude={"sign_string"}),
                )
                if outcome.ok:
                    confirm_id = outcome.entry.id
                else:
                    code = self._code(outcome, request)
                    logger.info("click complete rejected error=%s detail=%s", outcome.error.value, outcome.detail)
            response = self._response(ClickCompleteResponse, "merchant_confirm_id", body, request, confirm_id, code)
        provider_callbacks_total.labels(provider=PROVIDER, method="complete", outcome=str(code)).inc()
        return response

    @staticmethod
    def _response(model, id_field: str, body, request: ClickRequest | None, step_id: int, code: int) -> dict:
        raw = body if isinstance(body, dict) else {}
        return model(
            click_trans_id=_int_or_zero(request.click_trans_id if request else raw.get("click_trans_id")),
            merchant_trans_id=request.merchant_trans_id if request else str(raw.get("merchant_trans_id") or ""),
            error=code,
            error_note=NOTES.get(code, "Click error"),
            **{id_field: step_id},
        ).model_dump()

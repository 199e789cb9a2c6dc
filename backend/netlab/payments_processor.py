"""Hosted-checkout payment processor client."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol, Union

import requests

# purpose: create checkout sessions and poll transaction status at the payment processor
# status: active
# depends_on: requests, PAYMENT_* env vars

logger = logging.getLogger(__name__)

PAYMENT_API_URL = os.getenv("PAYMENT_API_URL", "https://api-checkout.cinetpay.com")
PAYMENT_API_KEY = os.getenv("PAYMENT_API_KEY", "")
PAYMENT_SITE_ID = os.getenv("PAYMENT_SITE_ID", "")
PAYMENT_NOTIFY_URL = os.getenv("PAYMENT_NOTIFY_URL", "")
PAYMENT_RETURN_URL = os.getenv("PAYMENT_RETURN_URL", "")
PAYMENT_PROCESSOR_TIMEOUT_SECONDS = float(
    os.getenv("PAYMENT_PROCESSOR_TIMEOUT_SECONDS", "30")
)

SUCCESS_RESULT_CODE = "00"
SUCCESS_STATUSES = {"ACCEPTED"}
FAILURE_STATUSES = {"REFUSED", "CANCELLED", "FAILED"}


@dataclass(frozen=True)
class CheckoutRequest:
    transaction_id: str
    amount_cents: int
    currency: str
    description: str
    customer_id: str
    customer_email: Optional[str] = None
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None


@dataclass(frozen=True)
class CheckoutCreated:
    payment_url: str
    payment_token: Optional[str] = None
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ProcessorStatus:
    """Normalised answer of a status poll; ``succeeded`` is None while undecided."""

    transaction_id: str
    succeeded: Optional[bool]
    code: Optional[str] = None
    message: Optional[str] = None
    payment_method: Optional[str] = None
    external_transaction_id: Optional[str] = None
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ProcessorFailure:
    code: str
    message: str
    status: Optional[int] = None
    raw: dict[str, Any] = field(default_factory=dict)


CheckoutResult = Union[CheckoutCreated, ProcessorFailure]
StatusResult = Union[ProcessorStatus, ProcessorFailure]


class CheckoutProcessor(Protocol):
    def create_checkout(self, request: CheckoutRequest) -> CheckoutResult: ...

    def check_status(self, transaction_id: str) -> StatusResult: ...


def to_processor_amount(amount_cents: int) -> int:
    """The processor takes whole currency units."""

    return int(round(amount_cents / 100))


class CinetPayProcessor:
    def __init__(
        self,
        *,
        api_url: str = PAYMENT_API_URL,
        api_key: str = PAYMENT_API_KEY,
        site_id: str = PAYMENT_SITE_ID,
        notify_url: str = PAYMENT_NOTIFY_URL,
        return_url: str = PAYMENT_RETURN_URL,
        timeout: float = PAYMENT_PROCESSOR_TIMEOUT_SECONDS,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.api_url = api_url.rstrip("/")
        self.api_key = api_key
        self.site_id = site_id
        self.notify_url = notify_url
        self.return_url = return_url
        self.timeout = timeout
        self._session = session or requests.Session()

    def create_checkout(self, request: CheckoutRequest) -> CheckoutResult:
        body = {
            "apikey": self.api_key,
            "site_id": self.site_id,
            "transaction_id": request.transaction_id,
            "amount": to_processor_amount(request.amount_cents),
            "currency": request.currency,
            "description": request.description,
            "notify_url": self.notify_url,
            "return_url": self.return_url,
            "channels": "ALL",
            "metadata": request.customer_id,
            "customer_id": request.customer_id,
        }
        if request.customer_email:
            body["customer_email"] = request.customer_email
        if request.customer_name:
            body["customer_name"] = request.customer_name
        if request.customer_phone:
            body["customer_phone_number"] = request.customer_phone
        data = self._post("/v2/payment", body)
        if isinstance(data, ProcessorFailure):
            return data
        checkout = data.get("data") or {}
        payment_url = checkout.get("payment_url") if isinstance(checkout, dict) else None
        if str(data.get("code")) != "201" or not payment_url:
            return ProcessorFailure(
                code=str(data.get("code") or "UNKNOWN"),
                message=str(data.get("description") or data.get("message") or "Checkout refused"),
                raw=data,
            )
        logger.info("checkout created for %s", request.transaction_id)
        return CheckoutCreated(
            payment_url=payment_url,
            payment_token=checkout.get("payment_token"),
            raw=data,
        )

    def check_status(self, transaction_id: str) -> StatusResult:
        data = self._post(
            "/v2/payment/check",
            {"apikey": self.api_key, "site_id": self.site_id, "transaction_id": transaction_id},
        )
        if isinstance(data, ProcessorFailure):
            return data
        details = data.get("data") if isinstance(data.get("data"), dict) else {}
        code = str(data.get("code")) if data.get("code") is not None else None
        status = str(details.get("status") or "").upper()
        if code == SUCCESS_RESULT_CODE or status in SUCCESS_STATUSES:
            succeeded: Optional[bool] = True
        elif status in FAILURE_STATUSES:
            succeeded = False
        else:
            succeeded = None
        return ProcessorStatus(
            transaction_id=transaction_id,
            succeeded=succeeded,
            code=code,
            message=data.get("message"),
            payment_method=details.get("payment_method"),
            external_transaction_id=details.get("operator_id"),
            raw=data,
        )

    def _post(self, path: str, body: dict[str, Any]):
        try:
            response = self._session.post(self.api_url + path, json=body, timeout=self.timeout)
        except requests.Timeout:
            logger.warning("payment processor %s timed out after %ss", path, self.timeout)
            return ProcessorFailure(code="CONNECTION_TIMEOUT", message="Payment processor timed out")
        except requests.RequestException as exc:
            logger.warning("payment processor %s unreachable: %s", path, exc)
            return ProcessorFailure(code="TRANSPORT", message=str(exc))
        try:
            data = response.json()
        except ValueError:
            return ProcessorFailure(
                code="MALFORMED",
                message=response.text[:200] or "Empty processor response",
                status=response.status_code,
            )
        if not isinstance(data, dict):
            return ProcessorFailure(code="MALFORMED", message="Unexpected processor response")
        if response.status_code >= 500:
            return ProcessorFailure(
                code=str(data.get("code") or response.status_code),
                message=str(data.get("message") or "Processor error"),
                status=response.status_code,
                raw=data,
            )
        return data


_processor: Optional[CinetPayProcessor] = None


def get_payment_processor() -> CheckoutProcessor:
    global _processor
    if _processor is None:
        _processor = CinetPayProcessor()
    return _processor

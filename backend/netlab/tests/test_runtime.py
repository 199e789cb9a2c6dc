import json

import pytest
import requests

from netlab.payments_processor import (
    CheckoutCreated,
    CheckoutRequest,
    CinetPayProcessor,
    ProcessorFailure,
    to_processor_amount,
)
from netlab.runtime import (
    HttpLabRuntimeClient,
    RuntimeContext,
    RuntimeFailure,
    RuntimeOk,
    RuntimeState,
    is_stopped_state,
)


class FakeResponse:
    def __init__(self, status_code=200, payload=None, text=None):
        self.status_code = status_code
        self._payload = payload
        if text is None:
            text = json.dumps(payload) if payload is not None else ""
        self.text = text

    def json(self):
        if self._payload is None:
            return json.loads(self.text)
        return self._payload


class FakeSession:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.requests = []

    def _answer(self):
        if self.error is not None:
            raise self.error
        return self.response

    def request(self, method, url, **kwargs):
        self.requests.append((method, url, kwargs))
        return self._answer()

    def post(self, url, **kwargs):
        self.requests.append(("POST", url, kwargs))
        return self._answer()


CONTEXT = RuntimeContext(base_url="https://labs.test/", token="tkn", timeout=3)


def test_runtime_start_sends_bearer_token():
    session = FakeSession(FakeResponse(200, {"status": "ok"}))
    result = HttpLabRuntimeClient(session).start(CONTEXT, "lab-1")
    assert result == RuntimeOk(lab_ref="lab-1", payload={"status": "ok"})
    method, url, kwargs = session.requests[0]
    assert method == "PUT"
    assert url == "https://labs.test/api/v0/labs/lab-1/start"
    assert kwargs["headers"]["Authorization"] == "Bearer tkn"
    assert kwargs["timeout"] == 3


def test_runtime_stop_accepts_empty_body():
    session = FakeSession(FakeResponse(204, text=""))
    result = HttpLabRuntimeClient(session).stop(CONTEXT, "lab-1")
    assert isinstance(result, RuntimeOk)
    assert session.requests[0][1].endswith("/lab-1/stop")


@pytest.mark.parametrize(
    "error,code",
    [
        (requests.Timeout("slow"), "timeout"),
        (requests.ConnectionError("refused"), "transport"),
    ],
)
def test_runtime_transport_errors_become_failures(error, code):
    result = HttpLabRuntimeClient(FakeSession(error=error)).start(CONTEXT, "lab-1")
    assert isinstance(result, RuntimeFailure)
    assert result.code == code
    assert result.message


@pytest.mark.parametrize("status,retryable", [(502, True), (429, True), (404, False)])
def test_runtime_http_errors_keep_status(status, retryable):
    session = FakeSession(FakeResponse(status, text="upstream said no"))
    result = HttpLabRuntimeClient(session).stop(CONTEXT, "lab-1")
    assert isinstance(result, RuntimeFailure)
    assert result.code == "http_error"
    assert result.status == status
    assert result.retryable is retryable
    assert result.message == "upstream said no"


@pytest.mark.parametrize(
    "response,expected",
    [
        (FakeResponse(200, "started"), "STARTED"),
        (FakeResponse(200, {"state": "defined_on_core"}), "DEFINED_ON_CORE"),
        (FakeResponse(200, text="STOPPED"), "STOPPED"),
    ],
)
def test_runtime_state_parsing(response, expected):
    result = HttpLabRuntimeClient(FakeSession(response)).get_state(CONTEXT, "lab-1")
    assert result == RuntimeState(lab_ref="lab-1", state=expected)


def test_runtime_state_without_value_is_malformed():
    result = HttpLabRuntimeClient(FakeSession(FakeResponse(200, {"other": 1}))).get_state(CONTEXT, "lab-1")
    assert isinstance(result, RuntimeFailure)
    assert result.code == "malformed_state"
    assert result.retryable is False


def test_stopped_states():
    assert is_stopped_state(None)
    assert is_stopped_state("stopped")
    assert is_stopped_state("DEFINED_ON_CORE")
    assert not is_stopped_state("STARTED")
    assert RuntimeState(lab_ref="x", state="STOPPED").is_stopped


CHECKOUT = CheckoutRequest(
    transaction_id="RES_ABC_1234",
    amount_cents=20060,
    currency="XOF",
    description="Lab booking",
    customer_id="user-1",
    customer_email="a@example.com",
)


def _processor(session):
    return CinetPayProcessor(
        api_url="https://pay.test/",
        api_key="key",
        site_id="site",
        notify_url="https://netlab.test/api/payments/webhook",
        return_url="https://netlab.test/done",
        timeout=5,
        session=session,
    )


def test_checkout_created():
    session = FakeSession(
        FakeResponse(
            200,
            {
                "code": "201",
                "message": "CREATED",
                "data": {"payment_token": "tok", "payment_url": "https://pay.test/p/tok"},
            },
        )
    )
    result = _processor(session).create_checkout(CHECKOUT)
    assert isinstance(result, CheckoutCreated)
    assert result.payment_url == "https://pay.test/p/tok"
    assert result.payment_token == "tok"

    _, url, kwargs = session.requests[0]
    assert url == "https://pay.test/v2/payment"
    assert kwargs["json"]["amount"] == 201
    assert kwargs["json"]["transaction_id"] == "RES_ABC_1234"
    assert kwargs["json"]["customer_email"] == "a@example.com"
    assert "customer_phone_number" not in kwargs["json"]


def test_checkout_refused_and_unavailable():
    refused = _processor(
        FakeSession(FakeResponse(200, {"code": "608", "description": "MINIMUM_REQUIRED_FIELDS"}))
    ).create_checkout(CHECKOUT)
    assert isinstance(refused, ProcessorFailure)
    assert refused.code == "608"
    assert refused.message == "MINIMUM_REQUIRED_FIELDS"

    timed_out = _processor(FakeSession(error=requests.Timeout())).create_checkout(CHECKOUT)
    assert timed_out.code == "CONNECTION_TIMEOUT"

    garbage = _processor(FakeSession(FakeResponse(502, text="<html>bad gateway</html>"))).create_checkout(CHECKOUT)
    assert garbage.code == "MALFORMED"
    assert garbage.status == 502


@pytest.mark.parametrize(
    "payload,succeeded",
    [
        ({"code": "00", "message": "SUCCES", "data": {"status": "ACCEPTED", "payment_method": "OM"}}, True),
        ({"code": "600", "message": "PAYMENT_FAILED", "data": {"status": "REFUSED"}}, False),
        ({"code": "662", "message": "WAITING_CUSTOMER_PAYMENT", "data": {"status": "PENDING"}}, None),
    ],
)
def test_status_check(payload, succeeded):
    result = _processor(FakeSession(FakeResponse(200, payload))).check_status("RES_ABC_1234")
    assert result.succeeded is succeeded
    assert result.code == payload["code"]
    assert result.raw == payload


def test_processor_amount_is_whole_units():
    assert to_processor_amount(20000) == 200
    assert to_processor_amount(149) == 1

import os
os.environ["TESTING"] = "1"
os.environ.setdefault("SECRET_KEY", "test-secret")
os.environ["DATABASE_URL"] = "sqlite:///./test.db"
os.environ.setdefault("PAYMENT_WEBHOOK_SECRET", "whsec-test")
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

import sys
from pathlib import Path

import json
import uuid
from urllib.parse import urlencode
from datetime import datetime, timedelta, timezone

sys.path.append(str(Path(__file__).resolve().parents[2]))

from netlab.main import app
from netlab.database import Base, connect_args_for, get_db
from netlab import models, notify
from netlab.clock import FrozenClock, get_clock
from netlab.payments_processor import (
    CheckoutCreated,
    ProcessorFailure,
    ProcessorStatus,
    get_payment_processor,
)
from netlab.runtime import (
    RuntimeFailure,
    RuntimeOk,
    RuntimeState,
    context_from_env,
    get_lab_runtime,
)
from netlab.services import payments

SQLALCHEMY_DATABASE_URL = os.environ["DATABASE_URL"]
engine = create_engine(
    SQLALCHEMY_DATABASE_URL,
    connect_args=connect_args_for(SQLALCHEMY_DATABASE_URL),
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base.metadata.drop_all(bind=engine)
Base.metadata.create_all(bind=engine)

def override_get_db():
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()

app.dependency_overrides[get_db] = override_get_db

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


class FakeLabRuntime:
    """In-memory control plane recording every call."""

    def __init__(self):
        self.states: dict[str, str] = {}
        self.calls: list[tuple[str, str]] = []
        self.fail_start: str | None = None
        self.fail_stop: str | None = None
        self.fail_state: str | None = None

    def count(self, action, lab_ref=None):
        return sum(1 for a, ref in self.calls if a == action and (lab_ref is None or ref == lab_ref))

    def start(self, context, lab_ref):
        self.calls.append(("start", lab_ref))
        if self.fail_start:
            return RuntimeFailure(lab_ref=lab_ref, code="timeout", message=self.fail_start)
        self.states[lab_ref] = "STARTED"
        return RuntimeOk(lab_ref=lab_ref)

    def stop(self, context, lab_ref):
        self.calls.append(("stop", lab_ref))
        if self.fail_stop:
            return RuntimeFailure(lab_ref=lab_ref, code="http_error", message=self.fail_stop, status=502)
        self.states[lab_ref] = "STOPPED"
        return RuntimeOk(lab_ref=lab_ref)

    def get_state(self, context, lab_ref):
        self.calls.append(("state", lab_ref))
        if self.fail_state:
            return RuntimeFailure(lab_ref=lab_ref, code="transport", message=self.fail_state)
        return RuntimeState(lab_ref=lab_ref, state=self.states.get(lab_ref, "STOPPED"))


class FakeProcessor:
    def __init__(self):
        self.checkouts = []
        self.fail_checkout: str | None = None
        self.status: ProcessorStatus | ProcessorFailure | None = None

    def create_checkout(self, request):
        self.checkouts.append(request)
        if self.fail_checkout:
            return ProcessorFailure(code="CONNECTION_TIMEOUT", message=self.fail_checkout)
        token = f"tok-{request.transaction_id.lower()}"
        return CheckoutCreated(
            payment_url=f"https://checkout.test/pay/{token}",
            payment_token=token,
            raw={"code": "201", "message": "CREATED", "data": {"payment_token": token}},
        )

    def check_status(self, transaction_id):
        if self.status is None:
            return ProcessorStatus(transaction_id=transaction_id, succeeded=None, code="662")
        return self.status


@pytest.fixture(autouse=True)
def clean_tables():
    yield
    notify.EMAIL_OUTBOX.clear()
    with engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            conn.execute(table.delete())


@pytest.fixture
def clock():
    frozen = FrozenClock(T0)
    app.dependency_overrides[get_clock] = lambda: frozen
    yield frozen
    app.dependency_overrides.pop(get_clock, None)


@pytest.fixture
def runtime():
    fake = FakeLabRuntime()
    app.dependency_overrides[get_lab_runtime] = lambda: fake
    yield fake
    app.dependency_overrides.pop(get_lab_runtime, None)


@pytest.fixture
def processor():
    fake = FakeProcessor()
    app.dependency_overrides[get_payment_processor] = lambda: fake
    yield fake
    app.dependency_overrides.pop(get_payment_processor, None)


@pytest.fixture
def runtime_context():
    return context_from_env("test-token")


@pytest.fixture
def client(clock, runtime, processor):
    with TestClient(app) as c:
        yield c


@pytest.fixture
def db():
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def make_lab():
    def _make_lab(rate_cents: int = 0, *, state: str | None = "STOPPED", published: bool = True):
        session = TestingSessionLocal()
        lab = models.Lab(
            lab_ref=f"lab-{uuid.uuid4().hex[:8]}",
            title="Routing & Switching",
            hourly_rate_cents=rate_cents,
            state=state,
            is_published=published,
        )
        session.add(lab)
        session.commit()
        lab_ref = lab.lab_ref
        session.close()
        return lab_ref

    return _make_lab


@pytest.fixture
def auth_headers(client):
    """Register a fresh user; returns (headers, user_id)."""

    def _auth_headers(*, admin: bool = False):
        resp = client.post(
            "/api/auth/register",
            json={"email": f"{uuid.uuid4()}@example.com", "password": "secret"},
        )
        assert resp.status_code == 200, resp.text
        headers = {"Authorization": f"Bearer {resp.json()['access_token']}"}
        user_id = client.get("/api/users/me", headers=headers).json()["id"]
        if admin:
            session = TestingSessionLocal()
            session.get(models.User, uuid.UUID(user_id)).is_admin = True
            session.commit()
            session.close()
        return headers, user_id

    return _auth_headers


@pytest.fixture
def book(client, clock):
    """Create a reservation relative to the frozen clock."""

    def _book(headers, lab_ref, *, start_in: int = 10, minutes: int = 60):
        start = clock.now() + timedelta(minutes=start_in)
        return client.post(
            "/api/reservations",
            json={
                "lab_ref": lab_ref,
                "start_at": start.isoformat(),
                "end_at": (start + timedelta(minutes=minutes)).isoformat(),
            },
            headers=headers,
        )

    return _book


@pytest.fixture
def deliver_webhook(client):
    def _deliver(payload: dict, *, signature: str | None = None, form: bool = False):
        if form:
            body = urlencode(payload).encode()
            content_type = "application/x-www-form-urlencoded"
        else:
            body = json.dumps(payload).encode()
            content_type = "application/json"
        headers = {"content-type": content_type}
        headers["x-token"] = signature if signature is not None else payments.sign_payload(body)
        return client.post("/api/payments/webhook", content=body, headers=headers)

    return _deliver


@pytest.fixture
def session_factory():
    return TestingSessionLocal

import asyncio
import inspect
from datetime import timedelta
from uuid import UUID

import pytest

from netlab import models, notify
from netlab.payments_processor import ProcessorStatus
from netlab.routes import payments as payment_routes
from netlab.services import payments
from netlab.services.errors import MalformedNotification, WebhookAuthenticityError


@pytest.fixture
def paid_booking(client, auth_headers, make_lab, book):
    """A pending paid reservation with an initiated payment."""

    def _paid_booking(*, start_in: int = 10, minutes: int = 60):
        headers, user_id = auth_headers()
        lab_ref = make_lab(20000)
        reservation = book(headers, lab_ref, start_in=start_in, minutes=minutes).json()["reservation"]
        intent = client.post(f"/api/reservations/{reservation['id']}/payments", headers=headers)
        assert intent.status_code == 201, intent.text
        return headers, reservation, intent.json()

    return _paid_booking


def _success(transaction_id, **extra):
    payload = {"cpm_trans_id": transaction_id, "cpm_result": "00", "payment_method": "OM"}
    payload.update(extra)
    return payload


def test_initiate_payment_returns_checkout(paid_booking, processor, db):
    _, reservation, intent = paid_booking()
    assert intent["payment_url"].startswith("https://checkout.test/pay/")
    assert intent["transaction_id"].startswith("RES_")
    assert intent["payment"]["status"] == "pending"
    assert intent["payment"]["amount_cents"] == 20000
    assert processor.checkouts[0].amount_cents == 20000

    payment = db.get(models.Payment, UUID(intent["payment"]["id"]))
    assert payment.reservation_id == UUID(reservation["id"])
    assert payment.processor_payloads["checkout"]["code"] == "201"


def test_duplicate_success_webhook_starts_session_once(paid_booking, deliver_webhook, runtime, db):
    _, reservation, intent = paid_booking(start_in=10)
    payload = _success(intent["transaction_id"])

    first = deliver_webhook(payload)
    second = deliver_webhook(payload)

    assert first.status_code == 200, first.text
    assert second.status_code == 200
    assert first.json()["outcome"] == "completed"
    assert second.json()["outcome"] == "duplicate"
    assert runtime.count("start", reservation["lab_ref"]) == 1

    payment = db.get(models.Payment, UUID(intent["payment"]["id"]))
    assert payment.status == "completed"
    assert payment.payment_method == "OM"
    assert payment.paid_at is not None
    stored = db.get(models.Reservation, UUID(reservation["id"]))
    assert stored.status == "active"
    assert db.query(models.UsageRecord).filter_by(lab_ref=reservation["lab_ref"]).count() == 1


def test_success_webhook_for_later_slot_defers_start(paid_booking, deliver_webhook, runtime, db):
    _, reservation, intent = paid_booking(start_in=120)
    resp = deliver_webhook(_success(intent["transaction_id"]))
    assert resp.status_code == 200
    assert runtime.count("start") == 0
    assert db.get(models.Reservation, UUID(reservation["id"])).status == "active"


@pytest.mark.parametrize("signature", ["", "0" * 64, "not-a-signature"])
def test_bad_signature_is_rejected_without_side_effects(paid_booking, deliver_webhook, db, signature):
    _, reservation, intent = paid_booking()
    resp = deliver_webhook(_success(intent["transaction_id"]), signature=signature)
    assert resp.status_code == 401
    assert resp.json()["error"] == "unauthorized"

    payment = db.get(models.Payment, UUID(intent["payment"]["id"]))
    assert payment.status == "pending"
    assert "webhook" not in payment.processor_payloads
    assert db.get(models.Reservation, UUID(reservation["id"])).status == "pending"


def test_missing_signature_header_is_rejected(client, paid_booking):
    _, _, intent = paid_booking()
    resp = client.post(
        "/api/payments/webhook",
        json=_success(intent["transaction_id"]),
    )
    assert resp.status_code == 401


def test_unknown_transaction_is_404(client, deliver_webhook):
    resp = deliver_webhook(_success("RES_DOESNOTEXIST_00000000"))
    assert resp.status_code == 404


def test_notification_without_transaction_is_400(client, deliver_webhook):
    resp = deliver_webhook({"cpm_result": "00"})
    assert resp.status_code == 400
    assert resp.json()["error"] == "malformed"


def test_failed_payment_keeps_reservation_pending(paid_booking, deliver_webhook, db):
    _, reservation, intent = paid_booking()
    resp = deliver_webhook({"cpm_trans_id": intent["transaction_id"], "cpm_result": "600"})
    assert resp.status_code == 200
    assert resp.json()["outcome"] == "failed"

    payment = db.get(models.Payment, UUID(intent["payment"]["id"]))
    assert payment.status == "failed"
    assert db.get(models.Reservation, UUID(reservation["id"])).status == "pending"
    notice = (
        db.query(models.Notification)
        .filter(models.Notification.title == "Payment failed")
        .one()
    )
    assert "600" in notice.message


def test_payloads_are_merged_not_overwritten(paid_booking, deliver_webhook, db):
    _, _, intent = paid_booking(start_in=120)
    deliver_webhook({"cpm_trans_id": intent["transaction_id"], "cpm_result": "627"})
    deliver_webhook(_success(intent["transaction_id"]), form=True)

    payment = db.get(models.Payment, UUID(intent["payment"]["id"]))
    assert payment.status == "completed"
    kinds = [entry["kind"] for entry in payment.processor_payloads["history"]]
    assert kinds == ["checkout", "webhook", "webhook"]
    assert payment.processor_payloads["history"][1]["payload"]["cpm_result"] == "627"
    assert payment.webhook_payload["cpm_result"] == "00"


def test_webhook_correlates_processor_token(paid_booking, deliver_webhook, db):
    _, _, intent = paid_booking(start_in=120)
    payment = db.get(models.Payment, UUID(intent["payment"]["id"]))
    resp = deliver_webhook(_success(payment.external_transaction_id))
    assert resp.status_code == 200
    assert resp.json()["transaction_id"] == intent["transaction_id"]


def test_initiate_rejects_free_and_paid_reservations(client, auth_headers, make_lab, book, paid_booking, deliver_webhook):
    headers, _ = auth_headers()
    free = book(headers, make_lab(0), start_in=120).json()["reservation"]
    resp = client.post(f"/api/reservations/{free['id']}/payments", headers=headers)
    assert resp.status_code == 422

    owner, reservation, intent = paid_booking(start_in=120)
    deliver_webhook(_success(intent["transaction_id"]))
    again = client.post(f"/api/reservations/{reservation['id']}/payments", headers=owner)
    assert again.status_code == 422


def test_initiate_rejects_amount_below_processor_minimum(client, auth_headers, make_lab, book):
    headers, _ = auth_headers()
    cheap = book(headers, make_lab(5000), start_in=120).json()["reservation"]
    resp = client.post(f"/api/reservations/{cheap['id']}/payments", headers=headers)
    assert resp.status_code == 422
    assert "minimum" in resp.json()["message"]


def test_processor_outage_marks_payment_failed(client, auth_headers, make_lab, book, processor, db):
    headers, _ = auth_headers()
    reservation = book(headers, make_lab(20000), start_in=120).json()["reservation"]
    processor.fail_checkout = "timed out"

    resp = client.post(f"/api/reservations/{reservation['id']}/payments", headers=headers)
    assert resp.status_code == 503
    assert resp.json()["error"] == "external_unavailable"

    payment = db.query(models.Payment).filter_by(reservation_id=UUID(reservation["id"])).one()
    assert payment.status == "failed"
    assert payment.processor_payloads["checkout_error"]["message"] == "timed out"
    assert db.get(models.Reservation, UUID(reservation["id"])).status == "pending"


def test_refresh_applies_processor_status(client, paid_booking, processor, runtime, db):
    headers, reservation, intent = paid_booking(start_in=10)
    pending = client.post(f"/api/payments/{intent['payment']['id']}/refresh", headers=headers)
    assert pending.status_code == 200
    assert pending.json()["changed"] is False

    processor.status = ProcessorStatus(
        transaction_id=intent["transaction_id"],
        succeeded=True,
        code="00",
        payment_method="WAVE",
        raw={"code": "00", "data": {"status": "ACCEPTED"}},
    )
    done = client.post(f"/api/payments/{intent['payment']['id']}/refresh", headers=headers)
    assert done.status_code == 200
    assert done.json()["changed"] is True
    assert done.json()["payment"]["status"] == "completed"
    assert done.json()["reservation_status"] == "active"
    assert runtime.count("start", reservation["lab_ref"]) == 1


def test_cancel_pending_payment(client, paid_booking, deliver_webhook):
    headers, _, intent = paid_booking(start_in=120)
    resp = client.post(f"/api/payments/{intent['payment']['id']}/cancel", headers=headers)
    assert resp.status_code == 200
    assert resp.json()["status"] == "cancelled"

    again = client.post(f"/api/payments/{intent['payment']['id']}/cancel", headers=headers)
    assert again.status_code == 409


def test_payments_are_scoped_to_owner(client, paid_booking, auth_headers):
    headers, _, intent = paid_booking(start_in=120)
    stranger, _ = auth_headers()
    assert client.get(f"/api/payments/{intent['payment']['id']}", headers=headers).status_code == 200
    assert client.get(f"/api/payments/{intent['payment']['id']}", headers=stranger).status_code == 404
    assert len(client.get("/api/payments", headers=headers).json()) == 1
    assert client.get("/api/payments", headers=stranger).json() == []


def test_confirmation_email_is_queued(paid_booking, deliver_webhook):
    _, _, intent = paid_booking(start_in=120)
    deliver_webhook(_success(intent["transaction_id"]))
    assert any(subject == "Payment received" for _, subject, _ in notify.EMAIL_OUTBOX)


def test_signature_verification_is_constant_time_hmac():
    body = b'{"cpm_trans_id": "RES_1"}'
    payments.verify_signature(body, payments.sign_payload(body, "s3cret"), "s3cret")
    with pytest.raises(WebhookAuthenticityError):
        payments.verify_signature(body, payments.sign_payload(body, "other"), "s3cret")
    with pytest.raises(WebhookAuthenticityError):
        payments.verify_signature(body, None, "s3cret")
    with pytest.raises(WebhookAuthenticityError):
        payments.verify_signature(body, "abc", "")


def test_parse_notification_variants():
    accepted = payments.parse_notification(b'{"transaction_id": "T1", "status": "accepted"}', "application/json")
    assert isinstance(accepted, payments.PaymentSucceeded)

    refused = payments.parse_notification(b"cpm_trans_id=T2&cpm_result=624", "application/x-www-form-urlencoded")
    assert isinstance(refused, payments.PaymentFailed)
    assert refused.code == "624"
    assert refused.message

    with pytest.raises(MalformedNotification):
        payments.parse_notification(b"[1, 2]", "application/json")
    with pytest.raises(MalformedNotification):
        payments.parse_notification(b"", None)


def test_late_payment_for_reaped_reservation_is_recorded(paid_booking, deliver_webhook, clock, db):
    from netlab.services import reaper

    _, reservation, intent = paid_booking(start_in=120)
    clock.advance(timedelta(minutes=16))
    reaper.sweep(db, clock=clock)
    db.commit()

    resp = deliver_webhook(_success(intent["transaction_id"]))
    assert resp.status_code == 200
    db.expire_all()
    assert db.get(models.Payment, UUID(intent["payment"]["id"])).status == "completed"
    assert db.get(models.Reservation, UUID(reservation["id"])).status == "cancelled"


def test_second_checkout_cancels_the_open_one(client, paid_booking, processor, db):
    headers, reservation, first = paid_booking(start_in=120)
    second = client.post(f"/api/reservations/{reservation['id']}/payments", headers=headers)
    assert second.status_code == 201, second.text
    assert len(processor.checkouts) == 2

    statuses = {
        p.transaction_id: p.status
        for p in db.query(models.Payment).filter_by(reservation_id=UUID(reservation["id"]))
    }
    assert statuses == {
        first["transaction_id"]: "cancelled",
        second.json()["transaction_id"]: "pending",
    }


def test_only_one_payment_completes_per_reservation(client, paid_booking, deliver_webhook, runtime, db):
    headers, reservation, first = paid_booking(start_in=10)
    second = client.post(f"/api/reservations/{reservation['id']}/payments", headers=headers).json()

    won = deliver_webhook(_success(first["transaction_id"]))
    lost = deliver_webhook(_success(second["transaction_id"]))
    assert won.json()["outcome"] == "completed"
    assert lost.status_code == 200
    assert lost.json()["outcome"] == "superseded"
    assert deliver_webhook(_success(second["transaction_id"])).json()["outcome"] == "superseded"

    completed = (
        db.query(models.Payment)
        .filter_by(reservation_id=UUID(reservation["id"]), status="completed")
        .all()
    )
    assert [p.transaction_id for p in completed] == [first["transaction_id"]]
    loser = db.get(models.Payment, UUID(second["payment"]["id"]))
    assert loser.status == "cancelled"
    assert loser.webhook_payload["cpm_result"] == "00"
    assert runtime.count("start", reservation["lab_ref"]) == 1

    superseded = db.query(models.AuditLog).filter_by(action="payment.superseded").all()
    assert superseded and superseded[0].details["refund_required"] is True


def test_webhook_work_runs_off_the_event_loop(paid_booking, deliver_webhook, runtime, monkeypatch):
    assert not inspect.iscoroutinefunction(payment_routes.payment_webhook)

    loops = []
    start = runtime.start

    def recording_start(context, lab_ref):
        try:
            loops.append(asyncio.get_running_loop())
        except RuntimeError:
            loops.append(None)
        return start(context, lab_ref)

    monkeypatch.setattr(runtime, "start", recording_start)
    _, _, intent = paid_booking(start_in=10)
    resp = deliver_webhook(_success(intent["transaction_id"]))
    assert resp.json()["outcome"] == "completed"
    assert loops == [None]

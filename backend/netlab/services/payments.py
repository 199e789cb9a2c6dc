"""Reservation payments: checkout initiation, webhook verification and status polling."""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import os
import secrets
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional, Union
from urllib.parse import parse_qs
from uuid import UUID

import sqlalchemy as sa
from sqlalchemy.orm import Session, aliased

from .. import audit, metrics, models, notify
from ..clock import Clock, as_utc
from ..payments_processor import (
    CheckoutProcessor,
    CheckoutRequest,
    ProcessorFailure,
    SUCCESS_RESULT_CODE,
    SUCCESS_STATUSES,
)
from . import lifecycle
from .errors import (
    ExternalUnavailableError,
    InvalidTransition,
    MalformedNotification,
    PaymentAlreadyCompleted,
    PaymentNotFound,
    ReservationValidationError,
    WebhookAuthenticityError,
)
from .scheduling import LOOKAHEAD, has_completed_payment

# purpose: gate reservations on processor-confirmed payment with idempotent state application
# status: active
# depends_on: netlab.payments_processor, netlab.services.lifecycle

logger = logging.getLogger(__name__)

PAYMENT_WEBHOOK_SECRET = os.getenv("PAYMENT_WEBHOOK_SECRET", "")
PAYMENT_MIN_AMOUNT_CENTS = int(os.getenv("PAYMENT_MIN_AMOUNT_CENTS", "10000"))
SIGNATURE_HEADER = "x-token"
_FORENSIC_PREFIX_BYTES = 256


@dataclass(frozen=True)
class PaymentSucceeded:
    transaction_id: str
    external_transaction_id: Optional[str] = None
    payment_method: Optional[str] = None
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class PaymentFailed:
    transaction_id: str
    code: str
    message: str
    payload: dict[str, Any] = field(default_factory=dict)


ProcessorNotification = Union[PaymentSucceeded, PaymentFailed]


@dataclass
class PaymentIntent:
    payment: models.Payment
    payment_url: str


@dataclass
class PaymentUpdate:
    """Result of applying a processor notification to local state.

    ``outcome`` is one of ``completed``, ``duplicate``, ``superseded``,
    ``failed``, ``ignored`` or ``pending``. ``superseded`` marks a success
    for a reservation that another payment already settled; it needs a
    refund.
    """

    payment: models.Payment
    outcome: str
    reservation: Optional[models.Reservation] = None
    start_session: bool = False

    @property
    def changed(self) -> bool:
        return self.outcome in ("completed", "failed", "superseded")


def generate_transaction_id(reservation_id: UUID) -> str:
    return f"RES_{reservation_id.hex[:12].upper()}_{secrets.token_hex(4).upper()}"


def sign_payload(raw_body: bytes, secret: str | None = None) -> str:
    key = (secret if secret is not None else PAYMENT_WEBHOOK_SECRET).encode()
    return hmac.new(key, raw_body, hashlib.sha256).hexdigest()


def verify_signature(raw_body: bytes, signature: str | None, secret: str | None = None) -> None:
    key = secret if secret is not None else PAYMENT_WEBHOOK_SECRET
    if not key:
        logger.error("payment webhook secret is not configured; rejecting delivery")
        raise WebhookAuthenticityError("Webhook verification is not configured")
    if not signature:
        logger.warning(
            "payment webhook without signature, payload prefix %r",
            raw_body[:_FORENSIC_PREFIX_BYTES],
        )
        raise WebhookAuthenticityError("Missing webhook signature")
    expected = sign_payload(raw_body, key)
    if not hmac.compare_digest(expected, signature.strip().lower()):
        logger.warning(
            "payment webhook signature mismatch, payload prefix %r",
            raw_body[:_FORENSIC_PREFIX_BYTES],
        )
        raise WebhookAuthenticityError("Invalid webhook signature")


def _decode_body(raw_body: bytes, content_type: str | None) -> dict[str, Any]:
    text = raw_body.decode("utf-8", errors="replace").strip()
    if not text:
        raise MalformedNotification("Empty notification body")
    if (content_type and "json" in content_type) or text.startswith("{"):
        try:
            data = json.loads(text)
        except ValueError as exc:
            raise MalformedNotification("Notification body is not valid JSON") from exc
    else:
        data = {key: values[-1] for key, values in parse_qs(text).items()}
    if not isinstance(data, dict):
        raise MalformedNotification("Notification body must be an object")
    return data


def parse_notification(raw_body: bytes, content_type: str | None = None) -> ProcessorNotification:
    data = _decode_body(raw_body, content_type)
    transaction_id = data.get("cpm_trans_id") or data.get("transaction_id")
    if not transaction_id:
        raise MalformedNotification("Notification carries no transaction id")
    transaction_id = str(transaction_id)
    code = str(data.get("cpm_result") or data.get("code") or "")
    status = str(data.get("status") or data.get("cpm_trans_status") or "").upper()
    if code == SUCCESS_RESULT_CODE or status in SUCCESS_STATUSES:
        return PaymentSucceeded(
            transaction_id=transaction_id,
            external_transaction_id=_optional_str(
                data.get("cpm_payid") or data.get("operator_id") or data.get("payment_token")
            ),
            payment_method=_optional_str(data.get("payment_method")),
            payload=data,
        )
    message = data.get("cpm_error_message") or data.get("message") or data.get("description")
    return PaymentFailed(
        transaction_id=transaction_id,
        code=code or status or "UNKNOWN",
        message=str(message) if message else f"Processor reported {code or status or 'a failure'}",
        payload=data,
    )


def _optional_str(value: Any) -> Optional[str]:
    return str(value) if value not in (None, "") else None


def merge_payload(payment: models.Payment, kind: str, payload: dict[str, Any], at: datetime) -> None:
    """Keep the latest payload per kind plus an append-only history."""

    merged = dict(payment.processor_payloads or {})
    history = list(merged.get("history", []))
    history.append({"kind": kind, "received_at": as_utc(at).isoformat(), "payload": payload})
    merged[kind] = payload
    merged["history"] = history
    payment.processor_payloads = merged


def find_payment(db: Session, transaction_id: str) -> Optional[models.Payment]:
    return (
        db.query(models.Payment)
        .filter(
            sa.or_(
                models.Payment.transaction_id == transaction_id,
                models.Payment.external_transaction_id == transaction_id,
            )
        )
        .first()
    )


def initiate_payment(
    db: Session,
    reservation: models.Reservation,
    customer: models.User,
    *,
    processor: CheckoutProcessor,
    clock: Clock,
    description: str | None = None,
    customer_phone: str | None = None,
) -> PaymentIntent:
    """Create a pending payment and a processor checkout for ``reservation``.

    Any other pending payment of the reservation is cancelled first, so a
    reservation has at most one open checkout.
    On processor failure the local payment is marked failed and
    ``ExternalUnavailableError`` is raised; the caller should still commit.
    """

    if reservation.status != "pending":
        raise ReservationValidationError(f"Reservation is {reservation.status} and cannot be paid")
    if has_completed_payment(db, reservation.id):
        raise PaymentAlreadyCompleted("This reservation is already paid")
    amount = reservation.estimated_cost_cents
    if amount <= 0:
        raise ReservationValidationError("This reservation is free and needs no payment")
    if amount < PAYMENT_MIN_AMOUNT_CENTS:
        raise ReservationValidationError(
            f"Amount is below the processor minimum of {PAYMENT_MIN_AMOUNT_CENTS} cents"
        )

    now = clock.now()
    replaced = db.execute(
        sa.update(models.Payment)
        .where(models.Payment.reservation_id == reservation.id, models.Payment.status == "pending")
        .values(status="cancelled", updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if replaced.rowcount:
        logger.info(
            "cancelled %d open checkout(s) for reservation %s", replaced.rowcount, reservation.id
        )
        audit.log_action(
            db, customer.id, "payment.replace", "reservation", reservation.id,
            {"cancelled_payments": replaced.rowcount}, at=now,
        )
    lab = reservation.lab
    currency = lab.currency if lab is not None else "XOF"
    payment = models.Payment(
        user_id=customer.id,
        reservation_id=reservation.id,
        transaction_id=generate_transaction_id(reservation.id),
        amount_cents=amount,
        currency=currency,
        status="pending",
        description=description or f"Reservation of lab {reservation.lab_ref}",
        processor_payloads={},
        created_at=now,
        updated_at=now,
    )
    db.add(payment)
    db.flush()

    result = processor.create_checkout(
        CheckoutRequest(
            transaction_id=payment.transaction_id,
            amount_cents=amount,
            currency=currency,
            description=payment.description,
            customer_id=str(customer.id),
            customer_email=customer.email,
            customer_name=customer.full_name,
            customer_phone=customer_phone or customer.phone_number,
        )
    )
    if isinstance(result, ProcessorFailure):
        payment.status = "failed"
        merge_payload(
            payment,
            "checkout_error",
            {"code": result.code, "message": result.message, "status": result.status, "raw": result.raw},
            now,
        )
        db.flush()
        audit.log_action(
            db, customer.id, "payment.initiate.failed", "payment", payment.id,
            {"code": result.code, "message": result.message}, at=now,
        )
        raise ExternalUnavailableError(
            "Payment processor is unavailable, please retry", source="payment_processor", detail=result.message
        )

    payment.payment_url = result.payment_url
    payment.external_transaction_id = result.payment_token
    merge_payload(payment, "checkout", result.raw, now)
    db.flush()
    audit.log_action(
        db, customer.id, "payment.initiate", "payment", payment.id,
        {"reservation_id": str(reservation.id), "amount_cents": amount}, at=now,
    )
    return PaymentIntent(payment=payment, payment_url=result.payment_url)


def _apply_notification(
    db: Session,
    payment: models.Payment,
    notification: ProcessorNotification,
    *,
    clock: Clock,
) -> PaymentUpdate:
    now = clock.now()
    if isinstance(notification, PaymentFailed):
        result = db.execute(
            sa.update(models.Payment)
            .where(models.Payment.id == payment.id, models.Payment.status == "pending")
            .values(status="failed", updated_at=now)
            .execution_options(synchronize_session=False)
        )
        db.refresh(payment)
        if result.rowcount == 0:
            logger.info("failure notice for %s ignored, payment is %s", payment.transaction_id, payment.status)
            return PaymentUpdate(payment=payment, outcome="ignored")
        audit.log_action(
            db, None, "payment.failed", "payment", payment.id,
            {"code": notification.code, "message": notification.message}, at=now,
        )
        notify.dispatch(
            db,
            payment.user,
            "Payment failed",
            f"Your payment {payment.transaction_id} was not accepted: {notification.message}",
            category="payments",
            meta={"payment_id": str(payment.id), "code": notification.code},
        )
        return PaymentUpdate(payment=payment, outcome="failed", reservation=payment.reservation)

    values: dict[str, Any] = {"status": "completed", "paid_at": now, "updated_at": now}
    if notification.payment_method:
        values["payment_method"] = notification.payment_method
    if notification.external_transaction_id and not payment.external_transaction_id:
        values["external_transaction_id"] = notification.external_transaction_id
    conditions = [models.Payment.id == payment.id, models.Payment.status != "completed"]
    if payment.reservation_id is not None:
        sibling = aliased(models.Payment)
        conditions.append(
            ~sa.exists().where(
                sibling.reservation_id == payment.reservation_id,
                sibling.status == "completed",
                sibling.id != payment.id,
            )
        )
    result = db.execute(
        sa.update(models.Payment)
        .where(*conditions)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    db.refresh(payment)
    if result.rowcount == 0:
        if payment.status == "completed":
            logger.info("duplicate completion for %s acknowledged without side effects", payment.transaction_id)
            return PaymentUpdate(payment=payment, outcome="duplicate", reservation=payment.reservation)
        return _supersede(db, payment, now)

    audit.log_action(
        db, None, "payment.completed", "payment", payment.id,
        {"amount_cents": payment.amount_cents}, at=now,
    )
    notify.dispatch(
        db,
        payment.user,
        "Payment received",
        f"Payment {payment.transaction_id} of {payment.amount_cents / 100:.0f} {payment.currency} confirmed.",
        category="payments",
        meta={"payment_id": str(payment.id)},
        email=True,
    )
    reservation = payment.reservation
    start_now = False
    if reservation is not None:
        if lifecycle.transition(
            db, reservation, "active", clock=clock, note="Payment confirmed", strict=False
        ):
            start_now = as_utc(reservation.start_at) - now <= LOOKAHEAD and as_utc(reservation.end_at) > now
        elif reservation.status == "cancelled":
            logger.warning(
                "payment %s completed for cancelled reservation %s; manual follow-up needed",
                payment.transaction_id,
                reservation.id,
            )
    return PaymentUpdate(
        payment=payment, outcome="completed", reservation=reservation, start_session=start_now
    )


def _supersede(db: Session, payment: models.Payment, now: datetime) -> PaymentUpdate:
    """Record a success that lost to another completed payment of the same reservation."""

    db.execute(
        sa.update(models.Payment)
        .where(models.Payment.id == payment.id, models.Payment.status == "pending")
        .values(status="cancelled", updated_at=now)
        .execution_options(synchronize_session=False)
    )
    db.refresh(payment)
    logger.warning(
        "payment %s succeeded but reservation %s is already paid; refund of %d %s required",
        payment.transaction_id,
        payment.reservation_id,
        payment.amount_cents,
        payment.currency,
    )
    audit.log_action(
        db, None, "payment.superseded", "payment", payment.id,
        {"reservation_id": str(payment.reservation_id), "refund_required": True}, at=now,
    )
    return PaymentUpdate(payment=payment, outcome="superseded", reservation=payment.reservation)


def handle_webhook(
    db: Session,
    raw_body: bytes,
    signature: str | None,
    *,
    clock: Clock,
    content_type: str | None = None,
    secret: str | None = None,
) -> PaymentUpdate:
    """Verify, correlate and apply one processor notification.

    Nothing is read or written before the signature checks out. The caller
    commits and then starts the session when ``start_session`` is set.
    """

    verify_signature(raw_body, signature, secret)
    notification = parse_notification(raw_body, content_type)
    payment = find_payment(db, notification.transaction_id)
    if payment is None:
        logger.warning("webhook for unknown transaction %s", notification.transaction_id)
        raise PaymentNotFound(f"Unknown transaction {notification.transaction_id}")

    now = clock.now()
    merge_payload(payment, "webhook", notification.payload, now)
    payment.webhook_payload = notification.payload
    db.flush()
    update = _apply_notification(db, payment, notification, clock=clock)
    metrics.WEBHOOK_OUTCOMES.labels(update.outcome).inc()
    return update


def refresh_payment_status(
    db: Session,
    payment: models.Payment,
    *,
    processor: CheckoutProcessor,
    clock: Clock,
) -> PaymentUpdate:
    """Poll the processor and apply its verdict the same way a webhook would."""

    result = processor.check_status(payment.transaction_id)
    now = clock.now()
    if isinstance(result, ProcessorFailure):
        merge_payload(payment, "status_check_error", {"code": result.code, "message": result.message}, now)
        db.flush()
        raise ExternalUnavailableError(
            "Payment processor is unavailable, please retry", source="payment_processor", detail=result.message
        )
    merge_payload(payment, "status_check", result.raw, now)
    db.flush()
    if result.succeeded is None:
        return PaymentUpdate(payment=payment, outcome="pending", reservation=payment.reservation)
    if result.succeeded:
        notification: ProcessorNotification = PaymentSucceeded(
            transaction_id=payment.transaction_id,
            external_transaction_id=result.external_transaction_id,
            payment_method=result.payment_method,
            payload=result.raw,
        )
    else:
        notification = PaymentFailed(
            transaction_id=payment.transaction_id,
            code=result.code or "UNKNOWN",
            message=result.message or "Payment was not accepted",
            payload=result.raw,
        )
    return _apply_notification(db, payment, notification, clock=clock)


def cancel_payment(db: Session, payment: models.Payment, *, actor: models.User, clock: Clock) -> models.Payment:
    now = clock.now()
    result = db.execute(
        sa.update(models.Payment)
        .where(models.Payment.id == payment.id, models.Payment.status == "pending")
        .values(status="cancelled", updated_at=now)
        .execution_options(synchronize_session=False)
    )
    db.refresh(payment)
    if result.rowcount == 0:
        raise InvalidTransition(f"Payment is {payment.status} and cannot be cancelled")
    audit.log_action(db, actor.id, "payment.cancel", "payment", payment.id, at=now)
    return payment


def list_payments(db: Session, user: models.User, *, include_all: bool = False) -> list[models.Payment]:
    query = db.query(models.Payment)
    if not (include_all and user.is_admin):
        query = query.filter(models.Payment.user_id == user.id)
    return query.order_by(models.Payment.created_at.desc()).all()


def get_payment(db: Session, user: models.User, payment_id: UUID) -> models.Payment:
    payment = db.get(models.Payment, payment_id)
    if payment is None or (not user.is_admin and payment.user_id != user.id):
        raise PaymentNotFound("Payment not found")
    return payment

"""Payment status, cancellation and processor webhook routes."""

from __future__ import annotations

import logging
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Header, Request
from sqlalchemy.orm import Session

from .. import models, schemas
from ..auth import get_current_user
from ..clock import Clock, get_clock
from ..database import get_db
from ..payments_processor import CheckoutProcessor, get_payment_processor
from ..runtime import LabRuntimeClient, RuntimeContext, get_lab_runtime, get_runtime_context
from ..services import lifecycle, payments
from ..services.errors import ExternalUnavailableError, NetLabError, SessionAlreadyOpen

# purpose: expose payment records and accept processor notifications
# status: active
# depends_on: netlab.services.payments, netlab.services.lifecycle

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/payments", tags=["payments"])


def _start_after_payment(
    db: Session,
    update: payments.PaymentUpdate,
    *,
    runtime: LabRuntimeClient,
    context: RuntimeContext,
    clock: Clock,
) -> None:
    if not update.start_session or update.reservation is None:
        return
    try:
        lifecycle.start_session(
            db, update.reservation, runtime=runtime, context=context, clock=clock
        )
    except (ExternalUnavailableError, SessionAlreadyOpen) as exc:
        # payment state is already durable; the runtime needs a manual start
        logger.warning(
            "session for reservation %s not started after payment: %s",
            update.reservation.id,
            exc,
        )


async def raw_body(request: Request) -> bytes:
    """The undecoded request body, as signed by the processor."""

    return await request.body()


@router.post("/webhook", response_model=schemas.WebhookAck)
def payment_webhook(
    body: bytes = Depends(raw_body),
    signature: Optional[str] = Header(None, alias=payments.SIGNATURE_HEADER),
    content_type: Optional[str] = Header(None),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    runtime: LabRuntimeClient = Depends(get_lab_runtime),
    context: RuntimeContext = Depends(get_runtime_context),
):
    try:
        update = payments.handle_webhook(
            db, body, signature, clock=clock, content_type=content_type
        )
        db.commit()
    except NetLabError:
        db.rollback()
        raise
    _start_after_payment(db, update, runtime=runtime, context=context, clock=clock)
    return schemas.WebhookAck(
        outcome=update.outcome,
        transaction_id=update.payment.transaction_id,
        received_at=clock.now(),
    )


@router.get("", response_model=list[schemas.PaymentOut])
def list_payments(
    include_all: bool = False,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    return payments.list_payments(db, user, include_all=include_all)


@router.get("/{payment_id}", response_model=schemas.PaymentOut)
def get_payment(
    payment_id: UUID,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    return payments.get_payment(db, user, payment_id)


@router.post("/{payment_id}/refresh", response_model=schemas.PaymentStatusOut)
def refresh_payment(
    payment_id: UUID,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
    clock: Clock = Depends(get_clock),
    processor: CheckoutProcessor = Depends(get_payment_processor),
    runtime: LabRuntimeClient = Depends(get_lab_runtime),
    context: RuntimeContext = Depends(get_runtime_context),
):
    payment = payments.get_payment(db, user, payment_id)
    try:
        update = payments.refresh_payment_status(db, payment, processor=processor, clock=clock)
        db.commit()
    except ExternalUnavailableError:
        db.commit()
        raise
    except NetLabError:
        db.rollback()
        raise
    _start_after_payment(db, update, runtime=runtime, context=context, clock=clock)
    db.refresh(payment)
    return schemas.PaymentStatusOut(
        payment=schemas.PaymentOut.model_validate(payment),
        reservation_status=payment.reservation.status if payment.reservation else None,
        changed=update.changed,
    )


@router.post("/{payment_id}/cancel", response_model=schemas.PaymentOut)
def cancel_payment(
    payment_id: UUID,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
    clock: Clock = Depends(get_clock),
):
    payment = payments.get_payment(db, user, payment_id)
    try:
        payments.cancel_payment(db, payment, actor=user, clock=clock)
        db.commit()
        db.refresh(payment)
    except NetLabError:
        db.rollback()
        raise
    return payment

"""Lab reservation API routes."""

from __future__ import annotations

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from .. import models, schemas
from ..auth import get_current_user
from ..clock import Clock, get_clock
from ..database import get_db
from ..payments_processor import CheckoutProcessor, get_payment_processor
from ..runtime import LabRuntimeClient, RuntimeContext, get_lab_runtime, get_runtime_context
from ..services import lifecycle, payments, scheduling
from ..services.errors import ExternalUnavailableError, NetLabError

# purpose: book lab slots, pay for them and drive their runtime sessions
# status: active
# depends_on: netlab.services.scheduling, netlab.services.lifecycle, netlab.services.payments

router = APIRouter(prefix="/api/reservations", tags=["reservations"])


def _creation_message(needs_payment: bool, outcome) -> str:
    if outcome.started:
        return "Reservation confirmed, the lab environment is starting."
    if outcome.runtime_error:
        return (
            "Your reservation is confirmed but the environment could not be started. "
            "Please start it manually."
        )
    if needs_payment:
        return "Reservation created, complete the payment to confirm it."
    return "Reservation confirmed."


@router.post("", status_code=status.HTTP_201_CREATED, response_model=schemas.ReservationCreated)
def create_reservation(
    payload: schemas.ReservationCreate,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
    clock: Clock = Depends(get_clock),
    runtime: LabRuntimeClient = Depends(get_lab_runtime),
    context: RuntimeContext = Depends(get_runtime_context),
):
    try:
        reservation = scheduling.create_reservation(db, user, payload, clock=clock)
        db.commit()
        db.refresh(reservation)
    except NetLabError:
        db.rollback()
        raise
    outcome = lifecycle.auto_start_if_due(
        db, reservation, runtime=runtime, context=context, clock=clock
    )
    db.refresh(reservation)
    needs_payment = scheduling.requires_payment(db, reservation)
    return schemas.ReservationCreated(
        reservation=schemas.ReservationOut.model_validate(reservation),
        requires_payment=needs_payment,
        auto_started=outcome.started,
        runtime_error=outcome.runtime_error,
        message=_creation_message(needs_payment, outcome),
    )


@router.get("", response_model=list[schemas.ReservationOut])
def list_reservations(
    state: Optional[str] = None,
    include_all: bool = False,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    return scheduling.list_reservations(db, user, include_all=include_all, status=state)


@router.get("/active/{lab_ref}", response_model=schemas.ActiveReservationOut)
def active_reservation(
    lab_ref: str,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
    clock: Clock = Depends(get_clock),
):
    reservation = scheduling.active_reservation_for(db, user, lab_ref, clock.now())
    return schemas.ActiveReservationOut(
        lab_ref=lab_ref,
        reservation=schemas.ReservationOut.model_validate(reservation) if reservation else None,
    )


@router.get("/{reservation_id}", response_model=schemas.ReservationOut)
def get_reservation(
    reservation_id: UUID,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    return scheduling.get_reservation(db, user, reservation_id)


@router.post("/{reservation_id}/cancel", response_model=schemas.SessionOut)
def cancel_reservation(
    reservation_id: UUID,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
    clock: Clock = Depends(get_clock),
    runtime: LabRuntimeClient = Depends(get_lab_runtime),
    context: RuntimeContext = Depends(get_runtime_context),
):
    reservation = scheduling.get_reservation(db, user, reservation_id)
    try:
        has_session = lifecycle.cancel_reservation(db, reservation, actor=user, clock=clock)
        db.commit()
    except NetLabError:
        db.rollback()
        raise
    record = None
    runtime_error = None
    if has_session:
        stop = lifecycle.stop_session(
            db, reservation, runtime=runtime, context=context, clock=clock, actor_id=user.id
        )
        record, runtime_error = stop.usage_record, stop.runtime_error
    db.refresh(reservation)
    return schemas.SessionOut(
        reservation=schemas.ReservationOut.model_validate(reservation),
        usage_record=schemas.UsageRecordOut.model_validate(record) if record else None,
        runtime_error=runtime_error,
    )


def _require_runtime_access(db: Session, user: models.User, reservation: models.Reservation, clock: Clock):
    error = scheduling.reservation_access_error(db, user, reservation, clock.now())
    if error:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=error)


@router.post("/{reservation_id}/start", response_model=schemas.SessionOut)
def start_reservation(
    reservation_id: UUID,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
    clock: Clock = Depends(get_clock),
    runtime: LabRuntimeClient = Depends(get_lab_runtime),
    context: RuntimeContext = Depends(get_runtime_context),
):
    reservation = scheduling.get_reservation(db, user, reservation_id)
    _require_runtime_access(db, user, reservation, clock)
    try:
        lifecycle.activate(db, reservation, clock=clock)
        db.commit()
    except NetLabError:
        db.rollback()
        raise
    record = lifecycle.start_session(
        db, reservation, runtime=runtime, context=context, clock=clock, actor_id=user.id
    )
    db.refresh(reservation)
    return schemas.SessionOut(
        reservation=schemas.ReservationOut.model_validate(reservation),
        usage_record=schemas.UsageRecordOut.model_validate(record),
    )


@router.post("/{reservation_id}/stop", response_model=schemas.SessionOut)
def stop_reservation(
    reservation_id: UUID,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
    clock: Clock = Depends(get_clock),
    runtime: LabRuntimeClient = Depends(get_lab_runtime),
    context: RuntimeContext = Depends(get_runtime_context),
):
    reservation = scheduling.get_reservation(db, user, reservation_id)
    if reservation.status != "active":
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Reservation is {reservation.status} and has no session to stop",
        )
    stop = lifecycle.stop_session(
        db, reservation, runtime=runtime, context=context, clock=clock, actor_id=user.id
    )
    db.refresh(reservation)
    return schemas.SessionOut(
        reservation=schemas.ReservationOut.model_validate(reservation),
        usage_record=schemas.UsageRecordOut.model_validate(stop.usage_record) if stop.usage_record else None,
        runtime_error=stop.runtime_error,
    )


@router.post(
    "/{reservation_id}/payments",
    status_code=status.HTTP_201_CREATED,
    response_model=schemas.PaymentIntentOut,
)
def initiate_payment(
    reservation_id: UUID,
    payload: Optional[schemas.PaymentInitiate] = None,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
    clock: Clock = Depends(get_clock),
    processor: CheckoutProcessor = Depends(get_payment_processor),
):
    reservation = scheduling.get_reservation(db, user, reservation_id)
    payload = payload or schemas.PaymentInitiate()
    try:
        intent = payments.initiate_payment(
            db,
            reservation,
            user,
            processor=processor,
            clock=clock,
            description=payload.description,
            customer_phone=payload.customer_phone,
        )
        db.commit()
        db.refresh(intent.payment)
    except ExternalUnavailableError:
        # keep the failed payment row and its processor error for audit
        db.commit()
        raise
    except NetLabError:
        db.rollback()
        raise
    return schemas.PaymentIntentOut(
        payment=schemas.PaymentOut.model_validate(intent.payment),
        transaction_id=intent.payment.transaction_id,
        payment_url=intent.payment_url,
    )

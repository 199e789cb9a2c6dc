"""Reservation scheduling: overlap detection, validation and persistence."""

from __future__ import annotations

import logging
import math
import os
from datetime import datetime, timedelta
from typing import Optional
from uuid import UUID

import sqlalchemy as sa
from sqlalchemy.orm import Session

from .. import audit, metrics, models, notify, schemas
from ..clock import Clock, as_utc
from .errors import (
    LabNotFound,
    ReservationConflict,
    ReservationNotFound,
    ReservationValidationError,
)

# purpose: allocate non-overlapping lab slots and answer "who holds this lab now"
# status: active
# depends_on: netlab.models.Lab, netlab.models.Reservation, netlab.models.Payment

logger = logging.getLogger(__name__)

LOOKAHEAD = timedelta(minutes=int(os.getenv("RESERVATION_LOOKAHEAD_MINUTES", "15")))

_OPEN_STATUSES = ("pending", "active")


def intervals_overlap(s1: datetime, e1: datetime, s2: datetime, e2: datetime) -> bool:
    """Half-open intervals overlap iff each starts before the other ends."""

    return s1 < e2 and s2 < e1


def completed_payment_exists():
    """Correlated ``EXISTS`` for a completed payment on the enclosing reservation."""

    return (
        sa.exists()
        .where(
            models.Payment.reservation_id == models.Reservation.id,
            models.Payment.status == "completed",
        )
        .correlate(models.Reservation)
    )


def has_conflict(
    db: Session,
    lab_ref: str,
    start: datetime,
    end: datetime,
    exclude_reservation_id: UUID | None = None,
) -> bool:
    query = db.query(models.Reservation.id).filter(
        models.Reservation.lab_ref == lab_ref,
        models.Reservation.status != "cancelled",
        models.Reservation.start_at < as_utc(end),
        models.Reservation.end_at > as_utc(start),
    )
    if exclude_reservation_id is not None:
        query = query.filter(models.Reservation.id != exclude_reservation_id)
    return db.query(query.exists()).scalar()


def estimate_cost(lab: models.Lab, start: datetime, end: datetime) -> int:
    """Whole started hours at the lab's hourly rate, one hour minimum."""

    rate = lab.hourly_rate_cents or 0
    if rate <= 0:
        return 0
    hours = (as_utc(end) - as_utc(start)).total_seconds() / 3600
    return max(1, math.ceil(hours)) * rate


def _claim_lab(db: Session, lab_ref: str) -> Optional[models.Lab]:
    # The write lock taken here is held until commit, so concurrent creates on
    # the same lab queue up behind it before running their overlap query.
    result = db.execute(
        sa.update(models.Lab)
        .where(models.Lab.lab_ref == lab_ref)
        .values(reservation_seq=models.Lab.reservation_seq + 1)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return None
    lab = db.query(models.Lab).filter(models.Lab.lab_ref == lab_ref).one()
    db.refresh(lab)
    return lab


def create_reservation(
    db: Session,
    user: models.User,
    payload: schemas.ReservationCreate,
    *,
    clock: Clock,
) -> models.Reservation:
    """Validate and insert a pending reservation.

    The caller owns the transaction: commit on success, roll back on any
    ``NetLabError``. Nothing is flushed before validation and the overlap
    check have passed.
    """

    now = clock.now()
    start = as_utc(payload.start_at)
    end = as_utc(payload.end_at)
    if end <= start:
        raise ReservationValidationError("end_at must be after start_at")
    if start <= now:
        raise ReservationValidationError("start_at must be in the future")

    lab = _claim_lab(db, payload.lab_ref)
    if lab is None:
        raise LabNotFound(f"Lab {payload.lab_ref} not found")
    if not lab.is_published:
        raise ReservationValidationError(f"Lab {lab.lab_ref} is not open for reservations")

    if has_conflict(db, lab.lab_ref, start, end):
        metrics.RESERVATION_CONFLICTS.inc()
        logger.info("reservation conflict on %s for %s - %s", lab.lab_ref, start, end)
        raise ReservationConflict("This time slot is already reserved for this lab")

    reservation = models.Reservation(
        user_id=user.id,
        lab_ref=lab.lab_ref,
        start_at=start,
        end_at=end,
        status="pending",
        estimated_cost_cents=estimate_cost(lab, start, end),
        created_at=now,
        updated_at=now,
    )
    db.add(reservation)
    db.flush()
    audit.log_action(
        db,
        user.id,
        "reservation.create",
        "reservation",
        reservation.id,
        {
            "lab_ref": lab.lab_ref,
            "start_at": start.isoformat(),
            "end_at": end.isoformat(),
            "estimated_cost_cents": reservation.estimated_cost_cents,
        },
        at=now,
    )
    notify.dispatch(
        db,
        user,
        "Reservation created",
        f"Your reservation of {lab.title} from {start:%Y-%m-%d %H:%M} to {end:%H:%M} UTC is pending.",
        category="reservations",
        meta={"reservation_id": str(reservation.id), "lab_ref": lab.lab_ref},
    )
    metrics.RESERVATIONS_CREATED.inc()
    return reservation


def requires_payment(db: Session, reservation: models.Reservation) -> bool:
    if reservation.estimated_cost_cents <= 0 or reservation.status != "pending":
        return False
    return not has_completed_payment(db, reservation.id)


def has_completed_payment(db: Session, reservation_id: UUID) -> bool:
    return db.query(
        db.query(models.Payment.id)
        .filter(
            models.Payment.reservation_id == reservation_id,
            models.Payment.status == "completed",
        )
        .exists()
    ).scalar()


def list_reservations(
    db: Session,
    user: models.User,
    *,
    include_all: bool = False,
    status: str | None = None,
) -> list[models.Reservation]:
    query = db.query(models.Reservation)
    if not (include_all and user.is_admin):
        query = query.filter(models.Reservation.user_id == user.id)
    if status:
        query = query.filter(models.Reservation.status == status)
    return query.order_by(models.Reservation.start_at.desc()).all()


def get_reservation(db: Session, user: models.User, reservation_id: UUID) -> models.Reservation:
    reservation = db.get(models.Reservation, reservation_id)
    if reservation is None or (not user.is_admin and reservation.user_id != user.id):
        raise ReservationNotFound("Reservation not found")
    return reservation


def active_reservation_for(
    db: Session,
    user: models.User,
    lab_ref: str,
    now: datetime,
    *,
    lead: timedelta = timedelta(0),
) -> Optional[models.Reservation]:
    """The caller's open reservation covering ``now`` (``lead`` early), if any."""

    now = as_utc(now)
    return (
        db.query(models.Reservation)
        .filter(
            models.Reservation.user_id == user.id,
            models.Reservation.lab_ref == lab_ref,
            models.Reservation.status.in_(_OPEN_STATUSES),
            models.Reservation.start_at <= now + lead,
            models.Reservation.end_at > now,
        )
        .order_by(models.Reservation.start_at)
        .first()
    )


def window_error(reservation: models.Reservation, now: datetime, *, lead: timedelta = LOOKAHEAD) -> Optional[str]:
    """Why ``now`` falls outside the reservation's runtime window, or None."""

    now = as_utc(now)
    if as_utc(reservation.start_at) - lead > now:
        return "This reservation has not started yet"
    if as_utc(reservation.end_at) <= now:
        return "This reservation has already ended"
    return None


def reservation_access_error(
    db: Session, user: models.User, reservation: models.Reservation, now: datetime
) -> Optional[str]:
    """Reason ``reservation`` may not drive the lab runtime right now, or None."""

    error = window_error(reservation, now)
    if error or user.is_admin:
        return error
    if requires_payment(db, reservation):
        return "Payment is required before this lab can be started"
    return None


def lab_access_error(
    db: Session, user: models.User, lab_ref: str, now: datetime
) -> Optional[str]:
    """Reason the user may not drive the lab runtime right now, or None."""

    if user.is_admin:
        return None
    reservation = active_reservation_for(db, user, lab_ref, now, lead=LOOKAHEAD)
    if reservation is None:
        return "You need a current reservation to use this lab"
    if requires_payment(db, reservation):
        return "Payment is required before this lab can be started"
    return None

"""Heads-up notifications before a reservation starts and before it ends."""

from __future__ import annotations

import logging
import math
import os
from datetime import datetime, timedelta
from uuid import UUID

import sqlalchemy as sa
from sqlalchemy.orm import Session

from .. import models, notify
from ..clock import Clock, as_utc
from .scheduling import requires_payment

# purpose: remind owners of upcoming and ending reservations exactly once
# status: active
# depends_on: netlab.notify, netlab.models.Reservation

logger = logging.getLogger(__name__)

REMINDER_MINUTES = int(os.getenv("RESERVATION_REMINDER_MINUTES", "30"))
ENDING_NOTICE_MINUTES = int(os.getenv("RESERVATION_ENDING_NOTICE_MINUTES", "15"))


def _minutes_until(moment: datetime, now: datetime) -> int:
    return max(1, math.ceil((as_utc(moment) - now).total_seconds() / 60))


def _claim(db: Session, reservation_id: UUID, column, now: datetime, statuses: tuple[str, ...]) -> bool:
    result = db.execute(
        sa.update(models.Reservation)
        .where(
            models.Reservation.id == reservation_id,
            models.Reservation.status.in_(statuses),
            column.is_(None),
        )
        .values({column.key: now})
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def _lab_title(reservation: models.Reservation) -> str:
    lab = reservation.lab
    return lab.title if lab is not None and lab.title else reservation.lab_ref


def notify_upcoming_reservations(
    db: Session, *, clock: Clock, lead_minutes: int = REMINDER_MINUTES
) -> list[UUID]:
    """Tell owners that a pending or active reservation starts within ``lead_minutes``.

    The caller commits.
    """

    now = clock.now()
    statuses = ("pending", "active")
    due = (
        db.query(models.Reservation)
        .filter(
            models.Reservation.status.in_(statuses),
            models.Reservation.start_at > now,
            models.Reservation.start_at <= now + timedelta(minutes=lead_minutes),
            models.Reservation.start_reminder_sent_at.is_(None),
        )
        .order_by(models.Reservation.start_at)
        .all()
    )
    sent: list[UUID] = []
    for reservation in due:
        if not _claim(db, reservation.id, models.Reservation.start_reminder_sent_at, now, statuses):
            continue
        minutes = _minutes_until(reservation.start_at, now)
        message = (
            f"Your reservation of lab {_lab_title(reservation)} starts in {minutes} minutes "
            f"({as_utc(reservation.start_at):%H:%M} UTC)."
        )
        if reservation.status == "pending" and requires_payment(db, reservation):
            message += " Complete the payment to keep it."
        notify.dispatch(
            db,
            reservation.user,
            "Reservation starting soon",
            message,
            category="reservations",
            meta={"reservation_id": str(reservation.id), "minutes_left": minutes},
            email=True,
        )
        sent.append(reservation.id)
    if sent:
        logger.info("sent %d start reminder(s)", len(sent))
    return sent


def notify_ending_reservations(
    db: Session, *, clock: Clock, lead_minutes: int = ENDING_NOTICE_MINUTES
) -> list[UUID]:
    """Tell owners that an active reservation ends within ``lead_minutes``.

    The caller commits.
    """

    now = clock.now()
    statuses = ("active",)
    ending = (
        db.query(models.Reservation)
        .filter(
            models.Reservation.status == "active",
            models.Reservation.end_at > now,
            models.Reservation.end_at <= now + timedelta(minutes=lead_minutes),
            models.Reservation.end_reminder_sent_at.is_(None),
        )
        .order_by(models.Reservation.end_at)
        .all()
    )
    sent: list[UUID] = []
    for reservation in ending:
        if not _claim(db, reservation.id, models.Reservation.end_reminder_sent_at, now, statuses):
            continue
        minutes = _minutes_until(reservation.end_at, now)
        notify.dispatch(
            db,
            reservation.user,
            "Reservation ending soon",
            f"Your session on lab {_lab_title(reservation)} ends in {minutes} minutes "
            f"({as_utc(reservation.end_at):%H:%M} UTC). Save your work.",
            category="reservations",
            meta={"reservation_id": str(reservation.id), "minutes_left": minutes},
            email=True,
        )
        sent.append(reservation.id)
    if sent:
        logger.info("sent %d ending notice(s)", len(sent))
    return sent

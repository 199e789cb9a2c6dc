"""Expiry sweep for reservations left unpaid past the grace window."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Optional
from uuid import UUID

import sqlalchemy as sa
from sqlalchemy.orm import Session

from .. import audit, metrics, models, notify
from ..clock import Clock
from .lifecycle import append_note
from .scheduling import completed_payment_exists

# purpose: cancel stale unpaid reservations without racing late payments
# status: active
# depends_on: netlab.models.Reservation, netlab.models.Payment

logger = logging.getLogger(__name__)

GRACE_MINUTES = int(os.getenv("RESERVATION_GRACE_MINUTES", "15"))


@dataclass
class SweepResult:
    count: int
    reservation_ids: list[UUID] = field(default_factory=list)
    dry_run: bool = False


def candidates(db: Session, *, cutoff, limit: Optional[int] = None) -> list[UUID]:
    query = (
        db.query(models.Reservation.id)
        .filter(
            models.Reservation.status == "pending",
            models.Reservation.created_at <= cutoff,
            ~completed_payment_exists(),
        )
        .order_by(models.Reservation.created_at)
    )
    if limit is not None:
        query = query.limit(limit)
    return [row.id for row in query.all()]


def sweep(
    db: Session,
    *,
    clock: Clock,
    dry_run: bool = False,
    limit: Optional[int] = None,
    grace_minutes: int = GRACE_MINUTES,
) -> SweepResult:
    """Cancel pending reservations older than the grace window.

    Each cancellation re-checks the pending status and the absence of a
    completed payment inside the UPDATE itself, so a payment that lands
    between selection and update wins. The caller commits.
    """

    now = clock.now()
    cutoff = now - timedelta(minutes=grace_minutes)
    ids = candidates(db, cutoff=cutoff, limit=limit)
    if dry_run:
        logger.info("reaper dry run: %d candidate(s)", len(ids))
        return SweepResult(count=len(ids), reservation_ids=ids, dry_run=True)

    note = (
        f"Cancelled automatically (pending > {grace_minutes} min without payment) "
        f"at {now:%Y-%m-%d %H:%M:%S} UTC"
    )
    cancelled: list[UUID] = []
    for reservation_id in ids:
        result = db.execute(
            sa.update(models.Reservation)
            .where(
                models.Reservation.id == reservation_id,
                models.Reservation.status == "pending",
                ~completed_payment_exists(),
            )
            .values(status="cancelled", notes=append_note(note), updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.info("reservation %s changed before it could be reaped", reservation_id)
            continue
        cancelled.append(reservation_id)
        audit.log_action(
            db, None, "reservation.expire", "reservation", reservation_id,
            {"grace_minutes": grace_minutes}, at=now,
        )

    if cancelled:
        reservations = (
            db.query(models.Reservation)
            .filter(models.Reservation.id.in_(cancelled))
            .populate_existing()
            .all()
        )
        for reservation in reservations:
            notify.dispatch(
                db,
                reservation.user,
                "Reservation expired",
                f"Your reservation of lab {reservation.lab_ref} was cancelled because no payment "
                f"was received within {grace_minutes} minutes.",
                category="reservations",
                meta={"reservation_id": str(reservation.id)},
                email=True,
            )
        metrics.RESERVATIONS_REAPED.inc(len(cancelled))
    logger.info("reaper cancelled %d of %d candidate(s)", len(cancelled), len(ids))
    return SweepResult(count=len(cancelled), reservation_ids=cancelled, dry_run=False)

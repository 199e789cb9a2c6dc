"""Reservation state machine and remote lab session coordination."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional
from uuid import UUID

import sqlalchemy as sa
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .. import audit, metrics, models, notify
from ..clock import Clock, as_utc
from ..runtime import (
    LabRuntimeClient,
    RuntimeContext,
    RuntimeFailure,
    is_stopped_state,
)
from .errors import (
    ExternalUnavailableError,
    InvalidTransition,
    ReservationValidationError,
    SessionAlreadyOpen,
)
from .scheduling import LOOKAHEAD, has_completed_payment, window_error

# purpose: move reservations through pending/active/completed/cancelled and open or close usage records
# status: active
# depends_on: netlab.runtime.LabRuntimeClient, netlab.models.UsageRecord

logger = logging.getLogger(__name__)

_ALLOWED_SOURCES: dict[str, tuple[str, ...]] = {
    "active": ("pending",),
    "completed": ("active",),
    "cancelled": ("pending", "active"),
}


@dataclass
class SessionStop:
    usage_record: Optional[models.UsageRecord]
    completed: bool
    runtime_error: Optional[str] = None


@dataclass
class AutoStart:
    started: bool
    runtime_error: Optional[str] = None
    usage_record: Optional[models.UsageRecord] = None


def format_note(text: str, at: datetime) -> str:
    return f"[{as_utc(at):%Y-%m-%d %H:%M:%S} UTC] {text}"


def append_note(note: str):
    """SQL expression appending ``note`` to ``reservations.notes``."""

    return sa.func.coalesce(models.Reservation.notes + "\n", "") + note


def transition(
    db: Session,
    reservation: models.Reservation,
    target: str,
    *,
    clock: Clock,
    note: str | None = None,
    strict: bool = True,
) -> bool:
    """Conditionally move ``reservation`` to ``target``.

    Returns False when another writer got there first and ``strict`` is off.
    Terminal states have no outgoing edges, so they are never re-entered.
    """

    sources = _ALLOWED_SOURCES.get(target)
    if sources is None:
        raise InvalidTransition(f"Unknown reservation status {target!r}")
    now = clock.now()
    values: dict = {"status": target, "updated_at": now}
    if note:
        values["notes"] = append_note(format_note(note, now))
    result = db.execute(
        sa.update(models.Reservation)
        .where(
            models.Reservation.id == reservation.id,
            models.Reservation.status.in_(sources),
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    db.refresh(reservation)
    if result.rowcount == 1:
        logger.info("reservation %s -> %s", reservation.id, target)
        return True
    if strict:
        raise InvalidTransition(
            f"Reservation is {reservation.status} and cannot become {target}"
        )
    return False


def _record_runtime_failure(
    db: Session,
    reservation: models.Reservation,
    action: str,
    failure: RuntimeFailure,
    now: datetime,
) -> None:
    metrics.RUNTIME_FAILURES.labels(action).inc()
    db.execute(
        sa.update(models.Reservation)
        .where(models.Reservation.id == reservation.id)
        .values(
            failed_attempts=models.Reservation.failed_attempts + 1,
            notes=append_note(format_note(f"Lab {action} failed: {failure.message}", now)),
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    audit.log_action(
        db,
        None,
        f"lab.{action}.failed",
        "reservation",
        reservation.id,
        {"code": failure.code, "status": failure.status, "message": failure.message},
        at=now,
    )
    db.refresh(reservation)


def _cache_lab_state(db: Session, lab_ref: str, state: str, now: datetime) -> None:
    db.execute(
        sa.update(models.Lab)
        .where(models.Lab.lab_ref == lab_ref)
        .values(state=state, state_checked_at=now)
        .execution_options(synchronize_session=False)
    )


def open_usage_record(db: Session, lab_ref: str) -> Optional[models.UsageRecord]:
    return (
        db.query(models.UsageRecord)
        .filter(
            models.UsageRecord.lab_ref == lab_ref,
            models.UsageRecord.ended_at.is_(None),
        )
        .first()
    )


def start_session(
    db: Session,
    reservation: models.Reservation,
    *,
    runtime: LabRuntimeClient,
    context: RuntimeContext,
    clock: Clock,
    actor_id: UUID | None = None,
) -> models.UsageRecord:
    """Start the remote lab for an active reservation and open its usage record.

    Commits. A failed remote start is recorded against the reservation and
    raised as ``ExternalUnavailableError``; it is not retried.
    """

    if reservation.status != "active":
        raise InvalidTransition(f"Reservation is {reservation.status}; only active reservations can start")
    outside = window_error(reservation, clock.now())
    if outside:
        raise ReservationValidationError(outside)
    if open_usage_record(db, reservation.lab_ref) is not None:
        raise SessionAlreadyOpen(f"Lab {reservation.lab_ref} already has an open session")

    result = runtime.start(context, reservation.lab_ref)
    now = clock.now()
    if isinstance(result, RuntimeFailure):
        logger.warning(
            "start of lab %s for reservation %s failed: %s",
            reservation.lab_ref,
            reservation.id,
            result.message,
        )
        _record_runtime_failure(db, reservation, "start", result, now)
        notify.dispatch(
            db,
            reservation.user,
            "Lab start delayed",
            "Your reservation is confirmed but the lab environment could not be started yet. "
            "Please retry the start from your reservation.",
            category="sessions",
            meta={"reservation_id": str(reservation.id), "error": result.code},
        )
        db.commit()
        raise ExternalUnavailableError(
            "Lab runtime could not be started", source="lab_runtime", detail=result.message
        )

    record = models.UsageRecord(
        reservation_id=reservation.id,
        user_id=reservation.user_id,
        lab_ref=reservation.lab_ref,
        started_at=now,
    )
    db.add(record)
    try:
        db.flush()
    except IntegrityError as exc:
        db.rollback()
        logger.error(
            "lab %s started remotely but another session is already open locally",
            reservation.lab_ref,
        )
        raise SessionAlreadyOpen(f"Lab {reservation.lab_ref} already has an open session") from exc
    _cache_lab_state(db, reservation.lab_ref, "RUNNING", now)
    audit.log_action(
        db,
        actor_id,
        "lab.start",
        "reservation",
        reservation.id,
        {"lab_ref": reservation.lab_ref, "usage_record_id": str(record.id)},
        at=now,
    )
    notify.dispatch(
        db,
        reservation.user,
        "Lab started",
        f"Lab {reservation.lab_ref} is starting for your reservation.",
        category="sessions",
        meta={"reservation_id": str(reservation.id)},
    )
    db.commit()
    db.refresh(record)
    return record


def stop_session(
    db: Session,
    reservation: models.Reservation,
    *,
    runtime: LabRuntimeClient,
    context: RuntimeContext,
    clock: Clock,
    actor_id: UUID | None = None,
) -> SessionStop:
    """Stop the remote lab and close the lab's open usage record.

    The record is closed even when the remote stop fails. Commits.
    """

    result = runtime.stop(context, reservation.lab_ref)
    now = clock.now()
    runtime_error = None
    if isinstance(result, RuntimeFailure):
        runtime_error = result.message
        logger.warning(
            "stop of lab %s failed, closing usage locally: %s",
            reservation.lab_ref,
            result.message,
        )
        _record_runtime_failure(db, reservation, "stop", result, now)
    else:
        _cache_lab_state(db, reservation.lab_ref, "STOPPED", now)

    record = open_usage_record(db, reservation.lab_ref)
    if record is not None:
        duration = int((now - as_utc(record.started_at)).total_seconds())
        db.execute(
            sa.update(models.UsageRecord)
            .where(
                models.UsageRecord.id == record.id,
                models.UsageRecord.ended_at.is_(None),
            )
            .values(ended_at=now, duration_seconds=max(1, duration))
            .execution_options(synchronize_session=False)
        )
        db.refresh(record)

    completed = False
    if reservation.status == "active":
        completed = transition(db, reservation, "completed", clock=clock, strict=False)
    audit.log_action(
        db,
        actor_id,
        "lab.stop",
        "reservation",
        reservation.id,
        {
            "lab_ref": reservation.lab_ref,
            "usage_record_id": str(record.id) if record else None,
            "duration_seconds": record.duration_seconds if record else None,
            "remote_error": runtime_error,
        },
        at=now,
    )
    if completed:
        notify.dispatch(
            db,
            reservation.user,
            "Reservation completed",
            f"Your session on lab {reservation.lab_ref} has ended.",
            category="sessions",
            meta={"reservation_id": str(reservation.id)},
        )
    db.commit()
    return SessionStop(usage_record=record, completed=completed, runtime_error=runtime_error)


def activate(db: Session, reservation: models.Reservation, *, clock: Clock) -> bool:
    """Promote a pending reservation that is free or already paid.

    Only the reservation whose window covers ``now`` (lookahead included)
    can be promoted.
    """

    if reservation.status == "active":
        return False
    if reservation.status != "pending":
        raise InvalidTransition(f"Reservation is {reservation.status} and cannot start")
    outside = window_error(reservation, clock.now())
    if outside:
        raise ReservationValidationError(outside)
    if reservation.estimated_cost_cents > 0 and not has_completed_payment(db, reservation.id):
        raise ReservationValidationError("Payment is required before this lab can be started")
    return transition(db, reservation, "active", clock=clock)


def auto_start_if_due(
    db: Session,
    reservation: models.Reservation,
    *,
    runtime: LabRuntimeClient,
    context: RuntimeContext,
    clock: Clock,
    refresh_state: bool = False,
) -> AutoStart:
    """Start a free pending reservation whose window opens within the lookahead.

    Expects the reservation to be committed. Remote failures are returned,
    not raised, so the caller can still report the reservation. Unless
    ``refresh_state`` is set, a cached non-stopped lab state skips the
    remote state query.
    """

    now = clock.now()
    if reservation.status != "pending" or reservation.estimated_cost_cents > 0:
        return AutoStart(started=False)
    if as_utc(reservation.start_at) - now > LOOKAHEAD or as_utc(reservation.end_at) <= now:
        return AutoStart(started=False)
    lab = reservation.lab
    if lab is None or (not refresh_state and not is_stopped_state(lab.state)):
        return AutoStart(started=False)

    observed = runtime.get_state(context, reservation.lab_ref)
    if isinstance(observed, RuntimeFailure):
        _record_runtime_failure(db, reservation, "state", observed, now)
        db.commit()
        return AutoStart(started=False, runtime_error=observed.message)
    _cache_lab_state(db, reservation.lab_ref, observed.state, now)
    if not observed.is_stopped:
        db.commit()
        logger.info("lab %s is %s; auto-start deferred", reservation.lab_ref, observed.state)
        return AutoStart(started=False)

    if not transition(
        db, reservation, "active", clock=clock, note="Auto-started at reservation window", strict=False
    ):
        db.commit()
        return AutoStart(started=False)
    reservation.auto_started = True
    db.commit()

    try:
        record = start_session(db, reservation, runtime=runtime, context=context, clock=clock)
    except (ExternalUnavailableError, SessionAlreadyOpen) as exc:
        return AutoStart(started=False, runtime_error=getattr(exc, "detail", None) or str(exc))
    return AutoStart(started=True, usage_record=record)


def _has_usage(db: Session, reservation_id: UUID) -> bool:
    return db.query(
        db.query(models.UsageRecord.id)
        .filter(models.UsageRecord.reservation_id == reservation_id)
        .exists()
    ).scalar()


def start_due_reservations(
    db: Session,
    *,
    runtime: LabRuntimeClient,
    context: RuntimeContext,
    clock: Clock,
) -> list[UUID]:
    """Start reservations whose window opens within the lookahead.

    Free pending reservations get the auto-start decision re-evaluated here;
    active (paid) reservations without a session are started. Reservations
    with a recorded remote failure wait for a manual start.
    """

    now = clock.now()
    horizon = now + LOOKAHEAD
    due = (
        db.query(models.Reservation)
        .filter(
            models.Reservation.status.in_(("pending", "active")),
            models.Reservation.start_at <= horizon,
            models.Reservation.end_at > now,
            models.Reservation.failed_attempts == 0,
        )
        .order_by(models.Reservation.start_at)
        .all()
    )
    started: list[UUID] = []
    for reservation in due:
        if reservation.status == "pending":
            outcome = auto_start_if_due(
                db, reservation, runtime=runtime, context=context, clock=clock, refresh_state=True
            )
            if outcome.started:
                started.append(reservation.id)
            continue
        if _has_usage(db, reservation.id):
            continue
        try:
            start_session(db, reservation, runtime=runtime, context=context, clock=clock)
        except (ExternalUnavailableError, SessionAlreadyOpen) as exc:
            logger.warning("scheduled start of reservation %s skipped: %s", reservation.id, exc)
            continue
        started.append(reservation.id)
    return started


def complete_ended_reservations(
    db: Session,
    *,
    runtime: LabRuntimeClient,
    context: RuntimeContext,
    clock: Clock,
) -> list[UUID]:
    """Stop and complete active reservations whose window has closed.

    Free pending reservations whose window passed without a session are
    cancelled, since the reaper only handles unpaid ones.
    """

    now = clock.now()
    ended = (
        db.query(models.Reservation)
        .filter(
            models.Reservation.status == "active",
            models.Reservation.end_at <= now,
        )
        .order_by(models.Reservation.end_at)
        .all()
    )
    completed: list[UUID] = []
    for reservation in ended:
        record = open_usage_record(db, reservation.lab_ref)
        if record is None or record.reservation_id != reservation.id:
            # never started, nothing to stop remotely
            if transition(db, reservation, "completed", clock=clock, strict=False):
                completed.append(reservation.id)
            db.commit()
            continue
        stop = stop_session(db, reservation, runtime=runtime, context=context, clock=clock)
        if stop.completed:
            completed.append(reservation.id)

    lapsed = (
        db.query(models.Reservation)
        .filter(
            models.Reservation.status == "pending",
            models.Reservation.estimated_cost_cents == 0,
            models.Reservation.end_at <= now,
        )
        .all()
    )
    for reservation in lapsed:
        transition(
            db,
            reservation,
            "cancelled",
            clock=clock,
            note="Reservation window elapsed without a session",
            strict=False,
        )
    db.commit()
    return completed


def cancel_reservation(
    db: Session,
    reservation: models.Reservation,
    *,
    actor: models.User,
    clock: Clock,
) -> bool:
    """Cancel a pending or active reservation; returns whether a session is open.

    The caller commits and then stops the open session, if any.
    """

    transition(
        db,
        reservation,
        "cancelled",
        clock=clock,
        note=f"Cancelled by {'administrator' if actor.id != reservation.user_id else 'user'}",
    )
    record = open_usage_record(db, reservation.lab_ref)
    has_session = record is not None and record.reservation_id == reservation.id
    audit.log_action(
        db,
        actor.id,
        "reservation.cancel",
        "reservation",
        reservation.id,
        {"had_session": has_session},
        at=clock.now(),
    )
    notify.dispatch(
        db,
        reservation.user,
        "Reservation cancelled",
        f"Your reservation of lab {reservation.lab_ref} was cancelled.",
        category="reservations",
        meta={"reservation_id": str(reservation.id)},
        email=True,
    )
    return has_session

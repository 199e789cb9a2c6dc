import os
import smtplib
from celery import Celery
from celery.schedules import crontab
from celery.utils.log import get_task_logger

from . import notify
from .clock import get_clock
from .database import session_scope
from .runtime import context_from_env, get_lab_runtime
from .services import lifecycle, reaper, reminders

CELERY_BROKER_URL = os.getenv("CELERY_BROKER_URL", "memory://")
celery_app = Celery("netlab", broker=CELERY_BROKER_URL)
celery_app.conf.task_always_eager = (
    CELERY_BROKER_URL == "memory://" or os.getenv("TESTING") == "1"
)

_logger = get_task_logger(__name__)

celery_app.conf.beat_schedule = {
    "reap-unpaid-reservations": {
        "task": "netlab.tasks.reap_expired_reservations",
        "schedule": crontab(minute="*/5"),
    },
    "start-due-reservations": {
        "task": "netlab.tasks.start_due_reservations",
        "schedule": crontab(minute="*"),
    },
    "complete-ended-reservations": {
        "task": "netlab.tasks.complete_ended_reservations",
        "schedule": crontab(minute="*"),
    },
    "remind-upcoming-reservations": {
        "task": "netlab.tasks.notify_upcoming_reservations",
        "schedule": crontab(minute="*"),
    },
    "remind-ending-reservations": {
        "task": "netlab.tasks.notify_ending_reservations",
        "schedule": crontab(minute="*"),
    },
}


@celery_app.task(name="netlab.tasks.send_notification_email")
def send_notification_email(to_email: str, subject: str, message: str):
    try:
        notify.send_email(to_email, subject, message)
    except (smtplib.SMTPException, OSError) as exc:
        _logger.warning("email to %s failed: %s", to_email, exc)
        return False
    return True


def enqueue_notification_email(to_email: str, subject: str, message: str):
    if celery_app.conf.task_always_eager:
        send_notification_email(to_email, subject, message)
    else:
        send_notification_email.delay(to_email, subject, message)


@celery_app.task(name="netlab.tasks.reap_expired_reservations")
def reap_expired_reservations(dry_run: bool = False, limit: int | None = None):
    try:
        with session_scope() as db:
            result = reaper.sweep(db, clock=get_clock(), dry_run=dry_run, limit=limit)
    except Exception:
        _logger.exception("reservation reaper failed")
        raise
    _logger.info("reaped %d reservation(s) (dry_run=%s)", result.count, result.dry_run)
    return {
        "count": result.count,
        "reservation_ids": [str(i) for i in result.reservation_ids],
        "dry_run": result.dry_run,
    }


@celery_app.task(name="netlab.tasks.start_due_reservations")
def start_due_reservations():
    with session_scope() as db:
        started = lifecycle.start_due_reservations(
            db, runtime=get_lab_runtime(), context=context_from_env(), clock=get_clock()
        )
    if started:
        _logger.info("started %d due reservation(s)", len(started))
    return [str(i) for i in started]


@celery_app.task(name="netlab.tasks.complete_ended_reservations")
def complete_ended_reservations():
    with session_scope() as db:
        completed = lifecycle.complete_ended_reservations(
            db, runtime=get_lab_runtime(), context=context_from_env(), clock=get_clock()
        )
    if completed:
        _logger.info("completed %d ended reservation(s)", len(completed))
    return [str(i) for i in completed]


@celery_app.task(name="netlab.tasks.notify_upcoming_reservations")
def notify_upcoming_reservations():
    with session_scope() as db:
        sent = reminders.notify_upcoming_reservations(db, clock=get_clock())
    return [str(i) for i in sent]


@celery_app.task(name="netlab.tasks.notify_ending_reservations")
def notify_ending_reservations():
    with session_scope() as db:
        sent = reminders.notify_ending_reservations(db, clock=get_clock())
    return [str(i) for i in sent]

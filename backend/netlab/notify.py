import logging
import os
import smtplib
from email.message import EmailMessage

from sqlalchemy import event
from sqlalchemy.orm import Session

from . import models

logger = logging.getLogger(__name__)

EMAIL_OUTBOX: list[tuple[str, str, str]] = []

# emails staged on a session until it commits
_PENDING_EMAILS = "netlab.pending_emails"


def send_email(to_email: str, subject: str, message: str):
    if os.getenv("TESTING") == "1":
        EMAIL_OUTBOX.append((to_email, subject, message))
        return
    server = os.getenv("SMTP_SERVER")
    if not server:
        return
    from_addr = os.getenv("EMAIL_FROM", "noreply@example.com")
    msg = EmailMessage()
    msg["Subject"] = subject
    msg["From"] = from_addr
    msg["To"] = to_email
    msg.set_content(message)
    with smtplib.SMTP(server) as s:
        s.send_message(msg)


def pending_emails(db: Session) -> list[tuple[str, str, str]]:
    return db.info.setdefault(_PENDING_EMAILS, [])


def dispatch(
    db: Session,
    user: models.User,
    title: str,
    message: str,
    *,
    category: str,
    meta: dict | None = None,
    email: bool = False,
) -> models.Notification:
    """Record an in-app notification and optionally mail the user.

    The notification row joins the caller's transaction. The email is only
    handed to the mail task once that transaction commits, and a rollback
    drops it.
    """

    notification = models.Notification(
        user_id=user.id,
        title=title,
        message=message,
        category=category,
        meta=meta or {},
    )
    db.add(notification)
    db.flush()
    if email and user.email:
        pending_emails(db).append((user.email, title, message))
    return notification


@event.listens_for(Session, "after_commit")
def _deliver_after_commit(session: Session) -> None:
    staged = session.info.pop(_PENDING_EMAILS, None)
    if not staged:
        return
    from .tasks import enqueue_notification_email

    for to_email, subject, message in staged:
        enqueue_notification_email(to_email, subject, message)


@event.listens_for(Session, "after_transaction_end")
def _discard_uncommitted(session: Session, transaction) -> None:
    # committed mail was already taken by _deliver_after_commit
    if transaction.parent is not None:
        return
    dropped = session.info.pop(_PENDING_EMAILS, None)
    if dropped:
        logger.info("discarded %d email(s) from an uncommitted transaction", len(dropped))

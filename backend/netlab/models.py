import uuid
from datetime import datetime, timezone

import sqlalchemy as sa
from sqlalchemy import (
    Column,
    String,
    Boolean,
    DateTime,
    ForeignKey,
    JSON,
    Integer,
    Text,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from .database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


RESERVATION_STATUSES = ("pending", "active", "completed", "cancelled")
PAYMENT_STATUSES = ("pending", "completed", "failed", "cancelled")


class User(Base):
    __tablename__ = "users"
    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    email = Column(String, unique=True, nullable=False)
    hashed_password = Column(String, nullable=False)
    full_name = Column(String)
    phone_number = Column(String)
    is_admin = Column(Boolean, default=False)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)

    reservations = relationship("Reservation", back_populates="user")
    notifications = relationship(
        "Notification", back_populates="user", cascade="all, delete-orphan"
    )


class Lab(Base):
    __tablename__ = "labs"
    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    lab_ref = Column(String, unique=True, nullable=False)
    title = Column(String, nullable=False)
    description = Column(Text)
    # advisory cache of the control plane's runtime state
    state = Column(String, nullable=True)
    state_checked_at = Column(DateTime(timezone=True), nullable=True)
    hourly_rate_cents = Column(Integer, default=0, nullable=False)
    currency = Column(String(3), default="XOF", nullable=False)
    is_published = Column(Boolean, default=True, nullable=False)
    # bumped under the per-lab write claim taken before overlap checks
    reservation_seq = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


class Reservation(Base):
    __tablename__ = "reservations"
    __table_args__ = (
        sa.CheckConstraint("start_at < end_at", name="ck_reservations_interval"),
        sa.CheckConstraint(
            "status IN ('pending', 'active', 'completed', 'cancelled')",
            name="ck_reservations_status",
        ),
        sa.Index("ix_reservations_lab_window", "lab_ref", "start_at", "end_at"),
        sa.Index("ix_reservations_status_created", "status", "created_at"),
    )
    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False)
    lab_ref = Column(String, ForeignKey("labs.lab_ref"), nullable=False)
    start_at = Column(DateTime(timezone=True), nullable=False)
    end_at = Column(DateTime(timezone=True), nullable=False)
    status = Column(String, default="pending", nullable=False)
    auto_started = Column(Boolean, default=False, nullable=False)
    estimated_cost_cents = Column(Integer, default=0, nullable=False)
    # failed remote runtime actions (start/stop) recorded against the reservation
    failed_attempts = Column(Integer, default=0, nullable=False)
    notes = Column(Text, nullable=True)
    start_reminder_sent_at = Column(DateTime(timezone=True), nullable=True)
    end_reminder_sent_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    user = relationship("User", back_populates="reservations")
    lab = relationship("Lab")
    payments = relationship(
        "Payment", back_populates="reservation", order_by="Payment.created_at"
    )
    usage_records = relationship("UsageRecord", back_populates="reservation")

    @property
    def is_terminal(self) -> bool:
        return self.status in ("completed", "cancelled")


class Payment(Base):
    __tablename__ = "payments"
    __table_args__ = (
        sa.CheckConstraint(
            "status IN ('pending', 'completed', 'failed', 'cancelled')",
            name="ck_payments_status",
        ),
        # at most one completed payment per reservation
        sa.Index(
            "uq_payments_completed_reservation",
            "reservation_id",
            unique=True,
            sqlite_where=sa.text("status = 'completed'"),
            postgresql_where=sa.text("status = 'completed'"),
        ),
    )
    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False)
    reservation_id = Column(
        UUID(as_uuid=True), ForeignKey("reservations.id"), nullable=True, index=True
    )
    transaction_id = Column(String, unique=True, nullable=False)
    external_transaction_id = Column(String, nullable=True, index=True)
    amount_cents = Column(Integer, nullable=False)
    currency = Column(String(3), default="XOF", nullable=False)
    status = Column(String, default="pending", nullable=False, index=True)
    payment_method = Column(String, nullable=True)
    description = Column(Text, nullable=True)
    payment_url = Column(String, nullable=True)
    # every processor message (checkout, status polls, webhooks) merged for audit
    processor_payloads = Column(JSON, default=dict, nullable=False)
    webhook_payload = Column(JSON, nullable=True)
    paid_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    reservation = relationship("Reservation", back_populates="payments")
    user = relationship("User")


class UsageRecord(Base):
    __tablename__ = "usage_records"
    __table_args__ = (
        # at most one open session per lab
        sa.Index(
            "uq_usage_records_open_lab",
            "lab_ref",
            unique=True,
            sqlite_where=sa.text("ended_at IS NULL"),
            postgresql_where=sa.text("ended_at IS NULL"),
        ),
    )
    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    reservation_id = Column(
        UUID(as_uuid=True), ForeignKey("reservations.id"), nullable=True
    )
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False)
    lab_ref = Column(String, ForeignKey("labs.lab_ref"), nullable=False)
    started_at = Column(DateTime(timezone=True), nullable=False)
    ended_at = Column(DateTime(timezone=True), nullable=True)
    duration_seconds = Column(Integer, nullable=True)
    cost_cents = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)

    reservation = relationship("Reservation", back_populates="usage_records")

    @property
    def is_open(self) -> bool:
        return self.ended_at is None


class Notification(Base):
    __tablename__ = "notifications"
    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id"))
    message = Column(String, nullable=False)
    title = Column(String, nullable=True)
    category = Column(String, nullable=True)  # reservations, payments, sessions
    is_read = Column(Boolean, default=False)
    meta = Column(JSON, default=dict)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    user = relationship("User", back_populates="notifications")


class AuditLog(Base):
    __tablename__ = "audit_logs"
    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    # null for system actors (reaper, webhook, beat tasks)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=True)
    action = Column(String, nullable=False)
    target_type = Column(String)
    target_id = Column(UUID(as_uuid=True))
    details = Column(JSON, default=dict)
    created_at = Column(DateTime(timezone=True), default=_utcnow)

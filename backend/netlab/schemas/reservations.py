"""Pydantic schemas for lab reservations and runtime sessions."""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Optional
from uuid import UUID

from pydantic import AfterValidator, BaseModel, ConfigDict, Field

from ..clock import as_utc

UtcDatetime = Annotated[datetime, AfterValidator(as_utc)]


class ReservationCreate(BaseModel):
    lab_ref: str = Field(min_length=1)
    start_at: UtcDatetime
    end_at: UtcDatetime


class ReservationOut(BaseModel):
    id: UUID
    user_id: UUID
    lab_ref: str
    start_at: UtcDatetime
    end_at: UtcDatetime
    status: str
    auto_started: bool
    estimated_cost_cents: int
    failed_attempts: int
    notes: Optional[str] = None
    created_at: UtcDatetime
    updated_at: Optional[UtcDatetime] = None

    model_config = ConfigDict(from_attributes=True)


class ReservationCreated(BaseModel):
    # purpose: creation response carrying payment and auto-start outcome
    # status: active
    reservation: ReservationOut
    requires_payment: bool
    auto_started: bool
    runtime_error: Optional[str] = None
    message: str


class UsageRecordOut(BaseModel):
    id: UUID
    reservation_id: Optional[UUID]
    user_id: UUID
    lab_ref: str
    started_at: UtcDatetime
    ended_at: Optional[UtcDatetime] = None
    duration_seconds: Optional[int] = None

    model_config = ConfigDict(from_attributes=True)


class SessionOut(BaseModel):
    reservation: ReservationOut
    usage_record: Optional[UsageRecordOut] = None
    runtime_error: Optional[str] = None


class ActiveReservationOut(BaseModel):
    lab_ref: str
    reservation: Optional[ReservationOut] = None


class SweepResultOut(BaseModel):
    count: int
    reservation_ids: list[UUID] = Field(default_factory=list)
    dry_run: bool

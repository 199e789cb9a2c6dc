"""Pydantic schemas for reservation payments."""

from __future__ import annotations

from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict

from .reservations import UtcDatetime


class PaymentInitiate(BaseModel):
    description: Optional[str] = None
    customer_phone: Optional[str] = None


class PaymentOut(BaseModel):
    id: UUID
    reservation_id: Optional[UUID]
    transaction_id: str
    external_transaction_id: Optional[str] = None
    amount_cents: int
    currency: str
    status: str
    payment_method: Optional[str] = None
    description: Optional[str] = None
    payment_url: Optional[str] = None
    paid_at: Optional[UtcDatetime] = None
    created_at: UtcDatetime

    model_config = ConfigDict(from_attributes=True)


class PaymentIntentOut(BaseModel):
    payment: PaymentOut
    transaction_id: str
    payment_url: str


class PaymentStatusOut(BaseModel):
    payment: PaymentOut
    reservation_status: Optional[str] = None
    changed: bool


class WebhookAck(BaseModel):
    status: str = "ok"
    outcome: str
    transaction_id: str
    received_at: Optional[datetime] = None

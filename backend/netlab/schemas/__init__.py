"""Pydantic schemas consolidating backend API contracts."""

# purpose: aggregate request and response schemas for FastAPI surfaces and services
# status: active

from datetime import datetime
from typing import Optional
from pydantic import BaseModel, EmailStr, ConfigDict
from uuid import UUID

from .reservations import (
    ActiveReservationOut,
    ReservationCreate,
    ReservationCreated,
    ReservationOut,
    SessionOut,
    SweepResultOut,
    UsageRecordOut,
)
from .payments import (
    PaymentInitiate,
    PaymentIntentOut,
    PaymentOut,
    PaymentStatusOut,
    WebhookAck,
)


class UserCreate(BaseModel):
    email: EmailStr
    password: str
    full_name: Optional[str] = None
    phone_number: Optional[str] = None


class UserOut(BaseModel):
    id: UUID
    email: EmailStr
    full_name: Optional[str]
    phone_number: Optional[str] = None
    is_admin: bool = False
    model_config = ConfigDict(from_attributes=True)


class UserUpdate(BaseModel):
    full_name: Optional[str] = None
    phone_number: Optional[str] = None


class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class NotificationOut(BaseModel):
    id: UUID
    title: Optional[str] = None
    message: str
    category: Optional[str] = None
    is_read: bool
    meta: Optional[dict] = None
    created_at: datetime
    model_config = ConfigDict(from_attributes=True)

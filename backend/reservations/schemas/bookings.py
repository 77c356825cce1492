# backend/reservations/schemas/bookings.py

from datetime import datetime
from typing import Optional
from pydantic import BaseModel


class BookingRead(BaseModel):
    id: int
    booking_number: int
    group_key: Optional[str] = None

    requester_id: str
    business_id: int
    service_id: int
    slot_ids: list[str]
    occupancy: int

    status: str
    payment_reference: Optional[str] = None

    cancel_reason: Optional[str] = None
    cancelled_by: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    refund_percent: Optional[int] = None
    refund_status: Optional[str] = None

    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class HoldResult(BaseModel):
    hold_id: str
    booking_id: int
    booking_number: int
    slot_ids: list[str]
    occupancy: int
    expires_at: datetime

    model_config = {"from_attributes": True}


class CancellationResult(BaseModel):
    booking_id: int
    booking_number: int
    refund_percent: int
    refund_status: str

    model_config = {"from_attributes": True}

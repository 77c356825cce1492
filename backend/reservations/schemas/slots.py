# backend/reservations/schemas/slots.py
"""
Pydantic schemas for slots and availability.
"""

from datetime import datetime
from pydantic import BaseModel, Field


class SlotCandidate(BaseModel):
    """A bookable window offered by availability (Level 2)."""
    slot_id: str
    business_id: int
    resource_id: int
    service_id: int
    start_time: datetime  # UTC
    end_time: datetime    # UTC
    local_start: datetime = Field(description="start_time in business-local time, for display only")
    capacity_max: int
    occupancy: int = 0
    remaining_capacity: int
    state: str = "free"
    version: int = 0

    model_config = {"from_attributes": True}


class SlotRead(BaseModel):
    id: str
    business_id: int
    resource_id: int
    service_id: int
    start_time: datetime
    end_time: datetime
    capacity_max: int
    occupancy: int
    state: str
    version: int

    model_config = {"from_attributes": True}


class SlotAuditEntry(BaseModel):
    slot_id: str
    from_state: str
    to_state: str
    occupancy_delta: int
    version: int
    actor: str
    created_at: datetime

    model_config = {"from_attributes": True}

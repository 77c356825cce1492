# backend/reservations/services/slots/config.py
"""
Booking configuration for slots calculation.
"""

from dataclasses import dataclass
from functools import lru_cache

from ...config import settings


@dataclass(frozen=True)
class BookingConfig:
    """
    Configuration for booking/slots system.

    Attributes:
        horizon_days: How many days ahead to show slots (30/60/90)
        min_advance_hours: Minimum hours before slot can be booked (0/1/6/12/24)
        slot_step_minutes: Base grid step in minutes (15/30/60)
        cache_ttl_seconds: Redis cache TTL for base windows
        hold_ttl_minutes: How long a hold blocks capacity before it expires
    """
    horizon_days: int = 60
    min_advance_hours: int = 12
    slot_step_minutes: int = 30  # 15 / 30 / 60
    cache_ttl_seconds: int = 86400  # 24 hours
    hold_ttl_minutes: int = 10

    def __post_init__(self):
        """Validate configuration."""
        if self.slot_step_minutes not in (15, 30, 60):
            raise ValueError(f"slot_step_minutes must be 15, 30, or 60, got {self.slot_step_minutes}")
        if self.hold_ttl_minutes <= 0:
            raise ValueError(f"hold_ttl_minutes must be positive, got {self.hold_ttl_minutes}")


@lru_cache
def get_booking_config() -> BookingConfig:
    """Get booking configuration (singleton, built from settings)."""
    return BookingConfig(
        horizon_days=settings.horizon_days,
        min_advance_hours=settings.min_advance_hours,
        slot_step_minutes=settings.slot_step_minutes,
        cache_ttl_seconds=settings.cache_ttl_seconds,
        hold_ttl_minutes=settings.hold_ttl_minutes,
    )

# backend/reservations/services/slots/__init__.py
"""
Slots calculation module.

Level 1: Base working windows per resource (cached in Redis Sorted Sets)
Level 2: Service availability (calculated on-the-fly against the ledger)
"""

from .config import BookingConfig, get_booking_config
from .calculator import calculate_day_windows, make_slot_id, parse_slot_id
from .redis_store import SlotsRedisStore
from .invalidator import apply_configuration_change, invalidate_business_cache, prune_free_slots
from .availability import (
    AvailabilityQuery,
    calculate_service_availability,
    query_availability,
    resolve_candidate,
)

__all__ = [
    "BookingConfig",
    "get_booking_config",
    "calculate_day_windows",
    "make_slot_id",
    "parse_slot_id",
    "SlotsRedisStore",
    "apply_configuration_change",
    "invalidate_business_cache",
    "prune_free_slots",
    "AvailabilityQuery",
    "calculate_service_availability",
    "query_availability",
    "resolve_candidate",
]

from .tables import (
    Base,
    BookingCounters,
    Bookings,
    Businesses,
    CalendarOverrides,
    ReservationHolds,
    Resources,
    Services,
    SlotAudit,
    Slots,
    metadata,
    t_booking_slots,
    t_resource_services,
)

__all__ = [
    "Base",
    "BookingCounters",
    "Bookings",
    "Businesses",
    "CalendarOverrides",
    "ReservationHolds",
    "Resources",
    "Services",
    "SlotAudit",
    "Slots",
    "metadata",
    "t_booking_slots",
    "t_resource_services",
]

from .bookings import BookingRead, CancellationResult, HoldResult
from .slots import SlotAuditEntry, SlotCandidate, SlotRead

__all__ = [
    "BookingRead",
    "CancellationResult",
    "HoldResult",
    "SlotAuditEntry",
    "SlotCandidate",
    "SlotRead",
]

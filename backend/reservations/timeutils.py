"""
Time helpers shared by the calculator, the ledger and the coordinator.

Storage convention: naive datetimes in UTC.
"""

from datetime import datetime, timezone


def utcnow() -> datetime:
    """Current time as naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def time_str_to_minutes(value: str) -> int:
    """Convert "HH:MM" to minutes since midnight. "24:00" is allowed as end of day."""
    hours, minutes = value.strip().split(":")
    total = int(hours) * 60 + int(minutes)
    if total < 0 or total > 24 * 60:
        raise ValueError(f"time out of range: {value}")
    return total

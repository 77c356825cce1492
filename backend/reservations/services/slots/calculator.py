# backend/reservations/services/slots/calculator.py
"""
Level 1: Base working windows of a resource for one business-local date.

Produces UTC windows:
  [(start_utc, end_utc), ...]  (naive datetimes, UTC)

Contains:
✓ work_schedule of resource (falls back to the business schedule)
✓ calendar_overrides of business and resource
    holiday / day_off   → closed day (wins over everything)
    custom_hours        → replaces working hours (resource beats business)
    block               → subtracted (breaks, staff unavailability)
✓ business timezone (local hours → UTC, so DST shifts never distort durations)

Does NOT contain:
✗ Service buffers and duration (Level 2)
✗ Ledger occupancy (Level 2)
✗ min_advance_hours (Level 2)
"""

import logging
from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy.orm import Session

from ...models import Businesses, Resources
from ..business_config import (
    CLOSING_KINDS,
    get_day_intervals,
    get_day_overrides,
    parse_interval,
    parse_work_schedule,
)

logger = logging.getLogger(__name__)

SLOT_KEY_FORMAT = "%Y%m%d%H%M"


def calculate_day_windows(
    db: Session,
    business: Businesses,
    resource: Resources,
    target_date: date,
) -> list[tuple[datetime, datetime]]:
    """
    Calculate working windows for a resource on a business-local date.

    Returns:
        Sorted list of (start_utc, end_utc). Empty list = closed.
    """
    overrides = get_day_overrides(db, business.id, resource.id, target_date)

    # Step 1: holiday wins
    if any(ovr.override_kind in CLOSING_KINDS for ovr in overrides):
        return []

    # Step 2: working intervals (resource schedule, else business schedule)
    schedule = parse_work_schedule(resource.work_schedule) or parse_work_schedule(business.work_schedule)
    intervals = get_day_intervals(schedule, target_date)

    # Step 3: custom hours replace the template
    custom = _custom_hours(overrides, "resource")
    if custom is None:
        custom = _custom_hours(overrides, "business")
    if custom is not None:
        intervals = custom

    # Step 4: subtract blocks (a block without valid hours closes the day)
    blocks = []
    for ovr in overrides:
        if ovr.override_kind != "block":
            continue
        parsed = _override_interval(ovr)
        if parsed is None:
            return []
        blocks.append(parsed)
    intervals = subtract_intervals(merge_intervals(intervals), blocks)

    # Step 5: local → UTC
    tz = business_timezone(business)
    return [
        (_local_to_utc(target_date, start_min, tz), _local_to_utc(target_date, end_min, tz))
        for start_min, end_min in intervals
    ]


# ── Interval math (minutes since local midnight) ────────────────────────


def merge_intervals(intervals: list[tuple[int, int]]) -> list[tuple[int, int]]:
    merged: list[tuple[int, int]] = []
    for start, end in sorted(intervals):
        if merged and start <= merged[-1][1]:
            merged[-1] = (merged[-1][0], max(merged[-1][1], end))
        else:
            merged.append((start, end))
    return merged


def subtract_intervals(
    intervals: list[tuple[int, int]],
    blocks: list[tuple[int, int]],
) -> list[tuple[int, int]]:
    """Remove every block from every interval; zero-length leftovers are dropped."""
    result = list(intervals)
    for block_start, block_end in blocks:
        pieces = []
        for start, end in result:
            if block_end <= start or block_start >= end:
                pieces.append((start, end))
                continue
            if start < block_start:
                pieces.append((start, block_start))
            if block_end < end:
                pieces.append((block_end, end))
        result = pieces
    return [(start, end) for start, end in result if end > start]


# ── Timezone ─────────────────────────────────────────────────────────────


def business_timezone(business: Businesses) -> ZoneInfo:
    try:
        return ZoneInfo(business.timezone or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning(f"Unknown timezone {business.timezone!r} for business={business.id}, using UTC")
        return ZoneInfo("UTC")


def to_business_local(value: datetime, tz: ZoneInfo) -> datetime:
    """Naive UTC → aware business-local datetime (presentation only)."""
    return value.replace(tzinfo=timezone.utc).astimezone(tz)


def local_date_of(value: datetime, tz: ZoneInfo) -> date:
    return to_business_local(value, tz).date()


def _local_to_utc(target_date: date, minutes: int, tz: ZoneInfo) -> datetime:
    local_naive = datetime.combine(target_date, time.min) + timedelta(minutes=minutes)
    local = local_naive.replace(tzinfo=tz)
    return local.astimezone(timezone.utc).replace(tzinfo=None)


# ── Slot keys ────────────────────────────────────────────────────────────


def make_slot_id(business_id: int, resource_id: int, service_id: int, start_utc: datetime) -> str:
    """Deterministic ledger key: "{business}-{resource}-{service}-{YYYYmmddHHMM UTC}"."""
    return f"{business_id}-{resource_id}-{service_id}-{start_utc.strftime(SLOT_KEY_FORMAT)}"


def parse_slot_id(slot_id: str) -> tuple[int, int, int, datetime] | None:
    """Inverse of make_slot_id; None for anything that is not a slot key."""
    parts = slot_id.split("-") if isinstance(slot_id, str) else []
    if len(parts) != 4:
        return None
    try:
        return (
            int(parts[0]),
            int(parts[1]),
            int(parts[2]),
            datetime.strptime(parts[3], SLOT_KEY_FORMAT),
        )
    except ValueError:
        return None


# ── Helpers ──────────────────────────────────────────────────────────────


def _override_interval(ovr) -> tuple[int, int] | None:
    if not ovr.time_start or not ovr.time_end:
        return None
    return parse_interval([ovr.time_start, ovr.time_end])


def _custom_hours(overrides: list, target_type: str) -> list[tuple[int, int]] | None:
    """Union of custom_hours overrides for one target level, None if there are none."""
    found = [
        ovr for ovr in overrides
        if ovr.override_kind == "custom_hours" and ovr.target_type == target_type
    ]
    if not found:
        return None
    intervals = [parsed for ovr in found for parsed in [_override_interval(ovr)] if parsed]
    return merge_intervals(intervals)

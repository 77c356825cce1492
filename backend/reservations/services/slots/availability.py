# backend/reservations/services/slots/availability.py
"""
Level 2: Service availability calculation.

Calculates bookable slot candidates for a service on business-local dates.

Takes into account:
- Base working windows of each resource (Level 1, optionally cached in Redis)
- Service buffers (before/after) and duration
- min_advance_hours and horizon_days
- Ledger state: blocked or full slots are dropped, shared slots are offered
  with their remaining capacity, anything overlapping another occupied slot
  of the same resource (buffers included) is dropped

Never writes to the ledger.
"""

import logging
from collections.abc import Callable, Iterator
from datetime import date, datetime, timedelta

from redis import Redis
from sqlalchemy.orm import Session, sessionmaker

from ...models import Businesses, Resources, Services, Slots
from ...schemas.slots import SlotCandidate
from ...statuses import SlotState
from ...timeutils import utcnow
from ..business_config import get_business, get_service, get_service_resources
from ..ledger import SlotLedger
from .calculator import (
    business_timezone,
    calculate_day_windows,
    local_date_of,
    make_slot_id,
    parse_slot_id,
    to_business_local,
)
from .config import BookingConfig, get_booking_config
from .redis_store import SlotsRedisStore

logger = logging.getLogger(__name__)


def calculate_service_availability(
    db: Session,
    business_id: int,
    service_id: int,
    target_date: date,
    resource_id: int | None = None,
    occupancy: int = 1,
    config: BookingConfig | None = None,
    redis: Redis | None = None,
    now: datetime | None = None,
) -> list[SlotCandidate]:
    """
    Calculate free slot candidates for a service on one business-local date.

    Returns:
        Candidates ordered by start time (then resource). Empty list when the
        business, service or resources are unknown or the day is closed.
    """
    config = config or get_booking_config()
    now = now or utcnow()

    business = get_business(db, business_id)
    service = get_service(db, service_id)
    if not business or not service or service.business_id != business.id:
        return []

    resources = get_service_resources(db, service_id, resource_id)
    if not resources:
        return []

    ledger = SlotLedger(db)
    tz = business_timezone(business)
    candidates: list[SlotCandidate] = []

    for resource in resources:
        windows = _service_windows(db, business, resource, service, target_date, config, redis, now)
        if not windows:
            continue

        day_lo = windows[0][0] - timedelta(minutes=service.buffer_before_min or 0)
        day_hi = windows[-1][1] + timedelta(minutes=service.buffer_after_min or 0)

        existing = {
            slot.id: slot
            for slot in (
                db.query(Slots)
                .filter(
                    Slots.resource_id == resource.id,
                    Slots.service_id == service.id,
                    Slots.start_time >= windows[0][0],
                    Slots.start_time <= windows[-1][0],
                )
                .all()
            )
        }
        busy = ledger.busy_intervals(resource.id, day_lo, day_hi)

        for start, end in windows:
            slot_id = make_slot_id(business.id, resource.id, service.id, start)
            row = existing.get(slot_id)

            if row is not None:
                if row.state == SlotState.BLOCKED.value:
                    continue
                capacity = row.capacity_max
                current_occupancy = row.occupancy
                state = row.state
                version = row.version
            else:
                capacity = service.max_concurrent or 1
                current_occupancy = 0
                state = SlotState.FREE.value
                version = 0

            remaining = capacity - current_occupancy
            if remaining < occupancy:
                continue

            footprint_start = start - timedelta(minutes=service.buffer_before_min or 0)
            footprint_end = end + timedelta(minutes=service.buffer_after_min or 0)
            if any(
                b.slot_id != slot_id and b.start < footprint_end and b.end > footprint_start
                for b in busy
            ):
                continue

            candidates.append(SlotCandidate(
                slot_id=slot_id,
                business_id=business.id,
                resource_id=resource.id,
                service_id=service.id,
                start_time=start,
                end_time=end,
                local_start=to_business_local(start, tz),
                capacity_max=capacity,
                occupancy=current_occupancy,
                remaining_capacity=remaining,
                state=state,
                version=version,
            ))

    candidates.sort(key=lambda c: (c.start_time, c.resource_id))
    return candidates


def resolve_candidate(
    db: Session,
    slot_id: str,
    config: BookingConfig | None = None,
    redis: Redis | None = None,
    now: datetime | None = None,
) -> SlotCandidate | None:
    """
    Re-derive a candidate from its slot id against the current configuration.

    Ignores ledger occupancy (the caller re-validates that under the
    transition). Returns None when the window is no longer offered.
    """
    config = config or get_booking_config()
    now = now or utcnow()

    parsed = parse_slot_id(slot_id)
    if parsed is None:
        return None
    business_id, resource_id, service_id, start = parsed

    business = get_business(db, business_id)
    service = get_service(db, service_id)
    if not business or not service or service.business_id != business.id:
        return None

    resources = get_service_resources(db, service_id, resource_id)
    if not resources:
        return None
    resource = resources[0]

    tz = business_timezone(business)
    target_date = local_date_of(start, tz)
    windows = _service_windows(db, business, resource, service, target_date, config, redis, now)

    for window_start, window_end in windows:
        if window_start == start:
            row = db.get(Slots, slot_id)
            capacity = row.capacity_max if row is not None else (service.max_concurrent or 1)
            occupancy = row.occupancy if row is not None else 0
            return SlotCandidate(
                slot_id=slot_id,
                business_id=business.id,
                resource_id=resource.id,
                service_id=service.id,
                start_time=window_start,
                end_time=window_end,
                local_start=to_business_local(window_start, tz),
                capacity_max=capacity,
                occupancy=occupancy,
                remaining_capacity=capacity - occupancy,
                state=row.state if row is not None else SlotState.FREE.value,
                version=row.version if row is not None else 0,
            )

    return None


class AvailabilityQuery:
    """
    Lazy, restartable sequence of candidates over a business-local date range.

    Each iteration starts over; each day is read in its own short session so
    no transaction stays open while the consumer holds the iterator.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        business_id: int,
        service_id: int,
        date_start: date,
        date_end: date,
        resource_id: int | None = None,
        occupancy: int = 1,
        config: BookingConfig | None = None,
        redis: Redis | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        if date_start > date_end:
            date_start, date_end = date_end, date_start

        self.session_factory = session_factory
        self.business_id = business_id
        self.service_id = service_id
        self.date_start = date_start
        self.date_end = date_end
        self.resource_id = resource_id
        self.occupancy = occupancy
        self.config = config or get_booking_config()
        self.redis = redis
        self.clock = clock

    def __iter__(self) -> Iterator[SlotCandidate]:
        now = self.clock()
        # Never walk past the horizon, however wide the requested range is
        last = min(self.date_end, now.date() + timedelta(days=self.config.horizon_days + 1))

        current = self.date_start
        while current <= last:
            with self.session_factory() as db:
                day = calculate_service_availability(
                    db,
                    self.business_id,
                    self.service_id,
                    current,
                    resource_id=self.resource_id,
                    occupancy=self.occupancy,
                    config=self.config,
                    redis=self.redis,
                    now=now,
                )
            yield from day
            current += timedelta(days=1)


def query_availability(
    business_id: int,
    service_id: int,
    date_start: date,
    date_end: date | None = None,
    resource_id: int | None = None,
    occupancy: int = 1,
    session_factory: sessionmaker | None = None,
    config: BookingConfig | None = None,
    redis: Redis | None = None,
    clock: Callable[[], datetime] = utcnow,
) -> AvailabilityQuery:
    """Free slot candidates for a service over [date_start, date_end] (business-local dates)."""
    if session_factory is None:
        from ...database import SessionLocal
        session_factory = SessionLocal

    return AvailabilityQuery(
        session_factory,
        business_id,
        service_id,
        date_start,
        date_end or date_start,
        resource_id=resource_id,
        occupancy=occupancy,
        config=config,
        redis=redis,
        clock=clock,
    )


# ── Windows (Level 1 with cache) ─────────────────────────────────────────


def _get_base_windows(
    db: Session,
    business: Businesses,
    resource: Resources,
    target_date: date,
    config: BookingConfig,
    now: datetime,
    redis: Redis | None,
) -> list[tuple[datetime, datetime]]:
    """Get base working windows, using Redis cache when available."""
    if redis is not None:
        store = SlotsRedisStore(redis, config)
        cached = store.get_day_windows(business.id, resource.id, target_date, now)
        if cached is not None:
            return cached

        # Cache miss, calculate and store
        windows = calculate_day_windows(db, business, resource, target_date)
        store.store_day_windows(business.id, resource.id, target_date, windows)
        return windows

    # No Redis, calculate on the fly
    return calculate_day_windows(db, business, resource, target_date)


def _service_windows(
    db: Session,
    business: Businesses,
    resource: Resources,
    service: Services,
    target_date: date,
    config: BookingConfig,
    redis: Redis | None,
    now: datetime,
) -> list[tuple[datetime, datetime]]:
    """
    (start, end) of every service-length slot the resource can offer on the date.

    Each base window is shrunk by the service buffers; windows that end up
    shorter than the service duration are dropped silently. Start times step by
    slot_step_minutes from the shrunk window start.
    """
    tz = business_timezone(business)
    if target_date > local_date_of(now, tz) + timedelta(days=config.horizon_days):
        return []

    duration = timedelta(minutes=service.duration_min)
    if duration <= timedelta(0):
        return []

    before = timedelta(minutes=service.buffer_before_min or 0)
    after = timedelta(minutes=service.buffer_after_min or 0)
    step = timedelta(minutes=config.slot_step_minutes)
    earliest = now + timedelta(hours=config.min_advance_hours)

    result = []
    for window_start, window_end in _get_base_windows(db, business, resource, target_date, config, now, redis):
        lo = window_start + before
        hi = window_end - after
        if hi - lo < duration:
            continue

        start = lo
        while start + duration <= hi:
            if start >= earliest:
                result.append((start, start + duration))
            start += step

    return result

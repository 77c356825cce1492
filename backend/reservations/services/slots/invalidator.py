# backend/reservations/services/slots/invalidator.py
"""
Invalidation after business configuration changes.

Triggers:
✓ Business / resource work_schedule changed → invalidate all dates
✓ Calendar override created/deleted → invalidate affected dates

Two things go stale:
- cached Level 1 windows in Redis (deleted)
- free ledger rows nobody references any more (pruned, they are
  re-materialized on the next hold if the window is still offered)

Occupied slots are never touched: existing bookings survive a schedule change.
"""

import logging
from datetime import date, datetime, timedelta

from redis import Redis
from sqlalchemy import exists, select
from sqlalchemy.orm import Session

from ...models import Slots, t_booking_slots
from ...statuses import SlotState
from .redis_store import SlotsRedisStore

logger = logging.getLogger(__name__)


def invalidate_business_cache(
    redis: Redis,
    business_id: int,
    dates: list[date] | None = None,
) -> int:
    """
    Invalidate cached windows for a business.

    Args:
        dates: List of specific dates to invalidate,
               or None to invalidate all cached dates

    Returns:
        Number of deleted cache keys
    """
    store = SlotsRedisStore(redis)
    return store.delete_day_windows(business_id, dates)


def prune_free_slots(
    db: Session,
    business_id: int,
    date_start: date | None = None,
    date_end: date | None = None,
) -> int:
    """
    Delete unreferenced free ledger rows of a business (optionally within a
    UTC date range, padded by a day on each side for timezone offsets).

    Returns:
        Number of deleted rows
    """
    query = db.query(Slots).filter(
        Slots.business_id == business_id,
        Slots.state == SlotState.FREE.value,
        Slots.occupancy == 0,
        ~exists(
            select(t_booking_slots.c.slot_id)
            .where(t_booking_slots.c.slot_id == Slots.id)
            .correlate(Slots)
        ),
    )
    if date_start is not None:
        query = query.filter(Slots.start_time >= datetime.combine(date_start, datetime.min.time()) - timedelta(days=1))
    if date_end is not None:
        query = query.filter(Slots.start_time < datetime.combine(date_end, datetime.min.time()) + timedelta(days=2))

    deleted = query.delete(synchronize_session=False)
    if deleted:
        logger.info(f"Pruned {deleted} free slot rows for business={business_id}")
    return deleted


def apply_configuration_change(
    db: Session,
    business_id: int,
    date_start: date | None = None,
    date_end: date | None = None,
    redis: Redis | None = None,
) -> dict:
    """Invalidate cache and prune stale free slots after a configuration change."""
    dates = get_affected_dates(date_start, date_end) if date_start and date_end else None

    deleted_keys = invalidate_business_cache(redis, business_id, dates) if redis is not None else 0
    pruned = prune_free_slots(db, business_id, date_start, date_end)

    return {
        "business_id": business_id,
        "deleted_keys": deleted_keys,
        "pruned_slots": pruned,
        "dates": [d.isoformat() for d in dates] if dates else "all",
    }


def get_affected_dates(
    date_start: date,
    date_end: date,
) -> list[date]:
    """
    Get list of dates in range [date_start, date_end].

    Args:
        date_start: Start date (inclusive)
        date_end: End date (inclusive)

    Returns:
        List of dates
    """
    if date_start > date_end:
        date_start, date_end = date_end, date_start

    dates = []
    current = date_start
    while current <= date_end:
        dates.append(current)
        current += timedelta(days=1)

    return dates

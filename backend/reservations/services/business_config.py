# backend/reservations/services/business_config.py
"""
Business configuration provider.

Reads working hours, calendar overrides, services and resources
from the configuration tables. Everything here is read-only.
"""

import json
import logging
from datetime import date

from sqlalchemy.orm import Session

from ..models import Businesses, CalendarOverrides, Resources, Services, t_resource_services
from ..timeutils import time_str_to_minutes

logger = logging.getLogger(__name__)

DAY_NAMES = ["mon", "tue", "wed", "thu", "fri", "sat", "sun"]

# Override kinds that close the whole day; they win over any working hours
CLOSING_KINDS = ("holiday", "day_off")


def get_business(db: Session, business_id: int) -> Businesses | None:
    return db.query(Businesses).filter(
        Businesses.id == business_id,
        Businesses.is_active == 1,
    ).first()


def get_service(db: Session, service_id: int) -> Services | None:
    return db.query(Services).filter(
        Services.id == service_id,
        Services.is_active == 1,
    ).first()


def get_service_resources(
    db: Session,
    service_id: int,
    resource_id: int | None = None,
) -> list[Resources]:
    """Active resources that perform the service (optionally narrowed to one)."""
    query = (
        db.query(Resources)
        .join(t_resource_services, Resources.id == t_resource_services.c.resource_id)
        .filter(
            t_resource_services.c.service_id == service_id,
            t_resource_services.c.is_active == 1,
            Resources.is_active == 1,
        )
    )
    if resource_id is not None:
        query = query.filter(Resources.id == resource_id)
    return query.order_by(Resources.id).all()


def get_day_overrides(
    db: Session,
    business_id: int,
    resource_id: int,
    target_date: date,
) -> list[CalendarOverrides]:
    """Overrides covering target_date for the business itself or for this resource."""
    date_str = target_date.isoformat()

    overrides = (
        db.query(CalendarOverrides)
        .filter(
            CalendarOverrides.business_id == business_id,
            CalendarOverrides.date_start <= date_str,
            CalendarOverrides.date_end >= date_str,
        )
        .order_by(CalendarOverrides.id)
        .all()
    )
    return [
        ovr for ovr in overrides
        if ovr.target_type == "business"
        or (ovr.target_type == "resource" and ovr.target_id == resource_id)
    ]


def parse_work_schedule(raw: str | dict | None) -> dict:
    if isinstance(raw, dict):
        return raw
    try:
        schedule = json.loads(raw) if raw else {}
    except json.JSONDecodeError:
        logger.warning(f"Malformed work_schedule ignored: {raw!r}")
        return {}
    return schedule if isinstance(schedule, dict) else {}


def get_day_intervals(schedule: dict, target_date: date) -> list[tuple[int, int]]:
    """
    Extract working intervals for target_date as (start_min, end_min) pairs.

    Supports both formats:
      Format A: {"mon": [["09:00", "18:00"]], "tue": {"start": "09:00", "end": "17:00"}, "sun": null}
      Format B: {"0": [["09:00", "18:00"]]}  (0 = Monday)

    Malformed or empty intervals are dropped.
    """
    weekday = target_date.weekday()

    raw_intervals: list = []
    weekday_str = str(weekday)
    day_name = DAY_NAMES[weekday]

    if weekday_str in schedule:
        value = schedule[weekday_str]
        if isinstance(value, list):
            raw_intervals = value
    elif day_name in schedule:
        value = schedule[day_name]
        if isinstance(value, dict):
            start = value.get("start")
            end = value.get("end")
            if start and end:
                raw_intervals = [[start, end]]
        elif isinstance(value, list):
            raw_intervals = value

    intervals = []
    for interval in raw_intervals:
        parsed = parse_interval(interval)
        if parsed:
            intervals.append(parsed)
    return sorted(intervals)


def parse_interval(interval) -> tuple[int, int] | None:
    """["09:00", "17:00"] → (540, 1020); None when malformed or zero-length."""
    if not isinstance(interval, (list, tuple)) or len(interval) != 2:
        return None
    try:
        start_min = time_str_to_minutes(interval[0])
        end_min = time_str_to_minutes(interval[1])
    except (ValueError, AttributeError):
        return None
    if end_min <= start_min:
        return None
    return start_min, end_min

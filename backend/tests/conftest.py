"""
Shared fixtures: a file-backed SQLite store per test, a seeded business and
a controllable clock.
"""

import json
import os
from dataclasses import dataclass
from datetime import datetime, timedelta

# Settings are read at import time; keep the module-level engine off disk
os.environ["RESERVATIONS_DATABASE_URL"] = "sqlite:///:memory:"
os.environ["RESERVATIONS_REDIS_URL"] = ""

import pytest

from reservations.database import create_db_engine, create_session_factory, init_db
from reservations.models import Businesses, Resources, Services, t_resource_services
from reservations.services.reservations import ReservationCoordinator
from reservations.services.slots import BookingConfig, make_slot_id

NOW = datetime(2030, 1, 7, 6, 0)  # Monday, UTC

DAILY_9_TO_17 = {day: [["09:00", "17:00"]] for day in ("mon", "tue", "wed", "thu", "fri", "sat", "sun")}

DEFAULT_POLICY = {
    "rules": [
        {"min_hours_before": 48, "refund_percent": 100},
        {"min_hours_before": 24, "refund_percent": 50},
        {"min_hours_before": 0, "refund_percent": 0},
    ]
}


class FakeClock:
    """Injectable clock; tests move time forward explicitly."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@dataclass
class Seed:
    business_id: int
    staff_id: int
    studio_id: int
    haircut_id: int
    group_class_id: int

    def haircut_slot(self, start: datetime) -> str:
        return make_slot_id(self.business_id, self.staff_id, self.haircut_id, start)

    def class_slot(self, start: datetime) -> str:
        return make_slot_id(self.business_id, self.studio_id, self.group_class_id, start)


@pytest.fixture
def engine(tmp_path):
    engine = create_db_engine(f"sqlite:///{tmp_path / 'reservations.db'}", busy_timeout=10)
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config():
    return BookingConfig(horizon_days=30, min_advance_hours=0, slot_step_minutes=30, hold_ttl_minutes=10)


def add_business(db, name="Barbershop", timezone="UTC", schedule=None, policy=None) -> Businesses:
    business = Businesses(
        name=name,
        timezone=timezone,
        work_schedule=json.dumps(DAILY_9_TO_17 if schedule is None else schedule),
        cancellation_policy=json.dumps(DEFAULT_POLICY if policy is None else policy),
    )
    db.add(business)
    db.flush()
    return business


def add_resource(db, business, name="Anna", kind="staff", schedule=None) -> Resources:
    resource = Resources(
        business_id=business.id,
        name=name,
        kind=kind,
        work_schedule=json.dumps(schedule or {}),
    )
    db.add(resource)
    db.flush()
    return resource


def add_service(db, business, resources, name="Haircut", duration=60, **kwargs) -> Services:
    service = Services(business_id=business.id, name=name, duration_min=duration, **kwargs)
    db.add(service)
    db.flush()
    for resource in resources:
        db.execute(t_resource_services.insert().values(resource_id=resource.id, service_id=service.id))
    return service


@pytest.fixture
def seed(session_factory) -> Seed:
    with session_factory() as db:
        business = add_business(db)
        staff = add_resource(db, business, "Anna", "staff")
        studio = add_resource(db, business, "Studio", "equipment")
        haircut = add_service(db, business, [staff], "Haircut", duration=60)
        group_class = add_service(
            db, business, [studio], "Group class", duration=60,
            max_concurrent=3, group_max_size=2,
        )
        db.commit()
        return Seed(business.id, staff.id, studio.id, haircut.id, group_class.id)


@pytest.fixture
def coordinator(session_factory, config, clock) -> ReservationCoordinator:
    return ReservationCoordinator(
        session_factory,
        config=config,
        clock=clock,
        retry_attempts=3,
        retry_backoff=0.01,
    )

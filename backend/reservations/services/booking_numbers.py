# backend/reservations/services/booking_numbers.py

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..models import BookingCounters

COUNTER_NAME = "bookings"


def next_booking_number(db: Session, counter: str = COUNTER_NAME) -> int:
    """
    Allocate the next booking number inside the caller's transaction.

    Strictly increasing; numbers taken by a rolled-back transaction are reused.
    """
    for _ in range(2):
        value = db.execute(
            update(BookingCounters)
            .where(BookingCounters.name == counter)
            .values(value=BookingCounters.value + 1)
            .returning(BookingCounters.value)
            .execution_options(synchronize_session=False)
        ).scalar_one_or_none()
        if value is not None:
            return value

        try:
            with db.begin_nested():
                db.add(BookingCounters(name=counter, value=1))
            return 1
        except IntegrityError:
            # Another writer created the counter row first; increment it
            continue

    raise RuntimeError(f"booking counter {counter!r} could not be allocated")

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Table,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()
metadata = Base.metadata


# ── Business configuration ───────────────────────────────────────────────


class Businesses(Base):
    __tablename__ = 'businesses'

    name = Column(Text, nullable=False)
    timezone = Column(Text, nullable=False, server_default=text("'UTC'"))
    work_schedule = Column(Text, nullable=False, server_default=text("'{}'"))
    cancellation_policy = Column(Text, nullable=False, server_default=text("'{}'"))
    is_active = Column(Integer, nullable=False, server_default=text('1'))
    id = Column(Integer, primary_key=True)

    resources = relationship('Resources', back_populates='business')
    services = relationship('Services', back_populates='business')


t_resource_services = Table(
    'resource_services', metadata,
    Column('resource_id', ForeignKey('resources.id', ondelete='CASCADE'), primary_key=True),
    Column('service_id', ForeignKey('services.id', ondelete='CASCADE'), primary_key=True),
    Column('is_active', Integer, nullable=False, server_default=text('1')),
)


class Resources(Base):
    __tablename__ = 'resources'

    business_id = Column(ForeignKey('businesses.id', ondelete='CASCADE'), nullable=False)
    name = Column(Text, nullable=False)
    kind = Column(Text, nullable=False, server_default=text("'staff'"))  # staff / equipment
    work_schedule = Column(Text, nullable=False, server_default=text("'{}'"))  # '{}' = business hours
    is_active = Column(Integer, nullable=False, server_default=text('1'))
    id = Column(Integer, primary_key=True)

    business = relationship('Businesses', back_populates='resources')


class Services(Base):
    __tablename__ = 'services'

    business_id = Column(ForeignKey('businesses.id', ondelete='CASCADE'), nullable=False)
    name = Column(Text, nullable=False)
    duration_min = Column(Integer, nullable=False)
    buffer_before_min = Column(Integer, nullable=False, server_default=text('0'))
    buffer_after_min = Column(Integer, nullable=False, server_default=text('0'))
    max_concurrent = Column(Integer, nullable=False, server_default=text('1'))
    group_max_size = Column(Integer)
    is_active = Column(Integer, nullable=False, server_default=text('1'))
    id = Column(Integer, primary_key=True)

    business = relationship('Businesses', back_populates='services')


class CalendarOverrides(Base):
    __tablename__ = 'calendar_overrides'

    business_id = Column(ForeignKey('businesses.id', ondelete='CASCADE'), nullable=False)
    target_type = Column(Text, nullable=False)  # business / resource
    date_start = Column(Text, nullable=False)  # YYYY-MM-DD, inclusive
    date_end = Column(Text, nullable=False)
    override_kind = Column(Text, nullable=False)  # holiday / day_off / block / custom_hours
    id = Column(Integer, primary_key=True)
    target_id = Column(Integer)
    time_start = Column(Text)  # "HH:MM", block / custom_hours only
    time_end = Column(Text)
    reason = Column(Text)


# ── Ledger ───────────────────────────────────────────────────────────────


class Slots(Base):
    __tablename__ = 'slots'
    __table_args__ = (
        UniqueConstraint('resource_id', 'service_id', 'start_time', name='uq_slot_window'),
        CheckConstraint('occupancy >= 0', name='ck_slot_occupancy_non_negative'),
        CheckConstraint('occupancy <= capacity_max', name='ck_slot_occupancy_capacity'),
        Index('ix_slots_resource_start', 'resource_id', 'start_time'),
    )

    id = Column(Text, primary_key=True)
    business_id = Column(ForeignKey('businesses.id', ondelete='CASCADE'), nullable=False)
    resource_id = Column(ForeignKey('resources.id', ondelete='CASCADE'), nullable=False)
    service_id = Column(ForeignKey('services.id', ondelete='CASCADE'), nullable=False)
    start_time = Column(DateTime, nullable=False)
    end_time = Column(DateTime, nullable=False)
    capacity_max = Column(Integer, nullable=False, server_default=text('1'))
    occupancy = Column(Integer, nullable=False, server_default=text('0'))
    state = Column(Text, nullable=False, server_default=text("'free'"))
    version = Column(Integer, nullable=False, server_default=text('0'))
    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False)


class SlotAudit(Base):
    __tablename__ = 'slot_audit'

    slot_id = Column(ForeignKey('slots.id', ondelete='CASCADE'), nullable=False, index=True)
    from_state = Column(Text, nullable=False)
    to_state = Column(Text, nullable=False)
    occupancy_delta = Column(Integer, nullable=False, server_default=text('0'))
    version = Column(Integer, nullable=False)
    actor = Column(Text, nullable=False)
    created_at = Column(DateTime, nullable=False)
    id = Column(Integer, primary_key=True)


# ── Bookings ─────────────────────────────────────────────────────────────


t_booking_slots = Table(
    'booking_slots', metadata,
    Column('booking_id', ForeignKey('bookings.id', ondelete='CASCADE'), primary_key=True),
    Column('slot_id', ForeignKey('slots.id', ondelete='CASCADE'), primary_key=True),
)


class Bookings(Base):
    __tablename__ = 'bookings'

    booking_number = Column(Integer, nullable=False, unique=True)
    requester_id = Column(Text, nullable=False, index=True)
    business_id = Column(ForeignKey('businesses.id', ondelete='CASCADE'), nullable=False)
    service_id = Column(ForeignKey('services.id'), nullable=False)
    occupancy = Column(Integer, nullable=False, server_default=text('1'))
    status = Column(Text, nullable=False, server_default=text("'pending'"))
    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False)
    id = Column(Integer, primary_key=True)
    group_key = Column(Text, index=True)  # set when the booking spans several slots
    payment_reference = Column(Text)
    cancel_reason = Column(Text)
    cancelled_by = Column(Text)
    cancelled_at = Column(DateTime)
    refund_percent = Column(Integer)
    refund_status = Column(Text)  # none / pending

    slots = relationship('Slots', secondary=t_booking_slots, order_by='Slots.start_time')
    holds = relationship('ReservationHolds', back_populates='booking')

    @property
    def slot_ids(self) -> list[str]:
        return [slot.id for slot in self.slots]

    @property
    def starts_at(self):
        return min((slot.start_time for slot in self.slots), default=None)


class ReservationHolds(Base):
    __tablename__ = 'reservation_holds'

    id = Column(Text, primary_key=True)
    booking_id = Column(ForeignKey('bookings.id', ondelete='CASCADE'), nullable=False)
    occupancy = Column(Integer, nullable=False)
    expires_at = Column(DateTime, nullable=False, index=True)
    status = Column(Text, nullable=False, server_default=text("'active'"))
    created_at = Column(DateTime, nullable=False)
    resolved_at = Column(DateTime)

    booking = relationship('Bookings', back_populates='holds')


class BookingCounters(Base):
    __tablename__ = 'booking_counters'

    name = Column(Text, primary_key=True)
    value = Column(Integer, nullable=False, server_default=text('0'))

# backend/reservations/services/reservations.py
"""
Reservation coordinator: turns a selected slot into a booking.

Protocol:
1. hold     : ledger transition free→held (or +occupancy on a shared slot),
              pending booking + hold with an expiry
2. confirm  : hold → confirmed, booking → confirmed, slot → booked
3. expire   : background sweep releases holds past expiry,
              booking → cancelled (reason hold_expired)

Every operation runs in one storage transaction, so a failure rolls back
everything it wrote. Lost races come back as SLOT_UNAVAILABLE and are not
retried here. Storage errors are retried a bounded number of times before
StorageUnavailable is raised. Payment and notifications live elsewhere; this
module only pushes lifecycle events to events:p2p after commit.
"""

import logging
import time
import uuid
from collections.abc import Callable
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Any

from redis import Redis
from sqlalchemy import update
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker

from ..config import settings
from ..models import Bookings, Businesses, ReservationHolds, Services, Slots
from ..schemas.bookings import BookingRead, CancellationResult, HoldResult
from ..schemas.slots import SlotAuditEntry, SlotRead
from ..statuses import HOLD_EXPIRED_REASON, BookingStatus, HoldStatus, SlotState
from ..timeutils import utcnow
from .booking_numbers import next_booking_number
from .cancellation_policy import evaluate, parse_cancellation_policy
from .events import emit_event
from .ledger import CONFLICT, SlotLedger
from .slots.availability import AvailabilityQuery, query_availability, resolve_candidate
from .slots.config import BookingConfig, get_booking_config

logger = logging.getLogger(__name__)

HOLD_RELEASED_REASON = "hold_released"


class ReservationFailure(str, Enum):
    SLOT_UNAVAILABLE = "slot_unavailable"
    HOLD_EXPIRED = "hold_expired"
    NOT_FOUND = "not_found"
    ALREADY_CANCELLED = "already_cancelled"
    NOT_CANCELLABLE = "not_cancellable"
    INVALID_TRANSITION = "invalid_transition"


class StorageUnavailable(RuntimeError):
    """The store could not be reached within the bounded retry budget."""


class _Abort(Exception):
    """Roll the current transaction back and report a typed failure."""

    def __init__(self, failure: ReservationFailure):
        super().__init__(failure.value)
        self.failure = failure


Events = list[tuple[str, dict]]


class ReservationCoordinator:

    def __init__(
        self,
        session_factory: sessionmaker | None = None,
        config: BookingConfig | None = None,
        clock: Callable[[], datetime] = utcnow,
        redis: Redis | None = None,
        retry_attempts: int | None = None,
        retry_backoff: float | None = None,
    ):
        if session_factory is None:
            from ..database import SessionLocal
            session_factory = SessionLocal

        self.session_factory = session_factory
        self.config = config or get_booking_config()
        self.clock = clock
        self.redis = redis
        self.retry_attempts = max(1, retry_attempts if retry_attempts is not None else settings.storage_retry_attempts)
        self.retry_backoff = retry_backoff if retry_backoff is not None else settings.storage_retry_backoff_seconds

    # ── Transactions ─────────────────────────────────────────────────────

    def _transaction(self, name: str, work: Callable[[Session, Events], Any]) -> Any:
        """
        Run work(db, events) in one transaction and commit.

        _Abort rolls back and returns its failure. OperationalError (locked or
        unreachable store) rolls back and retries with linear backoff.
        Events collected by work are emitted only after a successful commit.
        """
        for attempt in range(1, self.retry_attempts + 1):
            events: Events = []
            db = self.session_factory()
            try:
                result = work(db, events)
                db.commit()
            except _Abort as abort:
                db.rollback()
                logger.info(f"{name} rejected: {abort.failure.value}")
                return abort.failure
            except OperationalError as e:
                db.rollback()
                if attempt >= self.retry_attempts:
                    logger.error(f"{name}: storage unavailable after {attempt} attempts: {e}")
                    raise StorageUnavailable(f"{name}: storage unavailable") from e
                logger.warning(f"{name}: storage error (attempt {attempt}/{self.retry_attempts}), retrying: {e}")
                time.sleep(self.retry_backoff * attempt)
                continue
            except Exception:
                db.rollback()
                raise
            finally:
                db.close()

            for event_type, payload in events:
                emit_event(self.redis, event_type, payload)
            return result

    # ── Availability ─────────────────────────────────────────────────────

    def query_availability(
        self,
        business_id: int,
        service_id: int,
        date_start: date,
        date_end: date | None = None,
        resource_id: int | None = None,
        occupancy: int = 1,
    ) -> AvailabilityQuery:
        return query_availability(
            business_id,
            service_id,
            date_start,
            date_end,
            resource_id=resource_id,
            occupancy=occupancy,
            session_factory=self.session_factory,
            config=self.config,
            redis=self.redis,
            clock=self.clock,
        )

    # ── Hold ─────────────────────────────────────────────────────────────

    def hold(
        self,
        slot_id: str,
        requester_id: str | int,
        occupancy: int = 1,
    ) -> HoldResult | ReservationFailure:
        """Claim occupancy on one slot and open a pending booking."""
        return self.hold_group([slot_id], requester_id, occupancy)

    def hold_group(
        self,
        slot_ids: list[str],
        requester_id: str | int,
        occupancy: int = 1,
    ) -> HoldResult | ReservationFailure:
        """
        Claim occupancy on several slots of one service, all or nothing.

        The slots share one booking (with a group key) and one hold.
        """
        slot_ids = sorted(set(slot_ids))
        if not slot_ids or occupancy < 1:
            return ReservationFailure.SLOT_UNAVAILABLE

        requester_id = str(requester_id)
        actor = f"requester:{requester_id}"

        def work(db: Session, events: Events) -> HoldResult:
            now = self.clock()
            ledger = SlotLedger(db, self.clock)
            service: Services | None = None
            held: list[Slots] = []

            candidates = []
            for slot_id in slot_ids:
                candidate = resolve_candidate(db, slot_id, self.config, self.redis, now)
                if candidate is None:
                    raise _Abort(ReservationFailure.SLOT_UNAVAILABLE)

                if service is None:
                    service = db.get(Services, candidate.service_id)
                    if service.group_max_size and occupancy > service.group_max_size:
                        raise _Abort(ReservationFailure.SLOT_UNAVAILABLE)
                elif candidate.service_id != service.id:
                    raise _Abort(ReservationFailure.SLOT_UNAVAILABLE)
                candidates.append(candidate)

            # Held until commit: no other hold can slip in between overlap check and claim
            ledger.lock_resources(c.resource_id for c in candidates)

            for candidate in candidates:
                slot = ledger.ensure_slot(candidate)
                if slot.state not in (SlotState.FREE.value, SlotState.HELD.value, SlotState.BOOKED.value):
                    raise _Abort(ReservationFailure.SLOT_UNAVAILABLE)

                footprint_start = slot.start_time - timedelta(minutes=service.buffer_before_min or 0)
                footprint_end = slot.end_time + timedelta(minutes=service.buffer_after_min or 0)
                overlapping = [
                    busy for busy in ledger.busy_intervals(slot.resource_id, footprint_start, footprint_end, slot.id)
                    if busy.slot_id not in slot_ids
                ]
                if overlapping:
                    logger.info(f"Slot {slot.id} overlaps occupied {overlapping[0].slot_id}")
                    raise _Abort(ReservationFailure.SLOT_UNAVAILABLE)

                new_state = SlotState.BOOKED if slot.state == SlotState.BOOKED.value else SlotState.HELD
                result = ledger.try_transition(
                    slot.id,
                    slot.state,
                    new_state,
                    occupancy,
                    actor=actor,
                    expected_version=slot.version,
                )
                if result is CONFLICT:
                    raise _Abort(ReservationFailure.SLOT_UNAVAILABLE)
                held.append(result)

            booking = Bookings(
                booking_number=next_booking_number(db),
                requester_id=requester_id,
                business_id=service.business_id,
                service_id=service.id,
                occupancy=occupancy,
                status=BookingStatus.PENDING.value,
                group_key=uuid.uuid4().hex if len(held) > 1 else None,
                created_at=now,
                updated_at=now,
            )
            booking.slots = held
            db.add(booking)
            db.flush()

            hold = ReservationHolds(
                id=uuid.uuid4().hex,
                booking_id=booking.id,
                occupancy=occupancy,
                expires_at=now + timedelta(minutes=self.config.hold_ttl_minutes),
                status=HoldStatus.ACTIVE.value,
                created_at=now,
            )
            db.add(hold)
            db.flush()

            logger.info(
                f"Hold {hold.id} created: booking #{booking.booking_number} "
                f"slots={slot_ids} occupancy={occupancy} until {hold.expires_at}"
            )
            return HoldResult(
                hold_id=hold.id,
                booking_id=booking.id,
                booking_number=booking.booking_number,
                slot_ids=[slot.id for slot in held],
                occupancy=occupancy,
                expires_at=hold.expires_at,
            )

        return self._transaction("hold", work)

    # ── Confirm / release ────────────────────────────────────────────────

    def confirm(
        self,
        hold_id: str,
        payment_reference: str | None = None,
    ) -> BookingRead | ReservationFailure:
        """
        Confirm a hold after the out-of-scope steps (payment) succeeded.

        A hold found past its expiry is expired on the spot (committed) and
        HOLD_EXPIRED is returned.
        """

        def work(db: Session, events: Events) -> BookingRead | ReservationFailure:
            now = self.clock()
            hold = db.get(ReservationHolds, hold_id, populate_existing=True)
            if hold is None:
                raise _Abort(ReservationFailure.NOT_FOUND)
            if hold.status == HoldStatus.EXPIRED.value:
                raise _Abort(ReservationFailure.HOLD_EXPIRED)
            if hold.status != HoldStatus.ACTIVE.value:
                raise _Abort(ReservationFailure.NOT_FOUND)

            if hold.expires_at <= now:
                self._expire_hold(db, hold, now, events)
                return ReservationFailure.HOLD_EXPIRED

            if not _resolve_hold(db, hold.id, HoldStatus.CONFIRMED, now):
                raise _Abort(ReservationFailure.NOT_FOUND)

            booking = hold.booking
            ledger = SlotLedger(db, self.clock)
            for slot in booking.slots:
                result = ledger.mark_booked(slot.id, actor=f"requester:{booking.requester_id}")
                if result is None or result is CONFLICT:
                    raise _Abort(ReservationFailure.INVALID_TRANSITION)

            if not _move_booking(db, booking, BookingStatus.PENDING, BookingStatus.CONFIRMED, now,
                                 payment_reference=payment_reference):
                raise _Abort(ReservationFailure.INVALID_TRANSITION)

            logger.info(f"Booking #{booking.booking_number} confirmed (hold {hold.id})")
            events.append(("booking_confirmed", _event_payload(booking)))
            return BookingRead.model_validate(booking)

        return self._transaction("confirm", work)

    def release_hold(self, hold_id: str) -> BookingRead | ReservationFailure:
        """
        Abandon a hold before confirming it. Idempotent: a hold that is already
        released or expired returns its booking unchanged.
        """

        def work(db: Session, events: Events) -> BookingRead:
            now = self.clock()
            hold = db.get(ReservationHolds, hold_id, populate_existing=True)
            if hold is None:
                raise _Abort(ReservationFailure.NOT_FOUND)
            if hold.status in (HoldStatus.RELEASED.value, HoldStatus.EXPIRED.value):
                return BookingRead.model_validate(hold.booking)
            if hold.status != HoldStatus.ACTIVE.value:
                raise _Abort(ReservationFailure.INVALID_TRANSITION)

            if not _resolve_hold(db, hold.id, HoldStatus.RELEASED, now):
                raise _Abort(ReservationFailure.INVALID_TRANSITION)

            booking = hold.booking
            self._release_slots(db, booking, hold.occupancy, f"requester:{booking.requester_id}")
            _move_booking(db, booking, BookingStatus.PENDING, BookingStatus.CANCELLED, now,
                          cancel_reason=HOLD_RELEASED_REASON,
                          cancelled_by=booking.requester_id,
                          cancelled_at=now,
                          refund_percent=0,
                          refund_status="none")

            logger.info(f"Hold {hold.id} released, booking #{booking.booking_number} cancelled")
            events.append(("booking_cancelled", _event_payload(booking)))
            return BookingRead.model_validate(booking)

        return self._transaction("release_hold", work)

    # ── Cancel ───────────────────────────────────────────────────────────

    def cancel(
        self,
        booking_id: int,
        actor: str,
        reason: str | None = None,
    ) -> CancellationResult | ReservationFailure:
        """
        Cancel a confirmed booking under the business cancellation policy and
        give its occupancy back to the ledger.
        """

        def work(db: Session, events: Events) -> CancellationResult:
            now = self.clock()
            booking = db.get(Bookings, booking_id, populate_existing=True)
            if booking is None:
                raise _Abort(ReservationFailure.NOT_FOUND)
            if booking.status == BookingStatus.CANCELLED.value:
                raise _Abort(ReservationFailure.ALREADY_CANCELLED)
            if booking.status != BookingStatus.CONFIRMED.value:
                raise _Abort(ReservationFailure.NOT_CANCELLABLE)

            business = db.get(Businesses, booking.business_id)
            policy = parse_cancellation_policy(business.cancellation_policy if business else None)
            decision = evaluate(policy, booking.starts_at, now)
            if not decision.allowed:
                raise _Abort(ReservationFailure.NOT_CANCELLABLE)

            refund_status = "pending" if decision.refund_percent > 0 else "none"
            if not _move_booking(db, booking, BookingStatus.CONFIRMED, BookingStatus.CANCELLED, now,
                                 cancel_reason=reason,
                                 cancelled_by=actor,
                                 cancelled_at=now,
                                 refund_percent=decision.refund_percent,
                                 refund_status=refund_status):
                raise _Abort(ReservationFailure.ALREADY_CANCELLED)

            self._release_slots(db, booking, booking.occupancy, actor)

            logger.info(
                f"Booking #{booking.booking_number} cancelled by {actor} "
                f"(refund {decision.refund_percent}%)"
            )
            events.append(("booking_cancelled", _event_payload(booking)))
            return CancellationResult(
                booking_id=booking.id,
                booking_number=booking.booking_number,
                refund_percent=decision.refund_percent,
                refund_status=refund_status,
            )

        return self._transaction("cancel", work)

    # ── Terminal statuses ────────────────────────────────────────────────

    def complete(self, booking_id: int) -> BookingRead | ReservationFailure:
        return self._finish(booking_id, BookingStatus.COMPLETED)

    def mark_no_show(self, booking_id: int) -> BookingRead | ReservationFailure:
        return self._finish(booking_id, BookingStatus.NO_SHOW)

    def _finish(self, booking_id: int, status: BookingStatus) -> BookingRead | ReservationFailure:
        # Occupancy stays on the slot: the time was used (or wasted)
        def work(db: Session, events: Events) -> BookingRead:
            now = self.clock()
            booking = db.get(Bookings, booking_id, populate_existing=True)
            if booking is None:
                raise _Abort(ReservationFailure.NOT_FOUND)
            if not _move_booking(db, booking, BookingStatus.CONFIRMED, status, now):
                raise _Abort(ReservationFailure.INVALID_TRANSITION)

            logger.info(f"Booking #{booking.booking_number} → {status.value}")
            return BookingRead.model_validate(booking)

        return self._transaction(status.value, work)

    # ── Expiry ───────────────────────────────────────────────────────────

    def expire_holds(self, limit: int = 100) -> int:
        """
        Expire active holds past their expiry.

        Each hold is expired in its own transaction; holds confirmed or
        released in the meantime are skipped. Returns the number expired.
        """
        now = self.clock()

        def scan(db: Session, events: Events) -> list[str]:
            rows = (
                db.query(ReservationHolds.id)
                .filter(
                    ReservationHolds.status == HoldStatus.ACTIVE.value,
                    ReservationHolds.expires_at <= now,
                )
                .order_by(ReservationHolds.expires_at)
                .limit(limit)
                .all()
            )
            return [row.id for row in rows]

        expired = 0
        for hold_id in self._transaction("expire_holds.scan", scan):

            def work(db: Session, events: Events, hold_id: str = hold_id) -> bool:
                hold = db.get(ReservationHolds, hold_id, populate_existing=True)
                if hold is None or hold.status != HoldStatus.ACTIVE.value or hold.expires_at > now:
                    return False
                return self._expire_hold(db, hold, now, events)

            if self._transaction("expire_hold", work) is True:
                expired += 1

        if expired:
            logger.info(f"Expired {expired} hold(s)")
        return expired

    def _expire_hold(self, db: Session, hold: ReservationHolds, now: datetime, events: Events) -> bool:
        if not _resolve_hold(db, hold.id, HoldStatus.EXPIRED, now):
            return False

        booking = hold.booking
        self._release_slots(db, booking, hold.occupancy, "expiry")
        _move_booking(db, booking, BookingStatus.PENDING, BookingStatus.CANCELLED, now,
                      cancel_reason=HOLD_EXPIRED_REASON,
                      cancelled_by="system",
                      cancelled_at=now,
                      refund_percent=0,
                      refund_status="none")

        logger.info(f"Hold {hold.id} expired, booking #{booking.booking_number} cancelled")
        events.append(("hold_expired", _event_payload(booking)))
        return True

    def _release_slots(self, db: Session, booking: Bookings, occupancy: int, actor: str) -> None:
        ledger = SlotLedger(db, self.clock)
        for slot in booking.slots:
            result = ledger.release(slot.id, occupancy, actor=actor)
            if result is None or result is CONFLICT:
                raise _Abort(ReservationFailure.INVALID_TRANSITION)

    # ── Read ─────────────────────────────────────────────────────────────

    def get_booking(self, booking_id: int) -> BookingRead | None:
        with self.session_factory() as db:
            booking = db.get(Bookings, booking_id)
            return BookingRead.model_validate(booking) if booking else None

    def get_slot(self, slot_id: str) -> SlotRead | None:
        with self.session_factory() as db:
            slot = SlotLedger(db, self.clock).get_slot(slot_id)
            return SlotRead.model_validate(slot) if slot else None

    def slot_audit(self, slot_id: str) -> list[SlotAuditEntry]:
        """Ordered transitions of a slot, for diagnosing double-booking reports."""
        with self.session_factory() as db:
            return [SlotAuditEntry.model_validate(entry) for entry in SlotLedger(db, self.clock).audit_trail(slot_id)]


# ── Helpers ──────────────────────────────────────────────────────────────


def _resolve_hold(db: Session, hold_id: str, status: HoldStatus, now: datetime) -> bool:
    """active → status, only if nobody resolved the hold first."""
    result = db.execute(
        update(ReservationHolds)
        .where(
            ReservationHolds.id == hold_id,
            ReservationHolds.status == HoldStatus.ACTIVE.value,
        )
        .values(status=status.value, resolved_at=now)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def _move_booking(
    db: Session,
    booking: Bookings,
    expected: BookingStatus,
    status: BookingStatus,
    now: datetime,
    **values,
) -> bool:
    """expected → status (plus extra columns), only if the booking is still in expected."""
    result = db.execute(
        update(Bookings)
        .where(Bookings.id == booking.id, Bookings.status == expected.value)
        .values(status=status.value, updated_at=now, **values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return False
    db.refresh(booking)
    return True


def _event_payload(booking: Bookings) -> dict:
    return {
        "booking_id": booking.id,
        "booking_number": booking.booking_number,
        "requester_id": booking.requester_id,
        "business_id": booking.business_id,
        "status": booking.status,
        "slot_ids": booking.slot_ids,
        "starts_at": booking.starts_at.isoformat() if booking.starts_at else None,
        "refund_percent": booking.refund_percent,
        "refund_status": booking.refund_status,
    }

"""
Tests for the reservation coordinator: hold / confirm / cancel / expire under
the ledger's concurrency guarantees.
"""

import json
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from datetime import datetime, timedelta

import fakeredis
import pytest

from reservations.database import create_db_engine, create_session_factory
from reservations.models import Bookings, Businesses, ReservationHolds, Slots
from reservations.schemas import BookingRead, CancellationResult, HoldResult
from reservations.services.reservations import (
    ReservationCoordinator,
    ReservationFailure,
    StorageUnavailable,
)
from reservations.services.ledger import SlotLedger
from reservations.services.slots import resolve_candidate
from reservations.statuses import BookingStatus, HoldStatus, SlotState

TEN = datetime(2030, 1, 8, 10, 0)
ELEVEN = datetime(2030, 1, 8, 11, 0)


def _slot(session_factory, slot_id):
    with session_factory() as db:
        return db.get(Slots, slot_id)


def _concurrent_holds(coordinator, slot_id, attempts):
    barrier = threading.Barrier(attempts)

    def attempt(n):
        barrier.wait()
        return coordinator.hold(slot_id, f"client-{n}")

    with ThreadPoolExecutor(max_workers=attempts) as pool:
        return list(pool.map(attempt, range(attempts)))


# ── Hold / confirm ───────────────────────────────────────────────────────


def test_hold_then_confirm(session_factory, seed, coordinator, clock):
    slot_id = seed.haircut_slot(TEN)

    held = coordinator.hold(slot_id, "client-1")
    assert isinstance(held, HoldResult)
    assert held.slot_ids == [slot_id]
    assert held.expires_at == datetime(2030, 1, 7, 6, 10)

    slot = _slot(session_factory, slot_id)
    assert (slot.state, slot.occupancy, slot.version) == ("held", 1, 1)

    clock.advance(minutes=5)
    booking = coordinator.confirm(held.hold_id, payment_reference="pay-42")

    assert isinstance(booking, BookingRead)
    assert booking.status == BookingStatus.CONFIRMED.value
    assert booking.payment_reference == "pay-42"
    assert booking.slot_ids == [slot_id]
    assert booking.group_key is None

    slot = _slot(session_factory, slot_id)
    assert (slot.state, slot.occupancy, slot.version) == ("booked", 1, 2)

    with session_factory() as db:
        assert db.get(ReservationHolds, held.hold_id).status == HoldStatus.CONFIRMED.value


def test_confirm_twice_and_unknown_hold(seed, coordinator):
    held = coordinator.hold(seed.haircut_slot(TEN), "client-1")
    assert isinstance(coordinator.confirm(held.hold_id), BookingRead)

    assert coordinator.confirm(held.hold_id) is ReservationFailure.NOT_FOUND
    assert coordinator.confirm("missing") is ReservationFailure.NOT_FOUND


def test_booking_numbers_increase(seed, coordinator):
    first = coordinator.hold(seed.haircut_slot(TEN), "client-1")
    second = coordinator.hold(seed.haircut_slot(ELEVEN), "client-2")

    assert second.booking_number == first.booking_number + 1


def test_hold_on_unoffered_slot(seed, coordinator):
    assert coordinator.hold(seed.haircut_slot(datetime(2030, 1, 8, 18, 0)), "c") is ReservationFailure.SLOT_UNAVAILABLE
    assert coordinator.hold("garbage", "c") is ReservationFailure.SLOT_UNAVAILABLE
    assert coordinator.hold(seed.haircut_slot(TEN), "c", occupancy=0) is ReservationFailure.SLOT_UNAVAILABLE


def test_hold_rejects_overlap_on_same_resource(seed, coordinator):
    assert isinstance(coordinator.hold(seed.haircut_slot(TEN), "client-1"), HoldResult)

    overlapping = seed.haircut_slot(datetime(2030, 1, 8, 10, 30))
    assert coordinator.hold(overlapping, "client-2") is ReservationFailure.SLOT_UNAVAILABLE


def test_hold_rejects_overlap_with_blocked_slot(session_factory, seed, coordinator, config, clock):
    blocked_id = seed.haircut_slot(TEN)
    with session_factory() as db:
        ledger = SlotLedger(db, clock)
        ledger.ensure_slot(resolve_candidate(db, blocked_id, config, now=clock()))
        ledger.block(blocked_id, actor="admin")
        db.commit()

    assert coordinator.hold(blocked_id, "client-1") is ReservationFailure.SLOT_UNAVAILABLE
    assert coordinator.hold(seed.haircut_slot(datetime(2030, 1, 8, 10, 30)), "client-1") is ReservationFailure.SLOT_UNAVAILABLE
    assert coordinator.hold(seed.haircut_slot(datetime(2030, 1, 8, 9, 30)), "client-1") is ReservationFailure.SLOT_UNAVAILABLE
    assert isinstance(coordinator.hold(seed.haircut_slot(ELEVEN), "client-1"), HoldResult)

    with session_factory() as db:
        assert db.query(Bookings).count() == 1


def test_concurrent_overlapping_holds_admit_one(session_factory, seed, coordinator):
    half_past = datetime(2030, 1, 8, 10, 30)
    starts = [TEN, half_past, TEN, half_past]
    barrier = threading.Barrier(len(starts))

    def attempt(n):
        barrier.wait()
        return coordinator.hold(seed.haircut_slot(starts[n]), f"client-{n}")

    with ThreadPoolExecutor(max_workers=len(starts)) as pool:
        results = list(pool.map(attempt, range(len(starts))))

    assert len([r for r in results if isinstance(r, HoldResult)]) == 1
    with session_factory() as db:
        assert sum(slot.occupancy for slot in db.query(Slots).all()) == 1


# ── Contention ───────────────────────────────────────────────────────────


def test_capacity_one_has_exactly_one_winner(session_factory, seed, coordinator):
    slot_id = seed.haircut_slot(TEN)

    results = _concurrent_holds(coordinator, slot_id, 8)

    winners = [r for r in results if isinstance(r, HoldResult)]
    assert len(winners) == 1
    assert results.count(ReservationFailure.SLOT_UNAVAILABLE) == 7
    assert _slot(session_factory, slot_id).occupancy == 1

    with session_factory() as db:
        assert db.query(Bookings).count() == 1


def test_capacity_k_admits_k_holders(session_factory, seed, coordinator):
    slot_id = seed.class_slot(TEN)

    results = _concurrent_holds(coordinator, slot_id, 6)

    assert len([r for r in results if isinstance(r, HoldResult)]) == 3
    assert results.count(ReservationFailure.SLOT_UNAVAILABLE) == 3

    slot = _slot(session_factory, slot_id)
    assert slot.occupancy == slot.capacity_max == 3
    assert coordinator.hold(slot_id, "late") is ReservationFailure.SLOT_UNAVAILABLE


def test_group_size_counts_toward_capacity(session_factory, seed, coordinator):
    slot_id = seed.class_slot(TEN)

    assert coordinator.hold(slot_id, "family", occupancy=3) is ReservationFailure.SLOT_UNAVAILABLE
    assert isinstance(coordinator.hold(slot_id, "couple", occupancy=2), HoldResult)
    assert coordinator.hold(slot_id, "pair", occupancy=2) is ReservationFailure.SLOT_UNAVAILABLE
    assert isinstance(coordinator.hold(slot_id, "single"), HoldResult)

    assert _slot(session_factory, slot_id).occupancy == 3


# ── Group holds ──────────────────────────────────────────────────────────


def test_hold_group_shares_one_booking(session_factory, seed, coordinator):
    slot_ids = [seed.class_slot(ELEVEN), seed.class_slot(TEN)]

    held = coordinator.hold_group(slot_ids, "client-1")

    assert held.slot_ids == sorted(slot_ids)
    booking = coordinator.confirm(held.hold_id)
    assert booking.group_key
    assert booking.slot_ids == sorted(slot_ids)
    assert all(_slot(session_factory, s).state == SlotState.BOOKED.value for s in slot_ids)


def test_failed_group_hold_leaves_ledger_unchanged(session_factory, seed, coordinator):
    good = seed.class_slot(TEN)
    bad = seed.class_slot(datetime(2030, 1, 8, 20, 0))

    assert coordinator.hold_group([good, bad], "client-1") is ReservationFailure.SLOT_UNAVAILABLE

    assert _slot(session_factory, good) is None
    with session_factory() as db:
        assert db.query(Bookings).count() == 0
        assert db.query(ReservationHolds).count() == 0


# ── Cancel ───────────────────────────────────────────────────────────────


def _confirmed(coordinator, slot_id, requester="client-1"):
    held = coordinator.hold(slot_id, requester)
    return coordinator.confirm(held.hold_id)


def test_cancel_refund_and_idempotence(session_factory, seed, coordinator, clock):
    """Policy {≥48h: 100, ≥24h: 50, else 0}, cancelled 30 hours before start → 50%."""
    slot_id = seed.haircut_slot(datetime(2030, 1, 8, 12, 0))  # 30h after NOW
    booking = _confirmed(coordinator, slot_id)

    result = coordinator.cancel(booking.id, actor="client-1", reason="changed plans")

    assert isinstance(result, CancellationResult)
    assert result.refund_percent == 50
    assert result.refund_status == "pending"

    slot = _slot(session_factory, slot_id)
    assert (slot.state, slot.occupancy) == ("free", 0)
    version = slot.version

    assert coordinator.cancel(booking.id, actor="client-1") is ReservationFailure.ALREADY_CANCELLED
    slot = _slot(session_factory, slot_id)
    assert (slot.occupancy, slot.version) == (0, version)

    stored = coordinator.get_booking(booking.id)
    assert stored.status == BookingStatus.CANCELLED.value
    assert stored.cancel_reason == "changed plans"
    assert stored.cancelled_by == "client-1"
    assert stored.cancelled_at == clock()


def test_cancel_late_gives_no_refund(seed, coordinator, clock):
    booking = _confirmed(coordinator, seed.haircut_slot(TEN))
    clock.advance(hours=20)  # 8h before start

    result = coordinator.cancel(booking.id, actor="client-1")
    assert (result.refund_percent, result.refund_status) == (0, "none")


def test_cancel_respects_cutoff_and_start(session_factory, seed, coordinator, clock):
    with session_factory() as db:
        business = db.get(Businesses, seed.business_id)
        business.cancellation_policy = json.dumps({"cutoff_hours": 24, "rules": []})
        db.commit()

    booking = _confirmed(coordinator, seed.haircut_slot(TEN))  # 28h ahead
    clock.advance(hours=5)
    assert coordinator.cancel(booking.id, actor="client-1") is ReservationFailure.NOT_CANCELLABLE

    clock.advance(hours=30)
    assert coordinator.cancel(booking.id, actor="client-1") is ReservationFailure.NOT_CANCELLABLE
    assert _slot(session_factory, seed.haircut_slot(TEN)).occupancy == 1


def test_cancel_unknown_or_pending(seed, coordinator):
    assert coordinator.cancel(404, actor="admin") is ReservationFailure.NOT_FOUND

    held = coordinator.hold(seed.haircut_slot(TEN), "client-1")
    assert coordinator.cancel(held.booking_id, actor="client-1") is ReservationFailure.NOT_CANCELLABLE


def test_cancelled_shared_slot_keeps_other_booking(session_factory, seed, coordinator):
    slot_id = seed.class_slot(TEN)
    first = _confirmed(coordinator, slot_id, "client-1")
    _confirmed(coordinator, slot_id, "client-2")

    coordinator.cancel(first.id, actor="client-1")

    slot = _slot(session_factory, slot_id)
    assert (slot.state, slot.occupancy) == ("booked", 1)


# ── Release / expiry ─────────────────────────────────────────────────────


def test_release_hold_is_idempotent(session_factory, seed, coordinator):
    slot_id = seed.haircut_slot(TEN)
    held = coordinator.hold(slot_id, "client-1")

    released = coordinator.release_hold(held.hold_id)
    again = coordinator.release_hold(held.hold_id)

    assert released.status == again.status == BookingStatus.CANCELLED.value
    assert released.cancel_reason == "hold_released"
    assert _slot(session_factory, slot_id).occupancy == 0
    assert coordinator.release_hold("missing") is ReservationFailure.NOT_FOUND
    assert coordinator.confirm(held.hold_id) is ReservationFailure.NOT_FOUND


def test_expiry_sweep(session_factory, seed, coordinator, config, clock):
    """A 1-minute hold left unconfirmed is released by the sweep after that minute."""
    coordinator.config = replace(config, hold_ttl_minutes=1)
    slot_id = seed.haircut_slot(TEN)
    held = coordinator.hold(slot_id, "client-1")

    assert coordinator.expire_holds() == 0
    clock.advance(seconds=61)
    assert coordinator.expire_holds() == 1
    assert coordinator.expire_holds() == 0

    slot = _slot(session_factory, slot_id)
    assert (slot.state, slot.occupancy) == ("free", 0)

    booking = coordinator.get_booking(held.booking_id)
    assert booking.status == BookingStatus.CANCELLED.value
    assert booking.cancel_reason == "hold_expired"
    assert coordinator.confirm(held.hold_id) is ReservationFailure.HOLD_EXPIRED


def test_confirm_after_expiry_expires_the_hold(session_factory, seed, coordinator, clock):
    slot_id = seed.haircut_slot(TEN)
    held = coordinator.hold(slot_id, "client-1")
    clock.advance(minutes=11)

    assert coordinator.confirm(held.hold_id) is ReservationFailure.HOLD_EXPIRED

    assert _slot(session_factory, slot_id).occupancy == 0
    assert coordinator.get_booking(held.booking_id).cancel_reason == "hold_expired"
    assert coordinator.expire_holds() == 0


@pytest.mark.parametrize("hour", [9, 10, 11, 12, 13])
def test_sweep_racing_confirm_resolves_hold_once(session_factory, seed, coordinator, config, clock, hour):
    """The client confirms a second before expiry while the sweep runs at expiry."""
    slot_id = seed.haircut_slot(datetime(2030, 1, 8, hour, 0))
    held = coordinator.hold(slot_id, "client-1")

    client = ReservationCoordinator(
        session_factory, config=config, retry_attempts=3, retry_backoff=0.01,
        clock=lambda: held.expires_at - timedelta(seconds=1),
    )
    sweeper = ReservationCoordinator(
        session_factory, config=config, retry_attempts=3, retry_backoff=0.01,
        clock=lambda: held.expires_at,
    )
    barrier = threading.Barrier(2)

    def run(call):
        barrier.wait()
        return call()

    with ThreadPoolExecutor(max_workers=2) as pool:
        confirming = pool.submit(run, lambda: client.confirm(held.hold_id))
        sweeping = pool.submit(run, sweeper.expire_holds)
        confirmed, expired = confirming.result(), sweeping.result()

    assert isinstance(confirmed, BookingRead) != (expired == 1)

    booking = coordinator.get_booking(held.booking_id)
    slot = _slot(session_factory, slot_id)
    releases = [e for e in coordinator.slot_audit(slot_id) if e.occupancy_delta < 0]
    with session_factory() as db:
        hold_status = db.get(ReservationHolds, held.hold_id).status

    if isinstance(confirmed, BookingRead):
        assert expired == 0
        assert hold_status == HoldStatus.CONFIRMED.value
        assert booking.status == BookingStatus.CONFIRMED.value
        assert (slot.state, slot.occupancy) == ("booked", 1)
        assert releases == []
    else:
        assert confirmed is ReservationFailure.HOLD_EXPIRED
        assert hold_status == HoldStatus.EXPIRED.value
        assert booking.status == BookingStatus.CANCELLED.value
        assert booking.cancel_reason == "hold_expired"
        assert (slot.state, slot.occupancy) == ("free", 0)
        assert len(releases) == 1


def test_expired_capacity_can_be_held_again(seed, coordinator, clock):
    slot_id = seed.haircut_slot(TEN)
    coordinator.hold(slot_id, "client-1")
    clock.advance(minutes=15)
    coordinator.expire_holds()

    assert isinstance(coordinator.hold(slot_id, "client-2"), HoldResult)


# ── Terminal statuses ────────────────────────────────────────────────────


def test_complete_and_no_show(seed, coordinator):
    done = _confirmed(coordinator, seed.haircut_slot(TEN))
    missed = _confirmed(coordinator, seed.haircut_slot(ELEVEN), "client-2")

    assert coordinator.complete(done.id).status == BookingStatus.COMPLETED.value
    assert coordinator.mark_no_show(missed.id).status == BookingStatus.NO_SHOW.value

    assert coordinator.complete(done.id) is ReservationFailure.INVALID_TRANSITION
    assert coordinator.cancel(missed.id, actor="admin") is ReservationFailure.NOT_CANCELLABLE
    assert coordinator.complete(404) is ReservationFailure.NOT_FOUND


# ── Audit, events, storage ───────────────────────────────────────────────


def test_every_transition_is_audited(session_factory, seed, coordinator):
    slot_id = seed.haircut_slot(TEN)
    booking = _confirmed(coordinator, slot_id)
    coordinator.cancel(booking.id, actor="client-1")

    trail = coordinator.slot_audit(slot_id)

    assert [(e.from_state, e.to_state, e.occupancy_delta) for e in trail] == [
        ("free", "held", 1),
        ("held", "booked", 0),
        ("booked", "free", -1),
    ]
    assert [e.version for e in trail] == [1, 2, 3]
    assert trail[0].actor == "requester:client-1"

    slot = coordinator.get_slot(slot_id)
    assert (slot.state, slot.occupancy, slot.version) == ("free", 0, 3)
    assert coordinator.get_slot("missing") is None


def test_events_are_pushed_after_commit(session_factory, seed, config, clock):
    redis = fakeredis.FakeRedis(decode_responses=True)
    coordinator = ReservationCoordinator(session_factory, config=config, clock=clock, redis=redis)

    booking = _confirmed(coordinator, seed.haircut_slot(TEN))
    coordinator.cancel(booking.id, actor="client-1")
    assert coordinator.cancel(booking.id, actor="client-1") is ReservationFailure.ALREADY_CANCELLED

    events = [json.loads(raw) for raw in redis.lrange("events:p2p", 0, -1)]
    assert [e["type"] for e in events] == ["booking_confirmed", "booking_cancelled"]
    assert events[0]["booking_id"] == booking.id
    assert events[1]["refund_percent"] == 50


def test_storage_unavailable_after_bounded_retries(tmp_path, config, clock):
    # A directory cannot be opened as a database file
    engine = create_db_engine(f"sqlite:///{tmp_path}", busy_timeout=0.1)
    coordinator = ReservationCoordinator(
        create_session_factory(engine),
        config=config,
        clock=clock,
        retry_attempts=2,
        retry_backoff=0,
    )

    with pytest.raises(StorageUnavailable):
        coordinator.hold("1-1-1-203001081000", "client-1")
    engine.dispose()

# backend/reservations/services/ledger.py
"""
Slot ledger: the single source of truth for slot state.

Every mutation is one version-checked UPDATE:

    UPDATE slots
       SET state = :new, occupancy = occupancy + :delta, version = version + 1
     WHERE id = :id AND version = :expected AND state = :expected_state
       AND occupancy + :delta BETWEEN 0 AND capacity_max

Zero rows updated means someone else changed the slot first (or capacity is
exhausted) and nothing was written. Each successful transition appends a
slot_audit row in the same transaction.

The ledger works inside the caller's transaction; it never commits.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum

from sqlalchemy import Select, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..models import Resources, Services, SlotAudit, Slots
from ..schemas.slots import SlotCandidate
from ..statuses import SlotState
from ..timeutils import utcnow

logger = logging.getLogger(__name__)

# Re-reads allowed when a release/confirm races with another writer
MAX_REREADS = 5


class TransitionConflict(Enum):
    CONFLICT = "conflict"


CONFLICT = TransitionConflict.CONFLICT


@dataclass(frozen=True)
class BusyInterval:
    """Resource time taken by an occupied slot, buffers included."""
    slot_id: str
    start: datetime
    end: datetime


def resource_lock_statement(resource_ids) -> Select:
    return (
        select(Resources.id)
        .where(Resources.id.in_(sorted(set(resource_ids))))
        .order_by(Resources.id)
        .with_for_update()
    )


class SlotLedger:

    def __init__(self, db: Session, clock: Callable[[], datetime] = utcnow):
        self.db = db
        self.clock = clock

    # ── Read ─────────────────────────────────────────────────────────────

    def get_slot(self, slot_id: str) -> Slots | None:
        return self.db.get(Slots, slot_id, populate_existing=True)

    def busy_intervals(
        self,
        resource_id: int,
        start: datetime,
        end: datetime,
        exclude_slot_id: str | None = None,
    ) -> list[BusyInterval]:
        """
        Occupied or blocked slots of a resource whose buffered footprint
        overlaps [start, end).
        """
        # Buffers are bounded by a day; widen the SQL filter, refine in Python
        rows = (
            self.db.query(Slots, Services.buffer_before_min, Services.buffer_after_min)
            .join(Services, Slots.service_id == Services.id)
            .filter(
                Slots.resource_id == resource_id,
                or_(Slots.occupancy > 0, Slots.state == SlotState.BLOCKED.value),
                Slots.start_time < end + timedelta(days=1),
                Slots.end_time > start - timedelta(days=1),
            )
            .all()
        )

        result = []
        for slot, before, after in rows:
            if slot.id == exclude_slot_id:
                continue
            footprint_start = slot.start_time - timedelta(minutes=before or 0)
            footprint_end = slot.end_time + timedelta(minutes=after or 0)
            if footprint_start < end and footprint_end > start:
                result.append(BusyInterval(slot.id, footprint_start, footprint_end))
        return sorted(result, key=lambda b: b.start)

    def audit_trail(self, slot_id: str) -> list[SlotAudit]:
        return (
            self.db.query(SlotAudit)
            .filter(SlotAudit.slot_id == slot_id)
            .order_by(SlotAudit.id)
            .all()
        )

    # ── Write ────────────────────────────────────────────────────────────

    def lock_resources(self, resource_ids) -> list[int]:
        """
        Serialize writers on the given resources until the transaction ends.

        The overlap check reads other slot rows than the one it updates, so two
        holds on overlapping slots of one resource must not interleave. Rows are
        locked in id order. SQLite has no row locks; there BEGIN IMMEDIATE
        already serializes every writer.
        """
        return list(self.db.execute(resource_lock_statement(resource_ids)).scalars())

    def ensure_slot(self, candidate: SlotCandidate) -> Slots:
        """Materialize the ledger row for a candidate (free, version 0) if absent."""
        slot = self.get_slot(candidate.slot_id)
        if slot is not None:
            return slot

        now = self.clock()
        try:
            with self.db.begin_nested():
                self.db.add(Slots(
                    id=candidate.slot_id,
                    business_id=candidate.business_id,
                    resource_id=candidate.resource_id,
                    service_id=candidate.service_id,
                    start_time=candidate.start_time,
                    end_time=candidate.end_time,
                    capacity_max=candidate.capacity_max,
                    occupancy=0,
                    state=SlotState.FREE.value,
                    version=0,
                    created_at=now,
                    updated_at=now,
                ))
        except IntegrityError:
            # Materialized concurrently by another writer
            logger.info(f"Slot {candidate.slot_id} materialized concurrently")

        return self.get_slot(candidate.slot_id)

    def try_transition(
        self,
        slot_id: str,
        expected_state: SlotState | str,
        new_state: SlotState | str,
        occupancy_delta: int = 0,
        actor: str = "system",
        expected_version: int | None = None,
    ) -> Slots | TransitionConflict:
        """
        Atomically move a slot from expected_state to new_state and apply the
        occupancy delta.

        Returns:
            The updated slot, or CONFLICT when the slot changed since
            expected_version, is not in expected_state, or the delta would
            leave occupancy outside [0, capacity_max]. Nothing is written on
            CONFLICT.
        """
        expected_state = SlotState(expected_state).value
        new_state = SlotState(new_state).value

        if expected_version is None:
            current = self.get_slot(slot_id)
            if current is None:
                return CONFLICT
            expected_version = current.version

        now = self.clock()
        result = self.db.execute(
            update(Slots)
            .where(
                Slots.id == slot_id,
                Slots.version == expected_version,
                Slots.state == expected_state,
                Slots.occupancy + occupancy_delta >= 0,
                Slots.occupancy + occupancy_delta <= Slots.capacity_max,
            )
            .values(
                state=new_state,
                occupancy=Slots.occupancy + occupancy_delta,
                version=Slots.version + 1,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )

        if result.rowcount != 1:
            logger.warning(
                f"Slot {slot_id} transition {expected_state}→{new_state} "
                f"(delta={occupancy_delta:+d}, v{expected_version}) conflicted"
            )
            return CONFLICT

        self.db.add(SlotAudit(
            slot_id=slot_id,
            from_state=expected_state,
            to_state=new_state,
            occupancy_delta=occupancy_delta,
            version=expected_version + 1,
            actor=actor,
            created_at=now,
        ))
        self.db.flush()

        return self.get_slot(slot_id)

    def release(
        self,
        slot_id: str,
        occupancy_delta: int,
        actor: str = "system",
    ) -> Slots | TransitionConflict | None:
        """
        Give occupancy back. The slot returns to free once occupancy reaches zero.

        Returns:
            Updated slot, None if the slot does not exist, CONFLICT if the slot
            holds less occupancy than requested (double release).
        """
        for _ in range(MAX_REREADS):
            slot = self.get_slot(slot_id)
            if slot is None:
                return None
            if slot.occupancy < occupancy_delta:
                logger.error(
                    f"Slot {slot_id} release of {occupancy_delta} exceeds occupancy {slot.occupancy}"
                )
                return CONFLICT

            remaining = slot.occupancy - occupancy_delta
            new_state = SlotState.FREE if remaining == 0 else SlotState(slot.state)
            result = self.try_transition(
                slot_id,
                slot.state,
                new_state,
                -occupancy_delta,
                actor=actor,
                expected_version=slot.version,
            )
            if result is not CONFLICT:
                return result

        return CONFLICT

    def mark_booked(self, slot_id: str, actor: str = "system") -> Slots | TransitionConflict | None:
        """held → booked (booked stays booked); occupancy unchanged."""
        for _ in range(MAX_REREADS):
            slot = self.get_slot(slot_id)
            if slot is None:
                return None
            if slot.state not in (SlotState.HELD.value, SlotState.BOOKED.value):
                return CONFLICT
            result = self.try_transition(
                slot_id,
                slot.state,
                SlotState.BOOKED,
                0,
                actor=actor,
                expected_version=slot.version,
            )
            if result is not CONFLICT:
                return result

        return CONFLICT

    def block(self, slot_id: str, actor: str = "system") -> Slots | TransitionConflict:
        """free → blocked; occupied slots cannot be blocked."""
        return self.try_transition(slot_id, SlotState.FREE, SlotState.BLOCKED, 0, actor=actor)

    def unblock(self, slot_id: str, actor: str = "system") -> Slots | TransitionConflict:
        return self.try_transition(slot_id, SlotState.BLOCKED, SlotState.FREE, 0, actor=actor)

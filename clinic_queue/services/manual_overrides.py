"""
Manual Override Service

Staff-initiated reordering: swap two entries, boost one entry's priority,
or move one entry to an approximate position. Every override writes an
audit record with before/after snapshots.

Overrides only rewrite ordering inputs (``priority_score`` and
``start_time``). Positions and predictions are refreshed by the next
recalculation pass, which the caller runs afterwards.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from clinic_queue.config import (
    DEFAULT_PRIORITY_SCORE,
    PRIORITY_BOOST_DELTA,
    PRIORITY_RESPACE_STEP,
)
from clinic_queue.exceptions import InvalidStateError, NotFoundError, ValidationError
from clinic_queue.models.queue import (
    QueueActionType,
    QueueEntry,
    QueueMode,
    QueueOverride,
    SkipReason,
    snapshot_state,
)
from clinic_queue.services.locks import ClinicDateLock
from clinic_queue.services.queue_ordering import effective_priority, order_active
from clinic_queue.services.queue_store import QueueStore

logger = logging.getLogger(__name__)

SNAPSHOT_FIELDS = ['queue_position', 'priority_score', 'start_time']


class ManualOverrideService:

    def __init__(self, store: QueueStore, lock: Optional[Any] = None):
        self.store = store
        self.lock = lock or ClinicDateLock()

    async def _get(self, appointment_id: str) -> QueueEntry:
        entry = await self.store.get_by_id(appointment_id)
        if entry is None:
            raise NotFoundError("Appointment", appointment_id)
        return entry

    async def swap(
        self,
        appointment_a: str,
        appointment_b: str,
        reason: str,
        performed_by: str
    ) -> Tuple[QueueEntry, QueueEntry]:
        """
        Swap the queue places of two entries.

        Exchanges ``priority_score`` and the slot (``start_time``/``end_time``)
        so the swap holds in fluid and slotted mode alike. Swapping twice
        restores both entries.

        Raises:
            NotFoundError: Either entry does not exist
            ValidationError: Same entry twice, or entries of different clinics or dates
        """
        if appointment_a == appointment_b:
            raise ValidationError("Cannot swap an appointment with itself", field="appointment_b")

        a = await self._get(appointment_a)
        b = await self._get(appointment_b)
        if a.clinic_id != b.clinic_id:
            raise ValidationError("Cannot swap appointments from different clinics", field="clinic_id")
        if a.appointment_date != b.appointment_date:
            raise ValidationError("Cannot swap appointments from different dates", field="appointment_date")

        async with self.lock.acquire(a.clinic_id, a.appointment_date):
            a = await self._get(appointment_a)
            b = await self._get(appointment_b)
            updated_a = await self.store.update(a.id, {
                'priority_score': b.priority_score,
                'start_time': b.start_time,
                'end_time': b.end_time,
            })
            updated_b = await self.store.update(b.id, {
                'priority_score': a.priority_score,
                'start_time': a.start_time,
                'end_time': a.end_time,
            })
            if updated_a is None or updated_b is None:
                raise NotFoundError("Appointment", a.id if updated_a is None else b.id)

            await self._audit(a, updated_a, QueueActionType.SWAP, performed_by, reason, b.queue_position)
            await self._audit(b, updated_b, QueueActionType.SWAP, performed_by, reason, a.queue_position)

        logger.info(
            f"🔀 Swapped {a.id} (pos {a.queue_position}) and {b.id} (pos {b.queue_position}) "
            f"by {performed_by}"
        )
        return updated_a, updated_b

    async def boost_priority(self, appointment_id: str, reason: str, performed_by: str) -> QueueEntry:
        entry = await self._get(appointment_id)

        async with self.lock.acquire(entry.clinic_id, entry.appointment_date):
            entry = await self._get(appointment_id)
            new_priority = effective_priority(entry) + PRIORITY_BOOST_DELTA
            updated = await self.store.update(entry.id, {'priority_score': new_priority})
            if updated is None:
                raise NotFoundError("Appointment", entry.id)

            # New position is unknown until the next recalculation
            await self._audit(entry, updated, QueueActionType.PRIORITY_BOOST, performed_by, reason, None)

        logger.info(f"⬆️ Boosted {entry.id} priority to {new_priority} by {performed_by}")
        return updated

    async def manual_move(
        self,
        appointment_id: str,
        target_position: int,
        reason: str,
        performed_by: str
    ) -> QueueEntry:
        """
        Move an active entry to approximately ``target_position``.

        The entry gets a priority strictly between its would-be neighbours.
        In slotted mode its slot start moves between theirs as well; when
        both neighbours share a start the entry shares it too and priority
        breaks the tie. If the neighbours' priorities leave no room, the
        active queue is re-spaced in steps of ``PRIORITY_RESPACE_STEP``
        (order preserved) before interpolating. Targets beyond the tail
        place the entry last.

        Raises:
            ValidationError: ``target_position`` below 1
            InvalidStateError: Entry is not waiting in the queue
        """
        if target_position < 1:
            raise ValidationError("Target position must be 1 or greater", field="target_position")

        entry = await self._get(appointment_id)
        self._ensure_active(entry)

        async with self.lock.acquire(entry.clinic_id, entry.appointment_date):
            entry = await self._get(appointment_id)
            self._ensure_active(entry)
            entries = await self.store.get_by_clinic_date(entry.clinic_id, entry.appointment_date)
            mode = await self.store.get_queue_mode(entry.clinic_id, entry.appointment_date) or QueueMode.SLOTTED

            # Re-queued late arrivals always sort last; the mover joins the main order
            others = [e for e in order_active(entries, mode) if e.id != entry.id and not e.is_requeued]
            target = min(target_position, len(others) + 1)
            above = others[target - 2] if target >= 2 else None
            below = others[target - 1] if target - 1 < len(others) else None

            patch: Dict[str, Any] = {}
            if entry.is_requeued:
                patch['skip_reason'] = SkipReason.NONE

            if mode == QueueMode.SLOTTED:
                new_start, above, below = self._slot_for(above, below)
                if new_start is not None or entry.start_time is not None:
                    patch['start_time'] = new_start
                    if entry.start_time and entry.end_time and new_start:
                        patch['end_time'] = new_start + (entry.end_time - entry.start_time)

            priority = entry.priority_score
            if above is not None or below is not None:
                priority = self._interpolate(above, below)
                if priority is None:
                    priorities = await self._respace(others)
                    priority = self._interpolate(above, below, priorities)
                patch['priority_score'] = priority

            updated = await self.store.update(entry.id, patch)
            if updated is None:
                raise NotFoundError("Appointment", entry.id)

            await self._audit(entry, updated, QueueActionType.MANUAL_MOVE, performed_by, reason, target)

        logger.info(
            f"↕️ Moved {entry.id} from position {entry.queue_position} toward {target} "
            f"(priority {priority}) by {performed_by}"
        )
        return updated

    @staticmethod
    def _ensure_active(entry: QueueEntry) -> None:
        if not entry.is_active:
            raise InvalidStateError(
                f"Cannot move appointment in status '{entry.status.value}'",
                current_status=entry.status.value,
            )

    @staticmethod
    def _slot_for(
        above: Optional[QueueEntry],
        below: Optional[QueueEntry]
    ) -> Tuple[Optional[datetime], Optional[QueueEntry], Optional[QueueEntry]]:
        """
        Slot start for the moved entry, plus the neighbours whose priority
        still constrains it (only those sharing the chosen start).
        """
        if above is None and below is None:
            return None, None, None
        if above is None:
            return below.start_time, None, below
        if below is None:
            return above.start_time, above, None

        if above.start_time == below.start_time:
            return above.start_time, above, below
        if above.start_time is not None and below.start_time is not None:
            midpoint = above.start_time + (below.start_time - above.start_time) / 2
            return midpoint, None, None
        # Below has no slot: stay in the last timed group, behind ``above``
        return above.start_time, above, None

    @staticmethod
    def _interpolate(
        above: Optional[QueueEntry],
        below: Optional[QueueEntry],
        priorities: Optional[Dict[str, float]] = None
    ) -> Optional[float]:
        """A priority strictly below ``above`` and above ``below``; None if there is no room."""
        def priority_of(entry: QueueEntry) -> float:
            if priorities and entry.id in priorities:
                return priorities[entry.id]
            return effective_priority(entry)

        if above is None:
            return priority_of(below) + PRIORITY_RESPACE_STEP
        if below is None:
            return priority_of(above) - PRIORITY_RESPACE_STEP

        high, low = priority_of(above), priority_of(below)
        if high > low:
            return (high + low) / 2
        return None

    async def _respace(self, ordered: List[QueueEntry]) -> Dict[str, float]:
        """Rewrite priorities in strictly descending steps, keeping the current order."""
        count = len(ordered)
        priorities: Dict[str, float] = {}
        for index, entry in enumerate(ordered):
            priority = float(DEFAULT_PRIORITY_SCORE + (count - index) * PRIORITY_RESPACE_STEP)
            priorities[entry.id] = priority
            if entry.priority_score != priority:
                await self.store.update(entry.id, {'priority_score': priority})

        logger.info(f"Re-spaced priorities of {count} queue entries")
        return priorities

    async def _audit(
        self,
        before: QueueEntry,
        after: QueueEntry,
        action: QueueActionType,
        performed_by: str,
        reason: Optional[str],
        new_position: Optional[int]
    ) -> None:
        await self.store.append_override(QueueOverride(
            clinic_id=before.clinic_id,
            appointment_id=before.id,
            action_type=action,
            performed_by=performed_by,
            reason=reason,
            previous_position=before.queue_position,
            new_position=new_position,
            previous_state=snapshot_state(before, SNAPSHOT_FIELDS),
            new_state=snapshot_state(after, SNAPSHOT_FIELDS),
        ))

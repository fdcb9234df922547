"""
Queue Orchestrator

State machine for queue entries:

    scheduled -> checked_in -> in_progress -> completed
    scheduled | checked_in -> cancelled | no_show

At most one entry per clinic-date may be in progress. Every state change
runs under a per clinic-date lock, is planned against the recalculation
pass before it is written (an estimator failure aborts it with nothing
committed) and is announced on the event bus afterwards. Event delivery is
best-effort and never undoes a committed change.
"""

import logging
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional

from clinic_queue.config import ABSENT_GRACE_MINUTES, DEFAULT_APPOINTMENT_DURATION
from clinic_queue.exceptions import (
    BusinessRuleError,
    ConflictError,
    InvalidStateError,
    NotFoundError,
)
from clinic_queue.models.events import DomainEvent
from clinic_queue.models.queue import (
    AppointmentStatus,
    GapWindow,
    QueueActionType,
    QueueEntry,
    QueueOverride,
    QueueSummary,
    SkipReason,
    snapshot_state,
)
from clinic_queue.services.event_bus import EventBus, QueueEventFactory
from clinic_queue.services.locks import ClinicDateLock, LockLease
from clinic_queue.services.queue_ordering import next_queue_position, service_schedule
from clinic_queue.services.queue_store import QueueStore
from clinic_queue.services.recalculation import BacklogRecalculator

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS = {
    AppointmentStatus.SCHEDULED: {
        AppointmentStatus.CHECKED_IN,
        AppointmentStatus.IN_PROGRESS,
        AppointmentStatus.CANCELLED,
        AppointmentStatus.NO_SHOW,
    },
    AppointmentStatus.CHECKED_IN: {
        AppointmentStatus.WAITING,
        AppointmentStatus.IN_PROGRESS,
        AppointmentStatus.CANCELLED,
        AppointmentStatus.NO_SHOW,
    },
    AppointmentStatus.WAITING: {
        AppointmentStatus.IN_PROGRESS,
        AppointmentStatus.CANCELLED,
        AppointmentStatus.NO_SHOW,
    },
    AppointmentStatus.IN_PROGRESS: {
        AppointmentStatus.COMPLETED,
        AppointmentStatus.CANCELLED,
    },
}

AUDIT_FIELDS = ['status', 'queue_position', 'priority_score', 'is_present', 'skip_reason']


class QueueOrchestrator:
    """Primary service for queue state changes."""

    def __init__(
        self,
        store: QueueStore,
        event_bus: EventBus,
        recalculator: BacklogRecalculator,
        lock: Optional[Any] = None
    ):
        """
        Args:
            store: Queue entry store
            event_bus: Bus the domain events are published on
            recalculator: Backlog recalculation pass run after every change
            lock: ``ClinicDateLock`` or ``RedisClinicDateLock``; defaults to in-process
        """
        self.store = store
        self.event_bus = event_bus
        self.recalculator = recalculator
        self.lock = lock or ClinicDateLock()

    # ============================================
    # QUERIES
    # ============================================

    async def get_entry(self, appointment_id: str) -> QueueEntry:
        entry = await self.store.get_by_id(appointment_id)
        if entry is None:
            raise NotFoundError("Appointment", appointment_id)
        return entry

    async def get_queue(self, clinic_id: str, day: date) -> List[QueueEntry]:
        """In-progress entry first, then the active queue in service order."""
        entries = await self.store.get_by_clinic_date(clinic_id, day)
        mode = await self.recalculator.queue_mode(clinic_id, day)
        return service_schedule(entries, mode)

    async def get_queue_summary(self, clinic_id: str, day: date) -> QueueSummary:
        entries = await self.store.get_by_clinic_date(clinic_id, day)

        def count(status: AppointmentStatus) -> int:
            return sum(1 for e in entries if e.status == status)

        waits = [
            (e.actual_start_time - e.checked_in_at).total_seconds() / 60
            for e in entries
            if e.status == AppointmentStatus.COMPLETED and e.checked_in_at and e.actual_start_time
        ]

        return QueueSummary(
            clinic_id=clinic_id,
            appointment_date=day,
            total_appointments=len(entries),
            scheduled=count(AppointmentStatus.SCHEDULED),
            waiting=count(AppointmentStatus.CHECKED_IN) + count(AppointmentStatus.WAITING),
            in_progress=count(AppointmentStatus.IN_PROGRESS),
            completed=count(AppointmentStatus.COMPLETED),
            cancelled=count(AppointmentStatus.CANCELLED),
            no_show=count(AppointmentStatus.NO_SHOW),
            absent=sum(1 for e in entries if e.is_absent),
            current_queue_length=sum(1 for e in entries if e.is_active),
            average_wait_minutes=round(sum(waits) / len(waits)) if waits else 0,
        )

    async def recalculate(self, clinic_id: str, day: date) -> None:
        """Refresh positions and predictions, e.g. after manual overrides."""
        async with self.lock.acquire(clinic_id, day):
            await self.recalculator.recalculate(clinic_id, day)

    # ============================================
    # STATE CHANGES
    # ============================================

    async def check_in(self, appointment_id: str) -> QueueEntry:
        logger.info(f"Checking in appointment {appointment_id}")
        entry = await self.get_entry(appointment_id)

        async with self.lock.acquire(entry.clinic_id, entry.appointment_date) as lease:
            entry = await self.get_entry(appointment_id)
            if entry.status != AppointmentStatus.SCHEDULED:
                raise InvalidStateError(
                    f"Cannot check in appointment in status '{entry.status.value}'",
                    current_status=entry.status.value,
                )

            now = datetime.utcnow()
            updated = await self._commit(lease, entry, {
                'status': AppointmentStatus.CHECKED_IN,
                'checked_in_at': now,
                'is_present': True,
            })

        await self._publish(QueueEventFactory.patient_checked_in(updated))
        logger.info(f"✅ Checked in {appointment_id} at position {updated.queue_position}")
        return updated

    async def call_next(
        self,
        clinic_id: str,
        staff_id: str,
        day: date,
        performed_by: Optional[str] = None,
        skip_absent: bool = False
    ) -> QueueEntry:
        """
        Move the lowest-position active entry into service.

        Args:
            skip_absent: Prefer the first entry whose patient is present

        Raises:
            BusinessRuleError: Another entry is already in progress
            NotFoundError: Nobody is waiting
        """
        logger.info(f"Calling next patient for clinic {clinic_id} on {day} (staff {staff_id})")

        async with self.lock.acquire(clinic_id, day) as lease:
            entries = await self.store.get_by_clinic_date(clinic_id, day)
            self._ensure_nothing_in_progress(entries)

            mode = await self.recalculator.queue_mode(clinic_id, day)
            derived = {e.id: i for i, e in enumerate(service_schedule(entries, mode))}
            waiting = sorted(
                (e for e in entries if e.is_active),
                key=lambda e: (e.queue_position is None, e.queue_position or 0, derived[e.id]),
            )
            if not waiting:
                raise NotFoundError("Queue entry", message="No patients waiting in queue")

            chosen = waiting[0]
            if skip_absent:
                chosen = next((e for e in waiting if e.is_present), chosen)

            patch: Dict[str, Any] = {
                'status': AppointmentStatus.IN_PROGRESS,
                'actual_start_time': datetime.utcnow(),
            }
            if chosen.staff_id is None:
                patch['staff_id'] = staff_id

            updated = await self._commit(lease, chosen, patch)
            await self._audit(
                chosen, updated, QueueActionType.CALL_PRESENT, performed_by or staff_id,
                previous_position=chosen.queue_position,
                new_position=chosen.queue_position,
            )

        await self._publish(QueueEventFactory.patient_called(updated, staff_id))
        logger.info(f"📣 Called {updated.id} (position {chosen.queue_position})")
        return updated

    async def update_status(
        self,
        appointment_id: str,
        status: AppointmentStatus,
        performed_by: Optional[str] = None
    ) -> QueueEntry:
        """
        Direct status transition, used for completion, no-show and manual
        in-progress moves.

        Raises:
            InvalidStateError: Transition not allowed from the current status
            BusinessRuleError: Would put a second entry in progress
        """
        status = AppointmentStatus(status)
        if status == AppointmentStatus.CANCELLED:
            return await self.cancel(appointment_id, performed_by=performed_by)

        entry = await self.get_entry(appointment_id)

        async with self.lock.acquire(entry.clinic_id, entry.appointment_date) as lease:
            entry = await self.get_entry(appointment_id)
            self._ensure_transition(entry, status)

            now = datetime.utcnow()
            patch: Dict[str, Any] = {'status': status}
            freed_slot = None

            if status == AppointmentStatus.IN_PROGRESS:
                entries = await self.store.get_by_clinic_date(entry.clinic_id, entry.appointment_date)
                self._ensure_nothing_in_progress(entries)
                patch['actual_start_time'] = now
            elif status == AppointmentStatus.COMPLETED:
                patch['actual_end_time'] = now
                freed_slot = self._early_finish_window(entry, now)
            elif status == AppointmentStatus.NO_SHOW:
                freed_slot = self._slot_window(entry, now)
            elif status == AppointmentStatus.CHECKED_IN:
                patch.update({'checked_in_at': now, 'is_present': True})

            previous_status = entry.status
            updated = await self._commit(lease, entry, patch)

        await self._publish(QueueEventFactory.status_changed(updated, previous_status, freed_slot))
        logger.info(
            f"✅ Appointment {appointment_id}: {previous_status.value} -> {status.value}"
            f" by {performed_by or 'system'}"
        )
        return updated

    async def cancel(
        self,
        appointment_id: str,
        reason: Optional[str] = None,
        performed_by: Optional[str] = None
    ) -> QueueEntry:
        logger.info(f"Cancelling appointment {appointment_id}")
        entry = await self.get_entry(appointment_id)

        async with self.lock.acquire(entry.clinic_id, entry.appointment_date) as lease:
            entry = await self.get_entry(appointment_id)
            self._ensure_transition(entry, AppointmentStatus.CANCELLED)

            freed_slot = self._slot_window(entry, datetime.utcnow())
            updated = await self._commit(lease, entry, {
                'status': AppointmentStatus.CANCELLED,
                'cancellation_reason': reason,
            })

        await self._publish(QueueEventFactory.appointment_cancelled(updated, reason, freed_slot))
        logger.info(f"✅ Cancelled {appointment_id} by {performed_by or 'system'} ({reason or 'no reason'})")
        return updated

    async def mark_absent(
        self,
        appointment_id: str,
        performed_by: str,
        reason: Optional[str] = None,
        grace_period_minutes: int = ABSENT_GRACE_MINUTES
    ) -> QueueEntry:
        """
        Flag a called-for patient as not present.

        Raises:
            BusinessRuleError: Entry is terminal or already in service
            ConflictError: Entry is already marked absent
        """
        entry = await self.get_entry(appointment_id)

        async with self.lock.acquire(entry.clinic_id, entry.appointment_date) as lease:
            entry = await self.get_entry(appointment_id)
            if not entry.is_active:
                raise BusinessRuleError(
                    f"Cannot mark appointment in status '{entry.status.value}' as absent",
                    rule="absent_requires_active",
                )
            if entry.is_absent:
                raise ConflictError("Patient is already marked as absent")

            now = datetime.utcnow()
            updated = await self._commit(lease, entry, {
                'is_present': False,
                'skip_reason': SkipReason.PATIENT_ABSENT,
                'marked_absent_at': now,
                'returned_at': None,
                'original_queue_position': entry.queue_position,
                'skip_count': entry.skip_count + 1,
            })
            await self._audit(
                entry, updated, QueueActionType.MARK_ABSENT, performed_by,
                previous_position=entry.queue_position,
                reason=reason,
            )

        grace_period_ends_at = now + timedelta(minutes=grace_period_minutes)
        await self._publish(
            QueueEventFactory.patient_marked_absent(updated, performed_by, grace_period_ends_at)
        )
        logger.info(f"🚶 Marked {appointment_id} absent (grace until {grace_period_ends_at:%H:%M})")
        return updated

    async def mark_returned(self, appointment_id: str, performed_by: str) -> QueueEntry:
        """
        Late arrival after an absence: the patient goes to the back of the queue.

        Raises:
            BusinessRuleError: Entry has no open absence
        """
        entry = await self.get_entry(appointment_id)

        async with self.lock.acquire(entry.clinic_id, entry.appointment_date) as lease:
            entry = await self.get_entry(appointment_id)
            if not entry.is_absent or not entry.is_active:
                raise BusinessRuleError(
                    "Patient was not marked as absent or already returned",
                    rule="return_requires_absence",
                )

            entries = await self.store.get_by_clinic_date(entry.clinic_id, entry.appointment_date)
            tail = next_queue_position(e for e in entries if e.id != entry.id)

            now = datetime.utcnow()
            updated = await self._commit(lease, entry, {
                'is_present': True,
                'returned_at': now,
                'skip_reason': SkipReason.LATE_ARRIVAL,
                'status': AppointmentStatus.CHECKED_IN,
                'checked_in_at': entry.checked_in_at or now,
                'queue_position': tail,
            })
            await self._audit(
                entry, updated, QueueActionType.LATE_ARRIVAL, performed_by,
                previous_position=entry.queue_position,
                new_position=updated.queue_position,
                reason="Patient returned after being marked absent",
            )

        await self._publish(QueueEventFactory.patient_returned(updated, updated.queue_position))
        logger.info(f"↩️ {appointment_id} returned, re-queued at position {updated.queue_position}")
        return updated

    # ============================================
    # HELPERS
    # ============================================

    async def _commit(
        self,
        lease: LockLease,
        entry: QueueEntry,
        patch: Dict[str, Any]
    ) -> QueueEntry:
        """
        Plan the recalculation against the pending change, write the change
        conditionally on the status it was validated against, then apply
        the plan. Must be called with the clinic-date lock held; the lease is
        verified after planning, which may wait on a remote estimator.
        """
        projected = entry.model_copy(update=patch)
        plan = await self.recalculator.plan(
            entry.clinic_id, entry.appointment_date, pending={entry.id: projected}
        )
        await lease.verify()

        updated = await self.store.update(entry.id, patch, expected_status=entry.status)
        if updated is None:
            raise ConflictError(f"Appointment {entry.id} was modified concurrently")

        await self.recalculator.apply(plan)
        return updated.model_copy(update=plan.patches.get(entry.id, {}))

    async def _audit(
        self,
        before: QueueEntry,
        after: QueueEntry,
        action: QueueActionType,
        performed_by: str,
        previous_position: Optional[int] = None,
        new_position: Optional[int] = None,
        reason: Optional[str] = None
    ) -> None:
        await self.store.append_override(QueueOverride(
            clinic_id=before.clinic_id,
            appointment_id=before.id,
            action_type=action,
            performed_by=performed_by,
            reason=reason,
            previous_position=previous_position,
            new_position=new_position,
            previous_state=snapshot_state(before, AUDIT_FIELDS),
            new_state=snapshot_state(after, AUDIT_FIELDS),
        ))

    async def _publish(self, event: DomainEvent) -> None:
        try:
            await self.event_bus.publish(event)
        except Exception as e:
            logger.error(f"Failed to publish {event.event_type} ({event.event_id}): {e}", exc_info=True)

    @staticmethod
    def _ensure_transition(entry: QueueEntry, target: AppointmentStatus) -> None:
        if entry.is_terminal:
            raise InvalidStateError(
                f"Appointment {entry.id} is already {entry.status.value}",
                current_status=entry.status.value,
            )
        if target not in ALLOWED_TRANSITIONS.get(entry.status, set()):
            raise InvalidStateError(
                f"Cannot move appointment from '{entry.status.value}' to '{target.value}'",
                current_status=entry.status.value,
            )

    @staticmethod
    def _ensure_nothing_in_progress(entries: List[QueueEntry]) -> None:
        busy = next((e for e in entries if e.status == AppointmentStatus.IN_PROGRESS), None)
        if busy is not None:
            raise BusinessRuleError(
                f"Appointment {busy.id} is already in progress",
                rule="single_in_progress",
            )

    @staticmethod
    def _duration(entry: QueueEntry) -> timedelta:
        if entry.start_time and entry.end_time:
            return entry.end_time - entry.start_time
        return timedelta(minutes=entry.estimated_duration_minutes or DEFAULT_APPOINTMENT_DURATION)

    def _slot_window(self, entry: QueueEntry, now: datetime) -> Optional[GapWindow]:
        """Window released by a cancellation or no-show."""
        if entry.staff_id is None:
            return None
        start = entry.start_time or now
        return GapWindow(
            clinic_id=entry.clinic_id,
            staff_id=entry.staff_id,
            appointment_date=entry.appointment_date,
            start=start,
            end=entry.end_time or start + self._duration(entry),
            source_appointment_id=entry.id,
        )

    def _early_finish_window(self, entry: QueueEntry, now: datetime) -> Optional[GapWindow]:
        """Window released when service ends before its predicted end."""
        if entry.staff_id is None or entry.actual_start_time is None:
            return None
        predicted_end = entry.actual_start_time + self._duration(entry)
        if now >= predicted_end:
            return None
        return GapWindow(
            clinic_id=entry.clinic_id,
            staff_id=entry.staff_id,
            appointment_date=entry.appointment_date,
            start=now,
            end=predicted_end,
            source_appointment_id=entry.id,
        )

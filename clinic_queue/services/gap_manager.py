"""
Gap Manager

Fills a freed service window for a staff member:

1. Early-birds: a present patient booked later the same day is moved into
   the gap.
2. Waitlist: otherwise the best waiting candidate whose window fits is
   promoted into an appointment at the gap.
3. Nobody eligible: nothing happens. That is a normal outcome.

The orchestrator publishes freed slots on cancellation/status-change events;
``attach`` subscribes the manager to them.
"""

import logging
from typing import Any, Callable, List, Optional

from clinic_queue.config import GAP_FILLER_BONUS
from clinic_queue.exceptions import DependencyFailure, QueueError
from clinic_queue.models.events import DomainEvent, QueueEventType
from clinic_queue.models.queue import (
    GapFillOutcome,
    GapFillResult,
    GapWindow,
    QueueEntry,
    WaitlistEntry,
    WaitlistStatus,
)
from clinic_queue.services.event_bus import EventBus, QueueEventFactory
from clinic_queue.services.locks import ClinicDateLock
from clinic_queue.services.queue_ordering import effective_priority
from clinic_queue.services.queue_store import QueueStore
from clinic_queue.services.recalculation import BacklogRecalculator
from clinic_queue.services.waitlist_service import Waitlist

logger = logging.getLogger(__name__)

GAP_EVENT_TYPES = (
    QueueEventType.APPOINTMENT_CANCELLED,
    QueueEventType.APPOINTMENT_STATUS_CHANGED,
)


class GapManager:

    def __init__(
        self,
        store: QueueStore,
        waitlist: Waitlist,
        event_bus: EventBus,
        recalculator: Optional[BacklogRecalculator] = None,
        lock: Optional[Any] = None
    ):
        self.store = store
        self.waitlist = waitlist
        self.event_bus = event_bus
        self.recalculator = recalculator
        self.lock = lock or ClinicDateLock()

    def attach(self) -> List[Callable[[], None]]:
        """Subscribe to events that can carry a freed slot; returns the unsubscribers."""
        return [self.event_bus.subscribe(event_type, self.handle_event) for event_type in GAP_EVENT_TYPES]

    async def handle_event(self, event: DomainEvent) -> None:
        slot = event.payload.get("freed_slot")
        if not slot:
            return
        await self.fill_gap(GapWindow.model_validate(slot))

    async def fill_gap(self, gap: GapWindow) -> GapFillResult:
        logger.info(
            f"🕳️ Gap for staff {gap.staff_id} {gap.start:%H:%M}-{gap.end:%H:%M} "
            f"on {gap.appointment_date}"
        )

        async with self.lock.acquire(gap.clinic_id, gap.appointment_date):
            early_bird = await self.find_early_bird(gap)
            if early_bird is not None:
                result = await self._fill_with_early_bird(early_bird, gap)
                await self._recalculate(gap, result)
                return result

        # Waitlist promotion runs outside the lock
        candidate = await self.find_waitlist_candidate(gap)
        if candidate is None:
            logger.info(f"No early-bird or waitlist candidate for gap at {gap.start:%H:%M}")
            return GapFillResult(outcome=GapFillOutcome.NONE)

        result = await self._promote(candidate, gap)
        async with self.lock.acquire(gap.clinic_id, gap.appointment_date):
            await self._recalculate(gap, result)
        return result

    async def _recalculate(self, gap: GapWindow, result: GapFillResult) -> None:
        # Caller holds the clinic-date lock
        if result.outcome != GapFillOutcome.NONE and self.recalculator is not None:
            await self.recalculator.recalculate(gap.clinic_id, gap.appointment_date)

    async def find_early_bird(self, gap: GapWindow) -> Optional[QueueEntry]:
        """First present, not-yet-called patient booked after the gap start."""
        schedule = await self.store.get_daily_schedule(gap.staff_id, gap.appointment_date)
        candidates = [
            entry for entry in schedule
            if entry.is_active
            and entry.is_present
            and not entry.is_gap_filler
            and entry.start_time is not None
            and entry.start_time > gap.start
            and entry.id != gap.source_appointment_id
        ]
        if not candidates:
            return None

        candidates.sort(key=lambda e: (
            e.queue_position is None,
            e.queue_position or 0,
            e.start_time.timestamp(),
        ))
        return candidates[0]

    async def find_waitlist_candidate(self, gap: GapWindow) -> Optional[WaitlistEntry]:
        waitlist = await self.waitlist.get_clinic_waitlist(gap.clinic_id, gap.start)
        for candidate in waitlist:
            if candidate.status != WaitlistStatus.WAITING or candidate.promoted_appointment_id:
                continue
            if candidate.fits_window(gap.start, gap.end):
                return candidate
        return None

    async def _fill_with_early_bird(self, entry: QueueEntry, gap: GapWindow) -> GapFillResult:
        duration = (entry.end_time - entry.start_time) if entry.end_time else (gap.end - gap.start)
        patch = {
            'start_time': gap.start,
            'end_time': gap.start + duration,
            'is_gap_filler': True,
            'priority_score': effective_priority(entry) + GAP_FILLER_BONUS,
        }

        updated = await self.store.update(entry.id, patch, expected_status=entry.status)
        if updated is None:
            logger.info(f"Early-bird {entry.id} changed state before the gap fill, skipping")
            return GapFillResult(outcome=GapFillOutcome.NONE)

        logger.info(
            f"✅ Moved early-bird {entry.id} from {entry.start_time:%H:%M} to {gap.start:%H:%M}"
        )
        return GapFillResult(outcome=GapFillOutcome.EARLY_BIRD, appointment_id=entry.id)

    async def _promote(self, candidate: WaitlistEntry, gap: GapWindow) -> GapFillResult:
        try:
            appointment_id = await self.waitlist.promote_to_appointment(
                candidate.id, gap.staff_id, gap.start, gap.end
            )
        except Exception as e:
            logger.error(f"❌ Waitlist promotion failed for {candidate.id}: {e}", exc_info=True)
            await self.event_bus.publish(
                QueueEventFactory.booking_failed(candidate, gap.staff_id, str(e))
            )
            if isinstance(e, QueueError):
                raise
            raise DependencyFailure("waitlist", str(e), e) from e

        if appointment_id is None:
            # Already promoted by an earlier fill of this gap
            return GapFillResult(outcome=GapFillOutcome.NONE, waitlist_id=candidate.id)

        await self.event_bus.publish(
            QueueEventFactory.booking_created(candidate, appointment_id, gap.staff_id, gap.start, gap.end)
        )
        logger.info(f"✅ Promoted waitlist {candidate.id} into appointment {appointment_id}")
        return GapFillResult(
            outcome=GapFillOutcome.WAITLIST,
            appointment_id=appointment_id,
            waitlist_id=candidate.id,
        )

"""
Backlog recalculation.

Recomputes the derived order of a clinic-date, refreshes the cached
``queue_position`` of every active entry and stores the new predicted start
times. Planning is separate from applying so a caller can compute the plan
against a pending change, commit that change, and only then write the plan:
an estimator failure therefore never leaves a half-applied state change.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional

from clinic_queue.models.estimation import EstimationResult
from clinic_queue.models.queue import QueueEntry, QueueMode
from clinic_queue.services.estimation.service import WaitTimeEstimationService
from clinic_queue.services.queue_ordering import assign_positions, order_active, service_schedule
from clinic_queue.services.queue_store import QueueStore

logger = logging.getLogger(__name__)


@dataclass
class RecalculationPlan:
    clinic_id: str
    day: date
    mode: QueueMode
    schedule: List[QueueEntry]
    result: EstimationResult
    patches: Dict[str, Dict[str, Any]] = field(default_factory=dict)


class BacklogRecalculator:

    def __init__(self, store: QueueStore, estimation: WaitTimeEstimationService):
        self.store = store
        self.estimation = estimation

    async def queue_mode(self, clinic_id: str, day: date) -> QueueMode:
        # Undetermined mode is treated as slotted
        return await self.store.get_queue_mode(clinic_id, day) or QueueMode.SLOTTED

    async def plan(
        self,
        clinic_id: str,
        day: date,
        pending: Optional[Dict[str, QueueEntry]] = None,
        now: Optional[datetime] = None
    ) -> RecalculationPlan:
        """
        Compute positions and predictions for the clinic-date.

        Args:
            pending: Entries to substitute for their stored version, i.e. a
                state change that has not been written yet
            now: Reference time for predicted start times
        """
        now = now or datetime.utcnow()
        pending = pending or {}

        stored = await self.store.get_by_clinic_date(clinic_id, day)
        entries = [pending.get(entry.id, entry) for entry in stored]
        mode = await self.queue_mode(clinic_id, day)

        ordered = order_active(entries, mode)
        positions = assign_positions(ordered)
        schedule = service_schedule(entries, mode)

        result = await self.estimation.estimate_backlog(clinic_id, schedule, now)

        plan = RecalculationPlan(clinic_id=clinic_id, day=day, mode=mode, schedule=schedule, result=result)
        for entry in ordered:
            patch: Dict[str, Any] = {}
            if entry.queue_position != positions[entry.id]:
                patch['queue_position'] = positions[entry.id]

            prediction = result.for_appointment(entry.id)
            if prediction is not None:
                patch.update({
                    'estimated_wait_minutes': prediction.wait_time_minutes,
                    'predicted_start_time': now + timedelta(minutes=prediction.wait_time_minutes),
                    'prediction_mode': prediction.mode,
                    'prediction_confidence': prediction.confidence,
                    'eta_source': result.generator,
                    'eta_updated_at': now,
                })

            if patch:
                plan.patches[entry.id] = patch

        return plan

    async def apply(self, plan: RecalculationPlan) -> None:
        for appointment_id, patch in plan.patches.items():
            await self.store.update(appointment_id, patch)

        self.estimation.invalidate(list(plan.patches))
        logger.info(
            f"♻️ Recalculated {len(plan.patches)} entr{'y' if len(plan.patches) == 1 else 'ies'} "
            f"for clinic {plan.clinic_id} on {plan.day} ({plan.mode.value}, {plan.result.generator})"
        )

    async def recalculate(self, clinic_id: str, day: date) -> RecalculationPlan:
        """Plan and apply in one step, for callers with nothing pending."""
        plan = await self.plan(clinic_id, day)
        await self.apply(plan)
        return plan

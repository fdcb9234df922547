"""
Rule-Based Wait Time Estimator

Single-appointment estimate from business rules. Works without any
training data:

- patients ahead x average duration
- appointment-type multiplier
- time-of-day multiplier (mid-morning peak, post-lunch lull)
- rounded to the nearest 5 minutes
"""

import logging
import math
from typing import List, Optional

from clinic_queue.config import DEFAULT_APPOINTMENT_DURATION
from clinic_queue.models.estimation import (
    EstimationContext,
    EstimationResult,
    Explanation,
    ExplanationFactor,
    ImpactLevel,
    WaitTimePrediction,
)
from clinic_queue.models.queue import AppointmentStatus, QueueEntry
from clinic_queue.services.estimation.base import LocalEstimator, patients_ahead

logger = logging.getLogger(__name__)

TYPE_MULTIPLIERS = {
    "consultation": 1.0,
    "follow_up": 0.7,
    "checkup": 1.0,
    "procedure": 1.5,
    "vaccination": 0.5,
}

PEAK_HOURS = range(10, 13)         # 10:00-12:59
POST_LUNCH_HOURS = range(14, 16)   # 14:00-15:59
PEAK_MULTIPLIER = 1.2
POST_LUNCH_MULTIPLIER = 0.9


def round_to_nearest_five(minutes: float) -> int:
    # Half-up, not banker's rounding
    return int(math.floor(minutes / 5 + 0.5) * 5)


class RuleBasedEstimator(LocalEstimator):
    """Rule-based estimate for the target appointment(s) of a context."""

    name = "rule_based"
    generator = "rule-based-estimator"

    def compute(self, context: EstimationContext) -> EstimationResult:
        config = context.clinic_config
        predictions = []

        for index, entry in context.targets():
            ahead = patients_ahead(context.schedule, index)
            average_duration = (
                entry.estimated_duration_minutes
                or config.average_appointment_duration
                or DEFAULT_APPOINTMENT_DURATION
            )
            prediction = self._predict(entry, ahead, average_duration)
            logger.debug(
                f"Rule-based estimate for {entry.id}: {prediction.wait_time_minutes} min "
                f"({ahead} ahead, confidence {prediction.confidence})"
            )
            predictions.append(prediction)

        return EstimationResult(
            mode=self.name,
            predictions=predictions,
            generator=self.generator,
        )

    def _predict(self, entry: QueueEntry, ahead: int, average_duration: float) -> WaitTimePrediction:
        factors: List[ExplanationFactor] = []

        if entry.status == AppointmentStatus.IN_PROGRESS or entry.is_terminal:
            context = (
                "Currently being served"
                if entry.status == AppointmentStatus.IN_PROGRESS
                else f"Appointment status: {entry.status.value}"
            )
            return WaitTimePrediction(
                appointment_id=entry.id,
                clinic_id=entry.clinic_id,
                patient_id=entry.patient_id,
                wait_time_minutes=0,
                confidence=1.0,
                mode=self.name,
                explanation=Explanation(context=context),
                features={"status": entry.status.value},
            )

        estimate = ahead * average_duration
        factors.append(ExplanationFactor(
            factor=f"{ahead} patients ahead x {average_duration}min avg",
            impact=ImpactLevel.HIGH,
            value=ahead,
        ))

        type_multiplier = TYPE_MULTIPLIERS.get(entry.appointment_type.lower(), 1.0)
        if type_multiplier != 1.0:
            estimate *= type_multiplier
            factors.append(ExplanationFactor(
                factor=f"{entry.appointment_type} type adjustment (x{type_multiplier})",
                impact=ImpactLevel.MEDIUM,
                value=type_multiplier,
            ))

        hour_multiplier = self._hour_multiplier(entry)
        if hour_multiplier is not None:
            estimate *= hour_multiplier
            factors.append(ExplanationFactor(
                factor="Peak hours adjustment" if hour_multiplier > 1 else "Post-lunch lull adjustment",
                impact=ImpactLevel.LOW,
                value=hour_multiplier,
            ))

        wait = max(0, round_to_nearest_five(estimate))
        confidence = round(max(0.4, 1 - ahead * 0.05), 2)

        margin = round(wait * 0.2)
        context = (
            "You are next in line"
            if ahead == 0
            else f"Based on {ahead} patient(s) ahead with an average consultation time of {average_duration} minutes"
        )

        return WaitTimePrediction(
            appointment_id=entry.id,
            clinic_id=entry.clinic_id,
            patient_id=entry.patient_id,
            wait_time_minutes=wait,
            confidence=confidence,
            mode=self.name,
            explanation=Explanation.ranked(
                factors,
                context=context,
                confidence_interval=(max(0, wait - margin), wait + margin),
            ),
            features={
                "patients_ahead": ahead,
                "average_duration": average_duration,
                "appointment_type": entry.appointment_type,
                "type_multiplier": type_multiplier,
                "hour_multiplier": hour_multiplier or 1.0,
            },
        )

    @staticmethod
    def _hour_multiplier(entry: QueueEntry) -> Optional[float]:
        if entry.start_time is None:
            return None
        hour = entry.start_time.hour
        if hour in PEAK_HOURS:
            return PEAK_MULTIPLIER
        if hour in POST_LUNCH_HOURS:
            return POST_LUNCH_MULTIPLIER
        return None

"""Backlog-walking estimator."""

from datetime import datetime

from clinic_queue.config import DEFAULT_APPOINTMENT_DURATION
from clinic_queue.models.estimation import (
    EstimationContext,
    EstimationResult,
    Explanation,
    ExplanationFactor,
    ImpactLevel,
    WaitTimePrediction,
)
from clinic_queue.models.queue import AppointmentStatus, QueueEntry, SkipReason
from clinic_queue.services.estimation.base import LocalEstimator, patients_ahead


MIN_DURATION_MINUTES = 5
MIN_REMAINING_IN_PROGRESS = 2


class BasicWaitTimeEstimator(LocalEstimator):
    """
    Walks the backlog in service order accumulating remaining service time.

    Each entry waits for the backlog ahead of it plus the clinic's ETA buffer.
    Remaining time per entry is its duration, plus a full duration for an
    absent patient or half a duration for a late arrival. An in-progress
    entry contributes ``duration - elapsed``, never less than 2 minutes.
    """

    name = "basic"
    generator = "basic-estimator"
    CONFIDENCE = 0.6

    def compute(self, context: EstimationContext) -> EstimationResult:
        config = context.clinic_config
        default_duration = max(
            MIN_DURATION_MINUTES,
            config.average_appointment_duration or DEFAULT_APPOINTMENT_DURATION
        )
        targets = {entry.id for _, entry in context.targets()}

        predictions = []
        backlog_minutes = 0.0
        for index, entry in enumerate(context.schedule):
            if entry.id in targets:
                wait = max(0.0, backlog_minutes) + config.eta_buffer_minutes
                ahead = patients_ahead(context.schedule, index)
                predictions.append(WaitTimePrediction(
                    appointment_id=entry.id,
                    clinic_id=entry.clinic_id,
                    patient_id=entry.patient_id,
                    wait_time_minutes=max(0, round(wait)),
                    confidence=self.CONFIDENCE,
                    mode=self.name,
                    explanation=Explanation.ranked(
                        [
                            ExplanationFactor(
                                factor=f"Queue position: {ahead} patients ahead",
                                impact=ImpactLevel.HIGH,
                                value=ahead,
                            ),
                            ExplanationFactor(
                                factor="Remaining backlog",
                                impact=ImpactLevel.MEDIUM,
                                value=f"{round(backlog_minutes)} min",
                            ),
                            ExplanationFactor(
                                factor="ETA buffer",
                                impact=ImpactLevel.LOW,
                                value=f"{config.eta_buffer_minutes} min",
                            ),
                        ],
                        context="Estimate based on remaining service time ahead in the queue",
                    ),
                    features={
                        "patients_ahead": ahead,
                        "backlog_minutes": round(backlog_minutes, 2),
                        "eta_buffer_minutes": config.eta_buffer_minutes,
                        "default_duration": default_duration,
                    },
                ))

            backlog_minutes += self.remaining_minutes(entry, default_duration, context.current_time)

        return EstimationResult(
            mode=self.name,
            predictions=predictions,
            generator=self.generator,
        )

    @staticmethod
    def remaining_minutes(entry: QueueEntry, default_duration: float, now: datetime) -> float:
        duration = entry.estimated_duration_minutes or default_duration

        if entry.is_terminal:
            return 0.0

        if entry.status == AppointmentStatus.IN_PROGRESS and entry.actual_start_time:
            elapsed = (now - entry.actual_start_time).total_seconds() / 60
            return max(duration - elapsed, MIN_REMAINING_IN_PROGRESS)

        penalty = 0.0
        if entry.skip_reason == SkipReason.PATIENT_ABSENT:
            penalty += duration
        elif entry.skip_reason == SkipReason.LATE_ARRIVAL:
            penalty += duration * 0.5

        return duration + penalty

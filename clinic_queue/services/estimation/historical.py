"""
Historical Average Wait Time Estimator

Last-resort estimate from retrospective averages; always produces a value.
"""

from typing import Optional, Tuple

from clinic_queue.models.estimation import (
    EstimationContext,
    EstimationResult,
    Explanation,
    ExplanationFactor,
    HistoricalWaitStats,
    ImpactLevel,
    WaitTimePrediction,
)
from clinic_queue.models.queue import ClinicEstimationConfig, QueueEntry
from clinic_queue.services.estimation.base import LocalEstimator

DEFAULT_WAIT_MINUTES = 15


class HistoricalAverageEstimator(LocalEstimator):

    name = "historical_average"
    generator = "historical-average-estimator"
    CONFIDENCE = 0.5

    def compute(self, context: EstimationContext) -> EstimationResult:
        stats = context.historical_stats or HistoricalWaitStats()
        predictions = []

        for _, entry in context.targets():
            average, source = self.resolve_average(entry, stats, context.clinic_config)
            predictions.append(WaitTimePrediction(
                appointment_id=entry.id,
                clinic_id=entry.clinic_id,
                patient_id=entry.patient_id,
                wait_time_minutes=max(0, round(average)),
                confidence=self.CONFIDENCE,
                mode=self.name,
                explanation=Explanation(
                    top_factors=[ExplanationFactor(
                        factor="Historical average wait time",
                        impact=ImpactLevel.MEDIUM,
                        value=f"{round(average)} min",
                    )],
                    confidence_interval=(
                        max(5, round(average * 0.7)),
                        min(120, round(average * 1.5)),
                    ),
                    context="Estimate based on historical patterns. Less accurate than real-time estimates.",
                ),
                features={
                    "historical_average": average,
                    "source": source,
                    "sample_size": stats.sample_size,
                },
            ))

        return EstimationResult(
            mode=self.name,
            predictions=predictions,
            generator=self.generator,
        )

    @staticmethod
    def resolve_average(
        entry: QueueEntry,
        stats: HistoricalWaitStats,
        config: Optional[ClinicEstimationConfig]
    ) -> Tuple[float, str]:
        """First available of type, time-slot, general, clinic-configured, default."""
        by_type = stats.by_type.get(entry.appointment_type.lower())
        if by_type:
            return by_type, "type_specific"

        if entry.start_time is not None:
            by_hour = stats.by_hour.get(entry.start_time.hour)
            if by_hour:
                return by_hour, "time_slot_specific"

        if stats.average_wait_time:
            return stats.average_wait_time, "general"

        if config and config.average_appointment_duration:
            return float(config.average_appointment_duration), "clinic_config"

        return float(DEFAULT_WAIT_MINUTES), "default"

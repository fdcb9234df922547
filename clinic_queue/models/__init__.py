"""Data models for the clinic queue engine."""
from clinic_queue.models.queue import (
    AppointmentStatus,
    ClinicEstimationConfig,
    EstimationMode,
    GapFillOutcome,
    GapFillResult,
    GapWindow,
    QueueActionType,
    QueueEntry,
    QueueMode,
    QueueOverride,
    QueueSummary,
    SkipReason,
    WaitlistEntry,
    WaitlistStatus,
    WaitTimeFeatureSnapshot,
)
from clinic_queue.models.events import DomainEvent, QueueEventType
from clinic_queue.models.estimation import (
    EstimationContext,
    EstimationResult,
    Explanation,
    ExplanationFactor,
    HistoricalWaitStats,
    ImpactLevel,
    WaitTimePrediction,
)

__all__ = [
    "AppointmentStatus",
    "ClinicEstimationConfig",
    "DomainEvent",
    "EstimationContext",
    "EstimationMode",
    "EstimationResult",
    "GapFillOutcome",
    "GapFillResult",
    "GapWindow",
    "Explanation",
    "ExplanationFactor",
    "HistoricalWaitStats",
    "ImpactLevel",
    "QueueActionType",
    "QueueEntry",
    "QueueEventType",
    "QueueMode",
    "QueueOverride",
    "QueueSummary",
    "SkipReason",
    "WaitlistEntry",
    "WaitlistStatus",
    "WaitTimeFeatureSnapshot",
    "WaitTimePrediction",
]

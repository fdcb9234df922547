"""
Estimator interface.

Every strategy maps an ``EstimationContext`` to an ``EstimationResult``.
Local strategies are pure and CPU-bound: they subclass ``LocalEstimator``
and implement ``compute``. Strategies backed by a remote service implement
``estimate`` directly.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List

from clinic_queue.config import MIN_CONFIDENCE
from clinic_queue.models.estimation import (
    EstimationContext,
    EstimationResult,
    Explanation,
    ExplanationFactor,
    ImpactLevel,
)
from clinic_queue.models.queue import QueueEntry


class WaitTimeEstimator(ABC):
    """Base class for wait-time strategies."""

    name: str = "base"
    generator: str = "base-estimator"

    @property
    def min_confidence(self) -> float:
        return MIN_CONFIDENCE.get(self.name, 0.0)

    @abstractmethod
    async def estimate(self, context: EstimationContext) -> EstimationResult:
        """Predict wait times for the context's targets."""

    def is_acceptable(self, result: EstimationResult) -> bool:
        return result.confidence >= self.min_confidence

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(name={self.name!r})"


class LocalEstimator(WaitTimeEstimator):
    """In-process strategy; never suspends."""

    async def estimate(self, context: EstimationContext) -> EstimationResult:
        return self.compute(context)

    @abstractmethod
    def compute(self, context: EstimationContext) -> EstimationResult:
        ...


def patients_ahead(schedule: List[QueueEntry], index: int) -> int:
    """Active entries in front of ``schedule[index]``; the in-progress one is not counted."""
    return sum(1 for entry in schedule[:index] if entry.is_active)


# Model features that are worth surfacing to patients, by impact tier
FEATURE_PRIORITY = {
    "queue_position": ImpactLevel.HIGH,
    "current_delay": ImpactLevel.HIGH,
    "staff_utilization": ImpactLevel.HIGH,
    "queue_length": ImpactLevel.MEDIUM,
    "historical_avg_wait_time": ImpactLevel.MEDIUM,
    "hour_of_day": ImpactLevel.LOW,
    "day_of_week": ImpactLevel.LOW,
}

FEATURE_LABELS = {
    "queue_position": "Queue position",
    "current_delay": "Current clinic delay",
    "staff_utilization": "Staff utilization",
    "queue_length": "Queue length",
    "historical_avg_wait_time": "Historical average",
    "hour_of_day": "Time of day",
    "day_of_week": "Day of week",
}


def explain_features(features: Dict[str, Any], context: str) -> Explanation:
    """Top-3 explanation built from a model's feature map."""
    factors = [
        ExplanationFactor(
            factor=FEATURE_LABELS.get(key, key.replace("_", " ").title()),
            impact=FEATURE_PRIORITY[key],
            value=round(value) if isinstance(value, (int, float)) and not isinstance(value, bool) else value,
        )
        for key, value in features.items()
        if key in FEATURE_PRIORITY and value is not None
    ]
    return Explanation.ranked(factors, context=context)

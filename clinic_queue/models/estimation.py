"""
Pydantic models for wait-time estimation.
"""

from collections import defaultdict
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple

from pydantic import BaseModel, Field

from clinic_queue.models.queue import (
    AppointmentStatus,
    ClinicEstimationConfig,
    QueueEntry,
    WaitTimeFeatureSnapshot,
)


class ImpactLevel(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


IMPACT_RANK = {ImpactLevel.HIGH: 3, ImpactLevel.MEDIUM: 2, ImpactLevel.LOW: 1}


class ExplanationFactor(BaseModel):
    """One contributing factor of a prediction."""
    factor: str = Field(..., description="Human-readable factor name")
    impact: ImpactLevel = Field(..., description="Impact tier")
    value: Any = Field(None, description="Factor value for display")


class Explanation(BaseModel):
    """Ranked factors plus a context string."""
    top_factors: List[ExplanationFactor] = Field(default_factory=list)
    confidence_interval: Optional[Tuple[int, int]] = None
    context: str = ""

    @classmethod
    def ranked(
        cls,
        factors: Iterable[ExplanationFactor],
        context: str,
        confidence_interval: Optional[Tuple[int, int]] = None,
        limit: int = 3
    ) -> "Explanation":
        # sorted() is stable, so equal tiers keep insertion order
        ordered = sorted(factors, key=lambda f: IMPACT_RANK[f.impact], reverse=True)
        return cls(
            top_factors=ordered[:limit],
            confidence_interval=confidence_interval,
            context=context,
        )


class WaitTimePrediction(BaseModel):
    """Wait-time prediction for one appointment."""
    appointment_id: str
    clinic_id: str
    patient_id: str
    wait_time_minutes: int = Field(..., ge=0)
    confidence: float = Field(..., ge=0.0, le=1.0)
    mode: str
    explanation: Explanation = Field(default_factory=Explanation)
    features: Dict[str, Any] = Field(default_factory=dict)
    feature_hash: Optional[str] = None


class EstimationResult(BaseModel):
    """Output of one estimator run."""
    mode: str
    predictions: List[WaitTimePrediction]
    generator: str
    version: str = "1.0.0"
    generated_at: datetime = Field(default_factory=datetime.utcnow)
    notes: Optional[str] = None

    @property
    def confidence(self) -> float:
        """Lowest confidence among the predictions (1.0 when empty)."""
        if not self.predictions:
            return 1.0
        return min(p.confidence for p in self.predictions)

    def for_appointment(self, appointment_id: str) -> Optional[WaitTimePrediction]:
        for prediction in self.predictions:
            if prediction.appointment_id == appointment_id:
                return prediction
        return None


class HistoricalWaitStats(BaseModel):
    """Average waits computed from completed appointments."""
    average_wait_time: Optional[float] = None
    by_type: Dict[str, float] = Field(default_factory=dict)
    by_hour: Dict[int, float] = Field(default_factory=dict)
    sample_size: int = 0

    @classmethod
    def from_entries(cls, entries: Iterable[QueueEntry]) -> "HistoricalWaitStats":
        """
        Build averages from completed entries that have both a check-in and
        an actual start time.
        """
        waits: List[float] = []
        by_type: Dict[str, List[float]] = defaultdict(list)
        by_hour: Dict[int, List[float]] = defaultdict(list)

        for entry in entries:
            if entry.status != AppointmentStatus.COMPLETED:
                continue
            if not entry.checked_in_at or not entry.actual_start_time:
                continue
            wait = (entry.actual_start_time - entry.checked_in_at).total_seconds() / 60
            if wait < 0:
                continue
            waits.append(wait)
            by_type[entry.appointment_type.lower()].append(wait)
            if entry.start_time:
                by_hour[entry.start_time.hour].append(wait)

        if not waits:
            return cls()

        return cls(
            average_wait_time=round(sum(waits) / len(waits), 1),
            by_type={k: round(sum(v) / len(v), 1) for k, v in by_type.items()},
            by_hour={k: round(sum(v) / len(v), 1) for k, v in by_hour.items()},
            sample_size=len(waits),
        )


class EstimationContext(BaseModel):
    """Everything an estimator needs; estimators never touch the store."""
    clinic_config: ClinicEstimationConfig
    schedule: List[QueueEntry] = Field(default_factory=list, description="Backlog in service order")
    current_time: datetime = Field(default_factory=datetime.utcnow)
    historical_snapshots: List[WaitTimeFeatureSnapshot] = Field(default_factory=list)
    historical_stats: Optional[HistoricalWaitStats] = None
    target_appointment_id: Optional[str] = None

    def targets(self) -> List[Tuple[int, QueueEntry]]:
        """(index, entry) pairs to predict for: the target only, or the whole backlog."""
        pairs = list(enumerate(self.schedule))
        if self.target_appointment_id is None:
            return pairs
        return [(i, e) for i, e in pairs if e.id == self.target_appointment_id]

"""
Simulated ML Wait Time Estimator

Stand-in for a trained model: perturbs the basic backlog estimate with
deterministic, feature-driven adjustments so that downstream consumers see
ML-shaped output (confidence tied to historical coverage, feature maps,
feature hashes) before a real model is deployed.
"""

import hashlib
import json
import logging
from statistics import mean
from typing import Any, Dict, List, NamedTuple

from clinic_queue.config import ML_MODEL_VERSION, SNAPSHOT_SAMPLE_SIZE
from clinic_queue.models.estimation import EstimationContext, EstimationResult, WaitTimePrediction
from clinic_queue.models.queue import QueueEntry, SkipReason, WaitTimeFeatureSnapshot
from clinic_queue.services.estimation.base import LocalEstimator, explain_features, patients_ahead
from clinic_queue.services.estimation.basic import BasicWaitTimeEstimator

logger = logging.getLogger(__name__)

DEFAULT_AVG_WAIT = 10.0
DEFAULT_AVG_SERVICE = 15.0
MAX_DRIFT = 5.0


class HistoricalInsights(NamedTuple):
    average_wait_time: float
    average_service_duration: float
    wait_time_delta: float
    drift_score: float
    coverage_score: float


def aggregate_snapshots(snapshots: List[WaitTimeFeatureSnapshot]) -> HistoricalInsights:
    """Aggregate the most recent snapshots into the model's historical signals."""
    if not snapshots:
        return HistoricalInsights(DEFAULT_AVG_WAIT, DEFAULT_AVG_SERVICE, 0.0, 0.0, 0.0)

    sample = snapshots[:SNAPSHOT_SAMPLE_SIZE]
    waits = [s.label_wait_time for s in sample if s.label_wait_time is not None]
    services = [s.label_service_duration for s in sample if s.label_service_duration is not None]
    drifts = [s.drift_score for s in sample if s.drift_score is not None]

    avg_wait = mean(waits) if waits else DEFAULT_AVG_WAIT
    avg_service = mean(services) if services else DEFAULT_AVG_SERVICE

    return HistoricalInsights(
        average_wait_time=avg_wait,
        average_service_duration=avg_service,
        wait_time_delta=avg_wait - avg_service * 0.6,
        drift_score=min(MAX_DRIFT, mean(drifts)) if drifts else 0.0,
        coverage_score=min(1.0, len(sample) / SNAPSHOT_SAMPLE_SIZE),
    )


def id_jitter(appointment_id: str) -> float:
    """Deterministic jitter in [-2.5, 2.5] minutes derived from the id."""
    seed = sum(ord(char) for char in appointment_id)
    return ((seed % 11) - 5) * 0.5


def feature_hash(features: Dict[str, Any]) -> str:
    digest = hashlib.sha1(json.dumps(features, sort_keys=True, default=str).encode()).hexdigest()
    return f"ml_{digest[:16]}"


class SimulatedMlEstimator(LocalEstimator):

    name = "ml"
    generator = "simulated-ml-estimator"

    def __init__(self, baseline: BasicWaitTimeEstimator = None):
        self.baseline = baseline or BasicWaitTimeEstimator()

    def compute(self, context: EstimationContext) -> EstimationResult:
        baseline = self.baseline.compute(context)
        insights = aggregate_snapshots(context.historical_snapshots)
        queue_length = sum(1 for entry in context.schedule if entry.is_active)
        confidence = min(0.95, 0.7 + insights.coverage_score * 0.25)
        index_of = {entry.id: index for index, entry in enumerate(context.schedule)}

        predictions = []
        for base in baseline.predictions:
            index = index_of[base.appointment_id]
            entry = context.schedule[index]
            features = self.build_features(entry, index, queue_length, context, insights)
            adjustment = self._adjustment(entry, features, insights)
            wait = max(0.0, base.wait_time_minutes + adjustment + insights.wait_time_delta)

            predictions.append(WaitTimePrediction(
                appointment_id=entry.id,
                clinic_id=entry.clinic_id,
                patient_id=entry.patient_id,
                wait_time_minutes=round(wait),
                confidence=confidence,
                mode=self.name,
                explanation=explain_features(
                    features, "Simulated ML output based on historical signals"
                ),
                features=features,
                feature_hash=feature_hash(features),
            ))

        logger.debug(
            f"Simulated ML produced {len(predictions)} prediction(s) "
            f"(coverage {insights.coverage_score:.2f}, drift {insights.drift_score:.2f})"
        )

        return EstimationResult(
            mode=self.name,
            predictions=predictions,
            generator=self.generator,
            version=context.clinic_config.ml_model_version or ML_MODEL_VERSION,
            notes="Simulated ML output based on synthetic historical signals",
        )

    @staticmethod
    def build_features(
        entry: QueueEntry,
        index: int,
        queue_length: int,
        context: EstimationContext,
        insights: HistoricalInsights
    ) -> Dict[str, Any]:
        lateness = 0.0
        if entry.checked_in_at and entry.start_time:
            lateness = max(0.0, (entry.checked_in_at - entry.start_time).total_seconds() / 60)

        schedule_length = len(context.schedule)
        return {
            "appointment_type": entry.appointment_type,
            "queue_position": entry.queue_position,
            "patients_ahead": patients_ahead(context.schedule, index),
            "queue_length": queue_length,
            "total_appointments": schedule_length,
            "is_walk_in": not entry.is_present,
            "current_delay": round(lateness, 2),
            "staff_utilization": round(schedule_length / max(queue_length, 1), 2),
            "historical_avg_wait_time": round(insights.average_wait_time, 2),
            "historical_avg_duration": round(insights.average_service_duration, 2),
            "historical_coverage": insights.coverage_score,
            "hour_of_day": context.current_time.hour,
            "day_of_week": context.current_time.weekday(),
        }

    @staticmethod
    def _adjustment(entry: QueueEntry, features: Dict[str, Any], insights: HistoricalInsights) -> float:
        adjustment = id_jitter(entry.id)
        adjustment += features["queue_length"] * 0.3
        adjustment += features["current_delay"] * 0.2
        adjustment += insights.drift_score * 0.4

        if entry.skip_reason == SkipReason.PATIENT_ABSENT:
            adjustment += 5

        return adjustment / max(features["staff_utilization"], 1)

"""
External ML inference client.

``ExternalMlEstimator`` fulfils the same contract as the simulated estimator
but asks a hosted model for predictions. It never degrades silently: any
transport, status or payload problem is raised as ``EstimationFailure`` so
the caller can fall back.
"""

import logging
from typing import Any, Dict, List, Optional

import httpx
from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from clinic_queue.config import ML_MODEL_VERSION, ML_SERVICE_TIMEOUT, ML_SERVICE_URL
from clinic_queue.exceptions import EstimationFailure
from clinic_queue.models.estimation import EstimationContext, EstimationResult, WaitTimePrediction
from clinic_queue.services.estimation.base import WaitTimeEstimator, explain_features
from clinic_queue.services.estimation.simulated_ml import (
    SimulatedMlEstimator,
    aggregate_snapshots,
    feature_hash,
)

logger = logging.getLogger(__name__)


class RemotePrediction(BaseModel):
    """One prediction as returned by the inference service."""
    appointment_id: str
    wait_time_minutes: float = Field(..., ge=0)
    confidence: float = Field(..., ge=0.0, le=1.0)
    features: Dict[str, Any] = Field(default_factory=dict)


class RemotePredictionResponse(BaseModel):
    predictions: List[RemotePrediction]
    model_version: Optional[str] = None


class MlApiClient:
    """Thin async client for the wait-time model's ``/predict`` endpoint."""

    def __init__(
        self,
        base_url: Optional[str] = ML_SERVICE_URL,
        timeout: float = ML_SERVICE_TIMEOUT,
        http_client: Optional[httpx.AsyncClient] = None
    ):
        self.base_url = (base_url or "").rstrip("/")
        self.timeout = timeout
        self._http_client = http_client

    @property
    def configured(self) -> bool:
        return bool(self.base_url)

    async def predict(self, payload: Dict[str, Any]) -> RemotePredictionResponse:
        if not self.configured:
            raise EstimationFailure("ml", "ML service URL is not configured")

        url = f"{self.base_url}/predict"
        try:
            if self._http_client is not None:
                response = await self._http_client.post(url, json=payload, timeout=self.timeout)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(url, json=payload)
        except httpx.TimeoutException as e:
            logger.warning(f"ML service timed out after {self.timeout}s")
            raise EstimationFailure("ml", "inference service timed out") from e
        except httpx.HTTPError as e:
            logger.error(f"ML service request failed: {e}")
            raise EstimationFailure("ml", f"inference request failed: {e}") from e

        if response.status_code != 200:
            logger.error(f"ML service returned HTTP {response.status_code}")
            raise EstimationFailure("ml", f"inference service returned HTTP {response.status_code}")

        try:
            return RemotePredictionResponse.model_validate(response.json())
        except (ValueError, PydanticValidationError) as e:
            raise EstimationFailure("ml", f"malformed inference response: {e}") from e


class ExternalMlEstimator(WaitTimeEstimator):
    """ML-class strategy backed by the hosted model."""

    name = "ml"
    generator = "external-ml-estimator"

    def __init__(self, client: Optional[MlApiClient] = None):
        self.client = client or MlApiClient()

    async def estimate(self, context: EstimationContext) -> EstimationResult:
        insights = aggregate_snapshots(context.historical_snapshots)
        queue_length = sum(1 for entry in context.schedule if entry.is_active)
        targets = context.targets()

        payload = {
            "clinic_id": context.clinic_config.clinic_id,
            "model_version": context.clinic_config.ml_model_version or ML_MODEL_VERSION,
            "appointments": [
                {
                    "appointment_id": entry.id,
                    "features": SimulatedMlEstimator.build_features(
                        entry, index, queue_length, context, insights
                    ),
                }
                for index, entry in targets
            ],
        }

        response = await self.client.predict(payload)
        by_id = {p.appointment_id: p for p in response.predictions}

        predictions = []
        for _, entry in targets:
            remote = by_id.get(entry.id)
            if remote is None:
                raise EstimationFailure("ml", f"no prediction returned for appointment {entry.id}")

            predictions.append(WaitTimePrediction(
                appointment_id=entry.id,
                clinic_id=entry.clinic_id,
                patient_id=entry.patient_id,
                wait_time_minutes=round(remote.wait_time_minutes),
                confidence=remote.confidence,
                mode=self.name,
                explanation=explain_features(
                    remote.features, "Estimate based on ML model trained on historical data"
                ),
                features=remote.features,
                feature_hash=feature_hash(remote.features),
            ))

        return EstimationResult(
            mode=self.name,
            predictions=predictions,
            generator=self.generator,
            version=response.model_version or payload["model_version"],
        )

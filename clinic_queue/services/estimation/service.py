"""
Wait Time Estimation Service

Two entry points:

- ``estimate_backlog``: predictions for a clinic-date backlog, used by the
  recalculation pass. Runs the selector's strategy and retries once with
  its fallback when the strategy throws or reports sub-threshold confidence.
- ``estimate_wait_time``: one appointment, walking the chain
  ML (when enabled) -> rule-based -> historical average.

No path ever returns a fabricated default: when every strategy fails the
last ``EstimationFailure`` propagates.
"""

import logging
import time
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from clinic_queue.config import (
    DEFAULT_APPOINTMENT_DURATION,
    DEFAULT_ETA_BUFFER_MINUTES,
    SNAPSHOT_SAMPLE_SIZE,
)
from clinic_queue.exceptions import EstimationFailure, NotFoundError, ValidationError
from clinic_queue.models.estimation import (
    EstimationContext,
    EstimationResult,
    HistoricalWaitStats,
    WaitTimePrediction,
)
from clinic_queue.models.queue import ClinicEstimationConfig, EstimationMode, QueueEntry
from clinic_queue.services.estimation.base import WaitTimeEstimator
from clinic_queue.services.estimation.historical import HistoricalAverageEstimator
from clinic_queue.services.estimation.rule_based import RuleBasedEstimator
from clinic_queue.services.estimation.selector import EstimatorSelector
from clinic_queue.services.queue_ordering import service_schedule
from clinic_queue.services.queue_store import QueueStore

logger = logging.getLogger(__name__)


class WaitTimeEstimationService:
    """Builds estimation contexts from the store and runs strategies with fallback."""

    def __init__(
        self,
        store: QueueStore,
        selector: Optional[EstimatorSelector] = None,
        rule_based: Optional[WaitTimeEstimator] = None,
        historical: Optional[WaitTimeEstimator] = None,
        cache_ttl_seconds: float = 30.0
    ):
        self.store = store
        self.selector = selector or EstimatorSelector()
        self.rule_based = rule_based or RuleBasedEstimator()
        self.historical = historical or HistoricalAverageEstimator()
        self.cache_ttl_seconds = cache_ttl_seconds
        self._cache: Dict[str, Tuple[float, WaitTimePrediction]] = {}

    # ============================================
    # CONTEXT
    # ============================================

    async def load_config(self, clinic_id: str) -> ClinicEstimationConfig:
        config = await self.store.get_clinic_config(clinic_id)
        if config is None:
            logger.debug(f"No estimation config for clinic {clinic_id}, using defaults")
            config = ClinicEstimationConfig(
                clinic_id=clinic_id,
                average_appointment_duration=DEFAULT_APPOINTMENT_DURATION,
                eta_buffer_minutes=DEFAULT_ETA_BUFFER_MINUTES,
            )
        return config

    async def build_context(
        self,
        clinic_id: str,
        schedule: List[QueueEntry],
        current_time: Optional[datetime] = None,
        target_appointment_id: Optional[str] = None
    ) -> EstimationContext:
        config = await self.load_config(clinic_id)
        snapshots = await self.store.get_feature_snapshots(clinic_id, SNAPSHOT_SAMPLE_SIZE)
        completed = await self.store.get_recent_completed(clinic_id, SNAPSHOT_SAMPLE_SIZE)

        return EstimationContext(
            clinic_config=config,
            schedule=schedule,
            current_time=current_time or datetime.utcnow(),
            historical_snapshots=snapshots,
            historical_stats=HistoricalWaitStats.from_entries(completed),
            target_appointment_id=target_appointment_id,
        )

    # ============================================
    # BACKLOG
    # ============================================

    async def estimate_backlog(
        self,
        clinic_id: str,
        schedule: List[QueueEntry],
        current_time: Optional[datetime] = None
    ) -> EstimationResult:
        context = await self.build_context(clinic_id, schedule, current_time)
        primary = self.selector.get_estimator(context.clinic_config)
        return await self.run_with_fallback(primary, context)

    async def run_with_fallback(
        self,
        primary: WaitTimeEstimator,
        context: EstimationContext
    ) -> EstimationResult:
        """Run ``primary``; on failure or low confidence retry once with its fallback."""
        result = None
        try:
            result = await primary.estimate(context)
            if primary.is_acceptable(result):
                return result
            failure = EstimationFailure(
                primary.name,
                f"confidence {result.confidence:.2f} below {primary.min_confidence}",
                confidence=result.confidence,
            )
        except EstimationFailure as e:
            failure = e
        except Exception as e:
            logger.error(f"Estimator {primary.name} raised unexpectedly: {e}", exc_info=True)
            failure = EstimationFailure(primary.name, str(e))

        fallback = self.selector.get_fallback(primary.name)
        if fallback is primary:
            if result is not None:
                # Sub-threshold but genuine; the caller sees the real confidence
                logger.warning(f"⚠️ {failure} (no distinct fallback, returning advisory result)")
                return result
            raise failure

        logger.warning(f"⚠️ {failure}; falling back to {fallback.name}")
        try:
            fallback_result = await fallback.estimate(context)
        except EstimationFailure:
            raise
        except Exception as e:
            logger.error(f"Fallback estimator {fallback.name} raised: {e}", exc_info=True)
            raise EstimationFailure(fallback.name, str(e)) from e

        if not fallback.is_acceptable(fallback_result):
            raise EstimationFailure(
                fallback.name,
                f"confidence {fallback_result.confidence:.2f} below {fallback.min_confidence}",
                confidence=fallback_result.confidence,
            )
        return fallback_result

    # ============================================
    # SINGLE APPOINTMENT
    # ============================================

    async def estimate_wait_time(
        self,
        appointment_id: str,
        force_mode: Optional[str] = None,
        skip_ml: bool = False,
        bypass_cache: bool = False
    ) -> WaitTimePrediction:
        """
        Estimate the wait for one appointment.

        Args:
            appointment_id: Appointment to estimate for
            force_mode: Run exactly one strategy ('ml', 'rule_based',
                'historical_average' or 'basic'), no threshold applied
            skip_ml: Start the chain at the rule-based estimator
            bypass_cache: Ignore a cached result

        Raises:
            NotFoundError: Unknown appointment
            ValidationError: Unknown ``force_mode``
            EstimationFailure: Every strategy in the chain failed
        """
        if not bypass_cache and not force_mode:
            cached = self._cache.get(appointment_id)
            if cached and time.monotonic() - cached[0] < self.cache_ttl_seconds:
                logger.debug(f"Returning cached estimation for {appointment_id}")
                return cached[1]

        entry = await self.store.get_by_id(appointment_id)
        if entry is None:
            raise NotFoundError("Appointment", appointment_id)

        context = await self._single_context(entry)

        if force_mode:
            strategy = self._strategy_for(force_mode)
            result = await strategy.estimate(context)
            return self._prediction_from(result, strategy, entry.id)

        chain = self._chain(context.clinic_config, skip_ml)
        failure: Optional[EstimationFailure] = None

        for strategy in chain:
            try:
                result = await strategy.estimate(context)
                prediction = self._prediction_from(result, strategy, entry.id)
            except EstimationFailure as e:
                failure = e
                logger.warning(f"⚠️ {e}; trying next estimator")
                continue
            except Exception as e:
                logger.error(f"Estimator {strategy.name} raised unexpectedly: {e}", exc_info=True)
                failure = EstimationFailure(strategy.name, str(e))
                continue

            if prediction.confidence < strategy.min_confidence:
                failure = EstimationFailure(
                    strategy.name,
                    f"confidence {prediction.confidence:.2f} below {strategy.min_confidence}",
                    confidence=prediction.confidence,
                )
                logger.warning(f"⚠️ {failure}; trying next estimator")
                continue

            logger.info(
                f"Estimated {prediction.wait_time_minutes} min for {appointment_id} "
                f"via {strategy.name} (confidence {prediction.confidence})"
            )
            self._cache[appointment_id] = (time.monotonic(), prediction)
            return prediction

        raise failure or EstimationFailure("chain", "no estimator available")

    def invalidate(self, appointment_ids: Optional[List[str]] = None) -> None:
        """Drop cached single-appointment estimates (all when no ids given)."""
        if appointment_ids is None:
            self._cache.clear()
            return
        for appointment_id in appointment_ids:
            self._cache.pop(appointment_id, None)

    async def _single_context(self, entry: QueueEntry) -> EstimationContext:
        entries = await self.store.get_by_clinic_date(entry.clinic_id, entry.appointment_date)
        mode = await self.store.get_queue_mode(entry.clinic_id, entry.appointment_date)
        schedule = service_schedule(entries, mode)
        if all(e.id != entry.id for e in schedule):
            # Terminal entries are not in the backlog but still get an answer
            schedule.append(entry)
        return await self.build_context(entry.clinic_id, schedule, target_appointment_id=entry.id)

    def _chain(self, config: ClinicEstimationConfig, skip_ml: bool) -> List[WaitTimeEstimator]:
        chain: List[WaitTimeEstimator] = []
        if not skip_ml and config.ml_enabled and config.estimation_mode != EstimationMode.BASIC:
            chain.append(self.selector.ml)
        chain.extend([self.rule_based, self.historical])
        return chain

    def _strategy_for(self, mode: str) -> WaitTimeEstimator:
        strategies = {
            "ml": self.selector.ml,
            "basic": self.selector.basic,
            "rule_based": self.rule_based,
            "historical_average": self.historical,
        }
        if mode not in strategies:
            raise ValidationError(f"Unknown estimation mode: {mode}", field="force_mode")
        return strategies[mode]

    @staticmethod
    def _prediction_from(
        result: EstimationResult,
        strategy: WaitTimeEstimator,
        appointment_id: str
    ) -> WaitTimePrediction:
        prediction = result.for_appointment(appointment_id)
        if prediction is None:
            raise EstimationFailure(strategy.name, f"no prediction for appointment {appointment_id}")
        return prediction

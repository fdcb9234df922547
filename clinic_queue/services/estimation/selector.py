"""
Estimator selection.

Pure mapping from clinic configuration to a strategy; no I/O.
"""

from typing import Optional, Union

from clinic_queue.config import ML_SERVICE_URL
from clinic_queue.models.queue import ClinicEstimationConfig, EstimationMode
from clinic_queue.services.estimation.base import WaitTimeEstimator
from clinic_queue.services.estimation.basic import BasicWaitTimeEstimator
from clinic_queue.services.estimation.ml_client import ExternalMlEstimator
from clinic_queue.services.estimation.simulated_ml import SimulatedMlEstimator


class EstimatorSelector:
    """
    Chooses the strategy for a clinic and the fallback when it fails.

    Policy:
        ml + ml_enabled      -> ML-class
        hybrid + ml_enabled  -> ML-class
        anything else        -> basic

    Fallback for a failed ML-class run is the simulated ML estimator,
    for everything else the basic estimator.
    """

    def __init__(
        self,
        ml_estimator: Optional[WaitTimeEstimator] = None,
        basic_estimator: Optional[WaitTimeEstimator] = None,
        ml_fallback: Optional[WaitTimeEstimator] = None
    ):
        self.basic = basic_estimator or BasicWaitTimeEstimator()
        self.ml_fallback = ml_fallback or SimulatedMlEstimator()
        if ml_estimator is None:
            ml_estimator = ExternalMlEstimator() if ML_SERVICE_URL else self.ml_fallback
        self.ml = ml_estimator

    def get_estimator(self, config: ClinicEstimationConfig) -> WaitTimeEstimator:
        if config.estimation_mode == EstimationMode.ML and config.ml_enabled:
            return self.ml

        if config.estimation_mode == EstimationMode.HYBRID:
            return self.ml if config.ml_enabled else self.basic

        return self.basic

    def get_fallback(self, mode: Union[EstimationMode, str]) -> WaitTimeEstimator:
        # Accepts a configured mode or the name of the strategy that failed
        key = mode.value if isinstance(mode, EstimationMode) else str(mode)
        if key == EstimationMode.ML.value:
            return self.ml_fallback
        return self.basic

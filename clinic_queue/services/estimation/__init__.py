"""Wait-time estimation strategies, selector and service."""
from clinic_queue.services.estimation.base import LocalEstimator, WaitTimeEstimator
from clinic_queue.services.estimation.basic import BasicWaitTimeEstimator
from clinic_queue.services.estimation.historical import HistoricalAverageEstimator
from clinic_queue.services.estimation.ml_client import ExternalMlEstimator, MlApiClient
from clinic_queue.services.estimation.rule_based import RuleBasedEstimator
from clinic_queue.services.estimation.selector import EstimatorSelector
from clinic_queue.services.estimation.service import WaitTimeEstimationService
from clinic_queue.services.estimation.simulated_ml import SimulatedMlEstimator

__all__ = [
    "BasicWaitTimeEstimator",
    "EstimatorSelector",
    "ExternalMlEstimator",
    "HistoricalAverageEstimator",
    "LocalEstimator",
    "MlApiClient",
    "RuleBasedEstimator",
    "SimulatedMlEstimator",
    "WaitTimeEstimationService",
    "WaitTimeEstimator",
]

"""
Shared fixtures for the queue engine tests
"""

import pytest

from clinic_queue.services.estimation import EstimatorSelector, WaitTimeEstimationService
from clinic_queue.services.estimation.simulated_ml import SimulatedMlEstimator
from clinic_queue.services.event_bus import EventBus
from clinic_queue.services.gap_manager import GapManager
from clinic_queue.services.manual_overrides import ManualOverrideService
from clinic_queue.services.queue_orchestrator import QueueOrchestrator
from clinic_queue.services.recalculation import BacklogRecalculator

from tests.fixtures import InMemoryQueueStore, InMemoryWaitlist


@pytest.fixture
def store():
    return InMemoryQueueStore()


@pytest.fixture
def waitlist():
    return InMemoryWaitlist()


@pytest.fixture
def event_bus():
    return EventBus()


@pytest.fixture
def selector():
    # Never reach out to a real inference service from tests
    simulated = SimulatedMlEstimator()
    return EstimatorSelector(ml_estimator=simulated, ml_fallback=simulated)


@pytest.fixture
def estimation(store, selector):
    return WaitTimeEstimationService(store, selector=selector)


@pytest.fixture
def recalculator(store, estimation):
    return BacklogRecalculator(store, estimation)


@pytest.fixture
def orchestrator(store, event_bus, recalculator):
    return QueueOrchestrator(store, event_bus, recalculator)


@pytest.fixture
def overrides(store):
    return ManualOverrideService(store)


@pytest.fixture
def gap_manager(store, waitlist, event_bus, recalculator):
    manager = GapManager(store, waitlist, event_bus, recalculator)
    unsubscribers = manager.attach()
    yield manager
    for unsubscribe in unsubscribers:
        unsubscribe()

"""Queue services: orchestration, overrides, gap filling, events and estimation."""
from clinic_queue.services.engine_factory import QueueEngine, create_queue_engine
from clinic_queue.services.event_bus import EventBus, QueueEventFactory, RedisEventRelay
from clinic_queue.services.gap_manager import GapManager
from clinic_queue.services.manual_overrides import ManualOverrideService
from clinic_queue.services.queue_orchestrator import QueueOrchestrator
from clinic_queue.services.recalculation import BacklogRecalculator

__all__ = [
    "BacklogRecalculator",
    "EventBus",
    "GapManager",
    "ManualOverrideService",
    "QueueEngine",
    "QueueEventFactory",
    "QueueOrchestrator",
    "RedisEventRelay",
    "create_queue_engine",
]

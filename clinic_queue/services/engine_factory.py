"""
Engine Factory
Wires the queue store, estimation, event bus and services into one engine.
"""
import logging
from dataclasses import dataclass
from typing import Any, Callable, List, Optional

from clinic_queue.services.event_bus import EventBus, RedisEventRelay
from clinic_queue.services.estimation import EstimatorSelector, WaitTimeEstimationService
from clinic_queue.services.gap_manager import GapManager
from clinic_queue.services.locks import ClinicDateLock, RedisClinicDateLock
from clinic_queue.services.manual_overrides import ManualOverrideService
from clinic_queue.services.queue_orchestrator import QueueOrchestrator
from clinic_queue.services.queue_store import QueueStore, SupabaseQueueStore
from clinic_queue.services.recalculation import BacklogRecalculator
from clinic_queue.services.waitlist_service import SupabaseWaitlist, Waitlist

logger = logging.getLogger(__name__)


@dataclass
class QueueEngine:
    store: QueueStore
    event_bus: EventBus
    estimation: WaitTimeEstimationService
    recalculator: BacklogRecalculator
    orchestrator: QueueOrchestrator
    overrides: ManualOverrideService
    gap_manager: GapManager
    unsubscribers: List[Callable[[], None]]

    def close(self) -> None:
        """Detach every subscriber the engine registered."""
        for unsubscribe in self.unsubscribers:
            unsubscribe()
        self.unsubscribers = []


def create_queue_engine(
    store: Optional[QueueStore] = None,
    waitlist: Optional[Waitlist] = None,
    event_bus: Optional[EventBus] = None,
    selector: Optional[EstimatorSelector] = None,
    redis_client: Optional[Any] = None,
    relay_events: bool = False
) -> QueueEngine:
    """
    Build a ready-to-use engine.

    Store and waitlist default to the Supabase implementations. Passing a
    ``redis_client`` switches the clinic-date lock to Redis so several
    processes can share a queue; ``relay_events`` republishes queue events
    on the Redis channel.
    """
    if store is None or waitlist is None:
        from clinic_queue.database import get_healthcare_client

        client = get_healthcare_client()
        store = store or SupabaseQueueStore(client)
        waitlist = waitlist or SupabaseWaitlist(client)

    event_bus = event_bus or EventBus()
    lock = RedisClinicDateLock(redis_client) if redis_client is not None else ClinicDateLock()

    estimation = WaitTimeEstimationService(store, selector=selector)
    recalculator = BacklogRecalculator(store, estimation)
    orchestrator = QueueOrchestrator(store, event_bus, recalculator, lock=lock)
    overrides = ManualOverrideService(store, lock=lock)
    gap_manager = GapManager(store, waitlist, event_bus, recalculator, lock=lock)

    unsubscribers = gap_manager.attach()
    if relay_events:
        unsubscribers.extend(RedisEventRelay(redis_client).attach(event_bus))

    logger.info(f"Queue engine ready (lock={type(lock).__name__}, relay={relay_events})")
    return QueueEngine(
        store=store,
        event_bus=event_bus,
        estimation=estimation,
        recalculator=recalculator,
        orchestrator=orchestrator,
        overrides=overrides,
        gap_manager=gap_manager,
        unsubscribers=unsubscribers,
    )

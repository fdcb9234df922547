"""
Event Bus for queue domain events.

In-process pub/sub with per-subscriber isolation: every handler runs as its
own task, failures are logged and never reach sibling handlers or the
publisher. A bounded history buffer keeps the most recent events for local
debugging. ``RedisEventRelay`` forwards events to a Redis channel for
out-of-process consumers such as the notification worker.
"""

import asyncio
import inspect
import logging
import uuid
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Union

from redis import Redis

from clinic_queue.config import EVENT_HISTORY_SIZE, QUEUE_EVENTS_CHANNEL, get_redis_client
from clinic_queue.models.events import DomainEvent, QueueEventType
from clinic_queue.models.queue import AppointmentStatus, GapWindow, QueueEntry, WaitlistEntry

logger = logging.getLogger(__name__)

EventHandler = Callable[[DomainEvent], Union[None, Awaitable[None]]]


@dataclass
class Subscription:
    event_type: str
    handler: EventHandler
    id: str


class EventBus:
    """Local at-least-once pub/sub for domain events."""

    def __init__(self, history_size: int = EVENT_HISTORY_SIZE):
        self._subscriptions: Dict[str, List[Subscription]] = {}
        self._history: deque = deque(maxlen=history_size)

    def subscribe(self, event_type: str, handler: EventHandler) -> Callable[[], None]:
        """
        Subscribe a handler to an event type.

        Returns:
            A function that removes this subscription when called
        """
        subscription = Subscription(
            event_type=event_type,
            handler=handler,
            id=f"sub_{uuid.uuid4().hex[:12]}"
        )
        self._subscriptions.setdefault(event_type, []).append(subscription)

        def unsubscribe() -> None:
            self._unsubscribe(event_type, subscription.id)

        return unsubscribe

    def _unsubscribe(self, event_type: str, subscription_id: str) -> None:
        remaining = [
            sub for sub in self._subscriptions.get(event_type, [])
            if sub.id != subscription_id
        ]
        if remaining:
            self._subscriptions[event_type] = remaining
        else:
            self._subscriptions.pop(event_type, None)

    async def publish(self, event: DomainEvent) -> None:
        """Deliver an event to every subscriber of its type."""
        self._history.append(event)

        handlers = list(self._subscriptions.get(event.event_type, []))
        logger.info(
            f"Publishing event {event.event_type} ({event.event_id}) "
            f"to {len(handlers)} subscriber(s)"
        )

        if not handlers:
            return

        await asyncio.gather(*(self._dispatch(sub, event) for sub in handlers))

    async def _dispatch(self, subscription: Subscription, event: DomainEvent) -> None:
        try:
            result = subscription.handler(event)
            if inspect.isawaitable(result):
                await result
            logger.debug(
                f"Handler {subscription.id} processed {event.event_type} ({event.event_id})"
            )
        except Exception as e:
            logger.error(
                f"Event handler {subscription.id} failed for {event.event_type} "
                f"({event.event_id}): {e}",
                exc_info=True
            )

    def subscriber_count(self, event_type: str) -> int:
        return len(self._subscriptions.get(event_type, []))

    def get_history(self, limit: Optional[int] = None) -> List[DomainEvent]:
        """Recent events, oldest first."""
        events = list(self._history)
        return events[-limit:] if limit else events

    def clear_history(self) -> None:
        self._history.clear()

    def clear_subscriptions(self) -> None:
        self._subscriptions.clear()
        logger.info("All event subscriptions cleared")


class QueueEventFactory:
    """Builds the domain events the queue services publish."""

    @staticmethod
    def patient_checked_in(entry: QueueEntry) -> DomainEvent:
        return DomainEvent(
            event_type=QueueEventType.PATIENT_CHECKED_IN,
            user_id=entry.patient_id,
            clinic_id=entry.clinic_id,
            payload={
                "appointment_id": entry.id,
                "clinic_id": entry.clinic_id,
                "patient_id": entry.patient_id,
                "queue_position": entry.queue_position or 0,
            }
        )

    @staticmethod
    def patient_called(entry: QueueEntry, staff_id: str) -> DomainEvent:
        return DomainEvent(
            event_type=QueueEventType.PATIENT_CALLED,
            user_id=entry.patient_id,
            clinic_id=entry.clinic_id,
            payload={
                "appointment_id": entry.id,
                "clinic_id": entry.clinic_id,
                "patient_id": entry.patient_id,
                "staff_id": staff_id,
                "queue_position": entry.queue_position,
            }
        )

    @staticmethod
    def patient_marked_absent(
        entry: QueueEntry,
        performed_by: str,
        grace_period_ends_at: datetime
    ) -> DomainEvent:
        return DomainEvent(
            event_type=QueueEventType.PATIENT_MARKED_ABSENT,
            user_id=entry.patient_id,
            clinic_id=entry.clinic_id,
            payload={
                "appointment_id": entry.id,
                "performed_by": performed_by,
                "grace_period_ends_at": grace_period_ends_at.isoformat(),
            }
        )

    @staticmethod
    def patient_returned(entry: QueueEntry, new_position: int) -> DomainEvent:
        return DomainEvent(
            event_type=QueueEventType.PATIENT_RETURNED,
            user_id=entry.patient_id,
            clinic_id=entry.clinic_id,
            payload={
                "appointment_id": entry.id,
                "new_position": new_position,
            }
        )

    @staticmethod
    def status_changed(
        entry: QueueEntry,
        previous_status: AppointmentStatus,
        freed_slot: Optional[GapWindow] = None
    ) -> DomainEvent:
        return DomainEvent(
            event_type=QueueEventType.APPOINTMENT_STATUS_CHANGED,
            user_id=entry.patient_id,
            clinic_id=entry.clinic_id,
            payload={
                "appointment_id": entry.id,
                "previous_status": previous_status.value,
                "new_status": entry.status.value,
                "freed_slot": freed_slot.model_dump(mode="json") if freed_slot else None,
            }
        )

    @staticmethod
    def appointment_cancelled(
        entry: QueueEntry,
        reason: Optional[str],
        freed_slot: Optional[GapWindow] = None
    ) -> DomainEvent:
        return DomainEvent(
            event_type=QueueEventType.APPOINTMENT_CANCELLED,
            user_id=entry.patient_id,
            clinic_id=entry.clinic_id,
            payload={
                "appointment_id": entry.id,
                "reason": reason,
                "freed_slot": freed_slot.model_dump(mode="json") if freed_slot else None,
            }
        )

    @staticmethod
    def booking_created(
        waitlist_entry: WaitlistEntry,
        appointment_id: str,
        staff_id: str,
        start: datetime,
        end: datetime
    ) -> DomainEvent:
        return DomainEvent(
            event_type=QueueEventType.BOOKING_CREATED,
            user_id=waitlist_entry.patient_id,
            clinic_id=waitlist_entry.clinic_id,
            payload={
                "appointment_id": appointment_id,
                "waitlist_id": waitlist_entry.id,
                "staff_id": staff_id,
                "start_time": start.isoformat(),
                "end_time": end.isoformat(),
                "source": "gap_fill",
            }
        )

    @staticmethod
    def booking_failed(waitlist_entry: WaitlistEntry, staff_id: str, error: str) -> DomainEvent:
        return DomainEvent(
            event_type=QueueEventType.BOOKING_FAILED,
            user_id=waitlist_entry.patient_id,
            clinic_id=waitlist_entry.clinic_id,
            payload={
                "waitlist_id": waitlist_entry.id,
                "staff_id": staff_id,
                "error": error,
                "source": "gap_fill",
            }
        )


class RedisEventRelay:
    """Republish bus events as JSON on a Redis channel."""

    DEFAULT_EVENT_TYPES = (
        QueueEventType.PATIENT_CHECKED_IN,
        QueueEventType.PATIENT_CALLED,
        QueueEventType.BOOKING_CREATED,
        QueueEventType.BOOKING_FAILED,
    )

    def __init__(self, redis_client: Optional[Redis] = None, channel: str = QUEUE_EVENTS_CHANNEL):
        """
        Args:
            redis_client: Optional Redis client (creates new if not provided)
            channel: Pub/sub channel to publish on
        """
        self.redis = redis_client or get_redis_client()
        self.channel = channel

    def attach(
        self,
        bus: EventBus,
        event_types: Iterable[str] = DEFAULT_EVENT_TYPES
    ) -> List[Callable[[], None]]:
        """Subscribe the relay to ``event_types``; returns the unsubscribers."""
        return [bus.subscribe(event_type, self.relay) for event_type in event_types]

    async def relay(self, event: DomainEvent) -> Any:
        try:
            subscribers = self.redis.publish(self.channel, event.model_dump_json())
            logger.debug(f"📢 Relayed {event.event_type} to {subscribers} Redis subscriber(s)")
            return subscribers
        except Exception as e:
            logger.error(f"Failed to relay {event.event_type} to Redis: {e}")
            return None

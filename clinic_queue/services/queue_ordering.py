"""
Derived queue ordering.

Service order is recomputed from entry state on every pass; the stored
``queue_position`` is only a cache of the last computed order.

Fluid mode: priority descending, then arrival ascending.
Slotted mode: slot start ascending, then priority descending, then arrival.
In both modes entries re-queued after a late return sort behind everyone
else, in the order they came back.
"""

from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from clinic_queue.config import DEFAULT_PRIORITY_SCORE
from clinic_queue.models.queue import AppointmentStatus, QueueEntry, QueueMode


def effective_priority(entry: QueueEntry) -> float:
    if entry.priority_score is None:
        return float(DEFAULT_PRIORITY_SCORE)
    return float(entry.priority_score)


def _ts(value: Optional[datetime]) -> float:
    return value.timestamp() if value else 0.0


def sort_key(entry: QueueEntry, mode: QueueMode) -> Tuple:
    if entry.is_requeued:
        return (1, _ts(entry.returned_at))

    arrival = _ts(entry.created_at)
    if mode == QueueMode.FLUID:
        return (0, -effective_priority(entry), arrival)

    return (
        0,
        entry.start_time is None,
        _ts(entry.start_time),
        -effective_priority(entry),
        arrival,
    )


def order_active(entries: Iterable[QueueEntry], mode: Optional[QueueMode]) -> List[QueueEntry]:
    """Active entries (scheduled, checked in, waiting) in service order."""
    mode = mode or QueueMode.SLOTTED
    active = [e for e in entries if e.is_active]
    return sorted(active, key=lambda e: sort_key(e, mode))


def service_schedule(entries: Iterable[QueueEntry], mode: Optional[QueueMode]) -> List[QueueEntry]:
    """The backlog an estimator walks: the in-progress entry, then the active queue."""
    entries = list(entries)
    in_progress = [e for e in entries if e.status == AppointmentStatus.IN_PROGRESS]
    return in_progress + order_active(entries, mode)


def assign_positions(ordered: List[QueueEntry]) -> Dict[str, int]:
    """Contiguous 1-based positions for an already ordered active queue."""
    return {entry.id: index for index, entry in enumerate(ordered, start=1)}


def next_queue_position(entries: Iterable[QueueEntry]) -> int:
    positions = [e.queue_position for e in entries if e.is_active and e.queue_position is not None]
    return max(positions, default=0) + 1

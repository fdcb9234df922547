"""
Domain events published on the event bus.
"""

import uuid
from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class QueueEventType:
    """Event type names."""
    PATIENT_CHECKED_IN = "queue.patient_checked_in"
    PATIENT_CALLED = "queue.patient_called"
    PATIENT_MARKED_ABSENT = "queue.patient_marked_absent"
    PATIENT_RETURNED = "queue.patient_returned"
    APPOINTMENT_STATUS_CHANGED = "queue.appointment_status_changed"
    APPOINTMENT_CANCELLED = "queue.appointment_cancelled"
    BOOKING_CREATED = "booking.created"
    BOOKING_FAILED = "booking.failed"


def generate_event_id() -> str:
    return f"evt_{uuid.uuid4().hex}"


class DomainEvent(BaseModel):
    """Immutable event envelope."""

    model_config = ConfigDict(frozen=True)

    event_id: str = Field(default_factory=generate_event_id)
    event_type: str
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    user_id: Optional[str] = None
    clinic_id: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)

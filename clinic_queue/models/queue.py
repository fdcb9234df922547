"""
Pydantic models for the clinic queue.
"""

from datetime import date, datetime, time
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class AppointmentStatus(str, Enum):
    """Queue entry lifecycle states."""
    SCHEDULED = "scheduled"
    CHECKED_IN = "checked_in"
    WAITING = "waiting"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"


ACTIVE_STATUSES = frozenset({
    AppointmentStatus.SCHEDULED,
    AppointmentStatus.CHECKED_IN,
    AppointmentStatus.WAITING,
})

TERMINAL_STATUSES = frozenset({
    AppointmentStatus.COMPLETED,
    AppointmentStatus.CANCELLED,
    AppointmentStatus.NO_SHOW,
})


class SkipReason(str, Enum):
    """Why an entry was passed over."""
    PATIENT_ABSENT = "patient_absent"
    LATE_ARRIVAL = "late_arrival"
    NONE = "none"


class QueueMode(str, Enum):
    """How a clinic-date orders its queue."""
    FLUID = "fluid"
    SLOTTED = "slotted"


class EstimationMode(str, Enum):
    """Estimation mode configured per clinic."""
    BASIC = "basic"
    HYBRID = "hybrid"
    ML = "ml"


class QueueActionType(str, Enum):
    """Kinds of audited queue overrides."""
    SWAP = "swap"
    PRIORITY_BOOST = "priority_boost"
    MANUAL_MOVE = "manual_move"
    MARK_ABSENT = "mark_absent"
    CALL_PRESENT = "call_present"
    LATE_ARRIVAL = "late_arrival"


class WaitlistStatus(str, Enum):
    WAITING = "waiting"
    NOTIFIED = "notified"
    PROMOTED = "promoted"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class QueueEntry(BaseModel):
    """One patient's slot in a clinic's schedule for one date."""

    id: str = Field(..., description="Appointment identifier")
    clinic_id: str = Field(..., description="Clinic identifier")
    patient_id: str = Field(..., description="Patient identifier")
    staff_id: Optional[str] = Field(None, description="Assigned staff member")
    appointment_date: date = Field(..., description="Service date")
    appointment_type: str = Field("consultation", description="Appointment type")

    # Slot start/end, present only in slotted mode
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None

    status: AppointmentStatus = AppointmentStatus.SCHEDULED
    queue_position: Optional[int] = None
    original_queue_position: Optional[int] = None
    priority_score: Optional[float] = None

    is_present: bool = False
    marked_absent_at: Optional[datetime] = None
    returned_at: Optional[datetime] = None
    skip_count: int = 0
    skip_reason: SkipReason = SkipReason.NONE
    is_gap_filler: bool = False
    cancellation_reason: Optional[str] = None

    checked_in_at: Optional[datetime] = None
    actual_start_time: Optional[datetime] = None
    actual_end_time: Optional[datetime] = None

    estimated_duration_minutes: Optional[int] = None
    estimated_wait_minutes: Optional[int] = None
    predicted_start_time: Optional[datetime] = None
    prediction_mode: Optional[str] = None
    prediction_confidence: Optional[float] = None
    eta_source: Optional[str] = None
    eta_updated_at: Optional[datetime] = None

    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: Optional[datetime] = None

    @property
    def scheduled_time(self) -> Optional[time]:
        return self.start_time.time() if self.start_time else None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_absent(self) -> bool:
        """Marked absent and not yet returned."""
        return self.marked_absent_at is not None and self.returned_at is None

    @property
    def is_requeued(self) -> bool:
        """Returned after an absence and sent to the back of the queue."""
        return self.returned_at is not None and self.skip_reason == SkipReason.LATE_ARRIVAL


class ClinicEstimationConfig(BaseModel):
    """Per-clinic estimation parameters."""

    clinic_id: Optional[str] = None
    estimation_mode: EstimationMode = EstimationMode.BASIC
    ml_enabled: bool = False
    ml_model_version: Optional[str] = None
    average_appointment_duration: int = 15
    eta_buffer_minutes: int = 10
    buffer_time: int = 10


class WaitTimeFeatureSnapshot(BaseModel):
    """Historical record used as read-only estimator input."""

    model_config = ConfigDict(frozen=True)

    clinic_id: Optional[str] = None
    label_wait_time: Optional[float] = None
    label_service_duration: Optional[float] = None
    drift_score: Optional[float] = None
    features: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None


class QueueOverride(BaseModel):
    """Append-only audit record of a staff override."""

    model_config = ConfigDict(frozen=True)

    clinic_id: str
    appointment_id: str
    action_type: QueueActionType
    performed_by: str
    reason: Optional[str] = None
    previous_position: Optional[int] = None
    new_position: Optional[int] = None
    previous_state: Dict[str, Any] = Field(default_factory=dict)
    new_state: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=datetime.utcnow)


class WaitlistEntry(BaseModel):
    """A patient waiting for a freed slot."""

    id: str
    clinic_id: str
    patient_id: Optional[str] = None
    requested_date: date
    priority_score: float = 0
    status: WaitlistStatus = WaitlistStatus.WAITING
    earliest_time: Optional[time] = None
    latest_time: Optional[time] = None
    promoted_appointment_id: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)

    def fits_window(self, start: datetime, end: datetime) -> bool:
        """Whether the patient accepts a slot between ``start`` and ``end``."""
        if self.earliest_time and start.time() < self.earliest_time:
            return False
        if self.latest_time and end.time() > self.latest_time:
            return False
        return True


class GapWindow(BaseModel):
    """A service window freed by a cancellation, no-show or early finish."""

    clinic_id: str
    staff_id: str
    appointment_date: date
    start: datetime
    end: datetime
    source_appointment_id: Optional[str] = None


class GapFillOutcome(str, Enum):
    EARLY_BIRD = "early_bird"
    WAITLIST = "waitlist"
    NONE = "none"


class GapFillResult(BaseModel):
    outcome: GapFillOutcome
    appointment_id: Optional[str] = None
    waitlist_id: Optional[str] = None


class QueueSummary(BaseModel):
    """Queue counters for one clinic-date."""

    clinic_id: str
    appointment_date: date
    total_appointments: int
    scheduled: int
    waiting: int
    in_progress: int
    completed: int
    cancelled: int
    no_show: int
    absent: int
    current_queue_length: int
    average_wait_minutes: int


def snapshot_state(entry: QueueEntry, fields: List[str]) -> Dict[str, Any]:
    """Capture a JSON-friendly subset of an entry for audit records."""
    return entry.model_dump(mode="json", include=set(fields))

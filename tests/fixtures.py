"""
Test fixtures for the clinic queue engine
"""

from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional

from clinic_queue.models.queue import (
    AppointmentStatus,
    ClinicEstimationConfig,
    QueueEntry,
    QueueMode,
    QueueOverride,
    WaitlistEntry,
    WaitlistStatus,
    WaitTimeFeatureSnapshot,
)

# Sample test data
TEST_CLINIC_ID = 'clinic-001'
TEST_STAFF_ID = 'staff-001'
TEST_DAY = date(2025, 3, 10)
BASE_TIME = datetime(2025, 3, 10, 8, 0)


def create_test_entry(entry_id: str, index: int = 0, **kwargs) -> QueueEntry:
    """Create a queue entry; ``index`` spaces arrival times one minute apart"""
    data: Dict[str, Any] = {
        'id': entry_id,
        'clinic_id': TEST_CLINIC_ID,
        'patient_id': f'patient-{entry_id}',
        'staff_id': TEST_STAFF_ID,
        'appointment_date': TEST_DAY,
        'created_at': BASE_TIME + timedelta(minutes=index),
    }
    data.update(kwargs)
    return QueueEntry(**data)


def create_slotted_entry(entry_id: str, index: int, start_hour: int, start_minute: int = 0, **kwargs) -> QueueEntry:
    """Create an entry with a 15 minute slot"""
    start = datetime(2025, 3, 10, start_hour, start_minute)
    kwargs.setdefault('start_time', start)
    kwargs.setdefault('end_time', start + timedelta(minutes=15))
    return create_test_entry(entry_id, index, **kwargs)


def create_waitlist_entry(waitlist_id: str, **kwargs) -> WaitlistEntry:
    data: Dict[str, Any] = {
        'id': waitlist_id,
        'clinic_id': TEST_CLINIC_ID,
        'patient_id': f'patient-{waitlist_id}',
        'requested_date': TEST_DAY,
        'priority_score': 10,
        'created_at': BASE_TIME,
    }
    data.update(kwargs)
    return WaitlistEntry(**data)


class InMemoryQueueStore:
    """QueueStore kept in dictionaries, with the conditional-update semantics of the real one"""

    def __init__(self, entries: Optional[List[QueueEntry]] = None):
        self.entries: Dict[str, QueueEntry] = {e.id: e for e in entries or []}
        self.overrides: List[QueueOverride] = []
        self.configs: Dict[str, ClinicEstimationConfig] = {}
        self.modes: Dict[tuple, QueueMode] = {}
        self.snapshots: Dict[str, List[WaitTimeFeatureSnapshot]] = {}
        self.update_calls: List[tuple] = []

    def add(self, *entries: QueueEntry) -> None:
        for entry in entries:
            self.entries[entry.id] = entry

    def set_mode(self, clinic_id: str, day: date, mode: QueueMode) -> None:
        self.modes[(clinic_id, day)] = mode

    def active(self, clinic_id: str = TEST_CLINIC_ID) -> List[QueueEntry]:
        return sorted(
            (e for e in self.entries.values() if e.clinic_id == clinic_id and e.is_active),
            key=lambda e: e.queue_position or 0,
        )

    async def get_by_id(self, appointment_id: str) -> Optional[QueueEntry]:
        return self.entries.get(appointment_id)

    async def get_by_clinic_date(self, clinic_id: str, day: date) -> List[QueueEntry]:
        rows = [e for e in self.entries.values() if e.clinic_id == clinic_id and e.appointment_date == day]
        return sorted(rows, key=lambda e: (e.queue_position is None, e.queue_position or 0))

    async def update(
        self,
        appointment_id: str,
        patch: Dict[str, Any],
        expected_status: Optional[AppointmentStatus] = None
    ) -> Optional[QueueEntry]:
        self.update_calls.append((appointment_id, dict(patch), expected_status))
        current = self.entries.get(appointment_id)
        if current is None:
            return None
        if expected_status is not None and current.status != expected_status:
            return None
        updated = current.model_copy(update={**patch, 'updated_at': datetime.utcnow()})
        self.entries[appointment_id] = updated
        return updated

    async def append_override(self, record: QueueOverride) -> None:
        self.overrides.append(record)

    async def get_daily_schedule(self, staff_id: str, day: date) -> List[QueueEntry]:
        rows = [e for e in self.entries.values() if e.staff_id == staff_id and e.appointment_date == day]
        return sorted(rows, key=lambda e: (e.start_time is None, e.start_time or BASE_TIME))

    async def get_clinic_config(self, clinic_id: str) -> Optional[ClinicEstimationConfig]:
        return self.configs.get(clinic_id)

    async def get_queue_mode(self, clinic_id: str, day: date) -> Optional[QueueMode]:
        return self.modes.get((clinic_id, day))

    async def get_feature_snapshots(self, clinic_id: str, limit: int) -> List[WaitTimeFeatureSnapshot]:
        return self.snapshots.get(clinic_id, [])[:limit]

    async def get_recent_completed(self, clinic_id: str, limit: int) -> List[QueueEntry]:
        rows = [
            e for e in self.entries.values()
            if e.clinic_id == clinic_id and e.status == AppointmentStatus.COMPLETED
        ]
        return rows[:limit]


class InMemoryWaitlist:
    """Waitlist whose promotion succeeds at most once per entry"""

    def __init__(self, entries: Optional[List[WaitlistEntry]] = None):
        self.entries: Dict[str, WaitlistEntry] = {e.id: e for e in entries or []}
        self.promotions: List[Dict[str, Any]] = []
        self.fail_with: Optional[Exception] = None

    async def get_clinic_waitlist(self, clinic_id: str, window_start: datetime) -> List[WaitlistEntry]:
        rows = [
            e for e in self.entries.values()
            if e.clinic_id == clinic_id and e.requested_date == window_start.date()
        ]
        return sorted(rows, key=lambda e: (-e.priority_score, e.created_at))

    async def promote_to_appointment(
        self,
        waitlist_id: str,
        staff_id: str,
        start: datetime,
        end: datetime
    ) -> Optional[str]:
        if self.fail_with is not None:
            raise self.fail_with

        entry = self.entries[waitlist_id]
        if entry.status != WaitlistStatus.WAITING:
            return None

        appointment_id = f'appt-{waitlist_id}'
        self.entries[waitlist_id] = entry.model_copy(update={
            'status': WaitlistStatus.PROMOTED,
            'promoted_appointment_id': appointment_id,
        })
        self.promotions.append({
            'waitlist_id': waitlist_id,
            'appointment_id': appointment_id,
            'staff_id': staff_id,
            'start': start,
            'end': end,
        })
        return appointment_id

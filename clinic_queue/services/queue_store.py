"""
Queue Entry Store

``QueueStore`` is the contract the queue services depend on. Persistence is
owned by the surrounding platform; ``SupabaseQueueStore`` is the adapter for
the healthcare schema. Client errors are wrapped in ``DependencyFailure``.
"""

import logging
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol

from supabase import Client

from clinic_queue.exceptions import DependencyFailure
from clinic_queue.models.queue import (
    AppointmentStatus,
    ClinicEstimationConfig,
    QueueEntry,
    QueueMode,
    QueueOverride,
    WaitTimeFeatureSnapshot,
)

logger = logging.getLogger(__name__)


class QueueStore(Protocol):
    """Async persistence boundary for queue entries and their audit trail."""

    async def get_by_id(self, appointment_id: str) -> Optional[QueueEntry]: ...

    async def get_by_clinic_date(self, clinic_id: str, day: date) -> List[QueueEntry]:
        """All entries of the clinic-date, ordered by queue position."""
        ...

    async def update(
        self,
        appointment_id: str,
        patch: Dict[str, Any],
        expected_status: Optional[AppointmentStatus] = None
    ) -> Optional[QueueEntry]:
        """
        Apply ``patch``; when ``expected_status`` is given the write only
        happens if the stored status still matches. Returns None when no
        row was written.
        """
        ...

    async def append_override(self, record: QueueOverride) -> None: ...

    async def get_daily_schedule(self, staff_id: str, day: date) -> List[QueueEntry]: ...

    async def get_clinic_config(self, clinic_id: str) -> Optional[ClinicEstimationConfig]: ...

    async def get_queue_mode(self, clinic_id: str, day: date) -> Optional[QueueMode]: ...

    async def get_feature_snapshots(self, clinic_id: str, limit: int) -> List[WaitTimeFeatureSnapshot]: ...

    async def get_recent_completed(self, clinic_id: str, limit: int) -> List[QueueEntry]: ...


def serialize_patch(patch: Dict[str, Any]) -> Dict[str, Any]:
    """Convert a patch to JSON-compatible column values."""
    record = {}
    for key, value in patch.items():
        if isinstance(value, (datetime, date)):
            record[key] = value.isoformat()
        elif isinstance(value, Enum):
            record[key] = value.value
        else:
            record[key] = value
    return record


class SupabaseQueueStore:
    """QueueStore backed by the ``healthcare`` Supabase schema."""

    APPOINTMENTS = 'appointments'
    OVERRIDES = 'queue_overrides'
    CONFIG = 'clinic_estimation_config'
    SNAPSHOTS = 'wait_time_feature_snapshots'

    def __init__(self, supabase_client: Client):
        self.supabase = supabase_client

    def _table(self, name: str):
        # Client comes from database.get_healthcare_client(), already schema-bound
        return self.supabase.table(name)

    async def get_by_id(self, appointment_id: str) -> Optional[QueueEntry]:
        try:
            result = self._table(self.APPOINTMENTS).select('*').eq(
                'id', appointment_id
            ).limit(1).execute()
        except Exception as e:
            logger.error(f"Failed to load appointment {appointment_id}: {e}", exc_info=True)
            raise DependencyFailure("queue_store", str(e), e) from e

        if not result.data:
            return None
        return QueueEntry.model_validate(result.data[0])

    async def get_by_clinic_date(self, clinic_id: str, day: date) -> List[QueueEntry]:
        try:
            result = self._table(self.APPOINTMENTS).select('*').eq(
                'clinic_id', clinic_id
            ).eq(
                'appointment_date', day.isoformat()
            ).order('queue_position', nullsfirst=False).execute()
        except Exception as e:
            logger.error(f"Failed to load queue for {clinic_id} on {day}: {e}", exc_info=True)
            raise DependencyFailure("queue_store", str(e), e) from e

        return [QueueEntry.model_validate(row) for row in result.data or []]

    async def update(
        self,
        appointment_id: str,
        patch: Dict[str, Any],
        expected_status: Optional[AppointmentStatus] = None
    ) -> Optional[QueueEntry]:
        record = serialize_patch({**patch, 'updated_at': datetime.utcnow()})
        try:
            query = self._table(self.APPOINTMENTS).update(record).eq('id', appointment_id)
            if expected_status is not None:
                query = query.eq('status', expected_status.value)
            result = query.execute()
        except Exception as e:
            logger.error(f"Failed to update appointment {appointment_id}: {e}", exc_info=True)
            raise DependencyFailure("queue_store", str(e), e) from e

        if not result.data:
            return None
        return QueueEntry.model_validate(result.data[0])

    async def append_override(self, record: QueueOverride) -> None:
        try:
            self._table(self.OVERRIDES).insert(record.model_dump(mode="json")).execute()
        except Exception as e:
            logger.error(f"Failed to write queue override for {record.appointment_id}: {e}", exc_info=True)
            raise DependencyFailure("queue_store", str(e), e) from e

    async def get_daily_schedule(self, staff_id: str, day: date) -> List[QueueEntry]:
        try:
            result = self.supabase.rpc('get_daily_schedule', {
                'p_staff_id': staff_id,
                'p_target_date': day.isoformat(),
            }).execute()
        except Exception as e:
            logger.error(f"Failed to load daily schedule for staff {staff_id}: {e}", exc_info=True)
            raise DependencyFailure("queue_store", str(e), e) from e

        return [QueueEntry.model_validate(row) for row in result.data or []]

    async def get_clinic_config(self, clinic_id: str) -> Optional[ClinicEstimationConfig]:
        try:
            result = self._table(self.CONFIG).select('*').eq(
                'clinic_id', clinic_id
            ).limit(1).execute()
        except Exception as e:
            raise DependencyFailure("queue_store", str(e), e) from e

        if not result.data:
            return None
        return ClinicEstimationConfig.model_validate(result.data[0])

    async def get_queue_mode(self, clinic_id: str, day: date) -> Optional[QueueMode]:
        try:
            result = self.supabase.rpc('get_queue_mode_for_date', {
                'p_clinic_id': clinic_id,
                'p_date': day.isoformat(),
            }).execute()
        except Exception as e:
            raise DependencyFailure("queue_store", str(e), e) from e

        if not result.data:
            return None
        return QueueMode(result.data)

    async def get_feature_snapshots(self, clinic_id: str, limit: int) -> List[WaitTimeFeatureSnapshot]:
        try:
            result = self._table(self.SNAPSHOTS).select('*').eq(
                'clinic_id', clinic_id
            ).order('created_at', desc=True).limit(limit).execute()
        except Exception as e:
            raise DependencyFailure("queue_store", str(e), e) from e

        return [WaitTimeFeatureSnapshot.model_validate(row) for row in result.data or []]

    async def get_recent_completed(self, clinic_id: str, limit: int) -> List[QueueEntry]:
        try:
            result = self._table(self.APPOINTMENTS).select('*').eq(
                'clinic_id', clinic_id
            ).eq(
                'status', AppointmentStatus.COMPLETED.value
            ).order('actual_end_time', desc=True).limit(limit).execute()
        except Exception as e:
            raise DependencyFailure("queue_store", str(e), e) from e

        return [QueueEntry.model_validate(row) for row in result.data or []]

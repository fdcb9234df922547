"""
Waitlist Service

Selection and promotion contract for the clinic waitlist. Storage belongs to
the platform; ``SupabaseWaitlist`` is the adapter for the healthcare schema.
Promotion is guarded by a conditional update on ``status = 'waiting'`` so a
waitlist entry can only ever become one appointment.
"""

import logging
import uuid
from datetime import datetime
from typing import List, Optional, Protocol

from supabase import Client

from clinic_queue.exceptions import DependencyFailure
from clinic_queue.models.queue import AppointmentStatus, WaitlistEntry, WaitlistStatus

logger = logging.getLogger(__name__)


class Waitlist(Protocol):

    async def get_clinic_waitlist(self, clinic_id: str, window_start: datetime) -> List[WaitlistEntry]:
        """Waiting candidates for the window's date, best first."""
        ...

    async def promote_to_appointment(
        self,
        waitlist_id: str,
        staff_id: str,
        start: datetime,
        end: datetime
    ) -> Optional[str]:
        """
        Turn a waitlist entry into an appointment.

        Returns:
            The new appointment id, or None when the entry was already promoted
        """
        ...


class SupabaseWaitlist:
    """Waitlist backed by the ``waitlist`` and ``appointments`` tables."""

    def __init__(self, supabase_client: Client):
        self.supabase = supabase_client

    async def get_clinic_waitlist(self, clinic_id: str, window_start: datetime) -> List[WaitlistEntry]:
        try:
            result = self.supabase.table('waitlist').select('*').eq(
                'clinic_id', clinic_id
            ).eq(
                'requested_date', window_start.date().isoformat()
            ).eq(
                'status', WaitlistStatus.WAITING.value
            ).order('priority_score', desc=True).order('created_at').execute()
        except Exception as e:
            logger.error(f"Failed to load waitlist for clinic {clinic_id}: {e}", exc_info=True)
            raise DependencyFailure("waitlist", str(e), e) from e

        return [WaitlistEntry.model_validate(row) for row in result.data or []]

    async def promote_to_appointment(
        self,
        waitlist_id: str,
        staff_id: str,
        start: datetime,
        end: datetime
    ) -> Optional[str]:
        try:
            claimed = self.supabase.table('waitlist').update({
                'status': WaitlistStatus.PROMOTED.value,
                'updated_at': datetime.utcnow().isoformat()
            }).eq('id', waitlist_id).eq('status', WaitlistStatus.WAITING.value).execute()
        except Exception as e:
            raise DependencyFailure("waitlist", str(e), e) from e

        if not claimed.data:
            logger.info(f"Waitlist entry {waitlist_id} already promoted, skipping")
            return None

        entry = WaitlistEntry.model_validate(claimed.data[0])
        appointment_id = str(uuid.uuid4())

        try:
            self.supabase.table('appointments').insert({
                'id': appointment_id,
                'clinic_id': entry.clinic_id,
                'patient_id': entry.patient_id,
                'staff_id': staff_id,
                'appointment_date': start.date().isoformat(),
                'start_time': start.isoformat(),
                'end_time': end.isoformat(),
                'status': AppointmentStatus.SCHEDULED.value,
                'is_gap_filler': True,
            }).execute()

            self.supabase.table('waitlist').update({
                'promoted_appointment_id': appointment_id
            }).eq('id', waitlist_id).execute()
        except Exception as e:
            logger.error(f"Failed to promote waitlist entry {waitlist_id}: {e}", exc_info=True)
            # Release the claim so the entry can be offered again
            self.supabase.table('waitlist').update({
                'status': WaitlistStatus.WAITING.value
            }).eq('id', waitlist_id).execute()
            raise DependencyFailure("waitlist", str(e), e) from e

        logger.info(f"✅ Promoted waitlist entry {waitlist_id} to appointment {appointment_id}")
        return appointment_id

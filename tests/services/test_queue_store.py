"""
Tests for the Supabase-backed queue store and waitlist
"""

from datetime import datetime
from unittest.mock import MagicMock, call

import pytest

from clinic_queue.exceptions import DependencyFailure
from clinic_queue.models.queue import (
    AppointmentStatus,
    QueueActionType,
    QueueMode,
    QueueOverride,
    SkipReason,
)
from clinic_queue.services.queue_store import SupabaseQueueStore, serialize_patch
from clinic_queue.services.waitlist_service import SupabaseWaitlist

from tests.fixtures import TEST_DAY


def query_chain(data=None):
    """Mock PostgREST builder where every filter returns the builder itself"""
    query = MagicMock()
    for method in ('select', 'eq', 'order', 'limit', 'update', 'insert'):
        getattr(query, method).return_value = query
    query.execute.return_value = MagicMock(data=data)
    return query


def appointment_row(**kwargs):
    row = {
        'id': 'appt-1',
        'clinic_id': 'clinic-001',
        'patient_id': 'patient-1',
        'appointment_date': '2025-03-10',
        'status': 'checked_in',
        'queue_position': 2,
    }
    row.update(kwargs)
    return row


@pytest.fixture
def mock_supabase_client():
    return MagicMock()


class TestSupabaseQueueStore:

    @pytest.mark.asyncio
    async def test_get_by_id(self, mock_supabase_client):
        query = query_chain([appointment_row()])
        mock_supabase_client.table.return_value = query
        store = SupabaseQueueStore(mock_supabase_client)

        entry = await store.get_by_id('appt-1')

        mock_supabase_client.table.assert_called_with('appointments')
        query.eq.assert_called_with('id', 'appt-1')
        assert entry.status == AppointmentStatus.CHECKED_IN
        assert entry.appointment_date == TEST_DAY

    @pytest.mark.asyncio
    async def test_get_by_id_missing(self, mock_supabase_client):
        mock_supabase_client.table.return_value = query_chain([])
        store = SupabaseQueueStore(mock_supabase_client)

        assert await store.get_by_id('ghost') is None

    @pytest.mark.asyncio
    async def test_get_by_clinic_date_filters_and_orders(self, mock_supabase_client):
        query = query_chain([appointment_row(id='a'), appointment_row(id='b', queue_position=3)])
        mock_supabase_client.table.return_value = query
        store = SupabaseQueueStore(mock_supabase_client)

        entries = await store.get_by_clinic_date('clinic-001', TEST_DAY)

        assert [e.id for e in entries] == ['a', 'b']
        query.eq.assert_has_calls([call('clinic_id', 'clinic-001'), call('appointment_date', '2025-03-10')])
        query.order.assert_called_with('queue_position', nullsfirst=False)

    @pytest.mark.asyncio
    async def test_conditional_update(self, mock_supabase_client):
        query = query_chain([appointment_row(status='in_progress')])
        mock_supabase_client.table.return_value = query
        store = SupabaseQueueStore(mock_supabase_client)

        updated = await store.update(
            'appt-1',
            {'status': AppointmentStatus.IN_PROGRESS, 'actual_start_time': datetime(2025, 3, 10, 9, 5)},
            expected_status=AppointmentStatus.CHECKED_IN,
        )

        record = query.update.call_args[0][0]
        assert record['status'] == 'in_progress'
        assert record['actual_start_time'] == '2025-03-10T09:05:00'
        assert 'updated_at' in record
        query.eq.assert_has_calls([call('id', 'appt-1'), call('status', 'checked_in')])
        assert updated.status == AppointmentStatus.IN_PROGRESS

    @pytest.mark.asyncio
    async def test_conditional_update_that_matched_nothing(self, mock_supabase_client):
        mock_supabase_client.table.return_value = query_chain([])
        store = SupabaseQueueStore(mock_supabase_client)

        result = await store.update('appt-1', {'status': 'completed'}, expected_status=AppointmentStatus.IN_PROGRESS)

        assert result is None

    @pytest.mark.asyncio
    async def test_client_errors_become_dependency_failures(self, mock_supabase_client):
        query = query_chain()
        query.execute.side_effect = Exception("connection reset")
        mock_supabase_client.table.return_value = query
        store = SupabaseQueueStore(mock_supabase_client)

        with pytest.raises(DependencyFailure) as exc_info:
            await store.get_by_clinic_date('clinic-001', TEST_DAY)

        assert exc_info.value.dependency == "queue_store"
        assert "connection reset" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_append_override_writes_json(self, mock_supabase_client):
        query = query_chain([{}])
        mock_supabase_client.table.return_value = query
        store = SupabaseQueueStore(mock_supabase_client)

        await store.append_override(QueueOverride(
            clinic_id='clinic-001',
            appointment_id='appt-1',
            action_type=QueueActionType.PRIORITY_BOOST,
            performed_by='dr-1',
            previous_position=4,
        ))

        mock_supabase_client.table.assert_called_with('queue_overrides')
        record = query.insert.call_args[0][0]
        assert record['action_type'] == 'priority_boost'
        assert isinstance(record['created_at'], str)

    @pytest.mark.asyncio
    async def test_queue_mode_rpc(self, mock_supabase_client):
        mock_supabase_client.rpc.return_value.execute.return_value = MagicMock(data='fluid')
        store = SupabaseQueueStore(mock_supabase_client)

        mode = await store.get_queue_mode('clinic-001', TEST_DAY)

        assert mode == QueueMode.FLUID
        mock_supabase_client.rpc.assert_called_with(
            'get_queue_mode_for_date', {'p_clinic_id': 'clinic-001', 'p_date': '2025-03-10'}
        )

    @pytest.mark.asyncio
    async def test_queue_mode_unknown(self, mock_supabase_client):
        mock_supabase_client.rpc.return_value.execute.return_value = MagicMock(data=None)
        store = SupabaseQueueStore(mock_supabase_client)

        assert await store.get_queue_mode('clinic-001', TEST_DAY) is None

    def test_serialize_patch(self):
        record = serialize_patch({
            'skip_reason': SkipReason.LATE_ARRIVAL,
            'appointment_date': TEST_DAY,
            'queue_position': 3,
            'returned_at': None,
        })

        assert record == {
            'skip_reason': 'late_arrival',
            'appointment_date': '2025-03-10',
            'queue_position': 3,
            'returned_at': None,
        }


class TestSupabaseWaitlist:

    def waitlist_row(self, **kwargs):
        row = {
            'id': 'w1',
            'clinic_id': 'clinic-001',
            'patient_id': 'patient-9',
            'requested_date': '2025-03-10',
            'status': 'promoted',
        }
        row.update(kwargs)
        return row

    @pytest.mark.asyncio
    async def test_promotion_creates_gap_filler_appointment(self, mock_supabase_client):
        query = query_chain([self.waitlist_row()])
        mock_supabase_client.table.return_value = query
        waitlist = SupabaseWaitlist(mock_supabase_client)

        appointment_id = await waitlist.promote_to_appointment(
            'w1', 'staff-001', datetime(2025, 3, 10, 9, 0), datetime(2025, 3, 10, 9, 15)
        )

        assert appointment_id is not None
        inserted = query.insert.call_args[0][0]
        assert inserted['id'] == appointment_id
        assert inserted['is_gap_filler'] is True
        assert inserted['staff_id'] == 'staff-001'
        assert inserted['start_time'] == '2025-03-10T09:00:00'
        # Claim is conditional on the entry still waiting
        query.eq.assert_any_call('status', 'waiting')

    @pytest.mark.asyncio
    async def test_already_promoted_returns_none(self, mock_supabase_client):
        query = query_chain([])
        mock_supabase_client.table.return_value = query
        waitlist = SupabaseWaitlist(mock_supabase_client)

        result = await waitlist.promote_to_appointment(
            'w1', 'staff-001', datetime(2025, 3, 10, 9, 0), datetime(2025, 3, 10, 9, 15)
        )

        assert result is None
        query.insert.assert_not_called()

    @pytest.mark.asyncio
    async def test_failed_insert_releases_the_claim(self, mock_supabase_client):
        query = query_chain([self.waitlist_row()])
        query.insert.side_effect = Exception("constraint violation")
        mock_supabase_client.table.return_value = query
        waitlist = SupabaseWaitlist(mock_supabase_client)

        with pytest.raises(DependencyFailure):
            await waitlist.promote_to_appointment(
                'w1', 'staff-001', datetime(2025, 3, 10, 9, 0), datetime(2025, 3, 10, 9, 15)
            )

        query.update.assert_called_with({'status': 'waiting'})

    @pytest.mark.asyncio
    async def test_clinic_waitlist(self, mock_supabase_client):
        query = query_chain([self.waitlist_row(status='waiting', priority_score=5)])
        mock_supabase_client.table.return_value = query
        waitlist = SupabaseWaitlist(mock_supabase_client)

        candidates = await waitlist.get_clinic_waitlist('clinic-001', datetime(2025, 3, 10, 9, 0))

        assert [c.id for c in candidates] == ['w1']
        query.eq.assert_any_call('requested_date', '2025-03-10')

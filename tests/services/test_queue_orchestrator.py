"""
Tests for the queue orchestrator state machine
"""

import asyncio
from datetime import datetime, timedelta

import pytest

from clinic_queue.exceptions import (
    BusinessRuleError,
    ConflictError,
    EstimationFailure,
    InvalidStateError,
    NotFoundError,
)
from clinic_queue.models.events import QueueEventType
from clinic_queue.models.queue import (
    AppointmentStatus,
    QueueActionType,
    QueueMode,
    SkipReason,
)
from clinic_queue.services.estimation import EstimatorSelector, WaitTimeEstimationService, WaitTimeEstimator
from clinic_queue.services.event_bus import EventBus
from clinic_queue.services.queue_orchestrator import QueueOrchestrator
from clinic_queue.services.recalculation import BacklogRecalculator

from tests.fixtures import TEST_CLINIC_ID, TEST_DAY, TEST_STAFF_ID, create_test_entry


class BrokenEstimator(WaitTimeEstimator):
    name = "basic"

    async def estimate(self, context):
        raise EstimationFailure("basic", "estimator offline")


def assert_positions_contiguous(store):
    active = store.active()
    assert sorted(e.queue_position for e in active) == list(range(1, len(active) + 1))


def events_of(bus, event_type):
    return [e for e in bus.get_history() if e.event_type == event_type]


@pytest.fixture
def fluid_store(store):
    store.set_mode(TEST_CLINIC_ID, TEST_DAY, QueueMode.FLUID)
    store.add(
        create_test_entry('a', 0),
        create_test_entry('b', 1),
        create_test_entry('c', 2),
    )
    return store


async def check_in_all(orchestrator, *ids):
    for appointment_id in ids:
        await orchestrator.check_in(appointment_id)


class TestCheckIn:

    @pytest.mark.asyncio
    async def test_check_in_assigns_position_and_prediction(self, fluid_store, orchestrator, event_bus):
        entry = await orchestrator.check_in('b')

        assert entry.status == AppointmentStatus.CHECKED_IN
        assert entry.is_present is True
        assert entry.checked_in_at is not None
        assert entry.queue_position == 2
        assert entry.estimated_wait_minutes == 25
        assert entry.predicted_start_time is not None
        assert entry.eta_source == "basic-estimator"

        [event] = events_of(event_bus, QueueEventType.PATIENT_CHECKED_IN)
        assert event.payload['queue_position'] == 2
        assert event.payload['appointment_id'] == 'b'
        assert_positions_contiguous(fluid_store)

    @pytest.mark.asyncio
    async def test_check_in_requires_scheduled(self, fluid_store, orchestrator):
        await orchestrator.check_in('a')

        with pytest.raises(InvalidStateError):
            await orchestrator.check_in('a')

    @pytest.mark.asyncio
    async def test_check_in_unknown_appointment(self, fluid_store, orchestrator):
        with pytest.raises(NotFoundError):
            await orchestrator.check_in('missing')

    @pytest.mark.asyncio
    async def test_estimator_failure_commits_nothing(self, fluid_store, event_bus):
        selector = EstimatorSelector(basic_estimator=BrokenEstimator())
        recalculator = BacklogRecalculator(fluid_store, WaitTimeEstimationService(fluid_store, selector=selector))
        orchestrator = QueueOrchestrator(fluid_store, event_bus, recalculator)

        with pytest.raises(EstimationFailure):
            await orchestrator.check_in('a')

        entry = fluid_store.entries['a']
        assert entry.status == AppointmentStatus.SCHEDULED
        assert entry.checked_in_at is None
        assert fluid_store.update_calls == []
        assert event_bus.get_history() == []


class TestCallNext:

    @pytest.mark.asyncio
    async def test_calls_lowest_position(self, fluid_store, orchestrator, event_bus):
        await check_in_all(orchestrator, 'a', 'b', 'c')

        called = await orchestrator.call_next(TEST_CLINIC_ID, TEST_STAFF_ID, TEST_DAY)

        assert called.id == 'a'
        assert called.status == AppointmentStatus.IN_PROGRESS
        assert called.actual_start_time is not None
        assert fluid_store.entries['b'].queue_position == 1
        assert fluid_store.entries['c'].queue_position == 2
        assert_positions_contiguous(fluid_store)

        [override] = fluid_store.overrides
        assert override.action_type == QueueActionType.CALL_PRESENT
        assert override.performed_by == TEST_STAFF_ID
        [event] = events_of(event_bus, QueueEventType.PATIENT_CALLED)
        assert event.payload['staff_id'] == TEST_STAFF_ID

    @pytest.mark.asyncio
    async def test_second_call_while_in_progress_is_rejected(self, fluid_store, orchestrator):
        await check_in_all(orchestrator, 'a', 'b')
        await orchestrator.call_next(TEST_CLINIC_ID, TEST_STAFF_ID, TEST_DAY)

        with pytest.raises(BusinessRuleError) as exc_info:
            await orchestrator.call_next(TEST_CLINIC_ID, TEST_STAFF_ID, TEST_DAY)

        assert exc_info.value.rule == "single_in_progress"

    @pytest.mark.asyncio
    async def test_concurrent_calls_move_only_one_entry(self, fluid_store, orchestrator):
        await check_in_all(orchestrator, 'a', 'b', 'c')

        results = await asyncio.gather(
            orchestrator.call_next(TEST_CLINIC_ID, TEST_STAFF_ID, TEST_DAY),
            orchestrator.call_next(TEST_CLINIC_ID, TEST_STAFF_ID, TEST_DAY),
            return_exceptions=True,
        )

        assert sum(1 for r in results if isinstance(r, BusinessRuleError)) == 1
        in_progress = [e for e in fluid_store.entries.values() if e.status == AppointmentStatus.IN_PROGRESS]
        assert len(in_progress) == 1

    @pytest.mark.asyncio
    async def test_never_calls_a_terminal_entry(self, store, orchestrator):
        store.set_mode(TEST_CLINIC_ID, TEST_DAY, QueueMode.FLUID)
        store.add(
            # Stale cached position on a finished entry
            create_test_entry('done', 0, status=AppointmentStatus.COMPLETED, queue_position=1),
            create_test_entry('gone', 1, status=AppointmentStatus.CANCELLED, queue_position=2),
            create_test_entry('next', 2, status=AppointmentStatus.CHECKED_IN, queue_position=3, is_present=True),
        )

        called = await orchestrator.call_next(TEST_CLINIC_ID, TEST_STAFF_ID, TEST_DAY)

        assert called.id == 'next'

    @pytest.mark.asyncio
    async def test_empty_queue(self, store, orchestrator):
        store.add(create_test_entry('done', 0, status=AppointmentStatus.COMPLETED))

        with pytest.raises(NotFoundError):
            await orchestrator.call_next(TEST_CLINIC_ID, TEST_STAFF_ID, TEST_DAY)

    @pytest.mark.asyncio
    async def test_skip_absent_prefers_present_patient(self, fluid_store, orchestrator):
        await check_in_all(orchestrator, 'a', 'b')
        await orchestrator.mark_absent('a', performed_by='nurse-1')

        called = await orchestrator.call_next(TEST_CLINIC_ID, TEST_STAFF_ID, TEST_DAY, skip_absent=True)

        assert called.id == 'b'
        assert fluid_store.entries['a'].status == AppointmentStatus.CHECKED_IN

    @pytest.mark.asyncio
    async def test_assigns_staff_when_missing(self, store, orchestrator):
        store.add(create_test_entry('a', 0, staff_id=None, status=AppointmentStatus.CHECKED_IN))

        called = await orchestrator.call_next(TEST_CLINIC_ID, 'staff-009', TEST_DAY)

        assert called.staff_id == 'staff-009'


class TestStatusTransitions:

    @pytest.mark.asyncio
    async def test_complete_in_progress_entry(self, fluid_store, orchestrator, event_bus):
        await check_in_all(orchestrator, 'a', 'b')
        await orchestrator.call_next(TEST_CLINIC_ID, TEST_STAFF_ID, TEST_DAY)

        completed = await orchestrator.update_status('a', AppointmentStatus.COMPLETED, performed_by='dr-1')

        assert completed.status == AppointmentStatus.COMPLETED
        assert completed.actual_end_time is not None
        [event] = events_of(event_bus, QueueEventType.APPOINTMENT_STATUS_CHANGED)
        assert event.payload['previous_status'] == 'in_progress'
        assert event.payload['new_status'] == 'completed'
        # Finished well before the predicted end
        assert event.payload['freed_slot']['source_appointment_id'] == 'a'

    @pytest.mark.asyncio
    async def test_illegal_transitions(self, fluid_store, orchestrator):
        with pytest.raises(InvalidStateError):
            await orchestrator.update_status('a', AppointmentStatus.COMPLETED)

        await orchestrator.cancel('b')
        with pytest.raises(InvalidStateError):
            await orchestrator.update_status('b', AppointmentStatus.CHECKED_IN)

    @pytest.mark.asyncio
    async def test_second_in_progress_is_rejected(self, fluid_store, orchestrator):
        await orchestrator.update_status('a', AppointmentStatus.IN_PROGRESS)

        with pytest.raises(BusinessRuleError):
            await orchestrator.update_status('b', AppointmentStatus.IN_PROGRESS)

    @pytest.mark.asyncio
    async def test_no_show_frees_the_slot(self, fluid_store, orchestrator, event_bus):
        await check_in_all(orchestrator, 'a', 'b', 'c')

        await orchestrator.update_status('b', AppointmentStatus.NO_SHOW)

        [event] = events_of(event_bus, QueueEventType.APPOINTMENT_STATUS_CHANGED)
        slot = event.payload['freed_slot']
        assert slot['staff_id'] == TEST_STAFF_ID
        assert slot['source_appointment_id'] == 'b'
        assert fluid_store.entries['c'].queue_position == 2
        assert_positions_contiguous(fluid_store)

    @pytest.mark.asyncio
    async def test_cancel_records_reason_and_publishes(self, fluid_store, orchestrator, event_bus):
        cancelled = await orchestrator.cancel('a', reason="feeling better", performed_by='front-desk')

        assert cancelled.status == AppointmentStatus.CANCELLED
        assert cancelled.cancellation_reason == "feeling better"
        [event] = events_of(event_bus, QueueEventType.APPOINTMENT_CANCELLED)
        assert event.payload['reason'] == "feeling better"
        assert event.payload['freed_slot'] is not None

        with pytest.raises(InvalidStateError):
            await orchestrator.cancel('a')


class TestAbsence:

    @pytest.mark.asyncio
    async def test_absent_then_late_arrival_goes_to_the_tail(self, fluid_store, orchestrator, event_bus):
        await check_in_all(orchestrator, 'a', 'b', 'c')
        assert fluid_store.entries['a'].queue_position == 1

        absent = await orchestrator.mark_absent('a', performed_by='nurse-1', reason="not in waiting room")

        assert absent.is_present is False
        assert absent.skip_reason == SkipReason.PATIENT_ABSENT
        assert absent.original_queue_position == 1
        assert absent.skip_count == 1
        [absent_event] = events_of(event_bus, QueueEventType.PATIENT_MARKED_ABSENT)
        assert absent_event.payload['performed_by'] == 'nurse-1'

        returned = await orchestrator.mark_returned('a', performed_by='nurse-1')

        others = [e.queue_position for e in fluid_store.active() if e.id != 'a']
        assert returned.queue_position > max(others)
        assert returned.skip_reason == SkipReason.LATE_ARRIVAL
        assert returned.status == AppointmentStatus.CHECKED_IN
        assert returned.is_present is True
        assert_positions_contiguous(fluid_store)

        [returned_event] = events_of(event_bus, QueueEventType.PATIENT_RETURNED)
        assert returned_event.payload['new_position'] == returned.queue_position
        assert [o.action_type for o in fluid_store.overrides] == [
            QueueActionType.MARK_ABSENT,
            QueueActionType.LATE_ARRIVAL,
        ]

    @pytest.mark.asyncio
    async def test_cannot_mark_absent_twice(self, fluid_store, orchestrator):
        await orchestrator.mark_absent('a', performed_by='nurse-1')

        with pytest.raises(ConflictError):
            await orchestrator.mark_absent('a', performed_by='nurse-1')

    @pytest.mark.asyncio
    async def test_cannot_mark_finished_entry_absent(self, fluid_store, orchestrator):
        await orchestrator.cancel('a')

        with pytest.raises(BusinessRuleError):
            await orchestrator.mark_absent('a', performed_by='nurse-1')

    @pytest.mark.asyncio
    async def test_return_requires_absence(self, fluid_store, orchestrator):
        with pytest.raises(BusinessRuleError):
            await orchestrator.mark_returned('a', performed_by='nurse-1')


class TestQueries:

    @pytest.mark.asyncio
    async def test_get_queue_puts_in_progress_first(self, fluid_store, orchestrator):
        await check_in_all(orchestrator, 'a', 'b', 'c')
        await orchestrator.call_next(TEST_CLINIC_ID, TEST_STAFF_ID, TEST_DAY)

        queue = await orchestrator.get_queue(TEST_CLINIC_ID, TEST_DAY)

        assert [e.id for e in queue] == ['a', 'b', 'c']
        assert queue[0].status == AppointmentStatus.IN_PROGRESS

    @pytest.mark.asyncio
    async def test_summary_counts(self, store, orchestrator):
        checked_in = datetime(2025, 3, 10, 9, 0)
        store.add(
            create_test_entry('s', 0),
            create_test_entry('w', 1, status=AppointmentStatus.CHECKED_IN),
            create_test_entry(
                'x', 2, status=AppointmentStatus.CHECKED_IN,
                marked_absent_at=checked_in, skip_reason=SkipReason.PATIENT_ABSENT,
            ),
            create_test_entry('p', 3, status=AppointmentStatus.IN_PROGRESS),
            create_test_entry(
                'd1', 4, status=AppointmentStatus.COMPLETED,
                checked_in_at=checked_in, actual_start_time=checked_in + timedelta(minutes=10),
            ),
            create_test_entry(
                'd2', 5, status=AppointmentStatus.COMPLETED,
                checked_in_at=checked_in, actual_start_time=checked_in + timedelta(minutes=20),
            ),
            create_test_entry('c', 6, status=AppointmentStatus.CANCELLED),
            create_test_entry('n', 7, status=AppointmentStatus.NO_SHOW),
        )

        summary = await orchestrator.get_queue_summary(TEST_CLINIC_ID, TEST_DAY)

        assert summary.total_appointments == 8
        assert summary.scheduled == 1
        assert summary.waiting == 2
        assert summary.in_progress == 1
        assert summary.completed == 2
        assert summary.cancelled == 1
        assert summary.no_show == 1
        assert summary.absent == 1
        assert summary.current_queue_length == 3
        assert summary.average_wait_minutes == 15

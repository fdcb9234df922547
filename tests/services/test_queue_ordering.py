"""
Tests for derived queue ordering
"""

from datetime import datetime

from clinic_queue.models.queue import AppointmentStatus, QueueMode, SkipReason
from clinic_queue.services.queue_ordering import (
    assign_positions,
    effective_priority,
    next_queue_position,
    order_active,
    service_schedule,
)

from tests.fixtures import create_slotted_entry, create_test_entry


def ids(entries):
    return [e.id for e in entries]


class TestFluidOrdering:

    def test_priority_then_arrival(self):
        entries = [
            create_test_entry('late-high', 3, priority_score=150),
            create_test_entry('early', 0),
            create_test_entry('second', 1),
        ]

        assert ids(order_active(entries, QueueMode.FLUID)) == ['late-high', 'early', 'second']

    def test_unset_priority_counts_as_default(self):
        entry = create_test_entry('a')
        assert effective_priority(entry) == 100.0

        entries = [create_test_entry('low', 0, priority_score=90), create_test_entry('unset', 1)]
        assert ids(order_active(entries, QueueMode.FLUID)) == ['unset', 'low']

    def test_terminal_and_in_progress_are_excluded(self):
        entries = [
            create_test_entry('done', 0, status=AppointmentStatus.COMPLETED),
            create_test_entry('busy', 1, status=AppointmentStatus.IN_PROGRESS),
            create_test_entry('gone', 2, status=AppointmentStatus.CANCELLED),
            create_test_entry('next', 3, status=AppointmentStatus.CHECKED_IN),
        ]

        assert ids(order_active(entries, QueueMode.FLUID)) == ['next']
        assert ids(service_schedule(entries, QueueMode.FLUID)) == ['busy', 'next']

    def test_requeued_entries_sort_last_in_return_order(self):
        entries = [
            create_test_entry(
                'back-second', 0, priority_score=300,
                marked_absent_at=datetime(2025, 3, 10, 8, 5),
                returned_at=datetime(2025, 3, 10, 9, 30),
                skip_reason=SkipReason.LATE_ARRIVAL,
            ),
            create_test_entry(
                'back-first', 1,
                marked_absent_at=datetime(2025, 3, 10, 8, 5),
                returned_at=datetime(2025, 3, 10, 9, 0),
                skip_reason=SkipReason.LATE_ARRIVAL,
            ),
            create_test_entry('regular', 5, priority_score=10),
        ]

        assert ids(order_active(entries, QueueMode.FLUID)) == ['regular', 'back-first', 'back-second']


class TestSlottedOrdering:

    def test_slot_start_then_priority(self):
        entries = [
            create_slotted_entry('nine-thirty', 0, 9, 30),
            create_slotted_entry('nine-low', 1, 9),
            create_slotted_entry('nine-high', 2, 9, priority_score=120),
            create_test_entry('walk-in', 3),
        ]

        assert ids(order_active(entries, QueueMode.SLOTTED)) == [
            'nine-high', 'nine-low', 'nine-thirty', 'walk-in'
        ]

    def test_undetermined_mode_orders_as_slotted(self):
        entries = [create_slotted_entry('ten', 0, 10), create_slotted_entry('nine', 1, 9)]

        assert ids(order_active(entries, None)) == ['nine', 'ten']


class TestPositions:

    def test_positions_are_contiguous_from_one(self):
        ordered = [create_test_entry('a'), create_test_entry('b'), create_test_entry('c')]

        assert assign_positions(ordered) == {'a': 1, 'b': 2, 'c': 3}

    def test_next_position_is_after_the_highest_active(self):
        entries = [
            create_test_entry('a', queue_position=1),
            create_test_entry('b', queue_position=4),
            create_test_entry('done', queue_position=9, status=AppointmentStatus.COMPLETED),
        ]

        assert next_queue_position(entries) == 5
        assert next_queue_position([]) == 1

"""
Tests for the backlog recalculation pass
"""

from datetime import datetime, timedelta

import pytest

from clinic_queue.models.queue import AppointmentStatus, QueueMode

from tests.fixtures import TEST_CLINIC_ID, TEST_DAY, create_test_entry

NOW = datetime(2025, 3, 10, 9, 0)


@pytest.fixture
def fluid_store(store):
    store.set_mode(TEST_CLINIC_ID, TEST_DAY, QueueMode.FLUID)
    store.add(
        create_test_entry('a', 0, status=AppointmentStatus.CHECKED_IN, queue_position=7),
        create_test_entry('b', 1, status=AppointmentStatus.CHECKED_IN),
        create_test_entry('done', 2, status=AppointmentStatus.COMPLETED, queue_position=1),
    )
    return store


class TestBacklogRecalculator:

    @pytest.mark.asyncio
    async def test_plan_does_not_write(self, fluid_store, recalculator):
        plan = await recalculator.plan(TEST_CLINIC_ID, TEST_DAY, now=NOW)

        assert fluid_store.update_calls == []
        assert plan.mode == QueueMode.FLUID
        assert plan.patches['a']['queue_position'] == 1
        assert plan.patches['b']['queue_position'] == 2
        assert 'done' not in plan.patches
        assert plan.patches['b']['predicted_start_time'] == NOW + timedelta(minutes=25)

    @pytest.mark.asyncio
    async def test_plan_uses_pending_entries(self, fluid_store, recalculator):
        pending = fluid_store.entries['a'].model_copy(update={'status': AppointmentStatus.IN_PROGRESS})

        plan = await recalculator.plan(TEST_CLINIC_ID, TEST_DAY, pending={'a': pending}, now=NOW)

        assert 'a' not in plan.patches
        assert plan.patches['b']['queue_position'] == 1
        assert [e.id for e in plan.schedule] == ['a', 'b']

    @pytest.mark.asyncio
    async def test_apply_writes_and_invalidates_cache(self, fluid_store, recalculator, estimation):
        cached = await estimation.estimate_wait_time('b')
        assert estimation._cache

        await recalculator.recalculate(TEST_CLINIC_ID, TEST_DAY)

        assert fluid_store.entries['a'].queue_position == 1
        assert fluid_store.entries['b'].queue_position == 2
        assert fluid_store.entries['b'].prediction_mode == "basic"
        assert fluid_store.entries['done'].queue_position == 1
        assert 'b' not in estimation._cache
        assert cached.mode == "rule_based"

    @pytest.mark.asyncio
    async def test_unknown_mode_is_slotted(self, store, recalculator):
        assert await recalculator.queue_mode(TEST_CLINIC_ID, TEST_DAY) == QueueMode.SLOTTED

"""Tests for DelayScheduler pause/resume behavior."""

import asyncio
from unittest.mock import MagicMock

import pytest
from aiokafka.errors import IllegalStateError
from aiokafka.structs import TopicPartition

from kafka_retry.message import now_ms
from kafka_retry.scheduler import DelayScheduler, PartitionController

NOW = 1_700_000_000_000


class RecordingController(PartitionController):
    def __init__(self):
        self.calls = []

    def pause(self, tp):
        self.calls.append(("pause", tp))

    def resume(self, tp):
        self.calls.append(("resume", tp))


class FakeClock:
    def __init__(self, now=NOW):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def controller():
    return RecordingController()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.mark.asyncio
class TestDelayScheduler:
    async def test_hold_pauses_once(self, controller, clock):
        scheduler = DelayScheduler(controller, clock=clock)
        tp = TopicPartition("orders.retry.1", 0)

        scheduler.hold_until(tp, NOW + 5000)
        scheduler.hold_until(tp, NOW + 8000)

        assert controller.calls == [("pause", tp)]
        assert scheduler.pending == {tp: NOW + 5000}
        await scheduler.cancel()

    async def test_earliest_hold_wins(self, controller, clock):
        scheduler = DelayScheduler(controller, clock=clock)
        tp = TopicPartition("orders.retry.1", 0)

        scheduler.hold_until(tp, NOW + 5000)
        scheduler.hold_until(tp, NOW + 1000)

        assert scheduler.pending[tp] == NOW + 1000
        clock.now = NOW + 1000
        assert scheduler.release_due() == [tp]
        # Stale heap entry for +5000 is discarded
        clock.now = NOW + 5000
        assert scheduler.release_due() == []
        assert controller.calls == [("pause", tp), ("resume", tp)]
        await scheduler.cancel()

    async def test_release_due_only_resumes_due_partitions(self, controller, clock):
        scheduler = DelayScheduler(controller, clock=clock)
        early = TopicPartition("orders.retry.1", 0)
        late = TopicPartition("orders.retry.2", 1)
        scheduler.hold_until(late, NOW + 4000)
        scheduler.hold_until(early, NOW + 1000)

        clock.now = NOW + 2000
        assert scheduler.release_due() == [early]
        assert scheduler.is_held(late)
        assert not scheduler.is_held(early)
        await scheduler.cancel()

    async def test_release_forgets_hold(self, controller, clock):
        scheduler = DelayScheduler(controller, clock=clock)
        tp = TopicPartition("orders.retry.1", 0)
        scheduler.hold_until(tp, NOW + 1000)

        scheduler.release(tp)
        clock.now = NOW + 1000

        assert scheduler.release_due() == []
        assert ("resume", tp) not in controller.calls
        await scheduler.cancel()

    async def test_resume_failure_is_logged(self, clock, caplog):
        controller = MagicMock(spec=PartitionController)
        controller.resume.side_effect = RuntimeError("partition revoked")
        scheduler = DelayScheduler(controller, clock=clock)
        tp = TopicPartition("orders.retry.1", 0)
        scheduler.hold_until(tp, NOW)

        assert scheduler.release_due() == [tp]
        assert "Failed to resume partition" in caplog.text
        await scheduler.cancel()

    async def test_pause_failure_is_logged(self, clock, caplog):
        controller = MagicMock(spec=PartitionController)
        controller.pause.side_effect = IllegalStateError("No current assignment for partition")
        scheduler = DelayScheduler(controller, clock=clock)
        tp = TopicPartition("orders.retry.1", 0)

        scheduler.hold_until(tp, NOW + 1000)

        assert "Failed to pause partition" in caplog.text
        assert not scheduler.is_held(tp)
        clock.now = NOW + 1000
        assert scheduler.release_due() == []
        controller.resume.assert_not_called()
        await scheduler.cancel()

    async def test_background_waiter_resumes(self, controller):
        scheduler = DelayScheduler(controller)
        tp = TopicPartition("orders.retry.1", 0)

        scheduler.hold_until(tp, now_ms() + 20)
        await asyncio.sleep(0.2)

        assert controller.calls == [("pause", tp), ("resume", tp)]
        assert scheduler.pending == {}
        await scheduler.cancel()

    async def test_cancel_leaves_partitions_paused(self, controller):
        scheduler = DelayScheduler(controller)
        tp = TopicPartition("orders.retry.1", 0)
        scheduler.hold_until(tp, now_ms() + 50)

        await scheduler.cancel()
        await scheduler.cancel()
        await asyncio.sleep(0.1)

        assert controller.calls == [("pause", tp)]
        assert scheduler.is_cancelled
        assert scheduler.pending == {}

    async def test_hold_after_cancel_ignored(self, controller, clock):
        scheduler = DelayScheduler(controller, clock=clock)
        await scheduler.cancel()

        scheduler.hold_until(TopicPartition("orders.retry.1", 0), NOW + 1000)

        assert controller.calls == []

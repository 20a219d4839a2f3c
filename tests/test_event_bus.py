"""Tests for the in-process event bus."""

from unittest.mock import MagicMock

from render_orchestrator.protocol import JOB_PROGRESS, JOB_STARTED, JobEvent
from render_orchestrator.worker.event_bus import ALL_EVENTS, EventBus


class TestEventBus:
    def test_typed_and_wildcard_subscribers(self):
        """Typed handlers see their type only; wildcard handlers see all."""
        bus = EventBus()
        started = MagicMock()
        everything = MagicMock()
        bus.subscribe(started, JOB_STARTED)
        bus.subscribe(everything)

        first = JobEvent(JOB_STARTED, "1")
        second = JobEvent(JOB_PROGRESS, "1", {"progress": 10.0})
        bus.emit(first)
        bus.emit(second)

        started.assert_called_once_with(first)
        assert [c.args[0] for c in everything.call_args_list] == [first, second]

    def test_unsubscribe(self):
        bus = EventBus()
        handler = MagicMock()
        unsubscribe = bus.subscribe(handler)
        assert bus.subscriber_count(ALL_EVENTS) == 1

        unsubscribe()
        unsubscribe()
        bus.emit(JobEvent(JOB_STARTED, "1"))

        handler.assert_not_called()
        assert bus.subscriber_count() == 0

    def test_failing_subscriber_does_not_block_others(self):
        """An exception in one handler is logged and delivery continues."""
        bus = EventBus()
        broken = MagicMock(side_effect=RuntimeError("boom"))
        healthy = MagicMock()
        bus.subscribe(broken)
        bus.subscribe(healthy)

        bus.emit(JobEvent(JOB_STARTED, "7"))

        healthy.assert_called_once()

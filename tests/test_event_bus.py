"""
Unit tests for hubzone/core/event_bus.py
"""
import asyncio

import pytest

from hubzone.core.event_bus import (
    EXECUTION_FINISHED,
    STAGE_STARTED,
    ExecutionEvent,
    _EventBus,
)


@pytest.mark.unit
class TestEventBus:

    def test_publish_keeps_recent_history(self):
        bus = _EventBus()
        bus.publish(ExecutionEvent("exec_a", STAGE_STARTED, {"stage": "acquire"}))
        bus.publish(ExecutionEvent("exec_b", STAGE_STARTED, {"stage": "acquire"}))

        recent = bus.recent("exec_a")
        assert len(recent) == 1
        assert recent[0].data == {"stage": "acquire"}
        assert bus.recent("exec_unknown") == []

    def test_event_to_dict(self):
        event = ExecutionEvent("exec_a", STAGE_STARTED, {"stage": "persist"})
        payload = event.to_dict()
        assert payload["type"] == STAGE_STARTED
        assert payload["execution_id"] == "exec_a"
        assert isinstance(payload["timestamp"], str)

    @pytest.mark.asyncio
    async def test_subscriber_stops_after_execution_finished(self):
        bus = _EventBus()
        received = []

        async def consume():
            async for event in bus.subscribe(execution_id="exec_a"):
                received.append(event.event_type)

        task = asyncio.create_task(consume())
        await asyncio.sleep(0)
        assert bus.subscriber_count == 1

        bus.publish(ExecutionEvent("exec_b", STAGE_STARTED))
        bus.publish(ExecutionEvent("exec_a", STAGE_STARTED))
        bus.publish(ExecutionEvent("exec_a", EXECUTION_FINISHED))
        await asyncio.wait_for(task, timeout=1)

        assert received == [STAGE_STARTED, EXECUTION_FINISHED]
        assert bus.subscriber_count == 0

    @pytest.mark.asyncio
    async def test_slow_subscriber_is_dropped(self):
        bus = _EventBus()
        agen = bus.subscribe(max_queue_size=1)
        first = asyncio.ensure_future(agen.__anext__())
        await asyncio.sleep(0)

        bus.publish(ExecutionEvent("exec_a", STAGE_STARTED))
        assert (await first).event_type == STAGE_STARTED

        bus.publish(ExecutionEvent("exec_a", STAGE_STARTED))
        bus.publish(ExecutionEvent("exec_a", STAGE_STARTED))
        assert bus.subscriber_count == 0
        await agen.aclose()

    def test_clear(self):
        bus = _EventBus()
        bus.publish(ExecutionEvent("exec_a", STAGE_STARTED))
        bus.clear()
        assert bus.recent("exec_a") == []

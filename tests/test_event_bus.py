"""Tests for EventBus handler ordering, isolation and dispatch modes."""

from unittest.mock import AsyncMock

import pytest

from taskhive.core.event_bus import DispatchMode, EventBus
from taskhive.core.message_bus import (
    AUDIT_HANDLER_PRIORITY,
    EVENTS_CHANNEL,
    register_audit_handlers,
    register_broadcaster,
)
from taskhive.core.schema_registry import SchemaRegistry
from taskhive.core.store import InMemoryStore
from taskhive.core.work_queue import EVENT_QUEUE, InMemoryWorkQueue, WorkKind


@pytest.fixture
def queue() -> InMemoryWorkQueue:
    return InMemoryWorkQueue()


@pytest.fixture
def bus(queue) -> EventBus:
    registry = SchemaRegistry()
    registry.register_schema("thing.happened", {"required": ["id"]})
    return EventBus(InMemoryStore(), registry, queue)


class TestHandlerRegistry:

    async def test_handlers_run_in_descending_priority(self, bus):
        order = []
        bus.register_handler("thing.happened", lambda e: order.append("low"), priority=10)
        bus.register_handler("thing.happened", lambda e: order.append("high"), priority=90)
        bus.register_handler("thing.happened", lambda e: order.append("mid"), priority=50)

        await bus.publish("thing.happened", {"id": 1})

        assert order == ["high", "mid", "low"]

    async def test_ties_keep_registration_order(self, bus):
        order = []
        bus.register_handler("thing.happened", lambda e: order.append("first"), priority=50)
        bus.register_handler("thing.happened", lambda e: order.append("second"), priority=50)

        await bus.publish("thing.happened", {"id": 1})

        assert order == ["first", "second"]

    def test_duplicate_registration_is_ignored(self, bus):
        def handler(event):
            pass

        assert bus.register_handler("thing.happened", handler) is True
        assert bus.register_handler("thing.happened", handler, priority=99) is False
        assert bus.handlers_for("thing.happened") == [handler]

    def test_unregister_and_clear(self, bus):
        def handler(event):
            pass

        bus.register_handler("thing.happened", handler)
        assert bus.unregister_handler("thing.happened", handler) is True
        assert bus.handlers_for("thing.happened") == []

        bus.register_handler("thing.happened", handler)
        bus.clear_handlers()
        assert bus.handlers_for("thing.happened") == []


class TestDispatch:

    async def test_failing_handler_does_not_stop_lower_priority_handlers(self, bus):
        h2_calls = []

        def h1(event):
            raise RuntimeError("h1 broke")

        def h2(event):
            h2_calls.append(event.id)

        bus.register_handler("thing.happened", h1, priority=90)
        bus.register_handler("thing.happened", h2, priority=10)

        event = await bus.publish("thing.happened", {"id": 1})
        report = await bus.dispatch(event)

        assert h2_calls == [event.id, event.id]
        assert len(report.failures) == 1
        assert "h1" in report.failures[0].handler
        assert report.failures[0].error == "h1 broke"
        assert report.succeeded is False

    async def test_async_handlers_are_awaited(self, bus):
        handler = AsyncMock()
        bus.register_handler("thing.happened", handler)

        event = await bus.publish("thing.happened", {"id": 7})

        handler.assert_awaited_once()
        assert handler.await_args.args[0].id == event.id

    async def test_processed_at_is_set_after_dispatch(self, bus):
        event = await bus.publish("thing.happened", {"id": 1})
        stored = await bus.store.get_event(event.id)
        assert stored.processed_at is not None

    async def test_async_mode_enqueues_and_dispatches_later(self, bus, queue):
        calls = []
        bus.register_handler("thing.happened", lambda e: calls.append(e.data["id"]))

        event = await bus.publish("thing.happened", {"id": 3}, mode=DispatchMode.ASYNC)

        assert calls == []
        assert (await bus.store.get_event(event.id)).processed_at is None
        item = await queue.dequeue([EVENT_QUEUE])
        assert item.kind == WorkKind.DISPATCH_EVENT
        assert item.event_id == event.id

        report = await bus.dispatch_by_id(item.event_id)
        assert calls == [3]
        assert report.succeeded
        assert await bus.dispatch_by_id(item.event_id) is None


class TestMessageBus:

    async def test_audit_handler_runs_first(self, bus):
        order = []
        bus.register_handler("thing.happened", lambda e: order.append("business"), priority=20)

        assert register_audit_handlers(bus) == 1
        assert register_audit_handlers(bus) == 0

        handlers = bus.handlers_for("thing.happened")
        assert handlers[0].__name__ == "audit_event"
        await bus.publish("thing.happened", {"id": 1})
        assert order == ["business"]
        assert AUDIT_HANDLER_PRIORITY > 20

    async def test_broadcaster_forwards_envelope(self, bus):
        publish = AsyncMock(return_value=True)
        register_broadcaster(bus, publish)

        event = await bus.publish("thing.happened", {"id": 5})

        publish.assert_awaited_once()
        channel, envelope = publish.await_args.args
        assert channel == EVENTS_CHANNEL
        assert envelope["id"] == event.id
        assert envelope["event_type"] == "thing.happened"
        assert envelope["data"] == {"id": 5}

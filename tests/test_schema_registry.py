"""Tests for SchemaRegistry validation and the bus's publish-time checks."""

from enum import Enum

import pytest

from taskhive.core.event_bus import EventBus
from taskhive.core.schema_registry import SchemaRegistry
from taskhive.core.store import InMemoryStore
from taskhive.exceptions import ValidationError
from taskhive.models.event import Event


class Field(Enum):
    A = "a"


@pytest.fixture
def registry() -> SchemaRegistry:
    return SchemaRegistry()


@pytest.fixture
def bus(registry) -> EventBus:
    return EventBus(InMemoryStore(), registry)


class TestValidate:

    def test_missing_required_field_is_named(self, registry):
        registry.register_schema("x", {"required": ["a"]})
        errors = registry.validate(Event(event_type="x", data={}))
        assert errors == ["Missing required field: a"]

    def test_present_field_passes(self, registry):
        registry.register_schema("x", {"required": ["a"]})
        assert registry.validate(Event(event_type="x", data={"a": 1})) == []

    def test_none_counts_as_missing(self, registry):
        registry.register_schema("x", {"required": ["a", "b"]})
        errors = registry.validate(Event(event_type="x", data={"a": None, "b": 0}))
        assert errors == ["Missing required field: a"]

    def test_unknown_event_type_passes(self, registry):
        assert registry.validate(Event(event_type="never.registered", data={})) == []

    def test_enum_keys_are_stringified(self, registry):
        registry.register_schema("x", {"required": [Field.A]})
        assert registry.schema_for("x").required == ["a"]
        assert registry.validate(Event(event_type="x", data={Field.A: 1})) == []

    def test_register_is_idempotent_upsert(self, registry):
        registry.register_schema("x", {"required": ["a"]})
        registry.register_schema("x", {"required": ["b"]}, description="second")
        assert registry.registered_schemas() == ["x"]
        assert registry.schema_for("x").required == ["b"]
        assert registry.schema_for("x").description == "second"


class TestStandardSchemas:

    def test_core_event_types_are_registered(self, registry):
        registry.register_standard_schemas()
        for event_type in (
            "task.created", "task.completed", "task.failed", "task.waiting_on_human",
            "subtask.created", "subtask.assigned", "subtask.completed", "subtask.failed",
            "human_input.requested", "llm_call.completed", "sub_coordinator.created",
        ):
            assert registry.schema_exists(event_type), event_type

    def test_subtask_created_requires_title_description_priority(self, registry):
        registry.register_standard_schemas()
        errors = registry.validate(Event(event_type="subtask.created", data={"title": "t"}))
        assert errors == [
            "Missing required field: description",
            "Missing required field: priority",
        ]


class TestPublishValidation:

    async def test_valid_payload_is_stored_and_returned(self, registry, bus):
        registry.register_schema("x", {"required": ["a"]})
        event = await bus.publish("x", {"a": 1})
        assert event is not None
        assert (await bus.store.get_event(event.id)).data == {"a": 1}

    async def test_invalid_payload_is_dropped(self, registry, bus):
        registry.register_schema("x", {"required": ["a"]})
        calls = []
        bus.register_handler("x", lambda event: calls.append(event))

        assert await bus.publish("x", {}) is None
        assert calls == []
        assert await bus.store.list_events(event_type="x") == []

    async def test_publish_or_raise_names_missing_field(self, registry, bus):
        registry.register_schema("x", {"required": ["a"]})
        with pytest.raises(ValidationError) as exc_info:
            await bus.publish_or_raise("x", {})
        assert exc_info.value.errors == ["Missing required field: a"]
        assert "a" in str(exc_info.value)

"""Event payload schemas keyed by event type."""

from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field
import structlog

from ..models.event import Event

logger = structlog.get_logger()

class EventSchema(BaseModel):
    event_type: str
    required: List[str] = Field(default_factory=list)
    optional: List[str] = Field(default_factory=list)
    description: Optional[str] = None

class SchemaRegistry:
    """
    Maps event types to required/optional payload fields.
    Built once at process start and passed to the event bus.
    """

    def __init__(self):
        self._schemas: Dict[str, EventSchema] = {}
        self.logger = logger.bind(component="SchemaRegistry")

    def register_schema(self, event_type: str, schema: Dict[str, Any], description: Optional[str] = None) -> EventSchema:
        """
        Register or replace the schema for event_type.
        Field names are stringified so enum keys behave like their values.
        """
        entry = EventSchema(
            event_type=event_type,
            required=[self._field_name(f) for f in schema.get("required", [])],
            optional=[self._field_name(f) for f in schema.get("optional", [])],
            description=description,
        )
        self._schemas[event_type] = entry
        return entry

    def schema_exists(self, event_type: str) -> bool:
        return event_type in self._schemas

    def schema_for(self, event_type: str) -> Optional[EventSchema]:
        return self._schemas.get(event_type)

    def registered_schemas(self) -> List[str]:
        return list(self._schemas.keys())

    def validate(self, event: Event) -> List[str]:
        """
        Return one error message per missing required field.
        Unknown event types pass with a warning.
        """
        schema = self._schemas.get(event.event_type)
        if schema is None:
            self.logger.warning(f"No schema registered for event type: {event.event_type}")
            return []

        data = {self._field_name(k): v for k, v in (event.data or {}).items()}
        return [
            f"Missing required field: {field}"
            for field in schema.required
            if data.get(field) is None
        ]

    @staticmethod
    def _field_name(key: Any) -> str:
        value = getattr(key, "value", key)
        return str(value)

    def register_standard_schemas(self) -> None:
        """
        Schemas for every event type the coordination core publishes.
        """
        standard = {
            # task lifecycle
            "task.created": ({"required": ["task_id", "title"], "optional": ["parent_id", "priority", "project_id"]},
                             "A task was submitted"),
            "task.activated": ({"required": ["task_id"], "optional": ["previous_state"]},
                               "Task moved to active"),
            "task.paused": ({"required": ["task_id"]}, "Task paused; no new subtasks are assigned"),
            "task.resumed": ({"required": ["task_id"], "optional": ["previous_state", "interaction_id"]},
                             "Task resumed"),
            "task.waiting_on_human": ({"required": ["task_id", "interaction_id"]},
                                      "Task blocked on a required human interaction"),
            "task.completed": ({"required": ["task_id"], "optional": ["result", "parent_id"]},
                               "Task completed"),
            "task.failed": ({"required": ["task_id", "error"], "optional": ["parent_id"]}, "Task failed"),
            "task.decomposed": ({"required": ["task_id", "subtask_count"], "optional": ["truncated"]},
                                "Coordinator materialized subtasks"),
            "task.requeued": ({"required": ["task_id"], "optional": ["retry_count"]},
                              "Failed task returned to pending for retry"),
            "task.skipped": ({"required": ["task_id"], "optional": ["reason"]},
                             "Failed task completed as non-critical"),

            # subtasks
            "subtask.created": ({"required": ["title", "description", "priority"],
                                 "optional": ["subtask_id", "parent_id", "agent_type", "complexity", "depends_on"]},
                                "Subtask materialized from a decomposition"),
            "subtask.assigned": ({"required": ["subtask_id", "agent_type"], "optional": ["parent_id", "activity_id"]},
                                 "Subtask handed to an agent"),
            "subtask.completed": ({"required": ["subtask_id", "task_id", "result"]},
                                  "Subtask completed; task_id is the parent"),
            "subtask.failed": ({"required": ["subtask_id", "task_id", "error"]},
                               "Subtask failed; task_id is the parent"),
            "subtask.deferred": ({"required": ["subtask_id", "agent_type"], "optional": ["reason"]},
                                 "Assignment deferred by a concurrency quota"),
            "subtask.recovery_selected": ({"required": ["subtask_id", "action"], "optional": ["task_id", "replacement_id"]},
                                          "Recovery policy chosen for a failed subtask"),

            # recursion
            "sub_coordinator.created": ({"required": ["subtask_id", "nesting_level"], "optional": ["parent_id"]},
                                        "Nested coordinator bound to a complex subtask"),
            "sub_coordinator.depth_limited": ({"required": ["subtask_id", "nesting_level"], "optional": ["max_depth"]},
                                              "Complex subtask downgraded at the nesting limit"),

            # human interactions
            "human_input.requested": ({"required": ["interaction_id", "task_id", "question"],
                                       "optional": ["required", "purpose", "subtask_id"]},
                                      "Human input requested"),
            "human_input.provided": ({"required": ["interaction_id", "task_id", "response"]},
                                     "Human answered an input request"),
            "human_input.ignored": ({"required": ["interaction_id", "task_id"]}, "Optional input request ignored"),
            "human_input.expired": ({"required": ["interaction_id", "task_id"]}, "Input request expired"),
            "human_input.timeout_escalated": ({"required": ["interaction_id", "task_id", "intervention_id"]},
                                              "Expired required input escalated to an intervention"),
            "human_interaction.resolved": ({"required": ["interaction_id", "task_id"], "optional": ["response"]},
                                           "Intervention resolved"),
            "human_interaction.dismissed": ({"required": ["interaction_id", "task_id"]}, "Interaction dismissed"),

            # agent activity
            "agent_activity.created": ({"required": ["activity_id", "task_id", "agent_kind"]},
                                       "Agent run started"),
            "agent_activity.completed": ({"required": ["activity_id", "task_id"], "optional": ["agent_kind"]},
                                         "Agent run finished"),
            "agent_activity.failed": ({"required": ["activity_id", "task_id", "error"], "optional": ["agent_kind"]},
                                      "Agent run failed"),

            # oracle usage
            "llm_call.completed": ({"required": ["model", "input_tokens", "output_tokens"], "optional": ["purpose"]},
                                   "Oracle call finished with token usage"),
        }

        for event_type, (schema, description) in standard.items():
            self.register_schema(event_type, schema, description=description)

        self.logger.info(f"Registered {len(standard)} standard event schemas")

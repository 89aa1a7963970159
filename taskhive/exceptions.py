"""Error taxonomy for the coordination core."""

from typing import List, Optional


class TaskhiveError(Exception):
    """Base exception for taskhive."""
    pass


class ValidationError(TaskhiveError):
    """Event payload is missing required fields; the event is dropped."""

    def __init__(self, event_type: str, errors: List[str]):
        self.event_type = event_type
        self.errors = errors
        super().__init__(f"Invalid data for {event_type}: {'; '.join(errors)}")


class InvalidStateTransition(TaskhiveError):
    """Illegal task state change, or the state changed under the caller."""

    def __init__(self, task_id: str, from_state: str, to_state: str, reason: Optional[str] = None):
        self.task_id = task_id
        self.from_state = from_state
        self.to_state = to_state
        self.reason = reason
        message = f"Task {task_id} cannot transition from {from_state} to {to_state}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class DependencyUnsatisfied(TaskhiveError):
    """Assignment attempted on a subtask whose dependencies are not completed."""

    def __init__(self, task_id: str, unmet: List[str]):
        self.task_id = task_id
        self.unmet = unmet
        super().__init__(f"Task {task_id} has unmet dependencies: {', '.join(unmet)}")


class QuotaExceeded(TaskhiveError):
    """No free concurrency slot for an agent kind. Assignment is deferred."""

    def __init__(self, agent_kind: str, limit: int):
        self.agent_kind = agent_kind
        self.limit = limit
        super().__init__(f"Concurrency quota exhausted for {agent_kind} (limit {limit})")


class DecompositionParseFailure(TaskhiveError):
    """Oracle output produced zero usable subtasks."""
    pass


class OracleInvocationFailure(TaskhiveError):
    """The reasoning oracle could not be invoked. Usually transient."""
    pass


class TaskNotFound(TaskhiveError):
    """Referenced task does not exist in the store."""

    def __init__(self, task_id: str):
        self.task_id = task_id
        super().__init__(f"Task not found: {task_id}")


class NestingDepthExceeded(TaskhiveError):
    """Spawning a sub-coordinator would exceed the configured nesting depth."""

    def __init__(self, task_id: str, nesting_level: int, max_depth: int):
        self.task_id = task_id
        self.nesting_level = nesting_level
        self.max_depth = max_depth
        super().__init__(
            f"Sub-coordinator for task {task_id} would be at nesting level {nesting_level} "
            f"(max {max_depth})"
        )


class UnknownAgentKind(TaskhiveError):
    """An agent kind string does not match any known worker variant."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Unknown agent kind: {name}")

from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any, FrozenSet
from datetime import datetime, timezone
from enum import Enum
import uuid

def utcnow() -> datetime:
    return datetime.now(timezone.utc)

class TaskState(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    WAITING_ON_HUMAN = "waiting_on_human"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"

class TaskPriority(str, Enum):
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"

    @classmethod
    def normalize(cls, value: Any) -> "TaskPriority":
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return cls.NORMAL

class Complexity(str, Enum):
    SIMPLE = "simple"
    MODERATE = "moderate"
    COMPLEX = "complex"

    @classmethod
    def normalize(cls, value: Any) -> "Complexity":
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return cls.SIMPLE

class TaskRole(str, Enum):
    WORKER = "worker"
    COORDINATOR = "coordinator"

PRIORITY_RANK: Dict[str, int] = {"high": 0, "normal": 1, "low": 2}
COMPLEXITY_RANK: Dict[str, int] = {"simple": 0, "moderate": 1, "complex": 2}

TERMINAL_STATES: FrozenSet[TaskState] = frozenset({TaskState.COMPLETED, TaskState.FAILED})

# Allowed transitions of the task lifecycle. Guards live in the task manager.
TRANSITIONS: Dict[TaskState, FrozenSet[TaskState]] = {
    TaskState.PENDING: frozenset({TaskState.ACTIVE, TaskState.FAILED}),
    TaskState.ACTIVE: frozenset({
        TaskState.WAITING_ON_HUMAN,
        TaskState.PAUSED,
        TaskState.COMPLETED,
        TaskState.FAILED,
    }),
    TaskState.WAITING_ON_HUMAN: frozenset({TaskState.ACTIVE, TaskState.COMPLETED, TaskState.FAILED}),
    TaskState.PAUSED: frozenset({TaskState.ACTIVE, TaskState.FAILED}),
    TaskState.COMPLETED: frozenset(),
    TaskState.FAILED: frozenset(),
}

# Only the failure-recovery policies may leave FAILED.
RECOVERY_TRANSITIONS: Dict[TaskState, FrozenSet[TaskState]] = {
    TaskState.FAILED: frozenset({TaskState.PENDING, TaskState.COMPLETED}),
}

def can_transition(from_state: TaskState, to_state: TaskState, recovery: bool = False) -> bool:
    if to_state in TRANSITIONS.get(from_state, frozenset()):
        return True
    if recovery:
        return to_state in RECOVERY_TRANSITIONS.get(from_state, frozenset())
    return False

class Task(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    title: str = Field(..., min_length=1)
    description: str = ""
    state: TaskState = TaskState.PENDING
    priority: TaskPriority = TaskPriority.NORMAL
    parent_id: Optional[str] = None
    project_id: Optional[str] = None
    depends_on_task_ids: List[str] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    result: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def nesting_level(self) -> int:
        return int(self.metadata.get("nesting_level") or 0)

    @property
    def complexity(self) -> Complexity:
        return Complexity.normalize(self.metadata.get("complexity", "simple"))

    @property
    def suggested_agent(self) -> Optional[str]:
        return self.metadata.get("suggested_agent")

    @property
    def role(self) -> TaskRole:
        if self.suggested_agent == "CoordinatorAgent" or self.complexity == Complexity.COMPLEX:
            return TaskRole.COORDINATOR
        return TaskRole.WORKER

    @property
    def superseded(self) -> bool:
        return bool(self.metadata.get("superseded_by"))

    @property
    def priority_rank(self) -> int:
        return PRIORITY_RANK.get(self.priority.value, 99)

    @property
    def complexity_rank(self) -> int:
        return COMPLEXITY_RANK.get(self.complexity.value, 99)

class TaskSubmission(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
    description: str = Field(..., min_length=10, max_length=10000)
    priority: TaskPriority = TaskPriority.NORMAL
    project_id: Optional[str] = None

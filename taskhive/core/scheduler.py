"""Dependency-aware selection and batched assignment of subtasks."""

from typing import List, Optional
from pydantic import BaseModel, Field
import structlog

from ..exceptions import DependencyUnsatisfied, InvalidStateTransition
from ..models.task import Task, TaskState
from .store import TaskStore
from .task_manager import TaskManager

logger = structlog.get_logger()

# Maximum subtasks handed out per scheduling pass.
ASSIGNMENT_BATCH_SIZE = 3

class SchedulingResult(BaseModel):
    task_id: str
    assigned: List[str] = Field(default_factory=list)
    deferred: List[str] = Field(default_factory=list)
    escalated: List[str] = Field(default_factory=list)
    skipped_reason: Optional[str] = None

    @property
    def assigned_count(self) -> int:
        return len(self.assigned)

def select_next(eligible: List[Task]) -> Optional[Task]:
    """
    Highest priority first, oldest on ties.
    """
    if not eligible:
        return None
    return min(eligible, key=lambda t: (t.priority_rank, t.created_at))

def sort_by_priority_and_complexity(eligible: List[Task]) -> List[Task]:
    """
    Priority rank, then complexity rank (simple first), then age.
    """
    return sorted(eligible, key=lambda t: (t.priority_rank, t.complexity_rank, t.created_at))

class Scheduler:

    def __init__(self, store: TaskStore, task_manager: TaskManager, spawner, batch_size: int = ASSIGNMENT_BATCH_SIZE):
        self.store = store
        self.task_manager = task_manager
        self.spawner = spawner
        self.batch_size = batch_size
        self.logger = logger.bind(component="Scheduler")

    async def find_eligible_subtasks(self, task: Task) -> List[Task]:
        """
        Pending, non-superseded children whose dependencies are all completed.
        """
        children = await self.store.children_of(task.id)
        eligible = []
        for child in children:
            if child.state != TaskState.PENDING or child.superseded:
                continue
            if await self.task_manager.dependencies_satisfied(child):
                eligible.append(child)
        return eligible

    async def run_cycle(self, task: Task) -> SchedulingResult:
        """
        Assign up to batch_size eligible subtasks of task. Subtasks whose agent
        quota is exhausted stay pending and are reported as deferred.
        """
        task = await self.store.require_task(task.id)
        result = SchedulingResult(task_id=task.id)

        if task.is_terminal or task.state in (TaskState.PAUSED, TaskState.WAITING_ON_HUMAN):
            result.skipped_reason = task.state.value
            return result

        candidates = sort_by_priority_and_complexity(await self.find_eligible_subtasks(task))

        for subtask in candidates:
            if len(result.assigned) >= self.batch_size:
                break

            try:
                outcome = await self.spawner.assign_subtask(subtask, parent=task)
            except DependencyUnsatisfied as e:
                self.logger.info(f"Subtask {subtask.id} no longer eligible", unmet=e.unmet)
                continue
            except InvalidStateTransition as e:
                self.logger.info(f"Subtask {subtask.id} changed state during assignment: {e}")
                continue

            if outcome.assigned:
                result.assigned.append(subtask.id)
            elif outcome.deferred:
                result.deferred.append(subtask.id)
            elif outcome.escalated:
                result.escalated.append(subtask.id)
                # the parent now waits on a human
                break

        self.logger.info(
            f"Scheduling cycle for {task.id}",
            eligible=len(candidates),
            assigned=len(result.assigned),
            deferred=len(result.deferred),
            escalated=len(result.escalated),
        )
        return result

from typing import Any, Dict, List, Optional
import structlog

from ..exceptions import InvalidStateTransition
from ..models.event import EventMetadata
from ..models.human_interaction import InteractionStatus
from ..models.task import Task, TaskPriority, TaskState, can_transition, utcnow
from .event_bus import EventBus
from .store import TaskStore

logger = structlog.get_logger()

SKIPPED_RESULT_PREFIX = "Skipped due to non-critical failure"

async def event_metadata(store: TaskStore, task: Task, causation_id: Optional[str] = None) -> EventMetadata:
    """
    Metadata for events about a task. The correlation id is the root of the
    agent activity chain that produced the task's current run.
    """
    activity_id = task.metadata.get("activity_id")
    correlation_id = None
    if activity_id:
        ancestry = await store.activity_ancestry(activity_id)
        correlation_id = ancestry[0].id if ancestry else activity_id
    return EventMetadata(
        correlation_id=correlation_id or task.id,
        causation_id=causation_id,
        task_id=task.id,
        agent_activity_id=activity_id,
        project_id=task.project_id,
    )

class TaskManager:
    """
    Task lifecycle. Every state change is a compare-and-set against the
    state read immediately before the decision, and is announced on the bus.
    """

    def __init__(self, store: TaskStore, bus: EventBus):
        self.store = store
        self.bus = bus
        self.logger = logger.bind(component="TaskManager")

    async def create_task(
        self,
        title: str,
        description: str = "",
        priority: TaskPriority = TaskPriority.NORMAL,
        parent_id: Optional[str] = None,
        project_id: Optional[str] = None,
        depends_on_task_ids: Optional[List[str]] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Task:
        task = Task(
            title=title,
            description=description,
            priority=priority,
            parent_id=parent_id,
            project_id=project_id,
            depends_on_task_ids=list(depends_on_task_ids or []),
            metadata=dict(metadata or {}),
        )
        task = await self.store.create_task(task)

        await self.bus.publish(
            "task.created",
            {
                "task_id": task.id,
                "title": task.title,
                "parent_id": task.parent_id,
                "priority": task.priority.value,
                "project_id": task.project_id,
            },
            metadata=await event_metadata(self.store, task),
        )
        self.logger.info(f"Task {task.id} created", parent_id=parent_id)
        return task

    # ---- dependencies ----

    async def unmet_dependencies(self, task: Task) -> List[str]:
        if not task.depends_on_task_ids:
            return []
        deps = {d.id: d for d in await self.store.get_tasks(task.depends_on_task_ids)}
        return [
            dep_id for dep_id in task.depends_on_task_ids
            if dep_id not in deps or deps[dep_id].state != TaskState.COMPLETED
        ]

    async def dependencies_satisfied(self, task: Task) -> bool:
        """
        True iff every dependency id resolves to a completed task.
        Dependencies are re-read from the store.
        """
        return not await self.unmet_dependencies(task)

    async def unresolved_children(self, task_id: str) -> List[Task]:
        """
        Children blocking completion. A failed child that has been superseded
        by a replacement counts as resolved.
        """
        children = await self.store.children_of(task_id)
        return [
            child for child in children
            if child.state != TaskState.COMPLETED
            and not (child.state == TaskState.FAILED and child.superseded)
        ]

    # ---- transitions ----

    async def activate(self, task_id: str, causation_id: Optional[str] = None) -> Task:
        task = await self.store.require_task(task_id)
        if task.state != TaskState.PENDING:
            raise InvalidStateTransition(task_id, task.state.value, TaskState.ACTIVE.value, reason="task is not pending")
        task = await self._transition(task, TaskState.ACTIVE)
        await self._announce("task.activated", task, {"previous_state": TaskState.PENDING.value}, causation_id)
        return task

    async def pause(self, task_id: str, causation_id: Optional[str] = None) -> Task:
        task = await self.store.require_task(task_id)
        task = await self._transition(task, TaskState.PAUSED)
        await self._announce("task.paused", task, {}, causation_id)
        return task

    async def resume(self, task_id: str, causation_id: Optional[str] = None) -> Task:
        task = await self.store.require_task(task_id)
        if task.state != TaskState.PAUSED:
            raise InvalidStateTransition(task_id, task.state.value, TaskState.ACTIVE.value, reason="task is not paused")
        task = await self._transition(task, TaskState.ACTIVE)
        await self._announce("task.resumed", task, {"previous_state": TaskState.PAUSED.value}, causation_id)
        return task

    async def wait_on_human(self, task_id: str, interaction_id: str, causation_id: Optional[str] = None) -> Task:
        """
        active -> waiting_on_human, guarded by a pending required input request.
        """
        task = await self.store.require_task(task_id)
        interaction = await self.store.get_interaction(interaction_id)
        if (
            interaction is None
            or interaction.task_id != task_id
            or not interaction.required
            or not interaction.is_pending
        ):
            raise InvalidStateTransition(
                task_id, task.state.value, TaskState.WAITING_ON_HUMAN.value,
                reason=f"no pending required interaction {interaction_id}",
            )

        metadata = {**task.metadata, "waiting_for_interaction_id": interaction_id}
        task = await self._transition(task, TaskState.WAITING_ON_HUMAN, {"metadata": metadata})
        await self._announce("task.waiting_on_human", task, {"interaction_id": interaction_id}, causation_id)
        return task

    async def resume_from_human(self, task_id: str, interaction_id: str, causation_id: Optional[str] = None) -> Task:
        """
        waiting_on_human -> active, guarded by the blocking interaction
        having been answered or resolved.
        """
        task = await self.store.require_task(task_id)
        interaction = await self.store.get_interaction(interaction_id)
        if interaction is None or interaction.status not in (InteractionStatus.ANSWERED, InteractionStatus.RESOLVED):
            raise InvalidStateTransition(
                task_id, task.state.value, TaskState.ACTIVE.value,
                reason=f"interaction {interaction_id} is not answered",
            )
        if task.state != TaskState.WAITING_ON_HUMAN:
            raise InvalidStateTransition(task_id, task.state.value, TaskState.ACTIVE.value, reason="task is not waiting")

        metadata = {k: v for k, v in task.metadata.items() if k != "waiting_for_interaction_id"}
        task = await self._transition(task, TaskState.ACTIVE, {"metadata": metadata})
        await self._announce(
            "task.resumed", task,
            {"previous_state": TaskState.WAITING_ON_HUMAN.value, "interaction_id": interaction_id},
            causation_id,
        )
        return task

    async def complete(self, task_id: str, result: Optional[str] = None, causation_id: Optional[str] = None) -> Task:
        """
        Complete a task. Children are re-read right before the decision; any
        unresolved child rejects the transition.
        """
        task = await self.store.require_task(task_id)
        blocking = await self.unresolved_children(task_id)
        if blocking:
            raise InvalidStateTransition(
                task_id, task.state.value, TaskState.COMPLETED.value,
                reason=f"{len(blocking)} child task(s) not completed",
            )

        task = await self._transition(
            task, TaskState.COMPLETED,
            {"result": result, "completed_at": utcnow()},
        )
        await self._announce_completion(task, causation_id)
        self.logger.info(f"Task {task_id} completed", parent_id=task.parent_id)
        return task

    async def fail(self, task_id: str, error: str, causation_id: Optional[str] = None) -> Task:
        task = await self.store.require_task(task_id)
        metadata = {**task.metadata, "error_message": error}
        task = await self._transition(task, TaskState.FAILED, {"metadata": metadata})

        await self._announce("task.failed", task, {"error": error, "parent_id": task.parent_id}, causation_id)
        if task.parent_id:
            await self._announce(
                "subtask.failed", task,
                {"subtask_id": task.id, "task_id": task.parent_id, "error": error},
                causation_id,
            )
        self.logger.warning(f"Task {task_id} failed: {error}", parent_id=task.parent_id)
        return task

    # ---- recovery-only transitions ----

    async def requeue(self, task_id: str, guidance: Optional[str] = None, causation_id: Optional[str] = None) -> Task:
        """
        failed -> pending for a retry. Clears the recovery claim so a later
        failure can be recovered again.
        """
        task = await self.store.require_task(task_id)
        retry_count = int(task.metadata.get("retry_count") or 0) + 1
        metadata = {
            k: v for k, v in task.metadata.items()
            if k not in ("recovery_action", "assigned_agent", "assigned_at", "activity_id", "error_message")
        }
        metadata["retry_count"] = retry_count
        updates: Dict[str, Any] = {"metadata": metadata}
        if guidance:
            updates["description"] = f"{task.description}\n\nGuidance: {guidance}"

        task = await self._transition(task, TaskState.PENDING, updates, recovery=True)
        await self._announce("task.requeued", task, {"retry_count": retry_count}, causation_id)
        return task

    async def skip(self, task_id: str, reason: str, causation_id: Optional[str] = None) -> Task:
        """
        failed -> completed with a result marking the subtask as non-critical.
        """
        task = await self.store.require_task(task_id)
        result = f"{SKIPPED_RESULT_PREFIX}: {reason}"
        task = await self._transition(
            task, TaskState.COMPLETED,
            {"result": result, "completed_at": utcnow()},
            recovery=True,
        )
        await self._announce("task.skipped", task, {"reason": reason}, causation_id)
        await self._announce_completion(task, causation_id)
        return task

    # ---- helpers ----

    async def _transition(
        self,
        task: Task,
        to_state: TaskState,
        updates: Optional[Dict[str, Any]] = None,
        recovery: bool = False,
    ) -> Task:
        if not can_transition(task.state, to_state, recovery=recovery):
            raise InvalidStateTransition(task.id, task.state.value, to_state.value)
        return await self.store.transition(task.id, task.state, to_state, updates)

    async def _announce_completion(self, task: Task, causation_id: Optional[str]) -> None:
        await self._announce("task.completed", task, {"result": task.result, "parent_id": task.parent_id}, causation_id)
        if task.parent_id:
            await self._announce(
                "subtask.completed", task,
                {"subtask_id": task.id, "task_id": task.parent_id, "result": task.result or ""},
                causation_id,
            )

    async def _announce(self, event_type: str, task: Task, data: Dict[str, Any], causation_id: Optional[str]) -> None:
        payload = {"task_id": task.id, **data}
        await self.bus.publish(event_type, payload, metadata=await event_metadata(self.store, task, causation_id))

"""Durable record store used by the coordination core.

``TaskStore`` is the contract; ``InMemoryStore`` backs tests and single-process
runs, ``taskhive.database.SupabaseStore`` backs deployments. Every read returns
a detached copy so callers always decide on the freshest state they fetched.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional
from datetime import datetime
import asyncio
import copy
import structlog

from ..exceptions import InvalidStateTransition, TaskNotFound
from ..models.agent import AgentActivity
from ..models.event import Event
from ..models.human_interaction import HumanInteraction, InteractionStatus
from ..models.task import Task, TaskState, utcnow

logger = structlog.get_logger()

class TaskStore(ABC):

    # ---- tasks ----

    @abstractmethod
    async def create_task(self, task: Task) -> Task:
        ...

    @abstractmethod
    async def get_task(self, task_id: str) -> Optional[Task]:
        ...

    @abstractmethod
    async def update_task(self, task_id: str, **fields: Any) -> Task:
        """
        Update non-state fields. State changes must go through transition().
        """

    @abstractmethod
    async def merge_metadata(self, task_id: str, patch: Dict[str, Any]) -> Task:
        ...

    @abstractmethod
    async def compare_and_set_metadata(self, task_id: str, key: str, expected: Any, value: Any) -> bool:
        """
        Set metadata[key] = value only if its current value equals expected.
        """

    @abstractmethod
    async def transition(
        self,
        task_id: str,
        expected: TaskState,
        to_state: TaskState,
        updates: Optional[Dict[str, Any]] = None,
    ) -> Task:
        """
        Atomically move a task from expected to to_state.
        Raises InvalidStateTransition if the stored state is not expected.
        """

    @abstractmethod
    async def children_of(self, task_id: str) -> List[Task]:
        """
        Direct children ordered by creation time.
        """

    @abstractmethod
    async def get_tasks(self, task_ids: List[str]) -> List[Task]:
        ...

    # ---- events ----

    @abstractmethod
    async def insert_event(self, event: Event) -> Event:
        ...

    @abstractmethod
    async def get_event(self, event_id: str) -> Optional[Event]:
        ...

    @abstractmethod
    async def mark_event_processed(self, event_id: str, processed_at: datetime) -> None:
        ...

    @abstractmethod
    async def list_events(self, event_type: Optional[str] = None, task_id: Optional[str] = None) -> List[Event]:
        ...

    # ---- human interactions ----

    @abstractmethod
    async def insert_interaction(self, interaction: HumanInteraction) -> HumanInteraction:
        ...

    @abstractmethod
    async def get_interaction(self, interaction_id: str) -> Optional[HumanInteraction]:
        ...

    @abstractmethod
    async def update_interaction(
        self,
        interaction_id: str,
        expected_status: InteractionStatus,
        **fields: Any,
    ) -> Optional[HumanInteraction]:
        """
        Update an interaction only if it is still in expected_status.
        Returns None when the status already moved on.
        """

    @abstractmethod
    async def list_interactions(
        self,
        task_id: Optional[str] = None,
        status: Optional[InteractionStatus] = None,
    ) -> List[HumanInteraction]:
        ...

    # ---- agent activities ----

    @abstractmethod
    async def create_activity(self, activity: AgentActivity) -> AgentActivity:
        ...

    @abstractmethod
    async def get_activity(self, activity_id: str) -> Optional[AgentActivity]:
        ...

    @abstractmethod
    async def update_activity(self, activity_id: str, **fields: Any) -> AgentActivity:
        ...

    # ---- derived queries ----

    async def require_task(self, task_id: str) -> Task:
        task = await self.get_task(task_id)
        if task is None:
            raise TaskNotFound(task_id)
        return task

    async def tasks_with_unmet_dependencies(self, parent_id: str) -> List[Task]:
        """
        Children of parent_id that still wait on a non-completed dependency.
        """
        children = await self.children_of(parent_id)
        blocked = []
        for child in children:
            if not child.depends_on_task_ids:
                continue
            deps = await self.get_tasks(child.depends_on_task_ids)
            completed = {d.id for d in deps if d.state == TaskState.COMPLETED}
            if any(dep_id not in completed for dep_id in child.depends_on_task_ids):
                blocked.append(child)
        return blocked

    async def count_descendants(self, task_id: str) -> int:
        total = 0
        frontier = [task_id]
        while frontier:
            current = frontier.pop()
            children = await self.children_of(current)
            total += len(children)
            frontier.extend(child.id for child in children)
        return total

    async def root_of(self, task_id: str) -> Task:
        task = await self.require_task(task_id)
        while task.parent_id:
            task = await self.require_task(task.parent_id)
        return task

    async def activity_ancestry(self, activity_id: str) -> List[AgentActivity]:
        """
        Activities from the root run down to activity_id.
        """
        chain: List[AgentActivity] = []
        seen = set()
        current = await self.get_activity(activity_id)
        while current is not None and current.id not in seen:
            seen.add(current.id)
            chain.insert(0, current)
            current = await self.get_activity(current.parent_id) if current.parent_id else None
        return chain

class InMemoryStore(TaskStore):
    """
    Process-local store. A single asyncio lock makes every write atomic.
    """

    def __init__(self):
        self._tasks: Dict[str, Task] = {}
        self._events: Dict[str, Event] = {}
        self._interactions: Dict[str, HumanInteraction] = {}
        self._activities: Dict[str, AgentActivity] = {}
        self._lock = asyncio.Lock()
        self.logger = logger.bind(component="InMemoryStore")

    async def create_task(self, task: Task) -> Task:
        async with self._lock:
            if task.id in self._tasks:
                raise ValueError(f"Task {task.id} already exists")
            self._tasks[task.id] = task.model_copy(deep=True)
        return task.model_copy(deep=True)

    async def get_task(self, task_id: str) -> Optional[Task]:
        task = self._tasks.get(task_id)
        return task.model_copy(deep=True) if task else None

    async def get_tasks(self, task_ids: List[str]) -> List[Task]:
        return [self._tasks[tid].model_copy(deep=True) for tid in task_ids if tid in self._tasks]

    async def update_task(self, task_id: str, **fields: Any) -> Task:
        if "state" in fields:
            raise ValueError("Task state can only change through transition()")
        async with self._lock:
            current = self._stored_task(task_id)
            updated = current.model_copy(update={**copy.deepcopy(fields), "updated_at": utcnow()}, deep=True)
            self._tasks[task_id] = updated
        return updated.model_copy(deep=True)

    async def merge_metadata(self, task_id: str, patch: Dict[str, Any]) -> Task:
        async with self._lock:
            current = self._stored_task(task_id)
            metadata = {**current.metadata, **copy.deepcopy(patch)}
            updated = current.model_copy(update={"metadata": metadata, "updated_at": utcnow()}, deep=True)
            self._tasks[task_id] = updated
        return updated.model_copy(deep=True)

    async def compare_and_set_metadata(self, task_id: str, key: str, expected: Any, value: Any) -> bool:
        async with self._lock:
            current = self._stored_task(task_id)
            if current.metadata.get(key) != expected:
                return False
            metadata = {**current.metadata, key: value}
            self._tasks[task_id] = current.model_copy(update={"metadata": metadata, "updated_at": utcnow()}, deep=True)
        return True

    async def transition(
        self,
        task_id: str,
        expected: TaskState,
        to_state: TaskState,
        updates: Optional[Dict[str, Any]] = None,
    ) -> Task:
        async with self._lock:
            current = self._stored_task(task_id)
            if current.state != expected:
                raise InvalidStateTransition(
                    task_id, current.state.value, to_state.value,
                    reason=f"expected state {expected.value}",
                )
            changes = copy.deepcopy(dict(updates or {}))
            changes.update(state=to_state, updated_at=utcnow())
            updated = current.model_copy(update=changes, deep=True)
            self._tasks[task_id] = updated
        self.logger.debug(f"Task {task_id} {expected.value} -> {to_state.value}")
        return updated.model_copy(deep=True)

    async def children_of(self, task_id: str) -> List[Task]:
        children = [t for t in self._tasks.values() if t.parent_id == task_id]
        # dict order is insertion order, so the stable sort keeps creation order on ties
        children.sort(key=lambda t: t.created_at)
        return [t.model_copy(deep=True) for t in children]

    async def insert_event(self, event: Event) -> Event:
        async with self._lock:
            self._events[event.id] = event.model_copy(deep=True)
        return event

    async def get_event(self, event_id: str) -> Optional[Event]:
        event = self._events.get(event_id)
        return event.model_copy(deep=True) if event else None

    async def mark_event_processed(self, event_id: str, processed_at: datetime) -> None:
        async with self._lock:
            event = self._events.get(event_id)
            if event is not None and event.processed_at is None:
                self._events[event_id] = event.model_copy(update={"processed_at": processed_at})

    async def list_events(self, event_type: Optional[str] = None, task_id: Optional[str] = None) -> List[Event]:
        events = list(self._events.values())
        if event_type:
            events = [e for e in events if e.event_type == event_type]
        if task_id:
            events = [e for e in events if e.metadata.task_id == task_id or e.data.get("task_id") == task_id]
        return [e.model_copy(deep=True) for e in events]

    async def insert_interaction(self, interaction: HumanInteraction) -> HumanInteraction:
        async with self._lock:
            self._interactions[interaction.id] = interaction.model_copy(deep=True)
        return interaction.model_copy(deep=True)

    async def get_interaction(self, interaction_id: str) -> Optional[HumanInteraction]:
        interaction = self._interactions.get(interaction_id)
        return interaction.model_copy(deep=True) if interaction else None

    async def update_interaction(
        self,
        interaction_id: str,
        expected_status: InteractionStatus,
        **fields: Any,
    ) -> Optional[HumanInteraction]:
        async with self._lock:
            current = self._interactions.get(interaction_id)
            if current is None or current.status != expected_status:
                return None
            updated = current.model_copy(update=fields, deep=True)
            self._interactions[interaction_id] = updated
        return updated.model_copy(deep=True)

    async def list_interactions(
        self,
        task_id: Optional[str] = None,
        status: Optional[InteractionStatus] = None,
    ) -> List[HumanInteraction]:
        interactions = list(self._interactions.values())
        if task_id:
            interactions = [i for i in interactions if i.task_id == task_id]
        if status:
            interactions = [i for i in interactions if i.status == status]
        return [i.model_copy(deep=True) for i in interactions]

    async def create_activity(self, activity: AgentActivity) -> AgentActivity:
        async with self._lock:
            self._activities[activity.id] = activity.model_copy(deep=True)
        return activity.model_copy(deep=True)

    async def get_activity(self, activity_id: str) -> Optional[AgentActivity]:
        activity = self._activities.get(activity_id)
        return activity.model_copy(deep=True) if activity else None

    async def update_activity(self, activity_id: str, **fields: Any) -> AgentActivity:
        async with self._lock:
            current = self._activities.get(activity_id)
            if current is None:
                raise KeyError(f"Agent activity not found: {activity_id}")
            updated = current.model_copy(update=fields, deep=True)
            self._activities[activity_id] = updated
        return updated.model_copy(deep=True)

    def _stored_task(self, task_id: str) -> Task:
        task = self._tasks.get(task_id)
        if task is None:
            raise TaskNotFound(task_id)
        return task

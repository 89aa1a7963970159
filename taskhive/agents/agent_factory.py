from typing import Awaitable, Callable, Dict, Optional, Set
from pydantic import BaseModel
from enum import Enum
import structlog

from ..config import Settings
from ..core.concurrency import ConcurrencyLimiter
from ..core.event_bus import EventBus
from ..core.human_interactions import HumanInteractionService
from ..core.store import TaskStore
from ..core.task_manager import TaskManager, event_metadata
from ..core.work_queue import AGENT_QUEUE, COORDINATOR_QUEUE, WorkDispatcher, WorkItem, WorkKind
from ..exceptions import DependencyUnsatisfied, InvalidStateTransition, NestingDepthExceeded, QuotaExceeded, UnknownAgentKind
from ..models.agent import AgentActivity, AgentKind, DEFAULT_WORKER_KIND
from ..models.human_interaction import InteractionPurpose, InteractionStatus
from ..models.task import Complexity, Task, TaskPriority, TaskRole, TaskState, utcnow

logger = structlog.get_logger()

WORK_PRIORITY: Dict[TaskPriority, int] = {
    TaskPriority.HIGH: 10,
    TaskPriority.NORMAL: 5,
    TaskPriority.LOW: 1,
}

AgentSelector = Callable[[Task], Awaitable[str]]

class AssignmentStatus(str, Enum):
    ASSIGNED = "assigned"
    DEFERRED = "deferred"
    ESCALATED = "escalated"

class AssignmentOutcome(BaseModel):
    status: AssignmentStatus
    subtask_id: str
    agent_kind: Optional[AgentKind] = None
    activity_id: Optional[str] = None
    reason: Optional[str] = None

    @property
    def assigned(self) -> bool:
        return self.status == AssignmentStatus.ASSIGNED

    @property
    def deferred(self) -> bool:
        return self.status == AssignmentStatus.DEFERRED

    @property
    def escalated(self) -> bool:
        return self.status == AssignmentStatus.ESCALATED

class AgentSpawner:
    """
    Hands eligible subtasks to agents. Guards every spawn with the
    dependency check, the per-kind concurrency quota and the nesting limit.
    """

    def __init__(
        self,
        store: TaskStore,
        task_manager: TaskManager,
        bus: EventBus,
        limiter: ConcurrencyLimiter,
        dispatcher: WorkDispatcher,
        humans: HumanInteractionService,
        settings: Settings,
        agent_selector: Optional[AgentSelector] = None,
    ):
        self.store = store
        self.task_manager = task_manager
        self.bus = bus
        self.limiter = limiter
        self.dispatcher = dispatcher
        self.humans = humans
        self.settings = settings
        self.agent_selector = agent_selector
        # parents with work deferred on a kind, re-evaluated when a slot frees up
        self._deferred_parents: Dict[AgentKind, Set[str]] = {}
        self.logger = logger.bind(component="AgentSpawner")

    async def assign_subtask(self, subtask: Task, parent: Task) -> AssignmentOutcome:
        """
        Raises DependencyUnsatisfied for an ineligible subtask and
        InvalidStateTransition when it is no longer pending.
        """
        subtask = await self.store.require_task(subtask.id)
        if subtask.state != TaskState.PENDING:
            raise InvalidStateTransition(subtask.id, subtask.state.value, TaskState.ACTIVE.value, reason="not pending")

        unmet = await self.task_manager.unmet_dependencies(subtask)
        if unmet:
            raise DependencyUnsatisfied(subtask.id, unmet)

        try:
            kind = await self.resolve_kind(subtask)
        except UnknownAgentKind as e:
            return await self._escalate_unknown_kind(subtask, parent, e.name)

        if kind is AgentKind.COORDINATOR:
            kind = await self._check_nesting(subtask, parent)

        try:
            await self._acquire(kind)
        except QuotaExceeded as e:
            return await self._defer(subtask, parent, kind, str(e))

        try:
            subtask = await self.task_manager.activate(subtask.id)
        except InvalidStateTransition:
            await self.limiter.release(kind)
            raise

        activity = await self.store.create_activity(AgentActivity(
            task_id=subtask.id,
            agent_kind=kind,
            parent_id=parent.metadata.get("activity_id"),
            purpose=f"{kind.value} for subtask: {subtask.title}",
        ))
        subtask = await self.store.merge_metadata(subtask.id, {
            "assigned_agent": kind.value,
            "assigned_at": utcnow().isoformat(),
            "activity_id": activity.id,
        })
        await self.bus.publish(
            "agent_activity.created",
            {"activity_id": activity.id, "task_id": subtask.id, "agent_kind": kind.value},
            metadata=await event_metadata(self.store, subtask),
        )

        if kind is AgentKind.COORDINATOR:
            await self.create_sub_coordinator(subtask, parent, activity)
        else:
            await self.dispatcher.enqueue(
                WorkItem(
                    kind=WorkKind.RUN_AGENT,
                    task_id=subtask.id,
                    activity_id=activity.id,
                    priority=WORK_PRIORITY.get(subtask.priority, 5),
                    payload={"agent_kind": kind.value},
                ),
                AGENT_QUEUE,
            )

        await self.bus.publish(
            "subtask.assigned",
            {"subtask_id": subtask.id, "agent_type": kind.value, "parent_id": parent.id, "activity_id": activity.id},
            metadata=await event_metadata(self.store, subtask),
        )
        self.logger.info(f"Assigned subtask {subtask.id} to {kind.value}", parent_id=parent.id)

        return AssignmentOutcome(
            status=AssignmentStatus.ASSIGNED,
            subtask_id=subtask.id,
            agent_kind=kind,
            activity_id=activity.id,
        )

    async def resolve_kind(self, subtask: Task) -> AgentKind:
        """
        Coordinator role first, then the metadata suggestion, then the agent selector.
        Raises UnknownAgentKind when the name matches no known kind.
        """
        if subtask.role == TaskRole.COORDINATOR:
            return AgentKind.COORDINATOR

        name = subtask.suggested_agent
        if not name and self.agent_selector is not None:
            name = await self.agent_selector(subtask)
        if not name:
            return DEFAULT_WORKER_KIND

        kind = AgentKind.resolve(name)
        if kind is None:
            raise UnknownAgentKind(name)
        return kind

    async def create_sub_coordinator(self, subtask: Task, parent: Task, activity: AgentActivity) -> None:
        """
        Bind a nested coordinator to a complex subtask. The coordinator slot
        acquired for it is released when its decomposition run ends.
        """
        level = parent.nesting_level + 1
        await self.store.merge_metadata(subtask.id, {"nesting_level": level})
        await self.dispatcher.enqueue(
            WorkItem(
                kind=WorkKind.DECOMPOSE,
                task_id=subtask.id,
                activity_id=activity.id,
                priority=WORK_PRIORITY.get(subtask.priority, 5),
                payload={"release_quota": True},
            ),
            COORDINATOR_QUEUE,
        )
        await self.bus.publish(
            "sub_coordinator.created",
            {"subtask_id": subtask.id, "nesting_level": level, "parent_id": parent.id},
            metadata=await event_metadata(self.store, subtask),
        )
        self.logger.info(f"Sub-coordinator created for {subtask.id}", nesting_level=level)

    async def release(self, kind: AgentKind) -> None:
        """
        Free a slot and re-enqueue coordination for parents that deferred on it.
        """
        await self.limiter.release(kind)
        parents = self._deferred_parents.pop(kind, set())
        for parent_id in parents:
            await self.dispatcher.enqueue(
                WorkItem(kind=WorkKind.COORDINATE, task_id=parent_id, payload={"reason": "quota_released"}),
                COORDINATOR_QUEUE,
            )
        if parents:
            self.logger.info(f"Re-enqueued {len(parents)} deferred coordinators", agent_kind=kind.value)

    def deferred_parents(self, kind: AgentKind) -> Set[str]:
        return set(self._deferred_parents.get(kind, set()))

    # ---- helpers ----

    async def _acquire(self, kind: AgentKind) -> None:
        if not await self.limiter.try_acquire(kind):
            raise QuotaExceeded(kind.value, self.limiter.limit(kind))

    async def _check_nesting(self, subtask: Task, parent: Task) -> AgentKind:
        """
        Downgrade a complex subtask to a generalist worker at the depth limit.
        """
        try:
            self._ensure_depth(subtask, parent.nesting_level + 1)
            return AgentKind.COORDINATOR
        except NestingDepthExceeded as e:
            self.logger.warning(str(e))
            await self.store.merge_metadata(subtask.id, {
                "suggested_agent": DEFAULT_WORKER_KIND.value,
                "complexity": Complexity.MODERATE.value,
                "depth_limited": True,
            })
            await self.bus.publish(
                "sub_coordinator.depth_limited",
                {"subtask_id": subtask.id, "nesting_level": e.nesting_level, "max_depth": e.max_depth},
                metadata=await event_metadata(self.store, subtask),
            )
            return DEFAULT_WORKER_KIND

    def _ensure_depth(self, subtask: Task, level: int) -> None:
        if level > self.settings.max_nesting_depth:
            raise NestingDepthExceeded(subtask.id, level, self.settings.max_nesting_depth)

    async def _defer(self, subtask: Task, parent: Task, kind: AgentKind, reason: str) -> AssignmentOutcome:
        self._deferred_parents.setdefault(kind, set()).add(parent.id)
        await self.bus.publish(
            "subtask.deferred",
            {"subtask_id": subtask.id, "agent_type": kind.value, "reason": reason},
            metadata=await event_metadata(self.store, subtask),
        )
        return AssignmentOutcome(
            status=AssignmentStatus.DEFERRED,
            subtask_id=subtask.id,
            agent_kind=kind,
            reason=reason,
        )

    async def _escalate_unknown_kind(self, subtask: Task, parent: Task, name: str) -> AssignmentOutcome:
        """
        Ask a human which agent should handle the subtask, once per subtask.
        """
        reason = f"Unknown agent kind: {name}"
        escalation_id = subtask.metadata.get("agent_escalation_id")
        if escalation_id:
            existing = await self.store.get_interaction(escalation_id)
            if existing is not None and existing.status == InteractionStatus.PENDING:
                return AssignmentOutcome(status=AssignmentStatus.ESCALATED, subtask_id=subtask.id, reason=reason)

        interaction = await self.humans.request_input(
            parent.id,
            f"Subtask '{subtask.title}' was suggested for agent type '{name}', which does not exist. "
            f"Which agent type should handle it? Options: {', '.join(k.value for k in AgentKind)}",
            required=True,
            purpose=InteractionPurpose.AGENT_SELECTION,
            subtask_id=subtask.id,
        )
        await self.store.merge_metadata(subtask.id, {"agent_escalation_id": interaction.id})
        self.logger.warning(reason, subtask_id=subtask.id)
        return AssignmentOutcome(status=AssignmentStatus.ESCALATED, subtask_id=subtask.id, reason=reason)
